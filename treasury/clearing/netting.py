"""
Multilateral Netting

Collapses gross debts between marketplaces into one signed balance per
marketplace, then pays debtors into creditors greedily: the largest debtor
pays the largest creditor the smaller of the two outstanding amounts, until
every balance is zero.  Each step zeroes at least one party, so n parties
settle with at most n - 1 transfers, never more than pairwise settlement.

Ties between equal balances go to the lexicographically smaller address.
"""

from dataclasses import dataclass
from decimal import ROUND_DOWN, Context, Decimal, localcontext
from typing import Dict, Iterable, List, Tuple

from ..ledger.operation import Operation

ZERO = Decimal("0")

# uint256 token amounts need up to 78 significant digits
NETTING_CONTEXT = Context(prec=78)


@dataclass(frozen=True)
class NetTransfer:
    debtor: str
    creditor: str
    amount: Decimal

    def split(self, unit: Decimal) -> Tuple[Decimal, Decimal]:
        """(settleable amount rounded down to ``unit``, remainder)."""
        with localcontext(NETTING_CONTEXT):
            settled = (self.amount / unit).to_integral_value(rounding=ROUND_DOWN) * unit
            return settled, self.amount - settled


def compute_balances(obligations: Iterable[Operation]) -> Dict[str, Decimal]:
    """
    Signed net balance per marketplace: positive is owed money (creditor),
    negative owes money (debtor).  Balances always sum to zero.
    """
    balances: Dict[str, Decimal] = {}
    with localcontext(NETTING_CONTEXT):
        for op in obligations:
            balances[op.user] = balances.get(op.user, ZERO) - op.amount
            balances[op.counterparty] = balances.get(op.counterparty, ZERO) + op.amount
    return balances


def net_transfers(balances: Dict[str, Decimal]) -> List[NetTransfer]:
    """Minimal transfer list that zeroes every balance."""
    creditors = {party: amount for party, amount in balances.items() if amount > 0}
    debtors = {party: -amount for party, amount in balances.items() if amount < 0}

    transfers: List[NetTransfer] = []
    with localcontext(NETTING_CONTEXT):
        while creditors and debtors:
            creditor = min(creditors, key=lambda party: (-creditors[party], party))
            debtor = min(debtors, key=lambda party: (-debtors[party], party))
            amount = min(creditors[creditor], debtors[debtor])
            transfers.append(NetTransfer(debtor=debtor, creditor=creditor, amount=amount))

            creditors[creditor] -= amount
            debtors[debtor] -= amount
            if creditors[creditor] == 0:
                del creditors[creditor]
            if debtors[debtor] == 0:
                del debtors[debtor]
    return transfers
