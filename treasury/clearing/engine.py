"""
Treasury Clearing Engine

Settles open debts between marketplaces with as few on-chain transfers as
possible.  One pass:

  1. reads every open obligation (claimed ones are never counted twice)
  2. nets them into one balance per marketplace and computes transfers
  3. turns each transfer into an in-progress clearing operation plus an
     unsigned transaction descriptor paid by the debtor
  4. carries any amount finer than the settlement unit forward as a new
     open clearing obligation
  5. commits atomically: all source obligations move open → in_progress
     together with the new operations, or nothing is written

A pass racing another pass loses at step 5 with ClaimConflictError and
leaves the ledger untouched.  Anything failing before step 5 (for example the
chain context provider) also leaves the ledger untouched.

When every settlement of a batch is confirmed closed, complete_batch closes
the obligations the batch claimed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from ..chain.builder import CallKind, TransactionBuilder, TransactionObject
from ..chain.context import ChainContext, ChainContextProvider
from ..constants import SETTLEMENT_UNIT
from ..exceptions import ClaimConflictError, SettlementRemainderError
from ..ledger.filters import ByClearingBatch, ClaimedBy, Obligations
from ..ledger.operation import Operation, OperationStatus, OperationType
from ..ledger.state_machine import OperationStateMachine, new_transfer_id
from ..ledger.store import OperationStore
from ..logger import get_logger
from .netting import compute_balances, net_transfers

logger = get_logger(__name__)


@dataclass
class ClearingResult:
    """Outcome of one clearing pass."""
    batch_id: Optional[str] = None
    settlements: List[Operation] = field(default_factory=list)
    transactions: List[TransactionObject] = field(default_factory=list)
    remainders: List[Operation] = field(default_factory=list)
    claimed: List[Operation] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.settlements and not self.claimed

    def to_list(self) -> List[Dict[str, Any]]:
        return [
            {"transferId": op.transfer_id, "transactionObject": tx.to_dict()}
            for op, tx in zip(self.settlements, self.transactions)
        ]


class ClearingEngine:
    """Multilateral netting over the operation ledger."""

    def __init__(
        self,
        store: OperationStore,
        builder: TransactionBuilder,
        chain: ChainContextProvider,
        state_machine: Optional[OperationStateMachine] = None,
        settlement_unit: Decimal = SETTLEMENT_UNIT,
    ):
        self.store = store
        self.builder = builder
        self.chain = chain
        self.state_machine = state_machine or OperationStateMachine()
        self.settlement_unit = Decimal(settlement_unit)

    async def run(self) -> ClearingResult:
        """Run one clearing pass."""
        obligations = await self.store.scan(Obligations())
        if not obligations:
            logger.debug("Clearing: no open obligations")
            return ClearingResult()

        transfers = net_transfers(compute_balances(obligations))
        parts = [(transfer, *transfer.split(self.settlement_unit)) for transfer in transfers]

        if transfers and not any(settled > 0 for _, settled, _ in parts):
            logger.info(
                f"Clearing: {len(obligations)} obligations net below the settlement unit "
                f"{self.settlement_unit}, nothing to settle"
            )
            return ClearingResult()

        batch_id = new_transfer_id()
        source_ids = tuple(op.transfer_id for op in obligations)
        result = ClearingResult(batch_id=batch_id)

        contexts: Dict[str, ChainContext] = {}
        sent: Dict[str, int] = {}
        for transfer, settled, remainder in parts:
            if settled > 0:
                settlement = self.state_machine.create(
                    OperationType.CLEARING,
                    user=transfer.debtor,
                    amount=settled,
                    counterparty=transfer.creditor,
                    batch_id=batch_id,
                    settles=source_ids,
                )
                if transfer.debtor not in contexts:
                    contexts[transfer.debtor] = await self.chain.snapshot(transfer.debtor)
                offset = sent.get(transfer.debtor, 0)
                sent[transfer.debtor] = offset + 1

                tx = self.builder.build(
                    CallKind.CLEARING,
                    transfer.debtor,
                    {"transferId": settlement.transfer_id, "creditor": transfer.creditor, "amount": settled},
                    contexts[transfer.debtor].with_nonce_offset(offset),
                )
                result.settlements.append(settlement)
                result.transactions.append(tx)

            if remainder > 0:
                result.remainders.append(
                    self.state_machine.carry_forward(transfer.debtor, transfer.creditor, remainder, batch_id)
                )
                logger.warning(str(SettlementRemainderError(transfer.debtor, transfer.creditor, remainder)))

        if result.settlements:
            claimed = [self.state_machine.claim(op, batch_id) for op in obligations]
        else:
            # Balances cancel out exactly: the debts are settled already
            claimed = [self.state_machine.close(op).evolve(claimed_by=batch_id) for op in obligations]

        try:
            await self.store.commit(
                swaps=[(op, OperationStatus.OPEN) for op in claimed],
                inserts=result.settlements + result.remainders,
            )
        except ClaimConflictError as e:
            logger.error(f"Clearing batch {batch_id} aborted, obligations claimed concurrently: {e}")
            raise

        result.claimed = claimed
        logger.info(
            f"Clearing batch {batch_id}: {len(obligations)} obligations, "
            f"{len(result.settlements)} transfers, {len(result.remainders)} remainders"
        )
        return result

    async def complete_batch(self, batch_id: str) -> List[Operation]:
        """
        Close the obligations claimed by ``batch_id`` once every settlement
        transfer of the batch is closed.

        Returns:
            The closed obligations; empty while settlements are pending
        """
        settlements = [
            op for op in await self.store.scan(ByClearingBatch(batch_id))
            if not op.carried_forward
        ]
        if not settlements or not all(op.is_closed for op in settlements):
            return []

        sources = [
            op for op in await self.store.scan(ClaimedBy(batch_id))
            if op.status == OperationStatus.IN_PROGRESS
        ]
        if not sources:
            return []

        closed = [self.state_machine.close(op) for op in sources]
        try:
            await self.store.commit(swaps=[(op, OperationStatus.IN_PROGRESS) for op in closed])
        except ClaimConflictError:
            logger.debug(f"Clearing batch {batch_id} already completed by another confirmation")
            return []

        logger.info(f"Clearing batch {batch_id} settled, {len(closed)} obligations closed")
        return closed
