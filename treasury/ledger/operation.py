"""
Treasury Operation Model

An Operation is the ledger record of one intent to move value: a user
depositing tokens (exchange-in), redeeming them (exchange-out), marketplaces
settling mutual debts (clearing), a fiat payout (payment) or a marketplace
fee (fee payment).

Operations are immutable values.  Lifecycle changes produce a new version of
the record through the state machine and are written back with a
compare-and-swap on the stored status.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class OperationType(str, Enum):
    EXCHANGE_IN = "exchange_in"
    EXCHANGE_OUT = "exchange_out"
    CLEARING = "clearing"
    PAYMENT = "payment"
    FEE_PAYMENT = "fee_payment"


class OperationStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    CLOSED = "closed"


# Types whose open records are debts between marketplaces
NETTABLE_TYPES: Tuple[OperationType, ...] = (
    OperationType.FEE_PAYMENT,
    OperationType.CLEARING,
)


def utcnow() -> datetime:
    """Current UTC time at the millisecond precision the wire format keeps."""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def parse_date(value: str) -> datetime:
    """Parse an ISO-8601 timestamp, accepting a trailing ``Z``; naive means UTC."""
    if value.endswith("Z") or value.endswith("z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_date(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def format_amount(value: Decimal) -> str:
    """Plain decimal notation; never scientific, so 1e-18 reads 0.000000000000000001."""
    return format(value, "f")


@dataclass(frozen=True)
class Operation:
    """
    Ledger record of a single operation.

    ``user`` is the principal (the payer for inter-marketplace debts) and
    ``counterparty`` the receiving marketplace, when there is one.
    """
    transfer_id: str
    type: OperationType
    status: OperationStatus
    user: str
    date: datetime = field(default_factory=utcnow)
    amount: Optional[Decimal] = None
    counterparty: Optional[str] = None
    transfer_code: Optional[str] = None
    # Clearing bookkeeping
    batch_id: Optional[str] = None          # pass that created a clearing op
    claimed_by: Optional[str] = None        # pass that claimed an obligation
    settles: Tuple[str, ...] = ()           # obligations netted by a clearing op
    carried_forward: bool = False           # clearing remainder awaiting the next pass

    @property
    def is_closed(self) -> bool:
        return self.status == OperationStatus.CLOSED

    @property
    def is_obligation(self) -> bool:
        """Open debt from ``user`` to ``counterparty`` that clearing may net."""
        return (
            self.status == OperationStatus.OPEN
            and self.type in NETTABLE_TYPES
            and self.counterparty is not None
            and self.amount is not None
            and self.amount > 0
        )

    def evolve(self, **changes: Any) -> Operation:
        """Return a copy with ``changes`` applied."""
        return dataclasses.replace(self, **changes)

    # -- Serialization ------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the JSON shape returned to API callers."""
        result: Dict[str, Any] = {
            "transferId": self.transfer_id,
            "type": self.type.value,
            "status": self.status.value,
            "user": self.user,
            "date": format_date(self.date),
            "amount": format_amount(self.amount) if self.amount is not None else None,
        }
        if self.counterparty is not None:
            result["counterparty"] = self.counterparty
        if self.transfer_code is not None:
            result["transferCode"] = self.transfer_code
        if self.batch_id is not None:
            result["batchId"] = self.batch_id
        if self.claimed_by is not None:
            result["claimedBy"] = self.claimed_by
        if self.settles:
            result["settles"] = list(self.settles)
        if self.carried_forward:
            result["carriedForward"] = True
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Operation:
        """Deserialize from the ``to_dict`` shape."""
        amount = data.get("amount")
        return cls(
            transfer_id=data["transferId"],
            type=OperationType(data["type"]),
            status=OperationStatus(data["status"]),
            user=data["user"],
            date=parse_date(data["date"]),
            amount=Decimal(amount) if amount is not None else None,
            counterparty=data.get("counterparty"),
            transfer_code=data.get("transferCode"),
            batch_id=data.get("batchId"),
            claimed_by=data.get("claimedBy"),
            settles=tuple(data.get("settles", ())),
            carried_forward=bool(data.get("carriedForward", False)),
        )

    def __repr__(self) -> str:
        return (f"Operation(id={self.transfer_id[:8]}..., type={self.type.value}, "
                f"status={self.status.value}, amount={self.amount})")
