"""
Operation State Machine

The only place that decides operation status.  Every transition returns a
new Operation version; persisting it is the caller's job, through a
compare-and-swap on the status the transition started from.

    create ──► open ──────────────► closed
                 │                    ▲
                 └──► in_progress ────┘

Clearing operations start ``in_progress`` because they settle over several
steps.  A ``closed`` operation is terminal: any transition attempt raises
AlreadyClosedError and changes nothing, which keeps retried confirmation
signals idempotent.
"""

import uuid
from decimal import Decimal
from typing import Callable, Dict, Iterable, Optional

from ..exceptions import AlreadyClosedError, InvalidTransitionError, MissingParameterError
from ..logger import get_logger
from .operation import Operation, OperationStatus, OperationType, utcnow

logger = get_logger(__name__)

INITIAL_STATUS: Dict[OperationType, OperationStatus] = {
    OperationType.EXCHANGE_IN: OperationStatus.OPEN,
    OperationType.EXCHANGE_OUT: OperationStatus.OPEN,
    OperationType.PAYMENT: OperationStatus.OPEN,
    OperationType.FEE_PAYMENT: OperationStatus.OPEN,
    OperationType.CLEARING: OperationStatus.IN_PROGRESS,
}


def new_transfer_id() -> str:
    return str(uuid.uuid4())


class OperationStateMachine:
    """Creates operations and applies the legal lifecycle transitions."""

    def __init__(self, id_factory: Callable[[], str] = new_transfer_id):
        self._id_factory = id_factory

    def create(
        self,
        op_type: OperationType,
        user: str,
        amount: Optional[Decimal] = None,
        counterparty: Optional[str] = None,
        batch_id: Optional[str] = None,
        settles: Iterable[str] = (),
    ) -> Operation:
        """New operation in the initial status of its type, with a fresh id."""
        return Operation(
            transfer_id=self._id_factory(),
            type=op_type,
            status=INITIAL_STATUS[op_type],
            user=user,
            date=utcnow(),
            amount=amount,
            counterparty=counterparty,
            batch_id=batch_id,
            settles=tuple(settles),
        )

    def carry_forward(self, debtor: str, creditor: str, amount: Decimal, batch_id: str) -> Operation:
        """
        Open clearing obligation holding a settlement remainder.

        It stays ``open`` so the next clearing pass nets it again.
        """
        return Operation(
            transfer_id=self._id_factory(),
            type=OperationType.CLEARING,
            status=OperationStatus.OPEN,
            user=debtor,
            date=utcnow(),
            amount=amount,
            counterparty=creditor,
            batch_id=batch_id,
            carried_forward=True,
        )

    def regenerate_id(self, op: Operation) -> Operation:
        """Same operation under a fresh transfer id, for retrying a collision."""
        return op.evolve(transfer_id=self._id_factory())

    # -- Transitions --------------------------------------------------------

    @staticmethod
    def _ensure_not_closed(op: Operation) -> None:
        if op.is_closed:
            raise AlreadyClosedError(op.transfer_id)

    def claim(self, op: Operation, batch_id: str) -> Operation:
        """``open → in_progress``: hand an obligation to a clearing pass."""
        self._ensure_not_closed(op)
        if op.status != OperationStatus.OPEN:
            raise InvalidTransitionError(
                f"Operation {op.transfer_id} is {op.status.value}; only open operations can be claimed"
            )
        logger.debug(f"Claiming {op.transfer_id} for clearing batch {batch_id}")
        return op.evolve(status=OperationStatus.IN_PROGRESS, claimed_by=batch_id)

    def close(self, op: Operation, transfer_code: Optional[str] = None) -> Operation:
        """``open | in_progress → closed``."""
        self._ensure_not_closed(op)
        logger.debug(f"Closing {op.transfer_id} ({op.status.value} -> closed)")
        changes = {"status": OperationStatus.CLOSED}
        if transfer_code is not None:
            changes["transfer_code"] = transfer_code
        return op.evolve(**changes)

    def mark_paid(self, op: Operation, transfer_code: str) -> Operation:
        """Close with the bank transfer reference of the fiat payout."""
        if not transfer_code or not transfer_code.strip():
            raise MissingParameterError("Must provide a transferCode to mark an operation paid")
        return self.close(op, transfer_code=transfer_code.strip())
