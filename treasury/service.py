"""
Treasury Service

Entry point for the transport layer.  Each public coroutine validates its
input before touching the ledger, records the operation through the state
machine, and returns the JSON-safe response body:

    list_operations  -> {page, page_size, operations}
    exchange_in      -> {transferId, transactionObject, operation}
    exchange_out     -> {transferId, transactionObject, operation}
    clearing         -> [{transferId, transactionObject}, ...]
    set_paid         -> {transferId, transactionObject}
    fee_payment      -> {transferId, transactionObject, operation}
    payment          -> {transferId, transactionObject, operation}
    confirm          -> operation

Errors are TreasuryException subclasses carrying an HTTP-equivalent
``status_code``.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional

from .chain.builder import CallKind, TransactionBuilder, TransactionObject
from .chain.context import ChainContextProvider
from .constants import MAX_ID_RETRIES, SETTLEMENT_UNIT
from .clearing.engine import ClearingEngine
from .exceptions import AlreadyClosedError, ClaimConflictError, DuplicateIdError, InvalidTransitionError
from .ledger.filters import Pagination, resolve_filter
from .ledger.operation import Operation, OperationStatus, OperationType
from .ledger.state_machine import OperationStateMachine
from .ledger.store import OperationStore
from .logger import get_logger
from .validation import parse_address, parse_amount, parse_text, require

logger = get_logger(__name__)


class TreasuryService:
    """Operation ledger, transaction builder and clearing behind one facade."""

    def __init__(
        self,
        store: OperationStore,
        builder: TransactionBuilder,
        chain: ChainContextProvider,
        state_machine: Optional[OperationStateMachine] = None,
        settlement_unit: Decimal = SETTLEMENT_UNIT,
        max_id_retries: int = MAX_ID_RETRIES,
    ):
        self.store = store
        self.builder = builder
        self.chain = chain
        self.state_machine = state_machine or OperationStateMachine()
        self.max_id_retries = max_id_retries
        self.clearing_engine = ClearingEngine(
            store, builder, chain, self.state_machine, settlement_unit=settlement_unit
        )

    async def close(self) -> None:
        await self.store.close()
        await self.chain.aclose()

    # =====================================================================
    #  Queries
    # =====================================================================

    async def list_operations(
        self,
        transfer_id: Optional[str] = None,
        type: Optional[str] = None,
        status: Optional[str] = None,
        user: Optional[str] = None,
        fromdate: Optional[str] = None,
        todate: Optional[str] = None,
        page: Any = None,
        page_size: Any = None,
    ) -> Dict[str, Any]:
        """
        Operations matching a single filter dimension, in date order.

        When several filters are supplied only the highest-priority one is
        applied (transferId > type > status > user > date range).
        """
        flt = resolve_filter(transfer_id, type, status, user, fromdate, todate)
        paging = Pagination.from_params(page, page_size)
        operations = await self.store.scan(flt, offset=paging.offset, limit=paging.limit)
        return {
            "page": paging.page,
            "page_size": len(operations),
            "operations": [op.to_dict() for op in operations],
        }

    async def get_operation(self, transfer_id: str) -> Dict[str, Any]:
        require("Must provide the transferId", transfer_id=transfer_id)
        return (await self.store.get(transfer_id)).to_dict()

    # =====================================================================
    #  Operation requests
    # =====================================================================

    async def _record(self, op: Operation) -> Operation:
        """Insert ``op``, retrying under a fresh id if the id collides."""
        for attempt in range(self.max_id_retries + 1):
            try:
                await self.store.put(op)
                logger.info(
                    f"Created {op.type.value} operation {op.transfer_id} "
                    f"for {op.user} ({op.status.value})"
                )
                return op
            except DuplicateIdError:
                if attempt == self.max_id_retries:
                    raise
                logger.warning(f"Transfer id {op.transfer_id} collided, retrying with a fresh id")
                op = self.state_machine.regenerate_id(op)
        raise DuplicateIdError(f"Transfer id {op.transfer_id} already exists")

    async def _create(
        self,
        op_type: OperationType,
        kind: CallKind,
        user: str,
        args: Dict[str, Any],
        amount: Optional[Decimal] = None,
        counterparty: Optional[str] = None,
    ) -> Dict[str, Any]:
        op = self.state_machine.create(op_type, user=user, amount=amount, counterparty=counterparty)
        context = await self.chain.snapshot(user)

        def build(record: Operation) -> TransactionObject:
            return self.builder.build(kind, user, {"transferId": record.transfer_id, **args}, context)

        # Build before writing so a rejected call leaves no ledger record
        tx = build(op)
        recorded = await self._record(op)
        if recorded.transfer_id != op.transfer_id:
            tx = build(recorded)
        return {
            "transferId": recorded.transfer_id,
            "transactionObject": tx.to_dict(),
            "operation": recorded.to_dict(),
        }

    async def exchange_in(self, user_address: Optional[str], tokens: Any) -> Dict[str, Any]:
        """A marketplace buys ``tokens`` for ``user_address``."""
        require("Must provide userAddress and tokens", user_address=user_address, tokens=tokens)
        user = parse_address(user_address, "userAddress")
        amount = parse_amount(tokens, "tokens", self.builder.token_decimals)

        return await self._create(
            OperationType.EXCHANGE_IN, CallKind.EXCHANGE_IN, user,
            {"user": user, "tokens": amount}, amount=amount,
        )

    async def exchange_out(
        self,
        sender_address: Optional[str],
        marketplace_address: Optional[str],
        tokens: Any = None,
    ) -> Dict[str, Any]:
        """``sender_address`` redeems its tokens at ``marketplace_address``."""
        require(
            "Must provide the senderAddress and marketplaceAddress",
            sender_address=sender_address, marketplace_address=marketplace_address,
        )
        sender = parse_address(sender_address, "senderAddress")
        marketplace = parse_address(marketplace_address, "marketplaceAddress")
        amount = parse_amount(tokens, "tokens", self.builder.token_decimals) if tokens is not None else None

        return await self._create(
            OperationType.EXCHANGE_OUT, CallKind.EXCHANGE_OUT, sender,
            {"marketplace": marketplace}, amount=amount, counterparty=marketplace,
        )

    async def fee_payment(
        self,
        sender_address: Optional[str],
        marketplace_address: Optional[str],
        fee_amount: Any,
    ) -> Dict[str, Any]:
        """``sender_address`` owes ``marketplace_address`` a fee; netted by clearing."""
        require(
            "Must provide senderAddress, marketplaceAddress and feeAmount",
            sender_address=sender_address, marketplace_address=marketplace_address, fee_amount=fee_amount,
        )
        sender = parse_address(sender_address, "senderAddress")
        marketplace = parse_address(marketplace_address, "marketplaceAddress")
        amount = parse_amount(fee_amount, "feeAmount", self.builder.token_decimals)

        return await self._create(
            OperationType.FEE_PAYMENT, CallKind.FEE_PAYMENT, sender,
            {"marketplace": marketplace, "fee": amount}, amount=amount, counterparty=marketplace,
        )

    async def payment(
        self,
        sender_address: Optional[str],
        recipient_address: Optional[str],
        amount: Any,
    ) -> Dict[str, Any]:
        """Fiat payout request; stays open until marked paid."""
        require(
            "Must provide senderAddress, recipientAddress and amount",
            sender_address=sender_address, recipient_address=recipient_address, amount=amount,
        )
        sender = parse_address(sender_address, "senderAddress")
        recipient = parse_address(recipient_address, "recipientAddress")
        value = parse_amount(amount, "amount", self.builder.token_decimals)

        return await self._create(
            OperationType.PAYMENT, CallKind.PAYMENT, sender,
            {"recipient": recipient, "amount": value}, amount=value, counterparty=recipient,
        )

    async def clearing(self) -> List[Dict[str, Any]]:
        """Net all open inter-marketplace debts; one entry per settlement transfer."""
        result = await self.clearing_engine.run()
        return result.to_list()

    # =====================================================================
    #  Lifecycle signals
    # =====================================================================

    @staticmethod
    def _ensure_not_claimed(op: Operation) -> None:
        if op.claimed_by is not None and op.status == OperationStatus.IN_PROGRESS:
            raise InvalidTransitionError(
                f"Operation {op.transfer_id} is being settled by clearing batch {op.claimed_by}"
            )

    @staticmethod
    def _settled_by_clearing(op: Operation) -> bool:
        """Debts that only a clearing settlement may close."""
        return op.type == OperationType.FEE_PAYMENT or (
            op.type == OperationType.CLEARING and op.carried_forward
        )

    async def _after_close(self, op: Operation) -> None:
        """A closed settlement transfer may complete its clearing batch."""
        if op.type == OperationType.CLEARING and op.batch_id and not op.carried_forward:
            await self.clearing_engine.complete_batch(op.batch_id)

    async def set_paid(
        self,
        sender_address: Optional[str],
        transfer_id: Optional[str],
        transfer_code: Optional[str],
    ) -> Dict[str, Any]:
        """Close an operation with the bank reference of its fiat payout."""
        require(
            "Must provide senderAddress, transferId and transferCode",
            sender_address=sender_address, transfer_id=transfer_id, transfer_code=transfer_code,
        )
        sender = parse_address(sender_address, "senderAddress")
        transfer_id = parse_text(transfer_id, "transferId")
        transfer_code = parse_text(transfer_code, "transferCode")

        op = await self.store.get(transfer_id)
        self._ensure_not_claimed(op)
        try:
            paid = self.state_machine.mark_paid(op, transfer_code)
        except AlreadyClosedError as e:
            logger.info(f"setPaid ignored: {e.message}")
            raise

        context = await self.chain.snapshot(sender)
        tx = self.builder.build(
            CallKind.SET_PAID, sender, {"transferId": transfer_id, "transferCode": transfer_code}, context
        )
        await self.store.swap(paid, expected=op.status)
        logger.info(f"Operation {transfer_id} marked paid ({transfer_code})")

        await self._after_close(paid)
        return {"transferId": transfer_id, "transactionObject": tx.to_dict()}

    async def confirm(self, transfer_id: Optional[str]) -> Dict[str, Any]:
        """
        On-chain confirmation signal for an operation.

        Repeated confirmations are no-ops returning the closed operation.
        Confirming a clearing transfer may complete its batch and close the
        obligations it settled.

        A fee payment's transaction only registers the debt on chain; the
        debt itself is paid by a clearing settlement.  Its confirmation is
        acknowledged and the obligation is left for clearing to close.
        """
        require("Must provide the transferId", transfer_id=transfer_id)
        op = await self.store.get(transfer_id)

        if self._settled_by_clearing(op):
            logger.info(
                f"Confirmation acknowledged: {op.type.value} {transfer_id} "
                f"is settled by clearing ({op.status.value})"
            )
            return op.to_dict()

        self._ensure_not_claimed(op)
        try:
            closed = self.state_machine.close(op)
        except AlreadyClosedError as e:
            logger.info(f"Confirmation ignored: {e.message}")
            # A retried signal finishes a batch whose completion was missed
            await self._after_close(op)
            return op.to_dict()

        try:
            await self.store.swap(closed, expected=op.status)
        except ClaimConflictError:
            current = await self.store.get(transfer_id)
            if not current.is_closed:
                raise
            logger.info(f"Confirmation ignored: operation {transfer_id} closed concurrently")
            await self._after_close(current)
            return current.to_dict()
        logger.info(f"Operation {transfer_id} confirmed ({op.status.value} -> closed)")

        await self._after_close(closed)
        return closed.to_dict()
