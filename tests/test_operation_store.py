"""
Test suite for the Operation Store

Covers:
  - Operation model serialization
  - In-memory store: uniqueness, read-after-write, ordering
  - Compare-and-swap replacement and atomic multi-record commits
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from eth_utils import to_checksum_address

from treasury.exceptions import ClaimConflictError, DuplicateIdError, NotFoundError
from treasury.ledger.filters import ByStatus, ScanOrder
from treasury.ledger.operation import Operation, OperationStatus, OperationType, format_date, parse_date
from treasury.ledger.store import InMemoryOperationStore


USER = to_checksum_address("0x" + "a" * 40)
MARKET = to_checksum_address("0x" + "b" * 40)
BASE_DATE = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_op(transfer_id, minutes=0, status=OperationStatus.OPEN, op_type=OperationType.EXCHANGE_IN, **kw):
    return Operation(
        transfer_id=transfer_id,
        type=op_type,
        status=status,
        user=kw.pop("user", USER),
        date=BASE_DATE + timedelta(minutes=minutes),
        amount=kw.pop("amount", Decimal("10")),
        **kw,
    )


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def store():
    return InMemoryOperationStore()


# =============================================================================
# OPERATION MODEL
# =============================================================================

class TestOperation:
    """Operation record serialization and derived properties."""

    def test_to_dict_wire_shape(self):
        op = make_op("op-1", amount=Decimal("12.50"), counterparty=MARKET)
        data = op.to_dict()

        assert data["transferId"] == "op-1"
        assert data["type"] == "exchange_in"
        assert data["status"] == "open"
        assert data["user"] == USER
        assert data["date"] == "2024-01-01T00:00:00.000Z"
        assert data["amount"] == "12.50"
        assert data["counterparty"] == MARKET
        assert "transferCode" not in data
        assert "settles" not in data

    def test_from_dict_restores_clearing_fields(self):
        op = make_op(
            "op-2",
            op_type=OperationType.CLEARING,
            status=OperationStatus.IN_PROGRESS,
            counterparty=MARKET,
            batch_id="batch-1",
            settles=("a", "b"),
        )
        assert Operation.from_dict(op.to_dict()) == op

    def test_parse_date_accepts_z_and_naive(self):
        assert parse_date("2024-01-01T00:00:00Z") == BASE_DATE
        assert parse_date("2024-01-01T00:00:00") == BASE_DATE
        assert parse_date("2024-01-01T01:00:00+01:00") == BASE_DATE

    def test_format_date_keeps_milliseconds(self):
        value = BASE_DATE + timedelta(microseconds=123456)
        assert format_date(value) == "2024-01-01T00:00:00.123Z"

    def test_is_obligation(self):
        fee = make_op("f", op_type=OperationType.FEE_PAYMENT, counterparty=MARKET)
        assert fee.is_obligation
        assert not fee.evolve(status=OperationStatus.IN_PROGRESS).is_obligation
        assert not fee.evolve(counterparty=None).is_obligation
        assert not make_op("x", op_type=OperationType.EXCHANGE_OUT, counterparty=MARKET).is_obligation


# =============================================================================
# BASIC STORE CONTRACT
# =============================================================================

class TestInMemoryStore:
    """put / get / scan."""

    @pytest.mark.asyncio
    async def test_put_then_get(self, store):
        op = make_op("op-1")
        await store.put(op)
        assert await store.get("op-1") == op
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, store):
        await store.put(make_op("op-1"))
        with pytest.raises(DuplicateIdError):
            await store.put(make_op("op-1", minutes=5))
        assert (await store.get("op-1")).date == BASE_DATE

    @pytest.mark.asyncio
    async def test_get_unknown_raises(self, store):
        with pytest.raises(NotFoundError):
            await store.get("missing")

    @pytest.mark.asyncio
    async def test_scan_orders_by_date_then_id(self, store):
        await store.put(make_op("c", minutes=2))
        await store.put(make_op("b", minutes=1))
        await store.put(make_op("a", minutes=1))

        ops = await store.scan()
        assert [op.transfer_id for op in ops] == ["a", "b", "c"]

        ops = await store.scan(order=ScanOrder.DESCENDING)
        assert [op.transfer_id for op in ops] == ["c", "b", "a"]

    @pytest.mark.asyncio
    async def test_scan_offset_limit(self, store):
        for i in range(5):
            await store.put(make_op(f"op-{i}", minutes=i))

        ops = await store.scan(offset=1, limit=2)
        assert [op.transfer_id for op in ops] == ["op-1", "op-2"]

        ops = await store.scan(offset=4, limit=10)
        assert [op.transfer_id for op in ops] == ["op-4"]

    @pytest.mark.asyncio
    async def test_scan_with_filter(self, store):
        await store.put(make_op("open"))
        await store.put(make_op("closed", status=OperationStatus.CLOSED))

        ops = await store.scan(ByStatus(OperationStatus.CLOSED))
        assert [op.transfer_id for op in ops] == ["closed"]


# =============================================================================
# COMPARE-AND-SWAP
# =============================================================================

class TestCompareAndSwap:
    """Status-keyed replacement and atomic commits."""

    @pytest.mark.asyncio
    async def test_swap_succeeds_on_expected_status(self, store):
        op = make_op("op-1")
        await store.put(op)

        await store.swap(op.evolve(status=OperationStatus.CLOSED), expected=OperationStatus.OPEN)
        assert (await store.get("op-1")).status == OperationStatus.CLOSED

    @pytest.mark.asyncio
    async def test_swap_conflict_when_status_changed(self, store):
        op = make_op("op-1", status=OperationStatus.CLOSED)
        await store.put(op)

        with pytest.raises(ClaimConflictError):
            await store.swap(op.evolve(status=OperationStatus.IN_PROGRESS), expected=OperationStatus.OPEN)
        assert (await store.get("op-1")).status == OperationStatus.CLOSED

    @pytest.mark.asyncio
    async def test_swap_unknown_record(self, store):
        with pytest.raises(NotFoundError):
            await store.swap(make_op("ghost"), expected=OperationStatus.OPEN)

    @pytest.mark.asyncio
    async def test_commit_is_all_or_nothing(self, store):
        first = make_op("first")
        second = make_op("second", status=OperationStatus.CLOSED)
        await store.put(first)
        await store.put(second)

        with pytest.raises(ClaimConflictError):
            await store.commit(
                swaps=[
                    (first.evolve(status=OperationStatus.IN_PROGRESS), OperationStatus.OPEN),
                    (second.evolve(status=OperationStatus.IN_PROGRESS), OperationStatus.OPEN),
                ],
                inserts=[make_op("new")],
            )

        assert (await store.get("first")).status == OperationStatus.OPEN
        with pytest.raises(NotFoundError):
            await store.get("new")

    @pytest.mark.asyncio
    async def test_commit_rejects_duplicate_inserts(self, store):
        with pytest.raises(DuplicateIdError):
            await store.commit(inserts=[make_op("dup"), make_op("dup", minutes=1)])
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_concurrent_swaps_single_winner(self, store):
        op = make_op("op-1")
        await store.put(op)

        async def claim(batch):
            await store.swap(
                op.evolve(status=OperationStatus.IN_PROGRESS, claimed_by=batch),
                expected=OperationStatus.OPEN,
            )
            return batch

        results = await asyncio.gather(claim("one"), claim("two"), return_exceptions=True)

        winners = [r for r in results if isinstance(r, str)]
        losers = [r for r in results if isinstance(r, ClaimConflictError)]
        assert len(winners) == 1 and len(losers) == 1
        assert (await store.get("op-1")).claimed_by == winners[0]
