"""
Test suite for the Clearing Engine

Covers:
  - Netting open obligations into settlement transfers
  - Atomic claim of source obligations
  - Settlement remainders carried forward
  - Idempotent and concurrent passes
  - Batch completion
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from eth_abi import decode
from eth_utils import to_checksum_address

from treasury.chain.builder import CONTRACT_CALLS, CallKind, TransactionBuilder
from treasury.chain.context import StaticChainContextProvider
from treasury.clearing.engine import ClearingEngine
from treasury.exceptions import ChainContextError, ClaimConflictError
from treasury.ledger.operation import Operation, OperationStatus, OperationType
from treasury.ledger.store import InMemoryOperationStore


CONTRACT = to_checksum_address("0x" + "1" * 40)
A = to_checksum_address("0x" + "a" * 40)
B = to_checksum_address("0x" + "b" * 40)
C = to_checksum_address("0x" + "c" * 40)
BASE_DATE = datetime(2024, 1, 1, tzinfo=timezone.utc)


def fee(transfer_id, payer, payee, amount, minutes=0):
    return Operation(
        transfer_id=transfer_id,
        type=OperationType.FEE_PAYMENT,
        status=OperationStatus.OPEN,
        user=payer,
        date=BASE_DATE + timedelta(minutes=minutes),
        amount=Decimal(amount),
        counterparty=payee,
    )


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def store():
    return InMemoryOperationStore()


@pytest.fixture
def chain():
    return StaticChainContextProvider(chain_id=10, gas_price=5, nonce=3)


@pytest.fixture
def engine(store, chain):
    return ClearingEngine(store, TransactionBuilder(CONTRACT), chain)


async def seed(store, *ops):
    for op in ops:
        await store.put(op)


async def statuses(store, *ids):
    return [(await store.get(i)).status for i in ids]


# =============================================================================
# CLEARING PASS
# =============================================================================

class TestClearingPass:

    @pytest.mark.asyncio
    async def test_no_obligations(self, engine):
        result = await engine.run()
        assert result.is_empty
        assert result.to_list() == []

    @pytest.mark.asyncio
    async def test_cycle_settles_with_one_transfer(self, engine, store):
        await seed(store, fee("ab", A, B, "30"), fee("bc", B, C, "30", 1), fee("ca", C, A, "10", 2))

        result = await engine.run()

        assert len(result.settlements) == 1
        settlement = result.settlements[0]
        assert settlement.type == OperationType.CLEARING
        assert settlement.status == OperationStatus.IN_PROGRESS
        assert settlement.user == A
        assert settlement.counterparty == C
        assert settlement.amount == Decimal("20")
        assert settlement.batch_id == result.batch_id
        assert set(settlement.settles) == {"ab", "bc", "ca"}

        stored = await store.get(settlement.transfer_id)
        assert stored == settlement

        for transfer_id in ("ab", "bc", "ca"):
            source = await store.get(transfer_id)
            assert source.status == OperationStatus.IN_PROGRESS
            assert source.claimed_by == result.batch_id

    @pytest.mark.asyncio
    async def test_transaction_descriptor(self, engine, store):
        await seed(store, fee("ab", A, B, "12.5"))

        result = await engine.run()
        [entry] = result.to_list()
        tx = entry["transactionObject"]

        assert entry["transferId"] == result.settlements[0].transfer_id
        assert tx["from"] == A
        assert tx["to"] == CONTRACT
        assert tx["chainId"] == 10
        assert tx["nonce"] == 3
        data = bytes.fromhex(tx["data"][2:])
        assert data[:4] == CONTRACT_CALLS[CallKind.CLEARING].selector
        transfer_id, creditor, amount = decode(["string", "address", "uint256"], data[4:])
        assert transfer_id == entry["transferId"]
        assert to_checksum_address(creditor) == B
        assert amount == 12_500_000_000_000_000_000

    @pytest.mark.asyncio
    async def test_same_debtor_gets_consecutive_nonces(self, engine, store):
        await seed(store, fee("ab", A, B, "10"), fee("ac", A, C, "5", 1))

        result = await engine.run()

        assert [tx.sender for tx in result.transactions] == [A, A]
        assert [tx.nonce for tx in result.transactions] == [3, 4]

    @pytest.mark.asyncio
    async def test_rerun_finds_nothing(self, engine, store):
        await seed(store, fee("ab", A, B, "30"))

        first = await engine.run()
        second = await engine.run()

        assert len(first.settlements) == 1
        assert second.is_empty
        assert len(store) == 2

    @pytest.mark.asyncio
    async def test_exact_cancellation_closes_sources(self, engine, store):
        await seed(store, fee("ab", A, B, "10"), fee("ba", B, A, "10", 1))

        result = await engine.run()

        assert result.settlements == []
        assert result.to_list() == []
        assert not result.is_empty
        assert await statuses(store, "ab", "ba") == [OperationStatus.CLOSED] * 2
        assert (await store.get("ab")).claimed_by == result.batch_id

    @pytest.mark.asyncio
    async def test_in_progress_and_closed_are_ignored(self, engine, store):
        await seed(
            store,
            fee("open", A, B, "4"),
            fee("busy", A, B, "100").evolve(status=OperationStatus.IN_PROGRESS),
            fee("done", B, A, "100").evolve(status=OperationStatus.CLOSED),
        )

        result = await engine.run()

        assert [s.amount for s in result.settlements] == [Decimal("4")]
        assert result.settlements[0].settles == ("open",)


# =============================================================================
# REMAINDERS
# =============================================================================

class TestRemainders:

    @pytest.mark.asyncio
    async def test_remainder_carried_forward(self, engine, store):
        await seed(store, fee("ab", A, B, "10.005"))

        result = await engine.run()

        assert result.settlements[0].amount == Decimal("10.00")
        [carry] = result.remainders
        assert carry.amount == Decimal("0.005")
        assert carry.status == OperationStatus.OPEN
        assert carry.carried_forward
        assert (carry.user, carry.counterparty) == (A, B)
        assert (await store.get(carry.transfer_id)).is_obligation

    @pytest.mark.asyncio
    async def test_sub_unit_balance_is_a_no_op(self, engine, store):
        await seed(store, fee("ab", A, B, "0.004"))

        result = await engine.run()

        assert result.is_empty
        assert len(store) == 1
        assert await statuses(store, "ab") == [OperationStatus.OPEN]

    @pytest.mark.asyncio
    async def test_remainder_joins_next_pass(self, engine, store):
        await seed(store, fee("ab", A, B, "10.005"))
        first = await engine.run()
        carry = first.remainders[0]

        await seed(store, fee("ab2", A, B, "1.005", 5))
        second = await engine.run()

        assert second.settlements[0].amount == Decimal("1.01")
        assert set(second.settlements[0].settles) == {carry.transfer_id, "ab2"}
        assert second.remainders == []

    @pytest.mark.asyncio
    async def test_custom_settlement_unit(self, store, chain):
        engine = ClearingEngine(store, TransactionBuilder(CONTRACT), chain, settlement_unit=Decimal("1"))
        await seed(store, fee("ab", A, B, "7.9"))

        result = await engine.run()

        assert result.settlements[0].amount == Decimal("7")
        assert result.remainders[0].amount == Decimal("0.9")


# =============================================================================
# FAILURE AND CONCURRENCY
# =============================================================================

class TestAtomicity:

    @pytest.mark.asyncio
    async def test_chain_failure_leaves_ledger_untouched(self, store, chain):
        chain.snapshot = AsyncMock(side_effect=ChainContextError("node down"))
        engine = ClearingEngine(store, TransactionBuilder(CONTRACT), chain)
        await seed(store, fee("ab", A, B, "10"), fee("bc", B, C, "4", 1))

        with pytest.raises(ChainContextError):
            await engine.run()

        assert len(store) == 2
        assert await statuses(store, "ab", "bc") == [OperationStatus.OPEN] * 2

    @pytest.mark.asyncio
    async def test_concurrent_passes_claim_once(self, engine, store):
        await seed(store, fee("ab", A, B, "10"), fee("bc", B, C, "4", 1))

        results = await asyncio.gather(engine.run(), engine.run(), return_exceptions=True)

        settled = [r for r in results if not isinstance(r, Exception) and r.settlements]
        assert len(settled) == 1
        for r in results:
            if isinstance(r, Exception):
                assert isinstance(r, ClaimConflictError)
            elif r is not settled[0]:
                assert r.is_empty

        clearing_ops = [op for op in await store.scan() if op.type == OperationType.CLEARING]
        assert len(clearing_ops) == len(settled[0].settlements)
        for transfer_id in ("ab", "bc"):
            assert (await store.get(transfer_id)).claimed_by == settled[0].batch_id

    @pytest.mark.asyncio
    async def test_claim_race_aborts_whole_batch(self, engine, store):
        await seed(store, fee("ab", A, B, "10"), fee("bc", B, C, "4", 1))
        real_snapshot = engine.chain.snapshot

        async def snapshot_then_close(address):
            # Another writer settles one obligation mid-pass
            op = await store.get("bc")
            if op.status == OperationStatus.OPEN:
                await store.swap(op.evolve(status=OperationStatus.CLOSED), expected=OperationStatus.OPEN)
            return await real_snapshot(address)

        engine.chain.snapshot = snapshot_then_close

        with pytest.raises(ClaimConflictError):
            await engine.run()

        assert await statuses(store, "ab") == [OperationStatus.OPEN]
        assert len(store) == 2


# =============================================================================
# BATCH COMPLETION
# =============================================================================

class TestCompleteBatch:

    @pytest.mark.asyncio
    async def test_pending_settlements_keep_sources_claimed(self, engine, store):
        await seed(store, fee("ab", A, B, "10"), fee("ac", A, C, "5", 1))
        result = await engine.run()

        first = result.settlements[0]
        await store.swap(first.evolve(status=OperationStatus.CLOSED), expected=OperationStatus.IN_PROGRESS)

        assert await engine.complete_batch(result.batch_id) == []
        assert await statuses(store, "ab", "ac") == [OperationStatus.IN_PROGRESS] * 2

    @pytest.mark.asyncio
    async def test_all_settlements_closed_closes_sources(self, engine, store):
        await seed(store, fee("ab", A, B, "10.005"))
        result = await engine.run()

        settlement = result.settlements[0]
        await store.swap(settlement.evolve(status=OperationStatus.CLOSED), expected=OperationStatus.IN_PROGRESS)

        closed = await engine.complete_batch(result.batch_id)

        assert [op.transfer_id for op in closed] == ["ab"]
        assert await statuses(store, "ab") == [OperationStatus.CLOSED]
        # The carried remainder is not part of the batch's settlements
        assert (await store.get(result.remainders[0].transfer_id)).status == OperationStatus.OPEN

    @pytest.mark.asyncio
    async def test_complete_batch_twice(self, engine, store):
        await seed(store, fee("ab", A, B, "10"))
        result = await engine.run()
        settlement = result.settlements[0]
        await store.swap(settlement.evolve(status=OperationStatus.CLOSED), expected=OperationStatus.IN_PROGRESS)

        assert len(await engine.complete_batch(result.batch_id)) == 1
        assert await engine.complete_batch(result.batch_id) == []
