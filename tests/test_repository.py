"""Tests for swap repositories."""

import pytest

from arkswap.storage.repository import InMemorySwapRepository, SqlSwapRepository, SwapRecordStore
from arkswap.swap.models import PendingChainSwap, PendingReverseSwap, PendingSubmarineSwap
from arkswap.swap.orchestrator import SwapOrchestrator
from arkswap.swap.status import SwapStatus, SwapType


@pytest.fixture(params=["memory", "sql"])
def repository(request, session_factory):
    if request.param == "memory":
        return InMemorySwapRepository()
    return SqlSwapRepository(session_factory)


@pytest.fixture
def orchestrator(wallet, ark_provider, indexer, swap_provider, repository) -> SwapOrchestrator:
    return SwapOrchestrator(wallet, ark_provider, indexer, swap_provider, repository)


class TestSwapRepository:
    """Tests shared by every repository backend."""

    @pytest.mark.asyncio
    async def test_round_trip_keeps_type(self, orchestrator, repository, preimage_hash, invoice_factory):
        reverse = await orchestrator.create_reverse_swap(1000)
        submarine = await orchestrator.create_submarine_swap(invoice_factory(500, preimage_hash))
        chain = await orchestrator.create_chain_swap(
            "ARK", "BTC", "tark1dest", sender_lock_amount=30_000
        )

        loaded_reverse = await repository.get_swap(reverse.id)
        loaded_submarine = await repository.get_swap(submarine.id)
        loaded_chain = await repository.get_swap(chain.id)

        assert isinstance(loaded_reverse, PendingReverseSwap)
        assert loaded_reverse.preimage == reverse.preimage
        assert isinstance(loaded_submarine, PendingSubmarineSwap)
        assert loaded_submarine.preimage_hash == preimage_hash
        assert isinstance(loaded_chain, PendingChainSwap)
        assert loaded_chain.from_ == "BTC"
        assert loaded_chain.ephemeral_key == chain.ephemeral_key

    @pytest.mark.asyncio
    async def test_save_replaces(self, orchestrator, repository):
        swap = await orchestrator.create_reverse_swap(1000)
        swap.status = SwapStatus.TRANSACTION_MEMPOOL
        swap.refundable = True
        await repository.save_swap(swap)

        loaded = await repository.get_swap(swap.id)
        assert loaded.status == SwapStatus.TRANSACTION_MEMPOOL
        assert loaded.refundable
        assert len(await repository.get_all_swaps()) == 1

    @pytest.mark.asyncio
    async def test_filter_by_type(self, orchestrator, repository, preimage_hash, invoice_factory):
        await orchestrator.create_reverse_swap(1000)
        await orchestrator.create_reverse_swap(2000)
        await orchestrator.create_submarine_swap(invoice_factory(500, preimage_hash))

        assert len(await repository.get_all_swaps(SwapType.REVERSE)) == 2
        assert len(await repository.get_all_swaps(SwapType.SUBMARINE)) == 1
        assert await repository.get_all_swaps(SwapType.CHAIN) == []
        assert len(await repository.get_all_swaps()) == 3

    @pytest.mark.asyncio
    async def test_missing_swap(self, repository):
        assert await repository.get_swap("missing") is None

    @pytest.mark.asyncio
    async def test_returns_copies(self, orchestrator, repository):
        swap = await orchestrator.create_reverse_swap(1000)
        loaded = await repository.get_swap(swap.id)
        loaded.status = SwapStatus.INVOICE_SETTLED

        assert (await repository.get_swap(swap.id)).status == SwapStatus.SWAP_CREATED


class TestSwapRecordStore:
    """Tests for the row level store."""

    @pytest.mark.asyncio
    async def test_indexed_columns(self, wallet, ark_provider, indexer, swap_provider, db_session):
        orchestrator = SwapOrchestrator(wallet, ark_provider, indexer, swap_provider)
        swap = await orchestrator.create_reverse_swap(1000)
        store = SwapRecordStore(db_session)

        record = await store.upsert(swap)
        await db_session.commit()

        assert record.type == "reverse"
        assert record.status == "swap.created"
        assert record.created_at == swap.created_at
        assert [r.id for r in await store.list(SwapType.REVERSE)] == [swap.id]
