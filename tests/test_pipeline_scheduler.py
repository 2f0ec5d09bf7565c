"""
Tests for the ingestion pipeline and the poll scheduler.

============================================================
PURPOSE
============================================================
Verify one fetch → dedup → persist → checkpoint → notify cycle
and the scheduling rules around it:
- adapter failures skip the wallet and leave state untouched
- rate limits are retried, then skipped
- only newly inserted records are dispatched
- ticks run wallets sequentially and isolate failures
- the resync sweep covers every stored wallet

============================================================
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from activity_engine.checkpoint import CheckpointStore
from activity_engine.dedup import TransactionDeduplicator
from activity_engine.pipeline import CycleReason, CycleStatus, IngestionPipeline
from activity_engine.registry import MonitorRegistry
from activity_engine.scheduler import PollScheduler
from activity_engine.seen import BoundedSeenSet
from chain_adapters.exceptions import AdapterUnavailableError, RateLimitedError
from chain_adapters.models import Chain, FetchResult
from chain_adapters.retry import RetryPolicy
from notifications.dispatcher import NotificationDispatcher

from tests.factories import ETH_WALLET, WEBHOOK, RecordingSink, make_tx, ts_ms


OTHER_WALLET = "0x" + "c" * 40


@pytest.fixture
def registry():
    return MonitorRegistry()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def pipeline(adapters, store, registry, sink):
    """Pipeline with instant retries."""
    policy = RetryPolicy(max_attempts=3, base_delay=0.0, sleep=AsyncMock())
    return IngestionPipeline(
        adapters=adapters,
        deduplicator=TransactionDeduplicator(store),
        checkpoints=CheckpointStore(store),
        dispatcher=NotificationDispatcher(registry, sink),
        retry_policies={Chain.ETH: policy, Chain.SOL: policy},
    )


# ============================================================
# PIPELINE
# ============================================================

class TestIngestionPipeline:
    """Tests for IngestionPipeline.run_cycle."""

    @pytest.mark.asyncio
    async def test_cycle_persists_dispatches_and_checkpoints(
        self, pipeline, eth_adapter, store, registry, sink
    ):
        """New records are stored, alerted once and advance the checkpoint."""
        registry.add(ETH_WALLET, Chain.ETH, WEBHOOK)
        eth_adapter.add_records(make_tx("0x1", seconds=1), make_tx("0x2", seconds=2))

        result = await pipeline.run_cycle(ETH_WALLET, Chain.ETH)

        assert result.ok
        assert len(result.inserted) == 2
        assert result.checkpoint == ts_ms(2)
        assert len(sink.records) == 2
        assert len(await store.list_transactions()) == 2

    @pytest.mark.asyncio
    async def test_second_cycle_uses_checkpoint(self, pipeline, eth_adapter, registry, sink):
        """The next fetch starts after the committed checkpoint."""
        registry.add(ETH_WALLET, Chain.ETH, WEBHOOK)
        eth_adapter.add_records(make_tx("0x1", seconds=1))

        await pipeline.run_cycle(ETH_WALLET, Chain.ETH)
        result = await pipeline.run_cycle(ETH_WALLET, Chain.ETH)

        assert eth_adapter.checkpoints_seen == [None, ts_ms(1)]
        assert result.inserted == []
        assert len(sink.batches) == 1

    @pytest.mark.asyncio
    async def test_balance_recorded(self, pipeline, eth_adapter, store):
        """The fetched balance is stored with the wallet state."""
        eth_adapter.set_balance(ETH_WALLET, "12.5", "30000")

        await pipeline.run_cycle(ETH_WALLET, Chain.ETH)

        state = await store.get_wallet_state(ETH_WALLET, Chain.ETH)
        assert state.balance == "12.5"
        assert state.value_in_quote == "30000"

    @pytest.mark.asyncio
    async def test_unavailable_leaves_state_untouched(self, pipeline, eth_adapter, store):
        """An adapter outage skips the cycle without persisting anything."""
        eth_adapter.add_records(make_tx())
        eth_adapter.fail_next("fetch_transactions_since", AdapterUnavailableError("down"))

        result = await pipeline.run_cycle(ETH_WALLET, Chain.ETH)

        assert result.status == CycleStatus.UNAVAILABLE
        assert await store.get_wallet_state(ETH_WALLET, Chain.ETH) is None
        assert await store.list_transactions() == []

    @pytest.mark.asyncio
    async def test_rate_limit_retried(self, pipeline, eth_adapter):
        """Transient rate limits are retried within the cycle."""
        eth_adapter.add_records(make_tx())
        eth_adapter.fail_next("fetch_transactions_since", RateLimitedError("429"), times=2)

        result = await pipeline.run_cycle(ETH_WALLET, Chain.ETH)

        assert result.ok
        assert len(result.inserted) == 1
        assert eth_adapter.calls["fetch_transactions_since"] == 3

    @pytest.mark.asyncio
    async def test_rate_limit_exhausted_skips(self, pipeline, eth_adapter, store):
        """Exhausted retries skip the wallet for this cycle."""
        eth_adapter.fail_next("fetch_balance", RateLimitedError("429"), times=3)

        result = await pipeline.run_cycle(ETH_WALLET, Chain.ETH)

        assert result.status == CycleStatus.RATE_LIMITED
        assert await store.get_wallet_state(ETH_WALLET, Chain.ETH) is None

    @pytest.mark.asyncio
    async def test_storage_failure_keeps_checkpoint(self, pipeline, eth_adapter, store, sink, registry):
        """A failed insert neither advances the checkpoint nor alerts."""
        registry.add(ETH_WALLET, Chain.ETH, WEBHOOK)
        eth_adapter.add_records(make_tx())
        store.fail_next_insert()

        result = await pipeline.run_cycle(ETH_WALLET, Chain.ETH)

        assert result.status == CycleStatus.FAILED
        assert await store.get_wallet_state(ETH_WALLET, Chain.ETH) is None
        assert sink.batches == []

        retry = await pipeline.run_cycle(ETH_WALLET, Chain.ETH)
        assert len(retry.inserted) == 1

    @pytest.mark.asyncio
    async def test_partial_failure_refetched(self, pipeline, eth_adapter, store):
        """A record that failed to persist is picked up by the next cycle."""
        bad = make_tx("0x2", seconds=2)
        eth_adapter.add_records(make_tx("0x1", seconds=1), bad, make_tx("0x3", seconds=3))
        store.fail_keys.add(bad.dedup_key)

        first = await pipeline.run_cycle(ETH_WALLET, Chain.ETH)
        assert first.checkpoint == ts_ms(2) - 1

        store.fail_keys.clear()
        second = await pipeline.run_cycle(ETH_WALLET, Chain.ETH)

        assert [r.tx_hash for r in second.inserted] == ["0x2"]
        assert second.checkpoint == ts_ms(3)

    @pytest.mark.asyncio
    async def test_records_at_or_before_checkpoint_dropped(self, pipeline, eth_adapter, store):
        """Out-of-contract records from an adapter are ignored."""
        await store.record_fetch(ETH_WALLET, Chain.ETH, None, make_tx().timestamp, ts_ms(5))
        # Bypass the mock's own filtering
        eth_adapter.fetch_transactions_since = AsyncMock(
            return_value=FetchResult(records=[make_tx("0xOLD", seconds=1)])
        )

        result = await pipeline.run_cycle(ETH_WALLET, Chain.ETH)

        assert result.fetched == 0
        assert await store.list_transactions() == []
        assert pipeline.get_stats()["out_of_range_dropped"] == 1

    @pytest.mark.asyncio
    async def test_notify_false_persists_silently(self, pipeline, eth_adapter, registry, sink):
        """Priming cycles store records without alerts."""
        registry.add(ETH_WALLET, Chain.ETH, WEBHOOK)
        eth_adapter.add_records(make_tx())

        result = await pipeline.run_cycle(
            ETH_WALLET, Chain.ETH, reason=CycleReason.PRIME, notify=False
        )

        assert len(result.inserted) == 1
        assert result.dispatch is None
        assert sink.batches == []

    @pytest.mark.asyncio
    async def test_seen_set_skips_known_records(self, pipeline, eth_adapter):
        """Records already in the seen-set are not re-probed."""
        record = make_tx()
        eth_adapter.add_records(record)
        seen = BoundedSeenSet(10)
        seen.add(record.dedup_key)

        result = await pipeline.run_cycle(ETH_WALLET, Chain.ETH, seen=seen)

        assert result.skipped_seen == 1
        assert result.inserted == []

    @pytest.mark.asyncio
    async def test_seen_set_filled_after_insert(self, pipeline, eth_adapter):
        """Inserted keys are remembered in the seen-set."""
        record = make_tx()
        eth_adapter.add_records(record)
        seen = BoundedSeenSet(10)

        await pipeline.run_cycle(ETH_WALLET, Chain.ETH, seen=seen)

        assert record.dedup_key in seen

    @pytest.mark.asyncio
    async def test_unmonitored_wallet_not_alerted(self, pipeline, eth_adapter, sink):
        """Records for wallets without an ActiveMonitor are stored silently."""
        eth_adapter.add_records(make_tx())

        result = await pipeline.run_cycle(ETH_WALLET, Chain.ETH, reason=CycleReason.RESYNC)

        assert len(result.inserted) == 1
        assert result.dispatch.gated is True
        assert sink.batches == []


# ============================================================
# SCHEDULER
# ============================================================

class TestPollScheduler:
    """Tests for PollScheduler."""

    def _scheduler(self, pipeline, registry, adapters, store, fast_config, **kwargs):
        return PollScheduler(
            pipeline=pipeline,
            registry=registry,
            adapters=adapters,
            store=store,
            config=fast_config,
            **kwargs,
        )

    @pytest.mark.asyncio
    async def test_tick_polls_active_wallets(
        self, pipeline, registry, adapters, store, fast_config, eth_adapter
    ):
        """Each active wallet of the chain is fetched once per tick."""
        registry.add(ETH_WALLET, Chain.ETH)
        registry.add(OTHER_WALLET, Chain.ETH)
        scheduler = self._scheduler(pipeline, registry, adapters, store, fast_config)

        results = await scheduler.run_tick(Chain.ETH)

        assert [r.wallet_address for r in results] == [ETH_WALLET, OTHER_WALLET]
        assert eth_adapter.calls["fetch_transactions_since"] == 2

    @pytest.mark.asyncio
    async def test_tick_sleeps_between_wallets(
        self, pipeline, registry, adapters, store, fast_config
    ):
        """The inter-wallet delay separates consecutive wallets."""
        fast_config.settings_for(Chain.ETH).inter_wallet_delay_seconds = 0.4
        sleep = AsyncMock()
        registry.add(ETH_WALLET, Chain.ETH)
        registry.add(OTHER_WALLET, Chain.ETH)
        scheduler = self._scheduler(pipeline, registry, adapters, store, fast_config, sleep=sleep)

        await scheduler.run_tick(Chain.ETH)

        sleep.assert_awaited_once_with(0.4)

    @pytest.mark.asyncio
    async def test_failing_wallet_does_not_block_others(
        self, pipeline, registry, adapters, store, fast_config, eth_adapter
    ):
        """An adapter failure on one wallet does not stop the tick."""
        registry.add(ETH_WALLET, Chain.ETH)
        registry.add(OTHER_WALLET, Chain.ETH)
        eth_adapter.add_records(make_tx(wallet=OTHER_WALLET))
        eth_adapter.fail_next("fetch_balance", AdapterUnavailableError("down"))
        scheduler = self._scheduler(pipeline, registry, adapters, store, fast_config)

        results = await scheduler.run_tick(Chain.ETH)

        assert [r.status for r in results] == [CycleStatus.UNAVAILABLE, CycleStatus.OK]
        assert len(results[1].inserted) == 1

    @pytest.mark.asyncio
    async def test_push_covered_wallets_skipped(
        self, pipeline, registry, adapters, store, fast_config, eth_adapter
    ):
        """Wallets with live push coverage are not polled."""
        registry.add(ETH_WALLET, Chain.ETH)
        scheduler = self._scheduler(
            pipeline, registry, adapters, store, fast_config,
            is_push_covered=lambda address, chain: True,
        )

        results = await scheduler.run_tick(Chain.ETH)

        assert results == []
        assert eth_adapter.calls["fetch_transactions_since"] == 0
        assert scheduler.get_stats()["push_skipped"] == 1

    @pytest.mark.asyncio
    async def test_wallet_removed_mid_tick_skipped(
        self, pipeline, registry, adapters, store, fast_config, eth_adapter
    ):
        """A wallet stopped during the tick is not fetched afterwards."""
        registry.add(ETH_WALLET, Chain.ETH)
        registry.add(OTHER_WALLET, Chain.ETH)

        async def stop_other(delay):
            registry.remove(OTHER_WALLET, Chain.ETH)

        fast_config.settings_for(Chain.ETH).inter_wallet_delay_seconds = 0.1
        scheduler = self._scheduler(
            pipeline, registry, adapters, store, fast_config, sleep=stop_other
        )

        results = await scheduler.run_tick(Chain.ETH)

        assert [r.wallet_address for r in results] == [ETH_WALLET]

    @pytest.mark.asyncio
    async def test_resync_covers_inactive_wallets(
        self, pipeline, registry, adapters, store, fast_config, eth_adapter, sink
    ):
        """The resync sweep fetches stored wallets even without a monitor."""
        await store.record_fetch(ETH_WALLET, Chain.ETH, None, make_tx().timestamp, None)
        eth_adapter.add_records(make_tx())
        scheduler = self._scheduler(pipeline, registry, adapters, store, fast_config)

        results = await scheduler.run_resync()

        assert [r.reason for r in results] == [CycleReason.RESYNC]
        assert len(results[0].inserted) == 1
        assert sink.batches == []
        assert len(await store.list_transactions(ETH_WALLET, Chain.ETH)) == 1

    @pytest.mark.asyncio
    async def test_start_and_stop_loops(
        self, pipeline, registry, adapters, store, fast_config, eth_adapter
    ):
        """Background loops poll repeatedly until stopped."""
        registry.add(ETH_WALLET, Chain.ETH)
        scheduler = self._scheduler(pipeline, registry, adapters, store, fast_config)

        await scheduler.start()
        assert scheduler.is_running
        await asyncio.sleep(0.05)
        await scheduler.stop()

        calls = eth_adapter.calls["fetch_transactions_since"]
        assert calls >= 2
        assert not scheduler.is_running

        await asyncio.sleep(0.03)
        assert eth_adapter.calls["fetch_transactions_since"] == calls

    @pytest.mark.asyncio
    async def test_disabled_chain_not_started(
        self, pipeline, registry, adapters, store, fast_config
    ):
        """Chains disabled in config get no loop."""
        fast_config.settings_for(Chain.SOL).enabled = False
        scheduler = self._scheduler(pipeline, registry, adapters, store, fast_config)

        await scheduler.start()
        loops = scheduler.get_stats()["loops"]
        await scheduler.stop()

        assert loops == ["ETH"]
