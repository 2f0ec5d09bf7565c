"""
Tests for ChainActivityEngine.

============================================================
PURPOSE
============================================================
End-to-end behaviour through the public facade:
- start/stop monitoring and registration validation
- a detected transaction is stored once and alerted once
- push-capable chains subscribe, others are polled
- background loops honour start/stop

============================================================
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from activity_engine.engine import ChainActivityEngine
from activity_engine.pipeline import CycleStatus
from chain_adapters.exceptions import (
    AdapterUnavailableError,
    ChainNotConfiguredError,
    InvalidAddressError,
)
from chain_adapters.mock import MockAdapterConfig, MockChainAdapter
from chain_adapters.models import Chain, FetchResult
from chain_adapters.registry import AdapterRegistry
from notifications.discord import DiscordWebhookSink

from tests.factories import ETH_WALLET, SOL_WALLET, WEBHOOK, RecordingSink, make_tx, ts_ms


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def engine(adapters, store, sink, fast_config):
    return ChainActivityEngine(adapters, store, sink=sink, config=fast_config)


class TestMonitorLifecycle:
    """Tests for start_monitoring / stop_monitoring."""

    @pytest.mark.asyncio
    async def test_start_monitoring_returns_copy(self, engine):
        """The returned monitor is a snapshot, not the registry entry."""
        monitor = await engine.start_monitoring(ETH_WALLET, "eth", WEBHOOK)
        monitor.alert_target = "tampered"

        [active] = engine.list_active_monitors()
        assert active.alert_target == WEBHOOK
        assert active.chain == Chain.ETH

    @pytest.mark.asyncio
    async def test_address_normalized(self, engine):
        """EVM addresses are stored lowercased."""
        monitor = await engine.start_monitoring("0x" + "A" * 40, Chain.ETH)
        assert monitor.wallet_address == ETH_WALLET

    @pytest.mark.asyncio
    async def test_invalid_address_rejected(self, engine):
        """Malformed addresses never become monitors."""
        with pytest.raises(InvalidAddressError):
            await engine.start_monitoring("not-an-address", Chain.ETH)
        assert engine.list_active_monitors() == []

    @pytest.mark.asyncio
    async def test_unconfigured_chain_rejected(self, engine):
        """Chains without an adapter raise ChainNotConfiguredError."""
        with pytest.raises(ChainNotConfiguredError):
            await engine.start_monitoring("1" * 30, Chain.BTC)

    @pytest.mark.asyncio
    async def test_invalid_alert_target_rejected(self, adapters, store, fast_config):
        """Alert targets are validated by the sink."""
        engine = ChainActivityEngine(
            adapters, store, sink=DiscordWebhookSink(session=object()), config=fast_config
        )
        with pytest.raises(ValueError):
            await engine.start_monitoring(ETH_WALLET, Chain.ETH, "https://example.com/hook")

    @pytest.mark.asyncio
    async def test_stop_monitoring(self, engine):
        """Stopping removes the monitor; a second stop returns False."""
        await engine.start_monitoring(ETH_WALLET, Chain.ETH)

        assert await engine.stop_monitoring(ETH_WALLET, Chain.ETH) is True
        assert engine.list_active_monitors() == []
        assert await engine.stop_monitoring(ETH_WALLET, Chain.ETH) is False

    @pytest.mark.asyncio
    async def test_stop_unknown_or_invalid(self, engine):
        """Unknown and malformed addresses are not errors on stop."""
        assert await engine.stop_monitoring(ETH_WALLET, Chain.ETH) is False
        assert await engine.stop_monitoring("bogus", Chain.ETH) is False


class TestIngestion:
    """End-to-end detection through the engine."""

    @pytest.mark.asyncio
    async def test_new_transaction_stored_and_alerted_once(self, engine, eth_adapter, store, sink):
        """One new record: one row, one alert batch, checkpoint at its cursor."""
        await engine.start_monitoring(ETH_WALLET, Chain.ETH, WEBHOOK)
        record = make_tx("0xA", amount="1.5")
        eth_adapter.add_records(record)

        result = await engine.trigger_manual_refresh(ETH_WALLET, Chain.ETH)

        assert result.status == CycleStatus.OK
        assert len(await store.list_transactions()) == 1
        assert len(sink.batches) == 1
        assert sink.batches[0] == (WEBHOOK, [record])
        state = await store.get_wallet_state(ETH_WALLET, Chain.ETH)
        assert state.checkpoint == record.cursor

    @pytest.mark.asyncio
    async def test_identical_rerun_is_silent(self, engine, eth_adapter, store, sink):
        """Replaying the same fetch persists nothing and alerts nothing."""
        await engine.start_monitoring(ETH_WALLET, Chain.ETH, WEBHOOK)
        # Adapter ignores the checkpoint and returns the same fetch every time
        eth_adapter.fetch_transactions_since = AsyncMock(
            return_value=FetchResult(records=[make_tx("0xA")])
        )

        await engine.trigger_manual_refresh(ETH_WALLET, Chain.ETH)
        rerun = await engine.trigger_manual_refresh(ETH_WALLET, Chain.ETH)

        assert rerun.inserted == []
        assert len(await store.list_transactions()) == 1
        assert len(sink.batches) == 1

    @pytest.mark.asyncio
    async def test_multi_token_transaction(self, engine, eth_adapter, store, sink):
        """Native and token legs of one hash are separate records."""
        await engine.start_monitoring(ETH_WALLET, Chain.ETH, WEBHOOK)
        eth_adapter.add_records(
            make_tx("0xA", seconds=1),
            make_tx("0xA", token="USDT", amount="250", seconds=1),
        )

        await engine.trigger_manual_refresh(ETH_WALLET, Chain.ETH)

        assert {r.token for r in await store.list_transactions()} == {"ETH", "USDT"}
        assert len(sink.records) == 2

    @pytest.mark.asyncio
    async def test_adapter_outage_leaves_state(self, engine, eth_adapter, store):
        """Manual refresh during an outage reports it and changes nothing."""
        await engine.start_monitoring(ETH_WALLET, Chain.ETH)
        eth_adapter.fail_next("fetch_balance", AdapterUnavailableError("down"))

        result = await engine.trigger_manual_refresh(ETH_WALLET, Chain.ETH)

        assert result.status == CycleStatus.UNAVAILABLE
        assert await store.get_wallet_state(ETH_WALLET, Chain.ETH) is None

    @pytest.mark.asyncio
    async def test_polling_loop_detects_activity(self, engine, eth_adapter, sink):
        """The background loop picks up records added while running."""
        await engine.start_monitoring(ETH_WALLET, Chain.ETH, WEBHOOK)

        async with engine:
            await asyncio.sleep(0.03)
            eth_adapter.add_records(make_tx("0xLIVE", seconds=5))
            await asyncio.sleep(0.05)

        assert [r.tx_hash for r in sink.records] == ["0xLIVE"]

    @pytest.mark.asyncio
    async def test_no_alerts_after_stop(self, engine, eth_adapter, sink):
        """Stopped wallets are neither polled nor alerted."""
        await engine.start_monitoring(ETH_WALLET, Chain.ETH, WEBHOOK)
        await engine.stop_monitoring(ETH_WALLET, Chain.ETH)

        async with engine:
            eth_adapter.add_records(make_tx("0xLATE"))
            await asyncio.sleep(0.05)

        assert sink.batches == []
        assert eth_adapter.calls["fetch_transactions_since"] == 0


class TestPushChains:
    """Tests for push-capable chains through the engine."""

    @pytest.mark.asyncio
    async def test_push_chain_subscribes(self, engine, sol_adapter):
        """Monitoring a push-capable chain opens one subscription."""
        await engine.start_monitoring(SOL_WALLET, Chain.SOL, WEBHOOK)
        await engine.start_monitoring(SOL_WALLET, Chain.SOL, WEBHOOK)
        await engine.wait_idle()

        assert sol_adapter.calls["subscribe"] == 1
        assert engine.subscription_manager(Chain.SOL).refcount(SOL_WALLET) == 2

        await engine.stop_monitoring(SOL_WALLET, Chain.SOL)
        assert sol_adapter.is_subscribed(SOL_WALLET)
        await engine.stop_monitoring(SOL_WALLET, Chain.SOL)
        assert not sol_adapter.is_subscribed(SOL_WALLET)
        assert await engine.stop_monitoring(SOL_WALLET, Chain.SOL) is False
        assert sol_adapter.calls["unsubscribe"] == 1

    @pytest.mark.asyncio
    async def test_stop_while_subscribing_tears_down(self, engine, sol_adapter):
        """Stopping during an in-flight subscribe leaves no live subscription."""
        original = sol_adapter.subscribe

        async def slow_subscribe(address, on_activity):
            await asyncio.sleep(0.05)
            return await original(address, on_activity)

        sol_adapter.subscribe = slow_subscribe

        starting = asyncio.create_task(engine.start_monitoring(SOL_WALLET, Chain.SOL))
        await asyncio.sleep(0.01)
        assert await engine.stop_monitoring(SOL_WALLET, Chain.SOL) is True
        await starting
        await engine.wait_idle()

        assert engine.list_active_monitors() == []
        assert not sol_adapter.is_subscribed(SOL_WALLET)
        assert engine.subscription_manager(Chain.SOL).refcount(SOL_WALLET) == 0

        # A later start/stop pair still subscribes and tears down
        await engine.start_monitoring(SOL_WALLET, Chain.SOL)
        await engine.stop_monitoring(SOL_WALLET, Chain.SOL)
        assert not sol_adapter.is_subscribed(SOL_WALLET)
        assert sol_adapter.calls["subscribe"] == 2
        assert sol_adapter.calls["unsubscribe"] == 2

    @pytest.mark.asyncio
    async def test_push_event_alerts(self, engine, sol_adapter, sink):
        """Activity events lead to alerts for newly detected records."""
        await engine.start_monitoring(SOL_WALLET, Chain.SOL, WEBHOOK)
        await engine.wait_idle()

        record = make_tx("sig1", wallet=SOL_WALLET, chain=Chain.SOL, seconds=3)
        sol_adapter.add_records(record)
        await sol_adapter.emit_activity(SOL_WALLET)
        await engine.wait_idle()

        assert sink.records == [record]

    @pytest.mark.asyncio
    async def test_push_covered_wallet_not_polled(self, engine, sol_adapter):
        """Live subscriptions replace polling for their wallet."""
        await engine.start_monitoring(SOL_WALLET, Chain.SOL)
        await engine.wait_idle()
        fetches = sol_adapter.calls["fetch_transactions_since"]

        results = await engine.scheduler.run_tick(Chain.SOL)

        assert results == []
        assert sol_adapter.calls["fetch_transactions_since"] == fetches

    @pytest.mark.asyncio
    async def test_subscribe_failure_falls_back_to_polling(self, store, sink, fast_config):
        """A failed subscribe keeps the monitor and polls it instead."""
        sol = MockChainAdapter(
            MockAdapterConfig(chain=Chain.SOL, push_capable=True, fail_subscribe=True)
        )
        adapters = AdapterRegistry()
        adapters.register(sol)
        engine = ChainActivityEngine(adapters, store, sink=sink, config=fast_config)

        await engine.start_monitoring(SOL_WALLET, Chain.SOL, WEBHOOK)
        sol.add_records(make_tx("sig1", wallet=SOL_WALLET, chain=Chain.SOL))
        results = await engine.scheduler.run_tick(Chain.SOL)

        assert len(engine.list_active_monitors()) == 1
        assert len(results) == 1
        assert len(sink.records) == 1

        # No subscription reference was taken, so stop must not unsubscribe
        assert await engine.stop_monitoring(SOL_WALLET, Chain.SOL) is True
        assert sol.calls["unsubscribe"] == 0


class TestEngineLifecycle:
    """Tests for engine start/stop/close."""

    @pytest.mark.asyncio
    async def test_stop_tears_down_subscriptions(self, engine, sol_adapter):
        """stop() closes every open subscription."""
        await engine.start()
        await engine.start_monitoring(SOL_WALLET, Chain.SOL)
        await engine.stop()

        assert not sol_adapter.is_subscribed(SOL_WALLET)
        assert not engine.scheduler.is_running

    @pytest.mark.asyncio
    async def test_stats_snapshot(self, engine, eth_adapter):
        """get_stats aggregates component statistics."""
        await engine.start_monitoring(ETH_WALLET, Chain.ETH)
        eth_adapter.add_records(make_tx())
        await engine.trigger_manual_refresh(ETH_WALLET, Chain.ETH)

        stats = engine.get_stats()
        assert stats["active_monitors"] == 1
        assert stats["pipeline"]["records_inserted"] == 1
        assert "SOL" in stats["subscriptions"]
        assert stats["pipeline"]["dedup"]["inserted"] == 1

    @pytest.mark.asyncio
    async def test_checkpoint_from_manual_refresh_used_by_poll(self, engine, eth_adapter):
        """Polling resumes from the checkpoint written by a manual refresh."""
        await engine.start_monitoring(ETH_WALLET, Chain.ETH)
        eth_adapter.add_records(make_tx(seconds=9))
        await engine.trigger_manual_refresh(ETH_WALLET, Chain.ETH)

        await engine.scheduler.run_tick(Chain.ETH)

        assert eth_adapter.checkpoints_seen[-1] == ts_ms(9)
