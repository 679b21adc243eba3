"""
Tests for event dispatch and the poll loop.
"""

from __future__ import annotations

import threading

import httpx

from conftest import (
    FakeMonitor,
    FakeOracle,
    MemoryStateStore,
    deposit,
    make_context,
    withdrawal,
)
from hayy_relayer.errors import BroadcastError, ChainCallError, InsufficientFundsError
from hayy_relayer.models import PriceQuote, ProcessedEvent, RelayerState
from hayy_relayer.registrations import RecentRegistrations
from hayy_relayer.relayer import EventProcessor, Relayer


class TestDepositDispatch:
    """Deposits register collateral and learn the address mapping."""

    def test_happy_path(self, priced_state: RelayerState) -> None:
        ctx = make_context(state=priced_state)
        processor = EventProcessor(ctx)

        record = processor.dispatch(deposit())

        assert ctx.destination.calls == [("register_collateral", "0xAA", 1_000_000, 0.5)]
        assert record is not None
        assert record.status == "success"
        assert record.destination_tx_ref == "digest1"
        assert ctx.state.processed_events["0xaaa:deposit"].status == "success"
        assert ctx.state.last_processed_block == 100
        assert ctx.state.address_mappings == {"P1": "0xAA"}

    def test_outcome_is_persisted(self, priced_state: RelayerState) -> None:
        store = MemoryStateStore()
        ctx = make_context(state=priced_state, store=store)

        EventProcessor(ctx).dispatch(deposit())

        reloaded = store.load()
        assert reloaded.last_processed_block == 100
        assert "0xaaa:deposit" in reloaded.processed_events
        assert reloaded.address_mappings["P1"] == "0xAA"

    def test_same_event_twice_registers_once(self, priced_state: RelayerState) -> None:
        ctx = make_context(state=priced_state)
        processor = EventProcessor(ctx)

        first = processor.dispatch(deposit())
        second = processor.dispatch(deposit())

        assert first is not None
        assert second is None
        assert len(ctx.destination.calls) == 1

    def test_failed_event_is_not_retried(self, priced_state: RelayerState, chain_error: ChainCallError) -> None:
        ctx = make_context(state=priced_state)
        ctx.destination.register_error = chain_error
        processor = EventProcessor(ctx)

        processor.dispatch(deposit())
        ctx.destination.register_error = None
        again = processor.dispatch(deposit())

        assert again is None
        assert len(ctx.destination.calls) == 1
        assert ctx.state.processed_events["0xaaa:deposit"].status == "failed"

    def test_zero_price_blocks_registration(self) -> None:
        ctx = make_context(state=RelayerState())
        processor = EventProcessor(ctx)

        record = processor.dispatch(deposit())

        assert record is not None
        assert record.status == "failed"
        assert "price unavailable" in (record.error_message or "").lower()
        assert ctx.destination.calls == []
        assert ctx.state.last_processed_block == 0

    def test_missing_sui_address_is_rejected(self, priced_state: RelayerState) -> None:
        ctx = make_context(state=priced_state)

        record = EventProcessor(ctx).dispatch(deposit(destination=None))

        assert record is not None
        assert record.status == "failed"
        assert ctx.destination.calls == []
        assert ctx.state.address_mappings == {}

    def test_chain_failure_keeps_reason_and_cursor(
        self, priced_state: RelayerState, chain_error: ChainCallError
    ) -> None:
        ctx = make_context(state=priced_state)
        ctx.destination.register_error = chain_error

        record = EventProcessor(ctx).dispatch(deposit())

        assert record is not None
        assert record.status == "failed"
        assert "MoveAbort" in (record.error_message or "")
        assert record.destination_tx_ref is None
        assert ctx.state.last_processed_block == 0
        assert ctx.state.address_mappings == {}

    def test_mapping_last_write_wins(self, priced_state: RelayerState) -> None:
        ctx = make_context(state=priced_state)
        processor = EventProcessor(ctx)

        processor.dispatch(deposit(tx_id="0x01", destination="0xAA", block_height=100))
        processor.dispatch(deposit(tx_id="0x02", destination="0xBB", block_height=101))

        assert ctx.state.address_mappings["P1"] == "0xBB"

    def test_registration_callback_receives_notice(self, priced_state: RelayerState) -> None:
        recent = RecentRegistrations()
        ctx = make_context(state=priced_state, on_registered=recent)

        EventProcessor(ctx).dispatch(deposit())

        notice = recent.get("P1")
        assert notice is not None
        assert notice.destination_address == "0xAA"
        assert notice.destination_tx_ref == "digest1"

    def test_callback_error_does_not_fail_event(self, priced_state: RelayerState) -> None:
        def broken(_notice) -> None:
            raise RuntimeError("listener down")

        ctx = make_context(state=priced_state, on_registered=broken)

        record = EventProcessor(ctx).dispatch(deposit())

        assert record is not None
        assert record.status == "success"

    def test_cursor_not_advanced_when_save_fails(self, priced_state: RelayerState) -> None:
        store = MemoryStateStore()
        store.fail_saves = True
        ctx = make_context(state=priced_state, store=store)

        record = EventProcessor(ctx).dispatch(deposit())

        assert record is not None
        assert ctx.state.last_processed_block == 0

    def test_cursor_never_moves_backwards(self, priced_state: RelayerState) -> None:
        priced_state.last_processed_block = 500
        ctx = make_context(state=priced_state)

        EventProcessor(ctx).dispatch(deposit(block_height=100))

        assert ctx.state.last_processed_block == 500


class TestWithdrawalDispatch:
    """Withdrawals unlock on Sui, then on Stacks."""

    def _mapped_state(self) -> RelayerState:
        return RelayerState(
            address_mappings={"P1": "0xAA"},
            price_cache=PriceQuote(stx_usd=0.5),
        )

    def test_unlocks_on_both_chains(self) -> None:
        ctx = make_context(state=self._mapped_state())

        record = EventProcessor(ctx).dispatch(withdrawal())

        assert record is not None
        assert record.status == "success"
        assert ("unlock_collateral", "0xAA", 1_000_000) in ctx.destination.calls
        assert ctx.source.calls == [("P1", 1_000_000)]
        assert record.source_tx_ref == "0xstackstx"
        assert ctx.state.last_processed_block == 110

    def test_blocked_by_debt(self) -> None:
        ctx = make_context(state=self._mapped_state())
        ctx.destination.debt["0xAA"] = True

        record = EventProcessor(ctx).dispatch(withdrawal())

        assert record is not None
        assert record.status == "failed"
        assert "debt" in (record.error_message or "")
        assert not any(call[0] == "unlock_collateral" for call in ctx.destination.calls)
        assert ctx.source.calls == []

    def test_debt_read_error_fails_closed(self) -> None:
        ctx = make_context(state=self._mapped_state())
        ctx.destination.debt_error = httpx.ConnectError("node unreachable")

        record = EventProcessor(ctx).dispatch(withdrawal())

        assert record is not None
        assert record.status == "failed"
        assert ctx.source.calls == []

    def test_unknown_principal_makes_no_calls(self) -> None:
        ctx = make_context(state=RelayerState())

        record = EventProcessor(ctx).dispatch(withdrawal(principal="P9"))

        assert record is not None
        assert record.status == "failed"
        assert ctx.destination.calls == []
        assert ctx.source.calls == []

    def test_insufficient_funds_is_success_with_warning(self) -> None:
        ctx = make_context(state=self._mapped_state())
        ctx.source.error = InsufficientFundsError("relayer has 0 microSTX")

        record = EventProcessor(ctx).dispatch(withdrawal())

        assert record is not None
        assert record.status == "success"
        assert record.warning is not None
        assert record.destination_tx_ref == "digest1"
        assert ctx.state.last_processed_block == 110

    def test_broadcast_error_fails_event(self) -> None:
        ctx = make_context(state=self._mapped_state())
        ctx.source.error = BroadcastError("Broadcast failed: rejected - BadNonce", reason="BadNonce")

        record = EventProcessor(ctx).dispatch(withdrawal())

        assert record is not None
        assert record.status == "failed"
        assert "digest1" in (record.error_message or "")
        assert ctx.state.last_processed_block == 0

    def test_sui_unlock_failure_skips_stacks(self, chain_error: ChainCallError) -> None:
        ctx = make_context(state=self._mapped_state())
        ctx.destination.unlock_error = chain_error

        record = EventProcessor(ctx).dispatch(withdrawal())

        assert record is not None
        assert record.status == "failed"
        assert ctx.source.calls == []


class TestBatchProcessing:
    """Batches run in order and survive individual failures."""

    def test_failure_does_not_halt_batch(self, priced_state: RelayerState) -> None:
        ctx = make_context(state=priced_state)
        batch = [
            deposit(tx_id="0x01", destination=None, block_height=100),
            deposit(tx_id="0x02", destination="0xBB", block_height=101),
        ]

        results = EventProcessor(ctx).process_batch(batch)

        assert [r.status for r in results] == ["failed", "success"]
        assert ctx.state.last_processed_block == 101

    def test_stop_event_ends_batch_early(self, priced_state: RelayerState) -> None:
        ctx = make_context(state=priced_state)
        stop = threading.Event()
        stop.set()

        results = EventProcessor(ctx).process_batch([deposit()], stop)

        assert results == []
        assert ctx.destination.calls == []

    def _stop_during_first_deposit(self, ctx, stop: threading.Event) -> None:
        register = ctx.destination.register_collateral

        def register_then_stop(destination_address: str, amount: int, usd_value: float) -> str:
            stop.set()
            return register(destination_address, amount, usd_value)

        ctx.destination.register_collateral = register_then_stop

    def test_stop_finishes_current_block(self, priced_state: RelayerState) -> None:
        store = MemoryStateStore()
        ctx = make_context(state=priced_state, store=store)
        stop = threading.Event()
        self._stop_during_first_deposit(ctx, stop)
        batch = [
            deposit(tx_id="0xa", destination="0xAA", block_height=100),
            deposit(tx_id="0xb", destination="0xBB", block_height=100),
        ]

        results = EventProcessor(ctx).process_batch(batch, stop)

        assert [r.event_id for r in results] == ["0xa:deposit", "0xb:deposit"]
        # The restarted relayer asks for blocks above 100, so 0xb must already be recorded
        restarted = store.load()
        assert restarted.last_processed_block == 100
        assert "0xb:deposit" in restarted.processed_events

    def test_stop_breaks_at_block_boundary(self, priced_state: RelayerState) -> None:
        ctx = make_context(state=priced_state)
        stop = threading.Event()
        self._stop_during_first_deposit(ctx, stop)
        batch = [
            deposit(tx_id="0xa", destination="0xAA", block_height=100),
            deposit(tx_id="0xb", destination="0xBB", block_height=101),
        ]

        results = EventProcessor(ctx).process_batch(batch, stop)

        assert [r.event_id for r in results] == ["0xa:deposit"]
        assert [call[1] for call in ctx.destination.calls] == ["0xAA"]
        assert ctx.state.last_processed_block == 100


class TestRelayerLoop:
    """Poll ticks and price refreshes."""

    def test_poll_once_uses_cursor(self, priced_state: RelayerState) -> None:
        priced_state.last_processed_block = 42
        monitor = FakeMonitor([[deposit(block_height=100)]])
        relayer = Relayer(make_context(state=priced_state, monitor=monitor))

        results = relayer.poll_once()

        assert monitor.calls == [42]
        assert len(results) == 1
        assert relayer.stats.events_succeeded == 1

    def test_poll_error_skips_tick(self, priced_state: RelayerState) -> None:
        monitor = FakeMonitor()
        monitor.error = httpx.ConnectError("api down")
        relayer = Relayer(make_context(state=priced_state, monitor=monitor))

        assert relayer.poll_once() == []
        assert relayer.ctx.state.last_processed_block == 0

    def test_cursor_survives_restart(self, priced_state: RelayerState) -> None:
        store = MemoryStateStore()
        monitor = FakeMonitor([[deposit(block_height=100)]])
        Relayer(make_context(state=priced_state, store=store, monitor=monitor)).poll_once()

        restarted_state = store.load()
        monitor = FakeMonitor([[deposit(block_height=100), deposit(tx_id="0xccc", block_height=90)]])
        relayer = Relayer(make_context(state=restarted_state, store=store, monitor=monitor))
        relayer.poll_once()

        assert monitor.calls == [100]
        assert relayer.ctx.state.last_processed_block == 100
        assert relayer.ctx.destination.calls == []

    def test_price_refresh_updates_cache(self) -> None:
        store = MemoryStateStore()
        oracle = FakeOracle(PriceQuote(stx_usd=1.25, sbtc_usd=70_000.0))
        relayer = Relayer(make_context(state=RelayerState(), store=store, oracle=oracle))

        relayer.refresh_prices()

        assert relayer.ctx.state.price_cache.stx_usd == 1.25
        assert store.load().price_cache.stx_usd == 1.25

    def test_fallback_quote_keeps_real_price(self, priced_state: RelayerState) -> None:
        oracle = FakeOracle(PriceQuote(stx_usd=0.5, sbtc_usd=65_000.0, is_fallback=True))
        priced_state.price_cache = PriceQuote(stx_usd=2.0, sbtc_usd=60_000.0)
        relayer = Relayer(make_context(state=priced_state, oracle=oracle))

        relayer.refresh_prices()

        assert relayer.ctx.state.price_cache.stx_usd == 2.0

    def test_fallback_quote_fills_empty_cache(self) -> None:
        oracle = FakeOracle(PriceQuote(stx_usd=0.5, sbtc_usd=65_000.0, is_fallback=True))
        relayer = Relayer(make_context(state=RelayerState(), oracle=oracle))

        relayer.refresh_prices()

        assert relayer.ctx.state.price_cache.stx_usd == 0.5
        assert relayer.ctx.state.price_cache.is_fallback

    def test_run_stops_gracefully(self, priced_state: RelayerState) -> None:
        monitor = FakeMonitor([[deposit(block_height=100)]])
        relayer = Relayer(make_context(state=priced_state, monitor=monitor))

        def stop_after_first_poll(since_height: int):
            events = FakeMonitor.fetch_events_since(monitor, since_height)
            relayer.stop()
            return events

        monitor.fetch_events_since = stop_after_first_poll  # type: ignore[assignment]

        relayer.run()

        assert not relayer.stats.is_running
        # Stop was requested before dispatch, so the batch ends without acting
        assert relayer.ctx.destination.calls == []
        assert relayer.ctx.oracle.calls == 1


def test_processed_event_round_trips_legacy_keys() -> None:
    legacy = {
        "lastStacksBlock": 12,
        "processedEvents": {
            "0xabc:deposit": {
                "txHash": "0xabc",
                "suiTxDigest": "D1",
                "timestamp": 1_700_000_000_000,
                "status": "success",
            }
        },
        "addressMappings": {"ST1": "0x" + "11" * 32},
        "priceCache": {"stxUsd": 0.61, "sbtcUsd": 64000, "lastUpdate": 1_700_000_000_000},
    }

    state = RelayerState.model_validate(legacy)

    event = state.processed_events["0xabc:deposit"]
    assert isinstance(event, ProcessedEvent)
    assert event.event_id == "0xabc:deposit"
    assert event.destination_tx_ref == "D1"
    assert state.last_processed_block == 12
    assert state.price_cache.stx_usd == 0.61
    assert '"lastProcessedBlock": 12' in state.to_json()
