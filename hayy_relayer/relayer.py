"""
Main relayer logic - watches Stacks collateral events and acts on Sui.

Every observed event goes through ``unseen -> dispatched -> persisted``.
Once an event id is in the ledger it is never dispatched again, whether it
succeeded or failed.
"""

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

import structlog

from .config import RelayerConfig
from .db import SqlStateStore
from .errors import EventRejected, InsufficientFundsError, PriceUnavailableError, RelayerError
from .models import (
    EventKind,
    PriceQuote,
    ProcessedEvent,
    RegistrationNotice,
    RelayerState,
    SourceChainEvent,
    utcnow,
)
from .monitor import StacksEventMonitor
from .price import PriceOracle, calculate_borrowing_power, calculate_stx_value
from .signer import StacksSigner, SuiKeypair
from .stacks import StacksApiClient
from .state import (
    JsonStateStore,
    StateStore,
    add_address_mapping,
    advance_cursor,
    get_destination_address,
    is_event_processed,
    mark_event_processed,
)
from .sui import SuiRegistryClient, SuiRpcClient
from .unlocker import StacksUnlocker

logger = structlog.get_logger()

RegistrationCallback = Callable[[RegistrationNotice], None]


def build_state_store(config: RelayerConfig) -> StateStore:
    """JSON file by default, a database when STATE_DATABASE_URL is set."""
    settings = config.settings
    if settings.state_database_url:
        return SqlStateStore(settings.state_database_url)
    return JsonStateStore(settings.state_file)


@dataclass
class RelayerContext:
    """
    Everything the relayer works with, built once at startup.

    All reads and writes of ``state`` happen while holding ``lock``.
    """

    state: RelayerState
    store: StateStore
    monitor: StacksEventMonitor
    destination: SuiRegistryClient
    source: StacksUnlocker
    oracle: PriceOracle
    on_registered: Optional[RegistrationCallback] = None
    event_delay_seconds: float = 1.0
    poll_interval_seconds: float = 5.0
    price_interval_seconds: float = 60.0
    lock: threading.RLock = field(default_factory=threading.RLock)
    resources: list[Any] = field(default_factory=list)

    @classmethod
    def from_config(
        cls,
        config: RelayerConfig,
        on_registered: Optional[RegistrationCallback] = None,
        store: Optional[StateStore] = None,
    ) -> "RelayerContext":
        """Load state and wire up the real chain clients."""
        settings = config.settings
        store = store or build_state_store(config)
        state = store.load()

        stacks_api = StacksApiClient(settings.stacks_api_url, timeout=settings.http_timeout_seconds)
        monitor = StacksEventMonitor(
            stacks_api,
            settings.stacks_collateral_contract,
            confirmations=settings.stacks_confirmations,
        )

        sui_rpc = SuiRpcClient(settings.sui_rpc_url, timeout=settings.http_timeout_seconds)
        keypair = SuiKeypair.from_private_key(settings.relayer_sui_private_key.get_secret_value())
        destination = SuiRegistryClient(
            sui_rpc,
            keypair,
            package_id=settings.sui_package_id,
            registry_id=settings.sui_borrow_registry_id,
            gas_budget=settings.sui_gas_budget,
        )

        signer = StacksSigner(
            settings.relayer_stacks_private_key.get_secret_value(),
            network=settings.stacks_network,
        )
        source = StacksUnlocker(
            stacks_api,
            signer,
            settings.stacks_collateral_contract,
            fee=settings.stacks_unlock_fee,
        )

        api_key = settings.coingecko_api_key.get_secret_value() if settings.coingecko_api_key else None
        oracle = PriceOracle(api_key=api_key, timeout=settings.http_timeout_seconds)

        logger.info(
            "relayer_initialized",
            stacks_api=settings.stacks_api_url,
            stacks_network=settings.stacks_network,
            contract=settings.stacks_collateral_contract,
            confirmations=settings.stacks_confirmations,
            sui_rpc=settings.sui_rpc_url,
            sui_network=settings.sui_network,
            stacks_relayer=signer.address,
            sui_relayer=keypair.address,
            last_processed_block=state.last_processed_block,
        )

        return cls(
            state=state,
            store=store,
            monitor=monitor,
            destination=destination,
            source=source,
            oracle=oracle,
            on_registered=on_registered,
            event_delay_seconds=settings.event_delay_seconds,
            poll_interval_seconds=settings.poll_interval_seconds,
            price_interval_seconds=settings.price_update_interval_seconds,
            resources=[stacks_api, sui_rpc, oracle, store],
        )

    def persist(self) -> bool:
        with self.lock:
            return self.store.save(self.state)

    def close(self) -> None:
        for resource in self.resources:
            resource.close()


class EventProcessor:
    """Dispatches source-chain events one at a time."""

    def __init__(self, context: RelayerContext):
        self.ctx = context

    def process_batch(
        self,
        events: list[SourceChainEvent],
        stop_event: Optional[threading.Event] = None,
    ) -> list[ProcessedEvent]:
        """
        Dispatch events in order.

        A failed event is recorded and the batch moves on. When
        ``stop_event`` is set the batch still finishes the block it is in:
        the cursor may already sit at that height, and the monitor only
        returns blocks above the cursor.

        Returns:
            Ledger entries created by this batch (skipped events excluded)
        """
        results: list[ProcessedEvent] = []
        current_block: Optional[int] = None
        for index, event in enumerate(events):
            if stop_event is not None and stop_event.is_set() and event.block_height != current_block:
                logger.info("batch_interrupted", remaining=len(events) - index)
                break

            current_block = event.block_height
            outcome = self.dispatch(event)
            if outcome is None:
                continue
            results.append(outcome)

            if index < len(events) - 1 and self.ctx.event_delay_seconds > 0:
                if stop_event is not None:
                    if stop_event.is_set():
                        continue
                    stop_event.wait(self.ctx.event_delay_seconds)
                else:
                    time.sleep(self.ctx.event_delay_seconds)
        return results

    def dispatch(self, event: SourceChainEvent) -> Optional[ProcessedEvent]:
        """
        Act on one event and record the outcome.

        Returns:
            The new ledger entry, or None if the event was already processed
        """
        with self.ctx.lock:
            if is_event_processed(self.ctx.state, event.id):
                logger.debug("event_already_processed", event_id=event.id)
                return None

            logger.info(
                "event_dispatch",
                event_id=event.id,
                kind=event.kind.value,
                user=event.principal,
                amount=event.amount,
                block_height=event.block_height,
            )
            try:
                match event.kind:
                    case EventKind.DEPOSIT:
                        return self._handle_deposit(event)
                    case EventKind.WITHDRAWAL_REQUEST:
                        return self._handle_withdrawal(event)
            except RelayerError as e:
                logger.warning("event_rejected", event_id=event.id, error=str(e))
                return self._record(event, "failed", error_message=str(e))
            except Exception as e:
                logger.error("event_dispatch_failed", event_id=event.id, error=str(e))
                return self._record(event, "failed", error_message=str(e))
            raise AssertionError(f"unhandled event kind: {event.kind}")

    def _handle_deposit(self, event: SourceChainEvent) -> ProcessedEvent:
        if not event.destination_address:
            raise EventRejected("Deposit event has no Sui address")

        stx_usd = self.ctx.state.price_cache.stx_usd
        if not stx_usd or stx_usd <= 0:
            raise PriceUnavailableError("STX price unavailable; refusing to value collateral")

        usd_value = calculate_stx_value(event.amount, stx_usd)
        logger.info(
            "deposit_valued",
            event_id=event.id,
            usd_value=usd_value,
            borrow_power=calculate_borrowing_power(usd_value),
        )

        digest = self.ctx.destination.register_collateral(
            event.destination_address, event.amount, usd_value
        )

        add_address_mapping(self.ctx.state, event.principal, event.destination_address)
        record = self._record(event, "success", destination_tx_ref=digest)
        self._notify_registered(event, event.destination_address, digest)
        return record

    def _handle_withdrawal(self, event: SourceChainEvent) -> ProcessedEvent:
        destination = get_destination_address(self.ctx.state, event.principal)
        if destination is None:
            raise EventRejected(f"No Sui address mapping for {event.principal}")

        if self.ctx.destination.has_outstanding_debt(destination):
            raise EventRejected("User has outstanding debt; repay before withdrawing")

        digest = self.ctx.destination.unlock_collateral(destination, event.amount)

        try:
            source_tx = self.ctx.source.unlock_on_source(event.principal, event.amount)
        except InsufficientFundsError as e:
            logger.warning(
                "stacks_unlock_deferred",
                event_id=event.id,
                sui_digest=digest,
                error=str(e),
            )
            return self._record(
                event,
                "success",
                destination_tx_ref=digest,
                warning=f"Sui collateral unlocked; Stacks unlock pending: {e}",
            )
        except Exception as e:
            logger.error(
                "stacks_unlock_failed",
                event_id=event.id,
                sui_digest=digest,
                error=str(e),
            )
            return self._record(
                event,
                "failed",
                error_message=f"Sui unlock {digest} succeeded but Stacks unlock failed: {e}",
            )

        return self._record(event, "success", destination_tx_ref=digest, source_tx_ref=source_tx)

    def _record(self, event: SourceChainEvent, status: str, **fields: Any) -> ProcessedEvent:
        """Write the ledger entry; advance the cursor once it is durable."""
        record = ProcessedEvent(
            event_id=event.id,
            source_tx_hash=event.tx_id,
            status=status,
            timestamp=utcnow(),
            **fields,
        )
        state = self.ctx.state
        mark_event_processed(state, record)

        if not self.ctx.persist():
            logger.error("event_record_not_persisted", event_id=event.id, status=status)
            return record

        if status == "success" and advance_cursor(state, event.block_height):
            self.ctx.persist()

        logger.info(
            "event_processed",
            event_id=event.id,
            status=status,
            destination_tx_ref=record.destination_tx_ref,
            error=record.error_message,
            warning=record.warning,
            last_processed_block=state.last_processed_block,
        )
        return record

    def _notify_registered(self, event: SourceChainEvent, destination: str, digest: str) -> None:
        callback = self.ctx.on_registered
        if callback is None:
            return
        notice = RegistrationNotice(
            source_principal=event.principal,
            destination_address=destination,
            amount=event.amount,
            destination_tx_ref=digest,
        )
        try:
            callback(notice)
        except Exception as e:
            logger.error("registration_callback_failed", event_id=event.id, error=str(e))


@dataclass
class RelayerStats:
    """Counters for the running relayer."""

    is_running: bool = False
    last_poll_time: Optional[datetime] = None
    events_succeeded: int = 0
    events_failed: int = 0


class Relayer:
    """
    Runs the poll loop and the price refresher.

    The poll loop runs on the calling thread; prices refresh on a
    background thread. Both go through the context lock.
    """

    def __init__(self, context: RelayerContext):
        self.ctx = context
        self.processor = EventProcessor(context)
        self.stats = RelayerStats()
        self._stop = threading.Event()
        self._price_thread: Optional[threading.Thread] = None

    def refresh_prices(self) -> PriceQuote:
        """
        Fetch prices into the cache.

        A fallback quote never replaces a real cached price.
        """
        try:
            quote = self.ctx.oracle.fetch_prices()
        except Exception as e:
            logger.warning("price_refresh_failed", error=str(e))
            return self.ctx.state.price_cache

        with self.ctx.lock:
            cached = self.ctx.state.price_cache
            if quote.is_fallback and cached.stx_usd > 0 and not cached.is_fallback:
                logger.warning("price_fallback_ignored", cached_stx_usd=cached.stx_usd)
                return cached

            self.ctx.state.price_cache = quote
            self.ctx.persist()

        logger.info(
            "prices_updated",
            stx_usd=quote.stx_usd,
            sbtc_usd=quote.sbtc_usd,
            fallback=quote.is_fallback,
        )
        return quote

    def poll_once(self) -> list[ProcessedEvent]:
        """One poll tick: fetch new events and dispatch them."""
        with self.ctx.lock:
            since = self.ctx.state.last_processed_block

        try:
            events = self.ctx.monitor.fetch_events_since(since)
        except Exception as e:
            logger.error("poll_failed", since_height=since, error=str(e))
            return []
        finally:
            self.stats.last_poll_time = utcnow()

        if not events:
            return []

        results = self.processor.process_batch(events, self._stop)
        for result in results:
            if result.succeeded:
                self.stats.events_succeeded += 1
            else:
                self.stats.events_failed += 1
        return results

    def run_once(self) -> list[ProcessedEvent]:
        """Refresh prices, then run a single poll tick."""
        self.refresh_prices()
        return self.poll_once()

    def run(self) -> None:
        """Run until ``stop`` is called."""
        self._stop.clear()
        self.stats.is_running = True
        logger.info(
            "relayer_starting",
            poll_interval=self.ctx.poll_interval_seconds,
            price_interval=self.ctx.price_interval_seconds,
            last_processed_block=self.ctx.state.last_processed_block,
        )

        self.refresh_prices()
        self._price_thread = threading.Thread(target=self._price_loop, name="price-refresh", daemon=True)
        self._price_thread.start()

        try:
            while not self._stop.is_set():
                results = self.poll_once()
                if results:
                    logger.info(
                        "poll_cycle_complete",
                        processed=len(results),
                        succeeded=self.stats.events_succeeded,
                        failed=self.stats.events_failed,
                        last_processed_block=self.ctx.state.last_processed_block,
                    )
                self._stop.wait(self.ctx.poll_interval_seconds)
        finally:
            self._stop.set()
            if self._price_thread is not None:
                self._price_thread.join(timeout=self.ctx.poll_interval_seconds)
            self.stats.is_running = False
            logger.info("relayer_stopped")

    def stop(self) -> None:
        """Ask the loop to finish the in-flight event and exit."""
        self._stop.set()
        logger.info("relayer_stopping")

    def _price_loop(self) -> None:
        while not self._stop.wait(self.ctx.price_interval_seconds):
            self.refresh_prices()
