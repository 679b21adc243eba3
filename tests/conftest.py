from __future__ import annotations

from typing import Any, Optional

import httpx
import pytest

from hayy_relayer.errors import ChainCallError
from hayy_relayer.models import EventKind, PriceQuote, RelayerState, SourceChainEvent
from hayy_relayer.relayer import RelayerContext


class FakeResponse:
    def __init__(self, payload: Any = None, status_code: int = 200, text: str = ""):
        self._payload = payload
        self.status_code = status_code
        self.text = text

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            request = httpx.Request("GET", "https://example.invalid")
            raise httpx.HTTPStatusError(
                f"HTTP {self.status_code}",
                request=request,
                response=httpx.Response(self.status_code, request=request),
            )

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("no JSON body")
        return self._payload


class MemoryStateStore:
    """Keeps the last saved state as JSON, like the file store would."""

    def __init__(self, state: Optional[RelayerState] = None):
        self._snapshot = state.to_json() if state else None
        self.saves = 0
        self.fail_saves = False

    def load(self) -> RelayerState:
        if self._snapshot is None:
            return RelayerState()
        return RelayerState.model_validate_json(self._snapshot)

    def save(self, state: RelayerState) -> bool:
        if self.fail_saves:
            return False
        self._snapshot = state.to_json()
        self.saves += 1
        return True

    def close(self) -> None:
        return None


class FakeRegistry:
    """Stands in for SuiRegistryClient."""

    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self.debt: dict[str, bool] = {}
        self.debt_error: Optional[Exception] = None
        self.register_error: Optional[Exception] = None
        self.unlock_error: Optional[Exception] = None
        self._digests = 0

    def _digest(self) -> str:
        self._digests += 1
        return f"digest{self._digests}"

    def register_collateral(self, destination_address: str, amount: int, usd_value: float) -> str:
        self.calls.append(("register_collateral", destination_address, amount, usd_value))
        if self.register_error:
            raise self.register_error
        return self._digest()

    def unlock_collateral(self, destination_address: str, amount: int) -> str:
        self.calls.append(("unlock_collateral", destination_address, amount))
        if self.unlock_error:
            raise self.unlock_error
        return self._digest()

    def has_outstanding_debt(self, destination_address: str) -> bool:
        self.calls.append(("has_outstanding_debt", destination_address))
        if self.debt_error:
            raise self.debt_error
        return self.debt.get(destination_address, False)

    def get_position(self, destination_address: str):
        return None


class FakeUnlocker:
    """Stands in for StacksUnlocker."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, int]] = []
        self.error: Optional[Exception] = None

    def unlock_on_source(self, principal: str, amount: int) -> str:
        self.calls.append((principal, amount))
        if self.error:
            raise self.error
        return "0xstackstx"


class FakeMonitor:
    def __init__(self, batches: Optional[list[list[SourceChainEvent]]] = None):
        self.batches = list(batches or [])
        self.calls: list[int] = []
        self.error: Optional[Exception] = None

    def fetch_events_since(self, since_height: int) -> list[SourceChainEvent]:
        self.calls.append(since_height)
        if self.error:
            raise self.error
        if not self.batches:
            return []
        return [e for e in self.batches.pop(0) if e.block_height > since_height]


class FakeOracle:
    def __init__(self, quote: Optional[PriceQuote] = None):
        self.quote = quote or PriceQuote(stx_usd=0.5, sbtc_usd=65_000.0)
        self.calls = 0

    def fetch_prices(self) -> PriceQuote:
        self.calls += 1
        return self.quote


def deposit(
    tx_id: str = "0xaaa",
    principal: str = "P1",
    destination: Optional[str] = "0xAA",
    amount: int = 1_000_000,
    block_height: int = 100,
) -> SourceChainEvent:
    return SourceChainEvent(
        kind=EventKind.DEPOSIT,
        tx_id=tx_id,
        block_height=block_height,
        principal=principal,
        amount=amount,
        destination_address=destination,
    )


def withdrawal(
    tx_id: str = "0xbbb",
    principal: str = "P1",
    amount: int = 1_000_000,
    block_height: int = 110,
) -> SourceChainEvent:
    return SourceChainEvent(
        kind=EventKind.WITHDRAWAL_REQUEST,
        tx_id=tx_id,
        block_height=block_height,
        principal=principal,
        amount=amount,
    )


def make_context(
    state: Optional[RelayerState] = None,
    store: Optional[MemoryStateStore] = None,
    monitor: Optional[FakeMonitor] = None,
    oracle: Optional[FakeOracle] = None,
    on_registered=None,
) -> RelayerContext:
    store = store or MemoryStateStore(state)
    return RelayerContext(
        state=state if state is not None else store.load(),
        store=store,  # type: ignore[arg-type]
        monitor=monitor or FakeMonitor(),  # type: ignore[arg-type]
        destination=FakeRegistry(),  # type: ignore[arg-type]
        source=FakeUnlocker(),  # type: ignore[arg-type]
        oracle=oracle or FakeOracle(),  # type: ignore[arg-type]
        on_registered=on_registered,
        event_delay_seconds=0,
        poll_interval_seconds=0.01,
        price_interval_seconds=60,
    )


@pytest.fixture
def priced_state() -> RelayerState:
    return RelayerState(price_cache=PriceQuote(stx_usd=0.5, sbtc_usd=65_000.0))


@pytest.fixture
def chain_error() -> ChainCallError:
    return ChainCallError("Sui tx failed: MoveAbort in borrow_controller", tx_ref="digestX")
