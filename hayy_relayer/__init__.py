"""
Hayy Relayer

Watches the Stacks collateral contract for deposit and withdrawal-request
events and mirrors them into the Hayy borrow registry on Sui:

- deposits register STX collateral for the depositor's Sui address
- withdrawal requests release collateral on Sui, then on Stacks, once the
  borrower has no outstanding debt

Usage:
    # List recent collateral events
    hayy-relayer events

    # Run the relayer
    hayy-relayer run

    # Run once (for testing)
    hayy-relayer run --once
"""

__version__ = "0.1.0"

from .config import RelayerConfig, Settings
from .models import ProcessedEvent, RelayerState, SourceChainEvent
from .monitor import StacksEventMonitor
from .relayer import EventProcessor, Relayer, RelayerContext
from .state import JsonStateStore
from .db import SqlStateStore
from .sui import SuiRegistryClient
from .unlocker import StacksUnlocker
from .price import PriceOracle

__all__ = [
    "__version__",
    "RelayerConfig",
    "Settings",
    "ProcessedEvent",
    "RelayerState",
    "SourceChainEvent",
    "StacksEventMonitor",
    "EventProcessor",
    "Relayer",
    "RelayerContext",
    "JsonStateStore",
    "SqlStateStore",
    "SuiRegistryClient",
    "StacksUnlocker",
    "PriceOracle",
]
