"""
Error types raised by the relayer and its chain clients.

Transport failures surface as ``httpx.HTTPError`` or ``SuiRPCError`` and are
handled by the caller's schedule. The classes below describe outcomes the
relayer core records in the processed-event ledger.
"""

from typing import Optional


class RelayerError(Exception):
    """Base class for relayer errors."""


class ChainCallError(RelayerError):
    """A destination-chain transaction executed but reported failure."""

    def __init__(self, message: str, tx_ref: Optional[str] = None):
        self.tx_ref = tx_ref
        super().__init__(message)


class SourceChainError(RelayerError):
    """A source-chain follow-up transaction could not be submitted."""


class InsufficientFundsError(SourceChainError):
    """The relayer's fee-paying account cannot cover the transaction fee."""


class BroadcastError(SourceChainError):
    """The source-chain node rejected the transaction broadcast."""

    def __init__(self, message: str, reason: Optional[str] = None):
        self.reason = reason
        super().__init__(message)


class PriceUnavailableError(RelayerError):
    """No usable price is cached for collateral valuation."""


class EventRejected(RelayerError):
    """A business rule refused to act on an event."""
