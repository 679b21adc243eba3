"""
Recent registrations and per-principal collateral status.

``RecentRegistrations`` is handed to the event processor as its
registration callback. Status lookups consult it first so a deposit shows
up as registered right after dispatch, before the next poll.
"""

import threading
from datetime import timedelta
from typing import Callable, Optional

import structlog

from .models import BorrowPosition, CollateralStatus, RegistrationNotice, RelayerState, utcnow
from .price import calculate_borrowing_power, calculate_stx_value

logger = structlog.get_logger()

RECENT_REGISTRATION_TTL_SECONDS = 300

PositionReader = Callable[[str], Optional[BorrowPosition]]


def mask_address(address: str) -> str:
    """Shorten an address for display, e.g. ``0x1234...abcd``."""
    if len(address) <= 14:
        return address
    return f"{address[:6]}...{address[-4:]}"


class RecentRegistrations:
    """Thread-safe cache of registrations from the last few minutes."""

    def __init__(self, ttl_seconds: float = RECENT_REGISTRATION_TTL_SECONDS):
        self.ttl = timedelta(seconds=ttl_seconds)
        self._entries: dict[str, RegistrationNotice] = {}
        self._lock = threading.Lock()

    def __call__(self, notice: RegistrationNotice) -> None:
        self.record(notice)

    def record(self, notice: RegistrationNotice) -> None:
        with self._lock:
            self._entries[notice.source_principal] = notice
        logger.debug(
            "registration_recorded",
            user=notice.source_principal,
            sui_address=mask_address(notice.destination_address),
        )

    def get(self, principal: str) -> Optional[RegistrationNotice]:
        with self._lock:
            notice = self._entries.get(principal)
            if notice is None:
                return None
            if utcnow() - notice.registered_at > self.ttl:
                del self._entries[principal]
                return None
            return notice

    def prune(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        cutoff = utcnow() - self.ttl
        with self._lock:
            expired = [k for k, v in self._entries.items() if v.registered_at < cutoff]
            for key in expired:
                del self._entries[key]
        return len(expired)


def collateral_status(
    principal: str,
    state: RelayerState,
    recent: RecentRegistrations,
    read_position: PositionReader,
    stx_usd: Optional[float] = None,
) -> CollateralStatus:
    """
    Registration status for one Stacks principal.

    Only the requested principal's mapping is ever consulted or returned.
    """
    if not principal.startswith("S"):
        return CollateralStatus(
            status="invalid",
            message="Not a Stacks address",
            source_principal=principal,
        )

    price = stx_usd if stx_usd is not None else state.price_cache.stx_usd
    notice = recent.get(principal)
    destination = notice.destination_address if notice else state.address_mappings.get(principal)

    if destination is None:
        return CollateralStatus(
            status="pending",
            message="Deposit not yet observed by the relayer",
            source_principal=principal,
        )

    try:
        position = read_position(destination)
    except Exception as e:
        logger.error("collateral_status_read_failed", user=principal, error=str(e))
        return CollateralStatus(
            status="error",
            message=f"Could not read position: {e}",
            source_principal=principal,
        )

    if position is None or position.stx_collateral <= 0:
        return CollateralStatus(
            status="pending",
            message=f"Waiting for collateral on {mask_address(destination)}",
            source_principal=principal,
            destination_address=mask_address(destination),
        )

    usd_value = calculate_stx_value(position.stx_collateral, price)
    return CollateralStatus(
        status="registered",
        message="Collateral registered on Sui",
        source_principal=principal,
        destination_address=destination,
        stx_amount=position.stx_collateral_display,
        borrow_power=calculate_borrowing_power(usd_value),
        object_id=position.object_id,
        destination_tx_ref=notice.destination_tx_ref if notice else None,
    )
