"""
Classification of collateral contract log payloads.

The collateral contract prints a tuple for every state change, for example:

    (tuple (amount u1000000) (event "collateral-deposited")
           (sui-address "0x...") (user 'ST1...))

``parse_contract_log`` turns such a payload into a ``SourceChainEvent`` or
returns ``None`` when the log is not a collateral event.
"""

import re
from datetime import datetime
from typing import Any, Optional

import structlog

from .clarity import ClarityParseError, Principal, UInt, parse_repr
from .models import EventKind, SourceChainEvent, utcnow

logger = structlog.get_logger()

EVENT_MARKERS: dict[str, EventKind] = {
    "collateral-deposited": EventKind.DEPOSIT,
    "withdraw-requested": EventKind.WITHDRAWAL_REQUEST,
}

# Tuple keys the contract has used for the event name, in lookup order
MARKER_KEYS = ("event", "type", "action", "name")

SUI_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


def classify(fields: dict[str, Any]) -> Optional[EventKind]:
    """Find which collateral event a printed tuple describes."""
    for key in MARKER_KEYS:
        value = fields.get(key)
        if isinstance(value, str) and value in EVENT_MARKERS:
            return EVENT_MARKERS[value]
    for value in fields.values():
        if isinstance(value, str) and not isinstance(value, Principal) and value in EVENT_MARKERS:
            return EVENT_MARKERS[value]
    return None


def _principal(fields: dict[str, Any], sender: str) -> str:
    user = fields.get("user")
    if isinstance(user, Principal):
        return str(user)
    return sender


def _amount(fields: dict[str, Any]) -> Optional[int]:
    amount = fields.get("amount")
    if isinstance(amount, UInt):
        return int(amount)
    return None


def _sui_address(fields: dict[str, Any]) -> Optional[str]:
    value = fields.get("sui-address")
    if isinstance(value, str) and SUI_ADDRESS_RE.match(value):
        return value.lower()
    return None


def parse_contract_log(
    repr_text: str,
    *,
    tx_id: str,
    block_height: int,
    sender: str,
    observed_at: Optional[datetime] = None,
) -> Optional[SourceChainEvent]:
    """
    Parse one contract log entry.

    Args:
        repr_text: Clarity repr of the printed value
        tx_id: Transaction that emitted the log
        block_height: Block containing the transaction
        sender: Transaction sender, used when the payload has no ``user``

    Returns:
        The parsed event, or None if the log is not a collateral event
    """
    try:
        value = parse_repr(repr_text)
    except ClarityParseError:
        return None
    if not isinstance(value, dict):
        return None

    kind = classify(value)
    if kind is None:
        return None

    amount = _amount(value)
    principal = _principal(value, sender)
    if amount is None:
        logger.warning("collateral_event_without_amount", tx_id=tx_id, kind=kind.value)
        return None

    observed_at = observed_at or utcnow()

    match kind:
        case EventKind.DEPOSIT:
            destination = _sui_address(value)
            if destination is None:
                # Still returned: dispatch records the rejection
                logger.warning(
                    "deposit_missing_sui_address",
                    tx_id=tx_id,
                    user=principal,
                    raw=value.get("sui-address"),
                )
            return SourceChainEvent(
                kind=kind,
                tx_id=tx_id,
                block_height=block_height,
                principal=principal,
                amount=amount,
                destination_address=destination,
                observed_at=observed_at,
            )
        case EventKind.WITHDRAWAL_REQUEST:
            return SourceChainEvent(
                kind=kind,
                tx_id=tx_id,
                block_height=block_height,
                principal=principal,
                amount=amount,
                observed_at=observed_at,
            )
