"""
Data models for relayer state and observed chain events.

Persisted models use camelCase JSON keys. Keys written by earlier relayer
releases (``lastStacksBlock``, ``txHash``, ``suiTxDigest``...) are still
accepted when loading a state file.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

import structlog
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

# microSTX per STX
STX_DECIMAL_FACTOR = 1_000_000

INTERRUPTED_MESSAGE = "Interrupted before completion; check Sui before retrying"

logger = structlog.get_logger()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _StateModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ProcessedEvent(_StateModel):
    """Outcome of one dispatched source-chain event."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    event_id: str = Field(
        default="",
        serialization_alias="eventId",
        validation_alias=AliasChoices("eventId", "event_id"),
    )
    source_tx_hash: str = Field(
        serialization_alias="sourceTxHash",
        validation_alias=AliasChoices("sourceTxHash", "txHash", "source_tx_hash"),
    )
    destination_tx_ref: Optional[str] = Field(
        default=None,
        serialization_alias="destinationTxRef",
        validation_alias=AliasChoices("destinationTxRef", "suiTxDigest", "destination_tx_ref"),
    )
    source_tx_ref: Optional[str] = Field(
        default=None,
        serialization_alias="sourceTxRef",
        validation_alias=AliasChoices("sourceTxRef", "stacksTxId", "source_tx_ref"),
    )
    timestamp: datetime = Field(default_factory=utcnow)
    status: Literal["success", "failed"]
    error_message: Optional[str] = Field(
        default=None,
        serialization_alias="errorMessage",
        validation_alias=AliasChoices("errorMessage", "error", "error_message"),
    )
    warning: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _pending_as_failed(cls, data: Any) -> Any:
        # Earlier releases wrote "pending" before submitting the Sui transaction
        if isinstance(data, dict) and data.get("status") == "pending":
            data = {**data, "status": "failed"}
            if not any(data.get(key) for key in ("errorMessage", "error", "error_message")):
                data["errorMessage"] = INTERRUPTED_MESSAGE
        return data

    @property
    def succeeded(self) -> bool:
        return self.status == "success"


class PriceQuote(_StateModel):
    """Cached USD prices for the collateral assets."""

    stx_usd: float = Field(
        default=0.0,
        serialization_alias="sourceAssetUsd",
        validation_alias=AliasChoices("sourceAssetUsd", "stxUsd", "stx_usd"),
    )
    sbtc_usd: float = Field(
        default=0.0,
        serialization_alias="observedAsset2Usd",
        validation_alias=AliasChoices("observedAsset2Usd", "sbtcUsd", "sbtc_usd"),
    )
    last_update: Optional[datetime] = Field(
        default=None,
        serialization_alias="lastUpdate",
        validation_alias=AliasChoices("lastUpdate", "last_update"),
    )
    is_fallback: bool = Field(
        default=False,
        serialization_alias="isFallback",
        validation_alias=AliasChoices("isFallback", "is_fallback"),
    )


class RelayerState(_StateModel):
    """Aggregate durable relayer state."""

    last_processed_block: int = Field(
        default=0,
        ge=0,
        serialization_alias="lastProcessedBlock",
        validation_alias=AliasChoices("lastProcessedBlock", "lastStacksBlock", "last_processed_block"),
    )
    processed_events: dict[str, ProcessedEvent] = Field(
        default_factory=dict,
        serialization_alias="processedEvents",
        validation_alias=AliasChoices("processedEvents", "processed_events"),
    )
    address_mappings: dict[str, str] = Field(
        default_factory=dict,
        serialization_alias="addressMappings",
        validation_alias=AliasChoices("addressMappings", "address_mappings"),
    )
    price_cache: PriceQuote = Field(
        default_factory=PriceQuote,
        serialization_alias="priceCache",
        validation_alias=AliasChoices("priceCache", "price_cache"),
    )

    @field_validator("processed_events", mode="before")
    @classmethod
    def _tolerate_bad_entries(cls, value: Any) -> Any:
        """
        Keep unreadable ledger entries as failed records.

        Dropping one would let the relayer dispatch that event again, and
        rejecting the whole state would lose the cursor with it.
        """
        if not isinstance(value, dict):
            return value

        entries: dict[str, Any] = {}
        for key, raw in value.items():
            if isinstance(raw, ProcessedEvent):
                entries[key] = raw
                continue
            try:
                entries[key] = ProcessedEvent.model_validate(raw)
            except ValidationError as e:
                logger.warning("ledger_entry_unreadable", event_id=key, error=str(e))
                entries[key] = ProcessedEvent(
                    event_id=key,
                    source_tx_hash=str(key).partition(":")[0],
                    status="failed",
                    error_message=f"Unreadable ledger entry: {e.error_count()} validation error(s)",
                )
        return entries

    @model_validator(mode="after")
    def _fill_event_ids(self) -> "RelayerState":
        for key, event in list(self.processed_events.items()):
            if not event.event_id:
                self.processed_events[key] = event.model_copy(update={"event_id": key})
        return self

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)


class EventKind(str, Enum):
    """Kinds of collateral events emitted by the Stacks contract."""

    DEPOSIT = "deposit"
    WITHDRAWAL_REQUEST = "withdraw-request"

    @property
    def id_suffix(self) -> str:
        # Ledger keys predate the enum values
        return "deposit" if self is EventKind.DEPOSIT else "withdraw"


@dataclass(frozen=True)
class SourceChainEvent:
    """A collateral event parsed from a Stacks contract log."""

    kind: EventKind
    tx_id: str
    block_height: int
    principal: str
    amount: int
    destination_address: Optional[str] = None
    observed_at: datetime = field(default_factory=utcnow)

    @property
    def id(self) -> str:
        return f"{self.tx_id}:{self.kind.id_suffix}"

    @property
    def sort_key(self) -> tuple[int, str]:
        return (self.block_height, self.tx_id)


@dataclass
class BorrowPosition:
    """A borrower's position as stored in the Sui borrow registry."""

    object_id: str
    stx_collateral: int
    sbtc_collateral: int
    usdc_borrowed: int
    is_liquidatable: bool

    @property
    def stx_collateral_display(self) -> float:
        return self.stx_collateral / STX_DECIMAL_FACTOR

    @property
    def usdc_borrowed_display(self) -> float:
        # USDC uses 6 decimals on Sui
        return self.usdc_borrowed / 1_000_000


@dataclass(frozen=True)
class RegistrationNotice:
    """Emitted after a deposit was registered on Sui."""

    source_principal: str
    destination_address: str
    amount: int
    destination_tx_ref: str
    registered_at: datetime = field(default_factory=utcnow)


class CollateralStatus(BaseModel):
    """Registration status of a Stacks principal's collateral."""

    status: Literal["pending", "registered", "error", "invalid"]
    message: str
    source_principal: str
    destination_address: Optional[str] = None
    stx_amount: Optional[float] = None
    borrow_power: Optional[float] = None
    object_id: Optional[str] = None
    destination_tx_ref: Optional[str] = None
