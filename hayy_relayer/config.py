"""
Configuration management for the Hayy relayer.

Every setting is read from the environment (or a ``.env`` file). Missing or
invalid required values raise ``pydantic.ValidationError`` so the process
never starts half-configured.
"""

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

CONTRACT_ID_RE = re.compile(r"^S[0-9A-Z]{27,40}\.[a-zA-Z][a-zA-Z0-9_-]{0,127}$")
SUI_OBJECT_ID_RE = re.compile(r"^0x[0-9a-fA-F]{1,64}$")

LogLevel = Literal["trace", "debug", "info", "warn", "error"]


class Settings(BaseSettings):
    """Environment-based settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Stacks (source chain)
    stacks_api_url: str = Field(default="https://api.testnet.hiro.so", alias="STACKS_API_URL")
    stacks_network: Literal["mainnet", "testnet"] = Field(default="testnet", alias="STACKS_NETWORK")
    stacks_collateral_contract: str = Field(
        ...,
        description="Collateral contract identifier, ADDRESS.contract-name",
        alias="STACKS_COLLATERAL_CONTRACT",
    )
    stacks_confirmations: int = Field(default=0, ge=0, alias="STACKS_CONFIRMATIONS")
    stacks_unlock_fee: int = Field(
        default=2000,
        gt=0,
        description="Fee in microSTX for admin unlock transactions",
        alias="STACKS_UNLOCK_FEE",
    )

    # Sui (destination chain)
    sui_rpc_url: str = Field(default="https://fullnode.testnet.sui.io:443", alias="SUI_RPC_URL")
    sui_network: Literal["mainnet", "testnet", "devnet"] = Field(default="testnet", alias="SUI_NETWORK")
    sui_borrow_registry_id: str = Field(..., alias="SUI_BORROW_REGISTRY_ID")
    sui_package_id: str = Field(..., alias="SUI_PACKAGE_ID")
    sui_gas_budget: int = Field(default=50_000_000, gt=0, alias="SUI_GAS_BUDGET")

    # Signing keys
    relayer_stacks_private_key: SecretStr = Field(..., alias="RELAYER_STACKS_PRIVATE_KEY")
    relayer_sui_private_key: SecretStr = Field(..., alias="RELAYER_SUI_PRIVATE_KEY")

    # Price feed
    coingecko_api_key: Optional[SecretStr] = Field(default=None, alias="COINGECKO_API_KEY")

    # Scheduling
    poll_interval_ms: int = Field(default=5000, gt=0, alias="POLL_INTERVAL_MS")
    price_update_interval_ms: int = Field(default=60_000, gt=0, alias="PRICE_UPDATE_INTERVAL_MS")
    event_delay_ms: int = Field(
        default=1000,
        ge=0,
        description="Pause between two dispatched events",
        alias="EVENT_DELAY_MS",
    )
    http_timeout_seconds: float = Field(default=30.0, gt=0, alias="HTTP_TIMEOUT_SECONDS")

    # State
    state_file: Path = Field(default=Path("./relayer-state.json"), alias="STATE_FILE")
    state_database_url: Optional[str] = Field(
        default=None,
        description="SQLAlchemy URL; when set, state is kept in a database instead of STATE_FILE",
        alias="STATE_DATABASE_URL",
    )

    log_level: LogLevel = Field(default="info", alias="LOG_LEVEL")

    @field_validator("stacks_api_url", "sui_rpc_url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("must be an http(s) URL")
        return value.rstrip("/")

    @field_validator("stacks_collateral_contract")
    @classmethod
    def _check_contract_id(cls, value: str) -> str:
        if not CONTRACT_ID_RE.match(value):
            raise ValueError("expected ADDRESS.contract-name")
        return value

    @field_validator("sui_borrow_registry_id", "sui_package_id")
    @classmethod
    def _check_object_id(cls, value: str) -> str:
        if not SUI_OBJECT_ID_RE.match(value):
            raise ValueError("expected a 0x-prefixed hex object id")
        return value.lower()

    @field_validator("log_level", mode="before")
    @classmethod
    def _lower_log_level(cls, value: object) -> object:
        return value.lower() if isinstance(value, str) else value

    @property
    def contract_address(self) -> str:
        return self.stacks_collateral_contract.split(".", 1)[0]

    @property
    def contract_name(self) -> str:
        return self.stacks_collateral_contract.split(".", 1)[1]

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000

    @property
    def price_update_interval_seconds(self) -> float:
        return self.price_update_interval_ms / 1000

    @property
    def event_delay_seconds(self) -> float:
        return self.event_delay_ms / 1000


@dataclass
class RelayerConfig:
    """Full relayer configuration."""

    settings: Settings

    @classmethod
    def from_env(cls, env_path: Optional[Path] = None) -> "RelayerConfig":
        """Load configuration from environment."""
        settings = Settings(_env_file=env_path) if env_path else Settings()
        return cls(settings=settings)
