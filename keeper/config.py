"""Settings loader for the payment keeper."""
from __future__ import annotations

import re
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")


class KeeperSettings(BaseSettings):
    eth_rpc_url: str = Field(default="https://mainnet.base.org", alias="ETH_RPC_URL")
    chain_id: int = Field(default=8453, alias="ETH_CHAIN_ID")
    network: Optional[str] = Field(default=None, alias="KEEPER_NETWORK")
    rpc_timeout_seconds: float = Field(default=20.0, alias="KEEPER_RPC_TIMEOUT_SECONDS")
    receipt_timeout_seconds: int = Field(default=120, alias="KEEPER_RECEIPT_TIMEOUT_SECONDS")
    confirmations: int = Field(default=1, alias="KEEPER_CONFIRMATIONS")

    keeper_private_key: Optional[str] = Field(default=None, alias="KEEPER_PRIVATE_KEY")
    keeper_keystore_path: Optional[Path] = Field(default=None, alias="KEEPER_KEYSTORE_PATH")
    keeper_keystore_password: Optional[str] = Field(default=None, alias="KEEPER_KEYSTORE_PASSWORD")
    expected_operator_address: Optional[str] = Field(default=None, alias="KEEPER_OPERATOR_ADDRESS")

    keeper_dry_run: bool = Field(default=True, alias="KEEPER_DRY_RUN")

    ledger_url: str = Field(default="http://localhost:54321", alias="LEDGER_URL")
    ledger_api_key: Optional[str] = Field(default=None, alias="LEDGER_API_KEY")
    ledger_timeout_seconds: float = Field(default=10.0, alias="LEDGER_TIMEOUT_SECONDS")
    scheduled_table: str = Field(default="scheduled_payments", alias="LEDGER_SCHEDULED_TABLE")
    recurring_table: str = Field(default="recurring_payments", alias="LEDGER_RECURRING_TABLE")

    tick_interval_seconds: int = Field(default=60, alias="KEEPER_TICK_INTERVAL_SECONDS")
    health_interval_seconds: int = Field(default=300, alias="KEEPER_HEALTH_INTERVAL_SECONDS")
    ledger_failure_threshold: int = Field(default=3, alias="KEEPER_LEDGER_FAILURE_THRESHOLD")
    min_operator_balance_wei: int = Field(default=0, alias="KEEPER_MIN_OPERATOR_BALANCE_WEI")

    fee_bps: int = Field(default=179, alias="KEEPER_FEE_BPS")
    pro_fee_bps: int = Field(default=156, alias="KEEPER_PRO_FEE_BPS")

    recurring_interval_seconds: int = Field(default=2_592_000, alias="KEEPER_RECURRING_INTERVAL_SECONDS")

    failure_grace_seconds: int = Field(default=0, alias="KEEPER_FAILURE_GRACE_SECONDS")

    pending_releases_path: Optional[Path] = Field(default=None, alias="KEEPER_PENDING_RELEASES_PATH")
    pending_release_ttl_seconds: int = Field(default=900, alias="KEEPER_PENDING_RELEASE_TTL_SECONDS")
    journal_path: Optional[Path] = Field(default=None, alias="KEEPER_JOURNAL_PATH")

    api_enabled: bool = Field(default=True, alias="KEEPER_API_ENABLED")
    api_host: str = Field(default="0.0.0.0", alias="KEEPER_API_HOST")
    api_port: int = Field(default=3000, alias="PORT")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("expected_operator_address")
    @classmethod
    def validate_operator_address(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        candidate = value.strip()
        if not candidate:
            return None
        if not ADDRESS_PATTERN.match(candidate):
            raise ValueError("KEEPER_OPERATOR_ADDRESS must be a 42-character hex string")
        return candidate

    @field_validator("keeper_private_key")
    @classmethod
    def validate_private_key(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        candidate = value.strip()
        if not candidate:
            return None
        if not candidate.startswith("0x"):
            candidate = "0x" + candidate
        if not re.fullmatch(r"0x[0-9a-fA-F]{64}", candidate):
            raise ValueError("KEEPER_PRIVATE_KEY must be 32 bytes of hex")
        return candidate

    @field_validator("network", "ledger_api_key")
    @classmethod
    def blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        candidate = value.strip()
        return candidate or None

    @field_validator("ledger_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator(
        "chain_id",
        "receipt_timeout_seconds",
        "confirmations",
        "tick_interval_seconds",
        "health_interval_seconds",
        "ledger_failure_threshold",
        "recurring_interval_seconds",
        "pending_release_ttl_seconds",
        "api_port",
    )
    @classmethod
    def validate_positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("Value must be positive")
        return value

    @field_validator("rpc_timeout_seconds", "ledger_timeout_seconds")
    @classmethod
    def validate_positive_float(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("Value must be positive")
        return value

    @field_validator("failure_grace_seconds", "min_operator_balance_wei")
    @classmethod
    def validate_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("Value must not be negative")
        return value

    @field_validator("fee_bps", "pro_fee_bps")
    @classmethod
    def validate_bps(cls, value: int) -> int:
        if not 0 <= value <= 10_000:
            raise ValueError("Fee rate must be between 0 and 10000 basis points")
        return value

    @model_validator(mode="after")
    def validate_fee_order(self) -> "KeeperSettings":
        if self.pro_fee_bps > self.fee_bps:
            raise ValueError("KEEPER_PRO_FEE_BPS must not exceed KEEPER_FEE_BPS")
        return self

    @property
    def has_operator_key(self) -> bool:
        if self.keeper_private_key:
            return True
        return bool(self.keeper_keystore_path and self.keeper_keystore_password)


def load_settings(**overrides) -> KeeperSettings:
    """Build settings from the environment, letting callers override fields by name."""
    return KeeperSettings(**overrides)
