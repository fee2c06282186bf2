"""Typed payment records parsed from Ledger Store rows."""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

ZERO_ADDRESS = "0x" + "0" * 40


class PaymentStatus(str, Enum):
    PENDING = "pending"
    EXECUTED = "executed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


class RecurringStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RecurringStatus.COMPLETED, RecurringStatus.CANCELLED, RecurringStatus.FAILED)


class PaymentKind(str, Enum):
    SINGLE = "single"
    BATCH = "batch"
    INSTANT = "instant"
    RECURRING = "recurring"


def _coerce_int(value: Any) -> Any:
    # PostgREST returns bigint/numeric columns as strings or floats depending on type
    if isinstance(value, bool):
        raise ValueError("expected an integer, got a boolean")
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError("expected an integer value")
        return int(value)
    if isinstance(value, str):
        candidate = value.strip()
        if "." in candidate:
            whole, _, frac = candidate.partition(".")
            if frac.strip("0"):
                raise ValueError(f"expected an integer value, got {value!r}")
            candidate = whole
        return int(candidate)
    return value


class _LedgerRow(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    id: str
    contract_address: str = Field(pattern=r"^0x[a-fA-F0-9]{40}$")
    payer: Optional[str] = Field(default=None, alias="payer_address")
    payee: Optional[str] = Field(default=None, alias="payee_address")
    token_symbol: str = "ETH"
    token_address: Optional[str] = None
    network: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def stringify_id(cls, value: Any) -> str:
        return str(value)

    @field_validator("token_symbol", mode="before")
    @classmethod
    def default_symbol(cls, value: Any) -> str:
        return str(value) if value else "ETH"

    @property
    def is_erc20(self) -> bool:
        if self.token_address and self.token_address.lower() != ZERO_ADDRESS:
            return True
        return self.token_symbol.upper() != "ETH"

    @property
    def short_id(self) -> str:
        return self.id[:8]


class ScheduledPayment(_LedgerRow):
    kind: PaymentKind
    amount: int = 0
    amount_decimals: Optional[int] = None
    release_time: int
    status: PaymentStatus = PaymentStatus.PENDING
    cancellable: bool = False
    execution_tx_hash: Optional[str] = None
    executed_at: Optional[str] = None

    @field_validator("amount", "release_time", mode="before")
    @classmethod
    def coerce_ints(cls, value: Any) -> Any:
        return _coerce_int(value)

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, value: int) -> int:
        if value < 0:
            raise ValueError("amount must be non-negative")
        return value

    @field_validator("cancellable", mode="before")
    @classmethod
    def coerce_cancellable(cls, value: Any) -> Any:
        return bool(value) if value is not None else False


class SinglePayment(ScheduledPayment):
    kind: Literal[PaymentKind.SINGLE] = PaymentKind.SINGLE


class BatchPayment(ScheduledPayment):
    kind: Literal[PaymentKind.BATCH] = PaymentKind.BATCH
    batch_count: int = 0

    @field_validator("batch_count", mode="before")
    @classmethod
    def default_batch_count(cls, value: Any) -> Any:
        return 0 if value is None else _coerce_int(value)


class InstantPayment(ScheduledPayment):
    kind: Literal[PaymentKind.INSTANT] = PaymentKind.INSTANT


AnyScheduledPayment = Union[SinglePayment, BatchPayment, InstantPayment]


class RecurringPayment(_LedgerRow):
    kind: Literal[PaymentKind.RECURRING] = PaymentKind.RECURRING
    monthly_amount: int
    total_months: Optional[int] = None
    executed_months: int = 0
    first_payment_time: int
    interval_seconds: int = 2_592_000
    next_execution_time: Optional[int] = None
    status: RecurringStatus = RecurringStatus.PENDING
    last_execution_hash: Optional[str] = None

    @field_validator(
        "monthly_amount",
        "total_months",
        "executed_months",
        "first_payment_time",
        "interval_seconds",
        "next_execution_time",
        mode="before",
    )
    @classmethod
    def coerce_ints(cls, value: Any) -> Any:
        if value is None:
            return None
        return _coerce_int(value)

    @field_validator("executed_months", mode="before")
    @classmethod
    def default_executed(cls, value: Any) -> Any:
        return 0 if value is None else value

    @field_validator("interval_seconds")
    @classmethod
    def validate_interval(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("interval_seconds must be positive")
        return value

    @field_validator("total_months")
    @classmethod
    def validate_total(cls, value: Optional[int]) -> Optional[int]:
        # 0 is how the contracts encode an open-ended schedule
        if value is not None and value <= 0:
            return None
        return value

    @property
    def is_bounded(self) -> bool:
        return self.total_months is not None


def parse_scheduled_row(row: Dict[str, Any]) -> AnyScheduledPayment:
    """Pick the payment variant from the row flags and validate it."""
    data = dict(row)
    data.pop("kind", None)
    if data.get("is_instant") is True:
        return InstantPayment.model_validate(data)
    if data.get("is_batch") is True:
        return BatchPayment.model_validate(data)
    return SinglePayment.model_validate(data)


def parse_recurring_row(row: Dict[str, Any], *, default_interval: Optional[int] = None) -> RecurringPayment:
    data = dict(row)
    data.pop("kind", None)
    if data.get("interval_seconds") in (None, "") and default_interval is not None:
        data["interval_seconds"] = default_interval
    if data.get("first_payment_time") in (None, ""):
        # older rows only carry start_date
        data["first_payment_time"] = data.get("start_date")
    return RecurringPayment.model_validate(data)


class ContractAmounts(BaseModel):
    model_config = ConfigDict(frozen=True)

    amount_to_payee: int
    protocol_fee: int
    total_locked: int

    @property
    def is_conserved(self) -> bool:
        return self.amount_to_payee + self.protocol_fee == self.total_locked


__all__ = [
    "AnyScheduledPayment",
    "BatchPayment",
    "ContractAmounts",
    "InstantPayment",
    "PaymentKind",
    "PaymentStatus",
    "RecurringPayment",
    "RecurringStatus",
    "ScheduledPayment",
    "SinglePayment",
    "parse_recurring_row",
    "parse_scheduled_row",
]
