"""Protocol fee arithmetic.

All amounts are integers in the token's smallest unit. Fees are a fixed
basis-point rate on the payee amount, always rounded down, so the payer locks
``amount + floor(amount * bps / 10000)`` and the payee receives exactly
``amount``.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

BPS_DENOMINATOR = 10_000
STANDARD_FEE_BPS = 179
PRO_FEE_BPS = 156


@dataclass(frozen=True)
class FeeQuote:
    amount_to_payee: int
    protocol_fee: int
    total_required: int
    fee_bps: int
    remainder: int = 0


def _check_amount(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{name} must be an integer in the smallest token unit")
    if value < 0:
        raise ValueError(f"{name} must be non-negative")
    return value


def _check_bps(fee_bps: Any) -> int:
    if isinstance(fee_bps, bool) or not isinstance(fee_bps, int):
        raise ValueError("fee_bps must be an integer")
    if not 0 <= fee_bps <= BPS_DENOMINATOR:
        raise ValueError(f"fee_bps must be between 0 and {BPS_DENOMINATOR}")
    return fee_bps


def protocol_fee(amount: int, fee_bps: int = STANDARD_FEE_BPS) -> int:
    amount = _check_amount(amount, "amount")
    fee_bps = _check_bps(fee_bps)
    return amount * fee_bps // BPS_DENOMINATOR


def total_required(amount: int, fee_bps: int = STANDARD_FEE_BPS) -> int:
    return amount + protocol_fee(amount, fee_bps)


def quote(amount: int, fee_bps: int = STANDARD_FEE_BPS) -> FeeQuote:
    fee = protocol_fee(amount, fee_bps)
    return FeeQuote(
        amount_to_payee=amount,
        protocol_fee=fee,
        total_required=amount + fee,
        fee_bps=fee_bps,
    )


def split_total(total: int, fee_bps: int = STANDARD_FEE_BPS) -> FeeQuote:
    """Largest payee amount whose locked total fits in ``total``.

    ``amount -> total_required(amount)`` is strictly increasing, so for any
    ``total`` produced by :func:`total_required` this returns the input
    amount with a zero remainder.
    """
    total = _check_amount(total, "total")
    fee_bps = _check_bps(fee_bps)
    amount = total * BPS_DENOMINATOR // (BPS_DENOMINATOR + fee_bps)
    while amount > 0 and total_required(amount, fee_bps) > total:
        amount -= 1
    while total_required(amount + 1, fee_bps) <= total:
        amount += 1
    fee = protocol_fee(amount, fee_bps)
    return FeeQuote(
        amount_to_payee=amount,
        protocol_fee=fee,
        total_required=amount + fee,
        fee_bps=fee_bps,
        remainder=total - amount - fee,
    )


def fee_bps_for(pro_verified: bool, settings: Any = None) -> int:
    """Rate for an account; verified professional accounts get the reduced rate."""
    if pro_verified:
        return int(getattr(settings, "pro_fee_bps", PRO_FEE_BPS))
    return int(getattr(settings, "fee_bps", STANDARD_FEE_BPS))


def recurring_total_required(monthly_amount: int, months: int, fee_bps: int = STANDARD_FEE_BPS) -> int:
    """Allowance a payer must grant to cover ``months`` more installments."""
    months = _check_amount(months, "months")
    return total_required(monthly_amount, fee_bps) * months


__all__ = [
    "BPS_DENOMINATOR",
    "FeeQuote",
    "PRO_FEE_BPS",
    "STANDARD_FEE_BPS",
    "fee_bps_for",
    "protocol_fee",
    "quote",
    "recurring_total_required",
    "split_total",
    "total_required",
]
