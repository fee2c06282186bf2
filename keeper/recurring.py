"""Installment arithmetic for recurring payments.

Installment ``k`` (zero based) falls at ``first_payment_time + k * interval``.
The on-chain contract owns the executed count; these helpers only project
timestamps from it.
"""
from __future__ import annotations

from typing import List, Optional

from .models import RecurringPayment


def _executed(payment: RecurringPayment, executed_months: Optional[int]) -> int:
    count = payment.executed_months if executed_months is None else int(executed_months)
    if count < 0:
        raise ValueError("executed_months must be non-negative")
    return count


def installment_timestamp(payment: RecurringPayment, k: int) -> int:
    if k < 0:
        raise ValueError("installment index must be non-negative")
    if payment.total_months is not None and k >= payment.total_months:
        raise ValueError(f"installment {k} is beyond the {payment.total_months}-month schedule")
    return payment.first_payment_time + k * payment.interval_seconds


def executed_timestamps(payment: RecurringPayment, executed_months: Optional[int] = None) -> List[int]:
    count = _executed(payment, executed_months)
    if payment.total_months is not None:
        count = min(count, payment.total_months)
    return [payment.first_payment_time + k * payment.interval_seconds for k in range(count)]


def installments_elapsed(payment: RecurringPayment, now: int) -> int:
    """Number of installments whose timestamp is at or before ``now``."""
    if now < payment.first_payment_time:
        return 0
    elapsed = (now - payment.first_payment_time) // payment.interval_seconds + 1
    if payment.total_months is not None:
        elapsed = min(elapsed, payment.total_months)
    return elapsed


def installments_due(payment: RecurringPayment, now: int, executed_months: Optional[int] = None) -> int:
    """Installments that have fallen due but not executed yet.

    Pass the on-chain ``monthsPaid`` as ``executed_months`` when known; the
    ledger copy can lag behind the contract.
    """
    executed = _executed(payment, executed_months)
    return max(installments_elapsed(payment, now) - executed, 0)


def is_complete(payment: RecurringPayment, executed_months: Optional[int] = None) -> bool:
    if payment.total_months is None:
        return False
    return _executed(payment, executed_months) >= payment.total_months


def next_installment_time(payment: RecurringPayment, executed_months: Optional[int] = None) -> Optional[int]:
    if is_complete(payment, executed_months):
        return None
    return payment.first_payment_time + _executed(payment, executed_months) * payment.interval_seconds


__all__ = [
    "executed_timestamps",
    "installment_timestamp",
    "installments_due",
    "installments_elapsed",
    "is_complete",
    "next_installment_time",
]
