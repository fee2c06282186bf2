"""Selects the payments that are due on a given keeper tick."""
from __future__ import annotations

import logging
from typing import List, Optional

from .ledger_store import LedgerStore
from .models import AnyScheduledPayment, PaymentStatus, RecurringPayment

logger = logging.getLogger(__name__)


class DuePaymentResolver:
    """Reads due payments fresh from the ledger on every call; nothing is cached."""

    def __init__(self, store: LedgerStore, network: Optional[str] = None) -> None:
        self.store = store
        self.network = network

    def _other_network(self, network: Optional[str]) -> bool:
        return bool(self.network and network and network != self.network)

    def due_for(self, now: int) -> List[AnyScheduledPayment]:
        rows = self.store.pending_scheduled(now, self.network)
        due = [
            payment
            for payment in rows
            if payment.status is PaymentStatus.PENDING
            and payment.release_time <= now
            and not self._other_network(payment.network)
        ]
        if len(due) != len(rows):
            logger.debug("Dropped %s scheduled rows that were not due", len(rows) - len(due))
        due.sort(key=lambda payment: (payment.release_time, payment.id))
        return due

    def recurring_due_for(self, now: int) -> List[RecurringPayment]:
        rows = self.store.due_recurring(now, self.network)
        due = [
            payment
            for payment in rows
            if not payment.status.is_terminal
            and not self._other_network(payment.network)
            and (payment.next_execution_time or payment.first_payment_time) <= now
        ]
        due.sort(key=lambda payment: (payment.next_execution_time or payment.first_payment_time, payment.id))
        return due


__all__ = ["DuePaymentResolver"]
