"""Operator self-health: signer balance and ledger reachability."""
from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .errors import ChainReadError

logger = logging.getLogger(__name__)


class HealthMonitor:
    """Tracks operator-fatal conditions and decides whether new executions may start.

    Execution halts while the operator balance is at or below
    ``min_balance_wei`` or the ledger has failed ``failure_threshold`` times in a
    row. A later successful check clears the halt.
    """

    def __init__(
        self,
        chain: Any,
        store: Any,
        *,
        failure_threshold: int = 3,
        min_balance_wei: int = 0,
        clock=time.time,
    ) -> None:
        self.chain = chain
        self.store = store
        self.failure_threshold = failure_threshold
        self.min_balance_wei = min_balance_wei
        self._clock = clock
        self._lock = threading.Lock()
        self.consecutive_ledger_failures = 0
        self.operator_balance_wei: Optional[int] = None
        self.balance_error: Optional[str] = None
        self.last_check: Optional[float] = None
        self.last_summary: Dict[str, Any] = {}

    @classmethod
    def from_settings(cls, settings: Any, chain: Any, store: Any) -> "HealthMonitor":
        return cls(
            chain,
            store,
            failure_threshold=settings.ledger_failure_threshold,
            min_balance_wei=settings.min_operator_balance_wei,
        )

    def record_ledger_failure(self, reason: str = "") -> None:
        with self._lock:
            self.consecutive_ledger_failures += 1
            count = self.consecutive_ledger_failures
        if count >= self.failure_threshold:
            logger.error("Ledger failing for %s consecutive ticks or checks: %s", count, reason)
        else:
            logger.warning("Ledger failure %s/%s: %s", count, self.failure_threshold, reason)

    def record_ledger_success(self) -> None:
        with self._lock:
            if self.consecutive_ledger_failures:
                logger.info("Ledger reachable again after %s failures", self.consecutive_ledger_failures)
            self.consecutive_ledger_failures = 0

    @property
    def balance_low(self) -> bool:
        return self.operator_balance_wei is not None and self.operator_balance_wei <= self.min_balance_wei

    @property
    def ledger_down(self) -> bool:
        return self.consecutive_ledger_failures >= self.failure_threshold

    @property
    def execution_allowed(self) -> bool:
        return not (self.balance_low or self.ledger_down)

    def check(self) -> Dict[str, Any]:
        """Read the operator balance, ping the ledger and return a summary."""
        address = getattr(self.chain, "operator_address", None)
        if address:
            try:
                self.operator_balance_wei = self.chain.operator_balance()
                self.balance_error = None
            except ChainReadError as exc:
                self.balance_error = str(exc)
                logger.warning("Operator balance check failed: %s", exc)
        else:
            self.operator_balance_wei = None
            self.balance_error = None

        if self.store.ping():
            self.record_ledger_success()
            reachable = True
        else:
            self.record_ledger_failure("ping failed")
            reachable = False

        messages = []
        if self.balance_low:
            messages.append(f"operator balance {self.operator_balance_wei} wei at or below {self.min_balance_wei}")
            logger.error("Operator %s balance is %s wei; halting new executions", address, self.operator_balance_wei)
        if self.ledger_down:
            messages.append(f"ledger unreachable for {self.consecutive_ledger_failures} consecutive checks")
        if self.balance_error:
            messages.append(f"balance unavailable: {self.balance_error}")
        if not address:
            messages.append("no operator key configured")

        self.last_check = self._clock()
        self.last_summary = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "operator_address": address,
            "operator_balance_wei": None if self.operator_balance_wei is None else str(self.operator_balance_wei),
            "ledger_reachable": reachable,
            "consecutive_ledger_failures": self.consecutive_ledger_failures,
            "execution_allowed": self.execution_allowed,
            "status_message": "; ".join(messages) or "healthy",
        }
        return dict(self.last_summary)


__all__ = ["HealthMonitor"]
