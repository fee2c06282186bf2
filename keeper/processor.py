"""Keeper loop: polls the ledger for due payments and runs each through the executor."""
from __future__ import annotations

import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from .errors import LedgerStoreError
from .executor import Action, ExecutionOutcome, PaymentExecutor
from .health import HealthMonitor
from .resolver import DuePaymentResolver

logger = logging.getLogger(__name__)


@dataclass
class TickReport:
    tick_id: str
    started_at: float
    finished_at: Optional[float] = None
    outcomes: List[ExecutionOutcome] = field(default_factory=list)
    skipped: bool = False
    skip_reason: Optional[str] = None
    ledger_errors: List[str] = field(default_factory=list)

    @property
    def ledger_failed(self) -> bool:
        return bool(self.ledger_errors)

    def counts(self) -> Dict[str, int]:
        return dict(Counter(outcome.action.value for outcome in self.outcomes))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tick_id": self.tick_id,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "skipped": self.skipped,
            "skip_reason": self.skip_reason,
            "ledger_errors": list(self.ledger_errors),
            "ledger_failed": self.ledger_failed,
            "counts": self.counts(),
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
        }


class KeeperLoop:
    def __init__(
        self,
        settings: Any,
        ledger_store: Any,
        executor: PaymentExecutor,
        health: HealthMonitor,
        *,
        resolver: Optional[DuePaymentResolver] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.executor = executor
        self.health = health
        self.resolver = resolver or DuePaymentResolver(ledger_store, getattr(settings, "network", None))
        self._clock = clock
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.started_at = clock()
        self.last_report: Optional[TickReport] = None
        self.last_health: Dict[str, Any] = {}
        self.tick_count = 0
        self.totals: Counter = Counter()

    # ------------------------------------------------------------------

    def _fetch(self, reader: Callable[[int], List[Any]], now: int, report: TickReport, label: str) -> List[Any]:
        try:
            payments = reader(now)
        except LedgerStoreError as exc:
            report.ledger_errors.append(f"{label}: {exc}")
            logger.warning("[tick=%s] Failed to load due %s payments: %s", report.tick_id, label, exc)
            return []
        return payments

    def _run(self, runner: Callable[..., ExecutionOutcome], payment: Any, report: TickReport) -> ExecutionOutcome:
        tick_id = report.tick_id
        try:
            outcome = runner(payment, int(self._clock()), tick_id)
        except Exception as exc:
            logger.exception("[tick=%s payment=%s] Unexpected error: %s", tick_id, payment.id, exc)
            outcome = ExecutionOutcome(
                payment_id=payment.id,
                kind=payment.kind.value,
                action=Action.RETRY,
                reason=f"unexpected error: {exc}",
            )
        if outcome.ledger_error:
            report.ledger_errors.append(f"{payment.id}: {outcome.ledger_error}")
        return outcome

    def tick(self) -> TickReport:
        """Process every due payment once, scheduled first, earliest first."""
        tick_id = uuid4().hex[:12]
        now = int(self._clock())
        report = TickReport(tick_id=tick_id, started_at=now)

        if not self.health.execution_allowed:
            report.skipped = True
            report.skip_reason = self.health.last_summary.get("status_message") or "operator unhealthy"
            logger.warning("[tick=%s] Execution halted: %s", tick_id, report.skip_reason)
        else:
            scheduled = self._fetch(self.resolver.due_for, now, report, "scheduled")
            for payment in scheduled:
                report.outcomes.append(self._run(self.executor.execute, payment, report))
            recurring = self._fetch(self.resolver.recurring_due_for, now, report, "recurring")
            for payment in recurring:
                report.outcomes.append(self._run(self.executor.execute_recurring, payment, report))
            # the failure threshold counts ticks, not individual ledger calls
            if report.ledger_failed:
                self.health.record_ledger_failure("; ".join(report.ledger_errors))
            else:
                self.health.record_ledger_success()

        report.finished_at = self._clock()
        self.tick_count += 1
        self.totals.update(report.counts())
        self.last_report = report
        if report.outcomes:
            logger.info("[tick=%s] Processed %s payments: %s", tick_id, len(report.outcomes), report.counts())
        else:
            logger.debug("[tick=%s] No due payments", tick_id)
        return report

    def run_health_check(self) -> Dict[str, Any]:
        summary = self.health.check()
        self.last_health = summary
        if summary.get("execution_allowed"):
            logger.info(
                "Health check: balance=%s wei ledger_reachable=%s",
                summary.get("operator_balance_wei"),
                summary.get("ledger_reachable"),
            )
        else:
            logger.error("Health check: execution halted (%s)", summary.get("status_message"))
        return summary

    # ------------------------------------------------------------------

    @property
    def uptime_seconds(self) -> float:
        return max(self._clock() - self.started_at, 0.0)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_forever(self) -> None:
        """Blocking loop driving the tick and health-check timers until :meth:`stop`."""
        tick_interval = self.settings.tick_interval_seconds
        health_interval = self.settings.health_interval_seconds
        logger.info(
            "Starting keeper loop (tick=%ss health=%ss dry_run=%s)",
            tick_interval,
            health_interval,
            getattr(self.settings, "keeper_dry_run", None),
        )
        next_health = next_tick = self._clock()
        try:
            while not self._stop.is_set():
                now = self._clock()
                if now >= next_health:
                    try:
                        self.run_health_check()
                    except Exception as exc:  # pragma: no cover
                        logger.exception("Unexpected error in health check: %s", exc)
                    next_health = now + health_interval
                if now >= next_tick:
                    try:
                        self.tick()
                    except Exception as exc:  # pragma: no cover
                        logger.exception("Unexpected error in keeper tick: %s", exc)
                    next_tick = now + tick_interval
                sleep_for = max(min(next_tick, next_health) - self._clock(), 0)
                self._stop.wait(sleep_for)
        except KeyboardInterrupt:
            logger.info("Keeper loop stopped via keyboard interrupt")
        logger.info("Keeper loop stopped after %s ticks", self.tick_count)

    def start(self) -> threading.Thread:
        if self.running:
            return self._thread
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name="keeper-loop", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)


__all__ = ["KeeperLoop", "TickReport"]
