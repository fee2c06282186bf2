"""Per-payment execution state machine.

For every due payment the keeper consults the contract before deciding:

1. released on-chain  -> ledger becomes ``executed`` (catch-up, no write)
2. cancelled on-chain -> ledger becomes ``cancelled``
3. not due on-chain   -> nothing happens
4. otherwise          -> ``release()``; confirmed success marks ``executed``,
   transient failures are retried next tick, terminal ones mark ``failed``.

After a failed write the released/cancelled flags are read again, so a release
that lost a race against another actor is recorded as settled, not failed.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from . import fees
from .chain import ChainClient, InstantPaymentContract, TransactionReceipt
from .errors import (
    ChainReadError,
    ChainWriteError,
    LedgerConflictError,
    LedgerStoreError,
    WriteFailure,
    classify_exception,
)
from .journal import ExecutionJournal
from .ledger_store import LedgerStore
from .models import (
    AnyScheduledPayment,
    InstantPayment,
    PaymentStatus,
    RecurringPayment,
    RecurringStatus,
)
from .pending import PendingReleaseStore
from .recurring import installments_due, is_complete, next_installment_time

logger = logging.getLogger(__name__)

ALREADY_RELEASED = "already_released"
INSTANT_PAYMENT = "instant_payment"

# Recurring reverts caused by the payer's balance or allowance; the installment
# is skipped and retried instead of failing the schedule.
PAYER_FUNDING_ERRORS = (
    "insufficient balance",
    "insufficient allowance",
    "transfer amount exceeds balance",
    "transfer amount exceeds allowance",
    "transfer failed",
)


class Action(str, Enum):
    NOOP = "noop"
    MARK_EXECUTED = "mark_executed"
    MARK_CANCELLED = "mark_cancelled"
    MARK_FAILED = "mark_failed"
    RELEASE = "release"
    RETRY = "retry"


@dataclass(frozen=True)
class ObservedState:
    released: bool
    cancelled: bool
    release_time: int

    @property
    def label(self) -> str:
        if self.released:
            return "released"
        if self.cancelled:
            return "cancelled"
        return "pending"


@dataclass(frozen=True)
class Decision:
    action: Action
    reason: str


def decide(observed: ObservedState, now: int) -> Decision:
    """Pick the next step from on-chain state alone; the ledger copy is never trusted."""
    if observed.released:
        return Decision(Action.MARK_EXECUTED, "released on-chain")
    if observed.cancelled:
        return Decision(Action.MARK_CANCELLED, "cancelled on-chain")
    wait = observed.release_time - now
    if wait > 0:
        return Decision(Action.NOOP, f"not due on-chain for another {wait}s")
    return Decision(Action.RELEASE, "due")


@dataclass
class ExecutionOutcome:
    payment_id: str
    kind: str
    action: Action
    reason: str
    status: Optional[str] = None
    tx_hash: Optional[str] = None
    error_cause: Optional[str] = None
    chain_write: bool = False
    ledger_written: bool = False
    conflict: bool = False
    ledger_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["action"] = self.action.value
        return data


def _iso(timestamp: int) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


class PaymentExecutor:
    def __init__(
        self,
        chain: ChainClient,
        store: LedgerStore,
        *,
        pending: Optional[PendingReleaseStore] = None,
        journal: Optional[ExecutionJournal] = None,
        dry_run: Optional[bool] = None,
        failure_grace_seconds: int = 0,
        pending_ttl_seconds: int = 900,
        fee_bps: int = fees.STANDARD_FEE_BPS,
        pro_fee_bps: int = fees.PRO_FEE_BPS,
    ) -> None:
        self.chain = chain
        self.store = store
        self.pending = pending
        self.journal = journal or ExecutionJournal()
        self.dry_run = bool(getattr(chain, "dry_run", False)) if dry_run is None else dry_run
        self.failure_grace_seconds = failure_grace_seconds
        self.pending_ttl_seconds = pending_ttl_seconds
        self.fee_bps = fee_bps
        self.pro_fee_bps = pro_fee_bps

    @classmethod
    def from_settings(
        cls,
        settings: Any,
        chain: ChainClient,
        store: LedgerStore,
        *,
        pending: Optional[PendingReleaseStore] = None,
        journal: Optional[ExecutionJournal] = None,
    ) -> "PaymentExecutor":
        return cls(
            chain,
            store,
            pending=pending,
            journal=journal,
            dry_run=settings.keeper_dry_run,
            failure_grace_seconds=settings.failure_grace_seconds,
            pending_ttl_seconds=settings.pending_release_ttl_seconds,
            fee_bps=settings.fee_bps,
            pro_fee_bps=settings.pro_fee_bps,
        )

    # ------------------------------------------------------------------
    # logging helpers

    def _log(self, level: int, tick_id: str, payment_id: str, action: Action, message: str, *args: Any) -> None:
        logger.log(
            level,
            "[tick=%s payment=%s] " + message,
            tick_id,
            payment_id,
            *args,
            extra={"tick_id": tick_id, "payment_id": payment_id, "action": action.value},
        )

    def _outcome(self, payment: Any, tick_id: str, action: Action, reason: str, **kwargs: Any) -> ExecutionOutcome:
        outcome = ExecutionOutcome(
            payment_id=payment.id,
            kind=payment.kind.value,
            action=action,
            reason=reason,
            **kwargs,
        )
        level = logging.WARNING if action in (Action.MARK_FAILED, Action.RETRY) else logging.INFO
        if action is Action.NOOP:
            level = logging.DEBUG
        self._log(level, tick_id, payment.id, action, "%s: %s", action.value, reason)
        if action is not Action.NOOP:
            self.journal.record(
                event=action.value,
                payment_id=payment.id,
                tick_id=tick_id,
                kind=payment.kind.value,
                tx_hash=outcome.tx_hash,
                reason=reason,
                metadata={
                    key: value
                    for key, value in (
                        ("status", outcome.status),
                        ("error_cause", outcome.error_cause),
                        ("conflict", outcome.conflict or None),
                    )
                    if value is not None
                },
            )
        return outcome

    # ------------------------------------------------------------------
    # ledger writes

    def _write(
        self,
        payment: Any,
        fields: Dict[str, Any],
        tick_id: str,
        *,
        recurring: bool = False,
    ) -> tuple[bool, bool, Optional[str]]:
        """Conditionally update the ledger row. Returns (written, conflict, error)."""
        if self.dry_run:
            self._log(logging.INFO, tick_id, payment.id, Action.NOOP, "dry-run: would write %s", fields)
            return False, False, None
        try:
            if recurring:
                self.store.update_recurring(payment.id, fields, expected_status=payment.status.value)
            else:
                self.store.update_scheduled(payment.id, fields, expected_status=payment.status.value)
        except LedgerConflictError as exc:
            self._log(logging.WARNING, tick_id, payment.id, Action.NOOP, "ledger row changed concurrently: %s", exc)
            return False, True, None
        except LedgerStoreError as exc:
            self._log(logging.ERROR, tick_id, payment.id, Action.NOOP, "ledger write failed: %s", exc)
            return False, False, str(exc)
        return True, False, None

    def _settle(
        self,
        payment: AnyScheduledPayment,
        tick_id: str,
        action: Action,
        status: PaymentStatus,
        reason: str,
        fields: Dict[str, Any],
        **kwargs: Any,
    ) -> ExecutionOutcome:
        written, conflict, error = self._write(payment, {"status": status.value, **fields}, tick_id)
        return self._outcome(
            payment,
            tick_id,
            action,
            reason,
            status=status.value,
            ledger_written=written,
            conflict=conflict,
            ledger_error=error,
            **kwargs,
        )

    def _mark_executed(
        self,
        payment: AnyScheduledPayment,
        tick_id: str,
        now: int,
        tx_hash: str,
        reason: str,
        *,
        action: Action = Action.MARK_EXECUTED,
        chain_write: bool = False,
    ) -> ExecutionOutcome:
        outcome = self._settle(
            payment,
            tick_id,
            action,
            PaymentStatus.EXECUTED,
            reason,
            {"execution_tx_hash": tx_hash, "executed_at": _iso(now)},
            tx_hash=tx_hash,
            chain_write=chain_write,
        )
        if self.pending is not None and (outcome.ledger_written or outcome.conflict):
            self.pending.discard(payment.id)
        return outcome

    def _mark_failed(
        self, payment: AnyScheduledPayment, tick_id: str, reason: str, cause: WriteFailure
    ) -> ExecutionOutcome:
        return self._settle(
            payment,
            tick_id,
            Action.MARK_FAILED,
            PaymentStatus.FAILED,
            reason,
            {"error_message": reason[:500]},
            error_cause=cause.value,
        )

    # ------------------------------------------------------------------
    # scheduled payments

    def _observe(self, contract: Any) -> ObservedState:
        released = contract.is_released()
        if released:
            return ObservedState(released=True, cancelled=False, release_time=0)
        cancelled = contract.is_cancelled()
        if cancelled:
            return ObservedState(released=False, cancelled=True, release_time=0)
        return ObservedState(released=False, cancelled=False, release_time=contract.release_time())

    def _catch_up_hash(self, payment: AnyScheduledPayment) -> str:
        if self.pending is not None:
            release = self.pending.get(payment.id)
            if release is not None:
                return release.tx_hash
        if isinstance(payment, InstantPayment):
            return INSTANT_PAYMENT
        return ALREADY_RELEASED

    def execute(self, payment: AnyScheduledPayment, now: int, tick_id: str) -> ExecutionOutcome:
        if payment.status is not PaymentStatus.PENDING:
            return self._outcome(payment, tick_id, Action.NOOP, f"ledger status is {payment.status.value}")

        contract = self.chain.payment_contract(payment)

        resolved = self._resolve_pending(payment, contract, now, tick_id)
        if resolved is not None:
            return resolved

        try:
            observed = self._observe(contract)
        except ChainReadError as exc:
            return self._outcome(payment, tick_id, Action.RETRY, f"chain read failed: {exc}", error_cause="read")

        decision = decide(observed, now)
        if decision.action is Action.MARK_EXECUTED:
            return self._mark_executed(payment, tick_id, now, self._catch_up_hash(payment), decision.reason)
        if decision.action is Action.MARK_CANCELLED:
            return self._settle(
                payment, tick_id, Action.MARK_CANCELLED, PaymentStatus.CANCELLED, decision.reason, {}
            )
        if decision.action is Action.NOOP:
            return self._outcome(payment, tick_id, Action.NOOP, decision.reason)
        return self._release(payment, contract, now, tick_id)

    def _release(self, payment: AnyScheduledPayment, contract: Any, now: int, tick_id: str) -> ExecutionOutcome:
        self._log(logging.INFO, tick_id, payment.id, Action.RELEASE, "releasing %s", contract.address)
        try:
            receipt = contract.release()
        except ChainWriteError as exc:
            return self._after_write_failure(payment, contract, exc, now, tick_id)
        except Exception as exc:
            wrapped = ChainWriteError(str(exc), cause=classify_exception(exc))
            return self._after_write_failure(payment, contract, wrapped, now, tick_id)

        if receipt is None:
            return self._outcome(payment, tick_id, Action.NOOP, "dry-run: release not submitted")

        self._audit_amounts(payment, contract, receipt, tick_id)
        return self._mark_executed(
            payment,
            tick_id,
            now,
            receipt.tx_hash,
            f"released in block {receipt.block_number}",
            action=Action.RELEASE,
            chain_write=True,
        )

    def _after_write_failure(
        self,
        payment: AnyScheduledPayment,
        contract: Any,
        exc: ChainWriteError,
        now: int,
        tick_id: str,
    ) -> ExecutionOutcome:
        if exc.tx_hash and exc.transient and self.pending is not None:
            self.pending.record(payment.id, exc.tx_hash, payment.contract_address, submitted_at=now)
        try:
            released = contract.is_released()
            cancelled = not released and contract.is_cancelled()
        except ChainReadError as read_exc:
            return self._outcome(
                payment,
                tick_id,
                Action.RETRY,
                f"release failed ({exc}) and re-check failed ({read_exc})",
                error_cause=exc.cause.value,
            )

        if released:
            # a reverted write did not settle the contract; only an unconfirmed one may have
            tx_hash = self._catch_up_hash(payment)
            if exc.tx_hash and exc.transient:
                tx_hash = exc.tx_hash
            return self._mark_executed(payment, tick_id, now, tx_hash, "already released on-chain")
        if cancelled:
            return self._settle(
                payment, tick_id, Action.MARK_CANCELLED, PaymentStatus.CANCELLED, "already cancelled on-chain", {}
            )
        if exc.transient:
            return self._outcome(
                payment, tick_id, Action.RETRY, f"transient failure: {exc}", error_cause=exc.cause.value
            )
        if now < payment.release_time + self.failure_grace_seconds:
            return self._outcome(
                payment,
                tick_id,
                Action.RETRY,
                f"terminal failure within grace period: {exc}",
                error_cause=exc.cause.value,
            )
        return self._mark_failed(payment, tick_id, str(exc), exc.cause)

    def _resolve_pending(
        self, payment: AnyScheduledPayment, contract: Any, now: int, tick_id: str
    ) -> Optional[ExecutionOutcome]:
        if self.pending is None:
            return None
        release = self.pending.get(payment.id)
        if release is None:
            return None
        tx_hash = release.tx_hash

        receipt = self.chain.receipt_if_confirmed(tx_hash)
        if receipt is not None:
            if receipt.status == 1:
                return self._mark_executed(payment, tick_id, now, tx_hash, "submitted release confirmed")
            self.pending.discard(payment.id)
            failure = ChainWriteError(
                f"release transaction {tx_hash} reverted", cause=WriteFailure.REVERTED, tx_hash=tx_hash
            )
            return self._after_write_failure(payment, contract, failure, now, tick_id)

        age = release.age(now)
        if not release.is_stale(self.pending_ttl_seconds, now):
            return self._outcome(payment, tick_id, Action.NOOP, f"release {tx_hash} awaiting confirmation ({age}s)")

        self._log(
            logging.WARNING,
            tick_id,
            payment.id,
            Action.RETRY,
            "no receipt for %s after %ss; re-checking contract",
            tx_hash,
            age,
        )
        self.pending.discard(payment.id)
        return None

    def _audit_amounts(
        self, payment: AnyScheduledPayment, contract: Any, receipt: TransactionReceipt, tick_id: str
    ) -> None:
        if isinstance(contract, InstantPaymentContract):
            return
        try:
            amounts = contract.amounts()
        except ChainReadError as exc:
            self._log(logging.DEBUG, tick_id, payment.id, Action.RELEASE, "getAmounts() unavailable: %s", exc)
            return
        if fees.protocol_fee(amounts.amount_to_payee, self.fee_bps) == amounts.protocol_fee:
            rate = "standard"
        elif fees.protocol_fee(amounts.amount_to_payee, self.pro_fee_bps) == amounts.protocol_fee:
            rate = "pro"
        else:
            rate = "unknown"
        if not amounts.is_conserved:
            self._log(
                logging.WARNING,
                tick_id,
                payment.id,
                Action.RELEASE,
                "fee split not conserved: %s + %s != %s",
                amounts.amount_to_payee,
                amounts.protocol_fee,
                amounts.total_locked,
            )
        self.journal.record(
            event="fee_audit",
            payment_id=payment.id,
            tick_id=tick_id,
            kind=payment.kind.value,
            tx_hash=receipt.tx_hash,
            metadata={
                "amount_to_payee": str(amounts.amount_to_payee),
                "protocol_fee": str(amounts.protocol_fee),
                "total_locked": str(amounts.total_locked),
                "conserved": amounts.is_conserved,
                "rate": rate,
            },
        )

    # ------------------------------------------------------------------
    # recurring payments

    def _recurring_outcome(
        self,
        payment: RecurringPayment,
        tick_id: str,
        action: Action,
        reason: str,
        fields: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> ExecutionOutcome:
        if fields is None:
            return self._outcome(payment, tick_id, action, reason, **kwargs)
        written, conflict, error = self._write(payment, fields, tick_id, recurring=True)
        return self._outcome(
            payment,
            tick_id,
            action,
            reason,
            status=fields.get("status"),
            ledger_written=written,
            conflict=conflict,
            ledger_error=error,
            **kwargs,
        )

    def _progress_fields(self, payment: RecurringPayment, months_paid: int, now: int) -> Dict[str, Any]:
        executed = max(payment.executed_months, months_paid)
        complete = is_complete(payment, executed)
        return {
            "executed_months": executed,
            "next_execution_time": next_installment_time(payment, executed),
            "status": (RecurringStatus.COMPLETED if complete else RecurringStatus.ACTIVE).value,
            "updated_at": _iso(now),
        }

    def execute_recurring(self, payment: RecurringPayment, now: int, tick_id: str) -> ExecutionOutcome:
        if payment.status.is_terminal:
            return self._outcome(payment, tick_id, Action.NOOP, f"ledger status is {payment.status.value}")

        contract = self.chain.recurring_contract(payment.contract_address)
        try:
            if contract.is_cancelled():
                return self._recurring_outcome(
                    payment,
                    tick_id,
                    Action.MARK_CANCELLED,
                    "cancelled on-chain",
                    {"status": RecurringStatus.CANCELLED.value, "updated_at": _iso(now)},
                )
            months_paid = contract.months_paid()
            remaining = contract.months_remaining()
            if remaining <= 0:
                fields = self._progress_fields(payment, months_paid, now)
                fields["status"] = RecurringStatus.COMPLETED.value
                fields["next_execution_time"] = None
                return self._recurring_outcome(
                    payment, tick_id, Action.MARK_EXECUTED, "all installments paid on-chain", fields
                )
            executable = contract.can_execute()
            next_due = None if executable else contract.next_payment_time()
        except ChainReadError as exc:
            return self._outcome(payment, tick_id, Action.RETRY, f"chain read failed: {exc}", error_cause="read")

        if not executable:
            if months_paid > payment.executed_months:
                return self._recurring_outcome(
                    payment,
                    tick_id,
                    Action.NOOP,
                    f"not executable until {next_due}; ledger synced to {months_paid} paid installments",
                    self._progress_fields(payment, months_paid, now),
                )
            return self._outcome(
                payment, tick_id, Action.NOOP, f"canExecute() is false; next installment at {next_due}"
            )

        due = installments_due(payment, now, executed_months=months_paid)
        self._log(
            logging.INFO,
            tick_id,
            payment.id,
            Action.RELEASE,
            "executing installment %s (%s due, %s remaining)",
            months_paid + 1,
            due,
            remaining,
        )
        try:
            receipt = contract.execute_installment()
        except ChainWriteError as exc:
            return self._after_recurring_failure(payment, contract, exc, now, tick_id)
        except Exception as exc:
            wrapped = ChainWriteError(str(exc), cause=classify_exception(exc))
            return self._after_recurring_failure(payment, contract, wrapped, now, tick_id)

        if receipt is None:
            return self._outcome(payment, tick_id, Action.NOOP, "dry-run: installment not submitted")

        try:
            months_after = contract.months_paid()
        except ChainReadError:
            months_after = months_paid + 1
        fields = self._progress_fields(payment, months_after, now)
        fields["last_execution_hash"] = receipt.tx_hash
        return self._recurring_outcome(
            payment,
            tick_id,
            Action.RELEASE,
            f"installment {fields['executed_months']} executed in block {receipt.block_number}",
            fields,
            tx_hash=receipt.tx_hash,
            chain_write=True,
        )

    def _after_recurring_failure(
        self,
        payment: RecurringPayment,
        contract: Any,
        exc: ChainWriteError,
        now: int,
        tick_id: str,
    ) -> ExecutionOutcome:
        message = str(exc).lower()
        if any(needle in message for needle in PAYER_FUNDING_ERRORS):
            return self._outcome(
                payment,
                tick_id,
                Action.RETRY,
                "payer balance or allowance insufficient; skipped",
                error_cause=exc.cause.value,
            )
        try:
            cancelled = contract.is_cancelled()
        except ChainReadError:
            cancelled = False
        if cancelled:
            return self._recurring_outcome(
                payment,
                tick_id,
                Action.MARK_CANCELLED,
                "cancelled on-chain",
                {"status": RecurringStatus.CANCELLED.value, "updated_at": _iso(now)},
            )
        if exc.transient:
            return self._outcome(
                payment, tick_id, Action.RETRY, f"transient failure: {exc}", error_cause=exc.cause.value
            )
        due_at = payment.next_execution_time or payment.first_payment_time
        if now < due_at + self.failure_grace_seconds:
            return self._outcome(
                payment,
                tick_id,
                Action.RETRY,
                f"terminal failure within grace period: {exc}",
                error_cause=exc.cause.value,
            )
        return self._recurring_outcome(
            payment,
            tick_id,
            Action.MARK_FAILED,
            str(exc),
            {"status": RecurringStatus.FAILED.value, "error_message": str(exc)[:500], "updated_at": _iso(now)},
            error_cause=exc.cause.value,
        )


__all__ = [
    "ALREADY_RELEASED",
    "Action",
    "Decision",
    "ExecutionOutcome",
    "INSTANT_PAYMENT",
    "ObservedState",
    "PaymentExecutor",
    "decide",
]
