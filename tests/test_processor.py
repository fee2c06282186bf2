import threading
from types import SimpleNamespace

from keeper.errors import LedgerStoreError
from keeper.executor import Action, ExecutionOutcome
from keeper.health import HealthMonitor
from keeper.models import RecurringPayment, parse_scheduled_row
from keeper.processor import KeeperLoop
from keeper.resolver import DuePaymentResolver

ADDRESS = "0x" + "ab" * 20
NOW = 1_700_000_000


def make_settings(**overrides):
    values = {
        "network": None,
        "tick_interval_seconds": 60,
        "health_interval_seconds": 300,
        "keeper_dry_run": False,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def scheduled(payment_id, release_time, **extra):
    row = {"id": payment_id, "contract_address": ADDRESS, "release_time": release_time, "status": "pending"}
    row.update(extra)
    return parse_scheduled_row(row)


def recurring(payment_id, next_time):
    return RecurringPayment.model_validate(
        {
            "id": payment_id,
            "contract_address": ADDRESS,
            "monthly_amount": 10,
            "first_payment_time": next_time,
            "next_execution_time": next_time,
            "status": "active",
        }
    )


class FakeStore:
    def __init__(self, scheduled_rows=(), recurring_rows=(), error=None):
        self.scheduled_rows = list(scheduled_rows)
        self.recurring_rows = list(recurring_rows)
        self.error = error
        self.reads = 0

    def pending_scheduled(self, now, network=None):
        self.reads += 1
        if self.error:
            raise self.error
        return list(self.scheduled_rows)

    def due_recurring(self, now, network=None):
        if self.error:
            raise self.error
        return list(self.recurring_rows)


class FakeExecutor:
    def __init__(self, explode_on=None):
        self.calls = []
        self.explode_on = explode_on

    def _outcome(self, payment, action):
        return ExecutionOutcome(payment_id=payment.id, kind=payment.kind.value, action=action, reason="test")

    def execute(self, payment, now, tick_id):
        self.calls.append(payment.id)
        if payment.id == self.explode_on:
            raise RuntimeError("boom")
        return self._outcome(payment, Action.RELEASE)

    def execute_recurring(self, payment, now, tick_id):
        self.calls.append(payment.id)
        return self._outcome(payment, Action.NOOP)


class FakeHealth:
    def __init__(self, allowed=True):
        self.execution_allowed = allowed
        self.last_summary = {"status_message": "operator balance 0 wei at or below 0"}
        self.failures = 0
        self.successes = 0
        self.checks = 0

    def record_ledger_failure(self, reason=""):
        self.failures += 1

    def record_ledger_success(self):
        self.successes += 1

    def check(self):
        self.checks += 1
        return {"execution_allowed": self.execution_allowed, "status_message": "healthy"}


def make_loop(store, executor=None, health=None, **settings):
    return KeeperLoop(
        make_settings(**settings),
        store,
        executor or FakeExecutor(),
        health or FakeHealth(),
        clock=lambda: NOW,
    )


def test_tick_processes_scheduled_then_recurring_earliest_first():
    store = FakeStore(
        scheduled_rows=[scheduled("late", NOW - 10), scheduled("early", NOW - 500), scheduled("future", NOW + 5)],
        recurring_rows=[recurring("r1", NOW - 1)],
    )
    executor = FakeExecutor()
    loop = make_loop(store, executor)

    report = loop.tick()

    assert executor.calls == ["early", "late", "r1"]
    assert report.counts() == {"release": 2, "noop": 1}
    assert not report.skipped
    assert loop.last_report is report
    assert loop.tick_count == 1
    assert loop.totals["release"] == 2


def test_one_failing_payment_does_not_stop_the_tick():
    store = FakeStore(scheduled_rows=[scheduled("a", NOW - 2), scheduled("b", NOW - 1)])
    executor = FakeExecutor(explode_on="a")
    report = make_loop(store, executor).tick()
    assert executor.calls == ["a", "b"]
    assert [outcome.action for outcome in report.outcomes] == [Action.RETRY, Action.RELEASE]


def test_ledger_failures_count_once_per_tick():
    health = FakeHealth()
    store = FakeStore(error=LedgerStoreError("unreachable"))
    report = make_loop(store, health=health).tick()
    assert report.outcomes == []
    assert len(report.ledger_errors) == 2
    assert report.ledger_failed
    assert health.failures == 1
    assert health.successes == 0


def test_ledger_write_errors_in_one_tick_count_once():
    class WriteFailingExecutor(FakeExecutor):
        def _outcome(self, payment, action):
            outcome = super()._outcome(payment, action)
            outcome.ledger_error = "503"
            return outcome

    store = FakeStore(scheduled_rows=[scheduled(name, NOW - 1) for name in ("a", "b", "c")])
    health = FakeHealth()
    report = make_loop(store, WriteFailingExecutor(), health=health).tick()
    assert len(report.ledger_errors) == 3
    assert health.failures == 1


def test_failure_threshold_counts_failed_ticks():
    monitor = HealthMonitor(
        SimpleNamespace(operator_address=None),
        SimpleNamespace(ping=lambda: True),
        failure_threshold=3,
    )
    loop = make_loop(FakeStore(error=LedgerStoreError("unreachable")), health=monitor)
    loop.tick()
    loop.tick()
    assert monitor.consecutive_ledger_failures == 2
    assert monitor.execution_allowed
    loop.tick()
    assert not monitor.execution_allowed
    assert loop.tick().skipped


def test_clean_tick_resets_ledger_failures():
    health = FakeHealth()
    make_loop(FakeStore(), health=health).tick()
    assert health.successes == 1
    assert health.failures == 0


def test_halted_operator_skips_execution():
    store = FakeStore(scheduled_rows=[scheduled("a", NOW - 2)])
    executor = FakeExecutor()
    report = make_loop(store, executor, health=FakeHealth(allowed=False)).tick()
    assert report.skipped
    assert "balance" in report.skip_reason
    assert executor.calls == []
    assert store.reads == 0


def test_resolver_filters_other_networks():
    store = FakeStore(
        scheduled_rows=[
            scheduled("base", NOW - 1, network="base_mainnet"),
            scheduled("other", NOW - 1, network="polygon"),
            scheduled("unknown", NOW - 1),
        ]
    )
    resolver = DuePaymentResolver(store, "base_mainnet")
    assert [payment.id for payment in resolver.due_for(NOW)] == ["base", "unknown"]


def test_report_serialises():
    store = FakeStore(scheduled_rows=[scheduled("a", NOW - 2)])
    report = make_loop(store).tick()
    data = report.to_dict()
    assert data["counts"] == {"release": 1}
    assert data["outcomes"][0]["action"] == "release"
    assert len(data["tick_id"]) == 12


def test_run_forever_checks_health_then_ticks_until_stopped():
    store = FakeStore()
    health = FakeHealth()
    loop = KeeperLoop(make_settings(tick_interval_seconds=3600), store, FakeExecutor(), health)

    original_tick = loop.tick
    ticked = threading.Event()

    def tick_and_signal():
        report = original_tick()
        ticked.set()
        return report

    loop.tick = tick_and_signal
    loop.start()
    assert ticked.wait(5)
    loop.stop(timeout=5)

    assert not loop.running
    assert health.checks == 1
    assert loop.tick_count == 1
    assert loop.last_health["status_message"] == "healthy"
