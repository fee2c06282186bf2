import importlib.util
import json
import sys
from pathlib import Path

from keeper.journal import ExecutionJournal


def load_module():
    module_path = Path(__file__).resolve().parents[1] / "scripts" / "summarize_journal.py"
    spec = importlib.util.spec_from_file_location("summarize_journal", module_path)
    assert spec and spec.loader
    module = importlib.util.module_from_spec(spec)
    sys.modules[spec.name] = module
    spec.loader.exec_module(module)
    return module


def test_summary_flags_failures_and_unconserved_fees(tmp_path: Path):
    journal_path = tmp_path / "journal.log"
    journal = ExecutionJournal(journal_path)
    journal.record(event="release", payment_id="p1", tick_id="t1", kind="single", tx_hash="0xaa")
    journal.record(
        event="fee_audit",
        payment_id="p1",
        tick_id="t1",
        kind="single",
        tx_hash="0xaa",
        metadata={"conserved": False, "rate": "unknown"},
    )
    journal.record(event="mark_failed", payment_id="p2", tick_id="t1", kind="batch", reason="out of gas")
    with journal_path.open("a", encoding="utf-8") as handle:
        handle.write("not json\n")

    module = load_module()
    out = tmp_path / "report.md"
    exit_code = module.main(["--journal", str(journal_path), "--out", str(out), "--label", "stage"])

    report = out.read_text()
    assert exit_code == 1
    assert "(stage)" in report
    assert "- failed: p2 (out of gas)" in report
    assert "- fee split not conserved: p1 (tx 0xaa)" in report
    assert "- release: 1" in report


def test_journal_without_path_is_a_noop(tmp_path: Path):
    ExecutionJournal(None).record(event="release", payment_id="p1", tick_id="t", kind="single")
    assert list(tmp_path.iterdir()) == []


def test_journal_lines_are_compact_json(tmp_path: Path):
    path = tmp_path / "nested" / "journal.log"
    ExecutionJournal(path).record(event="mark_cancelled", payment_id="p9", tick_id="t", kind="single")
    entry = json.loads(path.read_text().strip())
    assert entry["event"] == "mark_cancelled"
    assert "tx_hash" not in entry
