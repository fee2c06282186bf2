#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional


def _read_json_lines(path: Path) -> Iterable[dict[str, Any]]:
    with path.open("r", encoding="utf-8") as handle:
        for line in handle:
            line = line.strip()
            if not line:
                continue
            try:
                value = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(value, dict):
                yield value


@dataclass
class PaymentSummary:
    kind: str = ""
    events: list[str] = field(default_factory=list)
    tx_hash: Optional[str] = None
    last_reason: Optional[str] = None
    last_event_ts: Optional[str] = None
    fee_conserved: Optional[bool] = None
    fee_rate: Optional[str] = None


def summarize(entries: Iterable[dict[str, Any]]) -> tuple[Counter, dict[str, PaymentSummary]]:
    events: Counter = Counter()
    payments: dict[str, PaymentSummary] = {}
    for entry in entries:
        payment_id = entry.get("payment_id")
        event = entry.get("event")
        if not isinstance(payment_id, str) or not isinstance(event, str):
            continue
        events[event] += 1
        summary = payments.setdefault(payment_id, PaymentSummary())
        summary.kind = str(entry.get("kind") or summary.kind)
        summary.last_event_ts = entry.get("timestamp") or summary.last_event_ts
        if event == "fee_audit":
            metadata = entry.get("metadata") or {}
            summary.fee_conserved = bool(metadata.get("conserved"))
            summary.fee_rate = metadata.get("rate")
            continue
        summary.events.append(event)
        if entry.get("tx_hash"):
            summary.tx_hash = entry["tx_hash"]
        if entry.get("reason"):
            summary.last_reason = entry["reason"]
    return events, payments


def render_markdown(events: Counter, payments: dict[str, PaymentSummary], *, label: str = "") -> str:
    title = "Keeper journal summary"
    if label:
        title += f" ({label})"
    lines = [f"# {title}", "", f"Generated: {datetime.now().isoformat(timespec='seconds')}", ""]
    lines.append("## Events")
    lines.append("")
    for event, count in sorted(events.items()):
        lines.append(f"- {event}: {count}")
    lines.append("")

    failed = [pid for pid, summary in payments.items() if "mark_failed" in summary.events]
    unconserved = [pid for pid, summary in payments.items() if summary.fee_conserved is False]
    lines.append("## Attention")
    lines.append("")
    if not failed and not unconserved:
        lines.append("- nothing to report")
    for pid in sorted(failed):
        lines.append(f"- failed: {pid} ({payments[pid].last_reason or 'no reason recorded'})")
    for pid in sorted(unconserved):
        lines.append(f"- fee split not conserved: {pid} (tx {payments[pid].tx_hash})")
    lines.append("")

    lines.append("## Payments")
    lines.append("")
    lines.append("| payment | kind | events | tx | fee rate |")
    lines.append("| --- | --- | --- | --- | --- |")
    for pid in sorted(payments):
        summary = payments[pid]
        lines.append(
            f"| {pid} | {summary.kind} | {', '.join(summary.events)} | {summary.tx_hash or ''} | {summary.fee_rate or ''} |"
        )
    lines.append("")
    return "\n".join(lines)


def main(argv: Optional[list[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Summarize the keeper execution journal (JSON lines)")
    ap.add_argument("--journal", required=True, help="Path to the KEEPER_JOURNAL_PATH file")
    ap.add_argument("--label", default="", help="Optional label to embed in the report title (ex: stage, prod)")
    ap.add_argument("--out", default="", help="Write markdown report to this path (optional)")
    args = ap.parse_args(argv)

    journal = Path(args.journal).expanduser()
    if not journal.exists():
        ap.error(f"journal not found: {journal}")

    events, payments = summarize(_read_json_lines(journal))
    report = render_markdown(events, payments, label=args.label)
    if args.out:
        Path(args.out).expanduser().write_text(report, encoding="utf-8")
    else:
        print(report)
    return 1 if any(summary.fee_conserved is False for summary in payments.values()) else 0


if __name__ == "__main__":
    raise SystemExit(main())
