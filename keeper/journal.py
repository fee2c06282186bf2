"""Append-only JSON-lines audit trail of keeper decisions."""
from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional


class ExecutionJournal:
    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = path
        self._lock = threading.Lock()

    def record(
        self,
        *,
        event: str,
        payment_id: str,
        tick_id: str,
        kind: str,
        tx_hash: Optional[str] = None,
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, object]] = None,
    ) -> None:
        if not self.path:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            entry: Dict[str, object] = {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "event": event,
                "payment_id": payment_id,
                "tick_id": tick_id,
                "kind": kind,
            }
            if tx_hash:
                entry["tx_hash"] = tx_hash
            if reason:
                entry["reason"] = reason
            if metadata:
                entry["metadata"] = metadata
            with self._lock, self.path.open("a", encoding="utf-8") as handle:
                json.dump(entry, handle, separators=(",", ":"))
                handle.write("\n")
        except Exception:
            # Journal logging is best-effort; avoid impacting execution.
            return


__all__ = ["ExecutionJournal"]
