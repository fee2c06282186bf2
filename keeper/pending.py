"""Releases submitted on-chain whose receipt has not been seen yet.

A release that timed out after submission is remembered by payment id. Later
ticks poll its receipt instead of submitting a second ``release()``, and the
entry is discarded once the receipt settles it or it goes stale.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingRelease:
    payment_id: str
    tx_hash: str
    contract_address: str
    submitted_at: int

    def age(self, now: int) -> int:
        return max(now - self.submitted_at, 0)

    def is_stale(self, ttl_seconds: int, now: int) -> bool:
        return self.age(now) >= ttl_seconds

    @classmethod
    def from_dict(cls, payment_id: str, data: Dict[str, Any]) -> Optional["PendingRelease"]:
        tx_hash = data.get("tx_hash")
        if not tx_hash:
            return None
        try:
            submitted_at = int(data.get("submitted_at", 0))
        except (TypeError, ValueError):
            submitted_at = 0
        return cls(
            payment_id=payment_id,
            tx_hash=str(tx_hash),
            contract_address=str(data.get("contract_address") or ""),
            submitted_at=submitted_at,
        )


class PendingReleaseStore:
    """Pending releases keyed by payment id, optionally mirrored to a JSON file."""

    def __init__(self, path: Optional[Path] = None, clock=time.time) -> None:
        self.path = path
        self._clock = clock
        self._lock = threading.Lock()
        self._releases: Dict[str, PendingRelease] = self._load()

    def _load(self) -> Dict[str, PendingRelease]:
        if self.path is None or not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            logger.warning("Ignoring unreadable pending release file %s: %s", self.path, exc)
            return {}
        releases: Dict[str, PendingRelease] = {}
        if isinstance(data, dict):
            for payment_id, entry in data.items():
                release = PendingRelease.from_dict(str(payment_id), entry) if isinstance(entry, dict) else None
                if release is not None:
                    releases[release.payment_id] = release
        return releases

    def _persist(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            payment_id: {key: value for key, value in asdict(release).items() if key != "payment_id"}
            for payment_id, release in self._releases.items()
        }
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
        tmp.replace(self.path)

    def get(self, payment_id: str) -> Optional[PendingRelease]:
        with self._lock:
            return self._releases.get(payment_id)

    def record(
        self,
        payment_id: str,
        tx_hash: str,
        contract_address: str,
        submitted_at: Optional[int] = None,
    ) -> PendingRelease:
        release = PendingRelease(
            payment_id=payment_id,
            tx_hash=tx_hash,
            contract_address=contract_address,
            submitted_at=int(self._clock()) if submitted_at is None else submitted_at,
        )
        with self._lock:
            self._releases[payment_id] = release
            self._persist()
        return release

    def discard(self, payment_id: str) -> None:
        with self._lock:
            if self._releases.pop(payment_id, None) is not None:
                self._persist()


__all__ = ["PendingRelease", "PendingReleaseStore"]
