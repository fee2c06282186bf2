"""PostgREST client for the payment ledger (Supabase REST)."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import requests
from pydantic import ValidationError

from .errors import LedgerConflictError, LedgerStoreError
from .models import (
    AnyScheduledPayment,
    PaymentStatus,
    RecurringPayment,
    RecurringStatus,
    parse_recurring_row,
    parse_scheduled_row,
)

logger = logging.getLogger(__name__)


class LedgerStore:
    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        scheduled_table: str = "scheduled_payments",
        recurring_table: str = "recurring_payments",
        recurring_interval: Optional[int] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.scheduled_table = scheduled_table
        self.recurring_table = recurring_table
        self.recurring_interval = recurring_interval
        self._http = session or requests.Session()
        self._http.headers.update({"Accept": "application/json", "Content-Type": "application/json"})
        if api_key:
            self._http.headers.update({"apikey": api_key, "Authorization": f"Bearer {api_key}"})

    @classmethod
    def from_settings(cls, settings: Any, session: Optional[requests.Session] = None) -> "LedgerStore":
        return cls(
            settings.ledger_url,
            api_key=settings.ledger_api_key,
            timeout=settings.ledger_timeout_seconds,
            scheduled_table=settings.scheduled_table,
            recurring_table=settings.recurring_table,
            recurring_interval=settings.recurring_interval_seconds,
            session=session,
        )

    def _table_url(self, table: str) -> str:
        return f"{self.base_url}/rest/v1/{table}"

    def _request(
        self,
        method: str,
        table: str,
        *,
        params: Dict[str, str],
        json_body: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> List[Dict[str, Any]]:
        url = self._table_url(table)
        try:
            response = self._http.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=headers,
                timeout=self.timeout,
            )
            response.raise_for_status()
            payload = response.json() if response.content else []
        except requests.RequestException as exc:
            raise LedgerStoreError(f"Ledger {method} {table} failed: {exc}") from exc
        except ValueError as exc:
            raise LedgerStoreError(f"Ledger {method} {table} returned invalid JSON") from exc
        if not isinstance(payload, list):
            raise LedgerStoreError(f"Ledger {method} {table} returned unexpected payload: {payload!r}")
        return [row for row in payload if isinstance(row, dict)]

    def pending_scheduled(self, now: int, network: Optional[str] = None) -> List[AnyScheduledPayment]:
        params = {
            "select": "*",
            "status": f"eq.{PaymentStatus.PENDING.value}",
            "release_time": f"lte.{int(now)}",
            "order": "release_time.asc",
        }
        if network:
            params["network"] = f"eq.{network}"
        rows = self._request("GET", self.scheduled_table, params=params)
        payments: List[AnyScheduledPayment] = []
        for row in rows:
            try:
                payments.append(parse_scheduled_row(row))
            except ValidationError as exc:
                logger.warning("Skipping malformed scheduled payment row %s: %s", row.get("id"), exc)
        return payments

    def due_recurring(self, now: int, network: Optional[str] = None) -> List[RecurringPayment]:
        params = {
            "select": "*",
            "status": f"in.({RecurringStatus.PENDING.value},{RecurringStatus.ACTIVE.value})",
            "next_execution_time": f"lte.{int(now)}",
            "order": "next_execution_time.asc",
        }
        if network:
            params["network"] = f"eq.{network}"
        rows = self._request("GET", self.recurring_table, params=params)
        payments: List[RecurringPayment] = []
        for row in rows:
            try:
                payments.append(parse_recurring_row(row, default_interval=self.recurring_interval))
            except ValidationError as exc:
                logger.warning("Skipping malformed recurring payment row %s: %s", row.get("id"), exc)
        return payments

    def _conditional_update(
        self, table: str, payment_id: str, fields: Dict[str, Any], expected_status: str
    ) -> Dict[str, Any]:
        params = {"id": f"eq.{payment_id}", "status": f"eq.{expected_status}"}
        rows = self._request(
            "PATCH",
            table,
            params=params,
            json_body=fields,
            headers={"Prefer": "return=representation"},
        )
        if not rows:
            raise LedgerConflictError(
                f"{table} row {payment_id} is no longer {expected_status!r}; update skipped"
            )
        return rows[0]

    def update_scheduled(
        self,
        payment_id: str,
        fields: Dict[str, Any],
        expected_status: str = PaymentStatus.PENDING.value,
    ) -> Dict[str, Any]:
        """PATCH one scheduled row only if its status still equals ``expected_status``."""
        return self._conditional_update(self.scheduled_table, payment_id, fields, expected_status)

    def update_recurring(
        self,
        payment_id: str,
        fields: Dict[str, Any],
        expected_status: str,
    ) -> Dict[str, Any]:
        return self._conditional_update(self.recurring_table, payment_id, fields, expected_status)

    def ping(self) -> bool:
        try:
            self._request("GET", self.scheduled_table, params={"select": "id", "limit": "1"})
        except LedgerStoreError as exc:
            logger.warning("Ledger ping failed: %s", exc)
            return False
        return True


__all__ = ["LedgerStore"]
