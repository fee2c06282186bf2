"""HTTP health and status surface for the keeper."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from .health import HealthMonitor
from .processor import KeeperLoop


class HealthResponse(BaseModel):
    status: str
    uptime_seconds: float
    last_check: Optional[str] = None
    last_tick_id: Optional[str] = None
    halted: bool
    dry_run: bool
    tick_count: int
    counts: Dict[str, int]
    operator: Dict[str, Any]


def _iso(timestamp: Optional[float]) -> Optional[str]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


def create_app(loop: KeeperLoop, health: HealthMonitor) -> FastAPI:
    app = FastAPI(title="Payment Keeper", version="1.0.0")

    @app.get("/health", response_model=HealthResponse)
    def read_health() -> HealthResponse:
        report = loop.last_report
        halted = not health.execution_allowed
        return HealthResponse(
            status="halted" if halted else "ok",
            uptime_seconds=loop.uptime_seconds,
            last_check=_iso(report.finished_at if report else None),
            last_tick_id=report.tick_id if report else None,
            halted=halted,
            dry_run=bool(getattr(loop.settings, "keeper_dry_run", False)),
            tick_count=loop.tick_count,
            counts=dict(loop.totals),
            operator=dict(health.last_summary),
        )

    @app.get("/status")
    def read_status() -> dict:
        report = loop.last_report
        if report is None:
            raise HTTPException(status_code=404, detail="No tick has run yet")
        return report.to_dict()

    return app


def run_api(app: FastAPI, settings: Any) -> None:
    """Run the FastAPI app using uvicorn."""
    import uvicorn  # Imported lazily to avoid mandatory dependency in tests

    config = uvicorn.Config(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level="info",
    )
    server = uvicorn.Server(config)
    server.install_signal_handlers = False
    server.run()


__all__ = ["create_app", "run_api"]
