"""
Health endpoint for the `run --with-health` worker.

Serves:
  /health  liveness: kill switch state and age of the last scheduler tick
  /status  latest account snapshot and per-strategy run stamps

Read-only; nothing here touches the exchange.
"""
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse


@dataclass
class HealthState:
    scheduler: object
    monitor: Optional[object] = None
    started_at: float = field(default_factory=time.time)
    # A tick older than this marks the worker unhealthy
    stale_after_seconds: float = 60.0


def _tick_age(scheduler) -> Optional[float]:
    last_tick = getattr(scheduler, "last_tick", None)
    if last_tick is None:
        return None
    return (datetime.now(timezone.utc) - last_tick).total_seconds()


def create_health_app(state: HealthState) -> FastAPI:
    app = FastAPI(title="cashcarry worker health")

    @app.get("/")
    async def root():
        return {"status": "ok", "service": "cashcarry-worker"}

    @app.get("/health")
    async def health():
        kill_switch = state.scheduler.kill_switch.get_status()
        age = _tick_age(state.scheduler)
        status = "healthy"
        if age is not None and age > state.stale_after_seconds:
            status = "unhealthy"
        elif kill_switch["active"]:
            status = "halted"
        return JSONResponse(
            content={
                "status": status,
                "uptime_seconds": int(time.time() - state.started_at),
                "environment": os.getenv("ENVIRONMENT", "unknown"),
                "last_tick_age_seconds": round(age, 1) if age is not None else None,
                "kill_switch": kill_switch,
            },
            status_code=503 if status == "unhealthy" else 200,
        )

    @app.get("/status")
    async def status():
        snapshot = state.monitor.latest if state.monitor is not None else None
        return {
            "scheduler": state.scheduler.get_status(),
            "account": snapshot.to_dict() if snapshot is not None else None,
        }

    return app
