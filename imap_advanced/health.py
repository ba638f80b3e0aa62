"""FastAPI liveness / readiness probes for the trigger process."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from .models import HealthStatus, RunnerStatus

if TYPE_CHECKING:
    from .runner import TriggerRunner

_LIVE_STATUSES = (RunnerStatus.STARTING, RunnerStatus.RUNNING)


def create_health_app(runner: TriggerRunner) -> FastAPI:
    """Build the ``/health`` and ``/ready`` app around *runner*.

    ``/health`` reports the trigger's counters (strategy, last UID, last poll
    time, emitted and skipped cycles); ``/ready`` is true once the trigger
    has synced its watermark and armed its timer.
    """
    app = FastAPI(title=f"{runner.config.name} health", docs_url=None, redoc_url=None)

    @app.get("/health")
    async def health() -> JSONResponse:
        status = HealthStatus(
            name=runner.config.name,
            status=runner.status,
            uptime_seconds=time.monotonic() - runner.start_time,
            details=runner.health_details(),
        )
        code = 200 if runner.status in _LIVE_STATUSES else 503
        return JSONResponse(content=status.model_dump(mode="json"), status_code=code)

    @app.get("/ready")
    async def ready() -> JSONResponse:
        is_ready = runner.status == RunnerStatus.RUNNING
        return JSONResponse(content={"ready": is_ready}, status_code=200 if is_ready else 503)

    return app
