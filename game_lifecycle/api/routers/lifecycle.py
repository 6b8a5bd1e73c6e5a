"""Scheduler trigger for the lifecycle jobs.

``POST /api/jobs/lifecycle`` is called by external cron on a fixed cadence.
Every outcome is a JSON body, including bad input, lock contention and job
failure, so the scheduler never has to parse an HTML error page.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, status
from fastapi.responses import JSONResponse

from ...exceptions import UnknownJobError
from ...logging import logger
from ...services.runner import LifecycleRunner
from ..dependencies import get_lifecycle_runner, verify_job_secret
from ..schemas import LifecycleJobRequest

router = APIRouter(prefix="/api/jobs", tags=["lifecycle"])


@router.post("/lifecycle", dependencies=[Depends(verify_job_secret)])
def trigger_lifecycle_job(
    payload: LifecycleJobRequest | None = Body(None),
    runner: LifecycleRunner = Depends(get_lifecycle_runner),
) -> Any:
    payload = payload or LifecycleJobRequest()
    if not payload.job:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error": "Missing job parameter"},
        )

    try:
        report = runner.run(payload.job, skip_lock=payload.skip_lock)
    except UnknownJobError as exc:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error": str(exc)},
        )

    if report.get("error"):
        logger.error("lifecycle_trigger_failed", job=payload.job, error=report["error"])
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=report)
    return report
