"""Operator endpoints for lifecycle health, repairs, locks, the queue and backfills."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ...db import get_db
from ...logging import logger
from ...services import health as health_service
from ...services.job_locks import JOB_NAMES, JobLockManager
from ...services.lifecycle_jobs import purge_placeholder_games
from ...services.runner import LifecycleRunner
from ...services.settlement_queue import list_queue, queue_stats, serialize_entry
from ..dependencies import get_lifecycle_runner, get_lock_manager, verify_api_key
from ..schemas import BackfillRequest, JobLockResponse, QueueResponse, RepairRequest

router = APIRouter(
    prefix="/api/admin/lifecycle",
    tags=["lifecycle-admin"],
    dependencies=[Depends(verify_api_key)],
)


@router.get("/health")
def get_lifecycle_health(session: Session = Depends(get_db)) -> dict[str, Any]:
    return health_service.run_health_checks(session).to_dict()


@router.post("/repair")
def run_lifecycle_repair(
    payload: RepairRequest,
    session: Session = Depends(get_db),
) -> dict[str, Any]:
    """Run one or both repair actions and commit."""
    result: dict[str, Any] = {"action": payload.action}
    if payload.action in ("release-stale-locks", "all"):
        result["released_stale_locks"] = health_service.release_stale_processing_locks(session)
    if payload.action in ("enqueue-orphans", "all"):
        result["orphans"] = health_service.enqueue_orphaned_final_games(
            session, limit=payload.limit
        )
    session.commit()
    return result


@router.get("/locks", response_model=list[JobLockResponse])
def list_job_locks(locks: JobLockManager = Depends(get_lock_manager)) -> list[JobLockResponse]:
    return [JobLockResponse(**view.to_dict()) for view in locks.list_locks()]


@router.delete("/locks/{job_name}")
def force_release_job_lock(
    job_name: str,
    locks: JobLockManager = Depends(get_lock_manager),
) -> dict[str, Any]:
    if job_name not in JOB_NAMES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown job: {job_name}. Options: {', '.join(JOB_NAMES)}",
        )
    return {"job_name": job_name, "released": locks.force_release(job_name)}


@router.get("/queue", response_model=QueueResponse)
def get_settlement_queue(
    status_filter: list[str] | None = Query(None, alias="status"),
    league: str | None = Query(None),
    limit: int = Query(100, ge=1, le=500),
    session: Session = Depends(get_db),
) -> QueueResponse:
    items = list_queue(session, statuses=status_filter, league=league, limit=limit)
    return QueueResponse(
        stats=queue_stats(session),
        items=[serialize_entry(item) for item in items],
    )


@router.post("/purge-placeholders")
def purge_placeholders(
    dry_run: bool = Query(True, description="Report candidates without deleting"),
    session: Session = Depends(get_db),
) -> dict[str, Any]:
    return purge_placeholder_games(session, dry_run=dry_run)


@router.post("/backfill")
def run_lifecycle_backfill(
    payload: BackfillRequest | None = Body(None),
    runner: LifecycleRunner = Depends(get_lifecycle_runner),
) -> Any:
    """Re-ingest the last ``days`` days and finalize. 409 while another backfill holds the lock."""
    payload = payload or BackfillRequest()
    report = runner.run_backfill(days=payload.days, leagues=payload.leagues)

    if report.get("skipped"):
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={
                "success": False,
                "error": "Backfill already running",
                "reason": report.get("reason"),
                "lock_expires": report.get("lock_expires"),
            },
        )
    if report.get("error"):
        logger.error("lifecycle_backfill_failed", error=report["error"])
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=report)
    return report
