"""
Admin Orders Routes
Generic admin transitions, terminal overrides, idempotent ensure-status,
audit log browsing and manual background job runs.
"""
from fastapi import APIRouter, HTTPException, Depends
from pydantic import BaseModel
from typing import Optional, Dict, Any
from middleware import admin_route_guard, actor_from_user, get_order_engine, raise_for_outcome
from models import AuditAction
from services.order_workflow import OrderStatus
from utils.audit import create_audit_log, list_audit_logs
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin", tags=["admin-orders"])


# ============================================
# MODELS
# ============================================

class TransitionRequest(BaseModel):
    new_status: int
    reason: str  # Required for admin transitions


class EnsureStatusRequest(BaseModel):
    status: int
    reason: Optional[str] = None


class AnnounceRequest(BaseModel):
    variables: Dict[str, Any] = {}


def _status_or_400(code: int) -> OrderStatus:
    try:
        return OrderStatus(code)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown status code: {code}")


def _reason_or_400(reason: Optional[str]) -> str:
    reason = (reason or "").strip()
    if not reason:
        raise HTTPException(status_code=400, detail="A reason is required")
    return reason


# ============================================
# TRANSITIONS
# ============================================

@router.post("/orders/{order_id}/transition")
async def admin_transition(
    order_id: str,
    request: TransitionRequest,
    current_user: dict = Depends(admin_route_guard),
    engine=Depends(get_order_engine),
):
    """Move an order along any admin-table edge."""
    outcome = await engine.lifecycle.transition(
        order_id,
        _status_or_400(request.new_status),
        actor_from_user(current_user),
        reason=_reason_or_400(request.reason),
    )
    raise_for_outcome(outcome)
    return {"success": True, **outcome.to_dict()}


@router.post("/orders/{order_id}/override")
async def admin_override(
    order_id: str,
    request: TransitionRequest,
    current_user: dict = Depends(admin_route_guard),
    engine=Depends(get_order_engine),
):
    """Move an order out of a terminal state. Non-terminal orders follow the normal admin table."""
    outcome = await engine.lifecycle.transition(
        order_id,
        _status_or_400(request.new_status),
        actor_from_user(current_user),
        reason=_reason_or_400(request.reason),
        override_terminal=True,
    )
    raise_for_outcome(outcome)
    return {"success": True, **outcome.to_dict()}


@router.post("/orders/{order_id}/ensure-status")
async def admin_ensure_status(
    order_id: str,
    request: EnsureStatusRequest,
    current_user: dict = Depends(admin_route_guard),
    engine=Depends(get_order_engine),
):
    """Idempotent transition: succeeds without change if the order is already there."""
    outcome = await engine.lifecycle.ensure_status(
        order_id,
        _status_or_400(request.status),
        actor_from_user(current_user),
        reason=request.reason,
    )
    raise_for_outcome(outcome)
    return {"success": True, **outcome.to_dict()}


@router.post("/orders/{order_id}/events/{event_name}")
async def admin_announce_event(
    order_id: str,
    event_name: str,
    request: Optional[AnnounceRequest] = None,
    current_user: dict = Depends(admin_route_guard),
    engine=Depends(get_order_engine),
):
    """Dispatch a workflow event's notifications without a status change (e.g. QUERY_CREATED)."""
    if event_name not in engine.registry:
        raise HTTPException(status_code=404, detail=f"Unknown workflow event: {event_name}")
    result = await engine.lifecycle.announce(
        order_id, event_name, actor_from_user(current_user),
        variables=request.variables if request else None,
    )
    if result is None:
        raise HTTPException(status_code=404, detail="Order not found")
    return {"success": True, "notifications": result.to_dict()}


# ============================================
# AUDIT
# ============================================

@router.get("/audit-logs")
async def get_audit_logs(
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    action: Optional[str] = None,
    actor_id: Optional[str] = None,
    limit: int = 50,
    skip: int = 0,
    current_user: dict = Depends(admin_route_guard),
):
    """Audit trail, newest first."""
    limit = max(1, min(limit, 500))
    logs = await list_audit_logs(
        resource_type=resource_type,
        resource_id=resource_id,
        action=action,
        actor_id=actor_id,
        limit=limit,
        skip=max(skip, 0),
    )
    return {"logs": logs, "count": len(logs), "limit": limit, "skip": skip}


# ============================================
# BACKGROUND JOBS
# ============================================

@router.get("/jobs")
async def get_jobs(current_user: dict = Depends(admin_route_guard)):
    """Registered job ids and their next scheduled run."""
    from job_runner import JOB_RUNNERS
    from server import scheduler

    scheduled = {job.id: job for job in scheduler.get_jobs()}
    jobs = []
    for job_id in sorted(JOB_RUNNERS):
        job = scheduled.get(job_id)
        jobs.append({
            "id": job_id,
            "name": job.name if job else None,
            "next_run": job.next_run_time.isoformat() if job and job.next_run_time else None,
        })
    return {"jobs": jobs, "scheduler_running": scheduler.running}


@router.post("/jobs/{job_id}/run")
async def run_job_now(job_id: str, current_user: dict = Depends(admin_route_guard)):
    """Run a single background job by id (admin only). Returns job-specific message for toast."""
    from job_runner import JOB_RUNNERS

    if job_id not in JOB_RUNNERS:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid job. Use one of: {', '.join(sorted(JOB_RUNNERS.keys()))}"
        )
    try:
        result = await JOB_RUNNERS[job_id]()
    except Exception as e:
        logger.error(f"Manual job run error ({job_id}): {e}")
        raise HTTPException(status_code=500, detail=f"Failed to run job: {job_id}")

    message = (result.get("message") if result else None) or f"Job {job_id} completed"
    await create_audit_log(
        action=AuditAction.ADMIN_JOB_RUN,
        actor_role=current_user.get("role"),
        actor_id=current_user.get("user_id"),
        resource_type="job",
        resource_id=job_id,
        metadata={"result_count": result.get("count") if result else None},
    )
    return {"success": True, "job": job_id, "message": message, "count": result.get("count") if result else None}
