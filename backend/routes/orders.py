"""
Orders API Routes - role-gated order actions, allowed actions and history.
The caller's role comes from the JWT; every status change goes through the
state machine.
"""
from fastapi import APIRouter, HTTPException, Depends
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from middleware import require_auth, actor_from_user, get_order_engine, raise_for_outcome
from services.order_workflow import get_action
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/orders", tags=["orders"])


class ActionRequest(BaseModel):
    reason: Optional[str] = None
    writer_id: Optional[str] = None
    deadline_at: Optional[datetime] = None
    variables: Dict[str, Any] = Field(default_factory=dict)


@router.post("/{order_id}/actions/{action_name}")
async def perform_order_action(
    order_id: str,
    action_name: str,
    body: Optional[ActionRequest] = None,
    current_user: dict = Depends(require_auth),
    engine=Depends(get_order_engine),
):
    """
    Run a named action (accept-quotation, submit-for-review, ...) on an order.
    Actions that need a reason reject an empty one with 400.
    """
    action = get_action(action_name)
    if action is None:
        raise HTTPException(status_code=404, detail=f"Unknown action: {action_name}")

    body = body or ActionRequest()
    reason = (body.reason or "").strip() or None
    if action.requires_reason and not reason:
        raise HTTPException(status_code=400, detail=f"A reason is required for {action_name}")

    variables = dict(body.variables)
    if body.writer_id:
        variables["writer_id"] = body.writer_id
    if body.deadline_at:
        deadline = body.deadline_at
        if deadline.tzinfo is None:
            deadline = deadline.replace(tzinfo=timezone.utc)
        variables["deadline_at"] = deadline
    if action.name in ("assign-writer", "reassign-writer") and not body.writer_id:
        raise HTTPException(status_code=400, detail="writer_id is required to assign a writer")

    outcome = await engine.lifecycle.perform_action(
        order_id,
        action,
        actor_from_user(current_user),
        reason=reason,
        variables=variables,
    )
    raise_for_outcome(outcome)
    return {"success": True, **outcome.to_dict()}


@router.get("/{order_id}/allowed-actions")
async def get_allowed_actions(
    order_id: str,
    current_user: dict = Depends(require_auth),
    engine=Depends(get_order_engine),
):
    """Actions and target statuses available to the caller for this order."""
    actor = actor_from_user(current_user)
    order = await engine.lifecycle.get_order(order_id)
    if not order or not engine.lifecycle.is_party(order, actor):
        raise HTTPException(status_code=404, detail="Order not found")
    return await engine.lifecycle.allowed_actions(order, actor)


@router.get("/{order_id}/history")
async def get_order_history(
    order_id: str,
    current_user: dict = Depends(require_auth),
    engine=Depends(get_order_engine),
):
    """Chronological history rows for an order."""
    actor = actor_from_user(current_user)
    order = await engine.lifecycle.get_order(order_id)
    if not order or not engine.lifecycle.is_party(order, actor):
        raise HTTPException(status_code=404, detail="Order not found")
    history = await engine.lifecycle.get_history(order_id)
    return {"order_id": order_id, "history": history, "total": len(history)}
