"""
Order lifecycle actions.
Resolves a named action to a transition (or a business action that leaves the
status alone), applies it through the state machine, and hands the landed
transition to the workflow dispatcher after commit. When a writer is replaced,
the previous writer's sockets leave the order's context channels.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional
import logging
import secrets

from database import database
from models import Actor, AuditAction, UserRole
from services.notification_service import context_channel, get_active_user_ids, get_user
from services.order_workflow import (
    OrderAction,
    OrderStatus,
    actions_for_targets,
    business_actions_for,
    coerce_status,
    find_event_for_transition,
    status_label,
)
from services.state_machine import (
    OrderStateMachine,
    TransitionCheck,
    TransitionErrorKind,
    TransitionResult,
)
from services.workflow_dispatcher import DispatchResult, WorkflowDispatcher
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

# Who may act on an order besides admins
OWNER_FIELDS = {
    UserRole.CLIENT.value: "client_id",
    UserRole.BDE.value: "bde_id",
    UserRole.WRITER.value: "writer_id",
}


@dataclass
class ActionOutcome:
    ok: bool
    action: str
    check: TransitionCheck
    transition: Optional[TransitionResult] = None
    dispatch: Optional[DispatchResult] = None

    @property
    def error(self) -> Optional[TransitionErrorKind]:
        return self.check.error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "action": self.action,
            "error": self.check.error.value if self.check.error else None,
            "message": self.check.message,
            "transition": self.transition.to_dict() if self.transition else None,
            "notifications": self.dispatch.to_dict() if self.dispatch else None,
        }


def _half(amount) -> str:
    try:
        return str((Decimal(str(amount)) / 2).quantize(Decimal("0.01")))
    except (InvalidOperation, ValueError):
        return ""


def generate_work_code() -> str:
    return f"WORK_{secrets.token_hex(4).upper()}"


class OrderLifecycleService:
    def __init__(self, state_machine: OrderStateMachine, dispatcher: WorkflowDispatcher, hub=None):
        self.state_machine = state_machine
        self.dispatcher = dispatcher
        self.hub = hub

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        db = database.get_db()
        return await db.orders.find_one({"order_id": order_id}, {"_id": 0})

    async def actors_for(self, order: Dict[str, Any]) -> Dict[str, Any]:
        return {
            UserRole.CLIENT.value: order.get("client_id"),
            UserRole.BDE.value: order.get("bde_id"),
            UserRole.WRITER.value: order.get("writer_id"),
            UserRole.ADMIN.value: await get_active_user_ids(UserRole.ADMIN.value),
        }

    def is_party(self, order: Dict[str, Any], actor: Actor) -> bool:
        if actor.role == UserRole.ADMIN.value:
            return True
        field = OWNER_FIELDS.get(actor.role)
        return field is not None and order.get(field) == actor.user_id

    async def get_history(self, order_id: str, limit: int = 200) -> List[Dict[str, Any]]:
        db = database.get_db()
        cursor = db.orders_history.find({"order_id": order_id}, {"_id": 0}).sort("created_at", 1).limit(limit)
        return await cursor.to_list(length=limit)

    async def allowed_actions(self, order: Dict[str, Any], actor: Actor) -> Dict[str, Any]:
        status = coerce_status(order["status"])
        targets = self.state_machine.allowed_targets(actor.role, status)
        return {
            "order_id": order["order_id"],
            "status": int(status),
            "status_label": status_label(status),
            "allowed_statuses": sorted(int(s) for s in targets),
            "actions": actions_for_targets(actor.role, status, targets) + business_actions_for(actor.role, status),
        }

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def perform_action(
        self,
        order_id: str,
        action: OrderAction,
        actor: Actor,
        reason: Optional[str] = None,
        variables: Optional[Dict[str, Any]] = None,
    ) -> ActionOutcome:
        variables = dict(variables or {})
        order = await self.get_order(order_id)
        if not order:
            return self._rejected(action.name, actor, TransitionErrorKind.ORDER_NOT_FOUND,
                                  f"Order {order_id} not found")
        if not self.state_machine.table.has_role(actor.role):
            return self._rejected(action.name, actor, TransitionErrorKind.UNKNOWN_ROLE,
                                  f"Unknown role: {actor.role}")
        if actor.role not in action.roles or not self.is_party(order, actor):
            return self._rejected(action.name, actor, TransitionErrorKind.ACTION_NOT_PERMITTED,
                                  f"{actor.role} may not perform {action.name} on this order")

        if not action.is_transition:
            return await self._business_action(order, action, actor, reason, variables)

        extra_fields = await self._extra_fields(order, action, variables)
        result = await self.state_machine.apply(
            order_id,
            actor.role,
            action.to_status,
            actor,
            reason=reason,
            action_type=action.name,
            extra_fields=extra_fields,
        )
        if result.ok and extra_fields.get("writer_id"):
            await self._evict_previous_writer(order, extra_fields["writer_id"])
        outcome = ActionOutcome(ok=result.ok, action=action.name, check=result.check, transition=result)
        if result.ok and action.event:
            outcome.dispatch = await self._dispatch_transition(action.event, result, actor, reason, variables)
        return outcome

    async def transition(self, order_id: str, to_status, actor: Actor, reason: Optional[str] = None,
                         override_terminal: bool = False) -> ActionOutcome:
        """Generic admin transition along any admin-table edge, or out of a terminal state with override."""
        to_status = OrderStatus(to_status)
        result = await self.state_machine.apply(
            order_id, actor.role, to_status, actor,
            reason=reason,
            override_terminal=override_terminal,
            action_type="ADMIN_OVERRIDE" if override_terminal else "ADMIN_TRANSITION",
        )
        name = "override" if override_terminal else "transition"
        outcome = ActionOutcome(ok=result.ok, action=name, check=result.check, transition=result)
        if result.ok:
            event = (
                "ORDER_STATUS_OVERRIDDEN" if result.check.override
                else find_event_for_transition(result.old_status, result.new_status)
            )
            if event:
                outcome.dispatch = await self._dispatch_transition(event, result, actor, reason, {})
        return outcome

    async def ensure_status(self, order_id: str, to_status, actor: Actor,
                            reason: Optional[str] = None) -> ActionOutcome:
        result = await self.state_machine.ensure_status(
            order_id, actor.role, OrderStatus(to_status), actor, reason=reason, action_type="ENSURE_STATUS",
        )
        outcome = ActionOutcome(ok=result.ok, action="ensure-status", check=result.check, transition=result)
        if result.ok and result.changed:
            event = find_event_for_transition(result.old_status, result.new_status)
            if event:
                outcome.dispatch = await self._dispatch_transition(event, result, actor, reason, {})
        return outcome

    async def announce(self, order_id: str, event_name: str, actor: Actor,
                       variables: Optional[Dict[str, Any]] = None) -> Optional[DispatchResult]:
        """Dispatch a workflow event that is not tied to a transition (e.g. QUERY_CREATED)."""
        order = await self.get_order(order_id)
        if not order:
            return None
        return await self.dispatcher.dispatch(
            event_name, order, await self.actors_for(order),
            await self._variables(order, None, variables or {}),
            context_code=order.get("work_code") or order.get("query_code"),
            actor=actor,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _rejected(self, action_name: str, actor: Actor, error: TransitionErrorKind, message: str) -> ActionOutcome:
        logger.info(f"Action {action_name} rejected for {actor.role}:{actor.user_id}: {message}")
        return ActionOutcome(
            ok=False,
            action=action_name,
            check=TransitionCheck(ok=False, role=actor.role, from_status=None, to_status=None,
                                  error=error, message=message),
        )

    async def _evict_previous_writer(self, order: Dict[str, Any], new_writer_id: str) -> None:
        """Drop the replaced writer's sockets from the order's context channels."""
        previous = order.get("writer_id")
        if self.hub is None or not previous or previous == new_writer_id:
            return
        for code in dict.fromkeys(c for c in (order.get("query_code"), order.get("work_code")) if c):
            try:
                await self.hub.evict(context_channel(code), previous)
            except Exception as e:
                logger.warning(f"Failed to evict writer {previous} from {code}: {e}")

    async def _extra_fields(self, order: Dict[str, Any], action: OrderAction,
                            variables: Dict[str, Any]) -> Dict[str, Any]:
        extra: Dict[str, Any] = {}
        if action.to_status == OrderStatus.ACCEPTED:
            extra["is_accepted"] = True
        if action.to_status == OrderStatus.PARTIAL_PAYMENT_VERIFIED and not order.get("work_code"):
            extra["work_code"] = generate_work_code()
        if action.to_status == OrderStatus.WRITER_ASSIGNED:
            if variables.get("writer_id"):
                extra["writer_id"] = variables["writer_id"]
            if variables.get("deadline_at"):
                extra["deadline_at"] = variables["deadline_at"]
        return extra

    async def _variables(self, order: Dict[str, Any], reason: Optional[str],
                         variables: Dict[str, Any]) -> Dict[str, Any]:
        values: Dict[str, Any] = {
            "currency": order.get("currency"),
            "amount": order.get("amount"),
            "half_amount": _half(order.get("amount")) if order.get("amount") is not None else None,
        }
        if reason:
            values.update({"reason": reason, "feedback": reason, "details": reason})
        deadline = order.get("deadline_at")
        if isinstance(deadline, datetime):
            values["deadline"] = deadline.strftime("%Y-%m-%d %H:%M UTC")
        if order.get("writer_id"):
            writer = await get_user(order["writer_id"])
            if writer:
                values["writer_name"] = writer.get("name")
        if order.get("bde_id"):
            bde = await get_user(order["bde_id"])
            if bde:
                values["bde_name"] = bde.get("name")
        values.update({k: v for k, v in variables.items() if v is not None})
        return values

    async def _dispatch_transition(self, event: str, result: TransitionResult, actor: Actor,
                                   reason: Optional[str], variables: Dict[str, Any]) -> DispatchResult:
        order = result.order
        values = await self._variables(order, reason, variables)
        if event == "ORDER_STATUS_OVERRIDDEN":
            values["status"] = status_label(result.new_status)
        try:
            return await self.dispatcher.dispatch(
                event,
                order,
                await self.actors_for(order),
                values,
                context_code=order.get("work_code") or order.get("query_code"),
                actor=actor,
                record_history=False,
            )
        except Exception as e:
            # The transition is committed; notification loss is logged, not raised
            logger.error(f"Dispatch of {event} for order {result.order_id} failed: {e}")
            return DispatchResult(event=event, errors=[str(e)])

    async def _business_action(self, order: Dict[str, Any], action: OrderAction, actor: Actor,
                               reason: Optional[str], variables: Dict[str, Any]) -> ActionOutcome:
        status = coerce_status(order["status"])
        if status not in action.from_statuses:
            check = TransitionCheck(
                ok=False, role=actor.role, from_status=status, to_status=None,
                error=TransitionErrorKind.INVALID_TRANSITION,
                allowed_actions=tuple(business_actions_for(actor.role, status)),
                message=f"Action {action.name} is not available while the order is {status_label(status)}",
            )
            return ActionOutcome(ok=False, action=action.name, check=check)

        check = TransitionCheck(ok=True, role=actor.role, from_status=status, to_status=status)
        outcome = ActionOutcome(ok=True, action=action.name, check=check)
        await create_audit_log(
            action=AuditAction.ORDER_BUSINESS_ACTION,
            actor_role=actor.role,
            actor_id=actor.user_id,
            resource_type="order",
            resource_id=order["order_id"],
            metadata={"action": action.name, "status": int(status), "reason": reason},
        )
        if action.event:
            try:
                outcome.dispatch = await self.dispatcher.dispatch(
                    action.event,
                    order,
                    await self.actors_for(order),
                    await self._variables(order, reason, variables),
                    context_code=order.get("work_code") or order.get("query_code"),
                    actor=actor,
                )
            except Exception as e:
                logger.error(f"Dispatch of {action.event} for order {order['order_id']} failed: {e}")
                outcome.dispatch = DispatchResult(event=action.event, errors=[str(e)])
        return outcome
