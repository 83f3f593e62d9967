"""
Order State Machine
Validates role-gated status transitions and applies them atomically:
the status write and its history row commit together or not at all.
Audit logging happens only after commit and never fails the transition.

Business-rule violations are returned as typed results; only data-store
failures raise.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple
import logging

from pymongo.errors import PyMongoError

from database import database
from models import Actor, AuditAction, OrderHistoryEntry, UserRole
from services.order_workflow import (
    OrderStatus,
    TransitionTable,
    actions_for_targets,
    coerce_status,
    status_label,
)
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


class TransitionErrorKind(str, Enum):
    UNKNOWN_ROLE = "UNKNOWN_ROLE"
    NO_TRANSITIONS = "NO_TRANSITIONS"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    TERMINAL_STATE = "TERMINAL_STATE"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    ACTION_NOT_PERMITTED = "ACTION_NOT_PERMITTED"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"


@dataclass(frozen=True)
class TransitionCheck:
    ok: bool
    role: str
    from_status: Optional[OrderStatus]
    to_status: Optional[OrderStatus]
    error: Optional[TransitionErrorKind] = None
    allowed: FrozenSet[OrderStatus] = frozenset()
    allowed_actions: Tuple[str, ...] = ()
    message: str = ""
    override: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "error": self.error.value if self.error else None,
            "message": self.message,
            "from_status": int(self.from_status) if self.from_status is not None else None,
            "to_status": int(self.to_status) if self.to_status is not None else None,
            "allowed": sorted(int(s) for s in self.allowed),
            "allowed_labels": [status_label(s) for s in sorted(self.allowed)],
            "allowed_actions": list(self.allowed_actions),
        }


@dataclass
class TransitionResult:
    ok: bool
    order_id: str
    check: TransitionCheck
    old_status: Optional[OrderStatus] = None
    new_status: Optional[OrderStatus] = None
    changed: bool = False
    history_id: Optional[str] = None
    order: Dict[str, Any] = field(default_factory=dict)

    @property
    def error(self) -> Optional[TransitionErrorKind]:
        return self.check.error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "order_id": self.order_id,
            "old_status": int(self.old_status) if self.old_status is not None else None,
            "new_status": int(self.new_status) if self.new_status is not None else None,
            "changed": self.changed,
            "history_id": self.history_id,
            "check": self.check.to_dict(),
        }


def _labels(statuses) -> str:
    return ", ".join(status_label(s) for s in sorted(statuses)) or "none"


class OrderStateMachine:
    """Role-gated transitions over a TransitionTable built at start-up."""

    def __init__(self, table: TransitionTable, max_race_retries: int = 3):
        self.table = table
        self.max_race_retries = max_race_retries

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self, role: str, from_status, to_status, override_terminal: bool = False) -> TransitionCheck:
        if not self.table.has_role(role):
            return TransitionCheck(
                ok=False, role=role, from_status=None, to_status=None,
                error=TransitionErrorKind.UNKNOWN_ROLE,
                message=f"Unknown role: {role}",
            )

        from_status = OrderStatus(from_status)
        to_status = OrderStatus(to_status)

        if self.table.is_terminal(from_status):
            if role == self.table.admin_role and override_terminal:
                return TransitionCheck(
                    ok=True, role=role, from_status=from_status, to_status=to_status,
                    message=f"Admin override from {status_label(from_status)} to {status_label(to_status)}",
                    override=True,
                )
            return TransitionCheck(
                ok=False, role=role, from_status=from_status, to_status=to_status,
                error=TransitionErrorKind.TERMINAL_STATE,
                message=(
                    f"Order is in terminal state {status_label(from_status)}. "
                    "Only an admin override may change it."
                ),
            )

        allowed = self.table.allowed(role, from_status)
        if not allowed:
            return TransitionCheck(
                ok=False, role=role, from_status=from_status, to_status=to_status,
                error=TransitionErrorKind.NO_TRANSITIONS,
                message=f"Role {role} cannot change an order in {status_label(from_status)}",
            )

        if to_status not in allowed:
            return TransitionCheck(
                ok=False, role=role, from_status=from_status, to_status=to_status,
                error=TransitionErrorKind.INVALID_TRANSITION,
                allowed=allowed,
                allowed_actions=tuple(actions_for_targets(role, from_status, allowed)),
                message=(
                    f"Invalid transition from {status_label(from_status)} to {status_label(to_status)}. "
                    f"Allowed transitions: {_labels(allowed)}"
                ),
            )

        return TransitionCheck(
            ok=True, role=role, from_status=from_status, to_status=to_status,
            allowed=allowed,
            allowed_actions=tuple(actions_for_targets(role, from_status, allowed)),
        )

    def allowed_targets(self, role: str, from_status) -> FrozenSet[OrderStatus]:
        from_status = OrderStatus(from_status)
        if self.table.is_terminal(from_status):
            return frozenset()
        return self.table.allowed(role, from_status) or frozenset()

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------

    async def apply(
        self,
        order_id: str,
        role: str,
        to_status,
        actor: Actor,
        reason: Optional[str] = None,
        override_terminal: bool = False,
        action_type: Optional[str] = None,
        extra_fields: Optional[Dict[str, Any]] = None,
    ) -> TransitionResult:
        """Validate against the persisted status and write status + history in one transaction."""
        return await self._apply(
            order_id, role, OrderStatus(to_status), actor, reason,
            override_terminal, action_type, extra_fields, idempotent=False,
        )

    async def ensure_status(
        self,
        order_id: str,
        role: str,
        to_status,
        actor: Actor,
        reason: Optional[str] = None,
        action_type: Optional[str] = None,
        extra_fields: Optional[Dict[str, Any]] = None,
    ) -> TransitionResult:
        """Like apply, but an order already at to_status is a successful no-op."""
        return await self._apply(
            order_id, role, OrderStatus(to_status), actor, reason,
            False, action_type, extra_fields, idempotent=True,
        )

    async def _apply(self, order_id, role, to_status, actor, reason, override_terminal,
                     action_type, extra_fields, idempotent) -> TransitionResult:
        db = database.get_db()
        action_type = action_type or "STATUS_CHANGE"

        for attempt in range(self.max_race_retries + 1):
            try:
                async with database.transaction() as session:
                    order = await db.orders.find_one({"order_id": order_id}, {"_id": 0}, session=session)
                    if not order:
                        return TransitionResult(
                            ok=False, order_id=order_id,
                            check=TransitionCheck(
                                ok=False, role=role, from_status=None, to_status=to_status,
                                error=TransitionErrorKind.ORDER_NOT_FOUND,
                                message=f"Order {order_id} not found",
                            ),
                        )

                    stored_status = order["status"]
                    current = coerce_status(stored_status)

                    if idempotent and current == to_status:
                        logger.info(f"Order {order_id} already in {to_status.name}, nothing to do")
                        return TransitionResult(
                            ok=True, order_id=order_id, old_status=current, new_status=current,
                            changed=False, order=order,
                            check=TransitionCheck(ok=True, role=role, from_status=current, to_status=to_status),
                        )

                    check = self.validate(role, current, to_status, override_terminal)
                    if not check.ok:
                        result = TransitionResult(
                            ok=False, order_id=order_id, check=check, old_status=current, order=order,
                        )
                        break

                    now = datetime.now(timezone.utc)
                    updates = dict(extra_fields or {})
                    updates.update({"status": int(to_status), "updated_at": now})
                    # Compare-and-set on the status that was read
                    write = await db.orders.update_one(
                        {"order_id": order_id, "status": stored_status},
                        {"$set": updates},
                        session=session,
                    )
                    if write.matched_count == 0:
                        logger.warning(
                            f"Order {order_id} changed during transition to {to_status.name}, "
                            f"re-validating (attempt {attempt + 1})"
                        )
                        continue

                    description = (
                        f"Status changed from {status_label(current)} to {status_label(to_status)}"
                        + (f". Reason: {reason}" if reason else "")
                    )
                    history = OrderHistoryEntry(
                        order_id=order_id,
                        actor_id=actor.user_id,
                        actor_name=actor.display_name,
                        actor_role=role,
                        action_type=action_type,
                        description=description,
                        old_status=int(current),
                        new_status=int(to_status),
                    )
                    await db.orders_history.insert_one(history.model_dump(), session=session)

                    result = TransitionResult(
                        ok=True, order_id=order_id, check=check,
                        old_status=current, new_status=to_status, changed=True,
                        history_id=history.history_id,
                        order={**order, **updates},
                    )
                    break
            except PyMongoError as e:
                if e.has_error_label("TransientTransactionError") and attempt < self.max_race_retries:
                    logger.warning(f"Transient transaction error on order {order_id}, retrying: {e}")
                    continue
                raise
        else:
            return TransitionResult(
                ok=False, order_id=order_id,
                check=TransitionCheck(
                    ok=False, role=role, from_status=None, to_status=to_status,
                    error=TransitionErrorKind.CONCURRENT_MODIFICATION,
                    message=f"Order {order_id} kept changing; transition to {status_label(to_status)} abandoned",
                ),
            )

        # Committed (or rejected): side effects only from here on
        if result.ok:
            await self._audit_applied(result, actor, role, reason, action_type, idempotent)
        else:
            logger.info(f"Transition rejected for order {order_id}: {result.check.message}")
            await create_audit_log(
                action=AuditAction.ORDER_TRANSITION_REJECTED,
                actor_role=role,
                actor_id=actor.user_id,
                resource_type="order",
                resource_id=order_id,
                metadata={**result.check.to_dict(), "action_type": action_type},
            )
        return result

    async def _audit_applied(self, result: TransitionResult, actor: Actor, role: str,
                             reason: Optional[str], action_type: str, idempotent: bool):
        logger.info(
            f"Order {result.order_id}: {result.old_status.name} -> {result.new_status.name} "
            f"by {role}:{actor.user_id}"
        )
        await create_audit_log(
            action=AuditAction.ORDER_STATUS_ENSURED if idempotent else AuditAction.ORDER_STATUS_CHANGED,
            actor_role=role,
            actor_id=actor.user_id,
            resource_type="order",
            resource_id=result.order_id,
            before_state={"status": int(result.old_status)},
            after_state={"status": int(result.new_status)},
            metadata={"reason": reason, "action_type": action_type, "history_id": result.history_id},
        )
        if result.check.override:
            await create_audit_log(
                action=AuditAction.ADMIN_OVERRIDE,
                actor_role=UserRole.ADMIN,
                actor_id=actor.user_id,
                resource_type="order",
                resource_id=result.order_id,
                before_state={"status": int(result.old_status)},
                after_state={"status": int(result.new_status)},
                metadata={"reason": reason, "override_terminal": True},
                reason_code="TERMINAL_OVERRIDE",
            )
