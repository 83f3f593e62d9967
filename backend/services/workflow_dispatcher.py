"""
Workflow Dispatcher
Turns a workflow event (a landed transition or a business action) into
per-role notifications. Everything after a notification insert is
best-effort; one recipient's failure does not stop the others.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union
import logging

from database import database
from models import Actor, OrderHistoryEntry
from services.notification_service import NotificationService
from services.workflow_events import TemplateRegistry

logger = logging.getLogger(__name__)

RecipientIds = Union[str, Iterable[str], None]


@dataclass
class DispatchResult:
    event: str
    notifications_created: int = 0
    notification_ids: List[str] = field(default_factory=list)
    skipped_roles: List[str] = field(default_factory=list)
    history_id: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.event,
            "notifications_created": self.notifications_created,
            "notification_ids": self.notification_ids,
            "skipped_roles": self.skipped_roles,
            "history_id": self.history_id,
            "errors": self.errors,
        }


def _recipient_ids(value: RecipientIds) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    seen = []
    for v in value:
        if v and v not in seen:
            seen.append(v)
    return seen


def order_variables(order: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "order_id": order.get("order_id"),
        "query_code": order.get("query_code"),
        "work_code": order.get("work_code"),
        "paper_topic": order.get("paper_topic"),
    }


class WorkflowDispatcher:
    def __init__(self, registry: TemplateRegistry, notifications: NotificationService):
        self.registry = registry
        self.notifications = notifications

    async def dispatch(
        self,
        event_name: str,
        order: Mapping[str, Any],
        actors_by_role: Mapping[str, RecipientIds],
        variables: Optional[Mapping[str, Any]] = None,
        context_code: Optional[str] = None,
        actor: Optional[Actor] = None,
        record_history: bool = True,
    ) -> DispatchResult:
        """Notify every templated role of event_name.

        record_history=False when the caller already wrote the history row
        for this event (a transition's own row).
        """
        result = DispatchResult(event=event_name)
        event = self.registry.get(event_name)
        if event is None:
            logger.warning(f"Unknown workflow event: {event_name}")
            result.errors.append(f"Unknown workflow event: {event_name}")
            return result

        values = order_variables(order)
        values.update(variables or {})
        typed_values = self.registry.variables_for(event_name, values)
        order_id = order.get("order_id")

        for role in event.templates:
            recipients = _recipient_ids(actors_by_role.get(role))
            if not recipients:
                logger.debug(f"No {role} bound for event {event_name} on order {order_id}")
                result.skipped_roles.append(role)
                continue

            rendered = self.registry.render(event_name, role, typed_values)
            for recipient_id in recipients:
                try:
                    doc = await self.notifications.create(
                        recipient_id=recipient_id,
                        severity=rendered.severity,
                        title=rendered.title,
                        message=rendered.message,
                        link_url=rendered.link_url,
                        event=event_name,
                        order_id=order_id,
                        context_code=context_code,
                        priority=rendered.priority,
                    )
                    result.notifications_created += 1
                    result.notification_ids.append(doc["notification_id"])
                except Exception as e:
                    logger.error(f"Failed to notify {role} {recipient_id} for {event_name}: {e}")
                    result.errors.append(f"{role}:{recipient_id}: {e}")

        if record_history and order_id:
            result.history_id = await self._record_history(event_name, order_id, actor, result)

        logger.info(
            f"Workflow event {event_name} on order {order_id}: "
            f"{result.notifications_created} notification(s), skipped roles {result.skipped_roles}"
        )
        return result

    async def _record_history(self, event_name: str, order_id: str, actor: Optional[Actor],
                              result: DispatchResult) -> Optional[str]:
        entry = OrderHistoryEntry(
            order_id=order_id,
            actor_id=actor.user_id if actor else None,
            actor_name=actor.display_name if actor else "System",
            actor_role=actor.role if actor else "system",
            action_type=event_name,
            description=f"Workflow event: {event_name} ({result.notifications_created} notified)",
        )
        try:
            db = database.get_db()
            await db.orders_history.insert_one(entry.model_dump())
            return entry.history_id
        except Exception as e:
            logger.error(f"Failed to record history for {event_name} on {order_id}: {e}")
            return None
