"""
Order engine wiring.
The transition table and template registry are built once here and injected
into every component. server.py stores the engine on app.state; scheduled
jobs, which run outside a request, read the same instance via get_engine().
"""
from dataclasses import dataclass
from typing import Optional
import logging

from services.channel_guard import ChannelGuard
from services.email_service import EmailService
from services.notification_service import NotificationService
from services.order_lifecycle import OrderLifecycleService
from services.order_workflow import TransitionTable, build_transition_table
from services.realtime import ChannelHub, hub as default_hub
from services.reminder_scheduler import ReminderScheduler
from services.side_effects import SideEffectRunner
from services.state_machine import OrderStateMachine
from services.workflow_dispatcher import WorkflowDispatcher
from services.workflow_events import TemplateRegistry, build_template_registry

logger = logging.getLogger(__name__)


@dataclass
class OrderEngine:
    table: TransitionTable
    registry: TemplateRegistry
    hub: ChannelHub
    email_service: EmailService
    side_effects: SideEffectRunner
    notifications: NotificationService
    state_machine: OrderStateMachine
    dispatcher: WorkflowDispatcher
    lifecycle: OrderLifecycleService
    reminders: ReminderScheduler
    guard: ChannelGuard


def build_engine(email_service: Optional[EmailService] = None,
                 hub: Optional[ChannelHub] = None) -> OrderEngine:
    table = build_transition_table()
    registry = build_template_registry()
    hub = hub or default_hub
    email_service = email_service or EmailService()

    side_effects = SideEffectRunner(email_service, hub)
    notifications = NotificationService(side_effects)
    state_machine = OrderStateMachine(table)
    dispatcher = WorkflowDispatcher(registry, notifications)

    logger.info(
        f"Order engine built: {len(table.roles)} roles, {len(registry.names)} workflow events"
    )
    return OrderEngine(
        table=table,
        registry=registry,
        hub=hub,
        email_service=email_service,
        side_effects=side_effects,
        notifications=notifications,
        state_machine=state_machine,
        dispatcher=dispatcher,
        lifecycle=OrderLifecycleService(state_machine, dispatcher, hub),
        reminders=ReminderScheduler(registry, notifications, side_effects),
        guard=ChannelGuard(),
    )


_engine: Optional[OrderEngine] = None


def set_engine(engine: Optional[OrderEngine]) -> None:
    global _engine
    _engine = engine


def get_engine() -> OrderEngine:
    global _engine
    if _engine is None:
        _engine = build_engine()
    return _engine
