"""
Workflow Event Templates
Typed registry of (event, role) notification templates. Each event names a
pydantic model for its variables; every {placeholder} used by the event's
templates is checked against that model when the registry is built, so a
misspelled placeholder fails at start-up instead of rendering blank.
"""
from dataclasses import dataclass
from string import Formatter
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Optional, Set, Type

from pydantic import BaseModel, ConfigDict

from models import NotificationSeverity, UserRole


class TemplateError(ValueError):
    """Raised when a template references a variable its event does not declare."""


# ============================================================================
# Variable models
# ============================================================================

class OrderVariables(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True, coerce_numbers_to_str=True)

    order_id: str = ""
    query_code: str = ""
    work_code: str = ""
    paper_topic: str = ""


class QueryCreatedVariables(OrderVariables):
    client_name: str = ""


class QuotationVariables(OrderVariables):
    currency: str = ""
    amount: str = ""
    bde_name: str = ""


class PaymentVariables(OrderVariables):
    currency: str = ""
    amount: str = ""
    half_amount: str = ""


class ReasonVariables(OrderVariables):
    reason: str = ""


class WriterVariables(OrderVariables):
    writer_name: str = ""
    deadline: str = ""
    reason: str = ""


class FeedbackVariables(OrderVariables):
    feedback: str = ""


class RevisionVariables(OrderVariables):
    details: str = ""


class StatusVariables(OrderVariables):
    status: str = ""
    reason: str = ""


class DeadlineVariables(OrderVariables):
    hours_remaining: str = ""
    deadline: str = ""


class ReminderVariables(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True, coerce_numbers_to_str=True)

    title: str = ""
    message: str = ""
    link_url: str = ""
    reminder_number: str = ""
    minutes_unread: str = ""
    recipient_name: str = ""


# ============================================================================
# Templates
# ============================================================================

@dataclass(frozen=True)
class RoleTemplate:
    severity: NotificationSeverity
    title: str
    message: str
    link: str
    priority: str = "normal"


@dataclass(frozen=True)
class WorkflowEvent:
    name: str
    variables: Type[BaseModel]
    templates: Mapping[str, RoleTemplate]


@dataclass(frozen=True)
class RenderedNotification:
    event: str
    role: str
    severity: NotificationSeverity
    title: str
    message: str
    link_url: str
    priority: str


def _placeholders(text: str) -> Set[str]:
    names = set()
    for _, field_name, _, _ in Formatter().parse(text):
        if field_name is None:
            continue
        if not field_name or not field_name.isidentifier():
            raise TemplateError(f"Unsupported placeholder {{{field_name}}} in {text!r}")
        names.add(field_name)
    return names


class TemplateRegistry:
    """Immutable event -> role -> template lookup, validated on construction."""

    def __init__(self, events: Iterable[WorkflowEvent]):
        by_name: Dict[str, WorkflowEvent] = {}
        for event in events:
            if event.name in by_name:
                raise TemplateError(f"Duplicate workflow event {event.name}")
            declared = set(event.variables.model_fields)
            for role, template in event.templates.items():
                for text in (template.title, template.message, template.link):
                    unknown = _placeholders(text) - declared
                    if unknown:
                        raise TemplateError(
                            f"{event.name}/{role} uses undeclared variable(s) {sorted(unknown)}; "
                            f"{event.variables.__name__} declares {sorted(declared)}"
                        )
            by_name[event.name] = WorkflowEvent(
                name=event.name,
                variables=event.variables,
                templates=MappingProxyType(dict(event.templates)),
            )
        self._events = MappingProxyType(by_name)

    def __contains__(self, name: str) -> bool:
        return name in self._events

    def get(self, name: str) -> Optional[WorkflowEvent]:
        return self._events.get(name)

    @property
    def names(self):
        return tuple(self._events)

    def roles_for(self, name: str) -> Iterable[str]:
        event = self._events.get(name)
        return tuple(event.templates) if event else ()

    def variables_for(self, name: str, values: Optional[Mapping[str, Any]] = None) -> BaseModel:
        event = self._events[name]
        return event.variables.model_validate({k: v for k, v in (values or {}).items() if v is not None})

    def render(self, name: str, role: str, values) -> RenderedNotification:
        event = self._events[name]
        template = event.templates[role]
        variables = values if isinstance(values, event.variables) else self.variables_for(name, values)
        data = variables.model_dump()
        return RenderedNotification(
            event=name,
            role=role,
            severity=template.severity,
            title=template.title.format(**data),
            message=template.message.format(**data),
            link_url=template.link.format(**data),
            priority=template.priority,
        )


# ============================================================================
# Default event set
# ============================================================================

SUCCESS = NotificationSeverity.SUCCESS
INFO = NotificationSeverity.INFO
WARNING = NotificationSeverity.WARNING
CRITICAL = NotificationSeverity.CRITICAL

CLIENT = UserRole.CLIENT.value
BDE = UserRole.BDE.value
WRITER = UserRole.WRITER.value
ADMIN = UserRole.ADMIN.value
# Template key for events addressed to whoever owns the subject
RECIPIENT = "recipient"

LINKS = {
    CLIENT: "/client/orders/{order_id}",
    ADMIN: "/admin/queries/{order_id}/view",
    BDE: "/bde/queries/{query_code}",
    WRITER: "/writer/tasks/{order_id}",
}


def _t(role, severity, title, message, priority="normal", link=None) -> RoleTemplate:
    return RoleTemplate(severity=severity, title=title, message=message,
                        link=link if link is not None else LINKS[role], priority=priority)


def _event(name, variables, *templates) -> WorkflowEvent:
    return WorkflowEvent(name=name, variables=variables, templates={role: t for role, t in templates})


DEFAULT_EVENTS = (
    _event(
        "QUERY_CREATED", QueryCreatedVariables,
        (CLIENT, _t(CLIENT, SUCCESS, "Query Received Successfully",
                    "Your query ({query_code}) has been created. A representative will contact you soon.")),
        (ADMIN, _t(ADMIN, INFO, "New Query Generated",
                   "New query ({query_code}) from {client_name}: {paper_topic}", "high")),
        (BDE, _t(BDE, INFO, "New Query Requires Quotation",
                 "New query ({query_code}) requires quotation: {paper_topic}", "high")),
    ),
    _event(
        "QUOTATION_GENERATED", QuotationVariables,
        (CLIENT, _t(CLIENT, SUCCESS, "Quotation Ready",
                    "A quotation has been generated for your query ({query_code}). Amount: {currency}{amount}",
                    "high")),
        (ADMIN, _t(ADMIN, INFO, "Quotation Generated", "Quotation generated for {query_code} by {bde_name}")),
    ),
    _event(
        "QUOTATION_ACCEPTED", OrderVariables,
        (CLIENT, _t(CLIENT, SUCCESS, "Quotation Accepted",
                    "You have accepted the quotation for {query_code}. Please proceed to payment.")),
        (ADMIN, _t(ADMIN, INFO, "Quotation Accepted by Client",
                   "Client accepted quotation for {query_code}. Awaiting payment.", "high")),
        (BDE, _t(BDE, SUCCESS, "Your Quotation Accepted!",
                 "Your quotation for {query_code} has been accepted!", "high")),
    ),
    _event(
        "PAYMENT_50_REQUESTED", PaymentVariables,
        (CLIENT, _t(CLIENT, WARNING, "50% Payment Required",
                    "Please pay 50% of the total amount ({currency}{half_amount}) for {query_code} to start work.",
                    "high")),
        (ADMIN, _t(ADMIN, INFO, "Client Ready for 50% Payment", "Client ready for 50% payment on {query_code}")),
        (BDE, _t(BDE, INFO, "Client Ready for 50% Payment", "Client ready for 50% payment on {query_code}")),
    ),
    _event(
        "PAYMENT_50_UPLOADED", PaymentVariables,
        (CLIENT, _t(CLIENT, SUCCESS, "50% Payment Receipt Received",
                    "Your 50% payment receipt has been uploaded. We will verify it shortly.")),
        (ADMIN, _t(ADMIN, CRITICAL, "50% Payment Verification Required",
                   "50% payment receipt uploaded for {query_code}. Amount: {currency}{half_amount}. Verify now.",
                   "critical")),
        (BDE, _t(BDE, CRITICAL, "50% Payment Verification Required",
                 "50% payment uploaded for {query_code}. Awaiting admin verification.", "critical")),
    ),
    _event(
        "PAYMENT_50_VERIFIED", OrderVariables,
        (CLIENT, _t(CLIENT, SUCCESS, "50% Payment Verified! Work Starting Soon",
                    "Your 50% payment has been verified! Your work code is: {work_code}", "high")),
        (ADMIN, _t(ADMIN, SUCCESS, "50% Payment Verified",
                   "50% payment verified for {query_code}. Ready for writer assignment.")),
        (BDE, _t(BDE, SUCCESS, "50% Payment Verified", "50% payment verified for {query_code}.")),
    ),
    _event(
        "PAYMENT_FINAL_REQUESTED", PaymentVariables,
        (CLIENT, _t(CLIENT, WARNING, "Final 50% Payment Required",
                    "Your work is complete! Please pay the remaining 50% ({currency}{half_amount}) "
                    "to receive your content.", "high")),
        (ADMIN, _t(ADMIN, INFO, "Client Ready for Final Payment", "Client ready for final payment on {work_code}")),
    ),
    _event(
        "PAYMENT_FINAL_UPLOADED", PaymentVariables,
        (CLIENT, _t(CLIENT, SUCCESS, "Final Payment Receipt Received",
                    "Your final payment receipt has been uploaded. We will verify it shortly.")),
        (ADMIN, _t(ADMIN, CRITICAL, "Final Payment Verification Required",
                   "Final payment receipt uploaded for {work_code}. Amount: {currency}{half_amount}. Verify now.",
                   "critical")),
    ),
    _event(
        "PAYMENT_VERIFIED", OrderVariables,
        (CLIENT, _t(CLIENT, SUCCESS, "Payment Verified! Content Ready",
                    "Your final payment has been verified! Your content is ready for download.", "high")),
        (ADMIN, _t(ADMIN, SUCCESS, "Final Payment Verified",
                   "Final payment verified for {work_code}. Ready for delivery.")),
    ),
    _event(
        "PAYMENT_REJECTED", ReasonVariables,
        (CLIENT, _t(CLIENT, CRITICAL, "Payment Verification Failed",
                    "Your payment could not be verified. Reason: {reason}. Please upload a valid receipt.",
                    "critical")),
        (BDE, _t(BDE, WARNING, "Payment Rejected", "Payment for {query_code} was rejected. Reason: {reason}")),
    ),
    _event(
        "WRITER_ASSIGNED", WriterVariables,
        (WRITER, _t(WRITER, INFO, "New Task Assigned",
                    "You have been assigned to work on: {paper_topic}. Deadline: {deadline}", "high")),
        (ADMIN, _t(ADMIN, INFO, "Writer Assigned", "Writer {writer_name} assigned to {work_code}")),
    ),
    _event(
        "TASK_ACCEPTED", WriterVariables,
        (ADMIN, _t(ADMIN, SUCCESS, "Task Accepted by Writer", "Writer {writer_name} accepted task for {work_code}")),
    ),
    _event(
        "TASK_REJECTED", WriterVariables,
        (ADMIN, _t(ADMIN, WARNING, "Task Rejected by Writer",
                   "Writer {writer_name} rejected task for {work_code}. Reason: {reason}. Please reassign.",
                   "high")),
    ),
    _event(
        "WORK_STARTED", OrderVariables,
        (CLIENT, _t(CLIENT, INFO, "Work Started", "Work has started on your order ({work_code}).")),
    ),
    _event(
        "QC_SUBMITTED", OrderVariables,
        (ADMIN, _t(ADMIN, WARNING, "Submission Pending QC",
                   "New submission for {work_code} requires QC review", "high")),
        (WRITER, _t(WRITER, SUCCESS, "Draft Submitted for QC", "Your draft for {work_code} has been submitted for QC")),
    ),
    _event(
        "QC_APPROVED", OrderVariables,
        (CLIENT, _t(CLIENT, SUCCESS, "Work Ready", "Your order ({work_code}) is ready for delivery", "high")),
        (WRITER, _t(WRITER, SUCCESS, "QC Approved!", "Your submission for {work_code} has been approved!")),
        (ADMIN, _t(ADMIN, SUCCESS, "QC Approved", "Submission approved for {work_code}")),
    ),
    _event(
        "QC_REJECTED", FeedbackVariables,
        (WRITER, _t(WRITER, CRITICAL, "Revision Required",
                    "Your submission for {work_code} needs revision. Feedback: {feedback}", "critical")),
        (ADMIN, _t(ADMIN, WARNING, "Revision Required", "Revision required for {work_code}")),
    ),
    _event(
        "ORDER_DELIVERED", OrderVariables,
        (CLIENT, _t(CLIENT, SUCCESS, "Order Delivered!",
                    "Your order ({work_code}) has been delivered. Please check your downloads.", "high")),
    ),
    _event(
        "REVISION_REQUESTED", RevisionVariables,
        (CLIENT, _t(CLIENT, INFO, "Revision Requested",
                    "Revision requested for {work_code}. We will update you once ready.")),
        (WRITER, _t(WRITER, CRITICAL, "Client Requested Revision",
                    "Client requested revision for {work_code}. Details: {details}", "critical")),
        (ADMIN, _t(ADMIN, WARNING, "Revision Request", "Revision requested for {work_code}", "high")),
    ),
    _event(
        "ORDER_COMPLETED", OrderVariables,
        (CLIENT, _t(CLIENT, SUCCESS, "Order Completed",
                    "Your order ({work_code}) is now complete. Thank you for using our service!", "high")),
        (WRITER, _t(WRITER, SUCCESS, "Order Completed - Great Work!",
                    "Order {work_code} has been marked complete. Great work!")),
    ),
    _event(
        "QUERY_REJECTED", ReasonVariables,
        (CLIENT, _t(CLIENT, WARNING, "Query Rejected",
                    "Your query ({query_code}) could not be accepted. Reason: {reason}")),
        (BDE, _t(BDE, INFO, "Query Rejected", "Query {query_code} was rejected. Reason: {reason}")),
    ),
    _event(
        "ORDER_CANCELLED", ReasonVariables,
        (CLIENT, _t(CLIENT, WARNING, "Order Cancelled",
                    "Your order ({query_code}) has been cancelled. Reason: {reason}")),
        (WRITER, _t(WRITER, INFO, "Order Cancelled", "Order {work_code} has been cancelled.")),
    ),
    _event(
        "ORDER_STATUS_OVERRIDDEN", StatusVariables,
        (CLIENT, _t(CLIENT, INFO, "Order Status Updated", "Your order ({query_code}) status: {status}")),
        (WRITER, _t(WRITER, INFO, "Order Status Updated", "{work_code} status changed to: {status}")),
    ),

    # Deadline bands
    _event(
        "DEADLINE_REMINDER_24H", DeadlineVariables,
        (WRITER, _t(WRITER, WARNING, "Deadline in 24 Hours",
                    "Order {work_code} is due in 24 hours. Please ensure timely submission.")),
    ),
    _event(
        "DEADLINE_REMINDER_12H", DeadlineVariables,
        (WRITER, _t(WRITER, CRITICAL, "Deadline in 12 Hours",
                    "URGENT: Order {work_code} is due in 12 hours!", "high")),
    ),
    _event(
        "DEADLINE_REMINDER_6H", DeadlineVariables,
        (WRITER, _t(WRITER, CRITICAL, "Deadline in 6 Hours",
                    "CRITICAL: Order {work_code} is due in 6 hours!", "critical")),
    ),
    _event(
        "DEADLINE_REMINDER_1H", DeadlineVariables,
        (WRITER, _t(WRITER, CRITICAL, "FINAL: Deadline in 1 Hour",
                    "FINAL WARNING: Order {work_code} is due in 1 HOUR!", "critical")),
        (ADMIN, _t(ADMIN, CRITICAL, "URGENT: Deadline Imminent",
                   "Order {work_code} deadline in 1 hour!", "critical")),
    ),

    # Unread follow-ups
    # Follow-ups keep the severity of the notification they remind about
    _event(
        "UNREAD_REMINDER", ReminderVariables,
        (RECIPIENT, _t(RECIPIENT, CRITICAL, "Reminder: {title}",
                       "{message} (reminder {reminder_number})", link="{link_url}")),
    ),
    _event(
        "UNREAD_ESCALATION", ReminderVariables,
        (ADMIN, _t(ADMIN, CRITICAL, "Escalation: {title}",
                   "{recipient_name} has not acted on \"{title}\" after {reminder_number} reminders "
                   "({minutes_unread} minutes).", "critical", link="{link_url}")),
    ),
)


def build_template_registry(events: Iterable[WorkflowEvent] = DEFAULT_EVENTS) -> TemplateRegistry:
    return TemplateRegistry(events)
