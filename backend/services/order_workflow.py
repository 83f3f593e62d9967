"""
Order Workflow Definitions
Canonical status enum, phases, per-role transition tables and the named action
catalogue. This is the single source of truth for order workflow rules; the
tables are built once at start-up and handed to the state machine.
"""
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from models import UserRole


class OrderStatus(int, Enum):
    """
    Order workflow states. Integer codes are what is stored in orders.status.
    """
    # Query
    PENDING_QUERY = 26
    QUOTATION_SENT = 27
    ACCEPTED = 28

    # Payment
    AWAITING_50_PERCENT = 46
    PARTIAL_PAYMENT_VERIFIED = 47
    AWAITING_FINAL_PAYMENT = 48
    PAYMENT_VERIFIED = 30
    PAYMENT_REJECTED = 39

    # Execution
    WRITER_ASSIGNED = 31
    IN_PROGRESS = 32
    WRITER_REJECTED_TASK = 40

    # QC
    PENDING_QC = 33
    APPROVED = 34
    REVISION_REQUIRED = 36

    # Delivery
    DELIVERED = 37
    READY_FOR_DELIVERY = 49

    # Terminal
    COMPLETED = 35
    QUERY_REJECTED = 38
    CANCELLED = 45


class OrderPhase(str, Enum):
    QUERY = "QUERY"
    PAYMENT = "PAYMENT"
    EXECUTION = "EXECUTION"
    QC = "QC"
    DELIVERY = "DELIVERY"
    TERMINAL = "TERMINAL"


PHASE_ORDER: Tuple[OrderPhase, ...] = tuple(OrderPhase)


STATUS_PHASE: Mapping[OrderStatus, OrderPhase] = MappingProxyType({
    OrderStatus.PENDING_QUERY: OrderPhase.QUERY,
    OrderStatus.QUOTATION_SENT: OrderPhase.QUERY,
    OrderStatus.ACCEPTED: OrderPhase.QUERY,
    OrderStatus.AWAITING_50_PERCENT: OrderPhase.PAYMENT,
    OrderStatus.PARTIAL_PAYMENT_VERIFIED: OrderPhase.PAYMENT,
    OrderStatus.AWAITING_FINAL_PAYMENT: OrderPhase.PAYMENT,
    OrderStatus.PAYMENT_VERIFIED: OrderPhase.PAYMENT,
    OrderStatus.PAYMENT_REJECTED: OrderPhase.PAYMENT,
    OrderStatus.WRITER_ASSIGNED: OrderPhase.EXECUTION,
    OrderStatus.IN_PROGRESS: OrderPhase.EXECUTION,
    OrderStatus.WRITER_REJECTED_TASK: OrderPhase.EXECUTION,
    OrderStatus.PENDING_QC: OrderPhase.QC,
    OrderStatus.APPROVED: OrderPhase.QC,
    OrderStatus.REVISION_REQUIRED: OrderPhase.QC,
    OrderStatus.DELIVERED: OrderPhase.DELIVERY,
    OrderStatus.READY_FOR_DELIVERY: OrderPhase.DELIVERY,
    OrderStatus.COMPLETED: OrderPhase.TERMINAL,
    OrderStatus.QUERY_REJECTED: OrderPhase.TERMINAL,
    OrderStatus.CANCELLED: OrderPhase.TERMINAL,
})


STATUS_LABELS: Mapping[OrderStatus, str] = MappingProxyType({
    OrderStatus.PENDING_QUERY: "Pending Query",
    OrderStatus.QUOTATION_SENT: "Quotation Sent",
    OrderStatus.ACCEPTED: "Accepted",
    OrderStatus.AWAITING_50_PERCENT: "Awaiting 50% Payment",
    OrderStatus.PARTIAL_PAYMENT_VERIFIED: "50% Payment Verified",
    OrderStatus.AWAITING_FINAL_PAYMENT: "Awaiting Final Payment",
    OrderStatus.PAYMENT_VERIFIED: "Payment Verified",
    OrderStatus.PAYMENT_REJECTED: "Payment Rejected",
    OrderStatus.WRITER_ASSIGNED: "Writer Assigned",
    OrderStatus.IN_PROGRESS: "In Progress",
    OrderStatus.WRITER_REJECTED_TASK: "Writer Rejected Task",
    OrderStatus.PENDING_QC: "Pending QC",
    OrderStatus.APPROVED: "Approved",
    OrderStatus.REVISION_REQUIRED: "Revision Required",
    OrderStatus.DELIVERED: "Delivered",
    OrderStatus.READY_FOR_DELIVERY: "Ready for Delivery",
    OrderStatus.COMPLETED: "Completed",
    OrderStatus.QUERY_REJECTED: "Query Rejected",
    OrderStatus.CANCELLED: "Cancelled",
})


# Terminal states - only an admin override may leave them
TERMINAL_STATES: FrozenSet[OrderStatus] = frozenset({
    OrderStatus.COMPLETED,
    OrderStatus.QUERY_REJECTED,
    OrderStatus.CANCELLED,
})


# Orders in these states have a writer working against a deadline
ACTIVE_WORK_STATES: FrozenSet[OrderStatus] = frozenset({
    OrderStatus.WRITER_ASSIGNED,
    OrderStatus.IN_PROGRESS,
    OrderStatus.REVISION_REQUIRED,
})


# Codes written by older deployments, translated on read
LEGACY_STATUS_CODES: Mapping[int, OrderStatus] = MappingProxyType({
    29: OrderStatus.AWAITING_50_PERCENT,
    41: OrderStatus.CANCELLED,
    42: OrderStatus.AWAITING_FINAL_PAYMENT,
    43: OrderStatus.PAYMENT_VERIFIED,
})


S = OrderStatus

# Valid state transitions per role - whitelist approach
ROLE_TRANSITIONS: Dict[str, Dict[OrderStatus, List[OrderStatus]]] = {
    UserRole.CLIENT.value: {
        S.QUOTATION_SENT: [S.ACCEPTED],
        S.ACCEPTED: [S.AWAITING_50_PERCENT],
        S.APPROVED: [S.AWAITING_FINAL_PAYMENT],
    },
    UserRole.BDE.value: {
        S.PENDING_QUERY: [S.QUOTATION_SENT],
        S.QUOTATION_SENT: [S.PENDING_QUERY],
    },
    UserRole.WRITER.value: {
        S.WRITER_ASSIGNED: [S.IN_PROGRESS],
        S.IN_PROGRESS: [S.PENDING_QC],
        S.REVISION_REQUIRED: [S.PENDING_QC],
    },
    UserRole.ADMIN.value: {
        S.PENDING_QUERY: [S.QUOTATION_SENT, S.QUERY_REJECTED],
        S.QUOTATION_SENT: [S.PENDING_QUERY, S.ACCEPTED, S.QUERY_REJECTED],
        S.ACCEPTED: [S.AWAITING_50_PERCENT, S.QUOTATION_SENT, S.QUERY_REJECTED],
        S.AWAITING_50_PERCENT: [S.PARTIAL_PAYMENT_VERIFIED, S.PAYMENT_REJECTED, S.ACCEPTED],
        S.PARTIAL_PAYMENT_VERIFIED: [S.WRITER_ASSIGNED],
        S.WRITER_ASSIGNED: [S.IN_PROGRESS, S.PARTIAL_PAYMENT_VERIFIED, S.WRITER_REJECTED_TASK],
        S.IN_PROGRESS: [S.PENDING_QC, S.WRITER_ASSIGNED],
        S.PENDING_QC: [S.APPROVED, S.REVISION_REQUIRED],
        S.APPROVED: [S.AWAITING_FINAL_PAYMENT, S.REVISION_REQUIRED, S.READY_FOR_DELIVERY],
        S.AWAITING_FINAL_PAYMENT: [S.PAYMENT_VERIFIED, S.PAYMENT_REJECTED, S.APPROVED],
        S.PAYMENT_VERIFIED: [S.DELIVERED, S.READY_FOR_DELIVERY],
        S.READY_FOR_DELIVERY: [S.DELIVERED],
        S.REVISION_REQUIRED: [S.PENDING_QC, S.WRITER_ASSIGNED],
        S.DELIVERED: [S.COMPLETED, S.REVISION_REQUIRED],
        # Recovery out of rejection states
        S.PAYMENT_REJECTED: [S.AWAITING_50_PERCENT, S.AWAITING_FINAL_PAYMENT, S.CANCELLED],
        S.WRITER_REJECTED_TASK: [S.WRITER_ASSIGNED, S.CANCELLED],
        S.COMPLETED: [],
    },
}


class TransitionTable:
    """Immutable (role, from_status) -> allowed targets lookup."""

    def __init__(self, rules: Mapping[str, Mapping[OrderStatus, Iterable[OrderStatus]]],
                 terminal_states: Iterable[OrderStatus] = TERMINAL_STATES,
                 admin_role: str = UserRole.ADMIN.value):
        self._rules = MappingProxyType({
            role: MappingProxyType({
                OrderStatus(src): frozenset(OrderStatus(t) for t in targets)
                for src, targets in per_role.items()
            })
            for role, per_role in rules.items()
        })
        self.terminal_states: FrozenSet[OrderStatus] = frozenset(terminal_states)
        self.admin_role = admin_role
        self._check_admin_superset()

    def _check_admin_superset(self):
        admin_rules = self._rules.get(self.admin_role)
        if admin_rules is None:
            raise ValueError(f"Transition table has no '{self.admin_role}' role")
        for role, per_role in self._rules.items():
            for src, targets in per_role.items():
                missing = targets - admin_rules.get(src, frozenset())
                if missing:
                    raise ValueError(
                        f"Admin table missing {role} edge(s) {src.name} -> "
                        f"{sorted(m.name for m in missing)}"
                    )

    @property
    def roles(self) -> FrozenSet[str]:
        return frozenset(self._rules.keys())

    def has_role(self, role: str) -> bool:
        return role in self._rules

    def allowed(self, role: str, from_status: OrderStatus) -> Optional[FrozenSet[OrderStatus]]:
        """Allowed targets, or None when the role has no entry for from_status."""
        per_role = self._rules.get(role)
        if per_role is None:
            return None
        return per_role.get(from_status)

    def is_terminal(self, status: OrderStatus) -> bool:
        return status in self.terminal_states

    def edges(self, role: str) -> List[Tuple[OrderStatus, OrderStatus]]:
        per_role = self._rules.get(role, {})
        return [(src, dst) for src, targets in per_role.items() for dst in targets]


def build_transition_table() -> TransitionTable:
    return TransitionTable(ROLE_TRANSITIONS)


# ============================================================================
# Named actions
# ============================================================================

@dataclass(frozen=True)
class OrderAction:
    """An inbound action. to_status is None for business actions that do not move the order."""
    name: str
    roles: FrozenSet[str]
    from_statuses: FrozenSet[OrderStatus]
    to_status: Optional[OrderStatus]
    event: Optional[str]
    requires_reason: bool = False

    @property
    def is_transition(self) -> bool:
        return self.to_status is not None


def _action(name, roles, from_statuses, to_status, event, requires_reason=False) -> OrderAction:
    return OrderAction(
        name=name,
        roles=frozenset(r.value for r in roles),
        from_statuses=frozenset(from_statuses),
        to_status=to_status,
        event=event,
        requires_reason=requires_reason,
    )


R = UserRole

ORDER_ACTIONS: Tuple[OrderAction, ...] = (
    _action("generate-quotation", [R.BDE, R.ADMIN], [S.PENDING_QUERY], S.QUOTATION_SENT, "QUOTATION_GENERATED"),
    _action("revoke-quotation", [R.BDE, R.ADMIN], [S.QUOTATION_SENT], S.PENDING_QUERY, None),
    _action("accept-quotation", [R.CLIENT, R.ADMIN], [S.QUOTATION_SENT], S.ACCEPTED, "QUOTATION_ACCEPTED"),
    _action("request-50-payment", [R.CLIENT, R.ADMIN], [S.ACCEPTED], S.AWAITING_50_PERCENT, "PAYMENT_50_REQUESTED"),
    _action("upload-50-payment", [R.CLIENT], [S.AWAITING_50_PERCENT], None, "PAYMENT_50_UPLOADED"),
    _action("verify-50-payment", [R.ADMIN], [S.AWAITING_50_PERCENT], S.PARTIAL_PAYMENT_VERIFIED, "PAYMENT_50_VERIFIED"),
    _action("reject-50-payment", [R.ADMIN], [S.AWAITING_50_PERCENT], S.PAYMENT_REJECTED, "PAYMENT_REJECTED", True),
    _action("assign-writer", [R.ADMIN], [S.PARTIAL_PAYMENT_VERIFIED], S.WRITER_ASSIGNED, "WRITER_ASSIGNED"),
    _action("accept-task", [R.WRITER], [S.WRITER_ASSIGNED], None, "TASK_ACCEPTED"),
    _action("reject-task", [R.ADMIN], [S.WRITER_ASSIGNED], S.WRITER_REJECTED_TASK, "TASK_REJECTED", True),
    _action("reassign-writer", [R.ADMIN], [S.WRITER_REJECTED_TASK, S.REVISION_REQUIRED, S.IN_PROGRESS],
            S.WRITER_ASSIGNED, "WRITER_ASSIGNED"),
    _action("start-work", [R.WRITER, R.ADMIN], [S.WRITER_ASSIGNED], S.IN_PROGRESS, "WORK_STARTED"),
    _action("submit-for-review", [R.WRITER, R.ADMIN], [S.IN_PROGRESS], S.PENDING_QC, "QC_SUBMITTED"),
    _action("resubmit-revision", [R.WRITER, R.ADMIN], [S.REVISION_REQUIRED], S.PENDING_QC, "QC_SUBMITTED"),
    _action("approve-review", [R.ADMIN], [S.PENDING_QC], S.APPROVED, "QC_APPROVED"),
    _action("reject-review", [R.ADMIN], [S.PENDING_QC, S.APPROVED], S.REVISION_REQUIRED, "QC_REJECTED", True),
    _action("request-final-payment", [R.CLIENT, R.ADMIN], [S.APPROVED], S.AWAITING_FINAL_PAYMENT,
            "PAYMENT_FINAL_REQUESTED"),
    _action("upload-final-payment", [R.CLIENT], [S.AWAITING_FINAL_PAYMENT], None, "PAYMENT_FINAL_UPLOADED"),
    _action("verify-final-payment", [R.ADMIN], [S.AWAITING_FINAL_PAYMENT], S.PAYMENT_VERIFIED, "PAYMENT_VERIFIED"),
    _action("reject-final-payment", [R.ADMIN], [S.AWAITING_FINAL_PAYMENT], S.PAYMENT_REJECTED,
            "PAYMENT_REJECTED", True),
    _action("reopen-payment", [R.ADMIN], [S.PAYMENT_REJECTED], S.AWAITING_50_PERCENT, "PAYMENT_50_REQUESTED"),
    _action("reopen-final-payment", [R.ADMIN], [S.PAYMENT_REJECTED], S.AWAITING_FINAL_PAYMENT,
            "PAYMENT_FINAL_REQUESTED"),
    _action("mark-ready-for-delivery", [R.ADMIN], [S.APPROVED, S.PAYMENT_VERIFIED], S.READY_FOR_DELIVERY, None),
    _action("deliver", [R.ADMIN], [S.PAYMENT_VERIFIED, S.READY_FOR_DELIVERY], S.DELIVERED, "ORDER_DELIVERED"),
    _action("request-revision", [R.ADMIN], [S.DELIVERED], S.REVISION_REQUIRED, "REVISION_REQUESTED", True),
    _action("complete", [R.ADMIN], [S.DELIVERED], S.COMPLETED, "ORDER_COMPLETED"),
    _action("reject-query", [R.ADMIN], [S.PENDING_QUERY, S.QUOTATION_SENT, S.ACCEPTED], S.QUERY_REJECTED,
            "QUERY_REJECTED", True),
    _action("cancel", [R.ADMIN], [S.PAYMENT_REJECTED, S.WRITER_REJECTED_TASK], S.CANCELLED, "ORDER_CANCELLED", True),
)


ACTIONS_BY_NAME: Mapping[str, OrderAction] = MappingProxyType({a.name: a for a in ORDER_ACTIONS})



def get_action(name: str) -> Optional[OrderAction]:
    return ACTIONS_BY_NAME.get(name)


def actions_for_targets(role: str, from_status: OrderStatus,
                        targets: Iterable[OrderStatus]) -> List[str]:
    """Names of transition actions the role could use to reach any of targets from from_status."""
    wanted = set(targets)
    return [
        a.name for a in ORDER_ACTIONS
        if a.is_transition and a.to_status in wanted
        and from_status in a.from_statuses and role in a.roles
    ]


def business_actions_for(role: str, status: OrderStatus) -> List[str]:
    return [
        a.name for a in ORDER_ACTIONS
        if not a.is_transition and status in a.from_statuses and role in a.roles
    ]


def find_event_for_transition(from_status: OrderStatus, to_status: OrderStatus) -> Optional[str]:
    """Workflow event tied to an edge, used by generic admin transitions."""
    for a in ORDER_ACTIONS:
        if a.to_status == to_status and from_status in a.from_statuses:
            return a.event
    return None


def coerce_status(value) -> OrderStatus:
    """Read a stored status code, translating legacy codes."""
    code = int(value)
    if code in LEGACY_STATUS_CODES:
        return LEGACY_STATUS_CODES[code]
    return OrderStatus(code)


def is_terminal_state(status: OrderStatus) -> bool:
    return status in TERMINAL_STATES


def get_phase(status: OrderStatus) -> OrderPhase:
    return STATUS_PHASE[status]


def status_label(status) -> str:
    try:
        return STATUS_LABELS[coerce_status(status)]
    except ValueError:
        return f"Unknown ({status})"
