from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from enum import Enum
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class UserRole(str, Enum):
    CLIENT = "client"
    BDE = "bde"
    WRITER = "writer"
    ADMIN = "admin"

class UserStatus(str, Enum):
    ACTIVE = "ACTIVE"
    DISABLED = "DISABLED"

class NotificationSeverity(str, Enum):
    SUCCESS = "success"
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"

class AuditAction(str, Enum):
    # Order lifecycle
    ORDER_STATUS_CHANGED = "ORDER_STATUS_CHANGED"
    ORDER_STATUS_ENSURED = "ORDER_STATUS_ENSURED"
    ORDER_TRANSITION_REJECTED = "ORDER_TRANSITION_REJECTED"
    ADMIN_OVERRIDE = "ADMIN_OVERRIDE"
    ORDER_BUSINESS_ACTION = "ORDER_BUSINESS_ACTION"

    # Notifications
    NOTIFICATION_DELETED = "NOTIFICATION_DELETED"
    REMINDER_ESCALATED = "REMINDER_ESCALATED"
    DEADLINE_REMINDER_FIRED = "DEADLINE_REMINDER_FIRED"

    # Realtime
    UNAUTHORIZED_CHANNEL_ACCESS = "UNAUTHORIZED_CHANNEL_ACCESS"

    # Side effects
    SIDE_EFFECT_FAILED_PERMANENT = "SIDE_EFFECT_FAILED_PERMANENT"

    # Admin
    ADMIN_JOB_RUN = "ADMIN_JOB_RUN"

# ============================================================================
# MODELS
# ============================================================================

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_role: Optional[UserRole] = None
    actor_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    reason_code: Optional[str] = None
    ip_address: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)


class OrderHistoryEntry(BaseModel):
    """Append-only record of something that happened to an order."""
    model_config = ConfigDict(extra="ignore")

    history_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    order_id: str
    actor_id: Optional[str] = None
    actor_name: str = "System"
    actor_role: str = "system"
    action_type: str
    description: str
    old_status: Optional[int] = None
    new_status: Optional[int] = None
    created_at: datetime = Field(default_factory=_utcnow)


class Notification(BaseModel):
    model_config = ConfigDict(extra="ignore")

    notification_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    recipient_id: str
    severity: NotificationSeverity
    title: str
    message: str
    link_url: Optional[str] = None
    is_read: bool = False
    read_at: Optional[datetime] = None
    reminder_count: int = 0
    reminder_tracked: bool = False
    parent_notification_id: Optional[str] = None
    event: Optional[str] = None
    order_id: Optional[str] = None
    context_code: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)


class Actor(BaseModel):
    """The authenticated user performing an action."""
    model_config = ConfigDict(extra="ignore")

    user_id: str
    role: str
    name: Optional[str] = None
    email: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or self.user_id
