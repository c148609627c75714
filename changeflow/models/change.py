"""
ChangeFlow Change-Record Models

Request → Order → Notice lineage

Core principles:
1. Every change record is a ChangeEntity of one kind (Request, Order, Notice)
2. Status only moves through the workflow engine
3. Revisions and escalation events are append-only
4. Derived state (recipient status, overdue) is computed on read, never stored
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS
# =============================================================================

class EntityKind(str, Enum):
    REQUEST = "request"
    ORDER = "order"
    NOTICE = "notice"


NUMBER_PREFIXES = {
    EntityKind.REQUEST: "ECR",
    EntityKind.ORDER: "ECO",
    EntityKind.NOTICE: "ECN",
}


class RequestStatus(str, Enum):
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    UNDER_REVIEW = "UNDER_REVIEW"
    IN_ANALYSIS = "IN_ANALYSIS"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class OrderStatus(str, Enum):
    DRAFT = "DRAFT"
    BACKLOG = "BACKLOG"
    PLANNING = "PLANNING"
    APPROVED = "APPROVED"
    IN_PROGRESS = "IN_PROGRESS"
    REVIEW = "REVIEW"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class NoticeStatus(str, Enum):
    DRAFT = "DRAFT"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    DISTRIBUTED = "DISTRIBUTED"
    EFFECTIVE = "EFFECTIVE"
    CANCELLED = "CANCELLED"


STATUS_ENUMS = {
    EntityKind.REQUEST: RequestStatus,
    EntityKind.ORDER: OrderStatus,
    EntityKind.NOTICE: NoticeStatus,
}


class Role(str, Enum):
    REQUESTOR = "REQUESTOR"
    ENGINEER = "ENGINEER"
    QUALITY = "QUALITY"
    MANUFACTURING = "MANUFACTURING"
    DOCUMENT_CONTROL = "DOCUMENT_CONTROL"
    MANAGER = "MANAGER"
    ADMIN = "ADMIN"
    VIEWER = "VIEWER"


class Action(str, Enum):
    CREATE = "CREATE"
    READ = "READ"
    UPDATE = "UPDATE"
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    TRANSITION = "TRANSITION"


class Priority(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class DeadlineBucket(str, Enum):
    HOURS_24 = "HOURS_24"
    HOURS_48 = "HOURS_48"
    DAYS_5 = "DAYS_5"
    DAYS_10 = "DAYS_10"
    DAYS_30 = "DAYS_30"

    @property
    def duration(self) -> timedelta:
        unit, _, amount = self.value.partition("_")
        if unit == "HOURS":
            return timedelta(hours=int(amount))
        return timedelta(days=int(amount))


class RecipientKind(str, Enum):
    INTERNAL = "INTERNAL"
    EXTERNAL = "EXTERNAL"


class RecipientStatus(str, Enum):
    SENT = "SENT"
    OPENED = "OPENED"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    OVERDUE = "OVERDUE"  # Display overlay only


class EscalationAction(str, Enum):
    REMINDER = "REMINDER"
    ESCALATION = "ESCALATION"


# =============================================================================
# CORE MODELS
# =============================================================================

class ChangeEntity(BaseModel):
    """
    A change record: Request, Order or Notice.

    Fixed attributes are shared by every kind; anything kind-specific
    (root cause, implementation plan, distribution list, sign-offs...)
    lives in ``content``.
    """
    id: UUID = Field(default_factory=uuid4)
    number: str = Field(..., description="Public number, e.g. ECR-0001")
    kind: EntityKind
    organization_id: str
    status: str

    # Core properties
    title: str
    description: Optional[str] = None
    priority: Priority = Priority.MEDIUM
    content: Dict[str, Any] = Field(default_factory=dict)

    # People
    submitter_id: str
    assignee_id: Optional[str] = None
    approver_id: Optional[str] = None

    # Lineage: Request -> bundling Order, Notice -> its Order
    order_id: Optional[UUID] = None

    # Notice distribution policy
    response_deadline: Optional[DeadlineBucket] = None
    automatic_escalation_enabled: bool = False
    reminder_after_hours: Optional[int] = None
    escalate_after_hours: Optional[int] = None

    # Milestones
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    submitted_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    distributed_at: Optional[datetime] = None
    effective_at: Optional[datetime] = None

    # Optimistic concurrency
    version: int = 0

    @model_validator(mode="after")
    def _check_status(self) -> "ChangeEntity":
        statuses = STATUS_ENUMS[self.kind]
        if self.status not in {s.value for s in statuses}:
            raise ValueError(f"{self.status!r} is not a {self.kind.value} status")
        return self

    def field_value(self, name: str) -> Any:
        """Read a fixed attribute or a content field by name."""
        if name in ENTITY_ATTRIBUTES:
            return getattr(self, name)
        return self.content.get(name)

    def snapshot(self) -> Dict[str, Any]:
        """Flat field map (attributes + content) used for diffing."""
        data = self.model_dump(exclude={"content"})
        data.update(self.content)
        return data

    def apply(self, values: Mapping[str, Any]) -> "ChangeEntity":
        """Return a validated copy with ``values`` applied."""
        data = self.model_dump()
        content = dict(data.pop("content"))
        for name, value in values.items():
            if name in ENTITY_ATTRIBUTES:
                data[name] = value
            else:
                content[name] = value
        data["content"] = content
        return type(self).model_validate(data)


ENTITY_ATTRIBUTES = frozenset(ChangeEntity.model_fields) - {"content"}


class Revision(BaseModel):
    """
    Immutable audit record of a content or status change.

    Only created when at least one field materially differs.
    """
    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    entity_id: UUID
    entity_kind: EntityKind
    organization_id: str
    actor_id: str

    previous_values: Dict[str, Any]
    new_values: Dict[str, Any]
    changed_fields: List[str]
    note: str

    created_at: datetime = Field(default_factory=utcnow)


class Recipient(BaseModel):
    """
    A party who receives a Notice and may have to acknowledge it.

    Status is NOT stored: see DistributionTracker.derive_status().
    """
    id: UUID = Field(default_factory=uuid4)
    notice_id: UUID

    name: str
    contact_address: str
    kind: RecipientKind = RecipientKind.INTERNAL
    acknowledge_required: bool = True

    sent_at: datetime
    opened_at: Optional[datetime] = None
    acknowledged_at: Optional[datetime] = None
    acknowledgment_comments: Optional[str] = None
    response_deadline: datetime

    # Monotonic escalation state
    reminders_sent: int = 0
    escalated: bool = False
    escalated_at: Optional[datetime] = None

    version: int = 0


class EscalationEvent(BaseModel):
    """Append-only record of a reminder or escalation."""
    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    notice_id: UUID
    recipient_id: UUID
    recipient_address: str

    action: EscalationAction
    performed_by: str  # User id or "system"
    performed_at: datetime = Field(default_factory=utcnow)
    notes: Optional[str] = None


# =============================================================================
# SUPPORTING MODELS
# =============================================================================

class Actor(BaseModel):
    """Verified caller, as handed over by the identity layer."""
    id: str
    role: Role
    organization_id: str
    name: Optional[str] = None


class EntityView(BaseModel):
    """Entity plus what the viewing actor may do with it."""
    entity: ChangeEntity
    allowed_actions: List[Action]
    dropped_fields: Dict[str, str] = Field(
        default_factory=dict,
        description="Requested fields that were not applied, with the reason"
    )


class TransitionOption(BaseModel):
    """An edge the viewing actor may take from the current status."""
    target: str
    description: str
    required_fields: List[str] = Field(default_factory=list)
    requires_capability: Optional[Action] = None
