"""
ChangeFlow Transition Rules

Each change-record kind owns a status graph. An edge carries:
- the roles allowed to take it
- required fields that must be non-empty on the entity
- guard predicates (bundled requests approved, sign-offs, effective date)

TransitionRules decides the SHAPE of a change. Who may act is decided by
PermissionEngine; WorkflowService requires both to pass.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Set, Tuple

from ..models.change import (
    Actor,
    ChangeEntity,
    EntityKind,
    NoticeStatus,
    OrderStatus,
    RequestStatus,
    Role,
    utcnow,
)


@dataclass
class TransitionContext:
    """Facts a guard may need beyond the entity itself."""
    now: datetime = field(default_factory=utcnow)
    bundled_requests: List[ChangeEntity] = field(default_factory=list)


# A guard returns a violation message, or None when satisfied
Guard = Callable[[ChangeEntity, TransitionContext], Optional[str]]


@dataclass(frozen=True)
class TransitionRule:
    source: str
    target: str
    roles: FrozenSet[Role]
    description: str
    required_fields: Tuple[str, ...] = ()
    guards: Tuple[Guard, ...] = ()


class ViolationClause(str, Enum):
    EDGE = "edge"
    ROLE = "role"
    PRECONDITION = "precondition"


@dataclass(frozen=True)
class Violation:
    clause: ViolationClause
    message: str


@dataclass
class TransitionResult:
    kind: EntityKind
    source: str
    target: str
    rule: Optional[TransitionRule]
    allowed_next: Set[str]
    violations: List[Violation] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.violations

    @property
    def role_denied(self) -> bool:
        return any(v.clause == ViolationClause.ROLE for v in self.violations)

    @property
    def messages(self) -> List[str]:
        return [v.message for v in self.violations]


# =============================================================================
# GUARDS
# =============================================================================

def bundled_requests_approved(entity: ChangeEntity, ctx: TransitionContext) -> Optional[str]:
    blocking = [
        r for r in ctx.bundled_requests
        if r.status != RequestStatus.APPROVED
    ]
    if not blocking:
        return None
    listed = ", ".join(f"{r.number} is {r.status}" for r in blocking)
    return f"All bundled requests must be APPROVED ({listed})"


def department_signoffs(entity: ChangeEntity, ctx: TransitionContext) -> Optional[str]:
    missing = [
        label for name, label in (
            ("quality_approval", "Quality"),
            ("engineering_approval", "Engineering"),
            ("manufacturing_approval", "Manufacturing"),
        )
        if not entity.field_value(name)
    ]
    if not missing:
        return None
    return f"Missing department sign-off: {', '.join(missing)}"


def effective_date_reached(entity: ChangeEntity, ctx: TransitionContext) -> Optional[str]:
    value = entity.field_value("effective_date")
    if is_blank(value):
        return None  # Reported by the required-field check
    try:
        effective = _as_datetime(value)
    except (TypeError, ValueError):
        return "Field 'effective_date' is not a valid date"
    if effective > ctx.now:
        return f"Effective date {effective.date().isoformat()} has not been reached"
    return None


def _as_datetime(value: Any) -> datetime:
    """ISO string, date or datetime; naive values are taken as UTC."""
    if isinstance(value, str):
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        value = datetime.fromisoformat(text)
    elif isinstance(value, date) and not isinstance(value, datetime):
        value = datetime.combine(value, time())
    elif not isinstance(value, datetime):
        raise TypeError(f"not a date: {value!r}")
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) == 0
    return False


# =============================================================================
# DEFAULT WORKFLOW TABLES
# =============================================================================

_MANAGERS = frozenset({Role.MANAGER, Role.ADMIN})


def _rule(source, target, roles, description, required=(), guards=()):
    return TransitionRule(
        source=source.value,
        target=target.value,
        roles=frozenset(roles),
        description=description,
        required_fields=tuple(required),
        guards=tuple(guards),
    )


REQUEST_RULES = [
    _rule(RequestStatus.DRAFT, RequestStatus.SUBMITTED,
          {Role.REQUESTOR, Role.ENGINEER, Role.MANAGER, Role.ADMIN},
          "Submit request for review",
          required=("title", "description", "reason", "priority", "customer_impact")),
    _rule(RequestStatus.SUBMITTED, RequestStatus.UNDER_REVIEW,
          {Role.ENGINEER, Role.MANAGER, Role.ADMIN},
          "Start technical review"),
    _rule(RequestStatus.UNDER_REVIEW, RequestStatus.IN_ANALYSIS,
          {Role.ENGINEER, Role.ADMIN},
          "Move to detailed analysis",
          required=("technical_assessment",)),
    _rule(RequestStatus.IN_ANALYSIS, RequestStatus.PENDING_APPROVAL,
          {Role.ENGINEER, Role.ADMIN},
          "Ready for management approval",
          required=(
              "technical_assessment", "root_cause", "resource_requirements",
              "timeline_estimate", "risk_assessment",
          )),
    _rule(RequestStatus.PENDING_APPROVAL, RequestStatus.APPROVED, _MANAGERS,
          "Approve request for implementation",
          required=("approval_comments",)),
    _rule(RequestStatus.PENDING_APPROVAL, RequestStatus.REJECTED, _MANAGERS,
          "Reject request with comments",
          required=("approval_comments",)),
    _rule(RequestStatus.DRAFT, RequestStatus.CANCELLED,
          {Role.REQUESTOR, Role.MANAGER, Role.ADMIN},
          "Cancel request before submission"),
    _rule(RequestStatus.SUBMITTED, RequestStatus.CANCELLED, _MANAGERS, "Cancel submitted request"),
    _rule(RequestStatus.UNDER_REVIEW, RequestStatus.CANCELLED, _MANAGERS, "Cancel request during review"),
    _rule(RequestStatus.IN_ANALYSIS, RequestStatus.CANCELLED, _MANAGERS, "Cancel request during analysis"),
    _rule(RequestStatus.PENDING_APPROVAL, RequestStatus.CANCELLED, _MANAGERS,
          "Withdraw request from approval"),
]

ORDER_RULES = [
    _rule(OrderStatus.DRAFT, OrderStatus.PLANNING, {Role.ENGINEER, Role.ADMIN},
          "Move to planning",
          required=("title", "description", "implementation_plan")),
    _rule(OrderStatus.DRAFT, OrderStatus.BACKLOG, {Role.ENGINEER, Role.MANAGER, Role.ADMIN},
          "Park order in backlog"),
    _rule(OrderStatus.BACKLOG, OrderStatus.PLANNING, {Role.ENGINEER, Role.MANAGER, Role.ADMIN},
          "Move from backlog to active planning"),
    _rule(OrderStatus.PLANNING, OrderStatus.BACKLOG, _MANAGERS, "Move back to backlog"),
    _rule(OrderStatus.PLANNING, OrderStatus.APPROVED, _MANAGERS,
          "Approve order for execution",
          required=(
              "implementation_plan", "testing_plan", "resources_required",
              "estimated_effort", "target_date",
          )),
    _rule(OrderStatus.APPROVED, OrderStatus.IN_PROGRESS,
          {Role.ENGINEER, Role.MANUFACTURING, Role.ADMIN},
          "Start implementation",
          required=("detailed_schedule", "resource_allocation")),
    _rule(OrderStatus.IN_PROGRESS, OrderStatus.REVIEW,
          {Role.ENGINEER, Role.MANUFACTURING, Role.ADMIN},
          "Submit for quality review",
          required=("actual_hours",)),
    _rule(OrderStatus.REVIEW, OrderStatus.IN_PROGRESS, {Role.QUALITY, Role.MANAGER, Role.ADMIN},
          "Return to implementation"),
    _rule(OrderStatus.REVIEW, OrderStatus.COMPLETED, {Role.QUALITY, Role.MANAGER, Role.ADMIN},
          "Complete order",
          guards=(bundled_requests_approved, department_signoffs)),
] + [
    _rule(status, OrderStatus.CANCELLED,
          {Role.ENGINEER, Role.MANAGER, Role.ADMIN} if status == OrderStatus.DRAFT else _MANAGERS,
          f"Cancel order from {status.value}")
    for status in (
        OrderStatus.DRAFT, OrderStatus.BACKLOG, OrderStatus.PLANNING,
        OrderStatus.APPROVED, OrderStatus.IN_PROGRESS, OrderStatus.REVIEW,
    )
]

NOTICE_RULES = [
    _rule(NoticeStatus.DRAFT, NoticeStatus.PENDING_APPROVAL, {Role.DOCUMENT_CONTROL, Role.ADMIN},
          "Submit notice for approval",
          required=("title", "description", "distribution_list", "internal_stakeholders")),
    _rule(NoticeStatus.PENDING_APPROVAL, NoticeStatus.APPROVED, _MANAGERS,
          "Approve notice for distribution"),
    _rule(NoticeStatus.APPROVED, NoticeStatus.DISTRIBUTED, {Role.DOCUMENT_CONTROL, Role.ADMIN},
          "Distribute notice to stakeholders",
          required=("distribution_list",)),
    _rule(NoticeStatus.DISTRIBUTED, NoticeStatus.EFFECTIVE,
          {Role.DOCUMENT_CONTROL, Role.MANAGER, Role.ADMIN},
          "Notice becomes effective",
          required=("effective_date",),
          guards=(effective_date_reached,)),
    _rule(NoticeStatus.DRAFT, NoticeStatus.CANCELLED,
          {Role.DOCUMENT_CONTROL, Role.MANAGER, Role.ADMIN},
          "Cancel notice before approval"),
    _rule(NoticeStatus.PENDING_APPROVAL, NoticeStatus.CANCELLED, _MANAGERS,
          "Cancel notice during approval"),
    _rule(NoticeStatus.APPROVED, NoticeStatus.CANCELLED, _MANAGERS, "Cancel approved notice"),
]

DEFAULT_RULES = {
    EntityKind.REQUEST: REQUEST_RULES,
    EntityKind.ORDER: ORDER_RULES,
    EntityKind.NOTICE: NOTICE_RULES,
}

# Status entered -> milestone timestamp it stamps
MILESTONE_FIELDS = {
    "SUBMITTED": "submitted_at",
    "APPROVED": "approved_at",
    "REJECTED": "rejected_at",
    "COMPLETED": "completed_at",
    "DISTRIBUTED": "distributed_at",
    "EFFECTIVE": "effective_at",
}

# Milestones that keep their first value if the status is re-entered
STICKY_MILESTONES = {"distributed_at"}


# =============================================================================
# SERVICE
# =============================================================================

class TransitionRules:
    """
    Pure lookup + validation over the workflow tables.

    Validation clauses:
    (a) the edge exists (short-circuits: nothing else is meaningful)
    (b) the actor's role may take the edge
    (c) entity preconditions: required fields and guards
    Every violated (b)/(c) clause is collected, not just the first.
    """

    def __init__(self, rules: Optional[Mapping[EntityKind, Iterable[TransitionRule]]] = None):
        rules = rules if rules is not None else DEFAULT_RULES
        self._rules: Dict[EntityKind, Dict[Tuple[str, str], TransitionRule]] = {
            kind: {(r.source, r.target): r for r in kind_rules}
            for kind, kind_rules in rules.items()
        }

    def allowed_next(self, kind: EntityKind, from_status: str) -> Set[str]:
        return {
            target for (source, target) in self._rules.get(kind, {})
            if source == _value(from_status)
        }

    def is_terminal(self, kind: EntityKind, status: str) -> bool:
        return not self.allowed_next(kind, status)

    def statuses(self, kind: EntityKind) -> Set[str]:
        found = set()
        for source, target in self._rules.get(kind, {}):
            found.update((source, target))
        return found

    def terminal_statuses(self, kind: EntityKind) -> Set[str]:
        return {s for s in self.statuses(kind) if self.is_terminal(kind, s)}

    def rule_for(self, kind: EntityKind, from_status: str, to_status: str) -> Optional[TransitionRule]:
        return self._rules.get(kind, {}).get((_value(from_status), _value(to_status)))

    def rules_from(
        self,
        kind: EntityKind,
        from_status: str,
        role: Optional[Role] = None
    ) -> List[TransitionRule]:
        """Edges leaving ``from_status``, optionally only those ``role`` may take."""
        found = [
            rule for (source, _), rule in self._rules.get(kind, {}).items()
            if source == _value(from_status) and (role is None or role in rule.roles)
        ]
        return sorted(found, key=lambda r: r.target)

    def validate(
        self,
        kind: EntityKind,
        from_status: str,
        to_status: str,
        actor_role: Role,
        entity: Optional[ChangeEntity] = None,
        actor: Optional[Actor] = None,
        context: Optional[TransitionContext] = None,
    ) -> TransitionResult:
        from_status, to_status = _value(from_status), _value(to_status)
        result = TransitionResult(
            kind=kind,
            source=from_status,
            target=to_status,
            rule=self.rule_for(kind, from_status, to_status),
            allowed_next=self.allowed_next(kind, from_status),
        )

        # (a) Edge
        if result.rule is None:
            result.violations.append(Violation(
                ViolationClause.EDGE,
                f"Invalid transition from {from_status} to {to_status}",
            ))
            return result

        rule = result.rule

        # (b) Role
        if actor_role not in rule.roles:
            result.violations.append(Violation(
                ViolationClause.ROLE,
                f"Role {_value(actor_role)} is not authorized to move from {from_status} to {to_status}",
            ))

        # (c) Preconditions
        if entity is not None:
            ctx = context or TransitionContext()
            for name in rule.required_fields:
                if is_blank(entity.field_value(name)):
                    result.violations.append(Violation(
                        ViolationClause.PRECONDITION,
                        f"Field '{name}' is required for this transition",
                    ))
            for guard in rule.guards:
                message = guard(entity, ctx)
                if message:
                    result.violations.append(Violation(ViolationClause.PRECONDITION, message))

        return result

    def derived_patch(
        self,
        entity: ChangeEntity,
        to_status: str,
        actor: Actor,
        now: datetime
    ) -> Dict[str, Any]:
        """
        Deterministic field patch for entering ``to_status``.

        Computed here, applied by WorkflowService.
        """
        to_status = _value(to_status)
        patch: Dict[str, Any] = {"status": to_status, "updated_at": now}

        milestone = MILESTONE_FIELDS.get(to_status)
        if milestone and not (milestone in STICKY_MILESTONES and getattr(entity, milestone)):
            patch[milestone] = now

        if to_status in ("APPROVED", "REJECTED"):
            patch["approver_id"] = actor.id

        return patch


def _value(status: Any) -> Any:
    return getattr(status, "value", status)
