"""
ChangeFlow Permission Engine

Context-aware authorization for change records.

Layers, evaluated in order:
1. Organization scope: other tenants' records do not exist (NOT_FOUND)
2. Base grant: role × kind × action capability matrix (data, not code)
3. Context overrides: submitter / assignee edit rights by status
4. Terminal statuses: nothing but READ
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional, Set

from ..errors import AuthorizationError, NotFoundError
from ..models.change import (
    Action,
    Actor,
    ChangeEntity,
    EntityKind,
    NoticeStatus,
    OrderStatus,
    RequestStatus,
    Role,
)
from .transitions import TransitionRules

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Capability:
    """One cell of the capability matrix."""
    role: Role
    kind: EntityKind
    action: Action
    statuses: Optional[FrozenSet[str]] = None   # None = any status
    owned_only: bool = False                     # Only on records the actor submitted
    fields: Optional[FrozenSet[str]] = None      # UPDATE only; None = any editable field


class CapabilityMatrix:
    """
    Role × kind × action → capability.

    Loaded once from a nested mapping so that new roles or kinds are
    configuration:

        {"MANAGER": {"request": {"APPROVE": {"statuses": ["PENDING_APPROVAL"]}}}}
    """

    def __init__(self, capabilities: Iterable[Capability]):
        self._cells: Dict[tuple, Capability] = {
            (c.role, c.kind, c.action): c for c in capabilities
        }

    @classmethod
    def from_table(cls, table: Mapping[str, Mapping[str, Mapping[str, Mapping[str, Any]]]]) -> "CapabilityMatrix":
        capabilities = []
        for role, kinds in table.items():
            for kind, actions in kinds.items():
                for action, conditions in actions.items():
                    statuses = conditions.get("statuses")
                    fields = conditions.get("fields")
                    capabilities.append(Capability(
                        role=Role(role),
                        kind=EntityKind(kind),
                        action=Action(action),
                        statuses=frozenset(statuses) if statuses is not None else None,
                        owned_only=bool(conditions.get("owned_only", False)),
                        fields=frozenset(fields) if fields is not None else None,
                    ))
        return cls(capabilities)

    def lookup(self, role: Role, kind: EntityKind, action: Action) -> Optional[Capability]:
        return self._cells.get((role, kind, action))


_ALL = {
    "CREATE": {}, "UPDATE": {}, "APPROVE": {}, "REJECT": {}, "TRANSITION": {},
}

DEFAULT_CAPABILITIES = {
    "REQUESTOR": {
        "request": {
            "CREATE": {},
            "UPDATE": {"owned_only": True, "statuses": ["DRAFT"]},
            "TRANSITION": {"owned_only": True},
        },
    },
    "ENGINEER": {
        "request": {
            "CREATE": {},
            "UPDATE": {
                "statuses": ["SUBMITTED", "UNDER_REVIEW", "IN_ANALYSIS"],
                "fields": [
                    "technical_assessment", "root_cause", "resource_requirements",
                    "implementation_complexity", "risk_assessment", "timeline_estimate",
                ],
            },
            "TRANSITION": {},
        },
        "order": {
            "CREATE": {},
            "UPDATE": {"fields": [
                "implementation_plan", "testing_plan", "rollback_plan", "resources_required",
                "estimated_effort", "detailed_schedule", "resource_allocation",
                "engineering_approval",
            ]},
            "TRANSITION": {},
        },
    },
    "QUALITY": {
        "request": {"UPDATE": {"fields": ["quality_impact"]}},
        "order": {
            "UPDATE": {"fields": ["inspection_points", "test_requirements", "quality_approval"]},
            "TRANSITION": {},
        },
        "notice": {"UPDATE": {"fields": ["verification_method"]}},
    },
    "MANUFACTURING": {
        "request": {"UPDATE": {"fields": ["manufacturing_impact"]}},
        "order": {
            "UPDATE": {"fields": [
                "manufacturing_approval", "actual_hours", "issues_encountered", "deviations",
            ]},
            "TRANSITION": {},
        },
        "notice": {"UPDATE": {"fields": ["team_training_status"]}},
    },
    "MANAGER": {
        "request": {
            "CREATE": {},
            "UPDATE": {"fields": ["priority", "assignee_id"]},
            "APPROVE": {"statuses": ["PENDING_APPROVAL"]},
            "REJECT": {"statuses": ["PENDING_APPROVAL"]},
            "TRANSITION": {},
        },
        "order": {
            "CREATE": {},
            "UPDATE": {"fields": ["priority", "assignee_id", "target_date", "estimated_total_cost"]},
            "APPROVE": {"statuses": ["PLANNING"]},
            "TRANSITION": {},
        },
        "notice": {
            "UPDATE": {"fields": ["priority", "assignee_id", "closure_approver", "closure_date"]},
            "APPROVE": {"statuses": ["PENDING_APPROVAL"]},
            "TRANSITION": {},
        },
    },
    "DOCUMENT_CONTROL": {
        "order": {"UPDATE": {"fields": ["document_updates"]}},
        "notice": {"CREATE": {}, "UPDATE": {}, "TRANSITION": {}},
    },
    "ADMIN": {
        "request": dict(_ALL),
        "order": dict(_ALL),
        "notice": dict(_ALL),
    },
    "VIEWER": {},
}

# Submitter may edit their own record while it is still being drafted
EDITABLE_STATUSES = {
    EntityKind.REQUEST: frozenset({RequestStatus.DRAFT.value}),
    EntityKind.ORDER: frozenset({
        OrderStatus.DRAFT.value, OrderStatus.BACKLOG.value, OrderStatus.PLANNING.value,
    }),
    EntityKind.NOTICE: frozenset({NoticeStatus.DRAFT.value}),
}

# Assignee may edit while the record is being worked
IN_PROGRESS_STATUSES = {
    EntityKind.REQUEST: frozenset({
        RequestStatus.SUBMITTED.value, RequestStatus.UNDER_REVIEW.value,
        RequestStatus.IN_ANALYSIS.value,
    }),
    EntityKind.ORDER: frozenset({
        OrderStatus.APPROVED.value, OrderStatus.IN_PROGRESS.value, OrderStatus.REVIEW.value,
    }),
    EntityKind.NOTICE: frozenset({
        NoticeStatus.PENDING_APPROVAL.value, NoticeStatus.APPROVED.value,
    }),
}

# Role hierarchy for delegation checks
ROLE_HIERARCHY = {
    Role.VIEWER: 1,
    Role.REQUESTOR: 2,
    Role.ENGINEER: 3,
    Role.QUALITY: 4,
    Role.MANUFACTURING: 4,
    Role.DOCUMENT_CONTROL: 5,
    Role.MANAGER: 6,
    Role.ADMIN: 7,
}

INSTANCE_ACTIONS = (Action.UPDATE, Action.APPROVE, Action.REJECT, Action.TRANSITION)


def can_act_for_role(acting: Role, target: Role) -> bool:
    return ROLE_HIERARCHY[acting] >= ROLE_HIERARCHY[target]


@dataclass
class PermissionDecision:
    """
    Explainable result of evaluating one actor against one entity.

    ``update_fields`` is None when UPDATE is unrestricted, a set when the
    role grant limits it to specific fields, and empty when UPDATE is denied.
    """
    visible: bool
    allowed: Set[Action] = field(default_factory=set)
    denied: Dict[Action, str] = field(default_factory=dict)
    update_fields: Optional[FrozenSet[str]] = frozenset()
    relations: Set[str] = field(default_factory=set)

    def allows(self, action: Action) -> bool:
        return action in self.allowed

    def reason(self, action: Action) -> Optional[str]:
        return self.denied.get(action)


class PermissionEngine:
    """
    Computes what an actor may do with a specific change record.

    Rules:
    1. Organization mismatch: the record is invisible, no actions at all
    2. Same organization: READ always
    3. UPDATE / APPROVE / REJECT / TRANSITION from the capability matrix,
       honoring status, ownership and field restrictions
    4. Submitter gets UPDATE in editable statuses, assignee in in-progress
       statuses, regardless of role
    5. Terminal statuses are read-only for everyone
    """

    def __init__(
        self,
        matrix: Optional[CapabilityMatrix] = None,
        transitions: Optional[TransitionRules] = None
    ):
        self.matrix = matrix or CapabilityMatrix.from_table(DEFAULT_CAPABILITIES)
        self.transitions = transitions or TransitionRules()

    def evaluate(self, actor: Actor, kind: EntityKind, entity: ChangeEntity) -> PermissionDecision:
        if entity.organization_id != actor.organization_id:
            return PermissionDecision(visible=False)

        decision = PermissionDecision(visible=True, allowed={Action.READ})
        status = entity.status

        if entity.submitter_id == actor.id:
            decision.relations.add("submitter")
        if entity.assignee_id and entity.assignee_id == actor.id:
            decision.relations.add("assignee")
        if entity.approver_id and entity.approver_id == actor.id:
            decision.relations.add("approver")

        # Base grants
        for action in INSTANCE_ACTIONS:
            capability = self.matrix.lookup(actor.role, kind, action)
            reason = self._check(capability, actor, kind, entity, action, decision.relations)
            if reason is None:
                decision.allowed.add(action)
                if action == Action.UPDATE:
                    decision.update_fields = capability.fields
            else:
                decision.denied[action] = reason

        # Context overrides
        override = (
            ("submitter" in decision.relations and status in EDITABLE_STATUSES.get(kind, ()))
            or ("assignee" in decision.relations and status in IN_PROGRESS_STATUSES.get(kind, ()))
        )
        if override:
            decision.allowed.add(Action.UPDATE)
            decision.denied.pop(Action.UPDATE, None)
            decision.update_fields = None

        # Absorbing states
        if self.transitions.is_terminal(kind, status):
            for action in INSTANCE_ACTIONS:
                if action in decision.allowed:
                    decision.allowed.discard(action)
                decision.denied[action] = f"{kind.value} is {status}, a terminal status"
            decision.update_fields = frozenset()

        if Action.UPDATE not in decision.allowed:
            decision.update_fields = frozenset()

        return decision

    def allowed_actions(self, actor: Actor, kind: EntityKind, entity: ChangeEntity) -> Set[Action]:
        return set(self.evaluate(actor, kind, entity).allowed)

    def ensure_visible(self, actor: Actor, kind: EntityKind, entity: Optional[ChangeEntity]) -> ChangeEntity:
        """Scope check. Missing and foreign records are indistinguishable."""
        if entity is None or entity.organization_id != actor.organization_id:
            raise NotFoundError(
                kind.value.capitalize(),
                context={
                    "actor_id": actor.id,
                    "organization_id": actor.organization_id,
                    "entity_id": str(entity.id) if entity else None,
                    "cross_organization": entity is not None,
                },
            )
        return entity

    def require(
        self,
        actor: Actor,
        kind: EntityKind,
        entity: Optional[ChangeEntity],
        action: Action
    ) -> PermissionDecision:
        """Raise NotFoundError or AuthorizationError unless ``action`` is allowed."""
        entity = self.ensure_visible(actor, kind, entity)
        decision = self.evaluate(actor, kind, entity)
        if not decision.allows(action):
            reason = decision.reason(action) or f"{action.value} is not permitted"
            logger.info(
                "Permission denied: %s", reason,
                extra={"actor_id": actor.id, "entity_kind": kind.value, "entity_id": entity.id},
            )
            raise AuthorizationError(
                reason,
                context={"actor_id": actor.id, "role": actor.role.value, "entity_id": str(entity.id)},
            )
        return decision

    def can_create(self, actor: Actor, kind: EntityKind) -> bool:
        return self.matrix.lookup(actor.role, kind, Action.CREATE) is not None

    def require_create(self, actor: Actor, kind: EntityKind) -> None:
        if not self.can_create(actor, kind):
            raise AuthorizationError(
                f"role {actor.role.value} cannot CREATE {kind.value}",
                context={"actor_id": actor.id, "organization_id": actor.organization_id},
            )

    def _check(
        self,
        capability: Optional[Capability],
        actor: Actor,
        kind: EntityKind,
        entity: ChangeEntity,
        action: Action,
        relations: Set[str]
    ) -> Optional[str]:
        """Return a denial reason, or None when the capability applies."""
        if capability is None:
            return f"role {actor.role.value} has no {action.value} capability on {kind.value}"
        if capability.owned_only and "submitter" not in relations:
            return f"role {actor.role.value} can only {action.value} {kind.value}s they submitted"
        if capability.statuses is not None and entity.status not in capability.statuses:
            return f"role {actor.role.value} cannot {action.value} while status={entity.status}"
        return None
