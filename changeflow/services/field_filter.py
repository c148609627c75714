"""
ChangeFlow Field Filter

Restricts which attributes a mutation may change, given the actor's
permission decision for the record in its current status.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from ..models.change import Action, Actor, ChangeEntity, EntityKind
from .permissions import PermissionDecision, PermissionEngine

# Never writable through a mutation payload; owned by the workflow itself
SYSTEM_FIELDS = frozenset({
    "id", "number", "kind", "organization_id", "status", "content",
    "submitter_id", "approver_id", "order_id", "version",
    "created_at", "updated_at", "submitted_at", "approved_at", "rejected_at",
    "completed_at", "distributed_at", "effective_at",
})

# Writable only as part of an APPROVE / REJECT action
APPROVAL_FIELDS = frozenset({
    "approval_comments",
    "budget_authorization",
    "rejection_reason",
})


@dataclass
class FilterResult:
    allowed: Dict[str, Any] = field(default_factory=dict)
    dropped: Dict[str, str] = field(default_factory=dict)  # field -> reason

    @property
    def empty(self) -> bool:
        return not self.allowed


class FieldFilter:
    """
    Drops fields the actor may not change.

    - System fields: always dropped
    - Approval fields: only while performing APPROVE / REJECT, and only by
      an actor holding that capability; during that action nothing else passes
    - Everything else: requires UPDATE; restricted to the role's field list
      unless a submitter/assignee override made UPDATE unrestricted

    Dropping everything is a valid outcome. The caller treats it as a no-op.
    """

    def __init__(self, permissions: Optional[PermissionEngine] = None):
        self.permissions = permissions or PermissionEngine()

    def filter(
        self,
        actor: Actor,
        kind: EntityKind,
        entity: ChangeEntity,
        requested: Mapping[str, Any],
        action: Action = Action.UPDATE,
        decision: Optional[PermissionDecision] = None
    ) -> FilterResult:
        decision = decision or self.permissions.evaluate(actor, kind, entity)
        result = FilterResult()

        for name, value in requested.items():
            reason = self._reason(name, action, decision)
            if reason is None:
                result.allowed[name] = value
            else:
                result.dropped[name] = reason

        return result

    def _reason(self, name: str, action: Action, decision: PermissionDecision) -> Optional[str]:
        if name in SYSTEM_FIELDS:
            return "system field"

        if action in (Action.APPROVE, Action.REJECT):
            if name not in APPROVAL_FIELDS:
                return f"only approval fields may be set during {action.value}"
            if not decision.allows(action):
                return decision.reason(action) or f"{action.value} is not permitted"
            return None

        if name in APPROVAL_FIELDS:
            return "approval field, writable only during APPROVE or REJECT"
        if not decision.allows(Action.UPDATE):
            return decision.reason(Action.UPDATE) or "UPDATE is not permitted"
        if decision.update_fields is not None and name not in decision.update_fields:
            return "field not editable by this role"
        return None
