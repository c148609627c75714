"""
ChangeFlow Audit Trail

Field-level diffs and immutable revision records.

Two values are equal when their normalized string forms are equal:
None and "" are the same, enums compare by value, datetimes by ISO format.
An empty diff never produces a revision.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from ..models.change import Actor, ChangeEntity, Revision

logger = logging.getLogger(__name__)


def normalize(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


@dataclass
class FieldDiff:
    changed_fields: List[str] = field(default_factory=list)
    previous_values: Dict[str, Any] = field(default_factory=dict)
    new_values: Dict[str, Any] = field(default_factory=dict)

    @property
    def empty(self) -> bool:
        return not self.changed_fields


class AuditTrail:
    """Pure diffing plus the construction of Revision records."""

    def diff(self, previous: Mapping[str, Any], proposed: Mapping[str, Any]) -> FieldDiff:
        """
        Compare only the keys in ``proposed`` against ``previous``.

        changed_fields keeps the order in which fields were proposed.
        """
        result = FieldDiff()
        for name, value in proposed.items():
            before = previous.get(name)
            if normalize(before) == normalize(value):
                continue
            result.changed_fields.append(name)
            result.previous_values[name] = before
            result.new_values[name] = value
        return result

    def diff_entity(self, entity: ChangeEntity, proposed: Mapping[str, Any]) -> FieldDiff:
        return self.diff(entity.snapshot(), proposed)

    def default_note(self, changes: FieldDiff) -> str:
        count = len(changes.changed_fields)
        return f"Updated {count} field(s): {', '.join(changes.changed_fields)}"

    def build_revision(
        self,
        entity: ChangeEntity,
        actor: Actor,
        changes: FieldDiff,
        note: Optional[str] = None,
        created_at: Optional[datetime] = None
    ) -> Optional[Revision]:
        """Revision for ``changes``, or None when nothing differs."""
        if changes.empty:
            return None

        revision = Revision(
            entity_id=entity.id,
            entity_kind=entity.kind,
            organization_id=entity.organization_id,
            actor_id=actor.id,
            previous_values=_jsonable(changes.previous_values),
            new_values=_jsonable(changes.new_values),
            changed_fields=list(changes.changed_fields),
            note=note or self.default_note(changes),
            **({"created_at": created_at} if created_at else {}),
        )
        logger.debug(
            "Revision built for %s: %s", entity.number, ", ".join(changes.changed_fields),
            extra={"entity_id": entity.id, "actor_id": actor.id},
        )
        return revision


def _jsonable(values: Mapping[str, Any]) -> Dict[str, Any]:
    out = {}
    for name, value in values.items():
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, datetime):
            value = value.isoformat()
        out[name] = value
    return out
