"""
AuditTrail unit tests.

Tests cover:
  - Normalized comparison (None == "", enums by value)
  - diff(x, x) is empty; applying a diff and re-diffing is empty
  - Revision only built for a non-empty diff
"""

from changeflow.models import Actor, ChangeEntity, EntityKind, Priority, Role
from changeflow.services.audit import AuditTrail, normalize

from conftest import ORG, T0

AUDIT = AuditTrail()
ACTOR = Actor(id="u-engineer", role=Role.ENGINEER, organization_id=ORG)


def entity(**content):
    return ChangeEntity(
        number="ECR-0001",
        kind=EntityKind.REQUEST,
        organization_id=ORG,
        status="DRAFT",
        title="Bracket change",
        description=None,
        priority=Priority.MEDIUM,
        submitter_id="u-requestor",
        created_at=T0,
        updated_at=T0,
        content=content,
    )


class TestNormalize:
    def test_none_and_empty_string_equal(self):
        assert normalize(None) == normalize("")

    def test_enum_compares_by_value(self):
        assert normalize(Priority.HIGH) == normalize("HIGH")

    def test_numbers_compare_as_strings(self):
        assert normalize(5) == normalize("5")


class TestDiff:
    def test_diff_of_snapshot_with_itself_is_empty(self):
        snapshot = entity(root_cause="Fatigue", cost=1200).snapshot()
        assert AUDIT.diff(snapshot, snapshot).empty

    def test_none_to_empty_string_is_no_change(self):
        assert AUDIT.diff_entity(entity(), {"description": ""}).empty

    def test_changed_fields_keep_proposed_order(self):
        changes = AUDIT.diff_entity(entity(), {"title": "New title", "root_cause": "Fatigue", "priority": "MEDIUM"})
        assert changes.changed_fields == ["title", "root_cause"]
        assert changes.previous_values == {"title": "Bracket change", "root_cause": None}
        assert changes.new_values == {"title": "New title", "root_cause": "Fatigue"}

    def test_applied_diff_rediffs_empty(self):
        original = entity()
        proposed = {"title": "New title", "priority": "HIGH", "root_cause": "Fatigue"}
        changes = AUDIT.diff_entity(original, proposed)
        updated = original.apply(changes.new_values)
        assert AUDIT.diff_entity(updated, proposed).empty

    def test_default_note(self):
        changes = AUDIT.diff_entity(entity(), {"title": "A", "root_cause": "B"})
        assert AUDIT.default_note(changes) == "Updated 2 field(s): title, root_cause"


class TestRevision:
    def test_no_revision_for_empty_diff(self):
        changes = AUDIT.diff_entity(entity(), {"title": "Bracket change"})
        assert AUDIT.build_revision(entity(), ACTOR, changes) is None

    def test_revision_contents(self):
        original = entity()
        changes = AUDIT.diff_entity(original, {"priority": "HIGH"})
        revision = AUDIT.build_revision(original, ACTOR, changes, created_at=T0)
        assert revision.entity_id == original.id
        assert revision.actor_id == "u-engineer"
        assert revision.previous_values == {"priority": "MEDIUM"}
        assert revision.new_values == {"priority": "HIGH"}
        assert revision.note == "Updated 1 field(s): priority"
        assert revision.created_at == T0
