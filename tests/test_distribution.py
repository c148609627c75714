"""
DistributionTracker tests.

Tests cover:
  - Distribution moves an APPROVED notice to DISTRIBUTED and registers recipients
  - Recipient status and overdue are projections, never stored
  - Acknowledgment is idempotent; first open wins
  - Progress counts only recipients who must acknowledge
  - Manual reminders / escalations
  - Automatic sweep fires each reminder and escalation at most once
"""

from datetime import timedelta
from uuid import uuid4

import pytest

from changeflow.errors import AuthorizationError, BusinessRuleError, NotFoundError, StorageError
from changeflow.models import EntityKind, EscalationAction, Recipient, RecipientStatus
from changeflow.services import EscalationSweeper
from changeflow.services.distribution import AcknowledgeOutcome, progress

from conftest import T0

RECIPIENTS = [
    {"name": "Line A", "contact_address": "line-a@acme.test"},
    {"name": "Supplier", "contact_address": "supplier@vendor.test", "kind": "EXTERNAL"},
    {"name": "Archive", "contact_address": "archive@acme.test", "acknowledge_required": False},
]

NOTICE_ID = uuid4()


async def distributed_notice(build, tracker, actors, **fields):
    notice = await build.approved_notice(**fields)
    tracking = await tracker.distribute(actors["doc_control"], notice.id, RECIPIENTS)
    by_name = {view.recipient.name: view.recipient for view in tracking.recipients}
    return tracking.notice, by_name


# ═════════════════════════════════════════════════════════════════════════
# DISTRIBUTION
# ═════════════════════════════════════════════════════════════════════════

class TestDistribute:
    @pytest.mark.anyio
    async def test_approved_notice_becomes_distributed(self, build, tracker, actors, clock):
        notice = await build.approved_notice()
        sent_at = clock.now

        tracking = await tracker.distribute(actors["doc_control"], notice.id, RECIPIENTS)

        assert tracking.notice.status == "DISTRIBUTED"
        assert tracking.notice.distributed_at == sent_at
        assert len(tracking.recipients) == 3
        for view in tracking.recipients:
            assert view.recipient.sent_at == sent_at
            assert view.recipient.response_deadline == sent_at + timedelta(days=5)
            assert view.status == RecipientStatus.SENT

    @pytest.mark.anyio
    async def test_recipients_notified(self, build, tracker, actors, notifier):
        await distributed_notice(build, tracker, actors)
        assert len(notifier.messages_for("line-a@acme.test")) == 1
        assert "requires your acknowledgment" in notifier.messages_for("line-a@acme.test")[0]
        assert "for your information" in notifier.messages_for("archive@acme.test")[0]

    @pytest.mark.anyio
    async def test_known_addresses_skipped(self, build, tracker, actors):
        notice, _ = await distributed_notice(build, tracker, actors)
        tracking = await tracker.distribute(actors["doc_control"], notice.id, [
            {"name": "Line A again", "contact_address": "LINE-A@acme.test"},
            {"name": "Line B", "contact_address": "line-b@acme.test"},
        ])
        names = sorted(view.recipient.name for view in tracking.recipients)
        assert names == ["Archive", "Line A", "Line B", "Supplier"]

    @pytest.mark.anyio
    async def test_draft_notice_cannot_be_distributed(self, build, workflow, tracker, actors):
        order = await build.order()
        view = await workflow.create_notice(actors["doc_control"], order.id, {"distribution_list": ["x@acme.test"]})
        with pytest.raises(BusinessRuleError):
            await tracker.distribute(actors["doc_control"], view.entity.id, RECIPIENTS)

    @pytest.mark.anyio
    async def test_distribution_needs_transition_rights(self, build, tracker, actors):
        notice = await build.approved_notice()
        with pytest.raises(AuthorizationError):
            await tracker.distribute(actors["engineer"], notice.id, RECIPIENTS)

    @pytest.mark.anyio
    async def test_failed_distribution_leaves_notice_approved(
        self, build, workflow, tracker, actors, store, monkeypatch
    ):
        notice = await build.approved_notice()

        async def failing_add(recipient):
            raise StorageError("recipient table unavailable")

        monkeypatch.setattr(store, "add_recipient", failing_add)
        with pytest.raises(StorageError):
            await tracker.distribute(actors["doc_control"], notice.id, RECIPIENTS)

        reloaded = await workflow.get(actors["doc_control"], EntityKind.NOTICE, notice.id)
        assert reloaded.entity.status == "APPROVED"
        assert reloaded.entity.distributed_at is None

    @pytest.mark.anyio
    async def test_failed_distribution_notifies_nobody(
        self, build, tracker, actors, store, notifier, monkeypatch
    ):
        notice = await build.approved_notice()
        before = list(notifier.sent)

        async def failing_add(recipient):
            raise StorageError("recipient table unavailable")

        monkeypatch.setattr(store, "add_recipient", failing_add)
        with pytest.raises(StorageError):
            await tracker.distribute(actors["admin"], notice.id, RECIPIENTS)

        assert notifier.sent == before

    @pytest.mark.anyio
    async def test_owner_told_after_distribution_commits(self, build, tracker, actors, notifier):
        notice = await build.approved_notice()

        await tracker.distribute(actors["admin"], notice.id, RECIPIENTS)

        assert notifier.messages_for("u-doc-control")[-1] == (
            f"{notice.number} '{notice.title}' moved from APPROVED to DISTRIBUTED"
        )


# ═════════════════════════════════════════════════════════════════════════
# ACKNOWLEDGMENT AND PROGRESS
# ═════════════════════════════════════════════════════════════════════════

class TestAcknowledgment:
    @pytest.mark.anyio
    async def test_partial_acknowledgment_and_overdue(self, build, tracker, actors, store, clock):
        notice, recipients = await distributed_notice(build, tracker, actors)
        supplier_before = await store.get_recipient(recipients["Supplier"].id)

        await tracker.acknowledge(recipients["Line A"].id, "Received")
        tracking = await tracker.tracking(actors["viewer"], notice.id)
        assert tracking.progress.percent_complete == 50
        assert tracking.progress.required == 2
        assert tracking.progress.acknowledged == 1

        clock.advance(days=6)
        tracking = await tracker.tracking(actors["viewer"], notice.id)
        views = {view.recipient.name: view for view in tracking.recipients}

        assert views["Supplier"].status == RecipientStatus.OVERDUE
        assert views["Supplier"].overdue
        assert views["Supplier"].hours_remaining < 0
        assert views["Line A"].status == RecipientStatus.ACKNOWLEDGED
        assert views["Archive"].status == RecipientStatus.SENT
        assert not views["Archive"].overdue
        assert tracking.progress.overdue == 1
        assert await store.get_recipient(recipients["Supplier"].id) == supplier_before

    @pytest.mark.anyio
    async def test_second_acknowledgment_changes_nothing(self, build, tracker, actors, clock):
        _, recipients = await distributed_notice(build, tracker, actors)
        first = await tracker.acknowledge(recipients["Line A"].id, "Received")
        clock.advance(hours=2)

        second = await tracker.acknowledge(recipients["Line A"].id, "Received again")

        assert first.outcome == AcknowledgeOutcome.ACKNOWLEDGED
        assert second.outcome == AcknowledgeOutcome.ALREADY_ACKNOWLEDGED
        assert second.recipient.recipient.acknowledged_at == first.recipient.recipient.acknowledged_at
        assert second.recipient.recipient.acknowledgment_comments == "Received"

    @pytest.mark.anyio
    async def test_acknowledge_implies_opened(self, build, tracker, actors, clock):
        _, recipients = await distributed_notice(build, tracker, actors)
        result = await tracker.acknowledge(recipients["Line A"].id)
        assert result.recipient.recipient.opened_at == clock.now

    @pytest.mark.anyio
    async def test_first_open_wins(self, build, tracker, actors, clock):
        _, recipients = await distributed_notice(build, tracker, actors)
        first = await tracker.mark_opened(recipients["Line A"].id)
        opened_at = clock.now
        clock.advance(hours=1)
        second = await tracker.mark_opened(recipients["Line A"].id)

        assert first.status == RecipientStatus.OPENED
        assert second.recipient.opened_at == opened_at

    @pytest.mark.anyio
    async def test_unknown_recipient(self, tracker):
        with pytest.raises(NotFoundError):
            await tracker.acknowledge(uuid4())
        with pytest.raises(NotFoundError):
            await tracker.mark_opened("not-a-uuid")

    def test_nothing_required_is_complete(self):
        assert progress([], T0).percent_complete == 100

    @pytest.mark.parametrize("acknowledged,expected", [(1, 13), (3, 38), (5, 63), (8, 100)])
    def test_percent_rounds_half_up(self, acknowledged, expected):
        recipients = [
            Recipient(
                notice_id=NOTICE_ID,
                name=f"Station {i}",
                contact_address=f"station-{i}@acme.test",
                sent_at=T0,
                response_deadline=T0 + timedelta(days=5),
                acknowledged_at=T0 if i < acknowledged else None,
            )
            for i in range(8)
        ]
        assert progress(recipients, T0).percent_complete == expected

    @pytest.mark.anyio
    async def test_other_organization_cannot_track(self, build, tracker, actors):
        notice, _ = await distributed_notice(build, tracker, actors)
        with pytest.raises(NotFoundError):
            await tracker.tracking(actors["outsider"], notice.id)


# ═════════════════════════════════════════════════════════════════════════
# MANUAL REMINDERS AND ESCALATION
# ═════════════════════════════════════════════════════════════════════════

class TestManualEscalation:
    @pytest.mark.anyio
    async def test_reminders_skip_acknowledged(self, build, tracker, actors, notifier):
        notice, recipients = await distributed_notice(build, tracker, actors)
        await tracker.acknowledge(recipients["Line A"].id)

        events = await tracker.send_reminders(actors["doc_control"], notice.id, notes="Please confirm")

        addresses = sorted(e.recipient_address for e in events)
        assert addresses == ["archive@acme.test", "supplier@vendor.test"]
        assert all(e.performed_by == "u-doc-control" for e in events)
        assert notifier.messages_for("supplier@vendor.test")[-1].startswith("Reminder:")

    @pytest.mark.anyio
    async def test_reminder_for_selected_recipient(self, build, tracker, actors, store):
        notice, recipients = await distributed_notice(build, tracker, actors)
        supplier = recipients["Supplier"]

        await tracker.send_reminders(actors["doc_control"], notice.id, [supplier.id])
        await tracker.send_reminders(actors["doc_control"], notice.id, [supplier.id])

        stored = await store.get_recipient(supplier.id)
        assert stored.reminders_sent == 2

    @pytest.mark.anyio
    async def test_unknown_recipient_id(self, build, tracker, actors):
        notice, _ = await distributed_notice(build, tracker, actors)
        with pytest.raises(NotFoundError):
            await tracker.send_reminders(actors["doc_control"], notice.id, [uuid4()])

    @pytest.mark.anyio
    async def test_escalation_notifies_owner(self, build, tracker, actors, notifier, store):
        notice, recipients = await distributed_notice(build, tracker, actors)

        events = await tracker.escalate(actors["manager"], notice.id, [recipients["Supplier"].id])

        assert [e.action for e in events] == [EscalationAction.ESCALATION]
        assert (await store.get_recipient(recipients["Supplier"].id)).escalated
        owner_messages = notifier.messages_for("u-doc-control")
        assert owner_messages[-1] == f"Escalation: supplier@vendor.test has not acknowledged {notice.number}"

    @pytest.mark.anyio
    async def test_repeat_escalation_moves_escalated_at(self, build, tracker, actors, store, clock):
        notice, recipients = await distributed_notice(build, tracker, actors)
        supplier = recipients["Supplier"]

        await tracker.escalate(actors["doc_control"], notice.id, [supplier.id])
        later = clock.advance(hours=6)
        await tracker.escalate(actors["doc_control"], notice.id, [supplier.id])

        stored = await store.get_recipient(supplier.id)
        assert stored.escalated
        assert stored.escalated_at == later
        history = await tracker.escalation_history(actors["doc_control"], notice.id)
        assert [e.action for e in history] == [EscalationAction.ESCALATION] * 2

    @pytest.mark.anyio
    async def test_viewer_cannot_escalate(self, build, tracker, actors):
        notice, _ = await distributed_notice(build, tracker, actors)
        with pytest.raises(AuthorizationError):
            await tracker.escalate(actors["viewer"], notice.id)

    @pytest.mark.anyio
    async def test_history_newest_first(self, build, tracker, actors, clock):
        notice, recipients = await distributed_notice(build, tracker, actors)
        await tracker.send_reminders(actors["doc_control"], notice.id, [recipients["Supplier"].id])
        clock.advance(hours=1)
        await tracker.escalate(actors["doc_control"], notice.id, [recipients["Supplier"].id])

        history = await tracker.escalation_history(actors["viewer"], notice.id)

        assert [e.action for e in history] == [EscalationAction.ESCALATION, EscalationAction.REMINDER]

    @pytest.mark.anyio
    async def test_no_reminders_once_effective(self, build, workflow, tracker, actors):
        notice, _ = await distributed_notice(build, tracker, actors, effective_date=T0.isoformat())
        await workflow.transition(actors["doc_control"], EntityKind.NOTICE, notice.id, "EFFECTIVE")
        with pytest.raises(AuthorizationError):
            await tracker.send_reminders(actors["doc_control"], notice.id)

    @pytest.mark.anyio
    async def test_unreadable_effective_date_blocks_as_business_rule(self, build, workflow, tracker, actors):
        notice, _ = await distributed_notice(build, tracker, actors)
        await workflow.update(actors["doc_control"], EntityKind.NOTICE, notice.id, {"effective_date": "next monday"})

        with pytest.raises(BusinessRuleError) as exc:
            await workflow.transition(actors["doc_control"], EntityKind.NOTICE, notice.id, "EFFECTIVE")

        assert exc.value.violations == ["Field 'effective_date' is not a valid date"]


# ═════════════════════════════════════════════════════════════════════════
# AUTOMATIC SWEEP
# ═════════════════════════════════════════════════════════════════════════

class TestSweep:
    @pytest.mark.anyio
    async def test_disabled_notices_ignored(self, build, tracker, actors, clock):
        await distributed_notice(build, tracker, actors)
        report = await tracker.sweep(clock.now + timedelta(days=10))
        assert report.notices_checked == 0

    @pytest.mark.anyio
    async def test_reminder_then_escalation_once_each(self, build, tracker, actors, store, clock):
        notice, recipients = await distributed_notice(
            build, tracker, actors, automatic_escalation_enabled=True,
        )
        sent_at = recipients["Line A"].sent_at

        early = await tracker.sweep(sent_at + timedelta(hours=47))
        reminded = await tracker.sweep(sent_at + timedelta(hours=49))
        again = await tracker.sweep(sent_at + timedelta(hours=50))
        escalated = await tracker.sweep(sent_at + timedelta(hours=121))
        after = await tracker.sweep(sent_at + timedelta(hours=200))

        assert (early.reminders_sent, early.escalations) == (0, 0)
        assert (reminded.reminders_sent, reminded.escalations) == (2, 0)
        assert (again.reminders_sent, again.escalations) == (0, 0)
        assert (escalated.reminders_sent, escalated.escalations) == (0, 2)
        assert (after.reminders_sent, after.escalations) == (0, 0)

        history = await tracker.escalation_history(actors["viewer"], notice.id)
        assert len(history) == 4
        assert {e.performed_by for e in history} == {"system"}
        assert "archive@acme.test" not in {e.recipient_address for e in history}
        assert (await store.get_recipient(recipients["Supplier"].id)).escalated_at == sent_at + timedelta(hours=121)

    @pytest.mark.anyio
    async def test_late_sweep_does_both(self, build, tracker, actors):
        _, recipients = await distributed_notice(build, tracker, actors, automatic_escalation_enabled=True)
        report = await tracker.sweep(recipients["Line A"].sent_at + timedelta(days=7))
        assert (report.reminders_sent, report.escalations) == (2, 2)

    @pytest.mark.anyio
    async def test_acknowledged_recipients_skipped(self, build, tracker, actors):
        _, recipients = await distributed_notice(build, tracker, actors, automatic_escalation_enabled=True)
        await tracker.acknowledge(recipients["Line A"].id)
        report = await tracker.sweep(recipients["Line A"].sent_at + timedelta(days=7))
        assert (report.reminders_sent, report.escalations) == (1, 1)

    @pytest.mark.anyio
    async def test_concurrent_write_is_skipped(self, build, tracker, actors, store, monkeypatch):
        _, recipients = await distributed_notice(build, tracker, actors, automatic_escalation_enabled=True)
        original = store.list_recipients

        async def stale_recipients(notice_id):
            found = await original(notice_id)
            return [r.model_copy(update={"version": r.version - 1}) for r in found]

        monkeypatch.setattr(store, "list_recipients", stale_recipients)
        report = await tracker.sweep(recipients["Line A"].sent_at + timedelta(days=7))

        assert report.skipped_conflicts == 2
        assert (report.reminders_sent, report.escalations) == (0, 0)

    @pytest.mark.anyio
    async def test_notice_policy_overrides_defaults(self, build, tracker, actors):
        _, recipients = await distributed_notice(
            build, tracker, actors,
            automatic_escalation_enabled=True, reminder_after_hours=2, escalate_after_hours=4,
        )
        report = await tracker.sweep(recipients["Line A"].sent_at + timedelta(hours=5))
        assert (report.reminders_sent, report.escalations) == (2, 2)

    @pytest.mark.anyio
    async def test_sweeper_runs_once_and_stops(self, build, tracker, actors):
        _, recipients = await distributed_notice(build, tracker, actors, automatic_escalation_enabled=True)
        sweeper = EscalationSweeper(tracker, interval_seconds=3600)

        report = await sweeper.run_once(recipients["Line A"].sent_at + timedelta(hours=49))
        assert report.reminders_sent == 2

        sweeper.start()
        assert sweeper.running
        await sweeper.stop()
        assert not sweeper.running
