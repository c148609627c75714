"""
ChangeFlow Distribution Tracker

Notice recipients, acknowledgment, deadlines, reminders and escalation.

Recipient status is a projection over timestamps:

    SENT -> OPENED -> ACKNOWLEDGED
    OVERDUE overlays SENT/OPENED once the response deadline has passed
    for a recipient who must acknowledge. It is never stored.

Automatic policy (per notice, run by the sweep):
- Reminder:   elapsed > reminder_after_hours and no reminder sent yet
- Escalation: elapsed > escalate_after_hours and not escalated yet
Both apply only to recipients who must acknowledge and have not.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Iterable, List, Mapping, Optional, Union
from uuid import UUID

from pydantic import BaseModel, Field

from ..errors import BusinessRuleError, ConflictError, NotFoundError, ValidationError
from ..models.change import (
    Action,
    Actor,
    ChangeEntity,
    DeadlineBucket,
    EntityKind,
    EscalationAction,
    EscalationEvent,
    NoticeStatus,
    Recipient,
    RecipientKind,
    RecipientStatus,
    utcnow,
)
from .notifications import LoggingNotifier, Notifier, notify_safely

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


# =============================================================================
# MODELS
# =============================================================================

class RecipientInput(BaseModel):
    name: str
    contact_address: str
    kind: RecipientKind = RecipientKind.INTERNAL
    acknowledge_required: bool = True


class RecipientView(BaseModel):
    recipient: Recipient
    status: RecipientStatus
    overdue: bool
    hours_remaining: Optional[float] = None  # Negative once overdue


class DistributionProgress(BaseModel):
    total: int
    required: int
    acknowledged: int
    overdue: int
    percent_complete: int


class TrackingView(BaseModel):
    notice: ChangeEntity
    recipients: List[RecipientView]
    progress: DistributionProgress


class AcknowledgeOutcome(str, Enum):
    ACKNOWLEDGED = "ACKNOWLEDGED"
    ALREADY_ACKNOWLEDGED = "ALREADY_ACKNOWLEDGED"


class AcknowledgeResult(BaseModel):
    outcome: AcknowledgeOutcome
    recipient: RecipientView


class SweepReport(BaseModel):
    notices_checked: int = 0
    reminders_sent: int = 0
    escalations: int = 0
    skipped_conflicts: int = 0
    finished_at: Optional[datetime] = None


# =============================================================================
# PROJECTIONS
# =============================================================================

def is_overdue(recipient: Recipient, now: datetime) -> bool:
    return (
        recipient.acknowledge_required
        and recipient.acknowledged_at is None
        and now > recipient.response_deadline
    )


def derive_status(recipient: Recipient, now: datetime) -> RecipientStatus:
    if recipient.acknowledged_at is not None:
        return RecipientStatus.ACKNOWLEDGED
    if is_overdue(recipient, now):
        return RecipientStatus.OVERDUE
    if recipient.opened_at is not None:
        return RecipientStatus.OPENED
    return RecipientStatus.SENT


def recipient_view(recipient: Recipient, now: datetime) -> RecipientView:
    remaining = None
    if recipient.acknowledge_required and recipient.acknowledged_at is None:
        remaining = round((recipient.response_deadline - now).total_seconds() / 3600, 1)
    return RecipientView(
        recipient=recipient,
        status=derive_status(recipient, now),
        overdue=is_overdue(recipient, now),
        hours_remaining=remaining,
    )


def progress(recipients: Iterable[Recipient], now: datetime) -> DistributionProgress:
    """
    Acknowledgment progress over recipients who must acknowledge.

    No such recipients means the notice is fully acknowledged (100).
    Halves round up: 1 of 8 is 13.
    """
    recipients = list(recipients)
    required = [r for r in recipients if r.acknowledge_required]
    acknowledged = sum(1 for r in required if r.acknowledged_at is not None)
    percent = 100 if not required else int(acknowledged * 100 / len(required) + 0.5)
    return DistributionProgress(
        total=len(recipients),
        required=len(required),
        acknowledged=acknowledged,
        overdue=sum(1 for r in required if is_overdue(r, now)),
        percent_complete=percent,
    )


# =============================================================================
# SERVICE
# =============================================================================

class DistributionTracker:
    """
    Tracks who received a notice and who still owes an acknowledgment.

    Status changes of the notice itself go through WorkflowService; this
    service only owns recipients and escalation events.
    """

    def __init__(
        self,
        store,
        workflow,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = utcnow,
        default_reminder_after_hours: int = 48,
        default_escalate_after_hours: int = 120,
        default_deadline: DeadlineBucket = DeadlineBucket.DAYS_5
    ):
        self.store = store
        self.workflow = workflow
        self.permissions = workflow.permissions
        self.notifier = notifier or workflow.notifier or LoggingNotifier()
        self.clock = clock
        self.default_reminder_after = timedelta(hours=default_reminder_after_hours)
        self.default_escalate_after = timedelta(hours=default_escalate_after_hours)
        self.default_deadline = default_deadline

    # =========================================================================
    # Distribution
    # =========================================================================

    async def distribute(
        self,
        actor: Actor,
        notice_id: UUID,
        recipients: Iterable[Union[RecipientInput, Mapping[str, Any]]]
    ) -> TrackingView:
        """
        Register recipients and send the notice to them.

        An APPROVED notice is moved to DISTRIBUTED first; a DISTRIBUTED
        notice just gains recipients. Addresses already on the notice are
        skipped.
        """
        inputs = [r if isinstance(r, RecipientInput) else RecipientInput(**r) for r in recipients]
        if not inputs:
            raise ValidationError("At least one recipient is required", errors=["recipients must not be empty"])

        moved_from = None
        async with self.store.transaction():
            notice = await self._load_notice(actor, notice_id)

            if notice.status == NoticeStatus.APPROVED.value:
                fields = {}
                if not notice.field_value("distribution_list"):
                    fields["distribution_list"] = [r.contact_address for r in inputs]
                view = await self.workflow.transition(
                    actor, EntityKind.NOTICE, notice.id, NoticeStatus.DISTRIBUTED, fields,
                    notify=False,
                )
                moved_from = notice.status
                notice = view.entity
            elif notice.status == NoticeStatus.DISTRIBUTED.value:
                self.permissions.require(actor, EntityKind.NOTICE, notice, Action.UPDATE)
            else:
                raise BusinessRuleError(
                    f"{notice.number} is {notice.status}; only APPROVED or DISTRIBUTED notices can be distributed",
                    allowed_next=self.workflow.transitions.allowed_next(EntityKind.NOTICE, notice.status),
                )

            now = self.clock()
            deadline = now + (notice.response_deadline or self.default_deadline).duration
            known = {r.contact_address.lower() for r in await self.store.list_recipients(notice.id)}

            added = []
            for item in inputs:
                if item.contact_address.lower() in known:
                    logger.debug("Recipient %s already on %s", item.contact_address, notice.number)
                    continue
                known.add(item.contact_address.lower())
                added.append(await self.store.add_recipient(Recipient(
                    notice_id=notice.id,
                    name=item.name,
                    contact_address=item.contact_address,
                    kind=item.kind,
                    acknowledge_required=item.acknowledge_required,
                    sent_at=now,
                    response_deadline=deadline,
                )))

        logger.info(
            "Distributed %s to %d recipient(s)", notice.number, len(added),
            extra={"notice_id": str(notice.id), "actor_id": actor.id},
        )
        if moved_from is not None:
            await self.workflow.notify_transition(actor, notice, moved_from)
        for recipient in added:
            await notify_safely(
                self.notifier, recipient.contact_address, self._distribution_message(notice, recipient),
                notice_id=str(notice.id), recipient_id=str(recipient.id),
            )
        return await self.tracking(actor, notice.id)

    # =========================================================================
    # Recipient actions
    # =========================================================================

    async def mark_opened(self, recipient_id: UUID) -> RecipientView:
        """Record the first open. Later opens change nothing."""
        async with self.store.transaction():
            recipient = await self._load_recipient(recipient_id)
            if recipient.opened_at is None:
                recipient = await self.store.put_recipient(
                    recipient.model_copy(update={"opened_at": self.clock()}),
                    recipient.version,
                )
        return recipient_view(recipient, self.clock())

    async def acknowledge(self, recipient_id: UUID, comments: Optional[str] = None) -> AcknowledgeResult:
        """
        Idempotent: a second call leaves the first acknowledgment untouched
        and reports ALREADY_ACKNOWLEDGED.
        """
        async with self.store.transaction():
            recipient = await self._load_recipient(recipient_id)
            if recipient.acknowledged_at is not None:
                return AcknowledgeResult(
                    outcome=AcknowledgeOutcome.ALREADY_ACKNOWLEDGED,
                    recipient=recipient_view(recipient, self.clock()),
                )

            now = self.clock()
            recipient = await self.store.put_recipient(
                recipient.model_copy(update={
                    "acknowledged_at": now,
                    "opened_at": recipient.opened_at or now,
                    "acknowledgment_comments": comments,
                }),
                recipient.version,
            )

        logger.info(
            "Recipient %s acknowledged", recipient.contact_address,
            extra={"notice_id": str(recipient.notice_id), "recipient_id": str(recipient.id)},
        )
        return AcknowledgeResult(
            outcome=AcknowledgeOutcome.ACKNOWLEDGED,
            recipient=recipient_view(recipient, now),
        )

    # =========================================================================
    # Manual reminders and escalation
    # =========================================================================

    async def send_reminders(
        self,
        actor: Actor,
        notice_id: UUID,
        recipient_ids: Optional[Iterable[UUID]] = None,
        notes: Optional[str] = None
    ) -> List[EscalationEvent]:
        """Remind pending recipients (all, or the given ones). Acknowledged recipients are skipped."""
        notice, targets = await self._pending_targets(actor, notice_id, recipient_ids)
        events = []
        async with self.store.transaction():
            for recipient in targets:
                event = await self._record(
                    notice, recipient, EscalationAction.REMINDER, actor.id, notes,
                    reminders_sent=recipient.reminders_sent + 1,
                )
                if event:
                    events.append(event)
        await self._deliver(notice, events)
        return events

    async def escalate(
        self,
        actor: Actor,
        notice_id: UUID,
        recipient_ids: Optional[Iterable[UUID]] = None,
        notes: Optional[str] = None
    ) -> List[EscalationEvent]:
        """
        Escalate pending recipients to the notice's owner. Acknowledged
        recipients are skipped; ``escalated_at`` records the latest escalation.
        """
        notice, targets = await self._pending_targets(actor, notice_id, recipient_ids)
        events = []
        now = self.clock()
        async with self.store.transaction():
            for recipient in targets:
                event = await self._record(
                    notice, recipient, EscalationAction.ESCALATION, actor.id, notes,
                    escalated=True, escalated_at=now,
                )
                if event:
                    events.append(event)
        await self._deliver(notice, events)
        return events

    # =========================================================================
    # Reads
    # =========================================================================

    async def tracking(self, actor: Actor, notice_id: UUID) -> TrackingView:
        notice = await self._load_notice(actor, notice_id)
        recipients = await self.store.list_recipients(notice.id)
        now = self.clock()
        return TrackingView(
            notice=notice,
            recipients=[recipient_view(r, now) for r in recipients],
            progress=progress(recipients, now),
        )

    async def escalation_history(self, actor: Actor, notice_id: UUID) -> List[EscalationEvent]:
        """Newest first."""
        notice = await self._load_notice(actor, notice_id)
        return await self.store.list_escalation_events(notice.id)

    # =========================================================================
    # Automatic policy
    # =========================================================================

    async def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """
        Apply the automatic reminder / escalation policy to every
        distributed notice that has it enabled.

        Each recipient write is a check-and-set on its version: if another
        writer got there first the recipient is skipped, never doubled.
        """
        now = now or self.clock()
        report = SweepReport()

        for notice in await self.store.list_notices_for_sweep():
            report.notices_checked += 1
            remind_after = _hours(notice.reminder_after_hours, self.default_reminder_after)
            escalate_after = _hours(notice.escalate_after_hours, self.default_escalate_after)
            events = []

            for recipient in await self.store.list_recipients(notice.id):
                if not recipient.acknowledge_required or recipient.acknowledged_at is not None:
                    continue
                elapsed = now - recipient.sent_at

                if elapsed > remind_after and recipient.reminders_sent == 0:
                    event, recipient = await self._record_once(
                        notice, recipient, EscalationAction.REMINDER, now,
                        reminders_sent=1,
                    )
                    if event:
                        report.reminders_sent += 1
                        events.append(event)
                    elif recipient is None:
                        report.skipped_conflicts += 1
                        continue

                if elapsed > escalate_after and not recipient.escalated:
                    event, recipient = await self._record_once(
                        notice, recipient, EscalationAction.ESCALATION, now,
                        escalated=True, escalated_at=now,
                    )
                    if event:
                        report.escalations += 1
                        events.append(event)
                    elif recipient is None:
                        report.skipped_conflicts += 1

            await self._deliver(notice, events)

        report.finished_at = self.clock()
        if report.reminders_sent or report.escalations:
            logger.info(
                "Escalation sweep: %d reminder(s), %d escalation(s) over %d notice(s)",
                report.reminders_sent, report.escalations, report.notices_checked,
            )
        return report

    # =========================================================================
    # Private methods
    # =========================================================================

    async def _load_notice(self, actor: Actor, notice_id: Any) -> ChangeEntity:
        return (await self.workflow.get(actor, EntityKind.NOTICE, notice_id)).entity

    async def _load_recipient(self, recipient_id: Any) -> Recipient:
        try:
            recipient_id = recipient_id if isinstance(recipient_id, UUID) else UUID(str(recipient_id))
        except ValueError:
            raise NotFoundError("Recipient", recipient_id)
        recipient = await self.store.get_recipient(recipient_id)
        if recipient is None:
            raise NotFoundError("Recipient", recipient_id)
        return recipient

    async def _pending_targets(self, actor, notice_id, recipient_ids):
        notice = await self._load_notice(actor, notice_id)
        self.permissions.require(actor, EntityKind.NOTICE, notice, Action.UPDATE)

        recipients = await self.store.list_recipients(notice.id)
        if recipient_ids is not None:
            wanted = {str(r) for r in recipient_ids}
            unknown = wanted - {str(r.id) for r in recipients}
            if unknown:
                raise NotFoundError("Recipient", sorted(unknown)[0])
            recipients = [r for r in recipients if str(r.id) in wanted]

        return notice, [r for r in recipients if r.acknowledged_at is None]

    async def _record(self, notice, recipient, action, performed_by, notes, **changes) -> Optional[EscalationEvent]:
        stored = await self.store.put_recipient(recipient.model_copy(update=changes), recipient.version)
        event = await self.store.append_escalation_event(EscalationEvent(
            notice_id=notice.id,
            recipient_id=stored.id,
            recipient_address=stored.contact_address,
            action=action,
            performed_by=performed_by,
            performed_at=self.clock(),
            notes=notes,
        ))
        logger.info(
            "%s for %s on %s", action.value, stored.contact_address, notice.number,
            extra={"notice_id": str(notice.id), "recipient_id": str(stored.id), "actor_id": performed_by},
        )
        return event

    async def _record_once(self, notice, recipient, action, now, **changes):
        """
        Check-and-set variant used by the sweep.

        Returns (event, latest recipient); (None, None) when another writer
        changed the recipient first.
        """
        try:
            stored = await self.store.put_recipient(recipient.model_copy(update=changes), recipient.version)
        except ConflictError:
            logger.info(
                "Recipient %s changed concurrently, skipping %s", recipient.contact_address, action.value,
                extra={"notice_id": str(notice.id), "recipient_id": str(recipient.id)},
            )
            return None, None

        event = await self.store.append_escalation_event(EscalationEvent(
            notice_id=notice.id,
            recipient_id=stored.id,
            recipient_address=stored.contact_address,
            action=action,
            performed_by=SYSTEM_ACTOR,
            performed_at=now,
            notes="Automatic policy",
        ))
        return event, stored

    async def _deliver(self, notice: ChangeEntity, events: List[EscalationEvent]) -> None:
        owner = notice.assignee_id or notice.submitter_id
        for event in events:
            if event.action == EscalationAction.REMINDER:
                address = event.recipient_address
                message = f"Reminder: {notice.number} '{notice.title}' is awaiting your acknowledgment"
            else:
                address = owner
                message = f"Escalation: {event.recipient_address} has not acknowledged {notice.number}"
            await notify_safely(
                self.notifier, address, message,
                notice_id=str(notice.id), recipient_id=str(event.recipient_id),
            )

    @staticmethod
    def _distribution_message(notice: ChangeEntity, recipient: Recipient) -> str:
        if recipient.acknowledge_required:
            return (
                f"{notice.number} '{notice.title}' requires your acknowledgment by "
                f"{recipient.response_deadline:%Y-%m-%d %H:%M} UTC"
            )
        return f"{notice.number} '{notice.title}' for your information"


def _hours(value: Optional[int], default: timedelta) -> timedelta:
    return timedelta(hours=value) if value is not None else default


# =============================================================================
# SCHEDULER
# =============================================================================

class EscalationSweeper:
    """
    Single serialized scheduler for the automatic policy.

    One background task per process; ``run_once`` holds a lock so a manual
    trigger never overlaps the periodic run.
    """

    def __init__(self, tracker: DistributionTracker, interval_seconds: float = 300):
        self.tracker = tracker
        self.interval_seconds = interval_seconds
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self, now: Optional[datetime] = None) -> SweepReport:
        async with self._lock:
            return await self.tracker.sweep(now)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="escalation-sweep")
        logger.info("Escalation sweep started (every %ss)", self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Escalation sweep stopped")

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("Escalation sweep failed")
            await asyncio.sleep(self.interval_seconds)
