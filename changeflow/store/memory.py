"""
In-memory EntityStore.

Reference adapter for development and tests. Stores copies so callers
can never mutate stored state by accident; transactions take a snapshot and
restore it if the block raises.
"""

import asyncio
import copy
import logging
from contextlib import asynccontextmanager
from typing import Dict, List, Optional, Tuple
from uuid import UUID

from ..errors import ConflictError
from ..models.change import (
    ChangeEntity,
    EntityKind,
    EscalationEvent,
    NoticeStatus,
    Recipient,
    Revision,
)
from .base import EntityStore

logger = logging.getLogger(__name__)


class InMemoryEntityStore(EntityStore):

    def __init__(self):
        self._entities: Dict[UUID, ChangeEntity] = {}
        self._revisions: List[Revision] = []
        self._recipients: Dict[UUID, Recipient] = {}
        self._events: List[EscalationEvent] = []
        self._sequences: Dict[Tuple[str, EntityKind], int] = {}

        self._lock = asyncio.Lock()
        self._tx_owner: Optional[asyncio.Task] = None

    # -------------------------------------------------------------------------
    # Change records
    # -------------------------------------------------------------------------

    async def get(self, kind, entity_id, organization_id):
        entity = self._entities.get(entity_id)
        if entity is None or entity.kind != kind or entity.organization_id != organization_id:
            return None
        return entity.model_copy(deep=True)

    async def get_by_number(self, kind, number, organization_id):
        for entity in self._entities.values():
            if (
                entity.kind == kind
                and entity.organization_id == organization_id
                and entity.number.upper() == number.upper()
            ):
                return entity.model_copy(deep=True)
        return None

    async def put(self, entity, expected_version):
        current = self._entities.get(entity.id)

        if expected_version is None:
            if current is not None:
                raise ConflictError(
                    f"{entity.number} already exists",
                    context={"entity_id": str(entity.id)},
                )
        elif current is None or current.version != expected_version:
            raise ConflictError(
                f"{entity.number} was modified concurrently",
                details={"expected_version": expected_version},
                context={
                    "entity_id": str(entity.id),
                    "stored_version": current.version if current else None,
                },
            )

        stored = entity.model_copy(update={"version": (expected_version or 0) + 1}, deep=True)
        self._entities[stored.id] = stored
        return stored.model_copy(deep=True)

    async def list_requests_for_order(self, order_id, organization_id):
        found = [
            e for e in self._entities.values()
            if e.kind == EntityKind.REQUEST
            and e.order_id == order_id
            and e.organization_id == organization_id
        ]
        return [e.model_copy(deep=True) for e in sorted(found, key=lambda e: e.number)]

    async def get_notice_for_order(self, order_id, organization_id):
        for entity in self._entities.values():
            if (
                entity.kind == EntityKind.NOTICE
                and entity.order_id == order_id
                and entity.organization_id == organization_id
            ):
                return entity.model_copy(deep=True)
        return None

    async def next_sequence(self, organization_id, kind):
        key = (organization_id, kind)
        self._sequences[key] = self._sequences.get(key, 0) + 1
        return self._sequences[key]

    async def search(self, organization_id, query, limit=50):
        needle = query.strip().lower()
        if not needle:
            return []
        found = [
            e for e in self._entities.values()
            if e.organization_id == organization_id and (
                needle in e.number.lower()
                or needle in e.title.lower()
                or needle in (e.description or "").lower()
            )
        ]
        found.sort(key=lambda e: e.updated_at, reverse=True)
        return [e.model_copy(deep=True) for e in found[:limit]]

    async def list_notices_for_sweep(self):
        return [
            e.model_copy(deep=True) for e in self._entities.values()
            if e.kind == EntityKind.NOTICE
            and e.status == NoticeStatus.DISTRIBUTED.value
            and e.automatic_escalation_enabled
        ]

    # -------------------------------------------------------------------------
    # Revisions
    # -------------------------------------------------------------------------

    async def append_revision(self, revision):
        self._revisions.append(revision)
        return revision

    async def list_revisions(self, entity_id, organization_id):
        return [
            r for r in self._revisions
            if r.entity_id == entity_id and r.organization_id == organization_id
        ]

    # -------------------------------------------------------------------------
    # Recipients and escalation events
    # -------------------------------------------------------------------------

    async def add_recipient(self, recipient):
        stored = recipient.model_copy(update={"version": 1}, deep=True)
        self._recipients[stored.id] = stored
        return stored.model_copy(deep=True)

    async def get_recipient(self, recipient_id):
        recipient = self._recipients.get(recipient_id)
        return recipient.model_copy(deep=True) if recipient else None

    async def put_recipient(self, recipient, expected_version):
        current = self._recipients.get(recipient.id)
        if current is None or current.version != expected_version:
            raise ConflictError(
                f"Recipient {recipient.contact_address} was modified concurrently",
                context={"recipient_id": str(recipient.id)},
            )
        stored = recipient.model_copy(update={"version": expected_version + 1}, deep=True)
        self._recipients[stored.id] = stored
        return stored.model_copy(deep=True)

    async def list_recipients(self, notice_id):
        found = [r for r in self._recipients.values() if r.notice_id == notice_id]
        return [r.model_copy(deep=True) for r in sorted(found, key=lambda r: (r.sent_at, r.name))]

    async def append_escalation_event(self, event):
        self._events.append(event)
        return event

    async def list_escalation_events(self, notice_id):
        found = [e for e in self._events if e.notice_id == notice_id]
        return sorted(found, key=lambda e: e.performed_at, reverse=True)

    # -------------------------------------------------------------------------
    # Unit of work
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def transaction(self):
        task = asyncio.current_task()
        if self._tx_owner is task:
            # Nested scope joins the outer transaction
            yield
            return

        async with self._lock:
            self._tx_owner = task
            snapshot = self._snapshot()
            try:
                yield
            except BaseException:
                self._restore(snapshot)
                logger.debug("Transaction rolled back")
                raise
            finally:
                self._tx_owner = None

    def _snapshot(self):
        return (
            dict(self._entities),
            list(self._revisions),
            dict(self._recipients),
            list(self._events),
            copy.copy(self._sequences),
        )

    def _restore(self, snapshot) -> None:
        (
            self._entities,
            self._revisions,
            self._recipients,
            self._events,
            self._sequences,
        ) = snapshot
