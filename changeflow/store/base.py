"""
EntityStore contract.

Durable storage for change records, revisions, recipients and escalation
events. All reads are scoped by organization; every write of a versioned
record is a check-and-set against ``expected_version``.
"""

from abc import ABC, abstractmethod
from typing import AsyncContextManager, List, Optional
from uuid import UUID

from ..models.change import (
    ChangeEntity,
    EntityKind,
    EscalationEvent,
    Recipient,
    Revision,
)


class EntityStore(ABC):
    """
    Async storage port used by the workflow services.

    Implementations raise ``ConflictError`` on a version mismatch and
    ``TransientStorageError`` for connection loss or timeouts.
    """

    # -------------------------------------------------------------------------
    # Change records
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get(self, kind: EntityKind, entity_id: UUID, organization_id: str) -> Optional[ChangeEntity]:
        """Record of ``kind`` inside ``organization_id``, or None."""

    @abstractmethod
    async def get_by_number(self, kind: EntityKind, number: str, organization_id: str) -> Optional[ChangeEntity]:
        ...

    @abstractmethod
    async def put(self, entity: ChangeEntity, expected_version: Optional[int]) -> ChangeEntity:
        """
        Insert (``expected_version`` None) or update a record.

        Returns the stored copy with ``version`` incremented.
        """

    @abstractmethod
    async def list_requests_for_order(self, order_id: UUID, organization_id: str) -> List[ChangeEntity]:
        ...

    @abstractmethod
    async def get_notice_for_order(self, order_id: UUID, organization_id: str) -> Optional[ChangeEntity]:
        ...

    @abstractmethod
    async def next_sequence(self, organization_id: str, kind: EntityKind) -> int:
        """Atomic per-organization, per-kind counter starting at 1."""

    @abstractmethod
    async def search(self, organization_id: str, query: str, limit: int = 50) -> List[ChangeEntity]:
        """Case-insensitive match on number, title or description."""

    @abstractmethod
    async def list_notices_for_sweep(self) -> List[ChangeEntity]:
        """Notices in DISTRIBUTED with automatic escalation enabled, all organizations."""

    # -------------------------------------------------------------------------
    # Revisions
    # -------------------------------------------------------------------------

    @abstractmethod
    async def append_revision(self, revision: Revision) -> Revision:
        ...

    @abstractmethod
    async def list_revisions(self, entity_id: UUID, organization_id: str) -> List[Revision]:
        """Oldest first."""

    # -------------------------------------------------------------------------
    # Recipients and escalation events
    # -------------------------------------------------------------------------

    @abstractmethod
    async def add_recipient(self, recipient: Recipient) -> Recipient:
        ...

    @abstractmethod
    async def get_recipient(self, recipient_id: UUID) -> Optional[Recipient]:
        ...

    @abstractmethod
    async def put_recipient(self, recipient: Recipient, expected_version: int) -> Recipient:
        ...

    @abstractmethod
    async def list_recipients(self, notice_id: UUID) -> List[Recipient]:
        ...

    @abstractmethod
    async def append_escalation_event(self, event: EscalationEvent) -> EscalationEvent:
        ...

    @abstractmethod
    async def list_escalation_events(self, notice_id: UUID) -> List[EscalationEvent]:
        """Newest first."""

    # -------------------------------------------------------------------------
    # Unit of work
    # -------------------------------------------------------------------------

    @abstractmethod
    def transaction(self) -> AsyncContextManager[None]:
        """All-or-nothing scope: on exception every write inside is undone."""
