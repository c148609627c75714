"""
ChangeFlow Traceability

Resolves any public number to its full Request -> Order -> Notice chain
and a merged, chronological timeline of milestones.

The timeline is a pure projection over stored records: recomputed on
every read, never persisted.
"""

from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field

from ..errors import NotFoundError, ValidationError
from ..models.change import NUMBER_PREFIXES, Actor, ChangeEntity, EntityKind

# Milestone attribute -> (event suffix, status label)
MILESTONES = (
    ("created_at", "CREATED", "DRAFT"),
    ("submitted_at", "SUBMITTED", "SUBMITTED"),
    ("approved_at", "APPROVED", "APPROVED"),
    ("rejected_at", "REJECTED", "REJECTED"),
    ("completed_at", "COMPLETED", "COMPLETED"),
    ("distributed_at", "DISTRIBUTED", "DISTRIBUTED"),
    ("effective_at", "EFFECTIVE", "EFFECTIVE"),
)

# Resolution tries kinds in this order; first hit wins
LOOKUP_ORDER = (EntityKind.NOTICE, EntityKind.ORDER, EntityKind.REQUEST)


# =============================================================================
# MODELS
# =============================================================================

class RecordRef(BaseModel):
    id: str
    kind: EntityKind
    number: str


class TimelineEvent(BaseModel):
    type: str              # e.g. ECR_SUBMITTED
    date: datetime
    title: str
    actor: Optional[str] = None
    status_label: str
    record: RecordRef


class TraceabilityChain(BaseModel):
    kind: EntityKind       # Kind of the record the number resolved to
    notice: Optional[ChangeEntity] = None
    order: Optional[ChangeEntity] = None
    requests: List[ChangeEntity] = Field(default_factory=list)
    timeline: List[TimelineEvent] = Field(default_factory=list)


class SearchHit(BaseModel):
    record: RecordRef
    title: str
    status: str
    order_number: Optional[str] = None
    notice_number: Optional[str] = None
    request_numbers: List[str] = Field(default_factory=list)


# =============================================================================
# TIMELINE
# =============================================================================

def _milestone_actor(entity: ChangeEntity, suffix: str) -> Optional[str]:
    if suffix in ("CREATED", "SUBMITTED"):
        return entity.submitter_id
    if suffix in ("APPROVED", "REJECTED"):
        return entity.approver_id
    return entity.assignee_id or entity.submitter_id


def entity_events(entity: ChangeEntity) -> List[TimelineEvent]:
    """One event per milestone timestamp that is set."""
    prefix = NUMBER_PREFIXES[entity.kind]
    ref = RecordRef(id=str(entity.id), kind=entity.kind, number=entity.number)
    events = []
    for attribute, suffix, label in MILESTONES:
        when = getattr(entity, attribute)
        if when is None:
            continue
        events.append(TimelineEvent(
            type=f"{prefix}_{suffix}",
            date=when,
            title=f"{entity.number} {suffix.capitalize()}",
            actor=_milestone_actor(entity, suffix),
            status_label=label,
            record=ref,
        ))
    return events


def build_timeline(entities: Iterable[ChangeEntity]) -> List[TimelineEvent]:
    """Merge the events of every record and sort ascending by date."""
    events = []
    seen = set()
    for entity in entities:
        if entity is None or entity.id in seen:
            continue
        seen.add(entity.id)
        events.extend(entity_events(entity))
    # Stable sort keeps Request -> Order -> Notice order for equal dates
    return sorted(events, key=lambda e: e.date)


# =============================================================================
# SERVICE
# =============================================================================

class TraceabilityResolver:
    """
    Read-only: never writes, never locks.

    Every lookup is scoped to the actor's organization, so numbers of other
    tenants resolve to NOT_FOUND.
    """

    def __init__(self, store):
        self.store = store

    async def resolve(self, actor: Actor, number: str) -> TraceabilityChain:
        number = (number or "").strip()
        if not number:
            raise ValidationError("A record number is required", errors=["number must not be empty"])

        anchor = None
        for kind in LOOKUP_ORDER:
            anchor = await self.store.get_by_number(kind, number, actor.organization_id)
            if anchor is not None:
                break
        if anchor is None:
            raise NotFoundError("Record", number)

        notice, order, requests = await self._expand(actor, anchor)
        return TraceabilityChain(
            kind=anchor.kind,
            notice=notice,
            order=order,
            requests=requests,
            timeline=build_timeline([*requests, order, notice]),
        )

    async def search(self, actor: Actor, query: str, limit: int = 20) -> List[SearchHit]:
        """Case-insensitive match on number, title or description, with chain links."""
        hits = []
        for entity in await self.store.search(actor.organization_id, query, limit=limit):
            notice, order, requests = await self._expand(actor, entity)
            hits.append(SearchHit(
                record=RecordRef(id=str(entity.id), kind=entity.kind, number=entity.number),
                title=entity.title,
                status=entity.status,
                order_number=order.number if order else None,
                notice_number=notice.number if notice else None,
                request_numbers=[r.number for r in requests],
            ))
        return hits

    async def _expand(
        self,
        actor: Actor,
        anchor: ChangeEntity
    ) -> Tuple[Optional[ChangeEntity], Optional[ChangeEntity], List[ChangeEntity]]:
        org = actor.organization_id
        notice = order = None

        if anchor.kind == EntityKind.NOTICE:
            notice = anchor
            if anchor.order_id:
                order = await self.store.get(EntityKind.ORDER, anchor.order_id, org)
        elif anchor.kind == EntityKind.ORDER:
            order = anchor
        elif anchor.order_id:
            order = await self.store.get(EntityKind.ORDER, anchor.order_id, org)

        requests: List[ChangeEntity] = []
        if order is not None:
            requests = await self.store.list_requests_for_order(order.id, org)
            if notice is None:
                notice = await self.store.get_notice_for_order(order.id, org)
        elif anchor.kind == EntityKind.REQUEST:
            requests = [anchor]

        return notice, order, requests
