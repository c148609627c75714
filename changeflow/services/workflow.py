"""
ChangeFlow Workflow Service

The only component that mutates change records.

Every operation:
1. Loads the record scoped to the actor's organization (NOT_FOUND otherwise)
2. Checks the optimistic version when the caller supplies one
3. Asks PermissionEngine / FieldFilter / TransitionRules
4. Diffs, persists the record and its revision in ONE store transaction
5. Notifies interested people after commit (never fatal)
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError

from ..errors import AuthorizationError, BusinessRuleError, ConflictError, ValidationError
from ..models.change import (
    ENTITY_ATTRIBUTES,
    Action,
    Actor,
    ChangeEntity,
    EntityKind,
    EntityView,
    NoticeStatus,
    OrderStatus,
    RequestStatus,
    Revision,
    TransitionOption,
    utcnow,
)
from .audit import AuditTrail
from .field_filter import APPROVAL_FIELDS, SYSTEM_FIELDS, FieldFilter
from .notifications import LoggingNotifier, Notifier, notify_safely
from .numbering import NumberAllocator
from .permissions import PermissionEngine
from .transitions import TransitionContext, TransitionRules, is_blank

logger = logging.getLogger(__name__)


INITIAL_STATUS = {
    EntityKind.REQUEST: RequestStatus.DRAFT.value,
    EntityKind.ORDER: OrderStatus.DRAFT.value,
    EntityKind.NOTICE: NoticeStatus.DRAFT.value,
}

REQUIRED_ON_CREATE = ("title", "description")

# Entering these statuses needs a capability beyond TRANSITION
CAPABILITY_FOR_TARGET = {
    "APPROVED": Action.APPROVE,
    "REJECTED": Action.REJECT,
}

_CLOSED_REQUEST_STATUSES = {RequestStatus.REJECTED.value, RequestStatus.CANCELLED.value}


class WorkflowService:
    """
    Orchestrates creation, content updates and status transitions.

    Collaborators are injected; defaults wire the standard rule tables.
    """

    def __init__(
        self,
        store,
        notifier: Optional[Notifier] = None,
        transitions: Optional[TransitionRules] = None,
        permissions: Optional[PermissionEngine] = None,
        field_filter: Optional[FieldFilter] = None,
        audit: Optional[AuditTrail] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.store = store
        self.notifier = notifier or LoggingNotifier()
        self.transitions = transitions or TransitionRules()
        self.permissions = permissions or PermissionEngine(transitions=self.transitions)
        self.field_filter = field_filter or FieldFilter(self.permissions)
        self.audit = audit or AuditTrail()
        self.numbers = NumberAllocator(store)
        self.clock = clock

    # =========================================================================
    # Creation
    # =========================================================================

    async def create(self, actor: Actor, kind: EntityKind, payload: Mapping[str, Any]) -> EntityView:
        """
        Create a record in DRAFT with the next public number.

        Orders may link existing requests via ``request_ids``; notices are
        always created from their order.
        """
        kind = EntityKind(kind)
        payload = dict(payload)

        if kind == EntityKind.NOTICE:
            order_id = payload.pop("order_id", None)
            if not order_id:
                raise ValidationError(
                    "Notices are created from an order",
                    errors=["order_id is required"],
                )
            return await self.create_notice(actor, _as_uuid(order_id, "order_id"), payload)

        self.permissions.require_create(actor, kind)
        request_ids = payload.pop("request_ids", None) if kind == EntityKind.ORDER else None

        async with self.store.transaction():
            requests = []
            if request_ids:
                requests = await self._load_bundleable(actor, request_ids, approved_only=False)
            entity = await self._insert(actor, kind, payload, INITIAL_STATUS[kind])
            if requests:
                await self._link_requests(actor, entity, requests)

        logger.info(
            "Created %s", entity.number,
            extra=self._log_context(actor, entity),
        )
        return self._view(actor, kind, entity)

    async def bundle_requests(
        self,
        actor: Actor,
        request_ids: Iterable[Any],
        title: str,
        description: Optional[str] = None,
        fields: Optional[Mapping[str, Any]] = None
    ) -> EntityView:
        """Create one BACKLOG order from APPROVED, not yet bundled requests."""
        self.permissions.require_create(actor, EntityKind.ORDER)
        request_ids = list(request_ids or [])
        if not request_ids:
            raise ValidationError(
                "At least one request is required for bundling",
                errors=["request_ids must not be empty"],
            )

        async with self.store.transaction():
            requests = await self._load_bundleable(actor, request_ids, approved_only=True)
            payload = {
                **(fields or {}),
                "title": title,
                "description": description or "Implements " + ", ".join(r.number for r in requests),
            }
            order = await self._insert(actor, EntityKind.ORDER, payload, OrderStatus.BACKLOG.value)
            await self._link_requests(actor, order, requests)

        logger.info(
            "Bundled %d request(s) into %s", len(requests), order.number,
            extra=self._log_context(actor, order),
        )
        return self._view(actor, EntityKind.ORDER, order)

    async def create_notice(
        self,
        actor: Actor,
        order_id: UUID,
        payload: Optional[Mapping[str, Any]] = None
    ) -> EntityView:
        """Create the order's single notice. Title and description default to the order's."""
        self.permissions.require_create(actor, EntityKind.NOTICE)

        async with self.store.transaction():
            order = await self._load(actor, EntityKind.ORDER, order_id)
            if order.status == OrderStatus.CANCELLED.value:
                raise BusinessRuleError(
                    f"{order.number} is CANCELLED and cannot produce a notice",
                    context=self._log_context(actor, order),
                )
            existing = await self.store.get_notice_for_order(order.id, actor.organization_id)
            if existing is not None:
                raise ConflictError(
                    f"{order.number} already has notice {existing.number}",
                    details={"notice_number": existing.number},
                    context=self._log_context(actor, order),
                )
            data = {"title": order.title, "description": order.description, **(payload or {})}
            notice = await self._insert(
                actor, EntityKind.NOTICE, data, INITIAL_STATUS[EntityKind.NOTICE], order_id=order.id,
            )

        logger.info(
            "Created %s for %s", notice.number, order.number,
            extra=self._log_context(actor, notice),
        )
        return self._view(actor, EntityKind.NOTICE, notice)

    # =========================================================================
    # Reads
    # =========================================================================

    async def get(self, actor: Actor, kind: EntityKind, entity_id: UUID) -> EntityView:
        kind = EntityKind(kind)
        entity = await self._load(actor, kind, entity_id)
        return self._view(actor, kind, entity)

    async def history(self, actor: Actor, kind: EntityKind, entity_id: UUID) -> List[Revision]:
        kind = EntityKind(kind)
        entity = await self._load(actor, kind, entity_id)
        return await self.store.list_revisions(entity.id, actor.organization_id)

    async def next_statuses(self, actor: Actor, kind: EntityKind, entity_id: UUID) -> List[TransitionOption]:
        """Edges the actor could take right now, before preconditions are checked."""
        kind = EntityKind(kind)
        entity = await self._load(actor, kind, entity_id)
        decision = self.permissions.evaluate(actor, kind, entity)
        if not decision.allows(Action.TRANSITION):
            return []

        options = []
        for rule in self.transitions.rules_from(kind, entity.status, actor.role):
            needed = CAPABILITY_FOR_TARGET.get(rule.target)
            if needed and not decision.allows(needed):
                continue
            options.append(TransitionOption(
                target=rule.target,
                description=rule.description,
                required_fields=list(rule.required_fields),
                requires_capability=needed,
            ))
        return options

    # =========================================================================
    # Content updates
    # =========================================================================

    async def update(
        self,
        actor: Actor,
        kind: EntityKind,
        entity_id: UUID,
        fields: Mapping[str, Any],
        note: Optional[str] = None,
        expected_version: Optional[int] = None,
        require_change: bool = False
    ) -> EntityView:
        """
        Apply the fields the actor may change.

        Fields filtered away are reported in ``dropped_fields``. Nothing
        left to change is a no-op unless ``require_change`` is set, in which
        case it is a CONFLICT.
        """
        kind = EntityKind(kind)

        async with self.store.transaction():
            entity = await self._load(actor, kind, entity_id)
            self._check_version(actor, entity, expected_version)

            decision = self.permissions.evaluate(actor, kind, entity)
            if not decision.allows(Action.UPDATE):
                raise AuthorizationError(
                    decision.reason(Action.UPDATE) or "UPDATE is not permitted",
                    context=self._log_context(actor, entity),
                )

            filtered = self.field_filter.filter(actor, kind, entity, fields, Action.UPDATE, decision)
            changes = self.audit.diff_entity(entity, filtered.allowed)

            if changes.empty:
                if require_change:
                    raise ConflictError(
                        f"No changes to apply to {entity.number}",
                        details={"dropped_fields": filtered.dropped},
                        context=self._log_context(actor, entity),
                    )
                logger.debug(
                    "No-op update on %s", entity.number,
                    extra=self._log_context(actor, entity),
                )
                return self._view(actor, kind, entity, filtered.dropped)

            now = self.clock()
            updated = self._apply(entity, {**changes.new_values, "updated_at": now})
            stored = await self.store.put(updated, entity.version)
            await self.store.append_revision(
                self.audit.build_revision(entity, actor, changes, note, now)
            )

        logger.info(
            "Updated %s: %s", stored.number, ", ".join(changes.changed_fields),
            extra=self._log_context(actor, stored),
        )
        return self._view(actor, kind, stored, filtered.dropped)

    # =========================================================================
    # Status transitions
    # =========================================================================

    async def transition(
        self,
        actor: Actor,
        kind: EntityKind,
        entity_id: UUID,
        to_status: Any,
        fields: Optional[Mapping[str, Any]] = None,
        note: Optional[str] = None,
        expected_version: Optional[int] = None,
        notify: bool = True
    ) -> EntityView:
        """
        Move a record to ``to_status``.

        Callers running this inside their own transaction pass
        ``notify=False`` and call ``notify_transition`` once they commit.

        Order of checks:
        1. Edge exists                     -> BUSINESS_RULE (lists allowed next)
        2. TRANSITION (+ APPROVE / REJECT) -> AUTHORIZATION
        3. Role on edge                    -> AUTHORIZATION
        4. Required fields and guards      -> BUSINESS_RULE, all collected
        """
        kind = EntityKind(kind)
        to_status = str(getattr(to_status, "value", to_status)).upper()

        async with self.store.transaction():
            entity = await self._load(actor, kind, entity_id)
            self._check_version(actor, entity, expected_version)
            from_status = entity.status

            if self.transitions.rule_for(kind, from_status, to_status) is None:
                raise BusinessRuleError(
                    f"Invalid transition from {from_status} to {to_status}",
                    allowed_next=self.transitions.allowed_next(kind, from_status),
                    context=self._log_context(actor, entity),
                )

            decision = self.permissions.evaluate(actor, kind, entity)
            capability = CAPABILITY_FOR_TARGET.get(to_status, Action.TRANSITION)
            for needed in (Action.TRANSITION, capability):
                if not decision.allows(needed):
                    raise AuthorizationError(
                        decision.reason(needed) or f"{needed.value} is not permitted",
                        context=self._log_context(actor, entity),
                    )

            now = self.clock()
            filter_action = capability if capability != Action.TRANSITION else Action.UPDATE
            filtered = self.field_filter.filter(actor, kind, entity, fields or {}, filter_action, decision)
            candidate = self._apply(entity, filtered.allowed)

            context = TransitionContext(now=now)
            if kind == EntityKind.ORDER:
                context.bundled_requests = await self.store.list_requests_for_order(
                    entity.id, actor.organization_id
                )

            result = self.transitions.validate(
                kind, from_status, to_status, actor.role, candidate, actor, context,
            )
            if not result.valid:
                if result.role_denied:
                    raise AuthorizationError(
                        result.messages[0],
                        reasons=result.messages,
                        context=self._log_context(actor, entity),
                    )
                raise BusinessRuleError(
                    f"Cannot move {entity.number} from {from_status} to {to_status}",
                    violations=result.messages,
                    allowed_next=result.allowed_next,
                    context=self._log_context(actor, entity),
                )

            patch = self.transitions.derived_patch(entity, to_status, actor, now)
            proposed = {**filtered.allowed, **patch}
            proposed.pop("updated_at")
            changes = self.audit.diff_entity(entity, proposed)

            updated = self._apply(entity, {**changes.new_values, "updated_at": now})
            stored = await self.store.put(updated, entity.version)

            default_note = f"Status changed from {from_status} to {to_status}"
            await self.store.append_revision(self.audit.build_revision(
                entity, actor, changes,
                f"{default_note}: {note}" if note else default_note,
                now,
            ))

        logger.info(
            "%s moved %s -> %s", stored.number, from_status, to_status,
            extra=self._log_context(actor, stored),
        )
        if notify:
            await self.notify_transition(actor, stored, from_status)
        return self._view(actor, kind, stored, filtered.dropped)

    async def approve(
        self,
        actor: Actor,
        kind: EntityKind,
        entity_id: UUID,
        comments: Optional[str] = None,
        fields: Optional[Mapping[str, Any]] = None,
        expected_version: Optional[int] = None
    ) -> EntityView:
        payload = dict(fields or {})
        if comments is not None:
            payload["approval_comments"] = comments
        return await self.transition(
            actor, kind, entity_id, "APPROVED", payload, expected_version=expected_version,
        )

    async def reject(
        self,
        actor: Actor,
        kind: EntityKind,
        entity_id: UUID,
        comments: Optional[str] = None,
        reason: Optional[str] = None,
        expected_version: Optional[int] = None
    ) -> EntityView:
        payload: Dict[str, Any] = {}
        if comments is not None:
            payload["approval_comments"] = comments
        if reason is not None:
            payload["rejection_reason"] = reason
        return await self.transition(
            actor, kind, entity_id, "REJECTED", payload, expected_version=expected_version,
        )

    async def notify_transition(self, actor: Actor, entity: ChangeEntity, from_status: str) -> None:
        """Tell the submitter and assignee, never the actor. Delivery failures are logged only."""
        message = f"{entity.number} '{entity.title}' moved from {from_status} to {entity.status}"
        addresses = dict.fromkeys(
            a for a in (entity.submitter_id, entity.assignee_id) if a and a != actor.id
        )
        for address in addresses:
            await notify_safely(
                self.notifier, address, message,
                entity_id=str(entity.id), actor_id=actor.id,
            )

    # =========================================================================
    # Private methods
    # =========================================================================

    async def _load(self, actor: Actor, kind: EntityKind, entity_id: Any) -> ChangeEntity:
        entity = await self.store.get(kind, _as_uuid(entity_id, "id"), actor.organization_id)
        return self.permissions.ensure_visible(actor, kind, entity)

    async def _insert(
        self,
        actor: Actor,
        kind: EntityKind,
        payload: Mapping[str, Any],
        status: str,
        order_id: Optional[UUID] = None
    ) -> ChangeEntity:
        missing = [name for name in REQUIRED_ON_CREATE if is_blank(payload.get(name))]
        if missing:
            raise ValidationError(
                f"Missing required fields: {', '.join(missing)}",
                errors=[f"{name} is required" for name in missing],
            )

        attributes, content = {}, {}
        for name, value in payload.items():
            if name in SYSTEM_FIELDS or name in APPROVAL_FIELDS:
                continue
            if name in ENTITY_ATTRIBUTES:
                attributes[name] = value
            else:
                content[name] = value

        number = await self.numbers.allocate(actor.organization_id, kind)
        now = self.clock()
        try:
            entity = ChangeEntity(
                number=number,
                kind=kind,
                organization_id=actor.organization_id,
                status=status,
                submitter_id=actor.id,
                order_id=order_id,
                created_at=now,
                updated_at=now,
                content=content,
                **attributes,
            )
        except PydanticValidationError as exc:
            raise ValidationError(
                f"Invalid {kind.value} payload",
                errors=_pydantic_errors(exc),
            ) from exc
        return await self.store.put(entity, expected_version=None)

    async def _load_bundleable(
        self,
        actor: Actor,
        request_ids: Iterable[Any],
        approved_only: bool
    ) -> List[ChangeEntity]:
        requests, problems = [], []
        for request_id in dict.fromkeys(str(r) for r in request_ids):
            request = await self._load(actor, EntityKind.REQUEST, request_id)
            if request.order_id is not None:
                problems.append(f"{request.number} is already bundled")
            elif approved_only and request.status != RequestStatus.APPROVED.value:
                problems.append(f"{request.number} is {request.status}, only APPROVED requests can be bundled")
            elif request.status in _CLOSED_REQUEST_STATUSES:
                problems.append(f"{request.number} is {request.status}")
            requests.append(request)

        if problems:
            raise BusinessRuleError("Requests cannot be bundled", violations=problems)
        return requests

    async def _link_requests(self, actor: Actor, order: ChangeEntity, requests: List[ChangeEntity]) -> None:
        now = self.clock()
        for request in requests:
            changes = self.audit.diff_entity(request, {"order_id": order.id})
            linked = self._apply(request, {"order_id": order.id, "updated_at": now})
            await self.store.put(linked, request.version)
            await self.store.append_revision(self.audit.build_revision(
                request, actor, changes, f"Bundled into {order.number}", now,
            ))

    def _apply(self, entity: ChangeEntity, values: Mapping[str, Any]) -> ChangeEntity:
        try:
            return entity.apply(values)
        except PydanticValidationError as exc:
            raise ValidationError(
                f"Invalid values for {entity.number}",
                errors=_pydantic_errors(exc),
            ) from exc

    def _check_version(self, actor: Actor, entity: ChangeEntity, expected_version: Optional[int]) -> None:
        if expected_version is not None and expected_version != entity.version:
            raise ConflictError(
                f"{entity.number} is at version {entity.version}, expected {expected_version}",
                details={"current_version": entity.version},
                context=self._log_context(actor, entity),
            )

    def _view(
        self,
        actor: Actor,
        kind: EntityKind,
        entity: ChangeEntity,
        dropped: Optional[Dict[str, str]] = None
    ) -> EntityView:
        actions = self.permissions.allowed_actions(actor, kind, entity)
        return EntityView(
            entity=entity,
            allowed_actions=sorted(actions, key=lambda a: a.value),
            dropped_fields=dropped or {},
        )

    @staticmethod
    def _log_context(actor: Actor, entity: ChangeEntity) -> Dict[str, Any]:
        return {
            "actor_id": actor.id,
            "organization_id": actor.organization_id,
            "entity_kind": entity.kind.value,
            "entity_id": str(entity.id),
        }


def _as_uuid(value: Any, name: str) -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError as exc:
        raise ValidationError(f"{name} is not a valid identifier", errors=[f"{name}: invalid UUID"]) from exc


def _pydantic_errors(exc: PydanticValidationError) -> List[str]:
    return [
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
        for error in exc.errors()
    ]
