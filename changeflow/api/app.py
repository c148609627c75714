"""
ChangeFlow API

FastAPI application with:
- Change record CRUD scoped by organization
- Status transitions, approvals and revision history
- Order bundling and notice creation
- Notice distribution, acknowledgment and escalation
- Traceability by public number

Identity is verified upstream; the caller's id, role and organization
arrive in the X-Actor-Id, X-Actor-Role and X-Organization-Id headers.
"""

import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Body, Depends, FastAPI, Header, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .. import __version__
from ..config import get_config
from ..errors import AuthorizationError, ChangeFlowError, ValidationError
from ..logging_config import CONTEXT_KEYS, configure_logging
from ..models import Actor, EntityKind, Role, utcnow
from ..services import (
    DistributionTracker,
    EscalationSweeper,
    LoggingNotifier,
    RateLimiter,
    TraceabilityResolver,
    WorkflowService,
    counter_store_from_url,
)
from ..services.distribution import RecipientInput
from ..store import InMemoryEntityStore, RetryingEntityStore

logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class UpdateRequest(BaseModel):
    fields: Dict[str, Any]
    note: Optional[str] = None
    expected_version: Optional[int] = None
    require_change: bool = False


class TransitionRequest(BaseModel):
    to_status: str
    fields: Dict[str, Any] = Field(default_factory=dict)
    note: Optional[str] = None
    expected_version: Optional[int] = None


class ApprovalRequest(BaseModel):
    comments: Optional[str] = None
    reason: Optional[str] = None  # Rejection only
    fields: Dict[str, Any] = Field(default_factory=dict)
    expected_version: Optional[int] = None


class BundleRequest(BaseModel):
    request_ids: List[UUID]
    title: str
    description: Optional[str] = None
    fields: Dict[str, Any] = Field(default_factory=dict)


class DistributeRequest(BaseModel):
    recipients: List[RecipientInput]


class EscalationRequest(BaseModel):
    recipient_ids: Optional[List[UUID]] = None
    notes: Optional[str] = None


class AcknowledgeRequest(BaseModel):
    comments: Optional[str] = None


def ok(data: Any) -> Dict[str, Any]:
    return {"success": True, "data": data}


def error_body(exc: ChangeFlowError, request_id: Optional[str]) -> Dict[str, Any]:
    return {
        "success": False,
        "error": {
            "kind": exc.kind.value,
            "code": exc.code,
            "message": exc.user_message,
            "details": exc.public_details(),
            "request_id": request_id,
        },
    }


# =============================================================================
# DEPENDENCIES
# =============================================================================

async def current_actor(
    x_actor_id: str = Header(...),
    x_actor_role: str = Header(...),
    x_organization_id: str = Header(...),
) -> Actor:
    try:
        role = Role(x_actor_role.upper())
    except ValueError:
        raise AuthorizationError(f"Unknown role {x_actor_role}")
    return Actor(id=x_actor_id, role=role, organization_id=x_organization_id)


async def rate_limited(request: Request, actor: Actor = Depends(current_actor)) -> Actor:
    limiter: Optional[RateLimiter] = request.app.state.rate_limiter
    if limiter is not None:
        await limiter.hit(f"{actor.organization_id}:{actor.id}")
    return actor


async def rate_limited_by_client(request: Request) -> None:
    limiter: Optional[RateLimiter] = request.app.state.rate_limiter
    if limiter is not None:
        host = request.client.host if request.client else "unknown"
        await limiter.hit(f"client:{host}")


def workflow_service(request: Request) -> WorkflowService:
    return request.app.state.workflow


def distribution_tracker(request: Request) -> DistributionTracker:
    return request.app.state.distribution


def traceability_resolver(request: Request) -> TraceabilityResolver:
    return request.app.state.traceability


# =============================================================================
# HEALTH CHECK
# =============================================================================

@router.get("/health")
async def health_check(request: Request):
    sweeper = request.app.state.sweeper
    return {
        "status": "healthy",
        "service": "changeflow-engine",
        "version": __version__,
        "escalation_sweep": "running" if sweeper is not None and sweeper.running else "off",
    }


# =============================================================================
# CHANGE RECORD ENDPOINTS
# =============================================================================

@router.post("/changes/{kind}", status_code=status.HTTP_201_CREATED)
async def create_change(
    kind: EntityKind,
    payload: Dict[str, Any] = Body(...),
    actor: Actor = Depends(rate_limited),
    workflow: WorkflowService = Depends(workflow_service),
):
    """
    Create a record in DRAFT with the next public number.

    Orders accept ``request_ids``; notices need ``order_id``.
    """
    return ok(await workflow.create(actor, kind, payload))


@router.get("/changes/{kind}/{entity_id}")
async def get_change(
    kind: EntityKind,
    entity_id: UUID,
    actor: Actor = Depends(rate_limited),
    workflow: WorkflowService = Depends(workflow_service),
):
    return ok(await workflow.get(actor, kind, entity_id))


@router.patch("/changes/{kind}/{entity_id}")
async def update_change(
    kind: EntityKind,
    entity_id: UUID,
    body: UpdateRequest,
    actor: Actor = Depends(rate_limited),
    workflow: WorkflowService = Depends(workflow_service),
):
    """
    Update content fields.

    Fields the caller may not change are reported in ``dropped_fields``.
    """
    view = await workflow.update(
        actor, kind, entity_id, body.fields,
        note=body.note,
        expected_version=body.expected_version,
        require_change=body.require_change,
    )
    return ok(view)


@router.get("/changes/{kind}/{entity_id}/transitions")
async def list_transitions(
    kind: EntityKind,
    entity_id: UUID,
    actor: Actor = Depends(rate_limited),
    workflow: WorkflowService = Depends(workflow_service),
):
    return ok(await workflow.next_statuses(actor, kind, entity_id))


@router.post("/changes/{kind}/{entity_id}/transitions")
async def transition_change(
    kind: EntityKind,
    entity_id: UUID,
    body: TransitionRequest,
    actor: Actor = Depends(rate_limited),
    workflow: WorkflowService = Depends(workflow_service),
):
    view = await workflow.transition(
        actor, kind, entity_id, body.to_status, body.fields,
        note=body.note,
        expected_version=body.expected_version,
    )
    return ok(view)


@router.post("/changes/{kind}/{entity_id}/approve")
async def approve_change(
    kind: EntityKind,
    entity_id: UUID,
    body: ApprovalRequest,
    actor: Actor = Depends(rate_limited),
    workflow: WorkflowService = Depends(workflow_service),
):
    view = await workflow.approve(
        actor, kind, entity_id, body.comments, body.fields,
        expected_version=body.expected_version,
    )
    return ok(view)


@router.post("/changes/{kind}/{entity_id}/reject")
async def reject_change(
    kind: EntityKind,
    entity_id: UUID,
    body: ApprovalRequest,
    actor: Actor = Depends(rate_limited),
    workflow: WorkflowService = Depends(workflow_service),
):
    view = await workflow.reject(
        actor, kind, entity_id, body.comments, body.reason,
        expected_version=body.expected_version,
    )
    return ok(view)


@router.get("/changes/{kind}/{entity_id}/revisions")
async def list_revisions(
    kind: EntityKind,
    entity_id: UUID,
    actor: Actor = Depends(rate_limited),
    workflow: WorkflowService = Depends(workflow_service),
):
    return ok(await workflow.history(actor, kind, entity_id))


# =============================================================================
# ORDER ENDPOINTS
# =============================================================================

@router.post("/orders/bundle", status_code=status.HTTP_201_CREATED)
async def bundle_requests(
    body: BundleRequest,
    actor: Actor = Depends(rate_limited),
    workflow: WorkflowService = Depends(workflow_service),
):
    """Bundle APPROVED requests into one new order (BACKLOG)."""
    view = await workflow.bundle_requests(
        actor, body.request_ids, body.title, body.description, body.fields,
    )
    return ok(view)


@router.post("/orders/{order_id}/notice", status_code=status.HTTP_201_CREATED)
async def create_notice(
    order_id: UUID,
    payload: Optional[Dict[str, Any]] = Body(None),
    actor: Actor = Depends(rate_limited),
    workflow: WorkflowService = Depends(workflow_service),
):
    return ok(await workflow.create_notice(actor, order_id, payload or {}))


# =============================================================================
# NOTICE DISTRIBUTION ENDPOINTS
# =============================================================================

@router.post("/notices/{notice_id}/recipients")
async def distribute_notice(
    notice_id: UUID,
    body: DistributeRequest,
    actor: Actor = Depends(rate_limited),
    tracker: DistributionTracker = Depends(distribution_tracker),
):
    return ok(await tracker.distribute(actor, notice_id, body.recipients))


@router.get("/notices/{notice_id}/tracking")
async def notice_tracking(
    notice_id: UUID,
    actor: Actor = Depends(rate_limited),
    tracker: DistributionTracker = Depends(distribution_tracker),
):
    return ok(await tracker.tracking(actor, notice_id))


@router.post("/notices/{notice_id}/reminders")
async def send_reminders(
    notice_id: UUID,
    body: EscalationRequest,
    actor: Actor = Depends(rate_limited),
    tracker: DistributionTracker = Depends(distribution_tracker),
):
    return ok(await tracker.send_reminders(actor, notice_id, body.recipient_ids, body.notes))


@router.post("/notices/{notice_id}/escalations")
async def escalate_recipients(
    notice_id: UUID,
    body: EscalationRequest,
    actor: Actor = Depends(rate_limited),
    tracker: DistributionTracker = Depends(distribution_tracker),
):
    return ok(await tracker.escalate(actor, notice_id, body.recipient_ids, body.notes))


@router.get("/notices/{notice_id}/escalation-history")
async def escalation_history(
    notice_id: UUID,
    actor: Actor = Depends(rate_limited),
    tracker: DistributionTracker = Depends(distribution_tracker),
):
    return ok(await tracker.escalation_history(actor, notice_id))


# =============================================================================
# RECIPIENT ENDPOINTS (reached from the notification link)
# =============================================================================

@router.post("/recipients/{recipient_id}/open", dependencies=[Depends(rate_limited_by_client)])
async def open_notice(
    recipient_id: UUID,
    tracker: DistributionTracker = Depends(distribution_tracker),
):
    return ok(await tracker.mark_opened(recipient_id))


@router.post("/recipients/{recipient_id}/acknowledge", dependencies=[Depends(rate_limited_by_client)])
async def acknowledge_notice(
    recipient_id: UUID,
    body: Optional[AcknowledgeRequest] = None,
    tracker: DistributionTracker = Depends(distribution_tracker),
):
    """Idempotent. A repeated call returns outcome ALREADY_ACKNOWLEDGED."""
    return ok(await tracker.acknowledge(recipient_id, body.comments if body else None))


# =============================================================================
# TRACEABILITY ENDPOINTS
# =============================================================================

@router.get("/traceability")
async def search_traceability(
    q: str = Query(..., min_length=1),
    actor: Actor = Depends(rate_limited),
    resolver: TraceabilityResolver = Depends(traceability_resolver),
):
    return ok(await resolver.search(actor, q))


@router.get("/traceability/{number}")
async def resolve_traceability(
    number: str,
    actor: Actor = Depends(rate_limited),
    resolver: TraceabilityResolver = Depends(traceability_resolver),
):
    return ok(await resolver.resolve(actor, number))


# =============================================================================
# ERROR HANDLING
# =============================================================================

async def handle_domain_error(request: Request, exc: ChangeFlowError) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    extra = {k: v for k, v in exc.context.items() if k in CONTEXT_KEYS}
    extra.update({
        "request_id": request_id,
        "method": request.method,
        "path": request.url.path,
        "status": exc.status_code,
        "error_kind": exc.kind.value,
        "error_code": exc.code,
    })
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "%s %s failed: %s (context=%s)", request.method, request.url.path, exc.message, exc.context,
        extra=extra,
        exc_info=exc.status_code >= 500,
    )
    return JSONResponse(status_code=exc.status_code, content=error_body(exc, request_id))


async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
        for error in exc.errors()
    ]
    return await handle_domain_error(request, ValidationError("Request validation failed", errors=errors))


# =============================================================================
# APP SETUP
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    sweeper: Optional[EscalationSweeper] = app.state.sweeper
    if sweeper is not None:
        sweeper.start()
    try:
        yield
    finally:
        if sweeper is not None:
            await sweeper.stop()
        if app.state.counters is not None:
            await app.state.counters.close()


def create_app(
    config_name: Optional[str] = None,
    store=None,
    notifier=None,
    clock: Optional[Callable[[], datetime]] = None
) -> FastAPI:
    """Application factory. Collaborators may be injected for tests."""
    settings = get_config(config_name)
    configure_logging(settings)
    clock = clock or utcnow

    if store is None:
        store = RetryingEntityStore(
            InMemoryEntityStore(),
            attempts=settings.STORE_RETRY_ATTEMPTS,
            base_delay=settings.STORE_RETRY_BASE_DELAY,
        )
    notifier = notifier or LoggingNotifier()

    workflow = WorkflowService(store, notifier, clock=clock)
    tracker = DistributionTracker(
        store, workflow, notifier,
        clock=clock,
        default_reminder_after_hours=settings.DEFAULT_REMINDER_AFTER_HOURS,
        default_escalate_after_hours=settings.DEFAULT_ESCALATE_AFTER_HOURS,
    )

    counters = limiter = sweeper = None
    if settings.RATE_LIMIT_ENABLED:
        counters = counter_store_from_url(settings.REDIS_URL)
        limiter = RateLimiter(counters, settings.RATE_LIMIT_PER_MINUTE, window_seconds=60)
    if settings.ESCALATION_SWEEP_ENABLED:
        sweeper = EscalationSweeper(tracker, settings.ESCALATION_SWEEP_INTERVAL_SECONDS)

    app = FastAPI(
        title="ChangeFlow Engine",
        description="Request -> Order -> Notice change workflow with audit and distribution tracking",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = store
    app.state.workflow = workflow
    app.state.distribution = tracker
    app.state.traceability = TraceabilityResolver(store)
    app.state.counters = counters
    app.state.rate_limiter = limiter
    app.state.sweeper = sweeper

    origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request.state.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex[:12])
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request.state.request_id
        if request.url.path != "/health":
            logger.debug(
                "Request: %s %s %d (%.0fms)",
                request.method, request.url.path, response.status_code, duration_ms,
                extra={
                    "request_id": request.state.request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "status": response.status_code,
                    "duration_ms": round(duration_ms, 1),
                    "actor_id": request.headers.get("X-Actor-Id"),
                    "organization_id": request.headers.get("X-Organization-Id"),
                },
            )
        return response

    app.add_exception_handler(ChangeFlowError, handle_domain_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
