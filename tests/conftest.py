"""
Shared fixtures for ChangeFlow tests.

Services run against the in-memory store with a fixed clock that tests
can advance.
"""

from datetime import datetime, timedelta, timezone

import pytest

from changeflow.models import Actor, EntityKind, Role
from changeflow.services import (
    DistributionTracker,
    RecordingNotifier,
    TraceabilityResolver,
    WorkflowService,
)
from changeflow.store import InMemoryEntityStore

ORG = "org-acme"
OTHER_ORG = "org-globex"
T0 = datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)


class FixedClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now += timedelta(**delta)
        return self.now


class ChainBuilder:
    """Drives records through the workflow with the right actor at each step."""

    def __init__(self, workflow: WorkflowService, actors: dict, clock: FixedClock):
        self.workflow = workflow
        self.actors = actors
        self.clock = clock

    async def request(self, title="Replace bracket alloy", submitter=None, **fields):
        payload = {
            "title": title,
            "description": "Bracket cracks under vibration load",
            "reason": "Field failures",
            "customer_impact": "INDIRECT_IMPACT",
            **fields,
        }
        view = await self.workflow.create(submitter or self.actors["requestor"], EntityKind.REQUEST, payload)
        return view.entity

    async def move(self, actor_name, entity, to_status, **fields):
        view = await self.workflow.transition(
            self.actors[actor_name], entity.kind, entity.id, to_status, fields,
        )
        self.clock.advance(minutes=5)
        return view.entity

    async def pending_request(self, title="Replace bracket alloy"):
        request = await self.request(title)
        request = await self.move("requestor", request, "SUBMITTED")
        request = await self.move("engineer", request, "UNDER_REVIEW")
        request = await self.move("engineer", request, "IN_ANALYSIS", technical_assessment="Alloy swap is feasible")
        return await self.move(
            "engineer", request, "PENDING_APPROVAL",
            root_cause="Fatigue at weld toe",
            resource_requirements="Two engineers, one supplier audit",
            timeline_estimate="6 weeks",
            risk_assessment="Low: drop-in replacement",
        )

    async def approved_request(self, title="Replace bracket alloy"):
        request = await self.pending_request(title)
        view = await self.workflow.approve(self.actors["manager"], EntityKind.REQUEST, request.id, "Go ahead")
        self.clock.advance(minutes=5)
        return view.entity

    async def order(self, requests=(), title="Implement bracket change"):
        payload = {
            "title": title,
            "description": "Switch bracket to 6061-T6",
            "implementation_plan": "Update drawing, re-qualify supplier",
            "testing_plan": "Vibration test per spec 12",
            "resources_required": "Design engineer, supplier quality",
            "estimated_effort": 120,
            "target_date": "2025-06-30",
            "request_ids": [str(r.id) for r in requests],
        }
        view = await self.workflow.create(self.actors["engineer"], EntityKind.ORDER, payload)
        return view.entity

    async def order_in_review(self, requests=(), signed_off=True):
        order = await self.order(requests)
        order = await self.move("engineer", order, "PLANNING")
        order = await self.move("manager", order, "APPROVED")
        order = await self.move(
            "engineer", order, "IN_PROGRESS",
            detailed_schedule="Drawing week 1, pilot run week 3",
            resource_allocation="Line 2, second shift",
        )
        order = await self.move("manufacturing", order, "REVIEW", actual_hours=96)
        if signed_off:
            for actor_name, field in (
                ("quality", "quality_approval"),
                ("engineer", "engineering_approval"),
                ("manufacturing", "manufacturing_approval"),
            ):
                view = await self.workflow.update(self.actors[actor_name], EntityKind.ORDER, order.id, {field: True})
                order = view.entity
        return order

    async def approved_notice(self, order=None, **fields):
        if order is None:
            order = await self.order_in_review([await self.approved_request()])
            order = await self.move("quality", order, "COMPLETED")
        payload = {
            "distribution_list": ["line-a@acme.test", "supplier@vendor.test"],
            "response_deadline": "DAYS_5",
            "internal_stakeholders": ["quality", "manufacturing"],
            **fields,
        }
        view = await self.workflow.create_notice(self.actors["doc_control"], order.id, payload)
        notice = await self.move("doc_control", view.entity, "PENDING_APPROVAL")
        return await self.move("manager", notice, "APPROVED")


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture()
def anyio_backend():
    return "asyncio"


@pytest.fixture()
def clock():
    return FixedClock()


@pytest.fixture()
def store():
    return InMemoryEntityStore()


@pytest.fixture()
def notifier():
    return RecordingNotifier()


@pytest.fixture()
def workflow(store, notifier, clock):
    return WorkflowService(store, notifier, clock=clock)


@pytest.fixture()
def tracker(store, workflow, notifier, clock):
    return DistributionTracker(
        store, workflow, notifier,
        clock=clock,
        default_reminder_after_hours=48,
        default_escalate_after_hours=120,
    )


@pytest.fixture()
def resolver(store):
    return TraceabilityResolver(store)


@pytest.fixture()
def actors():
    return {
        "requestor": Actor(id="u-requestor", role=Role.REQUESTOR, organization_id=ORG),
        "requestor2": Actor(id="u-requestor-2", role=Role.REQUESTOR, organization_id=ORG),
        "engineer": Actor(id="u-engineer", role=Role.ENGINEER, organization_id=ORG),
        "quality": Actor(id="u-quality", role=Role.QUALITY, organization_id=ORG),
        "manufacturing": Actor(id="u-manufacturing", role=Role.MANUFACTURING, organization_id=ORG),
        "doc_control": Actor(id="u-doc-control", role=Role.DOCUMENT_CONTROL, organization_id=ORG),
        "manager": Actor(id="u-manager", role=Role.MANAGER, organization_id=ORG),
        "admin": Actor(id="u-admin", role=Role.ADMIN, organization_id=ORG),
        "viewer": Actor(id="u-viewer", role=Role.VIEWER, organization_id=ORG),
        "outsider": Actor(id="u-outsider", role=Role.ADMIN, organization_id=OTHER_ORG),
    }


@pytest.fixture()
def build(workflow, actors, clock):
    return ChainBuilder(workflow, actors, clock)
