"""
TraceabilityResolver tests.

Tests cover:
  - Resolution from any number in the chain yields the same chain
  - Timeline is merged and ascending by date
  - Organization scoping and empty input
  - Search with chain links
"""

import pytest

from changeflow.errors import NotFoundError, ValidationError
from changeflow.models import EntityKind
from changeflow.services.traceability import build_timeline, entity_events


@pytest.fixture()
async def chain(build, tracker, actors):
    requests = [await build.approved_request("Bracket alloy"), await build.approved_request("Bracket finish")]
    order = await build.order_in_review(requests)
    order = await build.move("quality", order, "COMPLETED")
    notice = await build.approved_notice(order)
    await tracker.distribute(actors["doc_control"], notice.id, [
        {"name": "Line A", "contact_address": "line-a@acme.test"},
    ])
    return requests, order, notice


class TestResolve:
    @pytest.mark.anyio
    @pytest.mark.parametrize("number", ["ECR-0001", "ECR-0002", "ECO-0001", "ECN-0001", "ecn-0001"])
    async def test_same_chain_from_any_number(self, chain, resolver, actors, number):
        result = await resolver.resolve(actors["viewer"], number)

        assert result.notice.number == "ECN-0001"
        assert result.order.number == "ECO-0001"
        assert [r.number for r in result.requests] == ["ECR-0001", "ECR-0002"]

    @pytest.mark.anyio
    async def test_resolved_kind(self, chain, resolver, actors):
        assert (await resolver.resolve(actors["viewer"], "ECO-0001")).kind == EntityKind.ORDER
        assert (await resolver.resolve(actors["viewer"], "ECR-0002")).kind == EntityKind.REQUEST

    @pytest.mark.anyio
    async def test_timeline_ascending_and_complete(self, chain, resolver, actors):
        result = await resolver.resolve(actors["viewer"], "ECN-0001")
        dates = [e.date for e in result.timeline]
        types = [e.type for e in result.timeline]

        assert dates == sorted(dates)
        assert types[0] == "ECR_CREATED"
        assert types[-1] == "ECN_DISTRIBUTED"
        for expected in ("ECR_SUBMITTED", "ECR_APPROVED", "ECO_APPROVED", "ECO_COMPLETED", "ECN_APPROVED"):
            assert expected in types
        assert types.count("ECR_APPROVED") == 2

    @pytest.mark.anyio
    async def test_unbundled_request_resolves_alone(self, build, resolver, actors):
        await build.request()
        result = await resolver.resolve(actors["viewer"], "ECR-0001")
        assert result.order is None
        assert result.notice is None
        assert [r.number for r in result.requests] == ["ECR-0001"]

    @pytest.mark.anyio
    async def test_other_organization(self, chain, resolver, actors):
        with pytest.raises(NotFoundError):
            await resolver.resolve(actors["outsider"], "ECN-0001")

    @pytest.mark.anyio
    async def test_unknown_number(self, resolver, actors):
        with pytest.raises(NotFoundError):
            await resolver.resolve(actors["viewer"], "ECR-9999")

    @pytest.mark.anyio
    async def test_empty_number(self, resolver, actors):
        with pytest.raises(ValidationError):
            await resolver.resolve(actors["viewer"], "   ")


class TestSearch:
    @pytest.mark.anyio
    async def test_search_by_title_links_chain(self, chain, resolver, actors):
        hits = await resolver.search(actors["viewer"], "finish")
        assert len(hits) == 1
        assert hits[0].record.number == "ECR-0002"
        assert hits[0].order_number == "ECO-0001"
        assert hits[0].notice_number == "ECN-0001"

    @pytest.mark.anyio
    async def test_search_scoped_to_organization(self, chain, resolver, actors):
        assert await resolver.search(actors["outsider"], "bracket") == []


class TestTimeline:
    @pytest.mark.anyio
    async def test_events_only_for_set_milestones(self, build):
        request = await build.request()
        events = entity_events(request)
        assert [e.type for e in events] == ["ECR_CREATED"]
        assert events[0].status_label == "DRAFT"
        assert events[0].title == "ECR-0001 Created"

    @pytest.mark.anyio
    async def test_duplicates_merged_once(self, build):
        request = await build.request()
        assert len(build_timeline([request, request, None])) == 1
