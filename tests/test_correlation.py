"""
Tests for the correlation engine.
"""

import asyncio

import pytest

from alertflow.config import CorrelationSettings
from alertflow.errors import IncidentContention, StaleIncidentVersion
from alertflow.incidents.store import InMemoryIncidentStore
from alertflow.models import HistoryKind, IncidentStatus, Severity
from alertflow.pipeline.correlation import CorrelationAction, CorrelationEngine

from fakes import domain, enriched, ip, make_event

A = ip("10.0.0.5")
B = ip("203.0.113.66")
X = domain("update-check.example.net")


class AlwaysStaleStore(InMemoryIncidentStore):
    """Every commit loses the race."""

    async def commit(self, *incidents):
        raise StaleIncidentVersion(incidents[0].incident_id, incidents[0].version, incidents[0].version + 1)


@pytest.fixture
def engine(settings, store):
    return CorrelationEngine(settings, store)


class TestMembership:
    """Events join, create, and are deduplicated."""

    @pytest.mark.asyncio
    async def test_shared_indicator_attaches(self, engine, store):
        first = await engine.correlate(enriched(make_event(A)))
        second = await engine.correlate(enriched(make_event(A, B, minutes=5)))

        assert first.action == CorrelationAction.CREATED
        assert second.action == CorrelationAction.ATTACHED
        assert second.incident_id == first.incident_id
        assert second.new_indicators == {B}

        incident = await store.get(first.incident_id)
        assert incident.indicators == {A, B}
        assert len(incident.event_ids) == 2

    @pytest.mark.asyncio
    async def test_no_shared_indicator_creates(self, engine, store):
        first = await engine.correlate(enriched(make_event(A)))
        second = await engine.correlate(enriched(make_event(B, minutes=1)))

        assert second.action == CorrelationAction.CREATED
        assert second.incident_id != first.incident_id
        assert len(store) == 2

    @pytest.mark.asyncio
    async def test_window_boundary_is_exclusive(self, engine):
        first = await engine.correlate(enriched(make_event(X, minutes=10)))
        inside = await engine.correlate(enriched(make_event(X, minutes=39)))
        assert inside.incident_id == first.incident_id

        # Latest member is at 39, so the window now ends at 69
        outside = await engine.correlate(enriched(make_event(X, minutes=70)))
        assert outside.action == CorrelationAction.CREATED

    @pytest.mark.asyncio
    async def test_exactly_window_apart_creates_new_incident(self, engine):
        first = await engine.correlate(enriched(make_event(X, minutes=10)))
        later = await engine.correlate(enriched(make_event(X, minutes=40)))

        assert later.action == CorrelationAction.CREATED
        assert later.incident_id != first.incident_id

    @pytest.mark.asyncio
    async def test_duplicate_event_is_noop(self, engine, store):
        event = make_event(A)
        first = await engine.correlate(enriched(event))
        before = await store.get(first.incident_id)

        again = await engine.correlate(enriched(event))
        after = await store.get(first.incident_id)

        assert again.action == CorrelationAction.DUPLICATE
        assert again.incident_id == first.incident_id
        assert after.version == before.version
        assert after.event_ids == before.event_ids

    @pytest.mark.asyncio
    async def test_closed_incident_not_joined(self, engine, store):
        first = await engine.correlate(enriched(make_event(A)))
        incident = await store.get(first.incident_id)
        incident.advance(IncidentStatus.CLOSED, actor="analyst")
        await store.commit(incident)

        second = await engine.correlate(enriched(make_event(A, minutes=1)))
        assert second.action == CorrelationAction.CREATED

    @pytest.mark.asyncio
    async def test_min_shared_indicators(self, settings, store):
        settings.correlation = CorrelationSettings(min_shared_indicators=2)
        engine = CorrelationEngine(settings, store)

        first = await engine.correlate(enriched(make_event(A, B)))
        one_shared = await engine.correlate(enriched(make_event(A, minutes=1)))
        two_shared = await engine.correlate(enriched(make_event(A, B, X, minutes=2)))

        assert one_shared.action == CorrelationAction.CREATED
        assert two_shared.incident_id == first.incident_id


class TestSeverity:
    """Incident severity is the maximum of its members."""

    @pytest.mark.asyncio
    async def test_raised_by_higher_event(self, engine, store):
        first = await engine.correlate(enriched(make_event(A, severity=Severity.MEDIUM)))
        second = await engine.correlate(enriched(make_event(A, minutes=2, severity=Severity.HIGH)))

        incident = await store.get(first.incident_id)
        assert second.severity_raised
        assert incident.severity == Severity.HIGH
        assert any(h.kind == HistoryKind.SEVERITY_RAISED for h in incident.history)

    @pytest.mark.asyncio
    async def test_never_lowered(self, engine, store):
        first = await engine.correlate(enriched(make_event(A, severity=Severity.HIGH)))
        second = await engine.correlate(enriched(make_event(A, minutes=2, severity=Severity.LOW)))

        incident = await store.get(first.incident_id)
        assert not second.severity_raised
        assert incident.severity == Severity.HIGH


class TestMerge:
    """An event bridging open incidents merges them into the oldest."""

    @pytest.mark.asyncio
    async def test_bridge_event_merges(self, engine, store):
        one = await engine.correlate(enriched(make_event(A, severity=Severity.LOW)))
        two = await engine.correlate(enriched(make_event(B, minutes=1, severity=Severity.HIGH)))
        candidates = [await store.get(one.incident_id), await store.get(two.incident_id)]
        oldest = min(candidates, key=lambda i: i.sort_key)
        newer = max(candidates, key=lambda i: i.sort_key)

        outcome = await engine.correlate(enriched(make_event(A, B, minutes=2)))

        assert outcome.action == CorrelationAction.MERGED
        assert outcome.incident_id == oldest.incident_id
        assert outcome.merged == (newer.incident_id,)

        target = await store.get(oldest.incident_id)
        absorbed = await store.get(newer.incident_id)

        assert len(target.event_ids) == 3
        assert target.indicators == {A, B}
        assert target.severity == Severity.HIGH
        assert any(h.kind == HistoryKind.MERGED_FROM for h in target.history)

        assert absorbed.status == IncidentStatus.CLOSED
        assert absorbed.merged_into == target.incident_id
        assert absorbed.event_ids == set()
        assert any(h.kind == HistoryKind.MERGED_INTO for h in absorbed.history)

        assert [i.incident_id for i in await store.find_open([B])] == [target.incident_id]
        assert (await store.resolve(absorbed.incident_id)).incident_id == target.incident_id

    @pytest.mark.asyncio
    async def test_every_event_owned_by_one_incident(self, engine, store):
        events = [make_event(A), make_event(B, minutes=1), make_event(A, B, minutes=2)]
        for event in events:
            await engine.correlate(enriched(event))

        owners = {await store.owner_of(e.event_id) for e in events}
        assert len(owners) == 1
        open_incidents = await store.list(status=IncidentStatus.OPEN)
        assert len(open_incidents) == 1


class TestOrdering:
    """Membership does not depend on arrival order within the window."""

    @pytest.mark.asyncio
    async def test_order_independent(self, settings):
        events = [make_event(A, minutes=0), make_event(A, minutes=20), make_event(A, minutes=45)]

        memberships = []
        for ordering in (events, list(reversed(events))):
            store = InMemoryIncidentStore()
            engine = CorrelationEngine(settings, store)
            for event in ordering:
                await engine.correlate(enriched(event))
            memberships.append(sorted(sorted(str(e) for e in i.event_ids) for i in await store.list()))

        assert memberships[0] == memberships[1]
        assert len(memberships[0]) == 1


class TestConcurrency:
    """Concurrent correlation and conflict handling."""

    @pytest.mark.asyncio
    async def test_concurrent_events_with_new_indicator_create_one_incident(self, engine, store):
        events = [make_event(X, minutes=i) for i in range(5)]

        outcomes = await asyncio.gather(*(engine.correlate(enriched(e)) for e in events))

        assert len({o.incident_id for o in outcomes}) == 1
        assert [o.action for o in outcomes].count(CorrelationAction.CREATED) == 1
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_persistent_conflict_surfaces_contention(self, settings):
        store = AlwaysStaleStore()
        engine = CorrelationEngine(settings, store)
        await engine.correlate(enriched(make_event(A)))

        with pytest.raises(IncidentContention):
            await engine.correlate(enriched(make_event(A, minutes=1)))
