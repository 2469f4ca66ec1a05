"""
Correlation Engine - Group enriched events into incidents.

An event joins an open incident when they share at least
``min_shared_indicators`` indicators and the event falls inside the
incident's sliding time window. Overlap with several open incidents merges
them into the oldest. Re-delivered events are recognised by id and change
nothing.

Work is serialised per indicator: at most one correlation mutation is in
flight for any indicator, so two events carrying the same new indicator
cannot both create an incident for it. Version conflicts with other writers
(triage, playbook runs) are retried with a fresh read.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from uuid import UUID

import structlog

from alertflow.config import Settings
from alertflow.errors import IncidentContention, StaleIncidentVersion
from alertflow.incidents.store import IncidentStore
from alertflow.models import Event, Incident, Indicator
from alertflow.pipeline.enrichment import EnrichedEvent
from alertflow.utils.locks import KeyedLock

logger = structlog.get_logger()


class CorrelationAction(str, Enum):
    CREATED = "created"
    ATTACHED = "attached"
    MERGED = "merged"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class CorrelationOutcome:
    """What happened to one event."""

    action: CorrelationAction
    event_id: UUID
    incident_id: UUID
    merged: tuple[UUID, ...] = ()
    new_indicators: frozenset[Indicator] = frozenset()
    severity_raised: bool = False


class CorrelationEngine:
    """Decides incident membership for each enriched event."""

    def __init__(self, settings: Settings, store: IncidentStore):
        self.settings = settings
        self.store = store
        self.window = timedelta(minutes=settings.correlation.window_minutes)
        self.min_shared = settings.correlation.min_shared_indicators
        self.retry_attempts = settings.correlation.store_retry_attempts
        self._locks = KeyedLock()

    async def correlate(self, enriched: EnrichedEvent) -> CorrelationOutcome:
        event = enriched.event
        conflict: StaleIncidentVersion | None = None

        async with self._locks.hold(i.key for i in event.indicators):
            for attempt in range(1, self.retry_attempts + 1):
                try:
                    outcome = await self._correlate_once(enriched)
                except StaleIncidentVersion as e:
                    conflict = e
                    logger.debug(
                        "Correlation conflict, retrying",
                        event_id=str(event.event_id),
                        incident_id=str(e.incident_id),
                        attempt=attempt,
                    )
                    continue

                logger.info(
                    "Event correlated",
                    event_id=str(event.event_id),
                    sensor=event.sensor.value,
                    action=outcome.action.value,
                    incident_id=str(outcome.incident_id),
                )
                return outcome

        raise IncidentContention(conflict.incident_id, self.retry_attempts)

    def matches(self, incident: Incident, event: Event) -> bool:
        shared = incident.indicators & event.indicators
        return len(shared) >= self.min_shared and incident.in_window(event.timestamp, self.window)

    async def _correlate_once(self, enriched: EnrichedEvent) -> CorrelationOutcome:
        event = enriched.event

        owner = await self.store.owner_of(event.event_id)
        if owner is not None:
            return CorrelationOutcome(
                action=CorrelationAction.DUPLICATE,
                event_id=event.event_id,
                incident_id=owner,
            )

        candidates = [
            incident for incident in await self.store.find_open(event.indicators)
            if self.matches(incident, event)
        ]

        if not candidates:
            return await self._create(enriched)
        if len(candidates) == 1:
            return await self._attach(candidates[0], enriched)
        return await self._merge(candidates, enriched)

    async def _create(self, enriched: EnrichedEvent) -> CorrelationOutcome:
        incident = Incident.from_event(enriched.event, enriched.enrichment)
        created = await self.store.create(incident)
        return CorrelationOutcome(
            action=CorrelationAction.CREATED,
            event_id=enriched.event.event_id,
            incident_id=created.incident_id,
            new_indicators=frozenset(created.indicators),
        )

    async def _attach(self, incident: Incident, enriched: EnrichedEvent) -> CorrelationOutcome:
        before = set(incident.indicators)
        severity = incident.severity

        incident.absorb(enriched.event, enriched.enrichment)
        await self.store.commit(incident)

        return CorrelationOutcome(
            action=CorrelationAction.ATTACHED,
            event_id=enriched.event.event_id,
            incident_id=incident.incident_id,
            new_indicators=frozenset(incident.indicators - before),
            severity_raised=incident.severity != severity,
        )

    async def _merge(self, candidates: list[Incident], enriched: EnrichedEvent) -> CorrelationOutcome:
        ordered = sorted(candidates, key=lambda i: i.sort_key)
        target, absorbed = ordered[0], ordered[1:]
        before = set(target.indicators)
        severity = target.severity

        for other in absorbed:
            target.merge_from(other)
        target.absorb(enriched.event, enriched.enrichment)
        await self.store.commit(target, *absorbed)

        logger.info(
            "Incidents merged",
            target=str(target.incident_id),
            absorbed=[str(i.incident_id) for i in absorbed],
            events=len(target.event_ids),
        )
        return CorrelationOutcome(
            action=CorrelationAction.MERGED,
            event_id=enriched.event.event_id,
            incident_id=target.incident_id,
            merged=tuple(i.incident_id for i in absorbed),
            new_indicators=frozenset(target.indicators - before),
            severity_raised=target.severity != severity,
        )
