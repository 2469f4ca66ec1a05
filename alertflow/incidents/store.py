"""
Incident Store - Source of truth for incident state and lifecycle.

Every write is a compare-and-swap against the version the caller read, so
concurrent correlation and response activity cannot silently lose updates.
Status changes are published to the notification hub after each commit.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from datetime import datetime
from uuid import UUID

import structlog

from alertflow.errors import IncidentContention, IncidentNotFound, StaleIncidentVersion
from alertflow.models import Incident, IncidentStatus, Indicator, Severity
from alertflow.notifications import Notification, NotificationHub

logger = structlog.get_logger()


class IncidentStore(ABC):
    """Contract for incident persistence backends."""

    @abstractmethod
    async def create(self, incident: Incident) -> Incident:
        """Persist a new incident at version 1."""

    @abstractmethod
    async def get(self, incident_id: UUID) -> Incident:
        """Fetch a private copy of an incident. Raises IncidentNotFound."""

    @abstractmethod
    async def commit(self, *incidents: Incident) -> list[Incident]:
        """
        Atomically write modified copies.

        Each incident's ``version`` must equal the stored version, otherwise
        nothing is written and StaleIncidentVersion is raised.
        """

    @abstractmethod
    async def find_open(self, indicators: Iterable[Indicator]) -> list[Incident]:
        """Non-closed incidents sharing at least one indicator, oldest first."""

    @abstractmethod
    async def owner_of(self, event_id: UUID) -> UUID | None:
        """Incident currently owning the event, if any."""

    @abstractmethod
    async def list(
        self,
        status: IncidentStatus | None = None,
        min_severity: Severity | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[Incident]:
        """Filter incidents by status, severity floor, and event time range."""

    async def resolve(self, incident_id: UUID) -> Incident:
        """Follow the merge chain to the incident that now owns the members."""
        incident = await self.get(incident_id)
        seen = {incident.incident_id}
        while incident.merged_into is not None and incident.merged_into not in seen:
            incident = await self.get(incident.merged_into)
            seen.add(incident.incident_id)
        return incident


class InMemoryIncidentStore(IncidentStore):
    """
    Process-local incident store.

    Keeps an index from indicator to open incidents and from event to owning
    incident. The lock guards only the version check and swap.
    """

    def __init__(self, hub: NotificationHub | None = None):
        self.hub = hub
        self._incidents: dict[UUID, Incident] = {}
        self._by_indicator: dict[Indicator, set[UUID]] = {}
        self._event_owner: dict[UUID, UUID] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._incidents)

    async def create(self, incident: Incident) -> Incident:
        async with self._lock:
            if incident.incident_id in self._incidents:
                existing = self._incidents[incident.incident_id]
                raise StaleIncidentVersion(incident.incident_id, 0, existing.version)

            stored = incident.model_copy(deep=True)
            stored.version = 1
            self._incidents[stored.incident_id] = stored
            self._index(None, stored)

        logger.info(
            "Incident created",
            incident_id=str(stored.incident_id),
            severity=stored.severity.value,
            indicators=sorted(i.key for i in stored.indicators),
        )
        self._publish(Notification.status_changed(
            stored.incident_id, None, stored.status, stored.version,
        ))
        return stored.model_copy(deep=True)

    async def get(self, incident_id: UUID) -> Incident:
        incident = self._incidents.get(incident_id)
        if incident is None:
            raise IncidentNotFound(incident_id)
        return incident.model_copy(deep=True)

    async def commit(self, *incidents: Incident) -> list[Incident]:
        notifications = []
        committed = []

        async with self._lock:
            for incident in incidents:
                current = self._incidents.get(incident.incident_id)
                if current is None:
                    raise IncidentNotFound(incident.incident_id)
                if current.version != incident.version:
                    raise StaleIncidentVersion(incident.incident_id, incident.version, current.version)

            for incident in incidents:
                previous = self._incidents[incident.incident_id]
                stored = incident.model_copy(deep=True)
                stored.version = previous.version + 1
                self._incidents[stored.incident_id] = stored
                self._index(previous, stored)
                committed.append(stored.model_copy(deep=True))

                if previous.status != stored.status:
                    notifications.append(Notification.status_changed(
                        stored.incident_id,
                        previous.status,
                        stored.status,
                        stored.version,
                        merged_into=str(stored.merged_into) if stored.merged_into else None,
                    ))

        for notification in notifications:
            logger.info(
                "Incident status changed",
                incident_id=str(notification.incident_id),
                from_status=notification.from_status.value if notification.from_status else None,
                to_status=notification.to_status.value,
            )
            self._publish(notification)
        return committed

    async def find_open(self, indicators: Iterable[Indicator]) -> list[Incident]:
        ids: set[UUID] = set()
        for indicator in indicators:
            ids |= self._by_indicator.get(indicator, set())
        found = [self._incidents[i] for i in ids if self._incidents[i].is_open]
        return [i.model_copy(deep=True) for i in sorted(found, key=lambda i: i.sort_key)]

    async def owner_of(self, event_id: UUID) -> UUID | None:
        return self._event_owner.get(event_id)

    async def list(
        self,
        status: IncidentStatus | None = None,
        min_severity: Severity | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[Incident]:
        results = []
        for incident in self._incidents.values():
            if status is not None and incident.status != status:
                continue
            if min_severity is not None and incident.severity.rank < min_severity.rank:
                continue
            if since is not None and incident.last_event_at < since:
                continue
            if until is not None and incident.first_event_at > until:
                continue
            results.append(incident.model_copy(deep=True))
        return sorted(results, key=lambda i: i.sort_key)

    def _index(self, previous: Incident | None, stored: Incident) -> None:
        incident_id = stored.incident_id

        if previous is not None:
            for indicator in previous.indicators:
                owners = self._by_indicator.get(indicator)
                if owners is not None:
                    owners.discard(incident_id)
                    if not owners:
                        del self._by_indicator[indicator]
            for event_id in previous.event_ids - stored.event_ids:
                if self._event_owner.get(event_id) == incident_id:
                    del self._event_owner[event_id]

        if stored.is_open:
            for indicator in stored.indicators:
                self._by_indicator.setdefault(indicator, set()).add(incident_id)
        for event_id in stored.event_ids:
            self._event_owner[event_id] = incident_id

    def _publish(self, notification: Notification) -> None:
        if self.hub is not None:
            self.hub.publish(notification)


async def mutate(
    store: IncidentStore,
    incident_id: UUID,
    change: Callable[[Incident], bool | None],
    attempts: int = 5,
) -> Incident:
    """
    Read-modify-commit with transparent retry on version conflicts.

    *change* edits the fresh copy in place; returning False means there is
    nothing to write. Raises IncidentContention after *attempts* conflicts.
    """
    for attempt in range(1, attempts + 1):
        incident = await store.get(incident_id)
        if change(incident) is False:
            return incident
        try:
            committed = await store.commit(incident)
            return committed[0]
        except StaleIncidentVersion as e:
            logger.debug(
                "Incident version conflict, retrying",
                incident_id=str(incident_id),
                attempt=attempt,
                expected=e.expected,
                actual=e.actual,
            )
    raise IncidentContention(incident_id, attempts)
