"""
Orchestrator - Wires the engine together.

    sensor payload -> normalize -> per-sensor queue -> enrich -> correlate
    incident OPEN     -> triage (ENRICHING, re-enrich failed lookups, TRIAGED)
    incident TRIAGED  -> dispatch matching playbooks

Each sensor has its own FIFO queue and worker so events from one sensor are
correlated in arrival order, while sensors proceed independently.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Iterable
from datetime import datetime
from typing import Any
from uuid import UUID

import structlog

from alertflow.config import Settings
from alertflow.incidents.store import IncidentStore, InMemoryIncidentStore, mutate
from alertflow.models import (
    Event,
    Incident,
    IncidentStatus,
    Indicator,
    PlaybookRun,
    SensorKind,
    Severity,
)
from alertflow.notifications import Notification, NotificationHub, NotificationKind, Subscription
from alertflow.pipeline.correlation import CorrelationAction, CorrelationEngine, CorrelationOutcome
from alertflow.pipeline.enrichment import EnrichmentClient, build_enrichment_client
from alertflow.pipeline.normalizer import normalize
from alertflow.playbooks.definitions import PlaybookRegistry
from alertflow.playbooks.executor import PlaybookExecutor
from alertflow.playbooks.providers import ActionProvider, build_action_provider

logger = structlog.get_logger()

_DISPATCH_STATUSES = (IncidentStatus.TRIAGED, IncidentStatus.RESPONDING)


class Orchestrator:
    """
    Owns the pipeline components and the background work between them.

    Components not passed in are built from settings.
    """

    def __init__(
        self,
        settings: Settings,
        store: IncidentStore | None = None,
        enrichment: EnrichmentClient | None = None,
        registry: PlaybookRegistry | None = None,
        provider: ActionProvider | None = None,
        hub: NotificationHub | None = None,
    ):
        self.settings = settings
        self.hub = hub if hub is not None else NotificationHub()
        self.store = store if store is not None else InMemoryIncidentStore(self.hub)
        self.enrichment = enrichment if enrichment is not None else build_enrichment_client(settings)
        self.registry = registry if registry is not None else PlaybookRegistry.from_settings(settings)
        self.provider = provider if provider is not None else build_action_provider(settings)

        self.correlation = CorrelationEngine(settings, self.store)
        self.executor = PlaybookExecutor(settings, self.registry, self.provider, self.store, self.hub)

        self._queues: dict[SensorKind, asyncio.Queue] = {}
        self._workers: dict[SensorKind, asyncio.Task] = {}
        self._background: set[asyncio.Task] = set()
        self._subscription: Subscription | None = None
        self._listener: asyncio.Task | None = None
        self._running = False

        self.stats = {
            "events_received": 0,
            "events_correlated": 0,
            "events_failed": 0,
        }

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._subscription = self.hub.subscribe({NotificationKind.INCIDENT_STATUS_CHANGED}, maxsize=0)
        self._listener = asyncio.create_task(self._listen(self._subscription))
        logger.info(
            "Orchestrator started",
            playbooks=self.registry.names(),
            window_minutes=self.settings.correlation.window_minutes,
            enrichment_provider=self.enrichment.intel.name,
            action_provider=self.provider.name,
        )

    async def stop(self, drain: bool = True) -> None:
        if not self._running:
            return
        if drain:
            await self.drain()
        self._running = False

        if self._subscription is not None:
            self._subscription.close()
        if self._listener is not None:
            await self._listener
            self._listener = None

        for task in self._workers.values():
            task.cancel()
        await asyncio.gather(*self._workers.values(), *self._background, return_exceptions=True)
        self._workers.clear()
        self._queues.clear()

        await self.executor.shutdown()

        for client in (self.enrichment.intel, self.enrichment.assets, self.provider):
            close = getattr(client, "close", None)
            if close is not None:
                await close()

        logger.info("Orchestrator stopped", **self.stats)

    async def drain(self) -> None:
        """Wait until every queue, notification and background task is settled."""
        while True:
            for queue in list(self._queues.values()):
                await queue.join()
            if self._subscription is not None:
                await self._subscription.join()

            pending = [t for t in self._background if not t.done()] + self.executor.pending()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                continue

            idle = all(q.empty() for q in self._queues.values())
            if self._subscription is not None:
                idle = idle and self._subscription.empty()
            if idle:
                return

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def ingest(self, sensor_kind: str | SensorKind, payload: Any, wait: bool = False) -> UUID:
        """
        Normalize a sensor payload and queue it for correlation.

        Normalization errors are raised to the caller. With *wait*, returns
        only after the event has been correlated.
        """
        event = normalize(sensor_kind, payload)
        await self.submit(event, wait=wait)
        return event.event_id

    async def submit(self, event: Event, wait: bool = False) -> CorrelationOutcome | None:
        self.stats["events_received"] += 1
        future = asyncio.get_running_loop().create_future() if wait else None
        await self._queue_for(event.sensor).put((event, future))
        if future is not None:
            return await future
        return None

    async def process(self, event: Event) -> CorrelationOutcome:
        """Enrich and correlate one event."""
        enriched = await self.enrichment.enrich_event(event)
        outcome = await self.correlation.correlate(enriched)

        if outcome.action in (CorrelationAction.ATTACHED, CorrelationAction.MERGED) and (
            outcome.new_indicators or outcome.severity_raised
        ):
            self._spawn(self._guarded("redispatch", outcome.incident_id, self.redispatch(outcome.incident_id)))
        return outcome

    def _queue_for(self, sensor: SensorKind) -> asyncio.Queue:
        queue = self._queues.get(sensor)
        if queue is None:
            queue = asyncio.Queue(maxsize=self.settings.ingest.queue_size)
            self._queues[sensor] = queue
            self._workers[sensor] = asyncio.create_task(self._worker(sensor, queue))
        return queue

    async def _worker(self, sensor: SensorKind, queue: asyncio.Queue) -> None:
        log = logger.bind(sensor=sensor.value)
        while True:
            event, future = await queue.get()
            try:
                outcome = await self.process(event)
            except Exception as e:
                self.stats["events_failed"] += 1
                log.error("Event processing failed", event_id=str(event.event_id), error=repr(e), exc_info=True)
                if future is not None and not future.done():
                    future.set_exception(e)
            else:
                self.stats["events_correlated"] += 1
                if future is not None and not future.done():
                    future.set_result(outcome)
            finally:
                queue.task_done()

    def queue_depths(self) -> dict[str, int]:
        return {sensor.value: queue.qsize() for sensor, queue in self._queues.items()}

    # ------------------------------------------------------------------
    # Lifecycle notifications
    # ------------------------------------------------------------------

    async def _listen(self, subscription: Subscription) -> None:
        async for notification in subscription:
            try:
                self._on_notification(notification)
            finally:
                subscription.task_done()

    def _on_notification(self, notification: Notification) -> None:
        incident_id = notification.incident_id
        if notification.to_status == IncidentStatus.OPEN:
            self._spawn(self._guarded("triage", incident_id, self.triage(incident_id)))
        elif notification.to_status == IncidentStatus.TRIAGED:
            self._spawn(self._guarded("dispatch", incident_id, self.dispatch(incident_id)))

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _guarded(self, what: str, incident_id: UUID, coro: Awaitable[Any]) -> None:
        try:
            await coro
        except Exception as e:
            logger.error(
                "Background step failed",
                step=what,
                incident_id=str(incident_id),
                error=repr(e),
                exc_info=True,
            )

    async def triage(self, incident_id: UUID) -> Incident:
        """OPEN -> ENRICHING, retry failed enrichment, -> TRIAGED."""
        attempts = self.settings.correlation.store_retry_attempts

        def begin(incident: Incident) -> bool:
            if incident.status != IncidentStatus.OPEN or incident.merged_into is not None:
                return False
            return incident.advance(IncidentStatus.ENRICHING, actor="triage", reason="incident opened")

        incident = await mutate(self.store, incident_id, begin, attempts=attempts)
        if incident.status != IncidentStatus.ENRICHING:
            return incident

        missing = incident.unavailable_indicators
        results: dict[str, Any] = {}
        if missing:
            enriched = await self.enrichment.enrich(missing)
            results = {indicator.key: result for indicator, result in enriched.items()}
            logger.info(
                "Re-enriched indicators",
                incident_id=str(incident_id),
                indicators=sorted(results),
                recovered=sorted(k for k, r in results.items() if r.available),
            )

        def finish(incident: Incident) -> bool:
            if incident.status != IncidentStatus.ENRICHING or incident.merged_into is not None:
                return False
            incident.merge_enrichment(results)
            return incident.advance(IncidentStatus.TRIAGED, actor="triage", reason="enrichment complete")

        return await mutate(self.store, incident_id, finish, attempts=attempts)

    async def dispatch(self, incident_id: UUID) -> list[PlaybookRun]:
        """
        Trigger every auto playbook whose trigger matches the incident.

        A playbook that already ran on the incident is triggered only with
        the matching indicators no earlier run covered. Failed runs that
        still have attempts left are re-triggered with their own indicators.
        """
        incident = await self.store.get(incident_id)
        if incident.status not in _DISPATCH_STATUSES or incident.merged_into is not None:
            return []

        previous = self.executor.runs_for(incident.incident_id)
        runs = []
        for definition, indicators in self.registry.matching(incident):
            prior = [r for r in previous if r.playbook == definition.name]
            covered = frozenset().union(*(r.indicators for r in prior))

            batches = [r.indicators for r in prior if r.retry_eligible and r.indicators <= indicators]
            if indicators - covered:
                batches.append(indicators - covered)

            for batch in batches:
                runs.append(await self.executor.trigger(
                    incident.incident_id,
                    definition.name,
                    batch,
                    actor="orchestrator",
                ))
        if runs:
            logger.info(
                "Playbooks dispatched",
                incident_id=str(incident_id),
                playbooks=[r.playbook for r in runs],
            )
        return runs

    async def redispatch(self, incident_id: UUID) -> list[PlaybookRun]:
        """Re-evaluate triggers after new indicators or a severity raise; see dispatch()."""
        incident = await self.store.get(incident_id)
        if incident.status not in _DISPATCH_STATUSES:
            return []
        return await self.dispatch(incident_id)

    # ------------------------------------------------------------------
    # Operator actions and queries
    # ------------------------------------------------------------------

    async def get_incident(self, incident_id: UUID) -> Incident:
        return await self.store.get(incident_id)

    async def list_incidents(
        self,
        status: IncidentStatus | None = None,
        min_severity: Severity | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[Incident]:
        return await self.store.list(status=status, min_severity=min_severity, since=since, until=until)

    async def close_incident(self, incident_id: UUID, actor: str, reason: str | None = None) -> Incident:
        incident = await mutate(
            self.store,
            incident_id,
            lambda i: i.advance(IncidentStatus.CLOSED, actor=actor, reason=reason),
            attempts=self.settings.correlation.store_retry_attempts,
        )
        logger.info("Incident closed", incident_id=str(incident_id), actor=actor, reason=reason)
        return incident

    async def reopen_incident(self, incident_id: UUID, actor: str, reason: str | None = None) -> Incident:
        incident = await mutate(
            self.store,
            incident_id,
            lambda i: i.reopen(actor=actor, reason=reason),
            attempts=self.settings.correlation.store_retry_attempts,
        )
        logger.info("Incident reopened", incident_id=str(incident_id), actor=actor, reason=reason)
        return incident

    async def trigger_playbook(
        self,
        incident_id: UUID,
        playbook: str,
        indicators: Iterable[Indicator] | None = None,
        actor: str = "operator",
    ) -> PlaybookRun:
        """
        Manually run a playbook. Severity thresholds do not apply; without
        explicit indicators, those of the kinds the playbook handles are used.
        """
        definition = self.registry.get(playbook)
        incident = await self.store.resolve(incident_id)

        if indicators is None:
            selected = {i for i in incident.indicators if i.kind in definition.trigger.indicator_kinds}
            indicators = selected or incident.indicators
        return await self.executor.trigger(incident.incident_id, playbook, indicators, actor=actor)

    def cancel_run(self, run_id: UUID, actor: str) -> PlaybookRun:
        return self.executor.cancel(run_id, actor)

    def get_run(self, run_id: UUID) -> PlaybookRun:
        return self.executor.get(run_id)

    def runs_for(self, incident_id: UUID) -> list[PlaybookRun]:
        return self.executor.runs_for(incident_id)
