"""
Playbook Executor - Run response playbooks against incidents.

Guarantees:
- Idempotent trigger: a run is identified by (incident, playbook, triggering
  indicators); re-triggering an identical run that is pending, running or
  succeeded returns it unchanged. Only a FAILED run with attempts left is
  executed again.
- No two runs of the same playbook execute concurrently for one incident.
- Steps run in order; a step that exhausts its retries fails the run and
  the remaining steps are skipped.
- A timed-out attempt has an unknown outcome. Idempotent steps are simply
  retried; other steps are retried only after their verification query
  reports the action was not applied.
- Cancellation is cooperative and checked between steps.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from typing import Any
from uuid import UUID

import structlog

from alertflow.config import Settings
from alertflow.errors import (
    AlertflowError,
    PlaybookStepFailed,
    ProviderError,
    ProviderTimeout,
    RunNotFound,
)
from alertflow.incidents.store import IncidentStore, mutate
from alertflow.models import (
    HistoryKind,
    Incident,
    IncidentStatus,
    Indicator,
    PlaybookRun,
    RunStatus,
    StepResult,
    StepStatus,
    utcnow,
)
from alertflow.notifications import Notification, NotificationHub
from alertflow.playbooks.definitions import PlaybookDefinition, PlaybookRegistry, PlaybookStep
from alertflow.playbooks.providers import ActionProvider
from alertflow.utils.locks import KeyedLock
from alertflow.utils.retry import backoff_delay

logger = structlog.get_logger()

RunKey = tuple[UUID, str, frozenset[Indicator]]


class CancellationToken:
    """Set by an operator, observed by the executor at step boundaries."""

    def __init__(self) -> None:
        self.requested_by: str | None = None

    @property
    def cancelled(self) -> bool:
        return self.requested_by is not None

    def cancel(self, actor: str) -> None:
        if self.requested_by is None:
            self.requested_by = actor


class _TemplateContext(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def render_parameters(parameters: dict[str, Any], context: dict[str, Any]) -> dict[str, Any]:
    """Fill ``{placeholders}`` in string parameters; unknown names are left as-is."""
    values = _TemplateContext({k: v for k, v in context.items() if not isinstance(v, (dict, list))})
    rendered = {}
    for key, value in parameters.items():
        if isinstance(value, str):
            try:
                value = value.format_map(values)
            except (ValueError, IndexError, AttributeError):
                pass
        rendered[key] = value
    return {**rendered, **context}


class PlaybookExecutor:
    """Executes playbook runs against an action provider."""

    def __init__(
        self,
        settings: Settings,
        registry: PlaybookRegistry,
        provider: ActionProvider,
        store: IncidentStore,
        hub: NotificationHub | None = None,
    ):
        self.settings = settings
        self.registry = registry
        self.provider = provider
        self.store = store
        self.hub = hub

        self._runs: dict[UUID, PlaybookRun] = {}
        self._by_key: dict[RunKey, UUID] = {}
        self._tokens: dict[UUID, CancellationToken] = {}
        self._tasks: dict[UUID, asyncio.Task] = {}

        # Guards only lookup-or-register of a run
        self._register_lock = asyncio.Lock()
        # One executing run per (incident, playbook)
        self._run_locks = KeyedLock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def trigger(
        self,
        incident_id: UUID,
        playbook: str,
        indicators: Iterable[Indicator],
        actor: str = "system",
    ) -> PlaybookRun:
        """
        Look up or create the run for this trigger and schedule it.

        Raises:
            UnknownPlaybook: *playbook* is not defined.
            IncidentNotFound: *incident_id* does not exist.
        """
        definition = self.registry.get(playbook)
        await self.store.get(incident_id)

        indicators = frozenset(indicators)
        key: RunKey = (incident_id, playbook, indicators)

        async with self._register_lock:
            run_id = self._by_key.get(key)
            run = self._runs.get(run_id) if run_id is not None else None

            if run is not None and not run.retry_eligible:
                logger.debug(
                    "Playbook trigger already satisfied",
                    run_id=str(run.run_id),
                    playbook=playbook,
                    status=run.status.value,
                )
                return run.model_copy(deep=True)

            if run is None:
                run = PlaybookRun(
                    playbook=playbook,
                    incident_id=incident_id,
                    indicators=indicators,
                    max_attempts=self.settings.playbooks.max_run_attempts,
                )
                self._runs[run.run_id] = run
                self._by_key[key] = run.run_id
            else:
                run.status = RunStatus.RETRYING

            run.attempts += 1
            run.version += 1
            token = CancellationToken()
            self._tokens[run.run_id] = token
            self._tasks[run.run_id] = asyncio.create_task(self._execute(run, definition, token))
            snapshot = run.model_copy(deep=True)

        logger.info(
            "Playbook triggered",
            run_id=str(snapshot.run_id),
            playbook=playbook,
            incident_id=str(incident_id),
            indicators=sorted(i.key for i in indicators),
            attempt=snapshot.attempts,
            actor=actor,
        )
        return snapshot

    def get(self, run_id: UUID) -> PlaybookRun:
        run = self._runs.get(run_id)
        if run is None:
            raise RunNotFound(run_id)
        return run.model_copy(deep=True)

    def runs_for(self, incident_id: UUID) -> list[PlaybookRun]:
        runs = [r for r in self._runs.values() if r.incident_id == incident_id]
        return [r.model_copy(deep=True) for r in sorted(runs, key=lambda r: r.created_at)]

    async def wait(self, run_id: UUID, timeout: float | None = None) -> PlaybookRun:
        """Wait for the run's current execution to finish."""
        if run_id not in self._runs:
            raise RunNotFound(run_id)
        task = self._tasks.get(run_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        return self.get(run_id)

    def cancel(self, run_id: UUID, actor: str) -> PlaybookRun:
        """
        Request cancellation. The step in flight finishes (or times out)
        before the run stops.
        """
        run = self._runs.get(run_id)
        if run is None:
            raise RunNotFound(run_id)
        if run.is_active:
            self._tokens[run_id].cancel(actor)
            run.cancel_requested_by = actor
            run.version += 1
            logger.info("Playbook cancellation requested", run_id=str(run_id), actor=actor)
        return run.model_copy(deep=True)

    def pending(self) -> list[asyncio.Task]:
        return [t for t in self._tasks.values() if not t.done()]

    async def shutdown(self) -> None:
        for run_id, run in self._runs.items():
            if run.is_active:
                self._tokens[run_id].cancel("shutdown")
        pending = self.pending()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _execute(self, run: PlaybookRun, definition: PlaybookDefinition, token: CancellationToken) -> None:
        log = logger.bind(run_id=str(run.run_id), playbook=run.playbook, incident_id=str(run.incident_id))

        try:
            async with self._run_locks.hold([(run.incident_id, run.playbook)]):
                if token.cancelled:
                    self._finish(run, RunStatus.CANCELLED, f"cancelled by {token.requested_by} before start")
                else:
                    run.status = RunStatus.RUNNING
                    run.started_at = utcnow()
                    run.finished_at = None
                    run.error = None
                    run.steps = []
                    run.version += 1
                    log.info("Playbook run started", attempt=run.attempts)

                    await self._record_on_incident(run, started=True)
                    status, error = await self._run_steps(run, definition, token)
                    self._finish(run, status, error)
        except Exception as e:
            log.error("Playbook run crashed", error=repr(e), exc_info=True)
            self._finish(run, RunStatus.FAILED, repr(e))

        log_method = log.warning if run.status == RunStatus.FAILED else log.info
        log_method(
            "Playbook run finished",
            status=run.status.value,
            attempt=run.attempts,
            error=run.error,
        )

        await self._record_on_incident(run, started=False)
        if self.hub is not None:
            self.hub.publish(Notification.run_completed(
                run.incident_id,
                run.run_id,
                run.playbook,
                run.status,
                attempt=run.attempts,
                error=run.error,
            ))

    async def _run_steps(
        self,
        run: PlaybookRun,
        definition: PlaybookDefinition,
        token: CancellationToken,
    ) -> tuple[RunStatus, str | None]:
        for index, step in enumerate(definition.steps):
            if token.cancelled:
                run.steps.extend(
                    StepResult(step=s.name, action=s.action, status=StepStatus.CANCELLED)
                    for s in definition.steps[index:]
                )
                return RunStatus.CANCELLED, f"cancelled by {token.requested_by}"

            results = await self._run_step(run, step)
            run.steps.extend(results)
            run.version += 1

            failed = [r for r in results if r.status == StepStatus.FAILED]
            if failed:
                run.steps.extend(
                    StepResult(step=s.name, action=s.action, status=StepStatus.SKIPPED)
                    for s in definition.steps[index + 1:]
                )
                error = PlaybookStepFailed(step.name, failed[0].attempts, failed[0].error or "unknown")
                return RunStatus.FAILED, str(error)

        return RunStatus.SUCCEEDED, None

    async def _run_step(self, run: PlaybookRun, step: PlaybookStep) -> list[StepResult]:
        context: dict[str, Any] = {
            "incident_id": str(run.incident_id),
            "run_id": str(run.run_id),
            "playbook": run.playbook,
            "indicators": sorted(i.key for i in run.indicators),
        }

        if not step.for_each:
            return [await self._run_action(step, render_parameters(step.parameters, context), None)]

        targets = sorted((i for i in run.indicators if i.kind in step.for_each), key=lambda i: i.key)
        if not targets:
            return [StepResult(
                step=step.name,
                action=step.action,
                status=StepStatus.SKIPPED,
                error="no matching indicators",
            )]

        calls = []
        for indicator in targets:
            params = render_parameters(step.parameters, {
                **context,
                "indicator": indicator.key,
                "indicator_kind": indicator.kind.value,
                "indicator_value": indicator.value,
            })
            calls.append(self._run_action(step, params, indicator))
        return list(await asyncio.gather(*calls))

    async def _run_action(
        self,
        step: PlaybookStep,
        params: dict[str, Any],
        indicator: Indicator | None,
    ) -> StepResult:
        cfg = self.settings.playbooks
        timeout = step.timeout_seconds or cfg.step_timeout_seconds
        max_attempts = step.max_attempts or cfg.max_step_attempts
        log = logger.bind(step=step.name, action=step.action, indicator=indicator.key if indicator else None)

        result = StepResult(
            step=step.name,
            action=step.action,
            status=StepStatus.FAILED,
            indicator=indicator,
            started_at=utcnow(),
        )
        uncertain = False
        last_error: str | None = None

        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                if uncertain and step.idempotent:
                    result.idempotent_retried = True
                elif uncertain:
                    applied = await self._verify(step, params, timeout)
                    if applied is None:
                        last_error = f"{last_error}; outcome unknown and could not be verified"
                        break
                    result.verified = True
                    if applied:
                        log.info("Verified earlier attempt was applied", attempt=attempt - 1)
                        result.status = StepStatus.SUCCEEDED
                        result.output = {"verified_applied": True}
                        break

                await asyncio.sleep(backoff_delay(
                    attempt - 1,
                    base=cfg.backoff_base_seconds,
                    factor=cfg.backoff_factor,
                    maximum=cfg.backoff_max_seconds,
                    jitter=cfg.backoff_jitter,
                ))

            result.attempts = attempt
            try:
                outcome = await asyncio.wait_for(self.provider.execute(step.action, params), timeout=timeout)
            except asyncio.TimeoutError:
                uncertain = True
                last_error = str(ProviderTimeout(self.provider.name, timeout))
                log.warning("Step attempt timed out", attempt=attempt, timeout=timeout)
                continue
            except ProviderError as e:
                uncertain = False
                last_error = str(e)
                log.warning("Step attempt failed", attempt=attempt, error=last_error)
                continue
            except Exception as e:
                # Unknown failure mode: the action may or may not have applied
                uncertain = True
                last_error = repr(e)
                log.error("Step attempt raised unexpectedly", attempt=attempt, error=last_error)
                continue

            if not outcome.ok:
                uncertain = False
                last_error = f"{step.action} returned status {outcome.status!r}"
                log.warning("Step attempt rejected", attempt=attempt, status=outcome.status)
                continue

            result.status = StepStatus.SUCCEEDED
            result.output = outcome.output
            break

        if result.status != StepStatus.SUCCEEDED:
            result.error = last_error
        result.finished_at = utcnow()
        return result

    async def _verify(self, step: PlaybookStep, params: dict[str, Any], timeout: float) -> bool | None:
        """True/False if the provider confirms whether the action applied, None if unknown."""
        if not step.verify_action:
            return None
        try:
            outcome = await asyncio.wait_for(
                self.provider.execute(step.verify_action, params),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, ProviderError) as e:
            logger.warning("Verification failed", step=step.name, verify_action=step.verify_action, error=repr(e))
            return None
        if not outcome.ok:
            return None
        return outcome.applied

    def _finish(self, run: PlaybookRun, status: RunStatus, error: str | None) -> None:
        run.status = status
        run.error = error
        run.finished_at = utcnow()
        run.version += 1

    async def _record_on_incident(self, run: PlaybookRun, started: bool) -> None:
        """Append the run to the incident history; a started run moves it to RESPONDING."""
        actor = f"playbook:{run.playbook}"

        def change(incident: Incident) -> None:
            if started and incident.is_open and incident.status.rank < IncidentStatus.RESPONDING.rank:
                incident.advance(IncidentStatus.RESPONDING, actor=actor, reason=f"run {run.run_id} started")
            incident.record(
                HistoryKind.PLAYBOOK_RUN,
                actor=actor,
                reason=run.error,
                run_id=str(run.run_id),
                playbook=run.playbook,
                status=run.status.value,
                attempt=run.attempts,
            )

        try:
            incident = await self.store.resolve(run.incident_id)
            await mutate(
                self.store,
                incident.incident_id,
                change,
                attempts=self.settings.correlation.store_retry_attempts,
            )
        except AlertflowError as e:
            logger.error(
                "Could not record playbook run on incident",
                run_id=str(run.run_id),
                incident_id=str(run.incident_id),
                error=str(e),
            )
