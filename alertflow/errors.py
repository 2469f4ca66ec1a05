"""
Exception taxonomy for the alert orchestration engine.

Normalization errors surface to the ingesting caller, provider errors are
retried or degraded locally, store conflicts are retried by the caller with a
fresh read, and playbook failures are recorded on the run and incident.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID


class AlertflowError(Exception):
    """Base class for all engine errors."""


class NormalizationError(AlertflowError):
    """A sensor payload could not be turned into an Event."""


class MalformedPayload(NormalizationError):
    """Required fields (timestamp, at least one indicator) are absent or invalid."""

    def __init__(self, sensor: str, reason: str):
        super().__init__(f"Malformed {sensor} payload: {reason}")
        self.sensor = sensor
        self.reason = reason


class UnsupportedSource(NormalizationError):
    """No normalizer is registered for the sensor kind."""

    def __init__(self, sensor: str):
        super().__init__(f"Unsupported sensor kind: {sensor!r}")
        self.sensor = sensor


class ProviderError(AlertflowError):
    """An external intel or action provider failed. Recoverable."""

    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.message = message


class ProviderTimeout(ProviderError):
    """An external call exceeded its timeout. Outcome is unknown."""

    def __init__(self, provider: str, timeout: float):
        super().__init__(provider, f"timed out after {timeout:g}s")
        self.timeout = timeout


class IncidentNotFound(AlertflowError):
    def __init__(self, incident_id: UUID):
        super().__init__(f"Incident {incident_id} not found")
        self.incident_id = incident_id


class StaleIncidentVersion(AlertflowError):
    """Compare-and-swap failed; re-read the incident and retry."""

    def __init__(self, incident_id: UUID, expected: int, actual: int):
        super().__init__(
            f"Incident {incident_id} version conflict: expected {expected}, found {actual}"
        )
        self.incident_id = incident_id
        self.expected = expected
        self.actual = actual


class IncidentContention(AlertflowError):
    """Version conflicts persisted past the bounded retry count."""

    def __init__(self, incident_id: UUID, attempts: int):
        super().__init__(f"Incident {incident_id} still contended after {attempts} attempts")
        self.incident_id = incident_id
        self.attempts = attempts


class InvalidStatusTransition(AlertflowError):
    def __init__(self, incident_id: UUID, current: Any, target: Any):
        super().__init__(f"Incident {incident_id} cannot move from {current} to {target}")
        self.incident_id = incident_id
        self.current = current
        self.target = target


class UnknownPlaybook(AlertflowError):
    """Configuration error: the named playbook is not defined. Never retried."""

    def __init__(self, name: str):
        super().__init__(f"Unknown playbook: {name!r}")
        self.name = name


class PlaybookStepFailed(AlertflowError):
    """A step exhausted its retry budget. Terminal for the run."""

    def __init__(self, step: str, attempts: int, cause: str):
        super().__init__(f"Step {step!r} failed after {attempts} attempt(s): {cause}")
        self.step = step
        self.attempts = attempts
        self.cause = cause


class RunNotFound(AlertflowError):
    def __init__(self, run_id: UUID):
        super().__init__(f"Playbook run {run_id} not found")
        self.run_id = run_id
