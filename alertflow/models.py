"""
Core data models for alertflow.

These models define the canonical schema for indicators, normalized events,
enrichment results, incidents, and playbook runs used throughout the engine.
"""

from __future__ import annotations

import ipaddress
import string
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from alertflow.errors import InvalidStatusTransition


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


class Severity(str, Enum):
    """Standardized severity levels across all sensor kinds."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @classmethod
    def from_numeric(cls, value: int) -> "Severity":
        """Convert numeric severity (1-10) to enum."""
        if value <= 3:
            return cls.LOW
        elif value <= 5:
            return cls.MEDIUM
        elif value <= 7:
            return cls.HIGH
        else:
            return cls.CRITICAL

    @classmethod
    def highest(cls, *values: "Severity") -> "Severity":
        return max(values, key=lambda s: s.rank)


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class SensorKind(str, Enum):
    """Upstream sensors whose payloads the normalizer understands."""

    SURICATA = "suricata"
    WAZUH = "wazuh"
    ZEEK = "zeek"
    YARA = "yara"
    VELOCIRAPTOR = "velociraptor"
    CANONICAL = "canonical"


class IndicatorKind(str, Enum):
    """Observable types used as correlation and enrichment keys."""

    IP = "ip"
    DOMAIN = "domain"
    HASH = "hash"
    USER = "user"
    HOST = "host"


_HASH_LENGTHS = {32, 40, 64, 128}


def canonical_indicator_value(kind: IndicatorKind, value: str) -> str:
    """Canonical form of an indicator value, raising ValueError if invalid."""
    v = value.strip()
    if kind == IndicatorKind.IP:
        return str(ipaddress.ip_address(v))
    if kind == IndicatorKind.DOMAIN:
        v = v.lower().rstrip(".")
        if not v or "." not in v or any(c.isspace() for c in v):
            raise ValueError(f"invalid domain: {value!r}")
        return v
    if kind == IndicatorKind.HASH:
        v = v.lower()
        if len(v) not in _HASH_LENGTHS or any(c not in string.hexdigits for c in v):
            raise ValueError(f"invalid hash: {value!r}")
        return v
    v = v.lower()
    if not v:
        raise ValueError(f"empty {kind.value} indicator")
    return v


class Indicator(BaseModel):
    """
    Typed observable (kind + value).

    Equality and hashing are structural, so the same observable reported by
    two sensors compares equal once canonicalised.
    """

    model_config = ConfigDict(frozen=True)

    kind: IndicatorKind
    value: str

    @model_validator(mode="before")
    @classmethod
    def canonicalize(cls, data: Any) -> Any:
        if isinstance(data, dict) and "kind" in data and isinstance(data.get("value"), str):
            data = dict(data)
            data["value"] = canonical_indicator_value(IndicatorKind(data["kind"]), data["value"])
        return data

    @property
    def key(self) -> str:
        return f"{self.kind.value}:{self.value}"

    def __str__(self) -> str:
        return self.key


class Event(BaseModel):
    """
    Normalized security event - one observation from one sensor.

    Immutable once created. All sensor payloads are normalized into this
    shape before enrichment and correlation.
    """

    model_config = ConfigDict(frozen=True)

    event_id: UUID = Field(default_factory=uuid4)
    sensor: SensorKind
    timestamp: datetime
    severity: Severity = Severity.MEDIUM
    indicators: frozenset[Indicator]
    title: str | None = None
    raw_ref: str | None = Field(None, description="Sensor-native reference, e.g. flow id or alert id")
    raw_data: dict[str, Any] = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def to_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    @field_validator("indicators")
    @classmethod
    def require_indicator(cls, v: frozenset[Indicator]) -> frozenset[Indicator]:
        if not v:
            raise ValueError("an event needs at least one indicator")
        return v


class IntelStatus(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    LOOKUP_FAILED = "lookup_failed"


class IntelRecord(BaseModel):
    """What a threat-intel provider knows about an indicator."""

    reputation: int = Field(ge=0, le=100, description="0 benign .. 100 known malicious")
    campaign_tag: str | None = None
    first_seen: datetime | None = None
    last_seen: datetime | None = None


class AssetContext(BaseModel):
    """Asset inventory context for host and ip indicators."""

    hostname: str | None = None
    criticality: Severity = Severity.MEDIUM
    owner: str | None = None


class IntelResult(BaseModel):
    """Enrichment outcome for one indicator."""

    model_config = ConfigDict(frozen=True)

    status: IntelStatus
    reputation: int | None = None
    campaign_tag: str | None = None
    first_seen: datetime | None = None
    last_seen: datetime | None = None
    asset: AssetContext | None = None
    error: str | None = None
    looked_up_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def found(cls, record: IntelRecord, asset: AssetContext | None = None) -> "IntelResult":
        return cls(
            status=IntelStatus.FOUND,
            reputation=record.reputation,
            campaign_tag=record.campaign_tag,
            first_seen=record.first_seen,
            last_seen=record.last_seen,
            asset=asset,
        )

    @classmethod
    def not_found(cls, asset: AssetContext | None = None) -> "IntelResult":
        return cls(status=IntelStatus.NOT_FOUND, asset=asset)

    @classmethod
    def failed(cls, error: str) -> "IntelResult":
        return cls(status=IntelStatus.LOOKUP_FAILED, error=error)

    @property
    def available(self) -> bool:
        return self.status != IntelStatus.LOOKUP_FAILED


class IncidentStatus(str, Enum):
    """Lifecycle of an incident. Advances forward only, except reopen."""

    OPEN = "open"
    ENRICHING = "enriching"
    TRIAGED = "triaged"
    RESPONDING = "responding"
    CLOSED = "closed"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]


_STATUS_RANK = {
    IncidentStatus.OPEN: 0,
    IncidentStatus.ENRICHING: 1,
    IncidentStatus.TRIAGED: 2,
    IncidentStatus.RESPONDING: 3,
    IncidentStatus.CLOSED: 4,
}


class HistoryKind(str, Enum):
    STATUS_CHANGED = "status_changed"
    SEVERITY_RAISED = "severity_raised"
    MERGED_FROM = "merged_from"
    MERGED_INTO = "merged_into"
    PLAYBOOK_RUN = "playbook_run"


class HistoryEntry(BaseModel):
    """One append-only record in an incident's history."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=utcnow)
    kind: HistoryKind
    from_status: IncidentStatus | None = None
    to_status: IncidentStatus | None = None
    actor: str = "system"
    reason: str | None = None
    detail: dict[str, Any] = Field(default_factory=dict)


class Incident(BaseModel):
    """
    Correlated group of events believed to represent one security condition.

    Membership is changed only by the correlation engine; status only by the
    playbook executor, triage, and operator actions. Every change goes
    through the incident store's versioned commit.
    """

    incident_id: UUID = Field(default_factory=uuid4)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    status: IncidentStatus = IncidentStatus.OPEN
    severity: Severity

    # Membership
    event_ids: set[UUID] = Field(default_factory=set)
    indicators: set[Indicator] = Field(default_factory=set)

    # Correlation window span
    first_event_at: datetime
    last_event_at: datetime

    # Indicator key -> latest usable enrichment
    enrichment: dict[str, IntelResult] = Field(default_factory=dict)

    history: list[HistoryEntry] = Field(default_factory=list)
    merged_into: UUID | None = None
    version: int = 0

    @classmethod
    def from_event(cls, event: Event, enrichment: dict[Indicator, IntelResult]) -> "Incident":
        incident = cls(
            severity=event.severity,
            event_ids={event.event_id},
            indicators=set(event.indicators),
            first_event_at=event.timestamp,
            last_event_at=event.timestamp,
        )
        incident.merge_enrichment({i.key: r for i, r in enrichment.items()})
        return incident

    @property
    def is_open(self) -> bool:
        return self.status != IncidentStatus.CLOSED

    @property
    def sort_key(self) -> tuple[datetime, UUID]:
        """Age ordering used to pick the surviving incident of a merge."""
        return (self.created_at, self.incident_id)

    @property
    def unavailable_indicators(self) -> set[Indicator]:
        return {
            i for i in self.indicators
            if i.key not in self.enrichment or not self.enrichment[i.key].available
        }

    def in_window(self, timestamp: datetime, window: timedelta) -> bool:
        """True when *timestamp* lies strictly within *window* of this incident's span."""
        return self.first_event_at - window < timestamp < self.last_event_at + window

    def record(
        self,
        kind: HistoryKind,
        *,
        actor: str = "system",
        reason: str | None = None,
        from_status: IncidentStatus | None = None,
        to_status: IncidentStatus | None = None,
        **detail: Any,
    ) -> HistoryEntry:
        entry = HistoryEntry(
            kind=kind,
            actor=actor,
            reason=reason,
            from_status=from_status,
            to_status=to_status,
            detail=detail,
        )
        self.history.append(entry)
        self.updated_at = entry.timestamp
        return entry

    def advance(self, target: IncidentStatus, *, actor: str = "system", reason: str | None = None) -> bool:
        """
        Move status forward to *target*.

        Returns False when already there. Backward moves, and any move on an
        incident that was merged away, raise InvalidStatusTransition.
        """
        if self.merged_into is not None:
            raise InvalidStatusTransition(self.incident_id, self.status, target)
        if target == self.status:
            return False
        if target.rank < self.status.rank:
            raise InvalidStatusTransition(self.incident_id, self.status, target)

        previous = self.status
        self.status = target
        self.record(
            HistoryKind.STATUS_CHANGED,
            actor=actor,
            reason=reason,
            from_status=previous,
            to_status=target,
        )
        return True

    def reopen(self, *, actor: str, reason: str | None = None) -> None:
        """Explicit operator action: CLOSED -> OPEN."""
        if self.status != IncidentStatus.CLOSED or self.merged_into is not None:
            raise InvalidStatusTransition(self.incident_id, self.status, IncidentStatus.OPEN)
        self.status = IncidentStatus.OPEN
        self.record(
            HistoryKind.STATUS_CHANGED,
            actor=actor,
            reason=reason or "reopened",
            from_status=IncidentStatus.CLOSED,
            to_status=IncidentStatus.OPEN,
        )

    def raise_severity(self, severity: Severity, *, cause: str) -> bool:
        if severity.rank <= self.severity.rank:
            return False
        previous = self.severity
        self.severity = severity
        self.record(
            HistoryKind.SEVERITY_RAISED,
            reason=cause,
            previous=previous.value,
            current=severity.value,
        )
        return True

    def merge_enrichment(self, results: dict[str, IntelResult]) -> None:
        """Take new results, but never replace usable intel with a failed lookup."""
        for key, result in results.items():
            current = self.enrichment.get(key)
            if current is None or result.available or not current.available:
                self.enrichment[key] = result

    def absorb(self, event: Event, enrichment: dict[Indicator, IntelResult]) -> None:
        """Attach one event: union indicators, extend the window, raise severity."""
        self.event_ids.add(event.event_id)
        self.indicators |= event.indicators
        self.first_event_at = min(self.first_event_at, event.timestamp)
        self.last_event_at = max(self.last_event_at, event.timestamp)
        self.merge_enrichment({i.key: r for i, r in enrichment.items()})
        self.raise_severity(event.severity, cause=f"event {event.event_id}")
        self.updated_at = utcnow()

    def merge_from(self, other: "Incident") -> None:
        """
        Absorb every member of *other* and close it.

        Both sides get a history entry; *other* keeps its history but no
        longer owns any events.
        """
        self.event_ids |= other.event_ids
        self.indicators |= other.indicators
        self.first_event_at = min(self.first_event_at, other.first_event_at)
        self.last_event_at = max(self.last_event_at, other.last_event_at)
        self.merge_enrichment(other.enrichment)
        self.raise_severity(other.severity, cause=f"merge of {other.incident_id}")
        self.record(
            HistoryKind.MERGED_FROM,
            reason="indicator overlap",
            source=str(other.incident_id),
            events=len(other.event_ids),
        )

        previous = other.status
        other.event_ids = set()
        other.indicators = set()
        other.status = IncidentStatus.CLOSED
        other.merged_into = self.incident_id
        other.record(
            HistoryKind.MERGED_INTO,
            reason="indicator overlap",
            from_status=previous,
            to_status=IncidentStatus.CLOSED,
            target=str(self.incident_id),
        )


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    RETRYING = "retrying"
    CANCELLED = "cancelled"


class StepStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


class StepResult(BaseModel):
    """Outcome of one playbook step (or one fan-out action of it)."""

    step: str
    action: str
    status: StepStatus
    indicator: Indicator | None = None
    attempts: int = 0
    idempotent_retried: bool = False
    verified: bool = False
    output: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


class PlaybookRun(BaseModel):
    """
    One execution of a named playbook against an incident.

    Identified by (incident_id, playbook, indicators) so that an identical
    trigger maps back to the same run.
    """

    run_id: UUID = Field(default_factory=uuid4)
    playbook: str
    incident_id: UUID
    indicators: frozenset[Indicator]
    status: RunStatus = RunStatus.PENDING
    steps: list[StepResult] = Field(default_factory=list)
    attempts: int = 0
    max_attempts: int = 3
    error: str | None = None
    cancel_requested_by: str | None = None
    version: int = 0

    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def key(self) -> tuple[UUID, str, frozenset[Indicator]]:
        return (self.incident_id, self.playbook, self.indicators)

    @property
    def is_active(self) -> bool:
        return self.status in (RunStatus.PENDING, RunStatus.RUNNING, RunStatus.RETRYING)

    @property
    def retry_eligible(self) -> bool:
        return self.status == RunStatus.FAILED and self.attempts < self.max_attempts
