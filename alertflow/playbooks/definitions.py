"""
Playbook definitions - named, ordered sequences of response steps.

Definitions are loaded from YAML (``config/playbooks.yaml`` by default):

    playbooks:
      - name: contain-malicious-ip
        trigger:
          min_severity: high
          indicator_kinds: [ip]
          min_reputation: 70
        steps:
          - name: intel-check
            action: intel.lookup
            idempotent: true
          - name: block-indicator
            action: firewall.block
            for_each: [ip]
            idempotent: true
          - name: notify
            action: notify.slack
            verify_action: notify.delivery_status
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from typing import Any

import structlog
from pydantic import BaseModel, Field, field_validator

from alertflow.config import Settings
from alertflow.errors import UnknownPlaybook
from alertflow.models import Incident, Indicator, IndicatorKind, Severity

logger = structlog.get_logger()


class PlaybookStep(BaseModel):
    """One response action within a playbook."""

    name: str
    action: str
    parameters: dict[str, Any] = Field(default_factory=dict)

    # Safe to repeat without checking whether a timed-out attempt applied
    idempotent: bool = False
    # Query run before retrying a non-idempotent step whose outcome is unknown
    verify_action: str | None = None

    # Fan out one action per triggering indicator of these kinds, in parallel
    for_each: list[IndicatorKind] | None = None

    timeout_seconds: float | None = None
    max_attempts: int | None = Field(None, ge=1)


class PlaybookTrigger(BaseModel):
    """When a playbook is dispatched automatically, and with which indicators."""

    auto: bool = True
    min_severity: Severity = Severity.HIGH
    indicator_kinds: list[IndicatorKind] = Field(default_factory=lambda: list(IndicatorKind))
    min_reputation: int | None = Field(None, ge=0, le=100)

    def select(self, incident: Incident) -> frozenset[Indicator]:
        """Indicators of *incident* this trigger fires on; empty if it does not fire."""
        if incident.severity.rank < self.min_severity.rank:
            return frozenset()

        selected = set()
        for indicator in incident.indicators:
            if indicator.kind not in self.indicator_kinds:
                continue
            if self.min_reputation is not None:
                intel = incident.enrichment.get(indicator.key)
                if intel is None or intel.reputation is None or intel.reputation < self.min_reputation:
                    continue
            selected.add(indicator)
        return frozenset(selected)


class PlaybookDefinition(BaseModel):
    name: str
    description: str = ""
    trigger: PlaybookTrigger = Field(default_factory=PlaybookTrigger)
    steps: list[PlaybookStep] = Field(min_length=1)

    @field_validator("steps")
    @classmethod
    def unique_step_names(cls, v: list[PlaybookStep]) -> list[PlaybookStep]:
        names = [s.name for s in v]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise ValueError(f"duplicate step names: {sorted(duplicates)}")
        return v


class PlaybookRegistry:
    """Playbook definitions by name."""

    def __init__(self, definitions: Iterable[PlaybookDefinition] = ()):
        self._definitions: dict[str, PlaybookDefinition] = {}
        for definition in definitions:
            self.register(definition)

    @classmethod
    def from_config(cls, data: dict[str, Any]) -> "PlaybookRegistry":
        return cls(PlaybookDefinition.model_validate(p) for p in data.get("playbooks", []))

    @classmethod
    def from_settings(cls, settings: Settings) -> "PlaybookRegistry":
        registry = cls.from_config(settings.load_yaml_config(settings.playbooks.definitions))
        logger.info("Playbooks loaded", playbooks=registry.names())
        return registry

    def register(self, definition: PlaybookDefinition) -> None:
        self._definitions[definition.name] = definition

    def get(self, name: str) -> PlaybookDefinition:
        try:
            return self._definitions[name]
        except KeyError:
            raise UnknownPlaybook(name) from None

    def names(self) -> list[str]:
        return sorted(self._definitions)

    def matching(self, incident: Incident) -> list[tuple[PlaybookDefinition, frozenset[Indicator]]]:
        """Auto-dispatch playbooks whose trigger fires on *incident*."""
        matches = []
        for name in self.names():
            definition = self._definitions[name]
            if not definition.trigger.auto:
                continue
            indicators = definition.trigger.select(incident)
            if indicators:
                matches.append((definition, indicators))
        return matches

    def __iter__(self) -> Iterator[PlaybookDefinition]:
        return iter(self._definitions.values())

    def __len__(self) -> int:
        return len(self._definitions)
