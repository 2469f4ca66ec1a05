"""
Shared fixtures for the alertflow test suite.
"""

from __future__ import annotations

import pytest

from alertflow.config import Settings, get_test_settings
from alertflow.incidents.store import InMemoryIncidentStore
from alertflow.notifications import NotificationHub
from alertflow.playbooks.definitions import PlaybookRegistry

from fakes import FakeIntelProvider, ScriptedActionProvider, playbook


@pytest.fixture
def settings() -> Settings:
    return get_test_settings()


@pytest.fixture
def hub() -> NotificationHub:
    return NotificationHub()


@pytest.fixture
def store(hub) -> InMemoryIncidentStore:
    return InMemoryIncidentStore(hub)


@pytest.fixture
def intel() -> FakeIntelProvider:
    return FakeIntelProvider()


@pytest.fixture
def actions() -> ScriptedActionProvider:
    return ScriptedActionProvider()


@pytest.fixture
def registry() -> PlaybookRegistry:
    return PlaybookRegistry([
        playbook(
            "contain-ip",
            {"name": "intel-check", "action": "intel.lookup", "idempotent": True},
            {"name": "block-indicator", "action": "firewall.block", "for_each": ["ip"],
             "idempotent": True, "timeout_seconds": 0.05},
            {"name": "notify", "action": "notify.send", "verify_action": "notify.status",
             "timeout_seconds": 0.05},
            min_severity="high",
            indicator_kinds=["ip"],
        ),
    ])
