"""
Tests for settings, bundled configuration files and provider wiring.
"""

from pathlib import Path

import httpx
import pytest
from pydantic import ValidationError

from alertflow.config import CorrelationSettings, Settings
from alertflow.errors import ProviderError
from alertflow.models import IntelStatus
from alertflow.pipeline.enrichment import StaticIntelProvider, build_enrichment_client
from alertflow.playbooks.definitions import PlaybookRegistry
from alertflow.playbooks.providers import DryRunActionProvider, HttpActionProvider, build_action_provider

from fakes import ip

CONFIG_DIR = Path(__file__).resolve().parent.parent / "config"


class TestSettings:
    """Defaults and validation."""

    def test_correlation_defaults(self):
        settings = Settings()
        assert settings.correlation.window_minutes == 30
        assert settings.correlation.min_shared_indicators == 1

    def test_invalid_environment(self):
        with pytest.raises(ValidationError):
            Settings(environment="qa")

    def test_min_shared_indicators_at_least_one(self):
        with pytest.raises(ValidationError):
            CorrelationSettings(min_shared_indicators=0)

    def test_missing_yaml_is_empty(self, tmp_path):
        settings = Settings(config_dir=tmp_path)
        assert settings.load_yaml_config("nothing-here") == {}


class TestBundledConfig:
    """Files under config/ load into working components."""

    def test_playbooks_load(self):
        registry = PlaybookRegistry.from_settings(Settings(config_dir=CONFIG_DIR))

        assert "contain-malicious-ip" in registry.names()
        assert registry.get("disable-account").trigger.auto is False
        block = registry.get("contain-malicious-ip").steps[1]
        assert block.for_each is not None and block.idempotent

    @pytest.mark.asyncio
    async def test_static_intel_feed(self):
        client = build_enrichment_client(Settings(config_dir=CONFIG_DIR))
        assert isinstance(client.intel, StaticIntelProvider)

        result = await client.lookup(ip("203.0.113.66"))
        assert result.status == IntelStatus.FOUND
        assert result.reputation == 92


class TestActionProviders:
    """Action provider selection and the HTTP provider."""

    def test_dry_run_without_endpoint(self):
        assert isinstance(build_action_provider(Settings()), DryRunActionProvider)

    def test_http_with_endpoint(self):
        settings = Settings()
        settings.playbooks.action_url = "http://soar.test"
        assert isinstance(build_action_provider(settings), HttpActionProvider)

    @pytest.mark.asyncio
    async def test_http_provider(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/api/v1/actions/firewall.block":
                return httpx.Response(200, json={"status": "applied", "output": {"rule_id": 7}})
            return httpx.Response(503)

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://soar.test")
        provider = HttpActionProvider("http://soar.test", client=http)

        result = await provider.execute("firewall.block", {"address": "203.0.113.66"})
        assert result.ok
        assert result.output == {"rule_id": 7}

        with pytest.raises(ProviderError, match="HTTP 503"):
            await provider.execute("notify.slack", {})

        await provider.close()
