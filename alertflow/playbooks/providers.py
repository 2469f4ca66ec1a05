"""
Action providers - external systems that carry out playbook steps.

The executor owns timeouts and retries; providers make exactly one call
per invocation and report failure by raising ProviderError.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import httpx
import structlog
from pydantic import BaseModel, Field

from alertflow.config import Settings
from alertflow.errors import ProviderError

logger = structlog.get_logger()

OK_STATUSES = {"ok", "success", "succeeded", "applied"}


class ActionResult(BaseModel):
    """``{status, output}`` as returned by an action provider."""

    status: str = "ok"
    output: dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status.lower() in OK_STATUSES

    @property
    def applied(self) -> bool:
        """For verification queries: did the earlier action take effect."""
        return self.ok and bool(self.output.get("applied"))


class ActionProvider(ABC):
    name: str = "actions"

    @abstractmethod
    async def execute(self, action: str, parameters: dict[str, Any]) -> ActionResult:
        """Run one action. Raises ProviderError on failure."""


class HttpActionProvider(ActionProvider):
    """
    SOAR-style REST action endpoint.

    ``POST {base_url}/api/v1/actions/{action}`` with the parameters as JSON.
    Transport errors are not retried here; a retry of a non-idempotent
    action must go through the executor's verification path.
    """

    name = "http_actions"

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.AsyncClient(base_url=base_url, headers=headers)

    async def execute(self, action: str, parameters: dict[str, Any]) -> ActionResult:
        try:
            response = await self._client.post(f"/api/v1/actions/{action}", json=parameters)
        except httpx.TransportError as e:
            raise ProviderError(self.name, f"{action}: transport error: {e}") from e

        if response.status_code >= 400:
            raise ProviderError(self.name, f"{action}: HTTP {response.status_code}")
        try:
            return ActionResult.model_validate(response.json())
        except ValueError as e:
            raise ProviderError(self.name, f"{action}: invalid response: {e}") from e

    async def close(self) -> None:
        await self._client.aclose()


class DryRunActionProvider(ActionProvider):
    """Logs every action and reports success. Used when no action endpoint is configured."""

    name = "dry_run"

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def execute(self, action: str, parameters: dict[str, Any]) -> ActionResult:
        self.calls.append((action, parameters))
        logger.info("Dry-run action", action=action, parameters=parameters)
        return ActionResult(status="ok", output={"dry_run": True})


def build_action_provider(settings: Settings) -> ActionProvider:
    cfg = settings.playbooks
    if cfg.action_url:
        return HttpActionProvider(
            cfg.action_url,
            api_key=cfg.action_api_key.get_secret_value() if cfg.action_api_key else None,
        )
    logger.warning("No action endpoint configured, playbook actions run in dry-run mode")
    return DryRunActionProvider()
