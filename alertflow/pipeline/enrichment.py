"""
Enrichment Client - Add threat-intel and asset context to indicators.

Enrichment sources:
- Threat intelligence (MISP / OpenCTI style REST lookup)
- Asset inventory (CMDB) for host and ip indicators

Every lookup goes through an explicit bounded TTL cache with single-flight
coalescing: concurrent requests for one indicator share one provider call.
A provider outage yields a "lookup failed" marker for that indicator only.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx
import structlog

from alertflow.config import Settings
from alertflow.errors import ProviderError, ProviderTimeout
from alertflow.models import (
    AssetContext,
    Event,
    Indicator,
    IndicatorKind,
    IntelRecord,
    IntelResult,
    IntelStatus,
)
from alertflow.utils.retry import retry_with_backoff

logger = structlog.get_logger()

CacheKey = tuple[str, str]


@dataclass(frozen=True)
class EnrichedEvent:
    """An Event plus the enrichment result for each of its indicators."""

    event: Event
    enrichment: dict[Indicator, IntelResult]

    @property
    def unavailable(self) -> list[Indicator]:
        return sorted(
            (i for i, r in self.enrichment.items() if not r.available),
            key=lambda i: i.key,
        )

    @property
    def max_reputation(self) -> int | None:
        scores = [r.reputation for r in self.enrichment.values() if r.reputation is not None]
        return max(scores) if scores else None


class IntelProvider(ABC):
    """External threat-intel lookup service."""

    name: str = "intel"

    @abstractmethod
    async def lookup(self, indicator: Indicator) -> IntelRecord | None:
        """Return intel for the indicator, None when nothing is known.

        Raises ProviderError when the service itself fails.
        """


class AssetInventory(ABC):
    """External asset inventory (CMDB)."""

    name: str = "assets"

    @abstractmethod
    async def lookup(self, indicator: Indicator) -> AssetContext | None:
        """Return asset context for a host or ip indicator, None if unknown."""


class StaticIntelProvider(IntelProvider):
    """
    In-memory intel feed.

    Used for local runs (loaded from ``config/intel.yaml``) and tests.
    """

    name = "static_intel"

    def __init__(self, records: dict[Indicator, IntelRecord] | None = None):
        self.records = dict(records or {})

    @classmethod
    def from_feed(cls, feed: Iterable[dict[str, Any]]) -> "StaticIntelProvider":
        records = {}
        for entry in feed:
            indicator = Indicator(kind=entry["kind"], value=entry["value"])
            records[indicator] = IntelRecord(
                reputation=entry.get("reputation", 0),
                campaign_tag=entry.get("campaign_tag"),
                first_seen=entry.get("first_seen"),
                last_seen=entry.get("last_seen"),
            )
        return cls(records)

    async def lookup(self, indicator: Indicator) -> IntelRecord | None:
        return self.records.get(indicator)


class HttpIntelProvider(IntelProvider):
    """
    REST threat-intel lookup.

    ``GET {base_url}/api/v1/indicators/{kind}/{value}`` returning
    ``{reputation, campaign_tag, first_seen, last_seen}``; 404 means no intel.
    """

    name = "http_intel"

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.AsyncClient(base_url=base_url, headers=headers)

    @retry_with_backoff(max_retries=2, base=0.2, exceptions=(httpx.TransportError,))
    async def _get(self, path: str) -> httpx.Response:
        return await self._client.get(path)

    async def lookup(self, indicator: Indicator) -> IntelRecord | None:
        try:
            path = f"/api/v1/indicators/{indicator.kind.value}/{quote(indicator.value, safe='')}"
            response = await self._get(path)
        except httpx.TransportError as e:
            raise ProviderError(self.name, f"transport error: {e}") from e

        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise ProviderError(self.name, f"HTTP {response.status_code}")
        try:
            return IntelRecord.model_validate(response.json())
        except ValueError as e:
            raise ProviderError(self.name, f"invalid response: {e}") from e

    async def close(self) -> None:
        await self._client.aclose()


class HttpAssetInventory(AssetInventory):
    """REST asset inventory: ``GET {base_url}/api/v1/assets/{value}``."""

    name = "http_assets"

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.AsyncClient(base_url=base_url, headers=headers)

    @retry_with_backoff(max_retries=2, base=0.2, exceptions=(httpx.TransportError,))
    async def _get(self, path: str) -> httpx.Response:
        return await self._client.get(path)

    async def lookup(self, indicator: Indicator) -> AssetContext | None:
        try:
            response = await self._get(f"/api/v1/assets/{quote(indicator.value, safe='')}")
        except httpx.TransportError as e:
            raise ProviderError(self.name, f"transport error: {e}") from e

        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise ProviderError(self.name, f"HTTP {response.status_code}")
        try:
            return AssetContext.model_validate(response.json())
        except ValueError as e:
            raise ProviderError(self.name, f"invalid response: {e}") from e

    async def close(self) -> None:
        await self._client.aclose()


@dataclass
class CacheEntry:
    value: IntelResult
    expires_at: float


class EnrichmentCache:
    """
    Bounded TTL cache with single-flight coalescing.

    Entries are keyed by (indicator kind, indicator value). Positive results
    live for ``positive_ttl``, not-found results for the shorter
    ``negative_ttl``; failed lookups are never cached. The lock covers only
    the check-and-register step, never the provider call itself.
    """

    def __init__(
        self,
        positive_ttl: float = 3600,
        negative_ttl: float = 300,
        max_entries: int = 10000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.positive_ttl = positive_ttl
        self.negative_ttl = negative_ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[CacheKey, CacheEntry] = OrderedDict()
        self._inflight: dict[CacheKey, asyncio.Task[IntelResult]] = {}
        self._lock = asyncio.Lock()

        self.hits = 0
        self.misses = 0
        self.coalesced = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> "EnrichmentCache":
        return cls(
            positive_ttl=settings.enrichment.positive_ttl_seconds,
            negative_ttl=settings.enrichment.negative_ttl_seconds,
            max_entries=settings.enrichment.max_cache_entries,
        )

    @staticmethod
    def key_for(indicator: Indicator) -> CacheKey:
        return (indicator.kind.value, indicator.value)

    def __len__(self) -> int:
        return len(self._entries)

    def peek(self, key: CacheKey) -> IntelResult | None:
        """Get value from cache if not expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return entry.value

    def store(self, key: CacheKey, result: IntelResult) -> None:
        if result.status == IntelStatus.LOOKUP_FAILED:
            return
        ttl = self.positive_ttl if result.status == IntelStatus.FOUND else self.negative_ttl
        self._entries[key] = CacheEntry(value=result, expires_at=self._clock() + ttl)
        self._entries.move_to_end(key)

        # Evict least recently used entries past the bound
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    async def get_or_fetch(
        self,
        indicator: Indicator,
        fetch: Callable[[], Awaitable[IntelResult]],
    ) -> IntelResult:
        key = self.key_for(indicator)
        async with self._lock:
            cached = self.peek(key)
            if cached is not None:
                self.hits += 1
                return cached

            task = self._inflight.get(key)
            if task is None:
                self.misses += 1
                task = asyncio.create_task(self._fill(key, fetch))
                self._inflight[key] = task
            else:
                self.coalesced += 1

        # A cancelled caller must not cancel the shared lookup
        return await asyncio.shield(task)

    async def _fill(self, key: CacheKey, fetch: Callable[[], Awaitable[IntelResult]]) -> IntelResult:
        try:
            result = await fetch()
            self.store(key, result)
            return result
        finally:
            self._inflight.pop(key, None)


class EnrichmentClient:
    """
    Coordinates intel and asset lookups for indicators.

    Runs lookups for all indicators of an event in parallel; each indicator
    is resolved independently so one provider outage never blocks the rest.
    """

    def __init__(
        self,
        settings: Settings,
        intel: IntelProvider,
        cache: EnrichmentCache,
        assets: AssetInventory | None = None,
    ):
        self.settings = settings
        self.intel = intel
        self.assets = assets
        self.cache = cache
        self.timeout = settings.enrichment.timeout_seconds
        self.logger = logger.bind(component="enrichment", provider=intel.name)

    async def enrich(self, indicators: Iterable[Indicator]) -> dict[Indicator, IntelResult]:
        unique = sorted(set(indicators), key=lambda i: i.key)
        results = await asyncio.gather(*(self.lookup(i) for i in unique))
        return dict(zip(unique, results))

    async def enrich_event(self, event: Event) -> EnrichedEvent:
        enrichment = await self.enrich(event.indicators)
        enriched = EnrichedEvent(event=event, enrichment=enrichment)

        if enriched.unavailable:
            self.logger.warning(
                "Enrichment degraded",
                event_id=str(event.event_id),
                unavailable=[i.key for i in enriched.unavailable],
            )
        else:
            self.logger.debug(
                "Event enriched",
                event_id=str(event.event_id),
                indicators=len(enrichment),
            )
        return enriched

    async def lookup(self, indicator: Indicator) -> IntelResult:
        return await self.cache.get_or_fetch(indicator, lambda: self._fetch(indicator))

    async def _call(self, provider: str, call: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(call, timeout=self.timeout)
        except asyncio.TimeoutError:
            raise ProviderTimeout(provider, self.timeout) from None

    async def _fetch(self, indicator: Indicator) -> IntelResult:
        calls = [self._call(self.intel.name, self.intel.lookup(indicator))]
        if self.assets is not None and indicator.kind in (IndicatorKind.HOST, IndicatorKind.IP):
            calls.append(self._call(self.assets.name, self.assets.lookup(indicator)))

        outcomes = await asyncio.gather(*calls, return_exceptions=True)
        intel = outcomes[0]
        asset = outcomes[1] if len(outcomes) > 1 else None

        if isinstance(asset, Exception):
            self.logger.warning("Asset lookup failed", indicator=indicator.key, error=str(asset))
            asset = None

        if isinstance(intel, ProviderError):
            self.logger.warning("Intel lookup failed", indicator=indicator.key, error=str(intel))
            return IntelResult.failed(str(intel))
        if isinstance(intel, Exception):
            self.logger.error(
                "Intel provider raised unexpectedly",
                indicator=indicator.key,
                error=repr(intel),
            )
            return IntelResult.failed(repr(intel))

        if intel is None:
            return IntelResult.not_found(asset=asset)
        return IntelResult.found(intel, asset=asset)


def build_enrichment_client(settings: Settings) -> EnrichmentClient:
    """Wire providers from settings: HTTP when configured, static feed otherwise."""
    cfg = settings.enrichment
    if cfg.intel_url:
        intel: IntelProvider = HttpIntelProvider(
            cfg.intel_url,
            api_key=cfg.intel_api_key.get_secret_value() if cfg.intel_api_key else None,
        )
    else:
        feed = settings.load_yaml_config("intel").get("indicators", [])
        intel = StaticIntelProvider.from_feed(feed)
        logger.info("Using static intel feed", records=len(intel.records))

    assets = None
    if cfg.asset_url:
        assets = HttpAssetInventory(
            cfg.asset_url,
            api_key=cfg.asset_api_key.get_secret_value() if cfg.asset_api_key else None,
        )

    return EnrichmentClient(settings, intel, EnrichmentCache.from_settings(settings), assets=assets)
