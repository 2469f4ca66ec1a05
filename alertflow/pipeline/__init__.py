"""
Pipeline module for normalization, enrichment, correlation, and event sources.
"""

from alertflow.pipeline.normalizer import (
    NORMALIZERS,
    SensorNormalizer,
    normalize,
    parse_timestamp,
    resolve_sensor,
)

from alertflow.pipeline.enrichment import (
    AssetInventory,
    EnrichedEvent,
    EnrichmentCache,
    EnrichmentClient,
    HttpAssetInventory,
    HttpIntelProvider,
    IntelProvider,
    StaticIntelProvider,
    build_enrichment_client,
)

from alertflow.pipeline.correlation import (
    CorrelationAction,
    CorrelationEngine,
    CorrelationOutcome,
)

from alertflow.pipeline.sources import (
    KafkaEventSource,
    SourceManager,
)

__all__ = [
    "NORMALIZERS",
    "SensorNormalizer",
    "normalize",
    "parse_timestamp",
    "resolve_sensor",
    "AssetInventory",
    "EnrichedEvent",
    "EnrichmentCache",
    "EnrichmentClient",
    "HttpAssetInventory",
    "HttpIntelProvider",
    "IntelProvider",
    "StaticIntelProvider",
    "build_enrichment_client",
    "CorrelationAction",
    "CorrelationEngine",
    "CorrelationOutcome",
    "KafkaEventSource",
    "SourceManager",
]
