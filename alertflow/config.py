"""
Configuration management for alertflow.

Uses Pydantic Settings for type-safe configuration with environment
variable support and YAML file loading.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class IngestSettings(BaseSettings):
    """Per-sensor ingestion queues."""

    model_config = SettingsConfigDict(env_prefix="INGEST_")

    queue_size: int = 10000


class KafkaSettings(BaseSettings):
    """Kafka configuration for upstream collector topics."""

    model_config = SettingsConfigDict(env_prefix="KAFKA_")

    enabled: bool = False
    bootstrap_servers: str = "localhost:9092"
    security_protocol: str = "PLAINTEXT"
    sasl_mechanism: str | None = None
    sasl_username: str | None = None
    sasl_password: SecretStr | None = None

    # Consumer settings
    consumer_group: str = "alertflow"
    auto_offset_reset: str = "latest"

    # One topic per sensor kind keeps per-sensor arrival order
    sensor_topics: dict[str, str] = Field(default_factory=lambda: {
        "suricata": "soc.events.ids.suricata",
        "wazuh": "soc.events.hids.wazuh",
        "zeek": "soc.events.network.zeek",
        "yara": "soc.events.scan.yara",
        "velociraptor": "soc.events.dfir.velociraptor",
        "canonical": "soc.events.normalized",
    })


class EnrichmentSettings(BaseSettings):
    """Threat intel and asset inventory lookups."""

    model_config = SettingsConfigDict(env_prefix="ENRICHMENT_")

    intel_url: str | None = None
    intel_api_key: SecretStr | None = None
    asset_url: str | None = None
    asset_api_key: SecretStr | None = None

    timeout_seconds: float = 5.0

    # Cache
    positive_ttl_seconds: int = 3600
    negative_ttl_seconds: int = 300
    max_cache_entries: int = 10000


class CorrelationSettings(BaseSettings):
    """Incident correlation rules."""

    model_config = SettingsConfigDict(env_prefix="CORRELATION_")

    window_minutes: float = 30.0
    min_shared_indicators: int = 1

    # Compare-and-swap retries before surfacing contention
    store_retry_attempts: int = 5

    @field_validator("min_shared_indicators")
    @classmethod
    def validate_min_shared(cls, v: int) -> int:
        if v < 1:
            raise ValueError("min_shared_indicators must be at least 1")
        return v


class PlaybookSettings(BaseSettings):
    """Playbook execution configuration."""

    model_config = SettingsConfigDict(env_prefix="PLAYBOOK_")

    definitions: str = "playbooks"
    action_url: str | None = None
    action_api_key: SecretStr | None = None

    # Step defaults, overridable per step
    step_timeout_seconds: float = 30.0
    max_step_attempts: int = 3
    backoff_base_seconds: float = 1.0
    backoff_factor: float = 2.0
    backoff_max_seconds: float = 30.0
    backoff_jitter: bool = True

    # Re-trigger budget for FAILED runs
    max_run_attempts: int = 3


class APISettings(BaseSettings):
    """API server configuration."""

    model_config = SettingsConfigDict(env_prefix="API_")

    host: str = "0.0.0.0"
    port: int = 8080

    cors_origins: list[str] = ["*"]


class Settings(BaseSettings):
    """Root settings that aggregates all configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Environment
    environment: str = Field(default="development", description="development, staging, production")
    debug: bool = False
    log_level: str = "INFO"

    # Component settings
    ingest: IngestSettings = Field(default_factory=IngestSettings)
    kafka: KafkaSettings = Field(default_factory=KafkaSettings)
    enrichment: EnrichmentSettings = Field(default_factory=EnrichmentSettings)
    correlation: CorrelationSettings = Field(default_factory=CorrelationSettings)
    playbooks: PlaybookSettings = Field(default_factory=PlaybookSettings)
    api: APISettings = Field(default_factory=APISettings)

    # Paths
    config_dir: Path = Field(default=Path("config"))

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    def load_yaml_config(self, name: str) -> dict[str, Any]:
        """Load additional YAML configuration file."""
        path = self.config_dir / f"{name}.yaml"
        if path.exists():
            with open(path) as f:
                return yaml.safe_load(f) or {}
        return {}


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience function for tests
def get_test_settings() -> Settings:
    """Get settings configured for testing."""
    return Settings(
        environment="development",
        debug=True,
        log_level="DEBUG",
        enrichment=EnrichmentSettings(
            timeout_seconds=0.5,
            positive_ttl_seconds=3600,
            negative_ttl_seconds=60,
        ),
        playbooks=PlaybookSettings(
            step_timeout_seconds=0.5,
            backoff_base_seconds=0.0,
            backoff_jitter=False,
        ),
    )
