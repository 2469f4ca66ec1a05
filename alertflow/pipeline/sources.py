"""
Event sources - Consume sensor payloads from upstream collectors.

One Kafka topic per sensor kind; each consumer feeds the orchestrator's
queue for that sensor, which preserves per-sensor arrival order.
"""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING, Any

import structlog

from alertflow.config import Settings
from alertflow.errors import NormalizationError
from alertflow.models import SensorKind
from alertflow.pipeline.normalizer import resolve_sensor

if TYPE_CHECKING:
    from alertflow.orchestrator import Orchestrator

logger = structlog.get_logger()


class KafkaEventSource:
    """Kafka consumer for one sensor topic."""

    def __init__(
        self,
        settings: Settings,
        sensor: SensorKind,
        topic: str,
        orchestrator: "Orchestrator",
        consumer: Any = None,
    ):
        self.settings = settings
        self.sensor = sensor
        self.topic = topic
        self.orchestrator = orchestrator
        self.logger = logger.bind(source="kafka", sensor=sensor.value, topic=topic)
        self._consumer = consumer
        self._running = False

        self.consumed = 0
        self.rejected = 0
        self.failed = 0

    async def connect(self) -> None:
        """Connect to the Kafka cluster."""
        if self._consumer is not None:
            return
        try:
            from aiokafka import AIOKafkaConsumer

            cfg = self.settings.kafka
            self._consumer = AIOKafkaConsumer(
                self.topic,
                bootstrap_servers=cfg.bootstrap_servers,
                group_id=f"{cfg.consumer_group}-{self.sensor.value}",
                auto_offset_reset=cfg.auto_offset_reset,
                enable_auto_commit=True,
                security_protocol=cfg.security_protocol,
                sasl_mechanism=cfg.sasl_mechanism,
                sasl_plain_username=cfg.sasl_username,
                sasl_plain_password=cfg.sasl_password.get_secret_value() if cfg.sasl_password else None,
                value_deserializer=_decode,
            )
            await self._consumer.start()
            self.logger.info("Connected to Kafka")

        except Exception as e:
            self.logger.error("Failed to connect to Kafka", error=str(e))
            raise

    async def disconnect(self) -> None:
        if self._consumer is not None:
            await self._consumer.stop()
            self._consumer = None

    async def start(self) -> None:
        self._running = True
        await self.connect()

    async def stop(self) -> None:
        self._running = False
        await self.disconnect()
        self.logger.info("Source stopped", consumed=self.consumed, rejected=self.rejected, failed=self.failed)

    async def run(self) -> None:
        """Forward every message to the orchestrator until stopped."""
        if self._consumer is None:
            raise RuntimeError("Consumer not connected")

        async for message in self._consumer:
            if not self._running:
                break
            try:
                await self.orchestrator.ingest(self.sensor, message.value)
                self.consumed += 1
            except NormalizationError as e:
                self.rejected += 1
                self.logger.warning("Rejected message", offset=message.offset, error=str(e))
            except Exception as e:
                # One bad message must not stop the topic
                self.failed += 1
                self.logger.error("Message ingestion failed", offset=message.offset, error=repr(e), exc_info=True)


def _decode(value: bytes) -> Any:
    try:
        return json.loads(value.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        # Left for the normalizer to reject as malformed
        return value


class SourceManager:
    """Runs the configured event sources."""

    def __init__(self, settings: Settings, orchestrator: "Orchestrator"):
        self.settings = settings
        self.orchestrator = orchestrator
        self.sources: dict[str, KafkaEventSource] = {}
        self._tasks: list[asyncio.Task] = []

    def register_source(self, name: str, source: KafkaEventSource) -> None:
        self.sources[name] = source
        logger.info("Registered event source", name=name, topic=source.topic)

    def register_default_sources(self) -> None:
        """One Kafka source per configured sensor topic."""
        if not self.settings.kafka.enabled:
            return
        for sensor_name, topic in self.settings.kafka.sensor_topics.items():
            sensor = resolve_sensor(sensor_name)
            self.register_source(
                sensor.value,
                KafkaEventSource(self.settings, sensor, topic, self.orchestrator),
            )

    async def start(self) -> None:
        for name, source in self.sources.items():
            try:
                await source.start()
            except Exception as e:
                logger.error("Failed to start source", source=name, error=str(e))
                continue
            self._tasks.append(asyncio.create_task(self._run_source(name, source)))

        logger.info("Event sources started", sources=list(self.sources))

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        for name, source in self.sources.items():
            try:
                await source.stop()
            except Exception as e:
                logger.error("Failed to stop source", source=name, error=str(e))

    async def _run_source(self, name: str, source: KafkaEventSource) -> None:
        try:
            await source.run()
        except asyncio.CancelledError:
            logger.info("Source processing cancelled", source=name)
            raise
        except Exception as e:
            logger.error("Source processing error", source=name, error=str(e), exc_info=True)
