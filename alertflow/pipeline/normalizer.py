"""
Event Normalizer - Map heterogeneous sensor payloads to the canonical Event.

Handles payloads from:
- Suricata (network IDS, EVE JSON alerts)
- Wazuh (host-based detection alerts)
- Zeek (network security monitor logs)
- YARA scanners (file scan hits)
- Velociraptor (DFIR hunt results)
- Upstream collectors that already emit the canonical shape

Normalization is pure: the same payload always yields the same Event,
including its id, so re-delivered detections deduplicate downstream.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import Iterable, Iterator
from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid5, NAMESPACE_URL

from pydantic import ValidationError

from alertflow.errors import MalformedPayload, UnsupportedSource
from alertflow.models import Event, Indicator, IndicatorKind, SensorKind, Severity

EVENT_NAMESPACE = uuid5(NAMESPACE_URL, "alertflow:event")

# Epoch values above this are taken as milliseconds
_EPOCH_MS_THRESHOLD = 10_000_000_000

_TIMESTAMP_FORMATS = (
    "%Y-%m-%dT%H:%M:%S.%f%z",
    "%Y-%m-%dT%H:%M:%S%z",
    "%Y-%m-%d %H:%M:%S.%f",
    "%Y-%m-%d %H:%M:%S",
)

_NAMED_SEVERITY = {
    "informational": Severity.LOW,
    "info": Severity.LOW,
    "low": Severity.LOW,
    "medium": Severity.MEDIUM,
    "moderate": Severity.MEDIUM,
    "high": Severity.HIGH,
    "critical": Severity.CRITICAL,
}


def parse_timestamp(value: Any) -> datetime:
    """
    Parse a sensor timestamp into an aware UTC datetime.

    Accepts ISO-8601 strings (including a trailing Z or a +0000 offset),
    epoch seconds or milliseconds as numbers or numeric strings, and
    datetime objects. Naive values are taken as UTC.
    """
    if isinstance(value, bool):
        raise ValueError(f"not a timestamp: {value!r}")

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        parsed = _from_epoch(float(value))
    elif isinstance(value, str):
        v = value.strip()
        try:
            parsed = _from_epoch(float(v))
        except ValueError:
            parsed = _from_iso(v)
    else:
        raise ValueError(f"not a timestamp: {value!r}")

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _from_epoch(value: float) -> datetime:
    if value > _EPOCH_MS_THRESHOLD:
        value = value / 1000.0
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _from_iso(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        pass
    for fmt in _TIMESTAMP_FORMATS:
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    raise ValueError(f"unrecognised timestamp: {value!r}")


def derive_event_id(sensor: SensorKind, payload: dict[str, Any]) -> UUID:
    """Deterministic id: identical payloads from the same sensor share an id."""
    canonical = json.dumps(payload, sort_keys=True, default=str, separators=(",", ":"))
    return uuid5(EVENT_NAMESPACE, f"{sensor.value}:{canonical}")


def lookup(payload: dict[str, Any], *paths: str) -> Any:
    """
    First non-empty value among *paths*.

    A path is tried as a literal key first (Zeek uses dotted key names such
    as ``id.orig_h``), then as a dotted walk through nested dicts.
    """
    for path in paths:
        if path in payload:
            value = payload[path]
        else:
            value = payload
            for part in path.split("."):
                if not isinstance(value, dict) or part not in value:
                    value = None
                    break
                value = value[part]
        if value not in (None, "", [], {}):
            return value
    return None


def _values(value: Any) -> Iterator[str]:
    if value is None:
        return
    if isinstance(value, (list, tuple, set, frozenset)):
        for item in value:
            yield from _values(item)
    elif isinstance(value, (str, int)) and not isinstance(value, bool):
        yield str(value)


def _text(value: Any) -> str | None:
    """Scalar field as text; anything else is ignored."""
    if isinstance(value, str):
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return None


def build_indicators(candidates: Iterable[tuple[IndicatorKind, Any]]) -> frozenset[Indicator]:
    """Build indicators from (kind, raw value) pairs, dropping invalid values."""
    indicators = set()
    for kind, raw in candidates:
        for value in _values(raw):
            try:
                indicators.add(Indicator(kind=kind, value=value))
            except ValidationError:
                continue
    return frozenset(indicators)


class SensorNormalizer(ABC):
    """Field mapping for one sensor kind."""

    sensor: SensorKind
    TIMESTAMP_FIELDS: tuple[str, ...] = ("timestamp", "@timestamp")
    SEVERITY_MAP: dict[Any, Severity] = _NAMED_SEVERITY

    def normalize(self, payload: Any) -> Event:
        if not isinstance(payload, dict):
            raise MalformedPayload(self.sensor.value, "payload must be a JSON object")

        raw_ts = lookup(payload, *self.TIMESTAMP_FIELDS)
        if raw_ts is None:
            raise MalformedPayload(self.sensor.value, "missing timestamp")
        try:
            timestamp = parse_timestamp(raw_ts)
        except (ValueError, OverflowError, OSError) as e:
            raise MalformedPayload(self.sensor.value, f"bad timestamp: {e}") from e

        indicators = build_indicators(self.extract_indicators(payload))
        if not indicators:
            raise MalformedPayload(self.sensor.value, "no valid indicators")

        try:
            return Event(
                event_id=self.event_id(payload),
                sensor=self.sensor,
                timestamp=timestamp,
                severity=self.map_severity(self.extract_severity(payload)),
                indicators=indicators,
                title=_text(self.extract_title(payload)),
                raw_ref=_text(self.extract_ref(payload)),
                raw_data=payload,
            )
        except ValidationError as e:
            raise MalformedPayload(self.sensor.value, f"invalid event: {e.error_count()} error(s)") from e

    def event_id(self, payload: dict[str, Any]) -> UUID:
        return derive_event_id(self.sensor, payload)

    @abstractmethod
    def extract_indicators(self, payload: dict[str, Any]) -> Iterable[tuple[IndicatorKind, Any]]:
        """Yield (kind, raw value) pairs; invalid values are dropped later."""

    def extract_severity(self, payload: dict[str, Any]) -> Any:
        return lookup(payload, "severity")

    def map_severity(self, raw: Any) -> Severity:
        """Map through the per-sensor table, MEDIUM when absent or unknown."""
        if raw is None:
            return Severity.MEDIUM
        key = raw.lower() if isinstance(raw, str) else raw
        try:
            return self.SEVERITY_MAP.get(key, Severity.MEDIUM)
        except TypeError:
            # Unhashable values such as lists or objects
            return Severity.MEDIUM

    def extract_title(self, payload: dict[str, Any]) -> str | None:
        return lookup(payload, "title", "message")

    def extract_ref(self, payload: dict[str, Any]) -> Any:
        return lookup(payload, "id")


class SuricataNormalizer(SensorNormalizer):
    """Suricata EVE JSON alerts."""

    sensor = SensorKind.SURICATA

    # Suricata priority: 1 is the most severe
    SEVERITY_MAP = {1: Severity.HIGH, 2: Severity.MEDIUM, 3: Severity.LOW, 4: Severity.LOW}

    def extract_indicators(self, payload):
        yield IndicatorKind.IP, lookup(payload, "src_ip")
        yield IndicatorKind.IP, lookup(payload, "dest_ip")
        yield IndicatorKind.DOMAIN, lookup(payload, "dns.rrname", "dns.query.rrname")
        yield IndicatorKind.DOMAIN, lookup(payload, "http.hostname")
        yield IndicatorKind.DOMAIN, lookup(payload, "tls.sni")
        yield IndicatorKind.HASH, lookup(payload, "fileinfo.sha256", "fileinfo.md5")
        yield IndicatorKind.HOST, lookup(payload, "host")

    def extract_severity(self, payload):
        return lookup(payload, "alert.severity")

    def extract_title(self, payload):
        return lookup(payload, "alert.signature")

    def extract_ref(self, payload):
        return lookup(payload, "flow_id")


class WazuhNormalizer(SensorNormalizer):
    """Wazuh HIDS alerts (alerts.json)."""

    sensor = SensorKind.WAZUH

    def extract_indicators(self, payload):
        yield IndicatorKind.HOST, lookup(payload, "agent.name")
        yield IndicatorKind.IP, lookup(payload, "agent.ip")
        yield IndicatorKind.IP, lookup(payload, "data.srcip")
        yield IndicatorKind.IP, lookup(payload, "data.dstip")
        yield IndicatorKind.USER, lookup(payload, "data.srcuser")
        yield IndicatorKind.USER, lookup(payload, "data.dstuser")
        yield IndicatorKind.HASH, lookup(payload, "syscheck.sha256_after", "syscheck.md5_after")

    def extract_severity(self, payload):
        return lookup(payload, "rule.level")

    def map_severity(self, raw):
        # Wazuh rule levels run 0-15
        try:
            level = int(raw)
        except (TypeError, ValueError, OverflowError):
            return Severity.MEDIUM
        if level <= 3:
            return Severity.LOW
        elif level <= 7:
            return Severity.MEDIUM
        elif level <= 11:
            return Severity.HIGH
        return Severity.CRITICAL

    def extract_title(self, payload):
        return lookup(payload, "rule.description")


class ZeekNormalizer(SensorNormalizer):
    """Zeek notice, conn, dns and http logs."""

    sensor = SensorKind.ZEEK
    TIMESTAMP_FIELDS = ("ts",)

    def extract_indicators(self, payload):
        yield IndicatorKind.IP, lookup(payload, "id.orig_h", "src")
        yield IndicatorKind.IP, lookup(payload, "id.resp_h", "dst")
        yield IndicatorKind.DOMAIN, lookup(payload, "query")
        yield IndicatorKind.DOMAIN, lookup(payload, "host", "server_name")
        yield IndicatorKind.HASH, lookup(payload, "sha256", "sha1", "md5")

    def extract_title(self, payload):
        return lookup(payload, "note", "msg")

    def extract_ref(self, payload):
        return lookup(payload, "uid", "fuid")


class YaraNormalizer(SensorNormalizer):
    """YARA scanner hits."""

    sensor = SensorKind.YARA

    def extract_indicators(self, payload):
        yield IndicatorKind.HASH, lookup(payload, "file.sha256", "sha256")
        yield IndicatorKind.HASH, lookup(payload, "file.md5", "md5")
        yield IndicatorKind.HOST, lookup(payload, "host", "hostname")

    def extract_severity(self, payload):
        return lookup(payload, "meta.severity", "severity")

    def extract_title(self, payload):
        return lookup(payload, "rule")

    def extract_ref(self, payload):
        return lookup(payload, "file.path", "path")


class VelociraptorNormalizer(SensorNormalizer):
    """Velociraptor hunt and client-monitoring results."""

    sensor = SensorKind.VELOCIRAPTOR
    TIMESTAMP_FIELDS = ("_ts", "Timestamp", "timestamp")

    def extract_indicators(self, payload):
        yield IndicatorKind.HOST, lookup(payload, "Fqdn", "Hostname")
        yield IndicatorKind.USER, lookup(payload, "Username", "User")
        yield IndicatorKind.IP, lookup(payload, "RemoteAddr", "Laddr.IP")
        yield IndicatorKind.HASH, lookup(payload, "Hash.SHA256", "SHA256", "Hash.MD5")
        yield IndicatorKind.DOMAIN, lookup(payload, "Domain")

    def extract_severity(self, payload):
        return lookup(payload, "Severity")

    def extract_title(self, payload):
        return lookup(payload, "Artifact")

    def extract_ref(self, payload):
        return lookup(payload, "FlowId", "ClientId")


class CanonicalNormalizer(SensorNormalizer):
    """
    Payloads already in canonical shape from an upstream collector.

    ``indicators`` may be a list of {"kind", "value"} objects or a mapping
    of kind to value(s). ``severity`` may be a name or a 1-10 number.
    """

    sensor = SensorKind.CANONICAL

    def event_id(self, payload):
        supplied = payload.get("event_id")
        if supplied:
            try:
                return UUID(str(supplied))
            except ValueError as e:
                raise MalformedPayload(self.sensor.value, f"bad event_id: {supplied!r}") from e
        return super().event_id(payload)

    def extract_indicators(self, payload):
        raw = payload.get("indicators")
        if isinstance(raw, dict):
            items = raw.items()
        elif isinstance(raw, list):
            items = [
                (item.get("kind"), item.get("value"))
                for item in raw if isinstance(item, dict)
            ]
        else:
            items = []

        for kind, value in items:
            try:
                yield IndicatorKind(kind), value
            except ValueError:
                continue

    def map_severity(self, raw):
        if isinstance(raw, (int, float)) and not isinstance(raw, bool):
            try:
                return Severity.from_numeric(int(raw))
            except (ValueError, OverflowError):
                return Severity.MEDIUM
        return super().map_severity(raw)

    def extract_ref(self, payload):
        return lookup(payload, "ref", "id")


NORMALIZERS: dict[SensorKind, SensorNormalizer] = {
    n.sensor: n
    for n in (
        SuricataNormalizer(),
        WazuhNormalizer(),
        ZeekNormalizer(),
        YaraNormalizer(),
        VelociraptorNormalizer(),
        CanonicalNormalizer(),
    )
}


def resolve_sensor(sensor_kind: str | SensorKind) -> SensorKind:
    try:
        return SensorKind(sensor_kind)
    except ValueError:
        raise UnsupportedSource(str(sensor_kind)) from None


def normalize(sensor_kind: str | SensorKind, payload: Any) -> Event:
    """
    Normalize one raw payload tagged with its sensor kind.

    Raises:
        UnsupportedSource: no mapping is registered for *sensor_kind*.
        MalformedPayload: timestamp missing or unparseable, or no valid indicator.
    """
    kind = resolve_sensor(sensor_kind)
    normalizer = NORMALIZERS.get(kind)
    if normalizer is None:
        raise UnsupportedSource(kind.value)
    return normalizer.normalize(payload)
