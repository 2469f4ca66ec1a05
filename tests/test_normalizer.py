"""
Tests for sensor payload normalization.
"""

from datetime import datetime, timezone
from uuid import UUID

import pytest

from alertflow.errors import MalformedPayload, NormalizationError, UnsupportedSource
from alertflow.models import Indicator, IndicatorKind, SensorKind, Severity
from alertflow.pipeline.normalizer import CanonicalNormalizer, normalize, parse_timestamp

SHA256 = "a" * 64


def suricata_alert(**overrides):
    payload = {
        "timestamp": "2026-05-04T12:00:00.123456+0000",
        "event_type": "alert",
        "flow_id": 1234,
        "src_ip": "10.0.0.5",
        "dest_ip": "203.0.113.66",
        "alert": {"signature": "ET MALWARE Beacon", "severity": 1},
    }
    payload.update(overrides)
    return payload


class TestTimestamps:
    """Timestamp parsing across sensor formats."""

    def test_iso_with_z(self):
        assert parse_timestamp("2023-11-14T22:13:20Z") == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)

    def test_epoch_seconds_and_milliseconds_agree(self):
        expected = datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)
        assert parse_timestamp(1_700_000_000) == expected
        assert parse_timestamp(1_700_000_000_000) == expected
        assert parse_timestamp("1700000000") == expected

    def test_naive_is_utc(self):
        parsed = parse_timestamp("2023-11-14 22:13:20")
        assert parsed.tzinfo is not None
        assert parsed == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)

    def test_offset_converted_to_utc(self):
        parsed = parse_timestamp("2023-11-15T00:13:20+02:00")
        assert parsed == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)

    def test_garbage_rejected(self):
        with pytest.raises(ValueError):
            parse_timestamp("yesterday-ish")


class TestSensorMappings:
    """Per-sensor field mapping."""

    def test_suricata(self):
        event = normalize("suricata", suricata_alert())

        assert event.sensor == SensorKind.SURICATA
        assert event.severity == Severity.HIGH
        assert event.title == "ET MALWARE Beacon"
        assert event.raw_ref == "1234"
        assert event.timestamp == datetime(2026, 5, 4, 12, 0, 0, 123456, tzinfo=timezone.utc)
        assert event.indicators == {
            Indicator(kind=IndicatorKind.IP, value="10.0.0.5"),
            Indicator(kind=IndicatorKind.IP, value="203.0.113.66"),
        }

    def test_suricata_low_priority(self):
        event = normalize("suricata", suricata_alert(alert={"signature": "x", "severity": 3}))
        assert event.severity == Severity.LOW

    def test_wazuh_rule_levels(self):
        payload = {
            "timestamp": "2026-05-04T12:00:00.000+0000",
            "rule": {"level": 12, "description": "Multiple authentication failures"},
            "agent": {"name": "WEB-01", "ip": "10.0.0.8"},
            "data": {"srcip": "198.51.100.7", "srcuser": "Alice"},
        }
        event = normalize("wazuh", payload)

        assert event.severity == Severity.CRITICAL
        assert event.title == "Multiple authentication failures"
        assert Indicator(kind=IndicatorKind.HOST, value="web-01") in event.indicators
        assert Indicator(kind=IndicatorKind.USER, value="alice") in event.indicators
        assert Indicator(kind=IndicatorKind.IP, value="198.51.100.7") in event.indicators

    def test_zeek_dotted_keys_and_epoch(self):
        payload = {
            "ts": 1700000000.5,
            "uid": "CHhAvVGS1DHFjwGM9",
            "id.orig_h": "10.0.0.5",
            "id.resp_h": "192.0.2.53",
            "query": "Update-Check.Example.NET.",
        }
        event = normalize("zeek", payload)

        assert event.severity == Severity.MEDIUM
        assert event.raw_ref == "CHhAvVGS1DHFjwGM9"
        assert Indicator(kind=IndicatorKind.DOMAIN, value="update-check.example.net") in event.indicators
        assert Indicator(kind=IndicatorKind.IP, value="192.0.2.53") in event.indicators

    def test_yara(self):
        payload = {
            "timestamp": "2026-05-04T12:00:00Z",
            "rule": "Win_Trojan_Agent",
            "meta": {"severity": "high"},
            "file": {"sha256": SHA256, "path": "C:\\Users\\Public\\a.exe"},
            "host": "WS-22",
        }
        event = normalize("yara", payload)

        assert event.severity == Severity.HIGH
        assert event.title == "Win_Trojan_Agent"
        assert Indicator(kind=IndicatorKind.HASH, value=SHA256) in event.indicators
        assert Indicator(kind=IndicatorKind.HOST, value="ws-22") in event.indicators

    def test_velociraptor(self):
        payload = {
            "_ts": 1700000000,
            "Fqdn": "ws-22.corp.local",
            "Username": "CORP\\bob",
            "Severity": "critical",
        }
        event = normalize("velociraptor", payload)

        assert event.severity == Severity.CRITICAL
        assert event.timestamp == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)
        assert Indicator(kind=IndicatorKind.USER, value="corp\\bob") in event.indicators

    def test_canonical(self):
        supplied = "1b4e28ba-2fa1-11d2-883f-0016d3cca427"
        payload = {
            "event_id": supplied,
            "timestamp": "2026-05-04T12:00:00Z",
            "severity": 9,
            "indicators": {"ip": ["10.0.0.1", "10.0.0.2"], "user": "Alice", "bogus": "x"},
        }
        event = normalize("canonical", payload)

        assert event.event_id == UUID(supplied)
        assert event.severity == Severity.CRITICAL
        assert len(event.indicators) == 3

    def test_canonical_indicator_list(self):
        payload = {
            "timestamp": "2026-05-04T12:00:00Z",
            "severity": "medium",
            "indicators": [{"kind": "domain", "value": "Evil.Example.com"}],
        }
        event = normalize("canonical", payload)
        assert event.indicators == {Indicator(kind=IndicatorKind.DOMAIN, value="evil.example.com")}


class TestNormalizationErrors:
    """Rejected payloads never produce an event."""

    def test_unknown_sensor(self):
        with pytest.raises(UnsupportedSource):
            normalize("snort", suricata_alert())

    def test_missing_timestamp(self):
        payload = suricata_alert()
        del payload["timestamp"]
        with pytest.raises(MalformedPayload, match="timestamp"):
            normalize("suricata", payload)

    def test_unparseable_timestamp(self):
        with pytest.raises(MalformedPayload):
            normalize("suricata", suricata_alert(timestamp="not a time"))

    def test_no_valid_indicator(self):
        with pytest.raises(MalformedPayload, match="indicator"):
            normalize("suricata", suricata_alert(src_ip="not-an-ip", dest_ip="999.1.1.1"))

    def test_invalid_indicator_dropped(self):
        event = normalize("suricata", suricata_alert(src_ip="not-an-ip"))
        assert event.indicators == {Indicator(kind=IndicatorKind.IP, value="203.0.113.66")}

    def test_non_object_payload(self):
        with pytest.raises(NormalizationError):
            normalize("suricata", ["not", "an", "object"])


class TestOddFieldTypes:
    """Unexpected optional field types are ignored, never raised."""

    def test_object_title_ignored(self):
        event = normalize("canonical", {
            "timestamp": "2026-05-04T12:00:00Z",
            "indicators": {"ip": "1.2.3.4"},
            "message": {"text": "x"},
            "ref": ["a", "b"],
        })
        assert event.title is None
        assert event.raw_ref is None

    def test_numeric_ref_kept_as_text(self):
        assert normalize("suricata", suricata_alert()).raw_ref == "1234"

    def test_unhashable_severity_defaults_to_medium(self):
        event = normalize("suricata", suricata_alert(alert={"signature": "x", "severity": [1]}))
        assert event.severity == Severity.MEDIUM
        assert event.title == "x"

    @pytest.mark.parametrize("level", [float("inf"), float("nan"), {"n": 1}])
    def test_unusable_numeric_severity(self, level):
        payload = {"timestamp": "2026-05-04T12:00:00Z", "indicators": {"ip": "1.2.3.4"}, "severity": level}
        assert normalize("canonical", payload).severity == Severity.MEDIUM

    def test_invalid_event_reported_as_malformed(self):
        class BrokenSeverity(CanonicalNormalizer):
            def map_severity(self, raw):
                return "extreme"

        with pytest.raises(MalformedPayload, match="invalid event"):
            BrokenSeverity().normalize({"timestamp": "2026-05-04T12:00:00Z", "indicators": {"ip": "1.2.3.4"}})


class TestEventIdentity:
    """Deterministic ids deduplicate re-delivered payloads."""

    def test_same_payload_same_id(self):
        assert normalize("suricata", suricata_alert()).event_id == normalize("suricata", suricata_alert()).event_id

    def test_different_payload_different_id(self):
        first = normalize("suricata", suricata_alert())
        second = normalize("suricata", suricata_alert(flow_id=9999))
        assert first.event_id != second.event_id
