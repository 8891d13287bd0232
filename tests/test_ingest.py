"""
Tests for indicator ingest and the source adapters.
"""

from datetime import datetime, timezone

import pytest

from soarkit.core.database import WatchEntry
from soarkit.core.errors import IngestError, UnknownSourceError
from soarkit.core.severity import Severity
from soarkit.incident.classifier import SeverityClassifier
from soarkit.ingest.adapters import edr_adapter, email_gateway_adapter, network_adapter
from soarkit.ingest.indicator import IndicatorType
from soarkit.ingest.normalizer import IndicatorIngest


@pytest.fixture
def ingest():
    return IndicatorIngest()


def by_type(indicators, ioc_type):
    return [i for i in indicators if i.indicator_type == ioc_type]


class TestAdapters:

    def test_edr_tags_ransomware_and_host(self, edr_alert):
        candidates = edr_adapter(edr_alert)
        types = {c["type"] for c in candidates}
        assert {"hostname", "process", "file_path", "ip", "sha256"} <= types
        assert all("ransomware" in c["tags"] for c in candidates)
        assert all(c["asset"] == "WS-042" for c in candidates)

    def test_email_gateway_extracts_sender_domain_and_url_host(self, phishing_alert):
        candidates = email_gateway_adapter(phishing_alert)
        domains = {c["value"] for c in candidates if c["type"] == "domain"}
        assert domains == {"evil-invoices.com", "login-portal.xyz"}
        recipients = [c for c in candidates if "recipient" in c["tags"]]
        assert {c["value"] for c in recipients} == {"alice", "carol"}

    def test_network_private_destination_becomes_asset(self, ddos_alert):
        candidates = network_adapter(ddos_alert)
        ips = {c["value"]: c["tags"] for c in candidates if c["type"] == "ip"}
        assert "10.0.0.15" not in ips
        assert ips["45.155.205.7"] == ["source"]
        hosts = [c for c in candidates if c["type"] == "hostname"]
        assert hosts[0]["value"] == "10.0.0.15"


class TestNormalize:

    def test_edr_alert(self, ingest, edr_alert):
        indicators = ingest.normalize("edr", edr_alert)

        host = by_type(indicators, IndicatorType.HOSTNAME)[0]
        assert host.value == "ws-042"
        assert host.asset == "ws-042"
        assert host.severity_hint == Severity.CRITICAL
        assert host.observed_at == datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

        process = by_type(indicators, IndicatorType.PROCESS)[0]
        assert process.value == "evil.exe"
        assert process.context["files_encrypted"] == 450

    def test_email_gateway_refangs_and_sets_confidence(self, ingest, phishing_alert):
        indicators = ingest.normalize("email_gateway", phishing_alert)

        url = by_type(indicators, IndicatorType.URL)[0]
        assert url.value == "https://login-portal.xyz/reset"
        assert url.confidence == 90
        assert url.severity_hint == Severity.MEDIUM

        domains = {i.value for i in by_type(indicators, IndicatorType.DOMAIN)}
        assert "login-portal.xyz" in domains

        attachment = by_type(indicators, IndicatorType.SHA256)[0]
        assert attachment.context["file_name"] == "invoice.docm"

    def test_invalid_values_are_dropped(self, ingest):
        indicators = ingest.normalize("siem", {
            "indicators": [
                {"type": "ip", "value": "999.1.1.1"},
                {"type": "sha256", "value": "not-a-hash"},
                {"type": "nonsense", "value": "x"},
                {"type": "ip", "value": "8.8.8.8"},
            ],
        })
        assert [i.value for i in indicators] == ["8.8.8.8"]

    def test_false_positives_are_dropped(self, ingest):
        indicators = ingest.normalize("manual", {"type": "domain", "value": "example.com"})
        assert indicators == []

    def test_untyped_values_are_detected(self, ingest):
        indicators = ingest.normalize("siem", {"indicators": ["203.0.113.9", "evil.top"]})
        assert [(i.indicator_type, i.value) for i in indicators] == [
            (IndicatorType.IP, "203.0.113.9"),
            (IndicatorType.DOMAIN, "evil.top"),
        ]

    def test_free_text(self, ingest):
        indicators = ingest.normalize("manual", "beacon to 203.0.113.77 and hxxp://bad[.]ru/x")
        values = {i.value for i in indicators}
        assert "203.0.113.77" in values
        assert "http://bad.ru/x" in values

    def test_list_payload(self, ingest):
        indicators = ingest.normalize("manual", [
            {"type": "ip", "value": "203.0.113.1"},
            {"type": "ip", "value": "203.0.113.2"},
        ])
        assert len(indicators) == 2

    def test_unknown_source(self, ingest):
        with pytest.raises(UnknownSourceError):
            ingest.normalize("carrier_pigeon", {})

    def test_unsupported_payload(self, ingest):
        with pytest.raises(IngestError):
            ingest.normalize("edr", 42)

    def test_unparseable_timestamp_uses_now(self, ingest):
        before = datetime.now(timezone.utc)
        indicators = ingest.normalize("manual", {
            "type": "ip", "value": "203.0.113.1", "timestamp": "yesterday-ish",
        })
        assert indicators[0].observed_at >= before

    @pytest.mark.parametrize("raw,expected", [
        ("high", 80),
        ("Very High", 95),
        (None, 50),
        ("not sure", 50),
        ("75", 75),
        (250, 100),
        (-5, 0),
    ])
    def test_payload_confidence_is_coerced(self, ingest, raw, expected):
        indicators = ingest.normalize("edr", {
            "hostname": "ws-1", "sha256": "a" * 64, "confidence": raw,
        })
        assert indicators
        assert {i.confidence for i in indicators} == {expected}

    def test_symbolic_confidence_can_be_classified(self, ingest):
        indicators = ingest.ingest([
            ("edr", {"hostname": "ws-1", "sha256": "a" * 64, "confidence": "high"}),
            ("manual", {"type": "ip", "value": "45.155.205.7", "confidence": "bogus"}),
        ])
        assert all(isinstance(i.confidence, int) for i in indicators)
        assert SeverityClassifier().classify(indicators).score > 0

    def test_custom_adapter(self, ingest):
        ingest.register_adapter("honeypot", lambda p: [{"type": "ip", "value": p["attacker"]}])
        indicators = ingest.normalize("honeypot", {"attacker": "198.51.100.200"})
        assert indicators[0].source == "honeypot"


class TestIngestBatch:

    def test_deduplicates_across_sources(self, ingest):
        indicators = ingest.ingest([
            ("network", {"src_ip": "45.155.205.50", "dst_ip": "10.0.0.5", "severity": "low"}),
            {"source": "edr", "payload": {
                "hostname": "web-1", "remote_ip": "45.155.205.50", "severity": "high",
            }},
        ])

        ip = [i for i in indicators if i.value == "45.155.205.50"]
        assert len(ip) == 1
        assert ip[0].severity_hint == Severity.HIGH
        assert set(ip[0].tags) == {"source", "c2"}
        assert ip[0].context["sources"] == ["network", "edr"]

    def test_watchlist_match_and_persistence(self, db):
        db.add_watch("ip", "203.0.113.66", "threat-feed", 95)
        ingest = IndicatorIngest(db)

        indicators = ingest.ingest([("manual", {"type": "ip", "value": "203.0.113.66"})])

        indicator = indicators[0]
        assert indicator.watchlist_match
        assert indicator.confidence == 95
        assert "watchlist" in indicator.tags
        stored = db.get_indicator(indicator.fingerprint)
        assert stored["value"] == "203.0.113.66"

    def test_watch_entry_refreshes_existing_value(self, db):
        db.add_watch("domain", "evil.top", "analyst", 40)
        db.add_watch_entry(WatchEntry(ioc_type="domain", value="evil.top",
                                      source="threat-feed", confidence=90))

        watch = db.check_watch("evil.top")
        assert watch["confidence"] == 90
        assert watch["source"] == "analyst"

    def test_fingerprint_ignores_source(self, ingest):
        a = ingest.normalize("manual", {"type": "ip", "value": "203.0.113.1"})[0]
        b = ingest.normalize("siem", {"indicators": [{"type": "ip", "value": "203.0.113.1"}]})[0]
        assert a.fingerprint == b.fingerprint
