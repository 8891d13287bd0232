"""
Tests for the audit hash chain and timeline reconstruction.
"""

import csv
import json
from datetime import datetime, timedelta, timezone

import pytest

from soarkit.core.errors import AuditIntegrityError
from soarkit.incident.timeline import AuditLog, TimelineBuilder


def rewrite(path, mutate):
    lines = path.read_text().splitlines()
    lines = mutate(lines)
    path.write_text("".join(line + "\n" for line in lines))


class TestAuditLog:

    def test_append_chains_hashes(self, audit):
        first = audit.append("classification", "INC-1", "orchestrator", {"category": "malware"})
        second = audit.append("action.success", "INC-1", "executor", {"target": "ws-042"})

        assert first.sequence == 1
        assert first.previous_hash is None
        assert second.previous_hash == first.entry_hash
        assert len(second.entry_hash) == 64

    def test_verify_clean_log(self, audit):
        for n in range(5):
            audit.append("action.attempt", "INC-1", details={"attempt": n})
        assert audit.verify() == {
            "valid": True, "entries_checked": 5, "first_invalid_entry": None, "error": None,
        }

    def test_verify_missing_file(self, tmp_path):
        log = AuditLog(tmp_path / "empty" / "audit.jsonl")
        assert log.verify()["valid"] is True

    def test_edited_entry_is_detected(self, audit):
        for n in range(3):
            audit.append("action.attempt", "INC-1", details={"attempt": n})

        def tamper(lines):
            entry = json.loads(lines[1])
            entry["details"]["attempt"] = 99
            lines[1] = json.dumps(entry, sort_keys=True)
            return lines

        rewrite(audit.path, tamper)
        result = audit.verify()
        assert result["valid"] is False
        assert result["first_invalid_entry"] == 2
        assert "hash mismatch" in result["error"]

    def test_deleted_entry_is_detected(self, audit):
        for n in range(3):
            audit.append("action.attempt", "INC-1", details={"attempt": n})

        rewrite(audit.path, lambda lines: [lines[0], lines[2]])
        result = audit.verify()
        assert result["valid"] is False
        assert result["first_invalid_entry"] == 2

    def test_reordered_entries_are_detected(self, audit):
        for n in range(3):
            audit.append("action.attempt", "INC-1", details={"attempt": n})

        rewrite(audit.path, lambda lines: [lines[1], lines[0], lines[2]])
        assert audit.verify()["first_invalid_entry"] == 1

    def test_garbage_line_is_detected(self, audit):
        audit.append("classification", "INC-1")
        with open(audit.path, "a") as f:
            f.write("not json\n")
        result = audit.verify()
        assert result["valid"] is False
        assert "JSON decode error" in result["error"]

    def test_reopen_continues_chain(self, audit):
        audit.append("classification", "INC-1")
        last = audit.append("playbook.selected", "INC-1")

        reopened = AuditLog(audit.path)
        record = reopened.append("playbook.started", "INC-1")

        assert record.sequence == 3
        assert record.previous_hash == last.entry_hash
        assert reopened.verify()["valid"] is True

    def test_reopen_with_corrupt_tail(self, audit):
        audit.append("classification", "INC-1")
        with open(audit.path, "a") as f:
            f.write("{truncated\n")
        with pytest.raises(AuditIntegrityError):
            AuditLog(audit.path)

    def test_details_are_json_normalized(self, audit):
        when = datetime(2024, 3, 1, tzinfo=timezone.utc)
        record = audit.append("evidence.collected", "INC-1", details={"at": when, "n": (1, 2)})
        assert record.details == {"at": str(when), "n": [1, 2]}
        assert audit.verify()["valid"] is True

    def test_records_filter(self, audit):
        audit.append("action.attempt", "INC-1")
        audit.append("action.success", "INC-1")
        audit.append("playbook.started", "INC-1")
        audit.append("action.success", "INC-2")

        assert len(audit.records(incident_id="INC-1")) == 3
        assert len(audit.records(event_type="action.")) == 3
        assert len(audit.records(incident_id="INC-2", event_type="action")) == 1


class TestTimelineBuilder:

    @pytest.fixture
    def builder(self):
        builder = TimelineBuilder()
        start = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
        builder.add_event(start, "edr", "alert", "Phishing attachment opened",
                          actor="bob", target="ws-042")
        builder.add_event(start + timedelta(minutes=1), "edr", "alert",
                          "powershell download cradle", actor="bob", target="ws-042")
        builder.add_event(start + timedelta(minutes=3), "edr", "alert",
                          "Files encrypt in progress", target="ws-042", severity="critical")
        builder.add_event(start + timedelta(hours=2), "network", "alert",
                          "Port scan from outside", actor="203.0.113.9")
        return builder

    def test_mitre_tags(self, builder):
        assert "mitre:initial_access" in builder.events[0].tags
        assert "mitre:execution" in builder.events[1].tags
        assert "mitre:impact" in builder.events[2].tags

    def test_correlation_is_symmetric_and_windowed(self, builder):
        builder.correlate_events(time_window=300)
        first, second, third, scan = builder.events

        assert second.id in first.related_events
        assert first.id in second.related_events
        assert third.id in first.related_events
        assert scan.related_events == []

    def test_phases_follow_tactic_order(self, builder):
        phases = builder.identify_phases()
        names = [p.name for p in phases]
        assert names.index("Reconnaissance") < names.index("Initial Access") < names.index("Impact")

    def test_from_audit(self, audit):
        audit.append("action.failed", "INC-1", "executor",
                     {"target": "ws-042", "message": "iptables missing"})
        builder = TimelineBuilder()
        builder.add_events_from_audit(audit.records())

        event = builder.events[0]
        assert event.severity == "alert"
        assert event.target == "ws-042"
        assert "iptables missing" in event.description

    def test_from_alerts(self, edr_alert):
        builder = TimelineBuilder()
        builder.add_events_from_alerts([edr_alert], source="edr")
        event = builder.events[0]
        assert event.description == "Ransom.Win32.Crypt"
        assert event.severity == "critical"
        assert event.target == "WS-042"

    def test_statistics(self, builder):
        stats = builder.get_statistics()
        assert stats["total_events"] == 4
        assert stats["by_source"] == {"edr": 3, "network": 1}
        assert TimelineBuilder().get_statistics() == {"total_events": 0}

    def test_export_json(self, builder, tmp_path):
        out = tmp_path / "timeline.json"
        builder.export_timeline(str(out), "json")
        data = json.loads(out.read_text())
        assert len(data["events"]) == 4

    def test_export_csv(self, builder, tmp_path):
        out = tmp_path / "timeline.csv"
        builder.export_timeline(str(out), "csv")
        with open(out, newline="") as f:
            rows = list(csv.reader(f))
        assert rows[0][0] == "Timestamp"
        assert len(rows) == 5

    def test_export_markdown(self, builder, tmp_path):
        out = tmp_path / "timeline.md"
        builder.identify_phases()
        builder.export_timeline(str(out), "markdown")
        text = out.read_text()
        assert text.startswith("# Incident Timeline")
        assert "## Attack Phases" in text

    def test_export_unknown_format(self, builder, tmp_path):
        with pytest.raises(ValueError):
            builder.export_timeline(str(tmp_path / "t.html"), "html")
