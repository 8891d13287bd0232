"""
Audit and Timeline Store - tamper-evident audit log and incident timelines.
"""

import csv
import hashlib
import json
import threading
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

from soarkit.core.errors import AuditIntegrityError
from soarkit.core.logger import get_logger
from soarkit.core.utils import parse_timestamp, utcnow

logger = get_logger(__name__)


@dataclass
class AuditRecord:
    """One entry of the audit hash chain."""
    sequence: int
    timestamp: str
    event_type: str
    incident_id: Optional[str]
    actor: str
    details: Dict[str, Any]
    previous_hash: Optional[str]
    entry_hash: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class AuditLog:
    """
    Append-only JSONL audit log.

    Every entry stores the hash of the entry before it, so editing,
    reordering or deleting a line breaks the chain and is reported by
    verify(). Reopening an existing file continues the same chain.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self.last_hash: Optional[str] = None
        self.sequence = 0
        self._resume()

    def _resume(self):
        if not self.path.exists():
            return
        last_line = None
        with open(self.path) as f:
            for line in f:
                if line.strip():
                    last_line = line
        if last_line is None:
            return
        try:
            last = json.loads(last_line)
        except json.JSONDecodeError as e:
            raise AuditIntegrityError(f"Cannot resume audit log {self.path}: {e}") from e
        self.last_hash = last.get("entry_hash")
        self.sequence = int(last.get("sequence", 0))

    @staticmethod
    def _compute_hash(entry: Dict[str, Any]) -> str:
        entry_json = json.dumps(entry, sort_keys=True, default=str)
        return hashlib.sha256(entry_json.encode()).hexdigest()

    def append(
        self,
        event_type: str,
        incident_id: Optional[str] = None,
        actor: str = "system",
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditRecord:
        """Append an entry and return it with its hash."""
        # Round-trip so the hashed form equals what verify() reads back
        details = json.loads(json.dumps(details or {}, default=str))

        with self._lock:
            record = AuditRecord(
                sequence=self.sequence + 1,
                timestamp=utcnow().isoformat(),
                event_type=event_type,
                incident_id=incident_id,
                actor=actor,
                details=details,
                previous_hash=self.last_hash,
            )
            entry = record.to_dict()
            entry.pop("entry_hash")
            record.entry_hash = self._compute_hash(entry)

            with open(self.path, "a") as f:
                f.write(json.dumps(record.to_dict(), sort_keys=True) + "\n")

            self.sequence = record.sequence
            self.last_hash = record.entry_hash

        logger.debug(f"Audit #{record.sequence} {event_type} ({incident_id or '-'})")
        return record

    def __iter__(self) -> Iterator[AuditRecord]:
        if not self.path.exists():
            return
        with open(self.path) as f:
            for line in f:
                if line.strip():
                    yield AuditRecord(**json.loads(line))

    def records(
        self,
        incident_id: Optional[str] = None,
        event_type: Optional[str] = None,
    ) -> List[AuditRecord]:
        """Read entries, optionally filtered. Event types match by prefix."""
        results = []
        for record in self:
            if incident_id and record.incident_id != incident_id:
                continue
            if event_type and not record.event_type.startswith(event_type):
                continue
            results.append(record)
        return results

    def verify(self) -> Dict[str, Any]:
        """
        Verify integrity of the whole chain.

        Returns:
            {
                "valid": bool,
                "entries_checked": int,
                "first_invalid_entry": int or None,
                "error": str or None
            }
        """
        entries_checked = 0
        previous_hash = None

        def broken(line_num: int, error: str) -> Dict[str, Any]:
            return {
                "valid": False,
                "entries_checked": entries_checked,
                "first_invalid_entry": line_num,
                "error": error,
            }

        if not self.path.exists():
            return {"valid": True, "entries_checked": 0, "first_invalid_entry": None, "error": None}

        with open(self.path) as f:
            for line_num, line in enumerate(f, 1):
                try:
                    entry = json.loads(line.strip())
                except json.JSONDecodeError as e:
                    return broken(line_num, f"JSON decode error at entry {line_num}: {e}")
                entries_checked += 1

                if entry.get("previous_hash") != previous_hash:
                    return broken(line_num, f"Hash chain broken at entry {line_num}")

                if entry.get("sequence") != line_num:
                    return broken(line_num, f"Sequence gap at entry {line_num}")

                stored_hash = entry.pop("entry_hash", None)
                if stored_hash != self._compute_hash(entry):
                    return broken(line_num, f"Entry hash mismatch at entry {line_num}")

                previous_hash = stored_hash

        return {
            "valid": True,
            "entries_checked": entries_checked,
            "first_invalid_entry": None,
            "error": None,
        }


@dataclass
class TimelineEvent:
    """A single event in the timeline."""
    timestamp: datetime
    source: str
    event_type: str
    description: str
    severity: str = "info"  # info, warning, alert, critical
    actor: Optional[str] = None
    target: Optional[str] = None
    raw_data: Optional[Dict[str, Any]] = None
    related_events: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    id: str = ""


@dataclass
class TimelinePhase:
    """A phase of the attack/incident."""
    name: str
    start_time: datetime
    end_time: Optional[datetime]
    description: str
    mitre_tactics: List[str] = field(default_factory=list)
    events: List[TimelineEvent] = field(default_factory=list)


class TimelineBuilder:
    """
    Build incident timelines from the audit log, alerts and log entries.

    Features:
    - Multi-source event aggregation
    - Automatic event correlation
    - MITRE ATT&CK mapping
    - Attack phase identification
    - JSON, CSV and Markdown export
    """

    MITRE_TACTICS = {
        "reconnaissance": ["scan", "probe", "enumerate", "discover"],
        "initial_access": ["phish", "exploit", "drive-by", "supply chain"],
        "execution": ["powershell", "script", "command", "cmd.exe", "wscript"],
        "persistence": ["scheduled task", "registry", "startup"],
        "privilege_escalation": ["sudo", "elevation", "privilege"],
        "defense_evasion": ["clear log", "masquerade", "obfuscate", "tamper"],
        "credential_access": ["dump", "credential", "password", "brute", "keylog"],
        "discovery": ["whoami", "ipconfig", "net user", "systeminfo"],
        "lateral_movement": ["psexec", "wmi", "rdp", "lateral"],
        "collection": ["archive", "compress", "stage", "clipboard"],
        "exfiltration": ["upload", "exfil", "bytes_out"],
        "impact": ["encrypt", "destroy", "ransom", "wipe", "flood", "denial"],
    }

    TACTIC_ORDER = list(MITRE_TACTICS)

    AUDIT_SEVERITY = {
        "action.failed": "alert",
        "action.blocked": "alert",
        "evidence.failed": "alert",
        "incident.escalation": "warning",
        "classification": "warning",
    }

    def __init__(self):
        self.events: List[TimelineEvent] = []
        self.phases: List[TimelinePhase] = []
        self._event_counter = 0

    def add_event(
        self,
        timestamp: datetime,
        source: str,
        event_type: str,
        description: str,
        severity: str = "info",
        actor: str = None,
        target: str = None,
        raw_data: Dict[str, Any] = None,
        tags: List[str] = None
    ) -> TimelineEvent:
        """Add an event to the timeline."""
        self._event_counter += 1

        event = TimelineEvent(
            id=f"evt-{self._event_counter:06d}",
            timestamp=timestamp,
            source=source,
            event_type=event_type,
            description=description,
            severity=severity,
            actor=actor,
            target=target,
            raw_data=raw_data or {},
            tags=list(tags or []),
        )

        for tactic in self._identify_mitre_tactics(description):
            if tactic not in event.tags:
                event.tags.append(tactic)

        self.events.append(event)
        return event

    def add_events_from_audit(self, records: List[AuditRecord]):
        """Add events from audit log records."""
        for record in records:
            details = record.details
            summary = details.get("message") or ", ".join(
                f"{k}={v}" for k, v in details.items() if not isinstance(v, (dict, list))
            )
            self.add_event(
                timestamp=parse_timestamp(record.timestamp) or utcnow(),
                source="audit",
                event_type=record.event_type,
                description=f"{record.event_type}: {summary}" if summary else record.event_type,
                severity=self._audit_severity(record.event_type),
                actor=record.actor,
                target=details.get("target"),
                raw_data=record.to_dict(),
            )

    def add_events_from_logs(self, log_entries: List[Dict[str, Any]], source: str = "logs"):
        """Add events from parsed log entries."""
        for entry in log_entries:
            self.add_event(
                timestamp=parse_timestamp(entry.get("timestamp")) or utcnow(),
                source=source,
                event_type=entry.get("event_type", "log"),
                description=entry.get("message", str(entry)),
                severity=self._map_severity(entry.get("level", "info")),
                actor=entry.get("user") or entry.get("source_ip"),
                target=entry.get("target") or entry.get("dest_ip"),
                raw_data=entry,
            )

    def add_events_from_alerts(self, alerts: List[Dict[str, Any]], source: str = "alerts"):
        """Add events from raw alert payloads."""
        for alert in alerts:
            self.add_event(
                timestamp=parse_timestamp(alert.get("timestamp")) or utcnow(),
                source=alert.get("source", source),
                event_type=alert.get("type", "alert"),
                description=str(
                    alert.get("title") or alert.get("detection_name")
                    or alert.get("description") or alert.get("subject") or "alert"
                ),
                severity=self._map_severity(str(alert.get("severity", "warning"))),
                actor=alert.get("src_ip") or alert.get("source_ip") or alert.get("sender"),
                target=alert.get("dst_ip") or alert.get("dest_ip") or alert.get("hostname"),
                raw_data=alert,
                tags=alert.get("tags", []),
            )

    def _audit_severity(self, event_type: str) -> str:
        for prefix, severity in self.AUDIT_SEVERITY.items():
            if event_type.startswith(prefix):
                return severity
        return "info"

    def _map_severity(self, level: str) -> str:
        """Map log level to timeline severity."""
        level = level.lower()
        if level in ("critical", "emergency", "fatal"):
            return "critical"
        elif level in ("error", "err", "high"):
            return "alert"
        elif level in ("warning", "warn", "medium"):
            return "warning"
        return "info"

    def _identify_mitre_tactics(self, text: str) -> List[str]:
        """Identify MITRE ATT&CK tactics from text."""
        text_lower = text.lower()
        return [
            f"mitre:{tactic}"
            for tactic, keywords in self.MITRE_TACTICS.items()
            if any(keyword in text_lower for keyword in keywords)
        ]

    def correlate_events(self, time_window: int = 300) -> None:
        """Link events sharing an actor or target within a time window."""
        self.events.sort(key=lambda x: x.timestamp)

        for i, event in enumerate(self.events):
            for other in self.events[i + 1:]:
                if (other.timestamp - event.timestamp).total_seconds() > time_window:
                    break

                same_actor = event.actor and event.actor == other.actor
                same_target = event.target and event.target == other.target
                if same_actor or same_target:
                    if other.id not in event.related_events:
                        event.related_events.append(other.id)
                    if event.id not in other.related_events:
                        other.related_events.append(event.id)

    def identify_phases(self) -> List[TimelinePhase]:
        """Group events into attack phases by MITRE tactic."""
        self.phases = []

        tactic_events: Dict[str, List[TimelineEvent]] = defaultdict(list)
        for event in self.events:
            for tag in event.tags:
                if tag.startswith("mitre:"):
                    tactic_events[tag[len("mitre:"):]].append(event)

        for tactic in self.TACTIC_ORDER:
            if tactic in tactic_events:
                events = sorted(tactic_events[tactic], key=lambda x: x.timestamp)
                self.phases.append(TimelinePhase(
                    name=tactic.replace("_", " ").title(),
                    start_time=events[0].timestamp,
                    end_time=events[-1].timestamp if len(events) > 1 else None,
                    description=f"Attack phase: {tactic}",
                    mitre_tactics=[tactic],
                    events=events,
                ))

        return self.phases

    def get_timeline(
        self,
        start_time: datetime = None,
        end_time: datetime = None,
        severity: str = None,
        actor: str = None,
        source: str = None
    ) -> List[TimelineEvent]:
        """Get filtered and sorted timeline."""
        events = self.events.copy()

        if start_time:
            events = [e for e in events if e.timestamp >= start_time]
        if end_time:
            events = [e for e in events if e.timestamp <= end_time]
        if severity:
            events = [e for e in events if e.severity == severity]
        if actor:
            events = [e for e in events if e.actor == actor]
        if source:
            events = [e for e in events if e.source == source]

        return sorted(events, key=lambda x: x.timestamp)

    def get_statistics(self) -> Dict[str, Any]:
        """Get timeline statistics."""
        if not self.events:
            return {"total_events": 0}

        by_severity = defaultdict(int)
        by_source = defaultdict(int)
        by_type = defaultdict(int)
        actors = set()
        targets = set()

        for event in self.events:
            by_severity[event.severity] += 1
            by_source[event.source] += 1
            by_type[event.event_type] += 1
            if event.actor:
                actors.add(event.actor)
            if event.target:
                targets.add(event.target)

        return {
            "total_events": len(self.events),
            "time_range": {
                "start": min(e.timestamp for e in self.events).isoformat(),
                "end": max(e.timestamp for e in self.events).isoformat(),
            },
            "by_severity": dict(by_severity),
            "by_source": dict(by_source),
            "by_type": dict(sorted(by_type.items(), key=lambda x: x[1], reverse=True)[:10]),
            "unique_actors": len(actors),
            "unique_targets": len(targets),
            "phases_identified": len(self.phases),
        }

    def export_timeline(self, output_file: str, format: str = "json"):
        """Export timeline to file as json, csv or markdown."""
        exporters = {
            "json": self._export_json,
            "csv": self._export_csv,
            "markdown": self._export_markdown,
        }
        if format not in exporters:
            raise ValueError(f"Unsupported timeline format: {format}")
        exporters[format](output_file)
        logger.info(f"Exported timeline to {output_file}")

    def _sorted(self) -> List[TimelineEvent]:
        return sorted(self.events, key=lambda x: x.timestamp)

    def _export_json(self, output_file: str):
        data = {
            "generated_at": utcnow().isoformat(),
            "statistics": self.get_statistics(),
            "phases": [
                {
                    "name": p.name,
                    "start": p.start_time.isoformat(),
                    "end": p.end_time.isoformat() if p.end_time else None,
                    "tactics": p.mitre_tactics,
                    "event_count": len(p.events),
                }
                for p in self.phases
            ],
            "events": [
                {
                    "id": e.id,
                    "timestamp": e.timestamp.isoformat(),
                    "source": e.source,
                    "type": e.event_type,
                    "severity": e.severity,
                    "description": e.description,
                    "actor": e.actor,
                    "target": e.target,
                    "tags": e.tags,
                    "related": e.related_events,
                }
                for e in self._sorted()
            ],
        }

        with open(output_file, "w") as f:
            json.dump(data, f, indent=2, default=str)

    def _export_csv(self, output_file: str):
        with open(output_file, "w", newline="") as f:
            writer = csv.writer(f)
            writer.writerow([
                "Timestamp", "Source", "Type", "Severity",
                "Description", "Actor", "Target", "Tags"
            ])
            for event in self._sorted():
                writer.writerow([
                    event.timestamp.isoformat(),
                    event.source,
                    event.event_type,
                    event.severity,
                    event.description,
                    event.actor or "",
                    event.target or "",
                    ", ".join(event.tags),
                ])

    def to_markdown(self) -> str:
        md = "# Incident Timeline\n\n"
        md += f"Generated: {utcnow().isoformat()}\n\n"

        stats = self.get_statistics()
        md += "## Summary\n\n"
        md += f"- Total Events: {stats['total_events']}\n"
        if stats.get("time_range"):
            md += f"- Time Range: {stats['time_range']['start']} to {stats['time_range']['end']}\n"
        md += f"- Unique Actors: {stats.get('unique_actors', 0)}\n"
        md += f"- Unique Targets: {stats.get('unique_targets', 0)}\n\n"

        if self.phases:
            md += "## Attack Phases\n\n"
            for phase in self.phases:
                md += f"### {phase.name}\n"
                md += f"- Start: {phase.start_time.isoformat()}\n"
                md += f"- Events: {len(phase.events)}\n"
                md += f"- MITRE Tactics: {', '.join(phase.mitre_tactics)}\n\n"

        md += "## Events\n\n"
        md += "| Time | Source | Type | Severity | Description |\n"
        md += "|------|--------|------|----------|-------------|\n"
        for event in self._sorted():
            time_str = event.timestamp.strftime("%Y-%m-%d %H:%M:%S")
            desc = event.description[:60] + "..." if len(event.description) > 60 else event.description
            md += f"| {time_str} | {event.source} | {event.event_type} | {event.severity} | {desc} |\n"
        return md

    def _export_markdown(self, output_file: str):
        with open(output_file, "w") as f:
            f.write(self.to_markdown())
