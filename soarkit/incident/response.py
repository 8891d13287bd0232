"""
Incident Responder - incident records, lifecycle and response metrics.
"""

import json
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass, field
from enum import Enum

from soarkit.core.errors import IncidentNotFoundError, InvalidTransitionError
from soarkit.core.logger import get_logger
from soarkit.core.severity import Severity
from soarkit.core.utils import utcnow

logger = get_logger(__name__)

# Incidents share the ingest severity scale
IncidentSeverity = Severity


class IncidentStatus(Enum):
    NEW = "new"
    INVESTIGATING = "investigating"
    CONTAINED = "contained"
    ERADICATED = "eradicated"
    RECOVERED = "recovered"
    CLOSED = "closed"


class IncidentCategory(Enum):
    MALWARE = "malware"
    PHISHING = "phishing"
    INTRUSION = "intrusion"
    DATA_BREACH = "data_breach"
    DOS = "denial_of_service"
    UNAUTHORIZED_ACCESS = "unauthorized_access"
    INSIDER_THREAT = "insider_threat"
    RANSOMWARE = "ransomware"
    APT = "advanced_persistent_threat"
    OTHER = "other"


ALLOWED_TRANSITIONS = {
    IncidentStatus.NEW: {
        IncidentStatus.INVESTIGATING, IncidentStatus.CONTAINED, IncidentStatus.CLOSED,
    },
    IncidentStatus.INVESTIGATING: {
        IncidentStatus.CONTAINED, IncidentStatus.ERADICATED, IncidentStatus.CLOSED,
    },
    IncidentStatus.CONTAINED: {IncidentStatus.ERADICATED, IncidentStatus.CLOSED},
    IncidentStatus.ERADICATED: {IncidentStatus.RECOVERED, IncidentStatus.CLOSED},
    IncidentStatus.RECOVERED: {IncidentStatus.CLOSED},
    IncidentStatus.CLOSED: set(),
}

NOTIFIABLE_CATEGORIES = {IncidentCategory.DATA_BREACH}


@dataclass
class IncidentNote:
    """Note attached to an incident."""
    id: str
    timestamp: datetime
    author: str
    content: str
    attachments: List[str] = field(default_factory=list)


@dataclass
class IncidentAction:
    """Analyst or playbook task tracked on the incident."""
    id: str
    timestamp: datetime
    action_type: str
    description: str
    performer: str
    status: str  # pending, completed, failed
    result: Optional[str] = None


@dataclass
class Incident:
    """Represents a security incident."""
    id: str
    title: str
    description: str
    category: IncidentCategory
    severity: Severity
    status: IncidentStatus
    detected_at: datetime
    created_at: datetime
    updated_at: datetime
    created_by: str
    assigned_to: Optional[str] = None
    indicators: List[str] = field(default_factory=list)
    iocs: List[str] = field(default_factory=list)
    affected_assets: List[str] = field(default_factory=list)
    notes: List[IncidentNote] = field(default_factory=list)
    actions: List[IncidentAction] = field(default_factory=list)
    timeline: List[Dict[str, Any]] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    contained_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    resolution: Optional[str] = None
    notification_deadline: Optional[datetime] = None
    notified_at: Optional[datetime] = None
    notified_authority: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.status != IncidentStatus.CLOSED


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _seconds(start: Optional[datetime], end: Optional[datetime]) -> Optional[float]:
    if start is None or end is None:
        return None
    return max((end - start).total_seconds(), 0.0)


class IncidentResponder:
    """
    Coordinate incident records.

    Features:
    - Incident creation from classifier output
    - Lifecycle transitions with validation
    - Notes, tasks, IoCs and affected assets
    - MTTD/MTTC/MTTR metrics
    - Breach-notification deadline tracking
    - Markdown reporting
    """

    def __init__(
        self,
        data_dir: str = "data/incidents",
        audit=None,
        breach_notification_hours: int = 72,
    ):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.audit = audit
        self.breach_notification_hours = breach_notification_hours

        self.incidents: Dict[str, Incident] = {}
        self.callbacks: Dict[str, List[Callable]] = {
            "on_create": [],
            "on_update": [],
            "on_escalate": [],
            "on_close": [],
        }

        self._load_incidents()

    def _load_incidents(self):
        """Load incidents from disk."""
        for file in sorted(self.data_dir.glob("*.json")):
            try:
                with open(file) as f:
                    data = json.load(f)
                incident = self._dict_to_incident(data)
                self.incidents[incident.id] = incident
            except (OSError, ValueError, KeyError) as e:
                logger.error(f"Failed to load incident {file}: {e}")

    def _save_incident(self, incident: Incident):
        """Save incident to disk."""
        file_path = self.data_dir / f"{incident.id}.json"
        with open(file_path, "w") as f:
            json.dump(self._incident_to_dict(incident), f, indent=2, default=str)

    def _incident_to_dict(self, incident: Incident) -> Dict[str, Any]:
        """Convert incident to dictionary."""
        return {
            "id": incident.id,
            "title": incident.title,
            "description": incident.description,
            "category": incident.category.value,
            "severity": incident.severity.value,
            "status": incident.status.value,
            "detected_at": _iso(incident.detected_at),
            "created_at": _iso(incident.created_at),
            "updated_at": _iso(incident.updated_at),
            "created_by": incident.created_by,
            "assigned_to": incident.assigned_to,
            "indicators": incident.indicators,
            "iocs": incident.iocs,
            "affected_assets": incident.affected_assets,
            "notes": [
                {
                    "id": n.id,
                    "timestamp": n.timestamp.isoformat(),
                    "author": n.author,
                    "content": n.content,
                    "attachments": n.attachments,
                }
                for n in incident.notes
            ],
            "actions": [
                {
                    "id": a.id,
                    "timestamp": a.timestamp.isoformat(),
                    "action_type": a.action_type,
                    "description": a.description,
                    "performer": a.performer,
                    "status": a.status,
                    "result": a.result,
                }
                for a in incident.actions
            ],
            "timeline": incident.timeline,
            "tags": incident.tags,
            "contained_at": _iso(incident.contained_at),
            "closed_at": _iso(incident.closed_at),
            "resolution": incident.resolution,
            "notification_deadline": _iso(incident.notification_deadline),
            "notified_at": _iso(incident.notified_at),
            "notified_authority": incident.notified_authority,
        }

    def _dict_to_incident(self, data: Dict[str, Any]) -> Incident:
        """Convert dictionary to incident."""
        return Incident(
            id=data["id"],
            title=data["title"],
            description=data["description"],
            category=IncidentCategory(data["category"]),
            severity=Severity(data["severity"]),
            status=IncidentStatus(data["status"]),
            detected_at=_dt(data.get("detected_at") or data["created_at"]),
            created_at=_dt(data["created_at"]),
            updated_at=_dt(data["updated_at"]),
            created_by=data["created_by"],
            assigned_to=data.get("assigned_to"),
            indicators=data.get("indicators", []),
            iocs=data.get("iocs", []),
            affected_assets=data.get("affected_assets", []),
            notes=[
                IncidentNote(
                    id=n["id"],
                    timestamp=_dt(n["timestamp"]),
                    author=n["author"],
                    content=n["content"],
                    attachments=n.get("attachments", []),
                )
                for n in data.get("notes", [])
            ],
            actions=[
                IncidentAction(
                    id=a["id"],
                    timestamp=_dt(a["timestamp"]),
                    action_type=a["action_type"],
                    description=a["description"],
                    performer=a["performer"],
                    status=a["status"],
                    result=a.get("result"),
                )
                for a in data.get("actions", [])
            ],
            timeline=data.get("timeline", []),
            tags=data.get("tags", []),
            contained_at=_dt(data.get("contained_at")),
            closed_at=_dt(data.get("closed_at")),
            resolution=data.get("resolution"),
            notification_deadline=_dt(data.get("notification_deadline")),
            notified_at=_dt(data.get("notified_at")),
            notified_authority=data.get("notified_authority"),
        )

    def _record(self, incident: Incident, event: str, actor: str, **details):
        """Add an entry to the incident timeline and the audit log."""
        now = utcnow()
        incident.updated_at = now
        incident.timeline.append({"timestamp": now.isoformat(), "event": event, **details})
        if self.audit is not None:
            self.audit.append(f"incident.{event}", incident.id, actor, details)

    def _notify(self, event: str, incident: Incident):
        for callback in self.callbacks[event]:
            try:
                callback(incident)
            except Exception:
                logger.exception(f"{event} callback failed for {incident.id}")

    def _require(self, incident_id: str) -> Incident:
        incident = self.incidents.get(incident_id)
        if incident is None:
            raise IncidentNotFoundError(incident_id)
        return incident

    def create_incident(
        self,
        title: str,
        description: str,
        category: IncidentCategory,
        severity: Severity,
        created_by: str = "system",
        iocs: List[str] = None,
        affected_assets: List[str] = None,
        tags: List[str] = None,
        indicators: List[str] = None,
        detected_at: Optional[datetime] = None,
    ) -> Incident:
        """Create a new incident."""
        now = utcnow()
        incident = Incident(
            id=f"INC-{now.strftime('%Y%m%d')}-{uuid.uuid4().hex[:8].upper()}",
            title=title,
            description=description,
            category=category,
            severity=severity,
            status=IncidentStatus.NEW,
            detected_at=min(detected_at, now) if detected_at else now,
            created_at=now,
            updated_at=now,
            created_by=created_by,
            indicators=indicators or [],
            iocs=iocs or [],
            affected_assets=affected_assets or [],
            tags=tags or [],
        )

        if category in NOTIFIABLE_CATEGORIES:
            incident.notification_deadline = incident.detected_at + timedelta(
                hours=self.breach_notification_hours
            )

        self._record(
            incident, "incident_created", created_by,
            description=f"Incident created by {created_by}",
            category=category.value,
            severity=severity.value,
        )

        self.incidents[incident.id] = incident
        self._save_incident(incident)
        self._notify("on_create", incident)

        logger.incident(f"Created incident: {incident.id} - {title}", incident_id=incident.id)
        return incident

    def create_from_classification(
        self,
        classification,
        indicators: List,
        created_by: str = "orchestrator",
    ) -> Incident:
        """Create an incident from a Classification and its indicators."""
        category = classification.category
        assets = list(classification.affected_assets)
        where = assets[0] if len(assets) == 1 else f"{len(assets)} assets" if assets else "unknown asset"
        title = f"{category.value.replace('_', ' ').title()} on {where}"

        iocs = [
            f"{i.indicator_type.value}:{i.value}"
            for i in indicators
            if i.indicator_type.value != "hostname" and "recipient" not in i.tags
        ]

        return self.create_incident(
            title=title,
            description="; ".join(classification.reasons),
            category=category,
            severity=classification.severity,
            created_by=created_by,
            iocs=iocs,
            affected_assets=assets,
            tags=[category.value],
            indicators=[i.fingerprint for i in indicators],
            detected_at=min(i.observed_at for i in indicators) if indicators else None,
        )

    def update_status(
        self,
        incident_id: str,
        status: IncidentStatus,
        updated_by: str = "system",
        notes: str = None
    ) -> Incident:
        """Move an incident along its lifecycle."""
        incident = self._require(incident_id)

        old_status = incident.status
        if status == old_status:
            return incident
        if status not in ALLOWED_TRANSITIONS[old_status]:
            raise InvalidTransitionError(incident_id, old_status.value, status.value)

        incident.status = status
        now = utcnow()
        if status == IncidentStatus.CONTAINED and incident.contained_at is None:
            incident.contained_at = now
        if status == IncidentStatus.CLOSED:
            incident.closed_at = now

        self._record(
            incident, "status_change", updated_by,
            old_status=old_status.value,
            new_status=status.value,
            updated_by=updated_by,
            notes=notes,
        )

        if notes:
            self.add_note(incident_id, notes, updated_by)

        self._save_incident(incident)
        self._notify("on_close" if status == IncidentStatus.CLOSED else "on_update", incident)

        logger.info(f"Updated incident {incident_id} status to {status.value}")
        return incident

    def escalate(
        self,
        incident_id: str,
        new_severity: Severity,
        reason: str,
        escalated_by: str = "system"
    ) -> Incident:
        """Raise incident severity. Lower severities are ignored."""
        incident = self._require(incident_id)

        old_severity = incident.severity
        if new_severity <= old_severity:
            logger.warning(
                f"Ignoring escalation of {incident_id} from {old_severity.value} "
                f"to {new_severity.value}"
            )
            return incident

        incident.severity = new_severity

        self._record(
            incident, "escalation", escalated_by,
            old_severity=old_severity.value,
            new_severity=new_severity.value,
            reason=reason,
            escalated_by=escalated_by,
        )

        self._save_incident(incident)
        self._notify("on_escalate", incident)

        logger.warning(f"Escalated incident {incident_id} to {new_severity.value}: {reason}")
        return incident

    def assign(
        self,
        incident_id: str,
        assignee: str,
        assigned_by: str = "system"
    ) -> Incident:
        """Assign incident to a responder."""
        incident = self._require(incident_id)

        old_assignee = incident.assigned_to
        incident.assigned_to = assignee

        self._record(
            incident, "assignment", assigned_by,
            old_assignee=old_assignee,
            new_assignee=assignee,
            assigned_by=assigned_by,
        )

        self._save_incident(incident)
        logger.info(f"Assigned incident {incident_id} to {assignee}")
        return incident

    def add_note(
        self,
        incident_id: str,
        content: str,
        author: str = "system",
        attachments: List[str] = None
    ) -> IncidentNote:
        """Add a note to incident."""
        incident = self._require(incident_id)

        note = IncidentNote(
            id=uuid.uuid4().hex[:8],
            timestamp=utcnow(),
            author=author,
            content=content,
            attachments=attachments or [],
        )

        incident.notes.append(note)
        incident.updated_at = note.timestamp

        self._save_incident(incident)
        return note

    def add_action(
        self,
        incident_id: str,
        action_type: str,
        description: str,
        performer: str = "system"
    ) -> IncidentAction:
        """Track a task on the incident."""
        incident = self._require(incident_id)

        action = IncidentAction(
            id=uuid.uuid4().hex[:8],
            timestamp=utcnow(),
            action_type=action_type,
            description=description,
            performer=performer,
            status="pending",
        )

        incident.actions.append(action)

        self._record(
            incident, "action_added", performer,
            action_type=action_type,
            description=description,
            performer=performer,
        )

        self._save_incident(incident)
        return action

    def complete_action(
        self,
        incident_id: str,
        action_id: str,
        result: str,
        status: str = "completed"
    ) -> bool:
        """Mark a tracked task as completed."""
        incident = self._require(incident_id)

        for action in incident.actions:
            if action.id == action_id:
                action.status = status
                action.result = result
                incident.updated_at = utcnow()
                self._save_incident(incident)
                return True

        return False

    def add_ioc(self, incident_id: str, ioc: str):
        """Add IOC to incident."""
        incident = self._require(incident_id)
        if ioc not in incident.iocs:
            incident.iocs.append(ioc)
            incident.updated_at = utcnow()
            self._save_incident(incident)

    def add_affected_asset(self, incident_id: str, asset: str):
        """Add affected asset to incident."""
        incident = self._require(incident_id)
        if asset not in incident.affected_assets:
            incident.affected_assets.append(asset)
            incident.updated_at = utcnow()
            self._save_incident(incident)

    def close_incident(
        self,
        incident_id: str,
        resolution: str,
        closed_by: str = "system"
    ) -> Incident:
        """Close an incident."""
        incident = self._require(incident_id)
        incident.resolution = resolution
        return self.update_status(incident_id, IncidentStatus.CLOSED, closed_by, notes=resolution)

    def mark_notified(
        self,
        incident_id: str,
        authority: str,
        notified_by: str = "system"
    ) -> Incident:
        """Record that the supervisory authority was notified of a breach."""
        incident = self._require(incident_id)

        incident.notified_at = utcnow()
        incident.notified_authority = authority

        on_time = (
            incident.notification_deadline is None
            or incident.notified_at <= incident.notification_deadline
        )
        self._record(
            incident, "authority_notified", notified_by,
            authority=authority,
            on_time=on_time,
        )

        self._save_incident(incident)
        return incident

    def overdue_notifications(self, now: Optional[datetime] = None) -> List[Incident]:
        """Breaches whose notification deadline has passed without notice."""
        now = now or utcnow()
        return sorted(
            (
                i for i in self.incidents.values()
                if i.notification_deadline is not None
                and i.notified_at is None
                and i.notification_deadline < now
            ),
            key=lambda i: i.notification_deadline,
        )

    def get_incident(self, incident_id: str) -> Incident:
        """Get incident by ID."""
        return self._require(incident_id)

    def search_incidents(
        self,
        status: IncidentStatus = None,
        severity: Severity = None,
        category: IncidentCategory = None,
        assigned_to: str = None,
        tag: str = None,
        limit: int = 100
    ) -> List[Incident]:
        """Search incidents with filters, most recently updated first."""
        results = []

        for incident in self.incidents.values():
            if status and incident.status != status:
                continue
            if severity and incident.severity != severity:
                continue
            if category and incident.category != category:
                continue
            if assigned_to and incident.assigned_to != assigned_to:
                continue
            if tag and tag not in incident.tags:
                continue

            results.append(incident)

        return sorted(results, key=lambda x: x.updated_at, reverse=True)[:limit]

    def get_open_incidents(self) -> List[Incident]:
        """Get all open incidents."""
        return [i for i in self.incidents.values() if i.is_open]

    def get_metrics(self, incident_id: str) -> Dict[str, Optional[float]]:
        """Detection, containment and resolution times in seconds."""
        incident = self._require(incident_id)
        return {
            "time_to_detect": _seconds(incident.detected_at, incident.created_at),
            "time_to_contain": _seconds(incident.created_at, incident.contained_at),
            "time_to_resolve": _seconds(incident.created_at, incident.closed_at),
        }

    def aggregate_metrics(self) -> Dict[str, Any]:
        """Mean time to detect, contain and resolve across all incidents."""
        samples: Dict[str, List[float]] = {
            "time_to_detect": [],
            "time_to_contain": [],
            "time_to_resolve": [],
        }
        for incident_id in self.incidents:
            for key, value in self.get_metrics(incident_id).items():
                if value is not None:
                    samples[key].append(value)

        def mean(values: List[float]) -> Optional[float]:
            return round(sum(values) / len(values), 2) if values else None

        return {
            "incidents": len(self.incidents),
            "mttd": mean(samples["time_to_detect"]),
            "mttc": mean(samples["time_to_contain"]),
            "mttr": mean(samples["time_to_resolve"]),
            "contained": len(samples["time_to_contain"]),
            "resolved": len(samples["time_to_resolve"]),
        }

    def get_statistics(self) -> Dict[str, Any]:
        """Get incident statistics."""
        open_incidents = self.get_open_incidents()

        return {
            "total": len(self.incidents),
            "open": len(open_incidents),
            "overdue_notifications": len(self.overdue_notifications()),
            "by_status": {
                status.value: len([i for i in self.incidents.values() if i.status == status])
                for status in IncidentStatus
            },
            "by_severity": {
                sev.value: len([i for i in self.incidents.values() if i.severity == sev])
                for sev in Severity
            },
            "by_category": {
                cat.value: len([i for i in self.incidents.values() if i.category == cat])
                for cat in IncidentCategory
            },
        }

    def generate_report(self, incident_id: str, containment: List[Dict[str, Any]] = None) -> str:
        """Generate a Markdown incident report."""
        incident = self._require(incident_id)
        metrics = self.get_metrics(incident_id)

        def fmt(seconds: Optional[float]) -> str:
            if seconds is None:
                return "n/a"
            return str(timedelta(seconds=int(seconds)))

        report = f"""
# Incident Report: {incident.id}

## Summary
- **Title:** {incident.title}
- **Category:** {incident.category.value}
- **Severity:** {incident.severity.value}
- **Status:** {incident.status.value}
- **Detected:** {incident.detected_at.isoformat()}
- **Created:** {incident.created_at.isoformat()}
- **Assigned To:** {incident.assigned_to or 'Unassigned'}

## Response Metrics
- **Time to detect:** {fmt(metrics['time_to_detect'])}
- **Time to contain:** {fmt(metrics['time_to_contain'])}
- **Time to resolve:** {fmt(metrics['time_to_resolve'])}

## Description
{incident.description}

## Affected Assets
{chr(10).join(f'- {asset}' for asset in incident.affected_assets) or 'None documented'}

## Indicators of Compromise
{chr(10).join(f'- {ioc}' for ioc in incident.iocs) or 'None documented'}
"""
        if incident.notification_deadline:
            report += "\n## Breach Notification\n"
            report += f"- **Deadline:** {incident.notification_deadline.isoformat()}\n"
            if incident.notified_at:
                report += (f"- **Notified:** {incident.notified_at.isoformat()} "
                           f"({incident.notified_authority})\n")
            else:
                report += "- **Notified:** pending\n"

        report += "\n## Timeline\n"
        for event in incident.timeline:
            report += f"- **{event['timestamp']}:** {event['event']} - {event.get('description', '')}\n"

        if containment:
            report += "\n## Containment Actions\n"
            for action in containment:
                report += (f"- [{action['status']}] {action['action_type']} -> "
                           f"{action['target']} ({action.get('attempts', 0)} attempts)\n")

        report += "\n## Tasks\n"
        for action in incident.actions:
            report += f"- [{action.status}] {action.action_type}: {action.description}\n"

        report += "\n## Notes\n"
        for note in incident.notes:
            report += f"### {note.timestamp.isoformat()} by {note.author}\n{note.content}\n\n"

        if incident.resolution:
            report += f"\n## Resolution\n{incident.resolution}\n"

        return report

    def on(self, event: str, callback: Callable):
        """Register event callback."""
        if event not in self.callbacks:
            raise ValueError(
                f"Unknown incident event {event!r}; expected one of {sorted(self.callbacks)}"
            )
        self.callbacks[event].append(callback)
