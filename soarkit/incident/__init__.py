"""
Incident Response Module for SOARKit.
Classification, playbooks, containment, evidence and audit.
"""

from soarkit.incident.response import (
    Incident, IncidentCategory, IncidentResponder, IncidentStatus,
)
from soarkit.incident.classifier import Classification, SeverityClassifier
from soarkit.incident.containment import (
    CommandBackend, ContainmentType, DryRunBackend, HttpBackend,
)
from soarkit.incident.executor import ActionExecutor, ActionRequest, ActionResult
from soarkit.incident.evidence import EvidenceCollector, EvidenceItem, EvidenceKind, RemoteCollector
from soarkit.incident.timeline import AuditLog, AuditRecord, TimelineBuilder
from soarkit.incident.playbooks import (
    Playbook, PlaybookEngine, PlaybookExecution, PlaybookSelector, PlannedAction, StepType,
)
from soarkit.incident.notify import NotificationDispatcher

__all__ = [
    "Incident",
    "IncidentCategory",
    "IncidentResponder",
    "IncidentStatus",
    "Classification",
    "SeverityClassifier",
    "CommandBackend",
    "ContainmentType",
    "DryRunBackend",
    "HttpBackend",
    "ActionExecutor",
    "ActionRequest",
    "ActionResult",
    "EvidenceCollector",
    "EvidenceItem",
    "EvidenceKind",
    "RemoteCollector",
    "AuditLog",
    "AuditRecord",
    "TimelineBuilder",
    "Playbook",
    "PlaybookEngine",
    "PlaybookExecution",
    "PlaybookSelector",
    "PlannedAction",
    "StepType",
    "NotificationDispatcher",
]
