"""
Exception hierarchy for SOARKit.
"""

from typing import Optional


class SoarKitError(Exception):
    """Base class for all SOARKit errors."""


class ConfigError(SoarKitError):
    """Configuration names something that is missing or unusable."""


class IngestError(SoarKitError):
    """An alert payload could not be normalized."""


class UnknownSourceError(IngestError):
    """No adapter is registered for the alert source."""

    def __init__(self, source: str):
        super().__init__(f"No ingest adapter registered for source: {source}")
        self.source = source


class ClassificationError(SoarKitError):
    """An indicator set could not be classified."""


class PlaybookError(SoarKitError):
    """A playbook is invalid or could not be run."""


class PlaybookNotFoundError(PlaybookError):
    """No playbook matches the incident."""


class ActionError(SoarKitError):
    """A containment action failed."""

    def __init__(self, message: str, command: Optional[str] = None):
        super().__init__(message)
        self.command = command


class TransientActionError(ActionError):
    """Failure worth retrying (timeouts, throttling, 5xx)."""


class PermanentActionError(ActionError):
    """Failure that a retry cannot fix."""


class EvidenceCollectionError(SoarKitError):
    """Volatile evidence could not be captured."""

    def __init__(self, message: str, host: Optional[str] = None):
        super().__init__(message)
        self.host = host


class AuditIntegrityError(SoarKitError):
    """The audit hash chain is broken."""


class IncidentError(SoarKitError):
    """Incident lifecycle error."""


class IncidentNotFoundError(IncidentError):

    def __init__(self, incident_id: str):
        super().__init__(f"Incident not found: {incident_id}")
        self.incident_id = incident_id


class InvalidTransitionError(IncidentError):

    def __init__(self, incident_id: str, old_status: str, new_status: str):
        super().__init__(
            f"Incident {incident_id} cannot move from {old_status} to {new_status}"
        )
        self.old_status = old_status
        self.new_status = new_status
