"""
Action Executor - run containment actions idempotently with bounded retries.
"""

import hashlib
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from soarkit.core.database import Database
from soarkit.core.errors import ActionError, PermanentActionError, TransientActionError
from soarkit.core.logger import get_logger
from soarkit.core.utils import utcnow
from soarkit.incident.containment import ContainmentBackend, ContainmentType, DryRunBackend
from soarkit.incident.timeline import AuditLog

logger = get_logger(__name__)


def idempotency_key(incident_id: str, action_type: str, target: str) -> str:
    return hashlib.sha256(f"{incident_id}|{action_type}|{target}".encode()).hexdigest()


@dataclass
class ActionRequest:
    """A containment action to carry out for an incident."""
    action_type: ContainmentType
    target: str
    incident_id: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    step_id: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.action_type, ContainmentType):
            self.action_type = ContainmentType(self.action_type)

    @property
    def idempotency_key(self) -> str:
        return idempotency_key(self.incident_id, self.action_type.value, self.target)


@dataclass
class ActionResult:
    """Outcome of executing an ActionRequest."""
    action_id: str
    idempotency_key: str
    action_type: str
    target: str
    status: str  # success, failed, already_applied, reverted
    attempts: int
    message: str
    backend: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    revert_command: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status in ("success", "already_applied")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action_id": self.action_id,
            "idempotency_key": self.idempotency_key,
            "action_type": self.action_type,
            "target": self.target,
            "status": self.status,
            "attempts": self.attempts,
            "message": self.message,
            "backend": self.backend,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "revert_command": self.revert_command,
        }


class ActionExecutor:
    """
    Execute containment actions against pluggable backends.

    Features:
    - Idempotency: a successful action is never applied twice
    - Exponential backoff on transient failures
    - Per-action-type backend routing
    - Revert of reversible actions
    - Every attempt recorded in the audit log
    """

    def __init__(
        self,
        db: Database,
        audit: AuditLog,
        backends: Optional[Dict[str, ContainmentBackend]] = None,
        max_attempts: int = 3,
        backoff_base: float = 0.5,
        backoff_max: float = 8.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.audit = audit
        self.backends = dict(backends or {"default": DryRunBackend()})
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.sleep = sleep

    def backoff(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)."""
        return min(self.backoff_base * 2 ** (attempt - 1), self.backoff_max)

    def backend_for(self, action_type: ContainmentType) -> ContainmentBackend:
        backend = self.backends.get(action_type.value) or self.backends.get("default")
        if backend is None:
            raise PermanentActionError(f"No backend configured for {action_type.value}")
        return backend

    def _already_applied(self, request: ActionRequest, existing: Dict[str, Any]) -> ActionResult:
        self.audit.append("action.skipped", request.incident_id, "executor", {
            "action_id": existing["id"],
            "action_type": request.action_type.value,
            "target": request.target,
            "reason": "already_applied",
        })
        logger.info(
            f"{request.action_type.value} on {request.target} already applied "
            f"as {existing['id']}"
        )
        return ActionResult(
            action_id=existing["id"],
            idempotency_key=request.idempotency_key,
            action_type=request.action_type.value,
            target=request.target,
            status="already_applied",
            attempts=0,
            message=existing.get("result") or "already applied",
            backend=existing.get("backend"),
            started_at=existing.get("started_at"),
            completed_at=existing.get("completed_at"),
            revert_command=existing.get("revert_command"),
        )

    def execute(self, request: ActionRequest) -> ActionResult:
        """Apply an action, retrying transient failures."""
        key = request.idempotency_key
        existing = self.db.get_action_by_key(key)
        if existing and existing["status"] == "success":
            return self._already_applied(request, existing)

        action_id = existing["id"] if existing else f"act-{uuid.uuid4().hex[:12]}"
        started_at = utcnow().isoformat()
        status = "failed"
        message = ""
        revert_command = None
        backend_name = None
        attempts = 0

        try:
            backend = self.backend_for(request.action_type)
        except ActionError as e:
            message = str(e)
            backend = None
        else:
            backend_name = backend.name

        while backend is not None and attempts < self.max_attempts:
            attempts += 1
            self.audit.append("action.attempt", request.incident_id, "executor", {
                "action_id": action_id,
                "action_type": request.action_type.value,
                "target": request.target,
                "attempt": attempts,
                "backend": backend_name,
                "step_id": request.step_id,
            })
            try:
                outcome = backend.apply(request)
            except TransientActionError as e:
                message = str(e)
                logger.warning(
                    f"Transient failure {attempts}/{self.max_attempts} for "
                    f"{request.action_type.value} on {request.target}: {e}"
                )
                if attempts < self.max_attempts:
                    self.sleep(self.backoff(attempts))
                continue
            except PermanentActionError as e:
                message = str(e)
                break

            status = "success"
            message = outcome.message
            revert_command = outcome.revert_command
            break

        completed_at = utcnow().isoformat()
        action_id = self.db.record_action(
            id=action_id,
            idempotency_key=key,
            incident_id=request.incident_id,
            action_type=request.action_type.value,
            target=request.target,
            step_id=request.step_id,
            backend=backend_name,
            status=status,
            attempts=attempts,
            result=message,
            revert_command=revert_command,
            parameters=request.parameters,
            started_at=started_at,
            completed_at=completed_at,
        )

        self.audit.append(f"action.{status}", request.incident_id, "executor", {
            "action_id": action_id,
            "action_type": request.action_type.value,
            "target": request.target,
            "attempts": attempts,
            "backend": backend_name,
            "message": message,
        })
        logger.containment(
            request.action_type.value, request.target, status,
            incident_id=request.incident_id, attempts=attempts,
        )

        return ActionResult(
            action_id=action_id,
            idempotency_key=key,
            action_type=request.action_type.value,
            target=request.target,
            status=status,
            attempts=attempts,
            message=message,
            backend=backend_name,
            started_at=started_at,
            completed_at=completed_at,
            revert_command=revert_command,
        )

    def revert(self, action_id: str, actor: str = "executor") -> bool:
        """Revert a successful, reversible action."""
        action = self.db.get_action(action_id)
        if not action or action["status"] != "success" or not action.get("revert_command"):
            return False

        action_type = ContainmentType(action["action_type"])
        backend = next(
            (b for b in self.backends.values() if b.name == action["backend"]), None
        ) or self.backend_for(action_type)

        if not backend.can_revert(action_type):
            return False

        try:
            message = backend.revert(action)
        except ActionError as e:
            logger.error(f"Failed to revert {action_id}: {e}")
            self.audit.append("action.revert_failed", action["incident_id"], actor, {
                "action_id": action_id,
                "error": str(e),
            })
            return False

        self.db.update_action_status(action_id, "reverted", message)
        self.audit.append("action.reverted", action["incident_id"], actor, {
            "action_id": action_id,
            "action_type": action["action_type"],
            "target": action["target"],
            "message": message,
        })
        logger.containment(action["action_type"], action["target"], "reverted",
                           incident_id=action["incident_id"])
        return True

    def get_active_containments(self, incident_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Successful actions that have not been reverted."""
        return self.db.get_actions(incident_id=incident_id, status="success")

    def get_action_history(self, incident_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """All actions with whether they can still be reverted."""
        history = []
        for action in self.db.get_actions(incident_id=incident_id):
            action = dict(action)
            action["can_revert"] = bool(
                action["status"] == "success" and action.get("revert_command")
            )
            history.append(action)
        return history
