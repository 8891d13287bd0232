"""
Playbooks - select a response playbook for an incident, plan it and run it.
"""

import json
import re
import uuid
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from soarkit.core.errors import (
    EvidenceCollectionError, PlaybookError, PlaybookNotFoundError,
)
from soarkit.core.logger import get_logger
from soarkit.core.severity import Severity
from soarkit.core.utils import utcnow
from soarkit.incident.containment import ContainmentType
from soarkit.incident.executor import ActionExecutor, ActionRequest
from soarkit.incident.response import Incident, IncidentCategory, IncidentResponder

logger = get_logger(__name__)

BUILTIN_DIR = Path(__file__).parent / "builtin_playbooks"

VARIABLE = re.compile(r"\$\{(\w+)\}")

# Actions aimed at a machine rather than at something on it
HOST_TARGETED = {ContainmentType.NETWORK_ISOLATION, ContainmentType.HOST_SHUTDOWN}


class StepType(Enum):
    CONTAINMENT = "containment"
    EVIDENCE = "evidence"
    NOTIFICATION = "notification"
    MANUAL = "manual"
    PARALLEL = "parallel"


@dataclass
class PlaybookStep:
    """A step in a playbook."""
    id: str
    name: str
    step_type: StepType
    description: str
    action: Dict[str, Any]
    timeout: int = 300  # seconds
    on_failure: str = "stop"  # stop, continue, skip
    conditions: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class Playbook:
    """Incident response playbook."""
    id: str
    name: str
    description: str
    version: str
    category: IncidentCategory
    severity_levels: List[str]
    steps: List[PlaybookStep]
    priority: int = 0
    tags: List[str] = field(default_factory=list)
    author: str = ""
    source: str = "builtin"

    def matches(self, category: IncidentCategory, severity: Severity) -> bool:
        return self.category == category and severity.value in self.severity_levels


@dataclass
class PlannedAction:
    """One concrete unit of work produced by planning a playbook."""
    step_id: str
    step_type: StepType
    action_type: Optional[ContainmentType] = None
    target: Optional[str] = None
    host: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    skip_reason: Optional[str] = None
    inserted: bool = False

    @property
    def destroys_volatile_state(self) -> bool:
        return self.action_type is not None and self.action_type.destroys_volatile_state

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_id": self.step_id,
            "step_type": self.step_type.value,
            "action_type": self.action_type.value if self.action_type else None,
            "target": self.target,
            "host": self.host,
            "parameters": self.parameters,
            "skip_reason": self.skip_reason,
            "inserted": self.inserted,
        }


@dataclass
class PlaybookExecution:
    """Record of playbook execution."""
    id: str
    playbook_id: str
    incident_id: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    status: str = "running"  # running, awaiting_approval, completed, partial, failed, aborted
    current_step: int = 0
    step_results: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None
    pending_step: Optional[str] = None
    evidence_failed_hosts: List[str] = field(default_factory=list)
    incident: Optional[Incident] = field(default=None, repr=False)
    steps: List[Tuple[PlaybookStep, List[PlannedAction]]] = field(default_factory=list, repr=False)

    @property
    def actions(self) -> List[Dict[str, Any]]:
        return [a for r in self.step_results for a in r.get("actions", [])]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "playbook_id": self.playbook_id,
            "incident_id": self.incident_id,
            "status": self.status,
            "current_step": self.current_step,
            "pending_step": self.pending_step,
            "step_results": self.step_results,
            "evidence_failed_hosts": self.evidence_failed_hosts,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error,
        }


def substitute(value: Any, variables: Dict[str, Any]) -> Any:
    """
    Replace ``${name}`` references.

    A string that is exactly one reference takes the variable's raw value,
    so list variables stay lists. Unknown references are left in place.
    """
    if isinstance(value, str):
        whole = VARIABLE.fullmatch(value)
        if whole:
            return variables.get(whole.group(1), value)

        def replace(match):
            name = match.group(1)
            if name not in variables:
                return match.group(0)
            item = variables[name]
            return ", ".join(map(str, item)) if isinstance(item, (list, tuple)) else str(item)

        return VARIABLE.sub(replace, value)

    if isinstance(value, dict):
        return {k: substitute(v, variables) for k, v in value.items()}

    if isinstance(value, list):
        return [substitute(item, variables) for item in value]

    return value


def _fan_out(value: Any) -> Tuple[List[str], Optional[str]]:
    """Expand a resolved target into individual targets."""
    items = value if isinstance(value, (list, tuple, set)) else [value]
    targets = []
    for item in items:
        if item is None:
            continue
        text = str(item).strip()
        if text and text not in targets:
            targets.append(text)

    unresolved = [t for t in targets if VARIABLE.search(t)]
    if unresolved:
        return [], f"unresolved variable in {unresolved[0]}"
    if not targets:
        return [], "empty target"
    return targets, None


class PlaybookSelector:
    """
    Load playbooks and pick the one that fits an incident.

    Built-in playbooks ship with the package; playbooks in the user
    directory replace built-ins that share their id.
    """

    def __init__(self, playbook_dir: Optional[str] = None, load_builtin: bool = True):
        self.playbook_dir = Path(playbook_dir) if playbook_dir else None
        self.playbooks: Dict[str, Playbook] = {}

        if load_builtin:
            self.load_directory(BUILTIN_DIR, source="builtin")
        if self.playbook_dir and self.playbook_dir.is_dir():
            self.load_directory(self.playbook_dir, source="user")

    def load_directory(self, directory: Path, source: str = "user") -> int:
        """Load every playbook file in a directory. Invalid files are skipped."""
        loaded = 0
        files = sorted(
            f for pattern in ("*.yaml", "*.yml", "*.json")
            for f in Path(directory).glob(pattern)
        )
        for file in files:
            try:
                self.load_file(file, source)
                loaded += 1
            except (OSError, ValueError, yaml.YAMLError, PlaybookError) as e:
                logger.error(f"Failed to load playbook {file}: {e}")
        return loaded

    def load_file(self, file_path: Path, source: str = "user") -> Playbook:
        """Load playbook from file."""
        with open(file_path) as f:
            if file_path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(f)
            else:
                data = json.load(f)

        playbook = self.parse(data)
        playbook.source = source
        if playbook.id in self.playbooks:
            logger.info(f"Playbook {playbook.id} overridden by {file_path}")
        self.playbooks[playbook.id] = playbook
        logger.debug(f"Loaded playbook: {playbook.name}")
        return playbook

    @staticmethod
    def parse(data: Dict[str, Any]) -> Playbook:
        """Parse and validate a playbook definition."""
        if not isinstance(data, dict):
            raise PlaybookError("Playbook definition must be a mapping")
        for key in ("id", "name"):
            if not data.get(key):
                raise PlaybookError(f"Playbook is missing '{key}'")

        try:
            category = IncidentCategory(data.get("category", "other"))
            severity_levels = [
                Severity(str(s).lower()).value
                for s in data.get("severity_levels", ["medium", "high", "critical"])
            ]
        except ValueError as e:
            raise PlaybookError(f"Playbook {data['id']}: {e}") from e

        steps = []
        seen = set()
        for step_data in data.get("steps", []):
            step = PlaybookSelector._parse_step(data["id"], step_data)
            if step.id in seen:
                raise PlaybookError(f"Playbook {data['id']}: duplicate step id {step.id}")
            seen.add(step.id)
            steps.append(step)

        if not steps:
            raise PlaybookError(f"Playbook {data['id']} has no steps")

        return Playbook(
            id=str(data["id"]),
            name=data["name"],
            description=data.get("description", ""),
            version=str(data.get("version", "1.0")),
            category=category,
            severity_levels=severity_levels,
            steps=steps,
            priority=int(data.get("priority", 0)),
            tags=data.get("tags", []),
            author=data.get("author", ""),
        )

    @staticmethod
    def _parse_step(playbook_id: str, step_data: Dict[str, Any]) -> PlaybookStep:
        if not isinstance(step_data, dict) or "id" not in step_data:
            raise PlaybookError(f"Playbook {playbook_id}: every step needs an id")

        try:
            step_type = StepType(step_data.get("type", "containment"))
        except ValueError as e:
            raise PlaybookError(f"Playbook {playbook_id} step {step_data['id']}: {e}") from e

        action = step_data.get("action") or {}
        containment = []
        if step_type == StepType.CONTAINMENT:
            containment = [action]
        elif step_type == StepType.PARALLEL:
            containment = action.get("steps", [])
            if not containment:
                raise PlaybookError(
                    f"Playbook {playbook_id} step {step_data['id']}: parallel step has no actions"
                )
        for sub in containment:
            try:
                ContainmentType(sub.get("type"))
            except ValueError as e:
                raise PlaybookError(
                    f"Playbook {playbook_id} step {step_data['id']}: {e}"
                ) from e

        on_failure = step_data.get("on_failure", "stop")
        if on_failure not in ("stop", "continue", "skip"):
            raise PlaybookError(
                f"Playbook {playbook_id} step {step_data['id']}: bad on_failure {on_failure!r}"
            )

        return PlaybookStep(
            id=str(step_data["id"]),
            name=step_data.get("name", str(step_data["id"])),
            step_type=step_type,
            description=step_data.get("description", ""),
            action=action,
            timeout=int(step_data.get("timeout", 300)),
            on_failure=on_failure,
            conditions=step_data.get("conditions", []),
        )

    def get_playbook(self, playbook_id: str) -> Optional[Playbook]:
        """Get playbook by ID."""
        return self.playbooks.get(playbook_id)

    def candidates(self, category: IncidentCategory, severity: Severity) -> List[Playbook]:
        """Matching playbooks, best first."""
        return sorted(
            (p for p in self.playbooks.values() if p.matches(category, severity)),
            key=lambda p: (-p.priority, len(p.severity_levels), p.id),
        )

    def select(self, category: IncidentCategory, severity: Severity) -> Playbook:
        """Pick the playbook for an incident category and severity."""
        matches = self.candidates(category, severity)
        if not matches and category != IncidentCategory.OTHER:
            logger.info(f"No {category.value} playbook for {severity.value}; using fallback")
            matches = self.candidates(IncidentCategory.OTHER, severity)
        if not matches:
            raise PlaybookNotFoundError(
                f"No playbook for {category.value} at severity {severity.value}"
            )
        return matches[0]

    def _plan_containment(
        self,
        step: PlaybookStep,
        action: Dict[str, Any],
        variables: Dict[str, Any],
    ) -> List[PlannedAction]:
        action_type = ContainmentType(action["type"])
        resolved = substitute(action.get("target"), variables)
        parameters = substitute(action.get("parameters", {}), variables)
        host_spec = substitute(action.get("host"), variables) if action.get("host") else None

        targets, reason = _fan_out(resolved)
        if reason:
            return [PlannedAction(step.id, step.step_type, action_type,
                                  target=action.get("target"), skip_reason=reason)]

        # Host each observable was seen on; falls back to the first affected host
        target_hosts = variables.get("target_hosts") or {}

        planned = []
        for target in targets:
            if host_spec:
                host = str(host_spec)
            elif action_type in HOST_TARGETED:
                host = target
            else:
                host = target_hosts.get(target) or variables.get("affected_host")
            if host is None and action_type.destroys_volatile_state:
                logger.warning(f"No host known for {action_type.value} on {target}")
            planned.append(PlannedAction(
                step.id, step.step_type, action_type,
                target=target, host=host, parameters=dict(parameters),
            ))
        return planned

    def _plan_step(self, step: PlaybookStep, variables: Dict[str, Any]) -> List[PlannedAction]:
        if step.step_type == StepType.CONTAINMENT:
            return self._plan_containment(step, step.action, variables)

        if step.step_type == StepType.PARALLEL:
            planned = []
            for sub in step.action.get("steps", []):
                planned.extend(self._plan_containment(step, sub, variables))
            return planned

        if step.step_type == StepType.EVIDENCE:
            hosts, reason = _fan_out(substitute(
                step.action.get("hosts", "${affected_hosts}"), variables
            ))
            if reason:
                return [PlannedAction(step.id, step.step_type, skip_reason=reason)]
            return [PlannedAction(step.id, step.step_type, target=h, host=h) for h in hosts]

        return [PlannedAction(
            step.id, step.step_type, parameters=substitute(step.action, variables)
        )]

    def plan_steps(
        self,
        playbook: Playbook,
        variables: Dict[str, Any],
    ) -> List[Tuple[PlaybookStep, List[PlannedAction]]]:
        """
        Resolve a playbook into steps with concrete actions.

        An evidence step is inserted before any step whose actions would
        destroy volatile state on a host that has no evidence step yet.
        Destructive actions with no known host stay unguarded here and are
        blocked by the engine.
        """
        planned_steps: List[Tuple[PlaybookStep, List[PlannedAction]]] = []
        covered = set()

        for step in playbook.steps:
            actions = self._plan_step(step, variables)

            if step.step_type == StepType.EVIDENCE:
                covered.update(a.host for a in actions if a.host)

            missing = []
            for action in actions:
                if (action.destroys_volatile_state and not action.skip_reason
                        and action.host and action.host not in covered
                        and action.host not in missing):
                    missing.append(action.host)

            if missing:
                evidence_step = PlaybookStep(
                    id=f"evidence-before-{step.id}",
                    name="Preserve volatile evidence",
                    step_type=StepType.EVIDENCE,
                    description=f"Snapshot state before {step.name}",
                    action={"hosts": missing},
                    on_failure="continue",
                )
                planned_steps.append((evidence_step, [
                    PlannedAction(evidence_step.id, StepType.EVIDENCE,
                                  target=h, host=h, inserted=True)
                    for h in missing
                ]))
                covered.update(missing)
                logger.info(f"Inserted evidence collection for {missing} before {step.id}")

            planned_steps.append((step, actions))

        return planned_steps

    def plan(self, playbook: Playbook, variables: Dict[str, Any]) -> List[PlannedAction]:
        """Flat, ordered list of planned actions for a playbook."""
        return [a for _, actions in self.plan_steps(playbook, variables) for a in actions]

    def list_playbooks(self) -> List[Dict[str, Any]]:
        """List all available playbooks."""
        return [
            {
                "id": p.id,
                "name": p.name,
                "description": p.description,
                "category": p.category.value,
                "severity_levels": p.severity_levels,
                "priority": p.priority,
                "steps_count": len(p.steps),
                "tags": p.tags,
                "source": p.source,
            }
            for p in sorted(self.playbooks.values(), key=lambda p: p.id)
        ]


class PlaybookEngine:
    """
    Execute incident response playbooks.

    Features:
    - Conditional steps
    - Parallel containment actions
    - Manual approval pause and resume
    - Evidence gate in front of destructive actions
    - Per-step audit records
    """

    APPROVE = {"approve", "approved", "proceed", "yes"}
    REJECT = {"reject", "rejected", "abort", "no"}

    def __init__(
        self,
        selector: PlaybookSelector,
        executor: ActionExecutor,
        evidence=None,
        responder: Optional[IncidentResponder] = None,
        notifier=None,
        audit=None,
        evidence_required: bool = True,
        max_workers: int = 4,
    ):
        self.selector = selector
        self.executor = executor
        self.evidence = evidence
        self.responder = responder
        self.notifier = notifier
        self.audit = audit if audit is not None else executor.audit
        self.evidence_required = evidence_required
        self.max_workers = max_workers
        self.executions: Dict[str, PlaybookExecution] = {}

    def execute(
        self,
        playbook: Playbook,
        incident: Incident,
        variables: Optional[Dict[str, Any]] = None,
    ) -> PlaybookExecution:
        """Plan and run a playbook for an incident."""
        variables = dict(variables or {})
        variables.setdefault("incident_id", incident.id)

        execution = PlaybookExecution(
            id=uuid.uuid4().hex[:8],
            playbook_id=playbook.id,
            incident_id=incident.id,
            started_at=utcnow(),
            incident=incident,
            steps=self.selector.plan_steps(playbook, variables),
        )
        self.executions[execution.id] = execution

        self.audit.append("playbook.started", incident.id, "playbook_engine", {
            "execution_id": execution.id,
            "playbook_id": playbook.id,
            "planned_actions": [
                a.to_dict() for _, actions in execution.steps for a in actions
            ],
        })
        logger.info(f"Starting playbook {playbook.name} for incident {incident.id}")

        return self._run(execution, start=0)

    def resume(self, execution_id: str, decision: str, approver: str) -> PlaybookExecution:
        """Continue or abort an execution waiting on manual approval."""
        execution = self.executions.get(execution_id)
        if execution is None:
            raise PlaybookError(f"Unknown execution: {execution_id}")
        if execution.status != "awaiting_approval":
            raise PlaybookError(
                f"Execution {execution_id} is {execution.status}, not awaiting approval"
            )

        decision = decision.lower()
        if decision not in self.APPROVE | self.REJECT:
            raise PlaybookError(f"Unknown decision: {decision}")

        approved = decision in self.APPROVE
        result = self._result_for(execution, execution.pending_step)
        result["status"] = "approved" if approved else "rejected"
        result["approver"] = approver
        result["decided_at"] = utcnow().isoformat()

        self.audit.append(
            "playbook.approved" if approved else "playbook.rejected",
            execution.incident_id, approver,
            {"execution_id": execution.id, "step_id": execution.pending_step},
        )
        execution.pending_step = None

        if not approved:
            execution.status = "aborted"
            execution.error = f"Rejected by {approver}"
            return self._finish(execution)

        execution.status = "running"
        return self._run(execution, start=execution.current_step + 1)

    def get_execution(self, execution_id: str) -> Optional[PlaybookExecution]:
        return self.executions.get(execution_id)

    @staticmethod
    def _result_for(execution: PlaybookExecution, step_id: str) -> Dict[str, Any]:
        for result in reversed(execution.step_results):
            if result["step_id"] == step_id:
                return result
        raise PlaybookError(f"No result recorded for step {step_id}")

    def _check_conditions(self, step: PlaybookStep, execution: PlaybookExecution) -> bool:
        """Check if step conditions are met."""
        for condition in step.conditions:
            step_id = condition.get("step")
            required_status = condition.get("status", "success")

            for result in execution.step_results:
                if result.get("step_id") == step_id:
                    if result.get("status") != required_status:
                        return False
                    break

        return True

    def _run(self, execution: PlaybookExecution, start: int) -> PlaybookExecution:
        incident_id = execution.incident_id

        for index in range(start, len(execution.steps)):
            step, actions = execution.steps[index]
            execution.current_step = index

            if not self._check_conditions(step, execution):
                logger.info(f"Skipping step {step.id}: conditions not met")
                execution.step_results.append({
                    "step_id": step.id,
                    "name": step.name,
                    "type": step.step_type.value,
                    "status": "skipped",
                    "reason": "conditions not met",
                    "actions": [],
                })
                self.audit.append("playbook.step_skipped", incident_id, "playbook_engine", {
                    "execution_id": execution.id, "step_id": step.id,
                })
                continue

            self.audit.append("playbook.step_started", incident_id, "playbook_engine", {
                "execution_id": execution.id,
                "step_id": step.id,
                "step_type": step.step_type.value,
            })

            result = self._execute_step(step, actions, execution)
            result.update({
                "step_id": step.id,
                "name": step.name,
                "type": step.step_type.value,
                "timestamp": utcnow().isoformat(),
            })
            execution.step_results.append(result)

            self.audit.append("playbook.step_completed", incident_id, "playbook_engine", {
                "execution_id": execution.id,
                "step_id": step.id,
                "status": result["status"],
            })

            if result["status"] == "awaiting_approval":
                execution.status = "awaiting_approval"
                execution.pending_step = step.id
                logger.alert(
                    f"Playbook {execution.playbook_id} waiting for approval at {step.name}",
                    incident_id=incident_id,
                )
                return execution

            if result["status"] == "failed" and step.on_failure == "stop":
                execution.status = "failed"
                execution.error = result.get("error") or f"Step {step.id} failed"
                return self._finish(execution)

        execution.status = "completed"
        return self._finish(execution)

    def _finish(self, execution: PlaybookExecution) -> PlaybookExecution:
        if execution.status == "completed":
            troubled = any(
                r["status"] in ("failed", "blocked", "partial") for r in execution.step_results
            )
            if troubled:
                execution.status = "partial"

        execution.completed_at = utcnow()
        self.audit.append("playbook.completed", execution.incident_id, "playbook_engine", {
            "execution_id": execution.id,
            "status": execution.status,
            "error": execution.error,
        })
        logger.info(f"Playbook execution {execution.id} finished: {execution.status}")
        return execution

    def _execute_step(
        self,
        step: PlaybookStep,
        actions: List[PlannedAction],
        execution: PlaybookExecution,
    ) -> Dict[str, Any]:
        """Execute a single playbook step."""
        logger.info(f"Executing step: {step.name}")

        if step.step_type == StepType.EVIDENCE:
            return self._collect_evidence(step, actions, execution)
        if step.step_type == StepType.CONTAINMENT:
            return self._contain(step, actions, execution, parallel=False)
        if step.step_type == StepType.PARALLEL:
            return self._contain(step, actions, execution, parallel=True)
        if step.step_type == StepType.MANUAL:
            return self._handle_manual_step(step, actions[0].parameters, execution)
        if step.step_type == StepType.NOTIFICATION:
            return self._send_notification(step, actions[0].parameters, execution)

        raise PlaybookError(f"Unknown step type: {step.step_type}")

    @staticmethod
    def _skipped(action: PlannedAction) -> Dict[str, Any]:
        return {
            "action_type": action.action_type.value if action.action_type else None,
            "target": action.target,
            "status": "skipped",
            "message": action.skip_reason,
        }

    def _collect_evidence(self, step, actions, execution) -> Dict[str, Any]:
        results = []
        for action in actions:
            if action.skip_reason:
                results.append(self._skipped(action))
                continue

            host = action.host
            try:
                if self.evidence is None:
                    raise EvidenceCollectionError("No evidence collector configured", host=host)
                items = self.evidence.collect(execution.incident_id, host)
            except EvidenceCollectionError as e:
                logger.error(f"Evidence collection failed on {host}: {e}")
                if host not in execution.evidence_failed_hosts:
                    execution.evidence_failed_hosts.append(host)
                results.append({
                    "action_type": "evidence", "target": host,
                    "status": "failed", "message": str(e),
                })
                continue

            results.append({
                "action_type": "evidence",
                "target": host,
                "status": "success",
                "items": [item.to_dict() for item in items],
            })

        if self.evidence is not None and any(r["status"] == "success" for r in results):
            self.evidence.write_manifest(execution.incident_id)

        failed = [r for r in results if r["status"] == "failed"]
        return {
            "status": "failed" if failed else "success",
            "actions": results,
            "error": failed[0]["message"] if failed else None,
        }

    def _blocked(self, action: PlannedAction, execution: PlaybookExecution) -> Optional[str]:
        """Why a destructive action may not run, or None when it may."""
        if not (self.evidence_required and action.destroys_volatile_state):
            return None
        if action.host is None:
            return "no host to collect evidence from"
        if action.host in execution.evidence_failed_hosts:
            return f"evidence collection failed on {action.host}"
        return None

    def _run_action(self, action: PlannedAction, execution: PlaybookExecution) -> Dict[str, Any]:
        if action.skip_reason:
            return self._skipped(action)

        message = self._blocked(action, execution)
        if message:
            self.audit.append("action.blocked", execution.incident_id, "playbook_engine", {
                "action_type": action.action_type.value,
                "target": action.target,
                "host": action.host,
                "reason": message,
            })
            logger.containment(action.action_type.value, action.target, "blocked",
                               incident_id=execution.incident_id, reason=message)
            return {
                "action_type": action.action_type.value,
                "target": action.target,
                "host": action.host,
                "status": "blocked",
                "message": message,
            }

        result = self.executor.execute(ActionRequest(
            action_type=action.action_type,
            target=action.target,
            incident_id=execution.incident_id,
            parameters=action.parameters,
            step_id=action.step_id,
        ))
        data = result.to_dict()
        data["host"] = action.host
        return data

    def _run_worker_action(self, action: PlannedAction, execution: PlaybookExecution) -> Dict[str, Any]:
        try:
            return self._run_action(action, execution)
        finally:
            self.executor.db.release()

    def _contain(self, step, actions, execution, parallel: bool) -> Dict[str, Any]:
        results: List[Dict[str, Any]] = []

        if parallel and len(actions) > 1:
            pool = ThreadPoolExecutor(max_workers=self.max_workers)
            futures = [pool.submit(self._run_worker_action, a, execution) for a in actions]
            _, late = wait(futures, timeout=step.timeout)
            # Queued actions are dropped; running ones finish so their outcome is known
            pool.shutdown(wait=True, cancel_futures=True)
            for action, future in zip(actions, futures):
                if future.cancelled():
                    results.append({
                        "action_type": action.action_type.value,
                        "target": action.target,
                        "host": action.host,
                        "status": "failed",
                        "message": f"not started within the {step.timeout}s step timeout",
                    })
                    continue
                outcome = future.result()
                if future in late:
                    logger.warning(f"{action.action_type.value} on {action.target} "
                                   f"outlived the {step.timeout}s step timeout")
                    outcome["timed_out"] = True
                results.append(outcome)
        else:
            for action in actions:
                outcome = self._run_action(action, execution)
                results.append(outcome)
                if outcome["status"] == "failed" and step.on_failure in ("stop", "skip"):
                    break

        statuses = {r["status"] for r in results}
        if "failed" in statuses:
            status = "failed"
        elif "blocked" in statuses:
            status = "blocked"
        elif statuses <= {"skipped"}:
            status = "skipped"
        else:
            status = "success"

        failed = [r for r in results if r["status"] == "failed"]
        return {
            "status": status,
            "actions": results,
            "error": failed[0]["message"] if failed else None,
        }

    def _handle_manual_step(self, step, action, execution) -> Dict[str, Any]:
        """Handle a manual step, pausing when approval is required."""
        message = action.get("message", "Manual step required")
        options = action.get("options", ["proceed", "abort"])

        logger.info(f"Manual step: {message}")

        if action.get("requires_approval"):
            return {
                "status": "awaiting_approval",
                "message": message,
                "options": options,
                "actions": [],
            }

        if self.responder is not None:
            self.responder.add_action(
                execution.incident_id,
                "manual_review",
                f"{step.name}: {message}",
                "playbook_engine",
            )

        return {"status": "pending_review", "message": message, "actions": []}

    def _send_notification(self, step, action, execution) -> Dict[str, Any]:
        """Send notification."""
        if self.notifier is None or execution.incident is None:
            return {"status": "skipped", "reason": "no notifier configured", "actions": []}

        result = self.notifier.notify(
            execution.incident,
            message=action.get("message", step.description),
            template=action.get("template"),
            priority=action.get("priority"),
        )
        status = "failed" if result["status"] == "failed" else "success"
        return {"status": status, "notification": result, "actions": [],
                "error": "all notification channels failed" if status == "failed" else None}
