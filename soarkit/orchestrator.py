"""
Response Orchestrator - run an alert batch through the whole containment flow.

ingest -> classify -> create incident -> select playbook -> plan -> execute
(evidence before destructive actions) -> audit
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from soarkit.core.config import Config, get_config
from soarkit.core.database import Database
from soarkit.core.errors import (
    ConfigError, InvalidTransitionError, PlaybookNotFoundError, SoarKitError,
)
from soarkit.core.logger import get_logger
from soarkit.core.utils import is_private_ip
from soarkit.incident.classifier import Classification, SeverityClassifier
from soarkit.incident.containment import CommandBackend, ContainmentBackend, DryRunBackend, HttpBackend
from soarkit.incident.evidence import EvidenceCollector, RemoteCollector
from soarkit.incident.executor import ActionExecutor
from soarkit.incident.notify import NotificationDispatcher
from soarkit.incident.playbooks import PlaybookEngine, PlaybookExecution, PlaybookSelector, StepType
from soarkit.incident.response import Incident, IncidentResponder, IncidentStatus
from soarkit.incident.timeline import AuditLog, TimelineBuilder
from soarkit.ingest.indicator import Indicator, IndicatorType
from soarkit.ingest.normalizer import IndicatorIngest

logger = get_logger(__name__)

CONTAINMENT_STEPS = (StepType.CONTAINMENT, StepType.PARALLEL)


def _values(indicators: Iterable[Indicator], ioc_type: IndicatorType, *tags: str) -> List[str]:
    values = []
    for indicator in indicators:
        if indicator.indicator_type != ioc_type:
            continue
        if tags and not set(tags) & set(indicator.tags):
            continue
        if indicator.value not in values:
            values.append(indicator.value)
    return values


def build_variables(incident: Incident, indicators: List[Indicator]) -> Dict[str, Any]:
    """Playbook variables derived from an incident and its indicators."""
    ips = _values(indicators, IndicatorType.IP)
    hashes = [i.value for i in indicators if i.indicator_type.is_hash]
    message_ids = []
    for indicator in indicators:
        message_id = indicator.context.get("message_id")
        if message_id and message_id not in message_ids:
            message_ids.append(message_id)

    target_hosts: Dict[str, str] = {}
    for indicator in indicators:
        if indicator.asset:
            target_hosts.setdefault(indicator.value, indicator.asset)

    # Recipients are victims, not accounts to lock
    usernames = [
        i.value for i in indicators
        if i.indicator_type == IndicatorType.USERNAME and "recipient" not in i.tags
    ]

    return {
        "incident_id": incident.id,
        "category": incident.category.value,
        "severity": incident.severity.value,
        "affected_hosts": list(incident.affected_assets),
        "affected_host": incident.affected_assets[0] if incident.affected_assets else None,
        "ips": ips,
        "external_ips": [ip for ip in ips if not is_private_ip(ip)],
        "source_ips": _values(indicators, IndicatorType.IP, "source", "internal"),
        "destination_ips": _values(indicators, IndicatorType.IP, "destination"),
        "c2_ips": _values(indicators, IndicatorType.IP, "c2"),
        "c2_domains": _values(indicators, IndicatorType.DOMAIN, "c2"),
        "domains": _values(indicators, IndicatorType.DOMAIN),
        "phishing_domains": _values(indicators, IndicatorType.DOMAIN, "url_host", "sender_domain"),
        "urls": _values(indicators, IndicatorType.URL),
        "senders": _values(indicators, IndicatorType.EMAIL, "sender", "reply_to"),
        "recipients": _values(indicators, IndicatorType.USERNAME, "recipient"),
        "message_ids": message_ids,
        "usernames": list(dict.fromkeys(usernames)),
        "processes": _values(indicators, IndicatorType.PROCESS),
        "file_paths": _values(indicators, IndicatorType.FILE_PATH),
        "hashes": list(dict.fromkeys(hashes)),
        "shares": [],
        "target_hosts": target_hosts,
    }


@dataclass
class ResponseRun:
    """Everything that happened while responding to one alert batch."""
    incident: Optional[Incident]
    classification: Optional[Classification]
    playbook_id: Optional[str] = None
    execution: Optional[PlaybookExecution] = None
    actions: List[Dict[str, Any]] = field(default_factory=list)
    evidence: List[Dict[str, Any]] = field(default_factory=list)
    status: str = "running"  # completed, partial, awaiting_approval, failed, aborted, no_playbook
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "incident_id": self.incident.id if self.incident else None,
            "incident_status": self.incident.status.value if self.incident else None,
            "classification": self.classification.to_dict() if self.classification else None,
            "playbook_id": self.playbook_id,
            "execution_id": self.execution.id if self.execution else None,
            "status": self.status,
            "actions": self.actions,
            "evidence": self.evidence,
            "errors": self.errors,
        }


class ResponseOrchestrator:
    """
    Wire the response components together.

    Components are injected; from_config() builds them from a Config.
    """

    def __init__(
        self,
        ingest: IndicatorIngest,
        classifier: SeverityClassifier,
        responder: IncidentResponder,
        selector: PlaybookSelector,
        engine: PlaybookEngine,
        audit: AuditLog,
    ):
        self.ingest = ingest
        self.classifier = classifier
        self.responder = responder
        self.selector = selector
        self.engine = engine
        self.audit = audit
        self.runs: Dict[str, ResponseRun] = {}

    @classmethod
    def from_config(cls, config: Optional[Config] = None, dry_run: Optional[bool] = None):
        """Build every component from configuration."""
        config = config or get_config()
        dry_run = config.executor.dry_run if dry_run is None else dry_run

        db = Database(config.database.path)
        audit = AuditLog(config.audit.path)

        responder = IncidentResponder(
            data_dir=config.playbooks.incidents_dir,
            audit=audit,
            breach_notification_hours=config.compliance.breach_notification_hours,
        )

        executor = ActionExecutor(
            db=db,
            audit=audit,
            backends=cls._build_backends(config, dry_run),
            max_attempts=config.executor.max_attempts,
            backoff_base=config.executor.backoff_base,
            backoff_max=config.executor.backoff_max,
        )

        remote = None
        if config.evidence.remote_url:
            remote = RemoteCollector(
                config.evidence.remote_url,
                token=config.executor.http.token,
                verify_ssl=config.executor.http.verify_ssl,
            )
        evidence = EvidenceCollector(
            evidence_dir=config.evidence.evidence_dir,
            audit=audit,
            memory_dump_command=config.evidence.memory_dump_command,
            remote=remote,
        )

        selector = PlaybookSelector(config.playbooks.directory)
        engine = PlaybookEngine(
            selector=selector,
            executor=executor,
            evidence=evidence,
            responder=responder,
            notifier=NotificationDispatcher(config.alerts),
            audit=audit,
            evidence_required=config.evidence.required,
        )

        logger.info(f"Orchestrator ready ({'dry-run' if dry_run else 'live'})")
        return cls(
            ingest=IndicatorIngest(db),
            classifier=SeverityClassifier(config.classifier),
            responder=responder,
            selector=selector,
            engine=engine,
            audit=audit,
        )

    @staticmethod
    def _build_backends(config: Config, dry_run: bool) -> Dict[str, ContainmentBackend]:
        if dry_run:
            return {"default": DryRunBackend()}

        cfg = config.executor
        available: Dict[str, ContainmentBackend] = {
            "command": CommandBackend(timeout=cfg.timeout),
            "dry_run": DryRunBackend(),
        }
        if cfg.http.base_url:
            available["http"] = HttpBackend(
                cfg.http.base_url,
                token=cfg.http.token,
                verify_ssl=cfg.http.verify_ssl,
                timeout=cfg.timeout,
            )

        mapping = {"default": cfg.backends.get("default", "command"), **cfg.backends}
        backends = {}
        for action_type, name in mapping.items():
            if name not in available:
                raise ConfigError(f"Backend '{name}' for {action_type} is not configured")
            backends[action_type] = available[name]
        return backends

    def handle(self, alerts: Iterable, created_by: str = "orchestrator") -> ResponseRun:
        """Respond to a batch of alerts."""
        stage = "ingest"
        try:
            indicators = self.ingest.ingest(alerts)
            stage = "classify"
            classification = self.classifier.classify(indicators)
        except SoarKitError as e:
            logger.error(f"Response failed during {stage}: {e}")
            self.audit.append("run.failed", None, created_by, {
                "stage": stage,
                "error": str(e),
                "error_type": type(e).__name__,
            })
            return ResponseRun(incident=None, classification=None,
                               status="failed", errors=[str(e)])

        incident = self.responder.create_from_classification(
            classification, indicators, created_by=created_by
        )
        self.audit.append("classification", incident.id, created_by, dict(
            classification.to_dict(),
            indicators=[i.fingerprint for i in indicators],
        ))
        run = ResponseRun(incident=incident, classification=classification)

        try:
            playbook = self.selector.select(incident.category, incident.severity)
        except PlaybookNotFoundError as e:
            logger.error(str(e))
            self.audit.append("playbook.not_found", incident.id, created_by, {"error": str(e)})
            run.status = "no_playbook"
            run.errors.append(str(e))
            return run

        run.playbook_id = playbook.id
        self.audit.append("playbook.selected", incident.id, created_by, {
            "playbook_id": playbook.id,
            "category": incident.category.value,
            "severity": incident.severity.value,
            "candidates": [p.id for p in self.selector.candidates(incident.category, incident.severity)],
        })

        run.execution = self.engine.execute(
            playbook, incident, build_variables(incident, indicators)
        )
        self.runs[run.execution.id] = run
        return self._summarize(run)

    def approve(self, execution_id: str, approver: str) -> ResponseRun:
        """Approve a paused run and let it continue."""
        self.engine.resume(execution_id, "approve", approver)
        return self._summarize(self._run_for(execution_id))

    def reject(self, execution_id: str, approver: str) -> ResponseRun:
        """Reject a paused run, aborting the rest of its playbook."""
        self.engine.resume(execution_id, "reject", approver)
        return self._summarize(self._run_for(execution_id))

    def _run_for(self, execution_id: str) -> ResponseRun:
        run = self.runs.get(execution_id)
        if run is None:
            execution = self.engine.get_execution(execution_id)
            incident = self.responder.get_incident(execution.incident_id)
            run = ResponseRun(incident=incident, classification=None,
                              playbook_id=execution.playbook_id, execution=execution)
            self.runs[execution_id] = run
        return run

    def _summarize(self, run: ResponseRun) -> ResponseRun:
        execution = run.execution
        run.actions, run.evidence, run.errors = [], [], []

        for result in execution.step_results:
            if result["type"] == StepType.EVIDENCE.value:
                run.evidence.extend(result.get("actions", []))
            else:
                run.actions.extend(result.get("actions", []))
            if result["status"] in ("failed", "blocked") and result.get("error"):
                run.errors.append(f"{result['step_id']}: {result['error']}")
        for action in run.actions:
            if action["status"] == "blocked":
                run.errors.append(f"{action['action_type']} on {action['target']} blocked: "
                                  f"{action['message']}")

        if execution.status in ("awaiting_approval", "failed", "aborted", "running"):
            run.status = execution.status
        elif execution.status == "partial" or execution.evidence_failed_hosts:
            run.status = "partial"
        else:
            run.status = "completed"

        self._update_incident(run)
        return run

    def _containment_done(self, execution: PlaybookExecution) -> bool:
        planned = [
            a for step, actions in execution.steps
            if step.step_type in CONTAINMENT_STEPS
            for a in actions if not a.skip_reason
        ]
        if not planned:
            return False
        executed = [
            a for r in execution.step_results
            if r["type"] in (s.value for s in CONTAINMENT_STEPS)
            for a in r.get("actions", []) if a["status"] != "skipped"
        ]
        return len(executed) == len(planned) and all(
            a["status"] in ("success", "already_applied") for a in executed
        )

    def _update_incident(self, run: ResponseRun) -> None:
        incident = run.incident
        if incident.status not in (IncidentStatus.NEW, IncidentStatus.INVESTIGATING):
            return

        target = (
            IncidentStatus.CONTAINED if self._containment_done(run.execution)
            else IncidentStatus.INVESTIGATING
        )
        if target == incident.status:
            return
        try:
            self.responder.update_status(
                incident.id, target, "orchestrator",
                notes=f"Playbook {run.playbook_id} run {run.execution.id}: {run.status}",
            )
        except InvalidTransitionError as e:
            logger.warning(str(e))

    def build_timeline(self, incident_id: str) -> TimelineBuilder:
        """Timeline of an incident reconstructed from the audit log."""
        builder = TimelineBuilder()
        builder.add_events_from_audit(self.audit.records(incident_id=incident_id))
        builder.correlate_events()
        builder.identify_phases()
        return builder
