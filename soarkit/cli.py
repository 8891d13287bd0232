"""
Command-line interface for SOARKit.

    soarkit ingest alerts.json --source edr
    soarkit classify alerts.json --source edr
    soarkit respond alerts.json --source edr [--live]
    soarkit playbooks list
    soarkit audit verify
    soarkit audit show [--incident ID] [--format table|json|markdown]
    soarkit metrics
"""

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from soarkit import __version__
from soarkit.core.config import Config, get_config
from soarkit.core.database import Database
from soarkit.core.errors import AuditIntegrityError, IngestError, SoarKitError
from soarkit.core.logger import get_logger, setup_logging
from soarkit.incident.classifier import SeverityClassifier
from soarkit.incident.playbooks import PlaybookSelector
from soarkit.incident.response import IncidentResponder
from soarkit.incident.timeline import AuditLog, TimelineBuilder
from soarkit.ingest.normalizer import IndicatorIngest
from soarkit.orchestrator import ResponseOrchestrator

logger = get_logger(__name__)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def load_alerts(path: str, source: Optional[str]) -> List[Dict[str, Any]]:
    """
    Read an alert file.

    Accepts one alert payload, a list of payloads, or
    ``{"alerts": [{"source": ..., "payload": ...}]}``. Payloads without
    their own source use ``source``.
    """
    try:
        data = json.loads(Path(path).read_text())
    except OSError as e:
        raise IngestError(f"Cannot read {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise IngestError(f"{path} is not valid JSON: {e}") from e

    if isinstance(data, dict) and isinstance(data.get("alerts"), list):
        items = data["alerts"]
    elif isinstance(data, list):
        items = data
    else:
        items = [data]

    alerts = []
    for item in items:
        if isinstance(item, dict) and "payload" in item:
            item_source = item.get("source") or source
            payload = item["payload"]
        else:
            item_source, payload = source, item
        if not item_source:
            raise IngestError(f"No source for alert in {path}; pass --source")
        alerts.append({"source": item_source, "payload": payload})
    return alerts


def cmd_ingest(args, config: Config) -> int:
    ingest = IndicatorIngest(Database(config.database.path))
    indicators = ingest.ingest(load_alerts(args.file, args.source))
    _print_json([i.to_dict() for i in indicators])
    return 0


def cmd_classify(args, config: Config) -> int:
    ingest = IndicatorIngest(Database(config.database.path))
    indicators = ingest.ingest(load_alerts(args.file, args.source))
    classification = SeverityClassifier(config.classifier).classify(indicators)
    _print_json(classification.to_dict())
    return 0


def cmd_respond(args, config: Config) -> int:
    orchestrator = ResponseOrchestrator.from_config(config, dry_run=not args.live)
    run = orchestrator.handle(load_alerts(args.file, args.source), created_by=args.actor)
    _print_json(run.to_dict())
    return 1 if run.status == "failed" else 0


def cmd_playbooks_list(args, config: Config) -> int:
    playbooks = PlaybookSelector(config.playbooks.directory).list_playbooks()
    if args.json:
        _print_json(playbooks)
        return 0

    print(f"{'ID':<20} {'CATEGORY':<22} {'SEVERITIES':<28} {'PRI':>3}  {'SOURCE':<8} NAME")
    for p in playbooks:
        print(f"{p['id']:<20} {p['category']:<22} {','.join(p['severity_levels']):<28} "
              f"{p['priority']:>3}  {p['source']:<8} {p['name']}")
    return 0


def cmd_audit_verify(args, config: Config) -> int:
    result = AuditLog(config.audit.path).verify()
    _print_json(result)
    if not result["valid"]:
        raise AuditIntegrityError(result["error"])
    return 0


def cmd_audit_show(args, config: Config) -> int:
    records = AuditLog(config.audit.path).records(incident_id=args.incident)

    if args.format == "json":
        _print_json([r.to_dict() for r in records])
    elif args.format == "markdown":
        builder = TimelineBuilder()
        builder.add_events_from_audit(records)
        builder.correlate_events()
        builder.identify_phases()
        print(builder.to_markdown())
    else:
        for r in records:
            print(f"#{r.sequence:<5} {r.timestamp}  {r.event_type:<28} "
                  f"{r.incident_id or '-':<22} {r.actor}")
    return 0


def cmd_metrics(args, config: Config) -> int:
    responder = IncidentResponder(
        data_dir=config.playbooks.incidents_dir,
        breach_notification_hours=config.compliance.breach_notification_hours,
    )
    _print_json({
        "metrics": responder.aggregate_metrics(),
        "statistics": responder.get_statistics(),
        "overdue_notifications": [
            {"id": i.id, "deadline": i.notification_deadline.isoformat()}
            for i in responder.overdue_notifications()
        ],
    })
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="soarkit",
        description="Security incident containment orchestration",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-c", "--config", help="Configuration file (YAML or JSON)")
    parser.add_argument("--log-level", help="Override the configured log level")

    sub = parser.add_subparsers(dest="command", required=True)

    for name, func, help_text in (
        ("ingest", cmd_ingest, "Normalize alerts and print indicators"),
        ("classify", cmd_classify, "Classify alerts into category and severity"),
        ("respond", cmd_respond, "Run the full containment flow"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("file", help="JSON alert file")
        p.add_argument("-s", "--source", help="Alert source (email_gateway, edr, network, siem, manual)")
        p.set_defaults(func=func)
        if name == "respond":
            p.add_argument("--live", action="store_true",
                           help="Run real containment instead of a dry run")
            p.add_argument("--actor", default="cli", help="Name recorded as incident creator")

    playbooks = sub.add_parser("playbooks", help="Playbook commands")
    playbooks_sub = playbooks.add_subparsers(dest="playbooks_command", required=True)
    p = playbooks_sub.add_parser("list", help="List available playbooks")
    p.add_argument("--json", action="store_true", help="Print as JSON")
    p.set_defaults(func=cmd_playbooks_list)

    audit = sub.add_parser("audit", help="Audit log commands")
    audit_sub = audit.add_subparsers(dest="audit_command", required=True)
    p = audit_sub.add_parser("verify", help="Verify the audit hash chain")
    p.set_defaults(func=cmd_audit_verify)
    p = audit_sub.add_parser("show", help="Show audit records")
    p.add_argument("--incident", help="Only records for this incident")
    p.add_argument("--format", choices=["table", "json", "markdown"], default="table")
    p.set_defaults(func=cmd_audit_show)

    p = sub.add_parser("metrics", help="Show MTTD/MTTC/MTTR and incident statistics")
    p.set_defaults(func=cmd_metrics)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = get_config()
    try:
        if args.config:
            config.load_file(Path(args.config))
    except (OSError, ValueError, yaml.YAMLError) as e:
        parser.error(f"invalid configuration: {e}")

    setup_logging(
        level=args.log_level or config.logging.level,
        log_file=config.logging.file,
        json_format=config.logging.json_format,
        security_log=config.logging.security_log,
        stream=sys.stderr,
    )

    try:
        return args.func(args, config)
    except SoarKitError as e:
        logger.error(str(e))
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
