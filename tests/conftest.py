"""
Shared fixtures for SOARKit tests.
"""

import os
from datetime import datetime, timezone

import pytest

from soarkit.core.config import Config
from soarkit.core.database import Database
from soarkit.core.severity import Severity
from soarkit.incident.executor import ActionExecutor
from soarkit.incident.containment import DryRunBackend
from soarkit.incident.response import IncidentCategory, IncidentResponder
from soarkit.incident.timeline import AuditLog


@pytest.fixture(autouse=True)
def fresh_config(monkeypatch):
    """Every test gets its own Config singleton without SOARKIT_* overrides."""
    for name in list(os.environ):
        if name.startswith("SOARKIT_"):
            monkeypatch.delenv(name, raising=False)
    Config._instance = None
    yield
    Config._instance = None


@pytest.fixture
def db(tmp_path):
    """Temporary SQLite database."""
    database = Database(tmp_path / "soarkit.db")
    yield database
    database.close()


@pytest.fixture
def audit(tmp_path):
    """Audit log in a temporary directory."""
    return AuditLog(tmp_path / "audit" / "audit.jsonl")


@pytest.fixture
def responder(tmp_path, audit):
    return IncidentResponder(data_dir=str(tmp_path / "incidents"), audit=audit)


@pytest.fixture
def dry_run_backend():
    return DryRunBackend()


@pytest.fixture
def executor(db, audit, dry_run_backend):
    """Executor with a dry-run backend and no real sleeping."""
    return ActionExecutor(
        db=db,
        audit=audit,
        backends={"default": dry_run_backend},
        sleep=lambda seconds: None,
    )


@pytest.fixture
def incident(responder):
    return responder.create_incident(
        title="Malware on ws-042",
        description="EDR detection",
        category=IncidentCategory.MALWARE,
        severity=Severity.HIGH,
        affected_assets=["ws-042"],
    )


@pytest.fixture
def observed_at():
    return datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def edr_alert():
    """Ransomware detection from an EDR agent."""
    return {
        "hostname": "WS-042",
        "detection_name": "Ransom.Win32.Crypt",
        "process_name": "evil.exe",
        "file_path": "C:\\Users\\bob\\AppData\\evil.exe",
        "sha256": "a" * 64,
        "remote_ip": "203.0.113.50",
        "severity": "critical",
        "files_encrypted": 450,
        "timestamp": "2024-03-01T12:00:00Z",
    }


@pytest.fixture
def phishing_alert():
    """Email gateway phishing verdict."""
    return {
        "message_id": "<abc123@mail.evil.test>",
        "subject": "Invoice overdue",
        "sender": "billing@evil-invoices.com",
        "reply_to": "collect@evil-invoices.com",
        "recipients": ["alice", "carol"],
        "urls": ["hxxps://login-portal[.]xyz/reset"],
        "attachments": [{"name": "invoice.docm", "sha256": "b" * 64}],
        "verdict": "phish",
        "severity": 6.5,
        "timestamp": "2024-03-01T11:55:00Z",
    }


@pytest.fixture
def ddos_alert():
    """Network sensor flood alert against an internal web server."""
    return {
        "src_ip": "45.155.205.7",
        "dst_ip": "10.0.0.15",
        "sources": ["45.155.205.8", "45.155.205.9"],
        "pps": 250000,
        "protocol": "udp",
        "severity": "high",
        "timestamp": "2024-03-01T12:01:00Z",
    }
