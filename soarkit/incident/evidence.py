"""
Evidence Collector - snapshot volatile host state before containment.
"""

import json
import re
import shlex
import socket
import subprocess
import uuid
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import psutil
import requests

from soarkit.core.errors import EvidenceCollectionError
from soarkit.core.logger import get_logger
from soarkit.core.utils import hash_file, utcnow
from soarkit.incident.timeline import AuditLog

logger = get_logger(__name__)

LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1"}


class EvidenceKind(Enum):
    PROCESSES = "processes"
    NETWORK_CONNECTIONS = "network_connections"
    MEMORY = "memory"
    MEMORY_DUMP = "memory_dump"
    REMOTE_SNAPSHOT = "remote_snapshot"


@dataclass
class EvidenceItem:
    """One collected artifact and its chain-of-custody data."""
    id: str
    incident_id: str
    host: str
    kind: EvidenceKind
    collected_at: str
    path: Optional[str] = None
    sha256: Optional[str] = None
    size: int = 0
    collector: str = "soarkit"
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data


class RemoteCollector:
    """Request host snapshots from an EDR or forensics agent API."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        verify_ssl: bool = True,
        timeout: int = 60,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.verify_ssl = verify_ssl
        self.timeout = timeout
        self.session = session or requests.Session()
        if token:
            self.session.headers.update({"Authorization": f"Bearer {token}"})

    def snapshot(self, host: str, incident_id: str) -> Dict[str, Any]:
        url = f"{self.base_url}/hosts/{host}/snapshot"
        try:
            response = self.session.post(
                url,
                json={"incident_id": incident_id},
                timeout=self.timeout,
                verify=self.verify_ssl,
            )
            response.raise_for_status()
            return response.json()
        except (requests.RequestException, ValueError) as e:
            raise EvidenceCollectionError(f"Remote snapshot of {host} failed: {e}") from e


class EvidenceCollector:
    """
    Capture volatile evidence and keep it verifiable.

    Local hosts are read with psutil. Remote hosts go through a
    RemoteCollector. Each artifact is stored as a file under
    ``evidence_dir/<incident>/<host>/``, hashed, and logged to the audit log.
    """

    def __init__(
        self,
        evidence_dir: Union[str, Path] = "data/evidence",
        audit: Optional[AuditLog] = None,
        memory_dump_command: Optional[str] = None,
        remote: Optional[RemoteCollector] = None,
        dump_timeout: int = 600,
    ):
        self.evidence_dir = Path(evidence_dir)
        self.audit = audit
        self.memory_dump_command = memory_dump_command
        self.remote = remote
        self.dump_timeout = dump_timeout
        self.items: Dict[str, List[EvidenceItem]] = {}

    @staticmethod
    def is_local(host: str) -> bool:
        host = (host or "").lower()
        if host in LOCAL_HOSTS:
            return True
        hostname = socket.gethostname().lower()
        return host in (hostname, hostname.split(".")[0], socket.getfqdn().lower())

    @staticmethod
    def _safe(name: str) -> str:
        return re.sub(r"[^A-Za-z0-9._-]", "_", name)

    def _host_dir(self, incident_id: str, host: str) -> Path:
        path = self.evidence_dir / self._safe(incident_id) / self._safe(host)
        path.mkdir(parents=True, exist_ok=True)
        return path

    # Local capture
    def capture_processes(self) -> List[Dict[str, Any]]:
        processes = []
        attrs = ["pid", "ppid", "name", "exe", "username", "cmdline", "status", "create_time"]
        for proc in psutil.process_iter(attrs):
            try:
                info = dict(proc.info)
                processes.append(info)
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
        return processes

    def capture_connections(self) -> List[Dict[str, Any]]:
        connections = []
        for conn in psutil.net_connections(kind="inet"):
            connections.append({
                "fd": conn.fd,
                "family": str(conn.family),
                "type": str(conn.type),
                "local_address": f"{conn.laddr.ip}:{conn.laddr.port}" if conn.laddr else None,
                "remote_address": f"{conn.raddr.ip}:{conn.raddr.port}" if conn.raddr else None,
                "status": conn.status,
                "pid": conn.pid,
            })
        return connections

    def capture_memory(self) -> Dict[str, Any]:
        return {
            "virtual": psutil.virtual_memory()._asdict(),
            "swap": psutil.swap_memory()._asdict(),
            "boot_time": psutil.boot_time(),
        }

    def _dump_memory(self, path: Path) -> None:
        command = shlex.split(self.memory_dump_command.format(output=str(path)))
        try:
            completed = subprocess.run(
                command, capture_output=True, text=True, timeout=self.dump_timeout
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise EvidenceCollectionError(f"Memory dump failed: {e}") from e
        if completed.returncode != 0:
            raise EvidenceCollectionError(
                f"Memory dump exited {completed.returncode}: {completed.stderr.strip()}"
            )
        if not path.exists():
            raise EvidenceCollectionError(f"Memory dump did not produce {path}")

    def _store(
        self,
        incident_id: str,
        host: str,
        kind: EvidenceKind,
        producer: Callable[[], Any],
        collector: str,
    ) -> EvidenceItem:
        collected_at = utcnow()
        item = EvidenceItem(
            id=f"ev-{uuid.uuid4().hex[:12]}",
            incident_id=incident_id,
            host=host,
            kind=kind,
            collected_at=collected_at.isoformat(),
            collector=collector,
        )
        stamp = collected_at.strftime("%Y%m%dT%H%M%S%fZ")
        host_dir = self._host_dir(incident_id, host)

        try:
            if kind == EvidenceKind.MEMORY_DUMP:
                path = host_dir / f"{kind.value}-{stamp}.raw"
                self._dump_memory(path)
            else:
                data = producer()
                path = host_dir / f"{kind.value}-{stamp}.json"
                with open(path, "w") as f:
                    json.dump({
                        "incident_id": incident_id,
                        "host": host,
                        "kind": kind.value,
                        "collected_at": item.collected_at,
                        "data": data,
                    }, f, indent=2, default=str)
        except (EvidenceCollectionError, psutil.Error, OSError) as e:
            item.error = str(e)
            logger.error(f"Evidence {kind.value} on {host} failed: {e}")
            self._audit("evidence.failed", item)
            return item

        item.path = str(path)
        item.sha256 = hash_file(path, ["sha256"])["sha256"]
        item.size = path.stat().st_size
        self._audit("evidence.collected", item)
        return item

    def _audit(self, event_type: str, item: EvidenceItem):
        if self.audit is not None:
            self.audit.append(event_type, item.incident_id, "evidence_collector", item.to_dict())

    def collect(self, incident_id: str, host: str) -> List[EvidenceItem]:
        """Collect every evidence kind available for a host."""
        logger.info(f"Collecting evidence from {host} for {incident_id}")

        if self.is_local(host):
            plan = [
                (EvidenceKind.PROCESSES, self.capture_processes),
                (EvidenceKind.NETWORK_CONNECTIONS, self.capture_connections),
                (EvidenceKind.MEMORY, self.capture_memory),
            ]
            if self.memory_dump_command:
                plan.append((EvidenceKind.MEMORY_DUMP, None))
            collector = "psutil"
        elif self.remote is not None:
            plan = [(
                EvidenceKind.REMOTE_SNAPSHOT,
                lambda: self.remote.snapshot(host, incident_id),
            )]
            collector = self.remote.base_url
        else:
            raise EvidenceCollectionError(
                f"No remote collector configured for {host}", host=host
            )

        items = [
            self._store(incident_id, host, kind, producer, collector)
            for kind, producer in plan
        ]
        self.items.setdefault(incident_id, []).extend(items)

        if not any(item.ok for item in items):
            errors = "; ".join(f"{i.kind.value}: {i.error}" for i in items)
            raise EvidenceCollectionError(
                f"All evidence collection failed on {host}: {errors}", host=host
            )

        logger.security_event(
            "evidence",
            "medium",
            f"Collected {sum(i.ok for i in items)}/{len(items)} artifacts from {host}",
            incident_id=incident_id,
            target=host,
        )
        return items

    def write_manifest(self, incident_id: str) -> Path:
        """Write manifest.json listing every artifact and its hash."""
        items = self.items.get(incident_id, [])
        manifest_dir = self.evidence_dir / self._safe(incident_id)
        manifest_dir.mkdir(parents=True, exist_ok=True)
        path = manifest_dir / "manifest.json"

        with open(path, "w") as f:
            json.dump({
                "incident_id": incident_id,
                "generated_at": utcnow().isoformat(),
                "items": [item.to_dict() for item in items],
            }, f, indent=2)

        if self.audit is not None:
            self.audit.append("evidence.manifest", incident_id, "evidence_collector", {
                "path": str(path),
                "sha256": hash_file(path, ["sha256"])["sha256"],
                "items": len(items),
            })
        return path

    def verify(self, item: EvidenceItem) -> bool:
        """Re-hash an artifact and compare with the recorded hash."""
        if not item.path or not item.sha256:
            return False
        path = Path(item.path)
        if not path.exists():
            return False
        return hash_file(path, ["sha256"])["sha256"] == item.sha256
