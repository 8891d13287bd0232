"""
Containment Actions - action types and the backends that carry them out.
"""

import platform
import shlex
import shutil
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import requests

from soarkit.core.errors import ActionError, PermanentActionError, TransientActionError
from soarkit.core.logger import get_logger
from soarkit.core.utils import hash_file

logger = get_logger(__name__)

Command = List[str]


class ContainmentType(Enum):
    NETWORK_ISOLATION = "network_isolation"
    PROCESS_TERMINATION = "process_termination"
    USER_DISABLE = "user_disable"
    FILE_QUARANTINE = "file_quarantine"
    IP_BLOCK = "ip_block"
    DOMAIN_BLOCK = "domain_block"
    SERVICE_STOP = "service_stop"
    SENDER_BLOCK = "sender_block"
    EMAIL_PURGE = "email_purge"
    RATE_LIMIT = "rate_limit"
    SHARE_DISABLE = "share_disable"
    HOST_SHUTDOWN = "host_shutdown"

    @property
    def destroys_volatile_state(self) -> bool:
        """Whether running this action loses memory, process or connection state."""
        return self in VOLATILE_STATE_TYPES


VOLATILE_STATE_TYPES = {
    ContainmentType.NETWORK_ISOLATION,
    ContainmentType.PROCESS_TERMINATION,
    ContainmentType.SERVICE_STOP,
    ContainmentType.FILE_QUARANTINE,
    ContainmentType.HOST_SHUTDOWN,
}


@dataclass
class BackendOutcome:
    """What a backend reports after applying an action."""
    message: str
    revert_command: Optional[str] = None


def _display(commands: List[Command]) -> Optional[str]:
    if not commands:
        return None
    return " && ".join(shlex.join(cmd) for cmd in commands)


class ContainmentBackend:
    """Interface shared by containment backends."""

    name = "base"

    def apply(self, request) -> BackendOutcome:
        raise NotImplementedError

    def revert(self, action: Dict[str, Any]) -> str:
        raise NotImplementedError

    def can_revert(self, action_type: ContainmentType) -> bool:
        return True


class DryRunBackend(ContainmentBackend):
    """Records actions without touching anything."""

    name = "dry_run"

    def __init__(self):
        self.applied: List[Dict[str, Any]] = []
        self.reverted: List[str] = []

    def apply(self, request) -> BackendOutcome:
        self.applied.append({
            "action_type": request.action_type.value,
            "target": request.target,
            "incident_id": request.incident_id,
            "parameters": dict(request.parameters),
        })
        logger.info(f"[dry-run] {request.action_type.value} -> {request.target}")
        return BackendOutcome(
            message=f"[dry-run] {request.action_type.value} simulated for {request.target}",
            revert_command=f"[dry-run] revert {request.action_type.value} {request.target}",
        )

    def revert(self, action: Dict[str, Any]) -> str:
        self.reverted.append(action["id"])
        return f"[dry-run] reverted {action['action_type']} on {action['target']}"


class CommandBackend(ContainmentBackend):
    """
    Run containment actions as local operating-system commands.

    Windows uses netsh, taskkill, net user and net stop; Linux uses
    iptables, pkill, usermod and systemctl. Domain blocks and file
    quarantine are done in-process through the hosts file and a
    quarantine directory.
    """

    name = "command"

    BLOCK_MARKER = "# BLOCKED BY SOARKIT"

    def __init__(
        self,
        system: Optional[str] = None,
        dry_run: bool = False,
        timeout: int = 30,
        hosts_file: Optional[str] = None,
        quarantine_dir: str = "quarantine",
    ):
        self.system = (system or platform.system()).lower()
        self.dry_run = dry_run
        self.timeout = timeout
        if hosts_file:
            self.hosts_file = Path(hosts_file)
        elif self.system == "windows":
            self.hosts_file = Path(r"C:\Windows\System32\drivers\etc\hosts")
        else:
            self.hosts_file = Path("/etc/hosts")
        self.quarantine_dir = Path(quarantine_dir)

    def can_revert(self, action_type: ContainmentType) -> bool:
        return action_type not in (
            ContainmentType.PROCESS_TERMINATION, ContainmentType.HOST_SHUTDOWN
        )

    def build_commands(
        self,
        action_type: ContainmentType,
        target: str,
        parameters: Optional[Dict[str, Any]] = None,
    ) -> Tuple[List[Command], List[Command]]:
        """Return the (apply, revert) command lists for an action."""
        parameters = parameters or {}
        if self.system == "windows":
            return self._windows_commands(action_type, target, parameters)
        return self._linux_commands(action_type, target, parameters)

    def _windows_commands(self, action_type, target, parameters):
        netsh = ["netsh", "advfirewall", "firewall"]

        if action_type == ContainmentType.NETWORK_ISOLATION:
            rule = f"name=SOARKIT_ISOLATE_{target}"
            return (
                [netsh + ["add", "rule", rule, "dir=out", "action=block", f"remoteip={target}"],
                 netsh + ["add", "rule", rule, "dir=in", "action=block", f"remoteip={target}"]],
                [netsh + ["delete", "rule", rule]],
            )

        if action_type == ContainmentType.IP_BLOCK:
            direction = parameters.get("direction", "both")
            apply, revert = [], []
            if direction in ("both", "inbound"):
                rule = f"name=SOARKIT_BLOCK_IN_{target}"
                apply.append(netsh + ["add", "rule", rule, "dir=in", "action=block",
                                      f"remoteip={target}"])
                revert.append(netsh + ["delete", "rule", rule])
            if direction in ("both", "outbound"):
                rule = f"name=SOARKIT_BLOCK_OUT_{target}"
                apply.append(netsh + ["add", "rule", rule, "dir=out", "action=block",
                                      f"remoteip={target}"])
                revert.append(netsh + ["delete", "rule", rule])
            return apply, revert

        if action_type == ContainmentType.PROCESS_TERMINATION:
            pid = parameters.get("pid")
            if pid:
                return [["taskkill", "/F", "/PID", str(pid)]], []
            return [["taskkill", "/F", "/IM", target]], []

        if action_type == ContainmentType.USER_DISABLE:
            return ([["net", "user", target, "/active:no"]],
                    [["net", "user", target, "/active:yes"]])

        if action_type == ContainmentType.SERVICE_STOP:
            return [["net", "stop", target]], [["net", "start", target]]

        if action_type == ContainmentType.SHARE_DISABLE:
            return [["net", "share", target, "/delete"]], []

        if action_type == ContainmentType.HOST_SHUTDOWN:
            return [["shutdown", "/s", "/t", "0"]], []

        raise PermanentActionError(
            f"{action_type.value} is not supported by the command backend on windows"
        )

    def _linux_commands(self, action_type, target, parameters):
        if action_type == ContainmentType.NETWORK_ISOLATION:
            return (
                [["iptables", "-A", "OUTPUT", "-d", target, "-j", "DROP"],
                 ["iptables", "-A", "INPUT", "-s", target, "-j", "DROP"]],
                [["iptables", "-D", "OUTPUT", "-d", target, "-j", "DROP"],
                 ["iptables", "-D", "INPUT", "-s", target, "-j", "DROP"]],
            )

        if action_type == ContainmentType.IP_BLOCK:
            direction = parameters.get("direction", "both")
            apply, revert = [], []
            if direction in ("both", "inbound"):
                apply.append(["iptables", "-A", "INPUT", "-s", target, "-j", "DROP"])
                revert.append(["iptables", "-D", "INPUT", "-s", target, "-j", "DROP"])
            if direction in ("both", "outbound"):
                apply.append(["iptables", "-A", "OUTPUT", "-d", target, "-j", "DROP"])
                revert.append(["iptables", "-D", "OUTPUT", "-d", target, "-j", "DROP"])
            return apply, revert

        if action_type == ContainmentType.RATE_LIMIT:
            rate = str(parameters.get("rate", "100/second"))
            rule = ["INPUT", "-s", target, "-m", "limit", "--limit", rate, "-j", "ACCEPT"]
            drop = ["INPUT", "-s", target, "-j", "DROP"]
            return (
                [["iptables", "-A"] + rule, ["iptables", "-A"] + drop],
                [["iptables", "-D"] + rule, ["iptables", "-D"] + drop],
            )

        if action_type == ContainmentType.PROCESS_TERMINATION:
            pid = parameters.get("pid")
            if pid:
                return [["kill", "-9", str(pid)]], []
            return [["pkill", "-9", "-f", target]], []

        if action_type == ContainmentType.USER_DISABLE:
            return [["usermod", "-L", target]], [["usermod", "-U", target]]

        if action_type == ContainmentType.SERVICE_STOP:
            return [["systemctl", "stop", target]], [["systemctl", "start", target]]

        if action_type == ContainmentType.HOST_SHUTDOWN:
            return [["shutdown", "-h", "now"]], []

        raise PermanentActionError(
            f"{action_type.value} is not supported by the command backend on {self.system}"
        )

    def _run(self, command: Command) -> str:
        try:
            completed = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise TransientActionError(
                f"Command timed out after {self.timeout}s", command=shlex.join(command)
            ) from e
        except OSError as e:
            raise PermanentActionError(str(e), command=shlex.join(command)) from e

        if completed.returncode != 0:
            raise PermanentActionError(
                f"Exit code {completed.returncode}: {(completed.stderr or '').strip()}",
                command=shlex.join(command),
            )
        return (completed.stdout or "").strip()

    def _block_domain(self, domain: str) -> BackendOutcome:
        entry = f"127.0.0.1 {domain} {self.BLOCK_MARKER}"
        revert = f"remove '{domain}' entry from {self.hosts_file}"
        if self.dry_run:
            return BackendOutcome(f"[dry-run] would add '{entry}' to {self.hosts_file}", revert)

        try:
            existing = self.hosts_file.read_text() if self.hosts_file.exists() else ""
            if entry not in existing.splitlines():
                with open(self.hosts_file, "a") as f:
                    if existing and not existing.endswith("\n"):
                        f.write("\n")
                    f.write(entry + "\n")
        except OSError as e:
            raise PermanentActionError(f"Cannot update {self.hosts_file}: {e}") from e
        return BackendOutcome(f"Domain {domain} blocked in {self.hosts_file}", revert)

    def _unblock_domain(self, domain: str) -> str:
        entry = f"127.0.0.1 {domain} {self.BLOCK_MARKER}"
        if self.dry_run:
            return f"[dry-run] would remove '{entry}' from {self.hosts_file}"
        try:
            lines = self.hosts_file.read_text().splitlines()
            self.hosts_file.write_text(
                "".join(line + "\n" for line in lines if line != entry)
            )
        except OSError as e:
            raise PermanentActionError(f"Cannot update {self.hosts_file}: {e}") from e
        return f"Domain {domain} unblocked"

    def _quarantine_path(self, file_path: Path) -> Path:
        digest = hash_file(file_path, ["sha256"])["sha256"]
        return self.quarantine_dir / f"{file_path.name}.{digest[:8]}.quarantine"

    def _quarantine_file(self, target: str) -> BackendOutcome:
        source = Path(target)
        if not source.exists():
            raise PermanentActionError(f"File not found: {target}")

        dest = self._quarantine_path(source)
        revert = f"move {dest} back to {source}"
        if self.dry_run:
            return BackendOutcome(f"[dry-run] would move {source} to {dest}", revert)

        try:
            self.quarantine_dir.mkdir(parents=True, exist_ok=True)
            shutil.move(str(source), str(dest))
        except OSError as e:
            raise PermanentActionError(f"Cannot quarantine {target}: {e}") from e
        return BackendOutcome(f"File moved to {dest}", revert)

    def _restore_file(self, target: str) -> str:
        source = Path(target)
        matches = sorted(self.quarantine_dir.glob(f"{source.name}.*.quarantine"))
        if not matches:
            raise PermanentActionError(f"No quarantined copy of {target}")
        if self.dry_run:
            return f"[dry-run] would restore {matches[-1]} to {source}"
        shutil.move(str(matches[-1]), str(source))
        return f"File restored to {source}"

    def apply(self, request) -> BackendOutcome:
        action_type = request.action_type
        if action_type == ContainmentType.DOMAIN_BLOCK:
            return self._block_domain(request.target)
        if action_type == ContainmentType.FILE_QUARANTINE:
            return self._quarantine_file(request.target)

        commands, revert = self.build_commands(action_type, request.target, request.parameters)
        if self.dry_run:
            return BackendOutcome(f"[dry-run] would run: {_display(commands)}", _display(revert))

        output = self._run_all(commands, revert)
        message = "; ".join(o for o in output if o) or f"{action_type.value} applied to {request.target}"
        return BackendOutcome(message, _display(revert))

    def _run_all(self, commands: List[Command], revert: List[Command]) -> List[str]:
        """Run commands in order, undoing the applied ones if a later one fails."""
        output = []
        for index, command in enumerate(commands):
            try:
                output.append(self._run(command))
            except ActionError:
                if index:
                    self._roll_back(index, commands, revert)
                raise
        return output

    def _roll_back(self, applied: int, commands: List[Command], revert: List[Command]) -> None:
        # Paired lists undo command by command; otherwise the revert list undoes all of it
        undo = revert[:applied] if len(revert) == len(commands) else revert
        for command in reversed(undo):
            try:
                self._run(command)
            except ActionError as e:
                logger.error(f"Rollback of '{e.command}' failed: {e}")
        logger.warning(f"Rolled back {applied} of {len(commands)} commands after a failure")

    def revert(self, action: Dict[str, Any]) -> str:
        action_type = ContainmentType(action["action_type"])
        if action_type == ContainmentType.DOMAIN_BLOCK:
            return self._unblock_domain(action["target"])
        if action_type == ContainmentType.FILE_QUARANTINE:
            return self._restore_file(action["target"])

        _, revert = self.build_commands(action_type, action["target"], action.get("parameters"))
        if not revert:
            raise PermanentActionError(f"{action_type.value} cannot be reverted")
        if self.dry_run:
            return f"[dry-run] would run: {_display(revert)}"
        failures = []
        for command in revert:
            try:
                self._run(command)
            except ActionError as e:
                logger.error(f"Revert of '{e.command}' failed: {e}")
                failures.append(e)
        if failures:
            raise PermanentActionError(
                f"{len(failures)} of {len(revert)} revert commands failed: {failures[0]}",
                command=failures[0].command,
            )
        return f"Reverted {action_type.value} on {action['target']}"


class HttpBackend(ContainmentBackend):
    """
    Hand actions to an external system (firewall manager, EDR, mail gateway)
    over a JSON API.
    """

    name = "http"

    TRANSIENT_STATUS = {408, 429}

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        verify_ssl: bool = True,
        timeout: int = 30,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.verify_ssl = verify_ssl
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        if token:
            self.session.headers.update({"Authorization": f"Bearer {token}"})

    def _check(self, response: requests.Response, what: str) -> None:
        status = response.status_code
        if 200 <= status < 300:
            return
        detail = f"{what} returned HTTP {status}: {response.text[:200]}"
        if status in self.TRANSIENT_STATUS or status >= 500:
            raise TransientActionError(detail)
        raise PermanentActionError(detail)

    def _send(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            return self.session.request(
                method, url, timeout=self.timeout, verify=self.verify_ssl, **kwargs
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientActionError(f"{method} {url} failed: {e}") from e
        except requests.RequestException as e:
            raise PermanentActionError(f"{method} {url} failed: {e}") from e

    def apply(self, request) -> BackendOutcome:
        url = f"{self.base_url}/actions/{request.action_type.value}"
        response = self._send("POST", url, json={
            "target": request.target,
            "incident_id": request.incident_id,
            "idempotency_key": request.idempotency_key,
            "parameters": request.parameters,
        })
        self._check(response, url)

        try:
            body = response.json()
        except ValueError:
            body = {}
        message = body.get("message") if isinstance(body, dict) else None
        return BackendOutcome(
            message=message or f"{request.action_type.value} accepted by {self.base_url}",
            revert_command=f"DELETE {url}/{request.idempotency_key}",
        )

    def revert(self, action: Dict[str, Any]) -> str:
        url = f"{self.base_url}/actions/{action['action_type']}/{action['idempotency_key']}"
        response = self._send("DELETE", url)
        self._check(response, url)
        return f"Reverted via {url}"
