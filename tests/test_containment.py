"""
Tests for containment backends.
"""

import subprocess
from unittest.mock import MagicMock, patch

import pytest
import requests

from soarkit.core.errors import PermanentActionError, TransientActionError
from soarkit.incident.containment import (
    CommandBackend, ContainmentType, DryRunBackend, HttpBackend,
)
from soarkit.incident.executor import ActionRequest


def request(action_type, target, **parameters):
    return ActionRequest(action_type, target, "INC-1", parameters)


def completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode,
                                       stdout=stdout, stderr=stderr)


class TestContainmentType:

    def test_volatile_state(self):
        assert ContainmentType.NETWORK_ISOLATION.destroys_volatile_state
        assert ContainmentType.PROCESS_TERMINATION.destroys_volatile_state
        assert not ContainmentType.IP_BLOCK.destroys_volatile_state
        assert not ContainmentType.SENDER_BLOCK.destroys_volatile_state


class TestDryRunBackend:

    def test_records_and_reverts(self):
        backend = DryRunBackend()
        outcome = backend.apply(request("ip_block", "203.0.113.5"))
        assert "[dry-run]" in outcome.message
        assert backend.applied[0]["target"] == "203.0.113.5"

        backend.revert({"id": "act-1", "action_type": "ip_block", "target": "203.0.113.5"})
        assert backend.reverted == ["act-1"]


class TestCommandBackendCommands:

    def test_linux_ip_block_directions(self):
        backend = CommandBackend(system="Linux")
        apply, revert = backend.build_commands(
            ContainmentType.IP_BLOCK, "203.0.113.5", {"direction": "outbound"}
        )
        assert apply == [["iptables", "-A", "OUTPUT", "-d", "203.0.113.5", "-j", "DROP"]]
        assert revert == [["iptables", "-D", "OUTPUT", "-d", "203.0.113.5", "-j", "DROP"]]

        apply, _ = backend.build_commands(ContainmentType.IP_BLOCK, "203.0.113.5")
        assert len(apply) == 2

    def test_linux_rate_limit(self):
        apply, revert = CommandBackend(system="linux").build_commands(
            ContainmentType.RATE_LIMIT, "198.51.100.7", {"rate": "50/second"}
        )
        assert "50/second" in apply[0]
        assert apply[1][-1] == "DROP"
        assert revert[0][1] == "-D"

    def test_linux_process_by_pid(self):
        apply, revert = CommandBackend(system="linux").build_commands(
            ContainmentType.PROCESS_TERMINATION, "evil.exe", {"pid": 4242}
        )
        assert apply == [["kill", "-9", "4242"]]
        assert revert == []

    def test_windows_isolation_rules(self):
        apply, revert = CommandBackend(system="Windows").build_commands(
            ContainmentType.NETWORK_ISOLATION, "10.0.0.15"
        )
        assert apply[0][:3] == ["netsh", "advfirewall", "firewall"]
        assert "name=SOARKIT_ISOLATE_10.0.0.15" in apply[0]
        assert revert == [["netsh", "advfirewall", "firewall", "delete", "rule",
                           "name=SOARKIT_ISOLATE_10.0.0.15"]]

    def test_windows_user_disable(self):
        apply, revert = CommandBackend(system="windows").build_commands(
            ContainmentType.USER_DISABLE, "bob"
        )
        assert apply == [["net", "user", "bob", "/active:no"]]
        assert revert == [["net", "user", "bob", "/active:yes"]]

    @pytest.mark.parametrize("action_type", [
        ContainmentType.SENDER_BLOCK, ContainmentType.EMAIL_PURGE, ContainmentType.SHARE_DISABLE,
    ])
    def test_unsupported_on_linux(self, action_type):
        with pytest.raises(PermanentActionError):
            CommandBackend(system="linux").build_commands(action_type, "x")

    def test_can_revert(self):
        backend = CommandBackend(system="linux")
        assert backend.can_revert(ContainmentType.IP_BLOCK)
        assert not backend.can_revert(ContainmentType.PROCESS_TERMINATION)
        assert not backend.can_revert(ContainmentType.HOST_SHUTDOWN)


class TestCommandBackendExecution:

    @patch("soarkit.incident.containment.subprocess.run")
    def test_apply_runs_every_command(self, mock_run):
        mock_run.return_value = completed()
        outcome = CommandBackend(system="linux").apply(request("network_isolation", "10.0.0.15"))

        assert mock_run.call_count == 2
        assert mock_run.call_args_list[0].args[0][:2] == ["iptables", "-A"]
        assert mock_run.call_args_list[0].kwargs["timeout"] == 30
        assert outcome.revert_command.startswith("iptables -D OUTPUT")

    @patch("soarkit.incident.containment.subprocess.run")
    def test_timeout_is_transient(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="iptables", timeout=30)
        with pytest.raises(TransientActionError):
            CommandBackend(system="linux").apply(request("ip_block", "203.0.113.5"))

    @patch("soarkit.incident.containment.subprocess.run")
    def test_nonzero_exit_is_permanent(self, mock_run):
        mock_run.return_value = completed(returncode=1, stderr="Permission denied")
        with pytest.raises(PermanentActionError) as exc:
            CommandBackend(system="linux").apply(request("user_disable", "bob"))
        assert "Permission denied" in str(exc.value)
        assert exc.value.command == "usermod -L bob"

    @patch("soarkit.incident.containment.subprocess.run")
    def test_missing_binary_is_permanent(self, mock_run):
        mock_run.side_effect = FileNotFoundError("iptables")
        with pytest.raises(PermanentActionError):
            CommandBackend(system="linux").apply(request("ip_block", "203.0.113.5"))

    @patch("soarkit.incident.containment.subprocess.run")
    def test_dry_run_runs_nothing(self, mock_run):
        outcome = CommandBackend(system="linux", dry_run=True).apply(
            request("ip_block", "203.0.113.5")
        )
        mock_run.assert_not_called()
        assert outcome.message.startswith("[dry-run] would run: iptables -A INPUT")

    @patch("soarkit.incident.containment.subprocess.run")
    def test_revert(self, mock_run):
        mock_run.return_value = completed()
        message = CommandBackend(system="linux").revert({
            "action_type": "user_disable", "target": "bob", "parameters": {},
        })
        mock_run.assert_called_once()
        assert mock_run.call_args.args[0] == ["usermod", "-U", "bob"]
        assert "Reverted" in message

    @patch("soarkit.incident.containment.subprocess.run")
    def test_partial_apply_is_rolled_back(self, mock_run):
        mock_run.side_effect = [
            completed(), completed(returncode=1, stderr="chain busy"), completed(),
        ]
        with pytest.raises(PermanentActionError, match="chain busy"):
            CommandBackend(system="linux").apply(request("network_isolation", "10.0.0.5"))

        assert [c.args[0] for c in mock_run.call_args_list] == [
            ["iptables", "-A", "OUTPUT", "-d", "10.0.0.5", "-j", "DROP"],
            ["iptables", "-A", "INPUT", "-s", "10.0.0.5", "-j", "DROP"],
            ["iptables", "-D", "OUTPUT", "-d", "10.0.0.5", "-j", "DROP"],
        ]

    @patch("soarkit.incident.containment.subprocess.run")
    def test_windows_partial_isolation_deletes_rule(self, mock_run):
        mock_run.side_effect = [completed(), completed(returncode=1), completed()]
        with pytest.raises(PermanentActionError):
            CommandBackend(system="windows").apply(request("network_isolation", "10.0.0.5"))

        assert mock_run.call_count == 3
        assert mock_run.call_args_list[-1].args[0][3:5] == ["delete", "rule"]

    @patch("soarkit.incident.containment.subprocess.run")
    def test_revert_attempts_every_command(self, mock_run):
        mock_run.side_effect = [completed(returncode=1, stderr="Bad rule"), completed()]
        with pytest.raises(PermanentActionError, match="1 of 2 revert commands failed"):
            CommandBackend(system="linux").revert({
                "action_type": "network_isolation", "target": "10.0.0.5", "parameters": {},
            })
        assert mock_run.call_count == 2

    def test_revert_irreversible(self):
        with pytest.raises(PermanentActionError):
            CommandBackend(system="linux").revert({
                "action_type": "process_termination", "target": "evil.exe", "parameters": {},
            })


class TestDomainAndFileActions:

    def test_domain_block_and_unblock(self, tmp_path):
        hosts = tmp_path / "hosts"
        hosts.write_text("127.0.0.1 localhost")
        backend = CommandBackend(system="linux", hosts_file=str(hosts))

        backend.apply(request("domain_block", "evil.top"))
        backend.apply(request("domain_block", "evil.top"))
        lines = hosts.read_text().splitlines()
        assert lines == ["127.0.0.1 localhost", "127.0.0.1 evil.top # BLOCKED BY SOARKIT"]

        backend.revert({"action_type": "domain_block", "target": "evil.top"})
        assert hosts.read_text().splitlines() == ["127.0.0.1 localhost"]

    def test_quarantine_and_restore(self, tmp_path):
        sample = tmp_path / "evil.exe"
        sample.write_bytes(b"MZ-not-really")
        backend = CommandBackend(system="linux", quarantine_dir=str(tmp_path / "q"))

        outcome = backend.apply(request("file_quarantine", str(sample)))
        assert not sample.exists()
        quarantined = list((tmp_path / "q").glob("evil.exe.*.quarantine"))
        assert len(quarantined) == 1
        assert str(quarantined[0]) in outcome.message

        backend.revert({"action_type": "file_quarantine", "target": str(sample)})
        assert sample.read_bytes() == b"MZ-not-really"

    def test_quarantine_missing_file(self, tmp_path):
        backend = CommandBackend(system="linux", quarantine_dir=str(tmp_path / "q"))
        with pytest.raises(PermanentActionError):
            backend.apply(request("file_quarantine", str(tmp_path / "gone.exe")))


class TestHttpBackend:

    @pytest.fixture
    def session(self):
        session = MagicMock(spec=requests.Session)
        session.headers = {}
        return session

    def response(self, status, body=None):
        response = MagicMock()
        response.status_code = status
        response.text = "body"
        response.json.return_value = body if body is not None else {}
        return response

    def test_apply_posts_action(self, session):
        session.request.return_value = self.response(202, {"message": "queued"})
        backend = HttpBackend("https://soar.test/api/", token="tok", session=session)

        req = request("sender_block", "billing@evil-invoices.com")
        outcome = backend.apply(req)

        method, url = session.request.call_args.args
        assert (method, url) == ("POST", "https://soar.test/api/actions/sender_block")
        payload = session.request.call_args.kwargs["json"]
        assert payload["idempotency_key"] == req.idempotency_key
        assert session.headers["Authorization"] == "Bearer tok"
        assert outcome.message == "queued"
        assert outcome.revert_command.startswith("DELETE https://soar.test/api/actions/")

    @pytest.mark.parametrize("status", [408, 429, 500, 503])
    def test_retryable_status(self, session, status):
        session.request.return_value = self.response(status)
        with pytest.raises(TransientActionError):
            HttpBackend("https://soar.test", session=session).apply(request("ip_block", "x"))

    @pytest.mark.parametrize("status", [400, 401, 404])
    def test_client_errors_are_permanent(self, session, status):
        session.request.return_value = self.response(status)
        with pytest.raises(PermanentActionError):
            HttpBackend("https://soar.test", session=session).apply(request("ip_block", "x"))

    def test_connection_error_is_transient(self, session):
        session.request.side_effect = requests.ConnectionError("refused")
        with pytest.raises(TransientActionError):
            HttpBackend("https://soar.test", session=session).apply(request("ip_block", "x"))

    def test_invalid_url_is_permanent(self, session):
        session.request.side_effect = requests.exceptions.InvalidURL("bad")
        with pytest.raises(PermanentActionError):
            HttpBackend("https://soar.test", session=session).apply(request("ip_block", "x"))

    def test_revert_sends_delete(self, session):
        session.request.return_value = self.response(204)
        backend = HttpBackend("https://soar.test", session=session)
        backend.revert({"action_type": "email_purge", "idempotency_key": "k1"})
        assert session.request.call_args.args == (
            "DELETE", "https://soar.test/actions/email_purge/k1",
        )
