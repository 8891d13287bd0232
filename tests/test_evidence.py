"""
Tests for volatile evidence collection.
"""

import json
import subprocess
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import psutil
import pytest
import requests

from soarkit.core.errors import EvidenceCollectionError
from soarkit.incident.evidence import (
    EvidenceCollector, EvidenceKind, RemoteCollector,
)


class GoneProcess:
    @property
    def info(self):
        raise psutil.NoSuchProcess(4242)


@pytest.fixture
def collector(tmp_path, audit):
    collector = EvidenceCollector(evidence_dir=tmp_path / "evidence", audit=audit)
    collector.capture_processes = MagicMock(return_value=[{"pid": 1, "name": "init"}])
    collector.capture_connections = MagicMock(return_value=[])
    collector.capture_memory = MagicMock(return_value={"virtual": {"total": 1}})
    return collector


class TestLocalCapture:

    @patch("soarkit.incident.evidence.psutil.process_iter")
    def test_processes_skip_vanished(self, mock_iter, tmp_path):
        alive = SimpleNamespace(info={"pid": 10, "name": "evil.exe"})
        mock_iter.return_value = [alive, GoneProcess()]

        processes = EvidenceCollector(tmp_path).capture_processes()

        assert processes == [{"pid": 10, "name": "evil.exe"}]
        assert "cmdline" in mock_iter.call_args.args[0]

    @patch("soarkit.incident.evidence.psutil.net_connections")
    def test_connections(self, mock_conns, tmp_path):
        mock_conns.return_value = [SimpleNamespace(
            fd=3, family=2, type=1,
            laddr=SimpleNamespace(ip="10.0.0.15", port=49152),
            raddr=SimpleNamespace(ip="203.0.113.50", port=443),
            status="ESTABLISHED", pid=10,
        ), SimpleNamespace(
            fd=4, family=2, type=1,
            laddr=SimpleNamespace(ip="0.0.0.0", port=22),
            raddr=(), status="LISTEN", pid=1,
        )]

        connections = EvidenceCollector(tmp_path).capture_connections()

        mock_conns.assert_called_once_with(kind="inet")
        assert connections[0]["remote_address"] == "203.0.113.50:443"
        assert connections[1]["remote_address"] is None

    def test_is_local(self):
        assert EvidenceCollector.is_local("localhost")
        assert EvidenceCollector.is_local("127.0.0.1")
        assert not EvidenceCollector.is_local("definitely-not-this-host.invalid")


class TestCollect:

    def test_local_host(self, collector, audit, tmp_path):
        items = collector.collect("INC-1", "localhost")

        assert [i.kind for i in items] == [
            EvidenceKind.PROCESSES, EvidenceKind.NETWORK_CONNECTIONS, EvidenceKind.MEMORY,
        ]
        assert all(i.ok and i.collector == "psutil" for i in items)

        stored = json.loads(Path(items[0].path).read_text())
        assert stored["data"] == [{"pid": 1, "name": "init"}]
        assert Path(items[0].path).parent == tmp_path / "evidence" / "INC-1" / "localhost"
        assert len(audit.records(event_type="evidence.collected")) == 3

    def test_partial_failure_is_recorded(self, collector, audit):
        collector.capture_connections.side_effect = psutil.AccessDenied()

        items = collector.collect("INC-1", "localhost")

        failed = [i for i in items if not i.ok]
        assert [i.kind for i in failed] == [EvidenceKind.NETWORK_CONNECTIONS]
        assert len(audit.records(event_type="evidence.failed")) == 1

    def test_total_failure_raises(self, collector):
        for capture in (collector.capture_processes, collector.capture_connections,
                        collector.capture_memory):
            capture.side_effect = psutil.AccessDenied()

        with pytest.raises(EvidenceCollectionError) as exc:
            collector.collect("INC-1", "localhost")
        assert exc.value.host == "localhost"

    def test_remote_host_without_collector(self, collector):
        with pytest.raises(EvidenceCollectionError) as exc:
            collector.collect("INC-1", "ws-042.corp.invalid")
        assert exc.value.host == "ws-042.corp.invalid"

    @patch("soarkit.incident.evidence.subprocess.run")
    def test_memory_dump(self, mock_run, collector):
        def dump(command, **kwargs):
            Path(command[-1]).write_bytes(b"\x00" * 64)
            return subprocess.CompletedProcess(command, 0, "", "")

        mock_run.side_effect = dump
        collector.memory_dump_command = "avml --compress {output}"

        items = collector.collect("INC-1", "localhost")

        dump_item = items[-1]
        assert dump_item.kind == EvidenceKind.MEMORY_DUMP
        assert dump_item.path.endswith(".raw")
        assert dump_item.size == 64
        assert mock_run.call_args.args[0][:2] == ["avml", "--compress"]

    @patch("soarkit.incident.evidence.subprocess.run")
    def test_memory_dump_failure(self, mock_run, collector):
        mock_run.return_value = subprocess.CompletedProcess([], 1, "", "no /dev/crash")
        collector.memory_dump_command = "avml {output}"

        items = collector.collect("INC-1", "localhost")
        assert not items[-1].ok
        assert "no /dev/crash" in items[-1].error


class TestRemoteCollector:

    def make_session(self, response=None, error=None):
        session = MagicMock(spec=requests.Session)
        session.headers = {}
        if error:
            session.post.side_effect = error
        else:
            session.post.return_value = response
        return session

    def test_snapshot_stored(self, tmp_path, audit):
        response = MagicMock()
        response.json.return_value = {"processes": [{"pid": 7}]}
        session = self.make_session(response)
        remote = RemoteCollector("https://edr.test/api", token="t", session=session)
        collector = EvidenceCollector(tmp_path, audit=audit, remote=remote)

        items = collector.collect("INC-1", "ws-042")

        assert len(items) == 1
        assert items[0].kind == EvidenceKind.REMOTE_SNAPSHOT
        assert items[0].collector == "https://edr.test/api"
        assert session.post.call_args.args[0] == "https://edr.test/api/hosts/ws-042/snapshot"
        assert session.headers["Authorization"] == "Bearer t"

    def test_snapshot_failure(self, tmp_path):
        session = self.make_session(error=requests.ConnectionError("no route"))
        remote = RemoteCollector("https://edr.test/api", session=session)
        collector = EvidenceCollector(tmp_path, remote=remote)

        with pytest.raises(EvidenceCollectionError) as exc:
            collector.collect("INC-1", "ws-042")
        assert exc.value.host == "ws-042"


class TestChainOfCustody:

    def test_manifest(self, collector, audit):
        items = collector.collect("INC-1", "localhost")
        path = collector.write_manifest("INC-1")

        manifest = json.loads(path.read_text())
        assert [i["sha256"] for i in manifest["items"]] == [i.sha256 for i in items]
        assert audit.records(event_type="evidence.manifest")[0].details["items"] == 3

    def test_verify_detects_modification(self, collector):
        item = collector.collect("INC-1", "localhost")[0]
        assert collector.verify(item)

        with open(item.path, "a") as f:
            f.write(" ")
        assert not collector.verify(item)

    def test_verify_failed_item(self, collector):
        collector.capture_memory.side_effect = OSError("boom")
        item = collector.collect("INC-1", "localhost")[-1]
        assert not collector.verify(item)
