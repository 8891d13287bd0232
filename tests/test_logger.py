"""
Tests for logging setup and security events.
"""

import io
import json
import logging

import pytest

from soarkit.core.logger import SECURITY_LOGGER, SecurityLogger, get_logger, setup_logging


@pytest.fixture
def console():
    root = logging.getLogger()
    saved = list(root.handlers)
    level = root.level
    stream = io.StringIO()
    yield stream
    for logger in (root, logging.getLogger(SECURITY_LOGGER)):
        for handler in logger.handlers:
            handler.close()
    root.handlers[:] = saved
    root.setLevel(level)
    logging.getLogger(SECURITY_LOGGER).handlers.clear()


def read_json_lines(path):
    return [json.loads(line) for line in path.read_text().splitlines() if line.strip()]


def test_get_logger_returns_security_logger():
    assert isinstance(get_logger("soarkit.tests"), SecurityLogger)


def test_console_only_by_default(console, tmp_path):
    setup_logging(level="INFO", stream=console)

    get_logger("soarkit.tests").info("plain message")

    assert "plain message" in console.getvalue()
    assert not logging.getLogger(SECURITY_LOGGER).handlers


def test_security_events_are_mirrored_to_json_log(console, tmp_path):
    security_log = tmp_path / "logs" / "security.json"
    setup_logging(level="INFO", security_log=str(security_log), stream=console)

    log = get_logger("soarkit.tests")
    log.containment("ip_block", "203.0.113.5", "failed", incident_id="INC-1")
    log.ioc_detected("ip", "203.0.113.5", source="edr")
    log.info("not a security event")
    for handler in logging.getLogger(SECURITY_LOGGER).handlers:
        handler.flush()

    entries = read_json_lines(security_log)
    assert [e["data"]["event_type"] for e in entries] == ["containment", "ioc_detection"]

    containment = entries[0]
    assert containment["level"] == "ERROR"
    assert containment["data"]["incident_id"] == "INC-1"
    assert containment["data"]["target"] == "203.0.113.5"
    assert containment["data"]["status"] == "failed"
    assert entries[1]["data"]["source"] == "edr"
    assert "Containment ip_block on 203.0.113.5: failed" in console.getvalue()


def test_json_log_file(console, tmp_path):
    log_file = tmp_path / "soarkit.log"
    setup_logging(level="DEBUG", log_file=str(log_file), json_format=True, stream=console)

    get_logger("soarkit.tests").security_event(
        "classification", "medium", "Classified as phishing", incident_id="INC-2"
    )
    for handler in logging.getLogger().handlers:
        handler.flush()

    entry = read_json_lines(log_file)[-1]
    assert entry["message"] == "Classified as phishing"
    assert entry["level"] == "WARNING"
    assert entry["data"]["event_type"] == "classification"
