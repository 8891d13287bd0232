"""
Tests for incident notifications.
"""

from unittest.mock import MagicMock, patch

import pytest
import requests

from soarkit.core.config import AlertConfig
from soarkit.core.severity import Severity
from soarkit.core.utils import safe_request
from soarkit.incident.notify import SLACK_COLORS, NotificationDispatcher

SLACK = "https://hooks.slack.test/T000/B000"
WEBHOOK = "https://soc.test/hooks/incidents"


def response(status):
    resp = MagicMock()
    resp.status_code = status
    return resp


def dispatcher(request, **overrides):
    settings = dict(slack_enabled=True, slack_webhook=SLACK,
                    webhook_enabled=True, custom_webhook=WEBHOOK)
    settings.update(overrides)
    return NotificationDispatcher(AlertConfig(**settings), request=request)


class TestChannels:

    def test_defaults_have_no_channels(self):
        assert NotificationDispatcher().channels() == {}

    def test_enabled_flags_and_urls_required(self):
        assert dispatcher(MagicMock()).channels() == {"slack": SLACK, "webhook": WEBHOOK}
        assert dispatcher(MagicMock(), slack_webhook=None).channels() == {"webhook": WEBHOOK}
        assert dispatcher(MagicMock(), webhook_enabled=False).channels() == {"slack": SLACK}
        assert dispatcher(MagicMock(), enabled=False).channels() == {}

    def test_bad_threshold_falls_back_to_medium(self):
        notifier = dispatcher(MagicMock(), severity_threshold="whenever")
        assert notifier.threshold == Severity.MEDIUM


class TestNotify:

    def test_skipped_without_channels(self, incident):
        request = MagicMock()
        result = NotificationDispatcher(request=request).notify(incident, "hello")

        assert result["status"] == "skipped"
        assert result["reason"] == "no channels configured"
        request.assert_not_called()

    def test_skipped_below_threshold(self, incident):
        request = MagicMock()
        result = dispatcher(request, severity_threshold="critical").notify(incident)

        assert result["status"] == "skipped"
        assert "below critical" in result["reason"]
        request.assert_not_called()

    def test_sent_to_every_channel(self, incident):
        request = MagicMock(return_value=response(200))
        result = dispatcher(request).notify(incident, "Host isolated", template="t1")

        assert result == {"status": "sent", "sent": ["slack", "webhook"], "failed": []}
        urls = [c.args[0] for c in request.call_args_list]
        assert urls == [SLACK, WEBHOOK]
        assert all(c.kwargs["method"] == "POST" for c in request.call_args_list)
        assert all(c.kwargs["timeout"] == 10 for c in request.call_args_list)

    def test_slack_body(self, incident):
        request = MagicMock(return_value=response(200))
        dispatcher(request, webhook_enabled=False).notify(incident, "Host isolated")

        body = request.call_args.kwargs["json"]
        assert body["text"].startswith(f"[HIGH] {incident.id}")
        attachment = body["attachments"][0]
        assert attachment["color"] == SLACK_COLORS[Severity.HIGH]
        assert attachment["text"] == "Host isolated"

    def test_webhook_payload(self, incident):
        request = MagicMock(return_value=response(204))
        dispatcher(request, slack_enabled=False).notify(incident, template="t1")

        payload = request.call_args.kwargs["json"]
        assert payload["incident_id"] == incident.id
        assert payload["message"] == incident.title
        assert payload["template"] == "t1"
        assert payload["priority"] == "high"
        assert payload["affected_assets"] == ["ws-042"]

    def test_partial(self, incident):
        request = MagicMock(side_effect=[response(200), response(500)])
        result = dispatcher(request).notify(incident)
        assert result == {"status": "partial", "sent": ["slack"], "failed": ["webhook"]}

    def test_failed(self, incident):
        request = MagicMock(return_value=None)
        result = dispatcher(request).notify(incident)
        assert result == {"status": "failed", "sent": [], "failed": ["slack", "webhook"]}


class TestSafeRequest:

    @patch("soarkit.core.utils.requests.request")
    def test_transport_errors_return_none(self, mock_request):
        mock_request.side_effect = requests.ConnectionError("refused")
        assert safe_request(WEBHOOK, method="POST") is None

    @patch("soarkit.core.utils.requests.request")
    def test_passes_options(self, mock_request):
        safe_request(WEBHOOK, method="POST", timeout=3, verify_ssl=False, json={"a": 1})
        mock_request.assert_called_once_with(
            "POST", WEBHOOK, timeout=3, verify=False, json={"a": 1}
        )


@pytest.mark.parametrize("severity", list(Severity))
def test_every_severity_has_a_color(severity):
    assert severity in SLACK_COLORS
