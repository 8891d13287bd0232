"""
Incident notifications over Slack and generic webhooks.
"""

from typing import Any, Callable, Dict, List, Optional

from soarkit.core.config import AlertConfig
from soarkit.core.logger import get_logger
from soarkit.core.severity import Severity, normalize_severity
from soarkit.core.utils import safe_request, utcnow

logger = get_logger(__name__)

SLACK_COLORS = {
    Severity.LOW: "#4488ff",
    Severity.MEDIUM: "#ffcc00",
    Severity.HIGH: "#ff8800",
    Severity.CRITICAL: "#ff4444",
}


class NotificationDispatcher:
    """Send incident notifications to the configured channels."""

    def __init__(self, config: Optional[AlertConfig] = None, request: Callable = safe_request):
        self.config = config or AlertConfig()
        self.threshold = normalize_severity(self.config.severity_threshold) or Severity.MEDIUM
        self.request = request

    def channels(self) -> Dict[str, str]:
        cfg = self.config
        if not cfg.enabled:
            return {}
        channels = {}
        if cfg.slack_enabled and cfg.slack_webhook:
            channels["slack"] = cfg.slack_webhook
        if cfg.webhook_enabled and cfg.custom_webhook:
            channels["webhook"] = cfg.custom_webhook
        return channels

    @staticmethod
    def _payload(incident, message: str, template: Optional[str], priority: Optional[str]) -> Dict[str, Any]:
        return {
            "incident_id": incident.id,
            "title": incident.title,
            "category": incident.category.value,
            "severity": incident.severity.value,
            "status": incident.status.value,
            "affected_assets": incident.affected_assets,
            "message": message,
            "template": template,
            "priority": priority or incident.severity.value,
            "timestamp": utcnow().isoformat(),
        }

    @staticmethod
    def _slack_body(payload: Dict[str, Any], severity: Severity) -> Dict[str, Any]:
        return {
            "text": f"[{payload['severity'].upper()}] {payload['incident_id']}: {payload['title']}",
            "attachments": [{
                "color": SLACK_COLORS[severity],
                "text": payload["message"],
                "fields": [
                    {"title": "Category", "value": payload["category"], "short": True},
                    {"title": "Status", "value": payload["status"], "short": True},
                    {"title": "Assets", "value": ", ".join(payload["affected_assets"]) or "-",
                     "short": False},
                ],
            }],
        }

    def notify(
        self,
        incident,
        message: str = "",
        template: Optional[str] = None,
        priority: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Notify every configured channel about an incident.

        Returns ``{"status", "sent", "failed"}`` where status is one of
        sent, partial, failed or skipped. Never raises on delivery errors.
        """
        channels = self.channels()
        if not channels:
            return {"status": "skipped", "reason": "no channels configured", "sent": [], "failed": []}

        if incident.severity < self.threshold:
            return {
                "status": "skipped",
                "reason": f"severity {incident.severity.value} below {self.threshold.value}",
                "sent": [],
                "failed": [],
            }

        payload = self._payload(incident, message or incident.title, template, priority)
        sent: List[str] = []
        failed: List[str] = []

        for name, url in channels.items():
            body = self._slack_body(payload, incident.severity) if name == "slack" else payload
            response = self.request(url, method="POST", timeout=self.config.timeout, json=body)
            if response is not None and 200 <= response.status_code < 300:
                sent.append(name)
            else:
                status = response.status_code if response is not None else "no response"
                logger.error(f"Notification via {name} failed for {incident.id}: {status}")
                failed.append(name)

        if sent and failed:
            status = "partial"
        elif sent:
            status = "sent"
        else:
            status = "failed"

        logger.info(f"Notification for {incident.id}: {status} (sent={sent}, failed={failed})")
        return {"status": status, "sent": sent, "failed": failed}
