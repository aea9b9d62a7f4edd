import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests

from connectproxy.model.Core.header import EmbedField, NotifierConfig, Severity

logger = logging.getLogger('connectproxy.notify')

COLORS = {
    Severity.INFO: 0x008000,
    Severity.ERROR: 0xFF0000,
}


class NotificationSink:
    """
    Delivers human-readable event reports to an external channel.

    Implementations never raise: a failed delivery is logged and reported
    through the return value only.
    """

    def notify(
        self,
        title: str,
        description: str,
        severity: Severity = Severity.INFO,
        fields: Optional[List[EmbedField]] = None,
    ) -> bool:
        raise NotImplementedError


class LogSink(NotificationSink):
    """
    Sink used when no webhook is configured.

    Components already log every milestone they report, so events are only
    echoed here at debug level.
    """

    def notify(self, title, description, severity=Severity.INFO, fields=None):
        logger.debug(f"[{severity.value}] [{title}] {description}")
        return True


class DiscordWebhookSink(NotificationSink):
    """
    Posts each event as a single embed to a Discord-compatible webhook.

    Attributes:
        webhook_url (str): Endpoint receiving the POST
        username (str): Display name attached to every message
        timeout (float): HTTP timeout in seconds
    """

    def __init__(self, config: NotifierConfig):
        self.webhook_url = config.webhook_url
        self.username = config.username
        self.timeout = config.timeout

    def build_payload(
        self,
        title: str,
        description: str,
        severity: Severity,
        fields: Optional[List[EmbedField]] = None,
    ) -> Dict[str, Any]:
        embed = {
            "title": title,
            "description": description,
            "color": COLORS[severity],
            "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "fields": [{"name": f.name, "value": f.value} for f in fields or []],
        }
        return {
            "username": self.username,
            "content": "",
            "embeds": [embed],
        }

    def notify(self, title, description, severity=Severity.INFO, fields=None):
        if not self.webhook_url:
            logger.error(f"Failed to send '{title}': empty or malformed webhook URL")
            return False

        payload = self.build_payload(title, description, severity, fields)

        try:
            response = requests.post(self.webhook_url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"Failed to send '{title}': {e}")
            return False

        if response.status_code != 204:
            logger.error(f"Failed to send '{title}': HTTP {response.status_code}")
            logger.error(f"Response Body: {response.text}")
            self._log_webhook_error(response)
            return False

        return True

    def _log_webhook_error(self, response: requests.Response):
        """Log the {code, message} error document the webhook may return."""
        try:
            error = response.json()
        except ValueError as e:
            logger.error(f"Failed to decode webhook error: {e}")
            return

        if isinstance(error, dict) and "message" in error:
            logger.error(f"Webhook Error {error.get('code')}: {error['message']}")
