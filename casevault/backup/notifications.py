"""
Backup notifications: webhook POST on success and/or failure.

Delivery is best effort. Transport errors and non-2xx responses are
logged and reported as ``False``; they never fail the backup itself.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from casevault.backup.models import BackupResult, BackupStatus
from casevault.engine.config import BackupNotificationConfig

logger = logging.getLogger("casevault.backup.notifications")


def build_payload(result: BackupResult, recipients: Optional[list] = None) -> Dict[str, Any]:
    return {
        "event": "backup_completed" if result.success else "backup_failed",
        "backup_id": result.backup_id,
        "status": result.status.value if isinstance(result.status, BackupStatus) else result.status,
        "success": result.success,
        "size": result.size,
        "files_count": result.files_count,
        "duration_ms": result.duration_ms,
        "error": result.error,
        "warnings": list(result.warnings),
        "recipients": list(recipients or []),
        "sent_at": datetime.now(timezone.utc).isoformat(),
    }


class BackupNotifier:
    """
    Posts backup outcomes to ``notifications.webhook_url``.

    A custom ``client`` may be supplied (tests pass one built on
    ``httpx.MockTransport``); otherwise a short-lived client is opened
    per notification.
    """

    def __init__(self, client: Optional[httpx.Client] = None):
        self._client = client

    def should_notify(self, result: BackupResult, config: BackupNotificationConfig) -> bool:
        if not config.webhook_url:
            return False
        return config.on_success if result.success else config.on_failure

    def notify(self, result: BackupResult, config: BackupNotificationConfig) -> bool:
        """Send the notification if the config asks for one. Returns True on 2xx."""
        if not self.should_notify(result, config):
            return False

        payload = build_payload(result, config.recipients)
        try:
            if self._client is not None:
                response = self._client.post(
                    config.webhook_url, json=payload, timeout=config.timeout_seconds,
                )
            else:
                with httpx.Client(timeout=httpx.Timeout(config.timeout_seconds)) as client:
                    response = client.post(config.webhook_url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Backup notification for {result.backup_id} failed: {e}")
            return False

        logger.info(f"Backup notification sent for {result.backup_id} ({response.status_code})")
        return True
