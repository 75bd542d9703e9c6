"""Persisted audit alerts + ``alert:new`` notification."""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Optional

from polyarb.models.trade import Alert
from polyarb.monitoring.events import ALERT_NEW, EventBus
from polyarb.storage.sqlite_repository import SQLiteRepository

logger = logging.getLogger(__name__)

INFO = "info"
WARNING = "warning"
ERROR = "error"
CRITICAL = "critical"

SEVERITIES = (INFO, WARNING, ERROR, CRITICAL)

_LOG_LEVELS = {
    INFO: logging.INFO,
    WARNING: logging.WARNING,
    ERROR: logging.ERROR,
    CRITICAL: logging.CRITICAL,
}


class AlertService:
    """Create alerts: persist, log, publish.

    Args:
        repository: Alert storage.
        events: Bus receiving ``alert:new``.
    """

    def __init__(self, repository: SQLiteRepository, events: EventBus):
        self._repository = repository
        self._events = events

    def raise_alert(
        self,
        type: str,
        severity: str,
        message: str,
        data: Optional[dict[str, Any]] = None,
    ) -> Alert:
        if severity not in SEVERITIES:
            raise ValueError(f"Unknown alert severity: {severity}")

        alert = Alert(type=type, severity=severity, message=message, data=data)
        try:
            alert = self._repository.create_alert(alert)
        except sqlite3.Error:
            logger.exception("Failed to persist alert: %s", message)

        logger.log(_LOG_LEVELS[severity], "[ALERT:%s] %s", type, message)
        self._events.publish(ALERT_NEW, alert.to_dict())
        return alert

    def info(self, type: str, message: str, data: Optional[dict] = None) -> Alert:
        return self.raise_alert(type, INFO, message, data)

    def warning(self, type: str, message: str, data: Optional[dict] = None) -> Alert:
        return self.raise_alert(type, WARNING, message, data)

    def error(self, type: str, message: str, data: Optional[dict] = None) -> Alert:
        return self.raise_alert(type, ERROR, message, data)

    def critical(self, type: str, message: str, data: Optional[dict] = None) -> Alert:
        return self.raise_alert(type, CRITICAL, message, data)
