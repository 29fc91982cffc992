"""Operational alerts (breaker opened, job failed, critical portfolio) to a webhook."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import socket
import threading
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class AlertSeverity(Enum):
    INFO = 10
    WARNING = 20
    CRITICAL = 30

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.name.lower()

    @classmethod
    def from_string(cls, value: str, default: Optional["AlertSeverity"] = None) -> "AlertSeverity":
        if not value:
            return default or cls.WARNING
        try:
            return cls[value.strip().upper()]
        except KeyError:
            return default or cls.WARNING


@dataclass
class AlertConfig:
    enabled: bool
    webhook_url: Optional[str]
    min_severity: AlertSeverity = AlertSeverity.WARNING
    dry_run: bool = False
    timeout: float = 5.0
    dedupe_seconds: float = 300.0


@dataclass
class SentAlert:
    severity: AlertSeverity
    title: str
    message: str
    context: Dict[str, Any]


class AlertService:
    """
    Post operational alerts to a chat/pager webhook.

    Identical alerts (severity + title + message) are suppressed for
    `dedupe_seconds`. Without a webhook URL the service is disabled and
    `notify` is a no-op. Delivery failures are logged, never raised.
    """

    def __init__(self, config: AlertConfig, clock: Optional[Callable[[], float]] = None) -> None:
        self._config = config
        self._clock = clock or time.monotonic
        self._enabled = bool(config.enabled and (config.webhook_url or config.dry_run))
        if config.enabled and not self._enabled:
            logger.warning("Alerting enabled but no webhook URL set; disabling alerts")

        self._last_sent: Dict[str, float] = {}
        self._history: List[SentAlert] = []
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, raw_config: Optional[Dict[str, Any]]) -> "AlertService":
        raw_config = raw_config or {}

        webhook_url = raw_config.get("webhook_url")
        if webhook_url and "${" in webhook_url:
            webhook_url = os.path.expandvars(webhook_url)
        if not webhook_url:
            webhook_url = os.getenv(raw_config.get("webhook_env", "ALERT_WEBHOOK_URL"), "")

        config = AlertConfig(
            enabled=bool(raw_config.get("enabled", True)),
            webhook_url=webhook_url or None,
            min_severity=AlertSeverity.from_string(raw_config.get("min_severity", "warning")),
            dry_run=bool(raw_config.get("dry_run", False)),
            timeout=float(raw_config.get("timeout_seconds", 5.0)),
            dedupe_seconds=float(raw_config.get("dedupe_seconds", 300.0)),
        )
        return cls(config)

    def is_enabled(self) -> bool:
        return self._enabled

    def notify(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Send an alert. Returns True when it was dispatched (not filtered or deduped)."""
        if not self._enabled:
            return False
        if severity.value < self._config.min_severity.value:
            return False

        fingerprint = hashlib.sha256(f"{severity.name}|{title}|{message}".encode("utf-8")).hexdigest()
        now = self._clock()
        with self._lock:
            last = self._last_sent.get(fingerprint)
            if last is not None and now - last < self._config.dedupe_seconds:
                logger.debug("Alert deduped: %s", title)
                return False
            self._last_sent[fingerprint] = now
            self._history.append(SentAlert(severity, title, message, dict(context or {})))

        self._send(severity, title, message, context)
        return True

    def history(self) -> List[SentAlert]:
        with self._lock:
            return list(self._history)

    def _send(self, severity: AlertSeverity, title: str, message: str, context: Optional[Dict[str, Any]]) -> None:
        payload = self._build_payload(severity, title, message, context)

        if self._config.dry_run:
            logger.info("[ALERT:%s] %s - %s | %s", severity.name, title, message, context or {})
            return

        request = urllib.request.Request(
            self._config.webhook_url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )
        try:
            with urllib.request.urlopen(request, timeout=self._config.timeout) as response:
                if response.status >= 400:
                    logger.error("Alert webhook returned HTTP %s for '%s'", response.status, title)
        except (urllib.error.URLError, socket.timeout) as exc:
            logger.error("Failed to deliver alert '%s': %s", title, exc)

    @staticmethod
    def _build_payload(
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        parts = [f"[{severity.name}] {title}", message]
        if context:
            parts.append("context=" + json.dumps(context, sort_keys=True, default=str))
        return {"text": " | ".join(filter(None, parts))}


__all__ = ["AlertConfig", "AlertService", "AlertSeverity"]
