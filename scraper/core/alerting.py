"""
Operator Alerting

Failed or aborted job runs and schedule sync failures must reach an operator:
a silently failing recurring job starves every tenant in its batch. Alerts are
always logged and, when ALERT_WEBHOOK_URL is configured, posted to a chat
webhook. Repeats of the same alert key are suppressed by an AlertThrottle
owned by the service instance.
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)


class AlertSeverity(Enum):
    """Alert severity levels"""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


@dataclass
class Alert:
    """Single operator-facing alert"""
    key: str
    title: str
    description: str
    severity: AlertSeverity
    source: str
    labels: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class AlertThrottle:
    """
    Time-bounded map of recently sent alert keys.

    `should_send` returns False while a key is inside its window. Expired keys
    are swept every `sweep_interval` seconds so the map stays bounded by the
    number of distinct keys seen within one window.
    """

    def __init__(
        self,
        window_seconds: float = 900,
        sweep_interval: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_seconds = window_seconds
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._sent_at: Dict[str, float] = {}
        self._last_sweep = clock()
        self._lock = threading.Lock()

    def should_send(self, key: str) -> bool:
        with self._lock:
            now = self._clock()
            if now - self._last_sweep >= self.sweep_interval:
                self._sweep(now)

            last = self._sent_at.get(key)
            if last is not None and now - last < self.window_seconds:
                return False

            self._sent_at[key] = now
            return True

    def _sweep(self, now: float):
        expired = [k for k, sent in self._sent_at.items() if now - sent >= self.window_seconds]
        for key in expired:
            del self._sent_at[key]
        self._last_sweep = now

    def __len__(self):
        return len(self._sent_at)


class AlertingService:
    """Routes alerts to the log and an optional chat webhook"""

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        throttle: Optional[AlertThrottle] = None,
        http_client: Optional[httpx.Client] = None,
        timeout: float = 10.0,
    ):
        self.webhook_url = webhook_url
        self.throttle = throttle or AlertThrottle()
        self._http_client = http_client
        self.timeout = timeout
        self.sent: List[Alert] = []

    def send_alert(self, alert: Alert) -> bool:
        """
        Emit an alert unless the same key was alerted within the throttle window.

        Returns:
            True when the alert was emitted, False when throttled
        """
        if not self.throttle.should_send(alert.key):
            logger.debug(f"Alert throttled: {alert.key}")
            return False

        log_level = logging.ERROR if alert.severity in (AlertSeverity.CRITICAL, AlertSeverity.HIGH) else logging.WARNING
        logger.log(
            log_level,
            f"ALERT [{alert.severity.value}] {alert.title}: {alert.description}",
            extra={k: v for k, v in alert.labels.items() if k in ("tenant_id", "run_id", "target_type")}
        )
        self.sent.append(alert)

        if self.webhook_url:
            self._deliver_webhook(alert)

        return True

    def _deliver_webhook(self, alert: Alert):
        payload = {
            "text": f"[{alert.severity.value.upper()}] {alert.title}",
            "description": alert.description,
            "source": alert.source,
            "labels": alert.labels,
            "timestamp": alert.timestamp.isoformat(),
        }
        try:
            if self._http_client is not None:
                response = self._http_client.post(self.webhook_url, json=payload, timeout=self.timeout)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(self.webhook_url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            # The alert is already logged; delivery failure must not fail the caller
            logger.error(f"Failed to deliver alert {alert.key} to webhook: {e}")


_alerting_service: Optional[AlertingService] = None


def get_alerting_service() -> AlertingService:
    """Process-wide alerting service built from settings."""
    global _alerting_service
    if _alerting_service is None:
        from scraper.core.config import get_settings
        settings = get_settings()
        _alerting_service = AlertingService(
            webhook_url=settings.alert_webhook_url,
            throttle=AlertThrottle(window_seconds=settings.alert_throttle_seconds),
        )
    return _alerting_service
