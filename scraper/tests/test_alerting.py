"""
Tests for operator alerting and throttling.
"""
import json

import httpx

from scraper.core.alerting import Alert, AlertingService, AlertSeverity, AlertThrottle


class FakeClock:

    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _alert(key="run-failed:google:1", severity=AlertSeverity.HIGH):
    return Alert(
        key=key,
        title="Scraper run failed",
        description="Out of memory",
        severity=severity,
        source="job_webhook",
        labels={"run_id": "run-1"},
    )


class TestAlertThrottle:

    def setup_method(self):
        self.clock = FakeClock()
        self.throttle = AlertThrottle(window_seconds=900, sweep_interval=300, clock=self.clock)

    def test_repeat_within_window_is_suppressed(self):
        assert self.throttle.should_send("a") is True
        self.clock.now += 899
        assert self.throttle.should_send("a") is False
        self.clock.now += 1
        assert self.throttle.should_send("a") is True

    def test_keys_are_independent(self):
        assert self.throttle.should_send("a") is True
        assert self.throttle.should_send("b") is True

    def test_expired_keys_are_swept(self):
        for key in ("a", "b", "c"):
            self.throttle.should_send(key)
        assert len(self.throttle) == 3

        self.clock.now += 1000
        self.throttle.should_send("d")

        assert len(self.throttle) == 1


class TestAlertingService:

    def test_posts_to_webhook(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        service = AlertingService(webhook_url="https://chat.example.com/hook", http_client=client)

        assert service.send_alert(_alert()) is True

        assert len(requests) == 1
        body = json.loads(requests[0].content)
        assert body["text"] == "[HIGH] Scraper run failed"
        assert body["labels"] == {"run_id": "run-1"}

    def test_delivery_failure_does_not_raise(self):
        client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
        service = AlertingService(webhook_url="https://chat.example.com/hook", http_client=client)

        assert service.send_alert(_alert()) is True
        assert len(service.sent) == 1

    def test_throttled_alert_not_recorded(self):
        service = AlertingService()

        assert service.send_alert(_alert()) is True
        assert service.send_alert(_alert()) is False
        assert service.send_alert(_alert(key="other", severity=AlertSeverity.LOW)) is True
        assert [a.key for a in service.sent] == ["run-failed:google:1", "other"]
