import pytest

from forgeguard.core.events import EventType, SecurityEvent, Severity
from forgeguard.core.hooks import MONITORING_SECONDS, ResponseHooks
from forgeguard.core.notify import SecurityTeamNotifier
from forgeguard.core.scorer import ThreatAssessment

from conftest import FakeClock


def _assessment(score=92, level=Severity.CRITICAL):
    return ThreatAssessment(
        score=score,
        level=level,
        severity=Severity.HIGH,
        factors=("Rule: Failed login burst detected (5+ in 5m)", "Failed login burst: 5 failed attempts"),
        confidence=0.8,
        recommendations=("Notify security team immediately",),
        source_ip="10.0.0.1",
    )


def _event():
    return SecurityEvent(
        event_type=EventType.LOGIN_FAILED,
        severity=Severity.HIGH,
        timestamp=0.0,
        source_ip="10.0.0.1",
        user_id="op-7",
        station_id="press-2",
    )


def test_notifier_builds_payload(monkeypatch):
    notifier = SecurityTeamNotifier({"webhook_url": "http://localhost/hooks/test"})
    captured = {}

    def fake_send(text, key, payload):
        captured["text"] = text
        captured["key"] = key
        captured["payload"] = payload
        return True

    monkeypatch.setattr(notifier, "_send", fake_send)

    assert notifier.notify_threat(_assessment(), _event()) is True
    assert captured["payload"]["type"] == "threat_assessment"
    assert captured["payload"]["source_ip"] == "10.0.0.1"
    assert captured["key"] == "threat:10.0.0.1"
    assert captured["text"].startswith("*CRITICAL threat detected* - score 92")
    assert "Station: press-2" in captured["text"]
    assert "Failed login burst: 5 failed attempts" in captured["text"]


def test_notifier_suppresses_within_cooldown(monkeypatch):
    clock = FakeClock()
    notifier = SecurityTeamNotifier({"webhook_url": "http://localhost/hooks/test", "cooldown_seconds": 60}, clock=clock)
    sent = []
    monkeypatch.setattr(notifier, "_send", lambda text, key, payload: sent.append(key) or True)

    assert notifier.notify_threat(_assessment(), _event()) is True
    assert notifier.notify_threat(_assessment(), _event()) is False
    clock.advance(61)
    assert notifier.notify_threat(_assessment(), _event()) is True
    assert sent == ["threat:10.0.0.1", "threat:10.0.0.1"]


def test_notifier_disabled_without_webhook(monkeypatch):
    monkeypatch.setattr("forgeguard.core.notify_config.NOTIFY_WEBHOOK_URL", "")
    notifier = SecurityTeamNotifier({"webhook_url": ""})
    assert notifier.enabled is False
    assert notifier.notify({"title": "x"}) is False


def test_send_posts_json_to_webhook(monkeypatch):
    calls = {}

    class FakeResponse:
        status_code = 200

    def fake_post(url, json=None, timeout=None):
        calls.update(url=url, json=json, timeout=timeout)
        return FakeResponse()

    monkeypatch.setattr("forgeguard.core.notify.requests.post", fake_post)
    notifier = SecurityTeamNotifier({"webhook_url": "http://localhost/hooks/test", "channel": "plant-sec"})
    assert notifier.notify({"title": "Test", "score": 10}) is True
    assert calls["url"] == "http://localhost/hooks/test"
    assert calls["json"]["channel"] == "plant-sec"
    assert calls["json"]["text"].startswith("*Test* - score 10")


def test_hooks_forward_notifications_and_keep_records():
    class CapturingNotifier:
        def __init__(self):
            self.seen = []

        def notify_threat(self, assessment, event):
            self.seen.append((assessment.score, event.source_ip))
            return True

    notifier = CapturingNotifier()
    hooks = ResponseHooks(notifier=notifier, max_records=2, clock=FakeClock())
    for action in ("notify_security_team", "log_incident", "flag_for_review", "enhance_monitoring"):
        hooks.dispatch(action, _assessment(), _event())
    for _ in range(3):
        hooks.log_incident(_assessment(), _event())

    assert notifier.seen == [(92, "10.0.0.1")]
    assert len(hooks.incidents) == 2
    assert hooks.reviews[0]["level"] == "critical"
    assert "10.0.0.1" in hooks.monitored


def test_hooks_reject_unknown_actions():
    hooks = ResponseHooks()
    with pytest.raises(ValueError, match="format_disk"):
        hooks.dispatch("format_disk", _assessment(), _event())


def test_enhanced_monitoring_expires():
    clock = FakeClock()
    hooks = ResponseHooks(clock=clock)
    hooks.enhance_monitoring(_assessment(), _event())
    assert hooks.expire_monitoring() == 0

    clock.advance(MONITORING_SECONDS)
    assert hooks.expire_monitoring() == 1
    assert hooks.monitored == {}
