import pytest

from forgeguard.core.events import EventType, Severity
from forgeguard.core.rules import (
    RuleContext,
    SecurityRule,
    SecurityRuleEngine,
    count_recent,
    default_rules,
    rule_from_mapping,
)


def _context(clock, events):
    return RuleContext(recent_events=events, now=clock())


def test_failed_login_burst_fires_at_threshold(clock, make_event):
    engine = SecurityRuleEngine(default_rules())
    events = [make_event(EventType.LOGIN_FAILED, ago=i * 30) for i in range(5)]
    findings = engine.evaluate(_context(clock, events))
    ids = [finding.id for finding in findings]
    assert ids == ["auth.failed_burst"]
    assert findings[0].severity == Severity.HIGH
    assert findings[0].metadata["count"] == 5


def test_failed_login_burst_ignores_old_events(clock, make_event):
    engine = SecurityRuleEngine(default_rules())
    events = [make_event(EventType.LOGIN_FAILED, ago=400) for _ in range(5)]
    assert engine.evaluate(_context(clock, events)) == []


def test_equipment_and_unauthorized_rules(clock, make_event):
    engine = SecurityRuleEngine(default_rules())
    events = [make_event(EventType.EQUIPMENT_ERROR, ago=60 * i) for i in range(3)]
    events += [make_event(EventType.UNAUTHORIZED_ACCESS, ago=120) for _ in range(2)]
    findings = {finding.id: finding for finding in engine.evaluate(_context(clock, events))}
    assert findings["equipment.error_rate"].severity == Severity.CRITICAL
    assert findings["data.unauthorized_burst"].severity == Severity.HIGH


def test_rapid_escalation_needs_two_criticals_or_one_plus_three_highs(clock, make_event):
    engine = SecurityRuleEngine(default_rules())
    one_critical = [make_event(EventType.SECURITY_VIOLATION, Severity.CRITICAL)]
    assert engine.evaluate(_context(clock, one_critical)) == []

    mixed = one_critical + [make_event(EventType.API_SUSPICIOUS, Severity.HIGH) for _ in range(3)]
    ids = [finding.id for finding in engine.evaluate(_context(clock, mixed))]
    assert ids == ["threat.rapid_escalation"]


def test_failing_rule_is_skipped(clock, make_event):
    def broken(ctx):
        raise RuntimeError("boom")

    engine = SecurityRuleEngine()
    engine.add_rule(SecurityRule(id="broken", condition=broken, message="never"))
    engine.add_rule(SecurityRule(id="always", condition=lambda ctx: True, message="ok", severity=Severity.LOW))
    findings = engine.evaluate(_context(clock, [make_event()]))
    assert [finding.id for finding in findings] == ["always"]
    assert findings[0].metadata is None


def test_rule_registry_operations():
    engine = SecurityRuleEngine(default_rules())
    snapshot = engine.rules
    snapshot.clear()
    assert len(engine.rules) == 4
    assert engine.remove_rule("auth.failed_burst") is True
    assert engine.remove_rule("auth.failed_burst") is False
    engine.clear()
    assert engine.rules == []


def test_count_recent_filters(clock, make_event):
    events = [
        make_event(EventType.LOGIN_FAILED, Severity.HIGH, ago=10),
        make_event(EventType.LOGIN_FAILED, Severity.LOW, ago=10),
        make_event(EventType.LOGIN, Severity.HIGH, ago=10),
        make_event(EventType.LOGIN_FAILED, Severity.HIGH, ago=3600),
    ]
    now = clock()
    assert count_recent(events, now, 5) == 3
    assert count_recent(events, now, 5, event_type=EventType.LOGIN_FAILED) == 2
    assert count_recent(events, now, 120, severity=Severity.HIGH) == 3


def test_rule_from_mapping(clock, make_event):
    rule = rule_from_mapping(
        {"id": "api.burst", "event_type": "api.access.suspicious", "threshold": 2, "minutes": 1, "severity": "high"}
    )
    assert rule.severity == Severity.HIGH
    assert "api.access.suspicious" in rule.message
    events = [make_event(EventType.API_SUSPICIOUS) for _ in range(2)]
    assert rule.condition(_context(clock, events)) is True


def test_rule_from_mapping_rejects_incomplete_definition():
    with pytest.raises(ValueError):
        rule_from_mapping({"id": "x", "threshold": 2})
