"""Declarative threshold rules evaluated over a window of recent events.

A rule is plain data: an id, a severity, a message and two callables. New
heuristics are added by registering another ``SecurityRule``; there is no
class hierarchy to extend.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from .events import EventType, SecurityEvent, Severity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RuleContext:
    """Inputs shared by every rule in one evaluation pass."""

    recent_events: Sequence[SecurityEvent] = ()
    metrics: Mapping[str, Any] = field(default_factory=dict)
    now: float = field(default_factory=time.time)


@dataclass(frozen=True)
class RuleFinding:
    id: str
    severity: Severity
    message: str
    metadata: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class SecurityRule:
    id: str
    condition: Callable[[RuleContext], bool]
    message: str = ""
    severity: Severity = Severity.MEDIUM
    metadata: Optional[Callable[[RuleContext], Dict[str, Any]]] = None


class SecurityRuleEngine:
    """Ordered, mutable registry of rules."""

    def __init__(self, rules: Iterable[SecurityRule] = ()) -> None:
        self._rules: List[SecurityRule] = list(rules)

    @property
    def rules(self) -> List[SecurityRule]:
        return list(self._rules)

    def add_rule(self, rule: SecurityRule) -> None:
        self._rules.append(rule)

    def remove_rule(self, rule_id: str) -> bool:
        before = len(self._rules)
        self._rules = [rule for rule in self._rules if rule.id != rule_id]
        return len(self._rules) != before

    def clear(self) -> None:
        self._rules = []

    def evaluate(self, context: RuleContext) -> List[RuleFinding]:
        """Run every rule; a rule that raises is skipped."""

        findings: List[RuleFinding] = []
        for rule in self._rules:
            try:
                if not rule.condition(context):
                    continue
                metadata = rule.metadata(context) if rule.metadata else None
            except Exception as e:
                logger.debug(f"Rule {rule.id} skipped: {e}")
                continue
            findings.append(
                RuleFinding(
                    id=rule.id,
                    severity=rule.severity,
                    message=rule.message,
                    metadata=metadata,
                )
            )
        return findings


def count_recent(
    events: Iterable[SecurityEvent],
    now: float,
    minutes: float,
    event_type: Optional[EventType] = None,
    severity: Optional[Severity] = None,
) -> int:
    cutoff = now - minutes * 60
    count = 0
    for event in events:
        if event.timestamp < cutoff:
            continue
        if event_type is not None and event.event_type != event_type:
            continue
        if severity is not None and event.severity != severity:
            continue
        count += 1
    return count


def event_count_rule(
    rule_id: str,
    event_type: EventType,
    threshold: int,
    minutes: float,
    severity: Severity,
    message: str,
) -> SecurityRule:
    """Fire when ``threshold`` events of one type land inside ``minutes``."""

    def condition(ctx: RuleContext) -> bool:
        return count_recent(ctx.recent_events, ctx.now, minutes, event_type=event_type) >= threshold

    def metadata(ctx: RuleContext) -> Dict[str, Any]:
        return {
            "count": count_recent(ctx.recent_events, ctx.now, minutes, event_type=event_type),
            "threshold": threshold,
            "minutes": minutes,
        }

    return SecurityRule(
        id=rule_id,
        severity=severity,
        message=message,
        condition=condition,
        metadata=metadata,
    )


def failed_login_burst(threshold: int = 5, minutes: float = 5) -> SecurityRule:
    return event_count_rule(
        "auth.failed_burst",
        EventType.LOGIN_FAILED,
        threshold,
        minutes,
        Severity.HIGH,
        f"Failed login burst detected ({threshold}+ in {minutes:g}m)",
    )


def equipment_error_rate(threshold: int = 3, minutes: float = 10) -> SecurityRule:
    return event_count_rule(
        "equipment.error_rate",
        EventType.EQUIPMENT_ERROR,
        threshold,
        minutes,
        Severity.CRITICAL,
        f"Elevated equipment errors ({threshold}+ in {minutes:g}m)",
    )


def unauthorized_access_burst(threshold: int = 2, minutes: float = 10) -> SecurityRule:
    return event_count_rule(
        "data.unauthorized_burst",
        EventType.UNAUTHORIZED_ACCESS,
        threshold,
        minutes,
        Severity.HIGH,
        f"Unauthorized access attempts exceed threshold ({threshold}+ in {minutes:g}m)",
    )


def rapid_threat_escalation(minutes: float = 30) -> SecurityRule:
    """Two criticals, or one critical plus three highs, inside ``minutes``."""

    def condition(ctx: RuleContext) -> bool:
        critical = count_recent(ctx.recent_events, ctx.now, minutes, severity=Severity.CRITICAL)
        high = count_recent(ctx.recent_events, ctx.now, minutes, severity=Severity.HIGH)
        return critical >= 2 or (critical >= 1 and high >= 3)

    def metadata(ctx: RuleContext) -> Dict[str, Any]:
        return {
            "critical": count_recent(ctx.recent_events, ctx.now, minutes, severity=Severity.CRITICAL),
            "high": count_recent(ctx.recent_events, ctx.now, minutes, severity=Severity.HIGH),
        }

    return SecurityRule(
        id="threat.rapid_escalation",
        severity=Severity.CRITICAL,
        message="Rapid threat escalation detected",
        condition=condition,
        metadata=metadata,
    )


def default_rules() -> List[SecurityRule]:
    return [
        failed_login_burst(5, 5),
        equipment_error_rate(3, 10),
        unauthorized_access_burst(2, 10),
        rapid_threat_escalation(30),
    ]


def rule_from_mapping(data: Mapping[str, Any]) -> SecurityRule:
    """Build an event-count rule from a YAML ``rules:`` entry."""

    if not isinstance(data, Mapping):
        raise ValueError("Rule definition must be a mapping")
    missing = [key for key in ("id", "event_type", "threshold") if key not in data]
    if missing:
        raise ValueError(f"Rule definition missing fields: {', '.join(missing)}")
    event_type = EventType(str(data["event_type"]))
    threshold = int(data["threshold"])
    minutes = float(data.get("minutes", 10))
    message = str(data.get("message") or f"{event_type.value} threshold exceeded ({threshold}+ in {minutes:g}m)")
    return event_count_rule(
        str(data["id"]),
        event_type,
        threshold,
        minutes,
        Severity.parse(data.get("severity", "medium")),
        message,
    )
