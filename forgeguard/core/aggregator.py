"""Multi-signal threat aggregation.

Four independent signal generators (statistical anomalies, declarative
rules, IP reputation and behavioral patterns) produce findings that are fused
into a single :class:`ThreatAssessment`. Each evaluation is also folded into a
per-source history whose exponentially decayed average feeds back into the
next evaluation, so a source that was aggressive recently keeps an elevated
score even when its current burst is modest.
"""
from __future__ import annotations

import logging
import math
import threading
import time
from collections import Counter
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from .events import EventType, SecurityEvent, Severity
from .reputation import ReputationProvider
from .rules import RuleContext, SecurityRuleEngine, default_rules
from .scorer import ScoreEvaluator, ThreatAssessment, ThreatFinding
from .statistics import StatisticalAnalyzer

logger = logging.getLogger(__name__)

SERIES_LOGIN_FAILURES = "login_failures"
SERIES_EQUIPMENT_ERRORS = "equipment_errors"
SERIES_UNAUTHORIZED_ACCESS = "unauthorized_access"

HISTORY_WEIGHT = 0.3
HISTORY_DECAY_RATE = 0.1

REPUTATION_WORKERS = 4


@dataclass(frozen=True)
class ThreatContext:
    """Everything one evaluation looks at."""

    recent_events: Sequence[SecurityEvent] = ()
    series_by_key: Mapping[str, Sequence[float]] = field(default_factory=dict)
    source_ip: Optional[str] = None
    user_id: Optional[str] = None
    station_id: Optional[str] = None
    time_window: float = 60  # minutes


@dataclass(frozen=True)
class ThreatHistoryEntry:
    timestamp: float
    score: int


def _events_per_minute(events: Sequence[SecurityEvent]) -> float:
    stamps = sorted(event.timestamp for event in events)
    # Simultaneous events are treated as spread over one second.
    span = max(stamps[-1] - stamps[0], 1.0)
    return len(events) / (span / 60.0)


class ThreatAggregator:
    """Scores a source from recent events, counters and external reputation."""

    def __init__(
        self,
        reputation: Optional[ReputationProvider] = None,
        rule_engine: Optional[SecurityRuleEngine] = None,
        scorer: Optional[ScoreEvaluator] = None,
        max_history_size: int = 1000,
        threat_decay_hours: float = 24,
        reputation_timeout: float = 5.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.reputation = reputation
        self.rule_engine = rule_engine if rule_engine is not None else SecurityRuleEngine(default_rules())
        self.scorer = scorer or ScoreEvaluator()
        self.max_history_size = max(int(max_history_size), 1)
        self.threat_decay_hours = threat_decay_hours
        self.reputation_timeout = reputation_timeout
        self.clock = clock
        self._history: Dict[str, List[ThreatHistoryEntry]] = {}
        self._history_lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = ThreadPoolExecutor(
            max_workers=REPUTATION_WORKERS, thread_name_prefix="forgeguard-reputation"
        )
        # Lookups submitted and not yet finished; never exceeds the worker count.
        self._pending_lookups = 0
        self._pending_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    def evaluate_threat(self, context: ThreatContext) -> ThreatAssessment:
        """Score ``context``. Never raises; errors yield a fallback assessment."""

        try:
            return self._evaluate(context)
        except Exception:
            logger.exception("Threat evaluation failed; using fallback assessment")
            return self.create_fallback_assessment(context)

    def _evaluate(self, context: ThreatContext) -> ThreatAssessment:
        now = self.clock()
        cutoff = now - float(context.time_window) * 60
        window_events = [event for event in (context.recent_events or ()) if event.timestamp >= cutoff]
        series = dict(context.series_by_key or {})

        statistical = self.detect_statistical_anomalies(series, window_events)
        rule_based = self._rule_findings(window_events, now)
        reputation = self.check_ip_reputation(context.source_ip) if context.source_ip else None
        behavioral = self.analyze_behavioral_patterns(window_events, context.user_id, context.station_id)

        assessment = self.aggregate(
            statistical=statistical,
            rule_based=rule_based,
            reputation=reputation,
            behavioral=behavioral,
            events=window_events,
            source_ip=context.source_ip,
            user_id=context.user_id,
            now=now,
        )
        if context.source_ip:
            self.update_threat_history(context.source_ip, assessment.score)
        return assessment

    # ------------------------------------------------------------------
    # Signal 1: statistical anomalies
    # ------------------------------------------------------------------
    def detect_statistical_anomalies(
        self, series_by_key: Mapping[str, Sequence[float]], events: Sequence[SecurityEvent]
    ) -> List[ThreatFinding]:
        findings: List[ThreatFinding] = []

        logins = series_by_key.get(SERIES_LOGIN_FAILURES)
        if logins:
            report = StatisticalAnalyzer.is_last_point_anomalous(logins, 2.5)
            if report.anomalous:
                findings.append(
                    ThreatFinding(
                        kind="statistical",
                        severity=Severity.HIGH,
                        confidence=min(0.95, 0.7 + (report.z - 2.5) * 0.1),
                        message="Anomalous login failure pattern detected",
                        details={"series": SERIES_LOGIN_FAILURES, "z_score": report.z, "threshold": 2.5},
                    )
                )

        equipment = series_by_key.get(SERIES_EQUIPMENT_ERRORS)
        if equipment:
            report = StatisticalAnalyzer.detect_outliers(equipment, 2.0)
            if report.outliers:
                findings.append(
                    ThreatFinding(
                        kind="statistical",
                        severity=Severity.MEDIUM,
                        confidence=0.8,
                        message="Equipment error outliers detected",
                        details={
                            "series": SERIES_EQUIPMENT_ERRORS,
                            "outlier_count": len(report.outliers),
                            "mean": report.mean,
                        },
                    )
                )

        access = series_by_key.get(SERIES_UNAUTHORIZED_ACCESS)
        if access:
            report = StatisticalAnalyzer.is_last_point_anomalous(access, 2.0)
            if report.anomalous:
                findings.append(
                    ThreatFinding(
                        kind="statistical",
                        severity=Severity.HIGH,
                        confidence=min(0.95, 0.7 + (report.z - 2.0) * 0.1),
                        message="Anomalous unauthorized access pattern detected",
                        details={"series": SERIES_UNAUTHORIZED_ACCESS, "z_score": report.z, "threshold": 2.0},
                    )
                )

        if findings or not events:
            return findings

        # Sparse data fallbacks, tried in order until one fires.
        type_counts = Counter(event.event_type for event in events)
        max_count = max(type_counts.values())
        avg_count = sum(type_counts.values()) / len(type_counts)
        if max_count > avg_count * 3 and max_count > 5:
            findings.append(
                ThreatFinding(
                    kind="statistical",
                    severity=Severity.MEDIUM,
                    confidence=0.7,
                    message="Unusual event volume distribution detected",
                    details={
                        "max_count": max_count,
                        "average_count": round(avg_count, 2),
                        "ratio": round(max_count / avg_count, 2),
                    },
                )
            )
            return findings

        if len(events) >= 3:
            rate = _events_per_minute(events)
            if rate > 1.5:
                findings.append(
                    ThreatFinding(
                        kind="statistical",
                        severity=Severity.MEDIUM,
                        confidence=0.6,
                        message="Rapid event sequence detected",
                        details={"events_per_minute": round(rate, 2), "total_events": len(events)},
                    )
                )
                return findings

        for key, values in series_by_key.items():
            if not values:
                continue
            mean = StatisticalAnalyzer.mean(values)
            std = StatisticalAnalyzer.std_dev(values)
            if mean > 0 and std > 0.5 * mean:
                findings.append(
                    ThreatFinding(
                        kind="statistical",
                        severity=Severity.MEDIUM,
                        confidence=0.6,
                        message=f"Variation detected in {key} series",
                        details={
                            "series": key,
                            "mean": round(mean, 2),
                            "std_dev": round(std, 2),
                            "variation": round(std / mean, 2),
                        },
                    )
                )
                break
        return findings

    # ------------------------------------------------------------------
    # Signal 2: rules
    # ------------------------------------------------------------------
    @staticmethod
    def calculate_event_metrics(events: Iterable[SecurityEvent]) -> Dict[str, Dict[str, int]]:
        severity_counts = {severity.value: 0 for severity in Severity}
        type_counts: Dict[str, int] = {}
        for event in events:
            severity_counts[event.severity.value] += 1
            type_counts[event.event_type.value] = type_counts.get(event.event_type.value, 0) + 1
        return {"severity_counts": severity_counts, "type_counts": type_counts}

    def _rule_findings(self, events: Sequence[SecurityEvent], now: float) -> List[ThreatFinding]:
        context = RuleContext(recent_events=tuple(events), metrics=self.calculate_event_metrics(events), now=now)
        findings = []
        for result in self.rule_engine.evaluate(context):
            details: Dict[str, Any] = {"rule_id": result.id}
            details.update(result.metadata or {})
            findings.append(
                ThreatFinding(
                    kind="rule",
                    severity=result.severity,
                    confidence=1.0,
                    message=result.message,
                    details=details,
                )
            )
        return findings

    # ------------------------------------------------------------------
    # Signal 3: reputation
    # ------------------------------------------------------------------
    def check_ip_reputation(self, ip: str) -> Optional[ThreatFinding]:
        """Ask the reputation provider about ``ip`` within a bounded timeout."""

        provider = self.reputation
        if provider is None:
            return None
        try:
            if not provider.is_enabled():
                return None
            future = self._submit_lookup(provider, ip)
            if future is None:
                return None
            result = future.result(timeout=self.reputation_timeout)
        except FutureTimeoutError:
            future.cancel()
            logger.warning(f"Reputation lookup for {ip} timed out after {self.reputation_timeout}s")
            return None
        except Exception as e:
            logger.warning(f"Reputation lookup for {ip} failed: {e}")
            return None

        if not result.supported:
            logger.debug(f"Reputation unavailable for {ip}: {result.reason}")
            return None
        if not result.is_malicious:
            return None
        return ThreatFinding(
            kind="reputation",
            severity=Severity.HIGH,
            confidence=min(0.95, result.reputation / 100.0),
            message=f"IP address {ip} has poor reputation",
            details={
                "reputation": result.reputation,
                "country_code": result.country_code,
                "usage_type": result.usage_type,
                "isp": result.isp,
            },
        )

    def _submit_lookup(self, provider: ReputationProvider, ip: str) -> Optional[Future]:
        # Skip rather than queue behind slow lookups still holding every worker.
        with self._pending_lock:
            if self._executor is None:
                logger.debug(f"Reputation lookup for {ip} skipped: aggregator closed")
                return None
            if self._pending_lookups >= REPUTATION_WORKERS:
                logger.warning(f"Reputation lookups saturated; skipping {ip}")
                return None
            self._pending_lookups += 1
            try:
                future = self._executor.submit(provider.check_ip, ip)
            except Exception:
                self._pending_lookups -= 1
                raise
        future.add_done_callback(self._lookup_done)
        return future

    def _lookup_done(self, future: Future) -> None:
        with self._pending_lock:
            self._pending_lookups -= 1

    @property
    def pending_reputation_lookups(self) -> int:
        with self._pending_lock:
            return self._pending_lookups

    # ------------------------------------------------------------------
    # Signal 4: behavioral patterns
    # ------------------------------------------------------------------
    def analyze_behavioral_patterns(
        self,
        events: Sequence[SecurityEvent],
        user_id: Optional[str] = None,
        station_id: Optional[str] = None,
    ) -> List[ThreatFinding]:
        findings: List[ThreatFinding] = []
        if not events:
            return findings

        user_events = [event for event in events if user_id and event.user_id == user_id]
        if user_events:
            user_types = Counter(event.event_type for event in user_events)

            if len(user_types) > 5 and len(events) > 10:
                findings.append(
                    ThreatFinding(
                        kind="behavioral",
                        severity=Severity.MEDIUM,
                        confidence=0.7,
                        message="Unusual user activity pattern detected",
                        details={"user_id": user_id, "event_type_count": len(user_types), "total_events": len(events)},
                    )
                )

            if len(user_events) > 3:
                stamps = sorted(event.timestamp for event in user_events)
                span = stamps[-1] - stamps[0]
                if span > 0:
                    rate = len(user_events) / (span / 60.0)
                    if rate > 2:
                        findings.append(
                            ThreatFinding(
                                kind="behavioral",
                                severity=Severity.MEDIUM,
                                confidence=0.8,
                                message="Rapid user activity sequence detected",
                                details={"user_id": user_id, "events_per_minute": round(rate, 2)},
                            )
                        )

            if len(user_events) > 5:
                dominant, dominant_count = user_types.most_common(1)[0]
                if dominant_count > len(user_events) * 0.7:
                    findings.append(
                        ThreatFinding(
                            kind="behavioral",
                            severity=Severity.LOW,
                            confidence=0.6,
                            message="Unusual event type concentration for user",
                            details={
                                "user_id": user_id,
                                "dominant_event_type": dominant.value,
                                "dominant_count": dominant_count,
                                "percentage": round(dominant_count / len(user_events) * 100),
                            },
                        )
                    )

        station_events = [event for event in events if station_id and event.station_id == station_id]
        if station_events:
            critical = sum(1 for event in station_events if event.severity == Severity.CRITICAL)
            if critical > 2:
                findings.append(
                    ThreatFinding(
                        kind="behavioral",
                        severity=Severity.HIGH,
                        confidence=0.8,
                        message="Elevated critical events at station",
                        details={"station_id": station_id, "critical_event_count": critical},
                    )
                )
            if len(station_events) > 5:
                elevated = sum(1 for event in station_events if event.severity.rank >= Severity.HIGH.rank)
                if elevated > len(station_events) * 0.5:
                    findings.append(
                        ThreatFinding(
                            kind="behavioral",
                            severity=Severity.MEDIUM,
                            confidence=0.7,
                            message="High severity event concentration at station",
                            details={
                                "station_id": station_id,
                                "high_severity_count": elevated,
                                "percentage": round(elevated / len(station_events) * 100),
                            },
                        )
                    )

        if findings:
            return findings

        distinct = {event.event_type for event in events}
        if len(distinct) > 3 and len(events) > 5:
            findings.append(
                ThreatFinding(
                    kind="behavioral",
                    severity=Severity.LOW,
                    confidence=0.5,
                    message="Diverse event activity pattern detected",
                    details={"event_type_count": len(distinct), "total_events": len(events)},
                )
            )
        elif len(distinct) >= 3:
            findings.append(
                ThreatFinding(
                    kind="behavioral",
                    severity=Severity.LOW,
                    confidence=0.6,
                    message="Multiple event types detected in short time",
                    details={
                        "event_type_count": len(distinct),
                        "event_types": sorted(event_type.value for event_type in distinct),
                    },
                )
            )
        return findings

    # ------------------------------------------------------------------
    # Fusion
    # ------------------------------------------------------------------
    def aggregate(
        self,
        statistical: Sequence[ThreatFinding] = (),
        rule_based: Sequence[ThreatFinding] = (),
        reputation: Optional[ThreatFinding] = None,
        behavioral: Sequence[ThreatFinding] = (),
        events: Sequence[SecurityEvent] = (),
        source_ip: Optional[str] = None,
        user_id: Optional[str] = None,
        now: Optional[float] = None,
    ) -> ThreatAssessment:
        score = 0.0
        factors: List[str] = []
        labelled = [
            ("Statistical", list(statistical)),
            ("Rule", list(rule_based)),
            ("IP Reputation", [reputation] if reputation else []),
            ("Behavioral", list(behavioral)),
        ]
        findings: List[ThreatFinding] = []
        for label, group in labelled:
            for finding in group:
                score += self.scorer.contribution(finding)
                factors.append(f"{label}: {finding.message}")
                findings.append(finding)

        volume = min(30.0, len(events) * 1.0)
        score += volume
        if volume > 15:
            factors.append(f"High event volume: {len(events)} events")

        failed_logins = sum(1 for event in events if event.event_type == EventType.LOGIN_FAILED)
        if failed_logins >= 3:
            score += min(25, failed_logins * 5)
            factors.append(f"Failed login burst: {failed_logins} failed attempts")

        unauthorized = sum(1 for event in events if event.event_type == EventType.UNAUTHORIZED_ACCESS)
        if unauthorized >= 2:
            score += min(20, unauthorized * 8)
            factors.append(f"Unauthorized access burst: {unauthorized} attempts")

        if source_ip:
            historical = self.get_historical_threat_level(source_ip)
            score += historical * HISTORY_WEIGHT
            if historical > 50:
                factors.append(f"Historical threat context: {round(historical)}/100")

        if not factors:
            if events:
                factors.append(f"Event processing: {len(events)} events analyzed")
            else:
                factors.append("No specific threats detected")

        final_score = self.scorer.clamp(score)
        level = self.scorer.classify(final_score)
        severity = Severity.highest(*(finding.severity for finding in findings))
        confidence = 0.5
        if findings:
            confidence = min(0.95, sum(finding.confidence for finding in findings) / len(findings))

        return ThreatAssessment(
            score=final_score,
            level=level,
            severity=severity,
            factors=tuple(factors),
            confidence=confidence,
            recommendations=tuple(self.generate_recommendations(level, factors)),
            timestamp=now if now is not None else self.clock(),
            source_ip=source_ip,
            user_id=user_id,
            event_count=len(events),
            findings=tuple(findings),
        )

    @staticmethod
    def generate_recommendations(level: Severity, factors: Sequence[str]) -> List[str]:
        if level == Severity.CRITICAL:
            recommendations = [
                "Immediate incident response required",
                "Consider system lockdown",
                "Notify security team immediately",
            ]
        elif level == Severity.HIGH:
            recommendations = [
                "Enhanced monitoring recommended",
                "Review recent security events",
                "Consider additional authentication",
            ]
        elif level == Severity.MEDIUM:
            recommendations = ["Continue monitoring", "Review security logs"]
        else:
            recommendations = ["Standard monitoring procedures"]

        if any(factor.startswith("Statistical") for factor in factors):
            recommendations.append("Investigate statistical anomalies")
        if any(factor.startswith("Behavioral") for factor in factors):
            recommendations.append("Review user behavior patterns")
        if any(factor.startswith("IP Reputation") for factor in factors):
            recommendations.append("Verify IP address legitimacy")
        return recommendations

    def create_fallback_assessment(self, context: Any) -> ThreatAssessment:
        """Conservative result used when evaluation itself failed."""

        try:
            event_count = len(getattr(context, "recent_events", None) or ())
        except TypeError:
            event_count = 0
        return ThreatAssessment(
            score=0,
            level=Severity.LOW,
            severity=Severity.LOW,
            factors=("Fallback threat assessment",),
            confidence=0.1,
            recommendations=("Review system logs for errors",),
            timestamp=self.clock(),
            source_ip=getattr(context, "source_ip", None),
            user_id=getattr(context, "user_id", None),
            event_count=event_count,
            fallback=True,
        )

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------
    def _prune(self, history: List[ThreatHistoryEntry], now: float) -> List[ThreatHistoryEntry]:
        cutoff = now - self.threat_decay_hours * 3600
        return [entry for entry in history if entry.timestamp > cutoff]

    def update_threat_history(self, ip: str, score: int) -> None:
        now = self.clock()
        with self._history_lock:
            history = self._history.setdefault(ip, [])
            history.append(ThreatHistoryEntry(timestamp=now, score=int(score)))
            if len(history) > self.max_history_size:
                del history[: len(history) - self.max_history_size]
            self._history[ip] = self._prune(history, now)

    def get_historical_threat_level(self, ip: str) -> float:
        """Exponentially decayed average of the source's recent scores.

        The most recent entry has rank 0 and weight 1; each older entry is
        weighted ``exp(-0.1 * rank)``.
        """
        with self._history_lock:
            history = self._history.get(ip)
            if not history:
                return 0.0
            history = self._prune(history, self.clock())
            self._history[ip] = history
        if not history:
            return 0.0
        total_weight = 0.0
        weighted = 0.0
        for rank, entry in enumerate(reversed(history)):
            weight = math.exp(-HISTORY_DECAY_RATE * rank)
            total_weight += weight
            weighted += entry.score * weight
        return weighted / total_weight

    def get_threat_history(self, ip: str) -> List[ThreatHistoryEntry]:
        with self._history_lock:
            return list(self._history.get(ip, ()))

    def clear_threat_history(self, ip: Optional[str] = None) -> None:
        with self._history_lock:
            if ip is None:
                self._history.clear()
            else:
                self._history.pop(ip, None)

    def cleanup(self, cutoff: float) -> int:
        """Drop history entries at or before ``cutoff`` or outside the decay window.

        Returns the number of sources whose history emptied and was released.
        """
        cutoff = max(cutoff, self.clock() - self.threat_decay_hours * 3600)
        released = 0
        with self._history_lock:
            for ip in list(self._history):
                kept = [entry for entry in self._history[ip] if entry.timestamp > cutoff]
                if kept:
                    self._history[ip] = kept
                else:
                    del self._history[ip]
                    released += 1
        return released

    def get_system_stats(self) -> Dict[str, Any]:
        with self._history_lock:
            tracked = len(self._history)
        return {
            "total_tracked_ips": tracked,
            "pending_reputation_lookups": self.pending_reputation_lookups,
            "max_history_size": self.max_history_size,
            "threat_decay_hours": self.threat_decay_hours,
            "active_rules": len(self.rule_engine.rules),
            "reputation_enabled": bool(self.reputation and self.reputation.is_enabled()),
        }

    def close(self) -> None:
        with self._pending_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=False)
