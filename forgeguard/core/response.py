"""Threat response orchestration.

:class:`ThreatResponseSystem` buffers recent events per source IP, asks the
:class:`ThreatAggregator` for an assessment, maps it to a primary enforcement
action plus secondary side effects, and owns the block lifecycle:

``unblocked -> blocked -> expired`` (checked lazily on lookup) or
``blocked -> unblocked`` (explicit :meth:`ThreatResponseSystem.unblock_ip`).

All per-source state is keyed by IP and guarded by a per-IP lock. Cross-IP
operations (``cleanup``, ``get_system_stats``) take the table-wide lock.
"""
from __future__ import annotations

import json
import logging
import math
import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Callable, Deque, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from .aggregator import (
    SERIES_EQUIPMENT_ERRORS,
    SERIES_LOGIN_FAILURES,
    SERIES_UNAUTHORIZED_ACCESS,
    ThreatAggregator,
    ThreatContext,
)
from .config import ResponseConfig
from .enforcer.blocklist import BlockRecord, BlockTable, RateLimitRecord
from .events import EventType, SecurityEvent, Severity
from .hooks import ResponseHooks
from .scorer import ThreatAssessment

logger = logging.getLogger(__name__)

BLOCK_IP = "block_ip"
RATE_LIMIT_IP = "rate_limit_ip"
ENHANCE_MONITORING = "enhance_monitoring"
CONTINUE_MONITORING = "continue_monitoring"
ENFORCEMENT_ACTIONS = (BLOCK_IP, RATE_LIMIT_IP)

RESPONSE_RULES: Mapping[Severity, Tuple[str, ...]] = {
    Severity.CRITICAL: (
        BLOCK_IP,
        "notify_security_team",
        "log_incident",
        ENHANCE_MONITORING,
        "consider_system_lockdown",
    ),
    Severity.HIGH: (RATE_LIMIT_IP, "notify_security_team", "log_incident", ENHANCE_MONITORING),
    Severity.MEDIUM: ("log_incident", ENHANCE_MONITORING, "flag_for_review"),
    Severity.LOW: ("log_incident", CONTINUE_MONITORING),
}

HOUR = 3600
DAY = 24 * HOUR
BLOCK_DURATIONS: Tuple[Tuple[int, int], ...] = (
    (90, 7 * DAY),
    (80, 3 * DAY),
    (70, DAY),
    (60, 6 * HOUR),
)
DEFAULT_BLOCK_DURATION = 2 * HOUR

SERIES_WINDOWS_MINUTES = (1, 5, 15, 30, 60)
SCORE_WINDOW_SECONDS = DAY
SCORE_RETENTION_SECONDS = 7 * DAY


@dataclass(frozen=True)
class ResponsePlan:
    primary: str
    secondary: Tuple[str, ...]
    all: Tuple[str, ...]


@dataclass(frozen=True)
class ResponseOutcome:
    """What happened to one event."""

    action: str
    threat_level: Optional[Severity] = None
    threat_score: Optional[int] = None
    executed_actions: Tuple[str, ...] = ()
    recommendations: Tuple[str, ...] = ()
    reason: Optional[str] = None
    block: Optional[BlockRecord] = None
    assessment: Optional[ThreatAssessment] = None

    @property
    def factors(self) -> Tuple[str, ...]:
        return self.assessment.factors if self.assessment else ()

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "action": self.action,
            "threat_level": self.threat_level.value if self.threat_level else None,
            "threat_score": self.threat_score,
            "executed_actions": list(self.executed_actions),
            "recommendations": list(self.recommendations),
            "factors": list(self.factors),
        }
        if self.reason:
            data["reason"] = self.reason
        if self.block is not None:
            data["block"] = self.block.as_dict()
        return data


class ThreatResponseSystem:
    def __init__(
        self,
        config: Optional[ResponseConfig] = None,
        aggregator: Optional[ThreatAggregator] = None,
        hooks: Optional[ResponseHooks] = None,
        blocklist: Optional[BlockTable] = None,
        clock: Callable[[], float] = time.time,
        decisions_log: Optional[Union[str, Path]] = None,
    ) -> None:
        self.config = config or ResponseConfig()
        self.clock = clock
        self.aggregator = aggregator or ThreatAggregator(clock=clock)
        self.hooks = hooks or ResponseHooks(clock=clock)
        self.blocklist = blocklist or BlockTable(clock=clock)
        log_path = decisions_log or self.config.decisions_log
        self.decisions_log: Optional[Path] = Path(log_path) if log_path else None

        self._buffers: Dict[str, Deque[SecurityEvent]] = {}
        self._scores: Dict[str, List[Tuple[float, int]]] = {}
        self._ip_locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------
    def process_security_event(self, event: Union[SecurityEvent, Mapping[str, Any]]) -> ResponseOutcome:
        """Assess one event and carry out the chosen response. Never raises."""

        if not isinstance(event, SecurityEvent):
            try:
                event = SecurityEvent.from_dict(event)
            except ValueError as e:
                logger.debug(f"Rejected malformed event: {e}")
                return ResponseOutcome(action="none", reason=f"Malformed event: {e}")

        if not event.source_ip:
            return ResponseOutcome(action="none", reason="No source IP")

        try:
            with self._locked_ip(event.source_ip):
                outcome = self._process(event)
        except Exception as e:
            logger.exception(f"Error processing security event from {event.source_ip}")
            outcome = ResponseOutcome(action="error", reason=str(e))

        self._append_decision(event, outcome)
        return outcome

    def _process(self, event: SecurityEvent) -> ResponseOutcome:
        ip = event.source_ip
        block = self.blocklist.get_block(ip)
        if block is not None:
            return ResponseOutcome(action="blocked", reason="IP already blocked", block=block)

        self._store_event(event)
        window = self.config.recent_window_minutes
        recent = self.get_recent_events(ip, window)
        assessment = self.aggregator.evaluate_threat(
            ThreatContext(
                recent_events=recent,
                series_by_key=self.convert_events_to_series(recent),
                source_ip=ip,
                user_id=event.user_id,
                station_id=event.station_id,
                time_window=window,
            )
        )
        self._update_threat_score(ip, assessment.score)

        plan = self.determine_response_actions(assessment)
        executed, block = self._execute(plan, assessment, event)
        return ResponseOutcome(
            action=plan.primary,
            threat_level=assessment.level,
            threat_score=assessment.score,
            executed_actions=tuple(executed),
            recommendations=assessment.recommendations,
            block=block,
            assessment=assessment,
        )

    def determine_response_actions(self, assessment: ThreatAssessment) -> ResponsePlan:
        score = assessment.score
        level = assessment.level
        if score >= 80:
            primary = BLOCK_IP
        elif score >= self.config.threat_score_threshold or level == Severity.CRITICAL:
            primary = BLOCK_IP
        elif score >= 60:
            primary = RATE_LIMIT_IP
        elif score >= 50 or level == Severity.HIGH:
            primary = RATE_LIMIT_IP
        elif score >= 25 or level == Severity.MEDIUM:
            primary = ENHANCE_MONITORING
        else:
            primary = CONTINUE_MONITORING

        rules = RESPONSE_RULES.get(level, ())
        secondary = tuple(action for action in rules if action != primary and action not in ENFORCEMENT_ACTIONS)
        return ResponsePlan(primary=primary, secondary=secondary, all=rules)

    def _execute(
        self, plan: ResponsePlan, assessment: ThreatAssessment, event: SecurityEvent
    ) -> Tuple[List[str], Optional[BlockRecord]]:
        executed: List[str] = []
        block: Optional[BlockRecord] = None
        ip = event.source_ip

        if plan.primary in ENFORCEMENT_ACTIONS:
            if self.config.auto_block_enabled:
                if plan.primary == BLOCK_IP:
                    block = self.block_ip(ip, assessment, event)
                else:
                    self.rate_limit_ip(ip, assessment, event)
                executed.append(plan.primary)
            else:
                logger.info(f"Auto block disabled; {plan.primary} for {ip} not executed")
        elif self._run_hook(plan.primary, assessment, event):
            executed.append(plan.primary)

        for action in plan.secondary:
            if self._run_hook(action, assessment, event):
                executed.append(action)
        return executed, block

    def _run_hook(self, action: str, assessment: ThreatAssessment, event: SecurityEvent) -> bool:
        try:
            self.hooks.dispatch(action, assessment, event)
        except Exception as e:
            logger.warning(f"Failed to execute action {action}: {e}")
            return False
        return True

    # ------------------------------------------------------------------
    # Blocks and rate limits
    # ------------------------------------------------------------------
    @staticmethod
    def calculate_block_duration(score: float) -> int:
        """Block duration in seconds for a threat score, before capping."""

        for threshold, duration in BLOCK_DURATIONS:
            if score >= threshold:
                return duration
        return DEFAULT_BLOCK_DURATION

    def block_ip(
        self, ip: str, assessment: ThreatAssessment, event: Optional[SecurityEvent] = None
    ) -> BlockRecord:
        now = self.clock()
        duration = min(self.calculate_block_duration(assessment.score), self.config.max_block_duration)
        record = BlockRecord(
            ip=ip,
            timestamp=now,
            reason="; ".join(assessment.factors),
            threat_score=assessment.score,
            threat_level=assessment.level.value,
            duration=duration,
            expires_at=now + duration,
            event_id=event.event_id if event else None,
            user_id=event.user_id if event else None,
            station_id=event.station_id if event else None,
        )
        self.blocklist.add_block(record)
        logger.info(
            f"IP {ip} blocked for {duration / HOUR:g}h due to {assessment.level.value} threat "
            f"(score {assessment.score})"
        )
        return record

    def rate_limit_ip(
        self, ip: str, assessment: ThreatAssessment, event: Optional[SecurityEvent] = None
    ) -> RateLimitRecord:
        now = self.clock()
        record = RateLimitRecord(
            ip=ip,
            timestamp=now,
            threat_score=assessment.score,
            expires_at=now + self.config.rate_limit_minutes * 60,
        )
        self.blocklist.add_rate_limit(record)
        logger.info(f"IP {ip} rate limited due to {assessment.level.value} threat (score {assessment.score})")
        return record

    def is_ip_blocked(self, ip: str) -> bool:
        return self.blocklist.is_blocked(ip)

    def is_rate_limited(self, ip: str) -> bool:
        return self.blocklist.is_rate_limited(ip)

    def get_block_info(self, ip: str) -> Optional[BlockRecord]:
        return self.blocklist.get_block(ip)

    def unblock_ip(self, ip: str, reason: str = "Manual unblock") -> Optional[BlockRecord]:
        record = self.blocklist.remove_block(ip, reason)
        if record is not None:
            logger.info(f"IP {ip} unblocked: {reason}")
        return record

    def get_blocked_ips(self) -> Dict[str, List[BlockRecord]]:
        active, expired = self.blocklist.blocks(purge=True)
        return {"active": active, "expired": expired}

    # ------------------------------------------------------------------
    # Event buffer and series
    # ------------------------------------------------------------------
    def _ip_lock(self, ip: str) -> threading.Lock:
        with self._lock:
            lock = self._ip_locks.get(ip)
            if lock is None:
                lock = self._ip_locks[ip] = threading.Lock()
            return lock

    @contextmanager
    def _locked_ip(self, ip: str) -> Iterator[None]:
        # cleanup() may evict an idle lock between lookup and acquire; retry on
        # a lock that is no longer the registered one.
        while True:
            lock = self._ip_lock(ip)
            lock.acquire()
            with self._lock:
                if self._ip_locks.get(ip) is lock:
                    break
            lock.release()
        try:
            yield
        finally:
            lock.release()

    def _store_event(self, event: SecurityEvent) -> None:
        with self._lock:
            buffer = self._buffers.get(event.source_ip)
            if buffer is None:
                buffer = self._buffers[event.source_ip] = deque(maxlen=max(self.config.event_buffer_size, 1))
            buffer.append(event)

    def get_recent_events(self, ip: Optional[str], minutes: float = 60) -> List[SecurityEvent]:
        if not ip:
            return []
        cutoff = self.clock() - minutes * 60
        with self._lock:
            buffer = list(self._buffers.get(ip, ()))
        return [event for event in buffer if event.timestamp >= cutoff]

    def convert_events_to_series(self, events: Sequence[SecurityEvent]) -> Dict[str, List[int]]:
        """Counts per trailing window (1, 5, 15, 30, 60 minutes), cumulative."""

        now = self.clock()
        series: Dict[str, List[int]] = {
            SERIES_LOGIN_FAILURES: [],
            SERIES_EQUIPMENT_ERRORS: [],
            SERIES_UNAUTHORIZED_ACCESS: [],
        }
        for minutes in SERIES_WINDOWS_MINUTES:
            cutoff = now - minutes * 60
            window = [event for event in events if event.timestamp >= cutoff]
            series[SERIES_LOGIN_FAILURES].append(
                sum(1 for event in window if event.event_type == EventType.LOGIN_FAILED)
            )
            series[SERIES_EQUIPMENT_ERRORS].append(
                sum(1 for event in window if "equipment" in event.event_type.value)
            )
            series[SERIES_UNAUTHORIZED_ACCESS].append(
                sum(
                    1
                    for event in window
                    if "unauthorized" in event.event_type.value or "access" in event.event_type.value
                )
            )
        return series

    # ------------------------------------------------------------------
    # Threat scores
    # ------------------------------------------------------------------
    def _update_threat_score(self, ip: str, score: int) -> None:
        now = self.clock()
        cutoff = now - SCORE_WINDOW_SECONDS
        with self._lock:
            scores = [entry for entry in self._scores.get(ip, []) if entry[0] > cutoff]
            scores.append((now, int(score)))
            self._scores[ip] = scores

    def get_threat_score(self, ip: str) -> int:
        """Decay-weighted average of the recorded scores, newest weighted 1."""

        with self._lock:
            scores = list(self._scores.get(ip, ()))
        return self._weighted_score(scores)

    @staticmethod
    def _weighted_score(scores: Sequence[Tuple[float, int]]) -> int:
        if not scores:
            return 0
        total_weight = 0.0
        weighted = 0.0
        for rank, (_, score) in enumerate(reversed(scores)):
            weight = math.exp(-0.1 * rank)
            total_weight += weight
            weighted += score * weight
        return int(round(weighted / total_weight))

    # ------------------------------------------------------------------
    # Maintenance and observability
    # ------------------------------------------------------------------
    def cleanup(self) -> int:
        """Remove expired blocks, stale buffers, week-old scores and idle per-source state.

        Idempotent: a second call with no new events in between returns 0.
        """
        now = self.clock()
        cleaned = self.blocklist.cleanup()

        score_cutoff = now - SCORE_RETENTION_SECONDS
        buffer_cutoff = now - self.config.recent_window_minutes * 60
        with self._lock:
            for ip in list(self._scores):
                kept = [entry for entry in self._scores[ip] if entry[0] > score_cutoff]
                if kept:
                    self._scores[ip] = kept
                else:
                    del self._scores[ip]
                    cleaned += 1
            for ip in list(self._buffers):
                lock = self._ip_locks.get(ip)
                if lock is not None and not lock.acquire(blocking=False):
                    continue
                try:
                    if all(event.timestamp < buffer_cutoff for event in self._buffers[ip]):
                        del self._buffers[ip]
                        cleaned += 1
                finally:
                    if lock is not None:
                        lock.release()
            for ip in list(self._ip_locks):
                if ip in self._buffers:
                    continue
                lock = self._ip_locks[ip]
                if lock.acquire(blocking=False):
                    del self._ip_locks[ip]
                    lock.release()

        cleaned += self.aggregator.cleanup(score_cutoff)
        cleaned += self.hooks.expire_monitoring()

        if cleaned:
            logger.info(f"Cleaned up {cleaned} expired entries")
        return cleaned

    def get_system_stats(self) -> Dict[str, Any]:
        block_stats = self.blocklist.get_stats()
        with self._lock:
            snapshot = {ip: list(scores) for ip, scores in self._scores.items()}
            buffered = len(self._buffers)
        averages = [self._weighted_score(scores) for scores in snapshot.values()]
        return {
            "total_blocked_ips": block_stats["active_blocks"] + block_stats["expired_blocks"],
            "active_blocked_ips": block_stats["active_blocks"],
            "expired_blocked_ips": block_stats["expired_blocks"],
            "active_rate_limits": block_stats["active_rate_limits"],
            "total_tracked_ips": len(snapshot),
            "buffered_ips": buffered,
            "avg_threat_score": int(round(sum(averages) / len(averages))) if averages else 0,
            "response_rules": {level.value: list(actions) for level, actions in RESPONSE_RULES.items()},
            "auto_block_enabled": self.config.auto_block_enabled,
            "threat_score_threshold": self.config.threat_score_threshold,
            "max_block_duration": self.config.max_block_duration,
            "aggregator": self.aggregator.get_system_stats(),
        }

    def update_config(self, **changes: Any) -> ResponseConfig:
        known = {f.name for f in fields(ResponseConfig)}
        unknown = sorted(set(changes) - known)
        if unknown:
            raise ValueError(f"Unknown response settings: {', '.join(unknown)}")
        self.config = replace(self.config, **changes)
        if "decisions_log" in changes:
            log_path = self.config.decisions_log
            self.decisions_log = Path(log_path) if log_path else None
        logger.info(f"Threat response configuration updated: {changes}")
        return self.config

    # ------------------------------------------------------------------
    # Decisions log
    # ------------------------------------------------------------------
    def _append_decision(self, event: SecurityEvent, outcome: ResponseOutcome) -> None:
        if self.decisions_log is None:
            return
        entry = {
            "timestamp": self.clock(),
            "event_id": event.event_id,
            "event_type": event.event_type.value,
            "source_ip": event.source_ip,
            "user_id": event.user_id,
            "station_id": event.station_id,
        }
        entry.update(outcome.as_dict())
        try:
            self.decisions_log.parent.mkdir(parents=True, exist_ok=True)
            with self.decisions_log.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry, sort_keys=True))
                handle.write("\n")
        except OSError as e:
            logger.warning(f"Failed to append decision to {self.decisions_log}: {e}")
