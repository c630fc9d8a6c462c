"""Side-effect hooks invoked by the response system.

Every hook takes ``(assessment, event)``. The default implementation logs,
keeps bounded in-memory incident and review records, and forwards
notifications to a :class:`SecurityTeamNotifier`. Subclass and override the
methods to wire real ticketing or paging systems in.
"""
from __future__ import annotations

import logging
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, Optional

from .events import SecurityEvent
from .scorer import ThreatAssessment

logger = logging.getLogger(__name__)

LOCKDOWN_SCORE = 90
MONITORING_SECONDS = 2 * 3600


class ResponseHooks:
    """Default hook set. Hook names match response action names."""

    def __init__(
        self,
        notifier: Optional[Any] = None,
        max_records: int = 500,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.notifier = notifier
        self.clock = clock
        self.incidents: Deque[Dict[str, Any]] = deque(maxlen=max_records)
        self.reviews: Deque[Dict[str, Any]] = deque(maxlen=max_records)
        self.monitored: Dict[str, float] = {}

    def dispatch(self, action: str, assessment: ThreatAssessment, event: SecurityEvent) -> None:
        handler = getattr(self, action, None)
        if handler is None or action.startswith("_") or not callable(handler):
            raise ValueError(f"Unknown response action: {action}")
        handler(assessment, event)

    def _record(self, assessment: ThreatAssessment, event: SecurityEvent) -> Dict[str, Any]:
        return {
            "timestamp": self.clock(),
            "source_ip": event.source_ip,
            "user_id": event.user_id,
            "station_id": event.station_id,
            "event_id": event.event_id,
            "event_type": event.event_type.value,
            "score": assessment.score,
            "level": assessment.level.value,
            "factors": list(assessment.factors),
        }

    def notify_security_team(self, assessment: ThreatAssessment, event: SecurityEvent) -> None:
        logger.warning(
            f"Security team alert: {assessment.level.value} threat from {event.source_ip} "
            f"(score {assessment.score})"
        )
        if self.notifier is not None:
            self.notifier.notify_threat(assessment, event)

    def log_incident(self, assessment: ThreatAssessment, event: SecurityEvent) -> None:
        record = self._record(assessment, event)
        self.incidents.append(record)
        logger.info(f"Incident logged for {event.source_ip}: {', '.join(assessment.factors)}")

    def enhance_monitoring(self, assessment: ThreatAssessment, event: SecurityEvent) -> None:
        if event.source_ip:
            self.monitored[event.source_ip] = self.clock() + MONITORING_SECONDS
        logger.info(f"Enhanced monitoring enabled for {event.source_ip}")

    def flag_for_review(self, assessment: ThreatAssessment, event: SecurityEvent) -> None:
        self.reviews.append(self._record(assessment, event))
        logger.info(f"Event from {event.source_ip} flagged for review")

    def consider_system_lockdown(self, assessment: ThreatAssessment, event: SecurityEvent) -> None:
        if assessment.score >= LOCKDOWN_SCORE:
            logger.critical(
                f"System lockdown recommended: score {assessment.score} from {event.source_ip}"
            )
        else:
            logger.warning(f"System lockdown considered for {event.source_ip} (score {assessment.score})")

    def continue_monitoring(self, assessment: ThreatAssessment, event: SecurityEvent) -> None:
        logger.debug(f"Continuing standard monitoring for {event.source_ip}")

    def expire_monitoring(self) -> int:
        """Forget sources whose enhanced monitoring window has passed."""
        now = self.clock()
        expired = [ip for ip, until in self.monitored.items() if until <= now]
        for ip in expired:
            del self.monitored[ip]
        return len(expired)
