"""Threat scoring utilities for ForgeGuard."""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from .events import Severity

SEVERITY_WEIGHTS: Mapping[Severity, int] = {
    Severity.LOW: 10,
    Severity.MEDIUM: 25,
    Severity.HIGH: 50,
    Severity.CRITICAL: 75,
}


@dataclass(frozen=True)
class ThreatFinding:
    """One fired signal feeding into an aggregated assessment."""

    kind: str  # statistical | rule | reputation | behavioral
    severity: Severity
    confidence: float
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "severity": self.severity.value,
            "confidence": round(self.confidence, 3),
            "message": self.message,
            "details": dict(self.details),
        }


@dataclass(frozen=True)
class ThreatAssessment:
    """Output of one evaluation. Never mutated after creation."""

    score: int
    level: Severity
    severity: Severity
    factors: Tuple[str, ...]
    confidence: float
    recommendations: Tuple[str, ...]
    timestamp: float = field(default_factory=time.time)
    source_ip: Optional[str] = None
    user_id: Optional[str] = None
    event_count: int = 0
    findings: Tuple[ThreatFinding, ...] = ()
    fallback: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "level": self.level.value,
            "severity": self.severity.value,
            "factors": list(self.factors),
            "confidence": round(self.confidence, 3),
            "recommendations": list(self.recommendations),
            "timestamp": self.timestamp,
            "source_ip": self.source_ip,
            "user_id": self.user_id,
            "event_count": self.event_count,
            "findings": [finding.as_dict() for finding in self.findings],
            "fallback": self.fallback,
        }


@dataclass
class ScoreEvaluator:
    """Maps severities to score weights and scores to threat levels."""

    weights: Mapping[Severity, int] = field(default_factory=lambda: dict(SEVERITY_WEIGHTS))

    def weight(self, severity: Severity) -> int:
        return self.weights.get(severity, 0)

    def contribution(self, finding: ThreatFinding) -> float:
        return self.weight(finding.severity) * finding.confidence

    @staticmethod
    def clamp(score: float) -> int:
        return int(round(min(100.0, max(0.0, score))))

    @staticmethod
    def classify(score: float) -> Severity:
        """Return the threat level for a score (25/50/75 boundaries)."""

        if score >= 75:
            return Severity.CRITICAL
        if score >= 50:
            return Severity.HIGH
        if score >= 25:
            return Severity.MEDIUM
        return Severity.LOW
