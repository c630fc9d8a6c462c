"""ForgeGuard - real-time threat scoring and automated response for the shop floor."""

from .core.aggregator import ThreatAggregator, ThreatContext
from .core.config import ForgeGuardConfig
from .core.events import EventType, SecurityEvent, Severity
from .core.reputation import AbuseIpdbClient, ReputationProvider
from .core.response import ResponseOutcome, ThreatResponseSystem
from .core.rules import SecurityRule, SecurityRuleEngine
from .core.scorer import ScoreEvaluator, ThreatAssessment
from .core.statistics import StatisticalAnalyzer

__version__ = "1.0.0"
__all__ = [
    "AbuseIpdbClient",
    "EventType",
    "ForgeGuardConfig",
    "ReputationProvider",
    "ResponseOutcome",
    "ScoreEvaluator",
    "SecurityEvent",
    "SecurityRule",
    "SecurityRuleEngine",
    "Severity",
    "StatisticalAnalyzer",
    "ThreatAggregator",
    "ThreatAssessment",
    "ThreatContext",
    "ThreatResponseSystem",
]
