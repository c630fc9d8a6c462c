"""Test configuration and fixtures."""
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

import pytest
import yaml

from forgeguard.core.events import EventType, SecurityEvent, Severity
from forgeguard.core.hooks import ResponseHooks
from forgeguard.core.reputation import ReputationProvider, ReputationResult

START = 1_700_000_000.0


@dataclass
class FakeClock:
    value: float = START

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class StubReputation(ReputationProvider):
    """Reputation provider answering from a fixed table."""

    name = "stub"

    def __init__(self, scores: Optional[Dict[str, int]] = None, enabled: bool = True):
        self.scores = dict(scores or {})
        self.enabled = enabled
        self.calls: List[str] = []

    def is_enabled(self) -> bool:
        return self.enabled

    def check_ip(self, ip: str) -> ReputationResult:
        self.calls.append(ip)
        if ip not in self.scores:
            return self.fallback(ip, "unknown")
        score = self.scores[ip]
        return ReputationResult(
            provider=self.name,
            supported=True,
            ip=ip,
            reputation=score,
            is_malicious=score >= 50,
            country_code="ZZ",
        )


class RecordingHooks(ResponseHooks):
    def __init__(self, fail_on=(), clock=time.time):
        super().__init__(clock=clock)
        self.fail_on = tuple(fail_on)
        self.calls: List[str] = []

    def dispatch(self, action, assessment, event) -> None:
        if action in self.fail_on:
            raise RuntimeError(f"{action} unavailable")
        self.calls.append(action)
        super().dispatch(action, assessment, event)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_event(clock):
    """Factory for events stamped relative to the fake clock."""

    def _make(
        event_type: EventType = EventType.LOGIN_FAILED,
        severity: Severity = Severity.MEDIUM,
        source_ip: Optional[str] = "10.0.0.1",
        ago: float = 0.0,
        **kwargs,
    ) -> SecurityEvent:
        return SecurityEvent(
            event_type=event_type,
            severity=severity,
            timestamp=clock() - ago,
            source_ip=source_ip,
            **kwargs,
        )

    return _make


@pytest.fixture
def stub_reputation() -> StubReputation:
    return StubReputation()


@pytest.fixture
def recording_hooks(clock) -> RecordingHooks:
    return RecordingHooks(clock=clock)


@pytest.fixture
def forgeguard_yaml(tmp_path: Path) -> Path:
    """A complete forgeguard.yaml in a temporary directory."""
    config = {
        "response": {
            "max_block_duration_hours": 12,
            "threat_score_threshold": 65,
            "auto_block_enabled": True,
            "event_buffer_size": 50,
        },
        "aggregator": {"max_history_size": 10, "threat_decay_hours": 6},
        "reputation": {"api_key": "test-key", "timeout_seconds": 2},
        "rules": [
            {
                "id": "api.suspicious_burst",
                "event_type": "api.access.suspicious",
                "threshold": 3,
                "minutes": 5,
                "severity": "high",
                "message": "Suspicious API burst",
            }
        ],
        "notify": {"webhook_url": "", "channel": "test-channel"},
        "paths": {"decisions": str(tmp_path / "decisions.log")},
    }
    path = tmp_path / "forgeguard.yaml"
    path.write_text(yaml.safe_dump(config))
    return path
