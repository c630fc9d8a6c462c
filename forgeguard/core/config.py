"""Configuration helpers for ForgeGuard."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .rules import SecurityRule, rule_from_mapping


@dataclass
class ResponseConfig:
    """Tunables of the response layer. Durations are in seconds."""

    max_block_duration: float = 24 * 3600
    threat_score_threshold: int = 70
    auto_block_enabled: bool = True
    event_buffer_size: int = 100
    recent_window_minutes: int = 60
    rate_limit_minutes: int = 30
    decisions_log: Optional[str] = None


@dataclass
class AggregatorConfig:
    max_history_size: int = 1000
    threat_decay_hours: float = 24


@dataclass
class ReputationConfig:
    api_key: Optional[str] = None
    base_url: str = "https://api.abuseipdb.com/api/v2"
    timeout_seconds: float = 5.0
    cache_ttl_seconds: float = 3600.0


def _section(raw: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = raw.get(key) or {}
    if not isinstance(value, Mapping):
        raise ValueError(f"Configuration section '{key}' must be a mapping")
    return value


@dataclass
class ForgeGuardConfig:
    """Represents the YAML configuration used to build the engine."""

    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_file(cls, path: str | Path) -> "ForgeGuardConfig":
        data = yaml.safe_load(Path(path).read_text())
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValueError("Configuration root must be a mapping")
        return cls(raw=data)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "ForgeGuardConfig":
        return cls(raw=dict(data or {}))

    def get(self, key: str, default: Any = None) -> Any:
        return self.raw.get(key, default)

    def require(self, key: str) -> Any:
        if key not in self.raw:
            raise KeyError(f"Missing configuration key: {key}")
        return self.raw[key]

    @property
    def response(self) -> ResponseConfig:
        section = _section(self.raw, "response")
        paths = _section(self.raw, "paths")
        defaults = ResponseConfig()
        hours = section.get("max_block_duration_hours")
        return ResponseConfig(
            max_block_duration=float(hours) * 3600 if hours is not None else defaults.max_block_duration,
            threat_score_threshold=int(section.get("threat_score_threshold", defaults.threat_score_threshold)),
            auto_block_enabled=bool(section.get("auto_block_enabled", defaults.auto_block_enabled)),
            event_buffer_size=int(section.get("event_buffer_size", defaults.event_buffer_size)),
            recent_window_minutes=int(section.get("recent_window_minutes", defaults.recent_window_minutes)),
            rate_limit_minutes=int(section.get("rate_limit_minutes", defaults.rate_limit_minutes)),
            decisions_log=paths.get("decisions") or defaults.decisions_log,
        )

    @property
    def aggregator(self) -> AggregatorConfig:
        section = _section(self.raw, "aggregator")
        defaults = AggregatorConfig()
        return AggregatorConfig(
            max_history_size=int(section.get("max_history_size", defaults.max_history_size)),
            threat_decay_hours=float(section.get("threat_decay_hours", defaults.threat_decay_hours)),
        )

    @property
    def reputation(self) -> ReputationConfig:
        section = _section(self.raw, "reputation")
        defaults = ReputationConfig()
        return ReputationConfig(
            api_key=section.get("api_key") or None,
            base_url=str(section.get("base_url") or defaults.base_url),
            timeout_seconds=float(section.get("timeout_seconds", defaults.timeout_seconds)),
            cache_ttl_seconds=float(section.get("cache_ttl_seconds", defaults.cache_ttl_seconds)),
        )

    @property
    def notify(self) -> Dict[str, Any]:
        return dict(_section(self.raw, "notify"))

    def extra_rules(self) -> List[SecurityRule]:
        entries = self.raw.get("rules") or []
        if not isinstance(entries, list):
            raise ValueError("Configuration 'rules' must be a list")
        return [rule_from_mapping(entry) for entry in entries]
