from pathlib import Path

import pytest

from forgeguard.core import notify_config
from forgeguard.core.config import ForgeGuardConfig
from forgeguard.core.events import Severity


def test_config_loads_all_sections(forgeguard_yaml: Path):
    config = ForgeGuardConfig.from_file(forgeguard_yaml)

    response = config.response
    assert response.max_block_duration == 12 * 3600
    assert response.threat_score_threshold == 65
    assert response.auto_block_enabled is True
    assert response.event_buffer_size == 50
    assert response.recent_window_minutes == 60
    assert response.decisions_log == str(forgeguard_yaml.parent / "decisions.log")

    assert config.aggregator.max_history_size == 10
    assert config.aggregator.threat_decay_hours == 6
    assert config.reputation.api_key == "test-key"
    assert config.reputation.timeout_seconds == 2.0
    assert config.notify["channel"] == "test-channel"

    rules = config.extra_rules()
    assert [rule.id for rule in rules] == ["api.suspicious_burst"]
    assert rules[0].severity == Severity.HIGH


def test_empty_file_uses_defaults(tmp_path: Path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    config = ForgeGuardConfig.from_file(path)
    assert config.response.max_block_duration == 24 * 3600
    assert config.response.threat_score_threshold == 70
    assert config.response.decisions_log is None
    assert config.aggregator.max_history_size == 1000
    assert config.reputation.api_key is None
    assert config.extra_rules() == []


def test_non_mapping_root_is_rejected(tmp_path: Path):
    path = tmp_path / "list.yaml"
    path.write_text("- a\n- b\n")
    with pytest.raises(ValueError):
        ForgeGuardConfig.from_file(path)


def test_section_must_be_mapping():
    config = ForgeGuardConfig.from_mapping({"response": ["nope"], "rules": {"id": "x"}})
    with pytest.raises(ValueError):
        config.response
    with pytest.raises(ValueError):
        config.extra_rules()


def test_require_and_get():
    config = ForgeGuardConfig.from_mapping({"node": "plant-a"})
    assert config.get("node") == "plant-a"
    assert config.get("missing", 3) == 3
    assert config.require("node") == "plant-a"
    with pytest.raises(KeyError):
        config.require("missing")


def test_notify_config_defaults_fill_gaps():
    assert notify_config.lookup("suppress.cooldown_seconds") == 60
    assert notify_config.lookup("no.such.key") is None
    section = notify_config.get("notify")
    assert section["channel"] == "forgeguard-alerts"
    assert "timeout_seconds" in section
    assert notify_config.get("missing", {"x": 1}) == {"x": 1}
    assert notify_config._get_nested({"a": {"b": 2}}, "a.b") == 2
