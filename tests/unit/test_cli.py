import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from fgctl import cli
from forgeguard.core.config import ForgeGuardConfig


@pytest.fixture(autouse=True)
def no_reputation_key(monkeypatch):
    monkeypatch.delenv("ABUSEIPDB_API_KEY", raising=False)


def _write_burst(path: Path, count: int = 5) -> Path:
    start = datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)
    lines = []
    for i in range(count):
        lines.append(
            json.dumps(
                {
                    "eventType": "user.login.failed",
                    "severity": "medium",
                    "timestamp": (start + timedelta(seconds=10 * i)).isoformat(),
                    "sourceIp": "10.0.0.1",
                    "userId": "op-7",
                }
            )
        )
    path.write_text("\n".join(lines) + "\n")
    return path


def test_replay_json_blocks_burst(tmp_path: Path, capsys):
    events = _write_burst(tmp_path / "events.jsonl")
    decisions = tmp_path / "decisions.log"

    rc = cli.main(["replay", str(events), "--json", "--decisions-log", str(decisions)])
    assert rc == 0

    lines = [json.loads(line) for line in capsys.readouterr().out.strip().splitlines()]
    assert len(lines) == 6
    actions = [line["decision"]["action"] for line in lines[:5]]
    assert actions[-1] == "block_ip"
    assert any("Failed login burst" in factor for factor in lines[4]["decision"]["factors"])
    assert lines[-1]["stats"]["active_blocked_ips"] == 1
    assert len(decisions.read_text().strip().splitlines()) == 5


def test_replay_table_output(tmp_path: Path, capsys):
    events = _write_burst(tmp_path / "events.jsonl", count=2)
    assert cli.main(["replay", str(events)]) == 0
    assert "Engine stats" in capsys.readouterr().out


def test_replay_missing_file(tmp_path: Path):
    assert cli.main(["replay", str(tmp_path / "absent.jsonl")]) == 1


def test_check_ip_without_key(capsys):
    rc = cli.main(["check-ip", "203.0.113.5", "--json"])
    assert rc == 2
    result = json.loads(capsys.readouterr().out)
    assert result["supported"] is False
    assert result["reason"] == "no_api_key"


def test_build_engine_from_config(forgeguard_yaml: Path):
    engine = cli.build_engine(ForgeGuardConfig.from_file(forgeguard_yaml))
    try:
        assert engine.config.threat_score_threshold == 65
        assert engine.config.max_block_duration == 12 * 3600
        assert engine.decisions_log == forgeguard_yaml.parent / "decisions.log"
        assert len(engine.aggregator.rule_engine.rules) == 5
        assert engine.aggregator.reputation.is_enabled() is True
        assert engine.aggregator.max_history_size == 10
    finally:
        engine.aggregator.close()


def test_event_clock_only_moves_forward():
    clock = cli.EventClock()
    clock.advance_to(100.0)
    clock.advance_to(50.0)
    assert clock() == 100.0
