import json
from pathlib import Path

import pytest
import yaml

from forgeguard.core.events import EventType
from forgeguard.core.ingest import EventTail, parse_lines, read_events


def _record(**overrides):
    record = {
        "eventType": "user.login.failed",
        "severity": "medium",
        "timestamp": "2024-03-01T08:00:00Z",
        "sourceIp": "10.0.0.1",
    }
    record.update(overrides)
    return record


def test_read_events_jsonl_skips_bad_lines(tmp_path: Path):
    path = tmp_path / "events.jsonl"
    path.write_text(
        "\n".join(
            [
                json.dumps(_record()),
                "not json",
                json.dumps({"eventType": "nope", "severity": "low"}),
                "",
                json.dumps(_record(eventType="equipment.status.error", severity="critical")),
            ]
        )
        + "\n"
    )
    events = read_events(path)
    assert [event.event_type for event in events] == [EventType.LOGIN_FAILED, EventType.EQUIPMENT_ERROR]


def test_read_events_yaml(tmp_path: Path):
    path = tmp_path / "events.yaml"
    path.write_text(yaml.safe_dump({"events": [_record(), _record(sourceIp="10.0.0.2")]}))
    events = read_events(path)
    assert [event.source_ip for event in events] == ["10.0.0.1", "10.0.0.2"]


def test_read_events_yaml_rejects_scalars(tmp_path: Path):
    path = tmp_path / "events.yml"
    path.write_text("just text\n")
    with pytest.raises(ValueError):
        read_events(path)


def test_parse_lines():
    events = list(parse_lines([json.dumps(_record()), "   ", "{broken"]))
    assert len(events) == 1


def test_event_tail(tmp_path: Path):
    path = tmp_path / "events.jsonl"
    path.write_text("garbage\n" + json.dumps(_record(severity="high")) + "\n")
    # Read existing contents immediately and consume only the first event so
    # the test doesn't block on the tailer's infinite loop.
    tail = EventTail(path=path, skip_existing=False)
    event = next(tail.stream())
    assert event.severity.value == "high"
