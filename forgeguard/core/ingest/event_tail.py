"""Streaming and batch readers for security event files."""
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generator, Iterable, List, Optional

import yaml

from ..events import SecurityEvent

logger = logging.getLogger(__name__)


def _decode(record: Any) -> Optional[SecurityEvent]:
    try:
        return SecurityEvent.from_dict(record)
    except ValueError as e:
        logger.debug(f"Skipping undecodable event: {e}")
        return None


def parse_lines(lines: Iterable[str]) -> Generator[SecurityEvent, None, None]:
    """Decode JSON lines, skipping blanks and anything malformed."""

    for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            continue
        event = _decode(record)
        if event is not None:
            yield event


def read_events(path: Path | str) -> List[SecurityEvent]:
    """Read a finite event file.

    ``.yaml``/``.yml`` files hold a mapping with an ``events:`` list (or a bare
    list); everything else is read as JSON lines.
    """
    path = Path(path)
    if path.suffix.lower() in (".yaml", ".yml"):
        data = yaml.safe_load(path.read_text()) or []
        if isinstance(data, dict):
            data = data.get("events") or []
        if not isinstance(data, list):
            raise ValueError("Event file must contain a list of events")
        return [event for event in (_decode(record) for record in data) if event is not None]

    with path.open(encoding="utf-8") as handle:
        return list(parse_lines(handle))


@dataclass
class EventTail:
    """Follow a JSON-lines event file as it grows."""

    path: Path
    skip_existing: bool = True
    poll_interval: float = 0.5

    def stream(self) -> Generator[SecurityEvent, None, None]:
        pos = None

        while True:
            if not self.path.exists():
                time.sleep(1)
                continue

            size = self.path.stat().st_size
            with self.path.open(encoding="utf-8") as f:
                if pos is None:
                    if self.skip_existing:
                        f.seek(0, 2)
                    pos = f.tell()

                # Truncated or rotated
                if size < pos:
                    pos = 0
                f.seek(pos)

                # readline keeps f.tell() usable while iterating
                line = f.readline()
                while line:
                    if not line.endswith("\n"):
                        break
                    pos = f.tell()
                    yield from parse_lines([line])
                    line = f.readline()
            time.sleep(self.poll_interval)
