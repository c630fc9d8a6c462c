"""Security team webhook notifier with simple suppression logic.

Settings come from :mod:`forgeguard.core.notify_config` unless passed in
explicitly. Nothing is sent when no webhook is configured.

Suppression is an in-memory last-sent map keyed by a caller-provided key
(e.g. ``"threat:10.0.0.1"``) with a cooldown in seconds.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Mapping, Optional

import requests
from requests.exceptions import RequestException

from . import notify_config

logger = logging.getLogger(__name__)


class SecurityTeamNotifier:
    def __init__(
        self,
        settings: Optional[Mapping[str, Any]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        cfg = dict(notify_config.get("notify", {}) or {})
        cfg.update(settings or {})
        self.webhook = cfg.get("webhook_url") or notify_config.NOTIFY_WEBHOOK_URL
        self.channel = cfg.get("channel") or "forgeguard-alerts"
        self.username = cfg.get("username") or "ForgeGuard"
        self.icon = cfg.get("icon_emoji") or ":factory:"
        self.timeout = float(cfg.get("timeout_seconds") or 8)

        suppress = notify_config.get("suppress", {}) or {}
        cooldown = cfg.get("cooldown_seconds", suppress.get("cooldown_seconds", 60))
        self.cooldown_seconds = int(cooldown if cooldown is not None else 60)

        self.enabled = bool(self.webhook)
        self.clock = clock
        self._last_sent: Dict[str, float] = {}

    def _should_send(self, key: str) -> bool:
        if not key:
            return True
        now = self.clock()
        last = self._last_sent.get(key)
        if last is None or (now - last) > self.cooldown_seconds:
            self._last_sent[key] = now
            return True
        return False

    def _send(self, text: str, key: str, payload: Dict[str, Any]) -> bool:
        body = {
            "channel": self.channel,
            "username": self.username,
            "icon_emoji": self.icon,
            "text": text,
            "props": {"forgeguard": payload},
        }
        try:
            response = requests.post(self.webhook, json=body, timeout=self.timeout)
        except RequestException as e:
            logger.warning(f"Webhook notification failed: {e}")
            return False
        if not 200 <= response.status_code < 300:
            logger.warning(f"Webhook returned HTTP {response.status_code}")
            return False
        return True

    def notify(self, payload: Dict[str, Any], key: Optional[str] = None) -> bool:
        """Render ``payload`` to text and post it unless suppressed."""

        if not self.enabled:
            return False
        key = key or ""
        if not self._should_send(key):
            logger.debug(f"Notification suppressed for key {key}")
            return False

        lines = [f"*{payload.get('title', 'Security alert')}* - score {payload.get('score', '')}"]
        if payload.get("level"):
            lines.append(f"Level: {payload['level']}")
        if payload.get("source_ip"):
            lines.append(f"Source IP: {payload['source_ip']}")
        if payload.get("user_id"):
            lines.append(f"User: {payload['user_id']}")
        if payload.get("station_id"):
            lines.append(f"Station: {payload['station_id']}")
        if payload.get("factors"):
            lines.append("Factors: " + "; ".join(payload["factors"]))
        return self._send("\n".join(lines), key, payload)

    def notify_threat(self, assessment: Any, event: Any) -> bool:
        """Notify about one assessed threat, suppressed per source IP."""

        source_ip = getattr(event, "source_ip", None) or assessment.source_ip
        payload = {
            "type": "threat_assessment",
            "title": f"{assessment.level.value.upper()} threat detected",
            "score": assessment.score,
            "level": assessment.level.value,
            "source_ip": source_ip,
            "user_id": getattr(event, "user_id", None),
            "station_id": getattr(event, "station_id", None),
            "event_type": getattr(getattr(event, "event_type", None), "value", None),
            "factors": list(assessment.factors),
        }
        return self.notify(payload, key=f"threat:{source_ip or 'unknown'}")
