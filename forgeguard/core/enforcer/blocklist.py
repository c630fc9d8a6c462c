"""In-memory block and rate-limit table.

Expiry is lazy: every lookup compares the record's ``expires_at`` with the
injected clock and drops stale records on the spot. :meth:`BlockTable.cleanup`
is the only sweep and is meant to be called on an operator-chosen schedule.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass
class BlockRecord:
    ip: str
    timestamp: float
    reason: str
    threat_score: int
    threat_level: str
    duration: float  # seconds
    expires_at: float
    event_id: Optional[str] = None
    user_id: Optional[str] = None
    station_id: Optional[str] = None
    unblocked_at: Optional[float] = None
    unblock_reason: Optional[str] = None

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RateLimitRecord:
    ip: str
    timestamp: float
    threat_score: int
    expires_at: float
    rate_limit: str = "strict"

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class BlockTable:
    """At most one block and one rate limit per IP; re-adding replaces."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self.clock = clock
        self._blocks: Dict[str, BlockRecord] = {}
        self._rate_limits: Dict[str, RateLimitRecord] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Blocks
    # ------------------------------------------------------------------
    def add_block(self, record: BlockRecord) -> None:
        with self._lock:
            replaced = record.ip in self._blocks
            self._blocks[record.ip] = record
        if replaced:
            logger.debug(f"Replaced existing block for {record.ip}")

    def get_block(self, ip: str) -> Optional[BlockRecord]:
        now = self.clock()
        with self._lock:
            record = self._blocks.get(ip)
            if record is None:
                return None
            if record.is_expired(now):
                del self._blocks[ip]
                logger.info(f"Block for {ip} expired")
                return None
            return record

    def is_blocked(self, ip: str) -> bool:
        return self.get_block(ip) is not None

    def remove_block(self, ip: str, reason: str) -> Optional[BlockRecord]:
        with self._lock:
            record = self._blocks.pop(ip, None)
        if record is None:
            return None
        record.unblocked_at = self.clock()
        record.unblock_reason = reason
        return record

    def blocks(self, purge: bool = False) -> Tuple[List[BlockRecord], List[BlockRecord]]:
        """Return ``(active, expired)``; with ``purge`` expired ones are dropped."""

        now = self.clock()
        with self._lock:
            records = list(self._blocks.values())
            active = [record for record in records if not record.is_expired(now)]
            expired = [record for record in records if record.is_expired(now)]
            if purge:
                for record in expired:
                    del self._blocks[record.ip]
        return active, expired

    # ------------------------------------------------------------------
    # Rate limits
    # ------------------------------------------------------------------
    def add_rate_limit(self, record: RateLimitRecord) -> None:
        with self._lock:
            self._rate_limits[record.ip] = record

    def get_rate_limit(self, ip: str) -> Optional[RateLimitRecord]:
        now = self.clock()
        with self._lock:
            record = self._rate_limits.get(ip)
            if record is None:
                return None
            if record.is_expired(now):
                del self._rate_limits[ip]
                return None
            return record

    def is_rate_limited(self, ip: str) -> bool:
        return self.get_rate_limit(ip) is not None

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------
    def cleanup(self) -> int:
        """Drop every expired block and rate limit; return how many went."""

        now = self.clock()
        with self._lock:
            expired_blocks = [ip for ip, record in self._blocks.items() if record.is_expired(now)]
            for ip in expired_blocks:
                del self._blocks[ip]
            expired_limits = [ip for ip, record in self._rate_limits.items() if record.is_expired(now)]
            for ip in expired_limits:
                del self._rate_limits[ip]
        return len(expired_blocks) + len(expired_limits)

    def get_stats(self) -> Dict[str, int]:
        active, expired = self.blocks()
        now = self.clock()
        with self._lock:
            limits = list(self._rate_limits.values())
        return {
            "active_blocks": len(active),
            "expired_blocks": len(expired),
            "active_rate_limits": sum(1 for record in limits if not record.is_expired(now)),
        }
