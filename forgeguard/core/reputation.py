"""IP reputation lookups with graceful degradation.

The engine only depends on :class:`ReputationProvider`. Any failure of the
concrete provider yields a result with ``supported=False`` which callers
treat exactly like "no signal".
"""
from __future__ import annotations

import ipaddress
import logging
import os
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional, Tuple

import requests
from requests.exceptions import RequestException

logger = logging.getLogger(__name__)

ABUSEIPDB_BASE_URL = "https://api.abuseipdb.com/api/v2"
MALICIOUS_THRESHOLD = 50


@dataclass(frozen=True)
class ReputationResult:
    provider: str
    supported: bool
    ip: Optional[str]
    reputation: int = 0
    is_malicious: bool = False
    country_code: Optional[str] = None
    usage_type: Optional[str] = None
    isp: Optional[str] = None
    last_reported_at: Optional[str] = None
    reason: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ReputationProvider:
    """Interface for reputation sources."""

    name: str = "provider"

    def is_enabled(self) -> bool:  # pragma: no cover - interface
        raise NotImplementedError

    def check_ip(self, ip: str) -> ReputationResult:  # pragma: no cover - interface
        raise NotImplementedError

    def fallback(self, ip: Any, reason: str) -> ReputationResult:
        return ReputationResult(
            provider=self.name,
            supported=False,
            ip=ip if isinstance(ip, str) and ip else None,
            reason=reason,
        )


class AbuseIpdbClient(ReputationProvider):
    """AbuseIPDB ``/check`` client with a small per-IP result cache."""

    name = "abuseipdb"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = ABUSEIPDB_BASE_URL,
        timeout: float = 5.0,
        cache_ttl_seconds: float = 3600.0,
        max_age_days: int = 90,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.api_key = api_key if api_key is not None else os.environ.get("ABUSEIPDB_API_KEY", "")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.cache_ttl_seconds = cache_ttl_seconds
        self.max_age_days = max_age_days
        self.session = session or requests.Session()
        self.clock = clock
        self._cache: Dict[str, Tuple[float, ReputationResult]] = {}
        self._cache_lock = threading.Lock()

    def is_enabled(self) -> bool:
        return bool(self.api_key)

    def check_ip(self, ip: str) -> ReputationResult:
        if not isinstance(ip, str) or not ip:
            return self.fallback(ip, "invalid_ip")
        try:
            ipaddress.ip_address(ip)
        except ValueError:
            return self.fallback(ip, "invalid_ip")

        if not self.is_enabled():
            return self.fallback(ip, "no_api_key")

        cached = self._cached(ip)
        if cached is not None:
            return cached

        try:
            response = self.session.get(
                f"{self.base_url}/check",
                params={"ipAddress": ip, "maxAgeInDays": self.max_age_days},
                headers={"Accept": "application/json", "Key": self.api_key},
                timeout=self.timeout,
            )
        except RequestException as e:
            logger.warning(f"AbuseIPDB lookup for {ip} failed: {e}")
            return self.fallback(ip, "exception")

        if not 200 <= response.status_code < 300:
            logger.debug(f"AbuseIPDB returned HTTP {response.status_code} for {ip}")
            return self.fallback(ip, f"http_{response.status_code}")

        try:
            payload = response.json() or {}
            data = payload.get("data") or {}
            score = int(float(data.get("abuseConfidenceScore") or 0))
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning(f"AbuseIPDB response for {ip} could not be decoded: {e}")
            return self.fallback(ip, "exception")

        result = ReputationResult(
            provider=self.name,
            supported=True,
            ip=ip,
            reputation=score,
            is_malicious=score >= MALICIOUS_THRESHOLD,
            country_code=data.get("countryCode"),
            usage_type=data.get("usageType"),
            isp=data.get("isp"),
            last_reported_at=data.get("lastReportedAt"),
        )
        self._store(ip, result)
        return result

    def _cached(self, ip: str) -> Optional[ReputationResult]:
        with self._cache_lock:
            entry = self._cache.get(ip)
            if entry is None:
                return None
            stored_at, result = entry
            if self.clock() - stored_at > self.cache_ttl_seconds:
                del self._cache[ip]
                return None
            return result

    def _store(self, ip: str, result: ReputationResult) -> None:
        if self.cache_ttl_seconds <= 0:
            return
        with self._cache_lock:
            self._cache[ip] = (self.clock(), result)

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()
