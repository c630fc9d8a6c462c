import requests

from forgeguard.core.reputation import AbuseIpdbClient


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload or {}

    def json(self):
        return self._payload


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append({"url": url, "params": params, "headers": headers, "timeout": timeout})
        if self.error is not None:
            raise self.error
        return self.response


def _payload(score):
    return {
        "data": {
            "abuseConfidenceScore": score,
            "countryCode": "NL",
            "usageType": "Data Center/Web Hosting/Transit",
            "isp": "Example Hosting",
            "lastReportedAt": "2024-01-01T00:00:00+00:00",
        }
    }


def test_malicious_lookup(clock):
    session = FakeSession(FakeResponse(200, _payload(87)))
    client = AbuseIpdbClient(api_key="k", session=session, clock=clock, timeout=3)
    result = client.check_ip("203.0.113.5")
    assert result.supported is True
    assert result.reputation == 87
    assert result.is_malicious is True
    assert result.country_code == "NL"
    call = session.calls[0]
    assert call["url"].endswith("/check")
    assert call["params"] == {"ipAddress": "203.0.113.5", "maxAgeInDays": 90}
    assert call["headers"]["Key"] == "k"
    assert call["timeout"] == 3


def test_low_score_is_not_malicious(clock):
    client = AbuseIpdbClient(api_key="k", session=FakeSession(FakeResponse(200, _payload(49))), clock=clock)
    result = client.check_ip("203.0.113.6")
    assert result.supported is True
    assert result.is_malicious is False


def test_disabled_without_api_key(monkeypatch):
    monkeypatch.delenv("ABUSEIPDB_API_KEY", raising=False)
    session = FakeSession(FakeResponse(200, _payload(99)))
    client = AbuseIpdbClient(session=session)
    assert client.is_enabled() is False
    result = client.check_ip("203.0.113.5")
    assert result.supported is False
    assert result.reason == "no_api_key"
    assert session.calls == []


def test_api_key_from_environment(monkeypatch):
    monkeypatch.setenv("ABUSEIPDB_API_KEY", "env-key")
    assert AbuseIpdbClient(session=FakeSession()).is_enabled() is True


def test_invalid_ip_short_circuits():
    session = FakeSession(FakeResponse(200, _payload(99)))
    client = AbuseIpdbClient(api_key="k", session=session)
    assert client.check_ip("not-an-ip").reason == "invalid_ip"
    assert client.check_ip("").reason == "invalid_ip"
    assert session.calls == []


def test_http_error_and_exception_degrade():
    client = AbuseIpdbClient(api_key="k", session=FakeSession(FakeResponse(429)))
    result = client.check_ip("203.0.113.5")
    assert result.supported is False
    assert result.reason == "http_429"

    failing = AbuseIpdbClient(api_key="k", session=FakeSession(error=requests.ConnectionError("down")))
    assert failing.check_ip("203.0.113.5").reason == "exception"


def test_results_are_cached_until_ttl(clock):
    session = FakeSession(FakeResponse(200, _payload(70)))
    client = AbuseIpdbClient(api_key="k", session=session, clock=clock, cache_ttl_seconds=60)
    client.check_ip("198.51.100.1")
    client.check_ip("198.51.100.1")
    assert len(session.calls) == 1
    clock.advance(61)
    client.check_ip("198.51.100.1")
    assert len(session.calls) == 2
    client.clear_cache()
    client.check_ip("198.51.100.1")
    assert len(session.calls) == 3
