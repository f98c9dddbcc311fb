from __future__ import annotations

import datetime as dt
from pathlib import Path

import pytest

from backend.services.errors import (
    UpstreamLogicalError,
    UpstreamRateLimitError,
    UpstreamUnavailableError,
)
from backend.services.persistent_store import PersistentStore
from backend.services.response_cache import (
    SOURCE_FRESH,
    SOURCE_LIVE,
    SOURCE_STALE,
    CacheKey,
    ResponseCache,
    is_rate_limit_error,
    ttl_for_endpoint,
)

NOW = dt.datetime(2026, 3, 1, 12, 0, tzinfo=dt.UTC)


class FakeClient:
    def __init__(self, *results: object) -> None:
        self.results = list(results)
        self.calls: list[tuple[str, str, dict]] = []

    def fetch(self, sport: str, endpoint: str, params: dict) -> dict:
        self.calls.append((sport, endpoint, params))
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class Clock:
    def __init__(self, now: dt.datetime) -> None:
        self.now = now

    def __call__(self) -> dt.datetime:
        return self.now


def _cache(tmp_path: Path, client: FakeClient, clock: Clock | None = None) -> ResponseCache:
    store = PersistentStore(sqlite_path=str(tmp_path / "api_cache.db"))
    return ResponseCache(client, store, now_fn=clock or Clock(NOW))


def test_fresh_entry_is_served_without_network(tmp_path: Path) -> None:
    client = FakeClient({"errors": [], "response": [1, 2]})
    cache = _cache(tmp_path, client)

    first = cache.lookup("football", "fixtures", {"team": 33, "season": "2025"})
    second = cache.lookup("football", "fixtures", {"season": "2025", "team": "33"})

    assert first.source == SOURCE_LIVE
    assert second.source == SOURCE_FRESH
    assert second.payload == {"errors": [], "response": [1, 2]}
    assert len(client.calls) == 1


def test_expired_entry_is_refetched(tmp_path: Path) -> None:
    clock = Clock(NOW)
    client = FakeClient({"response": ["old"]}, {"response": ["new"]})
    cache = _cache(tmp_path, client, clock)

    cache.get_or_fetch("football", "standings", {"league": "39"})
    clock.now = NOW + dt.timedelta(seconds=3601)
    payload = cache.get_or_fetch("football", "standings", {"league": "39"})

    assert payload == {"response": ["new"]}
    assert len(client.calls) == 2


def test_stored_error_payload_is_never_a_fresh_hit(tmp_path: Path) -> None:
    client = FakeClient({"errors": [], "response": ["ok"]})
    cache = _cache(tmp_path, client)
    key = CacheKey.build("football", "leagues", {"id": "1"})
    cache.store.save_response(
        key.serialize(),
        key.sport,
        key.endpoint,
        key.params_dict(),
        {"errors": {"token": "Error/Missing application key"}, "response": []},
        fetched_at=NOW,
        ttl_seconds=86400,
    )

    result = cache.lookup("football", "leagues", {"id": "1"})

    assert result.source == SOURCE_LIVE
    assert result.payload["response"] == ["ok"]
    assert len(client.calls) == 1


def test_rate_limit_payload_is_not_cached_and_maps_to_429(tmp_path: Path) -> None:
    limited = {"errors": {"requests": "You have reached the request limit for the day"}, "response": []}
    client = FakeClient(limited)
    cache = _cache(tmp_path, client)

    with pytest.raises(UpstreamRateLimitError) as excinfo:
        cache.get_or_fetch("football", "fixtures", {"league": "39"})

    assert excinfo.value.status_code == 429
    assert cache.store.count_entries() == 0


def test_other_logical_errors_map_to_502(tmp_path: Path) -> None:
    client = FakeClient({"errors": {"season": "The Season field must contain 4 characters."}})
    cache = _cache(tmp_path, client)

    with pytest.raises(UpstreamLogicalError) as excinfo:
        cache.get_or_fetch("football", "fixtures", {"season": "25"})

    assert not isinstance(excinfo.value, UpstreamRateLimitError)
    assert excinfo.value.status_code == 502


def test_validation_errors_with_rate_inside_words_map_to_502(tmp_path: Path) -> None:
    invalid = {"errors": {"parameters": "Team and league must be separated by the season field"}}
    client = FakeClient(invalid)
    cache = _cache(tmp_path, client)

    with pytest.raises(UpstreamLogicalError) as excinfo:
        cache.get_or_fetch("football", "fixtures", {"team": "33", "league": "39"})

    assert excinfo.value.status_code == 502
    assert not is_rate_limit_error(invalid["errors"])
    assert not is_rate_limit_error(["Could not generate an accurate schedule"])


def test_rate_limit_detected_from_error_keys_and_phrases() -> None:
    assert is_rate_limit_error({"rateLimit": "Slow down"})
    assert is_rate_limit_error({"requests": "Quota exhausted"})
    assert is_rate_limit_error(["Rate limit exceeded, retry later"])
    assert is_rate_limit_error("HTTP 429 Too Many Requests")
    assert not is_rate_limit_error({"requests": ""})
    assert not is_rate_limit_error([])


def test_upstream_failures_fall_back_to_stale_entry(tmp_path: Path) -> None:
    clock = Clock(NOW)
    client = FakeClient(
        {"response": ["cached"]},
        UpstreamUnavailableError("timeout"),
        {"errors": {"rateLimit": "Too many requests"}},
    )
    cache = _cache(tmp_path, client, clock)
    cache.get_or_fetch("basketball", "games", {"team": "1"})

    clock.now = NOW + dt.timedelta(days=3)
    after_timeout = cache.lookup("basketball", "games", {"team": "1"})
    after_rate_limit = cache.lookup("basketball", "games", {"team": "1"})

    assert after_timeout.source == SOURCE_STALE
    assert after_timeout.payload == {"response": ["cached"]}
    assert after_rate_limit.source == SOURCE_STALE
    assert len(client.calls) == 3


def test_transport_failure_without_entry_raises(tmp_path: Path) -> None:
    cache = _cache(tmp_path, FakeClient(UpstreamUnavailableError("connection refused")))

    with pytest.raises(UpstreamUnavailableError):
        cache.get_or_fetch("football", "teams", {"id": "33"})


def test_cache_key_ignores_parameter_order() -> None:
    left = CacheKey.build("Football", "/fixtures", {"b": 2, "a": "1"})
    right = CacheKey.build("football", "fixtures/", {"a": 1, "b": "2"})
    assert left == right
    assert left.serialize() == right.serialize()
    assert CacheKey.build("football", "fixtures", {"a": "1"}) != CacheKey.build(
        "basketball", "fixtures", {"a": "1"}
    )


def test_ttl_depends_on_endpoint_prefix() -> None:
    assert ttl_for_endpoint("leagues") == 86400
    assert ttl_for_endpoint("players/squads") == 86400
    assert ttl_for_endpoint("fixtures") == 3600
    assert ttl_for_endpoint("odds") == 3600
