from __future__ import annotations

import datetime as dt
import json
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, NamedTuple, Protocol

from loguru import logger

try:
    from backend.services.errors import (
        UpstreamLogicalError,
        UpstreamRateLimitError,
        UpstreamUnavailableError,
    )
    from backend.services.models import Sport, utc_now
    from backend.services.persistent_store import PersistentStore, StoredResponse
except ModuleNotFoundError:
    from services.errors import (
        UpstreamLogicalError,
        UpstreamRateLimitError,
        UpstreamUnavailableError,
    )
    from services.models import Sport, utc_now
    from services.persistent_store import PersistentStore, StoredResponse

# Reference data changes rarely; schedules and tables move through the day.
ENDPOINT_TTL_SECONDS: dict[str, int] = {
    "leagues": 86400,
    "teams": 86400,
    "players": 86400,
    "countries": 86400,
    "seasons": 86400,
    "standings": 3600,
    "fixtures": 3600,
    "games": 3600,
}
DEFAULT_TTL_SECONDS = 3600

# API-Sports reports quota exhaustion under these error keys.
RATE_LIMIT_ERROR_KEYS = frozenset({"ratelimit", "requests"})
RATE_LIMIT_PHRASES = (
    "rate limit",
    "request limit",
    "too many requests",
    "429",
)

SOURCE_FRESH = "fresh"
SOURCE_LIVE = "live"
SOURCE_STALE = "stale"


class UpstreamClient(Protocol):
    def fetch(self, sport: str, endpoint: str, params: dict[str, Any]) -> dict[str, Any]: ...


class CacheKey(NamedTuple):
    sport: str
    endpoint: str
    params: tuple[tuple[str, str], ...]

    @classmethod
    def build(cls, sport: str, endpoint: str, params: Mapping[str, Any] | None = None) -> CacheKey:
        normalized = tuple(
            sorted((str(name), str(value)) for name, value in (params or {}).items())
        )
        return cls(
            sport=Sport.parse(sport).value,
            endpoint=endpoint.strip().strip("/"),
            params=normalized,
        )

    def serialize(self) -> str:
        return json.dumps(
            [self.sport, self.endpoint, [list(pair) for pair in self.params]],
            ensure_ascii=False,
            separators=(",", ":"),
        )

    def params_dict(self) -> dict[str, str]:
        return dict(self.params)


@dataclass(frozen=True)
class CachedResponse:
    payload: dict[str, Any]
    source: str


def has_upstream_errors(payload: Any) -> bool:
    if not isinstance(payload, dict):
        return False
    upstream_errors = payload.get("errors")
    if isinstance(upstream_errors, dict):
        return any(bool(value) for value in upstream_errors.values())
    return bool(upstream_errors)


def _is_rate_limit_key(key: Any) -> bool:
    normalized = str(key).strip().lower().replace("_", "").replace("-", "")
    return normalized in RATE_LIMIT_ERROR_KEYS


def _is_rate_limit_text(raw_error: Any) -> bool:
    text = str(raw_error or "").strip().lower()
    if not text:
        return False
    return any(phrase in text for phrase in RATE_LIMIT_PHRASES)


def is_rate_limit_error(upstream_errors: Any) -> bool:
    if isinstance(upstream_errors, dict):
        return any(
            _is_rate_limit_key(key) or _is_rate_limit_text(value)
            for key, value in upstream_errors.items()
            if value
        )
    if isinstance(upstream_errors, list):
        return any(_is_rate_limit_text(item) for item in upstream_errors)
    return _is_rate_limit_text(upstream_errors)


def ttl_for_endpoint(endpoint: str) -> int:
    prefix = endpoint.strip("/").split("/")[0]
    return ENDPOINT_TTL_SECONDS.get(prefix, DEFAULT_TTL_SECONDS)


class ResponseCache:
    """Read-through cache in front of the upstream client.

    At most one network call per lookup. Error-bearing payloads are never
    stored and a stored entry is only served as fresh when it is both within
    its TTL and free of upstream errors. When the live call fails, any prior
    entry is served instead, however old.
    """

    def __init__(
        self,
        client: UpstreamClient,
        store: PersistentStore,
        now_fn: Callable[[], dt.datetime] = utc_now,
    ) -> None:
        self.client = client
        self.store = store
        self.now_fn = now_fn

    def get_or_fetch(
        self, sport: str, endpoint: str, params: Mapping[str, Any] | None = None
    ) -> dict[str, Any]:
        return self.lookup(sport, endpoint, params).payload

    def lookup(
        self, sport: str, endpoint: str, params: Mapping[str, Any] | None = None
    ) -> CachedResponse:
        key = CacheKey.build(sport, endpoint, params)
        cache_key = key.serialize()
        now = self.now_fn()

        cached = self.store.load_response(cache_key)
        if cached is not None and self._is_fresh_hit(cached, now):
            return CachedResponse(payload=cached.payload, source=SOURCE_FRESH)

        try:
            payload = self.client.fetch(key.sport, key.endpoint, key.params_dict())
        except UpstreamUnavailableError as exc:
            if cached is not None:
                logger.warning(f"Serving stale cache for {cache_key} after upstream failure: {exc}")
                return CachedResponse(payload=cached.payload, source=SOURCE_STALE)
            raise

        if has_upstream_errors(payload):
            upstream_errors = payload.get("errors")
            if cached is not None:
                logger.warning(
                    f"Upstream returned errors for {cache_key}; serving stale cache: {upstream_errors}"
                )
                return CachedResponse(payload=cached.payload, source=SOURCE_STALE)
            if is_rate_limit_error(upstream_errors):
                raise UpstreamRateLimitError(
                    f"API-Sports rate limit reached for {key.sport}/{key.endpoint}",
                    errors=upstream_errors,
                )
            raise UpstreamLogicalError(
                f"API-Sports returned errors for {key.sport}/{key.endpoint}",
                errors=upstream_errors,
            )

        self.store.save_response(
            cache_key,
            key.sport,
            key.endpoint,
            key.params_dict(),
            payload,
            fetched_at=now,
            ttl_seconds=ttl_for_endpoint(key.endpoint),
        )
        return CachedResponse(payload=payload, source=SOURCE_LIVE)

    @staticmethod
    def _is_fresh_hit(cached: StoredResponse, now: dt.datetime) -> bool:
        return cached.is_fresh(now) and not has_upstream_errors(cached.payload)
