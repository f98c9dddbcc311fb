from __future__ import annotations

import threading
import time
from typing import Any

import requests
from loguru import logger

try:
    from backend.config import Settings
    from backend.services.errors import UnknownSportError, UpstreamUnavailableError
    from backend.services.models import Sport
except ModuleNotFoundError:
    from config import Settings
    from services.errors import UnknownSportError, UpstreamUnavailableError
    from services.models import Sport

API_SPORTS_BASE_URLS: dict[Sport, str] = {
    Sport.FOOTBALL: "https://v3.football.api-sports.io",
    Sport.BASKETBALL: "https://v1.basketball.api-sports.io",
}


class ApiSportsClient:
    """Stateless HTTP access to API-Sports. No caching, no retries."""

    def __init__(self, settings: Settings) -> None:
        self.api_key = settings.api_sports_key
        self.timeout_seconds = settings.request_timeout_seconds
        self.min_request_interval_seconds = settings.min_request_interval_seconds

        self.base_urls: dict[Sport, str] = dict(API_SPORTS_BASE_URLS)
        if settings.tennis_api_base_url:
            self.base_urls[Sport.TENNIS] = settings.tennis_api_base_url

        self.session = requests.Session()
        if self.api_key:
            self.session.headers.update({"x-apisports-key": self.api_key})

        self._throttle_lock = threading.Lock()
        self._last_request_monotonic = 0.0

    def _throttle(self) -> None:
        if self.min_request_interval_seconds <= 0:
            return

        with self._throttle_lock:
            now = time.monotonic()
            elapsed = now - self._last_request_monotonic
            wait_for = self.min_request_interval_seconds - elapsed
            if wait_for > 0:
                time.sleep(wait_for)
            self._last_request_monotonic = time.monotonic()

    def base_url_for(self, sport: str | Sport) -> str:
        sport_value = Sport.parse(sport)
        base_url = self.base_urls.get(sport_value)
        if not base_url:
            raise UnknownSportError(f"Unknown sport: {sport_value.value}")
        return base_url

    def supports(self, sport: str | Sport) -> bool:
        try:
            self.base_url_for(sport)
        except UnknownSportError:
            return False
        return True

    def fetch(self, sport: str | Sport, endpoint: str, params: dict[str, Any]) -> dict[str, Any]:
        base_url = self.base_url_for(sport)
        if not self.api_key:
            raise UpstreamUnavailableError("API_SPORTS_KEY is not configured")

        url = f"{base_url}/{endpoint.strip('/')}"
        self._throttle()

        try:
            response = self.session.get(
                url,
                params=params,
                timeout=self.timeout_seconds,
            )
            response.raise_for_status()
            payload = response.json()
        except (requests.exceptions.RequestException, ValueError) as exc:
            logger.warning(f"API-Sports request failed url={url} params={params}: {exc}")
            raise UpstreamUnavailableError(f"API-Sports error for {url}: {exc}") from exc

        if not isinstance(payload, dict):
            raise UpstreamUnavailableError(f"API-Sports returned a non-object payload for {url}")
        return payload
