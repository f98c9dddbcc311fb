from __future__ import annotations

from typing import Any

import requests
from loguru import logger

try:
    from backend.config import Settings
except ModuleNotFoundError:
    from config import Settings

FOOTBALL_DATA_BASE_URL = "https://api.football-data.org/v4"

# API-Sports league id -> football-data.org competition code.
LEAGUE_TO_COMPETITION: dict[str, str] = {
    "1": "WC",
    "2": "CL",
    "3": "EL",
    "4": "EC",
}


def competition_season(season: str) -> str:
    # football-data.org keys seasons by their starting year only.
    text = str(season or "").strip()
    return text.split("-")[0] if "-" in text else text


class FootballDataClient:
    """Schedule-only secondary source used for undrawn knockout slots."""

    def __init__(self, settings: Settings) -> None:
        self.api_key = settings.football_data_api_key
        self.timeout_seconds = settings.request_timeout_seconds
        self.session = requests.Session()
        if self.api_key:
            self.session.headers.update({"X-Auth-Token": self.api_key})

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def supports_league(self, league_id: str) -> bool:
        return self.enabled and str(league_id) in LEAGUE_TO_COMPETITION

    def get_competition_matches(
        self, league_id: str, season: str
    ) -> tuple[dict[str, Any] | None, str | None]:
        code = LEAGUE_TO_COMPETITION.get(str(league_id))
        if not code:
            return None, f"League {league_id} has no football-data.org mapping"
        if not self.api_key:
            return None, "FOOTBALL_DATA_API_KEY is not configured"

        fd_season = competition_season(season)
        try:
            response = self.session.get(
                f"{FOOTBALL_DATA_BASE_URL}/competitions/{code}/matches",
                params={"season": fd_season},
                timeout=self.timeout_seconds,
            )
            response.raise_for_status()
            payload = response.json()
        except (requests.exceptions.RequestException, ValueError) as exc:
            logger.warning(f"[football-data] {code} season={fd_season} failed: {exc}")
            return None, str(exc)

        if not isinstance(payload, dict):
            return None, f"[football-data] {code} season={fd_season}: malformed payload"
        return payload, None
