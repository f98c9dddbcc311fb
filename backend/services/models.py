from __future__ import annotations

import datetime as dt
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

try:
    from backend.services.errors import UnknownSportError
except ModuleNotFoundError:
    from services.errors import UnknownSportError


class Sport(str, Enum):
    FOOTBALL = "football"
    BASKETBALL = "basketball"
    TENNIS = "tennis"

    @classmethod
    def parse(cls, value: Any) -> Sport:
        if isinstance(value, Sport):
            return value
        text = str(value or "").strip().lower()
        try:
            return cls(text)
        except ValueError as exc:
            raise UnknownSportError(f"Unknown sport: {value}") from exc


# Typical contest length, used when the provider gives no end time.
SPORT_DURATION_MINUTES: dict[Sport, int] = {
    Sport.FOOTBALL: 105,
    Sport.BASKETBALL: 150,
    Sport.TENNIS: 180,
}
DEFAULT_DURATION_MINUTES = 120

NOT_STARTED_STATUS = "NS"
CANCELLED_STATUS = "CANC"
FINISHED_STATUSES = frozenset({"FT", "AET", "PEN", "AOT", "FIN", "AWD", "WO"})
POSTPONED_STATUSES = frozenset({"PST", "CANC", "ABD", "INT", "SUSP"})

# ph_ = hand-curated tournament slots, fdo_ = football-data.org slots.
STATIC_PLACEHOLDER_PREFIX = "ph_"
FOOTBALL_DATA_PLACEHOLDER_PREFIX = "fdo_"
PLACEHOLDER_PREFIXES = (STATIC_PLACEHOLDER_PREFIX, FOOTBALL_DATA_PLACEHOLDER_PREFIX)

ENTITY_TYPES = frozenset({"league", "team", "player", "sport"})


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


def parse_iso_datetime(value: Any) -> dt.datetime | None:
    text = str(value or "").strip()
    if not text:
        return None

    iso_text = text.replace("Z", "+00:00")
    try:
        parsed = dt.datetime.fromisoformat(iso_text)
    except ValueError:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.UTC)
    return parsed.astimezone(dt.UTC)


def to_iso(value: dt.datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(dt.UTC).isoformat(timespec="seconds")


def estimated_duration(sport: str) -> dt.timedelta:
    try:
        minutes = SPORT_DURATION_MINUTES[Sport.parse(sport)]
    except UnknownSportError:
        minutes = DEFAULT_DURATION_MINUTES
    return dt.timedelta(minutes=minutes)


@dataclass(frozen=True)
class Participant:
    id: str | None
    name: str
    logo: str | None = None


@dataclass
class CanonicalFixture:
    sport: str
    fixture_id: str
    start_time: dt.datetime
    league_id: str | None = None
    league_name: str | None = None
    league_logo: str | None = None
    season: str | None = None
    home: Participant | None = None
    away: Participant | None = None
    end_time: dt.datetime | None = None
    status: str = NOT_STARTED_STATUS
    venue: str | None = None
    round: str | None = None
    home_score: int | None = None
    away_score: int | None = None
    player_ids: list[str] = field(default_factory=list)
    raw_data: dict[str, Any] = field(default_factory=dict)
    fetched_at: dt.datetime | None = None
    ttl_seconds: int | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.sport, self.fixture_id)

    @property
    def is_placeholder(self) -> bool:
        return self.fixture_id.startswith(PLACEHOLDER_PREFIXES)

    @property
    def has_both_participants(self) -> bool:
        return self.home is not None and self.away is not None

    @property
    def is_finished(self) -> bool:
        return self.status in FINISHED_STATUSES

    def estimated_end(self) -> dt.datetime:
        if self.end_time is not None:
            return self.end_time
        return self.start_time + estimated_duration(self.sport)

    def is_stale(self, now: dt.datetime) -> bool:
        if self.fetched_at is None or self.ttl_seconds is None:
            return True
        return now >= self.fetched_at + dt.timedelta(seconds=self.ttl_seconds)

    def to_row(self) -> dict[str, Any]:
        home = self.home
        away = self.away
        return {
            "sport": self.sport,
            "fixture_id": self.fixture_id,
            "league_id": self.league_id,
            "league_name": self.league_name,
            "league_logo": self.league_logo,
            "season": self.season,
            "home_team_id": home.id if home else None,
            "home_team_name": home.name if home else None,
            "home_team_logo": home.logo if home else None,
            "away_team_id": away.id if away else None,
            "away_team_name": away.name if away else None,
            "away_team_logo": away.logo if away else None,
            "start_time": to_iso(self.start_time),
            "end_time": to_iso(self.end_time),
            "status": self.status,
            "venue": self.venue,
            "round": self.round,
            "home_score": self.home_score,
            "away_score": self.away_score,
            "player_ids": list(self.player_ids),
            "raw_data": self.raw_data,
            "fetched_at": to_iso(self.fetched_at),
            "ttl_seconds": self.ttl_seconds,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> CanonicalFixture:
        player_ids = row.get("player_ids") or []
        if isinstance(player_ids, str):
            player_ids = json.loads(player_ids)
        raw_data = row.get("raw_data") or {}
        if isinstance(raw_data, str):
            raw_data = json.loads(raw_data)

        start_time = parse_iso_datetime(row.get("start_time"))
        if start_time is None:
            raise ValueError(f"Stored fixture {row.get('fixture_id')} has no start_time")

        return cls(
            sport=str(row["sport"]),
            fixture_id=str(row["fixture_id"]),
            start_time=start_time,
            league_id=row.get("league_id"),
            league_name=row.get("league_name"),
            league_logo=row.get("league_logo"),
            season=row.get("season"),
            home=_participant_from_columns(row, "home"),
            away=_participant_from_columns(row, "away"),
            end_time=parse_iso_datetime(row.get("end_time")),
            status=row.get("status") or NOT_STARTED_STATUS,
            venue=row.get("venue"),
            round=row.get("round"),
            home_score=row.get("home_score"),
            away_score=row.get("away_score"),
            player_ids=[str(item) for item in player_ids],
            raw_data=raw_data if isinstance(raw_data, dict) else {},
            fetched_at=parse_iso_datetime(row.get("fetched_at")),
            ttl_seconds=row.get("ttl_seconds"),
        )


def _participant_from_columns(row: dict[str, Any], side: str) -> Participant | None:
    name = row.get(f"{side}_team_name")
    if not name:
        return None
    return Participant(
        id=row.get(f"{side}_team_id"),
        name=str(name),
        logo=row.get(f"{side}_team_logo"),
    )


@dataclass(frozen=True)
class ChangeRecord:
    sport: str
    fixture_id: str
    change_type: str
    old_value: dict[str, Any]
    new_value: dict[str, Any]
    detected_at: dt.datetime | None = None


@dataclass(frozen=True)
class Follow:
    user_id: str
    entity_type: str
    entity_id: str
    sport: str
    entity_name: str = ""
    metadata: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)


@dataclass(frozen=True)
class SyncEntity:
    """One unit of sync fan-out: a followed entity deduplicated across users."""

    entity_type: str
    entity_id: str
    sport: str
    season: str | None = None

    @property
    def label(self) -> str:
        return f"{self.sport}/{self.entity_type}/{self.entity_id}"
