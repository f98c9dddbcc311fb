from __future__ import annotations

import datetime as dt
from collections.abc import Callable, Iterable
from typing import Any

from loguru import logger

try:
    from backend.services.errors import MalformedFixtureError
    from backend.services.models import (
        NOT_STARTED_STATUS,
        CanonicalFixture,
        Participant,
        Sport,
        estimated_duration,
        parse_iso_datetime,
    )
except ModuleNotFoundError:
    from services.errors import MalformedFixtureError
    from services.models import (
        NOT_STARTED_STATUS,
        CanonicalFixture,
        Participant,
        Sport,
        estimated_duration,
        parse_iso_datetime,
    )

UNKNOWN_PARTICIPANT_NAMES = frozenset({"tbd", "tba", "to be determined"})
UNKNOWN_VENUE_NAMES = frozenset({"tbd", "tba"})

FOOTBALL_SEASON_START_MONTH = 8
BASKETBALL_SEASON_START_MONTH = 10


def football_season(on: dt.date) -> str:
    return str(on.year if on.month >= FOOTBALL_SEASON_START_MONTH else on.year - 1)


def basketball_season(on: dt.date) -> str:
    start = on.year if on.month >= BASKETBALL_SEASON_START_MONTH else on.year - 1
    return f"{start}-{start + 1}"


def season_for(sport: str | Sport, on: dt.date) -> str:
    sport_value = Sport.parse(sport)
    if sport_value is Sport.BASKETBALL:
        return basketball_season(on)
    if sport_value is Sport.TENNIS:
        return str(on.year)
    return football_season(on)


def _section(value: Any, key: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        return {}
    nested = value.get(key)
    return nested if isinstance(nested, dict) else {}


def _text(value: Any) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    return text or None


def _int_or_none(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _clean_logo(value: Any) -> str | None:
    text = _text(value)
    if text and text.lower().startswith(("http://", "https://")):
        return text
    return None


def _venue(value: Any) -> str | None:
    name = _text(value)
    if name is None or name.lower() in UNKNOWN_VENUE_NAMES:
        return None
    return name


def _participant(raw: Any, logo_key: str = "logo") -> Participant | None:
    if not isinstance(raw, dict):
        return None
    name = _text(raw.get("name"))
    if name is None or name.lower() in UNKNOWN_PARTICIPANT_NAMES:
        return None
    return Participant(id=_text(raw.get("id")), name=name, logo=_clean_logo(raw.get(logo_key)))


def _start_time(date_value: Any, timestamp_value: Any) -> dt.datetime | None:
    parsed = parse_iso_datetime(date_value)
    if parsed is not None:
        return parsed
    timestamp = _int_or_none(timestamp_value)
    if timestamp is None:
        return None
    return dt.datetime.fromtimestamp(timestamp, tz=dt.UTC)


def _require(sport: Sport, fixture_id: str | None, start: dt.datetime | None) -> None:
    if not fixture_id:
        raise MalformedFixtureError(f"{sport.value} item has no id")
    if start is None:
        raise MalformedFixtureError(f"{sport.value} item {fixture_id} has no start time")


def _lineup_player_ids(raw: dict[str, Any]) -> list[str]:
    player_ids: list[str] = []
    lineups = raw.get("lineups")
    if not isinstance(lineups, list):
        return player_ids
    for lineup in lineups:
        if not isinstance(lineup, dict):
            continue
        for group in ("startXI", "substitutes"):
            entries = lineup.get(group)
            if not isinstance(entries, list):
                continue
            for entry in entries:
                player_id = _text(_section(entry, "player").get("id"))
                if player_id and player_id not in player_ids:
                    player_ids.append(player_id)
    return player_ids


def _normalize_football(raw: dict[str, Any]) -> CanonicalFixture:
    # Nested shape: fixture / league / teams / goals sub-objects.
    fixture = _section(raw, "fixture")
    league = _section(raw, "league")
    teams = _section(raw, "teams")
    goals = _section(raw, "goals")

    fixture_id = _text(fixture.get("id"))
    start = _start_time(fixture.get("date"), fixture.get("timestamp"))
    _require(Sport.FOOTBALL, fixture_id, start)

    return CanonicalFixture(
        sport=Sport.FOOTBALL.value,
        fixture_id=str(fixture_id),
        start_time=start,
        end_time=start + estimated_duration(Sport.FOOTBALL.value),
        league_id=_text(league.get("id")),
        league_name=_text(league.get("name")),
        league_logo=_clean_logo(league.get("logo")),
        season=_text(league.get("season")) or football_season(start.date()),
        home=_participant(teams.get("home")),
        away=_participant(teams.get("away")),
        status=_text(_section(fixture, "status").get("short")) or NOT_STARTED_STATUS,
        venue=_venue(_section(fixture, "venue").get("name")),
        round=_text(league.get("round")),
        home_score=_int_or_none(goals.get("home")),
        away_score=_int_or_none(goals.get("away")),
        player_ids=_lineup_player_ids(raw),
        raw_data=raw,
    )


def _normalize_basketball(raw: dict[str, Any]) -> CanonicalFixture:
    # Flat shape: id / date / status at the top level, scores.<side>.total.
    league = _section(raw, "league")
    teams = _section(raw, "teams")
    scores = _section(raw, "scores")

    fixture_id = _text(raw.get("id"))
    start = _start_time(raw.get("date"), raw.get("timestamp"))
    _require(Sport.BASKETBALL, fixture_id, start)

    return CanonicalFixture(
        sport=Sport.BASKETBALL.value,
        fixture_id=str(fixture_id),
        start_time=start,
        end_time=start + estimated_duration(Sport.BASKETBALL.value),
        league_id=_text(league.get("id")),
        league_name=_text(league.get("name")),
        league_logo=_clean_logo(league.get("logo")),
        season=_text(raw.get("season"))
        or _text(league.get("season"))
        or basketball_season(start.date()),
        home=_participant(teams.get("home")),
        away=_participant(teams.get("away")),
        status=_text(_section(raw, "status").get("short")) or NOT_STARTED_STATUS,
        venue=_venue(_section(raw, "venue").get("name") or raw.get("venue")),
        round=_text(raw.get("stage")) or _text(raw.get("week")),
        home_score=_int_or_none(_section(scores, "home").get("total")),
        away_score=_int_or_none(_section(scores, "away").get("total")),
        raw_data=raw,
    )


def _normalize_tennis(raw: dict[str, Any]) -> CanonicalFixture:
    # Flat shape with a two-element players array instead of teams.
    league = _section(raw, "league")
    players = raw.get("players") if isinstance(raw.get("players"), list) else []
    scores = raw.get("scores") if isinstance(raw.get("scores"), list) else []

    fixture_id = _text(raw.get("id"))
    start = _start_time(raw.get("date"), raw.get("timestamp"))
    _require(Sport.TENNIS, fixture_id, start)

    sides = [_section(entry, "player") for entry in players[:2]]
    while len(sides) < 2:
        sides.append({})
    home = _participant(sides[0], logo_key="photo")
    away = _participant(sides[1], logo_key="photo")
    sets = [_int_or_none(_section(entry, "score").get("sets")) for entry in scores[:2]]
    while len(sets) < 2:
        sets.append(None)

    return CanonicalFixture(
        sport=Sport.TENNIS.value,
        fixture_id=str(fixture_id),
        start_time=start,
        end_time=start + estimated_duration(Sport.TENNIS.value),
        league_id=_text(league.get("id")),
        league_name=_text(league.get("name")),
        league_logo=_clean_logo(league.get("logo")),
        season=_text(raw.get("season")) or str(start.year),
        home=home,
        away=away,
        status=_text(_section(raw, "status").get("short")) or NOT_STARTED_STATUS,
        venue=_venue(_section(raw, "venue").get("name")),
        round=_text(raw.get("round")),
        home_score=sets[0],
        away_score=sets[1],
        player_ids=[p.id for p in (home, away) if p is not None and p.id],
        raw_data=raw,
    )


NORMALIZERS: dict[Sport, Callable[[dict[str, Any]], CanonicalFixture]] = {
    Sport.FOOTBALL: _normalize_football,
    Sport.BASKETBALL: _normalize_basketball,
    Sport.TENNIS: _normalize_tennis,
}


def normalize(sport: str | Sport, raw: Any) -> CanonicalFixture:
    sport_value = Sport.parse(sport)
    if not isinstance(raw, dict):
        raise MalformedFixtureError(f"{sport_value.value} item is not an object")
    return NORMALIZERS[sport_value](raw)


def normalize_many(sport: str | Sport, items: Iterable[Any]) -> list[CanonicalFixture]:
    fixtures: list[CanonicalFixture] = []
    dropped = 0
    for item in items:
        try:
            fixtures.append(normalize(sport, item))
        except MalformedFixtureError as exc:
            dropped += 1
            logger.debug(f"Dropping malformed upstream item: {exc}")
    if dropped:
        logger.info(f"Dropped {dropped} malformed {Sport.parse(sport).value} item(s).")
    return fixtures
