"""Synthetic fixtures for knockout slots the primary provider has not published.

API-Sports only lists a knockout fixture once both sides are known, which can
be days before kickoff. Two sources fill the gap:

* a hand-curated table of officially scheduled slots for marquee tournaments;
* football-data.org, which publishes the whole bracket right after the draw
  with ``null`` teams for unresolved spots.

Placeholder ids carry a prefix (``ph_`` / ``fdo_``) so they never collide with
real provider ids. Once the real fixture for a slot shows up with both
participants, :func:`reconcile_placeholders` picks the placeholder rows it
supersedes.
"""

from __future__ import annotations

import datetime as dt
import re
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

try:
    from backend.services.football_data import FootballDataClient
    from backend.services.models import (
        FOOTBALL_DATA_PLACEHOLDER_PREFIX,
        NOT_STARTED_STATUS,
        STATIC_PLACEHOLDER_PREFIX,
        CanonicalFixture,
        Sport,
        parse_iso_datetime,
    )
except ModuleNotFoundError:
    from services.football_data import FootballDataClient
    from services.models import (
        FOOTBALL_DATA_PLACEHOLDER_PREFIX,
        NOT_STARTED_STATUS,
        STATIC_PLACEHOLDER_PREFIX,
        CanonicalFixture,
        Sport,
        parse_iso_datetime,
    )

PLACEHOLDER_TTL_SECONDS = 21600

KNOCKOUT_STAGE_ROUNDS: dict[str, str] = {
    "ROUND_OF_32": "Round of 32",
    "ROUND_OF_16": "Round of 16",
    "QUARTER_FINALS": "Quarter-finals",
    "SEMI_FINALS": "Semi-finals",
    "THIRD_PLACE": "3rd Place Final",
    "FINAL": "Final",
}
SCHEDULED_MATCH_STATUSES = frozenset({"SCHEDULED", "TIMED"})


def league_logo_url(league_id: str) -> str:
    return f"https://media.api-sports.io/football/leagues/{league_id}.png"


@dataclass(frozen=True)
class TournamentSlot:
    slot_id: str
    round: str
    kickoff: str
    venue: str | None = None


@dataclass(frozen=True)
class TournamentSchedule:
    league_id: str
    season: str
    league_name: str
    slots: tuple[TournamentSlot, ...]


WC_FINAL_VENUE = "MetLife Stadium, East Rutherford"
UCL_FINAL_VENUE = "Allianz Arena, Munich"

# All kickoffs UTC, from the published FIFA / UEFA match calendars.
WORLD_CUP_2026 = TournamentSchedule(
    league_id="1",
    season="2026",
    league_name="FIFA World Cup",
    slots=(
        *(
            TournamentSlot(f"wc2026_r32_{index:02d}", "Round of 32", kickoff)
            for index, kickoff in enumerate(
                [
                    "2026-06-28T20:00:00+00:00",
                    "2026-06-28T23:00:00+00:00",
                    "2026-06-29T20:00:00+00:00",
                    "2026-06-29T23:00:00+00:00",
                    "2026-06-30T20:00:00+00:00",
                    "2026-06-30T23:00:00+00:00",
                    "2026-07-01T20:00:00+00:00",
                    "2026-07-01T23:00:00+00:00",
                    "2026-07-02T20:00:00+00:00",
                    "2026-07-02T23:00:00+00:00",
                    "2026-07-03T20:00:00+00:00",
                    "2026-07-03T23:00:00+00:00",
                    "2026-07-04T20:00:00+00:00",
                    "2026-07-04T23:00:00+00:00",
                    "2026-07-05T20:00:00+00:00",
                    "2026-07-05T23:00:00+00:00",
                ],
                start=1,
            )
        ),
        *(
            TournamentSlot(f"wc2026_r16_{index}", "Round of 16", kickoff)
            for index, kickoff in enumerate(
                [
                    "2026-07-06T22:00:00+00:00",
                    "2026-07-07T22:00:00+00:00",
                    "2026-07-07T02:00:00+00:00",
                    "2026-07-08T22:00:00+00:00",
                    "2026-07-08T02:00:00+00:00",
                    "2026-07-09T22:00:00+00:00",
                    "2026-07-09T02:00:00+00:00",
                    "2026-07-10T02:00:00+00:00",
                ],
                start=1,
            )
        ),
        TournamentSlot("wc2026_qf_1", "Quarter-finals", "2026-07-11T22:00:00+00:00"),
        TournamentSlot("wc2026_qf_2", "Quarter-finals", "2026-07-12T22:00:00+00:00"),
        TournamentSlot("wc2026_qf_3", "Quarter-finals", "2026-07-13T22:00:00+00:00"),
        TournamentSlot("wc2026_qf_4", "Quarter-finals", "2026-07-14T22:00:00+00:00"),
        TournamentSlot("wc2026_sf_1", "Semi-finals", "2026-07-15T22:00:00+00:00"),
        TournamentSlot("wc2026_sf_2", "Semi-finals", "2026-07-16T22:00:00+00:00"),
        TournamentSlot("wc2026_3rd", "3rd Place Final", "2026-07-18T22:00:00+00:00"),
        TournamentSlot("wc2026_final", "Final", "2026-07-19T22:00:00+00:00", WC_FINAL_VENUE),
    ),
)

CHAMPIONS_LEAGUE_2025 = TournamentSchedule(
    league_id="2",
    season="2025",
    league_name="UEFA Champions League",
    slots=(
        TournamentSlot("ucl2526_r16_f1", "Round of 16", "2026-03-10T19:00:00+00:00"),
        TournamentSlot("ucl2526_r16_f2", "Round of 16", "2026-03-10T21:00:00+00:00"),
        TournamentSlot("ucl2526_r16_f3", "Round of 16", "2026-03-10T19:00:00+00:00"),
        TournamentSlot("ucl2526_r16_f4", "Round of 16", "2026-03-10T21:00:00+00:00"),
        TournamentSlot("ucl2526_r16_f5", "Round of 16", "2026-03-11T19:00:00+00:00"),
        TournamentSlot("ucl2526_r16_f6", "Round of 16", "2026-03-11T21:00:00+00:00"),
        TournamentSlot("ucl2526_r16_f7", "Round of 16", "2026-03-11T19:00:00+00:00"),
        TournamentSlot("ucl2526_r16_f8", "Round of 16", "2026-03-11T21:00:00+00:00"),
        TournamentSlot("ucl2526_r16_s1", "Round of 16", "2026-03-17T19:00:00+00:00"),
        TournamentSlot("ucl2526_r16_s2", "Round of 16", "2026-03-17T21:00:00+00:00"),
        TournamentSlot("ucl2526_r16_s3", "Round of 16", "2026-03-17T19:00:00+00:00"),
        TournamentSlot("ucl2526_r16_s4", "Round of 16", "2026-03-17T21:00:00+00:00"),
        TournamentSlot("ucl2526_r16_s5", "Round of 16", "2026-03-18T19:00:00+00:00"),
        TournamentSlot("ucl2526_r16_s6", "Round of 16", "2026-03-18T21:00:00+00:00"),
        TournamentSlot("ucl2526_r16_s7", "Round of 16", "2026-03-18T19:00:00+00:00"),
        TournamentSlot("ucl2526_r16_s8", "Round of 16", "2026-03-18T21:00:00+00:00"),
        TournamentSlot("ucl2526_qf_f1", "Quarter-finals", "2026-04-07T19:00:00+00:00"),
        TournamentSlot("ucl2526_qf_f2", "Quarter-finals", "2026-04-07T21:00:00+00:00"),
        TournamentSlot("ucl2526_qf_f3", "Quarter-finals", "2026-04-08T19:00:00+00:00"),
        TournamentSlot("ucl2526_qf_f4", "Quarter-finals", "2026-04-08T21:00:00+00:00"),
        TournamentSlot("ucl2526_qf_s1", "Quarter-finals", "2026-04-14T19:00:00+00:00"),
        TournamentSlot("ucl2526_qf_s2", "Quarter-finals", "2026-04-14T21:00:00+00:00"),
        TournamentSlot("ucl2526_qf_s3", "Quarter-finals", "2026-04-15T19:00:00+00:00"),
        TournamentSlot("ucl2526_qf_s4", "Quarter-finals", "2026-04-15T21:00:00+00:00"),
        TournamentSlot("ucl2526_sf_f1", "Semi-finals", "2026-04-28T19:00:00+00:00"),
        TournamentSlot("ucl2526_sf_f2", "Semi-finals", "2026-04-29T19:00:00+00:00"),
        TournamentSlot("ucl2526_sf_s1", "Semi-finals", "2026-05-05T19:00:00+00:00"),
        TournamentSlot("ucl2526_sf_s2", "Semi-finals", "2026-05-06T19:00:00+00:00"),
        TournamentSlot("ucl2526_final", "Final", "2026-05-30T20:00:00+00:00", UCL_FINAL_VENUE),
    ),
)

TOURNAMENT_SCHEDULES: dict[tuple[str, str], TournamentSchedule] = {
    (schedule.league_id, schedule.season): schedule
    for schedule in (WORLD_CUP_2026, CHAMPIONS_LEAGUE_2025)
}


def round_key(label: str | None) -> str:
    return re.sub(r"[^a-z0-9]", "", str(label or "").lower())


def _placeholder(
    fixture_id: str,
    league_id: str,
    season: str,
    league_name: str,
    round_label: str,
    start: dt.datetime,
    venue: str | None,
    raw_data: dict[str, Any],
) -> CanonicalFixture:
    return CanonicalFixture(
        sport=Sport.FOOTBALL.value,
        fixture_id=fixture_id,
        start_time=start,
        league_id=league_id,
        league_name=league_name,
        league_logo=league_logo_url(league_id),
        season=season,
        status=NOT_STARTED_STATUS,
        venue=venue,
        round=round_label,
        raw_data=raw_data,
        ttl_seconds=PLACEHOLDER_TTL_SECONDS,
    )


def static_placeholders(
    league_id: str,
    season: str,
    schedules: dict[tuple[str, str], TournamentSchedule] | None = None,
) -> list[CanonicalFixture]:
    table = TOURNAMENT_SCHEDULES if schedules is None else schedules
    schedule = table.get((str(league_id), str(season)))
    if schedule is None:
        return []

    fixtures: list[CanonicalFixture] = []
    for slot in schedule.slots:
        start = parse_iso_datetime(slot.kickoff)
        if start is None:
            logger.warning(f"Skipping tournament slot {slot.slot_id} with bad kickoff {slot.kickoff}")
            continue
        fixture_id = f"{STATIC_PLACEHOLDER_PREFIX}{slot.slot_id}"
        fixtures.append(
            _placeholder(
                fixture_id=fixture_id,
                league_id=schedule.league_id,
                season=schedule.season,
                league_name=schedule.league_name,
                round_label=slot.round,
                start=start,
                venue=slot.venue,
                raw_data={
                    "fixture": {
                        "id": fixture_id,
                        "date": slot.kickoff,
                        "status": {"short": NOT_STARTED_STATUS, "long": "Not Started"},
                        "venue": {"name": slot.venue or "TBD", "city": None},
                    },
                    "league": {
                        "id": int(schedule.league_id),
                        "name": schedule.league_name,
                        "logo": league_logo_url(schedule.league_id),
                        "season": int(schedule.season),
                        "round": slot.round,
                    },
                    "teams": {
                        "home": {"id": None, "name": "TBD", "logo": None},
                        "away": {"id": None, "name": "TBD", "logo": None},
                    },
                    "goals": {"home": None, "away": None},
                },
            )
        )
    return fixtures


def _team_id(match: dict[str, Any], side: str) -> Any:
    team = match.get(side)
    if not isinstance(team, dict):
        return None
    return team.get("id")


def football_data_placeholders(
    league_id: str, season: str, payload: dict[str, Any]
) -> list[CanonicalFixture]:
    competition = payload.get("competition")
    league_name = ""
    if isinstance(competition, dict):
        league_name = str(competition.get("name") or "")
    matches = payload.get("matches")
    if not isinstance(matches, list):
        return []

    fixtures: list[CanonicalFixture] = []
    for match in matches:
        if not isinstance(match, dict):
            continue
        round_label = KNOCKOUT_STAGE_ROUNDS.get(str(match.get("stage") or ""))
        if not round_label:
            continue
        # Both sides known: API-Sports is authoritative for this one.
        if _team_id(match, "homeTeam") and _team_id(match, "awayTeam"):
            continue
        if str(match.get("status") or "") not in SCHEDULED_MATCH_STATUSES:
            continue
        start = parse_iso_datetime(match.get("utcDate"))
        match_id = match.get("id")
        if start is None or match_id is None:
            continue
        fixtures.append(
            _placeholder(
                fixture_id=f"{FOOTBALL_DATA_PLACEHOLDER_PREFIX}{match_id}",
                league_id=str(league_id),
                season=str(season),
                league_name=league_name,
                round_label=round_label,
                start=start,
                venue=None,
                raw_data=match,
            )
        )
    return fixtures


@dataclass
class PlaceholderResult:
    fixtures: list[CanonicalFixture] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class PlaceholderGenerator:
    def __init__(
        self,
        football_data: FootballDataClient | None = None,
        schedules: dict[tuple[str, str], TournamentSchedule] | None = None,
    ) -> None:
        self.football_data = football_data
        self.schedules = TOURNAMENT_SCHEDULES if schedules is None else schedules

    def generate(self, league_id: str, season: str) -> PlaceholderResult:
        result = PlaceholderResult()
        secondary: list[CanonicalFixture] = []

        if self.football_data is not None and self.football_data.supports_league(league_id):
            payload, error = self.football_data.get_competition_matches(league_id, season)
            if error:
                result.errors.append(f"football-data {league_id}/{season}: {error}")
            elif payload is not None:
                secondary = football_data_placeholders(league_id, season, payload)

        covered_rounds = {round_key(fixture.round) for fixture in secondary}
        static = [
            fixture
            for fixture in static_placeholders(league_id, season, self.schedules)
            if round_key(fixture.round) not in covered_rounds
        ]
        result.fixtures = secondary + static
        return result


def reconcile_placeholders(
    placeholders: Iterable[CanonicalFixture],
    real_fixtures: Iterable[CanonicalFixture],
) -> list[CanonicalFixture]:
    """Return the placeholders superseded by real fixtures.

    Slots are grouped by sport, league, season, round and UTC kickoff date.
    Each real fixture in a group with both participants known retires one
    placeholder of that group, nearest kickoff first.
    """

    def group_key(fixture: CanonicalFixture) -> tuple[str, str, str, str, dt.date]:
        return (
            fixture.sport,
            str(fixture.league_id or ""),
            str(fixture.season or ""),
            round_key(fixture.round),
            fixture.start_time.astimezone(dt.UTC).date(),
        )

    real_by_group: dict[tuple[str, str, str, str, dt.date], list[CanonicalFixture]] = defaultdict(list)
    for fixture in real_fixtures:
        if fixture.is_placeholder or not fixture.has_both_participants or not fixture.round:
            continue
        real_by_group[group_key(fixture)].append(fixture)

    placeholders_by_group: dict[tuple[str, str, str, str, dt.date], list[CanonicalFixture]] = (
        defaultdict(list)
    )
    for fixture in placeholders:
        if fixture.is_placeholder:
            placeholders_by_group[group_key(fixture)].append(fixture)

    retired: list[CanonicalFixture] = []
    for key, candidates in placeholders_by_group.items():
        real = real_by_group.get(key)
        if not real:
            continue

        def distance(candidate: CanonicalFixture, real: list[CanonicalFixture] = real) -> float:
            return min(abs((candidate.start_time - item.start_time).total_seconds()) for item in real)

        ordered = sorted(candidates, key=lambda item: (distance(item), item.fixture_id))
        retired.extend(ordered[: len(real)])
    return retired
