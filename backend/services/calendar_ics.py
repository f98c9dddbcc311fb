"""ICS feed rendering for stored fixtures.

The feed is plain RFC 5545 text: CRLF line endings, TEXT escaping and
continuation lines folded at 75 octets.
"""

from __future__ import annotations

import datetime as dt
from collections.abc import Iterable
from typing import Any

try:
    from backend.services.models import (
        FINISHED_STATUSES,
        NOT_STARTED_STATUS,
        CanonicalFixture,
        to_iso,
        utc_now,
    )
except ModuleNotFoundError:
    from services.models import (
        FINISHED_STATUSES,
        NOT_STARTED_STATUS,
        CanonicalFixture,
        to_iso,
        utc_now,
    )

PRODID = "-//SportCal//sport-calendar//EN"
UID_DOMAIN = "sportcal"
REFRESH_INTERVAL = "PT5M"
MAX_LINE_OCTETS = 75


def ics_escape(text: str) -> str:
    text = text.replace("\\", "\\\\")
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = text.replace("\n", "\\n")
    text = text.replace(";", r"\;")
    text = text.replace(",", r"\,")
    return text


def fold_ics_line(line: str) -> list[str]:
    """Split a content line into 75-octet chunks without breaking a UTF-8 sequence."""
    if len(line.encode("utf-8")) <= MAX_LINE_OCTETS:
        return [line]

    out: list[str] = []
    current = ""
    current_octets = 0
    # Continuation lines spend one octet on the leading space.
    limit = MAX_LINE_OCTETS
    for char in line:
        size = len(char.encode("utf-8"))
        if current_octets + size > limit:
            out.append(current)
            current = ""
            current_octets = 0
            limit = MAX_LINE_OCTETS - 1
        current += char
        current_octets += size
    if current:
        out.append(current)
    return [out[0]] + [" " + chunk for chunk in out[1:]]


def ics_datetime(value: dt.datetime) -> str:
    return value.astimezone(dt.UTC).strftime("%Y%m%dT%H%M%SZ")


def event_uid(fixture: CanonicalFixture) -> str:
    return f"{fixture.sport}-{fixture.fixture_id}@{UID_DOMAIN}"


def build_summary(fixture: CanonicalFixture) -> str:
    if fixture.home is not None and fixture.away is not None:
        return f"{fixture.home.name} vs {fixture.away.name}"
    if fixture.league_name and fixture.round:
        return f"{fixture.league_name} – {fixture.round}"
    if fixture.league_name:
        return fixture.league_name
    if fixture.round:
        return fixture.round
    return "Match"


def build_description(fixture: CanonicalFixture) -> str:
    parts: list[str] = []
    if fixture.league_name:
        parts.append(f"League: {fixture.league_name}")
    if fixture.venue:
        parts.append(f"Venue: {fixture.venue}")
    if fixture.round:
        parts.append(f"Round: {fixture.round}")
    if fixture.status and fixture.status != NOT_STARTED_STATUS:
        parts.append(f"Status: {fixture.status}")
    return "\n".join(parts)


def event_lines(fixture: CanonicalFixture, stamp: dt.datetime) -> list[str]:
    lines = [
        "BEGIN:VEVENT",
        f"UID:{event_uid(fixture)}",
        f"DTSTAMP:{ics_datetime(stamp)}",
        f"DTSTART:{ics_datetime(fixture.start_time)}",
        f"DTEND:{ics_datetime(fixture.estimated_end())}",
        f"SUMMARY:{ics_escape(build_summary(fixture))}",
    ]
    description = build_description(fixture)
    if description:
        lines.append(f"DESCRIPTION:{ics_escape(description)}")
    if fixture.venue:
        lines.append(f"LOCATION:{ics_escape(fixture.venue)}")
    lines.append(f"STATUS:{'CONFIRMED' if fixture.status in FINISHED_STATUSES else 'TENTATIVE'}")
    lines.append("END:VEVENT")
    return lines


def render(
    fixtures: Iterable[CanonicalFixture],
    calendar_name: str,
    now: dt.datetime | None = None,
) -> str:
    stamp = now or utc_now()
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        f"PRODID:{PRODID}",
        "CALSCALE:GREGORIAN",
        "METHOD:PUBLISH",
        f"NAME:{ics_escape(calendar_name)}",
        f"X-WR-CALNAME:{ics_escape(calendar_name)}",
        f"REFRESH-INTERVAL;VALUE=DURATION:{REFRESH_INTERVAL}",
        f"X-PUBLISHED-TTL:{REFRESH_INTERVAL}",
    ]
    for fixture in fixtures:
        lines.extend(event_lines(fixture, stamp))
    lines.append("END:VCALENDAR")

    folded: list[str] = []
    for line in lines:
        folded.extend(fold_ics_line(line))
    return "\r\n".join(folded) + "\r\n"


def fixture_to_event(fixture: CanonicalFixture) -> dict[str, Any]:
    """JSON event shape consumed by the in-app calendar view."""
    return {
        "id": f"{fixture.sport}-{fixture.fixture_id}",
        "title": build_summary(fixture),
        "start": to_iso(fixture.start_time),
        "end": to_iso(fixture.estimated_end()),
        "sport": fixture.sport,
        "leagueId": fixture.league_id,
        "leagueName": fixture.league_name,
        "leagueLogo": fixture.league_logo,
        "round": fixture.round,
        "venue": fixture.venue,
        "status": fixture.status,
        "homeTeam": fixture.home.name if fixture.home else None,
        "awayTeam": fixture.away.name if fixture.away else None,
        "homeScore": fixture.home_score,
        "awayScore": fixture.away_score,
        "isPlaceholder": fixture.is_placeholder,
    }
