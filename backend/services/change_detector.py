from __future__ import annotations

import datetime as dt

try:
    from backend.services.models import (
        CANCELLED_STATUS,
        POSTPONED_STATUSES,
        CanonicalFixture,
        ChangeRecord,
        to_iso,
    )
except ModuleNotFoundError:
    from services.models import (
        CANCELLED_STATUS,
        POSTPONED_STATUSES,
        CanonicalFixture,
        ChangeRecord,
        to_iso,
    )

RESCHEDULE = "reschedule"
POSTPONE = "postpone"
CANCEL = "cancel"
SCORE_UPDATE = "score_update"

RESCHEDULE_THRESHOLD = dt.timedelta(minutes=5)


def _record(
    incoming: CanonicalFixture,
    change_type: str,
    old_value: dict,
    new_value: dict,
    detected_at: dt.datetime | None,
) -> ChangeRecord:
    return ChangeRecord(
        sport=incoming.sport,
        fixture_id=incoming.fixture_id,
        change_type=change_type,
        old_value=old_value,
        new_value=new_value,
        detected_at=detected_at,
    )


def detect(
    previous: CanonicalFixture,
    incoming: CanonicalFixture,
    detected_at: dt.datetime | None = None,
) -> ChangeRecord | None:
    """Compare a stored fixture with its fresh upstream version.

    Checks run in priority order and the first match wins, so at most one
    record comes out of a comparison. A kickoff moved by more than five
    minutes is reported as a reschedule even when the status also flipped
    to postponed.
    """
    old_status = previous.status
    new_status = incoming.status

    if previous.start_time is not None and incoming.start_time is not None:
        if abs(incoming.start_time - previous.start_time) > RESCHEDULE_THRESHOLD:
            return _record(
                incoming,
                RESCHEDULE,
                {"start_time": to_iso(previous.start_time), "status": old_status},
                {"start_time": to_iso(incoming.start_time), "status": new_status},
                detected_at,
            )

    if old_status not in POSTPONED_STATUSES and new_status in POSTPONED_STATUSES:
        return _record(
            incoming,
            CANCEL if new_status == CANCELLED_STATUS else POSTPONE,
            {"status": old_status},
            {"status": new_status},
            detected_at,
        )

    scores_known = incoming.home_score is not None or incoming.away_score is not None
    scores_moved = (
        previous.home_score != incoming.home_score or previous.away_score != incoming.away_score
    )
    if scores_known and scores_moved:
        return _record(
            incoming,
            SCORE_UPDATE,
            {
                "home_score": previous.home_score,
                "away_score": previous.away_score,
                "status": old_status,
            },
            {
                "home_score": incoming.home_score,
                "away_score": incoming.away_score,
                "status": new_status,
            },
            detected_at,
        )

    return None
