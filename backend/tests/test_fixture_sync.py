from __future__ import annotations

import datetime as dt
import sqlite3
from pathlib import Path

from loguru import logger

from backend.config import Settings
from backend.services.errors import UpstreamUnavailableError
from backend.services.fixture_store import FixtureStore
from backend.services.fixture_sync import FixtureSyncService, SyncWindow, compute_ttl
from backend.services.models import CanonicalFixture, SyncEntity
from backend.services.persistent_store import PersistentStore
from backend.services.placeholders import PlaceholderGenerator
from backend.services.response_cache import ResponseCache

NOW = dt.datetime(2026, 1, 1, 12, 0, tzinfo=dt.UTC)


class FakeClient:
    """Serves canned API-Sports payloads keyed by (sport, endpoint, entity param)."""

    def __init__(self, responses: dict[tuple[str, str, str], object]) -> None:
        self.responses = responses
        self.calls: list[tuple[str, str, dict]] = []

    def fetch(self, sport: str, endpoint: str, params: dict) -> dict:
        self.calls.append((sport, endpoint, params))
        entity = params.get("team") or params.get("league") or ""
        result = self.responses.get((sport, endpoint, entity), {"errors": [], "response": []})
        if isinstance(result, Exception):
            raise result
        return result


def _item(fixture_id: int, start: str, status: str = "NS", round_label: str = "Regular Season - 20", league_id: int = 39, season: int = 2025, home: str | None = "Team T", away: str | None = "Rivals FC") -> dict:
    return {
        "fixture": {"id": fixture_id, "date": start, "status": {"short": status}, "venue": {"name": "Home Ground"}},
        "league": {"id": league_id, "name": "Premier League", "season": season, "round": round_label},
        "teams": {
            "home": {"id": 1 if home else None, "name": home or "TBD"},
            "away": {"id": 2 if away else None, "name": away or "TBD"},
        },
        "goals": {"home": None, "away": None},
    }


def _payload(*items: dict) -> dict:
    return {"errors": [], "results": len(items), "response": list(items)}


def _service(
    tmp_path: Path,
    client: FakeClient,
    placeholders: PlaceholderGenerator | None = None,
    **settings_overrides,  # noqa: ANN003
) -> FixtureSyncService:
    settings = Settings(
        api_cache_db_path=str(tmp_path / "api_cache.db"),
        fixtures_db_path=str(tmp_path / "fixtures.db"),
        **settings_overrides,
    )
    clock = lambda: NOW  # noqa: E731
    cache = ResponseCache(client, PersistentStore(settings.api_cache_db_path), now_fn=clock)
    store = FixtureStore(settings.fixtures_db_path)
    return FixtureSyncService(cache, store, settings, placeholders=placeholders, now_fn=clock)


def test_new_fixture_then_second_run_is_served_from_cache(tmp_path: Path) -> None:
    client = FakeClient(
        {("football", "fixtures", "T"): _payload(_item(100, "2026-01-03T12:00:00+00:00"))}
    )
    service = _service(tmp_path, client)
    entities = [SyncEntity("team", "T", "football")]

    first = service.sync(entities)
    second = service.sync(entities)

    assert (first.synced, first.new, first.updated, first.errors) == (1, 1, 0, [])
    assert (second.synced, second.new, second.updated) == (0, 0, 0)
    assert len(client.calls) == 1

    sport, endpoint, params = client.calls[0]
    assert (sport, endpoint) == ("football", "fixtures")
    assert params == {"team": "T", "season": "2025", "from": "2025-12-25", "to": "2027-01-01"}

    stored = service.store.get_fixture("football", "100")
    assert stored is not None
    assert stored.fetched_at == NOW
    assert stored.ttl_seconds == 3600


def test_reschedule_is_logged_with_exact_times(tmp_path: Path) -> None:
    client = FakeClient(
        {("football", "fixtures", "T"): _payload(_item(200, "2026-01-10T19:00:00Z"))}
    )
    service = _service(tmp_path, client)
    service.store.upsert_fixtures(
        [
            CanonicalFixture(
                sport="football",
                fixture_id="200",
                start_time=dt.datetime(2026, 1, 10, 18, 0, tzinfo=dt.UTC),
                status="NS",
                fetched_at=NOW - dt.timedelta(days=1),
                ttl_seconds=21600,
            )
        ]
    )

    summary = service.sync([SyncEntity("team", "T", "football")])
    changes = service.store.recent_changes()

    assert (summary.new, summary.updated, summary.changes) == (0, 1, 1)
    assert len(changes) == 1
    assert changes[0]["change_type"] == "reschedule"
    assert changes[0]["old_value"]["start_time"] == "2026-01-10T18:00:00+00:00"
    assert changes[0]["new_value"]["start_time"] == "2026-01-10T19:00:00+00:00"
    assert service.store.get_fixture("football", "200").start_time == dt.datetime(
        2026, 1, 10, 19, 0, tzinfo=dt.UTC
    )


def test_fresh_baseline_rows_are_not_rewritten(tmp_path: Path) -> None:
    client = FakeClient(
        {("football", "fixtures", "T"): _payload(_item(300, "2026-01-10T19:00:00Z"))}
    )
    service = _service(tmp_path, client)
    service.store.upsert_fixtures(
        [
            CanonicalFixture(
                sport="football",
                fixture_id="300",
                start_time=dt.datetime(2026, 1, 10, 18, 0, tzinfo=dt.UTC),
                fetched_at=NOW - dt.timedelta(minutes=10),
                ttl_seconds=21600,
            )
        ]
    )

    summary = service.sync([SyncEntity("team", "T", "football")])

    assert (summary.synced, summary.updated, summary.changes) == (0, 0, 0)
    assert service.store.recent_changes() == []


def test_entity_failures_are_isolated(tmp_path: Path) -> None:
    client = FakeClient(
        {
            ("football", "fixtures", "bad"): UpstreamUnavailableError("read timed out"),
            ("football", "fixtures", "39"): _payload(
                _item(1, "2026-01-02T15:00:00Z"), _item(2, "2026-02-02T15:00:00Z")
            ),
        }
    )
    service = _service(tmp_path, client)

    summary = service.sync(
        [
            SyncEntity("team", "bad", "football"),
            SyncEntity("league", "39", "football"),
            SyncEntity("player", "276", "football"),
            SyncEntity("sport", "football", "football"),
        ]
    )

    assert summary.new == 2
    assert summary.errors == ["football/team/bad: read timed out"]
    assert len(client.calls) == 2


def test_fixture_shared_by_team_and_league_is_counted_once(tmp_path: Path) -> None:
    shared = _payload(_item(7, "2026-01-05T15:00:00Z"))
    client = FakeClient(
        {("football", "fixtures", "T"): shared, ("football", "fixtures", "39"): shared}
    )
    service = _service(tmp_path, client)

    summary = service.sync(
        [SyncEntity("team", "T", "football"), SyncEntity("league", "39", "football")]
    )

    assert (summary.synced, summary.new) == (1, 1)
    assert service.store.count_fixtures() == 1


def test_out_of_window_fixtures_are_dropped(tmp_path: Path) -> None:
    client = FakeClient(
        {
            ("basketball", "games", "12"): {
                "errors": [],
                "response": [
                    {"id": 1, "date": "2025-11-01T00:30:00+00:00", "league": {"id": 12}, "teams": {}},
                    {"id": 2, "date": "2026-01-02T00:30:00+00:00", "league": {"id": 12}, "teams": {}},
                ],
            }
        }
    )
    service = _service(tmp_path, client)

    summary = service.sync([SyncEntity("league", "12", "basketball")])

    assert summary.new == 1
    assert client.calls[0][1:] == ("games", {"league": "12", "season": "2025-2026"})
    assert service.store.get_fixture("basketball", "1") is None


def test_upserts_are_chunked_and_failures_recorded(tmp_path: Path, monkeypatch) -> None:
    items = [_item(1000 + index, "2026-01-05T15:00:00Z") for index in range(5)]
    client = FakeClient({("football", "fixtures", "39"): _payload(*items)})
    service = _service(tmp_path, client, upsert_chunk_size=2)

    chunks: list[int] = []
    original = service.store.upsert_fixtures

    def flaky_upsert(fixtures):  # noqa: ANN001, ANN202
        chunks.append(len(fixtures))
        if len(chunks) == 2:
            raise sqlite3.OperationalError("database is locked")
        return original(fixtures)

    monkeypatch.setattr(service.store, "upsert_fixtures", flaky_upsert)

    summary = service.sync([SyncEntity("league", "39", "football")])

    assert chunks == [2, 2, 1]
    assert summary.errors == ["Upsert error: database is locked"]
    assert service.store.count_fixtures() == 3


def test_placeholders_are_added_and_superseded_slots_retired(tmp_path: Path) -> None:
    final = _item(
        1489999,
        "2026-07-19T19:00:00+00:00",
        round_label="Final",
        league_id=1,
        season=2026,
        home="Spain",
        away="Brazil",
    )
    client = FakeClient({("football", "fixtures", "1"): _payload(final)})
    service = _service(tmp_path, client, placeholders=PlaceholderGenerator())
    service.store.upsert_fixtures(
        [
            CanonicalFixture(
                sport="football",
                fixture_id="ph_wc2026_final",
                start_time=dt.datetime(2026, 7, 19, 22, 0, tzinfo=dt.UTC),
                league_id="1",
                season="2026",
                round="Final",
                fetched_at=NOW - dt.timedelta(days=2),
                ttl_seconds=21600,
            )
        ]
    )

    summary = service.sync([SyncEntity("league", "1", "football", season="2026")])

    assert summary.errors == []
    assert summary.placeholders == 31
    assert summary.retired == 1
    assert service.store.get_fixture("football", "ph_wc2026_final") is None
    assert service.store.get_fixture("football", "1489999") is not None
    third_place = service.store.get_fixture("football", "ph_wc2026_3rd")
    assert third_place is not None
    assert third_place.ttl_seconds == 21600
    assert third_place.home is None and third_place.away is None


def test_no_entities_is_a_noop(tmp_path: Path) -> None:
    client = FakeClient({})
    summary = _service(tmp_path, client).sync([SyncEntity("player", "276", "football")])
    assert summary.to_dict() == {
        "synced": 0,
        "new": 0,
        "updated": 0,
        "changes": 0,
        "placeholders": 0,
        "retired": 0,
        "errors": [],
    }
    assert client.calls == []


def test_ttl_rules() -> None:
    for start in (NOW - dt.timedelta(days=3650), NOW + dt.timedelta(seconds=5), NOW):
        assert compute_ttl(start, "FT", NOW) == 86400
    assert compute_ttl(NOW - dt.timedelta(minutes=30), "2H", NOW) == 3600
    assert compute_ttl(NOW + dt.timedelta(hours=3), "NS", NOW) == 300
    assert compute_ttl(NOW + dt.timedelta(days=3), "NS", NOW) == 3600
    assert compute_ttl(NOW + dt.timedelta(days=30), "NS", NOW) == 21600


def test_sync_window_bounds() -> None:
    window = SyncWindow.around(NOW, past_days=7, future_days=365)
    assert window.contains(NOW - dt.timedelta(days=7))
    assert not window.contains(NOW - dt.timedelta(days=7, seconds=1))
    assert window.contains(NOW + dt.timedelta(days=365))


def test_sync_logs_formatted_summary(tmp_path: Path) -> None:
    client = FakeClient(
        {("football", "fixtures", "T"): _payload(_item(500, "2026-01-04T15:00:00Z"))}
    )
    service = _service(tmp_path, client)
    messages: list[str] = []
    sink_id = logger.add(messages.append, format="{message}", level="INFO")
    try:
        service.sync([SyncEntity("team", "T", "football")])
    finally:
        logger.remove(sink_id)

    assert any(
        "Fixture sync finished: synced=1 new=1 updated=0 changes=0 placeholders=0 retired=0 errors=0"
        in message
        for message in messages
    )
