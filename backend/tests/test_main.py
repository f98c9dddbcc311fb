from __future__ import annotations

import datetime as dt
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from backend.config import Settings
from backend.main import create_app
from backend.services.container import build_services
from backend.services.errors import UpstreamUnavailableError
from backend.services.models import CanonicalFixture, ChangeRecord, Participant, utc_now


class FakeClient:
    def __init__(self, payload: object) -> None:
        self.payload = payload
        self.calls = 0

    def fetch(self, sport: str, endpoint: str, params: dict) -> dict:
        self.calls += 1
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload


@pytest.fixture
def services(tmp_path: Path):  # noqa: ANN201
    settings = Settings(
        cron_secret="s3cret",
        api_cache_db_path=str(tmp_path / "api_cache.db"),
        fixtures_db_path=str(tmp_path / "fixtures.db"),
    )
    return build_services(settings)


@pytest.fixture
def client(services) -> TestClient:  # noqa: ANN001
    return TestClient(create_app(services=services))


def _fixture(fixture_id: str, days: int, **overrides) -> CanonicalFixture:  # noqa: ANN003
    values = {
        "sport": "football",
        "fixture_id": fixture_id,
        "start_time": utc_now().replace(microsecond=0) + dt.timedelta(days=days),
        "league_id": "39",
        "league_name": "Premier League",
        "home": Participant(id="33", name="Manchester United"),
        "away": Participant(id="42", name="Arsenal"),
        "fetched_at": utc_now(),
        "ttl_seconds": 3600,
    }
    values.update(overrides)
    return CanonicalFixture(**values)


def test_health_probes(client: TestClient) -> None:
    assert client.get("/healthz").json() == {"status": "ok"}
    ready = client.get("/readyz").json()
    assert ready["cache_backend"] == "file"
    assert ready["sync_secret_configured"] is True
    assert ready["api_key_configured"] is False


def test_sync_requires_secret_or_session(client: TestClient, services) -> None:  # noqa: ANN001
    services.cache.client = FakeClient({"errors": [], "response": []})

    assert client.post("/api/sync/fixtures").status_code == 401
    assert client.post("/api/sync/fixtures", headers={"x-cron-secret": "wrong"}).status_code == 401

    services.follows.add_follow("user-a", "team", "33", "football")
    by_secret = client.post("/api/sync/fixtures", headers={"x-cron-secret": "s3cret"})
    by_session = client.post("/api/sync/fixtures", headers={"x-user-id": "user-a"})

    assert by_secret.status_code == 200
    assert by_secret.json() == {
        "synced": 0,
        "new": 0,
        "updated": 0,
        "changes": 0,
        "placeholders": 0,
        "retired": 0,
        "errors": [],
    }
    assert by_session.status_code == 200
    assert services.cache.client.calls == 1


def test_sync_status_lists_recent_changes(client: TestClient, services) -> None:  # noqa: ANN001
    services.fixtures.upsert_fixtures([_fixture("1", days=1)])
    services.fixtures.append_changes(
        [ChangeRecord("football", "1", "postpone", {"status": "NS"}, {"status": "PST"})]
    )

    assert client.get("/api/sync/fixtures").status_code == 401
    body = client.get("/api/sync/fixtures", headers={"x-user-id": "user-a"}).json()

    assert body["cached_count"] == 1
    assert body["changes"][0]["change_type"] == "postpone"
    assert body["changes"][0]["new_value"] == {"status": "PST"}


def test_events_require_session_and_follow_matches(client: TestClient, services) -> None:  # noqa: ANN001
    services.fixtures.upsert_fixtures(
        [_fixture("1", days=200), _fixture("2", days=1, league_id="140", home=None, away=None)]
    )
    services.follows.add_follow("user-a", "team", "33", "football")

    assert client.get("/api/calendar/events").status_code == 401
    assert client.get("/api/calendar/events", headers={"x-user-id": "nobody"}).json() == []

    events = client.get("/api/calendar/events", headers={"x-user-id": "user-a"}).json()
    assert [row["fixture_id"] for row in events] == ["1"]
    assert events[0]["event"]["title"] == "Manchester United vs Arsenal"


def test_unknown_calendar_token_is_404(client: TestClient) -> None:
    response = client.get("/api/calendar/not-a-token.ics")
    assert response.status_code == 404
    assert response.text == "Calendar not found"


def test_calendar_feed_for_user_without_follows_is_empty(client: TestClient, services) -> None:  # noqa: ANN001
    token = services.follows.create_token("user-a")

    response = client.get(f"/api/calendar/{token}.ics")

    assert response.status_code == 200
    assert response.headers["content-type"] == "text/calendar; charset=utf-8"
    assert response.headers["cache-control"] == "no-cache, no-store, must-revalidate"
    assert response.headers["pragma"] == "no-cache"
    assert "content-disposition" not in response.headers
    assert response.text.startswith("BEGIN:VCALENDAR\r\n")
    assert response.text.endswith("END:VCALENDAR\r\n")
    assert "BEGIN:VEVENT" not in response.text

    download = client.get(f"/api/calendar/{token}", params={"download": "1"})
    assert download.headers["content-disposition"] == 'attachment; filename="sportcal.ics"'


def test_calendar_feed_merges_entity_and_player_matches(client: TestClient, services) -> None:  # noqa: ANN001
    services.fixtures.upsert_fixtures(
        [
            _fixture("1", days=2),
            _fixture("2", days=3, sport="tennis", home=None, away=None, player_ids=["7"]),
            _fixture("3", days=200),
            _fixture("4", days=-60),
        ]
    )
    services.follows.add_follow("user-a", "league", "39", "football")
    services.follows.add_follow("user-a", "team", "33", "football")
    services.follows.add_follow("user-a", "player", "7", "tennis")
    token = services.follows.create_token("user-a")

    body = client.get(f"/api/calendar/{token}").text

    assert body.count("BEGIN:VEVENT") == 2
    assert "UID:football-1@sportcal" in body
    assert "UID:tennis-2@sportcal" in body


def test_sports_proxy_reports_cache_source(client: TestClient, services) -> None:  # noqa: ANN001
    services.cache.client = FakeClient({"errors": [], "response": [{"league": {"id": 39}}]})

    first = client.get("/api/sports/football/leagues", params={"id": "39"})
    second = client.get("/api/sports/football/leagues", params={"id": "39"})

    assert first.status_code == 200
    assert first.headers["x-cache"] == "live"
    assert second.headers["x-cache"] == "fresh"
    assert second.json()["response"] == [{"league": {"id": 39}}]
    assert services.cache.client.calls == 1


def test_sports_proxy_error_mapping(client: TestClient, services) -> None:  # noqa: ANN001
    assert client.get("/api/sports/cricket/fixtures").status_code == 400

    services.cache.client = FakeClient({"errors": {"requests": "You have reached the request limit for the day"}})
    assert client.get("/api/sports/football/fixtures", params={"league": "39"}).status_code == 429

    services.cache.client = FakeClient(UpstreamUnavailableError("connection refused"))
    assert client.get("/api/sports/football/teams", params={"id": "33"}).status_code == 502


def test_gateway_secret_gates_session_header(tmp_path: Path) -> None:
    settings = Settings(
        cron_secret="s3cret",
        session_gateway_secret="gw-secret",
        api_cache_db_path=str(tmp_path / "api_cache.db"),
        fixtures_db_path=str(tmp_path / "fixtures.db"),
    )
    gated = build_services(settings)
    gated.cache.client = FakeClient({"errors": [], "response": []})
    gated.follows.add_follow("user-a", "team", "33", "football")
    client = TestClient(create_app(services=gated))

    assert client.post("/api/sync/fixtures", headers={"x-user-id": "user-a"}).status_code == 401
    assert client.get("/api/calendar/events", headers={"x-user-id": "user-a"}).status_code == 401
    assert (
        client.post(
            "/api/sync/fixtures",
            headers={"x-user-id": "user-a", "x-gateway-secret": "wrong"},
        ).status_code
        == 401
    )
    assert gated.cache.client.calls == 0

    trusted = {"x-user-id": "user-a", "x-gateway-secret": "gw-secret"}
    assert client.post("/api/sync/fixtures", headers=trusted).status_code == 200
    assert client.get("/api/calendar/events", headers=trusted).status_code == 200
    assert client.get("/readyz").json()["session_gateway_secret_configured"] is True
