from __future__ import annotations

import datetime as dt
import hmac
from typing import Any

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from loguru import logger
from pydantic import BaseModel, Field

try:
    from backend.config import Settings
    from backend.services.calendar_ics import fixture_to_event, render
    from backend.services.container import Services, build_services
    from backend.services.errors import UnknownSportError, UpstreamError
    from backend.services.models import CanonicalFixture, utc_now
except ModuleNotFoundError:
    from config import Settings
    from services.calendar_ics import fixture_to_event, render
    from services.container import Services, build_services
    from services.errors import UnknownSportError, UpstreamError
    from services.models import CanonicalFixture, utc_now

ICS_FILENAME = "sportcal.ics"
RECENT_CHANGES_LIMIT = 20
CRON_SECRET_HEADER = "x-cron-secret"
GATEWAY_SECRET_HEADER = "x-gateway-secret"
NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
}


class SyncSummaryResponse(BaseModel):
    synced: int = 0
    new: int = 0
    updated: int = 0
    changes: int = 0
    placeholders: int = 0
    retired: int = 0
    errors: list[str] = Field(default_factory=list)


class ChangeRecordResponse(BaseModel):
    id: int
    sport: str
    fixture_id: str
    change_type: str
    old_value: dict[str, Any] = Field(default_factory=dict)
    new_value: dict[str, Any] = Field(default_factory=dict)
    detected_at: str


class SyncStatusResponse(BaseModel):
    changes: list[ChangeRecordResponse]
    cached_count: int


def _secret_matches(provided: str, expected: str) -> bool:
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def _session_user(request: Request, settings: Settings) -> str | None:
    """User id asserted by the auth gateway in front of this app.

    The user header is trusted as-is unless SESSION_GATEWAY_SECRET is set, in
    which case the gateway must also send it in X-Gateway-Secret. Deployments
    reachable without the gateway must set the secret.
    """
    if settings.session_gateway_enabled and not _secret_matches(
        request.headers.get(GATEWAY_SECRET_HEADER, ""), settings.session_gateway_secret
    ):
        return None
    user_id = request.headers.get(settings.session_user_header, "").strip()
    return user_id or None


def _is_trusted_scheduler(request: Request, settings: Settings) -> bool:
    if not settings.sync_auth_enabled:
        return False
    return _secret_matches(request.headers.get(CRON_SECRET_HEADER, ""), settings.cron_secret)


def _dedupe_fixtures(fixtures: list[CanonicalFixture]) -> list[CanonicalFixture]:
    unique: dict[tuple[str, str], CanonicalFixture] = {}
    for fixture in fixtures:
        unique.setdefault(fixture.key, fixture)
    return sorted(unique.values(), key=lambda item: (item.start_time, item.sport, item.fixture_id))


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    settings = settings or (services.settings if services else Settings.from_env())
    services = services or build_services(settings)

    app = FastAPI(
        title="Sport Calendar API",
        version="1.0.0",
        description="Fixture sync, upstream cache proxy and calendar feeds for followed sports.",
    )
    app.state.services = services

    cors_origins = settings.cors_origins
    allow_credentials = "*" not in cors_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=allow_credentials,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.get("/healthz")
    async def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/readyz")
    def readyz() -> dict[str, Any]:
        return {
            "status": "ready",
            "api_key_configured": settings.api_key_configured,
            "football_data_configured": bool(settings.football_data_api_key),
            "sync_secret_configured": settings.sync_auth_enabled,
            "session_gateway_secret_configured": settings.session_gateway_enabled,
            "cache_backend": "postgres" if services.cache_store.use_postgres else "file",
            "cache_database_configured": bool(settings.cache_database_url),
            "cached_responses": services.cache_store.count_entries(),
            "cached_fixtures": services.fixtures.count_fixtures(),
        }

    # Registered before /api/calendar/{token} so "events" is never read as a token.
    @app.get("/api/calendar/events")
    def calendar_events(request: Request) -> list[dict[str, Any]]:
        user_id = _session_user(request, settings)
        if not user_id:
            raise HTTPException(status_code=401, detail="Unauthorized")

        follows = services.follows.follows_for_user(user_id)
        if not follows:
            return []

        fixtures = services.fixtures.fixtures_for_follows(follows)
        return [{**fixture.to_row(), "event": fixture_to_event(fixture)} for fixture in fixtures]

    @app.get("/api/calendar/{token}")
    def calendar_feed(
        token: str,
        download: bool = Query(default=False, description="Send as an attachment"),
    ) -> Response:
        # Calendar apps append .ics to subscription URLs.
        token_value = token.removesuffix(".ics")
        user_id = services.follows.resolve_token(token_value) if token_value else None
        if user_id is None:
            return Response("Calendar not found", status_code=404, media_type="text/plain")

        follows = services.follows.follows_for_user(user_id)
        fixtures: list[CanonicalFixture] = []
        if follows:
            now = utc_now()
            start = now - dt.timedelta(days=settings.calendar_past_days)
            end = now + dt.timedelta(days=settings.calendar_future_days)
            entity_follows = [follow for follow in follows if follow.entity_type != "player"]
            player_ids = [follow.entity_id for follow in follows if follow.entity_type == "player"]
            fixtures = services.fixtures.fixtures_for_follows(entity_follows, start, end)
            fixtures += services.fixtures.fixtures_with_players(player_ids, start, end)

        headers = dict(NO_CACHE_HEADERS)
        if download or follows:
            headers["Content-Disposition"] = f'attachment; filename="{ICS_FILENAME}"'

        body = render(_dedupe_fixtures(fixtures), settings.calendar_name)
        return Response(
            content=body,
            media_type="text/calendar; charset=utf-8",
            headers=headers,
        )

    @app.post("/api/sync/fixtures", response_model=SyncSummaryResponse)
    def run_fixture_sync(request: Request) -> SyncSummaryResponse:
        if not _is_trusted_scheduler(request, settings) and not _session_user(request, settings):
            raise HTTPException(status_code=401, detail="Unauthorized")

        entities = services.follows.distinct_entities()
        summary = services.sync.sync(entities)
        return SyncSummaryResponse(**summary.to_dict())

    @app.get("/api/sync/fixtures", response_model=SyncStatusResponse)
    def fixture_sync_status(request: Request) -> SyncStatusResponse:
        if not _session_user(request, settings):
            raise HTTPException(status_code=401, detail="Unauthorized")

        return SyncStatusResponse(
            changes=[
                ChangeRecordResponse(**change)
                for change in services.fixtures.recent_changes(RECENT_CHANGES_LIMIT)
            ],
            cached_count=services.fixtures.count_fixtures(),
        )

    @app.get("/api/sports/{sport}/{path:path}")
    def sports_proxy(sport: str, path: str, request: Request) -> JSONResponse:
        params = dict(request.query_params)
        try:
            cached = services.cache.lookup(sport, path, params)
        except UnknownSportError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except UpstreamError as exc:
            logger.warning(f"Upstream proxy failed for {sport}/{path}: {exc}")
            raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc

        return JSONResponse(content=cached.payload, headers={"X-Cache": cached.source})

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("backend.main:app", host="0.0.0.0", port=8000, reload=True)
