from __future__ import annotations

import datetime as dt
import sqlite3
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Any

from loguru import logger

try:
    from backend.config import Settings
    from backend.services.change_detector import detect
    from backend.services.fixture_store import FixtureStore
    from backend.services.models import (
        FINISHED_STATUSES,
        CanonicalFixture,
        ChangeRecord,
        Sport,
        SyncEntity,
        utc_now,
    )
    from backend.services.normalizer import normalize_many, season_for
    from backend.services.placeholders import (
        PLACEHOLDER_TTL_SECONDS,
        PlaceholderGenerator,
        reconcile_placeholders,
    )
    from backend.services.response_cache import ResponseCache
except ModuleNotFoundError:
    from config import Settings
    from services.change_detector import detect
    from services.fixture_store import FixtureStore
    from services.models import (
        FINISHED_STATUSES,
        CanonicalFixture,
        ChangeRecord,
        Sport,
        SyncEntity,
        utc_now,
    )
    from services.normalizer import normalize_many, season_for
    from services.placeholders import (
        PLACEHOLDER_TTL_SECONDS,
        PlaceholderGenerator,
        reconcile_placeholders,
    )
    from services.response_cache import ResponseCache

FINISHED_TTL_SECONDS = 86400
PAST_UNFINISHED_TTL_SECONDS = 3600
SAME_DAY_TTL_SECONDS = 300
SAME_WEEK_TTL_SECONDS = 3600
FAR_FUTURE_TTL_SECONDS = 21600

FETCHED_ENTITY_TYPES = frozenset({"league", "team"})


def compute_ttl(start_time: dt.datetime, status: str, now: dt.datetime) -> int:
    if status in FINISHED_STATUSES:
        return FINISHED_TTL_SECONDS
    days_until = (start_time - now).total_seconds() / 86400
    if days_until < 0:
        # Started but not finished: live, or waiting on a late status update.
        return PAST_UNFINISHED_TTL_SECONDS
    if days_until < 1:
        return SAME_DAY_TTL_SECONDS
    if days_until < 7:
        return SAME_WEEK_TTL_SECONDS
    return FAR_FUTURE_TTL_SECONDS


@dataclass(frozen=True)
class SyncWindow:
    start: dt.datetime
    end: dt.datetime

    @classmethod
    def around(cls, now: dt.datetime, past_days: int, future_days: int) -> SyncWindow:
        return cls(
            start=now - dt.timedelta(days=past_days),
            end=now + dt.timedelta(days=future_days),
        )

    def contains(self, moment: dt.datetime) -> bool:
        return self.start <= moment <= self.end


@dataclass
class SyncSummary:
    synced: int = 0
    new: int = 0
    updated: int = 0
    changes: int = 0
    placeholders: int = 0
    retired: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "synced": self.synced,
            "new": self.new,
            "updated": self.updated,
            "changes": self.changes,
            "placeholders": self.placeholders,
            "retired": self.retired,
            "errors": list(self.errors),
        }


@dataclass
class EntityFetch:
    fixtures: list[CanonicalFixture]
    placeholders: list[CanonicalFixture] = field(default_factory=list)


class FixtureSyncService:
    """Pull fixtures for followed entities into the fixture store.

    Upstream calls fan out over a small thread pool. Results are compared and
    staged in the calling thread in entity order, so each fixture's
    compare-then-write sequence stays serial.
    """

    def __init__(
        self,
        cache: ResponseCache,
        store: FixtureStore,
        settings: Settings,
        placeholders: PlaceholderGenerator | None = None,
        now_fn: Callable[[], dt.datetime] = utc_now,
    ) -> None:
        self.cache = cache
        self.store = store
        self.settings = settings
        self.placeholders = placeholders
        self.now_fn = now_fn

    def request_for(
        self, entity: SyncEntity, window: SyncWindow, now: dt.datetime
    ) -> tuple[str, dict[str, str]]:
        sport = Sport.parse(entity.sport)
        season = entity.season or season_for(sport, now.date())
        params = {entity.entity_type: entity.entity_id, "season": season}
        if sport is Sport.FOOTBALL:
            params["from"] = window.start.date().isoformat()
            params["to"] = window.end.date().isoformat()
            return "fixtures", params
        return "games", params

    def _fetch_entity(self, entity: SyncEntity, window: SyncWindow, now: dt.datetime) -> EntityFetch:
        endpoint, params = self.request_for(entity, window, now)
        payload = self.cache.get_or_fetch(entity.sport, endpoint, params)
        items = payload.get("response")
        fixtures = normalize_many(entity.sport, items if isinstance(items, list) else [])
        result = EntityFetch(
            fixtures=[fixture for fixture in fixtures if window.contains(fixture.start_time)]
        )

        if (
            self.placeholders is not None
            and self.settings.placeholders_enabled
            and entity.entity_type == "league"
            and Sport.parse(entity.sport) is Sport.FOOTBALL
        ):
            generated = self.placeholders.generate(entity.entity_id, params["season"])
            for error in generated.errors:
                logger.warning(f"Placeholder source failed for {entity.label}: {error}")
            result.placeholders = [
                fixture for fixture in generated.fixtures if window.contains(fixture.start_time)
            ]
        return result

    def sync(self, entities: Sequence[SyncEntity]) -> SyncSummary:
        summary = SyncSummary()
        fetchable = [entity for entity in entities if entity.entity_type in FETCHED_ENTITY_TYPES]
        if not fetchable:
            logger.info("Fixture sync: no fetchable followed entities.")
            return summary

        now = self.now_fn()
        window = SyncWindow.around(now, self.settings.sync_past_days, self.settings.sync_future_days)
        baseline = {fixture.key: fixture for fixture in self.store.fixtures_between(window.start, window.end)}

        queued: dict[tuple[str, str], CanonicalFixture] = {}
        changes: list[ChangeRecord] = []
        generated_placeholders: dict[tuple[str, str], CanonicalFixture] = {}

        workers = max(1, min(self.settings.sync_max_workers, len(fetchable)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="fixture-sync") as pool:
            futures = [
                (entity, pool.submit(self._fetch_entity, entity, window, now))
                for entity in fetchable
            ]
            for entity, future in futures:
                try:
                    fetched = future.result()
                except Exception as exc:
                    logger.warning(f"Fixture sync failed for {entity.label}: {exc}")
                    summary.errors.append(f"{entity.label}: {exc}")
                    continue

                for fixture in fetched.fixtures:
                    self._stage(fixture, baseline, queued, changes, summary, now)
                for placeholder in fetched.placeholders:
                    generated_placeholders.setdefault(placeholder.key, placeholder)

        retired_keys = self._reconcile(baseline, queued, generated_placeholders)
        for key, placeholder in generated_placeholders.items():
            if key in retired_keys:
                continue
            if self._stage(
                placeholder, baseline, queued, changes, summary, now, ttl=PLACEHOLDER_TTL_SECONDS
            ):
                summary.placeholders += 1

        self._write(list(queued.values()), changes, retired_keys, summary)
        logger.info(
            f"Fixture sync finished: synced={summary.synced} new={summary.new} "
            f"updated={summary.updated} changes={summary.changes} "
            f"placeholders={summary.placeholders} retired={summary.retired} "
            f"errors={len(summary.errors)}"
        )
        return summary

    def _stage(
        self,
        fixture: CanonicalFixture,
        baseline: dict[tuple[str, str], CanonicalFixture],
        queued: dict[tuple[str, str], CanonicalFixture],
        changes: list[ChangeRecord],
        summary: SyncSummary,
        now: dt.datetime,
        ttl: int | None = None,
    ) -> bool:
        # Two followed entities (a team and its league) often return the same fixture.
        if fixture.key in queued:
            return False

        previous = baseline.get(fixture.key)
        if previous is not None and not previous.is_stale(now):
            return False

        if previous is not None:
            change = detect(previous, fixture, detected_at=now)
            if change is not None:
                changes.append(change)
                summary.changes += 1
            summary.updated += 1
        else:
            summary.new += 1

        queued[fixture.key] = replace(
            fixture,
            fetched_at=now,
            ttl_seconds=ttl if ttl is not None else compute_ttl(fixture.start_time, fixture.status, now),
        )
        summary.synced += 1
        return True

    @staticmethod
    def _reconcile(
        baseline: dict[tuple[str, str], CanonicalFixture],
        queued: dict[tuple[str, str], CanonicalFixture],
        generated: dict[tuple[str, str], CanonicalFixture],
    ) -> set[tuple[str, str]]:
        real = {key: fixture for key, fixture in baseline.items() if not fixture.is_placeholder}
        real.update({key: fixture for key, fixture in queued.items() if not fixture.is_placeholder})

        candidates = {key: fixture for key, fixture in baseline.items() if fixture.is_placeholder}
        candidates.update(generated)

        retired = reconcile_placeholders(candidates.values(), real.values())
        return {fixture.key for fixture in retired}

    def _write(
        self,
        fixtures: list[CanonicalFixture],
        changes: list[ChangeRecord],
        retired_keys: set[tuple[str, str]],
        summary: SyncSummary,
    ) -> None:
        chunk_size = max(1, self.settings.upsert_chunk_size)
        for offset in range(0, len(fixtures), chunk_size):
            chunk = fixtures[offset : offset + chunk_size]
            try:
                self.store.upsert_fixtures(chunk)
            except sqlite3.Error as exc:
                logger.error(f"Fixture upsert failed for {len(chunk)} row(s): {exc}")
                summary.errors.append(f"Upsert error: {exc}")

        if retired_keys:
            try:
                summary.retired = self.store.delete_fixtures(sorted(retired_keys))
            except sqlite3.Error as exc:
                logger.error(f"Placeholder cleanup failed: {exc}")
                summary.errors.append(f"Placeholder cleanup error: {exc}")

        if changes:
            try:
                self.store.append_changes(changes)
            except sqlite3.Error as exc:
                logger.error(f"Change log insert failed: {exc}")
                summary.errors.append(f"Change log error: {exc}")
