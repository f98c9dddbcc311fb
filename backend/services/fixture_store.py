from __future__ import annotations

import datetime as dt
import json
import os
import sqlite3
import threading
from collections.abc import Iterable, Sequence
from typing import Any

try:
    from backend.services.models import (
        CanonicalFixture,
        ChangeRecord,
        Follow,
        to_iso,
        utc_now,
    )
except ModuleNotFoundError:
    from services.models import CanonicalFixture, ChangeRecord, Follow, to_iso, utc_now

FIXTURE_COLUMNS = (
    "sport",
    "fixture_id",
    "league_id",
    "league_name",
    "league_logo",
    "season",
    "home_team_id",
    "home_team_name",
    "home_team_logo",
    "away_team_id",
    "away_team_name",
    "away_team_logo",
    "start_time",
    "end_time",
    "status",
    "venue",
    "round",
    "home_score",
    "away_score",
    "player_ids",
    "raw_data",
    "fetched_at",
    "ttl_seconds",
)
JSON_COLUMNS = frozenset({"player_ids", "raw_data"})

_SELECT_FIXTURES = f"SELECT {', '.join(FIXTURE_COLUMNS)} FROM cached_fixtures"
_PLAYER_MATCH = (
    "EXISTS (SELECT 1 FROM json_each(cached_fixtures.player_ids) WHERE json_each.value = ?)"
)


class FixtureStore:
    """Normalized fixtures plus the append-only change log."""

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._lock = threading.Lock()
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        db_dir = os.path.dirname(self.db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        conn = self._connect()
        try:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS cached_fixtures (
                    sport TEXT NOT NULL,
                    fixture_id TEXT NOT NULL,
                    league_id TEXT,
                    league_name TEXT,
                    league_logo TEXT,
                    season TEXT,
                    home_team_id TEXT,
                    home_team_name TEXT,
                    home_team_logo TEXT,
                    away_team_id TEXT,
                    away_team_name TEXT,
                    away_team_logo TEXT,
                    start_time TEXT NOT NULL,
                    end_time TEXT,
                    status TEXT NOT NULL DEFAULT 'NS',
                    venue TEXT,
                    round TEXT,
                    home_score INTEGER,
                    away_score INTEGER,
                    player_ids TEXT NOT NULL DEFAULT '[]',
                    raw_data TEXT NOT NULL DEFAULT '{}',
                    fetched_at TEXT,
                    ttl_seconds INTEGER,
                    PRIMARY KEY (sport, fixture_id)
                );
                CREATE INDEX IF NOT EXISTS idx_cached_fixtures_start
                    ON cached_fixtures (start_time);

                CREATE TABLE IF NOT EXISTS fixture_changes (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    sport TEXT NOT NULL,
                    fixture_id TEXT NOT NULL,
                    change_type TEXT NOT NULL,
                    old_value TEXT NOT NULL,
                    new_value TEXT NOT NULL,
                    detected_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_fixture_changes_detected
                    ON fixture_changes (detected_at);
                """
            )
            conn.commit()
        finally:
            conn.close()

    def _query(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        with self._lock:
            conn = self._connect()
            try:
                return conn.execute(sql, tuple(params)).fetchall()
            finally:
                conn.close()

    @staticmethod
    def _to_fixture(row: sqlite3.Row) -> CanonicalFixture:
        return CanonicalFixture.from_row(dict(row))

    @staticmethod
    def _row_values(fixture: CanonicalFixture) -> tuple[Any, ...]:
        row = fixture.to_row()
        return tuple(
            json.dumps(row[column], ensure_ascii=False) if column in JSON_COLUMNS else row[column]
            for column in FIXTURE_COLUMNS
        )

    def upsert_fixtures(self, fixtures: Sequence[CanonicalFixture]) -> int:
        """Write one batch in a single transaction; whole rows are replaced.

        Raises ``sqlite3.Error`` when the batch is rejected; nothing in the
        batch is committed in that case.
        """
        if not fixtures:
            return 0

        placeholders = ", ".join("?" for _ in FIXTURE_COLUMNS)
        updates = ", ".join(
            f"{column}=excluded.{column}"
            for column in FIXTURE_COLUMNS
            if column not in {"sport", "fixture_id"}
        )
        sql = (
            f"INSERT INTO cached_fixtures ({', '.join(FIXTURE_COLUMNS)}) VALUES ({placeholders}) "
            f"ON CONFLICT(sport, fixture_id) DO UPDATE SET {updates}"
        )
        values = [self._row_values(fixture) for fixture in fixtures]

        with self._lock:
            conn = self._connect()
            try:
                with conn:
                    conn.executemany(sql, values)
            finally:
                conn.close()
        return len(values)

    def get_fixture(self, sport: str, fixture_id: str) -> CanonicalFixture | None:
        rows = self._query(
            f"{_SELECT_FIXTURES} WHERE sport = ? AND fixture_id = ?",
            (sport, fixture_id),
        )
        return self._to_fixture(rows[0]) if rows else None

    def fixtures_between(self, start: dt.datetime, end: dt.datetime) -> list[CanonicalFixture]:
        rows = self._query(
            f"{_SELECT_FIXTURES} WHERE start_time >= ? AND start_time <= ? ORDER BY start_time ASC",
            (to_iso(start), to_iso(end)),
        )
        return [self._to_fixture(row) for row in rows]

    def delete_fixtures(self, keys: Iterable[tuple[str, str]]) -> int:
        pairs = list(keys)
        if not pairs:
            return 0
        with self._lock:
            conn = self._connect()
            try:
                with conn:
                    cursor = conn.executemany(
                        "DELETE FROM cached_fixtures WHERE sport = ? AND fixture_id = ?",
                        pairs,
                    )
                return int(cursor.rowcount or 0)
            finally:
                conn.close()

    def count_fixtures(self) -> int:
        rows = self._query("SELECT COUNT(*) FROM cached_fixtures")
        return int(rows[0][0]) if rows else 0

    def fixtures_for_follows(
        self,
        follows: Iterable[Follow],
        start: dt.datetime | None = None,
        end: dt.datetime | None = None,
    ) -> list[CanonicalFixture]:
        """Fixtures matching any follow, each match scoped to the follow's sport."""
        conditions: list[str] = []
        params: list[Any] = []
        for follow in follows:
            if follow.entity_type == "league":
                conditions.append("(sport = ? AND league_id = ?)")
                params.extend([follow.sport, follow.entity_id])
            elif follow.entity_type == "team":
                conditions.append("(sport = ? AND (home_team_id = ? OR away_team_id = ?))")
                params.extend([follow.sport, follow.entity_id, follow.entity_id])
            elif follow.entity_type == "player":
                conditions.append(f"(sport = ? AND {_PLAYER_MATCH})")
                params.extend([follow.sport, follow.entity_id])
            elif follow.entity_type == "sport":
                conditions.append("(sport = ?)")
                params.append(follow.entity_id or follow.sport)

        if not conditions:
            return []

        where = [f"({' OR '.join(conditions)})"]
        where, params = self._with_window(where, params, start, end)
        rows = self._query(
            f"{_SELECT_FIXTURES} WHERE {' AND '.join(where)} ORDER BY start_time ASC",
            params,
        )
        return [self._to_fixture(row) for row in rows]

    def fixtures_with_players(
        self,
        player_ids: Iterable[str],
        start: dt.datetime | None = None,
        end: dt.datetime | None = None,
    ) -> list[CanonicalFixture]:
        ids = [str(item) for item in player_ids if str(item)]
        if not ids:
            return []
        marks = ", ".join("?" for _ in ids)
        where = [
            "EXISTS (SELECT 1 FROM json_each(cached_fixtures.player_ids) "
            f"WHERE json_each.value IN ({marks}))"
        ]
        where, params = self._with_window(where, list(ids), start, end)
        rows = self._query(
            f"{_SELECT_FIXTURES} WHERE {' AND '.join(where)} ORDER BY start_time ASC",
            params,
        )
        return [self._to_fixture(row) for row in rows]

    @staticmethod
    def _with_window(
        where: list[str],
        params: list[Any],
        start: dt.datetime | None,
        end: dt.datetime | None,
    ) -> tuple[list[str], list[Any]]:
        if start is not None:
            where.append("start_time >= ?")
            params.append(to_iso(start))
        if end is not None:
            where.append("start_time <= ?")
            params.append(to_iso(end))
        return where, params

    def append_changes(self, records: Sequence[ChangeRecord]) -> int:
        if not records:
            return 0
        now = utc_now()
        values = [
            (
                record.sport,
                record.fixture_id,
                record.change_type,
                json.dumps(record.old_value, ensure_ascii=False),
                json.dumps(record.new_value, ensure_ascii=False),
                to_iso(record.detected_at or now),
            )
            for record in records
        ]
        with self._lock:
            conn = self._connect()
            try:
                with conn:
                    conn.executemany(
                        """
                        INSERT INTO fixture_changes
                            (sport, fixture_id, change_type, old_value, new_value, detected_at)
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        values,
                    )
            finally:
                conn.close()
        return len(values)

    def recent_changes(self, limit: int = 20) -> list[dict[str, Any]]:
        rows = self._query(
            """
            SELECT id, sport, fixture_id, change_type, old_value, new_value, detected_at
            FROM fixture_changes
            ORDER BY detected_at DESC, id DESC
            LIMIT ?
            """,
            (max(1, int(limit)),),
        )
        changes: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["old_value"] = json.loads(item["old_value"] or "{}")
            item["new_value"] = json.loads(item["new_value"] or "{}")
            changes.append(item)
        return changes
