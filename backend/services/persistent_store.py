from __future__ import annotations

import datetime as dt
import json
import os
import sqlite3
import threading
from dataclasses import dataclass
from typing import Any

from loguru import logger

try:
    import psycopg
except Exception:  # pragma: no cover - optional dependency fallback
    psycopg = None

try:
    from backend.services.models import parse_iso_datetime, to_iso
except ModuleNotFoundError:
    from services.models import parse_iso_datetime, to_iso


def _normalize_database_url(url: str) -> str:
    value = str(url or "").strip()
    if value.startswith("postgres://"):
        return "postgresql://" + value[len("postgres://") :]
    return value


@dataclass(frozen=True)
class StoredResponse:
    payload: dict[str, Any]
    fetched_at: dt.datetime
    ttl_seconds: int

    def age_seconds(self, now: dt.datetime) -> float:
        return max(0.0, (now - self.fetched_at).total_seconds())

    def is_fresh(self, now: dt.datetime) -> bool:
        return self.age_seconds(now) < self.ttl_seconds


class PersistentStore:
    """Shared upstream-response cache persistence for SQLite or Postgres backends."""

    def __init__(self, sqlite_path: str, database_url: str | None = None) -> None:
        self.sqlite_path = sqlite_path
        self.database_url = _normalize_database_url(database_url or "")
        self.use_postgres = bool(self.database_url) and psycopg is not None
        self.table = "api_cache"
        self._lock = threading.Lock()

        if self.database_url and psycopg is None:
            logger.warning(
                "CACHE_DATABASE_URL is set but psycopg is unavailable. Falling back to SQLite cache."
            )

        if self.use_postgres:
            self._ensure_postgres_schema()
        if not self.use_postgres:
            self._ensure_sqlite_schema()

    def _ensure_postgres_schema(self) -> None:
        try:
            with psycopg.connect(self.database_url, autocommit=True) as conn:  # type: ignore[arg-type]
                with conn.cursor() as cur:
                    cur.execute(
                        f"""
                        CREATE TABLE IF NOT EXISTS {self.table} (
                            cache_key TEXT PRIMARY KEY,
                            sport TEXT NOT NULL,
                            endpoint TEXT NOT NULL,
                            params JSONB NOT NULL,
                            response JSONB NOT NULL,
                            fetched_at TIMESTAMPTZ NOT NULL,
                            ttl_seconds INTEGER NOT NULL
                        )
                        """
                    )
        except Exception as exc:
            logger.error(f"Failed to initialize Postgres cache schema: {exc}")
            self.use_postgres = False

    def _connect_sqlite(self) -> sqlite3.Connection:
        return sqlite3.connect(self.sqlite_path, check_same_thread=False)

    def _ensure_sqlite_schema(self) -> None:
        db_dir = os.path.dirname(self.sqlite_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        conn = self._connect_sqlite()
        try:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self.table} (
                    cache_key TEXT PRIMARY KEY,
                    sport TEXT NOT NULL,
                    endpoint TEXT NOT NULL,
                    params TEXT NOT NULL,
                    response TEXT NOT NULL,
                    fetched_at TEXT NOT NULL,
                    ttl_seconds INTEGER NOT NULL
                )
                """
            )
            conn.commit()
        finally:
            conn.close()

    def load_response(self, cache_key: str) -> StoredResponse | None:
        row = self._read_postgres(cache_key) if self.use_postgres else self._read_sqlite(cache_key)
        if not row:
            return None

        payload, fetched_at_raw, ttl_seconds = row
        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except json.JSONDecodeError:
                return None
        if not isinstance(payload, dict):
            return None

        if isinstance(fetched_at_raw, dt.datetime):
            fetched_at = fetched_at_raw.astimezone(dt.UTC)
        else:
            fetched_at = parse_iso_datetime(fetched_at_raw)
        if fetched_at is None:
            return None

        return StoredResponse(
            payload=payload,
            fetched_at=fetched_at,
            ttl_seconds=int(ttl_seconds or 0),
        )

    def save_response(
        self,
        cache_key: str,
        sport: str,
        endpoint: str,
        params: dict[str, str],
        payload: dict[str, Any],
        fetched_at: dt.datetime,
        ttl_seconds: int,
    ) -> None:
        values = (
            cache_key,
            sport,
            endpoint,
            json.dumps(params, ensure_ascii=False, sort_keys=True),
            json.dumps(payload, ensure_ascii=False),
            fetched_at,
            int(ttl_seconds),
        )
        if self.use_postgres:
            self._write_postgres(values)
            return
        self._write_sqlite(values)

    def _read_postgres(self, cache_key: str) -> tuple[Any, Any, Any] | None:
        try:
            with psycopg.connect(self.database_url, autocommit=True) as conn:  # type: ignore[arg-type]
                with conn.cursor() as cur:
                    cur.execute(
                        f"SELECT response, fetched_at, ttl_seconds FROM {self.table} WHERE cache_key = %s",
                        (cache_key,),
                    )
                    return cur.fetchone()
        except Exception as exc:
            logger.warning(f"Failed reading cache entry key={cache_key}: {exc}")
            return None

    def _write_postgres(self, values: tuple[Any, ...]) -> None:
        try:
            with psycopg.connect(self.database_url, autocommit=True) as conn:  # type: ignore[arg-type]
                with conn.cursor() as cur:
                    cur.execute(
                        f"""
                        INSERT INTO {self.table}
                            (cache_key, sport, endpoint, params, response, fetched_at, ttl_seconds)
                        VALUES (%s, %s, %s, %s::jsonb, %s::jsonb, %s, %s)
                        ON CONFLICT (cache_key)
                        DO UPDATE SET
                            response = EXCLUDED.response,
                            fetched_at = EXCLUDED.fetched_at,
                            ttl_seconds = EXCLUDED.ttl_seconds
                        """,
                        values,
                    )
        except Exception as exc:
            logger.warning(f"Failed writing cache entry key={values[0]}: {exc}")

    def _read_sqlite(self, cache_key: str) -> tuple[Any, Any, Any] | None:
        with self._lock:
            conn = self._connect_sqlite()
            try:
                return conn.execute(
                    f"SELECT response, fetched_at, ttl_seconds FROM {self.table} WHERE cache_key = ?",
                    (cache_key,),
                ).fetchone()
            finally:
                conn.close()

    def _write_sqlite(self, values: tuple[Any, ...]) -> None:
        cache_key, sport, endpoint, params, response, fetched_at, ttl_seconds = values
        with self._lock:
            conn = self._connect_sqlite()
            try:
                conn.execute(
                    f"""
                    INSERT INTO {self.table}
                        (cache_key, sport, endpoint, params, response, fetched_at, ttl_seconds)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(cache_key) DO UPDATE SET
                        response=excluded.response,
                        fetched_at=excluded.fetched_at,
                        ttl_seconds=excluded.ttl_seconds
                    """,
                    (cache_key, sport, endpoint, params, response, to_iso(fetched_at), ttl_seconds),
                )
                conn.commit()
            finally:
                conn.close()

    def count_entries(self) -> int:
        if self.use_postgres:
            try:
                with psycopg.connect(self.database_url, autocommit=True) as conn:  # type: ignore[arg-type]
                    with conn.cursor() as cur:
                        cur.execute(f"SELECT COUNT(*) FROM {self.table}")
                        row = cur.fetchone()
            except Exception as exc:
                logger.warning(f"Failed counting cache entries: {exc}")
                return 0
            return int(row[0]) if row else 0

        with self._lock:
            conn = self._connect_sqlite()
            try:
                row = conn.execute(f"SELECT COUNT(*) FROM {self.table}").fetchone()
            finally:
                conn.close()
        return int(row[0]) if row else 0
