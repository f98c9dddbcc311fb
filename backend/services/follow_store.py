from __future__ import annotations

import datetime as dt
import json
import os
import secrets
import sqlite3
import threading
from typing import Any

try:
    from backend.services.models import ENTITY_TYPES, Follow, Sport, SyncEntity
except ModuleNotFoundError:
    from services.models import ENTITY_TYPES, Follow, Sport, SyncEntity

DEFAULT_PAGE_SIZE = 500


class FollowStore:
    """Read model over user follows and calendar feed tokens.

    Follow management and token issuance belong to the account service; the
    write helpers here exist so the same tables can be seeded locally.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._lock = threading.Lock()
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path, check_same_thread=False)

    def _ensure_schema(self) -> None:
        db_dir = os.path.dirname(self.db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        conn = self._connect()
        try:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS follows (
                    user_id TEXT NOT NULL,
                    entity_type TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    sport TEXT NOT NULL,
                    entity_name TEXT NOT NULL DEFAULT '',
                    entity_metadata TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL,
                    UNIQUE (user_id, entity_type, entity_id, sport)
                );
                CREATE TABLE IF NOT EXISTS calendar_tokens (
                    token TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );
                """
            )
            conn.commit()
        finally:
            conn.close()

    def add_follow(
        self,
        user_id: str,
        entity_type: str,
        entity_id: str,
        sport: str,
        entity_name: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> Follow:
        if entity_type not in ENTITY_TYPES:
            raise ValueError(f"Unknown entity type: {entity_type}")
        sport_value = Sport.parse(sport).value
        follow = Follow(
            user_id=user_id,
            entity_type=entity_type,
            entity_id=str(entity_id),
            sport=sport_value,
            entity_name=entity_name.strip(),
            metadata=dict(metadata or {}),
        )
        created_at = dt.datetime.now(dt.UTC).isoformat()
        with self._lock:
            conn = self._connect()
            try:
                conn.execute(
                    """
                    INSERT INTO follows (
                        user_id, entity_type, entity_id, sport, entity_name, entity_metadata, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(user_id, entity_type, entity_id, sport) DO UPDATE SET
                        entity_name=excluded.entity_name,
                        entity_metadata=excluded.entity_metadata
                    """,
                    (
                        follow.user_id,
                        follow.entity_type,
                        follow.entity_id,
                        follow.sport,
                        follow.entity_name,
                        json.dumps(follow.metadata, ensure_ascii=False),
                        created_at,
                    ),
                )
                conn.commit()
            finally:
                conn.close()
        return follow

    def follows_for_user(self, user_id: str) -> list[Follow]:
        with self._lock:
            conn = self._connect()
            try:
                rows = conn.execute(
                    """
                    SELECT user_id, entity_type, entity_id, sport, entity_name, entity_metadata
                    FROM follows
                    WHERE user_id = ?
                    ORDER BY created_at ASC, rowid ASC
                    """,
                    (user_id,),
                ).fetchall()
            finally:
                conn.close()

        follows: list[Follow] = []
        for row in rows:
            try:
                metadata = json.loads(row[5] or "{}")
            except json.JSONDecodeError:
                metadata = {}
            follows.append(
                Follow(
                    user_id=row[0],
                    entity_type=row[1],
                    entity_id=row[2],
                    sport=row[3],
                    entity_name=row[4] or "",
                    metadata=metadata if isinstance(metadata, dict) else {},
                )
            )
        return follows

    def distinct_entities(self, page_size: int = DEFAULT_PAGE_SIZE) -> list[SyncEntity]:
        """Every followed entity across all users, once per season override."""
        size = max(1, int(page_size))
        entities: list[SyncEntity] = []
        offset = 0
        while True:
            with self._lock:
                conn = self._connect()
                try:
                    rows = conn.execute(
                        """
                        SELECT DISTINCT
                            entity_type,
                            entity_id,
                            sport,
                            CAST(json_extract(entity_metadata, '$.season') AS TEXT) AS season
                        FROM follows
                        ORDER BY sport, entity_type, entity_id, season
                        LIMIT ? OFFSET ?
                        """,
                        (size, offset),
                    ).fetchall()
                finally:
                    conn.close()

            entities.extend(
                SyncEntity(
                    entity_type=row[0],
                    entity_id=row[1],
                    sport=row[2],
                    season=row[3] or None,
                )
                for row in rows
            )
            if len(rows) < size:
                return entities
            offset += size

    def create_token(self, user_id: str, token: str | None = None) -> str:
        value = token or secrets.token_urlsafe(24)
        with self._lock:
            conn = self._connect()
            try:
                conn.execute(
                    "INSERT INTO calendar_tokens (token, user_id, created_at) VALUES (?, ?, ?)",
                    (value, user_id, dt.datetime.now(dt.UTC).isoformat()),
                )
                conn.commit()
            finally:
                conn.close()
        return value

    def resolve_token(self, token: str) -> str | None:
        with self._lock:
            conn = self._connect()
            try:
                row = conn.execute(
                    "SELECT user_id FROM calendar_tokens WHERE token = ?",
                    (token,),
                ).fetchone()
            finally:
                conn.close()
        return row[0] if row else None
