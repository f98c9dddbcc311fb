from __future__ import annotations

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

env_path = os.path.join(os.path.dirname(__file__), ".env")
load_dotenv(env_path)


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name, str(default)).strip().lower()
    return raw in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, minimum: int, maximum: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        value = int(raw)
    except ValueError:
        value = default
    return max(minimum, min(maximum, value))


def _env_float(name: str, default: float, minimum: float, maximum: float) -> float:
    raw = os.getenv(name, str(default)).strip()
    try:
        value = float(raw)
    except ValueError:
        value = default
    return max(minimum, min(maximum, value))


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    values = [item.strip() for item in raw.split(",") if item.strip()]
    return values or [default]


def _data_path(env_name: str, filename: str) -> str:
    return os.path.normpath(
        os.getenv(
            env_name,
            os.path.join(os.path.dirname(__file__), "data", filename),
        )
    )


@dataclass
class Settings:
    api_sports_key: str = ""
    football_data_api_key: str = ""
    tennis_api_base_url: str = ""
    cron_secret: str = ""
    session_user_header: str = "x-user-id"
    session_gateway_secret: str = ""

    request_timeout_seconds: float = 10.0
    min_request_interval_seconds: float = 0.2

    cache_database_url: str = ""
    api_cache_db_path: str = field(
        default_factory=lambda: _data_path("API_CACHE_DB_PATH", "api_cache.db")
    )
    fixtures_db_path: str = field(
        default_factory=lambda: _data_path("FIXTURES_DB_PATH", "fixtures.db")
    )

    sync_max_workers: int = 4
    sync_past_days: int = 7
    sync_future_days: int = 365
    upsert_chunk_size: int = 100
    placeholders_enabled: bool = True

    calendar_name: str = "My Sport Calendar"
    calendar_past_days: int = 30
    calendar_future_days: int = 90

    cors_origins: list[str] = field(default_factory=lambda: ["http://localhost:3000"])

    @classmethod
    def from_env(cls) -> Settings:
        return cls(
            api_sports_key=os.getenv("API_SPORTS_KEY", "").strip(),
            football_data_api_key=os.getenv("FOOTBALL_DATA_API_KEY", "").strip(),
            tennis_api_base_url=os.getenv("TENNIS_API_BASE_URL", "").strip().rstrip("/"),
            cron_secret=os.getenv("CRON_SECRET", "").strip(),
            session_user_header=os.getenv("SESSION_USER_HEADER", "x-user-id").strip().lower()
            or "x-user-id",
            session_gateway_secret=os.getenv("SESSION_GATEWAY_SECRET", "").strip(),
            request_timeout_seconds=_env_float(
                "REQUEST_TIMEOUT_SECONDS", default=10.0, minimum=1.0, maximum=60.0
            ),
            min_request_interval_seconds=_env_float(
                "MIN_REQUEST_INTERVAL_SECONDS", default=0.2, minimum=0.0, maximum=10.0
            ),
            cache_database_url=os.getenv(
                "CACHE_DATABASE_URL",
                os.getenv("DATABASE_URL", ""),
            ).strip(),
            api_cache_db_path=_data_path("API_CACHE_DB_PATH", "api_cache.db"),
            fixtures_db_path=_data_path("FIXTURES_DB_PATH", "fixtures.db"),
            sync_max_workers=_env_int("SYNC_MAX_WORKERS", default=4, minimum=1, maximum=16),
            sync_past_days=_env_int("SYNC_PAST_DAYS", default=7, minimum=0, maximum=60),
            sync_future_days=_env_int("SYNC_FUTURE_DAYS", default=365, minimum=1, maximum=730),
            upsert_chunk_size=_env_int("UPSERT_CHUNK_SIZE", default=100, minimum=1, maximum=1000),
            placeholders_enabled=_env_flag("SYNC_PLACEHOLDERS", default=True),
            calendar_name=os.getenv("CALENDAR_NAME", "My Sport Calendar").strip()
            or "My Sport Calendar",
            calendar_past_days=_env_int("CALENDAR_PAST_DAYS", default=30, minimum=0, maximum=365),
            calendar_future_days=_env_int(
                "CALENDAR_FUTURE_DAYS", default=90, minimum=1, maximum=730
            ),
            cors_origins=_parse_csv_env("CORS_ORIGINS", "http://localhost:3000"),
        )

    @property
    def api_key_configured(self) -> bool:
        return bool(self.api_sports_key)

    @property
    def sync_auth_enabled(self) -> bool:
        return bool(self.cron_secret)

    @property
    def session_gateway_enabled(self) -> bool:
        return bool(self.session_gateway_secret)
