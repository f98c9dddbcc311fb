from __future__ import annotations

from dataclasses import dataclass

try:
    from backend.config import Settings
    from backend.services.api_sports import ApiSportsClient
    from backend.services.fixture_store import FixtureStore
    from backend.services.fixture_sync import FixtureSyncService
    from backend.services.follow_store import FollowStore
    from backend.services.football_data import FootballDataClient
    from backend.services.persistent_store import PersistentStore
    from backend.services.placeholders import PlaceholderGenerator
    from backend.services.response_cache import ResponseCache
except ModuleNotFoundError:
    from config import Settings
    from services.api_sports import ApiSportsClient
    from services.fixture_store import FixtureStore
    from services.fixture_sync import FixtureSyncService
    from services.follow_store import FollowStore
    from services.football_data import FootballDataClient
    from services.persistent_store import PersistentStore
    from services.placeholders import PlaceholderGenerator
    from services.response_cache import ResponseCache


@dataclass
class Services:
    settings: Settings
    client: ApiSportsClient
    cache_store: PersistentStore
    cache: ResponseCache
    fixtures: FixtureStore
    follows: FollowStore
    sync: FixtureSyncService


def build_services(settings: Settings) -> Services:
    client = ApiSportsClient(settings)
    cache_store = PersistentStore(
        sqlite_path=settings.api_cache_db_path,
        database_url=settings.cache_database_url,
    )
    cache = ResponseCache(client, cache_store)
    fixtures = FixtureStore(settings.fixtures_db_path)
    follows = FollowStore(settings.fixtures_db_path)
    placeholders = PlaceholderGenerator(football_data=FootballDataClient(settings))
    return Services(
        settings=settings,
        client=client,
        cache_store=cache_store,
        cache=cache,
        fixtures=fixtures,
        follows=follows,
        sync=FixtureSyncService(cache, fixtures, settings, placeholders=placeholders),
    )
