from __future__ import annotations

import json

try:
    from backend.config import Settings
    from backend.services.container import build_services
except ModuleNotFoundError:
    from config import Settings
    from services.container import build_services


def main() -> None:
    services = build_services(Settings.from_env())
    entities = services.follows.distinct_entities()
    summary = services.sync.sync(entities)

    print(
        json.dumps(
            {
                "entities": len(entities),
                **summary.to_dict(),
                "cached_fixtures": services.fixtures.count_fixtures(),
                "cached_responses": services.cache_store.count_entries(),
            },
            indent=2,
        )
    )


if __name__ == "__main__":
    main()
