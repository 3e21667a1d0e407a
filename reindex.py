import asyncio
import sys

from geosocial.db.session import create_engine, create_session_factory
from geosocial.logging import configure_logging
from geosocial.main import warm_index
from geosocial.models.kinds import EntityKind
from geosocial.services import redis_client as redis_lifecycle
from geosocial.services.cache_invalidator import CacheInvalidator
from geosocial.services.entity_cache import EntityCache
from geosocial.services.geo_index import GeoIndex
from geosocial.services.nearby_cache import NearbyQueryCache
from geosocial.services.store import AuthoritativeStore


async def reindex(kinds):
    """Rebuild geo:<kind> from the discoverable entities in the store."""
    configure_logging()
    client = redis_lifecycle.create_redis()
    if client is None:
        print("REDIS_URL is not set or Redis is disabled; nothing to rebuild.")
        return 1
    engine = create_engine()
    store = AuthoritativeStore(create_session_factory(engine))
    invalidator = CacheInvalidator(GeoIndex(client), EntityCache(client), NearbyQueryCache(client))
    try:
        if kinds:
            for kind in kinds:
                await invalidator.rebuild_index(kind, await store.discoverable_entities(kind))
        else:
            await warm_index(store, invalidator)
    finally:
        await redis_lifecycle.close(client)
        await engine.dispose()
    return 0


if __name__ == "__main__":
    requested = [EntityKind(arg) for arg in sys.argv[1:]]
    sys.exit(asyncio.run(reindex(requested)))
