# geosocial/services/cache_invalidator.py
"""
Post-commit upkeep of the geo index, snapshot cache and query-bucket cache.

Hooks run after the store transaction has committed. A failing hook is logged
and swallowed: the write already happened, and the TTLs plus lazy stale-id
removal in the search path bound how long the caches can lag behind.
"""
from typing import Iterable, List, Optional, Tuple

import structlog

from geosocial.core.errors import IndexUnavailable
from geosocial.models.dto import EntityBase
from geosocial.models.kinds import EntityKind
from geosocial.services.entity_cache import EntityCache
from geosocial.services.geo_index import GeoIndex
from geosocial.services.nearby_cache import NearbyQueryCache

logger = structlog.get_logger(__name__)

Coords = Tuple[float, float]


class CacheInvalidator:
    def __init__(self, geo_index: GeoIndex, entity_cache: EntityCache, query_cache: NearbyQueryCache):
        self.geo_index = geo_index
        self.entity_cache = entity_cache
        self.query_cache = query_cache

    @staticmethod
    def _log_failure(hook: str, kind: EntityKind, entity_id: str, error: IndexUnavailable) -> None:
        logger.warning(
            "cache_invalidation_failed",
            hook=hook,
            kind=EntityKind(kind).value,
            entity_id=entity_id,
            error=error.cause or error.detail,
        )

    async def on_entity_created(self, entity: EntityBase) -> None:
        if not self.geo_index.available:
            return
        kind = EntityKind(entity.kind)
        try:
            if entity.has_location:
                await self.geo_index.upsert(kind, entity.id, entity.latitude, entity.longitude)
            await self.entity_cache.set(kind, entity.id, entity)
        except IndexUnavailable as e:
            self._log_failure("created", kind, entity.id, e)
        if entity.has_location:
            await self.query_cache.invalidate(kind)

    async def on_entity_moved(
        self,
        kind: EntityKind,
        entity_id: str,
        lat: float,
        lon: float,
        entity: Optional[EntityBase] = None,
        old: Optional[Coords] = None,
    ) -> None:
        """
        Move an entity in the index.

        The snapshot is replaced by `entity` when given, otherwise deleted so the
        next read reloads it. Cached nearby queries of the kind are retired.
        """
        if not self.geo_index.available:
            return
        kind = EntityKind(kind)
        try:
            await self.geo_index.upsert(kind, entity_id, lat, lon)
            if entity is not None:
                await self.entity_cache.set(kind, entity_id, entity)
            else:
                await self.entity_cache.delete(kind, entity_id)
        except IndexUnavailable as e:
            self._log_failure("moved", kind, entity_id, e)
        await self.query_cache.invalidate(kind)

    async def on_entity_updated(self, entity: EntityBase) -> None:
        if not self.geo_index.available:
            return
        kind = EntityKind(entity.kind)
        try:
            await self.entity_cache.set(kind, entity.id, entity)
        except IndexUnavailable as e:
            self._log_failure("updated", kind, entity.id, e)

    async def on_entity_deleted(self, kind: EntityKind, entity_id: str, coords: Optional[Coords] = None) -> None:
        if not self.geo_index.available:
            return
        kind = EntityKind(kind)
        try:
            if coords is None:
                coords = await self.geo_index.position(kind, entity_id)
            await self.geo_index.remove(kind, entity_id)
            await self.entity_cache.delete(kind, entity_id)
        except IndexUnavailable as e:
            self._log_failure("deleted", kind, entity_id, e)
        if coords is not None:
            await self.query_cache.invalidate(kind)

    async def rebuild_index(self, kind: EntityKind, entities: Iterable[EntityBase]) -> int:
        """Replace geo:<kind> with the given entities' positions; returns how many were indexed."""
        if not self.geo_index.available:
            return 0
        kind = EntityKind(kind)
        points = [(e.id, e.latitude, e.longitude) for e in entities if e.has_location]
        try:
            await self.geo_index.clear(kind)
            indexed = await self.geo_index.upsert_many(kind, points)
        except IndexUnavailable as e:
            self._log_failure("rebuild", kind, "*", e)
            return 0
        await self.query_cache.invalidate(kind)
        logger.info("geo_index_rebuilt", kind=kind.value, indexed=indexed, skipped=len(points) - indexed)
        return indexed

    async def sweep_expired(self, kind: EntityKind, entity_ids: Iterable[str]) -> List[str]:
        """Evict ids that fell out of their discoverability window; returns the ids evicted."""
        if not self.geo_index.available:
            return []
        kind = EntityKind(kind)
        evicted: List[str] = []
        for entity_id in entity_ids:
            try:
                await self.geo_index.remove(kind, entity_id)
                await self.entity_cache.delete(kind, entity_id)
            except IndexUnavailable as e:
                self._log_failure("sweep", kind, entity_id, e)
                break
            evicted.append(entity_id)
        if evicted:
            await self.query_cache.invalidate(kind)
            logger.info("sweep_expired", kind=kind.value, evicted=len(evicted))
        return evicted
