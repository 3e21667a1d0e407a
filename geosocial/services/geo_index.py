# geosocial/services/geo_index.py
"""Redis geo index: one sorted set per entity kind, member = entity id.

Reads fail soft (an empty candidate list sends the caller to the store);
writes fail loud with IndexUnavailable so mutation flows can decide.
"""
from typing import Iterable, List, Optional, Tuple

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from geosocial.core.config import settings
from geosocial.core.errors import IndexUnavailable
from geosocial.models.kinds import EntityKind

logger = structlog.get_logger(__name__)

# Redis rejects GEOADD outside this latitude band (Web Mercator limit).
GEO_LAT_LIMIT = 85.05112878


def is_indexable(lat: float) -> bool:
    return -GEO_LAT_LIMIT <= lat <= GEO_LAT_LIMIT


class GeoIndex:
    def __init__(self, redis_client: Optional[Redis] = None, key_prefix: str = settings.GEO_KEY_PREFIX):
        self.redis_client: Optional[Redis] = redis_client
        self.key_prefix = key_prefix

    @property
    def available(self) -> bool:
        return self.redis_client is not None

    def key(self, kind: EntityKind) -> str:
        return f"{self.key_prefix}:{EntityKind(kind).value}"

    def _require_client(self) -> Redis:
        if not self.redis_client:
            raise IndexUnavailable("redis_unavailable")
        return self.redis_client

    async def upsert(self, kind: EntityKind, entity_id: str, lat: float, lon: float) -> bool:
        """Insert or move a point. Returns False when the latitude cannot be indexed."""
        if not is_indexable(lat):
            logger.info("geo_index_skip_polar", kind=EntityKind(kind).value, entity_id=entity_id, lat=lat)
            return False
        client = self._require_client()
        try:
            await client.geoadd(self.key(kind), [lon, lat, entity_id])
        except RedisError as e:
            logger.error("geo_index_upsert_error", error=str(e), kind=EntityKind(kind).value, entity_id=entity_id)
            raise IndexUnavailable("redis_unavailable", cause=str(e))
        return True

    async def upsert_many(self, kind: EntityKind, points: Iterable[Tuple[str, float, float]]) -> int:
        """Batch GEOADD of (entity_id, lat, lon); returns how many points were written."""
        values: List = []
        for entity_id, lat, lon in points:
            if is_indexable(lat):
                values.extend([lon, lat, entity_id])
        if not values:
            return 0
        client = self._require_client()
        try:
            await client.geoadd(self.key(kind), values)
        except RedisError as e:
            logger.error("geo_index_upsert_many_error", error=str(e), kind=EntityKind(kind).value)
            raise IndexUnavailable("redis_unavailable", cause=str(e))
        return len(values) // 3

    async def remove(self, kind: EntityKind, entity_id: str) -> None:
        client = self._require_client()
        try:
            await client.zrem(self.key(kind), entity_id)
        except RedisError as e:
            logger.error("geo_index_remove_error", error=str(e), kind=EntityKind(kind).value, entity_id=entity_id)
            raise IndexUnavailable("redis_unavailable", cause=str(e))

    async def query_radius(
        self, kind: EntityKind, lat: float, lon: float, radius_m: float, limit: int
    ) -> List[Tuple[str, float]]:
        """
        Candidates within radius_m of (lat, lon), nearest first, at most `limit`.

        Distances come from Redis and are approximate; callers recompute them.
        Any failure yields an empty list.
        """
        if not self.redis_client:
            return []
        try:
            rows = await self.redis_client.geosearch(
                self.key(kind),
                longitude=lon,
                latitude=lat,
                radius=radius_m,
                unit="m",
                sort="ASC",
                count=limit,
                withdist=True,
            )
        except RedisError as e:
            logger.warning("geo_index_query_failed", error=str(e), kind=EntityKind(kind).value)
            return []

        candidates: List[Tuple[str, float]] = []
        seen = set()
        for member, distance in rows:
            member = member.decode("utf-8") if isinstance(member, bytes) else str(member)
            if member in seen:
                continue
            seen.add(member)
            candidates.append((member, float(distance)))
        return candidates

    async def position(self, kind: EntityKind, entity_id: str) -> Optional[Tuple[float, float]]:
        """Indexed (lat, lon) of an entity, or None when it is not indexed."""
        client = self._require_client()
        try:
            positions = await client.geopos(self.key(kind), entity_id)
        except RedisError as e:
            logger.error("geo_index_position_error", error=str(e), kind=EntityKind(kind).value, entity_id=entity_id)
            raise IndexUnavailable("redis_unavailable", cause=str(e))
        if not positions or positions[0] is None:
            return None
        lon, lat = positions[0]
        return float(lat), float(lon)

    async def clear(self, kind: EntityKind) -> None:
        client = self._require_client()
        try:
            await client.delete(self.key(kind))
        except RedisError as e:
            logger.error("geo_index_clear_error", error=str(e), kind=EntityKind(kind).value)
            raise IndexUnavailable("redis_unavailable", cause=str(e))
