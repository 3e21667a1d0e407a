# geosocial/services/nearby_cache.py
"""
Query-bucket cache for repeated nearby searches from roughly the same place.

Key: nearby:<kind>:<generation>:<lat>:<lon>:<radius>:<limit>, coordinates
rounded to the bucket precision. Values are candidate ids only. Candidates are
gathered around the bucket center with the radius widened by the cell's half
diagonal, so they cover the search circle of every point in the bucket; callers
still compute exact distances from their own query point.

A cached list can cover entities kilometers away from its own cell, so writes
do not hunt for the affected cells: they bump the kind's generation counter and
every key built before the bump is never read again (it expires on its TTL).
"""
import json
from typing import List, Optional, Tuple

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from geosocial.core.config import settings
from geosocial.models.kinds import EntityKind
from geosocial.services.area_bucketer import AreaBucketer

logger = structlog.get_logger(__name__)

KEY_PREFIX = "nearby"
GENERATION_PREFIX = "nearby-gen"


class NearbyQueryCache:
    def __init__(
        self,
        redis_client: Optional[Redis] = None,
        ttl: int = settings.NEARBY_CACHE_TTL,
        precision: int = settings.NEARBY_BUCKET_PRECISION,
        enabled: bool = settings.NEARBY_CACHE_ENABLED,
    ):
        self.redis_client: Optional[Redis] = redis_client
        self.ttl = ttl
        self.precision = precision
        self.enabled = enabled

    @property
    def active(self) -> bool:
        return self.enabled and self.redis_client is not None

    def generation_key(self, kind: EntityKind) -> str:
        return f"{GENERATION_PREFIX}:{EntityKind(kind).value}"

    def key(self, kind: EntityKind, generation: int, lat: float, lon: float, radius_m: float, limit: int) -> str:
        area = AreaBucketer.get_area_code(lat, lon, self.precision)
        return f"{KEY_PREFIX}:{EntityKind(kind).value}:{generation}:{area}:{radius_m:g}:{limit}"

    def search_area(self, lat: float, lon: float, radius_m: float) -> Tuple[float, float, float]:
        """(center_lat, center_lon, widened_radius) the bucket's candidates are searched with."""
        c_lat, c_lon = AreaBucketer.cell_center(lat, lon, self.precision)
        return c_lat, c_lon, radius_m + AreaBucketer.cell_half_diagonal(lat, lon, self.precision)

    async def bucket_key(self, kind: EntityKind, lat: float, lon: float, radius_m: float, limit: int) -> Optional[str]:
        """
        Key of the bucket under the kind's current generation.

        Read it once, before searching the index, and pass the same key to
        `set`: a write landing in between bumps the generation, so the list
        stored under the old key is never served.
        Returns None when the cache is off or Redis cannot be read.
        """
        if not self.active:
            return None
        try:
            raw = await self.redis_client.get(self.generation_key(kind))
        except RedisError as e:
            logger.warning("nearby_cache_generation_failed", error=str(e), kind=EntityKind(kind).value)
            return None
        try:
            generation = int(raw or 0)
        except ValueError:
            logger.error("nearby_cache_generation_parse_error", kind=EntityKind(kind).value, raw_value=str(raw)[:50])
            return None
        return self.key(kind, generation, lat, lon, radius_m, limit)

    async def get(self, key: Optional[str]) -> Optional[List[str]]:
        if key is None or not self.active:
            return None
        try:
            raw = await self.redis_client.get(key)
        except RedisError as e:
            logger.warning("nearby_cache_get_failed", error=str(e), key=key)
            return None
        if raw is None:
            return None
        try:
            ids = json.loads(raw)
        except ValueError:
            logger.error("nearby_cache_parse_error", key=key, raw_value=str(raw)[:200])
            return None
        logger.debug("nearby_cache_hit", key=key, candidates=len(ids))
        return [str(entity_id) for entity_id in ids]

    async def set(self, key: Optional[str], ids: List[str]) -> None:
        if key is None or not self.active:
            return
        try:
            await self.redis_client.setex(key, self.ttl, json.dumps(list(ids)))
        except RedisError as e:
            logger.warning("nearby_cache_set_failed", error=str(e), key=key)

    async def invalidate(self, kind: EntityKind) -> None:
        """Retire every cached query of the kind by bumping its generation."""
        if not self.active:
            return
        try:
            await self.redis_client.incr(self.generation_key(kind))
        except RedisError as e:
            logger.warning("nearby_cache_invalidate_failed", error=str(e), kind=EntityKind(kind).value)
