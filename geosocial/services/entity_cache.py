# geosocial/services/entity_cache.py
"""
Cache-aside snapshots of entities, stored as `<kind>:<id>` strings with SETEX.

Each value is a JSON envelope carrying its own expiry so a snapshot past its
TTL is never served, whatever Redis still holds.
"""
import json
import time
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from geosocial.core.errors import IndexUnavailable
from geosocial.models.dto import ENTITY_MODELS, EntityBase
from geosocial.models.kinds import EntityKind

logger = structlog.get_logger(__name__)

Loader = Callable[[], Awaitable[Optional[EntityBase]]]
BatchLoader = Callable[[List[str]], Awaitable[Dict[str, EntityBase]]]

DEFAULT_TTL = 120


class EntityCache:
    def __init__(
        self,
        redis_client: Optional[Redis] = None,
        ttl_seconds: Optional[Dict[EntityKind, int]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.redis_client: Optional[Redis] = redis_client
        self.ttl_seconds: Dict[EntityKind, int] = dict(ttl_seconds or {})
        self.clock = clock

    @staticmethod
    def key(kind: EntityKind, entity_id: str) -> str:
        return f"{EntityKind(kind).value}:{entity_id}"

    def ttl_for(self, kind: EntityKind) -> int:
        return self.ttl_seconds.get(EntityKind(kind), DEFAULT_TTL)

    def _require_client(self) -> Redis:
        if not self.redis_client:
            raise IndexUnavailable("redis_unavailable")
        return self.redis_client

    def _encode(self, entity: EntityBase, ttl: int) -> str:
        now = self.clock()
        return json.dumps({
            "cached_at": now,
            "expires_at": now + ttl,
            "entity": entity.model_dump(mode="json"),
        })

    def _decode(self, kind: EntityKind, raw) -> Optional[EntityBase]:
        if raw is None:
            return None
        try:
            envelope = json.loads(raw)
            if self.clock() >= float(envelope["expires_at"]):
                return None
            return ENTITY_MODELS[EntityKind(kind)].model_validate(envelope["entity"])
        except (ValueError, KeyError, TypeError) as e:
            logger.error("entity_cache_parse_error", kind=EntityKind(kind).value, error=str(e))
            return None

    async def get(self, kind: EntityKind, entity_id: str) -> Optional[EntityBase]:
        client = self._require_client()
        try:
            raw = await client.get(self.key(kind, entity_id))
        except RedisError as e:
            logger.error("entity_cache_get_error", error=str(e), kind=EntityKind(kind).value, entity_id=entity_id)
            raise IndexUnavailable("redis_unavailable", cause=str(e))
        return self._decode(kind, raw)

    async def get_many(self, kind: EntityKind, entity_ids: Iterable[str]) -> Dict[str, EntityBase]:
        ids = list(entity_ids)
        if not ids:
            return {}
        client = self._require_client()
        try:
            raws = await client.mget([self.key(kind, entity_id) for entity_id in ids])
        except RedisError as e:
            logger.error("entity_cache_mget_error", error=str(e), kind=EntityKind(kind).value, count=len(ids))
            raise IndexUnavailable("redis_unavailable", cause=str(e))

        found: Dict[str, EntityBase] = {}
        for entity_id, raw in zip(ids, raws):
            entity = self._decode(kind, raw)
            if entity is not None:
                found[entity_id] = entity
        return found

    async def set(self, kind: EntityKind, entity_id: str, entity: EntityBase, ttl: Optional[int] = None) -> None:
        ttl = ttl or self.ttl_for(kind)
        client = self._require_client()
        try:
            await client.setex(self.key(kind, entity_id), ttl, self._encode(entity, ttl))
        except RedisError as e:
            logger.error("entity_cache_set_error", error=str(e), kind=EntityKind(kind).value, entity_id=entity_id)
            raise IndexUnavailable("redis_unavailable", cause=str(e))

    async def delete(self, kind: EntityKind, entity_id: str) -> None:
        client = self._require_client()
        try:
            await client.delete(self.key(kind, entity_id))
        except RedisError as e:
            logger.error("entity_cache_delete_error", error=str(e), kind=EntityKind(kind).value, entity_id=entity_id)
            raise IndexUnavailable("redis_unavailable", cause=str(e))

    async def get_or_populate(
        self, kind: EntityKind, entity_id: str, loader: Loader, ttl: Optional[int] = None
    ) -> Optional[EntityBase]:
        """
        Return the cached snapshot, or call `loader` and cache what it returns.

        Concurrent misses may each call the loader; the last `set` wins.
        A None from the loader is returned as-is and not cached.
        """
        try:
            cached = await self.get(kind, entity_id)
        except IndexUnavailable:
            return await loader()
        if cached is not None:
            logger.debug("entity_cache_hit", kind=EntityKind(kind).value, entity_id=entity_id)
            return cached

        logger.debug("entity_cache_miss", kind=EntityKind(kind).value, entity_id=entity_id)
        entity = await loader()
        if entity is not None:
            try:
                await self.set(kind, entity_id, entity, ttl)
            except IndexUnavailable:
                pass
        return entity

    async def get_or_populate_many(
        self, kind: EntityKind, entity_ids: Iterable[str], loader_many: BatchLoader, ttl: Optional[int] = None
    ) -> Dict[str, EntityBase]:
        """Batched get_or_populate: one MGET, one loader call for every miss."""
        ids = list(dict.fromkeys(entity_ids))
        if not ids:
            return {}
        try:
            found = await self.get_many(kind, ids)
        except IndexUnavailable:
            return await loader_many(ids)

        missing = [entity_id for entity_id in ids if entity_id not in found]
        if missing:
            logger.debug("entity_cache_miss_batch", kind=EntityKind(kind).value, hits=len(found), misses=len(missing))
            loaded = await loader_many(missing)
            found.update(loaded)
            for entity_id, entity in loaded.items():
                try:
                    await self.set(kind, entity_id, entity, ttl)
                except IndexUnavailable:
                    break
        return found
