# geosocial/services/proximity_service.py
"""Nearby search over users, groups and activities.

Answers from the Redis geo index and entity cache when they can, from the
relational store otherwise. Both paths end in the same exact Haversine filter,
so on the same data they return the same results.
"""
import math
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Union

import structlog

from geosocial.core.config import Settings, settings as default_settings
from geosocial.core.errors import EntityNotFound, IndexUnavailable, ValidationError
from geosocial.models.dto import EntityBase, ProximityResult
from geosocial.models.kinds import EntityKind
from geosocial.services.entity_cache import EntityCache
from geosocial.services.geo_index import GEO_LAT_LIMIT, GeoIndex
from geosocial.services.nearby_cache import NearbyQueryCache
from geosocial.services.store import AuthoritativeStore
from geosocial.utils.clock import utcnow
from geosocial.utils.haversine import METERS_PER_DEGREE, bounding_box, haversine, validate_coordinates

logger = structlog.get_logger(__name__)

# Redis measures with a slightly larger Earth radius on geohash-rounded points,
# so the index is asked for a little more than the exact filter keeps.
INDEX_RADIUS_PADDING = 1.001


def parse_kind(kind: Union[str, EntityKind]) -> EntityKind:
    try:
        return EntityKind(kind)
    except ValueError:
        raise ValidationError(f"Unknown entity kind '{kind}'.")


class ProximitySearchService:
    """
    One instance per process, shared by every request.

    - `find_nearby` returns discoverable entities within a radius, nearest first.
    - `get_entity` is the cache-aside lookup of a single entity.
    """

    def __init__(
        self,
        geo_index: GeoIndex,
        entity_cache: EntityCache,
        query_cache: NearbyQueryCache,
        store: AuthoritativeStore,
        settings: Settings = default_settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.geo_index = geo_index
        self.entity_cache = entity_cache
        self.query_cache = query_cache
        self.store = store
        self.settings = settings
        self.clock = clock

    # ------------------------------------------------------------------
    # Parameter handling
    # ------------------------------------------------------------------

    def resolve_radius(self, kind: EntityKind, radius_m: Optional[float]) -> float:
        if radius_m is None:
            return self.settings.default_radius(kind)
        try:
            radius = float(radius_m)
        except (TypeError, ValueError):
            raise ValidationError("radius_m must be a number.")
        if not math.isfinite(radius) or radius <= 0:
            raise ValidationError("radius_m must be a positive number of meters.")
        return min(radius, self.settings.MAX_SEARCH_RADIUS)

    def resolve_limit(self, limit: Optional[int]) -> int:
        if limit is None or limit <= 0:
            return self.settings.DEFAULT_LIMIT
        return min(int(limit), self.settings.MAX_LIMIT)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def find_nearby(
        self,
        kind: Union[str, EntityKind],
        lat: float,
        lon: float,
        radius_m: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> List[ProximityResult]:
        kind = parse_kind(kind)
        validate_coordinates(lat, lon)
        radius = self.resolve_radius(kind, radius_m)
        limit = self.resolve_limit(limit)

        entities = await self._indexed_candidates(kind, lat, lon, radius, limit)
        source = "index"
        if not entities:
            entities = await self._store_candidates(kind, lat, lon, radius)
            source = "store"

        results = self._rank(kind, entities, lat, lon, radius, limit)
        logger.info(
            "nearby_search",
            kind=kind.value,
            radius_m=radius,
            limit=limit,
            source=source,
            results=len(results),
        )
        return results

    def _within_index_band(self, lat: float, radius_m: float) -> bool:
        reach = radius_m / METERS_PER_DEGREE
        return -GEO_LAT_LIMIT <= lat - reach and lat + reach <= GEO_LAT_LIMIT

    async def _indexed_candidates(
        self, kind: EntityKind, lat: float, lon: float, radius: float, limit: int
    ) -> List[EntityBase]:
        if not self.geo_index.available:
            return []

        if self.query_cache.active:
            c_lat, c_lon, search_radius = self.query_cache.search_area(lat, lon, radius)
        else:
            c_lat, c_lon, search_radius = lat, lon, radius
        search_radius = search_radius * INDEX_RADIUS_PADDING + 1.0

        if not self._within_index_band(c_lat, search_radius):
            logger.info("nearby_search_outside_index_band", kind=kind.value, lat=lat)
            return []

        cap = self.settings.GEO_CANDIDATE_LIMIT
        key = await self.query_cache.bucket_key(kind, lat, lon, radius, limit)
        ids = await self.query_cache.get(key)
        if ids is None:
            candidates = await self.geo_index.query_radius(kind, c_lat, c_lon, search_radius, cap)
            if len(candidates) >= cap and self.query_cache.active:
                # Nearest to the cell center, not to the query point: the widened
                # list is incomplete, so search from the point and cache nothing.
                logger.info("nearby_search_candidates_truncated", kind=kind.value, cap=cap)
                candidates = await self.geo_index.query_radius(
                    kind, lat, lon, radius * INDEX_RADIUS_PADDING + 1.0, cap
                )
                key = None
            ids = [entity_id for entity_id, _ in candidates]
            if ids:
                await self.query_cache.set(key, ids)
        if not ids:
            return []

        found = await self.entity_cache.get_or_populate_many(
            kind, ids, lambda missing: self.store.load_entities(kind, missing), self.entity_cache.ttl_for(kind)
        )

        now = self.clock()
        entities: List[EntityBase] = []
        stale: List[str] = []
        for entity_id in ids:
            entity = found.get(entity_id)
            if entity is None or not entity.is_discoverable(now):
                stale.append(entity_id)
                continue
            entities.append(entity)
        if stale:
            await self._drop_stale(kind, stale)
        return entities

    async def _drop_stale(self, kind: EntityKind, ids: Iterable[str]) -> None:
        """Index members the store no longer backs (deleted or expired) are removed lazily."""
        for entity_id in ids:
            try:
                await self.geo_index.remove(kind, entity_id)
            except IndexUnavailable:
                return
        logger.debug("geo_index_stale_removed", kind=kind.value, ids=list(ids))

    async def _store_candidates(self, kind: EntityKind, lat: float, lon: float, radius: float) -> List[EntityBase]:
        lat_range, lon_range = bounding_box(lat, lon, radius)
        entities = await self.store.bounding_box_query(kind, lat, lon, lat_range, lon_range)
        if self.geo_index.available:
            logger.info("nearby_search_store_fallback", kind=kind.value, candidates=len(entities))
        else:
            logger.warning("nearby_search_store_fallback", kind=kind.value, reason="index_unavailable")
        if entities:
            await self._write_back(kind, entities)
        return entities

    async def _write_back(self, kind: EntityKind, entities: List[EntityBase]) -> None:
        """Re-seed the index and snapshot cache with what the store returned."""
        if not self.geo_index.available:
            return
        try:
            await self.geo_index.upsert_many(
                kind, [(e.id, e.latitude, e.longitude) for e in entities if e.has_location]
            )
            ttl = self.entity_cache.ttl_for(kind)
            for entity in entities:
                await self.entity_cache.set(kind, entity.id, entity, ttl)
        except IndexUnavailable as e:
            logger.warning("nearby_search_write_back_failed", kind=kind.value, error=e.cause or e.detail)

    def _rank(
        self, kind: EntityKind, entities: Iterable[EntityBase], lat: float, lon: float, radius: float, limit: int
    ) -> List[ProximityResult]:
        now = self.clock()
        best: Dict[str, ProximityResult] = {}
        for entity in entities:
            if not entity.is_discoverable(now):
                continue
            distance = haversine(lat, lon, entity.latitude, entity.longitude)
            if distance > radius:
                continue
            if entity.id in best and best[entity.id].distance_meters <= distance:
                continue
            best[entity.id] = ProximityResult(
                entity_id=entity.id, kind=kind, distance_meters=distance, entity=entity
            )
        ranked = sorted(best.values(), key=lambda r: (r.distance_meters, r.entity_id))
        return ranked[:limit]

    # ------------------------------------------------------------------
    # Single lookup
    # ------------------------------------------------------------------

    async def get_entity(self, kind: Union[str, EntityKind], entity_id: str) -> EntityBase:
        kind = parse_kind(kind)
        entity = await self.entity_cache.get_or_populate(
            kind, entity_id, lambda: self.store.load_entity(kind, entity_id), self.entity_cache.ttl_for(kind)
        )
        if entity is None:
            raise EntityNotFound(kind.value, entity_id)
        return entity
