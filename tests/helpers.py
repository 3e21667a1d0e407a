import math

from geosocial.services.cache_invalidator import CacheInvalidator
from geosocial.services.entity_cache import EntityCache
from geosocial.services.geo_index import GeoIndex
from geosocial.services.mutations import MutationService
from geosocial.services.nearby_cache import NearbyQueryCache
from geosocial.services.proximity_service import ProximitySearchService

# Meters per degree of latitude on the sphere haversine() uses
METERS_PER_LAT_DEGREE = 2 * math.pi * 6371000.0 / 360


def north_of(lat: float, meters: float) -> float:
    return lat + meters / METERS_PER_LAT_DEGREE


def build_services(redis_client, store, settings):
    """(ProximitySearchService, MutationService) wired the way the app wires them."""
    geo_index = GeoIndex(redis_client, key_prefix=settings.GEO_KEY_PREFIX)
    entity_cache = EntityCache(redis_client, ttl_seconds=settings.cache_ttls())
    query_cache = NearbyQueryCache(
        redis_client,
        ttl=settings.NEARBY_CACHE_TTL,
        precision=settings.NEARBY_BUCKET_PRECISION,
        enabled=settings.NEARBY_CACHE_ENABLED,
    )
    invalidator = CacheInvalidator(geo_index, entity_cache, query_cache)
    search = ProximitySearchService(geo_index, entity_cache, query_cache, store, settings=settings)
    return search, MutationService(store, invalidator)


def offset(lat: float, lon: float, meters: float, bearing_deg: float):
    """Point `meters` away from (lat, lon) along the initial bearing, on the haversine sphere."""
    phi1, lam1, theta = math.radians(lat), math.radians(lon), math.radians(bearing_deg)
    delta = meters / 6371000.0
    phi2 = math.asin(math.sin(phi1) * math.cos(delta) + math.cos(phi1) * math.sin(delta) * math.cos(theta))
    lam2 = lam1 + math.atan2(
        math.sin(theta) * math.sin(delta) * math.cos(phi1), math.cos(delta) - math.sin(phi1) * math.sin(phi2)
    )
    lon2 = (math.degrees(lam2) + 540.0) % 360.0 - 180.0
    return math.degrees(phi2), lon2
