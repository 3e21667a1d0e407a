# geosocial/utils/haversine.py
# Great-circle distance in meters, plus the degree box used as a SQL pre-filter.

import math
from math import radians, sin, cos, sqrt, asin
from typing import Tuple

from geosocial.core.errors import ValidationError

# Earth's radius in meters
R = 6371000.0

# Meters per degree used for the bounding-box pre-filter. Slightly under the
# true value (~111195 m) so the box is never smaller than the search circle.
METERS_PER_DEGREE = 111000.0


def haversine(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great-circle distance between two points
    on the Earth (specified in decimal degrees) using the Haversine formula.

    Args:
        lat1: Latitude of point 1.
        lon1: Longitude of point 1.
        lat2: Latitude of point 2.
        lon2: Longitude of point 2.

    Returns:
        Distance between the two points in meters.
    """
    # Convert decimal degrees to radians
    lat1, lon1, lat2, lon2 = map(radians, [lat1, lon1, lat2, lon2])

    # Haversine formula
    dlon = lon2 - lon1
    dlat = lat2 - lat1

    a = sin(dlat / 2)**2 + cos(lat1) * cos(lat2) * sin(dlon / 2)**2
    c = 2 * asin(min(1.0, sqrt(a)))

    return R * c


def bounding_box(lat: float, lon: float, radius_m: float) -> Tuple[float, float]:
    """
    Convert a radius into (lat_range, lon_range) in degrees around (lat, lon).

    The longitude range widens with latitude; once the box touches a pole every
    longitude is in range and 180 is returned.
    """
    lat_range = radius_m / METERS_PER_DEGREE
    if abs(lat) + lat_range >= 90.0:
        return lat_range, 180.0

    cos_lat = cos(radians(lat))
    if cos_lat <= 1e-9:
        return lat_range, 180.0

    lon_range = radius_m / (METERS_PER_DEGREE * cos_lat)
    return lat_range, min(lon_range, 180.0)


def validate_coordinates(lat: float, lon: float) -> None:
    if lat is None or lon is None:
        raise ValidationError("Latitude and longitude are required.")
    if not (math.isfinite(lat) and math.isfinite(lon)):
        raise ValidationError("Latitude and longitude must be finite numbers.")
    if not -90.0 <= lat <= 90.0:
        raise ValidationError(f"Latitude {lat} is outside [-90, 90].")
    if not -180.0 <= lon <= 180.0:
        raise ValidationError(f"Longitude {lon} is outside [-180, 180].")
