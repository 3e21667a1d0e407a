from typing import Tuple

from geosocial.utils.haversine import haversine


class AreaBucketer:
    """
    Spatial quantization for the nearby query cache.

    Precision guide (approximate at equator):
    - 2 decimal places: ~1.11 km
    - 3 decimal places: ~111 m
    """

    @staticmethod
    def cell_center(lat: float, lon: float, precision: int = 2) -> Tuple[float, float]:
        # + 0.0 folds -0.0 into 0.0 so both sides of the equator share a key
        return round(lat, precision) + 0.0, round(lon, precision) + 0.0

    @staticmethod
    def get_area_code(lat: float, lon: float, precision: int = 2) -> str:
        """
        Generates the bucket code of a coordinate by rounding it.

        Args:
            lat: Latitude
            lon: Longitude
            precision: Number of decimal places to round to.

        Returns:
            String representation of the area bucket (e.g., "40.00:-73.00")
        """
        c_lat, c_lon = AreaBucketer.cell_center(lat, lon, precision)
        return f"{c_lat:.{precision}f}:{c_lon:.{precision}f}"

    @staticmethod
    def cell_half_diagonal(lat: float, lon: float, precision: int = 2) -> float:
        """Meters from a cell's center to its farthest corner."""
        c_lat, c_lon = AreaBucketer.cell_center(lat, lon, precision)
        half = 0.5 * 10 ** (-precision)
        north = haversine(c_lat, c_lon, min(c_lat + half, 90.0), c_lon + half)
        south = haversine(c_lat, c_lon, max(c_lat - half, -90.0), c_lon + half)
        return max(north, south) + 1.0
