"""Grid calculator — GPS coordinates for a square lattice around a business.

Points are laid out with great-circle destination math rather than flat
degree offsets, so the lattice stays square at any latitude and radius.
"""

import logging
import math
from typing import Any

from geogrid.modules.local_grid.types import GridConfig, GridPoint

logger = logging.getLogger(__name__)

EARTH_RADIUS_MILES = 3958.8

MIN_GRID_SIZE = 1
MAX_GRID_SIZE = 15
MAX_RADIUS_MILES = 50.0

# Provider default is 17 (street level), which returns nothing in sparse areas.
DEFAULT_ZOOM = 14

COORDINATE_PRECISION = 7


class GridValidationError(ValueError):
    """Raised when a grid configuration is outside the supported range."""


def calculate_destination(
    lat: float,
    lng: float,
    bearing: float,
    distance_miles: float,
) -> tuple[float, float]:
    """Return the point reached from (lat, lng) along a great circle.

    Args:
        lat: Starting latitude in degrees.
        lng: Starting longitude in degrees.
        bearing: Direction in degrees (0 = north, 90 = east).
        distance_miles: Distance to travel in miles.

    Returns:
        Tuple of (latitude, longitude) in degrees.
    """
    lat1 = math.radians(lat)
    lng1 = math.radians(lng)
    bearing_rad = math.radians(bearing)
    angular = distance_miles / EARTH_RADIUS_MILES

    lat2 = math.asin(
        math.sin(lat1) * math.cos(angular)
        + math.cos(lat1) * math.sin(angular) * math.cos(bearing_rad)
    )
    lng2 = lng1 + math.atan2(
        math.sin(bearing_rad) * math.sin(angular) * math.cos(lat1),
        math.cos(angular) - math.sin(lat1) * math.sin(lat2),
    )
    return math.degrees(lat2), math.degrees(lng2)


def calculate_distance(
    lat1: float,
    lng1: float,
    lat2: float,
    lng2: float,
) -> float:
    """Haversine distance in miles between two coordinates."""
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)

    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(d_lng / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_MILES * c


def validate_grid_config(config: GridConfig) -> None:
    """Raise GridValidationError if size or radius is out of range."""
    if not MIN_GRID_SIZE <= config.grid_size <= MAX_GRID_SIZE:
        raise GridValidationError(
            f"Grid size must be between {MIN_GRID_SIZE} and {MAX_GRID_SIZE}, "
            f"got {config.grid_size}."
        )
    if not 0 < config.radius_miles <= MAX_RADIUS_MILES:
        raise GridValidationError(
            f"Radius must be greater than 0 and at most {MAX_RADIUS_MILES:g} miles, "
            f"got {config.radius_miles}."
        )


def _grid_spacing(config: GridConfig) -> float:
    if config.grid_size == 1:
        return 0.0
    return (config.radius_miles * 2) / (config.grid_size - 1)


def generate_grid_points(config: GridConfig) -> list[GridPoint]:
    """Generate ``grid_size ** 2`` points centred on the configured location.

    The grid is a square of side ``2 * radius_miles``. Starting from the
    top-left corner (north then west of the centre by the radius), each row
    steps south by the spacing and each column steps east. A 7x7 grid with a
    5-mile radius spaces points ~1.67 miles apart and puts the centre at
    (3, 3). Points are returned in row-major order.

    Raises:
        GridValidationError: If ``grid_size`` is not in 1..15 or
            ``radius_miles`` is not in (0, 50].
    """
    validate_grid_config(config)

    if config.grid_size == 1:
        return [
            GridPoint(
                row=0,
                col=0,
                lat=round(config.center_lat, COORDINATE_PRECISION),
                lng=round(config.center_lng, COORDINATE_PRECISION),
            )
        ]

    spacing = _grid_spacing(config)
    north_lat, north_lng = calculate_destination(
        config.center_lat, config.center_lng, 0, config.radius_miles
    )
    corner_lat, corner_lng = calculate_destination(
        north_lat, north_lng, 270, config.radius_miles
    )

    points: list[GridPoint] = []
    for row in range(config.grid_size):
        row_lat, row_lng = calculate_destination(
            corner_lat, corner_lng, 180, row * spacing
        )
        for col in range(config.grid_size):
            lat, lng = calculate_destination(row_lat, row_lng, 90, col * spacing)
            points.append(GridPoint(
                row=row,
                col=col,
                lat=round(lat, COORDINATE_PRECISION),
                lng=round(lng, COORDINATE_PRECISION),
            ))

    logger.debug(
        "Generated %d grid points (%dx%d, %.2f mi spacing) around %.5f,%.5f",
        len(points), config.grid_size, config.grid_size, spacing,
        config.center_lat, config.center_lng,
    )
    return points


def get_grid_center(grid_size: int) -> tuple[int, int]:
    """Return the (row, col) of the centre cell."""
    center = grid_size // 2
    return center, center


def is_grid_center(point: GridPoint, grid_size: int) -> bool:
    return (point.row, point.col) == get_grid_center(grid_size)


def get_grid_stats(config: GridConfig) -> dict[str, Any]:
    """Summarise a grid configuration: point count, diameter, spacing."""
    return {
        "total_points": config.grid_size * config.grid_size,
        "diameter": config.radius_miles * 2,
        "spacing": round(_grid_spacing(config), 2),
        "center_index": config.grid_size // 2,
    }


def format_coordinate_for_api(
    lat: float,
    lng: float,
    zoom: int = DEFAULT_ZOOM,
) -> str:
    """Render ``"lat,lng,zoom"`` with 7 decimal places for the maps API."""
    return f"{lat:.7f},{lng:.7f},{zoom}"


def grid_points_to_api_format(
    points: list[GridPoint],
    zoom: int = DEFAULT_ZOOM,
) -> list[dict[str, Any]]:
    """Pair each grid cell with its API coordinate string."""
    return [
        {
            "row": p.row,
            "col": p.col,
            "coordinates": format_coordinate_for_api(p.lat, p.lng, zoom),
        }
        for p in points
    ]
