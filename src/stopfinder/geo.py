"""Great-circle distance, bearing and nearest-stop ranking."""

import logging
import math
from typing import Iterable, List, Optional

from .models import Location, RankedStop, Stop

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6371000

COMPASS_POINTS = ("N", "NE", "E", "SE", "S", "SW", "W", "NW")


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Distance in metres between two lat/lon points."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def initial_bearing(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Forward azimuth from point 1 to point 2, in degrees [0, 360)."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_lambda = math.radians(lon2 - lon1)

    y = math.sin(d_lambda) * math.cos(phi2)
    x = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(d_lambda)
    return (math.degrees(math.atan2(y, x)) + 360) % 360


def bearing_to_compass(bearing: float) -> str:
    """
    Bucket a bearing into one of 8 compass points starting at N.

    Halves round up, so 22.5 degrees is NE.
    """
    index = math.floor(bearing / 45 + 0.5)
    return COMPASS_POINTS[index % 8]


def _is_valid(value: Optional[float]) -> bool:
    return value is not None and math.isfinite(value)


def rank_stops(origin: Location, stops: Iterable[Stop], limit: int = 5) -> List[RankedStop]:
    """
    Rank stops by distance from the origin.

    Args:
        origin: User location.
        stops: Candidate stops.
        limit: Number of nearest stops to return.

    Returns:
        Up to ``limit`` RankedStop objects, nearest first. Stops without usable
        coordinates are left out.

    Raises:
        ValueError: If the origin coordinates are not finite numbers.
    """
    if not (_is_valid(origin.latitude) and _is_valid(origin.longitude)):
        raise ValueError(f"Invalid origin coordinates: {origin.latitude}, {origin.longitude}")

    ranked: List[RankedStop] = []
    skipped = 0

    for stop in stops:
        if not (_is_valid(stop.latitude) and _is_valid(stop.longitude)):
            skipped += 1
            continue

        distance = haversine_distance(origin.latitude, origin.longitude, stop.latitude, stop.longitude)
        bearing = initial_bearing(origin.latitude, origin.longitude, stop.latitude, stop.longitude)
        ranked.append(
            RankedStop(
                stop=stop,
                distance=distance,
                bearing=bearing,
                compass=bearing_to_compass(bearing),
            )
        )

    if skipped:
        logger.debug(f"Skipped {skipped} stops without valid coordinates")

    ranked.sort(key=lambda r: r.distance)
    return ranked[:limit]
