# geosearch/services/distance_calculator.py
# Great-circle distance, bearing and travel-time helpers with a process-wide memo.

import math
import threading
from typing import Dict, Optional, Tuple, Union

import structlog

from geosearch.models.dto import Coordinate, DistanceMethod, TravelMode
from geosearch.utils.geodesy import haversine, initial_bearing, is_valid_lat_lng, vincenty

logger = structlog.get_logger(__name__)

COMPASS_POINTS = (
    "N", "NNE", "NE", "ENE", "E", "ESE", "SE", "SSE",
    "S", "SSW", "SW", "WSW", "W", "WNW", "NW", "NNW",
)

# Average speeds in km/h
TRAVEL_SPEEDS: Dict[TravelMode, float] = {
    TravelMode.WALKING: 5,
    TravelMode.CYCLING: 15,
    TravelMode.DRIVING: 40,  # urban average
    TravelMode.TRANSIT: 25,
}

MEMO_PRECISION = 6

MemoKey = Tuple[str, float, float, float, float]


def _is_valid(point: Optional[Coordinate]) -> bool:
    return point is not None and is_valid_lat_lng(point.latitude, point.longitude)


def _is_missing(value: Optional[float]) -> bool:
    return value is None or isinstance(value, bool) or math.isnan(value)


class DistanceCalculator:
    """Computes distances between coordinates, memoizing by rounded position.

    The memo is never evicted. Entities and user positions are few compared to
    available memory, and the calculator lives as long as the process.
    """

    def __init__(self):
        self._memo: Dict[MemoKey, float] = {}
        self._lock = threading.Lock()

    def _memo_key(self, method: DistanceMethod, a: Coordinate, b: Coordinate) -> MemoKey:
        return (
            method.value,
            round(a.latitude, MEMO_PRECISION),
            round(a.longitude, MEMO_PRECISION),
            round(b.latitude, MEMO_PRECISION),
            round(b.longitude, MEMO_PRECISION),
        )

    def distance(
        self,
        a: Optional[Coordinate],
        b: Optional[Coordinate],
        method: Union[DistanceMethod, str] = DistanceMethod.FAST,
    ) -> Optional[float]:
        """
        Distance in kilometers rounded to 2 decimals.

        Returns None when either coordinate is missing or invalid; callers treat
        that as "distance unavailable" and carry on.
        """
        if not _is_valid(a) or not _is_valid(b):
            return None
        method = DistanceMethod(method)

        key = self._memo_key(method, a, b)
        with self._lock:
            cached = self._memo.get(key)
        if cached is not None:
            return cached

        km = None
        if method is DistanceMethod.PRECISE:
            km = vincenty(a.latitude, a.longitude, b.latitude, b.longitude)
            if km is None:
                logger.info(
                    "vincenty_not_converged",
                    origin=(a.latitude, a.longitude),
                    destination=(b.latitude, b.longitude),
                )
        if km is None:
            km = haversine(a.latitude, a.longitude, b.latitude, b.longitude)

        result = round(km, 2)
        with self._lock:
            self._memo[key] = result
        return result

    def bearing(self, a: Optional[Coordinate], b: Optional[Coordinate]) -> Optional[float]:
        """Initial bearing from a to b in degrees [0, 360), or None for invalid input."""
        if not _is_valid(a) or not _is_valid(b):
            return None
        return initial_bearing(a.latitude, a.longitude, b.latitude, b.longitude)

    def clear_cache(self) -> int:
        with self._lock:
            size = len(self._memo)
            self._memo.clear()
        return size

    def cache_stats(self) -> Dict[str, int]:
        with self._lock:
            return {"size": len(self._memo)}


def compass_direction(bearing: Optional[float]) -> str:
    """Map a bearing to one of the 16 compass points."""
    if _is_missing(bearing):
        return ""
    index = int(math.floor(bearing / 22.5 + 0.5)) % 16
    return COMPASS_POINTS[index]


def estimate_travel_time(distance_km: Optional[float], mode: Union[TravelMode, str] = TravelMode.DRIVING) -> Optional[int]:
    """Rough travel time in whole minutes at a fixed average speed per mode."""
    if _is_missing(distance_km):
        return None
    try:
        speed = TRAVEL_SPEEDS[TravelMode(mode)]
    except ValueError:
        speed = TRAVEL_SPEEDS[TravelMode.DRIVING]
    return int(round(distance_km / speed * 60))


def format_distance(km: Optional[float]) -> str:
    if _is_missing(km):
        return "N/A"
    if km < 1:
        return f"{round(km * 1000)}m"
    if km < 10:
        return f"{km:.1f}km"
    return f"{round(km)}km"


def format_travel_time(minutes: Optional[float]) -> str:
    if _is_missing(minutes):
        return "N/A"
    if minutes < 1:
        return "< 1min"
    if minutes < 60:
        return f"{round(minutes)}min"

    hours, mins = divmod(int(round(minutes)), 60)
    if mins == 0:
        return f"{hours}h"
    return f"{hours}h {mins}min"


def bounding_box(center: Coordinate, radius_km: float) -> Optional[Dict[str, float]]:
    """Approximate lat/lng box around a center (1 degree ~ 111 km)."""
    if not _is_valid(center):
        return None
    lat_delta = radius_km / 111
    lng_delta = radius_km / (111 * math.cos(math.radians(center.latitude)) or 1e-12)
    return {
        "min_lat": center.latitude - lat_delta,
        "max_lat": center.latitude + lat_delta,
        "min_lng": center.longitude - lng_delta,
        "max_lng": center.longitude + lng_delta,
    }


# Shared instance for callers that do not wire their own
distance_calculator = DistanceCalculator()
