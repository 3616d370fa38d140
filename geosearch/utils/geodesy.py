from math import radians, degrees, sin, cos, tan, atan, atan2, sqrt, asin, isfinite
from typing import Any, Optional

# Earth's mean radius in kilometers
R = 6371.0

# WGS-84 reference ellipsoid
WGS84_A = 6378137.0  # semi-major axis (m)
WGS84_F = 1 / 298.257223563  # flattening
WGS84_B = 6356752.314245  # semi-minor axis (m)

VINCENTY_TOLERANCE = 1e-12
VINCENTY_MAX_ITERATIONS = 100


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and isfinite(value)


def is_valid_lat_lng(lat: Any, lon: Any) -> bool:
    """True when both values are finite numbers inside the WGS-84 ranges."""
    if not _is_number(lat) or not _is_number(lon):
        return False
    return -90 <= lat <= 90 and -180 <= lon <= 180


def haversine(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great-circle distance between two points
    on the Earth (specified in decimal degrees) using the Haversine formula.

    Returns:
        Distance between the two points in kilometers.
    """
    lat1, lon1, lat2, lon2 = map(radians, [lat1, lon1, lat2, lon2])

    dlon = lon2 - lon1
    dlat = lat2 - lat1

    a = sin(dlat / 2)**2 + cos(lat1) * cos(lat2) * sin(dlon / 2)**2
    # Rounding can push a marginally above 1 for antipodal points
    c = 2 * asin(sqrt(min(1.0, a)))

    return R * c


def vincenty(lat1: float, lon1: float, lat2: float, lon2: float) -> Optional[float]:
    """
    Inverse Vincenty solution on the WGS-84 ellipsoid.

    Returns:
        Distance in kilometers, or None when the iteration does not converge
        (nearly antipodal points).
    """
    L = radians(lon2 - lon1)
    U1 = atan((1 - WGS84_F) * tan(radians(lat1)))
    U2 = atan((1 - WGS84_F) * tan(radians(lat2)))
    sin_u1, cos_u1 = sin(U1), cos(U1)
    sin_u2, cos_u2 = sin(U2), cos(U2)

    lam = L
    for _ in range(VINCENTY_MAX_ITERATIONS):
        sin_lam = sin(lam)
        cos_lam = cos(lam)
        sin_sigma = sqrt(
            (cos_u2 * sin_lam) ** 2
            + (cos_u1 * sin_u2 - sin_u1 * cos_u2 * cos_lam) ** 2
        )
        if sin_sigma == 0:
            return 0.0  # coincident points

        cos_sigma = sin_u1 * sin_u2 + cos_u1 * cos_u2 * cos_lam
        sigma = atan2(sin_sigma, cos_sigma)
        sin_alpha = cos_u1 * cos_u2 * sin_lam / sin_sigma
        cos_sq_alpha = 1 - sin_alpha ** 2
        if cos_sq_alpha != 0:
            cos_2sigma_m = cos_sigma - 2 * sin_u1 * sin_u2 / cos_sq_alpha
        else:
            cos_2sigma_m = 0.0  # equatorial line

        C = WGS84_F / 16 * cos_sq_alpha * (4 + WGS84_F * (4 - 3 * cos_sq_alpha))
        lam_prev = lam
        lam = L + (1 - C) * WGS84_F * sin_alpha * (
            sigma + C * sin_sigma * (cos_2sigma_m + C * cos_sigma * (-1 + 2 * cos_2sigma_m ** 2))
        )
        if abs(lam - lam_prev) <= VINCENTY_TOLERANCE:
            break
    else:
        return None

    u_sq = cos_sq_alpha * (WGS84_A ** 2 - WGS84_B ** 2) / (WGS84_B ** 2)
    A = 1 + u_sq / 16384 * (4096 + u_sq * (-768 + u_sq * (320 - 175 * u_sq)))
    B = u_sq / 1024 * (256 + u_sq * (-128 + u_sq * (74 - 47 * u_sq)))
    delta_sigma = B * sin_sigma * (
        cos_2sigma_m + B / 4 * (
            cos_sigma * (-1 + 2 * cos_2sigma_m ** 2)
            - B / 6 * cos_2sigma_m * (-3 + 4 * sin_sigma ** 2) * (-3 + 4 * cos_2sigma_m ** 2)
        )
    )

    meters = WGS84_B * A * (sigma - delta_sigma)
    return meters / 1000


def initial_bearing(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Initial great-circle bearing from point 1 to point 2, in degrees [0, 360)."""
    dlon = radians(lon2 - lon1)
    lat1, lat2 = radians(lat1), radians(lat2)

    y = sin(dlon) * cos(lat2)
    x = cos(lat1) * sin(lat2) - sin(lat1) * cos(lat2) * cos(dlon)

    return (degrees(atan2(y, x)) + 360) % 360
