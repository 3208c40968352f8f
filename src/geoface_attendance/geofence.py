"""
Geofence validation using great-circle distance.
"""

import math
from typing import Optional

import structlog

from .constants import EARTH_RADIUS_KM
from .data_models import GeofenceResult, GeoPosition

# Initialize structured logger
logger = structlog.get_logger(__name__)


def haversine_km(
    lat1: float, lon1: float, lat2: float, lon2: float, radius_km: float = EARTH_RADIUS_KM
) -> float:
    """
    Great-circle distance between two points in kilometres.

    Parameters
    ----------
    lat1, lon1 : float
        First point in degrees.
    lat2, lon2 : float
        Second point in degrees.
    radius_km : float, default=EARTH_RADIUS_KM
        Sphere radius.

    Returns
    -------
    float
        Distance in kilometres; 0 for identical points, symmetric in its
        arguments.

    Examples
    --------
    >>> round(haversine_km(0.0, 0.0, 0.0, 1.0), 2)
    111.19
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = (
        math.sin(d_phi / 2.0) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2.0) ** 2
    )
    # Rounding can push a marginally above 1 for antipodal points
    a = min(1.0, max(0.0, a))
    return 2.0 * radius_km * math.asin(math.sqrt(a))


def distance_between(first: GeoPosition, second: GeoPosition) -> float:
    """Haversine distance between two positions in kilometres."""
    return haversine_km(first.latitude, first.longitude, second.latitude, second.longitude)


class GeofenceValidator:
    """
    Circular geofence with a single fixed radius.

    Parameters
    ----------
    anchor : GeoPosition
        Centre of the approved zone.
    radius_km : float
        Radius of the approved zone; the boundary itself is inside.
    """

    def __init__(self, anchor: GeoPosition, radius_km: float) -> None:
        if radius_km <= 0:
            raise ValueError(f"radius_km must be positive, got {radius_km}")
        self.anchor = anchor
        self.radius_km = radius_km

    def validate(
        self,
        position: GeoPosition,
        anchor: Optional[GeoPosition] = None,
        radius_km: Optional[float] = None,
    ) -> GeofenceResult:
        """
        Test whether ``position`` lies within ``radius_km`` of ``anchor``.

        The instance anchor and radius are used unless overridden.
        """
        anchor = anchor or self.anchor
        radius_km = self.radius_km if radius_km is None else radius_km

        distance_km = distance_between(position, anchor)
        valid = distance_km <= radius_km

        logger.info(
            "Geofence evaluated",
            distance_km=round(distance_km, 6),
            radius_km=radius_km,
            valid=valid,
            accuracy_m=position.accuracy,
        )

        return GeofenceResult(valid=valid, distance_km=distance_km, radius_km=radius_km)
