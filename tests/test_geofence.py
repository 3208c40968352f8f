import math

import pytest

from geoface_attendance.constants import EARTH_RADIUS_KM
from geoface_attendance.data_models import GeoPosition
from geoface_attendance.geofence import GeofenceValidator, distance_between, haversine_km


def point_east_of(origin: GeoPosition, distance_km: float) -> GeoPosition:
    """A point ``distance_km`` due east along the equator."""
    return GeoPosition(
        latitude=origin.latitude,
        longitude=origin.longitude + math.degrees(distance_km / EARTH_RADIUS_KM),
    )


class TestHaversine:
    def test_distance_to_self_is_zero(self, anchor):
        assert distance_between(anchor, anchor) == 0.0

    def test_distance_is_symmetric(self, anchor):
        other = GeoPosition(latitude=48.8584, longitude=2.2945)

        assert distance_between(anchor, other) == pytest.approx(distance_between(other, anchor))

    def test_known_distance(self):
        # One degree of longitude on the equator
        assert haversine_km(0.0, 0.0, 0.0, 1.0) == pytest.approx(111.195, abs=1e-3)

    def test_antipodal_points(self):
        assert haversine_km(0.0, 0.0, 0.0, 180.0) == pytest.approx(math.pi * EARTH_RADIUS_KM)


class TestGeofenceValidator:
    def test_anchor_is_inside(self, anchor):
        result = GeofenceValidator(anchor, 0.5).validate(anchor)

        assert result.valid is True
        assert result.distance_km == 0.0

    def test_boundary_is_inclusive(self):
        origin = GeoPosition(latitude=0.0, longitude=0.0)
        edge = point_east_of(origin, 0.5)
        radius = haversine_km(0.0, 0.0, edge.latitude, edge.longitude)

        result = GeofenceValidator(origin, radius).validate(edge)

        assert result.valid is True

    def test_outside_radius_is_rejected(self):
        origin = GeoPosition(latitude=0.0, longitude=0.0)

        result = GeofenceValidator(origin, 0.5).validate(point_east_of(origin, 0.6))

        assert result.valid is False
        assert result.distance_km == pytest.approx(0.6)

    def test_overrides_anchor_and_radius(self, anchor):
        origin = GeoPosition(latitude=0.0, longitude=0.0)
        validator = GeofenceValidator(anchor, 0.1)

        result = validator.validate(point_east_of(origin, 2.0), anchor=origin, radius_km=3.0)

        assert result.valid is True
        assert result.radius_km == 3.0

    def test_rejects_non_positive_radius(self, anchor):
        with pytest.raises(ValueError):
            GeofenceValidator(anchor, 0.0)
