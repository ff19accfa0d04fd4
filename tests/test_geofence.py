import math

import pytest

from site_attendance.services.geofence import (
    EARTH_RADIUS_M,
    GeoPoint,
    Geofence,
    distance_between,
    effective_radius,
    haversine_distance,
    validate_geofence,
)


CENTER = GeoPoint(1.3521, 103.8198)
METERS_PER_DEGREE_LAT = EARTH_RADIUS_M * math.pi / 180


def north_of(point, meters):
    return GeoPoint(point.latitude + meters / METERS_PER_DEGREE_LAT, point.longitude)


def strict_fence(radius=100):
    return Geofence(center=CENTER, radius_meters=radius, strict_mode=True)


def lenient_fence(radius=100, variance=10):
    return Geofence(center=CENTER, radius_meters=radius, strict_mode=False, allowed_variance_meters=variance)


def test_worker_at_center_is_inside():
    result = validate_geofence(GeoPoint(1.3521, 103.8198), strict_fence())
    assert result.distance == 0
    assert result.inside_geofence is True
    assert result.is_valid is True
    assert result.message.startswith("Inside project geofence")


def test_worker_far_from_site_is_outside():
    result = validate_geofence(GeoPoint(1.4000, 103.9000), strict_fence())
    assert result.distance > 10000
    assert result.inside_geofence is False
    assert result.is_valid is False
    assert result.message.startswith("Outside project geofence by")


def test_distance_is_symmetric():
    points = [
        GeoPoint(1.3521, 103.8198),
        GeoPoint(1.4000, 103.9000),
        GeoPoint(-33.8688, 151.2093),
        GeoPoint(51.5074, -0.1278),
        GeoPoint(89.9, 179.9),
    ]
    for a in points:
        for b in points:
            assert distance_between(a, b) == pytest.approx(distance_between(b, a))


def test_haversine_along_meridian_matches_arc_length():
    # One degree of latitude is R * pi / 180
    assert haversine_distance(0, 0, 1, 0) == pytest.approx(METERS_PER_DEGREE_LAT)


def test_boundary_counts_as_inside():
    point = north_of(CENTER, 80)
    fence = strict_fence(radius=distance_between(point, CENTER))
    result = validate_geofence(point, fence)
    assert result.inside_geofence is True
    assert result.is_valid is True


@pytest.mark.parametrize("meters", [0, 25, 99, 101, 150, 2000])
def test_inside_flag_tracks_nominal_radius(meters):
    point = north_of(CENTER, meters)
    for fence in (strict_fence(), lenient_fence()):
        result = validate_geofence(point, fence)
        assert result.inside_geofence == (haversine_distance(
            point.latitude, point.longitude, CENTER.latitude, CENTER.longitude
        ) <= fence.radius_meters)


def test_lenient_fence_accepts_points_within_variance():
    result = validate_geofence(north_of(CENTER, 105), lenient_fence(variance=10))
    assert result.inside_geofence is False
    assert result.is_valid is True
    assert result.message.startswith("Within allowed variance")


def test_lenient_fence_rejects_points_past_variance():
    result = validate_geofence(north_of(CENTER, 115), lenient_fence(variance=10))
    assert result.is_valid is False
    assert result.message == "Outside project geofence by 5m"


def test_effective_radius():
    assert effective_radius(strict_fence()) == 100
    assert effective_radius(lenient_fence(variance=25)) == 125


def test_strict_fence_flags_low_gps_accuracy():
    result = validate_geofence(north_of(CENTER, 10), strict_fence(), accuracy_m=150, accuracy_threshold_m=100)
    assert result.inside_geofence is True
    assert result.is_valid is False
    assert "GPS accuracy too low" in result.message


def test_lenient_fence_ignores_gps_accuracy():
    result = validate_geofence(north_of(CENTER, 10), lenient_fence(), accuracy_m=500, accuracy_threshold_m=100)
    assert result.is_valid is True


@pytest.mark.parametrize("accuracy", [0, -5, None])
def test_unknown_accuracy_is_not_penalized(accuracy):
    result = validate_geofence(north_of(CENTER, 10), strict_fence(), accuracy_m=accuracy, accuracy_threshold_m=100)
    assert result.is_valid is True


def test_to_dict_exposes_result_fields():
    data = validate_geofence(CENTER, strict_fence()).to_dict()
    assert set(data) == {"inside_geofence", "distance", "is_valid", "message"}


def test_coordinates_out_of_range_are_rejected():
    with pytest.raises(ValueError):
        GeoPoint(91, 0)
    with pytest.raises(ValueError):
        GeoPoint(0, -181)


def test_fence_radius_must_be_positive():
    with pytest.raises(ValueError):
        Geofence(center=CENTER, radius_meters=0)
