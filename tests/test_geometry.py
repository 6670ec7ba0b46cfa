"""
Tests for the geodesic helpers
"""

import pytest

from app.services.geometry import haversine, inside_circle, inside_polygon, closest_point_on_path, distance_to_path

SQUARE = [
    {"latitude": 0.0, "longitude": 0.0},
    {"latitude": 0.0, "longitude": 1.0},
    {"latitude": 1.0, "longitude": 1.0},
    {"latitude": 1.0, "longitude": 0.0},
]


def point(latitude, longitude):
    return {"latitude": latitude, "longitude": longitude}


class TestHaversine:
    def test_one_degree_of_latitude(self):
        assert haversine(point(0, 0), point(1, 0)) == pytest.approx(111195, rel=1e-3)

    def test_same_point(self):
        assert haversine(point(45, -75), point(45, -75)) == 0


class TestShapes:
    def test_inside_polygon(self):
        assert inside_polygon(point(0.5, 0.5), SQUARE) is True
        assert inside_polygon(point(1.5, 0.5), SQUARE) is False

    def test_degenerate_polygon(self):
        assert inside_polygon(point(0, 0), SQUARE[:2]) is False

    def test_inside_circle(self):
        assert inside_circle(point(0.001, 0), point(0, 0), 200) is True
        assert inside_circle(point(0.01, 0), point(0, 0), 200) is False


class TestPath:
    def test_distance_to_segment(self):
        path = [point(0, 0), point(0, 1)]
        assert distance_to_path(point(0.001, 0.5), path) == pytest.approx(111.2, rel=1e-2)

    def test_distance_beyond_segment_end(self):
        path = [point(0, 0), point(0, 1)]
        assert distance_to_path(point(0, 1.001), path) == pytest.approx(111.2, rel=1e-2)

    def test_closest_point_on_single_point_path(self):
        assert closest_point_on_path(point(1, 1), [point(0, 0)]) == point(0, 0)

    def test_empty_path(self):
        assert distance_to_path(point(0, 0), []) == float("inf")
