import math

import numpy as np
import pytest

import shapes


def _fan_area(poly):
    """Area of a convex polygon by summing fan triangles (Heron)."""
    total = 0.0
    p0 = poly[0]
    for p1, p2 in zip(poly[1:-1], poly[2:]):
        a = math.dist(p0, p1)
        b = math.dist(p1, p2)
        c = math.dist(p2, p0)
        s = (a + b + c) / 2
        total += math.sqrt(max(0.0, s * (s - a) * (s - b) * (s - c)))
    return total


def _circle(r=80.0, n=360, cx=0.0, cy=0.0):
    t = np.linspace(0, 2 * np.pi, n, endpoint=False)
    return np.stack([cx + r * np.cos(t), cy + r * np.sin(t)], axis=1)


def test_shoelace_matches_triangulation_for_convex_polygon():
    poly = [(0, 0), (7, -2), (12, 3), (10, 9), (3, 11), (-2, 5)]
    assert shapes.polygon_area(poly) == pytest.approx(_fan_area(poly))


def test_shoelace_matches_triangulation_for_concave_polygon():
    # L-shape split into two convex pieces
    l_shape = [(0, 0), (10, 0), (10, 4), (4, 4), (4, 10), (0, 10)]
    pieces = [(0, 0), (10, 0), (10, 4), (0, 4)], [(0, 4), (4, 4), (4, 10), (0, 10)]
    assert shapes.polygon_area(l_shape) == pytest.approx(sum(_fan_area(p) for p in pieces))
    assert shapes.polygon_area(l_shape[::-1]) == pytest.approx(64.0)


def test_perimeter_centroid_bbox_of_rectangle():
    rect = [(2, 3), (12, 3), (12, 8), (2, 8)]
    assert shapes.polygon_perimeter(rect) == pytest.approx(30.0)
    assert shapes.polygon_centroid(rect) == pytest.approx((7.0, 5.5))
    assert shapes.bounding_box(rect) == (2.0, 3.0, 10.0, 5.0)


def test_centroid_falls_back_to_vertex_mean_when_flat():
    line = [(0, 0), (4, 0), (8, 0)]
    assert shapes.polygon_centroid(line) == pytest.approx((4.0, 0.0))


def test_hull_is_convex_and_contains_every_point():
    rng = np.random.default_rng(42)
    pts = rng.integers(0, 200, size=(300, 2)).astype(float)
    hull = shapes.convex_hull(pts)
    assert shapes.is_convex(hull)
    # Every input point lies on the inner side of (or on) every hull edge
    n = len(hull)
    orientation = np.sign(shapes.signed_area(hull))
    for i in range(n):
        a, b = hull[i], hull[(i + 1) % n]
        cross = (b[0] - a[0]) * (pts[:, 1] - a[1]) - (b[1] - a[1]) * (pts[:, 0] - a[0])
        assert np.all(cross * orientation >= -1e-9)


def test_hull_anchor_is_lowest_then_leftmost():
    pts = [(5, 5), (0, 10), (10, 10), (5, 0), (5, 10)]
    hull = shapes.convex_hull(pts)
    assert tuple(hull[0]) == (0.0, 10.0)
    assert {tuple(p) for p in hull} == {(0.0, 10.0), (10.0, 10.0), (5.0, 0.0)}


def test_hull_of_collinear_points_is_its_extremes():
    hull = shapes.convex_hull([(0, 0), (1, 1), (2, 2), (3, 3)])
    assert {tuple(p) for p in hull} == {(0.0, 0.0), (3.0, 3.0)}


def test_min_enclosing_circle_covers_vertices():
    poly = [(0, 0), (10, 0), (10, 4), (0, 4)]
    cx, cy, r = shapes.min_enclosing_circle(poly)
    assert (cx, cy) == (5.0, 2.0)
    assert r == pytest.approx(math.hypot(5, 2))


def test_circle_is_round_and_rectangle_is_not():
    circle = shapes.analyze_shape(_circle())
    assert circle.circularity > 0.98
    assert circle.solidity == pytest.approx(1.0, abs=0.01)
    assert circle.aspect_ratio == pytest.approx(1.0, abs=0.01)
    assert circle.compactness == pytest.approx(4 * math.pi, rel=0.02)

    sliver = shapes.analyze_shape([(0, 0), (200, 0), (200, 10), (0, 10)])
    assert sliver.circularity < 0.4
    assert sliver.aspect_ratio == pytest.approx(20.0)
    assert sliver.extent == pytest.approx(1.0)
    assert sliver.orientation == pytest.approx(0.0, abs=1e-9)


def test_circularity_improves_with_resolution():
    coarse = shapes.analyze_shape(_circle(n=8)).circularity
    fine = shapes.analyze_shape(_circle(n=256)).circularity
    assert coarse < fine <= shapes.MAX_CIRCULARITY
    assert fine == pytest.approx(1.0, abs=0.001)


def test_concave_shape_has_lower_solidity():
    l_shape = shapes.analyze_shape([(0, 0), (10, 0), (10, 4), (4, 4), (4, 10), (0, 10)])
    assert l_shape.solidity < 0.9
    assert l_shape.convexity < 1.0


def test_hu_moments_are_translation_rotation_and_scale_invariant():
    poly = np.array([(0, 0), (40, 0), (40, 10), (10, 10), (10, 30), (0, 30)], dtype=float)
    base = shapes.analyze_shape(poly).hu

    moved = shapes.analyze_shape(poly + [120, 55]).hu
    assert moved == pytest.approx(base, abs=1e-9)

    theta = 0.7
    rot = np.array([[math.cos(theta), -math.sin(theta)], [math.sin(theta), math.cos(theta)]])
    rotated = shapes.analyze_shape(poly @ rot.T).hu
    assert rotated == pytest.approx(base, abs=1e-9)

    scaled = shapes.analyze_shape(poly * 3.0).hu
    assert scaled == pytest.approx(base, abs=1e-9)
    assert len(base) == 7


def test_orientation_of_tilted_rectangle():
    theta = math.radians(30)
    rect = np.array([(-50, -5), (50, -5), (50, 5), (-50, 5)], dtype=float)
    rot = np.array([[math.cos(theta), -math.sin(theta)], [math.sin(theta), math.cos(theta)]])
    shape = shapes.analyze_shape(rect @ rot.T)
    assert shape.orientation == pytest.approx(theta, abs=1e-6)


def test_degenerate_contour_does_not_raise():
    shape = shapes.analyze_shape([(0, 0), (5, 0), (10, 0), (5, 0)])
    assert shape.degenerate
    assert shape.area == 0.0
    assert shape.circularity == 0.0
    assert shape.compactness == 0.0
    assert len(shape.hu) == 7


def test_ratios_stay_in_tolerance_range():
    tiny_square = shapes.analyze_shape([(0, 0), (1, 0), (1, 1), (0, 1)])
    assert 0.0 <= tiny_square.circularity <= shapes.MAX_CIRCULARITY
    assert 0.0 <= tiny_square.solidity <= shapes.MAX_SOLIDITY
    assert 0.0 <= tiny_square.extent <= shapes.MAX_EXTENT
    assert tiny_square.compactness >= shapes.MIN_COMPACTNESS
