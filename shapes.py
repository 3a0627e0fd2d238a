"""
shapes.py – Geometric descriptors of a closed contour.

Area/centroid by the shoelace formula, Graham-scan hull, approximate
enclosing circle, Hu invariants from polygon moments and the usual
shape ratios. Ratios are clamped to tolerance ranges because pixel-grid
quantization can push them slightly past their ideal bounds.
"""

import logging
import math
from typing import List, Tuple

import numpy as np

from models import ShapeDescriptor

log = logging.getLogger("snapgauge.shapes")

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

EPS = 1e-9

# Tolerance-extended upper bounds
MAX_CIRCULARITY = 1.2
MAX_SOLIDITY = 1.1
MAX_EXTENT = 1.1
MAX_CONVEXITY = 1.1
# perimeter^2 / area is 4*pi for a disc; allow the same overshoot as circularity
MIN_COMPACTNESS = 4.0 * math.pi / MAX_CIRCULARITY


# ---------------------------------------------------------------------------
# Polygon basics
# ---------------------------------------------------------------------------

def _xy(points) -> Tuple[np.ndarray, np.ndarray]:
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    return pts[:, 0], pts[:, 1]


def signed_area(points) -> float:
    x, y = _xy(points)
    if len(x) < 3:
        return 0.0
    xn, yn = np.roll(x, -1), np.roll(y, -1)
    return float(np.sum(x * yn - xn * y) / 2.0)


def polygon_area(points) -> float:
    return abs(signed_area(points))


def polygon_perimeter(points) -> float:
    x, y = _xy(points)
    if len(x) < 2:
        return 0.0
    return float(np.sum(np.hypot(np.roll(x, -1) - x, np.roll(y, -1) - y)))


def polygon_centroid(points) -> Tuple[float, float]:
    """Area-weighted centroid; vertex mean when the polygon has no area."""
    x, y = _xy(points)
    if len(x) == 0:
        return 0.0, 0.0
    a = signed_area(points)
    if abs(a) < EPS:
        return float(x.mean()), float(y.mean())
    xn, yn = np.roll(x, -1), np.roll(y, -1)
    cross = x * yn - xn * y
    cx = np.sum((x + xn) * cross) / (6.0 * a)
    cy = np.sum((y + yn) * cross) / (6.0 * a)
    return float(cx), float(cy)


def bounding_box(points) -> Tuple[float, float, float, float]:
    x, y = _xy(points)
    if len(x) == 0:
        return 0.0, 0.0, 0.0, 0.0
    return float(x.min()), float(y.min()), float(x.max() - x.min()), float(y.max() - y.min())


# ---------------------------------------------------------------------------
# Convex hull (Graham scan)
# ---------------------------------------------------------------------------

def _cross(o, a, b) -> float:
    return (a[0] - o[0]) * (b[1] - o[1]) - (a[1] - o[1]) * (b[0] - o[0])


def convex_hull(points) -> np.ndarray:
    """
    Graham scan. Anchor is the lowest point on screen (largest y), then
    the left-most; the rest are sorted by polar angle with distance as
    tie-break and popped on right or straight turns.

    Works in y-up coordinates internally; returns image coordinates,
    counter-clockwise on screen.
    """
    unique = sorted({(float(px), float(py)) for px, py in np.asarray(points, dtype=np.float64).reshape(-1, 2)})
    if len(unique) < 3:
        return np.array(unique, dtype=np.float64).reshape(-1, 2)

    up = [(px, -py) for px, py in unique]
    anchor = min(up, key=lambda p: (p[1], p[0]))
    rest = [p for p in up if p != anchor]
    rest.sort(key=lambda p: (
        math.atan2(p[1] - anchor[1], p[0] - anchor[0]),
        (p[0] - anchor[0]) ** 2 + (p[1] - anchor[1]) ** 2,
    ))

    hull: List[Tuple[float, float]] = [anchor]
    for p in rest:
        while len(hull) >= 2 and _cross(hull[-2], hull[-1], p) <= 0:
            hull.pop()
        hull.append(p)

    return np.array([(px, -py) for px, py in hull], dtype=np.float64)


def is_convex(polygon) -> bool:
    """All turns share one orientation (collinear turns allowed)."""
    pts = np.asarray(polygon, dtype=np.float64).reshape(-1, 2)
    n = len(pts)
    if n < 3:
        return True
    sign = 0
    for i in range(n):
        c = _cross(pts[i], pts[(i + 1) % n], pts[(i + 2) % n])
        if abs(c) < EPS:
            continue
        s = 1 if c > 0 else -1
        if sign == 0:
            sign = s
        elif s != sign:
            return False
    return True


def min_enclosing_circle(points) -> Tuple[float, float, float]:
    """
    Approximation: bounding-box center and the largest vertex distance.
    Encloses every vertex but is not the minimal (Welzl) circle.
    """
    x, y = _xy(points)
    if len(x) == 0:
        return 0.0, 0.0, 0.0
    bx, by, bw, bh = bounding_box(points)
    cx, cy = bx + bw / 2.0, by + bh / 2.0
    r = float(np.max(np.hypot(x - cx, y - cy)))
    return cx, cy, r


# ---------------------------------------------------------------------------
# Moments
# ---------------------------------------------------------------------------

def polygon_moments(points) -> dict:
    """Raw region moments m00..m03 of the polygon (Green's theorem)."""
    x, y = _xy(points)
    xn, yn = np.roll(x, -1), np.roll(y, -1)
    a = x * yn - xn * y

    m = {
        "m00": np.sum(a) / 2.0,
        "m10": np.sum((x + xn) * a) / 6.0,
        "m01": np.sum((y + yn) * a) / 6.0,
        "m20": np.sum((x * x + x * xn + xn * xn) * a) / 12.0,
        "m11": np.sum((x * yn + 2 * x * y + 2 * xn * yn + xn * y) * a) / 24.0,
        "m02": np.sum((y * y + y * yn + yn * yn) * a) / 12.0,
        "m30": np.sum((x ** 3 + x * x * xn + x * xn * xn + xn ** 3) * a) / 20.0,
        "m21": np.sum((x * x * (3 * y + yn) + 2 * x * xn * (y + yn) + xn * xn * (y + 3 * yn)) * a) / 60.0,
        "m12": np.sum((y * y * (3 * x + xn) + 2 * y * yn * (x + xn) + yn * yn * (x + 3 * xn)) * a) / 60.0,
        "m03": np.sum((y ** 3 + y * y * yn + y * yn * yn + yn ** 3) * a) / 20.0,
    }
    # Clockwise traversal flips every sign
    if m["m00"] < 0:
        m = {k: -v for k, v in m.items()}
    return {k: float(v) for k, v in m.items()}


def point_moments(points) -> dict:
    """Moments of the vertex set itself; fallback for zero-area contours."""
    x, y = _xy(points)
    return {
        "m00": float(len(x)),
        "m10": float(np.sum(x)), "m01": float(np.sum(y)),
        "m20": float(np.sum(x * x)), "m11": float(np.sum(x * y)), "m02": float(np.sum(y * y)),
        "m30": float(np.sum(x ** 3)), "m21": float(np.sum(x * x * y)),
        "m12": float(np.sum(x * y * y)), "m03": float(np.sum(y ** 3)),
    }


def central_moments(m: dict) -> dict:
    m00 = m["m00"]
    if abs(m00) < EPS:
        return {k: 0.0 for k in ("mu20", "mu11", "mu02", "mu30", "mu21", "mu12", "mu03")}
    cx, cy = m["m10"] / m00, m["m01"] / m00
    return {
        "mu20": m["m20"] - cx * m["m10"],
        "mu11": m["m11"] - cx * m["m01"],
        "mu02": m["m02"] - cy * m["m01"],
        "mu30": m["m30"] - 3 * cx * m["m20"] + 2 * cx * cx * m["m10"],
        "mu21": m["m21"] - 2 * cx * m["m11"] - cy * m["m20"] + 2 * cx * cx * m["m01"],
        "mu12": m["m12"] - 2 * cy * m["m11"] - cx * m["m02"] + 2 * cy * cy * m["m10"],
        "mu03": m["m03"] - 3 * cy * m["m02"] + 2 * cy * cy * m["m01"],
    }


def hu_moments(m: dict, mu: dict) -> Tuple[float, ...]:
    """Seven Hu invariants, log-compressed as sign(h) * log(|h| + 1)."""
    m00 = m["m00"]
    if abs(m00) < EPS:
        return (0.0,) * 7

    def eta(key: str, order: int) -> float:
        return mu[key] / m00 ** (1 + order / 2.0)

    n20, n11, n02 = eta("mu20", 2), eta("mu11", 2), eta("mu02", 2)
    n30, n21, n12, n03 = eta("mu30", 3), eta("mu21", 3), eta("mu12", 3), eta("mu03", 3)

    a = n30 + n12
    b = n21 + n03
    h = (
        n20 + n02,
        (n20 - n02) ** 2 + 4 * n11 ** 2,
        (n30 - 3 * n12) ** 2 + (3 * n21 - n03) ** 2,
        a ** 2 + b ** 2,
        (n30 - 3 * n12) * a * (a ** 2 - 3 * b ** 2) + (3 * n21 - n03) * b * (3 * a ** 2 - b ** 2),
        (n20 - n02) * (a ** 2 - b ** 2) + 4 * n11 * a * b,
        (3 * n21 - n03) * a * (a ** 2 - 3 * b ** 2) - (n30 - 3 * n12) * b * (3 * a ** 2 - b ** 2),
    )
    return tuple(float(math.copysign(math.log(abs(v) + 1.0), v)) for v in h)


def orientation(mu: dict) -> float:
    return 0.5 * math.atan2(2.0 * mu["mu11"], mu["mu20"] - mu["mu02"])


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------

def _clamp(v: float, lo: float, hi: float) -> float:
    return float(min(max(v, lo), hi))


def analyze_shape(points) -> ShapeDescriptor:
    """
    Compute every descriptor for one closed contour.

    Degenerate contours (fewer than 3 distinct points, zero area or zero
    perimeter) do not raise: they get zero ratios and degenerate=True.
    """
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    with np.errstate(divide="raise", invalid="raise", over="raise"):
        area = polygon_area(pts)
        perimeter = polygon_perimeter(pts)
        centroid = polygon_centroid(pts)
        bbox = bounding_box(pts)
        hull = convex_hull(pts)
        hull_area = polygon_area(hull)
        hull_perimeter = polygon_perimeter(hull)
        circle = min_enclosing_circle(pts)

        degenerate = len(hull) < 3 or area < EPS or perimeter < EPS
        m = point_moments(pts) if degenerate else polygon_moments(pts)
        mu = central_moments(m)
        hu = hu_moments(m, mu)
        theta = orientation(mu)

        _, _, bw, bh = bbox
        if degenerate:
            circularity = solidity = compactness = extent = convexity = 0.0
        else:
            circularity = _clamp(4.0 * math.pi * area / perimeter ** 2, 0.0, MAX_CIRCULARITY)
            solidity = _clamp(area / hull_area, 0.0, MAX_SOLIDITY) if hull_area > EPS else 0.0
            compactness = max(perimeter ** 2 / area, MIN_COMPACTNESS)
            extent = _clamp(area / (bw * bh), 0.0, MAX_EXTENT) if bw * bh > EPS else 0.0
            convexity = _clamp(hull_perimeter / perimeter, 0.0, MAX_CONVEXITY)
        aspect_ratio = bw / bh if bh > EPS else 0.0

    if degenerate:
        log.debug("Degenerate contour (%d points, area=%.2f, perimeter=%.2f)", len(pts), area, perimeter)

    return ShapeDescriptor(
        area=area,
        perimeter=perimeter,
        centroid=centroid,
        bbox=bbox,
        hull=hull,
        min_circle=circle,
        hu=hu,
        circularity=circularity,
        solidity=solidity,
        compactness=float(compactness),
        extent=extent,
        aspect_ratio=float(aspect_ratio),
        orientation=float(theta),
        convexity=convexity,
        degenerate=bool(degenerate),
    )
