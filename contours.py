"""
contours.py – Seed selection, Moore boundary tracing and Douglas-Peucker.

Seeds are boundary edge pixels near a search center (image center or a
caller-supplied point such as a touch position), nearest first. Each
seed that is not yet part of a traced contour starts an 8-connected
Moore walk around the edge structure it belongs to.
"""

import logging
from typing import List, NamedTuple, Optional, Tuple

import numpy as np

log = logging.getLogger("snapgauge.contours")

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

# Clockwise in image coordinates (y down): E, SE, S, SW, W, NW, N, NE
DIRECTIONS = ((1, 0), (1, 1), (0, 1), (-1, 1), (-1, 0), (-1, -1), (0, -1), (1, -1))

# A walk returning to its start in fewer steps is a trivial loop
MIN_TRACE_STEPS = 8

DEFAULT_EPSILON = 1.0


class TracedContour(NamedTuple):
    points: np.ndarray  # (N, 2) int, x/y
    seed: Tuple[int, int]
    closed: bool


# ---------------------------------------------------------------------------
# Seeds
# ---------------------------------------------------------------------------

def boundary_mask(edges: np.ndarray) -> np.ndarray:
    """Edge pixels with at least one non-edge 8-neighbour (outside counts as non-edge)."""
    mask = edges > 0
    h, w = mask.shape
    p = np.pad(mask, 1, mode="constant", constant_values=False)
    interior = np.ones((h, w), dtype=bool)
    for dx, dy in DIRECTIONS:
        interior &= p[1 + dy:1 + dy + h, 1 + dx:1 + dx + w]
    return mask & ~interior


def find_seeds(
    edges: np.ndarray,
    center: Tuple[float, float],
    zone_fraction: float = 0.45,
    max_candidates: Optional[int] = None,
) -> List[Tuple[int, int]]:
    """Boundary pixels inside the square zone around center, nearest first, ties by (y, x)."""
    h, w = edges.shape
    ys, xs = np.nonzero(boundary_mask(edges))
    if len(xs) == 0:
        return []

    cx, cy = center
    half = zone_fraction * min(w, h)
    inside = (np.abs(xs - cx) <= half) & (np.abs(ys - cy) <= half)
    xs, ys = xs[inside], ys[inside]

    d2 = (xs - cx) ** 2 + (ys - cy) ** 2
    order = np.lexsort((xs, ys, d2))[:max_candidates]
    return [(int(xs[i]), int(ys[i])) for i in order]


# ---------------------------------------------------------------------------
# Moore tracing
# ---------------------------------------------------------------------------

def trace_boundary(
    mask: np.ndarray,
    start: Tuple[int, int],
    max_steps: Optional[int] = None,
    min_steps: int = MIN_TRACE_STEPS,
) -> Optional[TracedContour]:
    """
    Walk the boundary of the 8-connected structure containing `start`.

    The walk ends when it is about to repeat its first move from the
    start pixel, or after max_steps (4 * max(w, h) by default). Returns
    None for isolated pixels and trivial loops.
    """
    h, w = mask.shape
    if max_steps is None:
        max_steps = 4 * max(w, h)
    sx, sy = start

    def is_edge(x: int, y: int) -> bool:
        return 0 <= x < w and 0 <= y < h and bool(mask[y, x])

    # Start at direction 0, rotated so the cell before it is background
    search = None
    for k in range(8):
        bx, by = DIRECTIONS[(k + 7) % 8]
        if not is_edge(sx + bx, sy + by):
            search = k
            break
    if search is None:
        return None

    points = [(sx, sy)]
    x, y = sx, sy
    first_move = None
    closed = False
    steps = 0

    while steps < max_steps:
        move = None
        for i in range(8):
            d = (search + i) % 8
            dx, dy = DIRECTIONS[d]
            if is_edge(x + dx, y + dy):
                move = d
                break
        if move is None:
            return None  # isolated pixel

        if (x, y) == (sx, sy):
            if first_move is None:
                first_move = move
            elif move == first_move:
                closed = True
                break

        dx, dy = DIRECTIONS[move]
        x, y = x + dx, y + dy
        steps += 1
        if (x, y) != (sx, sy):
            points.append((x, y))
        search = (move + 6) % 8

    if closed and steps < min_steps:
        return None
    if not closed:
        log.debug("Trace from %s hit step cap (%d)", start, max_steps)
    return TracedContour(np.array(points, dtype=np.int64), (sx, sy), closed)


def trace_contours(
    edges: np.ndarray,
    center: Tuple[float, float],
    zone_fraction: float = 0.45,
    max_candidates: int = 400,
    max_contours: int = 40,
    min_points: int = 10,
) -> List[TracedContour]:
    """
    Trace structures from unvisited seeds, nearest first. max_candidates
    bounds the number of trace attempts; seeds already swallowed by an
    earlier trace are skipped without counting.
    """
    mask = edges > 0
    visited = np.zeros(mask.shape, dtype=bool)
    seeds = find_seeds(edges, center, zone_fraction)

    contours = []
    short = 0
    attempts = 0
    for sx, sy in seeds:
        if visited[sy, sx]:
            continue
        if attempts >= max_candidates:
            log.debug("Seed budget (%d traces) exhausted", max_candidates)
            break
        attempts += 1
        traced = trace_boundary(mask, (sx, sy))
        visited[sy, sx] = True
        if traced is None:
            continue
        visited[traced.points[:, 1], traced.points[:, 0]] = True
        if len(traced.points) < min_points:
            short += 1
            continue
        contours.append(traced)
        if len(contours) >= max_contours:
            break

    log.debug("Traced %d contours in %d attempts from %d seeds (%d too short)",
              len(contours), attempts, len(seeds), short)
    return contours


# ---------------------------------------------------------------------------
# Douglas-Peucker
# ---------------------------------------------------------------------------

def _segment_distances(pts: np.ndarray, a: np.ndarray, b: np.ndarray) -> np.ndarray:
    ab = b - a
    length2 = float(ab @ ab)
    if length2 == 0.0:
        return np.hypot(pts[:, 0] - a[0], pts[:, 1] - a[1])
    t = np.clip(((pts - a) @ ab) / length2, 0.0, 1.0)
    proj = a + t[:, None] * ab
    return np.hypot(pts[:, 0] - proj[:, 0], pts[:, 1] - proj[:, 1])


def simplify_polyline(points: np.ndarray, epsilon: float = DEFAULT_EPSILON) -> np.ndarray:
    """Douglas-Peucker on an open polyline; endpoints are always kept."""
    n = len(points)
    if n < 3:
        return np.array(points, copy=True)

    pts = np.asarray(points, dtype=np.float64)
    keep = np.zeros(n, dtype=bool)
    keep[0] = keep[-1] = True
    stack = [(0, n - 1)]
    while stack:
        s, e = stack.pop()
        if e - s < 2:
            continue
        dists = _segment_distances(pts[s + 1:e], pts[s], pts[e])
        i = int(np.argmax(dists))
        if dists[i] >= epsilon:
            split = s + 1 + i
            keep[split] = True
            stack.append((split, e))
            stack.append((s, split))
    return np.array(points)[keep]


def simplify_contour(points: np.ndarray, epsilon: float = DEFAULT_EPSILON) -> np.ndarray:
    """
    Douglas-Peucker on a closed contour. The loop is split at the vertex
    farthest from the first point and both halves are simplified.
    """
    n = len(points)
    if n < 4:
        return np.array(points, copy=True)

    pts = np.asarray(points, dtype=np.float64)
    far = int(np.argmax(np.hypot(pts[:, 0] - pts[0, 0], pts[:, 1] - pts[0, 1])))
    if far == 0:
        return np.array(points[:1], copy=True)

    first = simplify_polyline(points[:far + 1], epsilon)
    second = simplify_polyline(np.concatenate([points[far:], points[:1]]), epsilon)
    return np.concatenate([first, second[1:-1]])
