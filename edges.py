"""
edges.py – Canny edge detection on a blurred grayscale frame.

Steps:
  1. Sobel 3x3 gradients (L2 or L1 magnitude, atan2 direction)
  2. Non-maximum suppression along 4 quantized directions
  3. Double threshold + 8-connected hysteresis
  4. Optional 3x3 closing to bridge single-pixel gaps

Thresholds are either explicit (gradient magnitude units) or derived
from the magnitude histogram.
"""

import logging
from typing import NamedTuple, Optional, Tuple, Union

import numpy as np

log = logging.getLogger("snapgauge.edges")

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

# Fractions of total pixel mass, counted from the strongest gradient down
HIGH_PERCENTILE = 0.06
LOW_PERCENTILE = 0.16

# Floors relative to the strongest gradient; they take over on clean frames
# where the gradient mass is smaller than the percentile targets
HIGH_FLOOR_RATIO = 0.20
LOW_FLOOR_RATIO = 0.08

EDGE = 255
_WEAK = 128

NEIGHBOURS_8 = ((-1, -1), (-1, 0), (-1, 1), (0, -1), (0, 1), (1, -1), (1, 0), (1, 1))


class CannyResult(NamedTuple):
    edges: np.ndarray
    low: float
    high: float
    edge_pixels: int


# ---------------------------------------------------------------------------
# Gradients
# ---------------------------------------------------------------------------

def sobel_gradients(gray: np.ndarray, l2: bool = True) -> Tuple[np.ndarray, np.ndarray]:
    """Return (magnitude, direction). Borders use replicated pixels."""
    img = np.asarray(gray, dtype=np.float64)
    h, w = img.shape
    p = np.pad(img, 1, mode="edge")

    def at(dy: int, dx: int) -> np.ndarray:
        return p[1 + dy:1 + dy + h, 1 + dx:1 + dx + w]

    gx = (at(-1, 1) + 2 * at(0, 1) + at(1, 1)) - (at(-1, -1) + 2 * at(0, -1) + at(1, -1))
    gy = (at(1, -1) + 2 * at(1, 0) + at(1, 1)) - (at(-1, -1) + 2 * at(-1, 0) + at(-1, 1))

    magnitude = np.hypot(gx, gy) if l2 else np.abs(gx) + np.abs(gy)
    direction = np.arctan2(gy, gx)
    return magnitude, direction


# ---------------------------------------------------------------------------
# Non-maximum suppression
# ---------------------------------------------------------------------------

def non_max_suppression(magnitude: np.ndarray, direction: np.ndarray) -> np.ndarray:
    """
    Keep pixels that peak along their gradient. The comparison is strict
    against the forward neighbour and non-strict against the backward one,
    so a two-pixel plateau keeps exactly one pixel.
    """
    h, w = magnitude.shape
    p = np.pad(magnitude, 1, mode="constant")

    def at(dy: int, dx: int) -> np.ndarray:
        return p[1 + dy:1 + dy + h, 1 + dx:1 + dx + w]

    angle = np.rad2deg(direction) % 180.0
    sector = np.zeros((h, w), dtype=np.int8)          # 0 deg
    sector[(angle >= 22.5) & (angle < 67.5)] = 1      # 45 deg
    sector[(angle >= 67.5) & (angle < 112.5)] = 2     # 90 deg
    sector[(angle >= 112.5) & (angle < 157.5)] = 3    # 135 deg

    # (forward, backward) neighbour per sector in image coordinates (y down)
    forward = np.select(
        [sector == 0, sector == 1, sector == 2, sector == 3],
        [at(0, 1), at(1, 1), at(1, 0), at(1, -1)],
    )
    backward = np.select(
        [sector == 0, sector == 1, sector == 2, sector == 3],
        [at(0, -1), at(-1, -1), at(-1, 0), at(-1, 1)],
    )

    keep = (magnitude > 0) & (magnitude > forward) & (magnitude >= backward)
    out = np.where(keep, magnitude, 0.0)
    out[0, :] = 0
    out[-1, :] = 0
    out[:, 0] = 0
    out[:, -1] = 0
    return out


# ---------------------------------------------------------------------------
# Thresholds
# ---------------------------------------------------------------------------

def adaptive_thresholds(
    magnitude: np.ndarray,
    high_percentile: float = HIGH_PERCENTILE,
    low_percentile: float = LOW_PERCENTILE,
) -> Tuple[float, float]:
    """
    Derive (low, high) from a 256-bin histogram of magnitude / max.
    Walking down from the top bin, `high` is where the accumulated count
    reaches high_percentile of all pixels and `low` where it reaches
    low_percentile. Both are floored relative to the max magnitude.
    """
    max_mag = float(magnitude.max()) if magnitude.size else 0.0
    if max_mag <= 0:
        return 0.0, 0.0

    bins = np.minimum((magnitude / max_mag * 255.0).astype(np.intp), 255)
    hist = np.bincount(bins.ravel(), minlength=256)
    from_top = np.cumsum(hist[::-1])
    total = float(magnitude.size)

    def bin_for(fraction: float) -> int:
        idx = int(np.searchsorted(from_top, total * fraction))
        return 255 - min(idx, 255)

    high = bin_for(high_percentile) / 255.0 * max_mag
    low = bin_for(low_percentile) / 255.0 * max_mag

    high = max(high, HIGH_FLOOR_RATIO * max_mag)
    low = min(max(low, LOW_FLOOR_RATIO * max_mag), high)
    return low, high


# ---------------------------------------------------------------------------
# Hysteresis
# ---------------------------------------------------------------------------

def _dilate(mask: np.ndarray) -> np.ndarray:
    h, w = mask.shape
    p = np.pad(mask, 1, mode="constant", constant_values=False)
    out = mask.copy()
    for dy, dx in NEIGHBOURS_8:
        out |= p[1 + dy:1 + dy + h, 1 + dx:1 + dx + w]
    return out


def _erode(mask: np.ndarray) -> np.ndarray:
    h, w = mask.shape
    p = np.pad(mask, 1, mode="constant", constant_values=True)
    out = mask.copy()
    for dy, dx in NEIGHBOURS_8:
        out &= p[1 + dy:1 + dy + h, 1 + dx:1 + dx + w]
    return out


def hysteresis(suppressed: np.ndarray, low: float, high: float) -> np.ndarray:
    """Strong pixels (>= high) plus weak ones (>= low) 8-connected to them."""
    h, w = suppressed.shape
    labels = np.zeros((h, w), dtype=np.uint8)
    strong = suppressed >= high
    weak = (suppressed >= low) & ~strong & (suppressed > 0)
    labels[strong] = EDGE
    labels[weak] = _WEAK

    # Only strong pixels touching a weak one can grow
    seeds = strong & _dilate(weak)
    stack = list(zip(*np.nonzero(seeds)))
    while stack:
        y, x = stack.pop()
        for dy, dx in NEIGHBOURS_8:
            ny, nx = y + dy, x + dx
            if 0 <= ny < h and 0 <= nx < w and labels[ny, nx] == _WEAK:
                labels[ny, nx] = EDGE
                stack.append((ny, nx))

    labels[labels == _WEAK] = 0
    return labels


def close_gaps(edges: np.ndarray) -> np.ndarray:
    """3x3 morphological closing; only ever adds pixels to a thin edge map."""
    mask = edges > 0
    closed = _erode(_dilate(mask)) | mask
    return np.where(closed, EDGE, 0).astype(np.uint8)


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------

def canny(
    blurred: np.ndarray,
    thresholds: Union[str, Tuple[float, float], None] = "auto",
    l2: bool = True,
    close: bool = False,
) -> CannyResult:
    magnitude, direction = sobel_gradients(blurred, l2=l2)
    suppressed = non_max_suppression(magnitude, direction)

    if thresholds is None or isinstance(thresholds, str):
        low, high = adaptive_thresholds(magnitude)
    else:
        low, high = float(thresholds[0]), float(thresholds[1])

    if high <= 0:
        log.debug("No gradient in frame; empty edge map")
        edges = np.zeros(magnitude.shape, dtype=np.uint8)
        return CannyResult(edges, 0.0, 0.0, 0)

    edges = hysteresis(suppressed, low, high)
    if close:
        edges = close_gaps(edges)

    count = int(np.count_nonzero(edges))
    log.debug("Canny: thresholds %.2f/%.2f, %d edge pixels", low, high, count)
    return CannyResult(edges, low, high, count)


def detect_edges(blurred: np.ndarray, thresholds: Optional[Tuple[float, float]] = None, l2: bool = True) -> np.ndarray:
    """Edge map only (0/255); adaptive thresholds when none are given."""
    return canny(blurred, thresholds if thresholds is not None else "auto", l2=l2).edges
