"""
frame.py – Frame conversion: grayscale, separable Gaussian blur, tile equalization.

All functions take arrays/buffers and return new float64 arrays in the
0..255 range. Inputs are never modified.
"""

import logging
import math

import numpy as np

from models import PixelBuffer

log = logging.getLogger("snapgauge.frame")

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

# ITU-R BT.709 luminance weights (R, G, B)
BT709_WEIGHTS = (0.2126, 0.7152, 0.0722)

DEFAULT_SIGMA = 1.4
# Upper bound on sigma keeps the kernel (and per-frame cost) bounded
MAX_SIGMA = 8.0

EQUALIZE_TILE_PX = 64


# ---------------------------------------------------------------------------
# Grayscale
# ---------------------------------------------------------------------------

def to_grayscale(buf: PixelBuffer) -> np.ndarray:
    data = buf.data.astype(np.float64)
    if buf.channels == 1:
        return data[:, :, 0]
    r_w, g_w, b_w = BT709_WEIGHTS
    return r_w * data[:, :, 0] + g_w * data[:, :, 1] + b_w * data[:, :, 2]


# ---------------------------------------------------------------------------
# Gaussian blur
# ---------------------------------------------------------------------------

def gaussian_kernel(sigma: float) -> np.ndarray:
    """Normalized 1-D kernel of odd size ceil(6*sigma)|1. sigma <= 0 gives identity."""
    if sigma <= 0:
        return np.ones(1, dtype=np.float64)
    if sigma > MAX_SIGMA:
        log.debug("Clamping blur sigma %.2f to %.2f", sigma, MAX_SIGMA)
        sigma = MAX_SIGMA
    size = int(math.ceil(sigma * 6)) | 1
    half = size // 2
    x = np.arange(-half, half + 1, dtype=np.float64)
    kernel = np.exp(-(x * x) / (2.0 * sigma * sigma))
    return kernel / kernel.sum()


def _convolve_rows(img: np.ndarray, kernel: np.ndarray) -> np.ndarray:
    half = len(kernel) // 2
    padded = np.pad(img, ((0, 0), (half, half)), mode="edge")
    width = img.shape[1]
    out = np.zeros(img.shape, dtype=np.float64)
    for i, k in enumerate(kernel):
        out += k * padded[:, i:i + width]
    return out


def gaussian_blur(gray: np.ndarray, sigma: float = DEFAULT_SIGMA) -> np.ndarray:
    """Separable blur: horizontal pass, then vertical, border-replicate."""
    kernel = gaussian_kernel(sigma)
    if len(kernel) == 1:
        return np.array(gray, dtype=np.float64, copy=True)
    horizontal = _convolve_rows(np.asarray(gray, dtype=np.float64), kernel)
    return _convolve_rows(horizontal.T, kernel).T


# ---------------------------------------------------------------------------
# Contrast equalization
# ---------------------------------------------------------------------------

def equalize_tiles(gray: np.ndarray, tile: int = EQUALIZE_TILE_PX) -> np.ndarray:
    """
    Per-tile histogram equalization. Each tile is remapped through its
    own cumulative distribution; no interpolation between tiles.
    """
    levels = np.clip(np.rint(gray), 0, 255).astype(np.intp)
    out = np.empty(gray.shape, dtype=np.float64)
    height, width = gray.shape
    for y0 in range(0, height, tile):
        for x0 in range(0, width, tile):
            block = levels[y0:y0 + tile, x0:x0 + tile]
            hist = np.bincount(block.ravel(), minlength=256)
            cdf = np.cumsum(hist) / float(block.size)
            out[y0:y0 + tile, x0:x0 + tile] = cdf[block] * 255.0
    return out


# ---------------------------------------------------------------------------
# Combined
# ---------------------------------------------------------------------------

def prepare_frame(buf: PixelBuffer, sigma: float = DEFAULT_SIGMA, equalize: bool = False):
    """Return (gray, blurred). gray is kept for contrast sampling downstream."""
    gray = to_grayscale(buf)
    source = equalize_tiles(gray) if equalize else gray
    blurred = gaussian_blur(source, sigma)
    log.debug("Prepared %s (sigma=%.2f, equalize=%s)", buf, sigma, equalize)
    return gray, blurred
