"""
models.py – Shared types for the snapgauge pipeline.

Pixel buffers, detection parameters, shape/detection value types and
the error taxonomy. Stages never mutate these; they build new ones.
"""

import logging
import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional, Tuple, Union

import cv2
import numpy as np

log = logging.getLogger("snapgauge.models")

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

# Smallest frame the pipeline accepts (per side, in pixels)
MIN_FRAME_DIM = 16

STATUS_OK = "ok"
NO_OBJECT_FOUND = "no_object_found"
UNCALIBRATED = "uncalibrated"

# Millimetres per unit; every conversion goes through mm
UNIT_TO_MM = {"mm": 1.0, "cm": 10.0, "m": 1000.0, "in": 25.4}
SUPPORTED_UNITS = tuple(UNIT_TO_MM)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class VisionError(Exception):
    pass


class InputError(VisionError):
    """Malformed frame or parameters. The only hard failure of a pipeline call."""


class CalibrationRejected(VisionError):
    """Calibration inputs were inconsistent; nothing was applied."""


# ---------------------------------------------------------------------------
# Pixel buffer
# ---------------------------------------------------------------------------

class PixelBuffer:
    """Read-only 8-bit frame of shape (H, W, C) with C in 1, 3 or 4 (RGB/RGBA order)."""

    def __init__(self, data: np.ndarray):
        if not isinstance(data, np.ndarray):
            raise InputError("Pixel data must be a numpy array.")
        if data.dtype != np.uint8:
            raise InputError(f"Pixel data must be uint8, got {data.dtype}.")
        if data.ndim == 2:
            data = data[:, :, np.newaxis]
        if data.ndim != 3 or data.shape[2] not in (1, 3, 4):
            raise InputError(f"Unsupported pixel layout {data.shape}; expected HxW, HxWx3 or HxWx4.")

        height, width = data.shape[:2]
        if width < MIN_FRAME_DIM or height < MIN_FRAME_DIM:
            raise InputError(
                f"Frame too small: {width}x{height}px "
                f"(need at least {MIN_FRAME_DIM}x{MIN_FRAME_DIM})."
            )

        frozen = np.array(data, copy=True)
        frozen.setflags(write=False)
        self.data = frozen
        self.width = width
        self.height = height
        self.channels = data.shape[2]

    @classmethod
    def from_bytes(cls, image_bytes: bytes) -> "PixelBuffer":
        """Decode JPEG/PNG bytes into an RGB buffer."""
        if not image_bytes:
            raise InputError("Empty image payload.")
        arr = np.frombuffer(image_bytes, np.uint8)
        img = cv2.imdecode(arr, cv2.IMREAD_COLOR)
        if img is None:
            raise InputError("Could not decode image.")
        return cls(cv2.cvtColor(img, cv2.COLOR_BGR2RGB))

    @property
    def area(self) -> int:
        return self.width * self.height

    @property
    def center(self) -> Tuple[float, float]:
        return self.width / 2.0, self.height / 2.0

    @property
    def diagonal(self) -> float:
        return math.hypot(self.width, self.height)

    def __repr__(self) -> str:
        return f"PixelBuffer({self.width}x{self.height}x{self.channels})"


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------

class QualityProfile(str, Enum):
    FAST = "fast"
    BALANCED = "balanced"
    PRECISE = "precise"


@dataclass(frozen=True)
class ScoreWeights:
    size: float
    centrality: float
    shape: float
    edge: float

    @property
    def total(self) -> float:
        return self.size + self.centrality + self.shape + self.edge


WEIGHT_PROFILES = {
    "balanced": ScoreWeights(size=0.2, centrality=0.4, shape=0.3, edge=0.1),
    "prioritize-size": ScoreWeights(size=0.5, centrality=0.2, shape=0.2, edge=0.1),
    "prioritize-center": ScoreWeights(size=0.1, centrality=0.6, shape=0.2, edge=0.1),
}

# Per-quality overrides applied by DetectionParameters.for_quality()
_QUALITY_PRESETS = {
    QualityProfile.FAST: {"blur_sigma": 1.0, "l2_gradient": False, "equalize": False, "max_candidates": 150, "max_contours": 15},
    QualityProfile.BALANCED: {"blur_sigma": 1.4, "l2_gradient": True, "equalize": False, "max_candidates": 400, "max_contours": 40},
    QualityProfile.PRECISE: {"blur_sigma": 1.4, "l2_gradient": True, "equalize": True, "max_candidates": 1200, "max_contours": 80},
}


@dataclass(frozen=True)
class DetectionParameters:
    """Per-call detection configuration. Call validate() before use."""

    min_area_fraction: float = 0.01
    max_area_fraction: float = 0.80
    centrality_weight: Optional[float] = None
    circularity_bounds: Tuple[float, float] = (0.05, 1.2)
    solidity_bounds: Tuple[float, float] = (0.3, 1.1)
    aspect_ratio_bounds: Tuple[float, float] = (0.1, 10.0)
    canny_thresholds: Union[str, Tuple[float, float]] = "auto"
    max_detections: int = 1
    weight_profile: Union[str, ScoreWeights] = "balanced"
    quality: QualityProfile = QualityProfile.BALANCED

    # Preprocessing / edges
    blur_sigma: float = 1.4
    l2_gradient: bool = True
    equalize: bool = False
    close_edges: bool = True

    # Tracing bounds
    seed_zone_fraction: float = 0.45
    max_candidates: int = 400
    max_contours: int = 40
    min_contour_points: int = 10
    simplify_epsilon: float = 1.0

    # Selection
    min_dimension_px: int = 15
    center_radius_fraction: float = 0.8
    duplicate_iou: float = 0.7

    # Output
    precision: int = 2
    unit: str = "auto"

    @classmethod
    def for_quality(cls, quality: Union[str, QualityProfile], **overrides) -> "DetectionParameters":
        try:
            quality = QualityProfile(quality)
        except ValueError:
            raise InputError(f"Unknown quality profile '{quality}'.")
        preset = dict(_QUALITY_PRESETS[quality])
        preset.update(overrides)
        return replace(cls(quality=quality), **preset)

    def weights(self) -> ScoreWeights:
        if isinstance(self.weight_profile, ScoreWeights):
            w = self.weight_profile
        else:
            w = WEIGHT_PROFILES[self.weight_profile]
        if self.centrality_weight is not None:
            w = replace(w, centrality=self.centrality_weight)
        return w

    def validate(self) -> "DetectionParameters":
        if not 0.0 <= self.min_area_fraction < self.max_area_fraction <= 1.0:
            raise InputError(
                f"Area fractions must satisfy 0 <= min < max <= 1 "
                f"(got {self.min_area_fraction}, {self.max_area_fraction})."
            )
        for name in ("circularity_bounds", "solidity_bounds", "aspect_ratio_bounds"):
            lo, hi = getattr(self, name)
            if lo < 0 or lo > hi:
                raise InputError(f"{name} must be an increasing non-negative pair, got ({lo}, {hi}).")
        if isinstance(self.canny_thresholds, str):
            if self.canny_thresholds != "auto":
                raise InputError(f"canny_thresholds must be 'auto' or (low, high), got '{self.canny_thresholds}'.")
        else:
            low, high = self.canny_thresholds
            if low < 0 or high <= 0 or low > high:
                raise InputError(f"Canny thresholds must satisfy 0 <= low <= high, high > 0 (got {low}, {high}).")
        if self.max_detections < 1:
            raise InputError("max_detections must be at least 1.")
        if isinstance(self.weight_profile, str) and self.weight_profile not in WEIGHT_PROFILES:
            raise InputError(
                f"Unknown weight profile '{self.weight_profile}'. "
                f"Known: {', '.join(sorted(WEIGHT_PROFILES))}."
            )
        w = self.weights()
        if min(w.size, w.centrality, w.shape, w.edge) < 0 or w.total <= 0:
            raise InputError("Score weights must be non-negative with a positive sum.")
        if self.blur_sigma < 0:
            raise InputError("blur_sigma must be non-negative.")
        if self.max_candidates < 1 or self.max_contours < 1 or self.min_contour_points < 3:
            raise InputError("max_candidates/max_contours must be >= 1 and min_contour_points >= 3.")
        if not 0.0 < self.seed_zone_fraction <= 1.0 or not 0.0 < self.center_radius_fraction <= 1.0:
            raise InputError("seed_zone_fraction and center_radius_fraction must lie in (0, 1].")
        if self.simplify_epsilon < 0:
            raise InputError("simplify_epsilon must be non-negative.")
        if self.precision < 0:
            raise InputError("precision must be non-negative.")
        if self.unit not in SUPPORTED_UNITS + ("auto",):
            raise InputError(f"Unknown unit '{self.unit}'.")
        return self


# ---------------------------------------------------------------------------
# Geometry value types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ShapeDescriptor:
    area: float
    perimeter: float
    centroid: Tuple[float, float]
    bbox: Tuple[float, float, float, float]  # x, y, w, h
    hull: np.ndarray = field(repr=False, compare=False)
    min_circle: Tuple[float, float, float]  # cx, cy, r (approximate)
    hu: Tuple[float, ...]
    circularity: float
    solidity: float
    compactness: float
    extent: float
    aspect_ratio: float
    orientation: float  # radians
    convexity: float
    degenerate: bool = False

    @property
    def width(self) -> float:
        return self.bbox[2]

    @property
    def height(self) -> float:
        return self.bbox[3]

    def to_dict(self) -> dict:
        return {
            "area": self.area,
            "perimeter": self.perimeter,
            "centroid": list(self.centroid),
            "bbox": list(self.bbox),
            "min_circle": list(self.min_circle),
            "hu": list(self.hu),
            "circularity": self.circularity,
            "solidity": self.solidity,
            "compactness": self.compactness,
            "extent": self.extent,
            "aspect_ratio": self.aspect_ratio,
            "orientation": self.orientation,
            "convexity": self.convexity,
            "degenerate": self.degenerate,
        }


@dataclass(frozen=True)
class Detection:
    shape: ShapeDescriptor
    contour: np.ndarray = field(repr=False, compare=False)
    simplified: np.ndarray = field(repr=False, compare=False)
    seed: Tuple[int, int]
    edge_strength: float
    score: float
    confidence: float

    def to_dict(self, include_contour: bool = False) -> dict:
        d = {
            "shape": self.shape.to_dict(),
            "seed": list(self.seed),
            "edge_strength": round(self.edge_strength, 4),
            "score": round(self.score, 4),
            "confidence": round(self.confidence, 4),
        }
        if include_contour:
            d["contour"] = self.simplified.tolist()
        return d
