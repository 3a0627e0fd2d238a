"""
measure.py – Real-unit measurement of a detection.

  1. Pick the calibration (or fall back to pixel units, tagged "uncalibrated")
  2. Convert width/height/perimeter/diagonal (÷ scale) and area (÷ scale²)
  3. Estimate depth with a pluggable strategy (heuristic by default)
  4. Box-model volume / surface area, aspect-corrected shape ratios

Depth, volume and surface area are heuristic estimates, not measurements.
"""

import logging
import math
from typing import Optional, Tuple

import numpy as np

import calibration
from calibration import CalibrationState
from models import Detection, InputError, UNCALIBRATED, UNIT_TO_MM

log = logging.getLogger("snapgauge.measure")

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

# Plausible real-world size range for a calibrated measurement (mm)
MIN_PLAUSIBLE_MM = 0.1
MAX_PLAUSIBLE_MM = 10000.0

# Heuristic depth is clamped into this range (mm)
MIN_DEPTH_MM = 3.0
MAX_DEPTH_MM = 600.0

# Stand-in calibration figures when measuring in pixels
UNCALIBRATED_CONFIDENCE = 0.5
UNCALIBRATED_ERROR = 0.5

DEFAULT_PRECISION = 2


# ---------------------------------------------------------------------------
# Units
# ---------------------------------------------------------------------------

def _check_unit(unit: str) -> None:
    if unit not in UNIT_TO_MM:
        raise InputError(f"Unknown unit '{unit}'.")


def convert(value: float, from_unit: str, to_unit: str) -> float:
    _check_unit(from_unit)
    _check_unit(to_unit)
    return value * UNIT_TO_MM[from_unit] / UNIT_TO_MM[to_unit]


def convert_area(value: float, from_unit: str, to_unit: str) -> float:
    _check_unit(from_unit)
    _check_unit(to_unit)
    return value * (UNIT_TO_MM[from_unit] / UNIT_TO_MM[to_unit]) ** 2


def pick_unit(largest_mm: float) -> str:
    if largest_mm >= 1000:
        return "m"
    if largest_mm >= 10:
        return "cm"
    return "mm"


# ---------------------------------------------------------------------------
# Depth strategies
# ---------------------------------------------------------------------------

class DepthEstimate:
    def __init__(self, depth_mm: Optional[float], reliability: float, method: str):
        self.depth_mm = depth_mm
        self.reliability = reliability
        self.method = method

    @property
    def supported(self) -> bool:
        return self.depth_mm is not None


class DepthStrategy:
    """Interface: estimate object depth (mm) from a single frame."""

    name = "base"

    def estimate(self, detection: Detection, gray: np.ndarray) -> DepthEstimate:
        raise NotImplementedError


class HeuristicDepth(DepthStrategy):
    """
    Monocular guess blending four weak cues: position in frame, relative
    size, local contrast and distance from center. Each cue carries its
    own reliability; reliabilities are renormalized to weights.
    """

    name = "heuristic"

    def signals(self, detection: Detection, gray: np.ndarray) -> dict:
        height, width = gray.shape
        shape = detection.shape
        cx, cy = shape.centroid

        nx = (cx - width / 2.0) / (width / 2.0)
        ny = (cy - height / 2.0) / (height / 2.0)
        norm_dist = min(1.0, math.hypot(nx, ny) / math.sqrt(2.0))
        rel_size = shape.area / float(width * height)

        x, y, w, h = (int(round(v)) for v in shape.bbox)
        patch = gray[max(0, y):max(0, y) + max(1, h), max(0, x):max(0, x) + max(1, w)]
        contrast = min(1.0, float(patch.std()) / 128.0) if patch.size else 0.0

        return {
            "perspective": (25.0 + math.hypot(nx, ny) * 175.0, max(0.1, 1.0 - norm_dist)),
            "size": (60.0 + math.log(rel_size * 1000.0 + 1.0) * 200.0, max(0.1, 1.0 - abs(rel_size - 0.1) / 0.1)),
            "focus": (80.0 + contrast * 300.0, max(0.1, contrast)),
            "distance": (100.0 + norm_dist * 150.0, max(0.1, 1.0 - norm_dist)),
        }

    def estimate(self, detection: Detection, gray: np.ndarray) -> DepthEstimate:
        signals = self.signals(detection, gray)
        total = sum(rel for _, rel in signals.values())
        depth = sum(value * rel / total for value, rel in signals.values())

        conf = detection.confidence
        depth *= 1.0 - (1.0 - conf) * 0.1
        depth = min(MAX_DEPTH_MM, max(MIN_DEPTH_MM, depth))
        log.debug("Heuristic depth %.1fmm from %s", depth,
                  ", ".join(f"{k}={v:.0f}" for k, (v, _) in signals.items()))
        return DepthEstimate(depth, total / len(signals), self.name)


class UnsupportedDepth(DepthStrategy):
    """Depth sources that need hardware or multiple views this service does not have."""

    def estimate(self, detection: Detection, gray: np.ndarray) -> DepthEstimate:
        return DepthEstimate(None, 0.0, f"unsupported:{self.name}")


class StereoDepth(UnsupportedDepth):
    name = "stereo"


class StructuredLightDepth(UnsupportedDepth):
    name = "structured-light"


class TimeOfFlightDepth(UnsupportedDepth):
    name = "time-of-flight"


DEPTH_STRATEGIES = {
    s.name: s for s in (HeuristicDepth, StereoDepth, StructuredLightDepth, TimeOfFlightDepth)
}


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

class MeasurementResult:
    def __init__(
        self,
        width: float,
        height: float,
        area: float,
        perimeter: float,
        diagonal: float,
        unit: str,
        confidence: float,
        error_margin: float,
        calibration_method: str,
        circularity: float,
        solidity: float,
        compactness: float,
        depth: Optional[float] = None,
        volume: Optional[float] = None,
        surface_area: Optional[float] = None,
        depth_method: str = "none",
        plausible: bool = True,
        pixels_per_unit: Optional[float] = None,
        calibration_ref: Optional[str] = None,
        calibrated_at: Optional[float] = None,
        precision: int = DEFAULT_PRECISION,
    ):
        def r(v: Optional[float]) -> Optional[float]:
            return None if v is None else round(float(v), precision)

        self.width = r(width)
        self.height = r(height)
        self.area = r(area)
        self.perimeter = r(perimeter)
        self.diagonal = r(diagonal)
        self.depth = r(depth)
        self.volume = r(volume)
        self.surface_area = r(surface_area)
        self.depth_method = depth_method
        self.circularity = r(circularity)
        self.solidity = r(solidity)
        self.compactness = r(compactness)
        self.unit = unit
        self.confidence = r(confidence)
        self.error_margin = r(error_margin)
        self.calibration_method = calibration_method
        self.plausible = plausible
        self.pixels_per_unit = r(pixels_per_unit)
        # Which CalibrationState produced the scale (reference name, creation time)
        self.calibration_ref = calibration_ref
        self.calibrated_at = calibrated_at

    @property
    def calibrated(self) -> bool:
        return self.calibration_method != UNCALIBRATED

    def to_dict(self) -> dict:
        return dict(self.__dict__)

    def __eq__(self, other) -> bool:
        return isinstance(other, MeasurementResult) and self.__dict__ == other.__dict__

    def __repr__(self) -> str:
        return (f"MeasurementResult({self.width}x{self.height}{self.unit}, "
                f"calibration={self.calibration_method}, confidence={self.confidence})")


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------

def corrected_ratios(detection: Detection) -> Tuple[float, float, float]:
    """Circularity, solidity, compactness compensated for elongation and confidence."""
    shape = detection.shape
    w, h = shape.width, shape.height
    ar = max(w, h) / min(w, h) if min(w, h) > 0 else 1.0
    conf = detection.confidence
    circularity = shape.circularity * min(1.0, 1.0 / ar) * conf
    solidity = shape.solidity * (0.5 + 0.5 * min(1.0, ar / 2.0)) * conf
    compactness = shape.compactness * min(1.0, 1.0 / math.sqrt(ar)) * conf
    return circularity, solidity, compactness


def measure_detection(
    detection: Detection,
    gray: np.ndarray,
    state: Optional[CalibrationState] = None,
    unit: str = "auto",
    precision: int = DEFAULT_PRECISION,
    depth_strategy: Optional[DepthStrategy] = None,
    now: Optional[float] = None,
) -> MeasurementResult:
    """
    Measure one detection. With no usable calibration the result is in
    pixels and tagged "uncalibrated"; depth needs a scale and is omitted.
    """
    shape = detection.shape
    w_px, h_px = shape.width, shape.height
    circularity, solidity, compactness = corrected_ratios(detection)

    reason = calibration.check_state(state, now)
    if reason is not None:
        log.info("Measuring in pixels (%s)", reason)
        aspect = w_px / h_px if h_px > 0 else 1.0
        conf = _confidence(UNCALIBRATED_CONFIDENCE, detection.confidence, aspect, w_px)
        return MeasurementResult(
            width=w_px,
            height=h_px,
            area=shape.area,
            perimeter=shape.perimeter,
            diagonal=math.hypot(w_px, h_px),
            unit="px",
            confidence=conf,
            error_margin=min(0.5, UNCALIBRATED_ERROR + (1.0 - detection.confidence) * 0.5),
            calibration_method=UNCALIBRATED,
            circularity=circularity,
            solidity=solidity,
            compactness=compactness,
            depth_method=UNCALIBRATED,
            precision=precision,
        )

    ppm = state.pixels_per_unit
    width_mm = w_px / ppm
    height_mm = h_px / ppm
    if unit == "auto":
        unit = pick_unit(max(width_mm, height_mm))
    _check_unit(unit)

    strategy = depth_strategy or HeuristicDepth()
    depth = strategy.estimate(detection, gray)

    def lin(mm: float) -> float:
        return convert(mm, "mm", unit)

    width, height = lin(width_mm), lin(height_mm)
    depth_val = volume = surface = None
    if depth.supported:
        depth_val = lin(depth.depth_mm)
        volume = width * height * depth_val
        surface = 2.0 * (width * height + width * depth_val + height * depth_val)

    aspect = width_mm / height_mm if height_mm > 0 else 1.0
    plausible = all(MIN_PLAUSIBLE_MM <= v <= MAX_PLAUSIBLE_MM for v in (width_mm, height_mm))
    if not plausible:
        log.warning("Implausible size %.3f x %.3f mm", width_mm, height_mm)

    result = MeasurementResult(
        width=width,
        height=height,
        area=convert_area(shape.area / ppm ** 2, "mm", unit),
        perimeter=lin(shape.perimeter / ppm),
        diagonal=lin(math.hypot(width_mm, height_mm)),
        unit=unit,
        confidence=_confidence(state.confidence, detection.confidence, aspect, width_mm),
        error_margin=min(0.5, state.error_margin + (1.0 - detection.confidence) * 0.5),
        calibration_method=state.method,
        circularity=circularity,
        solidity=solidity,
        compactness=compactness,
        depth=depth_val,
        volume=volume,
        surface_area=surface,
        depth_method=depth.method,
        plausible=plausible,
        pixels_per_unit=ppm,
        calibration_ref=state.reference,
        calibrated_at=state.timestamp,
        precision=precision,
    )
    log.info("Measured: %.2f x %.2f %s (calibration=%s, confidence=%.2f)",
             result.width, result.height, unit, state.method, result.confidence)
    return result


def _confidence(cal_conf: float, det_conf: float, aspect: float, width: float) -> float:
    shape_regularity = max(0.0, 1.0 - abs(aspect - 1.0) * 0.3)
    size_factor = min(1.0, width / 100.0)
    c = cal_conf * det_conf * (0.8 + shape_regularity * 0.2) * (0.9 + size_factor * 0.1)
    return min(0.99, max(0.1, c))
