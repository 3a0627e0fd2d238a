"""
calibration.py – Pixel to millimetre scale estimation.

Three strategies produce a CalibrationState:
  * manual     – caller states the real width of a detection
  * reference  – detection matched against a catalog object of known size
  * automatic  – size guessed from relative area and centrality (heuristic,
                 confidence capped at 0.8)

A state is only usable while it is fresh (24h), confident (>= 0.7) and
its scale is sane. Callers check with is_valid()/check_state(); the
measurement step falls back to pixel units otherwise.
"""

import base64
import binascii
import json
import logging
import math
import time
from dataclasses import dataclass, asdict
from typing import List, Optional, Tuple, Union

from models import CalibrationRejected, Detection, SUPPORTED_UNITS, UNIT_TO_MM

log = logging.getLogger("snapgauge.calibration")

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

MIN_CONFIDENCE = 0.7
VALIDITY_WINDOW_S = 24 * 3600
MAX_PIXELS_PER_MM = 1000.0
# Tolerated clock difference for timestamps ahead of "now"
CLOCK_SKEW_S = 300.0

MANUAL_ERROR_MARGIN = 0.02
LINEAR_REFERENCE_ERROR = 0.01
AUTO_ERROR_MARGIN = 0.15
AUTO_MAX_CONFIDENCE = 0.8
DEFAULT_ASPECT_TOLERANCE = 0.15

# (area fraction above which, estimated size in mm), checked in order
AUTO_SIZE_TABLE = ((0.3, 200.0), (0.15, 150.0), (0.05, 100.0), (0.0, 50.0))

METHOD_MANUAL = "manual"
METHOD_REFERENCE = "reference"
METHOD_AUTOMATIC = "automatic"


@dataclass(frozen=True)
class CalibrationState:
    pixels_per_unit: float  # pixels per millimetre
    confidence: float
    method: str
    timestamp: float  # epoch seconds
    error_margin: float
    reference: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class ReferenceObject:
    name: str
    size_mm: float  # long side (diameter for round objects)
    aspect_ratio: Optional[float]  # long/short; None for linear references
    accuracy: float
    description: str = ""


REFERENCE_CATALOG = {r.name: r for r in (
    ReferenceObject("euro-1", 23.25, 1.0, 0.98, "1 euro coin"),
    ReferenceObject("euro-2", 25.75, 1.0, 0.98, "2 euro coin"),
    ReferenceObject("quarter-us", 24.26, 1.0, 0.98, "US quarter"),
    ReferenceObject("penny-us", 19.05, 1.0, 0.98, "US penny"),
    ReferenceObject("credit-card", 85.60, 1.586, 0.99, "ISO/IEC 7810 ID-1 card"),
    ReferenceObject("business-card", 89.0, 1.75, 0.95, "Standard business card"),
    ReferenceObject("aa-battery", 50.5, 3.52, 0.97, "AA battery"),
    ReferenceObject("usb-connector", 12.0, 2.67, 0.96, "USB-A plug"),
    ReferenceObject("sim-card", 15.0, 1.2, 0.94, "Nano SIM"),
    ReferenceObject("a4-paper-width", 210.0, 1.414, 0.99, "A4 sheet, short side"),
    ReferenceObject("a4-paper-height", 297.0, 1.414, 0.99, "A4 sheet, long side"),
    ReferenceObject("post-it", 76.0, 1.0, 0.92, "Square sticky note"),
    ReferenceObject("ruler-10cm", 100.0, None, 0.99, "10 cm ruler segment"),
    ReferenceObject("ruler-15cm", 150.0, None, 0.99, "15 cm ruler segment"),
)}


# ---------------------------------------------------------------------------
# Validity
# ---------------------------------------------------------------------------

def check_state(state: Optional[CalibrationState], now: Optional[float] = None) -> Optional[str]:
    """None if usable, otherwise why not."""
    if state is None:
        return "no calibration"
    now = time.time() if now is None else now
    if state.confidence < MIN_CONFIDENCE:
        return f"confidence {state.confidence:.2f} below {MIN_CONFIDENCE}"
    if not math.isfinite(state.timestamp):
        return "timestamp is not a number"
    if state.timestamp - now > CLOCK_SKEW_S:
        return "timestamp in the future"
    if now - state.timestamp >= VALIDITY_WINDOW_S:
        return "expired"
    if not 0.0 < state.pixels_per_unit < MAX_PIXELS_PER_MM:
        return f"scale {state.pixels_per_unit:.3f} px/mm out of range"
    return None


def is_valid(state: Optional[CalibrationState], now: Optional[float] = None) -> bool:
    return check_state(state, now) is None


def _clamp01(v: float) -> float:
    return min(1.0, max(0.0, v))


def _build(ppm: float, confidence: float, method: str, error: float, now: Optional[float], reference: Optional[str] = None) -> CalibrationState:
    if not math.isfinite(ppm) or ppm <= 0:
        raise CalibrationRejected(f"Computed scale {ppm} px/mm is not positive.")
    if ppm >= MAX_PIXELS_PER_MM:
        raise CalibrationRejected(f"Computed scale {ppm:.1f} px/mm exceeds {MAX_PIXELS_PER_MM:.0f}.")
    state = CalibrationState(
        pixels_per_unit=float(ppm),
        confidence=_clamp01(confidence),
        method=method,
        timestamp=time.time() if now is None else float(now),
        error_margin=_clamp01(error),
        reference=reference,
    )
    log.info("Calibrated (%s%s): %.4f px/mm, confidence %.2f, error %.3f",
             method, f" {reference}" if reference else "", state.pixels_per_unit,
             state.confidence, state.error_margin)
    return state


def _detection_size(detection: Detection) -> Tuple[float, float]:
    w, h = detection.shape.width, detection.shape.height
    if w <= 0 or h <= 0:
        raise CalibrationRejected("Detection has a zero-size bounding box.")
    return w, h


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

def calibrate_manual(
    detection: Detection,
    measurement: float,
    unit: str = "mm",
    certainty: float = 0.9,
    now: Optional[float] = None,
) -> CalibrationState:
    """Scale from a user-stated real width of the detection."""
    if unit not in UNIT_TO_MM:
        raise CalibrationRejected(f"Unknown unit '{unit}'. Use one of {', '.join(SUPPORTED_UNITS)}.")
    if not measurement or measurement <= 0 or not math.isfinite(measurement):
        raise CalibrationRejected(f"Measurement must be a positive number, got {measurement}.")
    if not 0.0 <= certainty <= 1.0:
        raise CalibrationRejected(f"Certainty must lie in [0, 1], got {certainty}.")

    width_px, _ = _detection_size(detection)
    measurement_mm = measurement * UNIT_TO_MM[unit]
    return _build(
        width_px / measurement_mm,
        min(0.99, certainty * 0.9 + 0.1),
        METHOD_MANUAL,
        MANUAL_ERROR_MARGIN,
        now,
    )


def get_reference(name: str) -> ReferenceObject:
    try:
        return REFERENCE_CATALOG[name]
    except KeyError:
        raise CalibrationRejected(f"Unknown reference object '{name}'.")


def calibrate_reference(
    detection: Detection,
    reference: Union[str, ReferenceObject],
    tolerance: float = DEFAULT_ASPECT_TOLERANCE,
    now: Optional[float] = None,
) -> CalibrationState:
    """
    Scale from a catalog object. Width- and height-derived scales are
    averaged; their divergence lowers the confidence.
    """
    ref = get_reference(reference) if isinstance(reference, str) else reference
    if ref.size_mm <= 0:
        raise CalibrationRejected(f"Reference '{ref.name}' has no usable size.")

    w, h = _detection_size(detection)
    long_px, short_px = max(w, h), min(w, h)

    if ref.aspect_ratio is None:
        ppm = long_px / ref.size_mm
        error = LINEAR_REFERENCE_ERROR
        consistency = 1.0
    else:
        observed = long_px / short_px
        deviation = abs(observed - ref.aspect_ratio) / ref.aspect_ratio
        if deviation > tolerance:
            raise CalibrationRejected(
                f"Detection aspect ratio {observed:.2f} does not match '{ref.name}' "
                f"({ref.aspect_ratio:.2f}, tolerance {tolerance:.0%})."
            )
        ppm_long = long_px / ref.size_mm
        ppm_short = short_px / (ref.size_mm / ref.aspect_ratio)
        ppm = (ppm_long + ppm_short) / 2.0
        error = abs(ppm_long - ppm_short) / ppm
        consistency = max(0.0, 1.0 - error * 10.0)

    confidence = min(0.99, (consistency * 0.9 + 0.1) * ref.accuracy)
    return _build(ppm, confidence, METHOD_REFERENCE, error, now, reference=ref.name)


def calibrate_automatic(
    detection: Detection,
    frame_size: Tuple[int, int],
    center: Optional[Tuple[float, float]] = None,
    now: Optional[float] = None,
) -> CalibrationState:
    """
    Heuristic scale from relative area and centrality. Not anchored to
    any known size, so confidence never exceeds 0.8.
    """
    width, height = frame_size
    w, _ = _detection_size(detection)
    if center is None:
        center = (width / 2.0, height / 2.0)

    area_ratio = detection.shape.area / float(width * height)
    cx, cy = detection.shape.centroid
    max_distance = math.hypot(width, height) / 2.0
    centrality = max(0.0, 1.0 - math.hypot(cx - center[0], cy - center[1]) / max_distance)

    estimated_mm = next(size for limit, size in AUTO_SIZE_TABLE if area_ratio > limit or limit == 0.0)
    estimated_mm *= 0.8 + centrality * 0.4

    size_fit = max(0.0, 1.0 - abs(area_ratio - 0.1) * 5.0)
    confidence = min(AUTO_MAX_CONFIDENCE, centrality * 0.6 + size_fit * 0.4)
    log.debug("Auto calibration: area ratio %.3f, centrality %.2f -> %.1f mm", area_ratio, centrality, estimated_mm)
    return _build(w / estimated_mm, confidence, METHOD_AUTOMATIC, AUTO_ERROR_MARGIN, now)


def suggest_references(detection: Detection, pixels_per_mm: Optional[float] = None, limit: int = 3) -> List[ReferenceObject]:
    """
    Catalog entries ordered by how well they fit the detection: aspect
    ratio first, then (with a scale hint) how close the implied size is.
    """
    w, h = _detection_size(detection)
    observed = max(w, h) / min(w, h)

    def fit(ref: ReferenceObject):
        aspect_err = abs(observed - ref.aspect_ratio) / ref.aspect_ratio if ref.aspect_ratio else 0.5
        size_err = 0.0
        if pixels_per_mm:
            size_err = abs(max(w, h) / pixels_per_mm - ref.size_mm) / ref.size_mm
        return aspect_err + size_err, ref.name

    return sorted(REFERENCE_CATALOG.values(), key=fit)[:limit]


# ---------------------------------------------------------------------------
# Export / import
# ---------------------------------------------------------------------------

def export_state(state: CalibrationState) -> str:
    payload = json.dumps(state.to_dict(), sort_keys=True)
    return base64.b64encode(payload.encode("utf-8")).decode("ascii")


def state_from_dict(data: dict, now: Optional[float] = None) -> CalibrationState:
    """Rebuild a stored or imported state, rejecting anything out of range."""
    try:
        state = CalibrationState(
            pixels_per_unit=float(data["pixels_per_unit"]),
            confidence=float(data["confidence"]),
            method=str(data["method"]),
            timestamp=float(data["timestamp"]),
            error_margin=float(data["error_margin"]),
            reference=data.get("reference"),
        )
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        raise CalibrationRejected(f"Malformed calibration data: {e}")

    if not 0.0 <= state.confidence <= 1.0 or not 0.0 <= state.error_margin <= 1.0:
        raise CalibrationRejected("Calibration has confidence/error outside [0, 1].")
    if not 0.0 < state.pixels_per_unit < MAX_PIXELS_PER_MM:
        raise CalibrationRejected(f"Calibration scale {state.pixels_per_unit} px/mm out of range.")
    now = time.time() if now is None else now
    if not math.isfinite(state.timestamp) or state.timestamp - now > CLOCK_SKEW_S:
        raise CalibrationRejected(f"Calibration timestamp {state.timestamp} is not a past time.")
    if state.reference is not None and not isinstance(state.reference, str):
        raise CalibrationRejected("Calibration reference must be a name.")
    return state


def import_state(blob: str, now: Optional[float] = None) -> CalibrationState:
    try:
        data = json.loads(base64.b64decode(blob.encode("ascii"), validate=True).decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError, AttributeError) as e:
        raise CalibrationRejected(f"Malformed calibration blob: {e}")
    if not isinstance(data, dict):
        raise CalibrationRejected("Malformed calibration blob: expected an object.")
    return state_from_dict(data, now)
