"""
pipeline.py – One frame in, ranked detections with measurements out.

  frame → grayscale/blur → Canny → seed + trace + simplify
        → shape analysis (per contour, failures isolated)
        → gate/score/select → measure

The only state that outlives a call is passed in and out explicitly:
the CalibrationState and, optionally, a ResultHistory ring buffer.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Tuple

import contours
import edges
import frame
import shapes
from calibration import CalibrationState
from measure import DepthStrategy, HeuristicDepth, MeasurementResult, measure_detection
from models import (
    Detection,
    DetectionParameters,
    InputError,
    NO_OBJECT_FOUND,
    PixelBuffer,
    STATUS_OK,
)
from selection import Candidate, select_objects

log = logging.getLogger("snapgauge.pipeline")

DEFAULT_HISTORY_SIZE = 20


@dataclass
class PipelineContext:
    """Everything a call needs besides the frame itself."""

    params: DetectionParameters = field(default_factory=DetectionParameters)
    depth_strategy: DepthStrategy = field(default_factory=HeuristicDepth)
    frame_stride: int = 1

    def should_process(self, frame_index: int) -> bool:
        """Every Nth frame when the caller runs at reduced cadence."""
        return frame_index % max(1, self.frame_stride) == 0


class Diagnostics:
    def __init__(self):
        self.edge_pixels = 0
        self.raw_contours = 0
        self.survivors = 0
        self.failed_contours = 0
        self.average_confidence = 0.0
        self.thresholds: Tuple[float, float] = (0.0, 0.0)
        self.elapsed_ms = 0.0

    def to_dict(self) -> dict:
        return {
            "edge_pixels": self.edge_pixels,
            "raw_contours": self.raw_contours,
            "survivors": self.survivors,
            "failed_contours": self.failed_contours,
            "average_confidence": round(self.average_confidence, 4),
            "thresholds": [round(t, 3) for t in self.thresholds],
            "elapsed_ms": round(self.elapsed_ms, 1),
        }


class PipelineResult:
    def __init__(self, items: List[Tuple[Detection, MeasurementResult]], diagnostics: Diagnostics, frame_size: Tuple[int, int]):
        self.items = items
        self.diagnostics = diagnostics
        self.frame_size = frame_size
        self.status = STATUS_OK if items else NO_OBJECT_FOUND

    @property
    def detections(self) -> List[Detection]:
        return [d for d, _ in self.items]

    @property
    def measurements(self) -> List[MeasurementResult]:
        return [m for _, m in self.items]

    @property
    def best(self) -> Optional[Tuple[Detection, MeasurementResult]]:
        return self.items[0] if self.items else None

    def to_dict(self, include_contours: bool = False) -> dict:
        return {
            "status": self.status,
            "frame": {"width": self.frame_size[0], "height": self.frame_size[1]},
            "detections": [
                {"detection": d.to_dict(include_contour=include_contours), "measurement": m.to_dict()}
                for d, m in self.items
            ],
            "diagnostics": self.diagnostics.to_dict(),
        }


class ResultHistory:
    """Fixed-capacity ring buffer of pipeline results; oldest entry is evicted."""

    def __init__(self, capacity: int = DEFAULT_HISTORY_SIZE):
        if capacity < 1:
            raise ValueError("History capacity must be at least 1.")
        self._entries = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._entries.maxlen

    def append(self, result: PipelineResult) -> None:
        self._entries.append(result)

    def latest(self) -> Optional[PipelineResult]:
        return self._entries[-1] if self._entries else None

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[PipelineResult]:
        return iter(self._entries)


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------

def _analyze_all(traced: List[contours.TracedContour], epsilon: float, diag: Diagnostics) -> List[Candidate]:
    candidates = []
    for tc in traced:
        try:
            simplified = contours.simplify_contour(tc.points, epsilon)
            if len(simplified) < 3:
                simplified = tc.points
            shape = shapes.analyze_shape(simplified)
        except (ValueError, ZeroDivisionError, FloatingPointError) as e:
            diag.failed_contours += 1
            log.warning("Shape analysis failed for contour at %s: %s", tc.seed, e)
            continue
        candidates.append(Candidate(shape, tc.points, simplified, tc.seed))
    return candidates


def detect(
    buf: PixelBuffer,
    params: DetectionParameters,
    center: Optional[Tuple[float, float]] = None,
    diag: Optional[Diagnostics] = None,
):
    """Detection half of the pipeline. Returns (detections, gray)."""
    diag = diag or Diagnostics()
    if center is None:
        center = buf.center
    elif not (0 <= center[0] < buf.width and 0 <= center[1] < buf.height):
        raise InputError(f"Search center {center} lies outside the {buf.width}x{buf.height} frame.")

    gray, blurred = frame.prepare_frame(buf, params.blur_sigma, params.equalize)
    canny = edges.canny(blurred, params.canny_thresholds, l2=params.l2_gradient, close=params.close_edges)
    diag.edge_pixels = canny.edge_pixels
    diag.thresholds = (canny.low, canny.high)

    traced = contours.trace_contours(
        canny.edges,
        center,
        zone_fraction=params.seed_zone_fraction,
        max_candidates=params.max_candidates,
        max_contours=params.max_contours,
        min_points=params.min_contour_points,
    )
    diag.raw_contours = len(traced)

    candidates = _analyze_all(traced, params.simplify_epsilon, diag)
    detections = select_objects(candidates, canny.edges, center, params)
    diag.survivors = len(detections)
    return detections, gray


def run_pipeline(
    buf: PixelBuffer,
    context: Optional[PipelineContext] = None,
    calibration_state: Optional[CalibrationState] = None,
    center: Optional[Tuple[float, float]] = None,
    history: Optional[ResultHistory] = None,
    now: Optional[float] = None,
) -> PipelineResult:
    """
    Run every stage on one frame. Only malformed input raises
    (InputError); finding nothing yields status "no_object_found".
    """
    context = context or PipelineContext()
    params = context.params.validate()
    started = time.perf_counter()
    diag = Diagnostics()

    detections, gray = detect(buf, params, center, diag)
    items = [
        (det, measure_detection(
            det,
            gray,
            calibration_state,
            unit=params.unit,
            precision=params.precision,
            depth_strategy=context.depth_strategy,
            now=now,
        ))
        for det in detections
    ]
    if items:
        diag.average_confidence = sum(d.confidence for d, _ in items) / len(items)
    diag.elapsed_ms = (time.perf_counter() - started) * 1000.0

    result = PipelineResult(items, diag, (buf.width, buf.height))
    if history is not None:
        history.append(result)

    if items:
        log.info("Frame %dx%d: %d detection(s), best confidence %.2f (%.0f ms)",
                 buf.width, buf.height, len(items), items[0][0].confidence, diag.elapsed_ms)
    else:
        log.info("Frame %dx%d: no object found (%d edge px, %d contours, %.0f ms)",
                 buf.width, buf.height, diag.edge_pixels, diag.raw_contours, diag.elapsed_ms)
    return result
