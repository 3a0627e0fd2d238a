"""
selection.py – Validity gate, weighted scoring and predominant-object choice.
"""

import logging
import math
from typing import List, NamedTuple, Optional, Sequence, Tuple

import numpy as np

from models import Detection, DetectionParameters, ScoreWeights, ShapeDescriptor

log = logging.getLogger("snapgauge.selection")

# Half-size of the window sampled around a seed for edge strength
EDGE_WINDOW_RADIUS = 2

# Area (as fraction of the frame) at which the size term saturates
SIZE_SATURATION_FRACTION = 0.1


class Candidate(NamedTuple):
    shape: ShapeDescriptor
    contour: np.ndarray
    simplified: np.ndarray
    seed: Tuple[int, int]


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------

def rejection_reason(
    shape: ShapeDescriptor,
    frame_size: Tuple[int, int],
    center: Tuple[float, float],
    params: DetectionParameters,
) -> Optional[str]:
    """None when the shape passes every check, else a short reason."""
    width, height = frame_size
    frame_area = float(width * height)

    if shape.degenerate:
        return "degenerate"
    frac = shape.area / frame_area
    if frac < params.min_area_fraction or frac > params.max_area_fraction:
        return f"area fraction {frac:.4f}"
    if min(shape.width, shape.height) < params.min_dimension_px:
        return f"min dimension {min(shape.width, shape.height):.0f}px"

    max_distance = math.hypot(width, height) / 2.0
    dist = math.hypot(shape.centroid[0] - center[0], shape.centroid[1] - center[1])
    if dist > params.center_radius_fraction * max_distance:
        return f"distance {dist:.0f}px"

    lo, hi = params.aspect_ratio_bounds
    if not lo <= shape.aspect_ratio <= hi:
        return f"aspect ratio {shape.aspect_ratio:.2f}"
    lo, hi = params.circularity_bounds
    if not lo <= shape.circularity <= hi:
        return f"circularity {shape.circularity:.2f}"
    lo, hi = params.solidity_bounds
    if not lo <= shape.solidity <= hi:
        return f"solidity {shape.solidity:.2f}"
    return None


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

def edge_strength(edges: np.ndarray, seed: Tuple[int, int], radius: int = EDGE_WINDOW_RADIUS) -> float:
    """Mean edge value (0..1) in a square window around the seed."""
    h, w = edges.shape
    x, y = seed
    window = edges[max(0, y - radius):min(h, y + radius + 1), max(0, x - radius):min(w, x + radius + 1)]
    if window.size == 0:
        return 0.0
    return float(window.mean()) / 255.0


def score_terms(
    shape: ShapeDescriptor,
    strength: float,
    frame_size: Tuple[int, int],
    center: Tuple[float, float],
) -> dict:
    width, height = frame_size
    max_distance = math.hypot(width, height) / 2.0
    dist = math.hypot(shape.centroid[0] - center[0], shape.centroid[1] - center[1])
    return {
        "size": min(1.0, shape.area / (width * height * SIZE_SATURATION_FRACTION)),
        "centrality": max(0.0, 1.0 - dist / max_distance),
        "shape": (min(shape.circularity, 1.0) + min(shape.solidity, 1.0) + min(shape.convexity, 1.0)) / 3.0,
        "edge": strength,
    }


def weighted_score(terms: dict, weights: ScoreWeights) -> float:
    return (
        weights.size * terms["size"]
        + weights.centrality * terms["centrality"]
        + weights.shape * terms["shape"]
        + weights.edge * terms["edge"]
    )


def _bbox_iou(a: ShapeDescriptor, b: ShapeDescriptor) -> float:
    ax, ay, aw, ah = a.bbox
    bx, by, bw, bh = b.bbox
    ix = max(0.0, min(ax + aw, bx + bw) - max(ax, bx))
    iy = max(0.0, min(ay + ah, by + bh) - max(ay, by))
    inter = ix * iy
    union = aw * ah + bw * bh - inter
    return inter / union if union > 0 else 0.0


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------

def select_objects(
    candidates: Sequence[Candidate],
    edges: np.ndarray,
    center: Tuple[float, float],
    params: DetectionParameters,
) -> List[Detection]:
    """
    Gate, score and rank candidates. Returns at most params.max_detections
    detections, best first; an empty list means nothing qualified.
    """
    height, width = edges.shape
    frame_size = (width, height)
    weights = params.weights()

    scored = []
    for cand in candidates:
        reason = rejection_reason(cand.shape, frame_size, center, params)
        if reason is not None:
            log.debug("Rejected contour at seed %s: %s", cand.seed, reason)
            continue
        strength = edge_strength(edges, cand.seed)
        score = weighted_score(score_terms(cand.shape, strength, frame_size, center), weights)
        scored.append((cand, strength, score))

    # Best score first; ties go to the larger area, then the upper-left centroid
    scored.sort(key=lambda s: (-s[2], -s[0].shape.area, s[0].shape.centroid[1], s[0].shape.centroid[0]))

    detections: List[Detection] = []
    for cand, strength, score in scored:
        if any(_bbox_iou(cand.shape, d.shape) >= params.duplicate_iou for d in detections):
            continue
        detections.append(Detection(
            shape=cand.shape,
            contour=cand.contour,
            simplified=cand.simplified,
            seed=cand.seed,
            edge_strength=strength,
            score=score,
            confidence=min(1.0, max(0.0, score / weights.total)),
        ))
        if len(detections) >= params.max_detections:
            break

    log.debug("Selection: %d candidates, %d scored, %d kept", len(candidates), len(scored), len(detections))
    return detections
