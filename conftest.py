import cv2
import numpy as np
import pytest

import shapes
from models import Detection, PixelBuffer


def draw_frame(width=640, height=480, background=255, shapes_to_draw=()):
    """RGB frame with filled black circles ("circle", cx, cy, r) / rectangles ("rect", x0, y0, x1, y1)."""
    img = np.full((height, width, 3), background, dtype=np.uint8)
    for kind, *args in shapes_to_draw:
        if kind == "circle":
            cx, cy, r = args
            cv2.circle(img, (cx, cy), r, (0, 0, 0), thickness=-1)
        elif kind == "rect":
            x0, y0, x1, y1 = args
            cv2.rectangle(img, (x0, y0), (x1, y1), (0, 0, 0), thickness=-1)
    return img


@pytest.fixture
def circle_frame():
    return PixelBuffer(draw_frame(shapes_to_draw=[("circle", 320, 240, 80)]))


@pytest.fixture
def blank_frame():
    return PixelBuffer(draw_frame())


@pytest.fixture
def make_detection():
    def _make(points, confidence=0.9, seed=None):
        pts = np.asarray(points, dtype=np.float64)
        shape = shapes.analyze_shape(pts)
        return Detection(
            shape=shape,
            contour=pts.astype(np.int64),
            simplified=pts,
            seed=seed or (int(pts[0][0]), int(pts[0][1])),
            edge_strength=0.2,
            score=confidence,
            confidence=confidence,
        )
    return _make


@pytest.fixture
def rectangle():
    def _rect(x, y, w, h):
        return [(x, y), (x + w, y), (x + w, y + h), (x, y + h)]
    return _rect
