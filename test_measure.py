import numpy as np
import pytest

import calibration
import measure
from measure import DepthEstimate, DepthStrategy
from models import InputError, UNCALIBRATED

NOW = 1_700_000_000.0
GRAY = np.full((480, 640), 255.0)


class FixedDepth(DepthStrategy):
    name = "fixed"

    def __init__(self, depth_mm):
        self.depth_mm = depth_mm

    def estimate(self, detection, gray):
        return DepthEstimate(self.depth_mm, 1.0, self.name)


@pytest.fixture
def bar(make_detection, rectangle):
    return make_detection(rectangle(220, 200, 200, 80))


@pytest.fixture
def two_px_per_mm(bar):
    return calibration.calibrate_manual(bar, 100.0, now=NOW)


# ---------------------------------------------------------------------------
# Units
# ---------------------------------------------------------------------------

def test_unit_round_trip():
    assert measure.convert(measure.convert(123.4, "mm", "cm"), "cm", "mm") == pytest.approx(123.4)
    assert measure.convert(1, "in", "mm") == pytest.approx(25.4)
    assert measure.convert_area(1, "cm", "mm") == pytest.approx(100.0)


def test_unknown_unit_raises():
    with pytest.raises(InputError):
        measure.convert(1, "mm", "parsec")


@pytest.mark.parametrize("largest,unit", [(5, "mm"), (9.99, "mm"), (10, "cm"), (999, "cm"), (1000, "m")])
def test_pick_unit(largest, unit):
    assert measure.pick_unit(largest) == unit


# ---------------------------------------------------------------------------
# Measurement
# ---------------------------------------------------------------------------

def test_uncalibrated_result_is_in_pixels(bar):
    result = measure.measure_detection(bar, GRAY, state=None, now=NOW)
    assert result.unit == "px"
    assert result.calibration_method == UNCALIBRATED
    assert not result.calibrated
    assert (result.width, result.height) == (200.0, 80.0)
    assert result.area == 16000.0
    assert result.depth is None and result.volume is None and result.surface_area is None
    assert result.calibration_ref is None and result.calibrated_at is None


def test_expired_calibration_falls_back_to_pixels(bar, two_px_per_mm):
    later = NOW + calibration.VALIDITY_WINDOW_S + 1
    assert measure.measure_detection(bar, GRAY, two_px_per_mm, now=later).unit == "px"


def test_calibrated_measurement_recovers_real_size(make_detection, rectangle):
    card = make_detection(rectangle(200, 150, 214, 135))
    state = calibration.calibrate_reference(card, "credit-card", now=NOW)
    result = measure.measure_detection(card, GRAY, state, unit="mm", now=NOW)
    assert result.calibrated
    assert result.calibration_method == "reference"
    assert result.calibration_ref == "credit-card"
    assert result.calibrated_at == NOW
    assert result.width == pytest.approx(85.60, rel=max(result.error_margin, 0.01))
    assert result.height == pytest.approx(53.98, rel=max(result.error_margin, 0.01))
    assert result.pixels_per_unit == pytest.approx(2.5, abs=0.01)


def test_auto_unit_and_conversion(bar, two_px_per_mm):
    result = measure.measure_detection(bar, GRAY, two_px_per_mm, depth_strategy=FixedDepth(10.0), now=NOW)
    assert result.unit == "cm"
    assert (result.width, result.height, result.depth) == (10.0, 4.0, 1.0)
    assert result.area == pytest.approx(40.0)
    assert result.perimeter == pytest.approx(28.0)


def test_box_model_volume_and_surface(bar, two_px_per_mm):
    result = measure.measure_detection(bar, GRAY, two_px_per_mm, unit="mm", depth_strategy=FixedDepth(10.0), now=NOW)
    assert result.volume == pytest.approx(100 * 40 * 10)
    assert result.surface_area == pytest.approx(2 * (100 * 40 + 100 * 10 + 40 * 10))
    assert result.depth_method == "fixed"


@pytest.mark.parametrize("name", ["stereo", "structured-light", "time-of-flight"])
def test_unsupported_depth_leaves_depth_empty(bar, two_px_per_mm, name):
    strategy = measure.DEPTH_STRATEGIES[name]()
    result = measure.measure_detection(bar, GRAY, two_px_per_mm, depth_strategy=strategy, now=NOW)
    assert result.depth is None
    assert result.volume is None
    assert result.depth_method == f"unsupported:{name}"
    assert result.width is not None


def test_heuristic_depth_is_bounded(bar):
    est = measure.HeuristicDepth().estimate(bar, GRAY)
    assert est.supported
    assert measure.MIN_DEPTH_MM <= est.depth_mm <= measure.MAX_DEPTH_MM
    assert 0.1 <= est.reliability <= 1.0
    assert est.method == "heuristic"


def test_implausible_size_is_flagged(bar):
    huge = calibration.calibrate_manual(bar, 20000.0, now=NOW)  # 0.01 px/mm
    result = measure.measure_detection(bar, GRAY, huge, now=NOW)
    assert not result.plausible
    assert result.unit == "m"


def test_results_are_rounded(make_detection, rectangle):
    det = make_detection(rectangle(100, 100, 211, 97))
    state = calibration.calibrate_manual(det, 73.0, now=NOW)
    result = measure.measure_detection(det, GRAY, state, unit="mm", precision=1, now=NOW)
    assert result.width == round(211 / (211 / 73.0), 1)
    for value in (result.height, result.area, result.perimeter, result.confidence):
        assert value == round(value, 1)


def test_confidence_and_error_bounds(bar, two_px_per_mm):
    result = measure.measure_detection(bar, GRAY, two_px_per_mm, now=NOW)
    assert 0.1 <= result.confidence <= 0.99
    assert 0.0 <= result.error_margin <= 0.5
    # Error grows with a less certain detection
    assert result.error_margin == pytest.approx(two_px_per_mm.error_margin + 0.05)


def test_corrected_ratios_scale_with_confidence(make_detection, rectangle):
    square = make_detection(rectangle(0, 0, 50, 50), confidence=0.9)
    circ, sol, comp = measure.corrected_ratios(square)
    assert circ == pytest.approx(square.shape.circularity * 0.9)
    assert sol == pytest.approx(square.shape.solidity * 0.75 * 0.9)
    assert comp == pytest.approx(square.shape.compactness * 0.9)


def test_results_compare_by_value(bar, two_px_per_mm):
    a = measure.measure_detection(bar, GRAY, two_px_per_mm, now=NOW)
    b = measure.measure_detection(bar, GRAY, two_px_per_mm, now=NOW)
    assert a == b
    assert a.to_dict()["unit"] == "cm"


def test_results_from_different_calibrations_are_distinguishable(bar):
    first = calibration.calibrate_manual(bar, 100.0, now=NOW)
    second = calibration.calibrate_manual(bar, 100.0, now=NOW + 60)
    a = measure.measure_detection(bar, GRAY, first, now=NOW + 120)
    b = measure.measure_detection(bar, GRAY, second, now=NOW + 120)
    assert a.calibration_method == b.calibration_method
    assert a.calibrated_at != b.calibrated_at
    assert a != b
