"""
main.py – FastAPI application for the snapgauge service.

Single-frame object measurement: upload a photo, get the predominant
object's outline, shape descriptors and real-world size. The scale comes
from a persisted calibration (manual, reference object or heuristic).
"""

import os
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, UploadFile, File, Form
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel

import state
import calibration
from measure import DEPTH_STRATEGIES
from models import CalibrationRejected, DetectionParameters, InputError, PixelBuffer
from pipeline import PipelineContext, ResultHistory, detect, run_pipeline

# ---------------------------------------------------------------------------
# Config from env
# ---------------------------------------------------------------------------

DATA_DIR = os.environ.get("SNAPGAUGE_DATA_DIR", "/data")
LOG_LEVEL = os.environ.get("SNAPGAUGE_LOG_LEVEL", "INFO").upper()
HISTORY_SIZE = int(os.environ.get("SNAPGAUGE_HISTORY_SIZE", "20"))
DEFAULT_PROFILE = os.environ.get("SNAPGAUGE_DEFAULT_PROFILE", "balanced")
DEFAULT_QUALITY = os.environ.get("SNAPGAUGE_DEFAULT_QUALITY", "balanced")

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="[%(asctime)s] %(name)s %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
log = logging.getLogger("snapgauge")

# In-process ring buffer of full results; state.py keeps persisted summaries
_history = ResultHistory(HISTORY_SIZE)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    log.info("Starting snapgauge service …")
    state.init(DATA_DIR)
    log.info("State initialised at %s", DATA_DIR)

    cal = state.load_calibration()
    reason = calibration.check_state(cal)
    if reason:
        log.info("No usable calibration on startup (%s)", reason)
    else:
        log.info("Calibration loaded: %s, %.4f px/mm", cal.method, cal.pixels_per_unit)

    yield

    log.info("snapgauge shutdown.")


app = FastAPI(title="snapgauge", lifespan=lifespan)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def _params(profile: Optional[str], quality: Optional[str], unit: Optional[str], max_detections: int) -> DetectionParameters:
    return DetectionParameters.for_quality(
        quality or DEFAULT_QUALITY,
        weight_profile=profile or DEFAULT_PROFILE,
        unit=unit or "auto",
        max_detections=max_detections,
    ).validate()


def _center(x: Optional[float], y: Optional[float]):
    if x is None and y is None:
        return None
    if x is None or y is None:
        raise InputError("Both x and y are needed for a search point.")
    return (x, y)


async def _top_detection(image: UploadFile, x: Optional[float], y: Optional[float]):
    """Decode the upload and return (buffer, best detection or None)."""
    image_bytes = await image.read()
    buf = PixelBuffer.from_bytes(image_bytes)
    params = _params(None, None, None, 1)
    detections, _ = await run_in_threadpool(detect, buf, params, _center(x, y))
    return buf, (detections[0] if detections else None)


# ---------------------------------------------------------------------------
# API: Measure
# ---------------------------------------------------------------------------

@app.post("/api/measure")
async def api_measure(
    image: UploadFile = File(...),
    x: Optional[float] = Form(None),
    y: Optional[float] = Form(None),
    profile: Optional[str] = Form(None),
    quality: Optional[str] = Form(None),
    unit: Optional[str] = Form(None),
    depth: str = Form("heuristic"),
    max_detections: int = Form(1),
    include_contours: bool = Form(False),
):
    """Upload photo → detections with measurements (pixels if uncalibrated)."""
    image_bytes = await image.read()
    frame_hash = state.compute_frame_hash(image_bytes)

    try:
        if depth not in DEPTH_STRATEGIES:
            raise InputError(f"Unknown depth strategy '{depth}'. Known: {', '.join(DEPTH_STRATEGIES)}.")
        buf = PixelBuffer.from_bytes(image_bytes)
        context = PipelineContext(
            params=_params(profile, quality, unit, max_detections),
            depth_strategy=DEPTH_STRATEGIES[depth](),
        )
        result = await run_in_threadpool(
            run_pipeline, buf, context, state.load_calibration(), _center(x, y), _history,
        )
    except InputError as e:
        log.warning("Measurement rejected: %s", str(e))
        return _error(str(e), 400)

    response = result.to_dict(include_contours=include_contours)
    response["frame_hash"] = frame_hash

    best = result.best
    summary = {"frame_hash": frame_hash, "status": result.status}
    if best:
        _, m = best
        summary.update({"width": m.width, "height": m.height, "unit": m.unit,
                        "confidence": m.confidence, "calibration": m.calibration_method})
        state.log_event("MEASURED", f"hash={frame_hash[:16]} size={m.width}x{m.height}{m.unit} cal={m.calibration_method}")
    state.append_history(summary, HISTORY_SIZE)
    return response


# ---------------------------------------------------------------------------
# API: Calibration
# ---------------------------------------------------------------------------

class CalibrationImport(BaseModel):
    blob: str


@app.post("/api/calibrate/manual")
async def api_calibrate_manual(
    image: UploadFile = File(...),
    measurement: float = Form(...),
    unit: str = Form("mm"),
    certainty: float = Form(0.9),
    x: Optional[float] = Form(None),
    y: Optional[float] = Form(None),
):
    """Calibrate from the detected object's known real width."""
    try:
        _, det = await _top_detection(image, x, y)
        if det is None:
            return _error("No object found to calibrate against.", 422)
        cal = calibration.calibrate_manual(det, measurement, unit=unit, certainty=certainty)
    except InputError as e:
        return _error(str(e), 400)
    except CalibrationRejected as e:
        log.warning("Manual calibration rejected: %s", e)
        return _error(str(e), 422)

    state.save_calibration(cal)
    return {"calibration": cal.to_dict(), "valid": calibration.is_valid(cal)}


@app.post("/api/calibrate/reference")
async def api_calibrate_reference(
    image: UploadFile = File(...),
    reference: str = Form(...),
    x: Optional[float] = Form(None),
    y: Optional[float] = Form(None),
):
    """Calibrate from a catalog reference object (coin, card, …)."""
    try:
        _, det = await _top_detection(image, x, y)
        if det is None:
            return _error("No object found to calibrate against.", 422)
        cal = calibration.calibrate_reference(det, reference)
    except InputError as e:
        return _error(str(e), 400)
    except CalibrationRejected as e:
        log.warning("Reference calibration rejected: %s", e)
        return _error(str(e), 422)

    state.save_calibration(cal)
    return {"calibration": cal.to_dict(), "valid": calibration.is_valid(cal)}


@app.post("/api/calibrate/auto")
async def api_calibrate_auto(
    image: UploadFile = File(...),
    x: Optional[float] = Form(None),
    y: Optional[float] = Form(None),
):
    """Heuristic calibration from relative object size (confidence capped at 0.8)."""
    try:
        buf, det = await _top_detection(image, x, y)
        if det is None:
            return _error("No object found to calibrate against.", 422)
        cal = calibration.calibrate_automatic(det, (buf.width, buf.height), _center(x, y))
    except InputError as e:
        return _error(str(e), 400)
    except CalibrationRejected as e:
        return _error(str(e), 422)

    state.save_calibration(cal)
    return {"calibration": cal.to_dict(), "valid": calibration.is_valid(cal)}


@app.get("/api/calibration")
async def api_get_calibration():
    cal = state.load_calibration()
    if cal is None:
        return {"calibration": None, "valid": False, "reason": "no calibration"}
    reason = calibration.check_state(cal)
    return {"calibration": cal.to_dict(), "valid": reason is None, "reason": reason}


@app.delete("/api/calibration")
async def api_clear_calibration():
    return {"cleared": state.clear_calibration()}


@app.get("/api/calibration/export")
async def api_export_calibration():
    cal = state.load_calibration()
    if cal is None:
        return _error("No calibration to export.", 404)
    return {"blob": calibration.export_state(cal)}


@app.post("/api/calibration/import")
async def api_import_calibration(body: CalibrationImport):
    try:
        cal = calibration.import_state(body.blob)
    except CalibrationRejected as e:
        return _error(str(e), 422)
    state.save_calibration(cal)
    state.log_event("CALIBRATION_IMPORTED", f"method={cal.method}")
    return {"calibration": cal.to_dict(), "valid": calibration.is_valid(cal)}


def _reference_dict(r: calibration.ReferenceObject) -> dict:
    return {"name": r.name, "size_mm": r.size_mm, "aspect_ratio": r.aspect_ratio,
            "accuracy": r.accuracy, "description": r.description}


@app.get("/api/references")
async def api_references():
    return [_reference_dict(r) for r in calibration.REFERENCE_CATALOG.values()]


@app.post("/api/references/suggest")
async def api_suggest_references(
    image: UploadFile = File(...),
    limit: int = Form(3),
    x: Optional[float] = Form(None),
    y: Optional[float] = Form(None),
):
    """Catalog objects that best fit the detected object, using the current scale if valid."""
    try:
        _, det = await _top_detection(image, x, y)
    except InputError as e:
        return _error(str(e), 400)
    if det is None:
        return _error("No object found to match against.", 422)

    cal = state.load_calibration()
    ppm = cal.pixels_per_unit if calibration.is_valid(cal) else None
    picks = calibration.suggest_references(det, pixels_per_mm=ppm, limit=max(1, limit))
    return {"suggestions": [_reference_dict(r) for r in picks], "scale_used": ppm is not None}


# ---------------------------------------------------------------------------
# API: History & Health
# ---------------------------------------------------------------------------

@app.get("/api/history")
async def api_history():
    return {"persisted": state.get_history(), "in_memory": len(_history)}


@app.get("/api/health")
async def api_health():
    cal = state.load_calibration()
    return {
        "status": "ok",
        "calibrated": calibration.is_valid(cal),
        "history_size": HISTORY_SIZE,
    }
