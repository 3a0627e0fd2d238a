"""
state.py – Persistent JSON state with file-locking.

Two state files (active calibration, measurement history) + event log.
All writes are atomic (write-to-tmp, then os.replace).
All mutations go through _update() under a global lock.
"""

import os
import json
import hashlib
import logging
from datetime import datetime, timezone
from typing import Callable, Optional, Any
from filelock import FileLock

import calibration
from calibration import CalibrationState
from models import CalibrationRejected

log = logging.getLogger("snapgauge.state")

# ---------------------------------------------------------------------------
# Paths (set via init())
# ---------------------------------------------------------------------------
DATA_DIR: str = "/data"

CALIBRATION_FILE = ""
HISTORY_FILE = ""
EVENTS_LOG_FILE = ""

CURRENT_SCHEMA_VERSION = 1

_global_lock: Optional[FileLock] = None


def _path(name: str) -> str:
    return os.path.join(DATA_DIR, name)


def init(data_dir: str = "/data") -> None:
    """Initialise paths and ensure data directory exists."""
    global DATA_DIR, CALIBRATION_FILE, HISTORY_FILE, EVENTS_LOG_FILE, _global_lock

    DATA_DIR = data_dir
    os.makedirs(DATA_DIR, exist_ok=True)

    CALIBRATION_FILE = _path("calibration.json")
    HISTORY_FILE = _path("history.json")
    EVENTS_LOG_FILE = _path("events.log")

    _global_lock = FileLock(_path(".state.lock"))

    _ensure_file(CALIBRATION_FILE, {"schema_version": CURRENT_SCHEMA_VERSION, "calibration": None})
    _ensure_file(HISTORY_FILE, {"schema_version": CURRENT_SCHEMA_VERSION, "entries": []})


def _require_init() -> None:
    if _global_lock is None:
        raise RuntimeError("state.init() has not been called.")


# ---------------------------------------------------------------------------
# Atomic I/O
# ---------------------------------------------------------------------------

def _write_json_atomic(path: str, data: dict) -> None:
    """Write JSON atomically: write to .tmp, then os.replace."""
    lock = FileLock(f"{path}.lock")
    with lock:
        tmp = f"{path}.tmp"
        with open(tmp, "w") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(tmp, path)


def _read_json(path: str) -> dict:
    lock = FileLock(f"{path}.lock")
    with lock:
        with open(path, "r") as f:
            return json.load(f)


def _ensure_file(path: str, default: dict) -> None:
    if not os.path.exists(path):
        _write_json_atomic(path, default)


def _check_schema(data: dict, file_label: str) -> dict:
    v = data.get("schema_version", 0)
    if v < CURRENT_SCHEMA_VERSION:
        log.warning("Migrating %s from schema v%d → v%d", file_label, v, CURRENT_SCHEMA_VERSION)
        data["schema_version"] = CURRENT_SCHEMA_VERSION
    elif v > CURRENT_SCHEMA_VERSION:
        raise RuntimeError(
            f"{file_label}: schema_version {v} is newer than supported {CURRENT_SCHEMA_VERSION}. "
            "Please update the snapgauge service."
        )
    return data


def _update(path: str, mutator: Callable[[dict], Any]) -> Any:
    """Read-modify-write one state file under the global lock."""
    _require_init()
    with _global_lock:
        data = _check_schema(_read_json(path), os.path.basename(path))
        result = mutator(data)
        _write_json_atomic(path, data)
        return result


def _read(path: str) -> dict:
    _require_init()
    with _global_lock:
        return _check_schema(_read_json(path), os.path.basename(path))


# ---------------------------------------------------------------------------
# Calibration
# ---------------------------------------------------------------------------

def save_calibration(cal: CalibrationState) -> None:
    def _mutate(data: dict):
        data["calibration"] = cal.to_dict()
        data["saved_at"] = _now_iso()

    _update(CALIBRATION_FILE, _mutate)
    log_event("CALIBRATED", f"method={cal.method} ppm={cal.pixels_per_unit:.4f} conf={cal.confidence:.2f}")


def load_calibration() -> Optional[CalibrationState]:
    """The stored calibration, or None if there is none or it fails validation."""
    stored = _read(CALIBRATION_FILE).get("calibration")
    if not stored:
        return None
    try:
        return calibration.state_from_dict(stored)
    except CalibrationRejected as e:
        log.warning("Ignoring stored calibration in %s: %s", CALIBRATION_FILE, e)
        return None


def clear_calibration() -> bool:
    """Drop the stored calibration. Returns whether one existed."""
    def _mutate(data: dict):
        existed = data.get("calibration") is not None
        data["calibration"] = None
        return existed

    existed = _update(CALIBRATION_FILE, _mutate)
    if existed:
        log_event("CALIBRATION_CLEARED", "")
    return existed


# ---------------------------------------------------------------------------
# History (bounded)
# ---------------------------------------------------------------------------

def append_history(entry: dict, capacity: int) -> None:
    """Append a summary entry; the oldest entries fall off past capacity."""
    def _mutate(data: dict):
        entries = data.setdefault("entries", [])
        entries.append(dict(entry, recorded_at=_now_iso()))
        del entries[:-capacity]

    _update(HISTORY_FILE, _mutate)


def get_history() -> list:
    return _read(HISTORY_FILE).get("entries", [])


# ---------------------------------------------------------------------------
# Event log (append-only)
# ---------------------------------------------------------------------------

def log_event(event_type: str, detail: str) -> None:
    ts = _now_iso()
    line = f"[{ts}] {event_type} {detail}\n"
    lock = FileLock(f"{EVENTS_LOG_FILE}.lock")
    with lock:
        with open(EVENTS_LOG_FILE, "a") as f:
            f.write(line)
    log.info("EVENT: %s %s", event_type, detail)


def compute_frame_hash(image_bytes: bytes) -> str:
    return hashlib.sha256(image_bytes).hexdigest()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
