"""
Configuration loading/saving.

Pure functions operating on dataclasses.
- TOML for pipeline settings, calibration files and pose results
- SQLite for fitted camera models (keyed by camera name + resolution)
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator, Mapping
from contextlib import closing, contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import cv2
import numpy as np
import rtoml

from .errors import CalibrationFileError
from .types import (
    CameraModel,
    CharucoPattern,
    ChessboardPattern,
    Pattern,
    PipelineConfig,
    Pose,
    PoseResult,
    SolverConfig,
)

logger = logging.getLogger(__name__)

CALIBRATION_FORMAT_VERSION = 1


# ============================================================================
# TOML Pipeline Configuration
# ============================================================================


def _parse_pattern(section: dict) -> Pattern:
    kind = section.get("kind", "chessboard")
    if kind == "chessboard":
        return ChessboardPattern(
            columns=int(section.get("columns", 9)),
            rows=int(section.get("rows", 6)),
            square_size=float(section.get("square_size", 1.0)),
        )
    if kind == "charuco":
        return CharucoPattern(
            columns=int(section.get("columns", 7)),
            rows=int(section.get("rows", 5)),
            square_size=float(section.get("square_size", 1.0)),
            marker_ratio=float(section.get("marker_ratio", 0.75)),
            dictionary=section.get("dictionary", "DICT_4X4_50"),
            legacy_pattern=bool(section.get("legacy_pattern", False)),
        )
    raise ValueError(f"Unknown pattern kind: {kind!r}")


def _pattern_to_dict(pattern: Pattern) -> dict:
    if isinstance(pattern, CharucoPattern):
        return {
            "kind": "charuco",
            "columns": pattern.columns,
            "rows": pattern.rows,
            "square_size": pattern.square_size,
            "marker_ratio": pattern.marker_ratio,
            "dictionary": pattern.dictionary,
            "legacy_pattern": pattern.legacy_pattern,
        }
    return {
        "kind": "chessboard",
        "columns": pattern.columns,
        "rows": pattern.rows,
        "square_size": pattern.square_size,
    }


def load_pipeline_config(path: Path) -> PipelineConfig:
    """
    Load pipeline settings from a TOML file.

    Missing keys fall back to the dataclass defaults.

    Args:
        path: Path to a settings .toml file

    Returns:
        PipelineConfig dataclass
    """
    data = rtoml.load(Path(path))
    defaults = PipelineConfig()

    solver_data = data.get("solver", {})
    solver = SolverConfig(
        radial_count=int(solver_data.get("radial_count", defaults.solver.radial_count)),
        fix_tangential=bool(solver_data.get("fix_tangential", defaults.solver.fix_tangential)),
        fix_aspect_ratio=bool(solver_data.get("fix_aspect_ratio", defaults.solver.fix_aspect_ratio)),
        ftol=float(solver_data.get("ftol", defaults.solver.ftol)),
        xtol=float(solver_data.get("xtol", defaults.solver.xtol)),
        gtol=float(solver_data.get("gtol", defaults.solver.gtol)),
        max_nfev=solver_data.get("max_nfev", defaults.solver.max_nfev),
    )

    correction = data.get("correction", {})
    alpha = correction.get("alpha")

    return PipelineConfig(
        pattern=_parse_pattern(data.get("pattern", {})),
        solver=solver,
        alpha=None if alpha is None else float(alpha),
        workers=data.get("workers"),
        extensions=tuple(data.get("extensions", defaults.extensions)),
    )


def save_pipeline_config(config: PipelineConfig, path: Path) -> None:
    """
    Save pipeline settings to a TOML file. None values are omitted.
    """
    solver = {
        "radial_count": config.solver.radial_count,
        "fix_tangential": config.solver.fix_tangential,
        "fix_aspect_ratio": config.solver.fix_aspect_ratio,
        "ftol": config.solver.ftol,
        "xtol": config.solver.xtol,
        "gtol": config.solver.gtol,
    }
    if config.solver.max_nfev is not None:
        solver["max_nfev"] = config.solver.max_nfev

    data: dict[str, Any] = {
        "extensions": list(config.extensions),
        "pattern": _pattern_to_dict(config.pattern),
        "solver": solver,
        "correction": {},
    }
    if config.workers is not None:
        data["workers"] = config.workers
    if config.alpha is not None:
        data["correction"]["alpha"] = config.alpha

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        rtoml.dump(data, f)


def create_default_pipeline_config(pattern: Pattern | None = None) -> PipelineConfig:
    """
    Default settings: 9x6 inner-corner chessboard, 3 radial terms.
    """
    return PipelineConfig(pattern=pattern or ChessboardPattern())


# ============================================================================
# Calibration File (TOML)
# ============================================================================


def save_calibration(
    model: CameraModel,
    path: Path,
    metadata: Mapping[str, Any] | None = None,
) -> None:
    """
    Write a camera model to a TOML calibration file.

    Floats are written in shortest round-trip form, so load_calibration
    returns a model equal to the one saved.

    Args:
        model: Fitted camera model
        path: Destination .toml file
        metadata: Optional extra key/values (rms_error, image_count, ...)
    """
    data: dict[str, Any] = {
        "version": CALIBRATION_FORMAT_VERSION,
        "camera": {
            "fx": model.fx,
            "fy": model.fy,
            "cx": model.cx,
            "cy": model.cy,
            "width": model.width,
            "height": model.height,
        },
        "distortion": {
            "radial": list(model.radial),
            "tangential": list(model.tangential),
        },
    }

    # Flat arrays matching OpenCV's calibrateCamera output
    opencv: dict[str, Any] = {"camera_matrix": model.matrix.ravel().tolist()}
    if len(model.radial) <= 3:
        opencv["dist_coeffs"] = model.distortion.tolist()
    data["opencv"] = opencv

    meta = {"created_at": datetime.now(timezone.utc).isoformat()}
    meta.update({k: v for k, v in (metadata or {}).items() if v is not None})
    data["metadata"] = meta

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        rtoml.dump(data, f)


def _read_toml(path: Path) -> dict:
    path = Path(path)
    if not path.exists():
        raise CalibrationFileError(f"Calibration file not found: {path}")
    try:
        return rtoml.load(path)
    except rtoml.TomlParsingError as exc:
        raise CalibrationFileError(f"Malformed calibration file {path}: {exc}") from exc


def load_calibration(path: Path) -> CameraModel:
    """
    Read a camera model from a TOML calibration file.

    Raises:
        CalibrationFileError: The file is missing, malformed or incomplete
        InvalidCameraModel: The stored parameters violate the model invariants
    """
    data = _read_toml(path)
    try:
        camera = data["camera"]
        distortion = data.get("distortion", {})
        return CameraModel(
            fx=float(camera["fx"]),
            fy=float(camera["fy"]),
            cx=float(camera["cx"]),
            cy=float(camera["cy"]),
            resolution=(int(camera["width"]), int(camera["height"])),
            radial=tuple(float(k) for k in distortion.get("radial", [])),
            tangential=tuple(float(p) for p in distortion.get("tangential", [0.0, 0.0])),
        )
    except (KeyError, TypeError) as exc:
        raise CalibrationFileError(f"Calibration file {path} is missing {exc}") from exc


def load_calibration_metadata(path: Path) -> dict:
    """Return the [metadata] table of a calibration file (may be empty)."""
    return dict(_read_toml(path).get("metadata", {}))


# ============================================================================
# Pose Results (TOML)
# ============================================================================


def save_poses(results: Mapping[str, PoseResult], path: Path) -> None:
    """
    Save solved poses to a TOML file, rotation stored as a Rodrigues vector.
    """
    data: dict[str, Any] = {"poses": {}}
    for image_id, result in results.items():
        rodrigues = cv2.Rodrigues(result.pose.rotation)[0][:, 0]
        data["poses"][image_id] = {
            "rotation": rodrigues.tolist(),
            "translation": result.pose.translation.tolist(),
            "rms_error": result.rms_error,
            "iterations": result.iterations,
        }

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        rtoml.dump(data, f)


def load_poses(path: Path) -> dict[str, Pose]:
    """
    Load poses saved by save_poses.

    Returns:
        image_id -> Pose
    """
    data = _read_toml(path)
    poses = {}
    for image_id, pose_data in data.get("poses", {}).items():
        rotation = cv2.Rodrigues(np.array(pose_data["rotation"], dtype=np.float64))[0]
        translation = np.array(pose_data["translation"], dtype=np.float64)
        poses[image_id] = Pose(rotation=rotation, translation=translation)
    return poses


# ============================================================================
# SQLite Model Store
# ============================================================================

DEFAULT_MODEL_DB = Path.home() / ".lenscal" / "models.db"

_MODEL_SCHEMA = """
    CREATE TABLE IF NOT EXISTS camera_models (
        camera_name TEXT NOT NULL,
        width INTEGER NOT NULL,
        height INTEGER NOT NULL,
        fx REAL NOT NULL,
        fy REAL NOT NULL,
        cx REAL NOT NULL,
        cy REAL NOT NULL,
        distortion BLOB NOT NULL,
        radial_count INTEGER NOT NULL,
        rms_error REAL,
        image_count INTEGER,
        calibrated_at TEXT NOT NULL,
        PRIMARY KEY (camera_name, width, height)
    )
"""


@dataclass(frozen=True, slots=True)
class ModelRecord:
    """Summary of one stored model, without its parameters."""

    camera_name: str
    resolution: tuple[int, int]
    rms_error: float | None
    image_count: int | None
    calibrated_at: str


@contextmanager
def _open_model_db(db_path: Path) -> Iterator[sqlite3.Connection]:
    """Connection with the schema in place, committed and closed on exit."""
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    with closing(sqlite3.connect(db_path)) as conn:
        conn.execute(_MODEL_SCHEMA)
        with conn:
            yield conn


def init_model_db(db_path: Path = DEFAULT_MODEL_DB) -> None:
    """Create the model store (and its parent directory) if missing."""
    with _open_model_db(db_path):
        pass


def save_model_to_db(
    model: CameraModel,
    camera_name: str,
    db_path: Path = DEFAULT_MODEL_DB,
    rms_error: float | None = None,
    image_count: int | None = None,
) -> None:
    """
    Store a fitted model under (camera_name, resolution).

    A model already stored under the same key is replaced. Intrinsics are
    REAL columns; the distortion vector (radial then tangential) is kept as
    float64 bytes, so a load returns exactly the model saved.
    """
    distortion = np.array([*model.radial, *model.tangential], dtype=np.float64)
    row = (
        camera_name,
        model.width,
        model.height,
        model.fx,
        model.fy,
        model.cx,
        model.cy,
        distortion.tobytes(),
        len(model.radial),
        rms_error,
        image_count,
        datetime.now(timezone.utc).isoformat(),
    )
    with _open_model_db(db_path) as conn:
        conn.execute(
            "INSERT OR REPLACE INTO camera_models VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)", row
        )
    logger.debug("Stored model %s (%dx%d) in %s", camera_name, model.width, model.height, db_path)


def load_model_from_db(
    camera_name: str,
    resolution: tuple[int, int] | None = None,
    db_path: Path = DEFAULT_MODEL_DB,
) -> CameraModel | None:
    """
    Fetch a stored model.

    Args:
        camera_name: Name the model was saved under
        resolution: (width, height) to fetch. None picks the camera's
            largest stored resolution.
        db_path: Path to the SQLite file

    Returns:
        CameraModel, or None if the store or the entry doesn't exist
    """
    if not Path(db_path).exists():
        return None

    query = "SELECT width, height, fx, fy, cx, cy, distortion, radial_count FROM camera_models WHERE camera_name = ?"
    params: tuple = (camera_name,)
    if resolution is not None:
        query += " AND width = ? AND height = ?"
        params += (int(resolution[0]), int(resolution[1]))
    query += " ORDER BY width * height DESC LIMIT 1"

    with _open_model_db(db_path) as conn:
        row = conn.execute(query, params).fetchone()
    if row is None:
        return None

    width, height, fx, fy, cx, cy, blob, radial_count = row
    distortion = np.frombuffer(blob, dtype=np.float64).tolist()
    return CameraModel(
        fx=fx,
        fy=fy,
        cx=cx,
        cy=cy,
        resolution=(width, height),
        radial=tuple(distortion[:radial_count]),
        tangential=tuple(distortion[radial_count:]),
    )


def list_models(
    db_path: Path = DEFAULT_MODEL_DB,
    camera_name: str | None = None,
) -> list[ModelRecord]:
    """
    Stored models ordered by camera name, then by image area.

    Args:
        db_path: Path to the SQLite file (missing means empty)
        camera_name: Only list this camera's models
    """
    if not Path(db_path).exists():
        return []

    query = "SELECT camera_name, width, height, rms_error, image_count, calibrated_at FROM camera_models"
    params: tuple = ()
    if camera_name is not None:
        query += " WHERE camera_name = ?"
        params = (camera_name,)
    query += " ORDER BY camera_name, width * height"

    with _open_model_db(db_path) as conn:
        rows = conn.execute(query, params).fetchall()
    return [
        ModelRecord(
            camera_name=name,
            resolution=(width, height),
            rms_error=rms,
            image_count=count,
            calibrated_at=stamp,
        )
        for name, width, height, rms, count, stamp in rows
    ]


def delete_model(
    camera_name: str,
    resolution: tuple[int, int] | None = None,
    db_path: Path = DEFAULT_MODEL_DB,
) -> int:
    """
    Remove a camera's models, or only the one at `resolution`.

    Returns:
        Number of models removed
    """
    if not Path(db_path).exists():
        return 0

    query = "DELETE FROM camera_models WHERE camera_name = ?"
    params: tuple = (camera_name,)
    if resolution is not None:
        query += " AND width = ? AND height = ?"
        params += (int(resolution[0]), int(resolution[1]))

    with _open_model_db(db_path) as conn:
        return conn.execute(query, params).rowcount
