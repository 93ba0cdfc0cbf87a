#!/usr/bin/env python3
"""
lenscal CLI - camera calibration, distortion correction and pose solving.

Usage:
    lenscal calibrate --calibration-dir DIR --calibration-file OUT
    lenscal correct --calibration-file IN --correction-dir DIR --output-dir DIR
    lenscal correct --camera-name NAME --database DB --correction-dir DIR --output-dir DIR
    lenscal solve --calibration-file IN --image-dir DIR
    lenscal models [--database DB] [--delete NAME [--width W --height H]]
    lenscal board --output PNG
    lenscal --help
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import replace
from pathlib import Path

import cv2
import numpy as np

from .calibration.patterns import generate_board_image
from .config import (
    DEFAULT_MODEL_DB,
    create_default_pipeline_config,
    delete_model,
    list_models,
    load_calibration,
    load_model_from_db,
    load_pipeline_config,
    save_calibration,
    save_model_to_db,
    save_poses,
)
from .errors import CalibrationFileError, LenscalError
from .pipeline import correct_directory, fit, solve_directory
from .types import CameraModel, CharucoPattern, ChessboardPattern, PipelineConfig, camera_position

logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


# ============================================================================
# Arguments
# ============================================================================


def _add_pattern_args(parser: argparse.ArgumentParser) -> None:
    """Pattern overrides shared by calibrate, solve and board."""
    parser.add_argument("--config", type=Path, help="Pipeline settings TOML file")
    parser.add_argument(
        "--pattern", choices=("chessboard", "charuco"), help="Calibration target kind"
    )
    parser.add_argument("--columns", type=int, help="Inner corners (chessboard) or squares (charuco) across")
    parser.add_argument("--rows", type=int, help="Inner corners (chessboard) or squares (charuco) down")
    parser.add_argument("--square-size", type=float, help="Square edge length in world units")
    parser.add_argument("--workers", type=int, help="Worker threads")


def _add_calibrate_args(parser: argparse.ArgumentParser) -> None:
    """Arguments for the ``calibrate`` subcommand."""
    parser.add_argument("-c", "--calibration-dir", required=True, type=Path, help="Directory of pattern images")
    parser.add_argument("-f", "--calibration-file", required=True, type=Path, help="Output calibration file")
    parser.add_argument("--radial", type=int, help="Number of radial distortion terms")
    parser.add_argument("--fix-tangential", action="store_true", help="Keep p1 = p2 = 0")
    parser.add_argument("--max-images", type=int, default=0, help="Use at most this many images")
    parser.add_argument("--database", type=Path, help="Also store the model in this SQLite database")
    parser.add_argument("--camera-name", default="default", help="Database key for the model")
    _add_pattern_args(parser)


def _add_model_source_args(parser: argparse.ArgumentParser) -> None:
    """A calibration file, or a model stored under a camera name."""
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("-f", "--calibration-file", type=Path, help="Calibration file")
    source.add_argument("--camera-name", help="Load this camera's model from the database")
    parser.add_argument("--database", type=Path, default=DEFAULT_MODEL_DB, help="SQLite model database")


def _add_correct_args(parser: argparse.ArgumentParser) -> None:
    """Arguments for the ``correct`` subcommand."""
    _add_model_source_args(parser)
    parser.add_argument("-d", "--correction-dir", required=True, type=Path, help="Directory of images to correct")
    parser.add_argument("-o", "--output-dir", required=True, type=Path, help="Where corrected images go")
    parser.add_argument("--alpha", type=float, help="Free scaling 0 (crop) .. 1 (keep all pixels)")
    parser.add_argument("--config", type=Path, help="Pipeline settings TOML file")
    parser.add_argument("--workers", type=int, help="Worker threads")


def _add_solve_args(parser: argparse.ArgumentParser) -> None:
    """Arguments for the ``solve`` subcommand."""
    _add_model_source_args(parser)
    parser.add_argument("-d", "--image-dir", required=True, type=Path, help="Directory of pattern images")
    parser.add_argument("--poses-file", type=Path, help="Save solved poses to this TOML file")
    _add_pattern_args(parser)


def _add_models_args(parser: argparse.ArgumentParser) -> None:
    """Arguments for the ``models`` subcommand."""
    parser.add_argument("--database", type=Path, default=DEFAULT_MODEL_DB, help="SQLite model database")
    parser.add_argument("--camera-name", help="Only list this camera")
    parser.add_argument("--delete", metavar="NAME", help="Remove this camera's stored models")
    parser.add_argument("--width", type=int, help="With --delete, only the model at this width")
    parser.add_argument("--height", type=int, help="With --delete, only the model at this height")


def _add_board_args(parser: argparse.ArgumentParser) -> None:
    """Arguments for the ``board`` subcommand."""
    parser.add_argument("-o", "--output", required=True, type=Path, help="Output image file")
    parser.add_argument("--width", type=int, default=1000)
    parser.add_argument("--height", type=int, default=1000)
    _add_pattern_args(parser)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lenscal",
        description="Camera calibration, distortion correction and pose solving.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--log-level", default="INFO", help="Logging level")

    sub = parser.add_subparsers(dest="command", required=True)
    _add_calibrate_args(sub.add_parser("calibrate", help="Fit intrinsics from pattern images"))
    _add_correct_args(sub.add_parser("correct", help="Undistort a directory of images"))
    _add_solve_args(sub.add_parser("solve", help="Recover the pattern pose per image"))
    _add_models_args(sub.add_parser("models", help="List or delete stored camera models"))
    _add_board_args(sub.add_parser("board", help="Render the calibration pattern"))
    return parser


def _pipeline_config(args: argparse.Namespace) -> PipelineConfig:
    """Settings file (or defaults) with command line overrides applied."""
    config = load_pipeline_config(args.config) if args.config else create_default_pipeline_config()

    pattern = config.pattern
    kind = getattr(args, "pattern", None)
    if kind == "charuco" and not isinstance(pattern, CharucoPattern):
        pattern = CharucoPattern()
    elif kind == "chessboard" and not isinstance(pattern, ChessboardPattern):
        pattern = ChessboardPattern()

    overrides = {
        name: getattr(args, arg)
        for name, arg in (("columns", "columns"), ("rows", "rows"), ("square_size", "square_size"))
        if getattr(args, arg, None) is not None
    }
    if overrides:
        pattern = replace(pattern, **overrides)

    config = replace(config, pattern=pattern)
    if getattr(args, "workers", None) is not None:
        config = replace(config, workers=args.workers)
    return config


# ============================================================================
# Commands
# ============================================================================


def _load_model(args: argparse.Namespace) -> CameraModel:
    """
    Model from --calibration-file, or the largest stored resolution of
    --camera-name in --database.

    Raises:
        CalibrationFileError: The file or the named model is missing
    """
    if args.calibration_file is not None:
        return load_calibration(args.calibration_file)

    model = load_model_from_db(args.camera_name, db_path=args.database)
    if model is None:
        raise CalibrationFileError(f"No model named {args.camera_name!r} in {args.database}")
    logger.info("Using stored model %s at %dx%d", args.camera_name, model.width, model.height)
    return model


def _run_calibrate(args: argparse.Namespace) -> int:
    config = _pipeline_config(args)
    solver = config.solver
    if args.radial is not None:
        solver = replace(solver, radial_count=args.radial)
    if args.fix_tangential:
        solver = replace(solver, fix_tangential=True)

    result = fit(
        args.calibration_dir,
        pattern=config.pattern,
        solver=solver,
        workers=config.workers,
        max_images=args.max_images,
        extensions=config.extensions,
    )

    image_count = len(result.per_image_error)
    save_calibration(
        result.model,
        args.calibration_file,
        metadata={
            "rms_error": result.rms_error,
            "image_count": image_count,
            "skipped_count": len(result.skipped_images),
        },
    )
    if args.database is not None:
        save_model_to_db(
            result.model,
            args.camera_name,
            args.database,
            rms_error=result.rms_error,
            image_count=image_count,
        )

    model = result.model
    print(f"Calibrated from {image_count} images ({len(result.skipped_images)} skipped)")
    print(f"  fx={model.fx:.4f} fy={model.fy:.4f} cx={model.cx:.4f} cy={model.cy:.4f}")
    print(f"  radial={list(model.radial)} tangential={list(model.tangential)}")
    print(f"  RMS reprojection error: {result.rms_error:.4f} px")
    for image_id, error in result.per_image_error.items():
        print(f"    {image_id}: {error:.4f} px")
    if result.skipped_images:
        print(f"  Skipped: {', '.join(result.skipped_images)}")
    print(f"Saved {args.calibration_file}")
    return 0


def _run_correct(args: argparse.Namespace) -> int:
    config = load_pipeline_config(args.config) if args.config else create_default_pipeline_config()
    model = _load_model(args)
    alpha = args.alpha if args.alpha is not None else config.alpha
    workers = args.workers if args.workers is not None else config.workers

    summary = correct_directory(
        model,
        args.correction_dir,
        args.output_dir,
        alpha=alpha,
        workers=workers,
        extensions=config.extensions,
    )
    for image_id, target in summary.written.items():
        print(f"save new image {target}")
    for image_id, reason in summary.skipped.items():
        print(f"skipped {image_id}: {reason}")
    return 0


def _run_solve(args: argparse.Namespace) -> int:
    config = _pipeline_config(args)
    model = _load_model(args)

    summary = solve_directory(
        model,
        args.image_dir,
        pattern=config.pattern,
        workers=config.workers,
        extensions=config.extensions,
    )

    np.set_printoptions(precision=5, suppress=True)
    for image_id, result in summary.results.items():
        rvec = cv2.Rodrigues(result.pose.rotation)[0][:, 0]
        print(
            f"{image_id}: rvec={rvec} tvec={result.pose.translation} "
            f"camera={camera_position(result.pose)} rms={result.rms_error:.4f}px"
        )
    for image_id, reason in summary.failures.items():
        print(f"{image_id}: failed ({reason})")

    if args.poses_file is not None:
        save_poses(summary.results, args.poses_file)
        print(f"Saved {args.poses_file}")
    return 0 if summary.results else 1


def _run_models(args: argparse.Namespace) -> int:
    if args.delete is not None:
        resolution = None
        if args.width is not None or args.height is not None:
            if args.width is None or args.height is None:
                raise ValueError("--width and --height must be given together")
            resolution = (args.width, args.height)
        removed = delete_model(args.delete, resolution, args.database)
        print(f"Deleted {removed} model(s) for {args.delete}")
        return 0 if removed else 1

    records = list_models(args.database, camera_name=args.camera_name)
    if not records:
        print(f"No models in {args.database}")
        return 0
    for record in records:
        width, height = record.resolution
        rms = "n/a" if record.rms_error is None else f"{record.rms_error:.4f}px"
        images = "?" if record.image_count is None else record.image_count
        print(f"{record.camera_name} {width}x{height} rms={rms} images={images} calibrated={record.calibrated_at}")
    return 0


def _run_board(args: argparse.Namespace) -> int:
    config = _pipeline_config(args)
    image = generate_board_image(config.pattern, args.width, args.height, margin=20)
    args.output.parent.mkdir(parents=True, exist_ok=True)
    if not cv2.imwrite(str(args.output), image):
        logger.error("Could not write %s", args.output)
        return 1
    print(f"Saved {args.output}")
    return 0


COMMANDS = {
    "calibrate": _run_calibrate,
    "correct": _run_correct,
    "solve": _run_solve,
    "models": _run_models,
    "board": _run_board,
}


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging("DEBUG" if args.verbose else args.log_level)

    try:
        return COMMANDS[args.command](args)
    except (LenscalError, FileNotFoundError, ValueError) as exc:
        logger.error("%s failed: %s", args.command, exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
