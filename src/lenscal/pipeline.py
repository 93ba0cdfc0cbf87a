"""
Batch entry points behind the calibrate, correct and solve commands.

These functions own the I/O: enumerating image files, decoding and writing
images, fanning work out to a thread pool. The numerical work is delegated
to the pure functions in lenscal.calibration and lenscal.correction.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path

import cv2
import numpy as np

from .calibration.detection import detect_all, detect_points
from .calibration.intrinsic import calibrate_camera, select_observations
from .calibration.pose import solve_pose
from .correction import apply_remap, build_remap_table
from .errors import InsufficientObservations, LenscalError
from .types import (
    CalibrationResult,
    CameraModel,
    ChessboardPattern,
    Pattern,
    PoseResult,
    RemapTable,
    SolverConfig,
)

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".bmp", ".tif", ".tiff")


@dataclass(frozen=True, slots=True)
class CorrectionSummary:
    written: dict[str, Path]  # image_id -> output file
    skipped: dict[str, str]  # image_id -> reason
    invalid_pixels: int  # sentinel-filled pixels per image, summed over tables


@dataclass(frozen=True, slots=True)
class SolveSummary:
    results: dict[str, PoseResult]
    failures: dict[str, str]  # image_id -> reason


# ============================================================================
# Image I/O
# ============================================================================


def iter_images(
    directory: Path,
    extensions: Iterable[str] = IMAGE_EXTENSIONS,
) -> list[Path]:
    """
    Image files directly inside directory, sorted by name.
    """
    directory = Path(directory)
    if not directory.is_dir():
        raise FileNotFoundError(f"Not a directory: {directory}")
    wanted = {ext.lower() for ext in extensions}
    return sorted(p for p in directory.iterdir() if p.is_file() and p.suffix.lower() in wanted)


def load_image(path: Path) -> np.ndarray | None:
    """
    Decode an image file, or None if it can't be read.
    """
    image = cv2.imread(str(path), cv2.IMREAD_UNCHANGED)
    if image is None:
        logger.warning("Could not read image %s", path)
    return image


def _image_sources(
    source: Path | str | Mapping[str, np.ndarray],
    extensions: Iterable[str],
) -> tuple[dict[str, object], Callable[[object], np.ndarray | None] | None]:
    """
    Normalize a directory or an in-memory mapping to (id -> source, loader).
    """
    if isinstance(source, Mapping):
        return dict(source), None
    paths = iter_images(Path(source), extensions)
    return {p.name: p for p in paths}, load_image


# ============================================================================
# Calibrate
# ============================================================================


def fit(
    source: Path | str | Mapping[str, np.ndarray],
    pattern: Pattern | None = None,
    solver: SolverConfig | None = None,
    workers: int | None = None,
    max_images: int = 0,
    extensions: Iterable[str] = IMAGE_EXTENSIONS,
) -> CalibrationResult:
    """
    Calibrate a camera from a directory (or mapping) of pattern images.

    Images where the pattern can't be found are skipped and listed in
    CalibrationResult.skipped_images. Images whose resolution differs from
    the most common one are skipped too.

    Args:
        source: Directory of image files, or image_id -> decoded image
        pattern: Calibration pattern (defaults to a 9x6 chessboard)
        solver: Fit options
        workers: Detection thread pool size
        max_images: If > 0, calibrate on at most this many evenly spaced
            images
        extensions: File extensions considered when source is a directory

    Raises:
        InsufficientObservations: Too few usable images
        CalibrationDidNotConverge: The fit did not converge
    """
    pattern = pattern or ChessboardPattern()
    images, loader = _image_sources(source, extensions)
    if not images:
        raise InsufficientObservations(3, 0, "calibration images")

    logger.info("Detecting pattern in %d images", len(images))
    batch = detect_all(images, pattern, workers=workers, loader=loader)
    skipped = dict(batch.failures)

    sizes = Counter(obs.resolution for obs in batch.observations.values())
    if not sizes:
        raise InsufficientObservations(3, 0, "images with a detected pattern")
    resolution, _ = sizes.most_common(1)[0]

    observations = []
    for image_id, obs in batch.observations.items():
        if obs.resolution != resolution:
            logger.warning(
                "Skipping %s: resolution %s differs from %s", image_id, obs.resolution, resolution
            )
            skipped[image_id] = f"resolution {obs.resolution} differs from {resolution}"
            continue
        observations.append(obs)

    if max_images > 0:
        observations = select_observations(observations, max_images)

    if skipped:
        logger.warning("Skipped %d of %d calibration images", len(skipped), len(images))

    return calibrate_camera(
        observations,
        resolution,
        solver=solver,
        skipped_images=tuple(sorted(skipped)),
    )


# ============================================================================
# Correct
# ============================================================================


class _TableCache:
    """
    One remap table per source resolution, built on first use.
    """

    def __init__(
        self,
        model: CameraModel,
        resolution: tuple[int, int] | None,
        alpha: float | None,
    ):
        self._model = model
        self._resolution = resolution
        self._alpha = alpha
        self._tables: dict[tuple[int, int], RemapTable] = {}
        self._lock = threading.Lock()

    def get(self, source_resolution: tuple[int, int]) -> RemapTable:
        with self._lock:
            table = self._tables.get(source_resolution)
            if table is None:
                logger.debug("Building remap table for %dx%d", *source_resolution)
                table = build_remap_table(
                    self._model.scaled_to(source_resolution),
                    resolution=self._resolution,
                    alpha=self._alpha,
                )
                self._tables[source_resolution] = table
            return table

    @property
    def tables(self) -> dict[tuple[int, int], RemapTable]:
        return dict(self._tables)


def correct_directory(
    model: CameraModel,
    input_dir: Path | str,
    output_dir: Path | str,
    resolution: tuple[int, int] | None = None,
    alpha: float | None = None,
    workers: int | None = None,
    prefix: str = "undistorted_",
    extensions: Iterable[str] = IMAGE_EXTENSIONS,
) -> CorrectionSummary:
    """
    Undistort every image in input_dir into output_dir.

    The remap table is built once per source resolution and shared by all
    worker threads.

    Args:
        model: Fitted camera model
        input_dir: Directory of images to correct
        output_dir: Destination directory (created if missing)
        resolution: Output (width, height), defaults to each input's size
        alpha: Optional free scaling, see correction.optimal_camera_matrix
        workers: Thread pool size
        prefix: Prepended to each output file name

    Returns:
        CorrectionSummary
    """
    paths = iter_images(Path(input_dir), extensions)
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    cache = _TableCache(model, resolution, alpha)
    lock = threading.Lock()
    written: dict[str, Path] = {}
    skipped: dict[str, str] = {}

    def _correct_one(path: Path) -> None:
        image = load_image(path)
        if image is None:
            with lock:
                skipped[path.name] = "unreadable image"
            return
        height, width = image.shape[:2]
        target = output_dir / f"{prefix}{path.name}"
        try:
            corrected = apply_remap(image, cache.get((width, height)))
            saved = cv2.imwrite(str(target), corrected)
        except (cv2.error, ValueError) as exc:
            logger.warning("Could not correct %s: %s", path.name, exc)
            with lock:
                skipped[path.name] = str(exc).strip() or type(exc).__name__
            return
        if not saved:
            with lock:
                skipped[path.name] = f"could not write {target}"
            return
        logger.debug("Saved %s", target)
        with lock:
            written[path.name] = target

    with ThreadPoolExecutor(max_workers=workers) as executor:
        list(executor.map(_correct_one, paths))

    invalid = sum(t.invalid_count for t in cache.tables.values())
    logger.info(
        "Corrected %d of %d images into %s", len(written), len(paths), output_dir
    )
    if skipped:
        logger.warning("Skipped %d images: %s", len(skipped), ", ".join(sorted(skipped)))

    return CorrectionSummary(
        written={k: written[k] for k in sorted(written)},
        skipped={k: skipped[k] for k in sorted(skipped)},
        invalid_pixels=invalid,
    )


# ============================================================================
# Solve
# ============================================================================


def solve_directory(
    model: CameraModel,
    source: Path | str | Mapping[str, np.ndarray],
    pattern: Pattern | None = None,
    workers: int | None = None,
    extensions: Iterable[str] = IMAGE_EXTENSIONS,
) -> SolveSummary:
    """
    Recover the pattern pose in every image of a directory (or mapping).

    Each image is independent: detection failures and solver failures are
    recorded per image and the remaining images continue.

    Returns:
        SolveSummary with results and failures keyed by image id
    """
    pattern = pattern or ChessboardPattern()
    images, loader = _image_sources(source, extensions)

    lock = threading.Lock()
    results: dict[str, PoseResult] = {}
    failures: dict[str, str] = {}

    def _solve_one(image_id: str) -> None:
        try:
            image = loader(images[image_id]) if loader is not None else images[image_id]
            observations = detect_points(image, pattern, image_id)
            height, width = np.asarray(image).shape[:2]
            result = solve_pose(model.scaled_to((width, height)), observations)
        except (LenscalError, cv2.error) as exc:
            logger.warning("Could not solve %s: %s", image_id, exc)
            with lock:
                failures[image_id] = str(exc)
            return
        with lock:
            results[image_id] = result

    ids = sorted(images)
    with ThreadPoolExecutor(max_workers=workers) as executor:
        list(executor.map(_solve_one, ids))

    logger.info("Solved %d of %d images", len(results), len(ids))
    return SolveSummary(
        results={k: results[k] for k in ids if k in results},
        failures={k: failures[k] for k in ids if k in failures},
    )
