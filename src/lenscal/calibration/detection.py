"""
Calibration pattern detection.

Pure functions - detection of one image has no side effects. detect_all runs
detection over many images on a thread pool and merges results in image-id
order, so the outcome never depends on worker completion order.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

import cv2
import numpy as np

from ..errors import DetectionFailed
from ..types import CharucoPattern, ChessboardPattern, ObservationSet, Pattern
from .patterns import ARUCO_DICTIONARIES, chessboard_object_points, create_charuco_board

logger = logging.getLogger(__name__)

MIN_DETECTED_POINTS = 4
SUBPIX_CRITERIA = (cv2.TERM_CRITERIA_EPS + cv2.TERM_CRITERIA_MAX_ITER, 30, 0.001)


@dataclass(frozen=True, slots=True)
class DetectionBatch:
    """
    Merged detection results for a set of images, ordered by image id.
    """

    observations: dict[str, ObservationSet]
    failures: dict[str, str]  # image_id -> reason

    @property
    def skipped_images(self) -> tuple[str, ...]:
        return tuple(self.failures)


# ============================================================================
# Image Preparation
# ============================================================================


def to_gray(image: np.ndarray) -> np.ndarray:
    """
    Convert a decoded image of any common layout to 8-bit grayscale.

    Accepts (h, w), (h, w, 1), (h, w, 3) BGR and (h, w, 4) BGRA grids,
    uint8, uint16 (scaled down by 256) or floating point (0..1 or 0..255).
    """
    image = np.asarray(image)
    if image.ndim == 3 and image.shape[2] == 1:
        image = image[:, :, 0]

    if image.dtype == np.uint16:
        image = (image >> 8).astype(np.uint8)
    elif image.dtype != np.uint8:
        data = image.astype(np.float64)
        if data.size and np.nanmax(data) <= 1.0:
            data = data * 255.0
        image = np.clip(np.nan_to_num(data), 0, 255).astype(np.uint8)

    if image.ndim == 2:
        return image
    if image.ndim == 3 and image.shape[2] == 3:
        return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    if image.ndim == 3 and image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
    raise ValueError(f"Unsupported image shape {image.shape}")


def _subpix_window(corners: np.ndarray, columns: int) -> int:
    """
    Half-size of the cornerSubPix search window.

    Bounded by the spacing between neighbouring corners so the window never
    reaches the next corner.
    """
    pts = corners.reshape(-1, 2)
    if len(pts) < 2:
        return 5
    if columns > 1:
        grid = pts[: (len(pts) // columns) * columns].reshape(-1, columns, 2)
        spacing = np.linalg.norm(np.diff(grid, axis=1), axis=2).min()
    else:
        spacing = np.linalg.norm(np.diff(pts, axis=0), axis=1).min()
    return int(np.clip(0.4 * spacing, 2, 11))


# ============================================================================
# Chessboard Detection
# ============================================================================


def detect_chessboard_points(
    gray: np.ndarray,
    pattern: ChessboardPattern,
    image_id: str = "",
) -> ObservationSet:
    """
    Detect the inner corners of a chessboard with sub-pixel accuracy.

    Tries the classic detector first and falls back to the sector-based
    detector for harder images.

    Raises:
        DetectionFailed: The full grid could not be located
    """
    size = (pattern.columns, pattern.rows)
    flags = cv2.CALIB_CB_ADAPTIVE_THRESH + cv2.CALIB_CB_NORMALIZE_IMAGE
    found, corners = cv2.findChessboardCorners(gray, size, flags=flags)

    if found and corners is not None:
        half = _subpix_window(corners, pattern.columns)
        corners = cv2.cornerSubPix(
            gray, corners.astype(np.float32), (half, half), (-1, -1), SUBPIX_CRITERIA
        )
    else:
        # SB detector is already sub-pixel accurate
        flags = cv2.CALIB_CB_EXHAUSTIVE + cv2.CALIB_CB_ACCURACY
        found, corners = cv2.findChessboardCornersSB(gray, size, flags=flags)

    if not found or corners is None:
        raise DetectionFailed(image_id, f"{pattern.columns}x{pattern.rows} chessboard not found")

    img_points = corners.reshape(-1, 2).astype(np.float64)
    if not np.all(np.isfinite(img_points)):
        raise DetectionFailed(image_id, "non-finite corner after refinement")

    return ObservationSet(
        image_id=image_id,
        point_ids=np.arange(len(img_points)),
        obj_points=chessboard_object_points(pattern),
        img_points=img_points,
        resolution=(gray.shape[1], gray.shape[0]),
    )


# ============================================================================
# ChArUco Detection
# ============================================================================


def _find_charuco_corners(
    gray: np.ndarray,
    detector: cv2.aruco.CharucoDetector,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Internal helper to detect ChArUco corners in a grayscale image.

    Returns:
        (ids, img_loc) arrays
    """
    charuco_corners, charuco_ids, _, _ = detector.detectBoard(gray)

    if charuco_ids is None or charuco_corners is None or len(charuco_ids) == 0:
        return np.array([], dtype=np.int32), np.array([], dtype=np.float32).reshape(0, 2)

    try:
        charuco_corners = cv2.cornerSubPix(
            gray, charuco_corners.astype(np.float32), (5, 5), (-1, -1), SUBPIX_CRITERIA
        )
    except cv2.error:
        logger.debug("cornerSubPix failed on ChArUco corners, keeping detector output")

    return charuco_ids.reshape(-1), charuco_corners.reshape(-1, 2)


def detect_charuco_points(
    gray: np.ndarray,
    pattern: CharucoPattern,
    image_id: str = "",
    board: cv2.aruco.CharucoBoard | None = None,
) -> ObservationSet:
    """
    Detect ChArUco corners in a single frame.

    If corners aren't found, tries detecting in mirrored frame.

    Raises:
        DetectionFailed: Fewer than 4 corners were found
    """
    if board is None:
        board = create_charuco_board(pattern)
    if pattern.dictionary not in ARUCO_DICTIONARIES:
        logger.warning("Unknown ArUco dictionary %s, using DICT_4X4_50", pattern.dictionary)

    detector = cv2.aruco.CharucoDetector(board)
    ids, img_loc = _find_charuco_corners(gray, detector)

    if ids.size == 0:
        mirrored = cv2.flip(gray, 1)
        ids, img_loc = _find_charuco_corners(mirrored, detector)
        if ids.size > 0:
            # Flip x coordinates back
            img_loc = img_loc.copy()
            img_loc[:, 0] = gray.shape[1] - 1 - img_loc[:, 0]

    if ids.size < MIN_DETECTED_POINTS:
        raise DetectionFailed(image_id, f"only {ids.size} ChArUco corners found")

    obj_loc = np.asarray(board.getChessboardCorners(), dtype=np.float64)[ids, :]

    return ObservationSet(
        image_id=image_id,
        point_ids=ids,
        obj_points=obj_loc,
        img_points=img_loc.astype(np.float64),
        resolution=(gray.shape[1], gray.shape[0]),
    )


# ============================================================================
# Dispatch
# ============================================================================


def detect_points(
    image: np.ndarray,
    pattern: Pattern,
    image_id: str = "",
) -> ObservationSet:
    """
    Detect pattern correspondences in a single decoded image.

    Args:
        image: Pixel grid, single- or multi-channel
        pattern: Pattern to look for
        image_id: Identifier attached to the observations

    Returns:
        ObservationSet with sub-pixel image coordinates

    Raises:
        DetectionFailed: The pattern could not be located, or the image
            layout could not be analysed
    """
    if image is None or np.asarray(image).size == 0:
        raise DetectionFailed(image_id, "empty or unreadable image")

    try:
        gray = to_gray(image)
        if int(gray.max()) - int(gray.min()) < 10:
            raise DetectionFailed(image_id, "insufficient contrast")

        if isinstance(pattern, CharucoPattern):
            return detect_charuco_points(gray, pattern, image_id)
        return detect_chessboard_points(gray, pattern, image_id)
    except (ValueError, cv2.error) as exc:
        raise DetectionFailed(image_id, str(exc).strip() or type(exc).__name__) from exc


def detect_all(
    images: Mapping[str, Any],
    pattern: Pattern,
    workers: int | None = None,
    loader: Callable[[Any], np.ndarray | None] | None = None,
) -> DetectionBatch:
    """
    Detect the pattern in many images concurrently.

    Detection failures are collected, not raised. Results are keyed and
    ordered by image id.

    Args:
        images: image_id -> decoded image, or whatever loader accepts
        pattern: Pattern to look for
        workers: Thread pool size (None for the executor default)
        loader: Optional callable turning a mapping value into a pixel grid

    Returns:
        DetectionBatch
    """
    lock = threading.Lock()
    found: dict[str, ObservationSet] = {}
    failed: dict[str, str] = {}

    def _detect_one(image_id: str) -> None:
        try:
            source = images[image_id]
            image = loader(source) if loader is not None else source
            observations = detect_points(image, pattern, image_id)
        except DetectionFailed as exc:
            logger.debug("Skipping %s: %s", image_id, exc.reason)
            with lock:
                failed[image_id] = exc.reason
            return
        with lock:
            found[image_id] = observations

    ids = sorted(images)
    with ThreadPoolExecutor(max_workers=workers) as executor:
        list(executor.map(_detect_one, ids))

    batch = DetectionBatch(
        observations={image_id: found[image_id] for image_id in ids if image_id in found},
        failures={image_id: failed[image_id] for image_id in ids if image_id in failed},
    )
    if batch.failures:
        logger.warning(
            "Pattern not found in %d of %d images: %s",
            len(batch.failures),
            len(ids),
            ", ".join(batch.failures),
        )
    return batch
