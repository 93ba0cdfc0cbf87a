"""
Calibration pattern definitions and rendering.

Pure functions - no classes, no state.
"""

from __future__ import annotations

import cv2
import numpy as np

from ..camera_model import unproject_ray
from ..types import CameraModel, CharucoPattern, ChessboardPattern, Pattern, Pose


# ============================================================================
# ArUco Dictionary Reference
# ============================================================================

ARUCO_DICTIONARIES = {
    "DICT_4X4_50": cv2.aruco.DICT_4X4_50,
    "DICT_4X4_100": cv2.aruco.DICT_4X4_100,
    "DICT_4X4_250": cv2.aruco.DICT_4X4_250,
    "DICT_4X4_1000": cv2.aruco.DICT_4X4_1000,
    "DICT_5X5_50": cv2.aruco.DICT_5X5_50,
    "DICT_5X5_100": cv2.aruco.DICT_5X5_100,
    "DICT_5X5_250": cv2.aruco.DICT_5X5_250,
    "DICT_5X5_1000": cv2.aruco.DICT_5X5_1000,
    "DICT_6X6_50": cv2.aruco.DICT_6X6_50,
    "DICT_6X6_100": cv2.aruco.DICT_6X6_100,
    "DICT_6X6_250": cv2.aruco.DICT_6X6_250,
    "DICT_6X6_1000": cv2.aruco.DICT_6X6_1000,
    "DICT_7X7_50": cv2.aruco.DICT_7X7_50,
    "DICT_7X7_100": cv2.aruco.DICT_7X7_100,
    "DICT_7X7_250": cv2.aruco.DICT_7X7_250,
    "DICT_7X7_1000": cv2.aruco.DICT_7X7_1000,
    "DICT_ARUCO_ORIGINAL": cv2.aruco.DICT_ARUCO_ORIGINAL,
    "DICT_APRILTAG_16h5": cv2.aruco.DICT_APRILTAG_16h5,
    "DICT_APRILTAG_25h9": cv2.aruco.DICT_APRILTAG_25h9,
    "DICT_APRILTAG_36h10": cv2.aruco.DICT_APRILTAG_36h10,
    "DICT_APRILTAG_36h11": cv2.aruco.DICT_APRILTAG_36h11,
}


# ============================================================================
# Object Points
# ============================================================================


def chessboard_object_points(pattern: ChessboardPattern) -> np.ndarray:
    """
    3D positions of the inner corners, row-major, on the z = 0 plane.

    Point id i sits at column i % columns, row i // columns.

    Returns:
        (columns * rows, 3) array in pattern units
    """
    ids = np.arange(pattern.columns * pattern.rows)
    points = np.zeros((len(ids), 3), dtype=np.float64)
    points[:, 0] = (ids % pattern.columns) * pattern.square_size
    points[:, 1] = (ids // pattern.columns) * pattern.square_size
    return points


def create_charuco_board(pattern: CharucoPattern) -> cv2.aruco.CharucoBoard:
    """
    Create an OpenCV CharucoBoard from configuration.
    """
    dict_int = ARUCO_DICTIONARIES.get(pattern.dictionary, cv2.aruco.DICT_4X4_50)
    dictionary = cv2.aruco.getPredefinedDictionary(dict_int)

    board = cv2.aruco.CharucoBoard(
        size=(pattern.columns, pattern.rows),
        squareLength=pattern.square_size,
        markerLength=pattern.marker_size,
        dictionary=dictionary,
    )
    board.setLegacyPattern(pattern.legacy_pattern)
    return board


def pattern_object_points(pattern: Pattern) -> np.ndarray:
    """
    3D positions of every identifiable point on the pattern, indexed by id.
    """
    if isinstance(pattern, ChessboardPattern):
        return chessboard_object_points(pattern)
    board = create_charuco_board(pattern)
    return np.asarray(board.getChessboardCorners(), dtype=np.float64).reshape(-1, 3)


def grid_lines(pattern: ChessboardPattern) -> list[np.ndarray]:
    """
    Point ids grouped by chessboard row and by column.

    Every group lies on a straight line in an undistorted image.
    """
    ids = np.arange(pattern.columns * pattern.rows).reshape(pattern.rows, pattern.columns)
    return [row for row in ids] + [col for col in ids.T]


# ============================================================================
# Rendering
# ============================================================================


def generate_board_image(
    pattern: Pattern,
    width: int = 1000,
    height: int = 1000,
    margin: int = 0,
) -> np.ndarray:
    """
    Generate a flat image of the pattern, suitable for printing.

    Returns:
        BGR image as numpy array
    """
    if isinstance(pattern, CharucoPattern):
        board = create_charuco_board(pattern)
        img = board.generateImage((width, height), marginSize=margin)
    else:
        squares_x = pattern.columns + 1
        squares_y = pattern.rows + 1
        cell = max(1, min((width - 2 * margin) // squares_x, (height - 2 * margin) // squares_y))
        img = np.full((height, width), 255, dtype=np.uint8)
        x0 = (width - cell * squares_x) // 2
        y0 = (height - cell * squares_y) // 2
        for j in range(squares_y):
            for i in range(squares_x):
                if (i + j) % 2 == 0:
                    img[y0 + j * cell:y0 + (j + 1) * cell, x0 + i * cell:x0 + (i + 1) * cell] = 0

    if len(img.shape) == 2:
        img = cv2.cvtColor(img, cv2.COLOR_GRAY2BGR)

    return img


def render_chessboard_view(
    pattern: ChessboardPattern,
    model: CameraModel,
    pose: Pose,
    supersample: int = 2,
) -> np.ndarray:
    """
    Render what the camera sees of a chessboard floating in front of a white
    background, including lens distortion.

    Each output pixel is traced back through unproject_ray and intersected
    with the pattern plane. Pixels are supersampled on a regular grid to
    anti-alias square edges.

    Returns:
        (height, width) uint8 grayscale image
    """
    width, height = model.resolution
    offsets = (np.arange(supersample) + 0.5) / supersample - 0.5
    ox, oy = np.meshgrid(offsets, offsets)
    accum = np.zeros((height, width), dtype=np.float64)

    v, u = np.mgrid[0:height, 0:width].astype(np.float64)
    rotation_t = pose.rotation.T
    center = -rotation_t @ pose.translation

    for dx, dy in zip(ox.ravel(), oy.ravel()):
        pixels = np.column_stack([(u + dx).ravel(), (v + dy).ravel()])
        rays = unproject_ray(model, pixels, strict=False) @ rotation_t.T
        with np.errstate(divide="ignore", invalid="ignore"):
            s = -center[2] / rays[:, 2]
            px = center[0] + s * rays[:, 0]
            py = center[1] + s * rays[:, 1]
        hit = np.isfinite(s) & (s > 0)

        col = np.floor(np.where(hit, px, 0.0) / pattern.square_size).astype(np.int64) + 1
        row = np.floor(np.where(hit, py, 0.0) / pattern.square_size).astype(np.int64) + 1
        on_board = hit & (col >= 0) & (col <= pattern.columns) & (row >= 0) & (row <= pattern.rows)
        black = on_board & ((col + row) % 2 == 0)
        accum += np.where(black, 0.0, 255.0).reshape(height, width)

    return np.clip(np.round(accum / supersample**2), 0, 255).astype(np.uint8)
