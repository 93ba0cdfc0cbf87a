"""
Lens distortion correction through a precomputed remap table.

Build the table once per (model, resolution) and apply it to any number of
images of that resolution. Tables are read-only and may be shared between
threads.
"""

from __future__ import annotations

import logging

import cv2
import numpy as np

from .camera_model import distort_normalized, distortion_jacobian, unproject_ray
from .types import CameraModel, RemapTable

logger = logging.getLogger(__name__)

SENTINEL = 0
OPTIMAL_MATRIX_GRID = 9


# ============================================================================
# Destination Intrinsics
# ============================================================================


def optimal_camera_matrix(
    model: CameraModel,
    alpha: float,
    resolution: tuple[int, int] | None = None,
) -> np.ndarray:
    """
    Camera matrix for the undistorted image that trades cropping for
    black borders.

    A grid of points spanning the source image is undistorted. alpha = 0
    maps the largest rectangle inside the valid region to the full output
    (no black pixels), alpha = 1 maps the bounding box of the whole source
    image (nothing lost). Values in between interpolate.

    Args:
        model: Camera model at the source resolution
        alpha: Free scaling parameter in [0, 1]
        resolution: Output (width, height), defaults to the model's

    Returns:
        3x3 camera matrix for the destination image
    """
    if not 0.0 <= alpha <= 1.0:
        raise ValueError(f"alpha must be in [0, 1], got {alpha}")
    width, height = model.resolution
    out_w, out_h = resolution or model.resolution

    n = OPTIMAL_MATRIX_GRID
    gx, gy = np.meshgrid(np.linspace(0, width - 1, n), np.linspace(0, height - 1, n))
    rays = unproject_ray(model, np.column_stack([gx.ravel(), gy.ravel()]), strict=False)
    xy = (rays[:, 0:2] / rays[:, 2:3]).reshape(n, n, 2)
    ok = np.all(np.isfinite(xy), axis=2)
    if not ok.all():
        logger.warning(
            "Distortion inverse failed for %d of %d border samples; ignoring them",
            int((~ok).sum()),
            ok.size,
        )
    if ok.sum() < 4:
        return model.scaled_to((out_w, out_h)).matrix

    x = xy[..., 0]
    y = xy[..., 1]
    outer_x0, outer_x1 = np.nanmin(x), np.nanmax(x)
    outer_y0, outer_y1 = np.nanmin(y), np.nanmax(y)
    inner_x0 = np.nanmax(x[:, 0])
    inner_x1 = np.nanmin(x[:, -1])
    inner_y0 = np.nanmax(y[0, :])
    inner_y1 = np.nanmin(y[-1, :])

    spans = np.array([inner_x1 - inner_x0, inner_y1 - inner_y0, outer_x1 - outer_x0, outer_y1 - outer_y0])
    if not np.all(np.isfinite(spans)) or np.any(spans <= 0):
        logger.warning("Undistorted border is degenerate; keeping the model camera matrix")
        return model.scaled_to((out_w, out_h)).matrix

    fx0 = (out_w - 1) / (inner_x1 - inner_x0)
    fy0 = (out_h - 1) / (inner_y1 - inner_y0)
    cx0 = -fx0 * inner_x0
    cy0 = -fy0 * inner_y0

    fx1 = (out_w - 1) / (outer_x1 - outer_x0)
    fy1 = (out_h - 1) / (outer_y1 - outer_y0)
    cx1 = -fx1 * outer_x0
    cy1 = -fy1 * outer_y0

    return np.array([
        [fx0 * (1 - alpha) + fx1 * alpha, 0.0, cx0 * (1 - alpha) + cx1 * alpha],
        [0.0, fy0 * (1 - alpha) + fy1 * alpha, cy0 * (1 - alpha) + cy1 * alpha],
        [0.0, 0.0, 1.0],
    ])


# ============================================================================
# Remap Table
# ============================================================================


def build_remap_table(
    model: CameraModel,
    resolution: tuple[int, int] | None = None,
    alpha: float | None = None,
    new_matrix: np.ndarray | None = None,
) -> RemapTable:
    """
    Precompute, for every destination pixel, where to sample the source.

    Each destination pixel is an ideal (distortion-free) ray under the
    destination camera matrix. Distorting that ray with the model and
    projecting with the model's intrinsics gives the source coordinate.
    Pixels whose ray lies beyond a fold of the distortion polynomial, or
    whose source falls outside the source image, are marked invalid and
    receive the sentinel.

    Args:
        model: Camera model at the source image resolution
        resolution: Destination (width, height), defaults to the source's
        alpha: If given, use optimal_camera_matrix(model, alpha) for the
            destination instead of the model's own intrinsics
        new_matrix: Explicit destination camera matrix (overrides alpha)

    Returns:
        RemapTable
    """
    src_w, src_h = model.resolution
    dst_w, dst_h = (int(resolution[0]), int(resolution[1])) if resolution else model.resolution

    if new_matrix is None:
        if alpha is None:
            new_matrix = model.scaled_to((dst_w, dst_h)).matrix
        else:
            new_matrix = optimal_camera_matrix(model, alpha, (dst_w, dst_h))
    new_matrix = np.array(new_matrix, dtype=np.float64).reshape(3, 3)

    v, u = np.mgrid[0:dst_h, 0:dst_w].astype(np.float64)
    xy = np.stack([
        (u - new_matrix[0, 2]) / new_matrix[0, 0],
        (v - new_matrix[1, 2]) / new_matrix[1, 1],
    ], axis=-1)

    distorted = distort_normalized(xy, model.radial, model.tangential)
    map_x = distorted[..., 0] * model.fx + model.cx
    map_y = distorted[..., 1] * model.fy + model.cy

    valid = np.isfinite(map_x) & np.isfinite(map_y)
    if model.has_distortion:
        jac = distortion_jacobian(xy, model.radial, model.tangential)
        det = jac[..., 0, 0] * jac[..., 1, 1] - jac[..., 0, 1] * jac[..., 1, 0]
        folded = ~((det > 0) & (jac[..., 0, 0] > 0))
        if folded.any():
            logger.warning(
                "Distortion inverse undefined for %d destination pixels; filling with sentinel",
                int(folded.sum()),
            )
        valid &= ~folded

    valid &= (map_x > -1) & (map_x < src_w) & (map_y > -1) & (map_y < src_h)

    # Out-of-range coordinates make cv2.remap emit the border value
    map_x = np.where(valid, map_x, -1e4).astype(np.float32)
    map_y = np.where(valid, map_y, -1e4).astype(np.float32)

    return RemapTable(
        map_x=map_x,
        map_y=map_y,
        resolution=(dst_w, dst_h),
        source_resolution=(src_w, src_h),
        new_matrix=new_matrix,
        valid=valid,
    )


def apply_remap(image: np.ndarray, table: RemapTable) -> np.ndarray:
    """
    Resample an image through a remap table with bilinear interpolation.

    Destination pixels without a valid source receive the sentinel (black).

    Raises:
        ValueError: image resolution differs from the table's source
    """
    height, width = image.shape[:2]
    if (width, height) != table.source_resolution:
        raise ValueError(
            f"Image is {width}x{height} but the remap table expects "
            f"{table.source_resolution[0]}x{table.source_resolution[1]}"
        )
    return cv2.remap(
        image,
        table.map_x,
        table.map_y,
        interpolation=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=SENTINEL,
    )


def undistort_image(
    model: CameraModel,
    image: np.ndarray,
    alpha: float | None = None,
) -> np.ndarray:
    """
    One-shot correction of a single image.

    Builds a fresh table; batch callers should build the table once with
    build_remap_table and reuse it.
    """
    height, width = image.shape[:2]
    table = build_remap_table(model.scaled_to((width, height)), alpha=alpha)
    return apply_remap(image, table)
