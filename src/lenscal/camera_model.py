"""
Forward projection and its inverse for the Brown-Conrady camera model.

Pure functions operating on numpy arrays and CameraModel dataclasses.

Normalized coordinates (x, y) = (X/Z, Y/Z) are distorted as

    r2 = x^2 + y^2
    radial = 1 + k1 r2 + k2 r2^2 + ... + kn r2^n
    x_d = x radial + 2 p1 x y + p2 (r2 + 2 x^2)
    y_d = y radial + p1 (r2 + 2 y^2) + 2 p2 x y

and mapped to pixels with u = fx x_d + cx, v = fy y_d + cy.
"""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np

from .errors import DistortionInverseDidNotConverge
from .types import CameraModel, Pose

MAX_UNDISTORT_ITERATIONS = 20
UNDISTORT_TOLERANCE = 1e-12


# ============================================================================
# Distortion
# ============================================================================


def _radial_terms(r2: np.ndarray, radial: Sequence[float]) -> tuple[np.ndarray, np.ndarray]:
    """
    Radial factor and its derivative with respect to r2.
    """
    factor = np.ones_like(r2)
    derivative = np.zeros_like(r2)
    power = np.ones_like(r2)  # r2^(i)
    for i, k in enumerate(radial):
        derivative = derivative + (i + 1) * k * power
        power = power * r2
        factor = factor + k * power
    return factor, derivative


def distort_normalized(
    xy: np.ndarray,
    radial: Sequence[float],
    tangential: Sequence[float],
) -> np.ndarray:
    """
    Apply lens distortion to ideal normalized coordinates.

    Args:
        xy: (n, 2) ideal normalized coordinates
        radial: k1..kn
        tangential: (p1, p2)

    Returns:
        (n, 2) distorted normalized coordinates
    """
    xy = np.asarray(xy, dtype=np.float64)
    x = xy[..., 0]
    y = xy[..., 1]
    p1, p2 = tangential
    r2 = x * x + y * y
    factor, _ = _radial_terms(r2, radial)
    xd = x * factor + 2.0 * p1 * x * y + p2 * (r2 + 2.0 * x * x)
    yd = y * factor + p1 * (r2 + 2.0 * y * y) + 2.0 * p2 * x * y
    return np.stack([xd, yd], axis=-1)


def distortion_jacobian(
    xy: np.ndarray,
    radial: Sequence[float],
    tangential: Sequence[float],
) -> np.ndarray:
    """
    Jacobian of distort_normalized with respect to (x, y).

    Returns:
        (n, 2, 2) array [[dxd/dx, dxd/dy], [dyd/dx, dyd/dy]]
    """
    xy = np.asarray(xy, dtype=np.float64)
    x = xy[..., 0]
    y = xy[..., 1]
    p1, p2 = tangential
    r2 = x * x + y * y
    factor, dfactor = _radial_terms(r2, radial)

    jac = np.empty(xy.shape[:-1] + (2, 2), dtype=np.float64)
    cross = 2.0 * x * y * dfactor + 2.0 * p1 * x + 2.0 * p2 * y
    jac[..., 0, 0] = factor + 2.0 * x * x * dfactor + 2.0 * p1 * y + 6.0 * p2 * x
    jac[..., 0, 1] = cross
    jac[..., 1, 0] = cross
    jac[..., 1, 1] = factor + 2.0 * y * y * dfactor + 6.0 * p1 * y + 2.0 * p2 * x
    return jac


def undistort_normalized(
    xy_distorted: np.ndarray,
    radial: Sequence[float],
    tangential: Sequence[float],
    max_iterations: int = MAX_UNDISTORT_ITERATIONS,
    tolerance: float = UNDISTORT_TOLERANCE,
) -> tuple[np.ndarray, np.ndarray, int]:
    """
    Invert distort_normalized with a bounded Newton iteration.

    Starts from one fixed-point step (divide out the radial factor, subtract
    the tangential shift), then runs Newton on the 2x2 distortion Jacobian.
    A point converges when the forward residual drops below
    tolerance * (1 + |xy_distorted|) at a solution where the distortion
    Jacobian is still positive definite (no fold, no mirror flip).

    Returns:
        (xy, converged, iterations): (n, 2) ideal coordinates, (n,) bool mask,
        number of Newton iterations run. Unconverged rows are NaN.
    """
    target = np.asarray(xy_distorted, dtype=np.float64).reshape(-1, 2)
    n = len(target)
    converged = np.zeros(n, dtype=bool)
    if n == 0:
        return target.copy(), converged, 0

    p1, p2 = tangential
    x0 = target[:, 0]
    y0 = target[:, 1]

    # Fixed-point starting estimate
    r2 = x0 * x0 + y0 * y0
    factor, _ = _radial_terms(r2, radial)
    with np.errstate(divide="ignore", invalid="ignore"):
        dx = 2.0 * p1 * x0 * y0 + p2 * (r2 + 2.0 * x0 * x0)
        dy = p1 * (r2 + 2.0 * y0 * y0) + 2.0 * p2 * x0 * y0
        xy = np.column_stack([(x0 - dx) / factor, (y0 - dy) / factor])
    bad_start = ~np.all(np.isfinite(xy), axis=1)
    xy[bad_start] = target[bad_start]

    limit = tolerance * (1.0 + np.linalg.norm(target, axis=1))
    active = np.ones(n, dtype=bool)
    iterations = 0

    for iterations in range(max_iterations + 1):
        residual = distort_normalized(xy[active], radial, tangential) - target[active]
        done = np.linalg.norm(residual, axis=1) <= limit[active]
        idx = np.flatnonzero(active)
        converged[idx[done]] = True
        active[idx[done]] = False
        if not active.any() or iterations == max_iterations:
            break

        idx = np.flatnonzero(active)
        residual = residual[~done]
        jac = distortion_jacobian(xy[idx], radial, tangential)
        det = jac[:, 0, 0] * jac[:, 1, 1] - jac[:, 0, 1] * jac[:, 1, 0]
        singular = ~np.isfinite(det) | (np.abs(det) < 1e-300)
        safe_det = np.where(singular, 1.0, det)
        step_x = (jac[:, 1, 1] * residual[:, 0] - jac[:, 0, 1] * residual[:, 1]) / safe_det
        step_y = (jac[:, 0, 0] * residual[:, 1] - jac[:, 1, 0] * residual[:, 0]) / safe_det
        xy[idx, 0] -= step_x
        xy[idx, 1] -= step_y

        diverged = singular | ~np.all(np.isfinite(xy[idx]), axis=1)
        active[idx[diverged]] = False

    # Reject solutions on a fold of the distortion polynomial
    if converged.any():
        idx = np.flatnonzero(converged)
        jac = distortion_jacobian(xy[idx], radial, tangential)
        det = jac[:, 0, 0] * jac[:, 1, 1] - jac[:, 0, 1] * jac[:, 1, 0]
        converged[idx[~((det > 0) & (jac[:, 0, 0] > 0))]] = False

    xy[~converged] = np.nan
    return xy, converged, iterations


# ============================================================================
# Projection
# ============================================================================


def pixels_to_normalized(model: CameraModel, points: np.ndarray) -> np.ndarray:
    points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    return np.column_stack([
        (points[:, 0] - model.cx) / model.fx,
        (points[:, 1] - model.cy) / model.fy,
    ])


def normalized_to_pixels(model: CameraModel, xy: np.ndarray) -> np.ndarray:
    xy = np.asarray(xy, dtype=np.float64).reshape(-1, 2)
    return np.column_stack([
        xy[:, 0] * model.fx + model.cx,
        xy[:, 1] * model.fy + model.cy,
    ])


def transform_points(points3d: np.ndarray, pose: Pose) -> np.ndarray:
    """
    Move pattern-frame points into the camera frame.
    """
    points3d = np.asarray(points3d, dtype=np.float64).reshape(-1, 3)
    return points3d @ pose.rotation.T + pose.translation


def project(
    model: CameraModel,
    points3d: np.ndarray,
    pose: Pose | None = None,
) -> np.ndarray:
    """
    Project 3D points to distorted pixel coordinates.

    Args:
        model: Camera model
        points3d: (n, 3) points, in the camera frame unless pose is given
        pose: Optional pattern-to-camera transform applied first

    Returns:
        (n, 2) pixel coordinates. Points with Z <= 0 are NaN.
    """
    points = np.asarray(points3d, dtype=np.float64).reshape(-1, 3)
    if pose is not None:
        points = transform_points(points, pose)

    z = points[:, 2]
    in_front = z > 0
    safe_z = np.where(in_front, z, 1.0)
    xy = points[:, :2] / safe_z[:, None]

    pixels = normalized_to_pixels(model, distort_normalized(xy, model.radial, model.tangential))
    pixels[~in_front] = np.nan
    return pixels


def unproject_ray(
    model: CameraModel,
    points2d: np.ndarray,
    strict: bool = True,
) -> np.ndarray:
    """
    Convert distorted pixel coordinates to unit viewing directions.

    Depth is lost; the returned rays satisfy project(model, ray) == point.

    Args:
        model: Camera model
        points2d: (n, 2) pixel coordinates
        strict: If True, raise when any point fails to undistort. If False,
            failing rows are returned as NaN.

    Returns:
        (n, 3) unit direction vectors in the camera frame

    Raises:
        DistortionInverseDidNotConverge: strict mode and at least one point
            did not converge
    """
    xy_distorted = pixels_to_normalized(model, points2d)
    xy, converged, iterations = undistort_normalized(xy_distorted, model.radial, model.tangential)

    if strict and not converged.all():
        raise DistortionInverseDidNotConverge(np.flatnonzero(~converged), iterations)

    rays = np.column_stack([xy, np.ones(len(xy))])
    rays /= np.linalg.norm(rays, axis=1, keepdims=True)
    return rays


def undistort_points(
    model: CameraModel,
    points2d: np.ndarray,
    strict: bool = True,
) -> np.ndarray:
    """
    Undistort pixel coordinates, keeping the same camera matrix.

    Returns:
        (n, 2) ideal pixel coordinates
    """
    rays = unproject_ray(model, points2d, strict=strict)
    return normalized_to_pixels(model, rays[:, :2] / rays[:, 2:3])


def reprojection_errors(
    model: CameraModel,
    pose: Pose,
    obj_points: np.ndarray,
    img_points: np.ndarray,
) -> np.ndarray:
    """
    Euclidean distance in pixels between observed and projected points.
    """
    projected = project(model, obj_points, pose)
    return np.linalg.norm(projected - np.asarray(img_points, dtype=np.float64), axis=1)
