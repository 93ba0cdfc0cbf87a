"""
Closed-form estimates used to seed the nonlinear solvers.

- normalized DLT homography between the pattern plane and the image
- intrinsics from several plane homographies (Zhang's method, zero skew)
- pose from a plane homography, and a DLT or SQPnP pose for non-planar targets

Pure functions - no classes, no state.
"""

from __future__ import annotations

from collections.abc import Sequence

import cv2
import numpy as np

from ..errors import InsufficientObservations
from ..types import Pose, orthonormalize

PLANARITY_TOLERANCE = 1e-6


# ============================================================================
# Pattern Plane
# ============================================================================


def plane_frame(obj_points: np.ndarray) -> tuple[np.ndarray, np.ndarray, bool]:
    """
    Fit a plane through the object points.

    Returns:
        (basis, origin, planar): basis is a right-handed 3x3 rotation whose
        columns are the in-plane axes and the normal; local coordinates are
        basis.T @ (p - origin). planar is False when the points spread out of
        the plane by more than PLANARITY_TOLERANCE of their extent.
    """
    obj_points = np.asarray(obj_points, dtype=np.float64).reshape(-1, 3)

    # Pattern already on z = 0: keep its own axes so ids map predictably
    extent = np.ptp(obj_points, axis=0).max() if len(obj_points) else 0.0
    if np.all(np.abs(obj_points[:, 2]) <= PLANARITY_TOLERANCE * max(extent, 1.0)):
        return np.eye(3), np.zeros(3), True

    origin = obj_points.mean(axis=0)
    _, s, vt = np.linalg.svd(obj_points - origin)
    basis = vt.T
    if np.linalg.det(basis) < 0:
        basis[:, 2] *= -1
    planar = s[2] <= PLANARITY_TOLERANCE * max(s[0], 1e-300)
    return basis, origin, bool(planar)


def is_collinear(obj_points: np.ndarray) -> bool:
    """True when the points do not span at least a line-independent plane."""
    obj_points = np.asarray(obj_points, dtype=np.float64).reshape(-1, 3)
    if len(obj_points) < 3:
        return True
    s = np.linalg.svd(obj_points - obj_points.mean(axis=0), compute_uv=False)
    return s[1] <= 1e-9 * max(s[0], 1e-300)


# ============================================================================
# Homography
# ============================================================================


def _normalization_matrix(points: np.ndarray) -> np.ndarray:
    """
    Hartley normalization: centroid to origin, mean distance sqrt(2).
    """
    centroid = points.mean(axis=0)
    mean_dist = np.linalg.norm(points - centroid, axis=1).mean()
    scale = np.sqrt(2.0) / mean_dist if mean_dist > 0 else 1.0
    return np.array([
        [scale, 0.0, -scale * centroid[0]],
        [0.0, scale, -scale * centroid[1]],
        [0.0, 0.0, 1.0],
    ])


def estimate_homography(src: np.ndarray, dst: np.ndarray) -> np.ndarray:
    """
    Homography H with dst ~ H @ src, by normalized DLT.

    Args:
        src: (n, 2) plane coordinates, n >= 4
        dst: (n, 2) image coordinates

    Returns:
        3x3 homography normalized so H[2, 2] == 1
    """
    src = np.asarray(src, dtype=np.float64).reshape(-1, 2)
    dst = np.asarray(dst, dtype=np.float64).reshape(-1, 2)
    if len(src) < 4:
        raise InsufficientObservations(4, len(src), "point pairs for a homography")

    t_src = _normalization_matrix(src)
    t_dst = _normalization_matrix(dst)
    src_n = (np.column_stack([src, np.ones(len(src))]) @ t_src.T)[:, :2]
    dst_n = (np.column_stack([dst, np.ones(len(dst))]) @ t_dst.T)[:, :2]

    n = len(src)
    a = np.zeros((2 * n, 9), dtype=np.float64)
    x, y = src_n[:, 0], src_n[:, 1]
    u, v = dst_n[:, 0], dst_n[:, 1]
    a[0::2, 0] = -x
    a[0::2, 1] = -y
    a[0::2, 2] = -1.0
    a[0::2, 6] = u * x
    a[0::2, 7] = u * y
    a[0::2, 8] = u
    a[1::2, 3] = -x
    a[1::2, 4] = -y
    a[1::2, 5] = -1.0
    a[1::2, 6] = v * x
    a[1::2, 7] = v * y
    a[1::2, 8] = v

    _, _, vt = np.linalg.svd(a)
    h_norm = vt[-1].reshape(3, 3)
    h = np.linalg.inv(t_dst) @ h_norm @ t_src
    return h / h[2, 2]


def apply_homography(h: np.ndarray, points: np.ndarray) -> np.ndarray:
    points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    mapped = np.column_stack([points, np.ones(len(points))]) @ h.T
    return mapped[:, :2] / mapped[:, 2:3]


# ============================================================================
# Intrinsics From Homographies
# ============================================================================


def _v_ij(h: np.ndarray, i: int, j: int) -> np.ndarray:
    """Row of Zhang's constraint matrix built from columns i and j of H."""
    return np.array([
        h[0, i] * h[0, j],
        h[0, i] * h[1, j] + h[1, i] * h[0, j],
        h[1, i] * h[1, j],
        h[2, i] * h[0, j] + h[0, i] * h[2, j],
        h[2, i] * h[1, j] + h[1, i] * h[2, j],
        h[2, i] * h[2, j],
    ])


def _zhang_intrinsics(homographies: Sequence[np.ndarray]) -> np.ndarray | None:
    """
    Solve B = K^-T K^-1 from plane homographies with the zero-skew constraint.

    Returns the 3x3 K, or None when the system is degenerate.
    """
    rows = []
    for h in homographies:
        h = h / np.linalg.norm(h)
        rows.append(_v_ij(h, 0, 1))
        rows.append(_v_ij(h, 0, 0) - _v_ij(h, 1, 1))
    scale = np.abs(np.array(rows)).max()
    rows.append(np.array([0.0, scale, 0.0, 0.0, 0.0, 0.0]))  # B12 = 0

    _, _, vt = np.linalg.svd(np.array(rows))
    b11, b12, b22, b13, b23, b33 = vt[-1]
    if b11 < 0:
        b11, b12, b22, b13, b23, b33 = -b11, -b12, -b22, -b13, -b23, -b33

    denom = b11 * b22 - b12 * b12
    if b11 <= 0 or denom <= 0:
        return None
    v0 = (b12 * b13 - b11 * b23) / denom
    lam = b33 - (b13 * b13 + v0 * (b12 * b13 - b11 * b23)) / b11
    if lam / b11 <= 0 or lam * b11 / denom <= 0:
        return None
    alpha = np.sqrt(lam / b11)
    beta = np.sqrt(lam * b11 / denom)
    u0 = -b13 * alpha * alpha / lam

    k = np.array([[alpha, 0.0, u0], [0.0, beta, v0], [0.0, 0.0, 1.0]])
    return k if np.all(np.isfinite(k)) else None


def _focal_from_center(homographies: Sequence[np.ndarray]) -> np.ndarray | None:
    """
    Solve only fx, fy with the principal point fixed at the origin.
    """
    a = []
    b = []
    for h in homographies:
        h = h / np.linalg.norm(h)
        a.append([h[0, 0] * h[0, 1], h[1, 0] * h[1, 1]])
        b.append(-h[2, 0] * h[2, 1])
        a.append([h[0, 0] ** 2 - h[0, 1] ** 2, h[1, 0] ** 2 - h[1, 1] ** 2])
        b.append(-(h[2, 0] ** 2 - h[2, 1] ** 2))
    solution, *_ = np.linalg.lstsq(np.array(a), np.array(b), rcond=None)
    if np.any(solution <= 0) or not np.all(np.isfinite(solution)):
        return None
    fx, fy = 1.0 / np.sqrt(solution)
    return np.array([[fx, 0.0, 0.0], [0.0, fy, 0.0], [0.0, 0.0, 1.0]])


def initial_intrinsics(
    homographies: Sequence[np.ndarray],
    resolution: tuple[int, int],
) -> np.ndarray | None:
    """
    Closed-form camera matrix from plane-to-image homographies.

    Homographies are first expressed in coordinates centred on the image and
    scaled by its larger side, so the linear system is well conditioned.
    Falls back to a principal point at the image centre when the full
    solution is degenerate (too few or too similar views).

    Returns:
        3x3 camera matrix in pixels, or None if no estimate exists
    """
    width, height = resolution
    s = float(max(width, height))
    n = np.array([
        [1.0 / s, 0.0, -(width - 1) / (2.0 * s)],
        [0.0, 1.0 / s, -(height - 1) / (2.0 * s)],
        [0.0, 0.0, 1.0],
    ])
    scaled = [n @ h for h in homographies]

    k_scaled = _zhang_intrinsics(scaled) if len(scaled) >= 3 else None
    if k_scaled is not None:
        k = np.linalg.inv(n) @ k_scaled
        cx, cy = k[0, 2], k[1, 2]
        # Principal point far outside the image means a poor solution
        if -0.5 * width <= cx <= 1.5 * width and -0.5 * height <= cy <= 1.5 * height:
            return k

    k_scaled = _focal_from_center(scaled)
    if k_scaled is None:
        return None
    return np.linalg.inv(n) @ k_scaled


# ============================================================================
# Pose Estimates
# ============================================================================


def pose_from_homography(h: np.ndarray, k: np.ndarray | None = None) -> Pose:
    """
    Decompose H = K [r1 r2 t] into a pose of the z = 0 plane.

    The sign is chosen so the plane lies in front of the camera.
    """
    m = h if k is None else np.linalg.solve(k, h)
    norm = 0.5 * (np.linalg.norm(m[:, 0]) + np.linalg.norm(m[:, 1]))
    lam = 1.0 / norm
    if m[2, 2] * lam < 0:
        lam = -lam

    r1 = lam * m[:, 0]
    r2 = lam * m[:, 1]
    r3 = np.cross(r1, r2)
    rotation = orthonormalize(np.column_stack([r1, r2, r3]))
    translation = lam * m[:, 2]
    return Pose(rotation=rotation, translation=translation)


def planar_pose(obj_points: np.ndarray, normalized: np.ndarray) -> Pose:
    """
    Pose of a planar target from ideal normalized image coordinates.
    """
    basis, origin, _ = plane_frame(obj_points)
    local = (np.asarray(obj_points, dtype=np.float64) - origin) @ basis
    h = estimate_homography(local[:, :2], normalized)
    local_pose = pose_from_homography(h)

    # x_cam = R_l B^T (X - o) + t_l
    rotation = local_pose.rotation @ basis.T
    translation = local_pose.translation - rotation @ origin
    return Pose(rotation=orthonormalize(rotation), translation=translation)


def dlt_pose(obj_points: np.ndarray, normalized: np.ndarray) -> Pose:
    """
    Pose of a non-planar target from ideal normalized coordinates (n >= 6).
    """
    obj_points = np.asarray(obj_points, dtype=np.float64).reshape(-1, 3)
    normalized = np.asarray(normalized, dtype=np.float64).reshape(-1, 2)
    n = len(obj_points)
    if n < 6:
        raise InsufficientObservations(6, n, "correspondences for a non-planar pose")

    origin = obj_points.mean(axis=0)
    scale = np.sqrt(3.0) / np.linalg.norm(obj_points - origin, axis=1).mean()
    pts = (obj_points - origin) * scale

    a = np.zeros((2 * n, 12), dtype=np.float64)
    xh = np.column_stack([pts, np.ones(n)])
    a[0::2, 0:4] = xh
    a[0::2, 8:12] = -normalized[:, 0:1] * xh
    a[1::2, 4:8] = xh
    a[1::2, 8:12] = -normalized[:, 1:2] * xh

    _, _, vt = np.linalg.svd(a)
    p = vt[-1].reshape(3, 4)
    u, s, vt_r = np.linalg.svd(p[:, :3])
    lam = 1.0 / s.mean()
    rotation = u @ vt_r
    if np.linalg.det(rotation) < 0:
        rotation = -rotation
        lam = -lam
    translation_scaled = lam * p[:, 3]

    # Undo the object normalization: x_cam = R (X - o) s + t_s, divided by s
    translation = translation_scaled / scale - rotation @ origin
    return Pose(rotation=orthonormalize(rotation), translation=translation)


def pnp_pose(obj_points: np.ndarray, normalized: np.ndarray) -> Pose:
    """
    Pose from ideal normalized coordinates with OpenCV's SQPnP (n >= 4).

    Seeds non-planar targets with too few points for dlt_pose.

    Raises:
        InsufficientObservations: Fewer than 4 points, or SQPnP found no pose
    """
    obj_points = np.asarray(obj_points, dtype=np.float64).reshape(-1, 3)
    normalized = np.asarray(normalized, dtype=np.float64).reshape(-1, 2)
    n = len(obj_points)
    if n < 4:
        raise InsufficientObservations(4, n, "correspondences for a PnP pose")

    ok, rvec, tvec = cv2.solvePnP(
        obj_points,
        normalized,
        np.eye(3),
        None,
        flags=cv2.SOLVEPNP_SQPNP,
    )
    if not ok:
        raise InsufficientObservations(4, n, "correspondences in general position")
    rotation = cv2.Rodrigues(rvec)[0]
    return Pose(rotation=orthonormalize(rotation), translation=tvec.reshape(3))
