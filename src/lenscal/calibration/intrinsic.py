"""
Intrinsic camera calibration.

Pure functions - no threading, no state. Caller manages image collection.

The joint fit works on a flat parameter vector:

    [ f / s ... | cx / s, cy / s | k1 .. kn | p1, p2 | pose_0 | pose_1 | ... ]

where s = max(width, height) brings the intrinsics to the same order of
magnitude as the distortion coefficients and each pose block is
(rodrigues_x, rodrigues_y, rodrigues_z, tx, ty, tz). The residual function
is a pure function of that vector.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

import cv2
import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix

from ..camera_model import distort_normalized, pixels_to_normalized, unproject_ray
from ..errors import CalibrationDidNotConverge, InsufficientObservations
from ..types import (
    CalibrationResult,
    CameraModel,
    ObservationSet,
    Pose,
    SolverConfig,
    pose_from_vector,
    pose_to_vector,
)
from .homography import estimate_homography, initial_intrinsics, plane_frame, planar_pose

logger = logging.getLogger(__name__)

MIN_POINTS_PER_IMAGE = 4
MIN_IMAGES = 3
POSE_PARAM_COUNT = 6
DENSE_JACOBIAN_LIMIT = 400  # parameters; larger problems use a sparse solver


# ============================================================================
# Parameter Layout
# ============================================================================


@dataclass(frozen=True, slots=True)
class ParameterLayout:
    """
    Named offsets into the flat optimization vector.
    """

    n_images: int
    n_radial: int
    fix_tangential: bool = False
    fix_aspect_ratio: bool = False
    aspect: float = 1.0  # fy / fx when the aspect ratio is fixed
    scale: float = 1.0  # s, pixels per normalized intrinsic unit

    @property
    def focal_count(self) -> int:
        return 1 if self.fix_aspect_ratio else 2

    @property
    def principal_offset(self) -> int:
        return self.focal_count

    @property
    def radial_offset(self) -> int:
        return self.principal_offset + 2

    @property
    def tangential_offset(self) -> int:
        return self.radial_offset + self.n_radial

    @property
    def global_size(self) -> int:
        return self.tangential_offset + (0 if self.fix_tangential else 2)

    def pose_offset(self, index: int) -> int:
        return self.global_size + POSE_PARAM_COUNT * index

    @property
    def size(self) -> int:
        return self.pose_offset(self.n_images)


def pack_parameters(
    layout: ParameterLayout,
    model: CameraModel,
    poses: list[Pose],
) -> np.ndarray:
    params = np.zeros(layout.size, dtype=np.float64)
    s = layout.scale
    params[0] = model.fx / s
    if not layout.fix_aspect_ratio:
        params[1] = model.fy / s
    params[layout.principal_offset] = model.cx / s
    params[layout.principal_offset + 1] = model.cy / s

    radial = list(model.radial[: layout.n_radial])
    radial += [0.0] * (layout.n_radial - len(radial))
    params[layout.radial_offset:layout.tangential_offset] = radial
    if not layout.fix_tangential:
        params[layout.tangential_offset:layout.global_size] = model.tangential

    for i, pose in enumerate(poses):
        offset = layout.pose_offset(i)
        params[offset:offset + POSE_PARAM_COUNT] = pose_to_vector(pose)
    return params


def unpack_intrinsics(
    layout: ParameterLayout,
    params: np.ndarray,
) -> tuple[float, float, float, float, tuple[float, ...], tuple[float, float]]:
    """
    Returns:
        (fx, fy, cx, cy, radial, tangential) in pixels
    """
    s = layout.scale
    fx = params[0] * s
    fy = fx * layout.aspect if layout.fix_aspect_ratio else params[1] * s
    cx = params[layout.principal_offset] * s
    cy = params[layout.principal_offset + 1] * s
    radial = tuple(params[layout.radial_offset:layout.tangential_offset])
    if layout.fix_tangential:
        tangential = (0.0, 0.0)
    else:
        tangential = tuple(params[layout.tangential_offset:layout.global_size])
    return fx, fy, cx, cy, radial, tangential


def pose_blocks(layout: ParameterLayout, params: np.ndarray) -> np.ndarray:
    """(n_images, 6) view of the pose blocks."""
    return params[layout.global_size:layout.size].reshape(layout.n_images, POSE_PARAM_COUNT)


# ============================================================================
# Residuals
# ============================================================================


@dataclass(frozen=True, slots=True, eq=False)
class _StackedObservations:
    """
    All correspondences concatenated, with the owning image index per row.
    """

    image_ids: tuple[str, ...]
    obj_points: np.ndarray  # (n, 3)
    img_points: np.ndarray  # (n, 2)
    image_index: np.ndarray  # (n,)

    @property
    def n_points(self) -> int:
        return len(self.image_index)


def _stack(observations: list[ObservationSet]) -> _StackedObservations:
    return _StackedObservations(
        image_ids=tuple(o.image_id for o in observations),
        obj_points=np.vstack([o.obj_points for o in observations]),
        img_points=np.vstack([o.img_points for o in observations]),
        image_index=np.concatenate([
            np.full(len(o), i, dtype=np.int64) for i, o in enumerate(observations)
        ]),
    )


def _project_stacked(
    params: np.ndarray,
    layout: ParameterLayout,
    data: _StackedObservations,
) -> np.ndarray:
    fx, fy, cx, cy, radial, tangential = unpack_intrinsics(layout, params)
    poses = pose_blocks(layout, params)

    rotations = np.stack([cv2.Rodrigues(p[0:3].reshape(3, 1))[0] for p in poses])
    camera_points = (
        np.einsum("nij,nj->ni", rotations[data.image_index], data.obj_points)
        + poses[data.image_index, 3:6]
    )
    xy = camera_points[:, 0:2] / camera_points[:, 2:3]
    distorted = distort_normalized(xy, radial, tangential)
    return np.column_stack([distorted[:, 0] * fx + cx, distorted[:, 1] * fy + cy])


def _xy_reprojection_error(
    params: np.ndarray,
    layout: ParameterLayout,
    data: _StackedObservations,
) -> np.ndarray:
    """
    Compute reprojection residuals (pixels) for the joint fit.
    """
    return (_project_stacked(params, layout, data) - data.img_points).ravel()


def _get_sparsity_pattern(layout: ParameterLayout, data: _StackedObservations) -> lil_matrix:
    """
    Build sparse Jacobian pattern for least_squares.

    Every residual depends on the global intrinsics block and on the pose
    block of its own image only.
    """
    m = data.n_points * 2
    A = lil_matrix((m, layout.size), dtype=int)

    A[:, 0:layout.global_size] = 1

    i = np.arange(data.n_points)
    pose_cols = layout.global_size + data.image_index * POSE_PARAM_COUNT
    for s in range(POSE_PARAM_COUNT):
        A[2 * i, pose_cols + s] = 1
        A[2 * i + 1, pose_cols + s] = 1

    return A


# ============================================================================
# Preconditions
# ============================================================================


def _as_list(
    observations: Mapping[str, ObservationSet] | Iterable[ObservationSet],
) -> list[ObservationSet]:
    if isinstance(observations, Mapping):
        items = list(observations.values())
    else:
        items = list(observations)
    return sorted(items, key=lambda o: o.image_id)


def usable_observations(
    observations: Mapping[str, ObservationSet] | Iterable[ObservationSet],
    min_points: int = MIN_POINTS_PER_IMAGE,
) -> list[ObservationSet]:
    """
    Filter to images with enough correspondences, checking the preconditions.

    Raises:
        InsufficientObservations: fewer than 4 correspondences overall or
            fewer than 3 images with at least 4 correspondences each
    """
    items = _as_list(observations)
    total = sum(len(o) for o in items)
    if total < MIN_POINTS_PER_IMAGE:
        raise InsufficientObservations(MIN_POINTS_PER_IMAGE, total, "correspondences")

    usable = [o for o in items if len(o) >= min_points]
    if len(usable) < MIN_IMAGES:
        raise InsufficientObservations(
            MIN_IMAGES, len(usable), f"images with at least {min_points} correspondences"
        )
    return usable


def select_observations(
    observations: list[ObservationSet],
    target_count: int,
) -> list[ObservationSet]:
    """
    Keep at most target_count images, evenly spaced in image-id order.

    Deterministic: the same input always yields the same subset.
    """
    if target_count <= 0 or len(observations) <= target_count:
        return list(observations)
    picks = np.linspace(0, len(observations) - 1, target_count).round().astype(int)
    return [observations[i] for i in np.unique(picks)]


# ============================================================================
# Initial Estimate
# ============================================================================


def _initial_model(
    observations: list[ObservationSet],
    resolution: tuple[int, int],
) -> CameraModel:
    homographies = []
    for obs in observations:
        basis, origin, planar = plane_frame(obs.obj_points)
        if not planar:
            raise InsufficientObservations(
                MIN_IMAGES, 0, "planar pattern views (non-planar target given)"
            )
        local = (obs.obj_points - origin) @ basis
        homographies.append(estimate_homography(local[:, :2], obs.img_points))

    k = initial_intrinsics(homographies, resolution)
    if k is None or k[0, 0] <= 0 or k[1, 1] <= 0:
        raise InsufficientObservations(
            MIN_IMAGES, len(observations), "images with distinct pattern orientations"
        )
    return CameraModel.from_matrix(k, None, resolution)


def _initial_poses(model: CameraModel, observations: list[ObservationSet]) -> list[Pose]:
    poses = []
    for obs in observations:
        if model.has_distortion:
            rays = unproject_ray(model, obs.img_points, strict=False)
            ok = np.all(np.isfinite(rays), axis=1)
            normalized = rays[ok, 0:2] / rays[ok, 2:3]
            obj = obs.obj_points[ok]
        else:
            normalized = pixels_to_normalized(model, obs.img_points)
            obj = obs.obj_points
        poses.append(planar_pose(obj, normalized))
    return poses


# ============================================================================
# Calibration
# ============================================================================


def calibrate_camera(
    observations: Mapping[str, ObservationSet] | Iterable[ObservationSet],
    resolution: tuple[int, int],
    solver: SolverConfig | None = None,
    initial_model: CameraModel | None = None,
    skipped_images: tuple[str, ...] = (),
) -> CalibrationResult:
    """
    Fit intrinsics, distortion and one pose per image to the observations.

    Args:
        observations: image_id -> ObservationSet (or an iterable of sets)
        resolution: (width, height) of the calibration images
        solver: Fit options (defaults to SolverConfig())
        initial_model: Start from this model instead of the closed-form
            estimate
        skipped_images: Image ids that failed detection, carried into the
            result for reporting

    Returns:
        CalibrationResult with the fitted model and per-image RMS errors

    Raises:
        InsufficientObservations: Preconditions on the data are not met
        CalibrationDidNotConverge: The iteration cap was reached first
    """
    solver = solver or SolverConfig()
    resolution = (int(resolution[0]), int(resolution[1]))
    usable = usable_observations(observations)

    if initial_model is not None:
        model0 = initial_model.scaled_to(resolution)
    else:
        model0 = _initial_model(usable, resolution)
    poses0 = _initial_poses(model0, usable)

    layout = ParameterLayout(
        n_images=len(usable),
        n_radial=solver.radial_count,
        fix_tangential=solver.fix_tangential,
        fix_aspect_ratio=solver.fix_aspect_ratio,
        aspect=model0.fy / model0.fx,
        scale=float(max(resolution)),
    )
    data = _stack(usable)

    if 2 * data.n_points < layout.size:
        raise InsufficientObservations(
            (layout.size + 1) // 2, data.n_points, "correspondences for the free parameters"
        )

    initial_params = pack_parameters(layout, model0, poses0)
    logger.info(
        "Calibrating from %d images (%d correspondences, %d parameters)",
        layout.n_images,
        data.n_points,
        layout.size,
    )

    if layout.size > DENSE_JACOBIAN_LIMIT:
        options = {"jac_sparsity": _get_sparsity_pattern(layout, data), "tr_solver": "lsmr"}
    else:
        options = {"tr_solver": "exact"}

    result = least_squares(
        _xy_reprojection_error,
        initial_params,
        x_scale="jac",
        loss="linear",
        method="trf",
        ftol=solver.ftol,
        xtol=solver.xtol,
        gtol=solver.gtol,
        max_nfev=solver.max_nfev,
        args=(layout, data),
        **options,
    )

    if result.status <= 0 or not np.all(np.isfinite(result.x)):
        raise CalibrationDidNotConverge(int(result.nfev), float(result.cost))

    fx, fy, cx, cy, radial, tangential = unpack_intrinsics(layout, result.x)
    if fx <= 0 or fy <= 0:
        raise CalibrationDidNotConverge(int(result.nfev), float(result.cost))

    model = CameraModel(
        fx=fx,
        fy=fy,
        cx=cx,
        cy=cy,
        resolution=resolution,
        radial=radial,
        tangential=tangential,
    )

    poses = {
        image_id: pose_from_vector(block)
        for image_id, block in zip(data.image_ids, pose_blocks(layout, result.x))
    }

    residual = result.fun.reshape(-1, 2)
    sq_error = np.sum(residual**2, axis=1)
    per_image = {
        image_id: float(np.sqrt(np.mean(sq_error[data.image_index == i])))
        for i, image_id in enumerate(data.image_ids)
    }
    rms = float(np.sqrt(np.mean(sq_error)))

    logger.info(
        "Calibration converged after %d evaluations: RMS %.4f px, fx=%.2f fy=%.2f cx=%.2f cy=%.2f",
        result.nfev,
        rms,
        fx,
        fy,
        cx,
        cy,
    )

    return CalibrationResult(
        model=model,
        poses=poses,
        per_image_error=per_image,
        rms_error=rms,
        iterations=int(result.nfev),
        skipped_images=tuple(skipped_images),
    )
