"""
Single-image pose recovery against a fixed camera model.

Pure functions - no threading, no state.
"""

from __future__ import annotations

import logging

import cv2
import numpy as np
from scipy.optimize import least_squares

from ..camera_model import distort_normalized, normalized_to_pixels, unproject_ray
from ..errors import DistortionInverseDidNotConverge, InsufficientObservations, PoseDidNotConverge
from ..types import CameraModel, ObservationSet, PoseResult, pose_from_vector, pose_to_vector
from .homography import dlt_pose, is_collinear, planar_pose, plane_frame, pnp_pose

logger = logging.getLogger(__name__)

MIN_POSE_POINTS = 4
MIN_DLT_POINTS = 6
DEFAULT_MAX_ITERATIONS = 100
DEFAULT_TOLERANCE = 1e-12


def _pose_reprojection_error(
    params: np.ndarray,
    model: CameraModel,
    obj_points: np.ndarray,
    img_points: np.ndarray,
) -> np.ndarray:
    """
    Reprojection residuals (pixels) for a single 6-vector pose.

    Same structure as one image block of the calibration fit, with the
    intrinsics held fixed.
    """
    rotation = cv2.Rodrigues(params[0:3].reshape(3, 1))[0]
    camera_points = obj_points @ rotation.T + params[3:6]
    xy = camera_points[:, 0:2] / camera_points[:, 2:3]
    distorted = distort_normalized(xy, model.radial, model.tangential)
    return (normalized_to_pixels(model, distorted) - img_points).ravel()


def solve_pose(
    model: CameraModel,
    observations: ObservationSet,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
    tolerance: float = DEFAULT_TOLERANCE,
) -> PoseResult:
    """
    Recover the pattern pose seen in one image.

    The initial estimate comes from the undistorted observations: a
    homography decomposition for planar targets, a DLT for non-planar
    targets with 6 or more points and SQPnP below that. It is then
    refined by nonlinear least squares on the reprojection error.

    Args:
        model: Fitted camera model, at the resolution of the image
        observations: Correspondences of one image
        max_iterations: Cap on residual evaluations during refinement
        tolerance: ftol / xtol / gtol passed to the refinement

    Returns:
        PoseResult

    Raises:
        InsufficientObservations: Fewer than 4 correspondences, or all of
            them collinear
        DistortionInverseDidNotConverge: Too few observations could be
            undistorted to seed the estimate
        PoseDidNotConverge: Refinement hit the iteration cap
    """
    n = len(observations)
    if n < MIN_POSE_POINTS:
        raise InsufficientObservations(MIN_POSE_POINTS, n, "correspondences")
    if is_collinear(observations.obj_points):
        raise InsufficientObservations(MIN_POSE_POINTS, n, "non-collinear correspondences")

    rays = unproject_ray(model, observations.img_points, strict=False)
    ok = np.all(np.isfinite(rays), axis=1)
    if ok.sum() < MIN_POSE_POINTS:
        raise DistortionInverseDidNotConverge(np.flatnonzero(~ok), 0)
    if not ok.all():
        logger.debug(
            "%s: %d point(s) could not be undistorted, seeding without them",
            observations.image_id,
            int((~ok).sum()),
        )

    obj = observations.obj_points[ok]
    normalized = rays[ok, 0:2] / rays[ok, 2:3]
    _, _, planar = plane_frame(obj)
    if planar:
        pose0 = planar_pose(obj, normalized)
    elif len(obj) >= MIN_DLT_POINTS:
        pose0 = dlt_pose(obj, normalized)
    else:
        pose0 = pnp_pose(obj, normalized)

    result = least_squares(
        _pose_reprojection_error,
        pose_to_vector(pose0),
        x_scale="jac",
        method="trf",
        ftol=tolerance,
        xtol=tolerance,
        gtol=tolerance,
        max_nfev=max_iterations,
        args=(model, observations.obj_points, observations.img_points),
    )

    if result.status <= 0 or not np.all(np.isfinite(result.x)):
        raise PoseDidNotConverge(int(result.nfev), float(result.cost))

    pose = pose_from_vector(result.x)
    residual = result.fun.reshape(-1, 2)
    rms = float(np.sqrt(np.mean(np.sum(residual**2, axis=1))))

    return PoseResult(
        image_id=observations.image_id,
        pose=pose,
        rms_error=rms,
        iterations=int(result.nfev),
    )
