"""
Tests for lenscal.calibration.pose (single-image pose solving).
"""

import numpy as np
import pytest

from lenscal.calibration.pose import solve_pose
from lenscal.camera_model import project
from lenscal.errors import InsufficientObservations, PoseDidNotConverge
from lenscal.types import ObservationSet, PoseResult, camera_position


def observations_for(model, obj, pose, image_id="img.png", ids=None):
    return ObservationSet(
        image_id=image_id,
        point_ids=np.arange(len(obj)) if ids is None else ids,
        obj_points=obj,
        img_points=project(model, obj, pose),
        resolution=model.resolution,
    )


class TestSolvePose:
    def test_recovers_known_pose(self, sample_model, sample_observations, sample_poses):
        for (image_id, obs), pose in zip(sample_observations.items(), sample_poses):
            result = solve_pose(sample_model, obs)
            assert isinstance(result, PoseResult)
            assert result.image_id == image_id
            np.testing.assert_allclose(result.pose.rotation, pose.rotation, atol=1e-8)
            np.testing.assert_allclose(result.pose.translation, pose.translation, atol=1e-7)
            assert result.rms_error < 1e-6

    def test_rotation_orthonormal(self, sample_model, sample_observations):
        result = solve_pose(sample_model, sample_observations["view_03"])
        r = result.pose.rotation
        np.testing.assert_allclose(r @ r.T, np.eye(3), atol=1e-12)
        assert np.linalg.det(r) == pytest.approx(1.0)

    def test_camera_position(self, sample_model, sample_observations, sample_poses):
        result = solve_pose(sample_model, sample_observations["view_00"])
        np.testing.assert_allclose(
            camera_position(result.pose), camera_position(sample_poses[0]), atol=1e-6
        )

    def test_three_points_rejected(self, sample_model, sample_observations):
        obs = sample_observations["view_01"].subset(np.array([0, 8, 45]))
        with pytest.raises(InsufficientObservations) as exc_info:
            solve_pose(sample_model, obs)
        assert exc_info.value.required == 4
        assert exc_info.value.observed == 3

    def test_four_points_succeed(self, sample_model, sample_observations, sample_poses):
        # Outer corners of the 9x6 grid
        obs = sample_observations["view_02"].subset(np.array([0, 8, 45, 53]))
        result = solve_pose(sample_model, obs)
        np.testing.assert_allclose(result.pose.translation, sample_poses[2].translation, atol=1e-6)
        np.testing.assert_allclose(result.pose.rotation, sample_poses[2].rotation, atol=1e-7)

    def test_collinear_points_rejected(self, sample_model, sample_observations):
        obs = sample_observations["view_01"].subset(np.arange(9))  # first row
        with pytest.raises(InsufficientObservations, match="non-collinear"):
            solve_pose(sample_model, obs)

    def test_non_planar_target(self, sample_model, sample_poses):
        obj = np.array([[x, y, z] for x in (0.0, 3.0, 6.0) for y in (0.0, 2.5, 5.0) for z in (0.0, 1.5)])
        pose = sample_poses[3]
        result = solve_pose(sample_model, observations_for(sample_model, obj, pose))
        np.testing.assert_allclose(result.pose.rotation, pose.rotation, atol=1e-8)
        np.testing.assert_allclose(result.pose.translation, pose.translation, atol=1e-7)

    def test_noisy_observations(self, sample_model, sample_observations, sample_poses):
        obs = sample_observations["view_04"]
        rng = np.random.default_rng(3)
        noisy = ObservationSet(
            image_id=obs.image_id,
            point_ids=obs.point_ids,
            obj_points=obs.obj_points,
            img_points=obs.img_points + rng.normal(scale=0.2, size=obs.img_points.shape),
        )
        result = solve_pose(sample_model, noisy)
        assert 0.1 < result.rms_error < 0.4
        np.testing.assert_allclose(result.pose.translation, sample_poses[4].translation, atol=0.05)

    def test_iteration_cap(self, sample_model, sample_observations):
        obs = sample_observations["view_05"]
        rng = np.random.default_rng(11)
        noisy = ObservationSet(
            image_id=obs.image_id,
            point_ids=obs.point_ids,
            obj_points=obs.obj_points,
            img_points=obs.img_points + rng.normal(scale=0.5, size=obs.img_points.shape),
        )
        with pytest.raises(PoseDidNotConverge):
            solve_pose(sample_model, noisy, max_iterations=1)

    @pytest.mark.parametrize("count", [4, 5])
    def test_few_non_planar_points(self, sample_model, sample_poses, count):
        obj = np.array(
            [[0.0, 0.0, 0.0], [3.0, 0.0, 0.0], [0.0, 3.0, 0.0], [1.0, 1.0, 2.0], [6.0, 4.0, -1.0]]
        )[:count]
        pose = sample_poses[3]
        result = solve_pose(sample_model, observations_for(sample_model, obj, pose))
        np.testing.assert_allclose(result.pose.rotation, pose.rotation, atol=1e-7)
        np.testing.assert_allclose(result.pose.translation, pose.translation, atol=1e-6)
        assert result.rms_error < 1e-6
