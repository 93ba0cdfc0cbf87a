"""
Tests for lenscal.calibration.intrinsic (joint calibration fit).
"""

import numpy as np
import pytest

from conftest import synthetic_observations
from lenscal.calibration.intrinsic import (
    ParameterLayout,
    _get_sparsity_pattern,
    _stack,
    calibrate_camera,
    pack_parameters,
    pose_blocks,
    select_observations,
    unpack_intrinsics,
    usable_observations,
)
from lenscal.errors import CalibrationDidNotConverge, InsufficientObservations
from lenscal.types import CameraModel, ObservationSet, SolverConfig


def first(observations, count):
    return {k: observations[k] for k in sorted(observations)[:count]}


class TestParameterLayout:
    def test_offsets(self):
        layout = ParameterLayout(n_images=5, n_radial=3)
        assert layout.principal_offset == 2
        assert layout.radial_offset == 4
        assert layout.tangential_offset == 7
        assert layout.global_size == 9
        assert layout.pose_offset(0) == 9
        assert layout.pose_offset(2) == 21
        assert layout.size == 39

    def test_fixed_parameters_shrink_global_block(self):
        layout = ParameterLayout(n_images=3, n_radial=2, fix_tangential=True, fix_aspect_ratio=True)
        assert layout.focal_count == 1
        assert layout.global_size == 1 + 2 + 2
        assert layout.size == 5 + 18

    def test_pack_unpack_roundtrip(self, sample_model, sample_poses):
        layout = ParameterLayout(n_images=len(sample_poses), n_radial=2, scale=640.0)
        params = pack_parameters(layout, sample_model, sample_poses)

        assert params.shape == (layout.size,)
        assert params[0] == pytest.approx(600.0 / 640.0)

        fx, fy, cx, cy, radial, tangential = unpack_intrinsics(layout, params)
        assert (fx, fy, cx, cy) == pytest.approx((600.0, 610.0, 322.5, 236.0))
        assert radial == pytest.approx(sample_model.radial)
        assert tangential == pytest.approx(sample_model.tangential)
        np.testing.assert_allclose(pose_blocks(layout, params)[1, 3:6], sample_poses[1].translation)

    def test_pack_pads_missing_radial_terms(self, sample_model, sample_poses):
        layout = ParameterLayout(n_images=1, n_radial=4)
        params = pack_parameters(layout, sample_model, sample_poses[:1])
        np.testing.assert_array_equal(
            params[layout.radial_offset:layout.tangential_offset], [-0.2, 0.05, 0.0, 0.0]
        )

    def test_sparsity_pattern(self, sample_observations):
        data = _stack(list(sample_observations.values()))
        layout = ParameterLayout(n_images=len(sample_observations), n_radial=3)
        sparsity = _get_sparsity_pattern(layout, data).toarray()

        assert sparsity.shape == (2 * data.n_points, layout.size)
        np.testing.assert_array_equal(sparsity.sum(axis=1), layout.global_size + 6)
        # First point of image 2 only touches image 2's pose block
        row = 2 * int(np.flatnonzero(data.image_index == 2)[0])
        pose_cols = np.flatnonzero(sparsity[row, layout.global_size:]) + layout.global_size
        assert list(pose_cols) == list(range(layout.pose_offset(2), layout.pose_offset(3)))


class TestPreconditions:
    def test_two_images_few_points(self):
        observations = {
            f"img{i}": ObservationSet(
                image_id=f"img{i}",
                point_ids=[0],
                obj_points=[[0.0, 0.0, 0.0]],
                img_points=[[10.0, 10.0]],
            )
            for i in range(2)
        }
        with pytest.raises(InsufficientObservations) as exc_info:
            calibrate_camera(observations, (640, 480))
        assert exc_info.value.required == 4
        assert exc_info.value.observed == 2

    def test_two_images_rejected(self, sample_observations):
        with pytest.raises(InsufficientObservations) as exc_info:
            calibrate_camera(first(sample_observations, 2), (640, 480))
        assert exc_info.value.required == 3
        assert exc_info.value.observed == 2

    def test_sparse_images_excluded(self, sample_observations):
        observations = dict(sample_observations)
        observations["view_00"] = observations["view_00"].subset(np.arange(54) < 3)
        usable = usable_observations(observations)
        assert [o.image_id for o in usable] == ["view_01", "view_02", "view_03", "view_04", "view_05"]

    def test_non_planar_target_rejected(self, sample_model, sample_poses):
        obj = np.array([[x, y, z] for x in range(3) for y in range(3) for z in range(2)], dtype=float)
        from lenscal.camera_model import project

        observations = [
            ObservationSet(
                image_id=f"img{i}",
                point_ids=np.arange(len(obj)),
                obj_points=obj,
                img_points=project(sample_model, obj, pose),
            )
            for i, pose in enumerate(sample_poses[:3])
        ]
        with pytest.raises(InsufficientObservations, match="planar"):
            calibrate_camera(observations, (640, 480))


class TestSelectObservations:
    def test_keeps_ends_and_count(self, sample_observations):
        items = list(sample_observations.values())
        picked = select_observations(items, 3)
        assert len(picked) == 3
        assert picked[0] is items[0]
        assert picked[-1] is items[-1]
        assert select_observations(items, 3) == picked

    def test_no_limit(self, sample_observations):
        items = list(sample_observations.values())
        assert select_observations(items, 0) == items
        assert select_observations(items, 50) == items


class TestCalibrateCamera:
    def test_recovers_known_model(self, sample_model, sample_observations, sample_poses):
        result = calibrate_camera(sample_observations, (640, 480), SolverConfig(radial_count=2))
        model = result.model

        assert model.resolution == (640, 480)
        assert model.fx == pytest.approx(sample_model.fx, rel=1e-3)
        assert model.fy == pytest.approx(sample_model.fy, rel=1e-3)
        assert model.cx == pytest.approx(sample_model.cx, rel=1e-3)
        assert model.cy == pytest.approx(sample_model.cy, rel=1e-3)
        np.testing.assert_allclose(model.radial, sample_model.radial, atol=1e-4)
        np.testing.assert_allclose(model.tangential, sample_model.tangential, atol=1e-5)
        assert result.rms_error < 1e-4

        for image_id, pose in zip(sorted(sample_observations), sample_poses):
            np.testing.assert_allclose(result.poses[image_id].translation, pose.translation, atol=1e-3)
            np.testing.assert_allclose(result.poses[image_id].rotation, pose.rotation, atol=1e-5)

    def test_five_views_reprojection_error(self, sample_observations):
        result = calibrate_camera(first(sample_observations, 5), (640, 480))
        assert len(result.per_image_error) == 5
        assert result.rms_error < 1e-2
        assert all(error < 1e-2 for error in result.per_image_error.values())
        assert len(result.model.radial) == 3
        assert result.iterations > 0

    def test_deterministic(self, sample_observations):
        solver = SolverConfig(radial_count=2)
        a = calibrate_camera(sample_observations, (640, 480), solver)
        b = calibrate_camera(sample_observations, (640, 480), solver)
        assert a.model == b.model
        assert a.rms_error == b.rms_error

    def test_independent_of_input_order(self, sample_observations):
        solver = SolverConfig(radial_count=2)
        forward = calibrate_camera(sample_observations, (640, 480), solver)
        backward = calibrate_camera(list(reversed(list(sample_observations.values()))), (640, 480), solver)
        assert forward.model == backward.model
        assert list(forward.per_image_error) == list(backward.per_image_error)

    def test_fix_tangential(self, ideal_model, sample_pattern, sample_poses):
        observations = synthetic_observations(ideal_model, sample_pattern, sample_poses)
        solver = SolverConfig(radial_count=0, fix_tangential=True)
        result = calibrate_camera(observations, (640, 480), solver)

        assert result.model.radial == ()
        assert result.model.tangential == (0.0, 0.0)
        assert result.model.fx == pytest.approx(600.0, rel=1e-6)
        assert result.rms_error < 1e-6

    def test_fix_aspect_ratio(self, sample_pattern, sample_poses):
        square = CameraModel(fx=580.0, fy=580.0, cx=320.0, cy=240.0, resolution=(640, 480))
        observations = synthetic_observations(square, sample_pattern, sample_poses)
        solver = SolverConfig(radial_count=1, fix_aspect_ratio=True)
        result = calibrate_camera(observations, (640, 480), solver)

        assert result.model.fy / result.model.fx == pytest.approx(1.0, rel=1e-6)
        assert result.model.fx == pytest.approx(580.0, rel=1e-4)

    def test_initial_model(self, sample_model, sample_observations):
        result = calibrate_camera(
            sample_observations, (640, 480), SolverConfig(radial_count=2), initial_model=sample_model
        )
        assert result.model.fx == pytest.approx(sample_model.fx, rel=1e-6)
        assert result.rms_error < 1e-6

    def test_skipped_images_reported(self, sample_observations):
        result = calibrate_camera(
            sample_observations, (640, 480), SolverConfig(radial_count=2), skipped_images=("bad.png",)
        )
        assert result.skipped_images == ("bad.png",)

    def test_iteration_cap(self, sample_observations):
        with pytest.raises(CalibrationDidNotConverge) as exc_info:
            calibrate_camera(sample_observations, (640, 480), SolverConfig(max_nfev=1))
        assert exc_info.value.iterations == 1
