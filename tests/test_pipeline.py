"""
Tests for lenscal.pipeline (directory level calibrate, correct and solve).
"""

import cv2
import numpy as np
import pytest

from conftest import write_images
from lenscal import pipeline
from lenscal.correction import apply_remap, build_remap_table
from lenscal.errors import InsufficientObservations
from lenscal.pipeline import correct_directory, fit, iter_images, solve_directory
from lenscal.types import SolverConfig


def center_distance(pose, center):
    """Camera to board center distance, unchanged by a 180 degree grid flip."""
    return float(np.linalg.norm(pose.rotation @ center + pose.translation))


def board_normal(pose):
    return pose.rotation[:, 2]


def radial_factor(model, r):
    return 1.0 + sum(k * r ** (2 * (i + 1)) for i, k in enumerate(model.radial))


class TestIterImages:
    def test_filters_and_sorts(self, temp_dir):
        for name in ["b.png", "a.JPG", "c.tiff", "notes.txt"]:
            (temp_dir / name).write_bytes(b"")
        (temp_dir / "nested.png").mkdir()

        assert [p.name for p in iter_images(temp_dir)] == ["a.JPG", "b.png", "c.tiff"]

    def test_custom_extensions(self, temp_dir):
        for name in ["a.png", "b.bmp"]:
            (temp_dir / name).write_bytes(b"")
        assert [p.name for p in iter_images(temp_dir, (".BMP",))] == ["b.bmp"]

    def test_missing_directory(self, temp_dir):
        with pytest.raises(FileNotFoundError):
            iter_images(temp_dir / "nope")


class TestFit:
    def test_calibrates_rendered_views(self, rendered_setup):
        model, pattern, _, images = rendered_setup
        result = fit(images, pattern, SolverConfig(radial_count=2), workers=2)

        assert result.model.resolution == (640, 480)
        assert result.model.fx == pytest.approx(model.fx, rel=0.02)
        assert result.model.fy == pytest.approx(model.fy, rel=0.02)
        assert radial_factor(result.model, 0.25) == pytest.approx(radial_factor(model, 0.25), abs=2e-3)
        assert result.rms_error < 0.2
        assert sorted(result.per_image_error) == sorted(images)
        assert result.skipped_images == ()

    def test_skips_undetected_and_mismatched(self, rendered_setup):
        _, pattern, _, images = rendered_setup
        mixed = dict(images)
        mixed["blank.png"] = np.full((480, 640), 128, dtype=np.uint8)
        mixed["small.png"] = cv2.resize(images["view_00.png"], (320, 240), interpolation=cv2.INTER_AREA)

        result = fit(mixed, pattern, SolverConfig(radial_count=2))

        assert result.skipped_images == ("blank.png", "small.png")
        assert len(result.per_image_error) == len(images)
        assert result.model.resolution == (640, 480)

    def test_unsupported_layout_skipped(self, rendered_setup):
        _, pattern, _, images = rendered_setup
        mixed = dict(images)
        mixed["two_channel.png"] = np.zeros((480, 640, 2), dtype=np.uint8)

        result = fit(mixed, pattern, SolverConfig(radial_count=2))

        assert result.skipped_images == ("two_channel.png",)
        assert len(result.per_image_error) == len(images)

    def test_directory_matches_mapping(self, temp_dir, rendered_setup):
        _, pattern, _, images = rendered_setup
        directory = write_images(temp_dir / "calib", images)
        solver = SolverConfig(radial_count=2)

        from_disk = fit(directory, pattern, solver)
        in_memory = fit(images, pattern, solver)

        assert from_disk.model == in_memory.model
        assert from_disk.rms_error == in_memory.rms_error

    def test_max_images(self, rendered_setup):
        _, pattern, _, images = rendered_setup
        result = fit(images, pattern, SolverConfig(radial_count=1), max_images=4)
        assert len(result.per_image_error) == 4

    def test_no_images(self, temp_dir, sample_pattern):
        with pytest.raises(InsufficientObservations):
            fit(temp_dir, sample_pattern)

    def test_nothing_detected(self, sample_pattern):
        blank = {f"blank_{i}.png": np.full((480, 640), 128, dtype=np.uint8) for i in range(3)}
        with pytest.raises(InsufficientObservations):
            fit(blank, sample_pattern)


class TestCorrectDirectory:
    def test_writes_prefixed_images(self, temp_dir, rendered_setup):
        model, _, _, images = rendered_setup
        subset = {k: images[k] for k in ["view_00.png", "view_01.png"]}
        input_dir = write_images(temp_dir / "in", subset)
        (input_dir / "broken.png").write_bytes(b"not an image")

        summary = correct_directory(model, input_dir, temp_dir / "out", workers=2)

        assert list(summary.written) == ["view_00.png", "view_01.png"]
        assert summary.skipped == {"broken.png": "unreadable image"}
        for image_id, target in summary.written.items():
            assert target == temp_dir / "out" / f"undistorted_{image_id}"
            assert target.exists()

    def test_failed_image_does_not_stop_batch(self, temp_dir, rendered_setup, monkeypatch):
        model, _, _, images = rendered_setup
        subset = {k: images[k] for k in ["view_00.png", "view_01.png", "view_02.png"]}
        input_dir = write_images(temp_dir / "in", subset)
        real_load = pipeline.load_image

        def load_with_wrong_size(path):
            if path.name == "view_01.png":
                return np.zeros((240, 320, 3), dtype=np.uint8)
            return real_load(path)

        # Every image gets the full-size table, so the smaller decode is refused
        monkeypatch.setattr(pipeline, "load_image", load_with_wrong_size)
        monkeypatch.setattr(pipeline._TableCache, "get", lambda self, size: build_remap_table(model))

        summary = correct_directory(model, input_dir, temp_dir / "out", workers=3)

        assert list(summary.written) == ["view_00.png", "view_02.png"]
        assert list(summary.skipped) == ["view_01.png"]
        assert "remap table expects" in summary.skipped["view_01.png"]
        assert not (temp_dir / "out" / "undistorted_view_01.png").exists()

    def test_output_matches_remap(self, temp_dir, rendered_setup):
        model, _, _, images = rendered_setup
        input_dir = write_images(temp_dir / "in", {"view_03.png": images["view_03.png"]})

        summary = correct_directory(model, input_dir, temp_dir / "out", alpha=0.5)

        written = cv2.imread(str(summary.written["view_03.png"]), cv2.IMREAD_UNCHANGED)
        expected = apply_remap(images["view_03.png"], build_remap_table(model, alpha=0.5))
        np.testing.assert_array_equal(written, expected)
        assert summary.invalid_pixels == build_remap_table(model, alpha=0.5).invalid_count

    def test_output_resolution(self, temp_dir, rendered_setup):
        model, _, _, images = rendered_setup
        input_dir = write_images(temp_dir / "in", {"view_00.png": images["view_00.png"]})

        summary = correct_directory(model, input_dir, temp_dir / "out", resolution=(320, 240))

        written = cv2.imread(str(summary.written["view_00.png"]), cv2.IMREAD_UNCHANGED)
        assert written.shape == (240, 320)

    def test_mixed_input_resolutions(self, temp_dir, rendered_setup):
        model, _, _, images = rendered_setup
        small = cv2.resize(images["view_00.png"], (320, 240), interpolation=cv2.INTER_AREA)
        input_dir = write_images(temp_dir / "in", {"full.png": images["view_00.png"], "small.png": small})

        summary = correct_directory(model, input_dir, temp_dir / "out")

        assert cv2.imread(str(summary.written["full.png"]), cv2.IMREAD_UNCHANGED).shape == (480, 640)
        assert cv2.imread(str(summary.written["small.png"]), cv2.IMREAD_UNCHANGED).shape == (240, 320)

    def test_custom_prefix(self, temp_dir, rendered_setup):
        model, _, _, images = rendered_setup
        input_dir = write_images(temp_dir / "in", {"view_00.png": images["view_00.png"]})

        summary = correct_directory(model, input_dir, temp_dir / "out", prefix="fixed_")
        assert summary.written["view_00.png"].name == "fixed_view_00.png"


class TestSolveDirectory:
    def test_solves_every_view(self, rendered_setup):
        model, pattern, poses, images = rendered_setup
        center = np.array([4.0, 2.5, 0.0])

        summary = solve_directory(model, images, pattern, workers=3)

        assert list(summary.results) == sorted(images)
        assert summary.failures == {}
        for (image_id, result), pose in zip(summary.results.items(), poses):
            assert result.image_id == image_id
            assert result.rms_error < 0.1
            assert center_distance(result.pose, center) == pytest.approx(center_distance(pose, center), rel=1e-3)
            np.testing.assert_allclose(board_normal(result.pose), board_normal(pose), atol=5e-3)

    def test_failures_recorded_per_image(self, rendered_setup):
        model, pattern, _, images = rendered_setup
        mixed = {"view_00.png": images["view_00.png"], "blank.png": np.full((480, 640), 128, dtype=np.uint8)}

        summary = solve_directory(model, mixed, pattern)

        assert list(summary.results) == ["view_00.png"]
        assert list(summary.failures) == ["blank.png"]
        assert "contrast" in summary.failures["blank.png"]

    def test_unsupported_layout_recorded(self, rendered_setup):
        model, pattern, _, images = rendered_setup
        mixed = {"view_00.png": images["view_00.png"], "two_channel.png": np.zeros((480, 640, 2), dtype=np.uint8)}

        summary = solve_directory(model, mixed, pattern, workers=2)

        assert list(summary.results) == ["view_00.png"]
        assert "Unsupported image shape" in summary.failures["two_channel.png"]

    def test_directory_with_unreadable_file(self, temp_dir, rendered_setup):
        model, pattern, _, images = rendered_setup
        directory = write_images(temp_dir / "poses", {"view_02.png": images["view_02.png"]})
        (directory / "broken.png").write_bytes(b"not an image")

        summary = solve_directory(model, directory, pattern)

        assert list(summary.results) == ["view_02.png"]
        assert list(summary.failures) == ["broken.png"]

    def test_scaled_images(self, rendered_setup):
        model, pattern, poses, images = rendered_setup
        large = cv2.resize(images["view_00.png"], (1280, 960), interpolation=cv2.INTER_CUBIC)

        summary = solve_directory(model, {"large.png": large}, pattern)

        center = np.array([4.0, 2.5, 0.0])
        result = summary.results["large.png"]
        assert center_distance(result.pose, center) == pytest.approx(center_distance(poses[0], center), rel=5e-3)
