"""
Pytest configuration and shared fixtures.
"""

import tempfile
from pathlib import Path

import cv2
import numpy as np
import pytest


def make_pose(rx, ry, rz, offset, distance, center):
    """
    Pose that rotates the pattern by (rx, ry, rz) degrees about its center
    and places that center at (offset[0], offset[1], distance) in the camera
    frame.
    """
    from lenscal.types import Pose
    rotation = cv2.Rodrigues(np.radians([rx, ry, rz]).reshape(3, 1))[0]
    translation = np.array([offset[0], offset[1], distance], dtype=np.float64) - rotation @ center
    return Pose(rotation=rotation, translation=translation)


# Rotation (deg), center offset and distance for each synthetic view
VIEW_PARAMS = [
    ((0.0, 0.0, 0.0), (0.0, 0.0), 12.0),
    ((25.0, 0.0, 5.0), (-1.0, 0.5), 12.0),
    ((-25.0, 10.0, -5.0), (1.0, -0.5), 13.0),
    ((10.0, 30.0, 0.0), (0.5, 0.5), 12.0),
    ((-15.0, -30.0, 10.0), (-0.5, 0.0), 11.0),
    ((20.0, 20.0, -10.0), (0.0, 1.0), 12.0),
]


def synthetic_observations(model, pattern, poses):
    """Noise-free ObservationSets of a chessboard seen from each pose."""
    from lenscal.calibration.patterns import chessboard_object_points
    from lenscal.camera_model import project
    from lenscal.types import ObservationSet

    obj = chessboard_object_points(pattern)
    observations = {}
    for i, pose in enumerate(poses):
        image_id = f"view_{i:02d}"
        observations[image_id] = ObservationSet(
            image_id=image_id,
            point_ids=np.arange(len(obj)),
            obj_points=obj,
            img_points=project(model, obj, pose),
            resolution=model.resolution,
        )
    return observations


@pytest.fixture
def temp_dir():
    """Provide a temporary directory that's cleaned up after test."""
    with tempfile.TemporaryDirectory() as td:
        yield Path(td)


@pytest.fixture
def sample_model():
    """640x480 camera with moderate barrel distortion."""
    from lenscal.types import CameraModel
    return CameraModel(
        fx=600.0,
        fy=610.0,
        cx=322.5,
        cy=236.0,
        resolution=(640, 480),
        radial=(-0.2, 0.05),
        tangential=(0.001, -0.0005),
    )


@pytest.fixture
def ideal_model():
    """Same intrinsics as sample_model, no distortion."""
    from lenscal.types import CameraModel
    return CameraModel(fx=600.0, fy=610.0, cx=322.5, cy=236.0, resolution=(640, 480))


@pytest.fixture
def sample_pattern():
    """9x6 inner-corner chessboard with unit squares."""
    from lenscal.types import ChessboardPattern
    return ChessboardPattern(columns=9, rows=6, square_size=1.0)


@pytest.fixture
def sample_charuco_pattern():
    """Standard ChArUco board configuration."""
    from lenscal.types import CharucoPattern
    return CharucoPattern(
        columns=7,
        rows=5,
        square_size=4.0,  # marker is auto 75% = 3
        dictionary="DICT_4X4_50",
    )


@pytest.fixture
def sample_poses(sample_pattern):
    """Distinct pattern orientations that keep the board inside a 640x480 image."""
    center = np.array([
        (sample_pattern.columns - 1) * sample_pattern.square_size / 2,
        (sample_pattern.rows - 1) * sample_pattern.square_size / 2,
        0.0,
    ])
    return [make_pose(*rot, offset, distance, center) for rot, offset, distance in VIEW_PARAMS]


@pytest.fixture
def sample_observations(sample_model, sample_pattern, sample_poses):
    """image_id -> ObservationSet for every sample pose."""
    return synthetic_observations(sample_model, sample_pattern, sample_poses)


# Views for rendered images: every one keeps a white margin around the board
RENDER_PARAMS = [
    ((0.0, 0.0, 0.0), (0.0, 0.0), 16.0),
    ((20.0, -15.0, 5.0), (0.3, -0.2), 16.0),
    ((-15.0, 20.0, -8.0), (-0.3, 0.2), 17.0),
    ((25.0, 10.0, 0.0), (0.5, 0.5), 16.0),
    ((-20.0, -20.0, 10.0), (-0.5, -0.3), 16.0),
    ((10.0, 25.0, -5.0), (0.0, 0.4), 16.0),
]


def write_images(directory, images):
    """Write image_id -> image into directory, return the directory."""
    directory.mkdir(parents=True, exist_ok=True)
    for image_id, image in images.items():
        assert cv2.imwrite(str(directory / image_id), image)
    return directory


@pytest.fixture(scope="session")
def rendered_setup():
    """
    (model, pattern, poses, images) for chessboard photos rendered through
    the sample_model lens. Session scoped, rendering is slow.
    """
    from lenscal.calibration.patterns import render_chessboard_view
    from lenscal.types import CameraModel, ChessboardPattern

    model = CameraModel(
        fx=600.0,
        fy=610.0,
        cx=322.5,
        cy=236.0,
        resolution=(640, 480),
        radial=(-0.2, 0.05),
        tangential=(0.001, -0.0005),
    )
    pattern = ChessboardPattern(columns=9, rows=6, square_size=1.0)
    center = np.array([4.0, 2.5, 0.0])
    poses = [make_pose(*rot, offset, distance, center) for rot, offset, distance in RENDER_PARAMS]
    images = {
        f"view_{i:02d}.png": render_chessboard_view(pattern, model, pose, supersample=3)
        for i, pose in enumerate(poses)
    }
    return model, pattern, poses, images
