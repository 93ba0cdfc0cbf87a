"""
Calibration module for lenscal.

All functions are pure - they take dataclasses and return dataclasses.
No state management. detect_all is the only function that spawns threads.
"""

from .patterns import (
    ARUCO_DICTIONARIES,
    chessboard_object_points,
    create_charuco_board,
    pattern_object_points,
    generate_board_image,
    render_chessboard_view,
)

from .detection import (
    DetectionBatch,
    detect_chessboard_points,
    detect_charuco_points,
    detect_points,
    detect_all,
)

from .homography import (
    estimate_homography,
    initial_intrinsics,
    pose_from_homography,
)

from .intrinsic import (
    calibrate_camera,
    select_observations,
)

from .pose import (
    solve_pose,
)

__all__ = [
    # Patterns
    "ARUCO_DICTIONARIES",
    "chessboard_object_points",
    "create_charuco_board",
    "pattern_object_points",
    "generate_board_image",
    "render_chessboard_view",
    # Detection
    "DetectionBatch",
    "detect_chessboard_points",
    "detect_charuco_points",
    "detect_points",
    "detect_all",
    # Homography
    "estimate_homography",
    "initial_intrinsics",
    "pose_from_homography",
    # Intrinsic
    "calibrate_camera",
    "select_observations",
    # Pose
    "solve_pose",
]
