# lenscal - Camera calibration, distortion correction and pose solving

__version__ = "0.1.0"

# Errors
from lenscal.errors import (
    LenscalError,
    DetectionFailed,
    InsufficientObservations,
    ConvergenceError,
    CalibrationDidNotConverge,
    PoseDidNotConverge,
    DistortionInverseDidNotConverge,
    InvalidCameraModel,
    CalibrationFileError,
)

# Core types
from lenscal.types import (
    Correspondence,
    ObservationSet,
    CameraModel,
    Pose,
    RemapTable,
    CalibrationResult,
    PoseResult,
    ChessboardPattern,
    CharucoPattern,
    SolverConfig,
    PipelineConfig,
)

# Camera model
from lenscal.camera_model import (
    project,
    unproject_ray,
    undistort_points,
    reprojection_errors,
)

# Calibration
from lenscal.calibration import (
    detect_points,
    detect_all,
    calibrate_camera,
    solve_pose,
)

# Correction
from lenscal.correction import (
    optimal_camera_matrix,
    build_remap_table,
    apply_remap,
    undistort_image,
)

# Configuration
from lenscal.config import (
    load_pipeline_config,
    save_pipeline_config,
    save_calibration,
    load_calibration,
    save_poses,
    load_poses,
)

# Batch pipeline
from lenscal.pipeline import (
    fit,
    correct_directory,
    solve_directory,
)

__all__ = [
    # Errors
    "LenscalError",
    "DetectionFailed",
    "InsufficientObservations",
    "ConvergenceError",
    "CalibrationDidNotConverge",
    "PoseDidNotConverge",
    "DistortionInverseDidNotConverge",
    "InvalidCameraModel",
    "CalibrationFileError",
    # Core types
    "Correspondence",
    "ObservationSet",
    "CameraModel",
    "Pose",
    "RemapTable",
    "CalibrationResult",
    "PoseResult",
    "ChessboardPattern",
    "CharucoPattern",
    "SolverConfig",
    "PipelineConfig",
    # Camera model
    "project",
    "unproject_ray",
    "undistort_points",
    "reprojection_errors",
    # Calibration
    "detect_points",
    "detect_all",
    "calibrate_camera",
    "solve_pose",
    # Correction
    "optimal_camera_matrix",
    "build_remap_table",
    "apply_remap",
    "undistort_image",
    # Configuration
    "load_pipeline_config",
    "save_pipeline_config",
    "save_calibration",
    "load_calibration",
    "save_poses",
    "load_poses",
    # Batch pipeline
    "fit",
    "correct_directory",
    "solve_directory",
]
