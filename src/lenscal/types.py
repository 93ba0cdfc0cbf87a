"""
Core data structures for lenscal.

All types are frozen dataclasses for immutability.
Logic is in separate pure functions - these are data containers only.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field, replace

import cv2
import numpy as np

from .errors import InvalidCameraModel


# ============================================================================
# Correspondences
# ============================================================================


@dataclass(frozen=True, slots=True)
class Correspondence:
    """
    A known 3D pattern point paired with its observed image location.
    """

    image_id: str
    point_id: int
    obj_point: tuple[float, float, float]
    img_point: tuple[float, float]


@dataclass(frozen=True, slots=True, eq=False)
class ObservationSet:
    """
    All correspondences detected in a single image.

    Arrays are parallel: row i of obj_points and img_points belongs to
    point_ids[i]. Point identifiers are unique within one image.
    """

    image_id: str
    point_ids: np.ndarray  # (n,) pattern point identifiers
    obj_points: np.ndarray  # (n, 3) pattern-frame coordinates
    img_points: np.ndarray  # (n, 2) sub-pixel image coordinates (x, y)
    resolution: tuple[int, int] | None = None  # (width, height) of the source image

    def __post_init__(self):
        point_ids = np.asarray(self.point_ids, dtype=np.int64).reshape(-1)
        obj_points = np.asarray(self.obj_points, dtype=np.float64).reshape(-1, 3)
        img_points = np.asarray(self.img_points, dtype=np.float64).reshape(-1, 2)

        if not (len(point_ids) == len(obj_points) == len(img_points)):
            raise ValueError(
                f"Mismatched observation arrays for {self.image_id}: "
                f"{len(point_ids)} ids, {len(obj_points)} object points, "
                f"{len(img_points)} image points"
            )
        if len(np.unique(point_ids)) != len(point_ids):
            raise ValueError(f"Duplicate point identifiers in {self.image_id}")

        object.__setattr__(self, "point_ids", point_ids)
        object.__setattr__(self, "obj_points", obj_points)
        object.__setattr__(self, "img_points", img_points)

    def __len__(self) -> int:
        return len(self.point_ids)

    def __iter__(self) -> Iterator[Correspondence]:
        for pid, obj, img in zip(self.point_ids, self.obj_points, self.img_points):
            yield Correspondence(
                image_id=self.image_id,
                point_id=int(pid),
                obj_point=(float(obj[0]), float(obj[1]), float(obj[2])),
                img_point=(float(img[0]), float(img[1])),
            )

    def subset(self, mask: np.ndarray) -> ObservationSet:
        """Return a new set restricted to the rows selected by mask."""
        return ObservationSet(
            image_id=self.image_id,
            point_ids=self.point_ids[mask],
            obj_points=self.obj_points[mask],
            img_points=self.img_points[mask],
            resolution=self.resolution,
        )


# ============================================================================
# Camera Model
# ============================================================================


@dataclass(frozen=True)  # No slots - need properties
class CameraModel:
    """
    Pinhole intrinsics with Brown-Conrady lens distortion.

    radial holds k1..kn (polynomial in r^2), tangential holds (p1, p2).
    resolution is the (width, height) the model was fit at.
    """

    fx: float
    fy: float
    cx: float
    cy: float
    resolution: tuple[int, int]
    radial: tuple[float, ...] = ()
    tangential: tuple[float, float] = (0.0, 0.0)

    def __post_init__(self):
        for name in ("fx", "fy", "cx", "cy"):
            object.__setattr__(self, name, float(getattr(self, name)))
        object.__setattr__(self, "radial", tuple(float(k) for k in self.radial))
        object.__setattr__(self, "tangential", tuple(float(p) for p in self.tangential))
        object.__setattr__(self, "resolution", tuple(int(r) for r in self.resolution))

        if not (np.isfinite(self.fx) and np.isfinite(self.fy)) or self.fx <= 0 or self.fy <= 0:
            raise InvalidCameraModel(f"Focal lengths must be positive, got fx={self.fx}, fy={self.fy}")
        if len(self.resolution) != 2 or min(self.resolution) <= 0:
            raise InvalidCameraModel(f"Resolution must be positive, got {self.resolution}")
        if len(self.tangential) != 2:
            raise InvalidCameraModel(f"Expected 2 tangential coefficients, got {len(self.tangential)}")

    @property
    def width(self) -> int:
        return self.resolution[0]

    @property
    def height(self) -> int:
        return self.resolution[1]

    @property
    def matrix(self) -> np.ndarray:
        """3x3 camera matrix."""
        return np.array([
            [self.fx, 0.0, self.cx],
            [0.0, self.fy, self.cy],
            [0.0, 0.0, 1.0],
        ], dtype=np.float64)

    @property
    def distortion(self) -> np.ndarray:
        """Distortion vector in OpenCV order (k1, k2, p1, p2, k3)."""
        if len(self.radial) > 3:
            raise ValueError("OpenCV ordering only covers up to 3 radial coefficients")
        k = list(self.radial) + [0.0] * (3 - len(self.radial))
        coeffs = [k[0], k[1], self.tangential[0], self.tangential[1]]
        if len(self.radial) == 3:
            coeffs.append(k[2])
        return np.array(coeffs, dtype=np.float64)

    @property
    def has_distortion(self) -> bool:
        return any(k != 0.0 for k in self.radial) or any(p != 0.0 for p in self.tangential)

    @classmethod
    def from_matrix(
        cls,
        matrix: np.ndarray,
        distortion: np.ndarray | None,
        resolution: tuple[int, int],
    ) -> CameraModel:
        """
        Build a model from a 3x3 camera matrix and an OpenCV distortion vector.
        """
        matrix = np.asarray(matrix, dtype=np.float64).reshape(3, 3)
        dist = np.zeros(0) if distortion is None else np.asarray(distortion, dtype=np.float64).ravel()
        radial: list[float] = []
        tangential = (0.0, 0.0)
        if dist.size >= 1:
            radial.append(dist[0])
        if dist.size >= 2:
            radial.append(dist[1])
        if dist.size >= 4:
            tangential = (dist[2], dist[3])
        if dist.size >= 5:
            radial.append(dist[4])
        if dist.size > 5:
            raise ValueError("Rational and thin-prism distortion terms are not supported")
        return cls(
            fx=matrix[0, 0],
            fy=matrix[1, 1],
            cx=matrix[0, 2],
            cy=matrix[1, 2],
            resolution=resolution,
            radial=tuple(radial),
            tangential=tangential,
        )

    def with_distortion(
        self,
        radial: tuple[float, ...] = (),
        tangential: tuple[float, float] = (0.0, 0.0),
    ) -> CameraModel:
        return replace(self, radial=tuple(radial), tangential=tuple(tangential))

    def scaled_to(self, resolution: tuple[int, int]) -> CameraModel:
        """
        Rescale intrinsics for images of a different resolution.

        Distortion acts on normalized coordinates and is left unchanged.
        """
        resolution = (int(resolution[0]), int(resolution[1]))
        if resolution == self.resolution:
            return self
        sx = resolution[0] / self.resolution[0]
        sy = resolution[1] / self.resolution[1]
        return replace(
            self,
            fx=self.fx * sx,
            fy=self.fy * sy,
            cx=(self.cx + 0.5) * sx - 0.5,
            cy=(self.cy + 0.5) * sy - 0.5,
            resolution=resolution,
        )


# ============================================================================
# Pose
# ============================================================================


@dataclass(frozen=True, slots=True, eq=False)
class Pose:
    """
    Rigid transform from the pattern frame into the camera frame.

    x_camera = rotation @ x_pattern + translation
    """

    rotation: np.ndarray  # 3x3 rotation matrix
    translation: np.ndarray  # (3,) translation vector

    def __post_init__(self):
        object.__setattr__(self, "rotation", np.asarray(self.rotation, dtype=np.float64).reshape(3, 3))
        object.__setattr__(self, "translation", np.asarray(self.translation, dtype=np.float64).reshape(3))


@dataclass(frozen=True, slots=True, eq=False)
class RemapTable:
    """
    Per-destination-pixel source coordinates for undistortion.

    Read-only once built; safe to share between threads.
    """

    map_x: np.ndarray  # (h, w) float32 source x for each destination pixel
    map_y: np.ndarray  # (h, w) float32 source y
    resolution: tuple[int, int]  # destination (width, height)
    source_resolution: tuple[int, int]  # (width, height) images must have
    new_matrix: np.ndarray  # 3x3 ideal camera matrix of the destination
    valid: np.ndarray  # (h, w) bool, False where the sentinel is used

    def __post_init__(self):
        for name in ("map_x", "map_y", "new_matrix", "valid"):
            getattr(self, name).setflags(write=False)

    @property
    def invalid_count(self) -> int:
        return int(self.valid.size - np.count_nonzero(self.valid))


# ============================================================================
# Results
# ============================================================================


@dataclass(frozen=True, slots=True, eq=False)
class CalibrationResult:
    """
    Fitted camera model plus diagnostics.
    """

    model: CameraModel
    poses: dict[str, Pose]  # image_id -> pattern pose
    per_image_error: dict[str, float]  # image_id -> RMS reprojection error (px)
    rms_error: float
    iterations: int
    skipped_images: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True, eq=False)
class PoseResult:
    image_id: str
    pose: Pose
    rms_error: float
    iterations: int


# ============================================================================
# Pattern Configuration
# ============================================================================


@dataclass(frozen=True, slots=True)
class ChessboardPattern:
    """
    Plain chessboard counted in inner corners.

    square_size sets the unit of the recovered translations.
    """

    columns: int = 9
    rows: int = 6
    square_size: float = 1.0

    @property
    def point_count(self) -> int:
        return self.columns * self.rows


@dataclass(frozen=True)  # No slots - need properties
class CharucoPattern:
    """
    ChArUco board counted in squares.

    Marker size defaults to 75% of the square size.
    """

    columns: int = 7
    rows: int = 5
    square_size: float = 1.0
    marker_ratio: float = 0.75
    dictionary: str = "DICT_4X4_50"
    legacy_pattern: bool = False

    @property
    def marker_size(self) -> float:
        return self.square_size * self.marker_ratio

    @property
    def point_count(self) -> int:
        return (self.columns - 1) * (self.rows - 1)


Pattern = ChessboardPattern | CharucoPattern


# ============================================================================
# Pipeline Configuration
# ============================================================================


@dataclass(frozen=True, slots=True)
class SolverConfig:
    """
    Options for the nonlinear calibration fit.

    max_nfev of None picks 100 evaluations per free parameter.
    """

    radial_count: int = 3
    fix_tangential: bool = False
    fix_aspect_ratio: bool = False
    ftol: float = 1e-12
    xtol: float = 1e-12
    gtol: float = 1e-12
    max_nfev: int | None = None

    def __post_init__(self):
        if not 0 <= self.radial_count <= 6:
            raise ValueError(f"radial_count must be in [0, 6], got {self.radial_count}")


@dataclass(frozen=True, slots=True)
class PipelineConfig:
    """
    Settings shared by the calibrate, correct and solve stages.
    Loaded from a TOML file.
    """

    pattern: Pattern = field(default_factory=ChessboardPattern)
    solver: SolverConfig = field(default_factory=SolverConfig)
    alpha: float | None = None  # None keeps the calibrated intrinsics
    workers: int | None = None  # None uses the executor default
    extensions: tuple[str, ...] = (".jpg", ".jpeg", ".png", ".bmp", ".tif", ".tiff")


# ============================================================================
# Pure functions for computed properties
# ============================================================================


def orthonormalize(rotation: np.ndarray) -> np.ndarray:
    """
    Project a 3x3 matrix onto the closest rotation (SVD, det = +1).
    """
    u, _, vt = np.linalg.svd(np.asarray(rotation, dtype=np.float64))
    r = u @ vt
    if np.linalg.det(r) < 0:
        u[:, -1] *= -1
        r = u @ vt
    return r


def compute_transformation_matrix(pose: Pose) -> np.ndarray:
    """
    Compute 4x4 homogeneous transformation matrix from a pose.
    """
    t = np.eye(4, dtype=np.float64)
    t[0:3, 0:3] = pose.rotation
    t[0:3, 3] = pose.translation
    return t


def camera_position(pose: Pose) -> np.ndarray:
    """
    Camera center expressed in the pattern frame.
    """
    return -pose.rotation.T @ pose.translation


def pose_to_vector(pose: Pose) -> np.ndarray:
    """
    Convert a pose to a 6-element vector for optimization.
    [rodrigues_x, rodrigues_y, rodrigues_z, tx, ty, tz]
    """
    rodrigues = cv2.Rodrigues(pose.rotation)[0][:, 0]
    return np.hstack([rodrigues, pose.translation])


def pose_from_vector(vector: np.ndarray) -> Pose:
    """
    Create a pose from a 6-element vector, re-orthonormalizing the rotation.
    """
    vector = np.asarray(vector, dtype=np.float64)
    rotation = orthonormalize(cv2.Rodrigues(vector[0:3].reshape(3, 1))[0])
    translation = vector[3:6].copy()
    return Pose(rotation=rotation, translation=translation)
