"""
Error taxonomy for lenscal.

Detection failures are recoverable per image. Insufficient observations and
convergence failures are fatal to the stage that raised them.
"""

from __future__ import annotations

from collections.abc import Sequence


class LenscalError(Exception):
    """Base class for all lenscal errors."""


class DetectionFailed(LenscalError):
    """The calibration pattern could not be located in an image."""

    def __init__(self, image_id: str | None, reason: str):
        self.image_id = image_id
        self.reason = reason
        where = f" in {image_id}" if image_id else ""
        super().__init__(f"Pattern not found{where}: {reason}")


class InsufficientObservations(LenscalError):
    """Not enough data to attempt a fit."""

    def __init__(self, required: int, observed: int, what: str = "correspondences"):
        self.required = required
        self.observed = observed
        self.what = what
        super().__init__(f"Need at least {required} {what}, got {observed}")


class ConvergenceError(LenscalError):
    """An iterative solver hit its iteration cap without converging."""

    def __init__(self, message: str, iterations: int, cost: float = float("nan")):
        self.iterations = iterations
        self.cost = cost
        super().__init__(f"{message} after {iterations} iterations (cost={cost:.6g})")


class CalibrationDidNotConverge(ConvergenceError):
    def __init__(self, iterations: int, cost: float = float("nan")):
        super().__init__("Calibration did not converge", iterations, cost)


class PoseDidNotConverge(ConvergenceError):
    def __init__(self, iterations: int, cost: float = float("nan")):
        super().__init__("Pose refinement did not converge", iterations, cost)


class DistortionInverseDidNotConverge(ConvergenceError):
    """Undistortion failed for some points; `indices` lists them."""

    def __init__(self, indices: Sequence[int], iterations: int):
        self.indices = tuple(int(i) for i in indices)
        super().__init__(
            f"Distortion inverse did not converge for {len(self.indices)} point(s)",
            iterations,
        )


class InvalidCameraModel(LenscalError, ValueError):
    """Camera parameters violate the model invariants."""


class CalibrationFileError(LenscalError, ValueError):
    """A calibration file is missing fields or malformed."""
