"""
Exceptions raised by the calibration engine.

Only structural problems surface as exceptions. Per-correspondence domain
violations and per-frame solver failures are absorbed by marking data
inactive, and an iteration cap is reported through RefinementStatus.
"""

from __future__ import annotations


class CalibrationError(Exception):
    """Base class for calibration failures."""


class InsufficientFrames(CalibrationError):
    """Fewer usable frames than the model needs to constrain its parameters."""

    def __init__(self, usable: int, required: int, detail: str = ""):
        self.usable = usable
        self.required = required
        message = f"Insufficient frames for calibration: {usable} (need at least {required})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class DegenerateGeometry(CalibrationError):
    """Homography or PnP is numerically singular for a frame."""

    def __init__(self, message: str, frame: int | None = None):
        self.frame = frame
        if frame is not None:
            message = f"frame {frame}: {message}"
        super().__init__(message)


class ModelDomainViolation(CalibrationError):
    """A point or pixel lies outside the model's valid projection domain."""


class SingularLinearSystem(CalibrationError):
    """The damped normal equations stayed singular up to the maximum damping."""
