"""
Calibration module for camintrinsic.

Initial estimate, per-frame PnP, robust joint refinement and model
conversion. Functions take dataclasses and return dataclasses; the refiner
updates the CalibrationProblem it is given.
"""

from .initial import (
    InitialEstimate,
    RadialHomography,
    estimate_initial,
    focal_from_homographies,
    radial_homography,
)

from .pnp import (
    solve_frame_pose,
    refresh_poses,
)

from .loss import (
    CauchyLoss,
    HuberLoss,
)

from .outliers import (
    rejection_threshold,
    select_outliers,
)

from .refine import (
    RobustRefiner,
    refine,
)

from .convert import convert_model

from .pipeline import calibrate

__all__ = [
    # Initial estimate
    "InitialEstimate",
    "RadialHomography",
    "estimate_initial",
    "focal_from_homographies",
    "radial_homography",
    # Poses
    "solve_frame_pose",
    "refresh_poses",
    # Refinement
    "CauchyLoss",
    "HuberLoss",
    "rejection_threshold",
    "select_outliers",
    "RobustRefiner",
    "refine",
    # Conversion
    "convert_model",
    # Pipeline
    "calibrate",
]
