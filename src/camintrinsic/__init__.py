# camintrinsic - Camera intrinsic calibration engine

import logging

__version__ = "0.1.0"

# Core types
from camintrinsic.types import (
    ModelVariant,
    CameraModel,
    FrameObservations,
    Correspondence,
    FramePose,
    CalibrationProblem,
    CalibrationResult,
    RefinementStatus,
    RefinerState,
    ReprojectionStats,
)

# Errors
from camintrinsic.errors import (
    CalibrationError,
    InsufficientFrames,
    DegenerateGeometry,
    ModelDomainViolation,
    SingularLinearSystem,
)

# Configuration
from camintrinsic.config import (
    CalibrationConfig,
    OutlierPolicy,
    create_default_calibration_config,
    load_calibration_config,
    save_calibration_config,
)

# Camera models
from camintrinsic.camera import (
    project,
    unproject,
    project_point,
    unproject_pixel,
    project_with_jacobians,
)

# Calibration
from camintrinsic.calibration import (
    calibrate,
    convert_model,
    estimate_initial,
    solve_frame_pose,
    refine,
)

from camintrinsic.logger import setup_logging

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    # Core types
    "ModelVariant",
    "CameraModel",
    "FrameObservations",
    "Correspondence",
    "FramePose",
    "CalibrationProblem",
    "CalibrationResult",
    "RefinementStatus",
    "RefinerState",
    "ReprojectionStats",
    # Errors
    "CalibrationError",
    "InsufficientFrames",
    "DegenerateGeometry",
    "ModelDomainViolation",
    "SingularLinearSystem",
    # Configuration
    "CalibrationConfig",
    "OutlierPolicy",
    "create_default_calibration_config",
    "load_calibration_config",
    "save_calibration_config",
    # Camera models
    "project",
    "unproject",
    "project_point",
    "unproject_pixel",
    "project_with_jacobians",
    # Calibration
    "calibrate",
    "convert_model",
    "estimate_initial",
    "solve_frame_pose",
    "refine",
    # Logging
    "setup_logging",
]
