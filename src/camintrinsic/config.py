"""
Calibration configuration.

Frozen dataclasses with defaults plus TOML load/save through rtoml.
Missing keys fall back to the dataclass defaults.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Literal

import rtoml


# ============================================================================
# Dataclasses
# ============================================================================


@dataclass(frozen=True, slots=True)
class OutlierPolicy:
    """
    How the refiner rejects outliers.

    threshold = max(scale * median(|r|), min_threshold_px) where |r| are the
    reprojection errors of the active correspondences. With the
    "decreasing" schedule the scale moves linearly from initial_scale to
    scale over max_rounds rounds.
    """

    enabled: bool = True
    schedule: Literal["fixed", "decreasing"] = "fixed"
    scale: float = 5.0
    initial_scale: float = 10.0
    min_threshold_px: float = 1.0
    interval: int = 0  # accepted iterations between rounds; 0 = only at convergence
    max_rounds: int = 3
    refresh_fraction: float = 0.2  # active-count drop that triggers a pose refresh


@dataclass(frozen=True, slots=True)
class CalibrationConfig:
    """
    Solver, model and initialization settings for a calibration run.
    """

    # Robust loss
    loss: Literal["huber", "cauchy"] = "huber"
    loss_scale: float = 1.0  # pixels

    # Levenberg-Marquardt
    max_iterations: int = 100
    function_tolerance: float = 1e-8  # relative cost decrease
    parameter_tolerance: float = 1e-10
    initial_damping: float = 1e-4
    max_damping: float = 1e10

    # Intrinsics handling
    shared_focal: bool = False  # fx = fy
    fixed_focal: float | None = None
    disabled_distortions: int = 0  # last N distortion terms held at neutral

    # Data requirements
    min_frames: int = 2
    min_correspondences: int = 8  # per frame, for initialization

    # Initialization
    bootstrap_ucm: bool = True
    bootstrap_iterations: int = 50

    workers: int = 1

    outliers: OutlierPolicy = field(default_factory=OutlierPolicy)

    def with_overrides(self, **overrides) -> CalibrationConfig:
        return replace(self, **overrides)


def create_default_calibration_config() -> CalibrationConfig:
    return CalibrationConfig()


# ============================================================================
# TOML
# ============================================================================

_SOLVER_KEYS = (
    "loss",
    "loss_scale",
    "max_iterations",
    "function_tolerance",
    "parameter_tolerance",
    "initial_damping",
    "max_damping",
)
_MODEL_KEYS = ("shared_focal", "fixed_focal", "disabled_distortions")
_DATA_KEYS = ("min_frames", "min_correspondences", "workers")
_INIT_KEYS = ("bootstrap_ucm", "bootstrap_iterations")


def load_calibration_config(path: Path) -> CalibrationConfig:
    """
    Load a calibration configuration from a TOML file.

    Args:
        path: Path to the TOML file

    Returns:
        CalibrationConfig with defaults for anything not in the file
    """
    data = rtoml.load(Path(path))
    defaults = CalibrationConfig()

    values = {}
    for section, keys in (
        ("solver", _SOLVER_KEYS),
        ("model", _MODEL_KEYS),
        ("data", _DATA_KEYS),
        ("initialization", _INIT_KEYS),
    ):
        section_data = data.get(section, {})
        for key in keys:
            values[key] = section_data.get(key, getattr(defaults, key))

    outlier_data = data.get("outliers", {})
    outlier_defaults = OutlierPolicy()
    values["outliers"] = OutlierPolicy(
        **{
            f.name: outlier_data.get(f.name, getattr(outlier_defaults, f.name))
            for f in fields(OutlierPolicy)
        }
    )

    config = CalibrationConfig(**values)
    _validate(config)
    return config


def save_calibration_config(config: CalibrationConfig, path: Path) -> None:
    """
    Save a calibration configuration to a TOML file.

    Args:
        config: CalibrationConfig to save
        path: Destination path; parent directories are created
    """
    def section(keys: tuple[str, ...]) -> dict:
        # TOML has no null, unset optionals are left out
        return {
            key: getattr(config, key)
            for key in keys
            if getattr(config, key) is not None
        }

    data = {
        "solver": section(_SOLVER_KEYS),
        "model": section(_MODEL_KEYS),
        "data": section(_DATA_KEYS),
        "initialization": section(_INIT_KEYS),
        "outliers": {
            f.name: getattr(config.outliers, f.name) for f in fields(OutlierPolicy)
        },
    }

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        rtoml.dump(data, f)


def _validate(config: CalibrationConfig) -> None:
    if config.loss not in ("huber", "cauchy"):
        raise ValueError(f"Unknown loss: {config.loss}")
    if config.outliers.schedule not in ("fixed", "decreasing"):
        raise ValueError(f"Unknown outlier schedule: {config.outliers.schedule}")
    if config.min_frames < 1:
        raise ValueError(f"min_frames must be at least 1, got {config.min_frames}")
    if config.disabled_distortions < 0:
        raise ValueError(
            f"disabled_distortions must be non-negative, got {config.disabled_distortions}"
        )
