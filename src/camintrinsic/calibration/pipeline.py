"""
End-to-end calibration: initial estimate, UCM bootstrap, conversion to the
requested variant and robust refinement.
"""

from __future__ import annotations

from dataclasses import replace

import numpy as np

from ..config import CalibrationConfig
from ..errors import DegenerateGeometry, InsufficientFrames
from ..logger import get
from ..types import (
    CalibrationProblem,
    CalibrationResult,
    CameraModel,
    FrameObservations,
    FramePose,
    ModelVariant,
)
from .convert import convert_model
from .initial import estimate_initial
from .pnp import solve_frame_pose
from .refine import refine

logger = get(__name__)


def _placeholder_pose() -> FramePose:
    return FramePose(rvec=np.zeros(3), tvec=np.array([0.0, 0.0, 1.0]))


def _recover_poses(
    model: CameraModel,
    observations: list[FrameObservations],
    poses: list[FramePose | None],
) -> tuple[list[FramePose], set[int]]:
    """
    Solve frames without an initial pose by PnP through the initial model.

    Returns:
        (one pose per frame, frames that stay frozen)
    """
    filled = []
    frozen = set()
    for i, (obs, pose) in enumerate(zip(observations, poses)):
        if pose is None:
            try:
                pose = solve_frame_pose(model, obs.obj_points, obs.img_points)
                logger.debug(f"Frame {i}: pose recovered by PnP")
            except DegenerateGeometry as e:
                logger.info(f"Frame {i}: no initial pose ({e}), frozen")
                pose = _placeholder_pose()
                frozen.add(i)
        filled.append(pose)
    return filled, frozen


def _bootstrap_config(config: CalibrationConfig) -> CalibrationConfig:
    return config.with_overrides(
        shared_focal=True,
        disabled_distortions=0,
        max_iterations=config.bootstrap_iterations,
        outliers=replace(config.outliers, enabled=False),
    )


def calibrate(
    observations: list[FrameObservations],
    variant: ModelVariant,
    image_size: tuple[int, int],
    config: CalibrationConfig | None = None,
) -> CalibrationResult:
    """
    Calibrate a camera from planar target observations.

    Args:
        observations: One FrameObservations per frame (board points on z = 0)
        variant: Camera model variant to estimate
        image_size: (width, height) in pixels
        config: Calibration config (defaults if None)

    Returns:
        CalibrationResult; check result.status for CONVERGENCE_FAILURE

    Raises:
        InsufficientFrames: Too few frames to constrain the model
        SingularLinearSystem: Normal equations singular at every damping
    """
    config = config or CalibrationConfig()
    variant = ModelVariant(variant)

    if len(observations) < config.min_frames:
        raise InsufficientFrames(len(observations), config.min_frames)

    logger.info(
        f"Calibrating {variant.value} from {len(observations)} frames "
        f"({sum(len(obs) for obs in observations)} correspondences)"
    )
    estimate = estimate_initial(observations, image_size, variant, config)

    if config.bootstrap_ucm:
        poses, frozen = _recover_poses(estimate.ucm_model, observations, estimate.poses)
        problem = CalibrationProblem.from_observations(estimate.ucm_model, poses, observations)
        problem.frozen_frames.update(frozen)

        bootstrap = refine(problem, _bootstrap_config(config))
        logger.info(
            f"UCM bootstrap: median error {bootstrap.stats.median:.4f}px "
            f"after {bootstrap.iterations} iterations"
        )
        model = bootstrap.model
        if variant is not ModelVariant.UCM:
            model = convert_model(
                bootstrap.model,
                variant,
                config,
                disabled_distortions=config.disabled_distortions,
            )
        poses = [pose.copy() for pose in bootstrap.poses]
        frozen = set(bootstrap.frozen_frames)
    else:
        model = estimate.model
        poses, frozen = _recover_poses(model, observations, estimate.poses)

    problem = CalibrationProblem.from_observations(model, poses, observations)
    problem.frozen_frames.update(frozen)
    return refine(problem, config)
