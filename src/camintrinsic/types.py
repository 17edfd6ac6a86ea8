"""
Core data structures for camintrinsic.

Immutable inputs and results are frozen dataclasses with slots.
CalibrationProblem and FramePose are the two mutable containers: the
refiner updates poses in place and flips correspondence activity flags.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Iterator

import numpy as np


# ============================================================================
# Camera Models
# ============================================================================


class ModelVariant(str, Enum):
    EUCM = "EUCM"
    EUCMT = "EUCMT"
    UCM = "UCM"
    KB4 = "KB4"
    OPENCV5 = "OPENCV5"
    FTHETA = "FTHETA"


MODEL_PARAM_NAMES: dict[ModelVariant, tuple[str, ...]] = {
    ModelVariant.UCM: ("fx", "fy", "cx", "cy", "alpha"),
    ModelVariant.EUCM: ("fx", "fy", "cx", "cy", "alpha", "beta"),
    ModelVariant.EUCMT: ("fx", "fy", "cx", "cy", "alpha", "beta", "tau_x", "tau_y"),
    ModelVariant.KB4: ("fx", "fy", "cx", "cy", "k1", "k2", "k3", "k4"),
    ModelVariant.OPENCV5: ("fx", "fy", "cx", "cy", "k1", "k2", "p1", "p2", "k3"),
    ModelVariant.FTHETA: ("fx", "fy", "cx", "cy", "k1", "k2", "k3", "k4"),
}


@dataclass(frozen=True, slots=True)
class CameraModel:
    """
    One camera model variant with its parameter vector.

    Refinement never mutates a model; it builds a new one with with_params().
    """

    variant: ModelVariant
    params: np.ndarray  # (n,) float64, order given by MODEL_PARAM_NAMES
    width: int
    height: int

    def __post_init__(self):
        variant = ModelVariant(self.variant)
        params = np.asarray(self.params, dtype=np.float64).reshape(-1)
        expected = len(MODEL_PARAM_NAMES[variant])
        if params.size != expected:
            raise ValueError(
                f"{variant.value} expects {expected} parameters, got {params.size}"
            )
        object.__setattr__(self, "variant", variant)
        object.__setattr__(self, "params", params)

    @property
    def param_names(self) -> tuple[str, ...]:
        return MODEL_PARAM_NAMES[self.variant]

    @property
    def image_size(self) -> tuple[int, int]:
        return (self.width, self.height)

    def named_params(self) -> dict[str, float]:
        return {name: float(v) for name, v in zip(self.param_names, self.params)}

    def with_params(self, params: np.ndarray) -> CameraModel:
        return replace(self, params=np.array(params, dtype=np.float64))


# ============================================================================
# Observations
# ============================================================================


@dataclass(frozen=True, slots=True)
class FrameObservations:
    """
    Board points and their detected pixels for one frame.

    This is what the external detector hands over. Board points are in the
    board frame and lie on its z = 0 plane.
    """

    obj_points: np.ndarray  # (n, 3)
    img_points: np.ndarray  # (n, 2)
    point_ids: np.ndarray | None = None  # (n,)

    def __post_init__(self):
        obj = np.asarray(self.obj_points, dtype=np.float64).reshape(-1, 3)
        img = np.asarray(self.img_points, dtype=np.float64).reshape(-1, 2)
        if obj.shape[0] != img.shape[0]:
            raise ValueError(
                f"obj_points and img_points differ in length: {obj.shape[0]} != {img.shape[0]}"
            )
        object.__setattr__(self, "obj_points", obj)
        object.__setattr__(self, "img_points", img)

    def __len__(self) -> int:
        return self.obj_points.shape[0]


@dataclass(frozen=True, slots=True)
class Correspondence:
    point3d: np.ndarray  # (3,) board frame
    pixel: np.ndarray  # (2,)
    frame_index: int
    active: bool = True


# ============================================================================
# Poses
# ============================================================================


@dataclass(slots=True)
class FramePose:
    """
    Board-to-camera transform for one frame: p_cam = R(rvec) @ p_board + tvec.
    """

    rvec: np.ndarray  # (3,) axis-angle
    tvec: np.ndarray  # (3,)

    def __post_init__(self):
        self.rvec = np.asarray(self.rvec, dtype=np.float64).reshape(3)
        self.tvec = np.asarray(self.tvec, dtype=np.float64).reshape(3)

    def rotation_matrix(self) -> np.ndarray:
        import cv2

        return cv2.Rodrigues(self.rvec)[0]

    def transform(self, points: np.ndarray) -> np.ndarray:
        """Map (n, 3) board points into the camera frame."""
        return np.asarray(points, dtype=np.float64) @ self.rotation_matrix().T + self.tvec

    def copy(self) -> FramePose:
        return FramePose(rvec=self.rvec.copy(), tvec=self.tvec.copy())


# ============================================================================
# Calibration Problem
# ============================================================================


@dataclass
class CalibrationProblem:
    """
    Shared model, one pose per frame and every correspondence of the run.

    Correspondences are stored flattened; frame_index ties each one to its
    frame. Rejected correspondences stay in place with active[i] = False.
    """

    model: CameraModel
    poses: list[FramePose]
    frame_index: np.ndarray  # (N,) int
    obj_points: np.ndarray  # (N, 3)
    img_points: np.ndarray  # (N, 2)
    active: np.ndarray  # (N,) bool
    frozen_frames: set[int] = field(default_factory=set)

    @classmethod
    def from_observations(
        cls,
        model: CameraModel,
        poses: list[FramePose],
        observations: list[FrameObservations],
    ) -> CalibrationProblem:
        if len(poses) != len(observations):
            raise ValueError(
                f"Need one pose per frame: {len(poses)} poses for {len(observations)} frames"
            )
        frame_index = np.concatenate(
            [np.full(len(obs), i, dtype=np.int64) for i, obs in enumerate(observations)]
            or [np.zeros(0, dtype=np.int64)]
        )
        obj_points = np.concatenate(
            [obs.obj_points for obs in observations] or [np.zeros((0, 3))]
        )
        img_points = np.concatenate(
            [obs.img_points for obs in observations] or [np.zeros((0, 2))]
        )
        return cls(
            model=model,
            poses=poses,
            frame_index=frame_index,
            obj_points=obj_points,
            img_points=img_points,
            active=np.ones(frame_index.shape[0], dtype=bool),
        )

    @property
    def n_frames(self) -> int:
        return len(self.poses)

    @property
    def n_correspondences(self) -> int:
        return self.frame_index.shape[0]

    def frame_mask(self, frame: int) -> np.ndarray:
        return self.frame_index == frame

    def active_counts(self) -> np.ndarray:
        """Active correspondences per frame, shape (n_frames,)."""
        return np.bincount(self.frame_index[self.active], minlength=self.n_frames)

    def usable_mask(self) -> np.ndarray:
        """Active correspondences whose frame is not frozen."""
        frozen = np.zeros(self.n_frames, dtype=bool)
        frozen[sorted(self.frozen_frames)] = True
        return self.active & ~frozen[self.frame_index]

    def deactivate(self, indices: np.ndarray) -> None:
        self.active[np.asarray(indices, dtype=np.int64)] = False

    def correspondences(self) -> Iterator[Correspondence]:
        for i in range(self.n_correspondences):
            yield Correspondence(
                point3d=self.obj_points[i],
                pixel=self.img_points[i],
                frame_index=int(self.frame_index[i]),
                active=bool(self.active[i]),
            )


# ============================================================================
# Results
# ============================================================================


class RefinementStatus(str, Enum):
    CONVERGED = "converged"
    CONVERGENCE_FAILURE = "convergence_failure"  # iteration cap reached


class RefinerState(str, Enum):
    INITIALIZING = "initializing"
    REFINING = "refining"
    REJECTING_OUTLIERS = "rejecting_outliers"
    CONVERGED = "converged"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class ReprojectionStats:
    count: int
    mean: float
    median: float
    rms: float
    max: float
    mean_99: float  # mean of the best 99% of errors


@dataclass(frozen=True, slots=True)
class CalibrationResult:
    model: CameraModel
    poses: list[FramePose]
    active: np.ndarray  # (N,) bool, aligned with the problem's correspondences
    status: RefinementStatus
    stats: ReprojectionStats
    per_frame_error: np.ndarray  # (n_frames,) mean error, NaN for frozen frames
    iterations: int
    final_cost: float
    cost_history: list[float]
    transition_counts: Counter
    rejected_count: int
    frozen_frames: frozenset[int] = frozenset()

    @property
    def converged(self) -> bool:
        return self.status is RefinementStatus.CONVERGED


# ============================================================================
# Pure functions for computed properties
# ============================================================================


def compute_reprojection_stats(errors: np.ndarray) -> ReprojectionStats:
    """
    Summarize per-correspondence reprojection errors (pixels).
    """
    errors = np.sort(np.asarray(errors, dtype=np.float64))
    if errors.size == 0:
        nan = float("nan")
        return ReprojectionStats(count=0, mean=nan, median=nan, rms=nan, max=nan, mean_99=nan)

    keep = max(1, errors.size * 99 // 100)
    return ReprojectionStats(
        count=int(errors.size),
        mean=float(np.mean(errors)),
        median=float(np.median(errors)),
        rms=float(np.sqrt(np.mean(errors**2))),
        max=float(errors[-1]),
        mean_99=float(np.mean(errors[:keep])),
    )
