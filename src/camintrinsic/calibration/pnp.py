"""
Per-frame pose from a known camera model.

Pixels are unprojected through the model, so PnP runs on ideal pinhole
coordinates whatever the distortion model is.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import cv2
import numpy as np

from ..camera import unproject
from ..errors import DegenerateGeometry
from ..logger import get
from ..types import CalibrationProblem, CameraModel, FramePose

logger = get(__name__)

MIN_PNP_POINTS = 4
# Rays closer than this to the image plane (~85 deg off axis) are unusable
MIN_RAY_Z = float(np.cos(np.deg2rad(85.0)))


def solve_frame_pose(
    model: CameraModel,
    obj_points: np.ndarray,
    img_points: np.ndarray,
) -> FramePose:
    """
    Solve the board pose of one frame with SQPnP.

    Args:
        model: Camera model used to unproject the pixels
        obj_points: (n, 3) board points
        img_points: (n, 2) pixels

    Returns:
        FramePose mapping board points into the camera frame

    Raises:
        DegenerateGeometry: Fewer than 4 usable rays or solver failure
    """
    obj_points = np.asarray(obj_points, dtype=np.float64).reshape(-1, 3)
    rays, valid = unproject(model, img_points)
    valid = valid & (np.nan_to_num(rays[:, 2], nan=-1.0) > MIN_RAY_Z)
    n_valid = int(valid.sum())
    if n_valid < MIN_PNP_POINTS:
        raise DegenerateGeometry(
            f"{n_valid} usable correspondences for PnP (need at least {MIN_PNP_POINTS})"
        )

    normalized = rays[valid, :2] / rays[valid, 2:3]
    ok, rvec, tvec = cv2.solvePnP(
        obj_points[valid].reshape(-1, 1, 3),
        normalized.reshape(-1, 1, 2),
        np.eye(3),
        None,
        flags=cv2.SOLVEPNP_SQPNP,
    )
    if not ok:
        raise DegenerateGeometry("SQPnP failed")

    pose = FramePose(rvec=rvec, tvec=tvec)
    if not (np.all(np.isfinite(pose.rvec)) and np.all(np.isfinite(pose.tvec))):
        raise DegenerateGeometry("SQPnP returned a non-finite pose")
    return pose


def refresh_poses(
    problem: CalibrationProblem,
    frames: list[int],
    workers: int = 1,
) -> list[int]:
    """
    Re-solve the poses of the given frames from their active correspondences.

    Frames that fail keep their previous pose and are added to
    problem.frozen_frames.

    Returns:
        Indices of the frames that failed
    """
    def solve(frame: int) -> FramePose | None:
        mask = problem.frame_mask(frame) & problem.active
        try:
            return solve_frame_pose(
                problem.model, problem.obj_points[mask], problem.img_points[mask]
            )
        except DegenerateGeometry as e:
            logger.info(f"Frame {frame}: pose refresh failed ({e})")
            return None

    frames = list(frames)
    if workers > 1 and len(frames) > 1:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            poses = list(executor.map(solve, frames))
    else:
        poses = [solve(frame) for frame in frames]

    failed = []
    for frame, pose in zip(frames, poses):
        if pose is None:
            problem.frozen_frames.add(frame)
            failed.append(frame)
        else:
            problem.poses[frame] = pose
    return failed
