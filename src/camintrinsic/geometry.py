"""
Rigid-body and planar geometry helpers.

Pose increments are applied on the left (R <- exp([dw]x) R, t <- t + dt) so
that the refiner differentiates at dw = 0, where the rotation Jacobian is
exact to first order and free of the axis-angle singularity.
"""

from __future__ import annotations

import cv2
import numpy as np

from .types import FramePose


def rotation_from_rvec(rvec: np.ndarray) -> np.ndarray:
    return cv2.Rodrigues(np.asarray(rvec, dtype=np.float64).reshape(3))[0]


def rvec_from_rotation(rotation: np.ndarray) -> np.ndarray:
    return cv2.Rodrigues(np.asarray(rotation, dtype=np.float64))[0][:, 0]


def nearest_rotation(matrix: np.ndarray) -> np.ndarray:
    """Closest proper rotation in the Frobenius sense."""
    u, _, vt = np.linalg.svd(matrix)
    rotation = u @ vt
    if np.linalg.det(rotation) < 0:
        u[:, 2] *= -1.0
        rotation = u @ vt
    return rotation


def apply_pose_increment(rotated, translation, dw, dt):
    """
    First-order pose increment applied to already-rotated points.

    Args:
        rotated: (n, 3) array of R @ p for each point
        translation: (n, 3) array of t for each point's frame
        dw: three rotation increments (floats or Jets)
        dt: three translation increments (floats or Jets)

    Returns:
        (x, y, z) camera-frame coordinates, Jets when the increments are
    """
    qx, qy, qz = rotated[:, 0], rotated[:, 1], rotated[:, 2]
    x = qx + (dw[1] * qz - dw[2] * qy) + translation[:, 0] + dt[0]
    y = qy + (dw[2] * qx - dw[0] * qz) + translation[:, 1] + dt[1]
    z = qz + (dw[0] * qy - dw[1] * qx) + translation[:, 2] + dt[2]
    return x, y, z


def compose_increment(pose: FramePose, delta: np.ndarray) -> FramePose:
    """Apply a 6-vector increment [dw, dt] exactly."""
    rotation = rotation_from_rvec(delta[:3]) @ pose.rotation_matrix()
    return FramePose(rvec=rvec_from_rotation(rotation), tvec=pose.tvec + delta[3:6])


def stack_poses(poses: list[FramePose]) -> tuple[np.ndarray, np.ndarray]:
    """(n_frames, 3, 3) rotations and (n_frames, 3) translations."""
    rotations = np.array([pose.rotation_matrix() for pose in poses]).reshape(-1, 3, 3)
    translations = np.array([pose.tvec for pose in poses]).reshape(-1, 3)
    return rotations, translations


# ============================================================================
# Planar homography helpers
# ============================================================================


def normalize_2d(points: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """
    Hartley normalization: zero centroid, mean distance sqrt(2).

    Returns:
        (normalized points (n, 2), 3x3 similarity T with x_n = T x)
    """
    points = np.asarray(points, dtype=np.float64)
    mean = points.mean(axis=0)
    dif = points - mean
    mean_dist = np.mean(np.sqrt(np.sum(dif**2, axis=1)))
    s = 1.0 if mean_dist < 1e-12 else (np.sqrt(2.0) / mean_dist)
    transform = np.array([
        [s, 0.0, -s * mean[0]],
        [0.0, s, -s * mean[1]],
        [0.0, 0.0, 1.0],
    ])
    return dif * s, transform


def pose_from_homography(
    homography: np.ndarray, focal: float
) -> tuple[np.ndarray, np.ndarray]:
    """
    Decompose a board-to-image homography under K = diag(f, f, 1).

    Returns:
        (rotation 3x3, translation (3,)) with the board in front of the camera
    """
    k_inv = np.diag([1.0 / focal, 1.0 / focal, 1.0])
    m = k_inv @ homography
    scale = 2.0 / (np.linalg.norm(m[:, 0]) + np.linalg.norm(m[:, 1]))
    if m[2, 2] * scale < 0:
        scale = -scale
    r1, r2, t = m[:, 0] * scale, m[:, 1] * scale, m[:, 2] * scale
    rotation = nearest_rotation(np.column_stack([r1, r2, np.cross(r1, r2)]))
    return rotation, t


def refine_translation(
    rotation: np.ndarray,
    board_points: np.ndarray,
    rays_xy: np.ndarray,
) -> np.ndarray:
    """
    Linear least-squares translation for a fixed rotation.

    Solves x_i * (R p_i + t)_z = (R p_i + t)_x (and the same for y) where
    x_i are points on the z = 1 plane.
    """
    rotated = board_points @ rotation.T
    xu, yu = rays_xy[:, 0], rays_xy[:, 1]
    n = rotated.shape[0]
    a = np.zeros((2 * n, 3))
    b = np.zeros(2 * n)
    a[0::2, 0] = 1.0
    a[0::2, 2] = -xu
    b[0::2] = xu * rotated[:, 2] - rotated[:, 0]
    a[1::2, 1] = 1.0
    a[1::2, 2] = -yu
    b[1::2] = yu * rotated[:, 2] - rotated[:, 1]
    translation, *_ = np.linalg.lstsq(a, b, rcond=None)
    return translation
