"""
Pytest configuration and shared fixtures.
"""

import tempfile
from pathlib import Path

import numpy as np
import pytest

from camintrinsic.camera import project, unproject_pixel
from camintrinsic.geometry import rotation_from_rvec, rvec_from_rotation
from camintrinsic.types import CameraModel, FrameObservations, FramePose, ModelVariant


@pytest.fixture
def temp_dir():
    """Provide a temporary directory that's cleaned up after test."""
    with tempfile.TemporaryDirectory() as td:
        yield Path(td)


@pytest.fixture
def board_points():
    """6x6 planar grid with 3cm spacing, on z = 0."""
    ij = np.stack(np.meshgrid(np.arange(6), np.arange(6)), axis=-1).reshape(-1, 2)
    return np.column_stack([ij * 0.03, np.zeros(len(ij))])


@pytest.fixture
def sample_models():
    """One realistic model per variant, 640x480."""
    params = {
        ModelVariant.UCM: [400.0, 400.0, 320.0, 240.0, 0.6],
        ModelVariant.EUCM: [400.0, 400.0, 320.0, 240.0, 0.6, 1.2],
        ModelVariant.EUCMT: [400.0, 400.0, 320.0, 240.0, 0.6, 1.2, 0.01, -0.02],
        ModelVariant.KB4: [300.0, 300.0, 320.0, 240.0, 0.05, -0.01, 0.002, -0.0005],
        ModelVariant.OPENCV5: [500.0, 500.0, 320.0, 240.0, -0.2, 0.05, 0.001, -0.001, 0.0],
        ModelVariant.FTHETA: [300.0, 300.0, 320.0, 240.0, 0.0, -0.02, 0.003, 0.0],
    }
    return {
        variant: CameraModel(variant=variant, params=np.array(p), width=640, height=480)
        for variant, p in params.items()
    }


@pytest.fixture
def eucm_model(sample_models):
    """fx = fy = 400, cx = 320, cy = 240, alpha = 0.6, beta = 1.2."""
    return sample_models[ModelVariant.EUCM]


# Where each synthetic view is aimed, as fractions of the half image size
# from the center: every corner twice, then two views near the middle.
VIEW_AIMS = [
    (-0.65, -0.65), (0.65, -0.65), (0.65, 0.65), (-0.65, 0.65),
    (0.65, 0.65), (-0.65, 0.65), (-0.65, -0.65), (0.65, -0.65),
    (0.0, 0.0), (0.2, -0.15),
]
MIN_VISIBLE_POINTS = 20


def facing_rotation(direction):
    """Rotation turning the board normal (+z) onto a viewing direction."""
    axis = np.cross([0.0, 0.0, 1.0], direction)
    s = np.linalg.norm(axis)
    if s < 1e-12:
        return np.eye(3)
    return rotation_from_rvec(axis / s * np.arctan2(s, direction[2]))


def aimed_pose(rng, model, board_center, aim):
    """
    Board pose with its center on the ray through an aim point.

    Corner views sit 0.2-0.26m away so the board reaches the image corners;
    middle views sit 0.25-0.35m away. The board faces the camera, tilted a
    further +-0.4 rad and spun randomly in its own plane.
    """
    half = np.array([model.width, model.height]) / 2.0
    target = half * (1.0 + np.asarray(aim) + rng.uniform(-0.05, 0.05, 2))
    ray = unproject_pixel(model, target)
    if np.hypot(*aim) > 0.5:
        distance = rng.uniform(0.2, 0.26)
    else:
        distance = rng.uniform(0.25, 0.35)

    tilt = rotation_from_rvec(np.append(rng.uniform(-0.4, 0.4, 2), 0.0))
    spin = rotation_from_rvec(np.array([0.0, 0.0, rng.uniform(-np.pi, np.pi)]))
    rotation = facing_rotation(ray) @ tilt @ spin
    return FramePose(
        rvec=rvec_from_rotation(rotation),
        tvec=distance * ray - rotation @ board_center,
    )


def synthesize_frames(model, board, n_frames=10, noise=0.3, seed=0):
    """
    Observations of the board seen through a model.

    Views cycle through VIEW_AIMS. Points outside the image or the model
    domain are dropped; a view is redrawn until enough points remain.

    Returns:
        (list[FrameObservations], list[FramePose])
    """
    rng = np.random.default_rng(seed)
    center = board.mean(axis=0)
    observations, poses = [], []
    for i in range(n_frames):
        aim = VIEW_AIMS[i % len(VIEW_AIMS)]
        for _ in range(100):
            pose = aimed_pose(rng, model, center, aim)
            pixels, valid = project(model, pose.transform(board))
            inside = (
                valid
                & (pixels[:, 0] >= 0) & (pixels[:, 0] < model.width)
                & (pixels[:, 1] >= 0) & (pixels[:, 1] < model.height)
            )
            if inside.sum() >= MIN_VISIBLE_POINTS:
                break
        else:
            raise RuntimeError(f"no usable view for aim {aim}")

        noisy = pixels[inside] + rng.normal(0.0, noise, (int(inside.sum()), 2))
        observations.append(
            FrameObservations(
                obj_points=board[inside],
                img_points=noisy,
                point_ids=np.flatnonzero(inside),
            )
        )
        poses.append(pose)
    return observations, poses


@pytest.fixture
def make_frames(board_points):
    """Factory: make_frames(model, n_frames=10, noise=0.3, seed=0)."""
    def factory(model, n_frames=10, noise=0.3, seed=0):
        return synthesize_frames(model, board_points, n_frames, noise, seed)

    return factory


@pytest.fixture
def eucm_scenario(eucm_model, make_frames):
    """10 frames of the 6x6 board through the EUCM model, 0.3px noise."""
    observations, poses = make_frames(eucm_model, n_frames=10, noise=0.3, seed=7)
    return eucm_model, observations, poses
