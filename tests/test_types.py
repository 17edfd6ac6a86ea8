"""
Tests for camintrinsic.types dataclasses.
"""

import numpy as np
import pytest

from camintrinsic.types import (
    CalibrationProblem,
    CameraModel,
    FrameObservations,
    FramePose,
    ModelVariant,
    compute_reprojection_stats,
)


class TestCameraModel:
    def test_variant_from_string(self):
        model = CameraModel("UCM", [400.0, 400.0, 320.0, 240.0, 0.5], 640, 480)
        assert model.variant is ModelVariant.UCM
        assert model.params.dtype == np.float64
        assert model.image_size == (640, 480)

    def test_named_params(self, eucm_model):
        named = eucm_model.named_params()
        assert list(named) == ["fx", "fy", "cx", "cy", "alpha", "beta"]
        assert named["beta"] == 1.2

    def test_with_params_returns_new_model(self, eucm_model):
        updated = eucm_model.with_params(eucm_model.params * 2)
        assert updated is not eucm_model
        assert eucm_model.params[0] == 400.0
        assert updated.params[0] == 800.0

    def test_frozen(self, eucm_model):
        with pytest.raises(AttributeError):
            eucm_model.width = 100


class TestFrameObservations:
    def test_length(self, board_points):
        obs = FrameObservations(board_points, np.zeros((36, 2)))
        assert len(obs) == 36

    def test_mismatched_lengths(self, board_points):
        with pytest.raises(ValueError):
            FrameObservations(board_points, np.zeros((10, 2)))


class TestFramePose:
    def test_transform(self):
        pose = FramePose(rvec=[0.0, 0.0, np.pi / 2], tvec=[0.0, 0.0, 1.0])
        out = pose.transform(np.array([[1.0, 0.0, 0.0]]))
        np.testing.assert_allclose(out, [[0.0, 1.0, 1.0]], atol=1e-12)

    def test_copy_is_independent(self):
        pose = FramePose(rvec=np.zeros(3), tvec=np.ones(3))
        clone = pose.copy()
        clone.tvec[0] = 5.0
        assert pose.tvec[0] == 1.0


class TestCalibrationProblem:
    def test_from_observations(self, eucm_scenario):
        model, observations, poses = eucm_scenario
        problem = CalibrationProblem.from_observations(model, poses, observations)
        assert problem.n_frames == 10
        assert problem.n_correspondences == sum(len(obs) for obs in observations)
        np.testing.assert_array_equal(problem.active_counts(), [len(obs) for obs in observations])

    def test_pose_count_must_match(self, eucm_scenario):
        model, observations, poses = eucm_scenario
        with pytest.raises(ValueError):
            CalibrationProblem.from_observations(model, poses[:2], observations)

    def test_deactivate_and_usable_mask(self, eucm_scenario):
        model, observations, poses = eucm_scenario
        problem = CalibrationProblem.from_observations(model, poses, observations)
        problem.deactivate([0, 1])
        problem.frozen_frames.add(1)

        usable = problem.usable_mask()
        assert not usable[0] and not usable[1]
        assert not usable[problem.frame_mask(1)].any()
        assert usable.sum() == problem.n_correspondences - 2 - len(observations[1])

    def test_correspondences(self, eucm_scenario):
        model, observations, poses = eucm_scenario
        problem = CalibrationProblem.from_observations(model, poses[:2], observations[:2])
        problem.deactivate([3])
        items = list(problem.correspondences())
        assert len(items) == problem.n_correspondences
        assert items[3].active is False
        assert items[-1].frame_index == 1


class TestReprojectionStats:
    def test_values(self):
        errors = np.arange(1, 101, dtype=np.float64)
        stats = compute_reprojection_stats(errors)
        assert stats.count == 100
        assert stats.mean == pytest.approx(50.5)
        assert stats.median == pytest.approx(50.5)
        assert stats.max == 100.0
        assert stats.mean_99 == pytest.approx(50.0)
        assert stats.rms == pytest.approx(np.sqrt(np.mean(errors**2)))

    def test_empty(self):
        stats = compute_reprojection_stats(np.array([]))
        assert stats.count == 0
        assert np.isnan(stats.mean)
