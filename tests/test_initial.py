"""
Tests for camintrinsic.calibration.initial.
"""

import numpy as np
import pytest

from camintrinsic.calibration.initial import (
    estimate_initial,
    focal_from_homographies,
    image_normalization,
    initial_params,
    radial_homography,
)
from camintrinsic.config import CalibrationConfig
from camintrinsic.errors import DegenerateGeometry, InsufficientFrames
from camintrinsic.types import CameraModel, FrameObservations, ModelVariant


@pytest.fixture
def pinhole_model():
    return CameraModel(
        ModelVariant.OPENCV5,
        np.array([500.0, 500.0, 320.0, 240.0, 0.0, 0.0, 0.0, 0.0, 0.0]),
        640,
        480,
    )


class TestRadialHomography:
    def test_maps_board_to_undistorted_points(self, pinhole_model, make_frames):
        """Without distortion lambda is ~0 and H reproduces the points."""
        observations, _ = make_frames(pinhole_model, n_frames=1, noise=0.0)
        obs = observations[0]
        radial = radial_homography(obs.obj_points, obs.img_points, (640, 480))
        assert abs(radial.lam) < 1e-6
        assert radial.inliers.all()

        center, scale = image_normalization((640, 480))
        X = np.column_stack([obs.obj_points[:, :2], np.ones(len(obs))])
        mapped = X @ radial.homography.T
        predicted = mapped[:, :2] / mapped[:, 2:3]
        np.testing.assert_allclose(predicted, (obs.img_points - center) / scale, atol=1e-8)

    def test_division_coefficient_sign_for_fisheye(self, eucm_scenario):
        """Barrel distortion gives a negative division coefficient."""
        _, observations, _ = eucm_scenario
        lams = [
            radial_homography(obs.obj_points, obs.img_points, (640, 480)).lam
            for obs in observations
        ]
        assert np.median(lams) < 0.0

    def test_too_few_points(self, board_points):
        obs = FrameObservations(board_points[:5], np.random.default_rng(0).uniform(0, 400, (5, 2)))
        with pytest.raises(DegenerateGeometry):
            radial_homography(obs.obj_points, obs.img_points, (640, 480))

    def test_non_planar_board(self, board_points):
        points = board_points.copy()
        points[0, 2] = 0.01
        with pytest.raises(ValueError):
            radial_homography(points, np.zeros((len(points), 2)), (640, 480))


class TestFocalFromHomographies:
    def test_pinhole_focal(self, pinhole_model, make_frames):
        observations, _ = make_frames(pinhole_model, n_frames=6, noise=0.0, seed=3)
        homographies = [
            radial_homography(obs.obj_points, obs.img_points, (640, 480)).homography
            for obs in observations
        ]
        _, scale = image_normalization((640, 480))
        focal = focal_from_homographies(homographies) * scale
        assert focal == pytest.approx(500.0, rel=1e-3)

    def test_no_homographies(self):
        assert focal_from_homographies([]) == 1.0


class TestEstimateInitial:
    def test_eucm_scenario(self, eucm_scenario):
        model, observations, poses = eucm_scenario
        estimate = estimate_initial(observations, (640, 480), ModelVariant.EUCM)

        assert estimate.model.variant is ModelVariant.EUCM
        assert estimate.ucm_model.variant is ModelVariant.UCM
        assert len(estimate.valid_frames) == len(observations)
        assert estimate.model.params[0] == pytest.approx(400.0, rel=0.25)
        assert 0.0 < estimate.model.params[4] < 1.0
        assert estimate.model.params[5] == 1.0

        for pose, truth in zip(estimate.poses, poses):
            assert pose.tvec[2] > 0
            assert pose.tvec[2] == pytest.approx(truth.tvec[2], rel=0.3)

    def test_pinhole_poses(self, pinhole_model, make_frames):
        observations, poses = make_frames(pinhole_model, n_frames=5, noise=0.0, seed=11)
        estimate = estimate_initial(observations, (640, 480), ModelVariant.OPENCV5)
        np.testing.assert_allclose(estimate.model.params[4:], 0.0)
        for pose, truth in zip(estimate.poses, poses):
            np.testing.assert_allclose(pose.tvec, truth.tvec, rtol=0.02, atol=2e-3)
            np.testing.assert_allclose(pose.rotation_matrix(), truth.rotation_matrix(), atol=0.02)

    def test_insufficient_frames(self, eucm_scenario):
        _, observations, _ = eucm_scenario
        with pytest.raises(InsufficientFrames):
            estimate_initial(observations[:1], (640, 480), ModelVariant.EUCM)

    def test_sparse_frames_are_skipped(self, eucm_scenario):
        _, observations, _ = eucm_scenario
        sparse = FrameObservations(observations[0].obj_points[:4], observations[0].img_points[:4])
        estimate = estimate_initial([sparse] + observations[1:4], (640, 480))
        assert estimate.poses[0] is None
        assert estimate.valid_frames == [1, 2, 3]

    def test_parallel_matches_serial(self, eucm_scenario):
        _, observations, _ = eucm_scenario
        serial = estimate_initial(observations, (640, 480))
        parallel = estimate_initial(
            observations, (640, 480), config=CalibrationConfig(workers=4)
        )
        np.testing.assert_allclose(serial.model.params, parallel.model.params)


class TestInitialParams:
    @pytest.mark.parametrize("variant,size", [
        (ModelVariant.UCM, 5),
        (ModelVariant.EUCM, 6),
        (ModelVariant.EUCMT, 8),
        (ModelVariant.KB4, 8),
        (ModelVariant.OPENCV5, 9),
        (ModelVariant.FTHETA, 8),
    ])
    def test_sizes(self, variant, size):
        params = initial_params(variant, 400.0, np.array([320.0, 240.0]), 0.5)
        assert params.size == size
        assert params[0] == params[1] == 400.0
