"""
Tests for camintrinsic.camera.
"""

import numpy as np
import pytest

from camintrinsic.camera import (
    check_model,
    max_fov_angle,
    param_bounds,
    project,
    project_point,
    project_with_jacobians,
    unproject,
    unproject_pixel,
)
from camintrinsic.errors import ModelDomainViolation
from camintrinsic.types import CameraModel, ModelVariant

ALL_VARIANTS = list(ModelVariant)


def pixel_grid(model, step=40, margin=10):
    xs = np.arange(margin, model.width - margin, step, dtype=np.float64)
    ys = np.arange(margin, model.height - margin, step, dtype=np.float64)
    gx, gy = np.meshgrid(xs, ys)
    return np.column_stack([gx.ravel(), gy.ravel()])


def directions(max_angle, n=200, seed=0):
    rng = np.random.default_rng(seed)
    theta = rng.uniform(0.0, max_angle, n)
    phi = rng.uniform(-np.pi, np.pi, n)
    return np.column_stack([
        np.sin(theta) * np.cos(phi),
        np.sin(theta) * np.sin(phi),
        np.cos(theta),
    ])


class TestRoundTrip:
    @pytest.mark.parametrize("variant", ALL_VARIANTS)
    def test_pixel_unproject_project(self, sample_models, variant):
        """unproject followed by project returns the pixel."""
        model = sample_models[variant]
        pixels = pixel_grid(model)
        rays, valid = unproject(model, pixels)
        assert valid.all()
        np.testing.assert_allclose(np.linalg.norm(rays, axis=1), 1.0, atol=1e-12)

        reprojected, ok = project(model, rays)
        assert ok.all()
        np.testing.assert_allclose(reprojected, pixels, atol=1e-6)

    @pytest.mark.parametrize("variant", ALL_VARIANTS)
    def test_point_project_unproject(self, sample_models, variant):
        """A point projected then unprojected gives its direction."""
        model = sample_models[variant]
        points = directions(np.deg2rad(40.0)) * 2.5
        pixels, valid = project(model, points)
        assert valid.all()
        rays, ok = unproject(model, pixels)
        assert ok.all()
        np.testing.assert_allclose(rays, points / 2.5, atol=1e-8)

    @pytest.mark.parametrize("variant", ALL_VARIANTS)
    def test_round_trip_to_domain_edge(self, sample_models, variant):
        """Directions out to the edge of the field of view survive the round trip."""
        model = sample_models[variant]
        points = directions(0.97 * max_fov_angle(model), n=400, seed=3) * 2.5
        pixels, valid = project(model, points)
        assert valid.all()
        rays, ok = unproject(model, pixels)
        assert ok.all()
        np.testing.assert_allclose(rays, points / 2.5, atol=1e-7)

    def test_opencv_far_off_axis(self, sample_models):
        """Strongly distorted pinhole points far from the axis still invert."""
        model = sample_models[ModelVariant.OPENCV5]
        point = np.array([8.0, 2.4, 1.0])
        pixel = project_point(model, point)
        assert pixel is not None
        ray = unproject_pixel(model, pixel)
        assert ray is not None
        np.testing.assert_allclose(ray, point / np.linalg.norm(point), atol=1e-9)


class TestDomain:
    @pytest.mark.parametrize(
        "variant",
        [ModelVariant.UCM, ModelVariant.EUCM, ModelVariant.EUCMT, ModelVariant.OPENCV5],
    )
    def test_point_behind_camera(self, sample_models, variant):
        """Models with a limited field of view reject the backward axis."""
        model = sample_models[variant]
        pixels, valid = project(model, np.array([[0.0, 0.0, -1.0]]))
        assert not valid[0]
        assert np.all(np.isnan(pixels[0]))

    def test_eucm_limit_angle(self):
        """With alpha > 0.5 points beyond the fov are rejected."""
        model = CameraModel(ModelVariant.UCM, np.array([300.0, 300.0, 320.0, 240.0, 0.9]), 640, 480)
        limit = max_fov_angle(model)
        inside = np.array([[np.sin(limit - 0.05), 0.0, np.cos(limit - 0.05)]])
        outside = np.array([[np.sin(limit + 0.05), 0.0, np.cos(limit + 0.05)]])
        assert project(model, inside)[1][0]
        assert not project(model, outside)[1][0]

    def test_opencv_requires_positive_depth(self, sample_models):
        model = sample_models[ModelVariant.OPENCV5]
        _, valid = project(model, np.array([[0.1, 0.0, 0.0], [0.1, 0.0, 1.0]]))
        np.testing.assert_array_equal(valid, [False, True])

    def test_single_point_helpers(self, sample_models):
        model = sample_models[ModelVariant.OPENCV5]
        assert project_point(model, np.array([0.0, 0.0, -1.0])) is None
        with pytest.raises(ModelDomainViolation):
            project_point(model, np.array([0.0, 0.0, -1.0]), strict=True)

        pixel = project_point(model, np.array([0.0, 0.0, 1.0]))
        np.testing.assert_allclose(pixel, [320.0, 240.0])
        np.testing.assert_allclose(unproject_pixel(model, pixel), [0.0, 0.0, 1.0], atol=1e-12)

    def test_kb4_fov_fold(self):
        """A strongly negative k1 makes theta_d fold before pi."""
        model = CameraModel(
            ModelVariant.KB4, np.array([300.0, 300.0, 320.0, 240.0, -0.3, 0.0, 0.0, 0.0]), 640, 480
        )
        limit = max_fov_angle(model)
        # d/dtheta [theta - 0.3 theta^3] = 0 at theta = 1/sqrt(0.9)
        assert limit == pytest.approx(1.0 / np.sqrt(0.9), abs=2e-3)


class TestJacobians:
    @pytest.mark.parametrize("variant", ALL_VARIANTS)
    def test_param_jacobian_matches_finite_difference(self, sample_models, variant):
        model = sample_models[variant]
        points = directions(np.deg2rad(35.0), n=20, seed=1) * 1.7
        _, valid, jac, jac_points = project_with_jacobians(model, points, with_points=True)
        assert valid.all()
        assert jac.shape == (20, 2, model.params.size)
        assert jac_points.shape == (20, 2, 3)

        for i in range(model.params.size):
            h = 1e-6 * max(1.0, abs(model.params[i]))
            plus = model.params.copy()
            minus = model.params.copy()
            plus[i] += h
            minus[i] -= h
            numeric = (
                project(model.with_params(plus), points)[0]
                - project(model.with_params(minus), points)[0]
            ) / (2 * h)
            np.testing.assert_allclose(jac[:, :, i], numeric, rtol=1e-4, atol=1e-5)

    def test_point_jacobian_matches_finite_difference(self, eucm_model):
        point = np.array([[0.2, -0.1, 0.9]])
        _, _, _, jac_points = project_with_jacobians(eucm_model, point, with_points=True)
        for k in range(3):
            step = np.zeros(3)
            step[k] = 1e-7
            numeric = (
                project(eucm_model, point + step)[0] - project(eucm_model, point - step)[0]
            ) / 2e-7
            np.testing.assert_allclose(jac_points[0, :, k], numeric[0], rtol=1e-5)

    def test_on_axis_radial_model(self, sample_models):
        """KB4 stays differentiable on the optical axis."""
        model = sample_models[ModelVariant.KB4]
        pixels, valid, jac, _ = project_with_jacobians(model, np.array([[0.0, 0.0, 1.0]]))
        assert valid[0]
        np.testing.assert_allclose(pixels[0], [320.0, 240.0])
        assert np.all(np.isfinite(jac))


class TestParameterMetadata:
    def test_bounds_follow_image_size(self, eucm_model):
        lower, upper = param_bounds(eucm_model)
        assert upper[2] == 640.0
        assert upper[3] == 480.0
        assert lower.shape == upper.shape == (6,)
        assert lower[4] > 0.0  # alpha

    def test_wrong_param_count(self):
        with pytest.raises(ValueError):
            CameraModel(ModelVariant.EUCM, np.array([1.0, 2.0, 3.0]), 640, 480)

    def test_check_model_reports_problems(self, eucm_model):
        assert check_model(eucm_model) == []
        bad = eucm_model.with_params([-1.0, 400.0, 5000.0, 240.0, 0.6, 1.2])
        problems = check_model(bad)
        assert len(problems) == 2
