"""
Tests for camintrinsic.jet.
"""

import numpy as np
import pytest

from camintrinsic import jet
from camintrinsic.jet import Jet


def numeric_derivative(f, x, h=1e-6):
    return (f(x + h) - f(x - h)) / (2 * h)


class TestJetArithmetic:
    def test_product_rule(self):
        """d(xy) = y dx + x dy."""
        x, y = jet.seed([2.0, 3.0], 2)
        z = x * y
        assert z.a == pytest.approx(6.0)
        np.testing.assert_allclose(z.v, [3.0, 2.0])

    def test_quotient_with_constants_on_both_sides(self):
        x, = jet.seed([4.0], 1)
        np.testing.assert_allclose((1.0 / x).v, [-1.0 / 16.0])
        np.testing.assert_allclose((x / 2.0).v, [0.5])
        np.testing.assert_allclose((3.0 - x).v, [-1.0])

    def test_power(self):
        x, = jet.seed([3.0], 1)
        np.testing.assert_allclose((x**3).v, [27.0])

    def test_comparisons_use_values(self):
        x, = jet.seed([1.5], 1)
        assert x > 1.0
        assert x <= 1.5
        assert not x < 1.0


class TestJetUfuncs:
    @pytest.mark.parametrize("ufunc", [
        np.sin, np.cos, np.tan, np.arctan, np.exp, np.log, np.sqrt, np.square,
    ])
    def test_unary_matches_finite_difference(self, ufunc):
        x0 = 0.7
        x, = jet.seed([x0], 1)
        result = ufunc(x)
        assert isinstance(result, Jet)
        assert result.a == pytest.approx(ufunc(x0))
        assert result.v[0] == pytest.approx(numeric_derivative(ufunc, x0), rel=1e-6)

    def test_arctan2_partials(self):
        y, x = jet.seed([0.3, -0.8], 2)
        t = np.arctan2(y, x)
        dy = numeric_derivative(lambda a: np.arctan2(a, -0.8), 0.3)
        dx = numeric_derivative(lambda a: np.arctan2(0.3, a), -0.8)
        np.testing.assert_allclose(t.v, [dy, dx], rtol=1e-6)

    def test_hypot(self):
        x, y = jet.seed([3.0, 4.0], 2)
        h = np.hypot(x, y)
        assert h.a == pytest.approx(5.0)
        np.testing.assert_allclose(h.v, [0.6, 0.8])


class TestBroadcasting:
    def test_scalar_seed_with_array(self):
        """A scalar parameter times a per-point array yields per-point rows."""
        f, = jet.seed([2.0], 3)
        points = np.array([1.0, 2.0, 3.0, 4.0])
        out = f * points
        assert out.shape == (4,)
        d = jet.derivative(out)
        assert d.shape == (4, 3)
        np.testing.assert_allclose(d[:, 0], points)
        np.testing.assert_allclose(d[:, 1:], 0.0)

    def test_derivative_of_plain_array_needs_total(self):
        with pytest.raises(ValueError):
            jet.derivative(np.ones(3))
        assert jet.derivative(np.ones(3), total=2).shape == (3, 2)

    def test_indexing(self):
        x = Jet(np.array([1.0, 2.0]), np.array([[1.0, 0.0], [0.0, 1.0]]))
        assert x[1].a == 2.0
        np.testing.assert_allclose(x[1].v, [0.0, 1.0])


class TestWhere:
    def test_selects_branch_derivatives(self):
        x = Jet(np.array([1.0, -1.0]), np.array([[1.0], [1.0]]))
        out = jet.where(x.a > 0, x * 2.0, x * 3.0)
        np.testing.assert_allclose(out.a, [2.0, -3.0])
        np.testing.assert_allclose(jet.derivative(out)[:, 0], [2.0, 3.0])

    def test_plain_inputs(self):
        out = jet.where(np.array([True, False]), 1.0, 2.0)
        np.testing.assert_allclose(out, [1.0, 2.0])
