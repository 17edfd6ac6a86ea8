"""
Forward-mode automatic differentiation with dual numbers.

A Jet carries a value array and the derivatives of that value with respect
to k seeded variables (trailing axis of ``v``). Jets participate in numpy
ufuncs through ``__array_ufunc__``, so camera formulas written against
``np.sqrt``, ``np.arctan2``... evaluate unchanged on plain arrays and on Jets.

Derivative arrays broadcast lazily: a scalar parameter seeded once can be
combined with per-point arrays without materializing (n, k) copies until
an operation needs them.
"""

from __future__ import annotations

import numpy as np


class Jet:
    __slots__ = ("a", "v")

    def __init__(self, a, v):
        self.a = np.asarray(a, dtype=np.float64)
        self.v = np.asarray(v, dtype=np.float64)

    @property
    def shape(self) -> tuple[int, ...]:
        return self.a.shape

    @property
    def size(self) -> int:
        """Number of seeded variables."""
        return self.v.shape[-1]

    def __repr__(self) -> str:
        return f"Jet(a={self.a!r}, v={self.v!r})"

    def __getitem__(self, index) -> Jet:
        return Jet(self.a[index], derivative(self)[index])

    # Arithmetic routes through the ufunc table so mixed ndarray/Jet
    # expressions behave the same regardless of operand order.
    def __add__(self, other):
        return _add(self, other)

    def __radd__(self, other):
        return _add(other, self)

    def __sub__(self, other):
        return _subtract(self, other)

    def __rsub__(self, other):
        return _subtract(other, self)

    def __mul__(self, other):
        return _multiply(self, other)

    def __rmul__(self, other):
        return _multiply(other, self)

    def __truediv__(self, other):
        return _divide(self, other)

    def __rtruediv__(self, other):
        return _divide(other, self)

    def __neg__(self):
        return Jet(-self.a, -self.v)

    def __pos__(self):
        return self

    def __abs__(self):
        return _absolute(self)

    def __pow__(self, exponent):
        return _power(self, exponent)

    # Comparisons act on values only.
    def __lt__(self, other):
        return self.a < value(other)

    def __le__(self, other):
        return self.a <= value(other)

    def __gt__(self, other):
        return self.a > value(other)

    def __ge__(self, other):
        return self.a >= value(other)

    def __array_ufunc__(self, ufunc, method, *inputs, **kwargs):
        if method != "__call__" or kwargs.get("out") is not None:
            return NotImplemented
        handler = _UFUNCS.get(ufunc)
        if handler is None:
            return NotImplemented
        return handler(*inputs)


# ============================================================================
# Construction helpers
# ============================================================================


def seed(values, total: int, offset: int = 0) -> list[Jet]:
    """
    Seed each entry of ``values`` as its own differentiation variable.

    Args:
        values: Sequence of scalars (or arrays) to differentiate against
        total: Total number of seeded variables in the evaluation
        offset: Index of the first variable seeded here

    Returns:
        One Jet per entry, with a one-hot derivative at ``offset + i``
    """
    jets = []
    for i, val in enumerate(values):
        v = np.zeros(total, dtype=np.float64)
        v[offset + i] = 1.0
        jets.append(Jet(val, v))
    return jets


def constant(a, total: int) -> Jet:
    a = np.asarray(a, dtype=np.float64)
    return Jet(a, np.zeros(total, dtype=np.float64))


def value(x):
    """Value part of a Jet, or the input unchanged."""
    return x.a if isinstance(x, Jet) else x


def derivative(x, total: int | None = None) -> np.ndarray:
    """Derivative of ``x`` broadcast to ``x.shape + (total,)``."""
    if isinstance(x, Jet):
        return np.broadcast_to(x.v, x.a.shape + (x.v.shape[-1],))
    if total is None:
        raise ValueError("total is required for non-Jet inputs")
    return np.zeros(np.shape(x) + (total,), dtype=np.float64)


def where(condition, x, y):
    """``np.where`` that keeps derivatives of whichever branch is selected."""
    if not isinstance(x, Jet) and not isinstance(y, Jet):
        return np.where(condition, x, y)
    total = x.size if isinstance(x, Jet) else y.size
    a = np.where(condition, value(x), value(y))
    cond = np.asarray(condition)[..., None]
    dx = derivative(x, total) if isinstance(x, Jet) else np.zeros(np.shape(x) + (total,))
    dy = derivative(y, total) if isinstance(y, Jet) else np.zeros(np.shape(y) + (total,))
    return Jet(a, np.where(cond, dx, dy))


# ============================================================================
# Ufunc rules
# ============================================================================


def _col(a):
    return np.asarray(a, dtype=np.float64)[..., None]


def _add(x, y):
    if isinstance(x, Jet) and isinstance(y, Jet):
        return Jet(x.a + y.a, x.v + y.v)
    if isinstance(x, Jet):
        return Jet(x.a + y, x.v)
    return Jet(x + y.a, y.v)


def _subtract(x, y):
    if isinstance(x, Jet) and isinstance(y, Jet):
        return Jet(x.a - y.a, x.v - y.v)
    if isinstance(x, Jet):
        return Jet(x.a - y, x.v)
    return Jet(x - y.a, -y.v)


def _multiply(x, y):
    if isinstance(x, Jet) and isinstance(y, Jet):
        return Jet(x.a * y.a, x.v * _col(y.a) + _col(x.a) * y.v)
    if isinstance(x, Jet):
        return Jet(x.a * y, x.v * _col(y))
    return Jet(x * y.a, _col(x) * y.v)


def _divide(x, y):
    if isinstance(y, Jet):
        q = value(x) / y.a
        dq = -_col(q) * y.v
        if isinstance(x, Jet):
            dq = dq + x.v
        return Jet(q, dq / _col(y.a))
    return Jet(x.a / y, x.v / _col(y))


def _power(x, exponent):
    if isinstance(exponent, Jet):
        return NotImplemented
    p = float(exponent)
    return Jet(x.a**p, _col(p * x.a ** (p - 1.0)) * x.v)


def _unary(f, df):
    def rule(x):
        return Jet(f(x.a), _col(df(x.a)) * x.v)

    return rule


def _absolute(x):
    return Jet(np.abs(x.a), _col(np.sign(x.a)) * x.v)


def _arctan2(y, x):
    ya, xa = value(y), value(x)
    denom = xa * xa + ya * ya
    total = y.size if isinstance(y, Jet) else x.size
    dy = derivative(y, total) if isinstance(y, Jet) else 0.0
    dx = derivative(x, total) if isinstance(x, Jet) else 0.0
    return Jet(np.arctan2(ya, xa), (_col(xa) * dy - _col(ya) * dx) / _col(denom))


def _hypot(x, y):
    xa, ya = value(x), value(y)
    h = np.hypot(xa, ya)
    total = x.size if isinstance(x, Jet) else y.size
    dx = derivative(x, total) if isinstance(x, Jet) else 0.0
    dy = derivative(y, total) if isinstance(y, Jet) else 0.0
    return Jet(h, (_col(xa) * dx + _col(ya) * dy) / _col(h))


_UFUNCS = {
    np.add: _add,
    np.subtract: _subtract,
    np.multiply: _multiply,
    np.true_divide: _divide,
    np.power: _power,
    np.negative: lambda x: -x,
    np.positive: lambda x: x,
    np.absolute: _absolute,
    np.sqrt: _unary(np.sqrt, lambda a: 0.5 / np.sqrt(a)),
    np.square: _unary(np.square, lambda a: 2.0 * a),
    np.sin: _unary(np.sin, np.cos),
    np.cos: _unary(np.cos, lambda a: -np.sin(a)),
    np.tan: _unary(np.tan, lambda a: 1.0 / np.cos(a) ** 2),
    np.arctan: _unary(np.arctan, lambda a: 1.0 / (1.0 + a * a)),
    np.exp: _unary(np.exp, np.exp),
    np.log: _unary(np.log, lambda a: 1.0 / a),
    np.arctan2: _arctan2,
    np.hypot: _hypot,
}
