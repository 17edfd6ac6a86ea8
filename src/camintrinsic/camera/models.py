"""
Projection formulas for the supported camera models.

Every ``*_project`` function takes ``(params, x, y, z)`` and returns
``(u, v)``. Parameters and coordinates may be numpy arrays or Jets, so the
same code yields pixels or pixels plus Jacobians. Domain checks and
unprojection work on plain values only.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import numpy as np

from .. import jet
from ..types import ModelVariant

# Newton budget for models without a closed-form inverse
UNPROJECT_ITERATIONS = 20
UNPROJECT_TOLERANCE = 1e-9
# Safeguarded Newton/bisection budget for monotone scalar inverses
BRACKET_ITERATIONS = 100

# Largest undistorted radius scanned for the pinhole model (~84 degrees)
_OPENCV_MAX_RADIUS = 10.0


# ============================================================================
# Model Registry
# ============================================================================


@dataclass(frozen=True, slots=True)
class ModelDefinition:
    """
    Capabilities shared by every model variant.

    The refiner only relies on project, the parameter count and the bounds.
    """

    variant: ModelVariant
    project: Callable  # (params, x, y, z) -> (u, v), Jet-aware
    in_domain: Callable  # (params, x, y, z) -> bool mask, values only
    unproject: Callable  # (params, u, v) -> (rays (n, 3), valid (n,))
    distortion_bounds: tuple[tuple[float, float], ...]
    distortion_neutral: tuple[float, ...]  # values that mean "no distortion"


# ============================================================================
# Helpers
# ============================================================================


def _normalize_rays(x, y, z) -> np.ndarray:
    rays = np.stack([x, y, z], axis=-1)
    norm = np.linalg.norm(rays, axis=-1, keepdims=True)
    return rays / np.where(norm > 0.0, norm, 1.0)


def _to_normalized(params, u, v):
    fx, fy, cx, cy = params[:4]
    return (np.asarray(u) - cx) / fx, (np.asarray(v) - cy) / fy


def _first_fold(samples: np.ndarray, mapped: np.ndarray) -> float:
    """Largest sample before the mapping stops increasing."""
    drop = np.nonzero(np.diff(mapped) <= 0.0)[0]
    if drop.size == 0:
        return float(samples[-1])
    return float(samples[drop[0]])


def _invert_increasing(mapping: Callable, target: np.ndarray, upper: float) -> np.ndarray:
    """
    Solve mapping(t) = target on [0, upper] for a mapping increasing there.

    Newton steps are kept inside a shrinking bracket and replaced by
    bisection whenever they leave it, so every target converges. Targets
    beyond mapping(upper) end at upper; callers check the residual.
    """
    target = np.asarray(target, dtype=np.float64)
    lo = np.zeros(target.shape)
    hi = np.full(target.shape, float(upper))
    t = np.clip(target, lo, hi)
    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        for _ in range(BRACKET_ITERATIONS):
            f = mapping(jet.Jet(t, np.ones(1)))
            error = f.a - target
            lo = np.where(error < 0.0, t, lo)
            hi = np.where(error > 0.0, t, hi)
            stepped = t - error / jet.derivative(f)[..., 0]
            outside = ~np.isfinite(stepped) | (stepped <= lo) | (stepped >= hi)
            stepped = np.where(outside, 0.5 * (lo + hi), stepped)
            done = np.all((np.abs(stepped - t) < 1e-14 * np.maximum(1.0, t)) | (error == 0.0))
            t = np.where(error == 0.0, t, stepped)
            if done:
                break
    return t


# ============================================================================
# EUCM / UCM
# ============================================================================


def _eucm_normalized(alpha, beta, x, y, z):
    rho = np.sqrt(beta * (x * x + y * y) + z * z)
    d = alpha * rho + (1.0 - alpha) * z
    return x / d, y / d


def _eucm_domain_mask(alpha, beta, x, y, z) -> np.ndarray:
    rho = np.sqrt(beta * (x * x + y * y) + z * z)
    w = (1.0 - alpha) / alpha if alpha > 0.5 else alpha / (1.0 - alpha)
    d = alpha * rho + (1.0 - alpha) * z
    return (z > -w * rho) & (d > 1e-12)


def _eucm_unproject_normalized(alpha, beta, mx, my):
    r2 = mx * mx + my * my
    gamma = 1.0 - alpha
    if alpha > 0.5:
        valid = r2 * beta * (2.0 * alpha - 1.0) <= 1.0
    else:
        valid = np.ones(np.shape(r2), dtype=bool)
    tmp = np.clip(1.0 - (alpha - gamma) * beta * r2, 0.0, None)
    mz = (1.0 - alpha * alpha * beta * r2) / (alpha * np.sqrt(tmp) + gamma)
    return _normalize_rays(mx, my, mz), valid


def ucm_project(params, x, y, z):
    fx, fy, cx, cy, alpha = params
    mx, my = _eucm_normalized(alpha, 1.0, x, y, z)
    return fx * mx + cx, fy * my + cy


def ucm_in_domain(params, x, y, z):
    return _eucm_domain_mask(params[4], 1.0, x, y, z)


def ucm_unproject(params, u, v):
    mx, my = _to_normalized(params, u, v)
    return _eucm_unproject_normalized(params[4], 1.0, mx, my)


def eucm_project(params, x, y, z):
    fx, fy, cx, cy, alpha, beta = params
    mx, my = _eucm_normalized(alpha, beta, x, y, z)
    return fx * mx + cx, fy * my + cy


def eucm_in_domain(params, x, y, z):
    return _eucm_domain_mask(params[4], params[5], x, y, z)


def eucm_unproject(params, u, v):
    mx, my = _to_normalized(params, u, v)
    return _eucm_unproject_normalized(params[4], params[5], mx, my)


# ============================================================================
# EUCM with sensor tilt
# ============================================================================


def _tilt_terms(tau_x, tau_y):
    ctx, stx = np.cos(tau_x), np.sin(tau_x)
    cty, sty = np.cos(tau_y), np.sin(tau_y)
    return ctx, stx, cty, sty


def _apply_tilt(tau_x, tau_y, mx, my):
    # Same tilt homography as OpenCV's thin-prism/tilted sensor model,
    # which reduces to [[c_x, 0, 0], [-s_x s_y, c_y, 0], [s_y, -c_y s_x, c_y c_x]].
    ctx, stx, cty, sty = _tilt_terms(tau_x, tau_y)
    tx = ctx * mx
    ty = -stx * sty * mx + cty * my
    tw = sty * mx - cty * stx * my + cty * ctx
    return tx / tw, ty / tw, tw


def _tilt_matrix(tau_x: float, tau_y: float) -> np.ndarray:
    ctx, stx, cty, sty = _tilt_terms(tau_x, tau_y)
    return np.array([
        [ctx, 0.0, 0.0],
        [-stx * sty, cty, 0.0],
        [sty, -cty * stx, cty * ctx],
    ])


def eucmt_project(params, x, y, z):
    fx, fy, cx, cy, alpha, beta, tau_x, tau_y = params
    mx, my = _eucm_normalized(alpha, beta, x, y, z)
    tx, ty, _ = _apply_tilt(tau_x, tau_y, mx, my)
    return fx * tx + cx, fy * ty + cy


def eucmt_in_domain(params, x, y, z):
    alpha, beta, tau_x, tau_y = params[4:8]
    valid = _eucm_domain_mask(alpha, beta, x, y, z)
    with np.errstate(divide="ignore", invalid="ignore"):
        mx, my = _eucm_normalized(alpha, beta, x, y, z)
        _, _, tw = _apply_tilt(tau_x, tau_y, mx, my)
    return valid & (tw > 1e-12)


def eucmt_unproject(params, u, v):
    tx, ty = _to_normalized(params, u, v)
    alpha, beta, tau_x, tau_y = params[4:8]
    inverse = np.linalg.inv(_tilt_matrix(tau_x, tau_y))
    h = np.stack([tx, ty, np.ones(np.shape(tx))], axis=-1) @ inverse.T
    mx, my = h[..., 0] / h[..., 2], h[..., 1] / h[..., 2]
    rays, valid = _eucm_unproject_normalized(alpha, beta, mx, my)
    return rays, valid & (h[..., 2] > 1e-12)


# ============================================================================
# Radial angle models (KB4, FTHETA)
# ============================================================================


def kb4_theta_d(k, theta):
    k1, k2, k3, k4 = k
    t2 = theta * theta
    return theta * (1.0 + t2 * (k1 + t2 * (k2 + t2 * (k3 + t2 * k4))))


def ftheta_rho(k, theta):
    k1, k2, k3, k4 = k
    return theta * (1.0 + theta * (k1 + theta * (k2 + theta * (k3 + theta * k4))))


def radial_max_angle(mapping: Callable, k) -> float:
    """
    Largest incidence angle (up to pi) where the radial mapping still grows.
    """
    thetas = np.linspace(0.0, np.pi, 1801)
    return _first_fold(thetas, mapping(tuple(float(c) for c in k), thetas))


def _radial_project(mapping, params, x, y, z):
    fx, fy, cx, cy = params[:4]
    k = tuple(params[4:8])
    r2 = x * x + y * y
    near_axis = jet.value(r2) < 1e-18
    r = np.sqrt(jet.where(near_axis, 1.0, r2))
    theta = np.arctan2(r, z)
    scale = jet.where(near_axis, 1.0 / z, mapping(k, theta) / r)
    return fx * (x * scale) + cx, fy * (y * scale) + cy


def _radial_domain(mapping, params, x, y, z):
    theta = np.arctan2(np.sqrt(x * x + y * y), z)
    max_angle = radial_max_angle(mapping, params[4:8])
    return (x * x + y * y + z * z > 0.0) & (theta <= max_angle)


def _radial_unproject(mapping, params, u, v):
    mx, my = _to_normalized(params, u, v)
    k = tuple(float(c) for c in params[4:8])
    max_angle = radial_max_angle(mapping, k)
    rd = np.hypot(mx, my)

    theta = _invert_increasing(lambda t: mapping(k, t), rd, max_angle)
    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        residual = np.abs(mapping(k, theta) - rd)
        valid = (
            np.isfinite(theta)
            & (residual < UNPROJECT_TOLERANCE)
            & (theta >= 0.0)
            & (theta <= max_angle)
        )
        theta = np.where(valid, theta, 0.0)
        safe_rd = np.where(rd > 1e-12, rd, 1.0)
        s = np.sin(theta)
        ray_x = np.where(rd > 1e-12, s * mx / safe_rd, mx)
        ray_y = np.where(rd > 1e-12, s * my / safe_rd, my)
        ray_z = np.where(rd > 1e-12, np.cos(theta), 1.0)
    return _normalize_rays(ray_x, ray_y, ray_z), valid


def kb4_project(params, x, y, z):
    return _radial_project(kb4_theta_d, params, x, y, z)


def kb4_in_domain(params, x, y, z):
    return _radial_domain(kb4_theta_d, params, x, y, z)


def kb4_unproject(params, u, v):
    return _radial_unproject(kb4_theta_d, params, u, v)


def ftheta_project(params, x, y, z):
    return _radial_project(ftheta_rho, params, x, y, z)


def ftheta_in_domain(params, x, y, z):
    return _radial_domain(ftheta_rho, params, x, y, z)


def ftheta_unproject(params, u, v):
    return _radial_unproject(ftheta_rho, params, u, v)


# ============================================================================
# OpenCV radial-tangential
# ============================================================================


def _opencv_distort(k, xn, yn):
    k1, k2, p1, p2, k3 = k
    r2 = xn * xn + yn * yn
    radial = 1.0 + r2 * (k1 + r2 * (k2 + r2 * k3))
    xd = xn * radial + 2.0 * p1 * xn * yn + p2 * (r2 + 2.0 * xn * xn)
    yd = yn * radial + p1 * (r2 + 2.0 * yn * yn) + 2.0 * p2 * xn * yn
    return xd, yd


def _opencv_radial(k, r):
    k1, k2, _, _, k3 = k
    r2 = r * r
    return r * (1.0 + r2 * (k1 + r2 * (k2 + r2 * k3)))


def opencv_max_radius(k) -> float:
    """Largest undistorted radius where the radial polynomial still grows."""
    k = tuple(float(c) for c in k)
    radii = np.linspace(0.0, _OPENCV_MAX_RADIUS, 2001)
    return _first_fold(radii, _opencv_radial(k, radii))


def opencv5_project(params, x, y, z):
    fx, fy, cx, cy = params[:4]
    xd, yd = _opencv_distort(tuple(params[4:9]), x / z, y / z)
    return fx * xd + cx, fy * yd + cy


def opencv5_in_domain(params, x, y, z):
    r_max = opencv_max_radius(params[4:9])
    with np.errstate(divide="ignore", invalid="ignore"):
        r2 = (x * x + y * y) / (z * z)
    return (z > 1e-12) & (r2 <= r_max * r_max)


def opencv5_unproject(params, u, v):
    mx, my = _to_normalized(params, u, v)
    k = tuple(float(c) for c in params[4:9])
    r_max = opencv_max_radius(k)

    # Start from the radial-only inverse; the tangential terms are a small
    # correction on top of it.
    rd = np.hypot(mx, my)
    r = _invert_increasing(lambda t: _opencv_radial(k, t), rd, r_max)
    scale = np.where(rd > 1e-12, r / np.where(rd > 1e-12, rd, 1.0), 1.0)
    xn, yn = mx * scale, my * scale
    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        for _ in range(UNPROJECT_ITERATIONS):
            jx = jet.Jet(xn, np.array([1.0, 0.0]))
            jy = jet.Jet(yn, np.array([0.0, 1.0]))
            xd, yd = _opencv_distort(k, jx, jy)
            ex, ey = xd.a - mx, yd.a - my
            dx, dy = jet.derivative(xd), jet.derivative(yd)
            a, b = dx[..., 0], dx[..., 1]
            c, d = dy[..., 0], dy[..., 1]
            det = a * d - b * c
            step_x = (d * ex - b * ey) / det
            step_y = (a * ey - c * ex) / det
            xn, yn = xn - step_x, yn - step_y
            finite = np.isfinite(step_x) & np.isfinite(step_y)
            if np.all(np.hypot(step_x[finite], step_y[finite]) < 1e-14):
                break

        xd, yd = _opencv_distort(k, xn, yn)
        residual = np.hypot(xd - mx, yd - my)
        valid = (
            np.isfinite(xn)
            & np.isfinite(yn)
            & (residual < UNPROJECT_TOLERANCE)
            & (np.hypot(xn, yn) <= r_max)
        )
    xn, yn = np.where(valid, xn, 0.0), np.where(valid, yn, 0.0)
    return _normalize_rays(xn, yn, np.ones(np.shape(xn))), valid


MODEL_DEFINITIONS: dict[ModelVariant, ModelDefinition] = {
    ModelVariant.UCM: ModelDefinition(
        variant=ModelVariant.UCM,
        project=ucm_project,
        in_domain=ucm_in_domain,
        unproject=ucm_unproject,
        distortion_bounds=((1e-6, 1.0),),
        distortion_neutral=(0.0,),
    ),
    ModelVariant.EUCM: ModelDefinition(
        variant=ModelVariant.EUCM,
        project=eucm_project,
        in_domain=eucm_in_domain,
        unproject=eucm_unproject,
        distortion_bounds=((1e-6, 1.0), (1e-6, 100.0)),
        distortion_neutral=(0.0, 1.0),
    ),
    ModelVariant.EUCMT: ModelDefinition(
        variant=ModelVariant.EUCMT,
        project=eucmt_project,
        in_domain=eucmt_in_domain,
        unproject=eucmt_unproject,
        distortion_bounds=((1e-6, 1.0), (1e-6, 100.0), (-0.5, 0.5), (-0.5, 0.5)),
        distortion_neutral=(0.0, 1.0, 0.0, 0.0),
    ),
    ModelVariant.KB4: ModelDefinition(
        variant=ModelVariant.KB4,
        project=kb4_project,
        in_domain=kb4_in_domain,
        unproject=kb4_unproject,
        distortion_bounds=((-3.0, 3.0),) * 4,
        distortion_neutral=(0.0,) * 4,
    ),
    ModelVariant.OPENCV5: ModelDefinition(
        variant=ModelVariant.OPENCV5,
        project=opencv5_project,
        in_domain=opencv5_in_domain,
        unproject=opencv5_unproject,
        distortion_bounds=((-5.0, 5.0), (-5.0, 5.0), (-0.5, 0.5), (-0.5, 0.5), (-5.0, 5.0)),
        distortion_neutral=(0.0,) * 5,
    ),
    ModelVariant.FTHETA: ModelDefinition(
        variant=ModelVariant.FTHETA,
        project=ftheta_project,
        in_domain=ftheta_in_domain,
        unproject=ftheta_unproject,
        distortion_bounds=((-3.0, 3.0),) * 4,
        distortion_neutral=(0.0,) * 4,
    ),
}
