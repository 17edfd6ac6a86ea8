"""
Model-independent projection API.

Pure functions over CameraModel. Vectorized calls report the model domain
through a boolean mask; the single-point helpers return None instead.
"""

from __future__ import annotations

import numpy as np

from .. import jet
from ..errors import ModelDomainViolation
from ..logger import get
from ..types import CameraModel, ModelVariant
from .models import (
    MODEL_DEFINITIONS,
    ModelDefinition,
    ftheta_rho,
    kb4_theta_d,
    opencv_max_radius,
    radial_max_angle,
)

logger = get(__name__)

# Bounds shared by every variant on fx, fy
FOCAL_BOUNDS = (0.0, 10000.0)


def get_definition(variant: ModelVariant) -> ModelDefinition:
    return MODEL_DEFINITIONS[ModelVariant(variant)]


# ============================================================================
# Projection
# ============================================================================


def project_raw(variant: ModelVariant, params, x, y, z):
    """
    Evaluate the projection formula without any domain handling.

    ``params`` and the coordinates may be Jets; used by the solvers.
    """
    return get_definition(variant).project(params, x, y, z)


def in_domain(variant: ModelVariant, params: np.ndarray, x, y, z) -> np.ndarray:
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.asarray(get_definition(variant).in_domain(params, x, y, z), dtype=bool)


def project(model: CameraModel, points: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """
    Project camera-frame points to pixels.

    Args:
        model: Camera model
        points: (n, 3) points in the camera frame

    Returns:
        (pixels (n, 2), valid (n,)); invalid rows hold NaN
    """
    points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    x, y, z = points[:, 0], points[:, 1], points[:, 2]
    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        u, v = project_raw(model.variant, model.params, x, y, z)
    pixels = np.column_stack([u, v]).astype(np.float64)
    valid = in_domain(model.variant, model.params, x, y, z) & np.all(
        np.isfinite(pixels), axis=1
    )
    pixels[~valid] = np.nan
    return pixels, valid


def unproject(model: CameraModel, pixels: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """
    Unproject pixels to unit rays in the camera frame.

    Args:
        model: Camera model
        pixels: (n, 2) pixel coordinates

    Returns:
        (rays (n, 3), valid (n,)); invalid rows hold NaN
    """
    pixels = np.asarray(pixels, dtype=np.float64).reshape(-1, 2)
    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        rays, valid = get_definition(model.variant).unproject(
            model.params, pixels[:, 0], pixels[:, 1]
        )
    rays = np.array(rays, dtype=np.float64).reshape(-1, 3)
    valid = np.asarray(valid, dtype=bool) & np.all(np.isfinite(rays), axis=1)
    rays[~valid] = np.nan
    return rays, valid


def project_point(
    model: CameraModel, point: np.ndarray, strict: bool = False
) -> np.ndarray | None:
    """
    Project a single point; None (or ModelDomainViolation when strict)
    outside the model domain.
    """
    pixels, valid = project(model, np.asarray(point).reshape(1, 3))
    if not valid[0]:
        if strict:
            raise ModelDomainViolation(
                f"point {np.asarray(point).tolist()} is outside the {model.variant.value} domain"
            )
        return None
    return pixels[0]


def unproject_pixel(
    model: CameraModel, pixel: np.ndarray, strict: bool = False
) -> np.ndarray | None:
    rays, valid = unproject(model, np.asarray(pixel).reshape(1, 2))
    if not valid[0]:
        if strict:
            raise ModelDomainViolation(
                f"pixel {np.asarray(pixel).tolist()} is outside the {model.variant.value} domain"
            )
        return None
    return rays[0]


def project_with_jacobians(
    model: CameraModel,
    points: np.ndarray,
    with_points: bool = False,
) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray | None]:
    """
    Project points and differentiate with dual numbers.

    Args:
        model: Camera model
        points: (n, 3) camera-frame points
        with_points: Also return derivatives with respect to the points

    Returns:
        (pixels (n, 2), valid (n,), d_pixels/d_params (n, 2, P),
         d_pixels/d_point (n, 2, 3) or None)
    """
    points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    n_params = model.params.size
    total = n_params + (3 if with_points else 0)

    params = jet.seed(model.params, total)
    if with_points:
        x, y, z = jet.seed(points.T, total, offset=n_params)
    else:
        x, y, z = points[:, 0], points[:, 1], points[:, 2]

    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        u, v = project_raw(model.variant, params, x, y, z)

    du = jet.derivative(u)
    dv = jet.derivative(v)
    jacobian = np.stack([du, dv], axis=1)  # (n, 2, total)
    pixels = np.column_stack([jet.value(u), jet.value(v)])
    valid = in_domain(
        model.variant, model.params, points[:, 0], points[:, 1], points[:, 2]
    ) & np.all(np.isfinite(pixels), axis=1)

    d_points = jacobian[:, :, n_params:] if with_points else None
    return pixels, valid, jacobian[:, :, :n_params], d_points


# ============================================================================
# Parameter metadata
# ============================================================================


def param_bounds(model: CameraModel) -> tuple[np.ndarray, np.ndarray]:
    """
    Box bounds on the parameter vector: focal lengths, principal point
    inside the image, then per-variant distortion bounds.
    """
    definition = get_definition(model.variant)
    lower = [FOCAL_BOUNDS[0], FOCAL_BOUNDS[0], 0.0, 0.0]
    upper = [FOCAL_BOUNDS[1], FOCAL_BOUNDS[1], float(model.width), float(model.height)]
    for lo, hi in definition.distortion_bounds:
        lower.append(lo)
        upper.append(hi)
    return np.array(lower), np.array(upper)


def neutral_distortion(variant: ModelVariant) -> tuple[float, ...]:
    return get_definition(variant).distortion_neutral


def max_fov_angle(model: CameraModel) -> float:
    """
    Largest incidence angle (radians, from the optical axis) the model can
    project. Closed-form for the EUCM family, scanned for the polynomial
    models.
    """
    if model.variant in (ModelVariant.UCM, ModelVariant.EUCM, ModelVariant.EUCMT):
        alpha = float(model.params[4])
        beta = 1.0 if model.variant is ModelVariant.UCM else float(model.params[5])
        w = (1.0 - alpha) / alpha if alpha > 0.5 else alpha / (1.0 - alpha)
        # z > -w * rho on the unit sphere, rho^2 = beta sin^2 + cos^2
        thetas = np.linspace(0.0, np.pi, 3601)
        s, c = np.sin(thetas), np.cos(thetas)
        inside = c > -w * np.sqrt(beta * s * s + c * c)
        return float(thetas[inside][-1])
    if model.variant is ModelVariant.KB4:
        return radial_max_angle(kb4_theta_d, model.params[4:8])
    if model.variant is ModelVariant.FTHETA:
        return radial_max_angle(ftheta_rho, model.params[4:8])
    return float(np.arctan(opencv_max_radius(model.params[4:9])))


def check_model(model: CameraModel) -> list[str]:
    """
    Check the soft invariants of a parameter vector.

    Problems are logged and returned; nothing is enforced.
    """
    problems = []
    params = model.params
    if not np.all(np.isfinite(params)):
        problems.append("parameters contain non-finite values")
    if params[0] <= 0.0 or params[1] <= 0.0:
        problems.append(f"focal lengths must be positive (fx={params[0]}, fy={params[1]})")
    # Principal point within a generous multiple of the image size
    if not (-model.width <= params[2] <= 2 * model.width):
        problems.append(f"cx={params[2]} is far outside the image width {model.width}")
    if not (-model.height <= params[3] <= 2 * model.height):
        problems.append(f"cy={params[3]} is far outside the image height {model.height}")

    for problem in problems:
        logger.warning(f"{model.variant.value}: {problem}")
    return problems
