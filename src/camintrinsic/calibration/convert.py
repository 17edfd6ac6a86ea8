"""
Conversion between camera model variants.

The source model is sampled on a pixel grid; each pixel is unprojected to a
direction and the target's parameters are fitted so that it reprojects
those directions onto the same pixels.
"""

from __future__ import annotations

import numpy as np
from scipy.optimize import least_squares

from .. import jet
from ..camera import in_domain, neutral_distortion, project, project_raw, unproject
from ..config import CalibrationConfig
from ..errors import DegenerateGeometry
from ..logger import get
from ..types import MODEL_PARAM_NAMES, CameraModel, ModelVariant
from .parameters import IntrinsicsLayout

logger = get(__name__)

EUCM_FAMILY = (ModelVariant.UCM, ModelVariant.EUCM, ModelVariant.EUCMT)
# Alpha for an EUCM-family target when the source has none
ALPHA_SEED = 0.5
MIN_SAMPLES = 20
HUBER_SCALE_PX = 1.0
# Residual for samples the target formula cannot evaluate at all
UNPROJECTABLE_RESIDUAL_PX = 1e3


def sample_grid(width: int, height: int) -> np.ndarray:
    """
    Pixel grid over the image: margin max(w, h) / 100, step max(w, h) / 30.
    """
    size = max(width, height)
    edge = size / 100.0
    step = size / 30.0
    xs = np.arange(edge, width - edge + 1e-9, step)
    ys = np.arange(edge, height - edge + 1e-9, step)
    gx, gy = np.meshgrid(xs, ys)
    return np.column_stack([gx.ravel(), gy.ravel()])


def conversion_samples(source: CameraModel) -> tuple[np.ndarray, np.ndarray]:
    """
    Directions and the pixels the source model assigns to them.

    Returns:
        (rays (n, 3), pixels (n, 2)) for grid pixels that survive the
        unproject/project round trip
    """
    grid = sample_grid(source.width, source.height)
    rays, valid = unproject(source, grid)
    rays = rays[valid]
    pixels, ok = project(source, rays)
    return rays[ok], pixels[ok]


def initial_target_params(source: CameraModel, target: ModelVariant) -> np.ndarray:
    """Starting parameters for the target variant."""
    target = ModelVariant(target)
    params = list(source.params[:4]) + list(neutral_distortion(target))
    names = MODEL_PARAM_NAMES[target]

    copy = source.variant is target or (
        source.variant in EUCM_FAMILY and target in EUCM_FAMILY
    )
    if copy:
        source_params = source.named_params()
        for i, name in enumerate(names):
            if i >= 4 and name in source_params:
                params[i] = source_params[name]
    elif target in EUCM_FAMILY:
        params[names.index("alpha")] = ALPHA_SEED
    return np.array(params, dtype=np.float64)


def _fit_problem(layout: IntrinsicsLayout, base: np.ndarray, variant, rays, pixels):
    """
    Residual and Jacobian callables over the layout's free parameters.

    Returns:
        (expand, residuals, jacobian): expand maps a free vector back to the
        full parameter vector
    """
    x, y, z = rays[:, 0], rays[:, 1], rays[:, 2]
    offset = base - layout.projection @ base[layout.free_indices]

    def expand(free: np.ndarray) -> np.ndarray:
        return offset + layout.projection @ free

    def residuals(free: np.ndarray) -> np.ndarray:
        with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
            u, v = project_raw(variant, expand(free), x, y, z)
            res = np.column_stack([u, v]) - pixels
        res[~np.isfinite(res)] = UNPROJECTABLE_RESIDUAL_PX
        return res.ravel()

    def jacobian(free: np.ndarray) -> np.ndarray:
        seeded = layout.seed(expand(free), layout.n_free)
        with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
            u, v = project_raw(variant, seeded, x, y, z)
        jac = np.stack(
            [jet.derivative(u, layout.n_free), jet.derivative(v, layout.n_free)], axis=1
        )
        return np.where(np.isfinite(jac), jac, 0.0).reshape(-1, layout.n_free)

    return expand, residuals, jacobian


def convert_model(
    source: CameraModel,
    target_variant: ModelVariant,
    config: CalibrationConfig | None = None,
    disabled_distortions: int = 0,
) -> CameraModel:
    """
    Fit a model of another variant to an existing model.

    Args:
        source: Model to convert
        target_variant: Variant of the returned model
        config: Solver settings (iteration cap and tolerances)
        disabled_distortions: Hold the last N distortion terms at neutral

    Returns:
        CameraModel of the target variant with the source's image size

    Raises:
        DegenerateGeometry: Too few grid samples survive the source model
    """
    config = config or CalibrationConfig()
    target_variant = ModelVariant(target_variant)

    rays, pixels = conversion_samples(source)
    if rays.shape[0] < MIN_SAMPLES:
        raise DegenerateGeometry(
            f"only {rays.shape[0]} grid samples unproject through the source model"
        )

    model = CameraModel(
        variant=target_variant,
        params=initial_target_params(source, target_variant),
        width=source.width,
        height=source.height,
    )
    layout = IntrinsicsLayout(model, disabled_distortions=disabled_distortions)
    params = layout.prepare(model.params)
    if layout.n_free == 0:
        return model.with_params(params)

    expand, residuals, jacobian = _fit_problem(layout, params, target_variant, rays, pixels)
    free = layout.free_indices
    result = least_squares(
        residuals,
        params[free],
        jac=jacobian,
        bounds=(layout.lower[free], layout.upper[free]),
        method="trf",
        x_scale="jac",
        loss="huber",
        f_scale=HUBER_SCALE_PX,
        ftol=config.function_tolerance,
        xtol=config.parameter_tolerance,
        max_nfev=config.max_iterations,
    )

    converted = model.with_params(layout.clip(expand(result.x)))
    covered = in_domain(target_variant, converted.params, rays[:, 0], rays[:, 1], rays[:, 2])
    logger.info(
        f"Converted {source.variant.value} -> {target_variant.value} "
        f"({int(covered.sum())}/{rays.shape[0]} samples in domain, "
        f"{result.nfev} evaluations, cost {result.cost:.3g}, status {result.status})"
    )
    return converted
