"""
Closed-form initial estimate of intrinsics and per-frame poses.

Pure functions - no state. Each frame contributes a radial homography
(homography plus one division-model coefficient); the focal length comes
from Zhang's constraints across all homographies, the distortion from the
median division coefficient.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import numpy as np

from ..config import CalibrationConfig
from ..errors import DegenerateGeometry, InsufficientFrames
from ..geometry import (
    normalize_2d,
    pose_from_homography,
    refine_translation,
    rvec_from_rotation,
)
from ..logger import get
from ..types import CameraModel, FrameObservations, FramePose, ModelVariant

logger = get(__name__)

# Residual cut for the robust refit: median + MAD_CUTOFF * sigma(MAD)
MAD_CUTOFF = 3.0
# Points within this many pixels of their radial line are never dropped
RESIDUAL_FLOOR_PX = 1.0
ALPHA_RANGE = (1e-6, 0.99)
PLANAR_TOLERANCE = 1e-9


@dataclass(frozen=True, slots=True)
class RadialHomography:
    """
    Board-plane to image mapping x_u ~ H [X, Y, 1] in normalized image
    coordinates, where x_u = x_d / (1 + lam |x_d|^2).
    """

    homography: np.ndarray  # (3, 3)
    lam: float
    inliers: np.ndarray  # (n,) bool


@dataclass(frozen=True, slots=True)
class InitialEstimate:
    model: CameraModel  # requested variant
    ucm_model: CameraModel  # same estimate as a UCM, used to bootstrap
    poses: list[FramePose | None]  # None where the frame failed
    focal: float  # pixels
    lam: float  # median division coefficient, normalized units

    @property
    def valid_frames(self) -> list[int]:
        return [i for i, pose in enumerate(self.poses) if pose is not None]


# ============================================================================
# Image normalization
# ============================================================================


def image_normalization(image_size: tuple[int, int]) -> tuple[np.ndarray, float]:
    """Center and scale used for normalized image coordinates."""
    width, height = image_size
    center = np.array([width / 2.0, height / 2.0])
    scale = max(width, height) / 2.0
    return center, scale


def board_xy(obj_points: np.ndarray) -> np.ndarray:
    obj_points = np.asarray(obj_points, dtype=np.float64).reshape(-1, 3)
    if np.any(np.abs(obj_points[:, 2]) > PLANAR_TOLERANCE):
        raise ValueError("Board points must lie on the z = 0 plane")
    return obj_points[:, :2]


# ============================================================================
# Radial homography
# ============================================================================


def _radial_alignment(board_n: np.ndarray, uv: np.ndarray) -> np.ndarray:
    """
    First two homography rows from u (a2 . X) - v (a1 . X) = 0.

    Returns:
        (2, 3) rows a1, a2 (unit norm jointly)
    """
    X = np.column_stack([board_n, np.ones(board_n.shape[0])])
    u, v = uv[:, 0:1], uv[:, 1:2]
    A = np.hstack([-v * X, u * X])
    _, s, vt = np.linalg.svd(A)
    if s[-2] < 1e-12 * max(s[0], 1.0):
        raise DegenerateGeometry("radial alignment system is rank deficient")
    return vt[-1].reshape(2, 3)


def _alignment_residuals(rows: np.ndarray, board_n: np.ndarray, uv: np.ndarray) -> np.ndarray:
    X = np.column_stack([board_n, np.ones(board_n.shape[0])])
    l1 = X @ rows[0]
    l2 = X @ rows[1]
    # Distance of the observed point from the predicted radial line
    norm = np.hypot(l1, l2)
    norm[norm < 1e-12] = 1e-12
    return np.abs(uv[:, 0] * l2 - uv[:, 1] * l1) / norm


def _third_row(rows: np.ndarray, board_n: np.ndarray, uv: np.ndarray) -> tuple[np.ndarray, float]:
    """
    Third homography row and the division coefficient.

    With h3 scaled by s and mu = s * lam, both image coordinates give
    u (h3 . X) - s l1 - mu r^2 l1 = 0, linear in (h3, s, mu).
    """
    X = np.column_stack([board_n, np.ones(board_n.shape[0])])
    l1 = X @ rows[0]
    l2 = X @ rows[1]
    u, v = uv[:, 0], uv[:, 1]
    r2 = u * u + v * v

    A = np.vstack([
        np.column_stack([u[:, None] * X, -l1, -r2 * l1]),
        np.column_stack([v[:, None] * X, -l2, -r2 * l2]),
    ])
    _, s, vt = np.linalg.svd(A)
    if s[-2] < 1e-12 * max(s[0], 1.0):
        raise DegenerateGeometry("third homography row is not determined")
    sol = vt[-1]
    if abs(sol[3]) < 1e-12:
        raise DegenerateGeometry("homography scale vanished")
    return sol[:3] / sol[3], float(sol[4] / sol[3])


def _fit_radial(board_n: np.ndarray, uv: np.ndarray) -> tuple[np.ndarray, float, np.ndarray]:
    rows = _radial_alignment(board_n, uv)
    h3, lam = _third_row(rows, board_n, uv)
    return np.vstack([rows, h3]), lam, _alignment_residuals(rows, board_n, uv)


def radial_homography(
    obj_points: np.ndarray,
    img_points: np.ndarray,
    image_size: tuple[int, int],
    min_points: int = 8,
) -> RadialHomography:
    """
    Fit a homography plus a division-model coefficient for one frame.

    Args:
        obj_points: (n, 3) board points on z = 0
        img_points: (n, 2) pixels
        image_size: (width, height)
        min_points: Minimum number of correspondences

    Returns:
        RadialHomography in normalized image coordinates

    Raises:
        DegenerateGeometry: Too few points or a singular linear system
    """
    xy = board_xy(obj_points)
    img_points = np.asarray(img_points, dtype=np.float64).reshape(-1, 2)
    n = xy.shape[0]
    if n < min_points:
        raise DegenerateGeometry(f"{n} correspondences (need at least {min_points})")

    center, scale = image_normalization(image_size)
    uv = (img_points - center) / scale
    board_n, T = normalize_2d(xy)

    H_n, lam, residuals = _fit_radial(board_n, uv)
    inliers = np.ones(n, dtype=bool)

    # One robust refit without points far off their radial line
    median = np.median(residuals)
    sigma = 1.4826 * np.median(np.abs(residuals - median))
    if sigma > 0:
        threshold = max(median + MAD_CUTOFF * sigma, RESIDUAL_FLOOR_PX / scale)
        keep = residuals <= threshold
        if min_points <= keep.sum() < n:
            inliers = keep
            H_n, lam, _ = _fit_radial(board_n[keep], uv[keep])

    H = H_n @ T
    X = np.column_stack([xy, np.ones(n)])
    if np.median(X @ H[2]) < 0:
        H = -H
    return RadialHomography(homography=H, lam=lam, inliers=inliers)


# ============================================================================
# Focal length
# ============================================================================


def _zhang_terms(homography: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """
    Coefficients of a w + b = 0 with w = 1 / f^2 for K = diag(f, f, 1).

    Row 0: h1' W h2 = 0, row 1: h1' W h1 = h2' W h2.
    """
    H = homography / np.linalg.norm(homography)
    h1, h2 = H[:, 0], H[:, 1]
    a = np.array([
        h1[0] * h2[0] + h1[1] * h2[1],
        h1[0] ** 2 + h1[1] ** 2 - h2[0] ** 2 - h2[1] ** 2,
    ])
    b = np.array([h1[2] * h2[2], h1[2] ** 2 - h2[2] ** 2])
    return a, b


def focal_from_homographies(homographies: list[np.ndarray]) -> float:
    """
    Focal length (normalized units) from planar homographies.

    Least squares over all frames; median of per-frame estimates when the
    joint solution is not positive; 1.0 (half the image size) otherwise.
    """
    if not homographies:
        return 1.0

    terms = [_zhang_terms(H) for H in homographies]
    a = np.concatenate([t[0] for t in terms])
    b = np.concatenate([t[1] for t in terms])

    denom = np.dot(a, a)
    if denom > 1e-18:
        w = -np.dot(a, b) / denom
        if w > 0:
            return float(1.0 / np.sqrt(w))

    per_frame = []
    for fa, fb in terms:
        d = np.dot(fa, fa)
        if d > 1e-18:
            w = -np.dot(fa, fb) / d
            if w > 0:
                per_frame.append(w)
    if per_frame:
        logger.debug("Joint focal estimate failed, using per-frame median")
        return float(1.0 / np.sqrt(np.median(per_frame)))

    logger.warning("No focal estimate from homographies, using half the image size")
    return 1.0


# ============================================================================
# Poses and variant mapping
# ============================================================================


def pose_from_radial_homography(
    radial: RadialHomography,
    obj_points: np.ndarray,
    img_points: np.ndarray,
    image_size: tuple[int, int],
    focal: float,
) -> FramePose:
    """
    Pose from K^-1 H with the translation refit on undistorted points.

    Args:
        focal: Focal length in normalized units
    """
    rotation, translation = pose_from_homography(radial.homography, focal)

    center, scale = image_normalization(image_size)
    uv = (np.asarray(img_points, dtype=np.float64).reshape(-1, 2) - center) / scale
    r2 = np.sum(uv * uv, axis=1, keepdims=True)
    rays_xy = uv / (1.0 + radial.lam * r2) / focal

    keep = radial.inliers
    board = np.asarray(obj_points, dtype=np.float64).reshape(-1, 3)
    refined = refine_translation(rotation, board[keep], rays_xy[keep])
    if refined[2] > 0:
        translation = refined
    return FramePose(rvec=rvec_from_rotation(rotation), tvec=translation)


def initial_params(
    variant: ModelVariant, focal: float, center: np.ndarray, alpha: float
) -> np.ndarray:
    """Closed-form parameter vector for each variant."""
    variant = ModelVariant(variant)
    base = [focal, focal, center[0], center[1]]
    if variant is ModelVariant.UCM:
        return np.array(base + [alpha])
    if variant is ModelVariant.EUCM:
        return np.array(base + [alpha, 1.0])
    if variant is ModelVariant.EUCMT:
        return np.array(base + [alpha, 1.0, 0.0, 0.0])
    if variant is ModelVariant.OPENCV5:
        return np.array(base + [0.0] * 5)
    return np.array(base + [0.0] * 4)


# ============================================================================
# Estimator
# ============================================================================


def _frame_homography(args) -> RadialHomography | None:
    index, obs, image_size, min_points = args
    try:
        return radial_homography(obs.obj_points, obs.img_points, image_size, min_points)
    except DegenerateGeometry as e:
        logger.info(f"Frame {index}: no homography ({e})")
        return None


def estimate_initial(
    observations: list[FrameObservations],
    image_size: tuple[int, int],
    variant: ModelVariant = ModelVariant.UCM,
    config: CalibrationConfig | None = None,
) -> InitialEstimate:
    """
    Estimate initial intrinsics and poses from planar observations.

    Args:
        observations: One FrameObservations per frame
        image_size: (width, height)
        variant: Variant of the returned model
        config: Calibration config (defaults if None)

    Returns:
        InitialEstimate; frames without a usable homography get pose None

    Raises:
        InsufficientFrames: Fewer than config.min_frames usable frames
    """
    config = config or CalibrationConfig()
    width, height = image_size
    jobs = [
        (i, obs, image_size, config.min_correspondences)
        for i, obs in enumerate(observations)
    ]

    if config.workers > 1 and len(jobs) > 1:
        with ThreadPoolExecutor(max_workers=config.workers) as executor:
            radials = list(executor.map(_frame_homography, jobs))
    else:
        radials = [_frame_homography(job) for job in jobs]

    valid = [i for i, r in enumerate(radials) if r is not None]
    if len(valid) < config.min_frames:
        raise InsufficientFrames(
            len(valid), config.min_frames, "frames with a usable homography"
        )

    focal_n = focal_from_homographies([radials[i].homography for i in valid])
    lam = float(np.median([radials[i].lam for i in valid]))
    alpha = float(np.clip(-2.0 * lam * focal_n**2, *ALPHA_RANGE))

    center, scale = image_normalization(image_size)
    focal = focal_n * scale

    poses: list[FramePose | None] = [None] * len(observations)
    for i in valid:
        obs = observations[i]
        poses[i] = pose_from_radial_homography(
            radials[i], obs.obj_points, obs.img_points, image_size, focal_n
        )

    logger.info(
        f"Initial estimate from {len(valid)}/{len(observations)} frames: "
        f"f={focal:.2f}px, lambda={lam:.4f}, alpha={alpha:.4f}"
    )

    ucm_model = CameraModel(
        variant=ModelVariant.UCM,
        params=initial_params(ModelVariant.UCM, focal, center, alpha),
        width=width,
        height=height,
    )
    model = CameraModel(
        variant=variant,
        params=initial_params(variant, focal, center, alpha),
        width=width,
        height=height,
    )
    return InitialEstimate(
        model=model, ucm_model=ucm_model, poses=poses, focal=focal, lam=lam
    )
