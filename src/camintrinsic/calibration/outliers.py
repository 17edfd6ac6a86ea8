"""
Outlier thresholds for the refiner.

threshold = max(scale * median(|r|), min_threshold_px); the scale is fixed
or follows a decreasing schedule over the rejection rounds.
"""

from __future__ import annotations

import numpy as np

from ..config import OutlierPolicy


def rejection_scale(policy: OutlierPolicy, round_index: int) -> float:
    """Multiple of the median residual norm used in a given round."""
    if policy.schedule == "fixed" or policy.max_rounds <= 1:
        return policy.scale
    t = min(round_index / (policy.max_rounds - 1), 1.0)
    return policy.initial_scale + t * (policy.scale - policy.initial_scale)


def rejection_threshold(
    policy: OutlierPolicy, norms: np.ndarray, round_index: int = 0
) -> float:
    """
    Pixel threshold for one rejection round.

    Args:
        policy: Outlier policy
        norms: Residual norms of the active correspondences
        round_index: Zero-based index of the round

    Returns:
        Threshold in pixels (inf when there is nothing to measure)
    """
    norms = np.asarray(norms, dtype=np.float64)
    norms = norms[np.isfinite(norms)]
    if norms.size == 0:
        return float("inf")
    median = float(np.median(norms))
    return max(rejection_scale(policy, round_index) * median, policy.min_threshold_px)


def select_outliers(
    policy: OutlierPolicy,
    norms: np.ndarray,
    candidates: np.ndarray,
    round_index: int = 0,
) -> tuple[np.ndarray, float]:
    """
    Indices of candidate correspondences above the round's threshold.

    Args:
        policy: Outlier policy
        norms: (N,) residual norms, NaN where not evaluated
        candidates: (N,) bool, correspondences eligible for rejection
        round_index: Zero-based index of the round

    Returns:
        (indices to deactivate, threshold)
    """
    norms = np.asarray(norms, dtype=np.float64)
    threshold = rejection_threshold(policy, norms[candidates], round_index)
    over = candidates & np.isfinite(norms) & (norms > threshold)
    return np.flatnonzero(over), threshold
