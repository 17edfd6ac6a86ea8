"""
Free-parameter layout for the intrinsic vector.

Maps the solver's free vector onto the model's full parameter vector,
handling a shared focal length (fx = fy) and parameters held fixed.
"""

from __future__ import annotations

import numpy as np

from .. import jet
from ..camera import neutral_distortion, param_bounds
from ..types import CameraModel


class IntrinsicsLayout:
    """
    full = base + P @ delta, with P of shape (n_full, n_free).

    Seeding a Jet for full parameter i with derivative row P[i] gives
    Jacobians directly in the free coordinates.
    """

    def __init__(
        self,
        model: CameraModel,
        shared_focal: bool = False,
        fix_focal: bool = False,
        disabled_distortions: int = 0,
    ):
        n_full = model.params.size
        n_distortion = n_full - 4
        if disabled_distortions > n_distortion:
            raise ValueError(
                f"{model.variant.value} has {n_distortion} distortion terms, "
                f"cannot disable {disabled_distortions}"
            )

        fixed = set()
        if fix_focal:
            fixed.update((0, 1))
        neutral = neutral_distortion(model.variant)
        self.disabled = {}
        for i in range(disabled_distortions):
            idx = n_full - 1 - i
            fixed.add(idx)
            self.disabled[idx] = neutral[idx - 4]

        self.shared_focal = shared_focal
        self.n_full = n_full
        self.free_indices = [
            i for i in range(n_full)
            if i not in fixed and not (shared_focal and i == 1)
        ]
        self.n_free = len(self.free_indices)

        projection = np.zeros((n_full, self.n_free))
        for j, i in enumerate(self.free_indices):
            projection[i, j] = 1.0
        if shared_focal and 0 in self.free_indices:
            projection[1, self.free_indices.index(0)] = 1.0
        self.projection = projection

        self.lower, self.upper = param_bounds(model)

    def prepare(self, params: np.ndarray) -> np.ndarray:
        """Apply the layout's constraints to a starting vector."""
        params = np.array(params, dtype=np.float64)
        if self.shared_focal:
            params[1] = params[0]
        for idx, val in self.disabled.items():
            params[idx] = val
        return self.clip(params)

    def clip(self, params: np.ndarray) -> np.ndarray:
        return np.clip(params, self.lower, self.upper)

    def apply(self, params: np.ndarray, delta: np.ndarray) -> np.ndarray:
        return self.clip(params + self.projection @ delta)

    def seed(self, params: np.ndarray, total: int) -> list:
        """
        Jets for every full parameter, derivatives laid out in free
        coordinates (first n_free of ``total`` variables). Fixed parameters
        stay plain floats.
        """
        seeded = []
        for i in range(self.n_full):
            row = self.projection[i]
            if not np.any(row):
                seeded.append(float(params[i]))
                continue
            v = np.zeros(total)
            v[: self.n_free] = row
            seeded.append(jet.Jet(params[i], v))
        return seeded
