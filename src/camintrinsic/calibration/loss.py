"""
Robust losses on squared residual norms.

rho(s) is applied to s = |r|^2 of each 2D residual; weight(s) = rho'(s) is
the IRLS weight used to build the normal equations.
"""

from __future__ import annotations

import numpy as np


class HuberLoss:
    def __init__(self, scale: float = 1.0):
        self.scale = float(scale)

    def rho(self, s: np.ndarray) -> np.ndarray:
        d2 = self.scale * self.scale
        root = np.sqrt(s)
        return np.where(s <= d2, s, 2.0 * self.scale * root - d2)

    def weight(self, s: np.ndarray) -> np.ndarray:
        d2 = self.scale * self.scale
        with np.errstate(divide="ignore"):
            return np.where(s <= d2, 1.0, self.scale / np.sqrt(s))


class CauchyLoss:
    def __init__(self, scale: float = 1.0):
        self.scale = float(scale)

    def rho(self, s: np.ndarray) -> np.ndarray:
        d2 = self.scale * self.scale
        return d2 * np.log1p(s / d2)

    def weight(self, s: np.ndarray) -> np.ndarray:
        d2 = self.scale * self.scale
        return 1.0 / (1.0 + s / d2)


def make_loss(name: str, scale: float):
    if name == "huber":
        return HuberLoss(scale)
    if name == "cauchy":
        return CauchyLoss(scale)
    raise ValueError(f"Unknown loss: {name}")
