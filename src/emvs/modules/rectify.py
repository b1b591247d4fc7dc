# src/emvs/modules/rectify.py
from __future__ import annotations

import cv2
import numpy as np

from ..errors import PreconditionError


class Rectifier:
    """Removes lens distortion from an event count image (fixed K, D)."""

    def __init__(self, K: np.ndarray, D: np.ndarray | None = None):
        K64 = np.asarray(K, dtype=np.float64)
        if K64.shape != (3, 3):
            raise PreconditionError(f"K must be 3x3, got {K64.shape}")
        self.K = K64
        self.D = np.zeros(5, np.float64) if D is None else np.asarray(D, dtype=np.float64).reshape(-1)
        self.identity = not np.any(self.D)

    def __call__(self, image: np.ndarray) -> np.ndarray:
        """Returns a float32 image of the same size."""
        img = np.asarray(image, dtype=np.float32)
        if self.identity:
            return img
        return cv2.undistort(img, self.K, self.D)
