# src/emvs/geom/ops.py
"""
Numeric capabilities used by the mapping core.

The plane sweep, DSI back-projection and map fusion only talk to these three
small objects, so a test (or another backend) can swap any of them out:

  Linalg          matrix inverse with a singularity check
  ImageWarp       perspective warp of a single-channel image
  RigidTransform  apply a 4x4 rigid transform to (N,3) points
"""
from __future__ import annotations

import cv2
import numpy as np

from ..errors import GeometryError
from . import se3


class Linalg:
    def __init__(self, cond_max: float = 1e12):
        self.cond_max = float(cond_max)

    def inv(self, M: np.ndarray) -> np.ndarray:
        M = np.asarray(M, dtype=np.float64)
        if M.ndim != 2 or M.shape[0] != M.shape[1]:
            raise GeometryError(f"Cannot invert non-square matrix of shape {M.shape}")
        if not np.all(np.isfinite(M)):
            raise GeometryError("Matrix has non-finite entries")
        s = np.linalg.svd(M, compute_uv=False)
        if s[-1] <= s[0] / self.cond_max:
            raise GeometryError("Matrix is singular or ill-conditioned")
        try:
            return np.linalg.inv(M)
        except np.linalg.LinAlgError as ex:
            raise GeometryError(f"Matrix inversion failed: {ex}") from ex


class ImageWarp:
    def __init__(self, interpolation: int = cv2.INTER_LINEAR):
        self.interpolation = interpolation

    def warp(self, image: np.ndarray, M: np.ndarray, size_rc: tuple[int, int]) -> np.ndarray:
        """
        Forward perspective warp: dst(M @ x) = src(x).

        Args:
            image: (H,W) single-channel image
            M: (3,3) homography from source pixels to destination pixels
            size_rc: (rows, cols) of the destination
        """
        rows, cols = size_rc
        return cv2.warpPerspective(
            image,
            np.asarray(M, dtype=np.float64),
            (int(cols), int(rows)),
            flags=self.interpolation,
            borderMode=cv2.BORDER_CONSTANT,
            borderValue=0,
        )


class RigidTransform:
    def apply(self, T: np.ndarray, X: np.ndarray) -> np.ndarray:
        return se3.transform_points(T, X)

    def inverse(self, T: np.ndarray) -> np.ndarray:
        return se3.inv_T(T)
