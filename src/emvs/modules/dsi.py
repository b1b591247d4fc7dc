# src/emvs/modules/dsi.py
from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from ..errors import GeometryError, PreconditionError, StateError
from ..geom.ops import Linalg


@dataclass
class DsiPoints:
    points: np.ndarray     # (M,3) keyframe camera frame
    pixels: np.ndarray     # (M,2) int (row, col)
    plane_idx: np.ndarray  # (M,) int
    scores: np.ndarray     # (M,) winning evidence

    def __len__(self) -> int:
        return int(self.points.shape[0])

    @staticmethod
    def empty() -> "DsiPoints":
        return DsiPoints(
            np.zeros((0, 3), np.float64),
            np.zeros((0, 2), np.int64),
            np.zeros((0,), np.int64),
            np.zeros((0,), np.float32),
        )


class DisparitySpaceVolume:
    """
    Evidence volume indexed by (row, col, plane) for the active keyframe.

    Extraction keeps a pixel when its best plane collected at least
    `confidence_floor` evidence (and strictly more than zero), then
    back-projects it: X = K^-1 [col, row, 1]^T * depth.
    """

    def __init__(
        self,
        rows: int,
        cols: int,
        plane_depths: np.ndarray,
        K: np.ndarray,
        *,
        confidence_floor: float = 1.0,
        linalg: Linalg | None = None,
    ):
        self.plane_depths = np.asarray(plane_depths, dtype=np.float64).reshape(-1)
        if self.plane_depths.size == 0 or np.any(self.plane_depths <= 0.0):
            raise PreconditionError("DSI needs at least one positive plane depth")
        if np.any(np.diff(self.plane_depths) <= 0.0):
            raise PreconditionError("Plane depths must be strictly increasing")
        if confidence_floor < 0.0:
            raise PreconditionError(f"confidence_floor must be >= 0, got {confidence_floor}")
        self.rows = int(rows)
        self.cols = int(cols)
        self.confidence_floor = float(confidence_floor)
        la = linalg or Linalg()
        try:
            self.K_inv = la.inv(K)
        except GeometryError as ex:
            raise PreconditionError(f"Intrinsic matrix is singular: {ex}") from ex

        self.volume = np.zeros((self.rows, self.cols, self.n_planes), np.float32)
        self.num_batches = 0
        self._unextracted = False

    @property
    def n_planes(self) -> int:
        return int(self.plane_depths.shape[0])

    @property
    def shape(self) -> tuple[int, int, int]:
        return self.rows, self.cols, self.n_planes

    def get_plane_depth(self, i: int) -> float:
        return float(self.plane_depths[i])

    def is_empty(self) -> bool:
        return self.num_batches == 0

    def accumulate(self, plane_index: int, warped: np.ndarray) -> None:
        if not (0 <= plane_index < self.n_planes):
            raise PreconditionError(f"plane_index {plane_index} out of range [0, {self.n_planes})")
        if warped.shape != (self.rows, self.cols):
            raise PreconditionError(f"Warped image shape {warped.shape} != {(self.rows, self.cols)}")
        self.volume[:, :, plane_index] += warped.astype(np.float32, copy=False)
        self._unextracted = True

    def mark_batch(self) -> None:
        """Record that one event image has been folded in across the planes."""
        self.num_batches += 1

    def _argmax(self) -> tuple[np.ndarray, np.ndarray]:
        best = np.argmax(self.volume, axis=2)
        score = np.take_along_axis(self.volume, best[:, :, None], axis=2)[:, :, 0]
        return best, score

    def depth_map(self) -> np.ndarray:
        """(rows, cols) winning depth per pixel, NaN where filtered out."""
        best, score = self._argmax()
        keep = (score >= self.confidence_floor) & (score > 0.0)
        depth = np.full((self.rows, self.cols), np.nan, np.float64)
        depth[keep] = self.plane_depths[best[keep]]
        return depth

    def extract_points(self) -> DsiPoints:
        best, score = self._argmax()
        keep = (score >= self.confidence_floor) & (score > 0.0)
        self._unextracted = False
        if not np.any(keep):
            return DsiPoints.empty()

        rr, cc = np.nonzero(keep)
        idx = best[rr, cc].astype(np.int64)
        depth = self.plane_depths[idx]
        pix_h = np.stack([cc, rr, np.ones_like(rr)], axis=0).astype(np.float64)  # 3xM
        rays = self.K_inv @ pix_h
        X = (rays * depth[None, :]).T
        return DsiPoints(
            points=X,
            pixels=np.stack([rr, cc], axis=1).astype(np.int64),
            plane_idx=idx,
            scores=score[rr, cc].astype(np.float32),
        )

    def reset(self, *, discard: bool = False) -> None:
        """
        Zero the volume. Refuses to drop evidence that was never extracted
        unless discard=True. Resetting an already-zero volume is a no-op.
        """
        if self._unextracted and not discard:
            raise StateError("DSI reset before extraction would discard accumulated evidence")
        self.volume.fill(0.0)
        self.num_batches = 0
        self._unextracted = False
