# src/emvs/modules/plane_sweep.py
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Iterator

import numpy as np

from ..errors import GeometryError, PreconditionError
from ..geom.ops import ImageWarp, Linalg

# Keyframe optical axis, pointing back towards the camera (plane: n^T X = -d)
PLANE_NORMAL = np.array([0.0, 0.0, -1.0], dtype=np.float64)


def make_plane_depths(min_depth: float, max_depth: float, n_planes: int, spacing: str = "inverse") -> np.ndarray:
    """
    Depth hypotheses, increasing with index.

    spacing="inverse" samples uniformly in 1/depth (denser close to the camera),
    spacing="linear" samples uniformly in depth.
    """
    if not (0.0 < min_depth < max_depth):
        raise PreconditionError(f"Need 0 < min_depth < max_depth, got {min_depth}, {max_depth}")
    if n_planes < 2:
        raise PreconditionError(f"Need at least 2 depth planes, got {n_planes}")
    if spacing == "linear":
        return np.linspace(min_depth, max_depth, int(n_planes), dtype=np.float64)
    if spacing == "inverse":
        inv = np.linspace(1.0 / min_depth, 1.0 / max_depth, int(n_planes), dtype=np.float64)
        return 1.0 / inv
    raise PreconditionError(f"Unknown depth spacing '{spacing}'")


def plane_homography(
    R: np.ndarray,
    t: np.ndarray,
    K: np.ndarray,
    depth: float,
    normal: np.ndarray = PLANE_NORMAL,
    *,
    linalg: Linalg | None = None,
) -> np.ndarray:
    """
    Plane-induced homography H = K (R + R t n^T / d) K^-1.

    Gallup et al., "Real-time plane-sweeping stereo with multiple sweeping
    directions", CVPR 2007.

    Raises:
        PreconditionError: depth <= 0, non-finite inputs, or singular K.
    """
    if not np.isfinite(depth) or depth <= 0.0:
        raise PreconditionError(f"Plane depth must be > 0, got {depth}")
    R = np.asarray(R, dtype=np.float64).reshape(3, 3)
    t = np.asarray(t, dtype=np.float64).reshape(3, 1)
    n = np.asarray(normal, dtype=np.float64).reshape(3, 1)
    if not (np.all(np.isfinite(R)) and np.all(np.isfinite(t))):
        raise PreconditionError("Relative transform has non-finite entries")

    la = linalg or Linalg()
    try:
        K_inv = la.inv(K)
    except GeometryError as ex:
        raise PreconditionError(f"Intrinsic matrix is singular: {ex}") from ex

    K64 = np.asarray(K, dtype=np.float64)
    return K64 @ (R + (R @ t @ n.T) / float(depth)) @ K_inv


class PlaneSweepWarper:
    """
    Warps a rectified event image from the current view onto the keyframe
    image plane, once per depth hypothesis.

    For T_kf_cur (current camera -> keyframe) the homography is built from
    R = R_kf_cur^T and t = t_kf_cur (the current camera centre in keyframe
    coordinates). H then maps keyframe pixels to current pixels, and its
    inverse is the forward warp current -> keyframe.
    """

    def __init__(
        self,
        K: np.ndarray,
        plane_depths: np.ndarray,
        size_rc: tuple[int, int],
        *,
        workers: int = 0,
        linalg: Linalg | None = None,
        image_warp: ImageWarp | None = None,
        verbose: bool = True,
    ):
        self.K = np.asarray(K, dtype=np.float64)
        self.linalg = linalg or Linalg()
        self.image_warp = image_warp or ImageWarp()
        try:
            self.linalg.inv(self.K)
        except GeometryError as ex:
            raise PreconditionError(f"Intrinsic matrix is singular: {ex}") from ex
        self.plane_depths = np.asarray(plane_depths, dtype=np.float64)
        if np.any(self.plane_depths <= 0.0):
            raise PreconditionError("All plane depths must be > 0")
        self.size_rc = (int(size_rc[0]), int(size_rc[1]))
        self.workers = int(workers)
        self.verbose = verbose
        self._pool = ThreadPoolExecutor(max_workers=self.workers) if self.workers > 1 else None
        self.skipped: list[int] = []  # planes skipped during the last warp_all

    @property
    def n_planes(self) -> int:
        return int(self.plane_depths.shape[0])

    def homographies(self, T_kf_cur: np.ndarray) -> list[np.ndarray]:
        R = T_kf_cur[:3, :3].T
        t = T_kf_cur[:3, 3]
        return [plane_homography(R, t, self.K, d, linalg=self.linalg) for d in self.plane_depths]

    def warp_plane(self, image: np.ndarray, H: np.ndarray) -> np.ndarray:
        H_cur_to_kf = self.linalg.inv(H)
        warped = self.image_warp.warp(image, H_cur_to_kf, self.size_rc)
        if warped is None or warped.shape != self.size_rc:
            raise GeometryError(f"Warp returned unexpected output for size {self.size_rc}")
        return warped

    def _try_warp(self, i: int, image: np.ndarray, H: np.ndarray) -> tuple[int, np.ndarray | None, str]:
        try:
            return i, self.warp_plane(image, H), ""
        except GeometryError as ex:
            return i, None, str(ex)

    def warp_all(self, image: np.ndarray, T_kf_cur: np.ndarray) -> Iterator[tuple[int, np.ndarray]]:
        """
        Yields (plane_index, warped_image) in plane order. Planes whose
        homography cannot be inverted or warped are skipped and listed in
        self.skipped.
        """
        img = np.asarray(image, dtype=np.float32)
        if img.shape != self.size_rc:
            raise PreconditionError(f"Event image shape {img.shape} != sensor size {self.size_rc}")
        Hs = self.homographies(np.asarray(T_kf_cur, dtype=np.float64))
        self.skipped = []

        if self._pool is not None:
            results = list(self._pool.map(lambda a: self._try_warp(a[0], img, a[1]), enumerate(Hs)))
        else:
            results = (self._try_warp(i, img, H) for i, H in enumerate(Hs))

        for i, warped, err in results:
            if warped is None:
                self.skipped.append(i)
                if self.verbose:
                    print(f"[WARN] plane {i} (depth {self.plane_depths[i]:.3f}) skipped: {err}")
                continue
            yield i, warped

    def close(self) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=True)
            self._pool = None
