# src/emvs/modules/map_fuser.py
from __future__ import annotations

from pathlib import Path
from typing import Callable

import numpy as np

from ..geom.ops import RigidTransform
from ..system.state import Pose


class WorldMap:
    """Append-only world-frame point set. Never pruned or deduplicated."""

    def __init__(self):
        self._chunks: list[np.ndarray] = []
        self._n = 0

    def __len__(self) -> int:
        return self._n

    def append(self, X_w: np.ndarray) -> None:
        X_w = np.asarray(X_w, dtype=np.float64).reshape(-1, 3)
        if X_w.shape[0] == 0:
            return
        self._chunks.append(X_w.copy())
        self._n += X_w.shape[0]

    @property
    def points(self) -> np.ndarray:
        if not self._chunks:
            return np.zeros((0, 3), np.float64)
        if len(self._chunks) > 1:
            self._chunks = [np.concatenate(self._chunks, axis=0)]
        return self._chunks[0]

    def save_ply(self, path: str | Path) -> None:
        X = self.points
        with open(path, "w", encoding="utf-8") as f:
            f.write("ply\nformat ascii 1.0\n")
            f.write(f"element vertex {X.shape[0]}\n")
            f.write("property float x\nproperty float y\nproperty float z\nend_header\n")
            for x, y, z in X:
                f.write(f"{x:.6f} {y:.6f} {z:.6f}\n")


Publisher = Callable[[WorldMap], None]


class MapFuser:
    def __init__(
        self,
        world_map: WorldMap | None = None,
        *,
        publisher: Publisher | None = None,
        rigid: RigidTransform | None = None,
    ):
        self.world_map = world_map if world_map is not None else WorldMap()
        self.publisher = publisher
        self.rigid = rigid or RigidTransform()

    def fuse(self, points_kf: np.ndarray, keyframe_pose: Pose, *, publish: bool = True) -> int:
        """
        Move keyframe-frame points to the world frame and append them.

        keyframe_pose gives T_w_kf; points are mapped with the inverse of the
        world -> keyframe transform T_kf_w.
        With publish=False the caller is expected to call publish() itself.
        Returns the number of points appended (always len(points_kf)).
        """
        X_kf = np.asarray(points_kf, dtype=np.float64).reshape(-1, 3)
        T_kf_w = self.rigid.inverse(keyframe_pose.T_w_c)
        X_w = self.rigid.apply(self.rigid.inverse(T_kf_w), X_kf)
        self.world_map.append(X_w)
        if publish:
            self.publish()
        return int(X_kf.shape[0])

    def publish(self) -> None:
        if self.publisher is not None:
            self.publisher(self.world_map)
