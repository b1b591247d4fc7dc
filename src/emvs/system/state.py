from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from ..errors import PoseError
from ..geom.se3 import pose_to_T

@dataclass(frozen=True, eq=False)
class Pose:
    position: np.ndarray  # (3,) world
    quat_xyzw: np.ndarray  # (4,) camera -> world orientation
    ts: float = 0.0

    @staticmethod
    def from_values(px, py, pz, qx, qy, qz, qw, ts: float = 0.0) -> "Pose":
        return Pose(
            np.array([px, py, pz], dtype=np.float64),
            np.array([qx, qy, qz, qw], dtype=np.float64),
            float(ts),
        )

    def validate(self, quat_tolerance: float = 1e-3) -> None:
        p = np.asarray(self.position, dtype=np.float64)
        q = np.asarray(self.quat_xyzw, dtype=np.float64)
        if p.shape != (3,) or q.shape != (4,):
            raise PoseError(f"Pose needs a (3,) position and (4,) quaternion, got {p.shape}, {q.shape}")
        if not (np.all(np.isfinite(p)) and np.all(np.isfinite(q))):
            raise PoseError(f"Pose has non-finite components (ts={self.ts})")
        qn = float(np.linalg.norm(q))
        if abs(qn - 1.0) > quat_tolerance:
            raise PoseError(f"Pose quaternion is not unit (|q|={qn:.6f}, ts={self.ts})")

    @property
    def T_w_c(self) -> np.ndarray:
        """Camera -> world."""
        return pose_to_T(self.position, self.quat_xyzw)

@dataclass
class Keyframe:
    pose: Pose
    idx: int = 0
    batches: int = 0  # event images folded into the DSI since adoption

@dataclass
class SessionState:
    keyframe: Keyframe | None = None
    last_observed_pose: Pose | None = None
    num_keyframes: int = 0
    num_poses: int = 0
