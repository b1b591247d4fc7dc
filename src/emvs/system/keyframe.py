# src/emvs/system/keyframe.py
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable

import numpy as np

from ..errors import PreconditionError, StateError
from ..geom.se3 import relative_T
from .state import Keyframe, Pose, SessionState


def drift_legacy(kf: Pose, cur: Pose, rotation_weight: float = 0.1) -> float:
    """|dp| + w * |dq| with a plain component-wise quaternion difference."""
    dp = np.linalg.norm(cur.position - kf.position)
    dq = np.linalg.norm(cur.quat_xyzw - kf.quat_xyzw)
    return float(dp + rotation_weight * dq)


def drift_geodesic(kf: Pose, cur: Pose, rotation_weight: float = 0.1) -> float:
    """|dp| + w * angle between the two orientations (radians)."""
    dp = np.linalg.norm(cur.position - kf.position)
    dot = abs(float(np.dot(cur.quat_xyzw, kf.quat_xyzw)))
    angle = 2.0 * np.arccos(min(1.0, dot))
    return float(dp + rotation_weight * angle)


DRIFT_METRICS: dict[str, Callable[[Pose, Pose, float], float]] = {
    "legacy": drift_legacy,
    "geodesic": drift_geodesic,
}


class KfState(Enum):
    ACCUMULATING = "accumulating"
    TRANSITIONING = "transitioning"


@dataclass
class KeyframeDecision:
    action: str  # "bootstrap" | "transition" | "accumulate"
    drift: float
    reason: str = ""


class KeyframeManager:
    def __init__(
        self,
        state: SessionState,
        *,
        drift_threshold: float = 0.2,
        rotation_weight: float = 0.1,
        drift_metric: str = "legacy",
        quat_tolerance: float = 1e-3,
    ):
        if drift_metric not in DRIFT_METRICS:
            raise PreconditionError(f"Unknown drift_metric '{drift_metric}', expected one of {list(DRIFT_METRICS)}")
        self.state = state
        self.drift_threshold = float(drift_threshold)
        self.rotation_weight = float(rotation_weight)
        self.drift_metric = drift_metric
        self.quat_tolerance = float(quat_tolerance)
        self.mode = KfState.ACCUMULATING

    @property
    def active_keyframe_pose(self) -> Pose | None:
        return None if self.state.keyframe is None else self.state.keyframe.pose

    @property
    def last_observed_pose(self) -> Pose | None:
        return self.state.last_observed_pose

    def drift(self, pose: Pose) -> float:
        kf = self.active_keyframe_pose
        if kf is None:
            return 0.0
        return DRIFT_METRICS[self.drift_metric](kf, pose, self.rotation_weight)

    def observe(self, pose: Pose) -> KeyframeDecision:
        """
        Decide what an incoming pose means for the active keyframe.

        Raises PoseError (state untouched) for NaN or non-unit poses, and
        StateError while a keyframe transition has not completed.
        """
        if self.in_transition:
            raise StateError("Keyframe transition in progress; pose not accepted")
        pose.validate(self.quat_tolerance)

        if self.state.keyframe is None:
            self.state.last_observed_pose = pose
            self.adopt(pose)
            return KeyframeDecision("bootstrap", 0.0, "FIRST_POSE")

        d = self.drift(pose)
        self.state.last_observed_pose = pose

        if d > self.drift_threshold:
            if self.state.keyframe.batches > 0:
                return KeyframeDecision("transition", d, "DRIFT_OVER_THRESHOLD")
            return KeyframeDecision("accumulate", d, "DRIFT_OVER_THRESHOLD_EMPTY_DSI")
        return KeyframeDecision("accumulate", d, "DRIFT_UNDER_THRESHOLD")

    @property
    def in_transition(self) -> bool:
        return self.mode is KfState.TRANSITIONING

    def begin_transition(self) -> None:
        self.mode = KfState.TRANSITIONING

    def resume(self) -> None:
        self.mode = KfState.ACCUMULATING

    def adopt(self, pose: Pose) -> Keyframe:
        idx = self.state.num_keyframes
        self.state.keyframe = Keyframe(pose=pose, idx=idx)
        self.state.num_keyframes += 1
        self.mode = KfState.ACCUMULATING
        return self.state.keyframe

    def note_batch(self) -> None:
        if self.state.keyframe is not None:
            self.state.keyframe.batches += 1

    def T_kf_cur(self) -> np.ndarray:
        """Relative transform from the last observed camera to the keyframe."""
        kf = self.active_keyframe_pose
        cur = self.last_observed_pose
        if kf is None or cur is None:
            raise StateError("No keyframe/observed pose yet")
        return relative_T(kf.T_w_c, cur.T_w_c)
