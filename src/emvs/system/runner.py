# src/emvs/system/runner.py
from __future__ import annotations

import threading

import numpy as np

from ..errors import PoseError
from ..modules.accumulator import EventAccumulator
from ..modules.dsi import DisparitySpaceVolume, DsiPoints
from ..modules.map_fuser import MapFuser, Publisher, WorldMap
from ..modules.plane_sweep import PlaneSweepWarper, make_plane_depths
from ..modules.rectify import Rectifier
from .keyframe import KeyframeManager
from .state import Pose, SessionState
from .telemetry import Telemetry


def camera_from_config(cfg: dict) -> tuple[np.ndarray, np.ndarray]:
    cam = cfg["camera"]
    fx = float(cam["fx"])
    fy = float(cam["fy"])
    cx = float(cam["cx"])
    cy = float(cam["cy"])
    K = np.array([[fx, 0.0, cx], [0.0, fy, cy], [0.0, 0.0, 1.0]], dtype=np.float64)
    D = np.asarray(cam.get("dist", [0.0, 0.0, 0.0, 0.0, 0.0]), dtype=np.float64)
    return K, D


class ReconstructionSession:
    """
    Owns the accumulator, DSI, keyframe state and world map for one run.

    on_events / on_pose may be called from different host threads; every call
    into the session is serialised by one lock, and a keyframe transition
    (extract -> fuse -> reset -> adopt) runs to completion under it.

    Conventions:
      - Pose gives T_w_c (camera -> world)
      - T_a_b maps points from b to a; the warp uses T_kf_cur
    """

    def __init__(
        self,
        K: np.ndarray,
        D: np.ndarray | None,
        rows: int,
        cols: int,
        plane_depths: np.ndarray,
        *,
        drift_threshold: float = 0.2,
        rotation_weight: float = 0.1,
        drift_metric: str = "legacy",
        quat_tolerance: float = 1e-3,
        confidence_floor: float = 1.0,
        counter_policy: str = "saturate",
        workers: int = 0,
        publisher: Publisher | None = None,
        telemetry: Telemetry | None = None,
        verbose: bool = False,
    ):
        self.K = np.asarray(K, dtype=np.float64)
        self.verbose = verbose
        self.state = SessionState()
        self.telemetry = telemetry if telemetry is not None else Telemetry()

        self.accumulator = EventAccumulator(rows, cols, counter_policy=counter_policy)
        self.rectifier = Rectifier(self.K, D)
        self.warper = PlaneSweepWarper(self.K, plane_depths, (rows, cols), workers=workers)
        self.dsi = DisparitySpaceVolume(rows, cols, plane_depths, self.K, confidence_floor=confidence_floor)
        self.keyframes = KeyframeManager(
            self.state,
            drift_threshold=drift_threshold,
            rotation_weight=rotation_weight,
            drift_metric=drift_metric,
            quat_tolerance=quat_tolerance,
        )
        self.fuser = MapFuser(WorldMap(), publisher=publisher)
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, cfg: dict, *, publisher: Publisher | None = None,
                    telemetry: Telemetry | None = None, verbose: bool = False) -> "ReconstructionSession":
        K, D = camera_from_config(cfg)
        rows = int(cfg["sensor"]["rows"])
        cols = int(cfg["sensor"]["cols"])
        dsi_cfg = cfg.get("dsi", {})
        kf_cfg = cfg.get("keyframe", {})
        ev_cfg = cfg.get("events", {})
        depths = make_plane_depths(
            float(dsi_cfg.get("min_depth", 0.5)),
            float(dsi_cfg.get("max_depth", 5.0)),
            int(dsi_cfg.get("n_planes", 100)),
            str(dsi_cfg.get("spacing", "inverse")),
        )
        return cls(
            K, D, rows, cols, depths,
            drift_threshold=float(kf_cfg.get("drift_threshold", 0.2)),
            rotation_weight=float(kf_cfg.get("rotation_weight", 0.1)),
            drift_metric=str(kf_cfg.get("drift_metric", "legacy")),
            quat_tolerance=float(kf_cfg.get("quat_tolerance", 1e-3)),
            confidence_floor=float(dsi_cfg.get("confidence_floor", 1.0)),
            counter_policy=str(ev_cfg.get("counter_policy", "saturate")),
            workers=int(dsi_cfg.get("workers", 0)),
            publisher=publisher,
            telemetry=telemetry,
            verbose=verbose,
        )

    @property
    def world_map(self) -> WorldMap:
        return self.fuser.world_map

    def on_events(self, rows: np.ndarray, cols: np.ndarray) -> None:
        """Event batch callback. Polarity and timestamps are not needed here."""
        with self._lock:
            self.accumulator.add_events(rows, cols)

    def on_pose(self, pose: Pose) -> str:
        """
        Pose callback. Returns the action taken: "bootstrap", "transition",
        "accumulate" or "idle" (nothing to warp).

        Raises:
            PoseError: the pose is malformed; nothing in the session changes.
            StateError: a previous transition did not complete.
        """
        with self._lock:
            idx = self.state.num_poses
            try:
                decision = self.keyframes.observe(pose)
            except PoseError as ex:
                self.telemetry.log_frame(idx, {"ts": float(pose.ts), "action": "rejected", "reason": str(ex)})
                raise
            self.state.num_poses += 1

            rec = {"ts": float(pose.ts), "drift": decision.drift, "reason": decision.reason}

            if decision.action == "transition":
                n_points = self._close_keyframe(pose)
                rec.update({"action": "transition", "num_points": n_points, "kf_idx": self.state.keyframe.idx})
                self.telemetry.log_frame(idx, rec)
                # state is committed; a failing publisher cannot cause a re-fuse
                self.fuser.publish()
                return "transition"

            if not self.accumulator.has_events():
                rec["action"] = "bootstrap" if decision.action == "bootstrap" else "idle"
                self.telemetry.log_frame(idx, rec)
                return rec["action"]

            num_events = self.accumulator.num_events
            skipped = self._fold_events()
            rec.update({
                "action": decision.action,
                "num_events": int(num_events),
                "skipped_planes": skipped,
            })
            self.telemetry.log_frame(idx, rec)
            return decision.action

    def _fold_events(self) -> list[int]:
        events = self.rectifier(self.accumulator.drain_and_reset())
        T_kf_cur = self.keyframes.T_kf_cur()
        folded = 0
        for i, warped in self.warper.warp_all(events, T_kf_cur):
            self.dsi.accumulate(i, warped)
            folded += 1
        if folded > 0:
            self.dsi.mark_batch()
            self.keyframes.note_batch()
        return list(self.warper.skipped)

    def _fuse_keyframe(self) -> int:
        """
        Extract and fuse the active keyframe without publishing. The DSI is
        reset even if extraction or fusion raises, so the same evidence can
        never reach the map twice.
        """
        kf = self.state.keyframe
        try:
            pts = self.dsi.extract_points()
            n = self.fuser.fuse(pts.points, kf.pose, publish=False)
        finally:
            self.dsi.reset(discard=True)
        self.telemetry.log_keyframe(kf.idx, {
            "ts": float(kf.pose.ts),
            "batches": int(kf.batches),
            "num_points": n,
            "map_size": len(self.world_map),
        })
        if self.verbose:
            print(f"[KF] keyframe {kf.idx} closed: {n} points, map size {len(self.world_map)}")
        return n

    def _close_keyframe(self, pose: Pose) -> int:
        self.keyframes.begin_transition()
        try:
            n = self._fuse_keyframe()
        finally:
            self.keyframes.adopt(pose)
        return n

    def extract(self) -> DsiPoints:
        """Current keyframe's points without closing it."""
        with self._lock:
            return self.dsi.extract_points()

    def flush(self) -> int:
        """Close the active keyframe at end of stream, if it holds evidence."""
        with self._lock:
            kf = self.state.keyframe
            if kf is None or kf.batches == 0:
                return 0
            self.keyframes.begin_transition()
            try:
                n = self._fuse_keyframe()
            finally:
                kf.batches = 0
                self.keyframes.resume()
            # state is committed; a failing publisher cannot cause a re-fuse
            self.fuser.publish()
            return n

    def close(self) -> None:
        self.warper.close()
