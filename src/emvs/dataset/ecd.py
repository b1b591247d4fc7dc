from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Iterator, List, Tuple

import numpy as np

from ..system.state import Pose


@dataclass
class EcdCalib:
    K: np.ndarray
    D: np.ndarray


def _read_table(path: str, min_cols: int) -> np.ndarray:
    rows: List[List[float]] = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if (not line) or line.startswith("#"):
                continue
            parts = line.split()
            if len(parts) < min_cols:
                continue
            rows.append([float(v) for v in parts[:min_cols]])
    return np.asarray(rows, dtype=np.float64).reshape(-1, min_cols)


def read_calib(path: str) -> EcdCalib:
    # fx fy cx cy k1 k2 p1 p2 k3
    with open(path, "r", encoding="utf-8") as f:
        parts = f.read().split()
    if len(parts) < 4:
        raise ValueError(f"Calibration file needs at least fx fy cx cy: {path}")
    nums = [float(v) for v in parts]
    fx, fy, cx, cy = nums[:4]
    K = np.array([[fx, 0.0, cx], [0.0, fy, cy], [0.0, 0.0, 1.0]], dtype=np.float64)
    D = np.zeros(5, np.float64)
    dist = nums[4:9]
    D[: len(dist)] = dist
    return EcdCalib(K=K, D=D)


class EcdSequence:
    """
    Event Camera Dataset layout:
      events.txt       t x y polarity
      groundtruth.txt  t px py pz qx qy qz qw
      calib.txt        fx fy cx cy [k1 k2 p1 p2 k3]
    """

    def __init__(self, seq_dir: str):
        self.seq_dir = seq_dir
        ev_txt = os.path.join(seq_dir, "events.txt")
        gt_txt = os.path.join(seq_dir, "groundtruth.txt")
        for p in (ev_txt, gt_txt):
            if not os.path.isfile(p):
                raise FileNotFoundError(f"Missing {os.path.basename(p)}: {p}")
        self.events = _read_table(ev_txt, 4)  # (N,4) t x y p
        self.poses = _read_table(gt_txt, 8)   # (M,8)
        calib_txt = os.path.join(seq_dir, "calib.txt")
        self.calib = read_calib(calib_txt) if os.path.isfile(calib_txt) else None

    def __len__(self) -> int:
        return int(self.poses.shape[0])

    def iter_stream(
        self,
        *,
        start: int = 0,
        max_poses: int | None = None,
    ) -> Iterator[Tuple[int, np.ndarray, Pose]]:
        """
        Yields (idx, events_before_pose, pose) in timestamp order, where
        events_before_pose is an (K,3) array of (row, col, t) for all events
        since the previous pose.
        """
        end = len(self) if max_poses is None else min(len(self), start + max_poses)
        ev_t = self.events[:, 0]
        prev_t = -np.inf if start == 0 else self.poses[start - 1, 0]
        idx = 0
        for i in range(start, end):
            row = self.poses[i]
            t = row[0]
            lo = np.searchsorted(ev_t, prev_t, side="right")
            hi = np.searchsorted(ev_t, t, side="right")
            ev = self.events[lo:hi]
            batch = np.stack([ev[:, 2], ev[:, 1], ev[:, 0]], axis=1) if ev.shape[0] else np.zeros((0, 3))
            yield idx, batch, Pose.from_values(*row[1:8], ts=float(t))
            prev_t = t
            idx += 1
