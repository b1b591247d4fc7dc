from __future__ import annotations

import argparse
import json
from pathlib import Path

import numpy as np
import matplotlib.pyplot as plt

try:
    import yaml
except ImportError as ex:
    raise ImportError("PyYAML is required. Install with: pip install pyyaml") from ex

from emvs.dataset.ecd import EcdSequence
from emvs.errors import PoseError
from emvs.modules.map_fuser import WorldMap
from emvs.system.runner import ReconstructionSession
from emvs.system.telemetry import Telemetry


class MapVisualizer:
    def __init__(self, max_points: int = 20000):
        plt.ion()
        self.max_points = max_points
        self.fig = plt.figure(figsize=(12, 5))
        self.ax1 = self.fig.add_subplot(121, projection='3d')
        self.ax2 = self.fig.add_subplot(122)
        self.kf_positions: list[np.ndarray] = []

    def _subsample(self, X: np.ndarray) -> np.ndarray:
        if X.shape[0] <= self.max_points:
            return X
        step = int(np.ceil(X.shape[0] / self.max_points))
        return X[::step]

    def update(self, world_map: WorldMap):
        X = self._subsample(world_map.points)
        if X.shape[0] == 0:
            return

        self.ax1.clear()
        self.ax1.set_xlabel('X (m)')
        self.ax1.set_ylabel('Y (m)')
        self.ax1.set_zlabel('Z (m)')
        self.ax1.set_title(f'Map ({len(world_map)} points)')
        self.ax1.scatter(X[:, 0], X[:, 1], X[:, 2], c=X[:, 2], s=1, cmap='viridis')
        if self.kf_positions:
            P = np.array(self.kf_positions)
            self.ax1.plot(P[:, 0], P[:, 1], P[:, 2], 'r-o', markersize=3, label='Keyframes')
            self.ax1.legend()

        self.ax2.clear()
        self.ax2.set_xlabel('X (m)')
        self.ax2.set_ylabel('Y (m)')
        self.ax2.set_title('Top-Down View (X-Y)')
        self.ax2.scatter(X[:, 0], X[:, 1], s=1, c='b', alpha=0.3)
        self.ax2.grid(True)
        self.ax2.axis('equal')

        plt.pause(0.001)

    def close(self):
        plt.ioff()
        plt.show()


def main() -> None:
    ap = argparse.ArgumentParser()
    ap.add_argument("--config", type=str, default="configs/default.yaml")
    ap.add_argument("--data_dir", type=str, required=True, help="Path to an ECD sequence dir, e.g. .../slider_depth")
    ap.add_argument("--out_dir", type=str, default="outputs")
    ap.add_argument("--visualize", action="store_true", help="Show the map after every fused keyframe")
    ap.add_argument("--log_every", type=int, default=200, help="Log progress every N poses")
    ap.add_argument("--verbose", action="store_true")
    args = ap.parse_args()

    print(f"[INFO] Loading config: {args.config}")
    with open(args.config, "r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f)

    seq_name = cfg["dataset"].get("sequence", Path(args.data_dir).name)
    out_dir = Path(args.out_dir) / seq_name
    out_dir.mkdir(parents=True, exist_ok=True)
    print(f"[INFO] Output dir: {out_dir}")

    print(f"[INFO] Loading ECD sequence: {args.data_dir}")
    seq = EcdSequence(args.data_dir)
    print(f"[INFO] Sequence poses: {len(seq)}, events: {seq.events.shape[0]}")

    # calib.txt from the sequence overrides the camera section
    if seq.calib is not None and cfg["camera"].get("from_dataset", True):
        K, D = seq.calib.K, seq.calib.D
        cfg["camera"].update({
            "fx": float(K[0, 0]), "fy": float(K[1, 1]), "cx": float(K[0, 2]), "cy": float(K[1, 2]),
            "dist": [float(v) for v in D],
        })

    visualizer = MapVisualizer() if args.visualize else None
    telemetry = Telemetry()
    session = ReconstructionSession.from_config(
        cfg,
        publisher=visualizer.update if visualizer is not None else None,
        telemetry=telemetry,
        verbose=args.verbose,
    )

    start = int(cfg["dataset"].get("start", 0))
    max_poses = cfg["dataset"].get("max_poses", None)
    if max_poses is not None:
        max_poses = int(max_poses)

    n_rejected = 0
    print(f"[INFO] Starting loop: start={start} max_poses={max_poses}")
    for idx, events, pose in seq.iter_stream(start=start, max_poses=max_poses):
        if events.shape[0]:
            session.on_events(events[:, 0], events[:, 1])
        try:
            action = session.on_pose(pose)
        except PoseError as ex:
            n_rejected += 1
            print(f"[WARN] pose {idx} rejected: {ex}")
            continue

        if action == "transition" and visualizer is not None:
            visualizer.kf_positions.append(pose.position.copy())

        if args.log_every > 0 and ((idx + 1) % args.log_every == 0):
            print(f"[INFO] Pose {idx + 1} / {max_poses if max_poses else len(seq)}  "
                  f"keyframes={session.state.num_keyframes} map={len(session.world_map)}")

    session.flush()
    session.close()
    if session.accumulator.num_dropped:
        print(f"[WARN] dropped {session.accumulator.num_dropped} out-of-sensor events")
    if n_rejected:
        print(f"[WARN] rejected {n_rejected} malformed poses")

    map_path = out_dir / "map.ply"
    metrics_path = out_dir / "telemetry.json"
    cfg_path = out_dir / "config_used.yaml"

    session.world_map.save_ply(map_path)

    with open(metrics_path, "w", encoding="utf-8") as f:
        json.dump({"poses": telemetry.frames, "keyframes": telemetry.keyframes}, f, indent=2)

    with open(cfg_path, "w", encoding="utf-8") as f:
        yaml.safe_dump(cfg, f, sort_keys=False)

    print(f"[OK] wrote: {map_path} ({len(session.world_map)} points)")
    print(f"[OK] wrote: {metrics_path}")

    if visualizer is not None:
        print("[INFO] Showing final map. Close the window to exit.")
        visualizer.update(session.world_map)
        visualizer.close()


if __name__ == "__main__":
    main()
