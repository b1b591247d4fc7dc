class Telemetry:
    def __init__(self):
        self.frames = []
        self.keyframes = []

    def log_frame(self, idx: int, rec: dict):
        rec["pose_idx"] = idx
        self.frames.append(rec)

    def log_keyframe(self, kf_idx: int, rec: dict):
        rec["kf_idx"] = kf_idx
        self.keyframes.append(rec)
