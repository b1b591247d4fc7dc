# src/emvs/modules/accumulator.py
from __future__ import annotations

import numpy as np

from ..errors import PreconditionError

COUNTER_MAX = 255  # uint8 event image
COUNTER_POLICIES = ("saturate", "wrap")


class EventAccumulator:
    """
    Per-pixel event counts for the window since the last pose update.

    Counts are uint8. With counter_policy="wrap" a pixel that receives more than
    255 events rolls over to 0; with "saturate" it stays at 255.
    Events outside the sensor are dropped and counted in `num_dropped`.
    """

    def __init__(self, rows: int, cols: int, *, counter_policy: str = "saturate"):
        if rows <= 0 or cols <= 0:
            raise PreconditionError(f"Invalid sensor size: {rows}x{cols}")
        if counter_policy not in COUNTER_POLICIES:
            raise PreconditionError(f"Unknown counter_policy '{counter_policy}', expected one of {COUNTER_POLICIES}")
        self.rows = int(rows)
        self.cols = int(cols)
        self.counter_policy = counter_policy
        self._image = np.zeros((self.rows, self.cols), np.uint8)
        self.num_events = 0
        self.num_dropped = 0

    @property
    def shape(self) -> tuple[int, int]:
        return self.rows, self.cols

    def add_event(self, row: int, col: int) -> None:
        self.add_events(np.array([row]), np.array([col]))

    def add_events(self, rows: np.ndarray, cols: np.ndarray) -> None:
        r = np.asarray(rows).reshape(-1)
        c = np.asarray(cols).reshape(-1)
        if r.shape != c.shape:
            raise PreconditionError(f"rows/cols length mismatch: {r.shape} vs {c.shape}")
        if r.size == 0:
            return

        r = r.astype(np.int64)
        c = c.astype(np.int64)
        inside = (r >= 0) & (r < self.rows) & (c >= 0) & (c < self.cols)
        self.num_dropped += int(r.size - inside.sum())
        r, c = r[inside], c[inside]
        if r.size == 0:
            return

        # accumulate in a wide type, then fold back to uint8 per policy
        counts = self._image.astype(np.int64)
        np.add.at(counts, (r, c), 1)
        if self.counter_policy == "saturate":
            np.minimum(counts, COUNTER_MAX, out=counts)
        else:
            counts %= COUNTER_MAX + 1
        self._image = counts.astype(np.uint8)
        self.num_events += int(r.size)

    def has_events(self) -> bool:
        return bool(np.any(self._image))

    def peek(self) -> np.ndarray:
        return self._image.copy()

    def drain_and_reset(self) -> np.ndarray:
        img = self._image
        self._image = np.zeros((self.rows, self.cols), np.uint8)
        self.num_events = 0
        return img
