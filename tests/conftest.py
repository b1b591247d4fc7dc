import numpy as np
import pytest

from emvs.system.state import Pose


@pytest.fixture
def K():
    return np.array([[100.0, 0.0, 50.0], [0.0, 100.0, 50.0], [0.0, 0.0, 1.0]])


@pytest.fixture
def depths():
    return np.array([1.0, 2.0, 3.0, 4.0, 5.0])


@pytest.fixture
def pose_at():
    def _pose(x=0.0, y=0.0, z=0.0, q=(0.0, 0.0, 0.0, 1.0), ts=0.0):
        return Pose.from_values(x, y, z, *q, ts=ts)
    return _pose
