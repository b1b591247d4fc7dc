import numpy as np
import pytest

from emvs.errors import GeometryError, PreconditionError
from emvs.geom.ops import ImageWarp
from emvs.geom.se3 import Rt_to_T
from emvs.modules.plane_sweep import PlaneSweepWarper, make_plane_depths, plane_homography


def _blob(rows=100, cols=100, r0=50, c0=50, sigma=4.0, peak=10.0):
    rr, cc = np.mgrid[0:rows, 0:cols]
    return (peak * np.exp(-((rr - r0) ** 2 + (cc - c0) ** 2) / (2 * sigma ** 2))).astype(np.float32)


@pytest.mark.parametrize("d", [0.3, 1.0, 7.5])
def test_no_motion_homography_is_identity(K, d):
    H = plane_homography(np.eye(3), np.zeros(3), K, d)
    assert np.allclose(H, np.eye(3))


def test_lateral_motion_shifts_columns(K):
    # camera centre 0.04 m to the right of the keyframe, plane at 2 m -> 2 px
    H = plane_homography(np.eye(3), np.array([0.04, 0.0, 0.0]), K, 2.0)
    x = H @ np.array([50.0, 50.0, 1.0])
    assert np.allclose(x[:2] / x[2], [48.0, 50.0])


def test_non_positive_depth_fails_fast(K):
    with pytest.raises(PreconditionError):
        plane_homography(np.eye(3), np.zeros(3), K, 0.0)
    with pytest.raises(PreconditionError):
        plane_homography(np.eye(3), np.zeros(3), K, -1.0)


def test_singular_intrinsics_fail_fast(depths):
    K_bad = np.zeros((3, 3))
    with pytest.raises(PreconditionError):
        plane_homography(np.eye(3), np.zeros(3), K_bad, 1.0)
    with pytest.raises(PreconditionError):
        PlaneSweepWarper(K_bad, depths, (100, 100))


def test_warp_round_trip(K, depths):
    warper = PlaneSweepWarper(K, depths, (100, 100))
    img = _blob()
    H = plane_homography(np.eye(3), np.array([0.04, 0.0, 0.0]), K, 2.0)
    there = warper.warp_plane(img, H)
    back = warper.warp_plane(there, np.linalg.inv(H))
    assert not np.allclose(there, img)
    inner = (slice(10, 90), slice(10, 90))
    assert np.allclose(back[inner], img[inner], atol=0.05)


def test_warp_all_covers_every_plane(K, depths):
    warper = PlaneSweepWarper(K, depths, (100, 100))
    T = Rt_to_T(np.eye(3), np.array([0.02, 0.0, 0.0]))
    out = list(warper.warp_all(_blob(), T))
    assert [i for i, _ in out] == list(range(len(depths)))
    assert all(w.shape == (100, 100) for _, w in out)
    assert warper.skipped == []


def test_degenerate_plane_is_skipped(K, depths):
    # camera centre on the 2 m plane: that plane's homography is singular
    warper = PlaneSweepWarper(K, depths, (100, 100), verbose=False)
    T = Rt_to_T(np.eye(3), np.array([0.0, 0.0, 2.0]))
    out = list(warper.warp_all(_blob(), T))
    assert warper.skipped == [1]
    assert [i for i, _ in out] == [0, 2, 3, 4]


class FailingWarp(ImageWarp):
    def __init__(self, fail_on):
        super().__init__()
        self.fail_on = fail_on
        self.calls = 0

    def warp(self, image, M, size_rc):
        self.calls += 1
        if self.calls - 1 in self.fail_on:
            raise GeometryError("warp failed")
        return super().warp(image, M, size_rc)


def test_injected_warp_failure_skips_only_that_plane(K, depths):
    warper = PlaneSweepWarper(K, depths, (100, 100), image_warp=FailingWarp({3}), verbose=False)
    out = list(warper.warp_all(_blob(), np.eye(4)))
    assert warper.skipped == [3]
    assert len(out) == 4


def test_thread_pool_matches_serial(K, depths):
    T = Rt_to_T(np.eye(3), np.array([0.03, -0.01, 0.0]))
    serial = dict(PlaneSweepWarper(K, depths, (100, 100)).warp_all(_blob(), T))
    warper = PlaneSweepWarper(K, depths, (100, 100), workers=3)
    pool = warper._pool
    pooled = dict(warper.warp_all(_blob(), T))
    again = dict(warper.warp_all(_blob(), T))
    # one pool for the warper's lifetime
    assert warper._pool is pool
    warper.close()
    assert warper._pool is None
    assert serial.keys() == pooled.keys() == again.keys()
    for i in serial:
        assert np.array_equal(serial[i], pooled[i])
        assert np.array_equal(serial[i], again[i])


def test_wrong_image_size_rejected(K, depths):
    warper = PlaneSweepWarper(K, depths, (100, 100))
    with pytest.raises(PreconditionError):
        list(warper.warp_all(np.zeros((10, 10), np.float32), np.eye(4)))


def test_plane_depths():
    lin = make_plane_depths(1.0, 5.0, 5, "linear")
    assert np.allclose(lin, [1, 2, 3, 4, 5])
    inv = make_plane_depths(0.5, 4.0, 8, "inverse")
    assert inv[0] == pytest.approx(0.5) and inv[-1] == pytest.approx(4.0)
    assert np.all(np.diff(inv) > 0)
    assert np.allclose(np.diff(1.0 / inv), np.diff(1.0 / inv)[0])
    with pytest.raises(PreconditionError):
        make_plane_depths(0.0, 1.0, 4)
    with pytest.raises(PreconditionError):
        make_plane_depths(1.0, 2.0, 4, "log")
