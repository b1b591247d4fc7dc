import numpy as np
import pytest

from emvs.errors import PreconditionError, StateError
from emvs.modules.dsi import DisparitySpaceVolume


def _dsi(K, depths, floor=1.0):
    return DisparitySpaceVolume(100, 100, depths, K, confidence_floor=floor)


def _spike(r, c, v=1.0):
    img = np.zeros((100, 100), np.float32)
    img[r, c] = v
    return img


def test_empty_volume_extracts_nothing(K, depths):
    pts = _dsi(K, depths).extract_points()
    assert len(pts) == 0
    assert pts.points.shape == (0, 3)


def test_back_projection(K, depths):
    dsi = _dsi(K, depths)
    dsi.accumulate(2, _spike(50, 50, 3.0))
    dsi.accumulate(0, _spike(50, 50, 1.0))
    dsi.accumulate(3, _spike(30, 70, 2.0))
    pts = dsi.extract_points()
    assert len(pts) == 2
    by_pixel = {tuple(p): i for i, p in enumerate(pts.pixels.tolist())}

    i = by_pixel[(50, 50)]
    assert pts.plane_idx[i] == 2
    assert np.allclose(pts.points[i], [0.0, 0.0, 3.0])

    j = by_pixel[(30, 70)]
    assert pts.plane_idx[j] == 3
    # X = K^-1 [col, row, 1] * depth
    assert np.allclose(pts.points[j], [0.2 * 4.0, -0.2 * 4.0, 4.0])


def test_confidence_floor_filters_weak_pixels(K, depths):
    dsi = _dsi(K, depths, floor=5.0)
    dsi.accumulate(1, _spike(10, 10, 4.0))
    dsi.accumulate(1, _spike(20, 20, 6.0))
    pts = dsi.extract_points()
    assert pts.pixels.tolist() == [[20, 20]]
    assert np.isnan(dsi.depth_map()[10, 10])
    assert dsi.depth_map()[20, 20] == pytest.approx(2.0)


def test_accumulation_adds_without_decay(K, depths):
    dsi = _dsi(K, depths)
    dsi.accumulate(4, _spike(1, 1, 2.0))
    dsi.accumulate(4, _spike(1, 1, 2.5))
    assert dsi.volume[1, 1, 4] == pytest.approx(4.5)


def test_extraction_is_idempotent(K, depths):
    dsi = _dsi(K, depths)
    rng = np.random.default_rng(0)
    for i in range(dsi.n_planes):
        dsi.accumulate(i, rng.integers(0, 4, (100, 100)).astype(np.float32))
    a = dsi.extract_points()
    b = dsi.extract_points()
    assert np.array_equal(a.points, b.points)
    assert np.array_equal(a.pixels, b.pixels)
    assert np.array_equal(a.plane_idx, b.plane_idx)


def test_reset_is_idempotent(K, depths):
    dsi = _dsi(K, depths)
    dsi.accumulate(0, _spike(5, 5, 9.0))
    dsi.mark_batch()
    dsi.extract_points()
    dsi.reset()
    dsi.reset()
    fresh = _dsi(K, depths)
    assert np.array_equal(dsi.volume, fresh.volume)
    assert dsi.is_empty()


def test_reset_before_extraction_is_refused(K, depths):
    dsi = _dsi(K, depths)
    dsi.accumulate(0, _spike(5, 5))
    with pytest.raises(StateError):
        dsi.reset()
    dsi.reset(discard=True)
    assert not dsi.volume.any()


def test_bad_inputs(K, depths):
    dsi = _dsi(K, depths)
    with pytest.raises(PreconditionError):
        dsi.accumulate(5, _spike(0, 0))
    with pytest.raises(PreconditionError):
        dsi.accumulate(0, np.zeros((10, 10), np.float32))
    with pytest.raises(PreconditionError):
        DisparitySpaceVolume(10, 10, [2.0, 1.0], K)
    with pytest.raises(PreconditionError):
        DisparitySpaceVolume(10, 10, depths, np.zeros((3, 3)))
