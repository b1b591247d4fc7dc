import cv2
import numpy as np
import pytest

from emvs.errors import PreconditionError
from emvs.modules.rectify import Rectifier


def _blob(rows, cols, r0, c0, sigma=1.5, peak=10.0):
    rr, cc = np.mgrid[0:rows, 0:cols]
    return (peak * np.exp(-((rr - r0) ** 2 + (cc - c0) ** 2) / (2 * sigma ** 2))).astype(np.float32)


def test_zero_distortion_is_identity(K):
    rect = Rectifier(K, np.zeros(5))
    assert rect.identity
    img = np.zeros((100, 100), np.uint8)
    img[10, 20] = 7
    out = rect(img)
    assert out.dtype == np.float32
    assert np.array_equal(out, img.astype(np.float32))


def test_undistort_moves_evidence_to_ideal_pixel(K):
    D = np.array([-0.3, 0.1, 0.0, 0.0, 0.0])
    rect = Rectifier(K, D)
    assert not rect.identity

    # ideal pinhole pixel (col 80, row 80) and where the lens actually images it
    ideal = np.array([80.0, 80.0])
    obj = np.array([[(ideal[0] - 50.0) / 100.0, (ideal[1] - 50.0) / 100.0, 1.0]])
    distorted, _ = cv2.projectPoints(obj, np.zeros(3), np.zeros(3), K, D)
    u_d, v_d = distorted.reshape(2)
    assert np.hypot(u_d - ideal[0], v_d - ideal[1]) > 1.0

    out = rect(_blob(100, 100, v_d, u_d))
    assert out.shape == (100, 100) and out.dtype == np.float32
    r, c = np.unravel_index(np.argmax(out), out.shape)
    assert abs(r - ideal[1]) <= 1 and abs(c - ideal[0]) <= 1


def test_bad_intrinsics_rejected():
    with pytest.raises(PreconditionError):
        Rectifier(np.eye(2))
