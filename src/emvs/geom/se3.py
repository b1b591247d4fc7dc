import numpy as np

from ..errors import PreconditionError

def Rt_to_T(R: np.ndarray, t: np.ndarray) -> np.ndarray:
    T = np.eye(4)
    T[:3,:3] = R
    T[:3, 3] = t.reshape(3)
    return T

def inv_T(T: np.ndarray) -> np.ndarray:
    R = T[:3,:3]; t = T[:3,3]
    Ti = np.eye(4)
    Ti[:3,:3] = R.T
    Ti[:3, 3] = -R.T @ t
    return Ti

def quat_xyzw_to_R(q: np.ndarray) -> np.ndarray:
    # assumes a unit quaternion; callers validate the norm
    x, y, z, w = (float(v) for v in q)
    return np.array([
        [1.0 - 2.0 * (y * y + z * z), 2.0 * (x * y - z * w),       2.0 * (x * z + y * w)],
        [2.0 * (x * y + z * w),       1.0 - 2.0 * (x * x + z * z), 2.0 * (y * z - x * w)],
        [2.0 * (x * z - y * w),       2.0 * (y * z + x * w),       1.0 - 2.0 * (x * x + y * y)],
    ], dtype=np.float64)

def pose_to_T(position: np.ndarray, quat_xyzw: np.ndarray) -> np.ndarray:
    """T_w_c: maps points from the camera frame to the world frame."""
    return Rt_to_T(quat_xyzw_to_R(quat_xyzw), np.asarray(position, dtype=np.float64))

def relative_T(T_w_a: np.ndarray, T_w_b: np.ndarray) -> np.ndarray:
    """T_a_b = inv(T_w_a) @ T_w_b, maps points from frame b to frame a."""
    return inv_T(T_w_a) @ T_w_b

def transform_points(T: np.ndarray, X: np.ndarray) -> np.ndarray:
    X = np.asarray(X, dtype=np.float64).reshape(-1, 3)
    if T.shape != (4, 4):
        raise PreconditionError(f"Expected a 4x4 transform, got {T.shape}")
    return X @ T[:3, :3].T + T[:3, 3]
