from __future__ import annotations

import math
import time
from typing import Tuple

import numpy as np


def to_numpy_3x3(x) -> np.ndarray:
    """Ensure input is a 3x3 float64 numpy array (copy if necessary)."""
    a = np.asarray(x, dtype=float)
    if a.shape != (3, 3):
        raise ValueError("Expected 3x3")
    return a.copy()


def is_identity(H: np.ndarray, atol: float = 1e-9) -> bool:
    return bool(np.allclose(to_numpy_3x3(H), np.eye(3), atol=atol))


def similarity_from_homography(H: np.ndarray) -> Tuple[float, float]:
    """
    Approximate a homography by a similarity and return (scale, angle_deg).

    The angle follows cv2.getRotationMatrix2D: positive is counter-clockwise
    as displayed (image y axis pointing down). Projective terms are ignored;
    the upper-left 2x2 block is normalized by H[2,2].
    """
    A = to_numpy_3x3(H)
    if abs(A[2, 2]) > 1e-12:
        A = A / A[2, 2]
    a, b = A[0, 0], A[0, 1]
    c, d = A[1, 0], A[1, 1]
    # average the two estimates of [[s cos, s sin], [-s sin, s cos]]
    cos_s = 0.5 * (a + d)
    sin_s = 0.5 * (b - c)
    scale = math.hypot(cos_s, sin_s)
    angle = math.degrees(math.atan2(sin_s, cos_s))
    return float(scale), float(angle)


def angle_diff_deg(a: float, b: float) -> float:
    """Smallest signed difference a-b in degrees, in (-180, 180]."""
    d = (a - b + 180.0) % 360.0 - 180.0
    return 180.0 if d == -180.0 else d


def timer_ms(func):
    """
    Decorator that returns (result, elapsed_ms) for benchmarking small functions.
    """
    def wrapper(*args, **kwargs):
        t0 = time.perf_counter()
        out = func(*args, **kwargs)
        dt_ms = (time.perf_counter() - t0) * 1e3
        return out, dt_ms
    return wrapper
