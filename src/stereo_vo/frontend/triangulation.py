"""Linear multi-view triangulation."""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np

from .pose import SE3

# Smallest / second smallest singular value above this means the rays do not
# meet in a single point.
_SINGULAR_RATIO_THRESHOLD = 1e-2
_MIN_HOMOGENEOUS_SCALE = 1e-9


def triangulate(
    poses: Sequence[SE3], points: Sequence[np.ndarray]
) -> tuple[np.ndarray, bool]:
    """Triangulate one 3D point from two or more calibrated views (DLT).

    Each view contributes two rows of the homogeneous system A X = 0:

        x * P[2] - P[0]
        y * P[2] - P[1]

    where P is the 3x4 matrix of the view's pose and (x, y) its normalized
    image coordinate. The solution is the right singular vector of the
    smallest singular value.

    Args:
        poses: T_camera_rig of every view
        points: Normalized camera coordinates (x, y) or (x, y, 1), one per view

    Returns:
        Tuple of (point, success). ``point`` is in the rig frame. Parallel
        rays (point at infinity), inconsistent rays and non-finite results
        report ``success=False`` together with a zero vector.
    """
    failure = (np.zeros(3), False)
    if len(poses) != len(points) or len(poses) < 2:
        return failure

    A = np.zeros((2 * len(poses), 4), dtype=np.float64)
    for i, (pose, pt) in enumerate(zip(poses, points)):
        P = pose.to_matrix()[:3]
        pt = np.asarray(pt, dtype=np.float64).flatten()
        x, y = pt[0], pt[1]
        A[2 * i] = x * P[2] - P[0]
        A[2 * i + 1] = y * P[2] - P[1]

    _, s, vt = np.linalg.svd(A)
    X = vt[-1]

    if abs(X[3]) < _MIN_HOMOGENEOUS_SCALE:
        return failure

    point = X[:3] / X[3]
    if not np.isfinite(point).all():
        return failure

    if s[-2] <= 0.0 or s[-1] / s[-2] >= _SINGULAR_RATIO_THRESHOLD:
        return failure

    return point, True
