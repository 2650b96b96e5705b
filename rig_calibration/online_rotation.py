"""
Online rotation-only hand-eye calibration.

Given a stream of relative rotation pairs (a, b) with a * x = x * b, keeps a
running estimate of the unit quaternion x without storing the pairs.

Each pair contributes the linear constraint (L(a) - R(b)) x = 0, where L and
R are the left and right quaternion multiplication matrices. The estimator
accumulates the 4x4 normal matrix of these constraints (recursive least
squares in information form); the estimate is its eigenvector with the
smallest eigenvalue.
"""

import logging
import numpy as np
from typing import Optional


def _left_matrix(q: np.ndarray) -> np.ndarray:
    """L(q) @ p == q * p for [x, y, z, w] quaternions."""
    x, y, z, w = q
    return np.array([
        [w, -z, y, x],
        [z, w, -x, y],
        [-y, x, w, z],
        [-x, -y, -z, w],
    ])


def _right_matrix(q: np.ndarray) -> np.ndarray:
    """R(q) @ p == p * q for [x, y, z, w] quaternions."""
    x, y, z, w = q
    return np.array([
        [w, z, -y, x],
        [-z, w, x, y],
        [y, -x, w, z],
        [-x, -y, -z, w],
    ])


def _canonical(q) -> np.ndarray:
    q = np.asarray(q, dtype=float).reshape(4)
    n = np.linalg.norm(q)
    if not np.isfinite(n) or n == 0:
        raise ValueError(f"Invalid quaternion: {q}")
    q = q / n
    return -q if q[3] < 0 else q


class OnlineRotationEstimator:
    """
    Incremental estimator of x in a * x = x * b.

    Not thread-safe: guard an instance shared between threads externally.
    """

    def __init__(self, forgetting_factor: float = 1.0,
                 logger: Optional[logging.Logger] = None):
        """
        Args:
            forgetting_factor: weight in (0, 1] applied to the accumulated
                information before each new pair; 1.0 weights all pairs equally
            logger: diagnostics sink
        """
        if not 0.0 < forgetting_factor <= 1.0:
            raise ValueError(f"forgetting_factor must be in (0, 1], got {forgetting_factor}")
        self._forgetting_factor = forgetting_factor
        self._information = np.zeros((4, 4))
        self._count = 0
        self._logger = logger or logging.getLogger(__name__)

    @property
    def num_measurements(self) -> int:
        return self._count

    def add_measurement(self, a, b):
        """
        Fold in one relative rotation pair.

        Args:
            a: relative rotation of the first frame, quaternion [x, y, z, w]
            b: relative rotation of the second frame, quaternion [x, y, z, w]
        """
        # Same hemisphere for both, so equal rotation angles give equal w
        a = _canonical(a)
        b = _canonical(b)
        M = _left_matrix(a) - _right_matrix(b)
        self._information = self._forgetting_factor * self._information + M.T @ M
        self._count += 1
        self._logger.debug(f"Added rotation pair #{self._count}")

    def compute_result(self) -> np.ndarray:
        """
        Current estimate of x as a unit quaternion [x, y, z, w] with w >= 0.

        Returns the identity before any measurement has been added.
        """
        if self._count == 0:
            return np.array([0.0, 0.0, 0.0, 1.0])
        _, vectors = np.linalg.eigh(self._information)
        x = vectors[:, 0]
        x = x / np.linalg.norm(x)
        return -x if x[3] < 0 else x

    def reset(self):
        self._information = np.zeros((4, 4))
        self._count = 0
