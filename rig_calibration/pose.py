"""
Rigid transform value types.

A Pose is a unit quaternion [x, y, z, w] plus a translation. It converts
losslessly to and from a 4x4 homogeneous matrix. Poses are immutable.
"""

import numpy as np
from typing import Sequence, Union
from dataclasses import dataclass, field
from scipy.spatial.transform import Rotation

from .utils import (
    matrix_from_quaternion, matrix_to_transform, transform_to_matrix,
    quaternion_multiply, quaternion_angle
)


@dataclass(frozen=True, eq=False)
class Pose:
    """Rotation (unit quaternion, [x, y, z, w]) followed by a translation."""
    quaternion: np.ndarray
    translation: np.ndarray

    def __post_init__(self):
        q = np.array(self.quaternion, dtype=float).reshape(4)
        n = np.linalg.norm(q)
        if not np.isfinite(n) or n == 0:
            raise ValueError(f"Invalid rotation quaternion: {self.quaternion}")
        t = np.array(self.translation, dtype=float).reshape(3)
        q = q / n
        q.setflags(write=False)
        t.setflags(write=False)
        object.__setattr__(self, 'quaternion', q)
        object.__setattr__(self, 'translation', t)

    @classmethod
    def identity(cls):
        return cls(np.array([0.0, 0.0, 0.0, 1.0]), np.zeros(3))

    @classmethod
    def from_matrix(cls, T: np.ndarray):
        """Build from a 4x4 homogeneous matrix."""
        translation, quaternion = matrix_to_transform(np.asarray(T, dtype=float))
        return cls(quaternion, translation)

    @classmethod
    def from_xyzq(cls, values: Sequence[float]):
        """Build from [x, y, z, qx, qy, qz, qw]."""
        values = np.asarray(values, dtype=float)
        return cls(values[3:7], values[:3])

    @classmethod
    def from_vector(cls, params: np.ndarray):
        """
        Build from the 6-parameter optimisation encoding.

        params[0:3] is the translation, params[3:6] the rotation log
        (axis * angle).
        """
        params = np.asarray(params, dtype=float)
        return cls(Rotation.from_rotvec(params[3:6]).as_quat(), params[0:3])

    def to_vector(self) -> np.ndarray:
        """Inverse of from_vector."""
        return np.concatenate([self.translation,
                               Rotation.from_quat(self.quaternion).as_rotvec()])

    def to_xyzq(self) -> np.ndarray:
        return np.concatenate([self.translation, self.quaternion])

    def rotation_matrix(self) -> np.ndarray:
        return matrix_from_quaternion(self.quaternion)

    def to_matrix(self) -> np.ndarray:
        return transform_to_matrix(self.translation, self.quaternion)

    def inverse(self) -> 'Pose':
        q_inv = self.quaternion * np.array([-1.0, -1.0, -1.0, 1.0])
        R_inv = matrix_from_quaternion(q_inv)
        return Pose(q_inv, -R_inv @ self.translation)

    def __mul__(self, other: 'Pose') -> 'Pose':
        """self * other: apply other first, then self."""
        if not isinstance(other, Pose):
            return NotImplemented
        q = quaternion_multiply(self.quaternion, other.quaternion)
        t = self.rotation_matrix() @ other.translation + self.translation
        return Pose(q, t)

    def transform_points(self, points: np.ndarray) -> np.ndarray:
        """Apply the pose to an (N, 3) array of points."""
        points = np.asarray(points, dtype=float).reshape(-1, 3)
        return points @ self.rotation_matrix().T + self.translation

    def is_identity(self, tol: float = 1e-12) -> bool:
        return (abs(abs(self.quaternion[3]) - 1.0) <= tol
                and np.linalg.norm(self.translation) <= tol)

    def rotation_error(self, other: 'Pose') -> float:
        """Rotation angle in radians between this pose and other."""
        return quaternion_angle(self.quaternion, other.quaternion)

    def translation_error(self, other: 'Pose') -> float:
        return float(np.linalg.norm(self.translation - other.translation))

    def __repr__(self) -> str:
        t = self.translation
        q = self.quaternion
        return (f"{type(self).__name__}(t=[{t[0]:.6f}, {t[1]:.6f}, {t[2]:.6f}], "
                f"q=[{q[0]:.6f}, {q[1]:.6f}, {q[2]:.6f}, {q[3]:.6f}])")


@dataclass(frozen=True, eq=False, repr=False)
class ErrorPose(Pose):
    """Pose with a 6x6 covariance (translation first, then rotation)."""
    covariance: np.ndarray = field(default_factory=lambda: np.zeros((6, 6)))

    def __post_init__(self):
        super().__post_init__()
        cov = np.array(self.covariance, dtype=float).reshape(6, 6)
        cov.setflags(write=False)
        object.__setattr__(self, 'covariance', cov)

    @classmethod
    def from_pose(cls, pose: Pose, covariance: np.ndarray = None):
        if covariance is None:
            covariance = np.zeros((6, 6))
        return cls(pose.quaternion, pose.translation, covariance)


def as_matrix(transform: Union[Pose, np.ndarray], dtype=None) -> np.ndarray:
    """
    Adapt a Pose or a 4x4 matrix to a 4x4 matrix.

    Matrices keep their floating point dtype unless dtype is given; Poses
    become float64.
    """
    if isinstance(transform, Pose):
        T = transform.to_matrix()
    else:
        T = np.asarray(transform)
        if T.shape != (4, 4):
            raise ValueError(f"Expected a 4x4 transform, got shape {T.shape}")
        if not np.issubdtype(T.dtype, np.floating):
            T = T.astype(float)
    if dtype is not None:
        T = T.astype(dtype, copy=False)
    return T
