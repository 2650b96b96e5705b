"""
Utility functions for rig calibration.

Rotation/transform helpers shared by the solvers plus YAML loading and
saving of pose sequences, camera rigs and observations.
"""

import numpy as np
import yaml
from typing import Dict, Any, Sequence, Tuple


def _load_yaml(path: str) -> Dict[str, Any]:
    """Load a YAML file, skipping full-line comments."""
    with open(path, 'r') as f:
        lines = f.read().split('\n')
    yaml_lines = [l for l in lines if not l.strip().startswith('#')]
    data = yaml.safe_load('\n'.join(yaml_lines))
    return data if data else {}


def load_pose_sequence(path: str, key: str = 'poses') -> np.ndarray:
    """
    Load a pose sequence from YAML.

    The file holds a list (optionally under ``key``) of
    ``[x, y, z, qx, qy, qz, qw]`` entries.

    Returns:
        (N, 7) array
    """
    data = _load_yaml(path)
    if isinstance(data, dict):
        data = data.get(key, [])
    values = np.asarray(data, dtype=float)
    if values.size == 0:
        return np.zeros((0, 7))
    if values.ndim != 2 or values.shape[1] != 7:
        raise ValueError(f"Expected a list of 7-element poses in {path}, "
                         f"got shape {values.shape}")
    return values


def load_rig_config(path: str) -> Dict[str, Dict[str, np.ndarray]]:
    """
    Load a camera rig description.

    Expected layout::

        cameras:
          left:
            pose: [x, y, z, qx, qy, qz, qw]     # camera in rig frame
            camera_matrix:
              data: [fx, 0, cx, 0, fy, cy, 0, 0, 1]

    Returns:
        Ordered dict camera_name -> {'pose': (7,), 'camera_matrix': (3, 3)}
    """
    data = _load_yaml(path)
    cameras = {}
    for name, cam in data.get('cameras', {}).items():
        k_data = cam['camera_matrix']
        if isinstance(k_data, dict):
            k_data = k_data['data']
        cameras[name] = {
            'pose': np.asarray(cam['pose'], dtype=float),
            'camera_matrix': np.asarray(k_data, dtype=float).reshape(3, 3),
        }
    return cameras


def load_observations(path: str) -> Dict[str, Any]:
    """
    Load reference points and per-camera observations.

    Expected layout::

        points3d: [[x, y, z], ...]
        cameras:
          left:
            points2d: [[u, v], ...]
            weights: [1, 0, ...]

    Returns:
        {'points3d': (M, 3), 'cameras': {name: {'points2d': (M, 2), 'weights': (M,)}}}
    """
    data = _load_yaml(path)
    cameras = {}
    for name, cam in data.get('cameras', {}).items():
        cameras[name] = {
            'points2d': np.asarray(cam['points2d'], dtype=float).reshape(-1, 2),
            'weights': np.asarray(cam['weights'], dtype=float),
        }
    return {
        'points3d': np.asarray(data.get('points3d', []), dtype=float).reshape(-1, 3),
        'cameras': cameras,
    }


def quaternion_from_matrix(R: np.ndarray) -> np.ndarray:
    """
    Convert a 3x3 rotation matrix to quaternion [x, y, z, w].

    Of the four algebraically equivalent extraction formulas, the one whose
    pivot component has the largest magnitude is used, so the division is
    never by a value smaller than 1/2. The result has w >= 0.

    Args:
        R: 3x3 rotation matrix

    Returns:
        Quaternion as [x, y, z, w]
    """
    R = np.asarray(R)
    trace = R[0, 0] + R[1, 1] + R[2, 2]

    # squared magnitudes of w, x, y, z (times 4)
    q = np.array([
        1 + trace,
        1 + R[0, 0] - R[1, 1] - R[2, 2],
        1 - R[0, 0] + R[1, 1] - R[2, 2],
        1 - R[0, 0] - R[1, 1] + R[2, 2],
    ]) / 4
    c = int(np.argmax(q))

    qoff = np.array([
        R[2, 1] - R[1, 2],
        R[0, 2] - R[2, 0],
        R[1, 0] - R[0, 1],
        R[1, 0] + R[0, 1],
        R[0, 2] + R[2, 0],
        R[2, 1] + R[1, 2],
    ]) / 4

    pivot = np.sqrt(q[c])
    if c == 0:
        w = pivot
        x, y, z = qoff[0] / w, qoff[1] / w, qoff[2] / w
    elif c == 1:
        x = pivot
        w, y, z = qoff[0] / x, qoff[3] / x, qoff[4] / x
    elif c == 2:
        y = pivot
        w, x, z = qoff[1] / y, qoff[3] / y, qoff[5] / y
    else:
        z = pivot
        w, x, y = qoff[2] / z, qoff[4] / z, qoff[5] / z

    quat = np.array([x, y, z, w], dtype=q.dtype)
    if quat[3] < 0:
        quat = -quat
    return quat


def quaternion_vector_from_matrix(R: np.ndarray) -> np.ndarray:
    """Vector part [x, y, z] of the w >= 0 quaternion of R."""
    return quaternion_from_matrix(R)[:3]


def matrix_from_quaternion(q: np.ndarray) -> np.ndarray:
    """
    Convert quaternion [x, y, z, w] to 3x3 rotation matrix.

    Args:
        q: Quaternion as [x, y, z, w]

    Returns:
        3x3 rotation matrix
    """
    x, y, z, w = q

    # Normalize quaternion
    n = np.sqrt(x*x + y*y + z*z + w*w)
    x, y, z, w = x/n, y/n, z/n, w/n

    R = np.array([
        [1 - 2*y*y - 2*z*z, 2*x*y - 2*z*w, 2*x*z + 2*y*w],
        [2*x*y + 2*z*w, 1 - 2*x*x - 2*z*z, 2*y*z - 2*x*w],
        [2*x*z - 2*y*w, 2*y*z + 2*x*w, 1 - 2*x*x - 2*y*y]
    ])

    return R


def transform_to_matrix(translation: np.ndarray, quaternion: np.ndarray) -> np.ndarray:
    """Homogeneous 4x4 matrix of a [x, y, z] translation and [x, y, z, w] rotation."""
    T = np.eye(4)
    T[:3, :3] = matrix_from_quaternion(quaternion)
    T[:3, 3] = translation
    return T


def matrix_to_transform(T: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Split a 4x4 matrix into (translation, w >= 0 quaternion)."""
    T = np.asarray(T)
    if T.shape != (4, 4):
        raise ValueError(f"Expected a 4x4 transform, got shape {T.shape}")
    return np.array(T[:3, 3]), quaternion_from_matrix(T[:3, :3])


def invert_transform(T: np.ndarray) -> np.ndarray:
    """
    Invert a 4x4 rigid transformation matrix.

    The dtype of T is kept.
    """
    R = T[:3, :3]
    t = T[:3, 3]

    T_inv = np.eye(4, dtype=T.dtype)
    T_inv[:3, :3] = R.T
    T_inv[:3, 3] = -R.T @ t

    return T_inv


def compose_transforms(T1: np.ndarray, T2: np.ndarray) -> np.ndarray:
    """
    Compose two transformation matrices: T1 * T2

    Args:
        T1: First transformation (applied second)
        T2: Second transformation (applied first)

    Returns:
        Composed transformation matrix
    """
    return T1 @ T2


def skew(v: np.ndarray) -> np.ndarray:
    """Cross-product matrix: skew(v) @ u == np.cross(v, u)."""
    return np.array([
        [0, -v[2], v[1]],
        [v[2], 0, -v[0]],
        [-v[1], v[0], 0]
    ], dtype=np.asarray(v).dtype)


def rotation_from_rodrigues_vector(p: np.ndarray) -> np.ndarray:
    """
    Rotation matrix from a modified Rodrigues vector P = 2 sin(theta/2) n.

    R = (1 - |P|^2 / 2) I + 0.5 (P P^T + sqrt(4 - |P|^2) [P]x)
    """
    p = np.asarray(p)
    length = float(p @ p)
    # |P| <= 2 for a proper vector; clip rounding overshoot
    alpha = float(np.sqrt(max(4.0 - length, 0.0)))
    identity = np.eye(3, dtype=p.dtype) * (1.0 - length / 2.0)
    return identity + 0.5 * (np.outer(p, p) + alpha * skew(p))


def quaternion_multiply(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Hamilton product a * b of [x, y, z, w] quaternions."""
    ax, ay, az, aw = a
    bx, by, bz, bw = b
    return np.array([
        aw*bx + ax*bw + ay*bz - az*by,
        aw*by - ax*bz + ay*bw + az*bx,
        aw*bz + ax*by - ay*bx + az*bw,
        aw*bw - ax*bx - ay*by - az*bz,
    ])


def quaternion_angle(a: np.ndarray, b: np.ndarray) -> float:
    """Angle in radians of the rotation between two unit quaternions."""
    a = np.asarray(a, dtype=float)
    b = np.asarray(b, dtype=float)
    a_conj = a * np.array([-1.0, -1.0, -1.0, 1.0])
    r = quaternion_multiply(a_conj, b)
    return 2.0 * float(np.arctan2(np.linalg.norm(r[:3]), abs(r[3])))


def save_pose_yaml(poses: Dict[str, Sequence[float]], output_path: str,
                   reference_frame: str = "rig",
                   extra: Dict[str, Any] = None):
    """
    Save poses to YAML in the [x, y, z, qx, qy, qz, qw] format.

    Args:
        poses: Dict mapping name -> 7-element pose
        output_path: Path to save the YAML file
        reference_frame: Name of the parent frame
        extra: Optional name -> scalar map written as a top-level 'weights' mapping
    """
    lines = [
        "# Computed by rig_calibration",
        f"# Reference frame: {reference_frame}",
        "# Position xyz; Quaternions xyzw",
        "# [ x_m, y_m, z_m, qx, qy, qz, qw]",
    ]

    for name, value in poses.items():
        v = [float(x) for x in value]
        lines.append(f"{name}:")
        lines.append(f'  parent: "{reference_frame}"')
        lines.append(f'  child: "{name}"')
        lines.append("  value: [" + ", ".join(f"{x:.6f}" for x in v) + "]")

    if extra:
        lines.append("weights:")
        for name, value in extra.items():
            lines.append(f"  {name}: {float(value):.6f}")

    with open(output_path, 'w') as f:
        f.write('\n'.join(lines) + '\n')
