"""
Hand-eye calibration for two rigidly linked sensors.

Given synchronized pose sequences of a "hand" and an "eye" sensor, recovers
the fixed transform X that satisfies H X = X E for every relative motion
pair (H, E). Rotation and translation are estimated in two decoupled
linear least-squares stages (Tsai-Lenz).
"""

import logging
import numpy as np
from typing import List, Optional, Sequence, Tuple, Union
from dataclasses import dataclass

from .config import SolverConfig
from .exceptions import CalibrationFailedError, SizeMismatchError
from .pose import Pose, as_matrix
from .utils import (
    invert_transform, compose_transforms, quaternion_vector_from_matrix,
    quaternion_from_matrix, rotation_from_rodrigues_vector, skew
)

logger = logging.getLogger(__name__)

TransformInput = Union[Pose, np.ndarray]


@dataclass(frozen=True, eq=False)
class MotionPair:
    """Relative motions of the hand (H) and eye (E) between two samples."""
    hand: np.ndarray  # 4x4
    eye: np.ndarray   # 4x4
    first_index: int
    second_index: int


def _adapt_sequences(hand: Sequence[TransformInput],
                     eye: Sequence[TransformInput]) -> Tuple[List[np.ndarray], List[np.ndarray]]:
    """Convert both sequences to 4x4 matrices of one common float dtype."""
    hand_mats = [as_matrix(T) for T in hand]
    eye_mats = [as_matrix(T) for T in eye]
    all_mats = hand_mats + eye_mats
    if not all_mats:
        return hand_mats, eye_mats
    dtype = np.result_type(*all_mats)
    return ([T.astype(dtype, copy=False) for T in hand_mats],
            [T.astype(dtype, copy=False) for T in eye_mats])


def build_motion_pairs(hand: Sequence[TransformInput], eye: Sequence[TransformInput],
                       use_all_pairs: bool = False) -> List[MotionPair]:
    """
    Build relative motion pairs from two pose sequences.

    For samples i < k:
        H_ik = inverse(hand_k) * hand_i
        E_ik = eye_k * inverse(eye_i)

    Args:
        hand: N hand poses (Pose or 4x4)
        eye: N eye poses (Pose or 4x4)
        use_all_pairs: pair every i with every k > i (N(N-1)/2 pairs)
            instead of only k = i + 1 (N-1 pairs)

    Returns:
        List of MotionPair
    """
    hand_mats, eye_mats = _adapt_sequences(hand, eye)
    n = len(hand_mats)
    pairs = []

    for i in range(n - 1):
        stop = n if use_all_pairs else i + 2
        for k in range(i + 1, stop):
            h_ik = compose_transforms(invert_transform(hand_mats[k]), hand_mats[i])
            e_ik = compose_transforms(eye_mats[k], invert_transform(eye_mats[i]))
            pairs.append(MotionPair(hand=h_ik, eye=e_ik, first_index=i, second_index=k))

    return pairs


def _solve_stacked(A: np.ndarray, b: np.ndarray, stage: str) -> np.ndarray:
    """Dense least squares for A x = b; rank-deficient systems are failures."""
    try:
        x, _, rank, _ = np.linalg.lstsq(A, b, rcond=None)
    except np.linalg.LinAlgError as e:
        raise CalibrationFailedError(stage, f"Least squares solve failed: {e}") from e

    if rank < A.shape[1]:
        raise CalibrationFailedError(stage, "Stacked system is rank deficient", rank=int(rank))
    if not np.all(np.isfinite(x)):
        raise CalibrationFailedError(stage, "Least squares solution is not finite")
    return x


def _rotation_angle(R: np.ndarray) -> float:
    c = (np.trace(R) - 1.0) / 2.0
    return float(np.arccos(np.clip(c, -1.0, 1.0)))


def hand_eye_residuals(pairs: Sequence[MotionPair],
                       X: TransformInput) -> Tuple[np.ndarray, np.ndarray]:
    """
    Per-pair consistency of a hand-eye estimate.

    Returns:
        (rotation errors in radians, translation errors) of H X versus X E
    """
    X = as_matrix(X, dtype=float)
    rot_errors = np.zeros(len(pairs))
    trans_errors = np.zeros(len(pairs))
    for i, pair in enumerate(pairs):
        left = pair.hand.astype(float) @ X
        right = X @ pair.eye.astype(float)
        rot_errors[i] = _rotation_angle(left[:3, :3].T @ right[:3, :3])
        trans_errors[i] = np.linalg.norm(left[:3, 3] - right[:3, 3])
    return rot_errors, trans_errors


class HandEyeCalibrator:
    """
    Two-stage linear hand-eye solver.

    Calls are independent; the calibrator keeps no state besides its
    configuration and logger.
    """

    def __init__(self, config: Optional[SolverConfig] = None,
                 logger: Optional[logging.Logger] = None):
        self.config = config or SolverConfig()
        self.logger = logger or logging.getLogger(__name__)

    def build_motion_pairs(self, hand: Sequence[TransformInput], eye: Sequence[TransformInput],
                           use_all_pairs: Optional[bool] = None) -> List[MotionPair]:
        if use_all_pairs is None:
            use_all_pairs = self.config.use_all_pairs
        pairs = build_motion_pairs(hand, eye, use_all_pairs)
        self.logger.debug(f"Built {len(pairs)} motion pairs from {len(hand)} samples "
                          f"({'all pairs' if use_all_pairs else 'consecutive'})")
        return pairs

    def solve_rotation(self, pairs: Sequence[MotionPair]) -> np.ndarray:
        """
        Rotation stage.

        For every pair, with p_h and p_e the quaternion vector parts of the
        hand and eye rotations:  skew(p_h + p_e) P' = p_e - p_h.
        The solution P' = tan(theta/2) n is rescaled to
        P = 2 P' / sqrt(1 + |P'|^2) and turned back into a rotation matrix.
        """
        dtype = pairs[0].hand.dtype
        A = np.zeros((3 * len(pairs), 3), dtype=dtype)
        b = np.zeros(3 * len(pairs), dtype=dtype)

        for i, pair in enumerate(pairs):
            p_hand = quaternion_vector_from_matrix(pair.hand[:3, :3])
            p_eye = quaternion_vector_from_matrix(pair.eye[:3, :3])
            A[3*i:3*i + 3] = skew(p_hand + p_eye)
            b[3*i:3*i + 3] = p_eye - p_hand

        p_prime = _solve_stacked(A, b, 'rotation estimation')

        divisor = np.sqrt(1.0 + p_prime @ p_prime)
        p = (2.0 * p_prime / divisor).astype(dtype)
        return rotation_from_rodrigues_vector(p)

    def solve_translation(self, pairs: Sequence[MotionPair], R: np.ndarray) -> np.ndarray:
        """
        Translation stage.

        For every pair: (R_h - I) t = R t_e - t_h
        """
        dtype = pairs[0].hand.dtype
        A = np.zeros((3 * len(pairs), 3), dtype=dtype)
        b = np.zeros(3 * len(pairs), dtype=dtype)
        identity = np.eye(3, dtype=dtype)

        for i, pair in enumerate(pairs):
            A[3*i:3*i + 3] = pair.hand[:3, :3] - identity
            b[3*i:3*i + 3] = R @ pair.eye[:3, 3] - pair.hand[:3, 3]

        return _solve_stacked(A, b, 'translation estimation')

    def calibrate(self, hand: Sequence[TransformInput], eye: Sequence[TransformInput],
                  use_all_pairs: Optional[bool] = None) -> Pose:
        """
        Estimate the fixed transform X with H X = X E.

        Args:
            hand: hand sensor poses (Pose or 4x4 matrices)
            eye: eye sensor poses, same length as hand
            use_all_pairs: overrides config.use_all_pairs

        Returns:
            Estimated Pose. With 2 or fewer samples the identity pose is
            returned to signal insufficient data.

        Raises:
            SizeMismatchError: sequences differ in length
            CalibrationFailedError: a stacked system cannot be solved
        """
        if len(hand) != len(eye):
            self.logger.error("Input sizes of the pose sequences do not match")
            raise SizeMismatchError(len(hand), len(eye))

        if len(hand) <= 2:
            self.logger.warning(f"Hand-eye calibration needs more than 2 samples, "
                                f"got {len(hand)}; returning identity")
            return Pose.identity()

        pairs = self.build_motion_pairs(hand, eye, use_all_pairs)
        R = self.solve_rotation(pairs)
        t = self.solve_translation(pairs, R)

        result = Pose(quaternion_from_matrix(R), t)
        self.logger.debug(f"Hand-eye estimate: {result}")
        return result


def compute_hand_eye(hand: Sequence[TransformInput], eye: Sequence[TransformInput],
                     use_all_pairs: bool = False,
                     logger: Optional[logging.Logger] = None) -> Pose:
    """Module-level shortcut for HandEyeCalibrator.calibrate."""
    return HandEyeCalibrator(logger=logger).calibrate(hand, eye, use_all_pairs)
