#!/usr/bin/env python3
"""
Unit tests for hand-eye calibration.
"""

import logging
import unittest
import numpy as np
import os
import sys

from scipy.spatial.transform import Rotation

# Add package to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from rig_calibration.config import SolverConfig
from rig_calibration.exceptions import CalibrationFailedError, SizeMismatchError
from rig_calibration.hand_eye import (
    HandEyeCalibrator,
    build_motion_pairs,
    compute_hand_eye,
    hand_eye_residuals,
)
from rig_calibration.pose import Pose


GROUND_TRUTH = Pose(Rotation.from_rotvec([0.3, -0.5, 0.8]).as_quat(), [0.12, -0.4, 0.25])


def make_sequences(n, seed=0, X=GROUND_TRUTH):
    """
    Synthetic hand and eye poses linked by X.

    hand_i * X * eye_i is the same fixed transform for every sample.
    """
    rng = np.random.default_rng(seed)
    fixed = Pose(Rotation.random(random_state=rng).as_quat(), rng.uniform(-1, 1, 3))
    hand = []
    eye = []
    for _ in range(n):
        A = Pose(Rotation.random(random_state=rng).as_quat(), rng.uniform(-1, 1, 3))
        hand.append(A)
        eye.append(X.inverse() * A.inverse() * fixed)
    return hand, eye


class TestMotionPairs(unittest.TestCase):
    """Test the motion pair builder."""

    def test_pair_counts(self):
        hand, eye = make_sequences(5)
        self.assertEqual(len(build_motion_pairs(hand, eye, use_all_pairs=False)), 4)
        self.assertEqual(len(build_motion_pairs(hand, eye, use_all_pairs=True)), 10)

    def test_pair_indices(self):
        hand, eye = make_sequences(4)
        pairs = build_motion_pairs(hand, eye, use_all_pairs=True)
        indices = [(p.first_index, p.second_index) for p in pairs]
        self.assertEqual(indices, [(0, 1), (0, 2), (0, 3), (1, 2), (1, 3), (2, 3)])

    def test_composition_order_satisfies_constraint(self):
        """H X == X E holds for every pair built from consistent sequences."""
        hand, eye = make_sequences(6, seed=4)
        X = GROUND_TRUTH.to_matrix()
        for pair in build_motion_pairs(hand, eye, use_all_pairs=True):
            np.testing.assert_array_almost_equal(pair.hand @ X, X @ pair.eye, decimal=10)

    def test_composition_formula(self):
        hand, eye = make_sequences(3, seed=5)
        pair = build_motion_pairs(hand, eye)[0]
        expected_h = np.linalg.inv(hand[1].to_matrix()) @ hand[0].to_matrix()
        expected_e = eye[1].to_matrix() @ np.linalg.inv(eye[0].to_matrix())
        np.testing.assert_array_almost_equal(pair.hand, expected_h)
        np.testing.assert_array_almost_equal(pair.eye, expected_e)

    def test_matrix_and_pose_inputs_agree(self):
        hand, eye = make_sequences(4, seed=6)
        from_poses = build_motion_pairs(hand, eye)
        from_matrices = build_motion_pairs([p.to_matrix() for p in hand],
                                           [p.to_matrix() for p in eye])
        for a, b in zip(from_poses, from_matrices):
            np.testing.assert_array_almost_equal(a.hand, b.hand)
            np.testing.assert_array_almost_equal(a.eye, b.eye)


class TestHandEyeCalibration(unittest.TestCase):
    """Test the two-stage hand-eye solver."""

    def assert_recovers(self, estimate, expected=GROUND_TRUTH, tol=1e-4):
        rot_err = estimate.rotation_error(expected)
        pos_err = estimate.translation_error(expected)
        self.assertLess(rot_err, tol, f"rotation error {rot_err}")
        self.assertLess(pos_err, tol, f"translation error {pos_err}")

    def test_recovers_transform(self):
        for n in (3, 4, 10, 30):
            for use_all_pairs in (False, True):
                with self.subTest(n=n, use_all_pairs=use_all_pairs):
                    hand, eye = make_sequences(n, seed=n)
                    estimate = compute_hand_eye(hand, eye, use_all_pairs)
                    self.assert_recovers(estimate)

    def test_recovers_transform_from_matrices(self):
        hand, eye = make_sequences(10, seed=11)
        estimate = compute_hand_eye([p.to_matrix() for p in hand],
                                    [p.to_matrix() for p in eye], True)
        self.assert_recovers(estimate)

    def test_recovers_transform_single_precision(self):
        hand, eye = make_sequences(12, seed=12)
        estimate = compute_hand_eye([p.to_matrix().astype(np.float32) for p in hand],
                                    [p.to_matrix().astype(np.float32) for p in eye], True)
        self.assert_recovers(estimate, tol=1e-2)

    def test_recovers_several_transforms(self):
        rng = np.random.default_rng(21)
        for run in range(10):
            X = Pose(Rotation.from_rotvec(rng.uniform(-1.5, 1.5, 3)).as_quat(),
                     rng.uniform(-2, 2, 3))
            hand, eye = make_sequences(int(rng.integers(4, 30)), seed=100 + run, X=X)
            self.assert_recovers(compute_hand_eye(hand, eye, True), expected=X)

    def test_insufficient_data_returns_identity(self):
        for n in (0, 1, 2):
            with self.subTest(n=n):
                hand, eye = make_sequences(n)
                estimate = compute_hand_eye(hand, eye, True)
                self.assertTrue(estimate.is_identity())

    def test_size_mismatch_raises(self):
        hand, eye = make_sequences(5)
        with self.assertRaises(SizeMismatchError) as ctx:
            compute_hand_eye(hand, eye[:4])
        self.assertEqual(ctx.exception.hand_count, 5)
        self.assertEqual(ctx.exception.eye_count, 4)

    def test_single_axis_motion_fails(self):
        """Rotations about one axis leave the rotation stage rank deficient."""
        rng = np.random.default_rng(8)
        fixed = Pose([0, 0, 0, 1], [0.5, 0.2, 1.0])
        X = Pose([0, 0, 0, 1], [0.1, 0.2, 0.3])
        hand = []
        eye = []
        for angle in (0.1, 0.5, 1.2, 2.0, 2.6):
            A = Pose([0, 0, np.sin(angle / 2), np.cos(angle / 2)], rng.uniform(-1, 1, 3))
            hand.append(A)
            eye.append(X.inverse() * A.inverse() * fixed)

        with self.assertRaises(CalibrationFailedError) as ctx:
            compute_hand_eye(hand, eye, True)
        self.assertEqual(ctx.exception.stage, 'rotation estimation')

    def test_config_selects_pairing(self):
        hand, eye = make_sequences(6, seed=2)
        calibrator = HandEyeCalibrator(SolverConfig(use_all_pairs=True))
        self.assertEqual(len(calibrator.build_motion_pairs(hand, eye)), 15)
        self.assertEqual(len(calibrator.build_motion_pairs(hand, eye, False)), 5)

    def test_stages(self):
        hand, eye = make_sequences(8, seed=9)
        calibrator = HandEyeCalibrator()
        pairs = calibrator.build_motion_pairs(hand, eye, True)

        R = calibrator.solve_rotation(pairs)
        np.testing.assert_array_almost_equal(R, GROUND_TRUTH.rotation_matrix(), decimal=8)

        t = calibrator.solve_translation(pairs, R)
        np.testing.assert_array_almost_equal(t, GROUND_TRUTH.translation, decimal=8)

    def test_residuals(self):
        hand, eye = make_sequences(8, seed=10)
        pairs = build_motion_pairs(hand, eye, True)

        rot_errors, trans_errors = hand_eye_residuals(pairs, GROUND_TRUTH)
        self.assertEqual(len(rot_errors), len(pairs))
        self.assertLess(rot_errors.max(), 1e-6)
        self.assertLess(trans_errors.max(), 1e-8)

        wrong = Pose(GROUND_TRUTH.quaternion, GROUND_TRUTH.translation + [0.1, 0, 0])
        _, trans_errors = hand_eye_residuals(pairs, wrong)
        self.assertGreater(trans_errors.max(), 1e-3)

    def test_injected_logger(self):
        hand, eye = make_sequences(2)
        test_logger = logging.getLogger('test.hand_eye')
        with self.assertLogs(test_logger, level='WARNING'):
            HandEyeCalibrator(logger=test_logger).calibrate(hand, eye)

    def test_is_deterministic(self):
        hand, eye = make_sequences(10, seed=13)
        a = compute_hand_eye(hand, eye, True)
        b = compute_hand_eye(hand, eye, True)
        np.testing.assert_array_equal(a.quaternion, b.quaternion)
        np.testing.assert_array_equal(a.translation, b.translation)


if __name__ == '__main__':
    unittest.main()
