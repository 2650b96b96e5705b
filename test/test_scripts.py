#!/usr/bin/env python3
"""
Unit tests for the command line scripts.
"""

import contextlib
import io
import unittest
import numpy as np
import os
import sys
import tempfile
from unittest import mock

import yaml
from scipy.spatial.transform import Rotation

# Add package and scripts to path
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, ROOT)
sys.path.insert(0, os.path.join(ROOT, 'scripts'))

import compute_hand_eye as hand_eye_script
import estimate_rig_pose as rig_pose_script

from rig_calibration.multi_camera import project_points
from rig_calibration.pose import Pose


X_TRUE = Pose(Rotation.from_rotvec([0.2, 0.4, -0.3]).as_quat(), [0.1, 0.0, -0.2])


def run_main(main, argv):
    """Run a script entry point; returns (exit code, stdout)."""
    out = io.StringIO()
    code = 0
    with mock.patch.object(sys, 'argv', argv), contextlib.redirect_stdout(out):
        try:
            main()
        except SystemExit as e:
            code = e.code
    return code, out.getvalue()


class TestComputeHandEyeScript(unittest.TestCase):
    """Test scripts/compute_hand_eye.py."""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()

    def tearDown(self):
        self.tmpdir.cleanup()

    def _write_sequences(self, n):
        rng = np.random.default_rng(n)
        fixed = Pose(Rotation.random(random_state=rng).as_quat(), rng.uniform(-1, 1, 3))
        hand = [Pose(Rotation.random(random_state=rng).as_quat(), rng.uniform(-1, 1, 3))
                for _ in range(n)]
        eye = [X_TRUE.inverse() * A.inverse() * fixed for A in hand]

        paths = []
        for name, poses in (('hand.yaml', hand), ('eye.yaml', eye)):
            path = os.path.join(self.tmpdir.name, name)
            with open(path, 'w') as f:
                yaml.safe_dump({'poses': [[float(v) for v in p.to_xyzq()] for p in poses]}, f)
            paths.append(path)
        return paths

    def test_writes_transform(self):
        hand_path, eye_path = self._write_sequences(8)
        output = os.path.join(self.tmpdir.name, 'hand_eye.yaml')

        code, _ = run_main(hand_eye_script.main, [
            'compute_hand_eye.py', '--hand', hand_path, '--eye', eye_path,
            '--all-pairs', '-o', output])

        self.assertEqual(code, 0)
        with open(output) as f:
            data = yaml.safe_load(f)
        estimate = Pose.from_xyzq(data['eye']['value'])
        self.assertLess(estimate.rotation_error(X_TRUE), 1e-5)
        self.assertLess(estimate.translation_error(X_TRUE), 1e-5)

    def test_too_few_samples_exits_before_solving(self):
        hand_path, eye_path = self._write_sequences(2)
        output = os.path.join(self.tmpdir.name, 'hand_eye.yaml')

        with mock.patch.object(hand_eye_script, 'HandEyeCalibrator') as calibrator:
            code, out = run_main(hand_eye_script.main, [
                'compute_hand_eye.py', '--hand', hand_path, '--eye', eye_path, '-o', output])

        self.assertEqual(code, 1)
        self.assertIn('more than 2 samples', out)
        calibrator.assert_not_called()
        self.assertFalse(os.path.exists(output))


class TestEstimateRigPoseScript(unittest.TestCase):
    """Test scripts/estimate_rig_pose.py."""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        K = np.array([[800.0, 0.0, 320.0], [0.0, 800.0, 240.0], [0.0, 0.0, 1.0]])
        rng = np.random.default_rng(0)
        self.rig_pose = Pose(Rotation.from_rotvec([0.1, 0.05, -0.1]).as_quat(), [0.0, 0.05, 0.1])
        points3d = rng.uniform(-0.3, 0.3, (16, 3))

        cameras = {}
        observations = {}
        for name, angle in (('left', -0.4), ('right', 0.4)):
            cam_pose = Pose(Rotation.from_rotvec([0.0, -angle, 0.0]).as_quat(),
                            [2.0 * np.sin(angle), 0.0, -2.0 * np.cos(angle)])
            cameras[name] = {
                'pose': [float(v) for v in cam_pose.to_xyzq()],
                'camera_matrix': {'data': [float(v) for v in K.ravel()]},
            }
            points2d = project_points(points3d, self.rig_pose, cam_pose, K)
            observations[name] = {
                'points2d': points2d.tolist(),
                'weights': [1.0] * len(points3d),
            }

        self.rig_path = os.path.join(self.tmpdir.name, 'rig.yaml')
        self.obs_path = os.path.join(self.tmpdir.name, 'obs.yaml')
        with open(self.rig_path, 'w') as f:
            yaml.safe_dump({'cameras': cameras}, f)
        with open(self.obs_path, 'w') as f:
            yaml.safe_dump({'points3d': points3d.tolist(), 'cameras': observations}, f)

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_writes_bundle_poses(self):
        output = os.path.join(self.tmpdir.name, 'poses.yaml')

        code, _ = run_main(rig_pose_script.main, [
            'estimate_rig_pose.py', '--rig', self.rig_path,
            '--observations', self.obs_path, '--bundles', '8,8', '-o', output])

        self.assertEqual(code, 0)
        with open(output) as f:
            data = yaml.safe_load(f)
        for name in ('bundle_0', 'bundle_1'):
            pose = Pose.from_xyzq(data[name]['value'])
            self.assertLess(pose.translation_error(self.rig_pose), 1e-5)
            self.assertGreaterEqual(data['weights'][name], 0.0)


if __name__ == '__main__':
    unittest.main()
