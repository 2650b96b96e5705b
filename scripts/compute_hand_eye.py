#!/usr/bin/env python3
"""
Compute the hand-eye transform between two rigidly linked sensors.

Both input files hold synchronized pose sequences as lists of
[x, y, z, qx, qy, qz, qw] entries (optionally under a 'poses' key).

Usage:
    python3 compute_hand_eye.py \
        --hand /path/to/hand_poses.yaml \
        --eye /path/to/eye_poses.yaml \
        --all-pairs \
        --output /path/to/hand_eye.yaml
"""

import argparse
import logging
import numpy as np
import os
import sys

# Add package to path for standalone execution
try:
    from rig_calibration.config import SolverConfig, load_solver_config
    from rig_calibration.exceptions import CalibrationException
    from rig_calibration.hand_eye import HandEyeCalibrator, hand_eye_residuals
    from rig_calibration.pose import Pose
    from rig_calibration.utils import load_pose_sequence, save_pose_yaml
except ImportError:
    sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    from rig_calibration.config import SolverConfig, load_solver_config
    from rig_calibration.exceptions import CalibrationException
    from rig_calibration.hand_eye import HandEyeCalibrator, hand_eye_residuals
    from rig_calibration.pose import Pose
    from rig_calibration.utils import load_pose_sequence, save_pose_yaml


def main():
    parser = argparse.ArgumentParser(
        description='Compute the hand-eye transform from two pose sequences'
    )

    parser.add_argument('--hand', type=str, required=True,
                       help='YAML file with the hand sensor poses')
    parser.add_argument('--eye', type=str, required=True,
                       help='YAML file with the eye sensor poses')
    parser.add_argument('--config', type=str, default=None,
                       help='Solver configuration YAML (optional)')
    parser.add_argument('--all-pairs', action='store_true',
                       help='Use all sample pairs instead of consecutive ones')
    parser.add_argument('--output', '-o', type=str, default='hand_eye.yaml',
                       help='Output file path (default: hand_eye.yaml)')
    parser.add_argument('--frame-name', type=str, default='eye',
                       help='Name written for the estimated transform (default: eye)')
    parser.add_argument('--reference-frame', type=str, default='hand',
                       help='Parent frame name (default: hand)')
    parser.add_argument('--verbose', '-v', action='store_true',
                       help='Verbose output')

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
    )

    config = load_solver_config(args.config) if args.config else SolverConfig()
    use_all_pairs = args.all_pairs or config.use_all_pairs

    print("Loading pose sequences...")
    hand = [Pose.from_xyzq(v) for v in load_pose_sequence(args.hand)]
    eye = [Pose.from_xyzq(v) for v in load_pose_sequence(args.eye)]
    print(f"  hand: {len(hand)} poses, eye: {len(eye)} poses")

    if min(len(hand), len(eye)) <= 2:
        print("\nERROR: Calibration needs more than 2 samples")
        sys.exit(1)

    calibrator = HandEyeCalibrator(config)

    try:
        result = calibrator.calibrate(hand, eye, use_all_pairs)
    except CalibrationException as e:
        print(f"\nERROR: {e}")
        sys.exit(1)

    pairs = calibrator.build_motion_pairs(hand, eye, use_all_pairs)
    rot_errors, trans_errors = hand_eye_residuals(pairs, result)

    print("\n" + "="*60)
    print("HAND-EYE RESULT")
    print("="*60)
    t = result.translation
    q = result.quaternion
    print(f"  Translation: [{t[0]:.6f}, {t[1]:.6f}, {t[2]:.6f}]")
    print(f"  Quaternion:  [{q[0]:.6f}, {q[1]:.6f}, {q[2]:.6f}, {q[3]:.6f}]")
    print(f"  Motion pairs: {len(pairs)}")
    print(f"  Rotation residual:    mean {np.degrees(rot_errors.mean()):.4f} deg, "
          f"max {np.degrees(rot_errors.max()):.4f} deg")
    print(f"  Translation residual: mean {trans_errors.mean():.6f}, "
          f"max {trans_errors.max():.6f}")

    save_pose_yaml({args.frame_name: result.to_xyzq()}, args.output, args.reference_frame)
    print(f"\n✓ Hand-eye transform saved to: {args.output}")


if __name__ == '__main__':
    main()
