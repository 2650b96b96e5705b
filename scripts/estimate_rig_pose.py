#!/usr/bin/env python3
"""
Estimate the pose of a target seen by a calibrated camera rig.

Usage:
    python3 estimate_rig_pose.py \
        --rig /path/to/rig.yaml \
        --observations /path/to/observations.yaml \
        --bundles 8,8,8 \
        --output /path/to/target_poses.yaml

The rig file lists the cameras with their pose in the rig frame and their
intrinsic matrix; the observation file holds the target points and, per
camera, pixel observations and visibility weights (see utils.load_rig_config
and utils.load_observations).
"""

import argparse
import logging
import os
import sys

# Add package to path for standalone execution
try:
    from rig_calibration.config import SolverConfig, load_solver_config
    from rig_calibration.exceptions import CalibrationException
    from rig_calibration.multi_camera import MultiCameraPoseEstimator
    from rig_calibration.pose import Pose
    from rig_calibration.utils import load_rig_config, load_observations, save_pose_yaml
except ImportError:
    sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    from rig_calibration.config import SolverConfig, load_solver_config
    from rig_calibration.exceptions import CalibrationException
    from rig_calibration.multi_camera import MultiCameraPoseEstimator
    from rig_calibration.pose import Pose
    from rig_calibration.utils import load_rig_config, load_observations, save_pose_yaml


def main():
    parser = argparse.ArgumentParser(
        description='Estimate a target pose from multi-camera observations'
    )

    parser.add_argument('--rig', type=str, required=True,
                       help='Camera rig YAML (poses and intrinsics)')
    parser.add_argument('--observations', type=str, required=True,
                       help='Target points and per-camera observations YAML')
    parser.add_argument('--config', type=str, default=None,
                       help='Solver configuration YAML (optional)')
    parser.add_argument('--min-correspondences', type=int, default=None,
                       help='Minimum visible points per camera (default: from config)')
    parser.add_argument('--bundles', type=str, default=None,
                       help='Comma separated local bundle sizes, e.g. 8,8,8')
    parser.add_argument('--output', '-o', type=str, default='target_poses.yaml',
                       help='Output file path (default: target_poses.yaml)')
    parser.add_argument('--reference-frame', type=str, default='rig',
                       help='Parent frame name (default: rig)')
    parser.add_argument('--verbose', '-v', action='store_true',
                       help='Verbose output')

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
    )

    config = load_solver_config(args.config) if args.config else SolverConfig()

    print("Loading rig and observations...")
    rig = load_rig_config(args.rig)
    data = load_observations(args.observations)

    missing = [name for name in rig if name not in data['cameras']]
    if missing:
        print(f"ERROR: No observations for cameras: {missing}")
        sys.exit(1)

    camera_names = list(rig.keys())
    cam_poses = [Pose.from_xyzq(rig[name]['pose']) for name in camera_names]
    cam_matrices = [rig[name]['camera_matrix'] for name in camera_names]
    points2d = [data['cameras'][name]['points2d'] for name in camera_names]
    weights = [data['cameras'][name]['weights'] for name in camera_names]
    points3d = data['points3d']

    print(f"  {len(camera_names)} cameras: {camera_names}")
    print(f"  {len(points3d)} target points")

    estimator = MultiCameraPoseEstimator(config)

    try:
        if args.bundles:
            sizes = [int(s) for s in args.bundles.split(',') if s.strip()]
            results = estimator.estimate_bundles(points3d, points2d, weights, cam_poses,
                                                 cam_matrices, sizes, args.min_correspondences)
            names = [f"bundle_{i}" for i in range(len(results))]
        else:
            results = [estimator.estimate(points3d, points2d, weights, cam_poses,
                                          cam_matrices, args.min_correspondences)]
            names = ["target"]
    except CalibrationException as e:
        print(f"\nERROR: {e}")
        sys.exit(1)

    print("\n" + "="*60)
    print("RIG POSE RESULTS")
    print("="*60)

    poses = {}
    weights_out = {}
    for name, result in zip(names, results):
        if not result.success:
            print(f"✗ {name}: rejected ({result.reason}, "
                  f"min observations {result.min_observations})")
            weights_out[name] = result.weight
            continue
        t = result.pose.translation
        q = result.pose.quaternion
        print(f"✓ {name}: residual={result.residual:.4f}px, "
              f"observations={result.num_observations}, status={result.status}")
        print(f"  Translation: [{t[0]:.6f}, {t[1]:.6f}, {t[2]:.6f}]")
        print(f"  Quaternion:  [{q[0]:.6f}, {q[1]:.6f}, {q[2]:.6f}, {q[3]:.6f}]")
        poses[name] = result.pose.to_xyzq()
        weights_out[name] = result.weight

    if not poses:
        print("\nERROR: No pose could be estimated")
        sys.exit(1)

    save_pose_yaml(poses, args.output, args.reference_frame, extra=weights_out)
    print(f"\n✓ Poses saved to: {args.output}")


if __name__ == '__main__':
    main()
