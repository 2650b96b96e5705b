# rig_calibration package
"""
Rigid-geometry estimation for sensor and camera rigs.

This package provides hand-eye calibration between two co-moving sensors
(batch and online rotation-only) and pose refinement of a target observed
by several fixed, pre-calibrated cameras.
"""

from .config import SolverConfig, load_solver_config
from .exceptions import (
    CalibrationException, SizeMismatchError, ConsistencyError,
    CalibrationFailedError, InvalidConfigurationError
)
from .hand_eye import HandEyeCalibrator, MotionPair, build_motion_pairs, compute_hand_eye
from .multi_camera import (
    MultiCameraPoseEstimator, RigPoseEstimate, RigPoseRejection,
    estimate_rig_pose, estimate_rig_pose_bundles, project_points
)
from .online_rotation import OnlineRotationEstimator
from .point_pose import PointPoseSolver
from .pose import Pose, ErrorPose

__all__ = [
    'SolverConfig',
    'load_solver_config',
    'CalibrationException',
    'SizeMismatchError',
    'ConsistencyError',
    'CalibrationFailedError',
    'InvalidConfigurationError',
    'HandEyeCalibrator',
    'MotionPair',
    'build_motion_pairs',
    'compute_hand_eye',
    'MultiCameraPoseEstimator',
    'RigPoseEstimate',
    'RigPoseRejection',
    'estimate_rig_pose',
    'estimate_rig_pose_bundles',
    'project_points',
    'OnlineRotationEstimator',
    'PointPoseSolver',
    'Pose',
    'ErrorPose',
]
