"""
Closed-form 2D-3D point pose for bootstrapping the rig refinement.

Supports a planar-homography decomposition (OpenCV IPPE, polished with a
few Levenberg-Marquardt steps) for coplanar targets and EPnP for general
point sets. No lens distortion is modelled: observations are
expected to be undistorted pixels.
"""

import logging
import cv2
import numpy as np
from typing import Optional

from .exceptions import CalibrationFailedError
from .pose import Pose
from .utils import quaternion_from_matrix

METHODS = ('auto', 'planar_homography', 'epnp')

REFINE_CRITERIA = (cv2.TERM_CRITERIA_EPS + cv2.TERM_CRITERIA_COUNT, 50, 1e-12)


class PointPoseSolver:
    """
    Estimates the pose of a target relative to one camera.

    The returned pose maps target coordinates into camera coordinates.
    """

    def __init__(self, method: str = 'auto', planarity_tolerance: float = 1e-6,
                 logger: Optional[logging.Logger] = None):
        """
        Args:
            method: 'auto', 'planar_homography' or 'epnp'
            planarity_tolerance: ratio of the smallest to the largest singular
                value of the centred points below which 'auto' treats them as planar
            logger: diagnostics sink
        """
        if method not in METHODS:
            raise ValueError(f"Unknown point pose method: {method}")
        self.method = method
        self.planarity_tolerance = planarity_tolerance
        self.logger = logger or logging.getLogger(__name__)

    def is_planar(self, points3d: np.ndarray) -> bool:
        centred = points3d - points3d.mean(axis=0)
        s = np.linalg.svd(centred, compute_uv=False)
        if s[0] == 0:
            return True
        return s[-1] <= self.planarity_tolerance * s[0]

    def estimate(self, points2d: np.ndarray, points3d: np.ndarray,
                 camera_matrix: np.ndarray) -> Pose:
        """
        Estimate the target pose.

        Args:
            points2d: (N, 2) pixel observations
            points3d: (N, 3) target points, N >= 4
            camera_matrix: 3x3 intrinsic matrix

        Returns:
            Pose mapping target points into the camera frame

        Raises:
            CalibrationFailedError: too few points or a degenerate configuration
        """
        points2d = np.ascontiguousarray(np.asarray(points2d, dtype=np.float64).reshape(-1, 2))
        points3d = np.ascontiguousarray(np.asarray(points3d, dtype=np.float64).reshape(-1, 3))
        camera_matrix = np.asarray(camera_matrix, dtype=np.float64)

        if len(points2d) != len(points3d):
            raise ValueError("points2d and points3d must have the same length")
        if len(points3d) < 4:
            raise CalibrationFailedError("point pose estimation",
                                         f"Need at least 4 correspondences, got {len(points3d)}")

        method = self.method
        if method == 'auto':
            method = 'planar_homography' if self.is_planar(points3d) else 'epnp'

        self.logger.debug(f"Point pose from {len(points3d)} correspondences using {method}")

        if method == 'planar_homography':
            return self._planar_homography(points2d, points3d, camera_matrix)
        return self._epnp(points2d, points3d, camera_matrix)

    def _planar_homography(self, points2d: np.ndarray, points3d: np.ndarray,
                           camera_matrix: np.ndarray) -> Pose:
        # Frame of the supporting plane: origin at the centroid, z along the normal
        centroid = points3d.mean(axis=0)
        _, _, vt = np.linalg.svd(points3d - centroid)
        e1, e2 = vt[0], vt[1]
        plane_frame = np.column_stack([e1, e2, np.cross(e1, e2)])
        plane_points = np.ascontiguousarray((points3d - centroid) @ plane_frame)
        plane_points[:, 2] = 0.0

        # IPPE decomposes the plane-to-image homography in closed form
        success, rvec, tvec = cv2.solvePnP(
            plane_points, points2d,
            camera_matrix, None,
            flags=cv2.SOLVEPNP_IPPE
        )
        if not success or not np.all(np.isfinite(rvec)) or not np.all(np.isfinite(tvec)):
            raise CalibrationFailedError("point pose estimation", "Homography decomposition failed")

        rvec, tvec = cv2.solvePnPRefineLM(plane_points, points2d, camera_matrix, None,
                                          rvec, tvec, REFINE_CRITERIA)

        R, _ = cv2.Rodrigues(rvec)
        t = tvec.flatten()

        # x_cam = R * plane_frame^T * (X - centroid) + t
        R_target = R @ plane_frame.T
        t_target = t - R_target @ centroid
        return Pose(quaternion_from_matrix(R_target), t_target)

    def _epnp(self, points2d: np.ndarray, points3d: np.ndarray,
              camera_matrix: np.ndarray) -> Pose:
        success, rvec, tvec = cv2.solvePnP(
            points3d, points2d,
            camera_matrix, None,
            flags=cv2.SOLVEPNP_EPNP
        )
        if not success:
            raise CalibrationFailedError("point pose estimation", "EPnP did not converge")

        R, _ = cv2.Rodrigues(rvec)
        return Pose(quaternion_from_matrix(R), tvec.flatten())


def estimate_point_pose(points2d: np.ndarray, points3d: np.ndarray,
                        camera_matrix: np.ndarray, method: str = 'auto') -> Pose:
    """Shortcut for PointPoseSolver(method).estimate(...)."""
    return PointPoseSolver(method).estimate(points2d, points3d, camera_matrix)
