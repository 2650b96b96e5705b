"""
Pose refinement of a target observed by a rig of calibrated cameras.

Each camera k has a fixed pose in the rig frame (camera-to-rig) and a 3x3
intrinsic matrix. A target point X projects into camera k as

    x_c = camPose_k^-1 * rigPose * X,    pixel = dehomogenise(K_k x_c)

The rig pose is found by Levenberg-Marquardt over the stacked reprojection
error of all visible observations, optionally bootstrapped with a closed-form
point-pose solve in the camera that sees the most points.
"""

import logging
import numpy as np
from typing import List, Optional, Sequence, Tuple, Union
from dataclasses import dataclass, field
from scipy.optimize import least_squares
from scipy.spatial.transform import Rotation

from .config import SolverConfig
from .exceptions import CalibrationFailedError, ConsistencyError
from .point_pose import PointPoseSolver
from .pose import Pose, ErrorPose

logger = logging.getLogger(__name__)

NUM_PARAMS = 6

_TERMINATION = {
    -1: 'improper_input',
    0: 'max_iterations',
    1: 'gtol',
    2: 'ftol',
    3: 'xtol',
    4: 'ftol_xtol',
}


@dataclass(frozen=True, eq=False)
class RigPoseEstimate:
    """Successful refinement."""
    pose: ErrorPose
    residual: float
    num_observations: int = 0
    num_iterations: int = 0
    status: str = ''

    success = True

    @property
    def weight(self) -> float:
        """Inverse quality score, lower is better."""
        return self.residual


@dataclass(frozen=True, eq=False)
class RigPoseRejection:
    """Refinement skipped because of insufficient observations."""
    reason: str
    min_observations: int = 0
    max_observations: int = 0
    pose: ErrorPose = field(default_factory=ErrorPose.identity)

    success = False

    @property
    def weight(self) -> float:
        return -1.0


RigPoseResult = Union[RigPoseEstimate, RigPoseRejection]


@dataclass
class FilteredObservations:
    """Visible observations of one point range, grouped camera-major."""
    observations: List[Tuple[int, int]]   # (local point index, camera index)
    points3d: np.ndarray                  # all points of the range, (M', 3)
    points2d_per_camera: List[np.ndarray]
    points3d_per_camera: List[np.ndarray]
    counts: List[int]

    @property
    def total(self) -> int:
        return len(self.observations)

    def measurements(self) -> np.ndarray:
        """Stacked [x0, y0, x1, y1, ...] in camera-major, point-minor order."""
        if self.total == 0:
            return np.zeros(0)
        return np.concatenate([p.reshape(-1) for p in self.points2d_per_camera])


@dataclass
class OptimizationState:
    """Parameters and outcome of one refinement run."""
    params: np.ndarray
    residuals: np.ndarray = field(default_factory=lambda: np.zeros(0))
    iterations: int = 0
    status: str = 'not_started'


def project_points(points3d: np.ndarray, rig_pose: Pose, cam_pose: Pose,
                   camera_matrix: np.ndarray) -> np.ndarray:
    """
    Project target points into a rig camera.

    Returns:
        (N, 2) pixel coordinates
    """
    points_cam = (cam_pose.inverse() * rig_pose).transform_points(points3d)
    uvw = points_cam @ np.asarray(camera_matrix, dtype=float).T
    return uvw[:, :2] / uvw[:, 2:3]


class ReprojectionObjective:
    """Residuals of all observations as a function of the 6 rig pose parameters."""

    def __init__(self, filtered: FilteredObservations, cam_poses: Sequence[Pose],
                 cam_matrices: Sequence[np.ndarray]):
        self.measurements = filtered.measurements()
        self.points_per_camera = filtered.points3d_per_camera
        self.cam_matrices = [np.asarray(K, dtype=float) for K in cam_matrices]

        # rig-to-camera transforms
        self.cam_rotations = []
        self.cam_translations = []
        for cam_pose in cam_poses:
            inv = cam_pose.inverse()
            self.cam_rotations.append(inv.rotation_matrix())
            self.cam_translations.append(inv.translation)

    def predict(self, params: np.ndarray) -> np.ndarray:
        R = Rotation.from_rotvec(params[3:6]).as_matrix()
        t = params[0:3]
        predicted = []
        for k, points in enumerate(self.points_per_camera):
            if len(points) == 0:
                continue
            points_rig = points @ R.T + t
            points_cam = points_rig @ self.cam_rotations[k].T + self.cam_translations[k]
            uvw = points_cam @ self.cam_matrices[k].T
            predicted.append((uvw[:, :2] / uvw[:, 2:3]).reshape(-1))
        return np.concatenate(predicted) if predicted else np.zeros(0)

    def __call__(self, params: np.ndarray) -> np.ndarray:
        return self.predict(params) - self.measurements


class MultiCameraPoseEstimator:
    """
    Nonlinear least-squares rig pose estimator with visibility gating.

    Holds only configuration; each call is independent, so one instance may
    serve several threads.
    """

    def __init__(self, config: Optional[SolverConfig] = None,
                 logger: Optional[logging.Logger] = None,
                 point_pose_solver: Optional[PointPoseSolver] = None):
        self.config = config or SolverConfig()
        self.logger = logger or logging.getLogger(__name__)
        self.point_pose_solver = point_pose_solver or PointPoseSolver(
            self.config.initialization, logger=self.logger)

    def check_consistency(self, points3d, points2d, weights, cam_poses, cam_matrices):
        """
        Validate input shapes.

        Raises:
            ConsistencyError
        """
        num_points = len(points3d)
        num_cameras = len(weights)

        if num_points < 3:
            self.logger.error("Multi-camera pose estimation requires at least 3 points")
            raise ConsistencyError("Pose estimation requires at least 3 points",
                                   num_points=num_points)

        if num_cameras == 0:
            self.logger.error("No camera observations given")
            raise ConsistencyError("At least one camera is required")

        if len(points2d) != num_cameras or len(cam_poses) != num_cameras \
                or len(cam_matrices) != num_cameras:
            self.logger.error("Input sets have different numbers of cameras")
            raise ConsistencyError(
                "All input sets must have the same number of cameras",
                points2d=len(points2d), weights=num_cameras,
                cam_poses=len(cam_poses), cam_matrices=len(cam_matrices))

        for k in range(num_cameras):
            if len(points2d[k]) != num_points or len(weights[k]) != num_points:
                self.logger.error(f"Camera {k} has a measurement count different from the points")
                raise ConsistencyError(
                    "All cameras must have same number of measurements as 3D points",
                    camera=k, points2d=len(points2d[k]), weights=len(weights[k]),
                    num_points=num_points)

    def filter_observations(self, points3d, points2d, weights,
                            start: int, end: int) -> FilteredObservations:
        """Keep observations with non-zero weight among points start..end (inclusive)."""
        points3d = np.asarray(points3d, dtype=float).reshape(-1, 3)
        num_cameras = len(weights)

        observations = []
        p2d = [[] for _ in range(num_cameras)]
        p3d = [[] for _ in range(num_cameras)]
        counts = [0] * num_cameras

        for k in range(num_cameras):
            cam_points = np.asarray(points2d[k], dtype=float).reshape(-1, 2)
            for i in range(start, end + 1):
                if weights[k][i] != 0:
                    observations.append((i - start, k))
                    p2d[k].append(cam_points[i])
                    p3d[k].append(points3d[i])
                    counts[k] += 1

        return FilteredObservations(
            observations=observations,
            points3d=points3d[start:end + 1],
            points2d_per_camera=[np.array(p, dtype=float).reshape(-1, 2) for p in p2d],
            points3d_per_camera=[np.array(p, dtype=float).reshape(-1, 3) for p in p3d],
            counts=counts,
        )

    def _resolve_range(self, num_points: int, point_range) -> Tuple[int, int]:
        if point_range is None:
            return 0, num_points - 1
        start, end = point_range
        if end is None or end == -1:
            end = num_points - 1
        if not 0 <= start <= end < num_points:
            raise ConsistencyError("Point range outside the reference points",
                                   start=start, end=end, num_points=num_points)
        return start, end

    def bootstrap(self, filtered: FilteredObservations, camera: int,
                  cam_poses: Sequence[Pose], cam_matrices: Sequence[np.ndarray]) -> Pose:
        """Initial rig pose from a point-pose solve in one camera."""
        self.logger.debug(f"Compute initial pose with {filtered.counts[camera]} "
                          f"observations for camera {camera}")
        target_in_camera = self.point_pose_solver.estimate(
            filtered.points2d_per_camera[camera],
            filtered.points3d_per_camera[camera],
            cam_matrices[camera])
        initial = cam_poses[camera] * target_in_camera
        self.logger.debug(f"Initial pose {initial}")
        return initial

    def refine(self, objective: ReprojectionObjective, initial_pose: Pose) -> OptimizationState:
        """Run the damped least-squares engine from initial_pose."""
        state = OptimizationState(params=initial_pose.to_vector())
        num_residuals = len(objective.measurements)

        if num_residuals >= NUM_PARAMS:
            # 'lm' counts the finite-difference Jacobian evaluations as well
            method = 'lm'
            max_nfev = self.config.max_iterations * (NUM_PARAMS + 1)
        else:
            method = 'trf'
            max_nfev = self.config.max_iterations

        # A point on a camera's principal plane has no finite projection
        with np.errstate(divide='ignore', invalid='ignore'):
            initial_residuals = objective(state.params)
        if not np.all(np.isfinite(initial_residuals)):
            self.logger.error("Reprojection residuals are not finite at the initial pose")
            raise CalibrationFailedError("pose refinement",
                                         "Residuals are not finite at the initial pose")

        try:
            result = least_squares(
                objective, state.params,
                method=method,
                max_nfev=max_nfev,
                ftol=self.config.tolerance,
                xtol=self.config.tolerance,
                x_scale=1.0,
            )
        except ValueError as e:
            raise CalibrationFailedError("pose refinement", str(e)) from e

        state.params = result.x
        state.residuals = result.fun
        if result.njev is not None:
            state.iterations = int(result.njev)
        else:
            state.iterations = int(result.nfev) // (NUM_PARAMS + 1)
        state.status = _TERMINATION.get(result.status, str(result.status))
        return state

    def _estimate(self, points3d, points2d, weights, cam_poses, cam_matrices,
                  min_correspondences: int, initial_pose: Optional[Pose],
                  start: int, end: int) -> RigPoseResult:
        filtered = self.filter_observations(points3d, points2d, weights, start, end)
        self.logger.debug(f"{filtered.total} observations found.")

        min_obs = min(filtered.counts)
        max_obs = max(filtered.counts)
        best_camera = int(np.argmax(filtered.counts))

        if min_obs < min_correspondences:
            self.logger.warning(f"Not enough observations. Only {min_obs} observations "
                                f"available for some camera")
            return RigPoseRejection('too_few_correspondences', min_obs, max_obs)

        if filtered.total == 0:
            self.logger.warning("No visible observations in any camera")
            return RigPoseRejection('no_observations', min_obs, max_obs)

        if initial_pose is None and max_obs < self.config.min_bootstrap_points:
            self.logger.warning(f"Not enough observations for the initial pose: "
                                f"best camera has {max_obs}")
            return RigPoseRejection('too_few_points_for_bootstrap', min_obs, max_obs)

        if initial_pose is None:
            initial_pose = self.bootstrap(filtered, best_camera, cam_poses, cam_matrices)

        self.logger.debug(f"Optimizing pose over {len(weights)} cameras using "
                          f"{filtered.total} observations")

        objective = ReprojectionObjective(filtered, cam_poses, cam_matrices)
        state = self.refine(objective, initial_pose)

        if not np.all(np.isfinite(state.params)):
            raise CalibrationFailedError("pose refinement", "Optimisation diverged")

        residual = float(np.sqrt(np.mean(state.residuals ** 2)))
        # Isotropic approximation, not a propagated covariance
        final_pose = ErrorPose.from_pose(Pose.from_vector(state.params),
                                         np.eye(6) * residual)
        self.logger.debug(f"Estimated pose: {final_pose}, residual: {residual}")

        return RigPoseEstimate(pose=final_pose, residual=residual,
                               num_observations=filtered.total,
                               num_iterations=state.iterations,
                               status=state.status)

    def estimate(self, points3d, points2d, weights, cam_poses: Sequence[Pose],
                 cam_matrices: Sequence[np.ndarray],
                 min_correspondences: Optional[int] = None,
                 initial_pose: Optional[Pose] = None,
                 point_range: Optional[Tuple[int, Optional[int]]] = None) -> RigPoseResult:
        """
        Estimate the rig pose of the target.

        Args:
            points3d: M target points
            points2d: per camera, M pixel observations
            weights: per camera, M weights; 0 marks a point as not visible
            cam_poses: per camera, its pose in the rig frame
            cam_matrices: per camera, 3x3 intrinsics
            min_correspondences: minimum visible points every camera must have
                (defaults to config.min_correspondences)
            initial_pose: seed; when None a point-pose bootstrap is used
            point_range: inclusive (start, end) sub-range of the points

        Returns:
            RigPoseEstimate or RigPoseRejection

        Raises:
            ConsistencyError: malformed input shapes
            CalibrationFailedError: bootstrap or optimisation failure
        """
        self.check_consistency(points3d, points2d, weights, cam_poses, cam_matrices)
        if min_correspondences is None:
            min_correspondences = self.config.min_correspondences
        start, end = self._resolve_range(len(points3d), point_range)
        return self._estimate(points3d, points2d, weights, cam_poses, cam_matrices,
                              min_correspondences, initial_pose, start, end)

    def estimate_bundles(self, points3d, points2d, weights, cam_poses: Sequence[Pose],
                         cam_matrices: Sequence[np.ndarray], bundle_sizes: Sequence[int],
                         min_correspondences: Optional[int] = None) -> List[RigPoseResult]:
        """
        Estimate one pose per local bundle.

        The points are split into consecutive bundles of the given sizes; each
        bundle is posed independently, without an initial pose.
        """
        self.check_consistency(points3d, points2d, weights, cam_poses, cam_matrices)
        if min_correspondences is None:
            min_correspondences = self.config.min_correspondences

        bundle_sizes = [int(s) for s in bundle_sizes]
        if any(s < 1 for s in bundle_sizes) or sum(bundle_sizes) > len(points3d):
            raise ConsistencyError("Bundle sizes must be positive and fit the point list",
                                   bundle_sizes=bundle_sizes, num_points=len(points3d))

        self.logger.debug(f"Processing {len(bundle_sizes)} local bundles...")

        results = []
        offset = 0
        for index, size in enumerate(bundle_sizes):
            self.logger.debug(f"Local bundle {index} has {size} points. "
                              f"Offset in global point list: {offset}")
            results.append(self._estimate(points3d, points2d, weights, cam_poses, cam_matrices,
                                          min_correspondences, None, offset, offset + size - 1))
            offset += size
        return results


def estimate_rig_pose(points3d, points2d, weights, cam_poses, cam_matrices,
                      min_correspondences: int, initial_pose: Optional[Pose] = None,
                      point_range: Optional[Tuple[int, Optional[int]]] = None,
                      config: Optional[SolverConfig] = None,
                      logger: Optional[logging.Logger] = None) -> RigPoseResult:
    """Module-level shortcut for MultiCameraPoseEstimator.estimate."""
    estimator = MultiCameraPoseEstimator(config, logger)
    return estimator.estimate(points3d, points2d, weights, cam_poses, cam_matrices,
                              min_correspondences, initial_pose, point_range)


def estimate_rig_pose_bundles(points3d, points2d, weights, cam_poses, cam_matrices,
                              min_correspondences: int, bundle_sizes: Sequence[int],
                              config: Optional[SolverConfig] = None,
                              logger: Optional[logging.Logger] = None
                              ) -> Tuple[List[ErrorPose], List[float]]:
    """
    Pose every local bundle.

    Returns:
        (poses, weights); a rejected bundle has an identity pose and weight -1
    """
    estimator = MultiCameraPoseEstimator(config, logger)
    results = estimator.estimate_bundles(points3d, points2d, weights, cam_poses, cam_matrices,
                                         bundle_sizes, min_correspondences)
    return [r.pose for r in results], [r.weight for r in results]
