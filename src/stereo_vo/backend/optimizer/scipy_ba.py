"""Bundle adjustment using scipy.optimize.least_squares.

Bundle adjustment jointly optimizes keyframe poses and landmark positions
by minimizing the sum of squared reprojection errors:

    minimize sum_i rho(||observed_i - project(K_c, T_c_rig @ T_rig_world_j @ X_k)||^2)

Where:
- observed_i is a 2D pixel observation from the left or right camera c
- T_rig_world_j is the pose of keyframe j
- X_k is the world position of landmark k
- rho is the robust loss
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import cv2
import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix

from ...frontend.pose import SE3

if TYPE_CHECKING:
    from ...frontend.camera import StereoRig
    from ...frontend.frame import Frame
    from ...frontend.map_point import MapPoint

_MIN_DEPTH = 1e-6


@dataclass
class BAObservations:
    """Flattened observation table for bundle adjustment.

    Attributes:
        keyframe_idx: (M,) index into the keyframe list (not keyframe_id)
        point_idx: (M,) index into the landmark list (not map point id)
        camera_idx: (M,) 0 for the left camera, 1 for the right camera
        pixels: Mx2 observed pixel coordinates
    """

    keyframe_idx: np.ndarray
    point_idx: np.ndarray
    camera_idx: np.ndarray
    pixels: np.ndarray

    def __len__(self) -> int:
        return len(self.keyframe_idx)


@dataclass
class BAResult:
    """Result of bundle adjustment optimization."""

    success: bool
    # keyframe_id -> optimized T_rig_world
    optimized_poses: dict[int, SE3] = field(default_factory=dict)
    # map point id -> optimized world position
    optimized_points: dict[int, np.ndarray] = field(default_factory=dict)
    initial_cost: float = 0.0
    final_cost: float = 0.0
    iterations: int = 0
    message: str = ""


def _rvecs_to_rotations(rvecs: np.ndarray) -> np.ndarray:
    """Convert Nx3 Rodrigues vectors to Nx3x3 rotation matrices."""
    rotations = [cv2.Rodrigues(r.reshape(3, 1))[0] for r in rvecs]
    return np.array(rotations).reshape(-1, 3, 3)


class ScipyBundleAdjustment:
    """Stereo bundle adjustment using scipy's trust region reflective solver.

    Optimizes keyframe poses and landmark positions to minimize reprojection
    error in both cameras of the rig. Uses the sparse Jacobian structure for
    efficiency.
    """

    def __init__(
        self,
        max_iterations: int = 50,
        ftol: float = 1e-10,
        xtol: float = 1e-10,
        loss: str = "huber",
        min_observations: int = 10,
    ) -> None:
        """Initialize bundle adjustment optimizer.

        Args:
            max_iterations: Maximum solver iterations (scaled by parameter count)
            ftol: Function tolerance for convergence
            xtol: Parameter tolerance for convergence
            loss: Loss function ("linear", "huber", "soft_l1", "cauchy")
            min_observations: Refuse to optimize with fewer observations
        """
        self._max_iterations = max_iterations
        self._ftol = ftol
        self._xtol = xtol
        self._loss = loss
        self._min_observations = min_observations

    def optimize(
        self,
        keyframes: list[Frame],
        map_points: list[MapPoint],
        rig: StereoRig,
        fix_first_pose: bool = True,
    ) -> BAResult:
        """Run bundle adjustment.

        Args:
            keyframes: Keyframes to optimize, oldest first
            map_points: Landmarks observed by those keyframes
            rig: Stereo rig providing intrinsics and extrinsics
            fix_first_pose: If True, hold the first keyframe fixed (gauge freedom)

        Returns:
            BAResult with optimized poses and points
        """
        if len(keyframes) == 0 or len(map_points) == 0:
            return BAResult(success=False, message="No keyframes or map points")

        observations = self._collect_observations(keyframes, map_points)
        if len(observations) < self._min_observations:
            return BAResult(
                success=False, message=f"Too few observations: {len(observations)}"
            )

        poses = [kf.pose for kf in keyframes]
        positions = np.array([mp.position for mp in map_points])
        n_fixed = 1 if fix_first_pose else 0

        cameras = (rig.left, rig.right)
        intrinsics = np.stack([cam.K for cam in cameras])
        ext_R = np.stack([cam.pose.rotation for cam in cameras])
        ext_t = np.stack([cam.pose.translation for cam in cameras])

        fixed_R = np.array([p.rotation for p in poses[:n_fixed]]).reshape(-1, 3, 3)
        fixed_t = np.array([p.translation for p in poses[:n_fixed]]).reshape(-1, 3)

        x0 = self._pack_parameters(poses[n_fixed:], positions)
        n_free = len(poses) - n_fixed

        def residuals(params: np.ndarray) -> np.ndarray:
            pose_params = params[: 6 * n_free].reshape(-1, 6)
            points = params[6 * n_free :].reshape(-1, 3)
            R = np.concatenate([fixed_R, _rvecs_to_rotations(pose_params[:, :3])])
            t = np.concatenate([fixed_t, pose_params[:, 3:]])
            return self._compute_residuals(
                R, t, points, observations, intrinsics, ext_R, ext_t
            )

        initial_cost = 0.5 * float(np.sum(residuals(x0) ** 2))

        try:
            result = least_squares(
                fun=residuals,
                x0=x0,
                jac_sparsity=self._build_sparsity_matrix(
                    observations, n_free, len(map_points), n_fixed
                ),
                method="trf",
                loss=self._loss,
                ftol=self._ftol,
                xtol=self._xtol,
                max_nfev=self._max_iterations * len(x0),
                verbose=0,
            )
        except (ValueError, np.linalg.LinAlgError) as e:
            return BAResult(success=False, message=f"Optimization failed: {e}")

        final_cost = 0.5 * float(np.sum(result.fun**2))
        if not np.isfinite(final_cost) or final_cost > initial_cost * 10:
            return BAResult(
                success=False,
                message="Optimization diverged",
                initial_cost=initial_cost,
                final_cost=final_cost,
            )

        optimized_poses, optimized_points = self._unpack_parameters(
            result.x, keyframes, map_points, n_fixed
        )

        return BAResult(
            success=bool(result.success) or final_cost < initial_cost,
            optimized_poses=optimized_poses,
            optimized_points=optimized_points,
            initial_cost=initial_cost,
            final_cost=final_cost,
            iterations=int(result.nfev),
            message=str(result.message),
        )

    @staticmethod
    def _collect_observations(
        keyframes: list[Frame], map_points: list[MapPoint]
    ) -> BAObservations:
        """Collect every observation of the landmarks made by the keyframes."""
        kf_index = {id(kf): idx for idx, kf in enumerate(keyframes)}

        kf_idx, pt_idx, cam_idx, pixels = [], [], [], []
        for point_idx, mp in enumerate(map_points):
            for feat in mp.observations:
                frame = feat.frame
                if frame is None or id(frame) not in kf_index:
                    continue
                kf_idx.append(kf_index[id(frame)])
                pt_idx.append(point_idx)
                cam_idx.append(0 if feat.is_on_left_image else 1)
                pixels.append(feat.position)

        return BAObservations(
            keyframe_idx=np.asarray(kf_idx, dtype=np.int64),
            point_idx=np.asarray(pt_idx, dtype=np.int64),
            camera_idx=np.asarray(cam_idx, dtype=np.int64),
            pixels=np.asarray(pixels, dtype=np.float64).reshape(-1, 2),
        )

    @staticmethod
    def _pack_parameters(poses: list[SE3], positions: np.ndarray) -> np.ndarray:
        """Pack free poses and points: [rvec_0, tvec_0, ..., point_0, ...]."""
        pose_params = [pose.to_vector() for pose in poses]
        return np.concatenate(pose_params + [positions.ravel()]).astype(np.float64)

    @staticmethod
    def _unpack_parameters(
        params: np.ndarray,
        keyframes: list[Frame],
        map_points: list[MapPoint],
        n_fixed: int,
    ) -> tuple[dict[int, SE3], dict[int, np.ndarray]]:
        n_free = len(keyframes) - n_fixed
        pose_params = params[: 6 * n_free].reshape(-1, 6)
        points = params[6 * n_free :].reshape(-1, 3)

        optimized_poses = {
            kf.keyframe_id: SE3.from_vector(x)
            for kf, x in zip(keyframes[n_fixed:], pose_params)
        }
        optimized_points = {
            mp.id: point.copy() for mp, point in zip(map_points, points)
        }
        return optimized_poses, optimized_points

    @staticmethod
    def _compute_residuals(
        R: np.ndarray,
        t: np.ndarray,
        points: np.ndarray,
        observations: BAObservations,
        intrinsics: np.ndarray,
        ext_R: np.ndarray,
        ext_t: np.ndarray,
    ) -> np.ndarray:
        """Compute reprojection residuals for all observations."""
        kf = observations.keyframe_idx
        cam = observations.camera_idx

        p_rig = np.einsum("nij,nj->ni", R[kf], points[observations.point_idx]) + t[kf]
        p_cam = np.einsum("nij,nj->ni", ext_R[cam], p_rig) + ext_t[cam]

        K = intrinsics[cam]
        z = np.maximum(p_cam[:, 2], _MIN_DEPTH)
        u = K[:, 0, 0] * p_cam[:, 0] / z + K[:, 0, 2]
        v = K[:, 1, 1] * p_cam[:, 1] / z + K[:, 1, 2]

        return (observations.pixels - np.column_stack([u, v])).ravel()

    @staticmethod
    def _build_sparsity_matrix(
        observations: BAObservations,
        n_free_poses: int,
        n_points: int,
        n_fixed: int,
    ) -> lil_matrix:
        """Build the sparse Jacobian structure.

        Each observation only depends on the 6 parameters of its keyframe
        (unless fixed) and the 3 parameters of its landmark.
        """
        pose_params = 6 * n_free_poses
        n_params = pose_params + 3 * n_points
        sparsity = lil_matrix((2 * len(observations), n_params), dtype=int)

        for i, (kf, pt) in enumerate(
            zip(observations.keyframe_idx, observations.point_idx)
        ):
            rows = (2 * i, 2 * i + 1)
            if kf >= n_fixed:
                col = (kf - n_fixed) * 6
                for row in rows:
                    sparsity[row, col : col + 6] = 1
            col = pose_params + pt * 3
            for row in rows:
                sparsity[row, col : col + 3] = 1

        return sparsity
