"""Pose-only reprojection optimization using scipy.optimize.least_squares.

The problem has a single free variable, the frame pose T_camera_world,
and one 2D reprojection residual per observed landmark:

    r_i = observed_i - project(K, T_camera_rig @ T_rig_world @ X_i)

Landmark positions and the camera calibration are held fixed.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np
from scipy.optimize import least_squares

from .pose import SE3

_MIN_DEPTH = 1e-6


@dataclass
class PoseOnlyProblem:
    """Per-call description of a pose-only optimization problem.

    Attributes:
        initial_pose: Seed T_rig_world
        points_world: Nx3 fixed landmark positions
        observations: Nx2 observed pixels
        camera_matrix: 3x3 intrinsics of the observing camera
        extrinsic: T_camera_rig of the observing camera
        active: (N,) bool, residuals taking part in this optimization
        robust: Apply the per-edge Huber kernel instead of plain least squares
    """

    initial_pose: SE3
    points_world: np.ndarray
    observations: np.ndarray
    camera_matrix: np.ndarray
    extrinsic: SE3 = field(default_factory=SE3.identity)
    active: np.ndarray | None = None
    robust: bool = True

    def __post_init__(self) -> None:
        self.points_world = np.asarray(self.points_world, dtype=np.float64)
        self.points_world = self.points_world.reshape(-1, 3)
        self.observations = np.asarray(self.observations, dtype=np.float64)
        self.observations = self.observations.reshape(-1, 2)
        if len(self.points_world) != len(self.observations):
            raise ValueError(
                f"Got {len(self.points_world)} points but "
                f"{len(self.observations)} observations"
            )
        if self.active is None:
            self.active = np.ones(len(self.points_world), dtype=bool)
        else:
            self.active = np.asarray(self.active, dtype=bool).reshape(-1)

    def __len__(self) -> int:
        return len(self.points_world)


@dataclass
class PoseOptimizationResult:
    """Result of a pose-only optimization.

    Attributes:
        pose: Optimized T_rig_world
        errors: (N,) squared reprojection error of every residual, active or
            not, at the optimized pose (chi2 with identity information)
        cost: Final 0.5 * sum of squared active residuals
        nfev: Number of residual evaluations used
    """

    pose: SE3
    errors: np.ndarray
    cost: float = 0.0
    nfev: int = 0


def reprojection_residuals(
    pose: SE3,
    points_world: np.ndarray,
    observations: np.ndarray,
    camera_matrix: np.ndarray,
    extrinsic: SE3,
) -> np.ndarray:
    """Return Nx2 residuals observed - projected for a given rig pose."""
    p_cam = (extrinsic @ pose).transform_points(points_world)
    # Keep points behind the camera finite; they end up as huge residuals.
    z = np.maximum(p_cam[:, 2], _MIN_DEPTH)
    fx, fy = camera_matrix[0, 0], camera_matrix[1, 1]
    cx, cy = camera_matrix[0, 2], camera_matrix[1, 2]
    u = fx * p_cam[:, 0] / z + cx
    v = fy * p_cam[:, 1] / z + cy
    return observations - np.column_stack([u, v])


def huber_edge_residuals(residuals: np.ndarray, delta: float) -> np.ndarray:
    """Rescale Nx2 residuals so each edge contributes its Huber cost.

    The kernel acts on the edge's squared error e = ||r||^2, not on u and v
    separately: rho(e) = e for sqrt(e) <= delta, 2 * delta * sqrt(e) - delta^2
    beyond. Returned rows satisfy ||r'||^2 = rho(e).
    """
    residuals = np.asarray(residuals, dtype=np.float64).reshape(-1, 2)
    norm = np.linalg.norm(residuals, axis=1)
    scale = np.ones_like(norm)
    outside = norm > delta
    ratio = delta / norm[outside]
    scale[outside] = np.sqrt(2.0 * ratio - ratio**2)
    return residuals * scale[:, None]


class PoseOptimizer:
    """Reusable engine solving PoseOnlyProblem instances.

    The pose is parameterized as [rvec, tvec] and refined with the trust
    region reflective method for a bounded number of residual evaluations.
    """

    def __init__(
        self,
        max_iterations: int = 10,
        huber_delta: float = 1.0,
        ftol: float = 1e-10,
        xtol: float = 1e-10,
    ) -> None:
        """Initialize optimizer.

        Args:
            max_iterations: Maximum residual evaluations per call
            huber_delta: Edge reprojection error (pixels) where the Huber
                kernel switches from quadratic to linear
            ftol: Function tolerance for convergence
            xtol: Parameter tolerance for convergence
        """
        self._max_iterations = max_iterations
        self._huber_delta = huber_delta
        self._ftol = ftol
        self._xtol = xtol

    def optimize(self, problem: PoseOnlyProblem) -> PoseOptimizationResult:
        """Optimize the pose over the active residuals of ``problem``."""
        pose = problem.initial_pose
        active = problem.active
        nfev = 0

        if np.count_nonzero(active) > 0:
            pts = problem.points_world[active]
            obs = problem.observations[active]

            def residuals(x: np.ndarray) -> np.ndarray:
                r = reprojection_residuals(
                    SE3.from_vector(x),
                    pts,
                    obs,
                    problem.camera_matrix,
                    problem.extrinsic,
                )
                if problem.robust:
                    r = huber_edge_residuals(r, self._huber_delta)
                return r.ravel()

            result = least_squares(
                fun=residuals,
                x0=pose.to_vector(),
                method="trf",
                loss="linear",
                ftol=self._ftol,
                xtol=self._xtol,
                max_nfev=self._max_iterations,
                verbose=0,
            )
            candidate = SE3.from_vector(result.x)
            if candidate.is_valid:
                pose = candidate
            nfev = int(result.nfev)

        errors_2d = reprojection_residuals(
            pose,
            problem.points_world,
            problem.observations,
            problem.camera_matrix,
            problem.extrinsic,
        )
        errors = np.sum(errors_2d**2, axis=1)
        cost = 0.5 * float(np.sum(errors[active]))

        return PoseOptimizationResult(pose=pose, errors=errors, cost=cost, nfev=nfev)
