"""SE(3) rigid body transformations."""

from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np


@dataclass
class SE3:
    """Rigid body transformation (rotation + translation) in SE(3).

    An SE3 maps points from a source frame into a target frame:

        p_target = R @ p_source + t

    Frame poses in this package are stored as T_camera_world, i.e. they
    map world points into the camera frame. The camera position in world
    coordinates is therefore ``-R.T @ t`` (see ``center``).

    Attributes:
        rotation: 3x3 orthonormal rotation matrix (det = +1)
        translation: 3D translation vector
    """

    rotation: np.ndarray  # 3x3 rotation matrix
    translation: np.ndarray  # (3,) translation vector

    def __post_init__(self) -> None:
        """Validate and normalize inputs."""
        self.rotation = np.asarray(self.rotation, dtype=np.float64)
        self.translation = np.asarray(self.translation, dtype=np.float64).flatten()

        if self.rotation.shape != (3, 3):
            raise ValueError(f"Rotation must be 3x3, got {self.rotation.shape}")
        if self.translation.shape != (3,):
            raise ValueError(
                f"Translation must be (3,), got {self.translation.shape}"
            )

    @classmethod
    def identity(cls) -> SE3:
        """Create the identity transformation."""
        return cls(rotation=np.eye(3), translation=np.zeros(3))

    @classmethod
    def from_translation(cls, t: np.ndarray) -> SE3:
        """Create a pure translation."""
        return cls(rotation=np.eye(3), translation=t)

    @classmethod
    def from_matrix(cls, T: np.ndarray) -> SE3:
        """Create SE3 from a 4x4 homogeneous transformation matrix.

        Args:
            T: 4x4 transformation matrix [[R, t], [0, 1]]

        Returns:
            SE3 transformation
        """
        T = np.asarray(T)
        if T.shape != (4, 4):
            raise ValueError(f"Transform must be 4x4, got {T.shape}")
        return cls(rotation=T[:3, :3], translation=T[:3, 3])

    @classmethod
    def from_rvec_tvec(cls, rvec: np.ndarray, tvec: np.ndarray) -> SE3:
        """Create SE3 from an OpenCV Rodrigues vector and translation.

        This is the parameterization used by the pose and bundle
        adjustment optimizers.

        Args:
            rvec: 3D Rodrigues rotation vector (axis * angle)
            tvec: 3D translation vector

        Returns:
            SE3 transformation
        """
        R, _ = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64).reshape(3, 1))
        return cls(rotation=R, translation=np.asarray(tvec).flatten())

    def to_matrix(self) -> np.ndarray:
        """Return the 4x4 homogeneous transformation matrix."""
        T = np.eye(4, dtype=np.float64)
        T[:3, :3] = self.rotation
        T[:3, 3] = self.translation
        return T

    def to_rvec_tvec(self) -> tuple[np.ndarray, np.ndarray]:
        """Convert to an OpenCV Rodrigues vector and translation."""
        rvec, _ = cv2.Rodrigues(self.rotation)
        return rvec.flatten(), self.translation.copy()

    def to_vector(self) -> np.ndarray:
        """Return the 6-vector [rvec, tvec] used as optimizer parameters."""
        rvec, tvec = self.to_rvec_tvec()
        return np.concatenate([rvec, tvec])

    @classmethod
    def from_vector(cls, x: np.ndarray) -> SE3:
        """Inverse of ``to_vector``."""
        x = np.asarray(x, dtype=np.float64)
        return cls.from_rvec_tvec(x[:3], x[3:6])

    def inverse(self) -> SE3:
        """Compute the inverse transformation.

        For T = [R, t], the inverse is [R^T, -R^T @ t].
        """
        R_inv = self.rotation.T
        return SE3(rotation=R_inv, translation=-R_inv @ self.translation)

    def compose(self, other: SE3) -> SE3:
        """Compose with another transformation: self @ other.

        ``other`` is applied first. For example
        ``T_camera_rig.compose(T_rig_world)`` gives T_camera_world.
        """
        R = self.rotation @ other.rotation
        t = self.rotation @ other.translation + self.translation
        return SE3(rotation=R, translation=t)

    def transform_points(self, points: np.ndarray) -> np.ndarray:
        """Apply the transformation to an Nx3 array of points."""
        points = np.asarray(points, dtype=np.float64)
        if points.ndim == 1:
            points = points.reshape(1, 3)

        if points.shape[1] != 3:
            raise ValueError(f"Points must be Nx3, got {points.shape}")

        return points @ self.rotation.T + self.translation

    def transform_point(self, point: np.ndarray) -> np.ndarray:
        """Apply the transformation to a single 3D point."""
        point = np.asarray(point, dtype=np.float64).flatten()
        return self.rotation @ point + self.translation

    @property
    def center(self) -> np.ndarray:
        """Return the target frame origin in source coordinates.

        For a T_camera_world pose this is the camera center in the world.
        """
        return -self.rotation.T @ self.translation

    @property
    def is_valid(self) -> bool:
        """Return True if rotation and translation are finite."""
        return bool(
            np.isfinite(self.rotation).all() and np.isfinite(self.translation).all()
        )

    def copy(self) -> SE3:
        """Return a deep copy."""
        return SE3(rotation=self.rotation.copy(), translation=self.translation.copy())

    def __repr__(self) -> str:
        """Return string representation."""
        t = self.translation
        rvec, _ = self.to_rvec_tvec()
        angle = float(np.degrees(np.linalg.norm(rvec)))
        return f"SE3(t=[{t[0]:.3f}, {t[1]:.3f}, {t[2]:.3f}], angle={angle:.2f}deg)"

    def __matmul__(self, other: SE3) -> SE3:
        """Composition operator: T_result = T1 @ T2."""
        return self.compose(other)
