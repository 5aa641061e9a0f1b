"""Pinhole camera model and stereo rig calibration."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import cv2
import numpy as np
import yaml

from .pose import SE3


def _as_points(points: np.ndarray, dim: int) -> tuple[np.ndarray, bool]:
    """Return points as an (N, dim) float64 array and whether input was single."""
    arr = np.asarray(points, dtype=np.float64)
    single = arr.ndim == 1
    arr = arr.reshape(-1, dim)
    return arr, single


@dataclass
class Camera:
    """Calibrated pinhole camera, one eye of a stereo rig.

    Pure geometric conversions between pixel, camera and world frames.
    The camera has no state beyond its fixed calibration, so every method
    is thread-safe.

    Attributes:
        K: 3x3 intrinsic matrix
        pose: Extrinsic T_camera_rig. Identity for the left camera, a pure
            translation of (-baseline, 0, 0) for a rectified right camera.
    """

    K: np.ndarray
    pose: SE3 = field(default_factory=SE3.identity)

    def __post_init__(self) -> None:
        self.K = np.asarray(self.K, dtype=np.float64)
        if self.K.shape != (3, 3):
            raise ValueError(f"K must be 3x3, got {self.K.shape}")

    @classmethod
    def from_intrinsics(
        cls,
        fx: float,
        fy: float,
        cx: float,
        cy: float,
        pose: SE3 | None = None,
    ) -> Camera:
        """Create a camera from focal lengths and principal point."""
        K = np.array([[fx, 0.0, cx], [0.0, fy, cy], [0.0, 0.0, 1.0]])
        return cls(K=K, pose=pose or SE3.identity())

    @property
    def fx(self) -> float:
        return float(self.K[0, 0])

    @property
    def fy(self) -> float:
        return float(self.K[1, 1])

    @property
    def cx(self) -> float:
        return float(self.K[0, 2])

    @property
    def cy(self) -> float:
        return float(self.K[1, 2])

    def world2camera(self, p_w: np.ndarray, T_c_w: SE3) -> np.ndarray:
        """Transform world points into this camera's frame.

        Args:
            p_w: 3D point or Nx3 points in world frame
            T_c_w: Rig pose T_rig_world of the observing frame

        Returns:
            Point(s) in this camera's frame, same shape as the input
        """
        pts, single = _as_points(p_w, 3)
        out = (self.pose @ T_c_w).transform_points(pts)
        return out[0] if single else out

    def camera2world(self, p_c: np.ndarray, T_c_w: SE3) -> np.ndarray:
        """Transform points from this camera's frame into the world."""
        pts, single = _as_points(p_c, 3)
        out = (self.pose @ T_c_w).inverse().transform_points(pts)
        return out[0] if single else out

    def camera2pixel(self, p_c: np.ndarray) -> np.ndarray:
        """Project camera-frame points onto the image plane."""
        pts, single = _as_points(p_c, 3)
        z = pts[:, 2]
        out = np.column_stack(
            [
                self.fx * pts[:, 0] / z + self.cx,
                self.fy * pts[:, 1] / z + self.cy,
            ]
        )
        return out[0] if single else out

    def pixel2camera(self, p_p: np.ndarray, depth: float = 1.0) -> np.ndarray:
        """Back-project pixels to camera-frame points at the given depth.

        With the default depth of 1 the result is the normalized image
        coordinate (x, y, 1) used by triangulation.
        """
        pts, single = _as_points(p_p, 2)
        out = np.column_stack(
            [
                (pts[:, 0] - self.cx) * depth / self.fx,
                (pts[:, 1] - self.cy) * depth / self.fy,
                np.full(len(pts), depth, dtype=np.float64),
            ]
        )
        return out[0] if single else out

    def pixel2world(
        self, p_p: np.ndarray, T_c_w: SE3, depth: float = 1.0
    ) -> np.ndarray:
        return self.camera2world(self.pixel2camera(p_p, depth), T_c_w)

    def world2pixel(self, p_w: np.ndarray, T_c_w: SE3) -> np.ndarray:
        return self.camera2pixel(self.world2camera(p_w, T_c_w))


def _load_euroc_calibration(
    yaml_path: str | Path,
) -> tuple[np.ndarray, np.ndarray, np.ndarray, tuple[int, int]]:
    """Parse an EuRoC sensor.yaml calibration file.

    Returns:
        Tuple of (K, distortion, T_BS, image_size) where T_BS is the 4x4
        sensor-to-body transform and image_size is (width, height)

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If a required entry is missing or malformed
    """
    path = Path(yaml_path)
    if not path.exists():
        raise FileNotFoundError(f"Calibration file not found: {yaml_path}")

    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}

    # [fu, fv, cu, cv]
    intrinsics = data.get("intrinsics")
    if intrinsics is None or len(intrinsics) != 4:
        raise ValueError(f"Invalid intrinsics in {yaml_path}")
    fx, fy, cx, cy = (float(v) for v in intrinsics)
    K = np.array([[fx, 0.0, cx], [0.0, fy, cy], [0.0, 0.0, 1.0]])

    # [k1, k2, p1, p2]
    distortion = data.get("distortion_coefficients")
    if distortion is None or len(distortion) != 4:
        raise ValueError(f"Invalid distortion coefficients in {yaml_path}")

    T_BS_data = (data.get("T_BS") or {}).get("data")
    if T_BS_data is None or len(T_BS_data) != 16:
        raise ValueError(f"Invalid T_BS transform in {yaml_path}")

    resolution = data.get("resolution")
    if resolution is None or len(resolution) != 2:
        raise ValueError(f"Invalid resolution in {yaml_path}")

    return (
        K,
        np.asarray(distortion, dtype=np.float64),
        np.asarray(T_BS_data, dtype=np.float64).reshape(4, 4),
        (int(resolution[0]), int(resolution[1])),
    )


class StereoRig:
    """A calibrated stereo pair of rectified pinhole cameras.

    The rig frame coincides with the left camera. The right camera's
    extrinsic is a pure translation along -x by the baseline, as produced
    by stereo rectification.
    """

    def __init__(
        self,
        left: Camera,
        right: Camera,
        image_size: tuple[int, int] | None = None,
        rectification_maps: tuple[np.ndarray, ...] | None = None,
    ) -> None:
        """Initialize stereo rig.

        Args:
            left: Left camera (rig origin)
            right: Right camera
            image_size: (width, height) of the images
            rectification_maps: Optional (left_x, left_y, right_x, right_y)
                remap tables. When absent, images are assumed rectified.
        """
        self.left = left
        self.right = right
        self._image_size = image_size
        self._maps = rectification_maps

    @classmethod
    def from_intrinsics(
        cls,
        fx: float,
        fy: float,
        cx: float,
        cy: float,
        baseline: float,
        image_size: tuple[int, int] | None = None,
    ) -> StereoRig:
        """Create a rig for already rectified images (e.g. KITTI, simulation)."""
        left = Camera.from_intrinsics(fx, fy, cx, cy)
        right = Camera.from_intrinsics(
            fx, fy, cx, cy, pose=SE3.from_translation([-baseline, 0.0, 0.0])
        )
        return cls(left, right, image_size=image_size)

    @classmethod
    def from_euroc(cls, cam0_yaml: str | Path, cam1_yaml: str | Path) -> StereoRig:
        """Create a rig from EuRoC sensor.yaml files, with rectification.

        The rectified projection matrices P1, P2 from cv2.stereoRectify
        define the two pinhole cameras. The right camera translation is
        K^-1 @ P2[:, 3].
        """
        K_l, D_l, T_BS_l, image_size = _load_euroc_calibration(cam0_yaml)
        K_r, D_r, T_BS_r, _ = _load_euroc_calibration(cam1_yaml)

        # T_cam1_cam0 = inv(T_BS_cam1) @ T_BS_cam0
        T_r_l = np.linalg.inv(T_BS_r) @ T_BS_l
        R = T_r_l[:3, :3]
        T = T_r_l[:3, 3:4]

        R1, R2, P1, P2, _Q, _roi1, _roi2 = cv2.stereoRectify(
            cameraMatrix1=K_l,
            distCoeffs1=D_l,
            cameraMatrix2=K_r,
            distCoeffs2=D_r,
            imageSize=image_size,
            R=R,
            T=T,
            flags=cv2.CALIB_ZERO_DISPARITY,
            alpha=0,
        )
        map_lx, map_ly = cv2.initUndistortRectifyMap(
            K_l, D_l, R1, P1, image_size, cv2.CV_32FC1
        )
        map_rx, map_ry = cv2.initUndistortRectifyMap(
            K_r, D_r, R2, P2, image_size, cv2.CV_32FC1
        )

        K_rect = P1[:3, :3]
        t_right = np.linalg.inv(P2[:3, :3]) @ P2[:3, 3]
        left = Camera(K=K_rect)
        right = Camera(K=P2[:3, :3], pose=SE3.from_translation(t_right))
        return cls(
            left,
            right,
            image_size=image_size,
            rectification_maps=(map_lx, map_ly, map_rx, map_ry),
        )

    @classmethod
    def from_dataset_path(cls, dataset_path: str | Path) -> StereoRig:
        """Create a rig from an EuRoC mav0 directory."""
        path = Path(dataset_path)
        return cls.from_euroc(
            path / "cam0" / "sensor.yaml", path / "cam1" / "sensor.yaml"
        )

    def rectify_images(
        self, left: np.ndarray, right: np.ndarray
    ) -> tuple[np.ndarray, np.ndarray]:
        """Undistort and rectify a stereo pair. No-op for rectified rigs."""
        if self._maps is None:
            return left, right
        map_lx, map_ly, map_rx, map_ry = self._maps
        left_rect = cv2.remap(left, map_lx, map_ly, interpolation=cv2.INTER_LINEAR)
        right_rect = cv2.remap(right, map_rx, map_ry, interpolation=cv2.INTER_LINEAR)
        return left_rect, right_rect

    @property
    def baseline(self) -> float:
        """Return distance between the two camera centers."""
        offset = self.right.pose.center - self.left.pose.center
        return float(np.linalg.norm(offset))

    @property
    def image_size(self) -> tuple[int, int] | None:
        """Return image size as (width, height), if known."""
        return self._image_size

    @property
    def is_rectifying(self) -> bool:
        return self._maps is not None
