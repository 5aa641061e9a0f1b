"""Visual odometry system wiring the frontend, backend and viewer.

VisualOdometry owns the shared Map and combines:
- Frontend: frame-to-frame tracking in the caller's thread
- Backend: sliding-window bundle adjustment in a worker thread
- Viewer: optional Rerun visualization
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np

from .backend.backend import Backend
from .config import SystemConfig, load_config
from .frontend.camera import StereoRig
from .frontend.feature_tracker import CornerDetector, OpticalFlowTracker
from .frontend.frame import Frame
from .frontend.frontend import Frontend, FrontendStatus
from .frontend.map_point import Map
from .frontend.pose import SE3

if TYPE_CHECKING:
    from .visualization.rerun_visualizer import RerunVisualizer

logger = logging.getLogger(__name__)


class VisualOdometry:
    """Stereo visual odometry pipeline.

    Example:
        >>> with VisualOdometry.from_dataset_path("data/euroc/MH_01_easy/mav0") as vo:
        ...     for sample in DatasetReader("data/euroc/MH_01_easy/mav0"):
        ...         vo.process_frame(sample.left, sample.right, sample.timestamp_ns)
        ...     poses = vo.trajectory()
    """

    def __init__(
        self,
        rig: StereoRig,
        config: SystemConfig | None = None,
        viewer: RerunVisualizer | None = None,
        detector: CornerDetector | None = None,
        flow_tracker: OpticalFlowTracker | None = None,
    ) -> None:
        """Initialize visual odometry.

        Args:
            rig: Calibrated stereo rig
            config: Frontend and backend settings. Uses defaults if None.
            viewer: Optional viewer fed by the frontend
            detector: Corner detector override for the frontend
            flow_tracker: Optical flow tracker override for the frontend
        """
        self._config = config or SystemConfig()
        self._config.validate()
        self._rig = rig
        self._map = Map()

        self._backend: Backend | None = None
        if self._config.backend.enabled:
            self._backend = Backend(self._map, rig, config=self._config.backend)

        self._frontend = Frontend(
            rig,
            self._map,
            config=self._config.frontend,
            backend=self._backend,
            viewer=viewer,
            detector=detector,
            flow_tracker=flow_tracker,
        )

        self._next_frame_id = 0
        # Keyframes are kept by reference so backend corrections show up;
        # other frames only keep their committed pose.
        self._history: list[Frame | SE3] = []

    @classmethod
    def from_dataset_path(
        cls,
        dataset_path: str | Path,
        config_path: str | Path | None = None,
        viewer: RerunVisualizer | None = None,
    ) -> VisualOdometry:
        """Create VisualOdometry for an EuRoC mav0 directory.

        Args:
            dataset_path: Path to mav0 (containing cam0/ and cam1/ sensor.yaml)
            config_path: Optional YAML configuration file
            viewer: Optional viewer

        Returns:
            Configured VisualOdometry (backend not started yet)
        """
        config = load_config(config_path) if config_path is not None else None
        rig = StereoRig.from_dataset_path(dataset_path)
        return cls(rig, config=config, viewer=viewer)

    def start(self) -> None:
        """Start the backend thread, if enabled."""
        if self._backend is not None:
            self._backend.start()

    def stop(self) -> None:
        """Stop the backend thread."""
        if self._backend is not None:
            self._backend.stop()

    def __enter__(self) -> VisualOdometry:
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()

    def process_frame(
        self, left: np.ndarray, right: np.ndarray, timestamp_ns: int = 0
    ) -> Frame:
        """Track one stereo pair.

        Args:
            left: Left camera image (grayscale)
            right: Right camera image (grayscale)
            timestamp_ns: Capture timestamp in nanoseconds

        Returns:
            The processed Frame carrying its committed pose and features
        """
        left_rect, right_rect = self._rig.rectify_images(left, right)
        frame = Frame(self._next_frame_id, left_rect, right_rect, timestamp_ns)
        self._next_frame_id += 1

        status = self._frontend.add_frame(frame)
        self._history.append(frame if frame.is_keyframe else frame.pose)

        if status == FrontendStatus.LOST:
            logger.warning("Frame %d: tracking lost", frame.id)
        return frame

    def trajectory(self) -> list[SE3]:
        """Return T_world_camera of every processed frame, oldest first."""
        poses = []
        for entry in self._history:
            pose = entry.pose if isinstance(entry, Frame) else entry
            poses.append(pose.inverse())
        return poses

    def trajectory_positions(self) -> np.ndarray:
        """Return Nx3 array of camera centers in world frame."""
        poses = self.trajectory()
        if not poses:
            return np.empty((0, 3), dtype=np.float64)
        return np.array([pose.translation for pose in poses], dtype=np.float64)

    @property
    def status(self) -> FrontendStatus:
        return self._frontend.status

    @property
    def frontend(self) -> Frontend:
        return self._frontend

    @property
    def backend(self) -> Backend | None:
        return self._backend

    @property
    def map(self) -> Map:
        return self._map

    @property
    def num_frames(self) -> int:
        return self._next_frame_id

    @property
    def num_map_points(self) -> int:
        return self._map.num_map_points

    @property
    def num_keyframes(self) -> int:
        return self._map.num_keyframes
