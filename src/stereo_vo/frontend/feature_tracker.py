"""Corner detection and sparse optical flow primitives."""

from dataclasses import dataclass

import cv2
import numpy as np


@dataclass
class FlowResult:
    """Per-point output of the optical flow tracker.

    Attributes:
        points: Nx2 refined locations in the next image
        status: (N,) bool, True where tracking succeeded
    """

    points: np.ndarray
    status: np.ndarray

    def __len__(self) -> int:
        """Return number of tracked pairs (successful or not)."""
        return len(self.points)


class CornerDetector:
    """Shi-Tomasi (good features to track) corner detector.

    Corners are spread out by ``min_distance``, and a keep-out mask lets
    callers avoid re-detecting features they already track.
    """

    def __init__(
        self,
        max_corners: int = 150,
        quality_level: float = 0.01,
        min_distance: float = 20.0,
    ) -> None:
        """Initialize detector.

        Args:
            max_corners: Maximum number of corners to return (strongest first)
            quality_level: Minimal accepted corner quality relative to the
                best corner in the image
            min_distance: Minimum Euclidean distance (pixels) between corners
        """
        self._gftt = cv2.GFTTDetector_create(
            maxCorners=max_corners,
            qualityLevel=quality_level,
            minDistance=min_distance,
        )
        self._max_corners = max_corners

    def detect(self, image: np.ndarray, mask: np.ndarray | None = None) -> np.ndarray:
        """Detect corners in a grayscale image.

        Args:
            image: Grayscale image (uint8)
            mask: Optional binary mask where 255 = detect, 0 = ignore

        Returns:
            Nx2 float32 array of corner coordinates
        """
        keypoints = self._gftt.detect(image, mask)
        if not keypoints:
            return np.empty((0, 2), dtype=np.float32)
        return np.array([kp.pt for kp in keypoints], dtype=np.float32)

    @property
    def max_corners(self) -> int:
        return self._max_corners


class OpticalFlowTracker:
    """Pyramidal Lucas-Kanade tracker seeded with an initial flow guess.

    Used both for frame-to-frame tracking (left image of the previous frame
    to left image of the current one) and for stereo correspondence (left
    image to right image of the same frame).
    """

    def __init__(
        self,
        window_size: int = 11,
        max_level: int = 3,
        max_iterations: int = 30,
        epsilon: float = 0.01,
    ) -> None:
        """Initialize tracker.

        Args:
            window_size: Side of the square search window at each level
            max_level: Number of pyramid levels above the base image
            max_iterations: Termination criterion, iteration count
            epsilon: Termination criterion, minimum update
        """
        self._win_size = (window_size, window_size)
        self._max_level = max_level
        self._criteria = (
            cv2.TERM_CRITERIA_COUNT + cv2.TERM_CRITERIA_EPS,
            max_iterations,
            epsilon,
        )

    def track(
        self,
        prev_image: np.ndarray,
        next_image: np.ndarray,
        prev_points: np.ndarray,
        initial_guess: np.ndarray,
    ) -> FlowResult:
        """Track points from ``prev_image`` into ``next_image``.

        Args:
            prev_image: Image the points were observed in
            next_image: Image to search
            prev_points: Nx2 point locations in ``prev_image``
            initial_guess: Nx2 predicted locations in ``next_image``

        Returns:
            FlowResult with one entry per input point. Failures are reported
            per point through ``status``.
        """
        prev_points = np.asarray(prev_points, dtype=np.float32).reshape(-1, 2)
        if len(prev_points) == 0:
            return FlowResult(
                points=np.empty((0, 2), dtype=np.float32),
                status=np.empty(0, dtype=bool),
            )
        guess = np.asarray(initial_guess, dtype=np.float32).reshape(-1, 2).copy()

        next_points, status, _err = cv2.calcOpticalFlowPyrLK(
            prev_image,
            next_image,
            prev_points.reshape(-1, 1, 2),
            guess.reshape(-1, 1, 2),
            winSize=self._win_size,
            maxLevel=self._max_level,
            criteria=self._criteria,
            flags=cv2.OPTFLOW_USE_INITIAL_FLOW,
        )

        if next_points is None or status is None:
            return FlowResult(points=guess, status=np.zeros(len(guess), dtype=bool))

        return FlowResult(
            points=next_points.reshape(-1, 2),
            status=status.reshape(-1).astype(bool),
        )
