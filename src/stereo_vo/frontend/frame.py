"""Frame and feature data structures for stereo tracking.

A Frame is one stereo capture instant. Its 2D observations are stored as
a single list of StereoFeature pairs, so the left and right observations
can never drift out of index alignment.
"""

from __future__ import annotations

import threading
import weakref
from dataclasses import dataclass

import numpy as np

from .pose import SE3


class Feature:
    """A 2D pixel observation within one frame.

    The landmark link is a lookup key into the Map registry rather than a
    reference to the MapPoint object, so observing a landmark never keeps
    it alive. Resolve it with ``Map.get_map_point(feature.map_point_id)``,
    which returns None once the landmark has been removed.

    Attributes:
        position: (2,) pixel coordinates (u, v)
        map_point_id: Id of the observed landmark, or None
        is_outlier: Set during a single pose optimization, reset afterwards
        is_on_left_image: False for features detected in the right image
    """

    __slots__ = (
        "position",
        "map_point_id",
        "is_outlier",
        "is_on_left_image",
        "_frame",
        "__weakref__",
    )

    def __init__(
        self,
        frame: Frame | None,
        position: np.ndarray,
        map_point_id: int | None = None,
        is_on_left_image: bool = True,
    ) -> None:
        self.position = np.asarray(position, dtype=np.float64).reshape(2)
        self.map_point_id = map_point_id
        self.is_outlier = False
        self.is_on_left_image = is_on_left_image
        self._frame = weakref.ref(frame) if frame is not None else None

    @property
    def frame(self) -> Frame | None:
        """Return the owning frame, or None if it has been discarded."""
        return self._frame() if self._frame is not None else None

    def __repr__(self) -> str:
        side = "L" if self.is_on_left_image else "R"
        return (
            f"Feature({side}, u={self.position[0]:.1f}, v={self.position[1]:.1f}, "
            f"map_point={self.map_point_id})"
        )


@dataclass(eq=False)
class StereoFeature:
    """A left-image feature and its right-image correspondence, if any."""

    left: Feature
    right: Feature | None = None

    @property
    def has_right(self) -> bool:
        return self.right is not None


class Frame:
    """One time step's stereo image pair with its pose and features.

    The pose is stored as T_camera_world (world -> rig/left camera). It is
    guarded by a lock because keyframe poses are rewritten by the backend
    while the frontend keeps reading them.
    """

    def __init__(
        self,
        id: int,
        left_image: np.ndarray,
        right_image: np.ndarray,
        timestamp_ns: int = 0,
        pose: SE3 | None = None,
    ) -> None:
        self.id = id
        self.timestamp_ns = timestamp_ns
        self.left_image = left_image
        self.right_image = right_image
        self.is_keyframe = False
        self.keyframe_id: int | None = None
        self.features: list[StereoFeature] = []
        self._pose = pose.copy() if pose is not None else SE3.identity()
        self._pose_lock = threading.Lock()

    @property
    def pose(self) -> SE3:
        """Return a copy of the current pose estimate T_camera_world."""
        with self._pose_lock:
            return self._pose.copy()

    @pose.setter
    def pose(self, pose: SE3) -> None:
        with self._pose_lock:
            self._pose = pose.copy()

    def set_keyframe(self, keyframe_id: int) -> None:
        """Promote this frame to a keyframe."""
        self.is_keyframe = True
        self.keyframe_id = keyframe_id

    def add_left_feature(
        self, position: np.ndarray, map_point_id: int | None = None
    ) -> Feature:
        """Append a left feature with no right correspondence yet."""
        feature = Feature(self, position, map_point_id=map_point_id)
        self.features.append(StereoFeature(left=feature))
        return feature

    @property
    def features_left(self) -> list[Feature]:
        return [pair.left for pair in self.features]

    @property
    def features_right(self) -> list[Feature | None]:
        """Right features, index-aligned with ``features_left``."""
        return [pair.right for pair in self.features]

    @property
    def num_features(self) -> int:
        return len(self.features)

    @property
    def left_points(self) -> np.ndarray:
        """Return Nx2 array of left feature pixel coordinates."""
        if not self.features:
            return np.empty((0, 2), dtype=np.float32)
        return np.array(
            [pair.left.position for pair in self.features], dtype=np.float32
        )

    def __repr__(self) -> str:
        kf = f", keyframe={self.keyframe_id}" if self.is_keyframe else ""
        return f"Frame(id={self.id}, features={len(self.features)}{kf})"
