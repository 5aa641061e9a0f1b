"""Landmarks and the shared sparse map."""

from __future__ import annotations

import itertools
import threading
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from .frame import Feature, Frame

_map_point_ids = itertools.count()
_map_point_ids_lock = threading.Lock()


def _next_map_point_id() -> int:
    with _map_point_ids_lock:
        return next(_map_point_ids)


class MapPoint:
    """A triangulated 3D landmark and the features that observe it.

    The observation list and the features' ``map_point_id`` links are kept
    mutually consistent by ``add_observation`` / ``remove_observation``;
    links are never inferred.

    Attributes:
        id: Unique identifier, stable for the lifetime of the process
        observations: Features (from keyframes) observing this landmark
    """

    def __init__(self, id: int, position: np.ndarray) -> None:
        self.id = id
        self._position = np.asarray(position, dtype=np.float64).reshape(3).copy()
        self._observations: list[Feature] = []
        self._lock = threading.Lock()

    @classmethod
    def create(cls, position: np.ndarray) -> MapPoint:
        """Create a landmark with a freshly allocated id."""
        return cls(_next_map_point_id(), position)

    @property
    def position(self) -> np.ndarray:
        """Return a copy of the 3D position in world frame."""
        with self._lock:
            return self._position.copy()

    @position.setter
    def position(self, position: np.ndarray) -> None:
        with self._lock:
            self._position = np.asarray(position, dtype=np.float64).reshape(3).copy()

    @property
    def observations(self) -> list[Feature]:
        with self._lock:
            return list(self._observations)

    @property
    def num_observations(self) -> int:
        with self._lock:
            return len(self._observations)

    def add_observation(self, feature: Feature) -> None:
        """Record ``feature`` as an observation and link it to this landmark.

        Raises:
            ValueError: If the feature is linked to another landmark. Detach
                it from that landmark first.
        """
        if feature.map_point_id not in (None, self.id):
            raise ValueError(
                f"{feature!r} already observes map point {feature.map_point_id}"
            )
        with self._lock:
            if not any(obs is feature for obs in self._observations):
                self._observations.append(feature)
            feature.map_point_id = self.id

    def remove_observation(self, feature: Feature) -> bool:
        """Remove ``feature`` and clear its link if it still points here.

        Returns:
            True if the feature was an observation of this landmark
        """
        with self._lock:
            for i, obs in enumerate(self._observations):
                if obs is feature:
                    del self._observations[i]
                    break
            else:
                return False
            if feature.map_point_id == self.id:
                feature.map_point_id = None
            return True

    def is_observed_in_frame(self, frame: Frame) -> bool:
        return any(obs.frame is frame for obs in self.observations)

    def __repr__(self) -> str:
        p = self.position
        return (
            f"MapPoint(id={self.id}, pos=[{p[0]:.2f}, {p[1]:.2f}, {p[2]:.2f}], "
            f"obs={self.num_observations})"
        )


class Map:
    """Registry of keyframes and landmarks shared by frontend, backend and viewer.

    Everything is addressed by stable ids through lock-guarded tables. The
    frontend inserts, the backend rewrites poses and positions, the viewer
    reads. Multi-step operations that must not interleave with a backend
    rewrite hold ``map.lock``:

        with map_.lock:
            positions = [map_.get_map_point(i).position for i in ids]

    The lock is re-entrant, so the individual methods can be called while
    holding it.
    """

    def __init__(self) -> None:
        """Initialize empty map."""
        self._lock = threading.RLock()
        self._keyframes: dict[int, Frame] = {}
        self._map_points: dict[int, MapPoint] = {}

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def insert_keyframe(self, frame: Frame) -> None:
        """Add a keyframe. The frame must already carry a keyframe id."""
        if frame.keyframe_id is None:
            raise ValueError(f"Frame {frame.id} has not been promoted to keyframe")
        with self._lock:
            self._keyframes[frame.keyframe_id] = frame

    def insert_map_point(self, map_point: MapPoint) -> None:
        with self._lock:
            self._map_points[map_point.id] = map_point

    def get_map_point(self, map_point_id: int | None) -> MapPoint | None:
        """Resolve a landmark id.

        Returns:
            The MapPoint if it is still in the map, None otherwise
        """
        if map_point_id is None:
            return None
        with self._lock:
            return self._map_points.get(map_point_id)

    def get_keyframe(self, keyframe_id: int) -> Frame | None:
        with self._lock:
            return self._keyframes.get(keyframe_id)

    def remove_map_point(self, map_point_id: int) -> bool:
        """Remove a landmark and detach every observation from it.

        Features in frames that were never registered as observations keep a
        stale id; ``get_map_point`` resolves those to None.

        Returns:
            True if the landmark was found
        """
        with self._lock:
            map_point = self._map_points.pop(map_point_id, None)
        if map_point is None:
            return False
        for feature in map_point.observations:
            map_point.remove_observation(feature)
        return True

    def keyframes(self) -> list[Frame]:
        """Return a snapshot of all keyframes ordered by keyframe id."""
        with self._lock:
            return [self._keyframes[k] for k in sorted(self._keyframes)]

    def active_keyframes(self, window_size: int) -> list[Frame]:
        """Return the ``window_size`` most recent keyframes, oldest first."""
        if window_size <= 0:
            return []
        return self.keyframes()[-window_size:]

    def map_points(self) -> list[MapPoint]:
        """Return a snapshot of all landmarks."""
        with self._lock:
            return list(self._map_points.values())

    def positions(self) -> np.ndarray:
        """Return Nx3 array of all landmark positions."""
        points = self.map_points()
        if len(points) == 0:
            return np.empty((0, 3), dtype=np.float64)
        return np.array([p.position for p in points], dtype=np.float64)

    @property
    def num_keyframes(self) -> int:
        with self._lock:
            return len(self._keyframes)

    @property
    def num_map_points(self) -> int:
        with self._lock:
            return len(self._map_points)

    def clear(self) -> None:
        """Remove all keyframes and landmarks."""
        with self._lock:
            self._keyframes.clear()
            self._map_points.clear()

    def __len__(self) -> int:
        """Return number of landmarks."""
        return self.num_map_points
