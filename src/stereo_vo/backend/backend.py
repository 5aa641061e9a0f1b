"""Backend thread running sliding-window bundle adjustment.

The frontend signals the backend after every new keyframe. Signals only
mark the map as dirty; the worker thread picks them up and runs one
optimization pass at a time, so signals arriving during a pass coalesce
into a single follow-up pass.

A pass works on a snapshot:
1. Under the map lock, collect the most recent keyframes and the
   landmarks they observe
2. Run bundle adjustment outside the lock (the frontend keeps tracking)
3. Under the map lock, write all optimized poses and positions back at once
"""

from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING

from ..config import BackendConfig
from .optimizer import BAResult, ScipyBundleAdjustment

if TYPE_CHECKING:
    from ..frontend.camera import StereoRig
    from ..frontend.frame import Frame
    from ..frontend.map_point import Map, MapPoint

logger = logging.getLogger(__name__)


class Backend:
    """Serialized bundle adjustment worker.

    Example:
        >>> with Backend(map_, rig) as backend:
        ...     frontend.set_backend(backend)
        ...     for frame in frames:
        ...         frontend.add_frame(frame)
    """

    def __init__(
        self,
        map_: Map,
        rig: StereoRig,
        config: BackendConfig | None = None,
        optimizer: ScipyBundleAdjustment | None = None,
    ) -> None:
        """Initialize backend.

        Args:
            map_: Shared map whose keyframes and landmarks are refined
            rig: Stereo rig providing intrinsics and extrinsics
            config: Window and solver settings. Uses defaults if None.
            optimizer: Bundle adjustment engine. Built from config if None.
        """
        self._map = map_
        self._rig = rig
        self._config = config or BackendConfig()
        self._config.validate()
        self._optimizer = optimizer or ScipyBundleAdjustment(
            max_iterations=self._config.max_iterations,
            ftol=self._config.tolerance,
            xtol=self._config.tolerance,
            loss=self._config.loss_function,
            min_observations=self._config.min_observations,
        )

        self._condition = threading.Condition()
        self._pass_lock = threading.Lock()
        self._pending = False
        self._busy = False
        self._stop_requested = False
        self._thread: threading.Thread | None = None

        self._num_passes = 0
        self._last_result: BAResult | None = None

    def start(self) -> None:
        """Start the worker thread."""
        if self.is_running:
            return

        with self._condition:
            self._stop_requested = False
        self._thread = threading.Thread(
            target=self._run, name="stereo-vo-backend", daemon=True
        )
        self._thread.start()
        logger.info("Backend started")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the worker thread after the pass in progress, if any."""
        if self._thread is None:
            return

        with self._condition:
            self._stop_requested = True
            self._condition.notify_all()

        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.warning("Backend thread did not stop within %.1fs", timeout)
        self._thread = None

    def update_map(self) -> None:
        """Signal that the map changed. Never blocks on optimization."""
        with self._condition:
            self._pending = True
            self._condition.notify_all()

    def wait_until_idle(self, timeout: float | None = None) -> bool:
        """Block until no pass is pending or running.

        Returns:
            True if the backend went idle, False on timeout
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._condition:
            while self._pending or self._busy:
                if not self.is_running and not self._busy:
                    return not self._pending
                remaining = None
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return False
                self._condition.wait(remaining)
            return True

    def optimize_once(self) -> BAResult:
        """Run one bundle adjustment pass over the active window.

        Returns:
            The BAResult of the pass. Failures are reported, never raised.
        """
        with self._pass_lock:
            keyframes, map_points = self._snapshot()
            if len(keyframes) < 2:
                result = BAResult(success=False, message="Not enough keyframes for BA")
            else:
                try:
                    result = self._optimizer.optimize(
                        keyframes, map_points, self._rig, fix_first_pose=True
                    )
                except (ValueError, IndexError, FloatingPointError) as e:
                    result = BAResult(success=False, message=f"BA failed: {e}")

            if result.success:
                self._apply(keyframes, map_points, result)
                logger.info(
                    "BA over %d keyframes / %d points: cost %.3f -> %.3f",
                    len(keyframes),
                    len(map_points),
                    result.initial_cost,
                    result.final_cost,
                )
            else:
                logger.debug("BA skipped: %s", result.message)

            self._num_passes += 1
            self._last_result = result
            return result

    def _run(self) -> None:
        while True:
            with self._condition:
                while not self._pending and not self._stop_requested:
                    self._condition.wait()
                if self._stop_requested:
                    break
                self._pending = False
                self._busy = True

            try:
                self.optimize_once()
            finally:
                with self._condition:
                    self._busy = False
                    self._condition.notify_all()

        logger.info("Backend stopped after %d passes", self._num_passes)

    def _snapshot(self) -> tuple[list[Frame], list[MapPoint]]:
        """Collect the active keyframes and the landmarks they observe."""
        with self._map.lock:
            keyframes = self._map.active_keyframes(self._config.window_size)
            map_points: dict[int, MapPoint] = {}
            for kf in keyframes:
                for pair in kf.features:
                    for feat in (pair.left, pair.right):
                        if feat is None or feat.map_point_id in map_points:
                            continue
                        map_point = self._map.get_map_point(feat.map_point_id)
                        if map_point is not None:
                            map_points[map_point.id] = map_point
        return keyframes, list(map_points.values())

    def _apply(
        self, keyframes: list[Frame], map_points: list[MapPoint], result: BAResult
    ) -> None:
        """Write optimized poses and positions back in one critical section."""
        with self._map.lock:
            for kf in keyframes:
                pose = result.optimized_poses.get(kf.keyframe_id)
                if pose is not None and pose.is_valid:
                    kf.pose = pose
            for map_point in map_points:
                # Skip landmarks removed while the solver was running
                if self._map.get_map_point(map_point.id) is not map_point:
                    continue
                position = result.optimized_points.get(map_point.id)
                if position is not None:
                    map_point.position = position

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def num_passes(self) -> int:
        return self._num_passes

    @property
    def last_result(self) -> BAResult | None:
        return self._last_result

    @property
    def config(self) -> BackendConfig:
        return self._config

    def __enter__(self) -> Backend:
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()
