"""Stereo tracking frontend.

The frontend consumes one stereo Frame at a time and:
1. Runs the tracking state machine (INITING -> TRACKING_GOOD/BAD -> LOST)
2. Propagates features from the previous frame with optical flow
3. Estimates the frame pose with robust pose-only optimization
4. Decides whether the frame becomes a keyframe
5. Triangulates new landmarks and notifies the map, backend and viewer

Processing is strictly sequential: a frame is finished (pose committed,
keyframe decision made) before the next one is accepted.
"""

from __future__ import annotations

import itertools
import logging
from enum import Enum
from typing import TYPE_CHECKING

import cv2
import numpy as np

from ..config import FrontendConfig
from .camera import Camera, StereoRig
from .feature_tracker import CornerDetector, OpticalFlowTracker
from .frame import Feature, Frame, StereoFeature
from .map_point import Map, MapPoint
from .pose import SE3
from .pose_optimizer import PoseOnlyProblem, PoseOptimizer
from .triangulation import triangulate

if TYPE_CHECKING:
    from ..backend.backend import Backend
    from ..visualization.rerun_visualizer import RerunVisualizer

logger = logging.getLogger(__name__)


class FrontendStatus(Enum):
    """Tracking state of the frontend."""

    INITING = "INITING"
    TRACKING_GOOD = "TRACKING_GOOD"
    TRACKING_BAD = "TRACKING_BAD"
    LOST = "LOST"


class Frontend:
    """Stereo tracking frontend.

    Collaborators default to the OpenCV-backed primitives and can be
    replaced, e.g. by deterministic fakes in tests.

    Example:
        >>> rig = StereoRig.from_intrinsics(718.9, 718.9, 607.2, 185.2, 0.54)
        >>> frontend = Frontend(rig, Map())
        >>> status = frontend.add_frame(Frame(0, left, right))
    """

    def __init__(
        self,
        rig: StereoRig,
        map_: Map,
        config: FrontendConfig | None = None,
        backend: Backend | None = None,
        viewer: RerunVisualizer | None = None,
        detector: CornerDetector | None = None,
        flow_tracker: OpticalFlowTracker | None = None,
        pose_optimizer: PoseOptimizer | None = None,
    ) -> None:
        """Initialize frontend.

        Args:
            rig: Calibrated stereo rig
            map_: Shared map receiving keyframes and landmarks
            config: Thresholds and primitive settings. Uses defaults if None.
            backend: Backend signalled after each new keyframe
            viewer: Viewer receiving frames and map updates
            detector: Corner detector. Built from config if None.
            flow_tracker: Optical flow tracker. Built from config if None.
            pose_optimizer: Pose-only solver. Built from config if None.
        """
        self._config = config or FrontendConfig()
        self._config.validate()

        self._camera_left: Camera = rig.left
        self._camera_right: Camera = rig.right
        self._map = map_
        self._backend = backend
        self._viewer = viewer

        cfg = self._config
        self._detector = detector or CornerDetector(
            max_corners=cfg.num_features,
            quality_level=cfg.gftt_quality_level,
            min_distance=cfg.gftt_min_distance,
        )
        self._flow_tracker = flow_tracker or OpticalFlowTracker(
            window_size=cfg.flow_window_size,
            max_level=cfg.flow_max_level,
            max_iterations=cfg.flow_max_iterations,
            epsilon=cfg.flow_epsilon,
        )
        self._pose_optimizer = pose_optimizer or PoseOptimizer(
            max_iterations=cfg.solver_iterations,
            huber_delta=cfg.huber_delta,
        )

        # State
        self._status = FrontendStatus.INITING
        self._current_frame: Frame | None = None
        self._last_frame: Frame | None = None
        self._relative_motion = SE3.identity()  # T_current_last
        self._tracking_inliers = 0
        self._keyframe_ids = itertools.count()

    def set_backend(self, backend: Backend | None) -> None:
        self._backend = backend

    def set_viewer(self, viewer: RerunVisualizer | None) -> None:
        self._viewer = viewer

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def add_frame(self, frame: Frame) -> FrontendStatus:
        """Process a new stereo frame.

        Args:
            frame: Incoming frame with left/right images and no features

        Returns:
            Tracking status after processing the frame
        """
        self._current_frame = frame

        if self._status == FrontendStatus.INITING:
            self._seed_pose_from_last_frame()
            self.stereo_init()
        elif self._status in (
            FrontendStatus.TRACKING_GOOD,
            FrontendStatus.TRACKING_BAD,
        ):
            self.track()
        elif self._status == FrontendStatus.LOST:
            self.reset()

        self._last_frame = frame
        return self._status

    def classify_tracking(self, num_inliers: int) -> FrontendStatus:
        """Map an inlier count to a tracking status."""
        if num_inliers > self._config.num_features_tracking:
            return FrontendStatus.TRACKING_GOOD
        if num_inliers > self._config.num_features_tracking_bad:
            return FrontendStatus.TRACKING_BAD
        return FrontendStatus.LOST

    def track(self) -> bool:
        """Track the current frame against the last one."""
        frame = self._current_frame
        last = self._last_frame

        if last is not None:
            # Constant velocity prior
            frame.pose = self._relative_motion @ last.pose

        self.track_last_frame()
        self._tracking_inliers = self.estimate_current_pose()
        self._status = self.classify_tracking(self._tracking_inliers)

        self.insert_keyframe()

        if last is not None:
            self._relative_motion = frame.pose @ last.pose.inverse()

        if self._viewer is not None:
            self._viewer.add_current_frame(frame)

        return True

    def reset(self) -> bool:
        """Recover from LOST by re-initializing from the current stereo pair.

        The existing map is kept. The frame is seeded with the last committed
        pose so new landmarks land in the same world frame. If initialization
        fails the frontend stays INITING and retries on the next frames.
        """
        frame = self._current_frame
        logger.warning(
            "Tracking lost, re-initializing from stereo at frame %d", frame.id
        )
        self._relative_motion = SE3.identity()
        self._tracking_inliers = 0
        self._seed_pose_from_last_frame()

        if self.stereo_init():
            return True

        self._status = FrontendStatus.INITING
        return False

    def _seed_pose_from_last_frame(self) -> None:
        last = self._last_frame
        if last is None:
            return
        pose = last.pose
        if not pose.is_valid:
            keyframes = self._map.keyframes()
            pose = keyframes[-1].pose if keyframes else SE3.identity()
        self._current_frame.pose = pose

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    def stereo_init(self) -> bool:
        """Build the initial map from the current stereo pair.

        Returns:
            True if enough left/right correspondences were found
        """
        self.detect_features()
        num_coor_features = self.find_features_in_right()
        if num_coor_features < self._config.num_features_init:
            logger.warning(
                "Stereo initialization failed: %d correspondences, need %d",
                num_coor_features,
                self._config.num_features_init,
            )
            return False

        if not self.build_init_map():
            return False

        self._status = FrontendStatus.TRACKING_GOOD
        if self._viewer is not None:
            self._viewer.add_current_frame(self._current_frame)
            self._viewer.update_map()
        return True

    def build_init_map(self) -> bool:
        """Triangulate every stereo pair and promote the frame to keyframe."""
        frame = self._current_frame
        T_w_c = frame.pose.inverse()

        cnt_init_landmarks = 0
        with self._map.lock:
            for pair in frame.features:
                if pair.right is None:
                    continue
                if self._triangulate_pair(pair, T_w_c) is not None:
                    cnt_init_landmarks += 1

        frame.set_keyframe(next(self._keyframe_ids))
        self._map.insert_keyframe(frame)
        if self._backend is not None:
            self._backend.update_map()

        logger.info("Initial map created with %d map points", cnt_init_landmarks)
        return True

    # ------------------------------------------------------------------
    # Feature tracking
    # ------------------------------------------------------------------

    def track_last_frame(self) -> int:
        """Propagate the last frame's left features into the current frame.

        Features whose landmark resolves are seeded with its reprojection
        through the predicted pose, the others with their own pixel.
        Tracked features inherit the predecessor's landmark link; failures
        are dropped.

        Returns:
            Number of features carried over
        """
        frame = self._current_frame
        last = self._last_frame
        if last is None or not last.features:
            return 0

        pose = frame.pose
        prev_points = []
        guesses = []
        links: list[int | None] = []
        with self._map.lock:
            for feat in last.features_left:
                map_point = self._map.get_map_point(feat.map_point_id)
                prev_points.append(feat.position)
                if map_point is not None:
                    guesses.append(
                        self._predict_pixel(
                            self._camera_left, map_point, pose, feat.position
                        )
                    )
                    links.append(map_point.id)
                else:
                    guesses.append(feat.position)
                    links.append(None)

        flow = self._flow_tracker.track(
            last.left_image, frame.left_image, np.array(prev_points), np.array(guesses)
        )

        num_good_pts = 0
        for point, ok, link in zip(flow.points, flow.status, links):
            if not ok:
                continue
            frame.add_left_feature(point, map_point_id=link)
            num_good_pts += 1

        logger.info("Found %d features in the last image", num_good_pts)
        return num_good_pts

    def find_features_in_right(self) -> int:
        """Find a right-image correspondence for every left feature.

        Every pair gets an explicit right entry: a Feature on success,
        None on failure.

        Returns:
            Number of left features with a right correspondence
        """
        frame = self._current_frame
        if not frame.features:
            return 0

        pose = frame.pose
        left_points = []
        guesses = []
        with self._map.lock:
            for feat in frame.features_left:
                left_points.append(feat.position)
                map_point = self._map.get_map_point(feat.map_point_id)
                if map_point is not None:
                    guesses.append(
                        self._predict_pixel(
                            self._camera_right, map_point, pose, feat.position
                        )
                    )
                else:
                    guesses.append(feat.position)

        flow = self._flow_tracker.track(
            frame.left_image,
            frame.right_image,
            np.array(left_points),
            np.array(guesses),
        )

        num_good_pts = 0
        for pair, point, ok in zip(frame.features, flow.points, flow.status):
            if ok:
                pair.right = Feature(
                    frame,
                    point,
                    map_point_id=pair.left.map_point_id,
                    is_on_left_image=False,
                )
                num_good_pts += 1
            else:
                pair.right = None

        logger.info("Found %d features in the right image", num_good_pts)
        return num_good_pts

    def detect_features(self) -> int:
        """Detect new corners away from the features already tracked.

        Returns:
            Number of new (unlinked) left features
        """
        frame = self._current_frame
        height, width = frame.left_image.shape[:2]
        mask = np.full((height, width), 255, dtype=np.uint8)

        r = self._config.mask_radius
        for feat in frame.features_left:
            u, v = feat.position
            cv2.rectangle(
                mask,
                (int(round(u - r)), int(round(v - r))),
                (int(round(u + r)), int(round(v + r))),
                0,
                cv2.FILLED,
            )

        corners = self._detector.detect(frame.left_image, mask)
        for corner in corners:
            frame.add_left_feature(corner)

        logger.info("Detected %d new features", len(corners))
        return len(corners)

    @staticmethod
    def _predict_pixel(
        camera: Camera, map_point: MapPoint, pose: SE3, fallback: np.ndarray
    ) -> np.ndarray:
        p_c = camera.world2camera(map_point.position, pose)
        if p_c[2] <= 0.0:
            return fallback
        return camera.camera2pixel(p_c)

    # ------------------------------------------------------------------
    # Pose estimation
    # ------------------------------------------------------------------

    def estimate_current_pose(self) -> int:
        """Estimate the current frame pose with iterative outlier rejection.

        Runs ``optimization_rounds`` rounds. Each round re-seeds from the
        frame's committed pose, optimizes the inlier residuals, then
        re-classifies every residual against the chi2 threshold. The Huber
        loss is dropped after ``robust_rounds`` rounds.

        Outlier features lose their landmark link; the landmark itself stays
        in the map.

        Returns:
            Number of inlier features
        """
        cfg = self._config
        frame = self._current_frame

        features: list[Feature] = []
        points_world = []
        with self._map.lock:
            for feat in frame.features_left:
                map_point = self._map.get_map_point(feat.map_point_id)
                if map_point is not None:
                    features.append(feat)
                    points_world.append(map_point.position)

        if not features:
            logger.info("No landmark-linked features to estimate pose")
            return 0

        points_world = np.array(points_world)
        observations = np.array([feat.position for feat in features])
        active = np.ones(len(features), dtype=bool)
        robust = True
        pose = frame.pose
        cnt_outlier = 0

        for iteration in range(cfg.optimization_rounds):
            problem = PoseOnlyProblem(
                initial_pose=frame.pose,
                points_world=points_world,
                observations=observations,
                camera_matrix=self._camera_left.K,
                extrinsic=self._camera_left.pose,
                active=active,
                robust=robust,
            )
            result = self._pose_optimizer.optimize(problem)
            pose = result.pose

            outliers = result.errors > cfg.chi2_threshold
            for feat, is_outlier in zip(features, outliers):
                feat.is_outlier = bool(is_outlier)
            active = ~outliers
            cnt_outlier = int(np.count_nonzero(outliers))

            if iteration == cfg.robust_rounds - 1:
                robust = False

        logger.info(
            "Outlier/Inlier in pose estimation: %d/%d",
            cnt_outlier,
            len(features) - cnt_outlier,
        )

        frame.pose = pose
        logger.debug("Current pose: %s", pose)

        with self._map.lock:
            for feat in features:
                if not feat.is_outlier:
                    continue
                map_point = self._map.get_map_point(feat.map_point_id)
                if map_point is not None:
                    map_point.remove_observation(feat)
                feat.map_point_id = None
                feat.is_outlier = False

        return len(features) - cnt_outlier

    # ------------------------------------------------------------------
    # Keyframes and landmarks
    # ------------------------------------------------------------------

    def insert_keyframe(self) -> bool:
        """Promote the current frame to keyframe if tracking is thinning out.

        Returns:
            True if a keyframe was inserted
        """
        if self._tracking_inliers >= self._config.num_features_needed_for_keyframe:
            return False

        frame = self._current_frame
        frame.set_keyframe(next(self._keyframe_ids))
        self._map.insert_keyframe(frame)
        logger.info("Set frame %d as keyframe %d", frame.id, frame.keyframe_id)

        self.detect_features()
        self.find_features_in_right()
        self.set_observations_for_keyframe()
        self.triangulate_new_points()

        if self._backend is not None:
            self._backend.update_map()
        if self._viewer is not None:
            self._viewer.update_map()
        return True

    def set_observations_for_keyframe(self) -> None:
        """Register every linked feature of the keyframe with its landmark.

        Runs after the right-image search, so right features that inherited
        a link are registered too and bundle adjustment sees both cameras.
        """
        with self._map.lock:
            for pair in self._current_frame.features:
                map_point = self._map.get_map_point(pair.left.map_point_id)
                if map_point is None:
                    continue
                map_point.add_observation(pair.left)
                if pair.right is not None:
                    map_point.add_observation(pair.right)

    def triangulate_new_points(self) -> int:
        """Create landmarks for stereo pairs whose left feature has none.

        Returns:
            Number of new landmarks
        """
        frame = self._current_frame
        T_w_c = frame.pose.inverse()

        cnt_triangulated_pts = 0
        with self._map.lock:
            for pair in frame.features:
                if pair.right is None:
                    continue
                if self._map.get_map_point(pair.left.map_point_id) is not None:
                    continue
                if self._triangulate_pair(pair, T_w_c) is not None:
                    cnt_triangulated_pts += 1

        logger.info("Triangulated %d new landmarks", cnt_triangulated_pts)
        return cnt_triangulated_pts

    def _triangulate_pair(self, pair: StereoFeature, T_w_c: SE3) -> MapPoint | None:
        """Triangulate a stereo pair into a new registered landmark.

        Degenerate rays and points behind the rig are skipped.
        """
        poses = [self._camera_left.pose, self._camera_right.pose]
        points = [
            self._camera_left.pixel2camera(pair.left.position),
            self._camera_right.pixel2camera(pair.right.position),
        ]
        p_rig, ok = triangulate(poses, points)
        if not ok or p_rig[2] <= 0.0:
            return None

        map_point = MapPoint.create(T_w_c.transform_point(p_rig))
        # Links to removed landmarks are dead and may be replaced
        pair.left.map_point_id = None
        pair.right.map_point_id = None
        map_point.add_observation(pair.left)
        map_point.add_observation(pair.right)
        self._map.insert_map_point(map_point)
        return map_point

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def status(self) -> FrontendStatus:
        return self._status

    @property
    def current_frame(self) -> Frame | None:
        return self._current_frame

    @property
    def last_frame(self) -> Frame | None:
        return self._last_frame

    @property
    def tracking_inliers(self) -> int:
        return self._tracking_inliers

    @property
    def relative_motion(self) -> SE3:
        return self._relative_motion.copy()

    @property
    def config(self) -> FrontendConfig:
        return self._config

    @property
    def map(self) -> Map:
        return self._map
