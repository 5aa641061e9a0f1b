"""Shared fixtures: a synthetic stereo scene with deterministic primitives.

The fake detector and flow tracker do not look at pixel content. Every
image handed out by ``SyntheticScene.capture`` is registered with the
camera and pose that "took" it, so they can project the scene's
landmarks exactly instead.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np
import pytest

from stereo_vo.frontend.camera import Camera, StereoRig
from stereo_vo.frontend.feature_tracker import FlowResult
from stereo_vo.frontend.frame import Frame
from stereo_vo.frontend.pose import SE3

WIDTH = 640
HEIGHT = 480
FX = FY = 400.0
CX = 320.0
CY = 240.0
BASELINE = 0.1


def make_landmarks(cols: int = 12, rows: int = 10) -> np.ndarray:
    """Grid of landmarks 6-6.5 m in front of the origin.

    Projections stay at least ~20 px apart from any nearby pose, so a
    pixel identifies its landmark unambiguously.
    """
    xs = (np.arange(cols) - (cols - 1) / 2) * 0.5
    ys = (np.arange(rows) - (rows - 1) / 2) * 0.4
    points = []
    for j, y in enumerate(ys):
        for i, x in enumerate(xs):
            z = 6.0 + 0.5 * ((3 * i + 7 * j) % 11) / 10
            points.append([x, y, z])
    return np.array(points, dtype=np.float64)


@dataclass
class _View:
    camera: Camera
    pose: SE3
    tag: int


@dataclass
class SyntheticScene:
    """Landmarks seen by a stereo rig, plus the registry of captured images."""

    rig: StereoRig
    landmarks: np.ndarray
    views: dict[int, _View] = field(default_factory=dict)
    # Keep images alive so their ids stay unique
    _images: list[np.ndarray] = field(default_factory=list)
    _next_tag: int = 0

    def capture(self, frame_id: int, pose: SE3, timestamp_ns: int = 0) -> Frame:
        """Create a Frame whose images show the scene from ``pose``.

        The returned frame starts at identity; the frontend estimates it.
        """
        tag = self._next_tag
        self._next_tag += 1
        left = np.zeros((HEIGHT, WIDTH), dtype=np.uint8)
        right = np.zeros((HEIGHT, WIDTH), dtype=np.uint8)
        self._images += [left, right]
        self.views[id(left)] = _View(self.rig.left, pose.copy(), tag)
        self.views[id(right)] = _View(self.rig.right, pose.copy(), tag)
        return Frame(frame_id, left, right, timestamp_ns=timestamp_ns)

    def project(self, image: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """Return (Nx2 pixels, (N,) visibility) of all landmarks in ``image``."""
        view = self.views[id(image)]
        p_c = view.camera.world2camera(self.landmarks, view.pose)
        in_front = p_c[:, 2] > 0.1
        z = np.where(in_front, p_c[:, 2], 1.0)
        pixels = np.column_stack(
            [
                view.camera.fx * p_c[:, 0] / z + view.camera.cx,
                view.camera.fy * p_c[:, 1] / z + view.camera.cy,
            ]
        )
        inside = (
            (pixels[:, 0] >= 0)
            & (pixels[:, 0] < WIDTH)
            & (pixels[:, 1] >= 0)
            & (pixels[:, 1] < HEIGHT)
        )
        return pixels, in_front & inside

    def identify(self, image: np.ndarray, points: np.ndarray) -> np.ndarray:
        """Return the landmark index observed at each pixel, -1 if none."""
        pixels, visible = self.project(image)
        ids = np.full(len(points), -1, dtype=np.int64)
        for k, pt in enumerate(np.asarray(points, dtype=np.float64).reshape(-1, 2)):
            dist = np.linalg.norm(pixels - pt, axis=1)
            dist[~visible] = np.inf
            best = int(np.argmin(dist))
            if dist[best] < 1.0:
                ids[k] = best
        return ids


class FakeDetector:
    """Detects every visible, unmasked landmark projection."""

    def __init__(self, scene: SyntheticScene, max_corners: int = 150) -> None:
        self.scene = scene
        self.max_corners = max_corners

    def detect(self, image: np.ndarray, mask: np.ndarray | None = None) -> np.ndarray:
        pixels, visible = self.scene.project(image)
        corners = []
        for pixel, ok in zip(pixels, visible):
            if not ok:
                continue
            u, v = int(pixel[0]), int(pixel[1])
            if mask is not None and mask[v, u] == 0:
                continue
            corners.append(pixel)
            if len(corners) >= self.max_corners:
                break
        return np.array(corners, dtype=np.float32).reshape(-1, 2)


class FakeFlowTracker:
    """Moves each point to its landmark's exact projection in the next image.

    Attributes:
        fail_temporal: Landmark indices that fail frame-to-frame tracking
        fail_stereo: Landmark indices that fail left-to-right matching
        temporal_offsets: Landmark index -> pixel offset added when tracked
            frame-to-frame (simulates a wrong track)
    """

    def __init__(self, scene: SyntheticScene) -> None:
        self.scene = scene
        self.fail_temporal: set[int] = set()
        self.fail_stereo: set[int] = set()
        self.temporal_offsets: dict[int, np.ndarray] = {}
        self.calls = 0

    def track(
        self,
        prev_image: np.ndarray,
        next_image: np.ndarray,
        prev_points: np.ndarray,
        initial_guess: np.ndarray,
    ) -> FlowResult:
        self.calls += 1
        prev_points = np.asarray(prev_points, dtype=np.float64).reshape(-1, 2)
        stereo = (
            self.scene.views[id(prev_image)].tag == self.scene.views[id(next_image)].tag
        )
        failing = self.fail_stereo if stereo else self.fail_temporal

        ids = self.scene.identify(prev_image, prev_points)
        next_pixels, visible = self.scene.project(next_image)

        points = np.asarray(initial_guess, dtype=np.float32).reshape(-1, 2).copy()
        status = np.zeros(len(prev_points), dtype=bool)
        for k, landmark in enumerate(ids):
            if landmark < 0 or not visible[landmark] or landmark in failing:
                continue
            pixel = next_pixels[landmark].copy()
            if not stereo and landmark in self.temporal_offsets:
                pixel += self.temporal_offsets[landmark]
            points[k] = pixel
            status[k] = True
        return FlowResult(points=points, status=status)


@pytest.fixture
def rig() -> StereoRig:
    """Rectified rig with a 10 cm baseline."""
    return StereoRig.from_intrinsics(
        FX, FY, CX, CY, BASELINE, image_size=(WIDTH, HEIGHT)
    )


@pytest.fixture
def scene(rig: StereoRig) -> SyntheticScene:
    """Scene with 120 well-separated landmarks."""
    return SyntheticScene(rig=rig, landmarks=make_landmarks())


@pytest.fixture
def detector(scene: SyntheticScene) -> FakeDetector:
    return FakeDetector(scene)


@pytest.fixture
def flow_tracker(scene: SyntheticScene) -> FakeFlowTracker:
    return FakeFlowTracker(scene)


def pose_at(x: float = 0.0, y: float = 0.0, z: float = 0.0) -> SE3:
    """Return T_camera_world of a camera centered at (x, y, z), no rotation."""
    return SE3.from_translation([-x, -y, -z])
