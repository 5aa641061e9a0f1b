"""Rerun-based visualization for stereo visual odometry."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import rerun as rr
import rerun.blueprint as rrb

if TYPE_CHECKING:
    from ..frontend.frame import Frame
    from ..frontend.map_point import Map


class RerunVisualizer:
    """Rerun viewer for the tracking frontend.

    Purely observational: it reads frames and the map, never mutates them.

    Entity hierarchy:
        camera/
            left/
                image       - Left image of the current frame
                tracked     - Features linked to a landmark (green)
                untracked   - Features without a landmark (red)
            right/
                image       - Right image of the current frame
        world/
            camera          - Current camera pose
            keyframes       - Keyframe trajectory (yellow)
            map             - Landmark cloud (colored by height)
    """

    def __init__(
        self, map_: Map, app_name: str = "stereo-vo", spawn: bool = True
    ) -> None:
        """Initialize Rerun visualization.

        Args:
            map_: Map to draw on ``update_map``
            app_name: Name for the Rerun application window
            spawn: If True, automatically spawn the Rerun viewer
        """
        self._map = map_
        rr.init(app_name, spawn=spawn)
        self._setup_coordinate_system()
        self._setup_layout()

    def _setup_coordinate_system(self) -> None:
        """Configure the 3D coordinate system (X-right, Y-down, Z-forward)."""
        rr.log("world", rr.ViewCoordinates.RDF, static=True)

    def _setup_layout(self) -> None:
        blueprint = rrb.Blueprint(
            rrb.Vertical(
                contents=[
                    rrb.Horizontal(
                        contents=[
                            rrb.Spatial2DView(
                                name="Left Camera", origin="camera/left"
                            ),
                            rrb.Spatial2DView(
                                name="Right Camera", origin="camera/right"
                            ),
                        ]
                    ),
                    rrb.Spatial3DView(name="Map", origin="world"),
                ]
            )
        )
        rr.send_blueprint(blueprint)

    def add_current_frame(self, frame: Frame) -> None:
        """Log the frame's images, left features and camera pose."""
        rr.set_time("timestamp", duration=frame.timestamp_ns / 1e9)

        rr.log("camera/left/image", rr.Image(frame.left_image))
        rr.log("camera/right/image", rr.Image(frame.right_image))

        linked = []
        unlinked = []
        for feat in frame.features_left:
            if self._map.get_map_point(feat.map_point_id) is not None:
                linked.append(feat.position)
            else:
                unlinked.append(feat.position)

        rr.log(
            "camera/left/tracked",
            rr.Points2D(
                np.array(linked).reshape(-1, 2),
                colors=[[0, 255, 0]],  # Green
                radii=3.0,
            ),
        )
        rr.log(
            "camera/left/untracked",
            rr.Points2D(
                np.array(unlinked).reshape(-1, 2),
                colors=[[255, 0, 0]],  # Red
                radii=3.0,
            ),
        )

        # T_world_camera for display
        T_w_c = frame.pose.inverse()
        rr.log(
            "world/camera",
            rr.Transform3D(translation=T_w_c.translation, mat3x3=T_w_c.rotation),
        )

    def update_map(self) -> None:
        """Log the keyframe trajectory and the landmark cloud.

        Landmarks are shaded by how many features observe them, from grey
        (a single stereo pair) to cyan (seen across many keyframes).
        """
        with self._map.lock:
            centers = np.array(
                [kf.pose.center for kf in self._map.keyframes()], dtype=np.float64
            ).reshape(-1, 3)
            map_points = self._map.map_points()
            positions = np.array(
                [mp.position for mp in map_points], dtype=np.float64
            ).reshape(-1, 3)
            num_obs = np.array([mp.num_observations for mp in map_points])

        if len(centers) >= 2:
            rr.log(
                "world/keyframes",
                rr.LineStrips3D([centers], colors=[[255, 255, 0]], radii=0.01),
            )

        finite = np.isfinite(positions).all(axis=1)
        if not finite.any():
            return

        weight = np.clip((num_obs[finite] - 2) / 8.0, 0.0, 1.0)[:, None]
        grey = np.array([160, 160, 160])
        cyan = np.array([0, 220, 255])
        colors = ((1.0 - weight) * grey + weight * cyan).astype(np.uint8)

        rr.log(
            "world/map",
            rr.Points3D(positions[finite], colors=colors, radii=0.03),
        )
