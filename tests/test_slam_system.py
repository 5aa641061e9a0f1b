"""Tests for the VisualOdometry pipeline on a synthetic scene."""

import numpy as np
import pytest
from conftest import SyntheticScene, pose_at

from stereo_vo.config import BackendConfig, SystemConfig
from stereo_vo.frontend.frontend import FrontendStatus
from stereo_vo.frontend.pose import SE3
from stereo_vo.slam_system import VisualOdometry


@pytest.fixture
def vo(rig, detector, flow_tracker) -> VisualOdometry:
    config = SystemConfig(backend=BackendConfig(enabled=False))
    return VisualOdometry(
        rig, config=config, detector=detector, flow_tracker=flow_tracker
    )


def _feed(vo: VisualOdometry, scene: SyntheticScene, pose: SE3, timestamp_ns: int):
    captured = scene.capture(vo.num_frames, pose)
    return vo.process_frame(captured.left_image, captured.right_image, timestamp_ns)


class TestVisualOdometry:
    """Test suite for VisualOdometry."""

    def test_initial_state(self, vo: VisualOdometry):
        """Test an unused pipeline."""
        assert vo.status == FrontendStatus.INITING
        assert vo.backend is None
        assert vo.num_frames == 0
        assert vo.trajectory() == []
        assert vo.trajectory_positions().shape == (0, 3)

    def test_process_frames(self, vo: VisualOdometry, scene: SyntheticScene):
        """Test that frames are numbered and tracked."""
        first = _feed(vo, scene, SE3.identity(), 100)
        second = _feed(vo, scene, pose_at(x=0.05), 200)

        assert first.id == 0
        assert second.id == 1
        assert second.timestamp_ns == 200
        assert vo.status == FrontendStatus.TRACKING_GOOD
        assert vo.num_frames == 2
        assert vo.num_keyframes == 1
        assert vo.num_map_points == 120

    def test_trajectory(self, vo: VisualOdometry, scene: SyntheticScene):
        """Test that the trajectory holds camera-to-world poses."""
        for k in range(4):
            _feed(vo, scene, pose_at(x=0.05 * k), k)

        positions = vo.trajectory_positions()

        assert positions.shape == (4, 3)
        np.testing.assert_allclose(positions[:, 0], [0.0, 0.05, 0.1, 0.15], atol=1e-4)
        np.testing.assert_allclose(positions[:, 1:], 0.0, atol=1e-4)

    def test_keyframe_trajectory_is_live(
        self, vo: VisualOdometry, scene: SyntheticScene
    ):
        """Test that corrections to keyframe poses show up in the trajectory."""
        first = _feed(vo, scene, SE3.identity(), 0)

        first.pose = pose_at(x=1.0)

        np.testing.assert_allclose(vo.trajectory()[0].translation, [1.0, 0.0, 0.0])

    def test_backend_lifecycle(self, rig, detector, flow_tracker):
        """Test that the backend thread follows the context manager."""
        with VisualOdometry(rig, detector=detector, flow_tracker=flow_tracker) as vo:
            assert vo.backend.is_running
        assert not vo.backend.is_running

    def test_backend_refines_after_keyframes(
        self, rig, scene: SyntheticScene, detector, flow_tracker
    ):
        """Test that keyframes trigger backend passes."""
        flow_tracker.fail_temporal = set(range(50))
        with VisualOdometry(rig, detector=detector, flow_tracker=flow_tracker) as vo:
            _feed(vo, scene, SE3.identity(), 0)
            _feed(vo, scene, pose_at(x=0.02), 1)
            assert vo.backend.wait_until_idle(timeout=30.0)

        assert vo.num_keyframes == 2
        assert vo.backend.num_passes >= 1
        assert vo.backend.last_result.success
