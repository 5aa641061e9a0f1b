"""Stereo tracking frontend.

- SE3: Rigid body transformation
- Camera / StereoRig: Pinhole cameras and stereo calibration
- Frame / Feature / StereoFeature: Per-time-step observations
- MapPoint / Map: Landmarks and the shared map
- Frontend: Tracking state machine
"""

from .pose import SE3
from .camera import Camera, StereoRig
from .feature_tracker import CornerDetector, FlowResult, OpticalFlowTracker
from .frame import Feature, Frame, StereoFeature
from .map_point import Map, MapPoint
from .pose_optimizer import PoseOnlyProblem, PoseOptimizationResult, PoseOptimizer
from .triangulation import triangulate
from .frontend import Frontend, FrontendStatus

__all__ = [
    # Pose
    "SE3",
    # Camera
    "Camera",
    "StereoRig",
    # Primitives
    "CornerDetector",
    "OpticalFlowTracker",
    "FlowResult",
    "PoseOptimizer",
    "PoseOnlyProblem",
    "PoseOptimizationResult",
    "triangulate",
    # Data model
    "Feature",
    "StereoFeature",
    "Frame",
    "MapPoint",
    "Map",
    # Frontend
    "Frontend",
    "FrontendStatus",
]
