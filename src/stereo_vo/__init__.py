"""Stereo VO - stereo visual odometry tracking frontend in Python."""

__version__ = "0.1.0"

# Re-export main classes for convenient imports
from .config import BackendConfig, FrontendConfig, SystemConfig, load_config
from .dataset_reader import DatasetReader, StereoSample
from .frontend import (
    SE3,
    Camera,
    Feature,
    Frame,
    Frontend,
    FrontendStatus,
    Map,
    MapPoint,
    StereoFeature,
    StereoRig,
)
from .backend import Backend, BAResult, ScipyBundleAdjustment
from .slam_system import VisualOdometry

# The Rerun viewer is imported from stereo_vo.visualization.rerun_visualizer
# so that headless use does not load rerun.

__all__ = [
    "__version__",
    # Config
    "FrontendConfig",
    "BackendConfig",
    "SystemConfig",
    "load_config",
    # Data
    "DatasetReader",
    "StereoSample",
    # Frontend
    "SE3",
    "Camera",
    "StereoRig",
    "Feature",
    "StereoFeature",
    "Frame",
    "MapPoint",
    "Map",
    "Frontend",
    "FrontendStatus",
    # Backend
    "Backend",
    "ScipyBundleAdjustment",
    "BAResult",
    # System
    "VisualOdometry",
]
