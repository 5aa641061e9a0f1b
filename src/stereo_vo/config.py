"""Configuration for the stereo tracking pipeline.

Defaults reproduce the classic stereo frontend tuning. A YAML file can
override any subset of them:

    frontend:
      num_features: 200
      num_features_needed_for_keyframe: 80
    backend:
      window_size: 7
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml


@dataclass
class FrontendConfig:
    """Thresholds and primitive settings for the tracking frontend."""

    # Corner detection (Shi-Tomasi)
    num_features: int = 150
    gftt_quality_level: float = 0.01
    gftt_min_distance: float = 20.0
    mask_radius: int = 10  # Keep-out half size around tracked features (px)

    # Tracking state thresholds (inlier counts)
    num_features_init: int = 100
    num_features_tracking: int = 50
    num_features_tracking_bad: int = 20
    num_features_needed_for_keyframe: int = 80

    # Pyramidal Lucas-Kanade
    flow_window_size: int = 11
    flow_max_level: int = 3
    flow_max_iterations: int = 30
    flow_epsilon: float = 0.01

    # Robust pose estimation
    chi2_threshold: float = 5.991  # 95% quantile of chi2 with 2 DoF
    optimization_rounds: int = 4
    solver_iterations: int = 10
    robust_rounds: int = 3  # Huber loss is dropped after this many rounds
    huber_delta: float = 1.0

    def validate(self) -> None:
        """Raise ValueError if the configuration is inconsistent."""
        if self.num_features_tracking_bad >= self.num_features_tracking:
            raise ValueError(
                "num_features_tracking_bad must be below num_features_tracking, got "
                f"{self.num_features_tracking_bad} >= {self.num_features_tracking}"
            )
        if self.num_features <= 0 or self.num_features_init < 0:
            raise ValueError("Feature counts must be positive")
        if self.optimization_rounds < 1 or self.solver_iterations < 1:
            raise ValueError("optimization_rounds and solver_iterations must be >= 1")
        if self.chi2_threshold <= 0.0:
            raise ValueError(
                f"chi2_threshold must be positive, got {self.chi2_threshold}"
            )
        if self.flow_window_size < 3 or self.flow_window_size % 2 == 0:
            raise ValueError(
                "flow_window_size must be an odd number >= 3, "
                f"got {self.flow_window_size}"
            )


@dataclass
class BackendConfig:
    """Configuration for the asynchronous sliding-window bundle adjustment."""

    enabled: bool = True
    window_size: int = 10  # Max keyframes per optimization
    min_observations: int = 10  # Minimum observations to run BA
    max_iterations: int = 50
    loss_function: str = "huber"
    tolerance: float = 1e-10  # ftol and xtol of the solver

    def validate(self) -> None:
        if self.window_size < 2:
            raise ValueError(f"window_size must be >= 2, got {self.window_size}")
        if self.loss_function not in ("linear", "huber", "soft_l1", "cauchy", "arctan"):
            raise ValueError(f"Unknown loss function: {self.loss_function}")
        if self.tolerance <= 0.0:
            raise ValueError(f"tolerance must be positive, got {self.tolerance}")


@dataclass
class SystemConfig:
    """Top-level configuration grouping all components."""

    frontend: FrontendConfig = field(default_factory=FrontendConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)

    def validate(self) -> None:
        self.frontend.validate()
        self.backend.validate()


def _build_section(cls: type, data: Any, name: str) -> Any:
    """Instantiate a config dataclass from a mapping, rejecting unknown keys."""
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ValueError(f"Config section '{name}' must be a mapping")

    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown keys in config section '{name}': {unknown}")
    return cls(**data)


def load_config(path: str | Path) -> SystemConfig:
    """Load a SystemConfig from a YAML file.

    Missing sections and keys keep their defaults.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the file has unknown sections/keys or invalid values
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")

    unknown = sorted(set(data) - {"frontend", "backend"})
    if unknown:
        raise ValueError(f"Unknown config sections in {path}: {unknown}")

    config = SystemConfig(
        frontend=_build_section(FrontendConfig, data.get("frontend"), "frontend"),
        backend=_build_section(BackendConfig, data.get("backend"), "backend"),
    )
    config.validate()
    return config
