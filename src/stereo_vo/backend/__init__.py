"""Backend with sliding-window bundle adjustment."""

from .backend import Backend
from .optimizer import BAResult, ScipyBundleAdjustment

__all__ = [
    "Backend",
    "ScipyBundleAdjustment",
    "BAResult",
]
