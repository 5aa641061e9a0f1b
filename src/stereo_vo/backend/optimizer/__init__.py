"""Bundle adjustment optimizers."""

from .scipy_ba import BAObservations, BAResult, ScipyBundleAdjustment

__all__ = [
    "ScipyBundleAdjustment",
    "BAResult",
    "BAObservations",
]
