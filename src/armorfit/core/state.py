"""Fitting parameters and session status."""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields, replace
from enum import Enum
from typing import Any, Mapping, Optional

from armorfit.constants import FITTING_PRESETS_FILE
from armorfit.core.config_loader import load_config

logger = logging.getLogger(__name__)


class SessionStatus(Enum):
    """Explicit lifecycle of an armor mesh inside a FittingSession."""
    UNFIT = "unfit"
    FITTED = "fitted"
    BOUND = "bound"


@dataclass
class FittingParameters:
    """Caller-supplied configuration for one shrinkwrap invocation."""
    iterations: int = 10
    step_size: float = 0.5             # 0-1 damping of the desired displacement
    smoothing_radius: int = 5          # graph hops
    smoothing_strength: float = 0.7    # 0-1 blend toward neighbour average
    target_offset: float = 0.0         # distance kept from the target surface
    max_displacement: float = 0.05     # per vertex per iteration, world units
    sample_rate: float = 1.0           # fraction of vertices projected per iteration
    preserve_features: bool = False
    feature_angle_threshold: float = 45.0  # degrees
    preserve_openings: bool = False
    opening_vertices: Optional[tuple[int, ...]] = None
    push_interior_back: bool = False
    convergence_epsilon: float = 0.001
    inside_search_distance: float = 1.0
    preserve_volume: bool = False

    def validate(self) -> None:
        """Raise ValueError for out-of-range values."""
        if self.iterations < 0:
            raise ValueError(f"iterations must be >= 0, got {self.iterations}")
        if not 0.0 <= self.step_size <= 1.0:
            raise ValueError(f"step_size must be in [0, 1], got {self.step_size}")
        if self.smoothing_radius < 0:
            raise ValueError(f"smoothing_radius must be >= 0, got {self.smoothing_radius}")
        if not 0.0 <= self.smoothing_strength <= 1.0:
            raise ValueError(
                f"smoothing_strength must be in [0, 1], got {self.smoothing_strength}"
            )
        if self.max_displacement <= 0:
            raise ValueError(f"max_displacement must be > 0, got {self.max_displacement}")
        if not 0.0 < self.sample_rate <= 1.0:
            raise ValueError(f"sample_rate must be in (0, 1], got {self.sample_rate}")
        if not 0.0 <= self.feature_angle_threshold <= 180.0:
            raise ValueError(
                f"feature_angle_threshold must be in [0, 180], got {self.feature_angle_threshold}"
            )
        if self.convergence_epsilon < 0:
            raise ValueError("convergence_epsilon must be >= 0")
        if self.inside_search_distance < 0:
            raise ValueError("inside_search_distance must be >= 0")

    def with_overrides(self, **changes: Any) -> FittingParameters:
        return replace(self, **changes)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> FittingParameters:
        """Build from a mapping; unknown keys are logged and ignored."""
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            if key not in known:
                logger.warning("Ignoring unknown fitting parameter '%s'", key)
                continue
            if key == "opening_vertices" and value is not None:
                value = tuple(int(v) for v in value)
            kwargs[key] = value
        params = cls(**kwargs)
        params.validate()
        return params

    @classmethod
    def preset(cls, name: str) -> FittingParameters:
        """Load a named preset from fitting_presets.json."""
        presets = load_config(FITTING_PRESETS_FILE)
        if name not in presets:
            raise KeyError(f"Unknown fitting preset '{name}' (have: {sorted(presets)})")
        return cls.from_dict(presets[name])
