"""Declarative body-region table: which bones feed which region.

Each region is ``name -> (include patterns, exclude patterns, weight
threshold, fallback radius)``. The default table ships in
``assets/config/body_regions.json``; callers may pass their own table to
:func:`armorfit.body.regions.compute_regions`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping, Optional

from armorfit.constants import CONFIG_DIR, REGION_MIN_VERTEX_COUNT, REGION_TABLE_FILE
from armorfit.core.config_loader import load_json

logger = logging.getLogger(__name__)

DEFAULT_REGION_TABLE_PATH = CONFIG_DIR / REGION_TABLE_FILE


@dataclass(frozen=True)
class RegionSpec:
    """Bone-name rules for one anatomical region."""
    name: str
    include: tuple[str, ...]
    exclude: tuple[str, ...] = ()
    threshold: float = 0.5
    fallback_radius: float = 0.2

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RegionSpec:
        return cls(
            name=str(data["name"]),
            include=tuple(str(p) for p in data.get("include", ())),
            exclude=tuple(str(p) for p in data.get("exclude", ())),
            threshold=float(data.get("threshold", 0.5)),
            fallback_radius=float(data.get("fallback_radius", 0.2)),
        )


@dataclass(frozen=True)
class TorsoCorrection:
    """Empirical torso-box repair, applied when the box is implausibly thin.

    All values are fractions of the avatar's overall height except
    ``padding`` (world units added around each torso bone).
    """
    region: str = "torso"
    enabled: bool = True
    min_height_fraction: float = 0.2
    padding: tuple[float, float, float] = (0.4, 0.3, 0.4)
    target_height_fraction: float = 0.4
    high_offset_fraction: float = 0.2
    recenter_fraction: float = 0.1

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TorsoCorrection:
        defaults = cls()
        padding = data.get("padding", defaults.padding)
        return cls(
            region=str(data.get("region", defaults.region)),
            enabled=bool(data.get("enabled", defaults.enabled)),
            min_height_fraction=float(data.get("min_height_fraction", defaults.min_height_fraction)),
            padding=(float(padding[0]), float(padding[1]), float(padding[2])),
            target_height_fraction=float(
                data.get("target_height_fraction", defaults.target_height_fraction)
            ),
            high_offset_fraction=float(data.get("high_offset_fraction", defaults.high_offset_fraction)),
            recenter_fraction=float(data.get("recenter_fraction", defaults.recenter_fraction)),
        )


@dataclass(frozen=True)
class RegionTable:
    regions: tuple[RegionSpec, ...]
    torso_correction: TorsoCorrection = field(default_factory=TorsoCorrection)
    min_vertex_count: int = REGION_MIN_VERTEX_COUNT

    @property
    def names(self) -> list[str]:
        return [r.name for r in self.regions]

    def spec(self, name: str) -> Optional[RegionSpec]:
        for r in self.regions:
            if r.name == name:
                return r
        return None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RegionTable:
        regions = tuple(RegionSpec.from_dict(r) for r in data.get("regions", ()))
        names = [r.name for r in regions]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate region names in table: {names}")
        return cls(
            regions=regions,
            torso_correction=TorsoCorrection.from_dict(data.get("torso_correction", {})),
            min_vertex_count=int(data.get("min_vertex_count", REGION_MIN_VERTEX_COUNT)),
        )


def load_region_table(path: Optional[Path] = None) -> RegionTable:
    """Load a region table from JSON (the packaged default when *path* is None)."""
    path = DEFAULT_REGION_TABLE_PATH if path is None else Path(path)
    table = RegionTable.from_dict(load_json(path))
    logger.debug("Loaded %d region specs from %s", len(table.regions), path)
    return table


@lru_cache(maxsize=1)
def default_region_table() -> RegionTable:
    return load_region_table()
