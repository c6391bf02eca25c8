"""Spatial queries -- pose baking and BVH ray acceleration."""

from armorfit.spatial.bake import bake, bake_positions
from armorfit.spatial.bvh import Hit, IndexCache, RayHits, SpatialIndex

__all__ = [
    "Hit",
    "IndexCache",
    "RayHits",
    "SpatialIndex",
    "bake",
    "bake_positions",
]
