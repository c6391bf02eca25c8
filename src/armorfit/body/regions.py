"""Skeleton-driven body-region segmentation.

Maps skinned-mesh vertices to anatomical regions (head, torso, arms,
hips, legs) by summing each vertex's weight on the bones a region claims.
Regions are derived data: recompute whenever the pose or skeleton changes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
from numpy.typing import NDArray

from armorfit.body.region_table import RegionSpec, RegionTable, TorsoCorrection, default_region_table
from armorfit.constants import PROPORTIONAL_TORSO_BAND
from armorfit.core.errors import MissingSkeleton, NoRegionFound
from armorfit.core.math_utils import aabb, aabb_center
from armorfit.core.mesh import Mesh, SkinnedMesh
from armorfit.spatial.bake import bake_positions

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class BodyRegion:
    """One anatomical region of an avatar in world space."""
    name: str
    bones: list[str]
    bone_indices: list[int]
    bounds: tuple[NDArray, NDArray]
    vertices: NDArray[np.int64]
    center: NDArray[np.float64]
    threshold: float = 0.0
    used_fallback: bool = False
    corrected: bool = False

    @property
    def size(self) -> NDArray[np.float64]:
        return self.bounds[1] - self.bounds[0]

    @property
    def vertex_count(self) -> int:
        return len(self.vertices)

    def contains(self, points: NDArray) -> NDArray[np.bool_]:
        """Mask of *points* (N, 3) inside the region's box."""
        p = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        lo, hi = self.bounds
        return np.all((p >= lo) & (p <= hi), axis=1)


def _avatar_positions(mesh: SkinnedMesh, posed: bool, pose: Optional[NDArray]) -> NDArray:
    if posed or pose is not None:
        return bake_positions(mesh, pose)
    return mesh.world_positions()


def _fallback_bounds(bone_positions: NDArray, radius: float) -> tuple[NDArray, NDArray]:
    """Box enclosing a sphere of *radius* around every region bone."""
    return bone_positions.min(axis=0) - radius, bone_positions.max(axis=0) + radius


def _correct_torso(
    bone_positions: NDArray,
    avatar_bounds: tuple[NDArray, NDArray],
    corr: TorsoCorrection,
) -> tuple[NDArray, NDArray]:
    """Rebuild a thin torso box from its bones, then fix height and placement."""
    pad = np.asarray(corr.padding, dtype=np.float64)
    lo = bone_positions.min(axis=0) - pad
    hi = bone_positions.max(axis=0) + pad

    avatar_height = avatar_bounds[1][1] - avatar_bounds[0][1]
    target = avatar_height * corr.target_height_fraction
    if hi[1] - lo[1] < target:
        cy = (lo[1] + hi[1]) / 2
        lo[1] = cy - target / 2
        hi[1] = cy + target / 2

    avatar_cy = aabb_center(avatar_bounds)[1]
    torso_cy = (lo[1] + hi[1]) / 2
    if torso_cy > avatar_cy + avatar_height * corr.high_offset_fraction:
        offset = (avatar_cy - torso_cy) + avatar_height * corr.recenter_fraction
        logger.warning("Torso box too high, moving it by %.3f", offset)
        lo[1] += offset
        hi[1] += offset
    return lo, hi


def compute_regions(
    mesh: SkinnedMesh,
    table: Optional[RegionTable] = None,
    posed: bool = False,
    pose: Optional[NDArray] = None,
) -> dict[str, BodyRegion]:
    """Segment *mesh* into body regions, in table order.

    Regions whose patterns match no bone are omitted. Bounding boxes use
    rest positions through the world matrix, or baked posed positions when
    *posed* is set or a *pose* is given.
    """
    if not mesh.has_skinning:
        raise MissingSkeleton(f"Mesh '{mesh.name}' has no skin weights or skeleton")
    table = default_region_table() if table is None else table
    skeleton = mesh.skeleton

    positions = _avatar_positions(mesh, posed, pose)
    avatar_bounds = aabb(positions)
    avatar_height = avatar_bounds[1][1] - avatar_bounds[0][1]
    bone_world = skeleton.world_positions() if pose is None else np.asarray(pose)[:, :3, 3]
    corr = table.torso_correction

    regions: dict[str, BodyRegion] = {}
    for spec in table.regions:
        bone_idx = skeleton.match(spec.include, spec.exclude)
        if not bone_idx:
            logger.debug("No bones found for region '%s'", spec.name)
            continue

        region = _build_region(mesh, spec, bone_idx, positions, bone_world, table.min_vertex_count)

        if (
            corr.enabled
            and spec.name == corr.region
            and region.size[1] < avatar_height * corr.min_height_fraction
        ):
            logger.warning(
                "Region '%s' height %.3f below %.0f%% of avatar height, correcting",
                spec.name, region.size[1], corr.min_height_fraction * 100,
            )
            region.bounds = _correct_torso(bone_world[bone_idx], avatar_bounds, corr)
            region.center = aabb_center(region.bounds)
            region.corrected = True

        logger.debug(
            "Region '%s': %d bones, %d vertices, size (%.3f, %.3f, %.3f)",
            spec.name, len(bone_idx), region.vertex_count, *region.size,
        )
        regions[spec.name] = region

    logger.info("Computed %d body regions for '%s'", len(regions), mesh.name)
    return regions


def _build_region(
    mesh: SkinnedMesh,
    spec: RegionSpec,
    bone_idx: list[int],
    positions: NDArray,
    bone_world: NDArray,
    min_vertex_count: int,
) -> BodyRegion:
    weights = mesh.weights_on(bone_idx)
    vertices = np.nonzero(weights > spec.threshold)[0].astype(np.int64)

    if len(vertices) > min_vertex_count:
        bounds = aabb(positions[vertices])
        used_fallback = False
    else:
        logger.warning(
            "Region '%s' has only %d vertices, using bone influence spheres (r=%.2f)",
            spec.name, len(vertices), spec.fallback_radius,
        )
        bounds = _fallback_bounds(bone_world[bone_idx], spec.fallback_radius)
        used_fallback = True

    return BodyRegion(
        name=spec.name,
        bones=[mesh.skeleton.bones[i].name for i in bone_idx],
        bone_indices=list(bone_idx),
        bounds=bounds,
        vertices=vertices,
        center=aabb_center(bounds),
        threshold=spec.threshold,
        used_fallback=used_fallback,
    )


def require_region(regions: dict[str, BodyRegion], name: str) -> BodyRegion:
    """Return ``regions[name]`` or raise :class:`NoRegionFound`."""
    try:
        return regions[name]
    except KeyError:
        raise NoRegionFound(
            f"No body region '{name}' (have: {', '.join(regions) or 'none'})"
        ) from None


def proportional_region(
    mesh: Mesh,
    name: str = "torso",
    lower: float = PROPORTIONAL_TORSO_BAND[0],
    upper: float = PROPORTIONAL_TORSO_BAND[1],
) -> BodyRegion:
    """Default region covering a height band of the avatar's bounds.

    Used when no bone matched; works on unskinned meshes too.
    """
    if not 0.0 <= lower < upper <= 1.0:
        raise ValueError(f"Band must satisfy 0 <= lower < upper <= 1, got ({lower}, {upper})")
    positions = mesh.world_positions()
    lo, hi = aabb(positions)
    height = hi[1] - lo[1]
    y0 = lo[1] + height * lower
    y1 = lo[1] + height * upper
    y = positions[:, 1]
    vertices = np.nonzero((y >= y0) & (y <= y1))[0].astype(np.int64)
    bounds = (np.array([lo[0], y0, lo[2]]), np.array([hi[0], y1, hi[2]]))
    return BodyRegion(
        name=name,
        bones=[],
        bone_indices=[],
        bounds=bounds,
        vertices=vertices,
        center=aabb_center(bounds),
        used_fallback=True,
    )


def find_region(regions: dict[str, BodyRegion], mesh: Mesh, name: str) -> BodyRegion:
    """Named region, falling back to :func:`proportional_region` when absent."""
    try:
        return require_region(regions, name)
    except NoRegionFound as e:
        logger.warning("%s; using proportional band instead", e)
        return proportional_region(mesh, name)
