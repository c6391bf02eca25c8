"""Body hull extraction: a reduced avatar sub-surface used as a fitting target.

A hull keeps only vertices strongly bound to a set of bones (e.g. the
spine chain) and only the triangles whose three corners all survive, so
limbs and head do not pull armor toward them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

import numpy as np
from numpy.typing import NDArray

from armorfit.body.regions import BodyRegion
from armorfit.core.errors import MissingSkeleton
from armorfit.core.math_utils import aabb, aabb_center
from armorfit.core.mesh import Mesh, SkinnedMesh
from armorfit.spatial.bake import bake_positions

logger = logging.getLogger(__name__)

MIN_HULL_VERTICES = 4

TORSO_INCLUDE = ("spine", "chest", "torso", "upperchest", "abdomen", "waist", "ribcage")
TORSO_EXCLUDE = ("neck", "head", "shoulder", "arm", "hand", "leg", "foot", "hip", "thigh")
TORSO_THRESHOLD = 0.5


@dataclass(eq=False)
class HullResult:
    """Re-indexed sub-surface of an avatar in world space.

    ``mesh.positions[i]`` equals the baked avatar position of vertex
    ``source_indices[i]``.
    """
    mesh: Mesh
    source_indices: NDArray[np.int64]
    bounds: tuple[NDArray, NDArray]
    center: NDArray[np.float64]

    @property
    def vertex_count(self) -> int:
        return self.mesh.vertex_count

    @property
    def triangle_count(self) -> int:
        return self.mesh.triangle_count


def _make_hull(
    mesh: SkinnedMesh,
    included: NDArray[np.bool_],
    pose: Optional[NDArray],
    name: str,
) -> HullResult:
    baked = bake_positions(mesh, pose)
    source = np.nonzero(included)[0].astype(np.int64)

    remap = np.full(mesh.vertex_count, -1, dtype=np.int64)
    remap[source] = np.arange(len(source))
    tri = mesh.triangles()
    keep = np.all(included[tri], axis=1)
    local_tri = remap[tri[keep]]
    if len(local_tri) == 0:
        logger.warning("Hull '%s' kept %d vertices but no complete triangles", name, len(source))

    hull_mesh = Mesh(positions=baked[source], indices=local_tri, name=name)
    bounds = aabb(hull_mesh.positions)
    logger.info(
        "Extracted hull '%s': %d/%d vertices, %d/%d triangles",
        name, len(source), mesh.vertex_count, len(local_tri), len(tri),
    )
    return HullResult(
        mesh=hull_mesh,
        source_indices=source,
        bounds=bounds,
        center=aabb_center(bounds),
    )


def extract_hull(
    mesh: SkinnedMesh,
    include_patterns: Iterable[str],
    exclude_patterns: Iterable[str] = (),
    weight_threshold: float = 0.3,
    pose: Optional[NDArray] = None,
    name: str = "body_hull",
) -> Optional[HullResult]:
    """Hull of vertices with at least *weight_threshold* on matching bones.

    Bones match when their lower-cased name contains any include pattern
    and no exclude pattern. Returns None when no bone matches or fewer
    than 4 vertices qualify.
    """
    if not mesh.has_skinning:
        raise MissingSkeleton(f"Mesh '{mesh.name}' has no skin weights or skeleton")

    include_patterns = tuple(include_patterns)
    bone_idx = mesh.skeleton.match(include_patterns, exclude_patterns)
    if not bone_idx:
        logger.warning("No bones matched hull patterns %s", include_patterns)
        return None

    included = mesh.weights_on(bone_idx) >= weight_threshold
    count = int(included.sum())
    if count < MIN_HULL_VERTICES:
        logger.warning(
            "Only %d vertices reach weight %.2f on %d bones, no hull",
            count, weight_threshold, len(bone_idx),
        )
        return None
    return _make_hull(mesh, included, pose, name)


def extract_torso_hull(mesh: SkinnedMesh, pose: Optional[NDArray] = None) -> Optional[HullResult]:
    """Torso-only hull with the standard limb and head exclusions."""
    return extract_hull(
        mesh, TORSO_INCLUDE, TORSO_EXCLUDE,
        weight_threshold=TORSO_THRESHOLD, pose=pose, name="torso_hull",
    )


def extract_region_hull(
    mesh: SkinnedMesh,
    region: BodyRegion,
    pose: Optional[NDArray] = None,
) -> HullResult:
    """Hull over a computed region's vertices; the whole body when the region has none."""
    if not mesh.has_skinning:
        raise MissingSkeleton(f"Mesh '{mesh.name}' has no skin weights or skeleton")
    included = np.zeros(mesh.vertex_count, dtype=bool)
    if region.vertex_count >= MIN_HULL_VERTICES:
        included[region.vertices] = True
    else:
        logger.warning(
            "Region '%s' has %d vertices, using the whole body as hull",
            region.name, region.vertex_count,
        )
        included[:] = True
    return _make_hull(mesh, included, pose, f"{region.name}_hull")
