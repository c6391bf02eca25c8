"""Light-weight penetration detection and push-out for armor meshes.

A cheaper alternative to the shrinkwrap loop for small corrections:
sample armor vertices, look for shallow body hits along the inward ray,
push those vertices out along the body normal and drag their close
neighbours along with a linear falloff.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
from numpy.typing import NDArray
from scipy.spatial import cKDTree

from armorfit.core.mesh import Mesh
from armorfit.spatial.bvh import SpatialIndex

logger = logging.getLogger(__name__)


@dataclass
class CollisionSettings:
    sample_stride: int = 25            # test every Nth armor vertex
    max_distance: float = 0.1          # inward ray length
    min_depth: float = 0.01            # hits closer than this count as touching
    max_depth: float = 0.05            # hits farther than this count as buried
    depth_cap: float = 0.01            # recorded depth is clamped to this
    margin: float = 0.002              # extra clearance added to each push
    push_scale: float = 0.3            # fraction of the push applied per iteration
    influence_radius: float = 0.02     # neighbour drag radius
    neighbour_scale: float = 0.5
    max_total_displacement: float = 0.05


@dataclass
class CollisionPoint:
    """One penetrating armor vertex."""
    vertex_index: int
    position: NDArray[np.float64]   # world space at detection time
    normal: NDArray[np.float64]     # body surface normal, facing the vertex
    penetration_depth: float


def detect_collisions(
    avatar: Mesh,
    armor: Mesh,
    settings: Optional[CollisionSettings] = None,
    index: Optional[SpatialIndex] = None,
) -> list[CollisionPoint]:
    """Sample armor vertices and record shallow hits toward the avatar center."""
    cfg = settings if settings is not None else CollisionSettings()
    index = SpatialIndex.build(avatar) if index is None else index
    center = index.center

    positions = armor.world_positions()
    sample = np.arange(0, armor.vertex_count, max(1, cfg.sample_stride))
    dirs = center - positions[sample]
    usable = np.linalg.norm(dirs, axis=1) > 1e-9
    sample, dirs = sample[usable], dirs[usable]
    if len(sample) == 0:
        return []

    hits = index.query_rays(positions[sample], dirs, t_max=cfg.max_distance)
    band = hits.hit & (hits.distance > cfg.min_depth) & (hits.distance < cfg.max_depth)

    collisions = []
    for k in np.nonzero(band)[0]:
        n = hits.normal[k].copy()
        if np.dot(n, dirs[k]) > 0:
            n = -n
        collisions.append(CollisionPoint(
            vertex_index=int(sample[k]),
            position=positions[sample[k]].copy(),
            normal=n,
            penetration_depth=float(min(hits.distance[k], cfg.depth_cap)),
        ))
    logger.info(
        "Detected %d collisions from %d sampled armor vertices", len(collisions), len(sample),
    )
    return collisions


def resolve_collisions(
    armor: Mesh,
    collisions: list[CollisionPoint],
    iterations: int = 1,
    settings: Optional[CollisionSettings] = None,
) -> int:
    """Push colliding vertices out along their normals, in place.

    Returns the number of vertices that moved.
    """
    cfg = settings if settings is not None else CollisionSettings()
    if not collisions or iterations <= 0:
        return 0

    start = armor.world_positions()
    positions = start.copy()
    idx = np.array([c.vertex_index for c in collisions], dtype=np.int64)
    pushes = np.array([
        c.normal * (c.penetration_depth + cfg.margin) * cfg.push_scale for c in collisions
    ])

    for _ in range(iterations):
        disp = np.zeros_like(positions)
        np.add.at(disp, idx, pushes)

        tree = cKDTree(positions)
        neighbour_sum = np.zeros_like(positions)
        neighbour_hits = np.zeros(len(positions))
        for k, near in enumerate(tree.query_ball_point(positions[idx], cfg.influence_radius)):
            near = np.asarray(near, dtype=np.int64)
            near = near[near != idx[k]]
            if len(near) == 0:
                continue
            d = np.linalg.norm(positions[near] - positions[idx[k]], axis=1)
            w = (1.0 - d / cfg.influence_radius) * cfg.neighbour_scale
            np.add.at(neighbour_sum, near, w[:, None] * pushes[k])
            np.add.at(neighbour_hits, near, 1.0)

        dragged = neighbour_hits > 0
        drag = np.zeros_like(positions)
        drag[dragged] = neighbour_sum[dragged] / neighbour_hits[dragged, None]
        drag = _clamp_rows(drag, cfg.max_total_displacement)

        positions = positions + disp + drag
        positions = start + _clamp_rows(positions - start, cfg.max_total_displacement)

    armor.set_world_positions(positions)
    moved = int(np.count_nonzero(np.linalg.norm(positions - start, axis=1) > 0))
    logger.info("Resolved %d collisions over %d iterations, %d vertices moved",
                len(collisions), iterations, moved)
    return moved


def smooth(mesh: Mesh, strength: float = 0.5, passes: int = 2, radius: float = 0.05) -> None:
    """Blend each vertex toward the average of vertices within *radius*, in place.

    The vertex itself counts twice in its average.
    """
    if not 0.0 <= strength <= 1.0:
        raise ValueError(f"strength must be in [0, 1], got {strength}")
    positions = mesh.world_positions()
    for _ in range(passes):
        pairs = cKDTree(positions).query_pairs(radius, output_type="ndarray")
        total = positions * 2.0
        count = np.full(len(positions), 2.0)
        if len(pairs):
            np.add.at(total, pairs[:, 0], positions[pairs[:, 1]])
            np.add.at(total, pairs[:, 1], positions[pairs[:, 0]])
            np.add.at(count, pairs[:, 0], 1.0)
            np.add.at(count, pairs[:, 1], 1.0)
        avg = total / count[:, None]
        positions = positions + (avg - positions) * strength
    mesh.set_world_positions(positions)
    logger.debug("Smoothed '%s': %d passes, strength %.2f", mesh.name, passes, strength)


def _clamp_rows(v: NDArray, limit: float) -> NDArray:
    mags = np.linalg.norm(v, axis=1)
    over = mags > limit
    if np.any(over):
        v = v.copy()
        v[over] *= (limit / mags[over])[:, None]
    return v
