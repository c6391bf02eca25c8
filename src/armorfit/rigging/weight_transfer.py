"""Skin-weight transfer from a skinned avatar onto a rigid (fitted) armor mesh.

Each armor vertex is resolved by the first strategy that succeeds:

1. projective: ray toward the avatar's bounding-box center; blend the
   hit triangle's corner weights by the hit's barycentric coordinates
2. reverse projective: the same ray, negated
3. nearest vertex: copy the weights of the closest avatar vertex within
   ``nearest_max_distance``
4. bone distance: Gaussian falloff over the closest bone origins
5. root: weight 1 on the skeleton root bone

so every output vertex has a full, normalised weight set.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Optional

import numpy as np
from numpy.typing import NDArray
from scipy.spatial import cKDTree

from armorfit.constants import MAX_INFLUENCES
from armorfit.core.errors import MissingSkeleton
from armorfit.core.math_utils import aabb, aabb_center, mat4_identity
from armorfit.core.mesh import Mesh, SkinnedMesh
from armorfit.spatial.bake import bake
from armorfit.spatial.bvh import RayHits, SpatialIndex

logger = logging.getLogger(__name__)

# Accept hits exactly at the ray origin (armor vertex lying on the body)
_ORIGIN_EPS = 1e-9


@dataclass
class TransferOptions:
    max_bones_per_vertex: int = MAX_INFLUENCES
    max_projection_distance: float = 1.0
    nearest_max_distance: float = 0.5
    bone_sigma: float = 0.3
    min_weight: float = 1e-6
    apply_geometry_transform: bool = True

    def validate(self) -> None:
        """Raise ValueError for out-of-range values."""
        if self.max_bones_per_vertex < 1:
            raise ValueError(
                f"max_bones_per_vertex must be >= 1, got {self.max_bones_per_vertex}"
            )
        if self.bone_sigma <= 0:
            raise ValueError(f"bone_sigma must be > 0, got {self.bone_sigma}")
        if self.min_weight < 0:
            raise ValueError(f"min_weight must be >= 0, got {self.min_weight}")


@dataclass
class TransferReport:
    """How many armor vertices each strategy resolved."""
    projected: int = 0
    reverse_projected: int = 0
    nearest: int = 0
    bone_distance: int = 0
    root: int = 0

    @property
    def total(self) -> int:
        return self.projected + self.reverse_projected + self.nearest + self.bone_distance + self.root

    def as_dict(self) -> dict[str, int]:
        d = asdict(self)
        d["total"] = self.total
        return d


def _top_influences(
    rows: NDArray, bones: NDArray, weights: NDArray,
    n_rows: int, k: int, bone_count: int, min_weight: float,
) -> tuple[NDArray, NDArray]:
    """Sum weights per (row, bone), keep the *k* largest per row, normalise.

    Rows whose kept weights sum to zero come back all zero.
    """
    out_idx = np.zeros((n_rows, MAX_INFLUENCES), dtype=np.int64)
    out_w = np.zeros((n_rows, MAX_INFLUENCES))
    if len(rows) == 0:
        return out_idx, out_w

    keys = rows.astype(np.int64) * bone_count + bones.astype(np.int64)
    unique, inverse = np.unique(keys, return_inverse=True)
    sums = np.bincount(np.asarray(inverse).ravel(), weights=weights)
    row_of = unique // bone_count
    bone_of = unique % bone_count

    keep = sums > min_weight
    row_of, bone_of, sums = row_of[keep], bone_of[keep], sums[keep]
    # Heaviest first within each row; ties broken by bone index
    order = np.lexsort((bone_of, -sums, row_of))
    row_of, bone_of, sums = row_of[order], bone_of[order], sums[order]
    rank = np.arange(len(row_of)) - np.searchsorted(row_of, row_of, side="left")
    sel = rank < min(k, MAX_INFLUENCES)

    out_idx[row_of[sel], rank[sel]] = bone_of[sel]
    out_w[row_of[sel], rank[sel]] = sums[sel]
    totals = out_w.sum(axis=1, keepdims=True)
    np.divide(out_w, totals, out=out_w, where=totals > 0)
    return out_idx, out_w


def _blend_hits(source: SkinnedMesh, hits: RayHits, opts: TransferOptions) -> tuple[NDArray, NDArray]:
    """Barycentric blend of corner weights for every hit row."""
    r = len(hits)
    hit_rows = np.nonzero(hits.hit)[0]
    corners = hits.vertices[hit_rows]                                  # (H, 3)
    bones = source.skin_indices[corners]                               # (H, 3, 4)
    weights = source.skin_weights[corners] * hits.barycentric[hit_rows][:, :, None]
    rows = np.repeat(hit_rows, 3 * MAX_INFLUENCES)
    return _top_influences(
        rows, bones.ravel(), weights.ravel(), r,
        opts.max_bones_per_vertex, len(source.skeleton), opts.min_weight,
    )


def transfer_weights(
    source: SkinnedMesh,
    target: Mesh,
    options: Optional[TransferOptions] = None,
) -> tuple[SkinnedMesh, TransferReport]:
    """Bind *target* to *source*'s skeleton; returns the new mesh and strategy counts."""
    if not source.has_skinning:
        raise MissingSkeleton(f"Source '{source.name}' has no skin weights or skeleton")
    opts = options if options is not None else TransferOptions()
    opts.validate()
    skeleton = source.skeleton
    bone_count = len(skeleton)

    baked = bake(source)
    index = SpatialIndex(baked)
    center = aabb_center(aabb(baked.positions))

    points = target.world_positions()
    n = len(points)
    skin_idx = np.zeros((n, MAX_INFLUENCES), dtype=np.int64)
    skin_w = np.zeros((n, MAX_INFLUENCES))
    resolved = np.zeros(n, dtype=bool)
    report = TransferReport()

    dirs = center - points
    rayable = np.nonzero(np.linalg.norm(dirs, axis=1) > 1e-12)[0]

    # 1-2: projective, then reverse projective
    for sign, field_name in ((1.0, "projected"), (-1.0, "reverse_projected")):
        rows = rayable[~resolved[rayable]]
        if len(rows) == 0:
            break
        hits = index.query_rays(
            points[rows], dirs[rows] * sign,
            t_min=-_ORIGIN_EPS, t_max=opts.max_projection_distance,
        )
        idx, w = _blend_hits(source, hits, opts)
        ok = w.sum(axis=1) > 0
        skin_idx[rows[ok]] = idx[ok]
        skin_w[rows[ok]] = w[ok]
        resolved[rows[ok]] = True
        setattr(report, field_name, int(ok.sum()))

    # 3: nearest avatar vertex
    rows = np.nonzero(~resolved)[0]
    if len(rows):
        dist, nearest = cKDTree(baked.positions).query(
            points[rows], distance_upper_bound=opts.nearest_max_distance,
        )
        found = np.isfinite(dist) & (nearest < len(baked.positions))
        found &= source.skin_weights[np.minimum(nearest, len(baked.positions) - 1)].sum(axis=1) > 0
        src = nearest[found]
        idx, w = _top_influences(
            np.repeat(np.arange(len(src)), MAX_INFLUENCES),
            source.skin_indices[src].ravel(), source.skin_weights[src].ravel(),
            len(src), opts.max_bones_per_vertex, bone_count, opts.min_weight,
        )
        skin_idx[rows[found]] = idx
        skin_w[rows[found]] = w
        resolved[rows[found]] = True
        report.nearest = int(found.sum())

    # 4: Gaussian over the closest bone origins
    rows = np.nonzero(~resolved)[0]
    if len(rows) and bone_count:
        bone_pos = skeleton.world_positions()
        d = np.linalg.norm(points[rows, None, :] - bone_pos[None, :, :], axis=2)   # (U, B)
        k = min(opts.max_bones_per_vertex, MAX_INFLUENCES, bone_count)
        closest = np.argsort(d, axis=1, kind="stable")[:, :k]
        cd = np.take_along_axis(d, closest, axis=1)
        g = np.exp(-(cd * cd) / (2.0 * opts.bone_sigma * opts.bone_sigma))
        ok = g.sum(axis=1) > 0
        g[ok] /= g[ok].sum(axis=1, keepdims=True)
        skin_idx[rows[ok], :k] = closest[ok]
        skin_w[rows[ok], :k] = g[ok]
        resolved[rows[ok]] = True
        report.bone_distance = int(ok.sum())

    # 5: root binding
    rows = np.nonzero(~resolved)[0]
    if len(rows):
        skin_idx[rows] = 0
        skin_w[rows] = 0.0
        skin_idx[rows, 0] = skeleton.root_index
        skin_w[rows, 0] = 1.0
        report.root = len(rows)
        logger.warning("Bound %d vertices to root bone '%s'", len(rows),
                       skeleton.bones[skeleton.root_index].name)

    if opts.apply_geometry_transform:
        positions = points
        world = mat4_identity()
    else:
        positions = target.positions.copy()
        world = target.world_matrix.copy()

    bound = SkinnedMesh(
        positions=positions,
        indices=None if target.indices is None else target.indices.copy(),
        world_matrix=world,
        name=target.name,
        skin_indices=skin_idx,
        skin_weights=skin_w,
        skeleton=skeleton,
        bind_matrix=world.copy(),
    )
    logger.info(
        "Transferred weights to '%s': projected %d, reverse %d, nearest %d, "
        "bone distance %d, root %d",
        target.name, report.projected, report.reverse_projected,
        report.nearest, report.bone_distance, report.root,
    )
    return bound, report
