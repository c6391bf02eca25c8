"""Bounding-volume hierarchy over a static world-space triangle buffer.

The tree is built once with a binned surface-area heuristic and stored as
flat numpy arrays. Queries are batched: a packet of rays walks the tree
together, each node keeping only the rays whose slab test passes, and
leaves run a vectorised double-sided Moller-Trumbore test.

An index is valid only for the pose/transform it was built from. It never
invalidates itself; :class:`IndexCache` implements the rebuild policy.
"""

from __future__ import annotations

import logging
import time
import weakref
import zlib
from dataclasses import dataclass
from typing import Callable, Hashable, Optional

import numpy as np
from numpy.typing import NDArray

from armorfit.constants import (
    BVH_MAX_DEPTH,
    BVH_MAX_LEAF_TRIS,
    BVH_SAH_BINS,
    DEGENERATE_AREA_EPS,
    DIRECTION_EPS,
    INDEX_CACHE_CLEANUP_FACTOR,
    INDEX_CACHE_EPSILON,
    INDEX_CACHE_MAX_AGE,
)
from armorfit.core.errors import BuildError, InvalidQuery
from armorfit.core.math_utils import Vec3, aabb_center, matrices_close
from armorfit.core.mesh import Mesh
from armorfit.spatial.bake import bake

logger = logging.getLogger(__name__)

# Barycentric tolerance so rays through shared edges/vertices are not lost
_BARY_EPS = 1e-9
_DET_EPS = 1e-14


@dataclass
class Hit:
    """Closest ray-surface intersection."""
    point: Vec3
    distance: float
    triangle: int                   # source triangle index
    vertices: NDArray[np.int64]     # the triangle's 3 source vertex indices
    barycentric: NDArray[np.float64]  # weights of ``vertices``, sum to 1
    normal: Vec3                    # geometric face normal by winding
    front_face: bool                # ray arrived on the normal side


@dataclass
class RayHits:
    """Batched query results; rows with ``hit == False`` carry no data."""
    hit: NDArray[np.bool_]
    distance: NDArray[np.float64]
    point: NDArray[np.float64]
    triangle: NDArray[np.int64]
    vertices: NDArray[np.int64]
    barycentric: NDArray[np.float64]
    normal: NDArray[np.float64]
    front_face: NDArray[np.bool_]

    def __len__(self) -> int:
        return len(self.hit)

    def get(self, i: int) -> Optional[Hit]:
        if not self.hit[i]:
            return None
        return Hit(
            point=self.point[i].copy(),
            distance=float(self.distance[i]),
            triangle=int(self.triangle[i]),
            vertices=self.vertices[i].copy(),
            barycentric=self.barycentric[i].copy(),
            normal=self.normal[i].copy(),
            front_face=bool(self.front_face[i]),
        )


def _box_area(lo: NDArray, hi: NDArray) -> NDArray:
    d = np.maximum(hi - lo, 0.0)
    return 2.0 * (d[..., 0] * d[..., 1] + d[..., 1] * d[..., 2] + d[..., 2] * d[..., 0])


class SpatialIndex:
    """SAH BVH over the triangles of a baked mesh.

    positions: (V, 3) world-space vertex positions of the baked source
    triangles: (T, 3) source vertex indices, one row per kept triangle,
        in leaf order
    triangle_ids: (T,) source triangle index of each kept triangle
    """

    def __init__(
        self,
        mesh: Mesh,
        max_leaf_tris: int = BVH_MAX_LEAF_TRIS,
        max_depth: int = BVH_MAX_DEPTH,
        bins: int = BVH_SAH_BINS,
    ):
        self.positions = mesh.positions.copy()
        tris = mesh.triangles()
        if len(tris) == 0:
            raise BuildError(f"Mesh '{mesh.name}' has zero triangles")

        v0 = self.positions[tris[:, 0]]
        e1 = self.positions[tris[:, 1]] - v0
        e2 = self.positions[tris[:, 2]] - v0
        cross = np.cross(e1, e2)
        area2 = np.linalg.norm(cross, axis=1)
        keep = np.isfinite(area2) & (area2 > DEGENERATE_AREA_EPS)
        skipped = int(len(tris) - keep.sum())
        if skipped:
            logger.debug("Skipping %d degenerate triangles in '%s'", skipped, mesh.name)
        if not np.any(keep):
            raise BuildError(
                f"Mesh '{mesh.name}' has no non-degenerate triangles ({len(tris)} total)"
            )

        ids = np.nonzero(keep)[0]
        self._build(tris[ids], ids, max_leaf_tris, max_depth, bins)

        self.v0 = self.positions[self.triangles[:, 0]]
        self.e1 = self.positions[self.triangles[:, 1]] - self.v0
        self.e2 = self.positions[self.triangles[:, 2]] - self.v0
        n = np.cross(self.e1, self.e2)
        self.face_normals = n / np.linalg.norm(n, axis=1, keepdims=True)

        self.skipped_triangles = skipped
        logger.debug(
            "Built BVH for '%s': %d triangles, %d nodes",
            mesh.name, len(self.triangles), len(self.node_min),
        )

    @classmethod
    def build(
        cls,
        mesh: Mesh,
        pose: Optional[NDArray] = None,
        max_leaf_tris: int = BVH_MAX_LEAF_TRIS,
        max_depth: int = BVH_MAX_DEPTH,
    ) -> SpatialIndex:
        """Bake *mesh* (posed when skinned) and build an index over it."""
        return cls(bake(mesh, pose), max_leaf_tris=max_leaf_tris, max_depth=max_depth)

    # ── Build ──

    def _build(self, tris: NDArray, ids: NDArray, max_leaf: int, max_depth: int, bins: int) -> None:
        corners = self.positions[tris]                 # (T, 3, 3)
        tri_min = corners.min(axis=1)
        tri_max = corners.max(axis=1)
        centroids = corners.mean(axis=1)

        order = np.arange(len(tris))
        node_min: list[NDArray] = []
        node_max: list[NDArray] = []
        left: list[int] = []
        right: list[int] = []
        start: list[int] = []
        count: list[int] = []

        def new_node() -> int:
            node_min.append(np.zeros(3))
            node_max.append(np.zeros(3))
            left.append(-1)
            right.append(-1)
            start.append(0)
            count.append(0)
            return len(left) - 1

        stack = [(new_node(), 0, len(tris), 0)]
        while stack:
            node, s, e, depth = stack.pop()
            sub = order[s:e]
            node_min[node] = tri_min[sub].min(axis=0)
            node_max[node] = tri_max[sub].max(axis=0)
            n = e - s

            split = None
            if n > max_leaf and depth < max_depth:
                split = self._sah_split(centroids[sub], tri_min[sub], tri_max[sub], bins)
            if split is None:
                start[node] = s
                count[node] = n
                continue

            mask = split
            order[s:e] = np.concatenate([sub[mask], sub[~mask]])
            mid = s + int(mask.sum())
            lnode, rnode = new_node(), new_node()
            left[node], right[node] = lnode, rnode
            stack.append((rnode, mid, e, depth + 1))
            stack.append((lnode, s, mid, depth + 1))

        self.node_min = np.array(node_min)
        self.node_max = np.array(node_max)
        self.node_left = np.array(left, dtype=np.int64)
        self.node_right = np.array(right, dtype=np.int64)
        self.node_start = np.array(start, dtype=np.int64)
        self.node_count = np.array(count, dtype=np.int64)
        self.triangles = tris[order]
        self.triangle_ids = ids[order]

    @staticmethod
    def _sah_split(
        centroids: NDArray, tmin: NDArray, tmax: NDArray, bins: int,
    ) -> Optional[NDArray[np.bool_]]:
        """Best binned-SAH partition as a left-side mask, or None for a leaf."""
        n = len(centroids)
        cmin = centroids.min(axis=0)
        cmax = centroids.max(axis=0)
        extent = cmax - cmin

        best_cost = np.inf
        best = None
        for axis in range(3):
            if extent[axis] <= 1e-12:
                continue
            b = ((centroids[:, axis] - cmin[axis]) / extent[axis] * bins).astype(np.int64)
            b = np.clip(b, 0, bins - 1)
            counts = np.bincount(b, minlength=bins)
            bmin = np.full((bins, 3), np.inf)
            bmax = np.full((bins, 3), -np.inf)
            np.minimum.at(bmin, b, tmin)
            np.maximum.at(bmax, b, tmax)

            # Prefix (left) and suffix (right) accumulations over bins
            lmin = np.minimum.accumulate(bmin, axis=0)[:-1]
            lmax = np.maximum.accumulate(bmax, axis=0)[:-1]
            rmin = np.minimum.accumulate(bmin[::-1], axis=0)[::-1][1:]
            rmax = np.maximum.accumulate(bmax[::-1], axis=0)[::-1][1:]
            lcount = np.cumsum(counts)[:-1]
            rcount = n - lcount

            valid = (lcount > 0) & (rcount > 0)
            if not np.any(valid):
                continue
            with np.errstate(invalid="ignore"):
                cost = _box_area(lmin, lmax) * lcount + _box_area(rmin, rmax) * rcount
            cost = np.where(valid, cost, np.inf)
            i = int(np.argmin(cost))
            if cost[i] < best_cost:
                best_cost = cost[i]
                best = b <= i

        if best is None:
            # All centroids coincide along every axis: split in half
            if n > 1:
                mask = np.zeros(n, dtype=bool)
                mask[: n // 2] = True
                return mask
            return None
        return best

    # ── Properties ──

    @property
    def triangle_count(self) -> int:
        return len(self.triangles)

    @property
    def bounds(self) -> tuple[NDArray, NDArray]:
        return self.node_min[0].copy(), self.node_max[0].copy()

    @property
    def center(self) -> Vec3:
        return aabb_center(self.bounds)

    # ── Queries ──

    def query_ray(
        self,
        origin,
        direction,
        t_min: float = 0.0,
        t_max: float = np.inf,
    ) -> Optional[Hit]:
        """Closest intersection along one ray, or None.

        *direction* is normalised internally, so distances are world units.
        """
        hits = self.query_rays(
            np.asarray(origin, dtype=np.float64).reshape(1, 3),
            np.asarray(direction, dtype=np.float64).reshape(1, 3),
            t_min=t_min,
            t_max=t_max,
        )
        return hits.get(0)

    def query_rays(
        self,
        origins: NDArray,
        directions: NDArray,
        t_min=0.0,
        t_max=np.inf,
    ) -> RayHits:
        """Closest intersections for a packet of rays.

        *t_min* and *t_max* may be scalars or per-ray arrays.
        """
        o = np.asarray(origins, dtype=np.float64).reshape(-1, 3)
        d = np.asarray(directions, dtype=np.float64).reshape(-1, 3)
        if len(o) != len(d):
            raise ValueError(f"{len(o)} origins but {len(d)} directions")
        r = len(o)

        lengths = np.linalg.norm(d, axis=1)
        bad = ~np.isfinite(lengths) | (lengths <= DIRECTION_EPS)
        if np.any(bad):
            raise InvalidQuery(
                f"{int(bad.sum())} ray(s) with zero-length or non-finite direction"
            )
        d = d / lengths[:, None]
        if not np.all(np.isfinite(o)):
            raise InvalidQuery("Ray origin is not finite")

        t_lo = np.broadcast_to(np.asarray(t_min, dtype=np.float64), (r,))
        best_t = np.array(np.broadcast_to(np.asarray(t_max, dtype=np.float64), (r,)))
        best_tri = np.full(r, -1, dtype=np.int64)
        best_u = np.zeros(r)
        best_v = np.zeros(r)

        safe_d = np.where(np.abs(d) < 1e-30, 1e-30, d)
        inv_d = 1.0 / safe_d

        stack = [(0, np.arange(r))]
        while stack:
            node, rays = stack.pop()
            ro = o[rays]
            ri = inv_d[rays]
            t1 = (self.node_min[node] - ro) * ri
            t2 = (self.node_max[node] - ro) * ri
            near = np.minimum(t1, t2).max(axis=1)
            far = np.maximum(t1, t2).min(axis=1)
            keep = (far >= np.maximum(near, t_lo[rays])) & (near <= best_t[rays])
            rays = rays[keep]
            if len(rays) == 0:
                continue

            if self.node_left[node] < 0:
                s = self.node_start[node]
                self._intersect_leaf(
                    rays, np.arange(s, s + self.node_count[node]),
                    o, d, t_lo, best_t, best_tri, best_u, best_v,
                )
            else:
                stack.append((self.node_right[node], rays))
                stack.append((self.node_left[node], rays))

        return self._pack(o, d, best_t, best_tri, best_u, best_v)

    def _intersect_leaf(self, rays, tris, o, d, t_lo, best_t, best_tri, best_u, best_v) -> None:
        ro = o[rays][:, None, :]                       # (R, 1, 3)
        rd = d[rays][:, None, :]
        v0 = self.v0[tris][None]                       # (1, L, 3)
        e1 = self.e1[tris][None]
        e2 = self.e2[tris][None]

        pvec = np.cross(rd, e2)
        det = np.sum(e1 * pvec, axis=-1)               # (R, L)
        valid = np.abs(det) > _DET_EPS
        inv_det = np.where(valid, 1.0 / np.where(valid, det, 1.0), 0.0)
        tvec = ro - v0
        u = np.sum(tvec * pvec, axis=-1) * inv_det
        qvec = np.cross(tvec, e1)
        v = np.sum(rd * qvec, axis=-1) * inv_det
        t = np.sum(e2 * qvec, axis=-1) * inv_det

        ok = (
            valid
            & (u >= -_BARY_EPS) & (v >= -_BARY_EPS) & (u + v <= 1.0 + _BARY_EPS)
            & (t >= t_lo[rays][:, None]) & (t < best_t[rays][:, None])
        )
        if not np.any(ok):
            return
        t = np.where(ok, t, np.inf)
        j = np.argmin(t, axis=1)
        rows = np.arange(len(rays))
        tj = t[rows, j]
        found = np.isfinite(tj)
        sel = rays[found]
        best_t[sel] = tj[found]
        best_tri[sel] = tris[j[found]]
        best_u[sel] = np.clip(u[rows, j][found], 0.0, 1.0)
        best_v[sel] = np.clip(v[rows, j][found], 0.0, 1.0)

    def _pack(self, o, d, best_t, best_tri, best_u, best_v) -> RayHits:
        r = len(o)
        hit = best_tri >= 0
        distance = np.where(hit, best_t, np.inf)
        point = np.zeros((r, 3))
        normal = np.zeros((r, 3))
        vertices = np.full((r, 3), -1, dtype=np.int64)
        bary = np.zeros((r, 3))
        triangle = np.full(r, -1, dtype=np.int64)
        front = np.zeros(r, dtype=bool)
        if np.any(hit):
            k = best_tri[hit]
            point[hit] = o[hit] + d[hit] * best_t[hit, None]
            normal[hit] = self.face_normals[k]
            vertices[hit] = self.triangles[k]
            u, v = best_u[hit], best_v[hit]
            w = np.clip(1.0 - u - v, 0.0, 1.0)
            b = np.column_stack([w, u, v])
            bary[hit] = b / b.sum(axis=1, keepdims=True)
            triangle[hit] = self.triangle_ids[k]
            front[hit] = np.einsum("ij,ij->i", d[hit], normal[hit]) < 0
        return RayHits(
            hit=hit, distance=distance, point=point, triangle=triangle,
            vertices=vertices, barycentric=bary, normal=normal, front_face=front,
        )


def _fingerprint(mesh: Mesh) -> int:
    return zlib.crc32(np.ascontiguousarray(mesh.positions).tobytes())


@dataclass
class _CacheEntry:
    index: SpatialIndex
    mesh_ref: weakref.ref
    world_matrix: NDArray
    bone_matrices: Optional[NDArray]
    vertex_count: int
    fingerprint: int
    built_at: float
    last_used: float


class IndexCache:
    """Rebuild-on-change cache of spatial indices keyed per target mesh.

    Entries hold a weak reference to the mesh they were built from; a
    lookup by a different (or collected) mesh always rebuilds. An entry is
    also rebuilt when the target's world matrix or bone world matrices move
    by more than ``epsilon``, when its positions are edited, when its
    vertex count changes, or once it is older than ``max_age`` seconds.
    :meth:`prune` drops entries unused for ``max_age * cleanup_factor``
    seconds and entries whose mesh is gone.
    """

    def __init__(
        self,
        max_age: float = INDEX_CACHE_MAX_AGE,
        epsilon: float = INDEX_CACHE_EPSILON,
        cleanup_factor: float = INDEX_CACHE_CLEANUP_FACTOR,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_age = max_age
        self.epsilon = epsilon
        self.cleanup_factor = cleanup_factor
        self._clock = clock
        self._entries: dict[Hashable, _CacheEntry] = {}
        self.builds = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._entries

    def get(self, mesh: Mesh, pose: Optional[NDArray] = None, key: Optional[Hashable] = None) -> SpatialIndex:
        """Cached index for *mesh*, rebuilt when stale."""
        key = id(mesh) if key is None else key
        now = self._clock()
        bones = None
        if mesh.has_skinning:
            bones = mesh.skeleton.world_matrices() if pose is None else np.asarray(pose)

        entry = self._entries.get(key)
        if entry is not None and not self._is_stale(entry, mesh, bones, now):
            entry.last_used = now
            return entry.index

        if entry is not None:
            logger.debug("Rebuilding stale spatial index for %r", key)
        index = SpatialIndex.build(mesh, pose)
        self.builds += 1
        self._entries[key] = _CacheEntry(
            index=index,
            mesh_ref=weakref.ref(mesh),
            world_matrix=mesh.world_matrix.copy(),
            bone_matrices=None if bones is None else bones.copy(),
            vertex_count=mesh.vertex_count,
            fingerprint=_fingerprint(mesh),
            built_at=now,
            last_used=now,
        )
        return index

    def _is_stale(self, entry: _CacheEntry, mesh: Mesh, bones: Optional[NDArray], now: float) -> bool:
        if entry.mesh_ref() is not mesh:
            return True
        if now - entry.built_at > self.max_age:
            return True
        if entry.vertex_count != mesh.vertex_count:
            return True
        if not matrices_close(entry.world_matrix, mesh.world_matrix, self.epsilon):
            return True
        if (entry.bone_matrices is None) != (bones is None):
            return True
        if bones is not None and not matrices_close(entry.bone_matrices, bones, self.epsilon):
            return True
        return entry.fingerprint != _fingerprint(mesh)

    def invalidate(self, key: Optional[Hashable] = None) -> None:
        """Drop one entry, or all entries when *key* is None."""
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def prune(self) -> int:
        """Remove long-unused entries; returns how many were removed."""
        now = self._clock()
        limit = self.max_age * self.cleanup_factor
        stale = [
            k for k, e in self._entries.items()
            if now - e.last_used > limit or e.mesh_ref() is None
        ]
        for k in stale:
            del self._entries[k]
        if stale:
            logger.debug("Pruned %d cached spatial indices", len(stale))
        return len(stale)
