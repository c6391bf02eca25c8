"""Mesh data structures for fitting and skinning (no rendering dependencies)."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

import numpy as np
from numpy.typing import NDArray

from armorfit.constants import MAX_INFLUENCES
from armorfit.core.math_utils import (
    Mat4,
    aabb,
    mat3_normal,
    mat4_identity,
    mat4_inverse,
    normalize_rows,
    transform_points,
)
from armorfit.core.skeleton import Skeleton


@dataclass(eq=False)
class Mesh:
    """Triangle surface with a world transform.

    positions: (N, 3) float64 vertex positions in mesh-local space
    indices: (F, 3) triangle vertex indices, or None for non-indexed
        geometry where every 3 consecutive vertices form a triangle
    normals: (N, 3) float64 unit vertex normals; computed when omitted and
        recomputed by :meth:`set_positions`
    world_matrix: 4x4 affine local-to-world transform
    """
    positions: NDArray[np.float64]
    indices: Optional[NDArray[np.int64]] = None
    normals: Optional[NDArray[np.float64]] = None
    world_matrix: Mat4 = field(default_factory=mat4_identity)
    name: str = ""

    def __post_init__(self):
        self.positions = np.array(self.positions, dtype=np.float64).reshape(-1, 3)
        self.world_matrix = np.array(self.world_matrix, dtype=np.float64).reshape(4, 4)
        n = len(self.positions)

        if self.indices is not None:
            idx = np.asarray(self.indices)
            if idx.size % 3 != 0:
                raise ValueError(f"Index count {idx.size} is not a multiple of 3")
            idx = idx.astype(np.int64).reshape(-1, 3)
            if idx.size and (idx.min() < 0 or idx.max() >= n):
                raise ValueError(
                    f"Mesh '{self.name}': index values must be in [0, {n}), "
                    f"got range [{idx.min()}, {idx.max()}]"
                )
            self.indices = idx
        elif n % 3 != 0:
            raise ValueError(
                f"Non-indexed mesh '{self.name}' needs a multiple of 3 vertices, got {n}"
            )

        if self.normals is None or np.asarray(self.normals).size != n * 3:
            self.compute_normals()
        else:
            self.normals = np.array(self.normals, dtype=np.float64).reshape(-1, 3)

    @classmethod
    def from_arrays(
        cls,
        positions,
        indices=None,
        normals=None,
        world_matrix: Optional[Mat4] = None,
        name: str = "",
    ) -> Mesh:
        """Build a mesh from flat or (N, 3) arrays."""
        return cls(
            positions=positions,
            indices=indices,
            normals=normals,
            world_matrix=mat4_identity() if world_matrix is None else world_matrix,
            name=name,
        )

    @property
    def vertex_count(self) -> int:
        return len(self.positions)

    @property
    def triangle_count(self) -> int:
        if self.indices is not None:
            return len(self.indices)
        return self.vertex_count // 3

    @property
    def has_indices(self) -> bool:
        return self.indices is not None

    @property
    def has_skinning(self) -> bool:
        return False

    def triangles(self) -> NDArray[np.int64]:
        """(F, 3) vertex indices per triangle, for indexed and non-indexed meshes."""
        if self.indices is not None:
            return self.indices
        return np.arange(self.vertex_count, dtype=np.int64).reshape(-1, 3)

    def face_normals(self, positions: Optional[NDArray] = None) -> NDArray[np.float64]:
        """Unit face normals by winding; degenerate faces get zero normals."""
        pos = self.positions if positions is None else positions
        tri = self.triangles()
        v0, v1, v2 = pos[tri[:, 0]], pos[tri[:, 1]], pos[tri[:, 2]]
        return normalize_rows(np.cross(v1 - v0, v2 - v0))

    def compute_normals(self) -> None:
        """Compute area-weighted per-vertex normals from face normals."""
        pos = self.positions
        norms = np.zeros_like(pos)
        tri = self.triangles()
        if len(tri):
            v0, v1, v2 = pos[tri[:, 0]], pos[tri[:, 1]], pos[tri[:, 2]]
            face_n = np.cross(v1 - v0, v2 - v0)
            np.add.at(norms, tri[:, 0], face_n)
            np.add.at(norms, tri[:, 1], face_n)
            np.add.at(norms, tri[:, 2], face_n)
        self.normals = normalize_rows(norms)

    def set_positions(self, positions: NDArray) -> None:
        """Replace vertex positions (same count) and recompute normals."""
        pos = np.array(positions, dtype=np.float64).reshape(-1, 3)
        if len(pos) != self.vertex_count:
            raise ValueError(
                f"Expected {self.vertex_count} positions, got {len(pos)}"
            )
        self.positions = pos
        self.compute_normals()

    def world_positions(self) -> NDArray[np.float64]:
        return transform_points(self.world_matrix, self.positions)

    def world_normals(self) -> NDArray[np.float64]:
        return normalize_rows(self.normals @ mat3_normal(self.world_matrix).T)

    def set_world_positions(self, world_positions: NDArray) -> None:
        """Write world-space positions back through the inverse world matrix."""
        self.set_positions(transform_points(mat4_inverse(self.world_matrix), world_positions))

    def bounds(self, world: bool = True) -> tuple[NDArray, NDArray]:
        """(min, max) corners, in world space by default."""
        return aabb(self.world_positions() if world else self.positions)

    def edges(self) -> NDArray[np.int64]:
        """Unique undirected edges as (E, 2) sorted vertex-index pairs."""
        tri = self.triangles()
        if len(tri) == 0:
            return np.zeros((0, 2), dtype=np.int64)
        all_edges = np.concatenate([tri[:, [0, 1]], tri[:, [1, 2]], tri[:, [2, 0]]], axis=0)
        return np.unique(np.sort(all_edges, axis=1), axis=0)

    def boundary_vertices(self) -> NDArray[np.int64]:
        """Vertices on edges used by exactly one triangle (openings, rims)."""
        tri = self.triangles()
        if len(tri) == 0:
            return np.zeros(0, dtype=np.int64)
        all_edges = np.sort(
            np.concatenate([tri[:, [0, 1]], tri[:, [1, 2]], tri[:, [2, 0]]], axis=0),
            axis=1,
        )
        edges, counts = np.unique(all_edges, axis=0, return_counts=True)
        return np.unique(edges[counts == 1].ravel())

    def volume(self, positions: Optional[NDArray] = None) -> float:
        """Signed enclosed volume via the divergence theorem (closed meshes)."""
        pos = self.positions if positions is None else positions
        tri = self.triangles()
        if len(tri) == 0:
            return 0.0
        v0, v1, v2 = pos[tri[:, 0]], pos[tri[:, 1]], pos[tri[:, 2]]
        return float(np.einsum("ij,ij->i", v0, np.cross(v1, v2)).sum() / 6.0)

    def clone(self) -> Mesh:
        """Create a deep copy."""
        return Mesh(
            positions=self.positions.copy(),
            indices=self.indices.copy() if self.indices is not None else None,
            normals=self.normals.copy(),
            world_matrix=self.world_matrix.copy(),
            name=self.name,
        )


@dataclass(eq=False)
class SkinnedMesh(Mesh):
    """Mesh with 4-slot bone influences and a shared skeleton reference.

    skin_indices: (N, 4) bone indices into ``skeleton``
    skin_weights: (N, 4) non-negative weights, normalised to sum 1 per row;
        rows whose weights are all zero are left zero (treated as unskinned)
    bind_matrix: world matrix captured at bind time (defaults to world_matrix)
    """
    skin_indices: Optional[NDArray[np.int64]] = None
    skin_weights: Optional[NDArray[np.float64]] = None
    skeleton: Optional[Skeleton] = None
    bind_matrix: Optional[Mat4] = None

    def __post_init__(self):
        super().__post_init__()
        n = self.vertex_count
        if self.skin_indices is None or self.skin_weights is None or self.skeleton is None:
            raise ValueError(f"SkinnedMesh '{self.name}' needs skin indices, weights and a skeleton")

        idx = np.asarray(self.skin_indices).astype(np.int64).reshape(n, -1)
        w = np.asarray(self.skin_weights, dtype=np.float64).reshape(n, -1)
        if idx.shape != w.shape or idx.shape[1] > MAX_INFLUENCES:
            raise ValueError(
                f"Skin data must be (N, <= {MAX_INFLUENCES}) and matching, "
                f"got {idx.shape} and {w.shape}"
            )
        if idx.shape[1] < MAX_INFLUENCES:
            pad = MAX_INFLUENCES - idx.shape[1]
            idx = np.pad(idx, ((0, 0), (0, pad)))
            w = np.pad(w, ((0, 0), (0, pad)))
        if np.any(w < 0) or not np.all(np.isfinite(w)):
            raise ValueError("Skin weights must be finite and non-negative")
        bone_count = len(self.skeleton)
        used = w > 0
        if np.any(idx[used] < 0) or np.any(idx[used] >= bone_count):
            raise ValueError(f"Skin indices must be in [0, {bone_count})")
        # Unused slots may hold anything; point them at bone 0
        idx[~used] = 0

        totals = w.sum(axis=1, keepdims=True)
        np.divide(w, totals, out=w, where=totals > 0)
        self.skin_indices = idx
        self.skin_weights = w

        if self.bind_matrix is None:
            self.bind_matrix = self.world_matrix.copy()
        else:
            self.bind_matrix = np.array(self.bind_matrix, dtype=np.float64).reshape(4, 4)

    @classmethod
    def from_mesh(
        cls,
        mesh: Mesh,
        skin_indices,
        skin_weights,
        skeleton: Skeleton,
        bind_matrix: Optional[Mat4] = None,
    ) -> SkinnedMesh:
        """Attach skin data to a copy of *mesh*; the skeleton is shared, not copied."""
        return cls(
            positions=mesh.positions.copy(),
            indices=mesh.indices.copy() if mesh.indices is not None else None,
            normals=mesh.normals.copy(),
            world_matrix=mesh.world_matrix.copy(),
            name=mesh.name,
            skin_indices=skin_indices,
            skin_weights=skin_weights,
            skeleton=skeleton,
            bind_matrix=bind_matrix,
        )

    @property
    def has_skinning(self) -> bool:
        return True

    @property
    def bind_matrix_inverse(self) -> Mat4:
        return mat4_inverse(self.bind_matrix)

    def weights_on(self, bone_indices) -> NDArray[np.float64]:
        """Per-vertex summed weight on the given bone-index set."""
        mask = np.isin(self.skin_indices, np.asarray(list(bone_indices), dtype=np.int64))
        return np.where(mask, self.skin_weights, 0.0).sum(axis=1)

    def weight_dict(self, vertex: int) -> dict[int, float]:
        """Non-zero influences of one vertex as ``{bone_index: weight}``."""
        out: dict[int, float] = {}
        for b, w in zip(self.skin_indices[vertex], self.skin_weights[vertex]):
            if w > 0:
                out[int(b)] = out.get(int(b), 0.0) + float(w)
        return out

    def clone(self) -> SkinnedMesh:
        return SkinnedMesh(
            positions=self.positions.copy(),
            indices=self.indices.copy() if self.indices is not None else None,
            normals=self.normals.copy(),
            world_matrix=self.world_matrix.copy(),
            name=self.name,
            skin_indices=self.skin_indices.copy(),
            skin_weights=self.skin_weights.copy(),
            skeleton=self.skeleton,
            bind_matrix=self.bind_matrix.copy(),
        )
