"""Multi-hop vertex connectivity for displacement smoothing.

Neighbourhoods are found by breadth-first expansion over the mesh edge
graph, done level by level as sparse matrix products. Each neighbour gets
a Gaussian weight over its hop distance with sigma = max_hop / 2.45, so a
vertex at the largest observed hop contributes about 5% of a direct
neighbour's weight.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray
from scipy.sparse import coo_matrix, csr_matrix, diags, identity

from armorfit.constants import GAUSSIAN_SIGMA_DIVISOR
from armorfit.core.mesh import Mesh

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class Connectivity:
    """Symmetric (N, N) hop-distance and Gaussian weight matrices (zero diagonal)."""
    hops: csr_matrix
    weights: csr_matrix
    max_hop: int
    sigma: float

    @property
    def vertex_count(self) -> int:
        return self.weights.shape[0]

    def neighbour_counts(self) -> NDArray[np.int64]:
        return np.diff(self.weights.indptr).astype(np.int64)

    def normalized(self) -> csr_matrix:
        """Row-normalised weights: each vertex's neighbour weights sum to 1."""
        totals = np.asarray(self.weights.sum(axis=1)).ravel()
        inv = np.divide(1.0, totals, out=np.zeros_like(totals), where=totals > 0)
        return (diags(inv) @ self.weights).tocsr()

    def neighbour_average(
        self, values: NDArray, active: NDArray[np.bool_],
    ) -> tuple[NDArray, NDArray[np.bool_]]:
        """Weighted average of *values* over each vertex's active neighbours.

        Returns ``(average, has_active_neighbour)``; rows without an active
        neighbour are zero.
        """
        m = active.astype(np.float64)
        num = self.weights @ (values * m[:, None])
        den = self.weights @ m
        has = den > 0
        avg = np.zeros_like(num)
        avg[has] = num[has] / den[has, None]
        return avg, has


def adjacency_matrix(mesh: Mesh) -> csr_matrix:
    """Symmetric 0/1 (N, N) edge adjacency."""
    n = mesh.vertex_count
    edges = mesh.edges()
    rows = np.concatenate([edges[:, 0], edges[:, 1]])
    cols = np.concatenate([edges[:, 1], edges[:, 0]])
    data = np.ones(len(rows), dtype=np.float64)
    adj = coo_matrix((data, (rows, cols)), shape=(n, n)).tocsr()
    adj.data[:] = 1.0
    return adj


def build_connectivity(mesh: Mesh, radius: int) -> Connectivity:
    """Hop levels up to *radius* and their Gaussian weights for every vertex."""
    n = mesh.vertex_count
    adj = adjacency_matrix(mesh)

    reached = identity(n, format="csr", dtype=np.float64)
    frontier = reached
    rows, cols, levels = [], [], []
    max_hop = 0
    for hop in range(1, max(0, int(radius)) + 1):
        step = (frontier @ adj).tocsr()
        step.data[:] = 1.0
        new = (step - step.multiply(reached)).tocsr()
        new.eliminate_zeros()
        if new.nnz == 0:
            break
        new.data[:] = 1.0
        coo = new.tocoo()
        rows.append(coo.row)
        cols.append(coo.col)
        levels.append(np.full(coo.nnz, hop, dtype=np.float64))
        reached = (reached + new).tocsr()
        frontier = new
        max_hop = hop

    if levels:
        r = np.concatenate(rows)
        c = np.concatenate(cols)
        h = np.concatenate(levels)
    else:
        r = c = np.zeros(0, dtype=np.int64)
        h = np.zeros(0)

    sigma = max_hop / GAUSSIAN_SIGMA_DIVISOR if max_hop > 0 else 0.0
    if sigma > 0:
        g = np.exp(-(h * h) / (2.0 * sigma * sigma))
    else:
        g = np.zeros_like(h)

    hops = csr_matrix((h, (r, c)), shape=(n, n))
    weights = csr_matrix((g, (r, c)), shape=(n, n))
    conn = Connectivity(hops=hops, weights=weights, max_hop=max_hop, sigma=sigma)
    counts = conn.neighbour_counts()
    logger.debug(
        "Connectivity for '%s': radius %d, max hop %d, neighbours per vertex %d-%d",
        mesh.name, radius, max_hop,
        int(counts.min()) if n else 0, int(counts.max()) if n else 0,
    )
    return conn


def feature_angles(mesh: Mesh) -> NDArray[np.float64]:
    """Per-vertex largest dihedral angle (degrees) over incident interior edges."""
    n = mesh.vertex_count
    tri = mesh.triangles()
    out = np.zeros(n)
    if len(tri) == 0:
        return out

    face_n = mesh.face_normals()
    edges = np.sort(np.concatenate([tri[:, [0, 1]], tri[:, [1, 2]], tri[:, [2, 0]]]), axis=1)
    faces = np.tile(np.arange(len(tri)), 3)
    order = np.lexsort((edges[:, 1], edges[:, 0]))
    edges = edges[order]
    faces = faces[order]

    # Consecutive equal keys are the two faces sharing an interior edge
    same = np.all(edges[1:] == edges[:-1], axis=1)
    i = np.nonzero(same)[0]
    if len(i) == 0:
        return out
    dots = np.einsum("ij,ij->i", face_n[faces[i]], face_n[faces[i + 1]])
    angles = np.degrees(np.arccos(np.clip(dots, -1.0, 1.0)))
    np.maximum.at(out, edges[i, 0], angles)
    np.maximum.at(out, edges[i, 1], angles)
    return out
