"""Bake a (possibly skinned) mesh into a static world-space triangle buffer.

Linear blend skinning, applied per vertex::

    world = W @ B^-1 @ sum_k(w_k * P[b_k] @ Inv[b_k]) @ B @ p

W is the mesh world matrix, B the bind matrix, P the pose (bone world
matrices) and Inv the bind-pose bone inverses.
"""

from __future__ import annotations

from typing import Optional

import numpy as np
from numpy.typing import NDArray

from armorfit.core.math_utils import batch_transform_points, transform_points
from armorfit.core.mesh import Mesh, SkinnedMesh


def skinning_matrices(mesh: SkinnedMesh, pose: Optional[NDArray] = None) -> NDArray:
    """Per-vertex blended (N, 4, 4) skinning matrices in bind space.

    Vertices whose weights are all zero get the identity matrix.
    """
    bone_mats = mesh.skeleton.world_matrices() if pose is None else np.asarray(pose, dtype=np.float64)
    if bone_mats.shape != (len(mesh.skeleton), 4, 4):
        raise ValueError(
            f"Pose must be ({len(mesh.skeleton)}, 4, 4), got {bone_mats.shape}"
        )
    per_bone = bone_mats @ mesh.skeleton.bone_inverses  # (B, 4, 4)

    w = mesh.skin_weights
    blended = np.einsum("nk,nkij->nij", w, per_bone[mesh.skin_indices])
    unskinned = w.sum(axis=1) <= 0
    if np.any(unskinned):
        blended[unskinned] = np.eye(4)
    return blended


def bake_positions(mesh: Mesh, pose: Optional[NDArray] = None) -> NDArray[np.float64]:
    """World-space vertex positions of *mesh* in its current (or given) pose."""
    if not mesh.has_skinning:
        return mesh.world_positions()

    bind_space = transform_points(mesh.bind_matrix, mesh.positions)
    skinned = batch_transform_points(skinning_matrices(mesh, pose), bind_space)
    return transform_points(mesh.world_matrix @ mesh.bind_matrix_inverse, skinned)


def bake(mesh: Mesh, pose: Optional[NDArray] = None) -> Mesh:
    """Return a static world-space copy of *mesh* (identity world matrix).

    Pure: *mesh* and its skeleton are not modified. Index layout is kept so
    vertex ``i`` of the result is vertex ``i`` of the input.
    """
    return Mesh(
        positions=bake_positions(mesh, pose),
        indices=None if mesh.indices is None else mesh.indices.copy(),
        name=f"{mesh.name}:baked" if mesh.name else "baked",
    )
