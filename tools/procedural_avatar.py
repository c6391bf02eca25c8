"""Procedural skinned avatar and armor pieces for headless fitting runs.

The avatar is a capped Y-axis cylinder (a stand-in body, 1.8 units tall,
feet at y=0) bound to a humanoid skeleton with inverse-distance weights
over the two closest bones. No asset files are needed.

Usage::

    from tools.procedural_avatar import make_avatar, make_cuirass
"""

from __future__ import annotations

import numpy as np

from armorfit.core.mesh import Mesh, SkinnedMesh
from armorfit.core.primitives import make_box, make_cylinder
from armorfit.core.skeleton import Skeleton

BODY_HEIGHT = 1.8
BODY_RADIUS = 0.15
TORSO_CENTER = (0.0, 1.22, 0.0)

# (name, parent, bind-pose world position)
HUMANOID_BONES = [
    ("Hips", None, (0.0, 0.95, 0.0)),
    ("Spine01", "Hips", (0.0, 1.10, 0.0)),
    ("Spine02", "Spine01", (0.0, 1.25, 0.0)),
    ("Chest", "Spine02", (0.0, 1.40, 0.0)),
    ("Neck", "Chest", (0.0, 1.55, 0.0)),
    ("Head", "Neck", (0.0, 1.68, 0.0)),
    ("LeftShoulder", "Chest", (0.18, 1.45, 0.0)),
    ("LeftArm", "LeftShoulder", (0.35, 1.45, 0.0)),
    ("RightShoulder", "Chest", (-0.18, 1.45, 0.0)),
    ("RightArm", "RightShoulder", (-0.35, 1.45, 0.0)),
    ("LeftUpLeg", "Hips", (0.09, 0.88, 0.0)),
    ("LeftLeg", "LeftUpLeg", (0.09, 0.48, 0.0)),
    ("LeftFoot", "LeftLeg", (0.09, 0.08, 0.0)),
    ("RightUpLeg", "Hips", (-0.09, 0.88, 0.0)),
    ("RightLeg", "RightUpLeg", (-0.09, 0.48, 0.0)),
    ("RightFoot", "RightLeg", (-0.09, 0.08, 0.0)),
]


def make_skeleton() -> Skeleton:
    return Skeleton.build(HUMANOID_BONES)


def closest_bone_weights(
    positions: np.ndarray, bone_positions: np.ndarray, influences: int = 2,
) -> tuple[np.ndarray, np.ndarray]:
    """Inverse-square-distance weights over the *influences* closest bones."""
    d = np.linalg.norm(positions[:, None, :] - bone_positions[None, :, :], axis=2)
    closest = np.argsort(d, axis=1, kind="stable")[:, :influences]
    w = 1.0 / (np.take_along_axis(d, closest, axis=1) + 1e-3) ** 2
    w /= w.sum(axis=1, keepdims=True)
    return closest, w


def make_avatar(
    radial_segments: int = 24,
    height_segments: int = 18,
    name: str = "avatar",
) -> SkinnedMesh:
    """Cylinder body bound to :data:`HUMANOID_BONES`."""
    skeleton = make_skeleton()
    body = make_cylinder(
        BODY_RADIUS, BODY_HEIGHT,
        radial_segments=radial_segments, height_segments=height_segments,
        capped=True, name=name,
    )
    positions = body.positions + np.array([0.0, BODY_HEIGHT / 2, 0.0])
    body = Mesh.from_arrays(positions, body.indices, name=name)
    idx, w = closest_bone_weights(positions, skeleton.world_positions())
    return SkinnedMesh.from_mesh(body, idx, w, skeleton)


def make_cuirass(
    size: float = 0.5,
    segments: int = 4,
    center=TORSO_CENTER,
    name: str = "cuirass",
) -> Mesh:
    """Loose box armor around the torso, to be shrinkwrapped onto it."""
    box = make_box(size, size, size, segments=segments, name=name)
    return Mesh.from_arrays(box.positions + np.asarray(center, dtype=np.float64), box.indices, name=name)
