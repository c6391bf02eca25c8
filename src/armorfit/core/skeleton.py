"""Bone hierarchy with flat storage and O(1) name lookup.

Each bone keeps position, quaternion and scale -> local matrix, and
world matrix = parent.world_matrix @ local_matrix (root_matrix for roots).
Bones are stored parents-first so one forward pass updates the hierarchy.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Iterator, Optional, Sequence

import numpy as np

from armorfit.core.math_utils import (
    Mat4, Quat, Vec3,
    mat4_compose, mat4_identity, mat4_inverse, quat_identity, vec3,
)


@dataclass(eq=False)
class Bone:
    """A single joint of a skeleton."""
    name: str
    parent: Optional[int] = None
    position: Vec3 = field(default_factory=vec3)
    quaternion: Quat = field(default_factory=quat_identity)
    scale: Vec3 = field(default_factory=lambda: vec3(1, 1, 1))
    local_matrix: Mat4 = field(default_factory=mat4_identity)
    world_matrix: Mat4 = field(default_factory=mat4_identity)

    def set_position(self, x: float, y: float, z: float) -> Bone:
        self.position = vec3(x, y, z)
        return self

    def set_quaternion(self, q: Quat) -> Bone:
        self.quaternion = np.array(q, dtype=np.float64)
        return self

    def update_local_matrix(self) -> None:
        """Recompute local matrix from position, quaternion, scale."""
        self.local_matrix = mat4_compose(self.position, self.quaternion, self.scale)

    def get_world_position(self) -> Vec3:
        """Extract world position from world matrix."""
        return self.world_matrix[:3, 3].copy()


class Skeleton:
    """Ordered bones with a name->index table built once.

    ``bone_inverses`` holds the inverse world matrices captured at bind
    time (:meth:`calculate_inverses`); skinning uses
    ``world_matrix[b] @ bone_inverses[b]`` per bone.
    """

    def __init__(self, bones: Sequence[Bone], root_matrix: Optional[Mat4] = None):
        self.bones: list[Bone] = list(bones)
        self._index: dict[str, int] = {}
        for i, bone in enumerate(self.bones):
            if bone.name in self._index:
                raise ValueError(f"Duplicate bone name '{bone.name}'")
            if bone.parent is not None and not 0 <= bone.parent < i:
                raise ValueError(
                    f"Bone '{bone.name}' parent index {bone.parent} must precede it"
                )
            self._index[bone.name] = i
        self.root_matrix: Mat4 = mat4_identity() if root_matrix is None else np.array(root_matrix, dtype=np.float64)
        self.update_world_matrices()
        self.bone_inverses = np.zeros((0, 4, 4))
        self.calculate_inverses()

    @classmethod
    def build(
        cls,
        specs: Iterable[tuple[str, Optional[str], Sequence[float]]],
        root_matrix: Optional[Mat4] = None,
    ) -> Skeleton:
        """Build a skeleton from ``(name, parent_name, world_position)`` tuples.

        Positions are bind-pose world positions (relative to ``root_matrix``);
        local offsets are derived from the parent's position. Parents must
        appear before their children.
        """
        bones: list[Bone] = []
        index: dict[str, int] = {}
        world_pos: list[np.ndarray] = []
        for name, parent_name, pos in specs:
            p = np.asarray(pos, dtype=np.float64)
            if parent_name is None:
                parent = None
                local = p
            else:
                if parent_name not in index:
                    raise ValueError(f"Bone '{name}' references unknown parent '{parent_name}'")
                parent = index[parent_name]
                local = p - world_pos[parent]
            index[name] = len(bones)
            world_pos.append(p)
            bones.append(Bone(name=name, parent=parent, position=local.copy()))
        return cls(bones, root_matrix=root_matrix)

    def __len__(self) -> int:
        return len(self.bones)

    def __iter__(self) -> Iterator[Bone]:
        return iter(self.bones)

    def __contains__(self, name: str) -> bool:
        return name in self._index

    @property
    def names(self) -> list[str]:
        return [b.name for b in self.bones]

    @property
    def root_index(self) -> int:
        """Index of the first parentless bone."""
        for i, bone in enumerate(self.bones):
            if bone.parent is None:
                return i
        return 0

    def index_of(self, name: str) -> int:
        """Bone index by exact name; raises KeyError when absent."""
        return self._index[name]

    def get(self, name: str) -> Optional[Bone]:
        i = self._index.get(name)
        return None if i is None else self.bones[i]

    def match(self, include: Iterable[str], exclude: Iterable[str] = ()) -> list[int]:
        """Indices of bones whose name contains any *include* pattern and no
        *exclude* pattern (case-insensitive substring match)."""
        inc = [p.lower() for p in include]
        exc = [p.lower() for p in exclude]
        out = []
        for i, bone in enumerate(self.bones):
            lname = bone.name.lower()
            if any(p in lname for p in inc) and not any(p in lname for p in exc):
                out.append(i)
        return out

    def set_root_matrix(self, m: Mat4) -> None:
        self.root_matrix = np.array(m, dtype=np.float64)
        self.update_world_matrices()

    def update_world_matrices(self) -> None:
        """Recompute local and world matrices for every bone."""
        for bone in self.bones:
            bone.update_local_matrix()
            if bone.parent is None:
                bone.world_matrix = self.root_matrix @ bone.local_matrix
            else:
                bone.world_matrix = self.bones[bone.parent].world_matrix @ bone.local_matrix

    def calculate_inverses(self) -> None:
        """Capture the current pose as the bind pose."""
        self.bone_inverses = np.array(
            [mat4_inverse(b.world_matrix) for b in self.bones]
        ).reshape(-1, 4, 4)

    def world_matrices(self) -> np.ndarray:
        """(B, 4, 4) current bone world matrices."""
        return np.array([b.world_matrix for b in self.bones]).reshape(-1, 4, 4)

    def world_positions(self) -> np.ndarray:
        """(B, 3) current bone world positions."""
        return self.world_matrices()[:, :3, 3]
