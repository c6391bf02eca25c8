"""Procedural mesh builders for fitting fixtures and demos.

All functions return welded, outward-wound :class:`Mesh` objects centered
at the origin (closed shapes share vertices along seams so smoothing and
boundary detection see one connected surface).
"""

import math

import numpy as np

from armorfit.core.mesh import Mesh


def _weld(positions: np.ndarray, triangles: np.ndarray, decimals: int = 9) -> tuple[np.ndarray, np.ndarray]:
    """Merge coincident vertices and remap triangles."""
    rounded = np.round(positions, decimals)
    unique, inverse = np.unique(rounded, axis=0, return_inverse=True)
    inverse = np.asarray(inverse).ravel()
    # Keep first-seen order of unique vertices for stable indexing
    first = np.full(len(unique), len(positions), dtype=np.int64)
    np.minimum.at(first, inverse, np.arange(len(positions)))
    order = np.argsort(first)
    remap = np.empty(len(unique), dtype=np.int64)
    remap[order] = np.arange(len(unique))
    return positions[first[order]], remap[inverse][triangles]


def make_box(
    width: float, height: float, depth: float,
    segments: int = 1, name: str = "box",
) -> Mesh:
    """Create a closed box, each face subdivided into segments x segments quads.

    Dimensions along X, Y, Z respectively.
    """
    hw, hh, hd = width / 2, height / 2, depth / 2
    # (origin, u, v) per face with u x v pointing outward
    faces = [
        ((hw, -hh, -hd), (0, height, 0), (0, 0, depth)),      # +X
        ((-hw, -hh, -hd), (0, 0, depth), (0, height, 0)),     # -X
        ((-hw, hh, -hd), (0, 0, depth), (width, 0, 0)),       # +Y
        ((-hw, -hh, -hd), (width, 0, 0), (0, 0, depth)),      # -Y
        ((-hw, -hh, hd), (width, 0, 0), (0, height, 0)),      # +Z
        ((-hw, -hh, -hd), (0, height, 0), (width, 0, 0)),     # -Z
    ]
    s = max(1, int(segments))
    positions = []
    triangles = []
    for origin, u, v in faces:
        o, u, v = np.array(origin, float), np.array(u, float), np.array(v, float)
        base = len(positions)
        for j in range(s + 1):
            for i in range(s + 1):
                positions.append(o + u * (i / s) + v * (j / s))
        cols = s + 1
        for j in range(s):
            for i in range(s):
                a = base + j * cols + i
                b = a + 1
                c = a + cols
                d = c + 1
                triangles.append((a, b, d))
                triangles.append((a, d, c))

    pos, tri = _weld(np.array(positions), np.array(triangles, dtype=np.int64))
    return Mesh.from_arrays(pos, tri, name=name)


def make_cube(size: float = 1.0, segments: int = 1, name: str = "cube") -> Mesh:
    return make_box(size, size, size, segments=segments, name=name)


def make_uv_sphere(
    radius: float = 1.0,
    width_segments: int = 32,
    height_segments: int = 16,
    name: str = "sphere",
) -> Mesh:
    """Create a UV sphere with single pole vertices."""
    w = max(3, width_segments)
    h = max(2, height_segments)
    positions = [(0.0, radius, 0.0)]
    for k in range(1, h):
        phi = math.pi * k / h
        for j in range(w):
            theta = 2 * math.pi * j / w
            positions.append((
                radius * math.sin(phi) * math.cos(theta),
                radius * math.cos(phi),
                radius * math.sin(phi) * math.sin(theta),
            ))
    positions.append((0.0, -radius, 0.0))
    north, south = 0, len(positions) - 1

    def ring(k: int, j: int) -> int:
        return 1 + (k - 1) * w + (j % w)

    triangles = []
    for j in range(w):
        triangles.append((north, ring(1, j + 1), ring(1, j)))
    for k in range(1, h - 1):
        for j in range(w):
            a, b = ring(k, j), ring(k, j + 1)
            c, d = ring(k + 1, j), ring(k + 1, j + 1)
            triangles.append((a, b, c))
            triangles.append((b, d, c))
    for j in range(w):
        triangles.append((ring(h - 1, j), ring(h - 1, j + 1), south))

    return Mesh.from_arrays(np.array(positions), np.array(triangles, dtype=np.int64), name=name)


def make_cylinder(
    radius: float, height: float,
    radial_segments: int = 24, height_segments: int = 8,
    capped: bool = True, name: str = "cylinder",
) -> Mesh:
    """Create a Y-axis cylinder, optionally closed with fan caps."""
    r = max(3, radial_segments)
    hs = max(1, height_segments)
    positions = []
    for k in range(hs + 1):
        y = -height / 2 + height * k / hs
        for j in range(r):
            theta = 2 * math.pi * j / r
            positions.append((radius * math.sin(theta), y, radius * math.cos(theta)))

    def ring(k: int, j: int) -> int:
        return k * r + (j % r)

    triangles = []
    for k in range(hs):
        for j in range(r):
            a, b = ring(k, j), ring(k, j + 1)
            c, d = ring(k + 1, j), ring(k + 1, j + 1)
            triangles.append((a, b, c))
            triangles.append((b, d, c))

    if capped:
        top = len(positions)
        positions.append((0.0, height / 2, 0.0))
        bottom = len(positions)
        positions.append((0.0, -height / 2, 0.0))
        for j in range(r):
            triangles.append((top, ring(hs, j), ring(hs, j + 1)))
            triangles.append((bottom, ring(0, j + 1), ring(0, j)))

    return Mesh.from_arrays(np.array(positions), np.array(triangles, dtype=np.int64), name=name)


def make_plane(
    width: float, depth: float,
    segments_w: int = 1, segments_d: int = 1,
    name: str = "plane",
) -> Mesh:
    """Create a subdivided plane in the XZ plane, normal pointing +Y."""
    verts = []
    idxs = []
    for iz in range(segments_d + 1):
        for ix in range(segments_w + 1):
            x = (ix / segments_w - 0.5) * width
            z = (iz / segments_d - 0.5) * depth
            verts.append((x, 0.0, z))

    cols = segments_w + 1
    for iz in range(segments_d):
        for ix in range(segments_w):
            a = iz * cols + ix
            b = a + 1
            c = a + cols
            d = c + 1
            idxs.append((a, c, b))
            idxs.append((b, c, d))

    return Mesh.from_arrays(np.array(verts), np.array(idxs, dtype=np.int64), name=name)
