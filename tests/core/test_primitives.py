"""Tests for procedural mesh builders."""

import numpy as np
import pytest

from armorfit.core.primitives import make_box, make_cube, make_cylinder, make_plane, make_uv_sphere


def _is_closed(mesh):
    return len(mesh.boundary_vertices()) == 0


@pytest.mark.parametrize("segments", [1, 3])
def test_box_closed_and_welded(segments):
    box = make_box(1.0, 2.0, 3.0, segments=segments)
    assert _is_closed(box)
    assert box.volume() == pytest.approx(6.0)
    # Welded grid: 6 faces of (s+1)^2 minus shared edges and corners
    s = segments
    assert box.vertex_count == 6 * (s - 1) ** 2 + 12 * (s - 1) + 8


def test_cube_bounds():
    lo, hi = make_cube(2.0).bounds()
    np.testing.assert_allclose(lo, [-1, -1, -1])
    np.testing.assert_allclose(hi, [1, 1, 1])


def test_sphere_on_radius_and_closed():
    sphere = make_uv_sphere(0.5, 16, 8)
    np.testing.assert_allclose(np.linalg.norm(sphere.positions, axis=1), 0.5)
    assert sphere.vertex_count == 16 * 7 + 2
    assert _is_closed(sphere)
    # Outward winding gives positive volume, a bit under the true sphere
    assert 0.0 < sphere.volume() < 4 / 3 * np.pi * 0.125


def test_cylinder_capped_and_open():
    capped = make_cylinder(1.0, 2.0, radial_segments=12, height_segments=2)
    assert _is_closed(capped)
    assert capped.volume() > 0
    tube = make_cylinder(1.0, 2.0, radial_segments=12, height_segments=2, capped=False)
    assert len(tube.boundary_vertices()) == 24


def test_plane_faces_up():
    plane = make_plane(2.0, 2.0, 3, 3)
    np.testing.assert_allclose(plane.face_normals(), np.tile([0, 1, 0], (18, 1)))
    assert plane.vertex_count == 16
