"""Tests for the iterative shrinkwrap fitter."""

import numpy as np
import pytest

from armorfit.core.errors import InvalidTarget
from armorfit.core.math_utils import mat4_translation
from armorfit.core.mesh import Mesh
from armorfit.core.primitives import make_cube, make_cylinder, make_uv_sphere
from armorfit.constants import FEATURE_SMOOTHING_SCALE
from armorfit.core.state import FittingParameters
from armorfit.fitting.connectivity import feature_angles
from armorfit.fitting.shrinkwrap import (
    INSIDE_TOLERANCE, FitOutcome, ShrinkwrapFitter, inside_depths, project_points,
)
from armorfit.spatial import SpatialIndex

SPHERE_RADIUS = 0.5


def _sphere():
    return make_uv_sphere(SPHERE_RADIUS, 64, 32, name="target")


def _distance_to_sphere(mesh, center=(0.0, 0.0, 0.0)):
    r = np.linalg.norm(mesh.world_positions() - np.asarray(center), axis=1)
    return np.abs(r - SPHERE_RADIUS)


def test_cube_converges_onto_sphere():
    cube = make_cube(2.0, segments=4)
    params = FittingParameters(
        iterations=10, step_size=0.5, target_offset=0.0,
        smoothing_strength=0.0, max_displacement=1.0,
    )
    result = ShrinkwrapFitter(params).fit(cube, _sphere())
    assert result.iterations <= 10
    assert _distance_to_sphere(cube).mean() < 0.01


def test_mean_distance_decreases_with_smoothing():
    cube = make_cube(2.0, segments=6)
    params = FittingParameters(
        iterations=8, step_size=0.5, smoothing_radius=2, smoothing_strength=0.5,
        max_displacement=0.05, convergence_epsilon=0.0,
    )
    start = _distance_to_sphere(cube).mean()
    history = [start]
    runner = ShrinkwrapFitter(params).iter_fit(cube, _sphere())
    for _ in runner:
        history.append(_distance_to_sphere(cube).mean())
    assert len(history) == 9
    assert np.all(np.diff(history) <= 1e-9)
    assert history[-1] < start - 0.15


def test_per_iteration_displacement_bounded():
    cube = make_cube(2.0, segments=3)
    params = FittingParameters(iterations=5, max_displacement=0.03, smoothing_strength=0.3)
    before = cube.world_positions()
    for report in ShrinkwrapFitter(params).iter_fit(cube, _sphere()):
        after = cube.world_positions()
        step = np.linalg.norm(after - before, axis=1)
        assert step.max() <= 0.03 + 1e-12
        assert report.max_displacement <= 0.03 + 1e-12
        before = after


def test_world_space_fit():
    offset = (5.0, -2.0, 1.0)
    cube = make_cube(2.0, segments=3)
    cube.world_matrix = mat4_translation(*offset)
    sphere = _sphere()
    sphere.world_matrix = mat4_translation(*offset)
    params = FittingParameters(iterations=10, smoothing_strength=0.0, max_displacement=1.0)
    ShrinkwrapFitter(params).fit(cube, sphere)
    assert _distance_to_sphere(cube, offset).mean() < 0.01
    # Local positions stay expressed in the mesh's own frame
    np.testing.assert_array_equal(cube.world_matrix, mat4_translation(*offset))


def test_accepts_prebuilt_index():
    cube = make_cube(2.0, segments=2)
    index = SpatialIndex.build(_sphere())
    params = FittingParameters(iterations=10, smoothing_strength=0.0, max_displacement=1.0)
    result = ShrinkwrapFitter(params).fit(cube, index)
    assert result.iterations > 0
    assert _distance_to_sphere(cube).mean() < 0.01


def test_converged_status():
    cube = make_cube(2.0, segments=2)
    params = FittingParameters(
        iterations=50, step_size=1.0, smoothing_strength=0.0,
        max_displacement=2.0, convergence_epsilon=1e-3,
    )
    result = ShrinkwrapFitter(params).fit(cube, _sphere())
    assert result.status is FitOutcome.CONVERGED
    assert result.converged
    assert result.iterations < 50
    assert result.mean_displacements[-1] < 1e-3


def test_max_iterations_status_and_progress():
    cube = make_cube(2.0)
    seen = []
    params = FittingParameters(iterations=4, convergence_epsilon=0.0)
    result = ShrinkwrapFitter(params).fit(
        cube, _sphere(), progress=lambda fraction, message: seen.append((fraction, message)),
    )
    assert result.status is FitOutcome.MAX_ITERATIONS
    assert [f for f, _ in seen] == [0.25, 0.5, 0.75, 1.0]
    assert seen[0][1].startswith("Iteration 1/4")
    assert len(result.reports) == 4


def test_cancel_between_iterations():
    cube = make_cube(2.0)
    done = []
    params = FittingParameters(iterations=10, convergence_epsilon=0.0)
    result = ShrinkwrapFitter(params).fit(
        cube, _sphere(),
        progress=lambda fraction, message: done.append(fraction),
        cancel=lambda: len(done) >= 2,
    )
    assert result.status is FitOutcome.CANCELLED
    assert result.iterations == 2


def test_zero_iterations_leaves_mesh_untouched():
    cube = make_cube(2.0)
    before = cube.positions.copy()
    result = ShrinkwrapFitter(FittingParameters(iterations=0)).fit(cube, _sphere())
    assert result.iterations == 0
    np.testing.assert_array_equal(cube.positions, before)


def test_invalid_target():
    empty = Mesh.from_arrays(np.zeros((3, 3)), np.zeros((0, 3), dtype=np.int64), name="empty")
    with pytest.raises(InvalidTarget):
        ShrinkwrapFitter().fit(make_cube(), empty)


def test_invalid_parameters_rejected():
    with pytest.raises(ValueError):
        ShrinkwrapFitter(FittingParameters(step_size=2.0))


class TestOpenings:
    def test_boundary_vertices_frozen(self):
        tube = make_cylinder(1.0, 0.6, radial_segments=16, height_segments=4, capped=False)
        rim = tube.boundary_vertices()
        before = tube.positions.copy()
        params = FittingParameters(iterations=5, preserve_openings=True, smoothing_strength=0.5)
        result = ShrinkwrapFitter(params).fit(tube, _sphere())
        assert result.frozen_vertices == len(rim)
        np.testing.assert_array_equal(tube.positions[rim], before[rim])
        inner = np.setdiff1d(np.arange(tube.vertex_count), rim)
        assert not np.allclose(tube.positions[inner], before[inner])

    def test_explicit_opening_vertices(self):
        cube = make_cube(2.0, segments=2)
        before = cube.positions.copy()
        params = FittingParameters(
            iterations=3, preserve_openings=True, opening_vertices=(0, 5),
        )
        result = ShrinkwrapFitter(params).fit(cube, _sphere())
        assert result.frozen_vertices == 2
        np.testing.assert_array_equal(cube.positions[[0, 5]], before[[0, 5]])


def test_sample_rate_strides_vertices():
    cube = make_cube(2.0, segments=3)
    before = cube.positions.copy()
    params = FittingParameters(iterations=1, sample_rate=0.5, smoothing_strength=0.0)
    ShrinkwrapFitter(params).fit(cube, _sphere())
    moved = np.linalg.norm(cube.positions - before, axis=1) > 0
    assert moved[0::2].all()
    assert not moved[1::2].any()


def test_unsampled_vertices_follow_neighbours():
    cube = make_cube(2.0, segments=3)
    before = cube.positions.copy()
    params = FittingParameters(iterations=1, sample_rate=0.5, smoothing_radius=1, smoothing_strength=0.5)
    ShrinkwrapFitter(params).fit(cube, _sphere())
    moved = np.linalg.norm(cube.positions - before, axis=1) > 0
    assert moved[1::2].any()


def test_push_interior_back():
    cube = make_cube(2.0, segments=2)
    sphere = _sphere()
    # A negative offset drives every vertex below the target surface
    params = FittingParameters(
        iterations=3, step_size=1.0, smoothing_strength=0.0, max_displacement=2.0,
        target_offset=-0.1, push_interior_back=True,
    )
    result = ShrinkwrapFitter(params).fit(cube, sphere)
    assert result.restored_vertices == cube.vertex_count
    depths = inside_depths(SpatialIndex.build(sphere), cube.world_positions())
    assert np.all(depths <= INSIDE_TOLERANCE)


def test_preserve_volume():
    cube = make_cube(2.0, segments=3)
    volume = cube.volume()
    params = FittingParameters(iterations=5, preserve_volume=True)
    ShrinkwrapFitter(params).fit(cube, _sphere())
    assert cube.volume() == pytest.approx(volume, rel=1e-9)


class TestFeatures:
    def _one_step(self, **changes):
        cube = make_cube(2.0, segments=3)
        params = FittingParameters(
            iterations=1, step_size=0.5, max_displacement=2.0, smoothing_radius=2, **changes,
        )
        ShrinkwrapFitter(params).fit(cube, _sphere())
        return cube.positions

    def test_feature_vertices_blend_less(self):
        features = feature_angles(make_cube(2.0, segments=3)) > 45.0
        assert features.any() and (~features).any()

        unsmoothed = self._one_step(smoothing_strength=0.0)
        smoothed = self._one_step(smoothing_strength=0.8)
        kept = self._one_step(smoothing_strength=0.8, preserve_features=True, feature_angle_threshold=45.0)

        # Flat face interiors are smoothed the same either way
        np.testing.assert_allclose(kept[~features], smoothed[~features])
        # Edges and corners take a scaled-down share of the neighbour blend
        np.testing.assert_allclose(
            kept[features] - unsmoothed[features],
            FEATURE_SMOOTHING_SCALE * (smoothed[features] - unsmoothed[features]),
            atol=1e-12,
        )
        pulled = np.linalg.norm(smoothed - unsmoothed, axis=1)[features]
        assert pulled.max() > 1e-3

    def test_threshold_above_all_angles_changes_nothing(self):
        smoothed = self._one_step(smoothing_strength=0.8)
        kept = self._one_step(smoothing_strength=0.8, preserve_features=True, feature_angle_threshold=120.0)
        np.testing.assert_allclose(kept, smoothed)


class TestNonFiniteVertices:
    def _cube_with_nan(self):
        cube = make_cube(2.0, segments=4)
        positions = cube.positions.copy()
        positions[0] = np.nan
        cube.set_positions(positions)
        return cube

    def _distance_to_sphere(self, cube):
        return np.abs(np.linalg.norm(cube.positions[1:], axis=1) - SPHERE_RADIUS)

    def test_skipped_without_smoothing(self):
        cube = self._cube_with_nan()
        params = FittingParameters(iterations=10, smoothing_strength=0.0, max_displacement=1.0)
        result = ShrinkwrapFitter(params).fit(cube, _sphere())
        assert all(np.isfinite(result.mean_displacements))
        assert np.isnan(cube.positions[0]).all()
        assert np.isfinite(cube.positions[1:]).all()
        assert self._distance_to_sphere(cube).mean() < 0.01

    def test_does_not_spread_through_smoothing(self):
        cube = self._cube_with_nan()
        before = self._distance_to_sphere(cube).mean()
        params = FittingParameters(
            iterations=10, smoothing_radius=2, smoothing_strength=0.5, max_displacement=1.0,
        )
        ShrinkwrapFitter(params).fit(cube, _sphere())
        assert np.isfinite(cube.positions[1:]).all()
        assert self._distance_to_sphere(cube).mean() < before / 2


class TestProjection:
    def setup_method(self):
        self.index = SpatialIndex.build(make_cube(2.0, segments=2))
        self.params = FittingParameters(step_size=0.5, target_offset=0.1)

    def test_outside_point(self):
        proj = project_points(self.index, [[3.0, 0.0, 0.0]], np.zeros(3), self.params)
        assert proj.ok[0] and not proj.inside[0]
        # Desired point is the hit offset along the outward normal, damped by the step
        np.testing.assert_allclose(proj.displacement[0], [(1.1 - 3.0) * 0.5, 0, 0])

    def test_inside_point_pushed_out_at_double_step(self):
        proj = project_points(self.index, [[0.5, 0.0, 0.0]], np.zeros(3), self.params)
        assert proj.ok[0] and proj.inside[0]
        np.testing.assert_allclose(proj.displacement[0], [(1.1 - 0.5) * 1.0, 0, 0])

    def test_point_at_center_skipped(self):
        proj = project_points(self.index, [[0.0, 0.0, 0.0]], np.zeros(3), self.params)
        assert not proj.ok[0]
        np.testing.assert_array_equal(proj.displacement[0], [0, 0, 0])

    def test_inside_depths(self):
        depths = inside_depths(self.index, [[0.5, 0.0, 0.0], [3.0, 0.0, 0.0], [0.0, 0.0, 0.9]])
        np.testing.assert_allclose(depths, [0.5, 0.0, 0.1])
