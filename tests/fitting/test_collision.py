"""Tests for penetration detection, push-out and neighbourhood smoothing."""

import numpy as np
import pytest

from armorfit.core.primitives import make_plane, make_uv_sphere
from armorfit.fitting.collision import (
    CollisionSettings, detect_collisions, resolve_collisions, smooth,
)
from armorfit.spatial import SpatialIndex


def _body():
    return make_uv_sphere(0.5, 32, 16, name="body")


def _shell(radius):
    return make_uv_sphere(radius, 24, 12, name="shell")


class TestDetect:
    def test_shallow_gap_detected(self):
        shell = _shell(0.53)
        hits = detect_collisions(_body(), shell, CollisionSettings(sample_stride=1))
        assert len(hits) == shell.vertex_count
        for c in hits:
            assert 0.0 < c.penetration_depth <= 0.01
            # Normal faces the armor vertex
            assert np.dot(c.normal, c.position) > 0
            np.testing.assert_allclose(np.linalg.norm(c.normal), 1.0)

    def test_gap_outside_band_ignored(self):
        settings = CollisionSettings(sample_stride=1)
        assert detect_collisions(_body(), _shell(0.502), settings) == []
        assert detect_collisions(_body(), _shell(0.8), settings) == []

    def test_sampling_stride(self):
        shell = _shell(0.53)
        hits = detect_collisions(_body(), shell, CollisionSettings(sample_stride=25))
        assert {c.vertex_index % 25 for c in hits} == {0}
        assert len(hits) == len(range(0, shell.vertex_count, 25))

    def test_prebuilt_index(self):
        body = _body()
        index = SpatialIndex.build(body)
        hits = detect_collisions(body, _shell(0.53), CollisionSettings(sample_stride=10), index=index)
        assert len(hits) > 0


class TestResolve:
    def test_pushes_outward_within_limit(self):
        shell = _shell(0.53)
        settings = CollisionSettings(sample_stride=1)
        before = shell.world_positions()
        hits = detect_collisions(_body(), shell, settings)
        moved = resolve_collisions(shell, hits, iterations=3, settings=settings)
        after = shell.world_positions()

        assert moved == shell.vertex_count
        assert np.all(np.linalg.norm(after, axis=1) > np.linalg.norm(before, axis=1))
        assert np.linalg.norm(after - before, axis=1).max() <= settings.max_total_displacement + 1e-12

    def test_neighbours_dragged(self):
        shell = _shell(0.53)
        settings = CollisionSettings(sample_stride=25, influence_radius=0.2)
        before = shell.world_positions()
        hits = detect_collisions(_body(), shell, settings)
        resolve_collisions(shell, hits, settings=settings)
        moved = np.nonzero(np.linalg.norm(shell.world_positions() - before, axis=1) > 0)[0]
        sampled = {c.vertex_index for c in hits}
        assert set(moved.tolist()) - sampled

    def test_nothing_to_do(self):
        shell = _shell(0.53)
        before = shell.positions.copy()
        assert resolve_collisions(shell, []) == 0
        hits = detect_collisions(_body(), shell, CollisionSettings(sample_stride=1))
        assert resolve_collisions(shell, hits, iterations=0) == 0
        np.testing.assert_array_equal(shell.positions, before)


class TestSmooth:
    def test_flat_plane_stays_flat(self):
        plane = make_plane(1.0, 1.0, 8, 8)
        smooth(plane, strength=0.5, passes=3, radius=0.2)
        np.testing.assert_allclose(plane.positions[:, 1], 0.0, atol=1e-12)

    def test_reduces_noise(self):
        plane = make_plane(1.0, 1.0, 10, 10)
        rng = np.random.default_rng(1)
        noisy = plane.positions.copy()
        noisy[:, 1] = rng.normal(scale=0.02, size=len(noisy))
        plane.set_positions(noisy)
        smooth(plane, strength=0.8, passes=2, radius=0.15)
        assert plane.positions[:, 1].std() < noisy[:, 1].std()

    def test_zero_strength_is_identity(self):
        plane = make_plane(1.0, 1.0, 4, 4)
        before = plane.positions.copy()
        smooth(plane, strength=0.0)
        np.testing.assert_allclose(plane.positions, before)

    def test_strength_validated(self):
        with pytest.raises(ValueError):
            smooth(make_plane(1.0, 1.0), strength=1.5)
