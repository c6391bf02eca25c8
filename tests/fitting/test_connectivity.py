"""Tests for multi-hop connectivity and feature detection."""

import logging

import numpy as np
import pytest
from scipy.sparse.csgraph import shortest_path

from armorfit.constants import GAUSSIAN_SIGMA_DIVISOR
from armorfit.core.primitives import make_cube, make_plane, make_uv_sphere
from armorfit.fitting.connectivity import (
    adjacency_matrix, build_connectivity, feature_angles,
)


def test_adjacency_symmetric():
    cube = make_cube()
    adj = adjacency_matrix(cube)
    assert adj.nnz == 2 * len(cube.edges())
    assert (adj != adj.T).nnz == 0
    assert np.all(adj.diagonal() == 0)


@pytest.mark.parametrize("radius", [1, 2, 3])
def test_hops_match_graph_distance(radius):
    mesh = make_plane(1.0, 1.0, 5, 5)
    conn = build_connectivity(mesh, radius)
    dist = shortest_path(adjacency_matrix(mesh), unweighted=True)
    expected = np.where((dist > 0) & (dist <= radius), dist, 0.0)
    np.testing.assert_array_equal(conn.hops.toarray(), expected)
    assert conn.max_hop == radius
    assert conn.sigma == pytest.approx(radius / GAUSSIAN_SIGMA_DIVISOR)


def test_gaussian_weights():
    conn = build_connectivity(make_uv_sphere(1.0, 12, 6), 3)
    h = conn.hops.toarray()
    w = conn.weights.toarray()
    mask = h > 0
    np.testing.assert_allclose(w[mask], np.exp(-h[mask] ** 2 / (2 * conn.sigma ** 2)))
    assert np.all(w[~mask] == 0)
    # Farthest hop contributes roughly 5% of the weight at distance 0
    assert np.exp(-(conn.max_hop ** 2) / (2 * conn.sigma ** 2)) == pytest.approx(0.05, abs=0.01)


def test_radius_beyond_diameter():
    cube = make_cube()
    conn = build_connectivity(cube, 10)
    # Welded cube: any vertex reaches the opposite corner in at most 2 hops
    assert conn.max_hop <= 3
    assert np.all(conn.neighbour_counts() == cube.vertex_count - 1)


def test_radius_zero():
    conn = build_connectivity(make_cube(), 0)
    assert conn.max_hop == 0
    assert conn.weights.nnz == 0
    assert conn.sigma == 0.0


def test_normalized_rows_sum_to_one():
    conn = build_connectivity(make_plane(1.0, 1.0, 3, 3), 2)
    sums = np.asarray(conn.normalized().sum(axis=1)).ravel()
    np.testing.assert_allclose(sums, 1.0)


def test_neighbour_average_uses_active_only():
    mesh = make_plane(1.0, 1.0, 2, 1)  # 6 vertices in a 3 x 2 grid
    conn = build_connectivity(mesh, 1)
    values = np.zeros((6, 3))
    values[0] = [1.0, 0.0, 0.0]
    active = np.zeros(6, dtype=bool)
    active[0] = True
    avg, has = conn.neighbour_average(values, active)
    neighbours = conn.hops[0].indices
    assert has[neighbours].all()
    np.testing.assert_allclose(avg[neighbours], np.tile([1.0, 0.0, 0.0], (len(neighbours), 1)))
    # Vertex 0 has no active neighbour besides itself
    assert not has[0]
    np.testing.assert_array_equal(avg[0], [0, 0, 0])


def test_feature_angles():
    np.testing.assert_allclose(feature_angles(make_cube()), 90.0)
    np.testing.assert_allclose(feature_angles(make_plane(1.0, 1.0, 2, 2)), 0.0, atol=1e-6)
    sphere = feature_angles(make_uv_sphere(1.0, 32, 16))
    assert sphere.max() < 45.0


def test_neighbour_range_logged(caplog):
    with caplog.at_level(logging.DEBUG, logger="armorfit.fitting.connectivity"):
        build_connectivity(make_cube(name="plate"), 10)
    assert "Connectivity for 'plate'" in caplog.text
    assert "neighbours per vertex 7-7" in caplog.text
