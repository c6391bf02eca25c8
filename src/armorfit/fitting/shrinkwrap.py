"""Iterative shrinkwrap: pull a source mesh onto a target surface.

Per invocation::

    Init -> (Sample -> Project -> Damp & Clamp -> Smooth) x N -> Converged | MaxIterations

All projection happens in world space against a :class:`SpatialIndex`
built once per invocation. Each vertex casts a ray toward the target
center; a hit gives the desired position ``hit + normal * target_offset``.
On a miss the reverse ray is tried: a hit there means the vertex is inside
the target and is pushed out through the surface at twice the step.
Displacements are blended with the Gaussian-weighted average of their
multi-hop neighbourhood, clamped to ``max_displacement`` and applied once
per iteration. The source mesh is modified in place.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterator, Optional, Union

import numpy as np
from numpy.typing import NDArray

from armorfit.body.hull import HullResult
from armorfit.constants import (
    DIRECTION_EPS,
    FEATURE_SMOOTHING_SCALE,
    PUSH_BACK_FRACTIONS,
    RAY_T_MIN,
)
from armorfit.core.errors import BuildError, InvalidTarget
from armorfit.core.math_utils import aabb_center
from armorfit.core.mesh import Mesh
from armorfit.core.state import FittingParameters
from armorfit.fitting.connectivity import build_connectivity, feature_angles
from armorfit.spatial.bvh import SpatialIndex

logger = logging.getLogger(__name__)

ProgressSink = Callable[[float, str], None]
FitTarget = Union[Mesh, HullResult, SpatialIndex]

# Vertices less than this far inside the target are treated as on the surface
INSIDE_TOLERANCE = 1e-4


class FitOutcome(Enum):
    CONVERGED = "converged"
    MAX_ITERATIONS = "max_iterations"
    CANCELLED = "cancelled"


@dataclass
class IterationReport:
    """Statistics for one completed iteration."""
    iteration: int            # 1-based
    total: int
    mean_displacement: float  # over all movable vertices
    max_displacement: float
    moved: int
    hits: int
    inside: int
    misses: int

    @property
    def fraction(self) -> float:
        return self.iteration / self.total if self.total else 1.0


@dataclass
class FitResult:
    status: FitOutcome
    iterations: int
    mean_displacements: list[float] = field(default_factory=list)
    restored_vertices: int = 0
    frozen_vertices: int = 0
    reports: list[IterationReport] = field(default_factory=list)

    @property
    def converged(self) -> bool:
        return self.status is FitOutcome.CONVERGED


@dataclass
class Projection:
    """Desired displacements for a batch of sampled vertices."""
    displacement: NDArray[np.float64]  # (S, 3), zero where ``ok`` is False
    ok: NDArray[np.bool_]
    inside: NDArray[np.bool_]


def resolve_index(target: FitTarget) -> SpatialIndex:
    """Spatial index for any accepted fitting target."""
    if isinstance(target, SpatialIndex):
        return target
    mesh = target.mesh if isinstance(target, HullResult) else target
    try:
        return SpatialIndex.build(mesh)
    except BuildError as e:
        raise InvalidTarget(f"Cannot fit to '{mesh.name}': {e}") from e


def project_points(
    index: SpatialIndex,
    points: NDArray,
    center: NDArray,
    params: FittingParameters,
) -> Projection:
    """Project world points toward *center* onto the indexed surface."""
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    s = len(pts)
    disp = np.zeros((s, 3))
    ok = np.zeros(s, dtype=bool)
    inside = np.zeros(s, dtype=bool)

    dirs = center - pts
    dist = np.linalg.norm(dirs, axis=1)
    valid = np.all(np.isfinite(pts), axis=1) & np.isfinite(dist) & (dist > DIRECTION_EPS)
    rows = np.nonzero(valid)[0]
    if len(rows) == 0:
        return Projection(disp, ok, inside)

    fwd = index.query_rays(pts[rows], dirs[rows], t_min=RAY_T_MIN, t_max=dist[rows])
    unit = dirs[rows] / dist[rows, None]

    # Forward hit: offset along the normal that faces the vertex
    hit = fwd.hit
    if np.any(hit):
        n = fwd.normal[hit]
        facing = np.einsum("ij,ij->i", n, unit[hit]) > 0
        n[facing] *= -1.0
        desired = fwd.point[hit] + n * params.target_offset
        disp[rows[hit]] = (desired - pts[rows[hit]]) * params.step_size
        ok[rows[hit]] = True

    # Miss: reverse ray; a hit means the vertex sits inside the target
    miss = ~hit
    if np.any(miss) and params.inside_search_distance > 0:
        mrows = rows[miss]
        back = index.query_rays(
            pts[mrows], -unit[miss], t_min=RAY_T_MIN, t_max=params.inside_search_distance,
        )
        bh = back.hit
        if np.any(bh):
            n = back.normal[bh]
            # Outward: the side facing away from the vertex
            toward = np.einsum("ij,ij->i", n, -unit[miss][bh]) < 0
            n[toward] *= -1.0
            desired = back.point[bh] + n * params.target_offset
            disp[mrows[bh]] = (desired - pts[mrows[bh]]) * (params.step_size * 2.0)
            ok[mrows[bh]] = True
            inside[mrows[bh]] = True

    bad = ok & ~np.all(np.isfinite(disp), axis=1)
    if np.any(bad):
        logger.debug("Rejecting %d non-finite projections", int(bad.sum()))
        disp[bad] = 0.0
        ok[bad] = False
        inside[bad] = False
    return Projection(disp, ok, inside)


def inside_depths(index: SpatialIndex, points: NDArray) -> NDArray[np.float64]:
    """Penetration depth of each point inside the indexed surface (0 when outside).

    A point is inside when the first surface hit toward the target center
    is a back face, or, missing that, the first hit away from it is.
    Depth is the distance to the surface along the outward ray.
    """
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    depth = np.zeros(len(pts))
    center = index.center
    dirs = center - pts
    dist = np.linalg.norm(dirs, axis=1)
    rows = np.nonzero((dist > DIRECTION_EPS) & np.all(np.isfinite(pts), axis=1))[0]
    if len(rows) == 0:
        return depth

    fwd = index.query_rays(pts[rows], dirs[rows], t_min=0.0)
    out = index.query_rays(pts[rows], -dirs[rows], t_min=0.0)
    inside = np.where(fwd.hit, ~fwd.front_face, out.hit & ~out.front_face)
    # Depth to the nearest exit along either ray
    exit_dist = np.where(out.hit & ~out.front_face, out.distance, np.inf)
    exit_dist = np.minimum(exit_dist, np.where(fwd.hit & ~fwd.front_face, fwd.distance, np.inf))
    depth[rows[inside]] = exit_dist[inside]
    depth[~np.isfinite(depth)] = 0.0
    return depth


class ShrinkwrapFitter:
    """Runs the iterative fitting loop with one parameter set."""

    def __init__(self, parameters: Optional[FittingParameters] = None):
        self.parameters = parameters if parameters is not None else FittingParameters()
        self.parameters.validate()

    def fit(
        self,
        source: Mesh,
        target: FitTarget,
        progress: Optional[ProgressSink] = None,
        cancel: Optional[Callable[[], bool]] = None,
        index: Optional[SpatialIndex] = None,
    ) -> FitResult:
        """Fit *source* onto *target* in place and return the outcome."""
        runner = self.iter_fit(source, target, progress=progress, cancel=cancel, index=index)
        while True:
            try:
                next(runner)
            except StopIteration as stop:
                return stop.value

    def iter_fit(
        self,
        source: Mesh,
        target: FitTarget,
        progress: Optional[ProgressSink] = None,
        cancel: Optional[Callable[[], bool]] = None,
        index: Optional[SpatialIndex] = None,
    ) -> Iterator[IterationReport]:
        """Generator form of :meth:`fit`, yielding after every iteration.

        The generator's return value (``StopIteration.value``) is the
        :class:`FitResult`. Closing it early leaves the mesh in its last
        completed state.
        """
        params = self.parameters
        index = resolve_index(target) if index is None else index
        n = source.vertex_count
        center = index.center

        positions = source.world_positions()
        original = positions.copy()
        original_volume = source.volume(original) if params.preserve_volume else 0.0

        conn = build_connectivity(source, params.smoothing_radius)
        alpha = np.full(n, params.smoothing_strength)
        if params.preserve_features:
            features = feature_angles(source) > params.feature_angle_threshold
            alpha[features] *= FEATURE_SMOOTHING_SCALE
            logger.debug("Preserving %d feature vertices", int(features.sum()))

        frozen = np.zeros(n, dtype=bool)
        if params.preserve_openings:
            openings = (
                np.asarray(params.opening_vertices, dtype=np.int64)
                if params.opening_vertices is not None
                else source.boundary_vertices()
            )
            frozen[openings] = True
        movable = ~frozen
        movable_count = max(1, int(movable.sum()))

        stride = max(1, int(math.floor(1.0 / params.sample_rate + 1e-9)))
        total = params.iterations
        result = FitResult(
            status=FitOutcome.MAX_ITERATIONS, iterations=0, frozen_vertices=int(frozen.sum()),
        )
        logger.info(
            "Fitting '%s' (%d vertices) to %d triangles: %d iterations, step %.2f, stride %d",
            source.name, n, index.triangle_count, total, params.step_size, stride,
        )

        for it in range(total):
            if cancel is not None and cancel():
                result.status = FitOutcome.CANCELLED
                logger.info("Fitting '%s' cancelled after %d iterations", source.name, it)
                return result

            sampled = np.arange(it % stride, n, stride)
            sampled = sampled[movable[sampled]]
            proj = project_points(index, positions[sampled], center, params)

            disp = np.zeros((n, 3))
            active = np.zeros(n, dtype=bool)
            disp[sampled[proj.ok]] = proj.displacement[proj.ok]
            active[sampled[proj.ok]] = True

            final = self._smooth(disp, active, alpha, conn)
            final[frozen] = 0.0

            mags = np.linalg.norm(final, axis=1)
            over = mags > params.max_displacement
            if np.any(over):
                final[over] *= (params.max_displacement / mags[over])[:, None]
                mags[over] = params.max_displacement

            positions = positions + final
            source.set_world_positions(positions)

            mean_disp = float(mags[movable].sum() / movable_count)
            report = IterationReport(
                iteration=it + 1,
                total=total,
                mean_displacement=mean_disp,
                max_displacement=float(mags.max(initial=0.0)),
                moved=int(np.count_nonzero(mags > 0)),
                hits=int(np.count_nonzero(proj.ok & ~proj.inside)),
                inside=int(np.count_nonzero(proj.inside)),
                misses=int(np.count_nonzero(~proj.ok)),
            )
            result.iterations = it + 1
            result.mean_displacements.append(mean_disp)
            result.reports.append(report)
            logger.debug(
                "Iteration %d/%d: mean %.5f max %.5f (hits %d, inside %d, misses %d)",
                report.iteration, total, mean_disp, report.max_displacement,
                report.hits, report.inside, report.misses,
            )
            if progress is not None:
                progress(report.fraction, f"Iteration {it + 1}/{total}: mean displacement {mean_disp:.4f}")

            yield report

            if mean_disp < params.convergence_epsilon:
                result.status = FitOutcome.CONVERGED
                break

        if params.push_interior_back:
            positions, result.restored_vertices = self._push_back(index, positions, original, movable)
            source.set_world_positions(positions)
        if params.preserve_volume:
            positions = self._restore_volume(source, positions, original_volume)
            source.set_world_positions(positions)

        logger.info(
            "Fitting '%s' finished: %s after %d iterations (restored %d)",
            source.name, result.status.value, result.iterations, result.restored_vertices,
        )
        return result

    @staticmethod
    def _smooth(disp: NDArray, active: NDArray, alpha: NDArray, conn) -> NDArray:
        """Blend each displacement with its neighbourhood's weighted average.

        Active vertices: ``(1 - a) * own + a * average``. Vertices without
        their own projection take ``a * average`` so they follow their
        neighbours.
        """
        if conn.max_hop == 0 or not np.any(alpha > 0):
            return disp.copy()
        avg, has = conn.neighbour_average(disp, active)
        a = alpha[:, None]
        blended = np.where(has[:, None], (1.0 - a) * disp + a * avg, disp)
        return np.where(active[:, None], blended, a * avg)

    @staticmethod
    def _push_back(
        index: SpatialIndex, positions: NDArray, original: NDArray, movable: NDArray,
    ) -> tuple[NDArray, int]:
        """Move vertices left inside the target back toward their pre-fit positions."""
        depth = inside_depths(index, positions)
        pending = np.nonzero((depth > INSIDE_TOLERANCE) & movable)[0]
        if len(pending) == 0:
            return positions, 0
        out = positions.copy()
        restored = len(pending)
        for f in PUSH_BACK_FRACTIONS:
            candidate = positions[pending] + (original[pending] - positions[pending]) * f
            if f >= 1.0:
                out[pending] = candidate
                break
            still = inside_depths(index, candidate) > INSIDE_TOLERANCE
            out[pending[~still]] = candidate[~still]
            pending = pending[still]
            if len(pending) == 0:
                break
        logger.info("Pushed %d interior vertices back toward their pre-fit positions", restored)
        return out, restored

    @staticmethod
    def _restore_volume(source: Mesh, positions: NDArray, original_volume: float) -> NDArray:
        """Uniformly rescale about the bounds center to recover the pre-fit volume."""
        current = source.volume(positions)
        if original_volume <= 0 or current <= 0:
            logger.debug("Skipping volume preservation (open or inverted mesh)")
            return positions
        scale = (original_volume / current) ** (1.0 / 3.0)
        center = aabb_center((positions.min(axis=0), positions.max(axis=0)))
        logger.debug("Volume %.5f -> %.5f, rescaling by %.4f", current, original_volume, scale)
        return center + (positions - center) * scale
