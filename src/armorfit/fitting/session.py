"""Caller-held fitting state for one armor mesh.

A session wraps the armor mesh with an explicit status
(UNFIT -> FITTED -> BOUND), serialises operations on it, supports
cooperative cancellation between iterations, and publishes lifecycle
events on an optional :class:`EventBus`.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from armorfit.body.hull import HullResult, extract_torso_hull
from armorfit.core.errors import (
    BuildError, FittingError, FittingInProgress, InvalidTarget, MissingSkeleton,
)
from armorfit.core.events import EventBus, EventType
from armorfit.core.mesh import Mesh, SkinnedMesh
from armorfit.core.state import FittingParameters, SessionStatus
from armorfit.fitting.collision import CollisionSettings, detect_collisions, resolve_collisions
from armorfit.fitting.shrinkwrap import (
    FitOutcome, FitResult, FitTarget, ProgressSink, ShrinkwrapFitter,
)
from armorfit.rigging.weight_transfer import TransferOptions, TransferReport, transfer_weights
from armorfit.spatial.bvh import IndexCache, SpatialIndex

logger = logging.getLogger(__name__)


class FittingSession:
    """Owns write access to one armor mesh for the duration of each call.

    A second call while one is running raises :class:`FittingInProgress`;
    calls are never interleaved.
    """

    def __init__(
        self,
        armor: Mesh,
        bus: Optional[EventBus] = None,
        index_cache: Optional[IndexCache] = None,
    ):
        self.armor = armor
        self._original = armor.clone()
        self.bus = bus
        self.index_cache = index_cache if index_cache is not None else IndexCache()
        self.status = SessionStatus.UNFIT
        self.bound_mesh: Optional[SkinnedMesh] = None
        self.last_result: Optional[FitResult] = None
        self.last_report: Optional[TransferReport] = None
        self._lock = threading.Lock()
        self._cancel = threading.Event()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @contextmanager
    def _exclusive(self, operation: str) -> Iterator[None]:
        if not self._lock.acquire(blocking=False):
            raise FittingInProgress(
                f"Cannot start '{operation}' on '{self.armor.name}': another operation is running"
            )
        try:
            self._cancel.clear()
            yield
        finally:
            self._lock.release()

    def _publish(self, event_type: EventType, **data) -> None:
        if self.bus is not None:
            self.bus.publish(event_type, **data)

    def cancel(self) -> None:
        """Stop a running fit after its current iteration."""
        self._cancel.set()

    def _index_for(self, target: FitTarget) -> Optional[SpatialIndex]:
        if isinstance(target, SpatialIndex):
            return target
        if isinstance(target, HullResult):
            # Hulls are transient, one index per fit
            return None
        try:
            return self._cached_index(target)
        except BuildError as e:
            raise InvalidTarget(f"Cannot fit to '{target.name}': {e}") from e

    def _cached_index(self, mesh: Mesh) -> SpatialIndex:
        builds = self.index_cache.builds
        index = self.index_cache.get(mesh)
        if self.index_cache.builds != builds:
            self._publish(EventType.INDEX_REBUILT, key=mesh.name, triangles=index.triangle_count)
        self.index_cache.prune()
        return index

    # ── Operations ──

    def fit(
        self,
        target: FitTarget,
        parameters: Optional[FittingParameters] = None,
        progress: Optional[ProgressSink] = None,
    ) -> FitResult:
        """Shrinkwrap the armor onto *target* (avatar mesh, hull or prebuilt index)."""
        params = parameters if parameters is not None else FittingParameters()
        with self._exclusive("fit"):
            return self._run_fit(target, params, progress)

    def fit_to_hull(
        self,
        avatar: SkinnedMesh,
        parameters: Optional[FittingParameters] = None,
        progress: Optional[ProgressSink] = None,
    ) -> FitResult:
        """Fit onto the avatar's torso hull, or the full avatar when no hull exists."""
        params = parameters if parameters is not None else FittingParameters.preset("hull")
        with self._exclusive("fit_to_hull"):
            hull = extract_torso_hull(avatar)
            if hull is None or hull.triangle_count == 0:
                logger.warning("No torso hull for '%s', fitting to the full avatar", avatar.name)
                return self._run_fit(avatar, params, progress)
            return self._run_fit(hull, params, progress)

    def _run_fit(
        self, target: FitTarget, params: FittingParameters, progress: Optional[ProgressSink],
    ) -> FitResult:
        fitter = ShrinkwrapFitter(params)
        index = self._index_for(target)
        self._publish(EventType.FIT_STARTED, mesh=self.armor.name, iterations=params.iterations)

        runner = fitter.iter_fit(
            self.armor, target, progress=progress, cancel=self._cancel.is_set, index=index,
        )
        while True:
            try:
                report = next(runner)
            except StopIteration as stop:
                result: FitResult = stop.value
                break
            self._publish(
                EventType.FIT_ITERATION,
                iteration=report.iteration,
                fraction=report.fraction,
                mean_displacement=report.mean_displacement,
            )

        self.last_result = result
        if result.status is FitOutcome.CANCELLED:
            self._publish(EventType.FIT_CANCELLED, iterations=result.iterations)
        else:
            self.status = SessionStatus.FITTED
            self._publish(EventType.FIT_COMPLETE, result=result)
        return result

    def resolve_collisions(
        self,
        avatar: Mesh,
        iterations: int = 2,
        settings: Optional[CollisionSettings] = None,
    ) -> int:
        """Detect and push out shallow penetrations; returns vertices moved."""
        with self._exclusive("resolve_collisions"):
            index = self._cached_index(avatar)
            collisions = detect_collisions(avatar, self.armor, settings=settings, index=index)
            moved = resolve_collisions(self.armor, collisions, iterations=iterations, settings=settings)
            self._publish(EventType.COLLISIONS_RESOLVED, count=len(collisions))
            return moved

    def bind(
        self,
        avatar: SkinnedMesh,
        options: Optional[TransferOptions] = None,
        force: bool = False,
    ) -> SkinnedMesh:
        """Transfer the avatar's skin weights onto the fitted armor."""
        with self._exclusive("bind"):
            if not avatar.has_skinning:
                raise MissingSkeleton(f"Avatar '{avatar.name}' has no skeleton to bind to")
            if self.status is SessionStatus.UNFIT and not force:
                raise FittingError(
                    f"Armor '{self.armor.name}' is not fitted; fit first or pass force=True"
                )
            bound, report = transfer_weights(avatar, self.armor, options)
            self.bound_mesh = bound
            self.last_report = report
            self.status = SessionStatus.BOUND
            self._publish(EventType.WEIGHTS_TRANSFERRED, report=report)
            return bound

    def reset(self) -> None:
        """Restore the armor's pre-session geometry and status."""
        with self._exclusive("reset"):
            self.armor.set_positions(self._original.positions)
            self.armor.world_matrix = self._original.world_matrix.copy()
            self.bound_mesh = None
            self.last_result = None
            self.last_report = None
            self.status = SessionStatus.UNFIT
            self.index_cache.invalidate()
            self._publish(EventType.SESSION_RESET)
