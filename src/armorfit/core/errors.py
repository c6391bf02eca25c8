"""Error kinds raised by the fitting kernel.

Ray misses are never errors; they are routed through fallbacks or skipped.
"""


class FittingError(Exception):
    """Base class for all armorfit errors."""


class BuildError(FittingError):
    """Spatial index construction failed (e.g. no usable triangles)."""


class InvalidTarget(FittingError):
    """Fitting target has no usable triangles."""


class InvalidQuery(FittingError, ValueError):
    """Ray query with a zero-length or non-finite direction."""


class MissingSkeleton(FittingError):
    """Operation needs skin weights and a skeleton but the mesh has none."""


class NoRegionFound(FittingError, LookupError):
    """No body region matched the requested name or bones.

    Recoverable: callers fall back to :func:`armorfit.body.regions.proportional_region`.
    """


class FittingInProgress(FittingError, RuntimeError):
    """A second fitting call was made while one is still running."""
