"""Failure kinds raised by the mapper.

Only ``SolverDivergence`` leaves ``SfmMapper.optimize``; the others are
handled inside a batch by dropping (or deferring) the offending input.
"""


class MapperError(RuntimeError):
    """Base class for recoverable mapper failures."""


class InsufficientCorrespondences(MapperError):
    """Raised when a pose solve has too few known landmark corners or no camera."""


class PerspectiveSolveFailed(MapperError):
    """Raised when the perspective-n-point solve does not converge or is degenerate."""


class NoAssociableState(MapperError):
    """Raised when a keyframe cannot be matched to any motion state yet."""


class SolverDivergence(MapperError):
    """Raised when the incremental solve fails; the previous estimate stays authoritative."""
