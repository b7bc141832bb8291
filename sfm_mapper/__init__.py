"""sfm_mapper: incremental odometry + fiducial landmark mapping on GTSAM iSAM2.

This package provides:
- Data models for odometry deltas, keyframes, cameras and results
- Prior landmark layout and camera calibration loading
- A multi-landmark PnP pose solver (OpenCV) with axis-convention conversion
- A time synchronizer associating keyframes to motion states
- A factor graph builder (odometry, corner projection, anchor priors)
- An iSAM2 estimator with rollback on failure
- The ``SfmMapper`` orchestrator and a replay batch source

Design intent:
Keep modules small and single-purpose so the solver, loaders and sources can
be swapped while the orchestration stays stable.
"""
from .errors import (MapperError, InsufficientCorrespondences, PerspectiveSolveFailed,
                     NoAssociableState, SolverDivergence)
from .mapper import MapperContext, SfmMapper

__all__ = [
    "config", "errors", "graph", "isam", "layout", "mapper", "models", "pnp", "robust",
    "source", "sync",
    "MapperError", "InsufficientCorrespondences", "PerspectiveSolveFailed",
    "NoAssociableState", "SolverDivergence", "MapperContext", "SfmMapper",
]
__version__ = "0.1.0"
