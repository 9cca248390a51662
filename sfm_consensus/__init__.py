"""
sfm_consensus - Sample Consensus and Reconstruction Building Library

This package provides a RANSAC estimation engine with minimal solvers,
a view graph, a track builder and a reconstruction builder that turns
verified image-pair matches into one or more reconstructions.
"""

from .rng import RandomNumberGenerator
from .sample_consensus import (
    ModelEstimator,
    RansacParameters,
    RansacStatus,
    RansacSummary,
    SampleConsensusEstimator,
)
from .rigid_transformation import (
    estimate_non_central_rigid_transformation_2d_3d,
    estimate_rigid_transformation_2d_3d,
)
from .homography import estimate_homography
from .fundamental_matrix import estimate_fundamental_matrix
from .view_graph import DuplicateEdgePolicy, TwoViewInfo, ViewGraph
from .track_builder import TrackBuilder
from .reconstruction import Reconstruction, Scene
from .reconstruction_estimator import (
    IncrementalReconstructionEstimator,
    ReconstructionEstimator,
    ReconstructionEstimatorOptions,
)
from .reconstruction_builder import ReconstructionBuilder, ReconstructionBuilderOptions

__version__ = "0.1.0"
__all__ = [
    "RandomNumberGenerator",
    "ModelEstimator",
    "RansacParameters",
    "RansacStatus",
    "RansacSummary",
    "SampleConsensusEstimator",
    "estimate_rigid_transformation_2d_3d",
    "estimate_non_central_rigid_transformation_2d_3d",
    "estimate_homography",
    "estimate_fundamental_matrix",
    "DuplicateEdgePolicy",
    "TwoViewInfo",
    "ViewGraph",
    "TrackBuilder",
    "Reconstruction",
    "Scene",
    "IncrementalReconstructionEstimator",
    "ReconstructionEstimator",
    "ReconstructionEstimatorOptions",
    "ReconstructionBuilder",
    "ReconstructionBuilderOptions",
]
