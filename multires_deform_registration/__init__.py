# -*- coding: utf-8 -*-
"""
Multi-Resolution Deformable Registration Package.

Dense deformable registration of 2D and 3D images, coarse-to-fine over
an image pyramid, with pluggable per-level solvers.

Main Functions
--------------
- pyramid_register: One-call multi-resolution registration
- MultiResolutionRegistration: Level loop with injectable collaborators
- warp_image: Apply a deformation field to the moving image
- export_field: Deformation field as (point, vector) pairs

Solvers
-------
- VoxelPDESolver: Demons-family iteration on the voxel grid
  (DemonsUpdateRule, SymmetricForcesUpdateRule)
- MeshLoadSolver: Metric-driven loads on an elastic finite element mesh
- get_solver: Create a built-in solver by name ('demons',
  'symmetric_forces', 'mesh')

Building Blocks
---------------
- FieldResampler: Carry a field to a finer grid, preserving physical size
- MetricForceEvaluator: Metric value and force at sample points
- ImagePyramid: Default smoothed/resampled pyramid
- LinearInterpolator: Differentiable image sampling at physical points

Metrics
-------
- MeanSquaresMetric: Mean squared difference (default)
- CorrelationMetric: Pearson correlation
- MAEMetric: Mean absolute difference
- MutualInformationMetric: Soft histogram mutual information

Regularization
--------------
field_sigma : float
    VoxelPDESolver only. Gaussian standard deviation (voxels) applied to
    the accumulated field after every iteration. Higher values give
    smoother, more rigid deformations. Default 1.0.

young_modulus : float
    MeshLoadSolver only. Elastic stiffness of the mesh relative to the
    image forces. Higher values give smoother deformations. Default 1.0.

Example:
    field, info = pyramid_register(moving, fixed, number_of_levels=3)
    field, info = pyramid_register(moving, fixed, solver='mesh', load_scale=3.0)
"""

from .exceptions import (
    RegistrationError,
    ConfigurationError,
    ResourceUnavailable,
    OutOfBoundsSample,
    NumericalInstability,
    GridMismatch,
    RegistrationCancelled,
)
from .image import GridSpec, Image, DeformationField
from .common import get_default_device, normalize_image, compute_validity_mask
from .interpolation import LinearInterpolator
from .metrics import (
    BaseMetric,
    MeanSquaresMetric,
    CorrelationMetric,
    MAEMetric,
    MutualInformationMetric,
    get_metric,
)
from .forces import ForceSample, ForceSampleBatch, MetricForceEvaluator
from .resampling import FieldResampler
from .pyramid import ImagePyramid, default_shrink_factors
from .solver_base import SolverStrategy
from .pde_solver import (
    UpdateRule,
    DemonsUpdateRule,
    SymmetricForcesUpdateRule,
    VoxelPDESolver,
)
from .mesh_solver import ImplicitMesh, IntegrationPoints, MeshLoadSolver
from .solvers import SolverRegistry, build_default_registry, get_solver
from .config import RegistrationConfig
from .scheduler import MultiResolutionRegistration, pyramid_register
from .quality import JacobianStats, jacobian_determinant, detect_folds
from .warping import warp_image
from .export import export_field, export_arrays
from .phantoms import smooth_pattern, translated_pair, gaussian_blob

__version__ = "0.1.0"
__all__ = [
    # Errors
    "RegistrationError",
    "ConfigurationError",
    "ResourceUnavailable",
    "OutOfBoundsSample",
    "NumericalInstability",
    "GridMismatch",
    "RegistrationCancelled",
    # Data model
    "GridSpec",
    "Image",
    "DeformationField",
    # Utilities
    "get_default_device",
    "normalize_image",
    "compute_validity_mask",
    "LinearInterpolator",
    # Metrics
    "BaseMetric",
    "MeanSquaresMetric",
    "CorrelationMetric",
    "MAEMetric",
    "MutualInformationMetric",
    "get_metric",
    # Forces and resampling
    "ForceSample",
    "ForceSampleBatch",
    "MetricForceEvaluator",
    "FieldResampler",
    "ImagePyramid",
    "default_shrink_factors",
    # Solvers
    "SolverStrategy",
    "UpdateRule",
    "DemonsUpdateRule",
    "SymmetricForcesUpdateRule",
    "VoxelPDESolver",
    "ImplicitMesh",
    "IntegrationPoints",
    "MeshLoadSolver",
    "SolverRegistry",
    "build_default_registry",
    "get_solver",
    # Scheduling
    "RegistrationConfig",
    "MultiResolutionRegistration",
    "pyramid_register",
    # Diagnostics and output
    "JacobianStats",
    "jacobian_determinant",
    "detect_folds",
    "warp_image",
    "export_field",
    "export_arrays",
    # Phantoms
    "smooth_pattern",
    "translated_pair",
    "gaussian_blob",
]
