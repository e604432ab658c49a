# -*- coding: utf-8 -*-
"""
Deformation field quality checks.

Functions
---------
- jacobian_determinant: det(I + grad(u)) at every voxel
- detect_folds: Summary statistics and folding warning
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray

from .image import DeformationField


@dataclass
class JacobianStats:
    """Statistics about the Jacobian determinant of a deformation field."""
    min_det: float
    max_det: float
    mean_det: float
    std_det: float
    num_folds: int
    fold_fraction: float
    num_near_singular: int  # det < 0.1
    near_singular_fraction: float
    total_voxels: int
    has_folds: bool


def jacobian_determinant(field: DeformationField) -> NDArray[np.float64]:
    """
    Jacobian determinant of the mapping ``x -> x + u(x)``.

    Derivatives are central differences in physical units (one-sided at
    the borders). Values below 0 indicate folding, 1 means the local
    volume is preserved.

    Returns
    -------
    det : ndarray
        Determinant per voxel, shape of the field grid.
    """
    ndim = field.ndim
    spacing = field.grid.spacing

    jacobian = np.zeros(tuple(field.shape) + (ndim, ndim))
    for i in range(ndim):
        gradients = np.gradient(field.vectors[..., i], *spacing)
        if ndim == 1:
            gradients = [gradients]
        for j in range(ndim):
            jacobian[..., i, j] = gradients[j]
    jacobian += np.eye(ndim)
    return np.linalg.det(jacobian)


def detect_folds(
    field: DeformationField,
    fold_threshold: float = 0.0,
    warn: bool = True,
) -> JacobianStats:
    """
    Detect folding (non-positive Jacobian determinant) in a field.

    Parameters
    ----------
    field : DeformationField
        Field to check.
    fold_threshold : float
        det(J) <= threshold counts as a fold. Default 0.0.
    warn : bool
        If True and folds are detected, emit a warning. Default True.

    Returns
    -------
    stats : JacobianStats
        Statistics about the Jacobian determinant.
    """
    det = jacobian_determinant(field).ravel()

    total_voxels = det.size
    num_folds = int((det <= fold_threshold).sum())
    num_near_singular = int((det < 0.1).sum())

    stats = JacobianStats(
        min_det=float(det.min()),
        max_det=float(det.max()),
        mean_det=float(det.mean()),
        std_det=float(det.std()),
        num_folds=num_folds,
        fold_fraction=num_folds / total_voxels,
        num_near_singular=num_near_singular,
        near_singular_fraction=num_near_singular / total_voxels,
        total_voxels=total_voxels,
        has_folds=num_folds > 0,
    )

    if warn and stats.has_folds:
        warnings.warn(
            f"Detected {num_folds} voxels ({stats.fold_fraction * 100:.2f}%) with "
            f"det(J) <= {fold_threshold}. Min det(J) = {stats.min_det:.4f}. "
            f"Consider a larger field_sigma or young_modulus.",
            UserWarning,
        )

    return stats
