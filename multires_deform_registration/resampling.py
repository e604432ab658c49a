# -*- coding: utf-8 -*-
"""
Deformation field resampling between pyramid levels.

Functions/Classes
-----------------
- FieldResampler: Expand a field onto a (finer) target grid
"""

from __future__ import annotations

import numpy as np
from scipy import ndimage

from .exceptions import ConfigurationError, GridMismatch
from .image import DeformationField, GridSpec


class FieldResampler:
    """
    Interpolate a deformation field onto another grid.

    Components are interpolated in voxel units of the source grid and
    rescaled by ``source_spacing / target_spacing`` per axis, so the
    physical displacement is preserved while the voxel-relative values
    follow the new grid.

    Parameters
    ----------
    order : int
        Spline order for ``scipy.ndimage.map_coordinates``. Must be >= 1
        (1 = piecewise linear). Default 1.

    Examples
    --------
    >>> resampler = FieldResampler()
    >>> fine_field = resampler.expand(coarse_field, fine_grid)
    """

    def __init__(self, order: int = 1):
        if not 1 <= int(order) <= 5:
            raise ConfigurationError(
                f"Interpolation order must be between 1 and 5, got {order}"
            )
        self.order = int(order)

    def expand(self, field: DeformationField, target: GridSpec) -> DeformationField:
        """
        Resample ``field`` onto ``target``.

        Parameters
        ----------
        field : DeformationField
            Field in physical units.
        target : GridSpec
            Grid of the next level.

        Returns
        -------
        expanded : DeformationField
            New field on ``target``. Equivalent to ``field`` when the grids
            are the same.
        """
        source = field.grid
        if source.ndim != target.ndim:
            raise GridMismatch(
                f"Cannot resample a {source.ndim}D field onto a {target.ndim}D grid"
            )
        if source.is_equivalent(target):
            return DeformationField(field.vectors.copy(), target)

        # Continuous source index of every target voxel
        coords = source.physical_to_index(target.voxel_coordinates())
        coords = np.moveaxis(coords, -1, 0)

        voxel = field.to_voxel_units()
        ratio = np.asarray(source.spacing) / np.asarray(target.spacing)

        expanded = np.empty(tuple(target.shape) + (target.ndim,), dtype=np.float64)
        for i in range(target.ndim):
            expanded[..., i] = ndimage.map_coordinates(
                voxel[..., i],
                coords,
                order=self.order,
                mode='nearest',
            ) * ratio[i]

        return DeformationField.from_voxel_units(expanded, target)
