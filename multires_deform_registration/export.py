# -*- coding: utf-8 -*-
"""
Export a finished deformation field as point/vector pairs.

The output is meant for external renderers or writers (e.g. a vector
glyph plot). Points are physical voxel positions; vectors are the
physical displacements at those voxels.

Functions
---------
- export_arrays: Filtered points and vectors as two arrays
- export_field: Filtered (point, vector) pairs
"""

from __future__ import annotations

from typing import List, Optional, Tuple, Union

import numpy as np
from numpy.typing import NDArray

from .exceptions import ConfigurationError, GridMismatch
from .image import DeformationField, Image


def _selection(
    field: DeformationField,
    mask: Optional[Union[Image, NDArray]],
    slice_axis: Optional[int],
    slice_index: Optional[int],
) -> NDArray[np.bool_]:
    keep = np.ones(field.shape, dtype=bool)

    if mask is not None:
        if isinstance(mask, Image):
            if not mask.grid.is_equivalent(field.grid):
                raise GridMismatch("Mask grid does not match the field grid")
            mask = mask.array
        mask = np.asarray(mask)
        if mask.shape != field.shape:
            raise GridMismatch(f"Mask shape {mask.shape} does not match field shape {field.shape}")
        keep &= mask != 0

    if (slice_axis is None) != (slice_index is None):
        raise ConfigurationError("slice_axis and slice_index must be given together")
    if slice_axis is not None:
        if not 0 <= slice_axis < field.ndim:
            raise ConfigurationError(
                f"slice_axis must be in [0, {field.ndim - 1}], got {slice_axis}"
            )
        on_slice = np.zeros(field.shape[slice_axis], dtype=bool)
        if 0 <= slice_index < field.shape[slice_axis]:
            on_slice[slice_index] = True
        shape = [1] * field.ndim
        shape[slice_axis] = -1
        keep &= on_slice.reshape(shape)

    return keep


def export_arrays(
    field: DeformationField,
    mask: Optional[Union[Image, NDArray]] = None,
    slice_axis: Optional[int] = None,
    slice_index: Optional[int] = None,
) -> Tuple[NDArray[np.float64], NDArray[np.float64]]:
    """
    Filtered voxel positions and displacements.

    Parameters
    ----------
    field : DeformationField
        Field to export.
    mask : Image or ndarray, optional
        Same grid as the field; voxels where the mask is nonzero pass.
    slice_axis : int, optional
        Axis of a single slice to keep. Requires ``slice_index``.
    slice_index : int, optional
        Index along ``slice_axis``. Out-of-range indices select nothing.

    Returns
    -------
    points : ndarray
        Physical positions, shape (P, N), in C order over the grid.
    vectors : ndarray
        Displacements, shape (P, N).
    """
    keep = _selection(field, mask, slice_axis, slice_index)
    indices = np.argwhere(keep)
    points = field.grid.index_to_physical(indices)
    vectors = field.vectors[keep]
    return points, vectors


def export_field(
    field: DeformationField,
    mask: Optional[Union[Image, NDArray]] = None,
    slice_axis: Optional[int] = None,
    slice_index: Optional[int] = None,
) -> List[Tuple[NDArray[np.float64], NDArray[np.float64]]]:
    """
    Export a field as ``(point, vector)`` pairs.

    Same filtering as ``export_arrays``.

    Examples
    --------
    >>> pairs = export_field(field, mask=brain_mask, slice_axis=0, slice_index=12)
    >>> point, vector = pairs[0]
    """
    points, vectors = export_arrays(field, mask, slice_axis, slice_index)
    return list(zip(points, vectors))
