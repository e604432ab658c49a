# -*- coding: utf-8 -*-
"""
Apply a deformation field to an image.

Functions
---------
- warp_image: Resample the moving image through a field
"""

from __future__ import annotations

from typing import Union

import numpy as np
from numpy.typing import NDArray
from scipy import ndimage

from .exceptions import ConfigurationError
from .image import DeformationField, Image, as_image


def warp_image(
    moving: Union[Image, NDArray],
    field: DeformationField,
    order: int = 1,
    cval: float = 0.0,
) -> NDArray[np.float32]:
    """
    Warp the moving image into fixed space.

    The output has the field's grid: voxel ``x`` takes the moving value at
    the physical point ``x + u(x)``.

    Parameters
    ----------
    moving : Image or ndarray
        Moving image. Bare arrays get unit spacing and zero origin.
    field : DeformationField
        Field on the fixed grid, physical units.
    order : int
        Spline interpolation order. Default 1.
    cval : float
        Value for points mapped outside the moving image. Default 0.

    Returns
    -------
    warped : ndarray
        Warped image with the field's grid shape, float32.
    """
    moving = as_image(moving)
    if moving.ndim != field.ndim:
        raise ConfigurationError(
            f"Cannot warp a {moving.ndim}D image with a {field.ndim}D field"
        )

    mapped = field.grid.voxel_coordinates() + field.vectors
    coords = np.moveaxis(moving.grid.physical_to_index(mapped), -1, 0)
    warped = ndimage.map_coordinates(
        np.asarray(moving.array, dtype=np.float32),
        coords,
        order=order,
        mode='constant',
        cval=cval,
    )
    return warped.astype(np.float32)
