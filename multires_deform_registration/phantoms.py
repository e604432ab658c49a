# -*- coding: utf-8 -*-
"""
Synthetic test images for registration.

Functions
---------
- smooth_pattern: Sum of sinusoids, a smooth texture with gradients everywhere
- translated_pair: Fixed/moving pair related by a known translation
- gaussian_blob: Single Gaussian blob
"""

from __future__ import annotations

from typing import Optional, Sequence, Tuple, Union

import numpy as np
from numpy.typing import NDArray

from .image import GridSpec, Image


def _pattern(points: NDArray[np.float64], wavelength: float) -> NDArray[np.float32]:
    ndim = points.shape[-1]
    values = np.zeros(points.shape[:-1])
    for axis in range(ndim):
        phase = 0.7 * axis
        values += np.sin(2 * np.pi * points[..., axis] / wavelength + phase)
    return values.astype(np.float32)


def smooth_pattern(
    shape: Tuple[int, ...],
    wavelength: float = 16.0,
    spacing: Optional[Union[float, Sequence[float]]] = None,
) -> Image:
    """
    Smooth sinusoidal texture.

    ``f(x) = sum_i sin(2 pi x_i / wavelength + 0.7 i)`` evaluated at the
    physical voxel positions.

    Parameters
    ----------
    shape : tuple of int
        Image shape (2D or 3D).
    wavelength : float
        Period in physical units. Default 16.
    spacing : float or sequence, optional
        Voxel spacing. Default 1.

    Returns
    -------
    image : Image
        Values in [-N, N] for an N-dimensional image.
    """
    grid = GridSpec.from_shape(shape, spacing)
    return Image(_pattern(grid.voxel_coordinates(), wavelength), grid)


def translated_pair(
    shape: Tuple[int, ...],
    translation: Sequence[float],
    wavelength: float = 16.0,
    spacing: Optional[Union[float, Sequence[float]]] = None,
) -> Tuple[Image, Image]:
    """
    Fixed and moving images related by a known translation.

    The moving image is the fixed pattern shifted by ``translation``
    (physical units, array axis order): ``moving(x) = fixed(x - t)``.
    The ideal deformation field is therefore ``u(x) = t`` everywhere.
    Both images are evaluated analytically, so no interpolation error is
    introduced.

    Returns
    -------
    fixed, moving : Image
    """
    grid = GridSpec.from_shape(shape, spacing)
    translation = np.asarray(translation, dtype=np.float64)
    points = grid.voxel_coordinates()
    fixed = Image(_pattern(points, wavelength), grid)
    moving = Image(_pattern(points - translation, wavelength), grid)
    return fixed, moving


def gaussian_blob(
    shape: Tuple[int, ...],
    center: Optional[Sequence[float]] = None,
    sigma: float = 4.0,
) -> Image:
    """Gaussian blob of unit height on a unit-spacing grid."""
    grid = GridSpec.from_shape(shape)
    if center is None:
        center = [(n - 1) / 2.0 for n in shape]
    d2 = np.sum((grid.voxel_coordinates() - np.asarray(center)) ** 2, axis=-1)
    return Image(np.exp(-d2 / (2 * sigma ** 2)).astype(np.float32), grid)
