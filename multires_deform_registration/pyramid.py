# -*- coding: utf-8 -*-
"""
Image pyramid used as the default multi-resolution collaborator.

Each level is a Gaussian-smoothed, resampled copy of the input that
covers the same physical extent (no cropping). Level 0 is the coarsest.

Functions/Classes
-----------------
- default_shrink_factors: Power-of-two shrink schedule
- ImagePyramid: Lazily built, cached pyramid levels
"""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
from scipy import ndimage

from .exceptions import ConfigurationError, ResourceUnavailable
from .image import GridSpec, Image


def default_shrink_factors(number_of_levels: int) -> List[int]:
    """Factors 2**(L-1), ..., 2, 1 from coarsest to finest level."""
    return [2 ** (number_of_levels - 1 - level) for level in range(number_of_levels)]


def _shrink_grid(grid: GridSpec, factors: Tuple[int, ...]) -> GridSpec:
    """Coarse grid with the same physical coverage as ``grid``."""
    shape = np.asarray(grid.shape)
    spacing = np.asarray(grid.spacing)
    new_shape = np.maximum(shape // np.asarray(factors), 1)
    new_spacing = spacing * shape / new_shape
    new_origin = np.asarray(grid.origin) + 0.5 * (new_spacing - spacing)
    return GridSpec(tuple(new_shape), tuple(new_spacing), tuple(new_origin))


def _smooth_and_shrink(image: Image, factors: Tuple[int, ...]) -> Image:
    """Downsample an image by the given per-axis factors."""
    if all(f == 1 for f in factors):
        return Image(image.array.astype(np.float32), image.grid)

    # Apply Gaussian smoothing to avoid aliasing
    sigma = [f / 2.0 for f in factors]
    smoothed = ndimage.gaussian_filter(image.array.astype(np.float32), sigma=sigma)

    target = _shrink_grid(image.grid, factors)
    coords = image.grid.physical_to_index(target.voxel_coordinates())
    resampled = ndimage.map_coordinates(
        smoothed,
        np.moveaxis(coords, -1, 0),
        order=1,
        mode='nearest',
    )
    return Image(resampled.astype(np.float32), target)


class ImagePyramid:
    """
    Multi-resolution pyramid of an image.

    Parameters
    ----------
    image : Image
        Full resolution image (the finest level).
    number_of_levels : int
        Number of levels L. Level 0 is the coarsest, level L-1 the input.
    shrink_factors : sequence, optional
        One entry per level, either an int (all axes) or a per-axis tuple.
        Default: 2**(L-1), ..., 2, 1.

    Examples
    --------
    >>> pyramid = ImagePyramid(image, number_of_levels=3)
    >>> coarse = pyramid.get_level(0)
    """

    def __init__(
        self,
        image: Image,
        number_of_levels: int,
        shrink_factors: Optional[Sequence[Union[int, Sequence[int]]]] = None,
    ):
        if number_of_levels < 1:
            raise ConfigurationError(f"number_of_levels must be >= 1, got {number_of_levels}")
        if shrink_factors is None:
            shrink_factors = default_shrink_factors(number_of_levels)
        if len(shrink_factors) != number_of_levels:
            raise ConfigurationError(
                f"shrink_factors must have {number_of_levels} entries, got {len(shrink_factors)}"
            )

        self.image = image
        self._factors = [self._per_axis(f, image.ndim) for f in shrink_factors]
        self._levels: Dict[int, Image] = {}

    @staticmethod
    def _per_axis(factor, ndim: int) -> Tuple[int, ...]:
        if np.isscalar(factor):
            factor = (factor,) * ndim
        factor = tuple(int(f) for f in factor)
        if len(factor) != ndim or any(f < 1 for f in factor):
            raise ConfigurationError(f"Invalid shrink factor {factor} for a {ndim}D image")
        return factor

    @property
    def number_of_levels(self) -> int:
        return len(self._factors)

    @property
    def shrink_factors(self) -> List[Tuple[int, ...]]:
        return list(self._factors)

    def get_level(self, level: int) -> Image:
        """
        Image at a pyramid level.

        Raises
        ------
        ResourceUnavailable
            If the level does not exist or would be degenerate (an axis
            with fewer than two voxels).
        """
        if not 0 <= level < self.number_of_levels:
            raise ResourceUnavailable(
                f"Pyramid has {self.number_of_levels} levels, level {level} requested"
            )
        if level not in self._levels:
            factors = self._factors[level]
            grid = _shrink_grid(self.image.grid, factors)
            if any(n < 2 for n in grid.shape):
                raise ResourceUnavailable(
                    f"Level {level} (shrink {factors}) of an image of shape "
                    f"{self.image.shape} would have shape {grid.shape}"
                )
            self._levels[level] = _smooth_and_shrink(self.image, factors)
        return self._levels[level]
