# -*- coding: utf-8 -*-
"""
Image, grid and deformation field data model.

All geometry is axis aligned and given in array axis order, i.e. (Z, Y, X)
for volumes and (Y, X) for images. Displacements are stored in physical
units with components in the same order.

Classes
-------
- GridSpec: Shape, spacing and origin of a sampling grid
- Image: Scalar array sampled on a GridSpec
- DeformationField: N-component displacement vectors on a GridSpec
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple, Union

import numpy as np
from numpy.typing import NDArray

from .exceptions import ConfigurationError, GridMismatch


@dataclass(frozen=True)
class GridSpec:
    """
    Geometry of a regular sampling grid.

    Attributes
    ----------
    shape : tuple of int
        Number of voxels per axis.
    spacing : tuple of float
        Physical distance between neighbouring voxels per axis.
    origin : tuple of float
        Physical position of voxel index 0.
    """
    shape: Tuple[int, ...]
    spacing: Tuple[float, ...]
    origin: Tuple[float, ...]

    def __post_init__(self):
        shape = tuple(int(n) for n in self.shape)
        spacing = tuple(float(s) for s in self.spacing)
        origin = tuple(float(o) for o in self.origin)
        if len(shape) == 0:
            raise ConfigurationError("Grid must have at least one axis")
        if not (len(shape) == len(spacing) == len(origin)):
            raise ConfigurationError(
                f"shape, spacing and origin lengths differ: "
                f"{len(shape)}, {len(spacing)}, {len(origin)}"
            )
        if any(n < 1 for n in shape):
            raise ConfigurationError(f"Grid shape must be positive, got {shape}")
        if any(not np.isfinite(s) or s <= 0 for s in spacing):
            raise ConfigurationError(f"Grid spacing must be positive, got {spacing}")
        # frozen dataclass: normalise through object.__setattr__
        object.__setattr__(self, 'shape', shape)
        object.__setattr__(self, 'spacing', spacing)
        object.__setattr__(self, 'origin', origin)

    @classmethod
    def from_shape(
        cls,
        shape: Sequence[int],
        spacing: Optional[Sequence[float]] = None,
        origin: Optional[Sequence[float]] = None,
    ) -> 'GridSpec':
        """Grid with unit spacing and zero origin unless given."""
        ndim = len(shape)
        if spacing is None:
            spacing = (1.0,) * ndim
        elif np.isscalar(spacing):
            spacing = (float(spacing),) * ndim
        if origin is None:
            origin = (0.0,) * ndim
        return cls(tuple(shape), tuple(spacing), tuple(origin))

    @property
    def ndim(self) -> int:
        return len(self.shape)

    @property
    def size(self) -> int:
        return int(np.prod(self.shape))

    @property
    def extent(self) -> NDArray[np.float64]:
        """Physical distance between the first and last voxel centre per axis."""
        return (np.asarray(self.shape) - 1) * np.asarray(self.spacing)

    def index_to_physical(self, index: NDArray) -> NDArray[np.float64]:
        """Map (continuous) indices of shape (..., N) to physical points."""
        index = np.asarray(index, dtype=np.float64)
        return np.asarray(self.origin) + index * np.asarray(self.spacing)

    def physical_to_index(self, points: NDArray) -> NDArray[np.float64]:
        """Map physical points of shape (..., N) to continuous indices."""
        points = np.asarray(points, dtype=np.float64)
        return (points - np.asarray(self.origin)) / np.asarray(self.spacing)

    def voxel_indices(self) -> NDArray[np.float64]:
        """Index of every voxel, shape (*shape, N)."""
        axes = [np.arange(n, dtype=np.float64) for n in self.shape]
        return np.stack(np.meshgrid(*axes, indexing='ij'), axis=-1)

    def voxel_coordinates(self) -> NDArray[np.float64]:
        """Physical position of every voxel, shape (*shape, N)."""
        return self.index_to_physical(self.voxel_indices())

    def is_equivalent(self, other: 'GridSpec', rtol: float = 1e-6) -> bool:
        """Same shape, and spacing/origin equal within tolerance."""
        if not isinstance(other, GridSpec) or self.shape != other.shape:
            return False
        scale = max(self.spacing)
        return (
            np.allclose(self.spacing, other.spacing, rtol=rtol, atol=0.0)
            and np.allclose(self.origin, other.origin, rtol=0.0, atol=rtol * scale)
        )


@dataclass
class Image:
    """
    Scalar image sampled on a grid.

    The registration core only reads images; arrays are never modified
    in place.
    """
    array: NDArray
    grid: GridSpec

    def __post_init__(self):
        self.array = np.asarray(self.array)
        if self.array.shape != self.grid.shape:
            raise GridMismatch(
                f"Array shape {self.array.shape} does not match grid shape "
                f"{self.grid.shape}"
            )

    @classmethod
    def from_array(
        cls,
        array: NDArray,
        spacing: Optional[Union[float, Sequence[float]]] = None,
        origin: Optional[Sequence[float]] = None,
    ) -> 'Image':
        array = np.asarray(array)
        return cls(array, GridSpec.from_shape(array.shape, spacing, origin))

    @property
    def ndim(self) -> int:
        return self.grid.ndim

    @property
    def shape(self) -> Tuple[int, ...]:
        return self.grid.shape


def as_image(image: Union[Image, NDArray], spacing=None, origin=None) -> Image:
    """Wrap a bare array as an Image; Images are returned unchanged."""
    if isinstance(image, Image):
        return image
    return Image.from_array(image, spacing=spacing, origin=origin)


class DeformationField:
    """
    Dense displacement field on a reference grid.

    Parameters
    ----------
    vectors : ndarray
        Displacements of shape (*grid.shape, grid.ndim) in physical units.
    grid : GridSpec
        Reference grid the field is defined on.

    Raises
    ------
    GridMismatch
        If the vector array does not match the grid.
    """

    def __init__(self, vectors: NDArray, grid: GridSpec):
        vectors = np.asarray(vectors, dtype=np.float64)
        expected = tuple(grid.shape) + (grid.ndim,)
        if vectors.shape != expected:
            raise GridMismatch(
                f"Field vectors have shape {vectors.shape}, expected {expected}"
            )
        self._vectors = vectors
        self._grid = grid

    @classmethod
    def zeros(cls, grid: GridSpec) -> 'DeformationField':
        return cls(np.zeros(tuple(grid.shape) + (grid.ndim,)), grid)

    @classmethod
    def from_voxel_units(cls, vectors: NDArray, grid: GridSpec) -> 'DeformationField':
        """Build a field from displacements expressed in voxels of ``grid``."""
        vectors = np.asarray(vectors, dtype=np.float64)
        return cls(vectors * np.asarray(grid.spacing), grid)

    @property
    def vectors(self) -> NDArray[np.float64]:
        return self._vectors

    @property
    def grid(self) -> GridSpec:
        return self._grid

    @property
    def ndim(self) -> int:
        return self._grid.ndim

    @property
    def shape(self) -> Tuple[int, ...]:
        return self._grid.shape

    def to_voxel_units(self) -> NDArray[np.float64]:
        """Displacements divided by the grid spacing."""
        return self._vectors / np.asarray(self._grid.spacing)

    def copy(self) -> 'DeformationField':
        return DeformationField(self._vectors.copy(), self._grid)

    def require_grid(self, grid: GridSpec) -> None:
        """Raise GridMismatch unless the field lives on ``grid``."""
        if not self._grid.is_equivalent(grid):
            raise GridMismatch(
                f"Field grid {self._grid} does not match reference grid {grid}"
            )

    def magnitude(self) -> NDArray[np.float64]:
        return np.linalg.norm(self._vectors, axis=-1)

    def max_displacement(self) -> float:
        return float(self.magnitude().max())

    def mean_displacement(self, mask: Optional[NDArray] = None) -> NDArray[np.float64]:
        """Mean displacement vector, optionally restricted to a boolean mask."""
        if mask is None:
            return self._vectors.reshape(-1, self.ndim).mean(axis=0)
        mask = np.asarray(mask, dtype=bool)
        if mask.shape != self.shape:
            raise GridMismatch(f"Mask shape {mask.shape} does not match {self.shape}")
        return self._vectors[mask].mean(axis=0)

    def __repr__(self) -> str:
        return (
            f"DeformationField(shape={self.shape}, spacing={self._grid.spacing}, "
            f"max={self.max_displacement():.4g})"
        )
