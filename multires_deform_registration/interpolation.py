# -*- coding: utf-8 -*-
"""
Continuous image sampling at physical points.

Sampling uses ``torch.nn.functional.grid_sample`` (bilinear in 2D,
trilinear in 3D, ``align_corners=True``) so that sampled values are
differentiable with respect to the sample positions.

Classes
-------
- LinearInterpolator: Sample an Image at arbitrary physical points
"""

from __future__ import annotations

from typing import Optional, Tuple

import numpy as np
import torch
import torch.nn.functional as F
from numpy.typing import NDArray

from .common import get_default_device
from .exceptions import ConfigurationError, OutOfBoundsSample
from .image import Image


class LinearInterpolator:
    """
    Linear interpolation of an Image at physical points.

    A point is inside the image when its continuous index lies in
    ``[0, n - 1]`` on every axis. Points outside are still sampled
    (with ``padding_mode`` padding) but flagged, so callers can decide
    how to treat them; ``value_at`` raises OutOfBoundsSample instead.

    Parameters
    ----------
    image : Image
        2D or 3D image with at least two voxels per axis.
    padding_mode : str
        'border', 'zeros' or 'reflection'. Default 'border'.
    device : torch.device, optional
        Device for computation. If None, auto-detect.
    dtype : torch.dtype
        Sampling precision. Default float32.
    """

    def __init__(
        self,
        image: Image,
        padding_mode: str = 'border',
        device: Optional[torch.device] = None,
        dtype: torch.dtype = torch.float32,
    ):
        if image.ndim not in (2, 3):
            raise ConfigurationError(
                f"Only 2D and 3D images can be sampled, got {image.ndim}D"
            )
        if any(n < 2 for n in image.shape):
            raise ConfigurationError(
                f"Every axis needs at least two voxels, got shape {image.shape}"
            )
        if padding_mode not in ('border', 'zeros', 'reflection'):
            raise ConfigurationError(f"Unknown padding mode '{padding_mode}'")

        self.grid = image.grid
        self.padding_mode = padding_mode
        self.device = get_default_device(device)
        self.dtype = dtype
        self.tolerance = 1e-6

        self._volume = torch.as_tensor(
            np.ascontiguousarray(image.array), dtype=dtype, device=self.device
        )[None, None]
        self._origin = torch.tensor(self.grid.origin, dtype=dtype, device=self.device)
        self._spacing = torch.tensor(self.grid.spacing, dtype=dtype, device=self.device)
        self._upper = torch.tensor(
            [n - 1 for n in self.grid.shape], dtype=dtype, device=self.device
        )

    @property
    def ndim(self) -> int:
        return self.grid.ndim

    def to_tensor(self, points) -> torch.Tensor:
        """Convert array-like points to a tensor on the sampling device."""
        return torch.as_tensor(points, dtype=self.dtype, device=self.device)

    def continuous_index(self, points: torch.Tensor) -> torch.Tensor:
        return (points - self._origin) / self._spacing

    def contains(self, points: torch.Tensor) -> torch.Tensor:
        """Boolean tensor of shape points.shape[:-1]; True inside the image."""
        index = self.continuous_index(points)
        inside = (index >= -self.tolerance) & (index <= self._upper + self.tolerance)
        return inside.all(dim=-1)

    def sample(self, points: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Sample the image at physical points.

        Parameters
        ----------
        points : torch.Tensor
            Physical points of shape (..., N). May require grad.

        Returns
        -------
        values : torch.Tensor
            Interpolated values of shape points.shape[:-1].
        inside : torch.Tensor
            Boolean mask of the same shape.
        """
        batch_shape = points.shape[:-1]
        flat = points.reshape(-1, self.ndim)
        n_points = flat.shape[0]

        index = self.continuous_index(flat)
        # align_corners=True maps -1 and +1 to the first and last voxel centre
        normalized = 2.0 * index / self._upper - 1.0
        # grid_sample expects coordinates ordered (x, y[, z])
        normalized = normalized.flip(-1)

        if self.ndim == 2:
            sample_grid = normalized.reshape(1, n_points, 1, 2)
        else:
            sample_grid = normalized.reshape(1, n_points, 1, 1, 3)

        values = F.grid_sample(
            self._volume,
            sample_grid,
            mode='bilinear',
            padding_mode=self.padding_mode,
            align_corners=True,
        )
        values = values.reshape(batch_shape)
        return values, self.contains(points)

    def sample_numpy(self, points: NDArray) -> Tuple[NDArray, NDArray]:
        """Convenience wrapper around ``sample`` for numpy input, no grad."""
        with torch.no_grad():
            values, inside = self.sample(self.to_tensor(points))
        return values.cpu().numpy().astype(np.float64), inside.cpu().numpy()

    def value_at(self, point) -> float:
        """
        Strictly sample a single physical point.

        Raises
        ------
        OutOfBoundsSample
            If the point lies outside the image.
        """
        point = np.asarray(point, dtype=np.float64).reshape(self.ndim)
        values, inside = self.sample_numpy(point[None])
        if not inside[0]:
            raise OutOfBoundsSample(point)
        return float(values[0])
