# -*- coding: utf-8 -*-
"""
Image-metric forces at sample points.

The evaluator compares a neighbourhood patch of the fixed image around a
sample point with the moving image sampled at the same patch shifted by
a candidate displacement. The metric gradient with respect to that
displacement (from torch autograd) is returned as a force that always
points toward increasing similarity.

Classes
-------
- ForceSample: Value, force and bounds flag for one point
- ForceSampleBatch: Vectorized ForceSample for many points
- MetricForceEvaluator: Evaluate forces for a metric over a neighbourhood
"""

from __future__ import annotations

import itertools
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple, Union

import numpy as np
import torch
from numpy.typing import NDArray

from .common import is_integer, map_chunks
from .exceptions import ConfigurationError
from .image import Image
from .interpolation import LinearInterpolator
from .metrics import BaseMetric


@dataclass(frozen=True)
class ForceSample:
    """Result of a single force evaluation."""
    value: float
    force: NDArray[np.float64]
    in_bounds: bool


@dataclass
class ForceSampleBatch:
    """
    Force evaluation results for P points.

    Attributes
    ----------
    values : ndarray
        Metric value per point, shape (P,). Zero where out of bounds.
    forces : ndarray
        Force per point, shape (P, N). Zero where out of bounds.
    in_bounds : ndarray
        Boolean flag per point, shape (P,).
    """
    values: NDArray[np.float64]
    forces: NDArray[np.float64]
    in_bounds: NDArray[np.bool_]

    @classmethod
    def empty(cls, n_points: int, ndim: int) -> 'ForceSampleBatch':
        return cls(
            np.zeros(n_points),
            np.zeros((n_points, ndim)),
            np.zeros(n_points, dtype=bool),
        )

    @classmethod
    def concatenate(cls, batches: Sequence['ForceSampleBatch']) -> 'ForceSampleBatch':
        return cls(
            np.concatenate([b.values for b in batches]),
            np.concatenate([b.forces for b in batches]),
            np.concatenate([b.in_bounds for b in batches]),
        )

    def __len__(self) -> int:
        return len(self.values)

    def __getitem__(self, i: int) -> ForceSample:
        return ForceSample(float(self.values[i]), self.forces[i].copy(), bool(self.in_bounds[i]))

    @property
    def n_in_bounds(self) -> int:
        return int(self.in_bounds.sum())

    @property
    def total_value(self) -> float:
        """Sum of the metric over in-bounds points."""
        return float(self.values[self.in_bounds].sum())

    @property
    def mean_value(self) -> float:
        """Mean of the metric over in-bounds points, 0 if there are none."""
        n = self.n_in_bounds
        return self.total_value / n if n else 0.0


def _normalize_radius(radius: Union[int, Sequence[int]], ndim: int) -> Tuple[int, ...]:
    if radius is None:
        raise ConfigurationError("A neighbourhood radius is required")
    if np.isscalar(radius):
        radius = (radius,) * ndim
    radius = tuple(radius)
    if len(radius) != ndim:
        raise ConfigurationError(
            f"Radius has {len(radius)} entries for a {ndim}D image"
        )
    for r in radius:
        if not is_integer(r) or r < 0:
            raise ConfigurationError(f"Radius entries must be non-negative integers, got {radius}")
    return tuple(int(r) for r in radius)


class MetricForceEvaluator:
    """
    Evaluate metric values and forces at fixed-space sample points.

    The evaluator keeps no reference to any deformation field: current
    displacements are passed in with every call.

    Parameters
    ----------
    fixed : Image
        Fixed image.
    moving : Image
        Moving image; same dimensionality as ``fixed``.
    metric : BaseMetric
        Patch metric.
    radius : int or sequence of int
        Neighbourhood radius in fixed-image voxels. 0 uses the point alone.
    maximize : bool, optional
        Whether larger metric values mean better alignment. If None, use
        ``metric.maximize``.
    padding_mode : str
        Padding used for neighbourhood samples beyond the image border.
    chunk_size : int
        Maximum points per evaluation chunk. Default 65536.
    n_workers : int
        Worker threads for chunk evaluation. Default 1.
    device : torch.device, optional
        Device for computation. If None, auto-detect.
    """

    def __init__(
        self,
        fixed: Image,
        moving: Image,
        metric: BaseMetric,
        radius: Union[int, Sequence[int]],
        maximize: Optional[bool] = None,
        padding_mode: str = 'border',
        chunk_size: int = 65536,
        n_workers: int = 1,
        device: Optional[torch.device] = None,
    ):
        if fixed.ndim != moving.ndim:
            raise ConfigurationError(
                f"Fixed ({fixed.ndim}D) and moving ({moving.ndim}D) images differ in dimension"
            )
        if not isinstance(metric, BaseMetric):
            raise ConfigurationError(f"Expected a BaseMetric, got {type(metric).__name__}")
        if chunk_size < 1 or n_workers < 1:
            raise ConfigurationError("chunk_size and n_workers must be positive")

        self.ndim = fixed.ndim
        self.metric = metric
        self.radius = _normalize_radius(radius, self.ndim)
        self.maximize = metric.maximize if maximize is None else bool(maximize)
        self.chunk_size = int(chunk_size)
        self.n_workers = int(n_workers)
        self._executor: Optional[ThreadPoolExecutor] = None

        self._fixed = LinearInterpolator(fixed, padding_mode=padding_mode, device=device)
        self._moving = LinearInterpolator(moving, padding_mode=padding_mode, device=device)
        self.device = self._moving.device

        index_offsets = np.array(
            list(itertools.product(*[range(-r, r + 1) for r in self.radius])),
            dtype=np.float64,
        )
        self._offsets = self._fixed.to_tensor(index_offsets * np.asarray(fixed.grid.spacing))

    @property
    def neighborhood_size(self) -> int:
        return int(self._offsets.shape[0])

    @property
    def moving_interpolator(self) -> LinearInterpolator:
        return self._moving

    def __enter__(self) -> 'MetricForceEvaluator':
        """Hold one worker pool for every batch evaluated inside the block."""
        if self.n_workers > 1 and self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self.n_workers)
        return self

    def __exit__(self, *exc_info) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def evaluate(self, point, displacement) -> ForceSample:
        """
        Evaluate value and force at one point.

        Parameters
        ----------
        point : array-like
            Physical sample point in fixed space, shape (N,).
        displacement : array-like
            Current displacement estimate at the point, shape (N,).

        Returns
        -------
        sample : ForceSample
            Zero force with ``in_bounds=False`` when ``point + displacement``
            lies outside the moving image.
        """
        point = np.asarray(point, dtype=np.float64).reshape(self.ndim)
        displacement = np.asarray(displacement, dtype=np.float64).reshape(self.ndim)
        return self._evaluate_chunk(point[None], displacement[None])[0]

    def evaluate_batch(self, points: NDArray, displacements: NDArray) -> ForceSampleBatch:
        """
        Evaluate values and forces at many points.

        Parameters
        ----------
        points : ndarray
            Physical sample points, shape (P, N) or (..., N).
        displacements : ndarray
            Displacement per point, same shape as ``points``.

        Returns
        -------
        batch : ForceSampleBatch
            Results in the order of ``points``.
        """
        points = np.asarray(points, dtype=np.float64).reshape(-1, self.ndim)
        displacements = np.asarray(displacements, dtype=np.float64).reshape(-1, self.ndim)
        if points.shape != displacements.shape:
            raise ConfigurationError(
                f"points {points.shape} and displacements {displacements.shape} differ"
            )
        n_points = len(points)
        if n_points == 0:
            return ForceSampleBatch.empty(0, self.ndim)

        chunks = map_chunks(
            lambda start, stop: self._evaluate_chunk(points[start:stop], displacements[start:stop]),
            n_points,
            self.chunk_size,
            self.n_workers,
            executor=self._executor,
        )
        return ForceSampleBatch.concatenate(chunks)

    def metric_value(self, point, displacement) -> float:
        """Metric value only; 0 when out of bounds."""
        return self.evaluate(point, displacement).value

    def sample_moving(self, points: NDArray) -> Tuple[NDArray, NDArray]:
        """Moving image intensities and inside flags at physical points (P, N)."""
        points = np.asarray(points, dtype=np.float64).reshape(-1, self.ndim)
        chunks = map_chunks(
            lambda start, stop: self._moving.sample_numpy(points[start:stop]),
            len(points),
            self.chunk_size,
            self.n_workers,
            executor=self._executor,
        )
        if not chunks:
            return np.zeros(0), np.zeros(0, dtype=bool)
        return (
            np.concatenate([c[0] for c in chunks]),
            np.concatenate([c[1] for c in chunks]),
        )

    def _evaluate_chunk(self, points: NDArray, displacements: NDArray) -> ForceSampleBatch:
        result = ForceSampleBatch.empty(len(points), self.ndim)

        centers = self._moving.to_tensor(points)
        shifts = self._moving.to_tensor(displacements)
        inside = self._moving.contains(centers + shifts)
        in_bounds = inside.cpu().numpy()
        if not in_bounds.any():
            return result

        centers = centers[inside]
        with torch.enable_grad():
            shift = shifts[inside].detach().clone().requires_grad_(True)

            with torch.no_grad():
                fixed_patch, _ = self._fixed.sample(
                    centers[:, None, :] + self._offsets[None]
                )
            moving_patch, _ = self._moving.sample(
                centers[:, None, :] + shift[:, None, :] + self._offsets[None]
            )
            values = self.metric(moving_patch, fixed_patch)
            (gradient,) = torch.autograd.grad(values.sum(), shift, allow_unused=True)

        if gradient is None:
            gradient = torch.zeros_like(shift)
        force = gradient if self.maximize else -gradient

        result.values[in_bounds] = values.detach().cpu().numpy()
        result.forces[in_bounds] = force.detach().cpu().numpy()
        result.in_bounds[:] = in_bounds
        return result
