# -*- coding: utf-8 -*-
"""
Common utilities shared by the solvers and the scheduler.

Functions
---------
1. get_default_device: Get PyTorch device with meaningful fallback
2. normalize_image: Normalize image to [0, 1] range
3. compute_validity_mask: Voxels whose mapped position lands inside an image
4. map_chunks: Run a function over index chunks, optionally on worker threads
"""

from __future__ import annotations

from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Callable, List, Optional, TypeVar, TYPE_CHECKING

import numpy as np
import torch
from numpy.typing import NDArray

if TYPE_CHECKING:
    from .image import DeformationField, GridSpec

T = TypeVar('T')


def get_default_device(device: Optional[torch.device] = None) -> torch.device:
    """
    Get the default PyTorch device for sampling and metric evaluation.

    If no device is specified, attempts to use CUDA if available,
    then Apple MPS, otherwise falls back to CPU.

    Parameters
    ----------
    device : torch.device or str, optional
        Specific device to use. If None, auto-detect.

    Returns
    -------
    torch.device
        The device to use for computations.
    """
    if device is not None:
        return torch.device(device)

    if torch.cuda.is_available():
        if torch.cuda.device_count() > 1:
            # Use first GPU by default
            return torch.device('cuda:0')
        return torch.device('cuda')

    # Check for MPS (Apple Silicon)
    if hasattr(torch.backends, 'mps') and torch.backends.mps.is_available():
        return torch.device('mps')

    return torch.device('cpu')


def is_integer(value) -> bool:
    """True for Python and numpy integers; bools are rejected."""
    return isinstance(value, (int, np.integer)) and not isinstance(value, bool)


def normalize_image(
    image: NDArray[np.floating],
    eps: float = 1e-8,
) -> NDArray[np.float32]:
    """
    Normalize image to [0, 1] range.

    Parameters
    ----------
    image : ndarray
        Input image of any shape.
    eps : float
        Small value to prevent division by zero.

    Returns
    -------
    normalized : ndarray
        Image normalized to [0, 1] range as float32.
    """
    img = np.asarray(image, dtype=np.float32)
    img_min, img_max = img.min(), img.max()
    return (img - img_min) / (img_max - img_min + eps)


def compute_validity_mask(
    field: 'DeformationField',
    moving_grid: 'GridSpec',
    margin: float = 0.0,
) -> NDArray[np.bool_]:
    """
    Compute a validity mask for a deformation field.

    A voxel is valid when its mapped position ``x + u(x)`` lies inside
    the moving image, so the warped value came from real data rather
    than border padding. Useful as an export mask.

    Parameters
    ----------
    field : DeformationField
        Field in physical units.
    moving_grid : GridSpec
        Grid of the image the field maps into.
    margin : float
        Voxels mapped within this many moving voxels of the boundary are
        considered invalid. Default 0.

    Returns
    -------
    mask : ndarray
        Boolean mask with the field's grid shape.
    """
    mapped = field.grid.voxel_coordinates() + field.vectors
    index = moving_grid.physical_to_index(mapped)
    upper = np.asarray(moving_grid.shape, dtype=np.float64) - 1.0 - margin
    valid = (index >= margin) & (index <= upper)
    return np.all(valid, axis=-1)


def map_chunks(
    func: Callable[[int, int], T],
    n_items: int,
    chunk_size: int,
    n_workers: int = 1,
    executor: Optional[Executor] = None,
) -> List[T]:
    """
    Apply ``func(start, stop)`` to consecutive index ranges.

    Results are returned in chunk order whatever the number of workers,
    so callers can concatenate them directly. Exceptions raised by a
    chunk propagate to the caller.

    Parameters
    ----------
    func : callable
        Called with the half-open range ``[start, stop)``.
    n_items : int
        Total number of items.
    chunk_size : int
        Items per chunk.
    n_workers : int
        Worker threads. 1 runs chunks inline.
    executor : concurrent.futures.Executor, optional
        Pool to run chunks on. If None and ``n_workers > 1``, a pool is
        created for this call only.

    Returns
    -------
    results : list
        One entry per chunk.
    """
    bounds = [
        (start, min(start + chunk_size, n_items))
        for start in range(0, n_items, chunk_size)
    ]
    if n_workers <= 1 or len(bounds) <= 1:
        return [func(start, stop) for start, stop in bounds]

    if executor is not None:
        return list(executor.map(lambda b: func(*b), bounds))
    with ThreadPoolExecutor(max_workers=n_workers) as pool:
        return list(pool.map(lambda b: func(*b), bounds))
