# -*- coding: utf-8 -*-
"""
Patch similarity metrics for force evaluation.

Every metric works on a batch of neighbourhood patches: it receives the
moving and fixed samples as tensors of shape (P, K), one row per sample
point with K neighbourhood values, and returns one differentiable value
per row. The force evaluator differentiates these values with respect
to the displacement of each row.

Classes
-------
- BaseMetric: Abstract base class for patch metrics
- MeanSquaresMetric: Mean squared difference (default, minimized)
- CorrelationMetric: Pearson correlation (maximized)
- MAEMetric: Mean absolute difference (minimized)
- MutualInformationMetric: Soft-histogram mutual information (maximized)

Usage Examples
--------------
>>> from multires_deform_registration.metrics import get_metric
>>>
>>> metric = get_metric('mean_squares')
>>> metric = get_metric('mi', num_bins=16)
>>> values = metric(moving_patches, fixed_patches)  # shape (P,)
"""

from __future__ import annotations

from abc import ABC, abstractmethod

import torch

from .exceptions import ConfigurationError


class BaseMetric(ABC):
    """
    Abstract base class for patch metrics.

    Subclasses set ``maximize`` to True when larger values mean better
    alignment. The force evaluator uses this flag to orient forces.
    """

    maximize: bool = False

    @abstractmethod
    def __call__(
        self,
        moving: torch.Tensor,
        fixed: torch.Tensor,
    ) -> torch.Tensor:
        """
        Compute one similarity value per patch.

        Parameters
        ----------
        moving : torch.Tensor
            Moving image samples, shape (P, K).
        fixed : torch.Tensor
            Fixed image samples, shape (P, K).

        Returns
        -------
        values : torch.Tensor
            Metric value per patch, shape (P,).
        """
        pass

    @property
    def name(self) -> str:
        """Return the name of the metric."""
        return self.__class__.__name__


class MeanSquaresMetric(BaseMetric):
    """
    Mean squared intensity difference over each patch.

    The classic demons metric. With a radius-0 neighbourhood its negative
    gradient is ``2 (f - m) grad(m)``, the familiar demons force.
    """

    maximize = False

    def __call__(self, moving: torch.Tensor, fixed: torch.Tensor) -> torch.Tensor:
        return ((moving - fixed) ** 2).mean(dim=-1)


class CorrelationMetric(BaseMetric):
    """
    Pearson correlation coefficient per patch.

    Parameters
    ----------
    eps : float
        Small value for numerical stability. Default 1e-8.

    Notes
    -----
    - Returns 1 for perfectly correlated patches
    - Returns 0 for constant or single-sample patches
    """

    maximize = True

    def __init__(self, eps: float = 1e-8):
        self.eps = eps

    def __call__(self, moving: torch.Tensor, fixed: torch.Tensor) -> torch.Tensor:
        moving_centered = moving - moving.mean(dim=-1, keepdim=True)
        fixed_centered = fixed - fixed.mean(dim=-1, keepdim=True)

        return (moving_centered * fixed_centered).sum(dim=-1) / (
            torch.sqrt(
                (moving_centered ** 2).sum(dim=-1) * (fixed_centered ** 2).sum(dim=-1)
            ) + self.eps
        )


class MAEMetric(BaseMetric):
    """
    Mean absolute intensity difference per patch.

    More robust to outliers than mean squares, but its gradient does not
    shrink near alignment.
    """

    maximize = False

    def __call__(self, moving: torch.Tensor, fixed: torch.Tensor) -> torch.Tensor:
        return torch.abs(moving - fixed).mean(dim=-1)


class MutualInformationMetric(BaseMetric):
    """
    Mutual Information per patch with soft histogram binning.

    Each patch is normalized to [0, 1] independently and binned with
    linear weights into a joint histogram, which keeps the value
    differentiable. Needs reasonably large patches (radius >= 2) to be
    meaningful.

    Parameters
    ----------
    num_bins : int
        Number of histogram bins. Default 16.
    normalize : bool
        If True, return Normalized MI (NMI). Default False.
    eps : float
        Small value for numerical stability. Default 1e-8.
    """

    maximize = True

    def __init__(
        self,
        num_bins: int = 16,
        normalize: bool = False,
        eps: float = 1e-8,
    ):
        if num_bins < 2:
            raise ConfigurationError(f"num_bins must be >= 2, got {num_bins}")
        self.num_bins = num_bins
        self.normalize = normalize
        self.eps = eps

    def _to_unit(self, values: torch.Tensor) -> torch.Tensor:
        low = values.min(dim=-1, keepdim=True).values
        high = values.max(dim=-1, keepdim=True).values
        return (values - low) / (high - low + self.eps)

    def __call__(self, moving: torch.Tensor, fixed: torch.Tensor) -> torch.Tensor:
        n_patches, n_samples = moving.shape
        bins = self.num_bins

        m_scaled = self._to_unit(moving) * (bins - 1)
        f_scaled = self._to_unit(fixed) * (bins - 1)

        m_lower = torch.floor(m_scaled).long().clamp(0, bins - 2)
        f_lower = torch.floor(f_scaled).long().clamp(0, bins - 2)

        m_frac = m_scaled - m_lower.to(moving.dtype)
        f_frac = f_scaled - f_lower.to(fixed.dtype)

        joint = torch.zeros(n_patches, bins * bins, dtype=moving.dtype, device=moving.device)

        # Four contributions per sample (bilinear)
        for dm in (0, 1):
            for df in (0, 1):
                m_weight = (1 - m_frac) if dm == 0 else m_frac
                f_weight = (1 - f_frac) if df == 0 else f_frac
                flat_idx = (m_lower + dm) * bins + (f_lower + df)
                joint = joint.scatter_add(1, flat_idx, m_weight * f_weight)

        joint = joint.view(n_patches, bins, bins) / float(n_samples)

        p_m = joint.sum(dim=2)
        p_f = joint.sum(dim=1)

        h_m = -torch.sum(p_m * torch.log(p_m + self.eps), dim=-1)
        h_f = -torch.sum(p_f * torch.log(p_f + self.eps), dim=-1)
        h_mf = -torch.sum(joint * torch.log(joint + self.eps), dim=(-2, -1))

        mi = h_m + h_f - h_mf

        if self.normalize:
            mi = 2 * mi / (h_m + h_f + self.eps)

        return mi


def get_metric(name: str, **kwargs) -> BaseMetric:
    """
    Get a patch metric by name.

    Parameters
    ----------
    name : str
        Metric name. Available options:
        - 'mean_squares', 'mse', 'ssd', 'demons': MeanSquaresMetric
        - 'correlation', 'corr', 'ncc', 'pearson': CorrelationMetric
        - 'mae', 'l1', 'mean_absolute_error': MAEMetric
        - 'mi', 'mutual_information': MutualInformationMetric
    **kwargs
        Additional arguments passed to the metric constructor.

    Returns
    -------
    metric : BaseMetric
        The metric instance.

    Raises
    ------
    ConfigurationError
        If the metric name is not recognized.
    """
    name = name.lower()

    if name in ('mean_squares', 'mse', 'ssd', 'demons'):
        return MeanSquaresMetric(**kwargs)
    elif name in ('correlation', 'corr', 'ncc', 'pearson'):
        return CorrelationMetric(**kwargs)
    elif name in ('mae', 'l1', 'mean_absolute_error'):
        return MAEMetric(**kwargs)
    elif name in ('mi', 'mutual_information'):
        return MutualInformationMetric(**kwargs)
    else:
        raise ConfigurationError(
            f"Unknown metric: '{name}'. "
            f"Available: mean_squares, correlation, mae, mi"
        )
