# -*- coding: utf-8 -*-
"""
Registration configuration.

Everything the scheduler and solvers need is collected in one dataclass
and validated before any level runs.

Functions/Classes
-----------------
- RegistrationConfig: Scheduler and solver settings
- check_schedule: Validate a level count and its iteration budgets
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np

from .common import is_integer
from .exceptions import ConfigurationError
from .metrics import get_metric
from .solver_base import SolverStrategy
from .solvers import DEFAULT_REGISTRY, SolverRegistry

_PDE_SOLVERS = ('demons', 'symmetric_forces')
_MESH_SOLVERS = ('mesh',)


def check_schedule(number_of_levels, iterations_per_level) -> List[int]:
    """
    Validate a level count and its per-level iteration budgets.

    Returns
    -------
    iterations : list of int
        The budgets as plain ints, coarsest level first.

    Raises
    ------
    ConfigurationError
        If the level count is not an integer >= 1, or the budgets are not
        a sequence of ``number_of_levels`` non-negative integers.
    """
    if not is_integer(number_of_levels) or number_of_levels < 1:
        raise ConfigurationError(
            f"number_of_levels must be an integer >= 1, got {number_of_levels!r}"
        )
    if isinstance(iterations_per_level, np.ndarray):
        iterations_per_level = iterations_per_level.tolist()
    if isinstance(iterations_per_level, (str, bytes)) or not isinstance(iterations_per_level, Sequence):
        raise ConfigurationError(
            f"iterations_per_level must be a sequence of integers, got {iterations_per_level!r}"
        )
    if len(iterations_per_level) != number_of_levels:
        raise ConfigurationError(
            f"iterations_per_level has {len(iterations_per_level)} entries "
            f"for {number_of_levels} levels"
        )
    for n in iterations_per_level:
        if not is_integer(n) or n < 0:
            raise ConfigurationError(
                f"iterations_per_level must hold non-negative integers, got {list(iterations_per_level)!r}"
            )
    return [int(n) for n in iterations_per_level]


@dataclass
class RegistrationConfig:
    """
    Settings for a multi-resolution registration.

    Attributes
    ----------
    number_of_levels : int
        Pyramid levels, >= 1.
    iterations_per_level : list of int
        Iteration budget per level, coarsest first. Length must equal
        ``number_of_levels``.
    solver : str
        Registry name: 'demons', 'symmetric_forces' or 'mesh'.
    metric : str
        Metric name for ``get_metric``.
    metric_kwargs : dict
        Extra metric constructor arguments (e.g. ``num_bins``).
    metric_radius : int or sequence of int
        Neighbourhood radius in voxels.
    maximize : bool, optional
        Override the metric's maximize flag.
    field_sigma, update_sigma : float
        Demons regularization (voxels).
    element_size, young_modulus, poisson_ratio, density, load_scale,
    n_gauss, max_increment, energy_tolerance
        Mesh solver settings, see MeshLoadSolver.
    chunk_size, n_workers : int
        Force evaluation chunking and worker threads.
    device : str, optional
        Torch device name. If None, auto-detect.
    """
    number_of_levels: int = 3
    iterations_per_level: List[int] = field(default_factory=lambda: [50, 30, 20])
    solver: str = 'demons'
    metric: str = 'mean_squares'
    metric_kwargs: Dict[str, Any] = field(default_factory=dict)
    metric_radius: Union[int, Sequence[int]] = 0
    maximize: Optional[bool] = None
    field_sigma: float = 1.0
    update_sigma: float = 0.0
    element_size: Union[int, Sequence[int]] = 4
    young_modulus: float = 1.0
    poisson_ratio: float = 0.3
    density: float = 1.0
    load_scale: float = 1.0
    n_gauss: int = 2
    max_increment: Optional[float] = None
    energy_tolerance: Optional[float] = None
    chunk_size: int = 65536
    n_workers: int = 1
    device: Optional[str] = None

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> 'RegistrationConfig':
        """Build a config from a plain dict; unknown keys are rejected."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {', '.join(unknown)}")
        config = cls(**values)
        config.validate()
        return config

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def validate(self, registry: Optional[SolverRegistry] = None) -> None:
        """
        Check every setting. Iteration budgets are stored back as a list of ints.

        Raises
        ------
        ConfigurationError
            On the first invalid setting.
        """
        registry = registry if registry is not None else DEFAULT_REGISTRY

        self.iterations_per_level = check_schedule(self.number_of_levels, self.iterations_per_level)
        if self.solver not in registry:
            raise ConfigurationError(
                f"Unknown solver '{self.solver}'. Available: {', '.join(registry.names())}"
            )
        try:
            get_metric(self.metric, **self.metric_kwargs)
        except TypeError as exc:
            raise ConfigurationError(f"Invalid metric_kwargs for '{self.metric}': {exc}") from exc
        if self.field_sigma < 0 or self.update_sigma < 0:
            raise ConfigurationError("field_sigma and update_sigma must be non-negative")
        if self.young_modulus <= 0:
            raise ConfigurationError(f"young_modulus must be positive, got {self.young_modulus}")
        if not 0.0 <= self.poisson_ratio < 0.5:
            raise ConfigurationError(f"poisson_ratio must be in [0, 0.5), got {self.poisson_ratio}")
        if self.density <= 0:
            raise ConfigurationError(f"density must be positive, got {self.density}")
        if self.n_gauss not in (1, 2, 3):
            raise ConfigurationError(f"n_gauss must be 1, 2 or 3, got {self.n_gauss}")
        if self.max_increment is not None and self.max_increment <= 0:
            raise ConfigurationError(f"max_increment must be positive, got {self.max_increment}")
        if self.chunk_size < 1 or self.n_workers < 1:
            raise ConfigurationError("chunk_size and n_workers must be positive")

    def solver_kwargs(self, registry: Optional[SolverRegistry] = None) -> Dict[str, Any]:
        """Constructor arguments relevant to the configured solver."""
        registry = registry if registry is not None else DEFAULT_REGISTRY
        kwargs: Dict[str, Any] = dict(
            metric=get_metric(self.metric, **self.metric_kwargs),
            metric_radius=self.metric_radius,
            maximize=self.maximize,
            chunk_size=self.chunk_size,
            n_workers=self.n_workers,
            device=self.device,
        )
        name = registry.canonical_name(self.solver)
        if name in _PDE_SOLVERS:
            kwargs.update(field_sigma=self.field_sigma, update_sigma=self.update_sigma)
        elif name in _MESH_SOLVERS:
            kwargs.update(
                element_size=self.element_size,
                young_modulus=self.young_modulus,
                poisson_ratio=self.poisson_ratio,
                density=self.density,
                load_scale=self.load_scale,
                n_gauss=self.n_gauss,
                max_increment=self.max_increment,
                energy_tolerance=self.energy_tolerance,
            )
        return kwargs

    def build_solver(
        self,
        registry: Optional[SolverRegistry] = None,
        verbose: bool = False,
    ) -> SolverStrategy:
        """Validate and create the configured solver."""
        self.validate(registry)
        registry = registry if registry is not None else DEFAULT_REGISTRY
        return registry.create(self.solver, verbose=verbose, **self.solver_kwargs(registry))
