# -*- coding: utf-8 -*-
"""
Solver registry.

Solvers are registered explicitly by ``build_default_registry``; nothing
registers itself at import time. ``get_solver`` creates a solver from
the module default registry.

Built-in names
--------------
- 'demons': VoxelPDESolver with DemonsUpdateRule
- 'symmetric_forces': VoxelPDESolver with SymmetricForcesUpdateRule
- 'mesh' (alias 'fem'): MeshLoadSolver
"""

from __future__ import annotations

from typing import Callable, Dict, Iterable, List

from .exceptions import ConfigurationError
from .mesh_solver import MeshLoadSolver
from .pde_solver import DemonsUpdateRule, SymmetricForcesUpdateRule, VoxelPDESolver
from .solver_base import SolverStrategy

SolverFactory = Callable[..., SolverStrategy]


class SolverRegistry:
    """
    Mapping from solver names to factories.

    Examples
    --------
    >>> registry = SolverRegistry()
    >>> registry.register('demons', make_demons, aliases=('thirion',))
    >>> solver = registry.create('thirion', field_sigma=1.5)
    """

    def __init__(self):
        self._factories: Dict[str, SolverFactory] = {}
        self._aliases: Dict[str, str] = {}

    def register(self, name: str, factory: SolverFactory, aliases: Iterable[str] = ()) -> None:
        """
        Register a factory under a name and optional aliases.

        Raises
        ------
        ConfigurationError
            If the name or an alias is already taken.
        """
        keys = [name.lower()] + [a.lower() for a in aliases]
        for key in keys:
            if key in self._aliases:
                raise ConfigurationError(f"Solver name '{key}' is already registered")
        self._factories[keys[0]] = factory
        for key in keys:
            self._aliases[key] = keys[0]

    def create(self, name: str, **kwargs) -> SolverStrategy:
        """Instantiate the solver registered as ``name``."""
        key = name.lower()
        if key not in self._aliases:
            raise ConfigurationError(
                f"Unknown solver: '{name}'. Available: {', '.join(self.names())}"
            )
        return self._factories[self._aliases[key]](**kwargs)

    def canonical_name(self, name: str) -> str:
        key = name.lower()
        if key not in self._aliases:
            raise ConfigurationError(f"Unknown solver: '{name}'")
        return self._aliases[key]

    def names(self) -> List[str]:
        return sorted(self._factories)

    def __contains__(self, name: str) -> bool:
        return name.lower() in self._aliases


def _demons(**kwargs) -> VoxelPDESolver:
    return VoxelPDESolver(update_rule=DemonsUpdateRule(), **kwargs)


def _symmetric_forces(**kwargs) -> VoxelPDESolver:
    return VoxelPDESolver(update_rule=SymmetricForcesUpdateRule(), **kwargs)


def build_default_registry() -> SolverRegistry:
    """Registry with the built-in solvers."""
    registry = SolverRegistry()
    registry.register('demons', _demons, aliases=('thirion',))
    registry.register('symmetric_forces', _symmetric_forces, aliases=('symmetric',))
    registry.register('mesh', MeshLoadSolver, aliases=('fem', 'mesh_load'))
    return registry


DEFAULT_REGISTRY = build_default_registry()


def get_solver(name: str, **kwargs) -> SolverStrategy:
    """
    Create a built-in solver by name.

    Parameters
    ----------
    name : str
        'demons', 'symmetric_forces' or 'mesh' (aliases accepted).
    **kwargs
        Passed to the solver constructor.

    Raises
    ------
    ConfigurationError
        If the name is not recognized.
    """
    return DEFAULT_REGISTRY.create(name, **kwargs)
