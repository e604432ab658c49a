# -*- coding: utf-8 -*-
"""
Per-level solver interface.

A solver refines a deformation field at a single resolution. The
scheduler hands it the level images, the current field and an iteration
budget; the solver returns a new field on the same grid.

Classes
-------
- SolverStrategy: Abstract base class for per-level solvers
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import List, Optional

from .common import is_integer
from .exceptions import ConfigurationError, RegistrationCancelled
from .image import DeformationField, Image


class SolverStrategy(ABC):
    """
    Abstract base class for per-level registration solvers.

    Subclasses implement ``run`` and record one energy value per
    iteration in ``_energy_history``; callers read it through
    ``energy_history`` and ``current_energy``.
    """

    name = 'solver'

    def __init__(self, verbose: bool = False, print_every: int = 10):
        self.verbose = verbose
        self.print_every = max(1, int(print_every))
        self._energy_history: List[float] = []

    @abstractmethod
    def run(
        self,
        fixed: Image,
        moving: Image,
        initial_field: DeformationField,
        iterations: int,
        cancel_event: Optional[threading.Event] = None,
    ) -> DeformationField:
        """
        Refine ``initial_field`` for ``iterations`` iterations.

        Parameters
        ----------
        fixed : Image
            Fixed image at this level; defines the field grid.
        moving : Image
            Moving image at this level.
        initial_field : DeformationField
            Starting field on ``fixed.grid``. Not modified.
        iterations : int
            Iteration budget (0 returns an equal field).
        cancel_event : threading.Event, optional
            Checked at every iteration boundary.

        Returns
        -------
        field : DeformationField
            Refined field on ``fixed.grid``.
        """
        pass

    @property
    def energy_history(self) -> List[float]:
        """Energy recorded at each iteration of the last run."""
        return list(self._energy_history)

    @property
    def current_energy(self) -> Optional[float]:
        """Most recent energy, or None before the first iteration."""
        return self._energy_history[-1] if self._energy_history else None

    def _check_inputs(
        self,
        fixed: Image,
        moving: Image,
        initial_field: DeformationField,
        iterations: int,
    ) -> None:
        if fixed.ndim != moving.ndim:
            raise ConfigurationError(
                f"Fixed ({fixed.ndim}D) and moving ({moving.ndim}D) images differ in dimension"
            )
        if not is_integer(iterations) or iterations < 0:
            raise ConfigurationError(f"iterations must be a non-negative integer, got {iterations}")
        initial_field.require_grid(fixed.grid)

    @staticmethod
    def _check_cancelled(cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise RegistrationCancelled("Registration cancelled")

    def _report(self, iteration: int, iterations: int, energy: float) -> None:
        if not self.verbose:
            return
        if iteration == 0 or (iteration + 1) % self.print_every == 0 or iteration == iterations - 1:
            print(f"    [{self.name}] iter {iteration + 1}/{iterations}: energy = {energy:.6g}")

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"
