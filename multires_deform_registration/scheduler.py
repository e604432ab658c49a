# -*- coding: utf-8 -*-
"""
Multi-resolution (coarse-to-fine) registration.

The scheduler walks an image pyramid from the coarsest to the finest
level. A zero field is created on the coarsest grid, refined there by the
configured solver, expanded onto the next grid and refined again, until
the finest level produces the final field.

Functions/Classes
-----------------
- MultiResolutionRegistration: Level loop around a SolverStrategy
- pyramid_register: One-call registration returning (field, info)
"""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from numpy.typing import NDArray

from .common import compute_validity_mask, is_integer, normalize_image
from .config import RegistrationConfig, check_schedule
from .exceptions import (
    ConfigurationError,
    RegistrationCancelled,
    ResourceUnavailable,
)
from .image import DeformationField, Image, as_image
from .pde_solver import VoxelPDESolver
from .pyramid import ImagePyramid
from .quality import detect_folds
from .resampling import FieldResampler
from .solver_base import SolverStrategy
from .warping import warp_image

PyramidFactory = Callable[[Image, int], Any]
LevelCallback = Callable[[int, DeformationField], Optional[DeformationField]]


class MultiResolutionRegistration:
    """
    Coarse-to-fine registration driver.

    Parameters
    ----------
    solver : SolverStrategy, optional
        Per-level solver. Default: demons VoxelPDESolver().
    pyramid_factory : callable, optional
        ``pyramid_factory(image, number_of_levels)`` returning an object
        with ``get_level(level) -> Image``. Default ImagePyramid.
    resampler : FieldResampler, optional
        Moves the field between levels. Default FieldResampler().
    level_callback : callable, optional
        ``level_callback(level, field)`` called after every level except
        the last, before expansion. Returning a DeformationField on the
        same grid replaces the current field; returning None keeps it.
    verbose : bool
        Print progress per level. Default False.

    Examples
    --------
    >>> registration = MultiResolutionRegistration(get_solver('demons'))
    >>> field = registration.run(fixed, moving, 3, [40, 20, 10])
    >>> registration.level_info[-1]['max_displacement']
    """

    def __init__(
        self,
        solver: Optional[SolverStrategy] = None,
        pyramid_factory: Optional[PyramidFactory] = None,
        resampler: Optional[FieldResampler] = None,
        level_callback: Optional[LevelCallback] = None,
        verbose: bool = False,
    ):
        self.solver = solver if solver is not None else VoxelPDESolver()
        self.pyramid_factory = pyramid_factory if pyramid_factory is not None else ImagePyramid
        self.resampler = resampler if resampler is not None else FieldResampler()
        self.level_callback = level_callback
        self.verbose = verbose

        self._cancel_event = threading.Event()
        self._lock = threading.Lock()
        self._current_level: Optional[int] = None
        self._level_info: List[Dict[str, Any]] = []

    @property
    def solver(self) -> SolverStrategy:
        return self._solver

    @solver.setter
    def solver(self, solver: SolverStrategy) -> None:
        if not isinstance(solver, SolverStrategy):
            raise ConfigurationError(
                f"solver must be a SolverStrategy, got {type(solver).__name__}"
            )
        self._solver = solver

    @property
    def current_level(self) -> Optional[int]:
        """Index of the level being processed, None before the first run."""
        with self._lock:
            return self._current_level

    @property
    def level_info(self) -> List[Dict[str, Any]]:
        """Per-level statistics of the last run."""
        return list(self._level_info)

    def cancel(self) -> None:
        """Request cancellation at the next level or iteration boundary."""
        self._cancel_event.set()

    def _set_level(self, level: int) -> None:
        with self._lock:
            self._current_level = level

    def _check_configuration(
        self,
        fixed: Image,
        moving: Image,
        number_of_levels: int,
        iterations_per_level: Sequence[int],
        initial_field: Optional[DeformationField],
    ) -> List[int]:
        iterations = check_schedule(number_of_levels, iterations_per_level)
        if fixed.ndim != moving.ndim:
            raise ConfigurationError(
                f"Fixed ({fixed.ndim}D) and moving ({moving.ndim}D) images differ in dimension"
            )
        if fixed.ndim not in (2, 3):
            raise ConfigurationError(f"Only 2D and 3D images are supported, got {fixed.ndim}D")
        if initial_field is not None:
            raise ConfigurationError("Initial deformation fields are not supported")
        return iterations

    def _build_pyramid(self, image: Image, number_of_levels: int, which: str):
        try:
            pyramid = self.pyramid_factory(image, number_of_levels)
        except (ConfigurationError, ResourceUnavailable):
            raise
        except Exception as exc:
            raise ResourceUnavailable(f"Could not build the {which} image pyramid: {exc}") from exc
        if pyramid is None:
            raise ResourceUnavailable(f"The {which} image pyramid factory returned None")
        return pyramid

    @staticmethod
    def _request_level(pyramid, level: int, ndim: int, which: str) -> Image:
        try:
            image = pyramid.get_level(level)
        except ResourceUnavailable:
            raise
        except Exception as exc:
            raise ResourceUnavailable(
                f"The {which} image pyramid could not supply level {level}: {exc}"
            ) from exc
        if not isinstance(image, Image) or image.ndim != ndim:
            raise ResourceUnavailable(
                f"The {which} image pyramid returned an invalid image for level {level}"
            )
        return image

    def _check_cancelled(self) -> None:
        if self._cancel_event.is_set():
            raise RegistrationCancelled("Registration cancelled")

    def run(
        self,
        fixed: Union[Image, NDArray],
        moving: Union[Image, NDArray],
        number_of_levels: int,
        iterations_per_level: Sequence[int],
        initial_field: Optional[DeformationField] = None,
    ) -> DeformationField:
        """
        Register ``moving`` onto ``fixed``.

        Parameters
        ----------
        fixed, moving : Image or ndarray
            Images of the same dimensionality (2D or 3D). Bare arrays get
            unit spacing and zero origin.
        number_of_levels : int
            Pyramid levels, >= 1.
        iterations_per_level : sequence of int
            Iteration budget per level, coarsest first.
        initial_field : DeformationField, optional
            Not supported; must be None.

        Returns
        -------
        field : DeformationField
            Final field on the finest fixed grid, in physical units.

        Raises
        ------
        ConfigurationError
            Invalid setup, raised before any level runs.
        ResourceUnavailable
            A pyramid could not supply a level.
        NumericalInstability
            The solver diverged.
        RegistrationCancelled
            ``cancel()`` was called.
        """
        fixed = as_image(fixed)
        moving = as_image(moving)
        iterations = self._check_configuration(
            fixed, moving, number_of_levels, iterations_per_level, initial_field
        )

        self._cancel_event.clear()
        self._level_info = []
        ndim = fixed.ndim

        fixed_pyramid = self._build_pyramid(fixed, number_of_levels, 'fixed')
        moving_pyramid = self._build_pyramid(moving, number_of_levels, 'moving')

        field: Optional[DeformationField] = None
        start_total = time.time()

        for level in range(number_of_levels):
            self._check_cancelled()
            self._set_level(level)

            fixed_level = self._request_level(fixed_pyramid, level, ndim, 'fixed')
            moving_level = self._request_level(moving_pyramid, level, ndim, 'moving')

            if field is None:
                field = DeformationField.zeros(fixed_level.grid)
            else:
                field.require_grid(fixed_level.grid)

            if self.verbose:
                spacing = tuple(round(s, 4) for s in fixed_level.grid.spacing)
                print(
                    f"\n--- Level {level + 1}/{number_of_levels} "
                    f"(shape {fixed_level.shape}, spacing {spacing}) ---"
                )

            start = time.time()
            field = self.solver.run(
                fixed_level,
                moving_level,
                field,
                iterations[level],
                cancel_event=self._cancel_event,
            )
            field.require_grid(fixed_level.grid)

            self._level_info.append({
                'level': level,
                'shape': fixed_level.shape,
                'spacing': fixed_level.grid.spacing,
                'iterations': iterations[level],
                'energy': self.solver.current_energy,
                'max_displacement': field.max_displacement(),
                'time': time.time() - start,
            })
            if self.verbose:
                energy = self.solver.current_energy
                energy_text = 'n/a' if energy is None else f"{energy:.6g}"
                print(
                    f"  Level {level + 1}: energy {energy_text}, "
                    f"max displacement {field.max_displacement():.3f}, "
                    f"{self._level_info[-1]['time']:.2f}s"
                )

            if level == number_of_levels - 1:
                break

            if self.level_callback is not None:
                replacement = self.level_callback(level, field)
                if replacement is not None:
                    replacement.require_grid(field.grid)
                    field = replacement

            next_grid = self._request_level(fixed_pyramid, level + 1, ndim, 'fixed').grid
            field = self.resampler.expand(field, next_grid)

        if self.verbose:
            print(f"\nRegistration finished in {time.time() - start_total:.2f}s")

        return field


def _default_iterations(number_of_levels: int) -> List[int]:
    schedule = [100, 50, 25]
    if number_of_levels <= len(schedule):
        return schedule[-number_of_levels:]
    return [schedule[0]] * (number_of_levels - len(schedule)) + schedule


def pyramid_register(
    moving: Union[Image, NDArray],
    fixed: Union[Image, NDArray],
    number_of_levels: int = 3,
    iterations_per_level: Optional[Sequence[int]] = None,
    solver: str = 'demons',
    spacing: Optional[Union[float, Sequence[float]]] = None,
    normalize: bool = True,
    check_folds: bool = True,
    verbose: bool = True,
    **options,
) -> Tuple[DeformationField, Dict[str, Any]]:
    """
    Multi-resolution deformable registration in one call.

    Parameters
    ----------
    moving : Image or ndarray
        Moving image to be registered.
    fixed : Image or ndarray
        Fixed target image.
    number_of_levels : int
        Number of pyramid levels. Default 3.
    iterations_per_level : sequence of int, optional
        Iterations per level, coarsest first. Default [100, 50, 25]
        (trimmed or padded to ``number_of_levels``).
    solver : str
        'demons', 'symmetric_forces' or 'mesh'. Default 'demons'.
    spacing : float or sequence, optional
        Voxel spacing applied to bare arrays. Default 1.
    normalize : bool
        Normalize both images to [0, 1] first. Default True.
    check_folds : bool
        Warn if the final field folds. Default True.
    verbose : bool
        Print progress. Default True.
    **options
        Any other RegistrationConfig field (metric, metric_radius,
        field_sigma, element_size, load_scale, ...).

    Returns
    -------
    field : DeformationField
        Final field on the fixed grid, physical units.
    info : dict
        - 'config': the RegistrationConfig used
        - 'level_info': per-level statistics
        - 'jacobian_stats': JacobianStats of the final field
        - 'valid_mask': voxels mapped inside the moving image
        - 'warped': moving image warped onto the fixed grid

    Examples
    --------
    >>> field, info = pyramid_register(moving, fixed, number_of_levels=3)
    >>> warped = info['warped']
    """
    if iterations_per_level is None and is_integer(number_of_levels) and number_of_levels >= 1:
        iterations_per_level = _default_iterations(number_of_levels)

    config = RegistrationConfig.from_dict(dict(
        options,
        number_of_levels=number_of_levels,
        iterations_per_level=iterations_per_level,
        solver=solver,
    ))

    fixed = as_image(fixed, spacing=spacing)
    moving = as_image(moving, spacing=spacing)
    if normalize:
        fixed = Image(normalize_image(fixed.array), fixed.grid)
        moving = Image(normalize_image(moving.array), moving.grid)

    if verbose:
        print(f"Pyramid registration: {number_of_levels} levels, solver '{solver}'")
        print(f"  Fixed shape: {fixed.shape}, moving shape: {moving.shape}")
        print(f"  Iterations per level: {config.iterations_per_level}")

    registration = MultiResolutionRegistration(
        solver=config.build_solver(verbose=verbose),
        verbose=verbose,
    )
    field = registration.run(
        fixed, moving, config.number_of_levels, config.iterations_per_level
    )

    info: Dict[str, Any] = {
        'config': config,
        'level_info': registration.level_info,
        'valid_mask': compute_validity_mask(field, moving.grid),
        'warped': warp_image(moving, field),
    }
    if check_folds:
        info['jacobian_stats'] = detect_folds(field, warn=True)

    return field, info
