# -*- coding: utf-8 -*-
"""
Tests for RegistrationConfig and the solver registry.
"""

import pytest

from multires_deform_registration import (
    ConfigurationError,
    CorrelationMetric,
    DemonsUpdateRule,
    MeshLoadSolver,
    MutualInformationMetric,
    RegistrationConfig,
    SolverRegistry,
    SymmetricForcesUpdateRule,
    VoxelPDESolver,
    build_default_registry,
    get_solver,
)


class TestSolverRegistry:
    """Tests for name lookup and registration."""

    def test_builtin_names(self):
        registry = build_default_registry()
        assert registry.names() == ['demons', 'mesh', 'symmetric_forces']
        assert 'FEM' in registry
        assert registry.canonical_name('thirion') == 'demons'

    def test_create_by_alias(self):
        solver = get_solver('symmetric', field_sigma=2.0)
        assert isinstance(solver, VoxelPDESolver)
        assert isinstance(solver.update_rule, SymmetricForcesUpdateRule)
        assert solver.field_sigma == 2.0

        assert isinstance(get_solver('demons').update_rule, DemonsUpdateRule)
        assert isinstance(get_solver('fem'), MeshLoadSolver)

    def test_unknown_solver(self):
        with pytest.raises(ConfigurationError):
            get_solver('bspline')

    def test_duplicate_registration(self):
        registry = SolverRegistry()
        registry.register('demons', VoxelPDESolver, aliases=('pde',))
        with pytest.raises(ConfigurationError):
            registry.register('pde', VoxelPDESolver)

    def test_custom_solver(self):
        registry = SolverRegistry()
        registry.register('stiff_mesh', lambda **kw: MeshLoadSolver(young_modulus=50.0, **kw))
        solver = registry.create('stiff_mesh', load_scale=2.0)
        assert solver.young_modulus == 50.0
        assert solver.load_scale == 2.0


class TestRegistrationConfig:
    """Tests for validation and solver construction."""

    def test_defaults_are_valid(self):
        config = RegistrationConfig()
        config.validate()
        assert len(config.iterations_per_level) == config.number_of_levels

    @pytest.mark.parametrize("values", [
        dict(number_of_levels=0, iterations_per_level=[]),
        dict(number_of_levels=2, iterations_per_level=[10]),
        dict(number_of_levels=2, iterations_per_level=[10, 2.5]),
        dict(number_of_levels=1, iterations_per_level=[-1]),
        dict(number_of_levels=2, iterations_per_level=None),
        dict(number_of_levels=2, iterations_per_level=7),
        dict(number_of_levels=2, iterations_per_level=[None, 1]),
        dict(number_of_levels=2, iterations_per_level=[float('nan'), 1]),
        dict(number_of_levels=None, iterations_per_level=[1]),
        dict(solver='bspline'),
        dict(metric='cosine'),
        dict(metric='mi', metric_kwargs={'bins': 8}),
        dict(field_sigma=-0.5),
        dict(young_modulus=0.0),
        dict(poisson_ratio=0.5),
        dict(density=-1.0),
        dict(n_gauss=5),
        dict(max_increment=0.0),
        dict(n_workers=0),
    ])
    def test_invalid_values(self, values):
        with pytest.raises(ConfigurationError):
            RegistrationConfig.from_dict(values)

    def test_unknown_key(self):
        with pytest.raises(ConfigurationError):
            RegistrationConfig.from_dict({'levels': 3})

    def test_round_trip_dict(self):
        config = RegistrationConfig.from_dict({'solver': 'mesh', 'load_scale': 2.5})
        assert RegistrationConfig.from_dict(config.to_dict()) == config

    def test_build_pde_solver(self):
        config = RegistrationConfig(
            solver='symmetric_forces',
            metric='ncc',
            metric_radius=2,
            field_sigma=1.5,
            device='cpu',
        )
        solver = config.build_solver()
        assert isinstance(solver, VoxelPDESolver)
        assert isinstance(solver.update_rule, SymmetricForcesUpdateRule)
        assert isinstance(solver.metric, CorrelationMetric)
        assert solver.metric_radius == 2
        assert solver.field_sigma == 1.5

    def test_build_mesh_solver(self):
        config = RegistrationConfig(
            solver='mesh',
            metric='mi',
            metric_kwargs={'num_bins': 12},
            element_size=3,
            young_modulus=4.0,
            energy_tolerance=1e-4,
        )
        solver = config.build_solver(verbose=True)
        assert isinstance(solver, MeshLoadSolver)
        assert isinstance(solver.metric, MutualInformationMetric)
        assert solver.metric.num_bins == 12
        assert solver.element_size == 3
        assert solver.young_modulus == 4.0
        assert solver.energy_tolerance == 1e-4
        assert solver.verbose is True

    def test_build_validates(self):
        config = RegistrationConfig()
        config.number_of_levels = 5
        with pytest.raises(ConfigurationError):
            config.build_solver()
