# -*- coding: utf-8 -*-
"""
Tests for element math, the implicit mesh and MeshLoadSolver.
"""

import warnings

import numpy as np
import pytest
import torch

from multires_deform_registration import (
    ConfigurationError,
    DeformationField,
    GridSpec,
    Image,
    ImplicitMesh,
    MeshLoadSolver,
    NumericalInstability,
    translated_pair,
)
from multires_deform_registration.elements import (
    corner_signs,
    element_stiffness,
    elasticity_matrix,
    gauss_points_weights,
    shape_function_derivatives,
    shape_functions,
    tensor_gauss_rule,
)

CPU = torch.device('cpu')


# =============================================================================
# Element math
# =============================================================================

class TestElements:
    """Tests for shape functions, quadrature and element stiffness."""

    @pytest.mark.parametrize("ndim", [2, 3])
    def test_partition_of_unity(self, ndim):
        xi = np.random.default_rng(0).uniform(-1, 1, size=(10, ndim))
        assert np.allclose(shape_functions(xi).sum(axis=1), 1.0)
        assert np.allclose(shape_function_derivatives(xi).sum(axis=1), 0.0)

    @pytest.mark.parametrize("n", [1, 2, 3])
    def test_gauss_weights_integrate_volume(self, n):
        _, weights = tensor_gauss_rule(3, n)
        assert weights.sum() == pytest.approx(8.0)

    def test_gauss_rule_exact_for_cubic(self):
        points, weights = gauss_points_weights(2)
        assert np.sum(weights * (points ** 3 + points ** 2)) == pytest.approx(2.0 / 3.0)

    def test_unsupported_gauss_order(self):
        with pytest.raises(ConfigurationError):
            gauss_points_weights(4)

    def test_elastic_constants_validated(self):
        with pytest.raises(ConfigurationError):
            elasticity_matrix(2, 0.0, 0.3)
        with pytest.raises(ConfigurationError):
            elasticity_matrix(3, 1.0, 0.5)

    @pytest.mark.parametrize("lengths", [(1.0, 2.0), (2.0, 1.0, 0.5)])
    def test_element_stiffness_rigid_modes(self, lengths):
        ndim = len(lengths)
        Ke = element_stiffness(lengths, 1.0, 0.3)
        assert np.allclose(Ke, Ke.T)

        # Uniform translations carry no strain energy
        for axis in range(ndim):
            u = np.zeros((2 ** ndim, ndim))
            u[:, axis] = 1.0
            assert np.allclose(Ke @ u.ravel(), 0.0, atol=1e-10)

        # Stretching along an axis does
        stretch = np.zeros((2 ** ndim, ndim))
        stretch[:, 0] = corner_signs(ndim)[:, 0]
        assert stretch.ravel() @ Ke @ stretch.ravel() > 0.0


# =============================================================================
# Implicit mesh
# =============================================================================

class TestImplicitMesh:
    """Tests for mesh layout and assembly."""

    def test_layout(self):
        grid = GridSpec.from_shape((17, 11), spacing=(1.0, 2.0))
        mesh = ImplicitMesh(grid, element_size=4)
        assert mesh.element_shape == (4, 3)
        assert mesh.node_shape == (5, 4)
        assert mesh.n_nodes == 20
        assert mesh.connectivity.shape == (12, 4)
        assert np.allclose(mesh.element_voxels, [4.0, 10.0 / 3.0])
        assert np.allclose(mesh.element_lengths, [4.0, 20.0 / 3.0])

    def test_stiffness_rigid_modes(self):
        grid = GridSpec.from_shape((13, 9))
        mesh = ImplicitMesh(grid, element_size=4)
        K = mesh.stiffness_matrix(2.0, 0.3)

        translation = np.tile([0.7, -0.4], mesh.n_nodes)
        assert np.allclose(K @ translation, 0.0, atol=1e-10)

        # Infinitesimal rotation about the origin
        nodes = np.indices(mesh.node_shape).reshape(2, -1).T * mesh.element_lengths
        rotation = np.stack([-nodes[:, 1], nodes[:, 0]], axis=-1).ravel()
        assert np.allclose(K @ rotation, 0.0, atol=1e-8)
        assert abs(K - K.T).max() < 1e-12
        print("✓ Rigid motions lie in the stiffness null space")

    def test_lumped_mass_sums_to_mesh_volume(self):
        grid = GridSpec.from_shape((9, 9, 5), spacing=(1.0, 0.5, 2.0))
        mass = ImplicitMesh(grid, element_size=2).lumped_mass()
        assert mass.shape == (5 * 5 * 3,)
        assert mass.sum() == pytest.approx(8.0 * 4.0 * 8.0)

    def test_projection_of_linear_nodal_field(self):
        grid = GridSpec.from_shape((13, 9))
        mesh = ImplicitMesh(grid, element_size=4)
        node_voxels = np.indices(mesh.node_shape).reshape(2, -1).T * mesh.element_voxels
        nodal = np.stack([0.1 * node_voxels[:, 1], np.full(len(node_voxels), 2.0)], axis=-1)

        projected = mesh.project(nodal)

        voxels = grid.voxel_indices()
        assert projected.shape == (13, 9, 2)
        assert np.allclose(projected[..., 0], 0.1 * voxels[..., 1])
        assert np.allclose(projected[..., 1], 2.0)

    def test_integration_points(self):
        grid = GridSpec.from_shape((9, 9))
        mesh = ImplicitMesh(grid, element_size=4)
        ips = mesh.integration_points(n_gauss=2)
        assert len(ips) == 4 * 4
        assert ips.weights.sum() == pytest.approx(64.0)
        constant = np.tile([1.0, -3.0], (mesh.n_nodes, 1))
        assert np.allclose(ips.interpolate(constant), [1.0, -3.0])

        loads = ips.scatter(np.ones((len(ips), 2)), mesh.n_nodes)
        assert np.allclose(loads.sum(axis=0), 64.0)

    def test_degenerate_grid(self):
        with pytest.raises(ConfigurationError):
            ImplicitMesh(GridSpec.from_shape((1, 8)))


# =============================================================================
# MeshLoadSolver
# =============================================================================

class TestMeshLoadSolver:
    """Tests for MeshLoadSolver.run."""

    @pytest.fixture
    def pair(self):
        return translated_pair((32, 32), translation=(1.5, 1.0))

    def make_solver(self, **kwargs):
        options = dict(young_modulus=2.0, load_scale=3.0, density=1.0, element_size=4, device=CPU)
        options.update(kwargs)
        return MeshLoadSolver(**options)

    def test_reduces_error_and_energy(self, pair):
        fixed, moving = pair
        t = np.array([1.5, 1.0])
        solver = self.make_solver()

        field = solver.run(fixed, moving, DeformationField.zeros(fixed.grid), 25)

        mask = np.zeros((32, 32), dtype=bool)
        mask[6:-6, 6:-6] = True
        error = np.linalg.norm(field.mean_displacement(mask) - t)
        print(f"   Mean displacement {field.mean_displacement(mask)}, error {error:.3f}")
        assert error < 0.5 * np.linalg.norm(t)
        assert solver.energy_history[-1] < solver.energy_history[0]
        assert solver.iterations_run == 25
        print("✓ Mesh solver reduces the registration error")

    def test_initial_field_is_kept(self, pair):
        fixed, moving = pair
        initial = DeformationField(np.full((32, 32, 2), 0.3), fixed.grid)
        field = self.make_solver().run(fixed, moving, initial, 0)
        assert np.array_equal(field.vectors, initial.vectors)

        field = self.make_solver(load_scale=0.0).run(fixed, moving, initial, 3)
        assert np.allclose(field.vectors, 0.3)

    def test_cap_raises_numerical_instability(self, pair):
        fixed, moving = pair
        solver = self.make_solver(max_increment=1e-3)
        with pytest.raises(NumericalInstability):
            solver.run(fixed, moving, DeformationField.zeros(fixed.grid), 5)

    def test_non_finite_forces_raise(self, pair):
        fixed, _ = pair
        broken = Image(np.full(fixed.shape, np.nan, dtype=np.float32), fixed.grid)
        with pytest.raises(NumericalInstability):
            self.make_solver().run(fixed, broken, DeformationField.zeros(fixed.grid), 2)

    def test_no_overlap_gives_zero_force(self, pair):
        fixed, moving = pair
        far = Image(moving.array, GridSpec.from_shape(moving.shape, origin=(500.0, 500.0)))
        solver = self.make_solver()

        with pytest.warns(UserWarning):
            field = solver.run(fixed, far, DeformationField.zeros(fixed.grid), 3)

        assert np.all(field.vectors == 0.0)
        assert solver.energy_history == [0.0, 0.0, 0.0]
        assert solver.iterations_run == 3
        print("✓ No overlap leaves the field unchanged")

    def test_partial_overlap(self, pair):
        fixed, moving = pair
        shifted = Image(moving.array, GridSpec.from_shape(moving.shape, origin=(12.0, 0.0)))
        solver = self.make_solver()

        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            field = solver.run(fixed, shifted, DeformationField.zeros(fixed.grid), 5)

        assert not any("No integration point" in str(w.message) for w in caught)
        assert field.shape == (32, 32)
        assert np.all(np.isfinite(field.vectors))
        assert np.all(np.isfinite(solver.energy_history))

    def test_moving_on_coarser_grid(self, pair):
        fixed, _ = pair
        _, coarse = translated_pair((16, 16), translation=(1.5, 1.0), spacing=2.0)
        solver = self.make_solver()

        field = solver.run(fixed, coarse, DeformationField.zeros(fixed.grid), 5)

        assert field.grid.is_equivalent(fixed.grid)
        assert np.all(np.isfinite(field.vectors))
        assert len(solver.energy_history) == 5

    def test_energy_tolerance_stops_early(self, pair):
        fixed, moving = pair
        solver = self.make_solver(energy_tolerance=1e12)
        solver.run(fixed, moving, DeformationField.zeros(fixed.grid), 10)
        assert solver.iterations_run == 2

    def test_3d_runs(self):
        fixed, moving = translated_pair((12, 12, 12), translation=(0.0, 0.0, 1.0))
        solver = self.make_solver(element_size=3)
        field = solver.run(fixed, moving, DeformationField.zeros(fixed.grid), 5)
        assert field.shape == (12, 12, 12)
        assert solver.energy_history[-1] < solver.energy_history[0]

    @pytest.mark.parametrize("kwargs", [
        dict(density=0.0),
        dict(n_gauss=4),
        dict(max_increment=-1.0),
    ])
    def test_invalid_parameters(self, kwargs):
        with pytest.raises(ConfigurationError):
            MeshLoadSolver(**kwargs)
