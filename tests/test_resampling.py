# -*- coding: utf-8 -*-
"""
Tests for the grid/field data model and FieldResampler.

Covers physical/index mapping, the field-grid invariant, idempotent
expansion and preservation of physical displacement when the spacing
changes.
"""

import numpy as np
import pytest

from multires_deform_registration import (
    ConfigurationError,
    DeformationField,
    FieldResampler,
    GridMismatch,
    GridSpec,
    Image,
)


# =============================================================================
# Grid and field data model
# =============================================================================

class TestGridSpec:
    """Tests for GridSpec geometry."""

    def test_index_physical_round_trip(self):
        grid = GridSpec((4, 5), (2.0, 0.5), (10.0, -3.0))
        index = np.array([[1.0, 2.0], [3.5, 0.25]])
        points = grid.index_to_physical(index)
        assert np.allclose(points[0], [12.0, -2.0])
        assert np.allclose(grid.physical_to_index(points), index)

    def test_voxel_coordinates_shape(self):
        grid = GridSpec((3, 4, 5), (1.0, 2.0, 3.0), (0.0, 0.0, 0.0))
        coords = grid.voxel_coordinates()
        assert coords.shape == (3, 4, 5, 3)
        assert np.allclose(coords[2, 3, 4], [2.0, 6.0, 12.0])

    def test_invalid_spacing(self):
        with pytest.raises(ConfigurationError):
            GridSpec((4, 4), (1.0, 0.0), (0.0, 0.0))

    def test_length_mismatch(self):
        with pytest.raises(ConfigurationError):
            GridSpec((4, 4), (1.0,), (0.0, 0.0))

    def test_equivalence(self):
        a = GridSpec((8, 8), (1.0, 1.0), (0.0, 0.0))
        b = GridSpec((8, 8), (1.0 + 1e-9, 1.0), (0.0, 0.0))
        c = GridSpec((8, 8), (0.5, 1.0), (0.0, 0.0))
        assert a.is_equivalent(b)
        assert not a.is_equivalent(c)


class TestDeformationField:
    """Tests for the field-grid invariant."""

    def test_rejects_wrong_shape(self):
        grid = GridSpec.from_shape((8, 8))
        with pytest.raises(GridMismatch):
            DeformationField(np.zeros((8, 7, 2)), grid)
        with pytest.raises(GridMismatch):
            DeformationField(np.zeros((8, 8, 3)), grid)

    def test_require_grid(self):
        grid = GridSpec.from_shape((8, 8))
        field = DeformationField.zeros(grid)
        field.require_grid(GridSpec.from_shape((8, 8)))
        with pytest.raises(GridMismatch):
            field.require_grid(GridSpec.from_shape((16, 16), spacing=0.5))

    def test_voxel_units(self):
        grid = GridSpec.from_shape((4, 4), spacing=(2.0, 0.5))
        field = DeformationField.from_voxel_units(np.ones((4, 4, 2)), grid)
        assert np.allclose(field.vectors[..., 0], 2.0)
        assert np.allclose(field.vectors[..., 1], 0.5)
        assert np.allclose(field.to_voxel_units(), 1.0)

    def test_mean_displacement_with_mask(self):
        grid = GridSpec.from_shape((4, 4))
        vectors = np.zeros((4, 4, 2))
        vectors[:2] = [1.0, 2.0]
        field = DeformationField(vectors, grid)
        mask = np.zeros((4, 4), dtype=bool)
        mask[:2] = True
        assert np.allclose(field.mean_displacement(mask), [1.0, 2.0])
        assert np.allclose(field.mean_displacement(), [0.5, 1.0])

    def test_image_array_must_match_grid(self):
        with pytest.raises(GridMismatch):
            Image(np.zeros((4, 4)), GridSpec.from_shape((4, 5)))


# =============================================================================
# FieldResampler
# =============================================================================

class TestFieldResampler:
    """Tests for FieldResampler.expand."""

    def test_same_grid_is_idempotent(self):
        rng = np.random.default_rng(0)
        grid = GridSpec((12, 10), (1.5, 0.75), (2.0, -1.0))
        field = DeformationField(rng.normal(size=(12, 10, 2)), grid)

        expanded = FieldResampler().expand(field, grid)

        assert expanded.grid.is_equivalent(grid)
        assert np.allclose(expanded.vectors, field.vectors)
        # A copy, not a view of the input
        expanded.vectors[0, 0, 0] += 1.0
        assert not np.allclose(expanded.vectors, field.vectors)
        print("✓ Expansion onto the same grid returns an equal field")

    def test_same_grid_is_idempotent_3d(self):
        rng = np.random.default_rng(1)
        grid = GridSpec((5, 6, 7), (2.0, 1.0, 1.0), (0.0, 0.0, 0.0))
        field = DeformationField(rng.normal(size=(5, 6, 7, 3)), grid)
        expanded = FieldResampler(order=3).expand(field, grid)
        assert np.allclose(expanded.vectors, field.vectors)

    def test_uniform_field_keeps_physical_displacement(self):
        """A displacement of (2, -1) on spacing 1 stays (2, -1) on spacing 0.5."""
        coarse = GridSpec((8, 8), (1.0, 1.0), (0.0, 0.0))
        fine = GridSpec((15, 15), (0.5, 0.5), (0.0, 0.0))
        d = np.array([2.0, -1.0])
        field = DeformationField(np.broadcast_to(d, (8, 8, 2)).copy(), coarse)

        expanded = FieldResampler().expand(field, fine)

        assert expanded.shape == (15, 15)
        assert np.allclose(expanded.vectors, d)
        # Relative to the finer grid the voxel components double
        assert np.allclose(expanded.to_voxel_units(), [4.0, -2.0])
        print("✓ Physical displacement preserved, voxel components rescaled")

    def test_anisotropic_refinement(self):
        coarse = GridSpec((6, 6, 6), (4.0, 2.0, 1.0), (0.0, 0.0, 0.0))
        fine = GridSpec((11, 11, 6), (2.0, 1.0, 1.0), (0.0, 0.0, 0.0))
        d = np.array([1.0, 3.0, -0.5])
        field = DeformationField(np.broadcast_to(d, (6, 6, 6, 3)).copy(), coarse)

        expanded = FieldResampler().expand(field, fine)

        assert np.allclose(expanded.vectors, d)
        assert np.allclose(expanded.to_voxel_units(), d / np.array([2.0, 1.0, 1.0]))

    def test_linear_field_interpolated_exactly(self):
        """Linear interpolation reproduces a linear field inside the coarse extent."""
        coarse = GridSpec((9, 9), (2.0, 2.0), (0.0, 0.0))
        fine = GridSpec((17, 17), (1.0, 1.0), (0.0, 0.0))
        points = coarse.voxel_coordinates()
        vectors = np.stack([0.1 * points[..., 1], -0.05 * points[..., 0]], axis=-1)
        field = DeformationField(vectors, coarse)

        expanded = FieldResampler().expand(field, fine)

        fine_points = fine.voxel_coordinates()
        assert np.allclose(expanded.vectors[..., 0], 0.1 * fine_points[..., 1])
        assert np.allclose(expanded.vectors[..., 1], -0.05 * fine_points[..., 0])

    def test_dimension_mismatch(self):
        field = DeformationField.zeros(GridSpec.from_shape((4, 4)))
        with pytest.raises(GridMismatch):
            FieldResampler().expand(field, GridSpec.from_shape((4, 4, 4)))

    def test_nearest_neighbour_rejected(self):
        with pytest.raises(ConfigurationError):
            FieldResampler(order=0)
