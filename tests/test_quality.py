# -*- coding: utf-8 -*-
"""
Tests for Jacobian diagnostics, warping and the validity mask.
"""

import warnings

import numpy as np
import pytest

from multires_deform_registration import (
    ConfigurationError,
    DeformationField,
    GridSpec,
    Image,
    compute_validity_mask,
    detect_folds,
    jacobian_determinant,
    translated_pair,
    warp_image,
)


class TestJacobian:
    """Tests for jacobian_determinant and detect_folds."""

    def test_zero_field_has_unit_determinant(self):
        field = DeformationField.zeros(GridSpec.from_shape((6, 7, 8)))
        assert np.allclose(jacobian_determinant(field), 1.0)

    def test_uniform_scaling(self):
        """u(x) = 0.2 x scales every axis by 1.2."""
        grid = GridSpec.from_shape((10, 10), spacing=(0.5, 2.0))
        field = DeformationField(0.2 * grid.voxel_coordinates(), grid)
        assert np.allclose(jacobian_determinant(field), 1.44)

    def test_smooth_field_has_no_folds(self):
        field = DeformationField.zeros(GridSpec.from_shape((8, 8)))
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            stats = detect_folds(field)
        assert not stats.has_folds
        assert stats.total_voxels == 64
        assert stats.min_det == pytest.approx(1.0)

    def test_folding_field_warns(self):
        grid = GridSpec.from_shape((10, 10))
        # u(x) = -2 x reverses the orientation of axis 0
        vectors = np.zeros((10, 10, 2))
        vectors[..., 0] = -2.0 * grid.voxel_coordinates()[..., 0]
        field = DeformationField(vectors, grid)

        with pytest.warns(UserWarning, match="det"):
            stats = detect_folds(field)

        assert stats.has_folds
        assert stats.num_folds == 100
        assert stats.fold_fraction == pytest.approx(1.0)
        print(f"✓ Folding detected, min det = {stats.min_det:.2f}")

    def test_no_warning_when_disabled(self):
        grid = GridSpec.from_shape((6, 6))
        vectors = np.zeros((6, 6, 2))
        vectors[..., 1] = -3.0 * grid.voxel_coordinates()[..., 1]
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            stats = detect_folds(DeformationField(vectors, grid), warn=False)
        assert stats.has_folds


class TestWarping:
    """Tests for warp_image and compute_validity_mask."""

    def test_true_translation_aligns_images(self):
        fixed, moving = translated_pair((24, 24), translation=(2.0, -1.0))
        field = DeformationField(np.broadcast_to([2.0, -1.0], (24, 24, 2)).copy(), fixed.grid)

        warped = warp_image(moving, field)

        interior = (slice(3, -3), slice(3, -3))
        assert np.allclose(warped[interior], fixed.array[interior], atol=0.05)

    def test_outside_uses_cval(self):
        image = Image.from_array(np.ones((8, 8)))
        field = DeformationField(np.full((8, 8, 2), 100.0), image.grid)
        assert np.all(warp_image(image, field, cval=-1.0) == -1.0)

    def test_dimension_mismatch(self):
        field = DeformationField.zeros(GridSpec.from_shape((4, 4)))
        with pytest.raises(ConfigurationError):
            warp_image(np.zeros((4, 4, 4)), field)

    def test_validity_mask(self):
        grid = GridSpec.from_shape((8, 8))
        vectors = np.zeros((8, 8, 2))
        vectors[..., 1] = 2.0
        mask = compute_validity_mask(DeformationField(vectors, grid), grid)
        assert mask[:, :6].all()
        assert not mask[:, 6:].any()
