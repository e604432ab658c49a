# -*- coding: utf-8 -*-
"""
Tests for exporting a field as (point, vector) pairs.
"""

import numpy as np
import pytest

from multires_deform_registration import (
    ConfigurationError,
    DeformationField,
    GridMismatch,
    GridSpec,
    Image,
    export_arrays,
    export_field,
)


@pytest.fixture
def field_3d():
    grid = GridSpec((3, 4, 5), (1.0, 2.0, 0.5), (10.0, 0.0, -1.0))
    vectors = np.arange(3 * 4 * 5 * 3, dtype=np.float64).reshape(3, 4, 5, 3)
    return DeformationField(vectors, grid)


def test_export_everything(field_3d):
    pairs = export_field(field_3d)
    assert len(pairs) == 60
    point, vector = pairs[0]
    assert np.allclose(point, [10.0, 0.0, -1.0])
    assert np.allclose(vector, [0.0, 1.0, 2.0])

    point, vector = pairs[-1]
    assert np.allclose(point, [12.0, 6.0, 1.0])
    assert np.allclose(vector, field_3d.vectors[2, 3, 4])
    print("✓ All voxels exported with physical positions")


def test_mask_filters_voxels(field_3d):
    mask = np.zeros((3, 4, 5), dtype=np.uint8)
    mask[1, 2, 3] = 1
    mask[2, 0, 0] = 5

    points, vectors = export_arrays(field_3d, mask=mask)

    assert points.shape == (2, 3)
    assert np.allclose(points[0], field_3d.grid.index_to_physical(np.array([1, 2, 3])))
    assert np.allclose(vectors[1], field_3d.vectors[2, 0, 0])


def test_slice_selection(field_3d):
    points, vectors = export_arrays(field_3d, slice_axis=2, slice_index=1)
    assert points.shape == (12, 3)
    assert np.allclose(points[:, 2], -0.5)
    assert np.allclose(vectors, field_3d.vectors[:, :, 1].reshape(-1, 3))


def test_mask_and_slice_combine(field_3d):
    mask = np.zeros((3, 4, 5), dtype=bool)
    mask[0] = True
    mask[:, :, 0] = True
    pairs = export_field(field_3d, mask=mask, slice_axis=0, slice_index=1)
    # Only row 1 voxels in column 0 pass both filters
    assert len(pairs) == 4


def test_out_of_range_slice_selects_nothing(field_3d):
    assert export_field(field_3d, slice_axis=1, slice_index=9) == []
    points, vectors = export_arrays(field_3d, slice_axis=1, slice_index=-1)
    assert points.shape == (0, 3)
    assert vectors.shape == (0, 3)


def test_image_mask_on_matching_grid(field_3d):
    mask = Image(np.ones((3, 4, 5)), field_3d.grid)
    assert len(export_field(field_3d, mask=mask)) == 60

    other = Image(np.ones((3, 4, 5)), GridSpec.from_shape((3, 4, 5)))
    with pytest.raises(GridMismatch):
        export_field(field_3d, mask=other)


def test_mask_shape_mismatch(field_3d):
    with pytest.raises(GridMismatch):
        export_field(field_3d, mask=np.ones((3, 4)))


@pytest.mark.parametrize("axis, index", [(None, 1), (1, None), (3, 0), (-1, 0)])
def test_invalid_slice_arguments(field_3d, axis, index):
    with pytest.raises(ConfigurationError):
        export_field(field_3d, slice_axis=axis, slice_index=index)
