# -*- coding: utf-8 -*-
"""
Multilinear box element math for the mesh load solver.

Elements are axis-aligned boxes with 2**N corner nodes (bilinear quads
in 2D, trilinear hexahedra in 3D) and linear isotropic elasticity
(plane strain in 2D). Local coordinates run over [-1, 1] per axis.

Functions
---------
- gauss_points_weights: 1D Gauss-Legendre rule with 1, 2 or 3 points
- tensor_gauss_rule: Tensor product rule on [-1, 1]^N
- corner_signs: Corner node layout of the reference element
- shape_functions: Multilinear shape function values
- shape_function_derivatives: Derivatives in local coordinates
- elasticity_matrix: Isotropic constitutive matrix (Voigt notation)
- strain_displacement_matrix: B matrix for one point
- element_stiffness: Stiffness of one box element
"""

from __future__ import annotations

import itertools
from typing import Sequence, Tuple

import numpy as np
from numpy.typing import NDArray

from .exceptions import ConfigurationError


def gauss_points_weights(n_points: int) -> Tuple[NDArray[np.float64], NDArray[np.float64]]:
    """
    Gauss points and weights for 1D integration on [-1, +1].

    Raises
    ------
    ConfigurationError
        If ``n_points`` is not 1, 2 or 3.
    """
    if n_points == 1:
        return np.array([0.0]), np.array([2.0])
    elif n_points == 2:
        return np.array([-1 / np.sqrt(3), 1 / np.sqrt(3)]), np.array([1.0, 1.0])
    elif n_points == 3:
        return np.array([-np.sqrt(3 / 5), 0.0, np.sqrt(3 / 5)]), np.array([5 / 9, 8 / 9, 5 / 9])
    else:
        raise ConfigurationError(
            f"Unsupported number of Gauss points: {n_points}. Must be 1, 2, or 3."
        )


def tensor_gauss_rule(ndim: int, n_points: int) -> Tuple[NDArray[np.float64], NDArray[np.float64]]:
    """
    Tensor product Gauss rule.

    Returns
    -------
    points : ndarray
        Local coordinates, shape (n_points**ndim, ndim).
    weights : ndarray
        Weights, shape (n_points**ndim,). They sum to 2**ndim.
    """
    points_1d, weights_1d = gauss_points_weights(n_points)
    points = np.array(list(itertools.product(points_1d, repeat=ndim)))
    weights = np.array([np.prod(w) for w in itertools.product(weights_1d, repeat=ndim)])
    return points, weights


def corner_signs(ndim: int) -> NDArray[np.float64]:
    """Corner coordinates of the reference element, shape (2**ndim, ndim), entries -1/+1."""
    return np.array(list(itertools.product((-1.0, 1.0), repeat=ndim)))


def shape_functions(xi: NDArray[np.float64]) -> NDArray[np.float64]:
    """
    Multilinear shape functions at local points.

    Parameters
    ----------
    xi : ndarray
        Local coordinates, shape (G, N).

    Returns
    -------
    values : ndarray
        Shape (G, 2**N); rows sum to 1.
    """
    xi = np.atleast_2d(xi)
    signs = corner_signs(xi.shape[1])
    return np.prod(0.5 * (1.0 + xi[:, None, :] * signs[None]), axis=-1)


def shape_function_derivatives(xi: NDArray[np.float64]) -> NDArray[np.float64]:
    """Derivatives with respect to local coordinates, shape (G, 2**N, N)."""
    xi = np.atleast_2d(xi)
    ndim = xi.shape[1]
    signs = corner_signs(ndim)
    factors = 0.5 * (1.0 + xi[:, None, :] * signs[None])  # (G, A, N)
    derivatives = np.empty(factors.shape)
    for axis in range(ndim):
        others = np.delete(factors, axis, axis=-1)
        derivatives[..., axis] = 0.5 * signs[None, :, axis] * np.prod(others, axis=-1)
    return derivatives


def _shear_pairs(ndim: int):
    return list(itertools.combinations(range(ndim), 2))


def elasticity_matrix(ndim: int, young_modulus: float, poisson_ratio: float) -> NDArray[np.float64]:
    """
    Isotropic elasticity matrix in Voigt notation.

    Strain ordering is the normal strains followed by the engineering
    shear strains for the axis pairs (0, 1), (0, 2), (1, 2). In 2D this
    is the plane strain matrix.
    """
    if young_modulus <= 0:
        raise ConfigurationError(f"young_modulus must be positive, got {young_modulus}")
    if not 0.0 <= poisson_ratio < 0.5:
        raise ConfigurationError(f"poisson_ratio must be in [0, 0.5), got {poisson_ratio}")

    lam = young_modulus * poisson_ratio / ((1 + poisson_ratio) * (1 - 2 * poisson_ratio))
    mu = young_modulus / (2 * (1 + poisson_ratio))

    n_shear = len(_shear_pairs(ndim))
    D = np.zeros((ndim + n_shear, ndim + n_shear))
    D[:ndim, :ndim] = lam
    D[:ndim, :ndim] += 2 * mu * np.eye(ndim)
    D[ndim:, ndim:] = mu * np.eye(n_shear)
    return D


def strain_displacement_matrix(dN_dx: NDArray[np.float64]) -> NDArray[np.float64]:
    """
    B matrix mapping nodal displacements to Voigt strains at one point.

    Parameters
    ----------
    dN_dx : ndarray
        Physical shape function derivatives, shape (A, N).

    Returns
    -------
    B : ndarray
        Shape (n_strain, A * N). Nodal DOFs are ordered node-major:
        ``[u_0x0, u_0x1, ..., u_1x0, ...]``.
    """
    n_nodes, ndim = dN_dx.shape
    pairs = _shear_pairs(ndim)
    B = np.zeros((ndim + len(pairs), n_nodes * ndim))
    for a in range(n_nodes):
        for i in range(ndim):
            B[i, a * ndim + i] = dN_dx[a, i]
        for row, (i, j) in enumerate(pairs, start=ndim):
            B[row, a * ndim + i] = dN_dx[a, j]
            B[row, a * ndim + j] = dN_dx[a, i]
    return B


def element_stiffness(
    lengths: Sequence[float],
    young_modulus: float,
    poisson_ratio: float,
    n_gauss: int = 2,
) -> NDArray[np.float64]:
    """
    Stiffness matrix of an axis-aligned box element.

    Parameters
    ----------
    lengths : sequence of float
        Physical edge lengths of the element.
    young_modulus, poisson_ratio : float
        Elastic constants.
    n_gauss : int
        Gauss points per axis.

    Returns
    -------
    Ke : ndarray
        Shape (2**N * N, 2**N * N), symmetric.
    """
    half = 0.5 * np.asarray(lengths, dtype=np.float64)
    ndim = len(half)
    D = elasticity_matrix(ndim, young_modulus, poisson_ratio)
    points, weights = tensor_gauss_rule(ndim, n_gauss)
    det_j = np.prod(half)

    n_dofs = (2 ** ndim) * ndim
    Ke = np.zeros((n_dofs, n_dofs))
    for xi, w in zip(points, weights):
        dN_dx = shape_function_derivatives(xi[None])[0] / half
        B = strain_displacement_matrix(dN_dx)
        Ke += B.T @ D @ B * w * det_j
    return Ke
