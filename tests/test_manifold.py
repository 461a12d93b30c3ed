"""
Tests for the lifted product manifold St(d, r)^n (x R^{r x n}).
"""

import numpy as np
import pytest

from sesync.solver.manifold import LiftedSEManifold
from sesync.solver.utils import Formulation


@pytest.fixture(params=list(Formulation))
def manifold(request):
    np.random.seed(0)
    return LiftedSEManifold(num_poses=6, dimension=3, rank=5, formulation=request.param)


def skew_violation(manifold, Y, V):
    _, Y_blocks = manifold.split(Y)
    _, V_blocks = manifold.split(V)
    P = np.transpose(Y_blocks, (0, 2, 1)) @ V_blocks
    return np.max(np.abs(P + np.transpose(P, (0, 2, 1))))


def test_shapes_and_dimension(manifold):
    n, d, r = 6, 3, 5
    offset = n if manifold.formulation == Formulation.Explicit else 0
    assert manifold.offset == offset
    assert manifold.N == offset + d * n

    expected_dim = n * (r * d - d * (d + 1) // 2) + r * offset
    assert manifold.dim == expected_dim

    Y = manifold.random_point()
    manifold.check_shape(Y)
    with pytest.raises(ValueError):
        manifold.check_shape(Y[:-1])


def test_split_combine_round_trip(manifold):
    Y = manifold.random_point()
    translations, blocks = manifold.split(Y)
    assert blocks.shape == (6, 5, 3)
    assert np.array_equal(manifold.combine(translations, blocks), Y)


def test_random_point_is_on_manifold(manifold):
    Y = manifold.random_point()
    assert manifold.stiefel_violation(Y) < 1e-12


def test_projection_lands_in_tangent_space(manifold):
    Y = manifold.random_point()
    V = manifold.projection(Y, np.random.standard_normal(Y.shape))
    assert skew_violation(manifold, Y, V) < 1e-12
    # Projection is idempotent
    assert np.allclose(manifold.projection(Y, V), V)

    U = manifold.random_tangent_vector(Y)
    assert np.isclose(manifold.norm(Y, U), 1.0)
    assert np.isclose(manifold.inner_product(Y, U, U), 1.0)


def test_retraction_stays_on_manifold(manifold):
    Y = manifold.random_point()
    V = manifold.random_tangent_vector(Y)
    Z = manifold.retraction(Y, 3.0 * V)
    assert manifold.stiefel_violation(Z) < 1e-12
    assert np.allclose(manifold.retraction(Y, manifold.zero_vector(Y)), Y)

    if manifold.formulation == Formulation.Explicit:
        # Translations are updated additively
        assert np.allclose(Z[:, :6], Y[:, :6] + 3.0 * V[:, :6])


def test_lift_pads_zero_rows(manifold):
    Y = np.ones((3, manifold.N))
    lifted = manifold.lift(Y, 5)
    assert lifted.shape == (5, manifold.N)
    assert np.array_equal(lifted[:3], Y)
    assert not np.any(lifted[3:])
    with pytest.raises(ValueError):
        manifold.lift(lifted, 4)


def test_invalid_construction():
    with pytest.raises(ValueError):
        LiftedSEManifold(num_poses=1, dimension=2, rank=2)
    with pytest.raises(ValueError):
        LiftedSEManifold(num_poses=4, dimension=3, rank=2)
