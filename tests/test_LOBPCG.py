"""
Tests for the minimum-eigenpair computation used to verify critical points.
"""

import numpy as np
import pytest
import scipy.sparse as sp
from scipy.sparse.linalg import aslinearoperator

from sesync.solver import SESyncProblem
from sesync.solver.LOBPCG import compute_minimum_eigenpair, initial_block


@pytest.fixture
def shifted_diagonal():
    diagonal = np.linspace(0.5, 10.0, 120)
    diagonal[37] = -1.0
    return sp.diags(diagonal, format='csr')


def test_dense_path_for_small_matrices():
    A = np.diag([3.0, -2.0, 1.0, 5.0])
    result = compute_minimum_eigenpair(sp.csr_matrix(A), block_size=4)
    assert np.isclose(result.theta, -2.0)
    assert np.isclose(abs(result.v[1]), 1.0)
    assert result.converged
    assert result.iterations == 0


def test_dense_path_accepts_linear_operators(saddle_instance):
    measurements, Y = saddle_instance
    problem = SESyncProblem(measurements)
    problem.set_relaxation_rank(2)
    result = compute_minimum_eigenpair(problem.certificate_matrix(Y), block_size=4)
    assert np.isclose(result.theta, -2.0)
    assert result.residual_norm < 1e-10


@pytest.mark.parametrize("use_preconditioner", [True, False])
def test_lobpcg_finds_the_negative_eigenvalue(shifted_diagonal, use_preconditioner):
    preconditioning_matrix = shifted_diagonal if use_preconditioner else None
    result = compute_minimum_eigenpair(shifted_diagonal,
                                       preconditioning_matrix=preconditioning_matrix,
                                       block_size=4,
                                       max_iterations=500,
                                       tol=1e-6)
    assert result.converged
    assert np.isclose(result.theta, -1.0, atol=1e-6)
    assert np.isclose(abs(result.v[37]), 1.0, atol=1e-4)
    assert np.isclose(np.linalg.norm(result.v), 1.0)
    assert result.residual_norm <= 1e-6
    assert result.iterations >= 1


def test_lobpcg_on_linear_operator(shifted_diagonal):
    X0 = initial_block(120, 4, rng=np.random.default_rng(0))
    result = compute_minimum_eigenpair(aslinearoperator(shifted_diagonal), X0=X0,
                                       preconditioning_matrix=shifted_diagonal, max_iterations=500, tol=1e-6)
    assert np.isclose(result.theta, -1.0, atol=1e-6)


def test_unconverged_result_is_reported(shifted_diagonal):
    result = compute_minimum_eigenpair(shifted_diagonal, block_size=4, max_iterations=1, tol=1e-12)
    assert not result.converged
    assert result.residual_norm > 1e-12


def test_initial_block_contains_row_space():
    rng = np.random.default_rng(1)
    Y = rng.standard_normal((2, 30))
    X = initial_block(30, 4, Y, rng=rng)
    assert X.shape == (30, 4)
    assert np.allclose(X.T @ X, np.eye(4))
    # range(Y^T) lies in the span of the block
    assert np.allclose(X @ (X.T @ Y.T), Y.T)


def test_initial_block_keeps_a_random_direction():
    rng = np.random.default_rng(2)
    Y = rng.standard_normal((6, 30))
    X = initial_block(30, 4, Y, rng=rng)
    assert X.shape == (30, 4)
    assert np.allclose(X.T @ X, np.eye(4))
