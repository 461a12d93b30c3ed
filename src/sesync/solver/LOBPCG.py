import warnings
import numpy as np
import scipy.sparse as sp
from scipy.linalg import eigh, orth
from scipy.sparse.linalg import LinearOperator, lobpcg

from sesync.solver.preconditioner import PreconditionerBuilder
from sesync.solver.utils import EigenpairResult, Preconditioner

def _as_dense(S):
    if isinstance(S, LinearOperator):
        return np.asarray(S @ np.eye(S.shape[0]))
    if sp.issparse(S):
        return S.toarray()
    return np.asarray(S)

def initial_block(N, block_size, Y=None, rng=None):
    """
    Starting block for LOBPCG: an orthonormal basis of range(Y^T), which
    spans the approximate null space of the certificate at a critical point,
    completed by random columns.  The Y-columns are capped at block_size - 1
    so at least one random direction remains to expose negative curvature.
    """
    rng = np.random.default_rng() if rng is None else rng
    columns = []
    if Y is not None:
        basis = orth(np.asarray(Y).T)
        columns.append(basis[:, :max(block_size - 1, 0)])
    num_random = block_size - sum(c.shape[1] for c in columns)
    columns.append(rng.standard_normal((N, num_random)))
    return orth(np.hstack(columns)) if N >= block_size else np.hstack(columns)

def compute_minimum_eigenpair(S,
                              X0=None,
                              preconditioning_matrix=None,
                              block_size=4,
                              max_iterations=100,
                              tol=1e-3,
                              max_fill_factor=3,
                              drop_tol=1e-3):
    """
    Estimate the algebraically smallest eigenpair of the symmetric operator S.

    Small problems (N < 5 * block_size) are solved densely.  Otherwise
    LOBPCG is run with an incomplete-factorization preconditioner built from
    'preconditioning_matrix' (a sparse surrogate of S), when given.
    Convergence means that the eigenresidual ||S v - theta v|| is at most tol.
    """
    N = S.shape[0]
    block_size = max(1, min(int(block_size), N))

    if N < 5 * block_size:
        w, V = eigh(_as_dense(S))
        v = V[:, 0]
        residual_norm = float(np.linalg.norm(S @ v - w[0] * v))
        return EigenpairResult(theta=float(w[0]), v=v, iterations=0, converged=True, residual_norm=residual_norm)

    if X0 is None:
        X0 = initial_block(N, block_size)
    X0 = np.asarray(X0, dtype=float)

    M = None
    if preconditioning_matrix is not None:
        builder = PreconditionerBuilder(Preconditioner.IncompleteCholesky,
                                        max_fill_factor=max_fill_factor,
                                        drop_tol=drop_tol)
        M = builder.build(preconditioning_matrix, indefinite=True)

    # LOBPCG warns on non-convergence; that outcome is reported through 'converged'
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        w, V, residual_history = lobpcg(S, X0, M=M, largest=False, tol=tol,
                                        maxiter=int(max_iterations),
                                        retResidualNormsHistory=True)

    idx = int(np.argmin(w))
    theta = float(w[idx])
    v = V[:, idx] / np.linalg.norm(V[:, idx])
    residual_norm = float(np.linalg.norm(S @ v - theta * v))
    iterations = max(len(residual_history) - 1, 0)
    return EigenpairResult(theta=theta, v=v, iterations=iterations,
                           converged=residual_norm <= tol, residual_norm=residual_norm)
