import hashlib
import numpy as np
import scipy.sparse as sp
from scipy.sparse.csgraph import reverse_cuthill_mckee
from scipy.sparse.linalg import LinearOperator, spilu, splu

from sesync.solver.utils import Preconditioner, as_enum

def _pattern_signature(A):
    digest = hashlib.sha1()
    digest.update(np.asarray(A.shape, dtype=np.int64).tobytes())
    digest.update(A.indptr.tobytes())
    digest.update(A.indices.tobytes())
    return digest.hexdigest()

def gershgorin_bound(A):
    """Upper bound on the spectral radius of a symmetric matrix."""
    return float(np.max(np.asarray(abs(A).sum(axis=1)).ravel()))

def diagonal_dominance_shift(A):
    """Smallest shift making A strictly diagonally dominant (hence positive definite)."""
    diag = A.diagonal()
    offdiag = np.asarray(abs(A).sum(axis=1)).ravel() - np.abs(diag)
    deficit = np.max(offdiag - diag)
    return max(float(deficit), 0.0)

class PreconditionerBuilder():
    """
    Builds a LinearOperator approximating the inverse of a symmetric sparse matrix.

    The matrix is regularized by lambda * I with lambda = rho / (kappa_max - 1),
    rho being a Gershgorin bound on its largest eigenvalue, so the condition
    number of the factored matrix never exceeds kappa_max.  Indefinite input
    is first shifted to strict diagonal dominance.  A reverse Cuthill-McKee
    ordering is computed once per sparsity pattern; rebuilding with unchanged
    values returns the cached operator.
    """

    def __init__(self, kind=Preconditioner.RegularizedCholesky, max_condition_number=1e6, max_fill_factor=3, drop_tol=1e-3):
        self.kind = as_enum(Preconditioner, kind, 'preconditioner')
        if max_condition_number <= 1:
            raise ValueError(f"The maximum condition number must exceed 1; got {max_condition_number}")
        self.max_condition_number = max_condition_number
        self.max_fill_factor = max_fill_factor
        self.drop_tol = drop_tol

        self._orderings = {}
        self._cached_key = None
        self._cached_values = None
        self._cached_operator = None

    def regularize(self, A, indefinite=False):
        n = A.shape[0]
        if indefinite:
            A = A + diagonal_dominance_shift(A) * sp.identity(n, format='csr')
        reg = gershgorin_bound(A) / (self.max_condition_number - 1)
        if reg == 0:
            reg = 1.0
        return (A + reg * sp.identity(n, format='csr')).tocsr()

    def ordering(self, A):
        key = _pattern_signature(A)
        perm = self._orderings.get(key)
        if perm is None:
            perm = reverse_cuthill_mckee(A, symmetric_mode=True)
            self._orderings[key] = perm
        return perm

    def build(self, matrix, indefinite=False, block_size=1, offset=0):
        A = sp.csr_matrix(matrix)
        A.sort_indices()
        key = (_pattern_signature(A), indefinite, block_size, offset)
        if (self._cached_operator is not None and key == self._cached_key
                and np.array_equal(A.data, self._cached_values)):
            return self._cached_operator

        n = A.shape[0]
        if self.kind == Preconditioner.Identity:
            operator = LinearOperator((n, n), matvec=lambda x: x, matmat=lambda X: X, dtype=float)
        elif self.kind == Preconditioner.Jacobi:
            operator = self._jacobi_operator(self.regularize(A, indefinite), block_size, offset)
        else:
            operator = self._factorized_operator(self.regularize(A, indefinite))

        self._cached_key = key
        self._cached_values = A.data.copy()
        self._cached_operator = operator
        return operator

    # Inverse of the diagonal: scalar entries before 'offset', block_size x block_size blocks after it
    def _jacobi_operator(self, A, block_size, offset):
        n = A.shape[0]
        num_blocks = (n - offset) // block_size
        if offset + num_blocks * block_size != n:
            raise ValueError(f"Cannot split a matrix of size {n} into {offset} scalars and blocks of size {block_size}")
        starts = offset + block_size * np.arange(num_blocks)
        blocks = np.array([A[s:s + block_size, s:s + block_size].toarray() for s in starts])
        inverse_parts = list(np.linalg.inv(blocks))
        if offset:
            inverse_parts.insert(0, sp.diags(1.0 / A.diagonal()[:offset]))
        inverse = sp.block_diag(inverse_parts, format='csr')

        return LinearOperator((n, n), matvec=lambda x: inverse @ x, matmat=lambda X: inverse @ X, dtype=float)

    def _factorized_operator(self, A):
        n = A.shape[0]
        perm = self.ordering(A)
        Ap = A[perm][:, perm].tocsc()
        if self.kind == Preconditioner.RegularizedCholesky:
            factor = splu(Ap, permc_spec="NATURAL", diag_pivot_thresh=0, options=dict(SymmetricMode=True))
        else:
            factor = spilu(Ap, drop_tol=self.drop_tol, fill_factor=self.max_fill_factor,
                           permc_spec="NATURAL", diag_pivot_thresh=0, options=dict(SymmetricMode=True))

        def matmat(X):
            X = np.asarray(X, dtype=float)
            Y = np.empty_like(X)
            Y[perm] = factor.solve(np.ascontiguousarray(X[perm]))
            return Y

        def matvec(x):
            return matmat(np.asarray(x).ravel())

        return LinearOperator((n, n), matvec=matvec, rmatvec=matvec, matmat=matmat, dtype=float)
