import numpy as np
import scipy.sparse as sp
from scipy.sparse.linalg import LinearOperator, splu
from pymanopt.manifolds import SpecialOrthogonalGroup

from sesync.solver import data_matrices
from sesync.solver.manifold import LiftedSEManifold
from sesync.solver.preconditioner import PreconditionerBuilder
from sesync.solver.utils import Formulation, ProjectionFactorization, Preconditioner, as_enum

class SESyncProblem():
    """
    Rank-restricted semidefinite relaxation of special Euclidean synchronization.

    The objective is F(Y) = tr(Y Q Y^T) over the lifted manifold, with Q the
    full data matrix M (Explicit formulation) or the translation-reduced
    matrix L(G^rho) + T^T Omega^(1/2) Pi Omega^(1/2) T (Simplified
    formulation, applied implicitly and never densified).  The relaxation
    rank is mutable configuration; everything else is fixed at construction.
    """

    def __init__(self,
                 measurements,
                 formulation=Formulation.Simplified,
                 projection_factorization=ProjectionFactorization.Cholesky,
                 preconditioner=Preconditioner.RegularizedCholesky,
                 reg_Cholesky_precon_max_condition_number=1e6,
                 max_fill_factor=3,
                 drop_tol=1e-3,
                 initialpoint=None):
        self.measurements = list(measurements)
        self._num_poses, self._dimension = data_matrices.validate_measurements(self.measurements)
        self._formulation = as_enum(Formulation, formulation, 'formulation')
        self.projection_factorization = as_enum(ProjectionFactorization, projection_factorization, 'projection_factorization')
        self.preconditioner_kind = as_enum(Preconditioner, preconditioner, 'preconditioner')
        self.initialpoint = initialpoint

        n, d = self._num_poses, self._dimension
        self.LGrho = data_matrices.construct_rotational_connection_Laplacian(self.measurements)
        A = data_matrices.construct_oriented_incidence_matrix(self.measurements)
        self.Omega = data_matrices.construct_translational_precision_matrix(self.measurements)
        self.T = data_matrices.construct_translational_data_matrix(self.measurements)

        # Omega^(1/2) T, shared by translation recovery and the Simplified product
        self.sqrtOmegaT = (sp.diags(np.sqrt(self.Omega.diagonal())) @ self.T).tocsr()
        self.projection = data_matrices.TranslationalProjection(A[1:, :], self.Omega, self.projection_factorization)

        if self._formulation == Formulation.Explicit:
            self.M = data_matrices.construct_M(self.measurements)
            preconditioning_matrix = self.M
        else:
            self.M = None
            preconditioning_matrix = self.LGrho
        self.preconditioning_matrix = preconditioning_matrix.tocsr()

        self.preconditioner_builder = PreconditionerBuilder(
            self.preconditioner_kind,
            max_condition_number=reg_Cholesky_precon_max_condition_number,
            max_fill_factor=max_fill_factor,
            drop_tol=drop_tol,
        )
        self._preconditioner = None

        self._rank = d
        self._manifold = LiftedSEManifold(n, d, d, self._formulation)

    @property
    def num_poses(self):
        return self._num_poses

    @property
    def dimension(self):
        return self._dimension

    @property
    def num_measurements(self):
        return len(self.measurements)

    @property
    def relaxation_rank(self):
        return self._rank

    @property
    def formulation(self):
        return self._formulation

    @property
    def manifold(self):
        return self._manifold

    @property
    def N(self):
        return self._manifold.N

    def set_relaxation_rank(self, rank):
        if rank < self._dimension:
            raise ValueError(f"The relaxation rank must be at least {self._dimension}; got {rank}")
        self._rank = int(rank)
        self._manifold = LiftedSEManifold(self._num_poses, self._dimension, self._rank, self._formulation)

    def __str__(self):
        return (f"SE-Sync problem: {self._num_poses} poses, {self.num_measurements} measurements, "
                f"d={self._dimension}, r={self._rank}, {self._formulation.value} formulation")

    # Y Q for any k x N array Y
    def data_matrix_product(self, Y):
        Y = np.asarray(Y, dtype=float)
        if self._formulation == Formulation.Explicit:
            return (self.M @ Y.T).T
        W = self.sqrtOmegaT @ Y.T
        PiW = self.projection.project(W)
        return (self.LGrho @ Y.T).T + (self.sqrtOmegaT.T @ PiW).T

    def evaluate_objective(self, Y):
        return float(np.sum(Y * self.data_matrix_product(Y)))

    def Euclidean_gradient(self, Y):
        return 2 * self.data_matrix_product(Y)

    def Riemannian_gradient(self, Y, nablaF_Y=None):
        if nablaF_Y is None:
            nablaF_Y = self.Euclidean_gradient(Y)
        return self._manifold.euclidean_to_riemannian_gradient(Y, nablaF_Y)

    def Riemannian_Hessian_vector_product(self, Y, nablaF_Y, dotY):
        ehess = 2 * self.data_matrix_product(dotY)
        return self._manifold.euclidean_to_riemannian_hessian(Y, nablaF_Y, ehess, dotY)

    def refresh_preconditioner(self):
        self._preconditioner = self.preconditioner_builder.build(
            self.preconditioning_matrix,
            block_size=self._dimension,
            offset=self._manifold.offset,
        )
        return self._preconditioner

    def precondition(self, Y, dotY):
        """Apply the preconditioner P^(-1) to a tangent vector and project back."""
        if self._preconditioner is None:
            self.refresh_preconditioner()
        preconditioned = np.asarray(self._preconditioner @ dotY.T).T
        return self._manifold.projection(Y, preconditioned)

    def retract(self, Y, dotY):
        return self._manifold.retraction(Y, dotY)

    def tangent_space_projection(self, Y, dotY):
        return self._manifold.projection(Y, dotY)

    # Project an arbitrary r x N array onto the manifold
    def project_to_manifold(self, Y):
        return self._manifold.retraction(Y, np.zeros_like(Y))

    def compute_Lambda(self, Y, YQ=None):
        """
        Lagrange multiplier matrix Lambda = SymBlockDiag_d(Y^T Y Q).

        Its translational block (Explicit formulation) is zero, so
        tr(Lambda) = F(Y) - <Y_t, (YQ)_t>.  This equals F(Y) identically in the
        Simplified formulation and wherever the translational gradient
        vanishes (in particular at critical points) in the Explicit one.
        """
        if YQ is None:
            YQ = self.data_matrix_product(Y)
        d, n, offset = self._dimension, self._num_poses, self._manifold.offset
        r = Y.shape[0]
        Y_blocks = Y[:, offset:].reshape(r, n, d).transpose(1, 0, 2)
        G_blocks = YQ[:, offset:].reshape(r, n, d).transpose(1, 0, 2)
        P = np.transpose(Y_blocks, (0, 2, 1)) @ G_blocks
        blocks = 0.5 * (P + np.transpose(P, (0, 2, 1)))
        Lambda_rot = sp.block_diag(list(blocks), format='csr')
        if offset:
            return sp.block_diag([sp.csr_matrix((offset, offset)), Lambda_rot], format='csr')
        return Lambda_rot

    def certificate_matrix(self, Y):
        """
        S = Q - Lambda(Y); a sparse matrix in the Explicit formulation and a
        symmetric LinearOperator in the Simplified formulation.
        """
        Lambda = self.compute_Lambda(Y)
        if self._formulation == Formulation.Explicit:
            return (self.M - Lambda).tocsr()

        def matmat(X):
            X = np.asarray(X, dtype=float)
            return self.data_matrix_product(X.T).T - Lambda @ X

        def matvec(x):
            return matmat(np.asarray(x).reshape(-1, 1)).ravel()

        N = self.N
        return LinearOperator((N, N), matvec=matvec, rmatvec=matvec, matmat=matmat, dtype=float)

    def certificate_preconditioning_matrix(self, Y):
        """Sparse surrogate of S used to build the LOBPCG preconditioner."""
        Lambda = self.compute_Lambda(Y)
        if self._formulation == Formulation.Explicit:
            return (self.M - Lambda).tocsr()
        surrogate = self.LGrho + self.T.T @ self.Omega @ self.T - Lambda
        return surrogate.tocsr()

    def recover_translations(self, R):
        """Optimal translations t (d x n, t_1 = 0) for the rotational estimate R (d x dn)."""
        W = self.sqrtOmegaT @ np.asarray(R).T  # m x d
        tbar = -self.projection.solve(self.projection.C @ W)  # (n-1) x d
        return np.vstack([np.zeros((1, R.shape[0])), np.atleast_2d(tbar)]).T

    def round_solution(self, Y):
        """
        Round a relaxed iterate to xhat = [t | R] in SE(d)^n.

        The rotational part is projected onto its top-d singular subspace,
        reflected if fewer than half of its blocks have positive determinant,
        and projected blockwise onto SO(d); optimal translations are then
        recovered.
        """
        d, n, offset = self._dimension, self._num_poses, self._manifold.offset
        _, s, Vt = np.linalg.svd(Y[:, offset:], full_matrices=False)
        R = s[:d, np.newaxis] * Vt[:d, :]

        blocks = R.reshape(d, n, d).transpose(1, 0, 2)
        num_positive = int(np.sum(np.linalg.det(blocks) > 0))
        if num_positive < n / 2:
            R[-1, :] = -R[-1, :]
            blocks = R.reshape(d, n, d).transpose(1, 0, 2)

        rotations = data_matrices.project_to_rotation_group(blocks)
        R = rotations.transpose(1, 0, 2).reshape(d, n * d)
        t = self.recover_translations(R)
        return np.hstack([t, R])

    def evaluate_rounded_objective(self, xhat):
        if self._formulation == Formulation.Explicit:
            return self.evaluate_objective(xhat)
        return self.evaluate_objective(xhat[:, self._num_poses:])

    def chordal_initialization(self):
        """
        Chordal relaxation: with R_1 = I fixed, minimize tr(R L(G^rho) R^T) over
        unconstrained R and project each block onto SO(d).  Returns a d x N
        estimate in this problem's formulation.
        """
        d, n = self._dimension, self._num_poses
        LGrho = self.LGrho.tocsc()
        Lrr = LGrho[d:, d:]
        Lr0 = LGrho[d:, :d]
        Rbar_T = -splu(Lrr.tocsc()).solve(Lr0.toarray())  # d(n-1) x d
        R = np.hstack([np.eye(d), Rbar_T.T])
        blocks = data_matrices.project_to_rotation_group(R.reshape(d, n, d).transpose(1, 0, 2))
        R = blocks.transpose(1, 0, 2).reshape(d, n * d)
        return self.with_translations(R)

    def random_initialization(self):
        d, n = self._dimension, self._num_poses
        blocks = SpecialOrthogonalGroup(d, k=n).random_point()
        R = blocks.transpose(1, 0, 2).reshape(d, n * d)
        return self.with_translations(R)

    def with_translations(self, R):
        if self._formulation == Formulation.Explicit:
            return np.hstack([self.recover_translations(R), R])
        return R
