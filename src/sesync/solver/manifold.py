import numpy as np
from pymanopt.manifolds import Euclidean, Stiefel

from sesync.solver.utils import Formulation, as_enum

class LiftedSEManifold():
    """
    Product manifold St(d, r)^n (x R^{r x n} in the Explicit formulation).

    A point is stored as a single r x N array: the rotational part is the
    concatenation [Y_1 ... Y_n] of r x d blocks with orthonormal columns, and
    in the Explicit formulation it is preceded by n translational columns.
    Blockwise operations are delegated to pymanopt's Stiefel manifold acting
    on arrays of shape (n, r, d).
    """

    def __init__(self, num_poses, dimension, rank, formulation=Formulation.Simplified):
        if num_poses < 2:
            raise ValueError(f"At least two poses are required; got {num_poses}")
        if rank < dimension:
            raise ValueError(f"The relaxation rank must be at least the dimension ({dimension}); got {rank}")
        self.num_poses = num_poses
        self.dimension = dimension
        self.rank = rank
        self.formulation = as_enum(Formulation, formulation, 'formulation')
        self.stiefel = Stiefel(rank, dimension, k=num_poses)
        self.translations = Euclidean(rank, num_poses) if self.formulation == Formulation.Explicit else None

    @property
    def offset(self):
        # Number of translational columns preceding the rotational blocks
        return self.num_poses if self.formulation == Formulation.Explicit else 0

    @property
    def N(self):
        return self.offset + self.dimension * self.num_poses

    @property
    def dim(self):
        dim = self.stiefel.dim
        if self.translations is not None:
            dim += self.translations.dim
        return dim

    @property
    def typical_dist(self):
        dist = self.stiefel.typical_dist
        if self.translations is not None:
            dist = np.sqrt(dist ** 2 + self.translations.typical_dist ** 2)
        return dist

    def __str__(self):
        return f"Lifted SE({self.dimension}) manifold: St({self.dimension}, {self.rank})^{self.num_poses} ({self.formulation.value})"

    # Split Y (r x N) into the translational part and the (n, r, d) rotational blocks
    def split(self, Y):
        r, n, d = self.rank, self.num_poses, self.dimension
        offset = self.offset
        blocks = Y[:, offset:].reshape(r, n, d).transpose(1, 0, 2)
        translations = Y[:, :offset] if offset else None
        return translations, blocks

    def combine(self, translations, blocks):
        r, n, d = self.rank, self.num_poses, self.dimension
        rotations = blocks.transpose(1, 0, 2).reshape(r, n * d)
        if translations is None:
            return rotations
        return np.hstack([translations, rotations])

    def check_shape(self, Y):
        if np.shape(Y) != (self.rank, self.N):
            raise ValueError(f"Expected an array of shape {(self.rank, self.N)}; got {np.shape(Y)}")

    def inner_product(self, Y, A, B):
        return float(np.tensordot(A, B, axes=A.ndim))

    def norm(self, Y, A):
        return float(np.linalg.norm(A))

    def projection(self, Y, V):
        t_V, V_blocks = self.split(V)
        _, Y_blocks = self.split(Y)
        return self.combine(t_V, self.stiefel.projection(Y_blocks, V_blocks))

    to_tangent_space = projection

    def retraction(self, Y, V):
        t_Y, Y_blocks = self.split(Y)
        t_V, V_blocks = self.split(V)
        blocks = self.stiefel.retraction(Y_blocks, V_blocks)
        translations = self.translations.retraction(t_Y, t_V) if self.translations is not None else None
        return self.combine(translations, blocks)

    def zero_vector(self, Y):
        return np.zeros((self.rank, self.N))

    def random_point(self):
        blocks = self.stiefel.random_point()
        translations = self.translations.random_point() if self.translations is not None else None
        return self.combine(translations, blocks)

    def random_tangent_vector(self, Y):
        V = self.projection(Y, np.random.normal(size=(self.rank, self.N)))
        return V / self.norm(Y, V)

    def euclidean_to_riemannian_gradient(self, Y, euclidean_gradient):
        return self.projection(Y, euclidean_gradient)

    def euclidean_to_riemannian_hessian(self, Y, euclidean_gradient, euclidean_hessian, tangent_vector):
        _, Y_blocks = self.split(Y)
        _, G_blocks = self.split(euclidean_gradient)
        t_H, H_blocks = self.split(euclidean_hessian)
        _, V_blocks = self.split(tangent_vector)
        blocks = self.stiefel.euclidean_to_riemannian_hessian(Y_blocks, G_blocks, H_blocks, V_blocks)
        return self.combine(t_H, blocks)

    # Maximum deviation of the rotational blocks from orthonormality
    def stiefel_violation(self, Y):
        _, Y_blocks = self.split(Y)
        gram = np.transpose(Y_blocks, (0, 2, 1)) @ Y_blocks
        return float(np.max(np.abs(gram - np.eye(self.dimension))))

    def lift(self, Y, rank):
        """Pad Y with zero rows up to the given rank."""
        if rank < Y.shape[0]:
            raise ValueError(f"Cannot lift a rank-{Y.shape[0]} point to rank {rank}")
        return np.vstack([Y, np.zeros((rank - Y.shape[0], Y.shape[1]))])
