import numpy as np
import scipy.sparse as sp
from scipy.linalg import qr, solve_triangular
from scipy.sparse.csgraph import connected_components
from scipy.sparse.linalg import splu
from scipy.spatial.transform import Rotation

from sesync.solver.utils import RelativePoseMeasurement, ProjectionFactorization, as_enum

def validate_measurements(measurements):
    """
    Check a collection of relative-pose measurements and return (num_poses, dimension).

    The measurement graph must be connected, free of self-loops, and every
    measurement must carry positive precisions and consistent dimensions.
    """
    if len(measurements) == 0:
        raise ValueError("At least one relative pose measurement is required")

    d = measurements[0].dimension
    if d not in (2, 3):
        raise ValueError(f"Only 2D and 3D measurements are supported; got dimension {d}")

    num_poses = 0
    for k, meas in enumerate(measurements):
        if np.shape(meas.R) != (d, d) or np.shape(meas.t) != (d,):
            raise ValueError(f"Measurement {k} has inconsistent dimensions: R{np.shape(meas.R)}, t{np.shape(meas.t)}")
        if meas.i < 0 or meas.j < 0:
            raise ValueError(f"Measurement {k} has a negative pose index")
        if meas.i == meas.j:
            raise ValueError(f"Measurement {k} is a self-loop on pose {meas.i}")
        if not (meas.kappa > 0 and meas.tau > 0):
            raise ValueError(f"Measurement {k} has non-positive precision: kappa={meas.kappa}, tau={meas.tau}")
        num_poses = max(num_poses, meas.i + 1, meas.j + 1)

    if num_poses < 2:
        raise ValueError("At least two poses are required")

    rows = [meas.i for meas in measurements]
    cols = [meas.j for meas in measurements]
    adjacency = sp.coo_matrix((np.ones(len(measurements)), (rows, cols)), shape=(num_poses, num_poses))
    num_components, _ = connected_components(adjacency, directed=False)
    if num_components > 1:
        raise ValueError(f"The measurement graph is disconnected ({num_components} components)")

    return num_poses, d

# Rotational connection Laplacian L(G^rho), a symmetric dn x dn matrix
def construct_rotational_connection_Laplacian(measurements):
    num_poses, d = validate_measurements(measurements)
    rows, cols, vals = [], [], []
    eye = np.eye(d)
    block_rows, block_cols = np.meshgrid(np.arange(d), np.arange(d), indexing='ij')
    block_rows = block_rows.ravel()
    block_cols = block_cols.ravel()

    def add_block(bi, bj, block):
        rows.extend(d * bi + block_rows)
        cols.extend(d * bj + block_cols)
        vals.extend(np.asarray(block).ravel())

    for meas in measurements:
        i, j, kappa = meas.i, meas.j, meas.kappa
        R = np.asarray(meas.R, dtype=float)
        add_block(i, i, kappa * eye)
        add_block(j, j, kappa * eye)
        add_block(i, j, -kappa * R)
        add_block(j, i, -kappa * R.T)

    # Duplicate entries are summed on conversion
    LGrho = sp.coo_matrix((vals, (rows, cols)), shape=(d * num_poses, d * num_poses))
    return LGrho.tocsr()

# Oriented incidence matrix A (n x m): -1 at the tail and +1 at the head of each edge
def construct_oriented_incidence_matrix(measurements):
    num_poses, _ = validate_measurements(measurements)
    m = len(measurements)
    rows = np.empty(2 * m, dtype=int)
    cols = np.repeat(np.arange(m), 2)
    vals = np.tile([-1.0, 1.0], m)
    for e, meas in enumerate(measurements):
        rows[2 * e] = meas.i
        rows[2 * e + 1] = meas.j
    A = sp.coo_matrix((vals, (rows, cols)), shape=(num_poses, m))
    return A.tocsr()

def construct_translational_precision_matrix(measurements):
    tau = np.array([meas.tau for meas in measurements], dtype=float)
    return sp.diags(tau, format='csr')

# Translational data matrix T (m x dn): row e holds -t_ij^T in block column i
def construct_translational_data_matrix(measurements):
    num_poses, d = validate_measurements(measurements)
    m = len(measurements)
    rows = np.repeat(np.arange(m), d)
    cols = np.empty(m * d, dtype=int)
    vals = np.empty(m * d)
    for e, meas in enumerate(measurements):
        cols[d * e: d * (e + 1)] = d * meas.i + np.arange(d)
        vals[d * e: d * (e + 1)] = -np.asarray(meas.t, dtype=float)
    T = sp.coo_matrix((vals, (rows, cols)), shape=(m, d * num_poses))
    return T.tocsr()

def construct_M(measurements):
    """
    Full data matrix of the Explicit formulation, indexed as [t | R]:

        M = [[A Omega A^T,   A Omega T          ],
             [T^T Omega A^T, L(G^rho) + T^T Omega T]]
    """
    A = construct_oriented_incidence_matrix(measurements)
    Omega = construct_translational_precision_matrix(measurements)
    T = construct_translational_data_matrix(measurements)
    LGrho = construct_rotational_connection_Laplacian(measurements)

    AOmega = A @ Omega
    M = sp.bmat([[AOmega @ A.T, AOmega @ T],
                 [T.T @ AOmega.T, LGrho + T.T @ Omega @ T]], format='csr')
    return M

class TranslationalProjection():
    """
    Orthogonal projection onto ker(Abar Omega^(1/2)),

        Pi = I - Omega^(1/2) Abar^T (Abar Omega Abar^T)^(-1) Abar Omega^(1/2),

    where Abar is the oriented incidence matrix with its first row removed.
    The reduced translational Laplacian Abar Omega Abar^T is factored either
    by a symmetric sparse LU (Cholesky) or through a thin QR of its square
    root factor (QR).
    """

    def __init__(self, Abar, Omega, factorization=ProjectionFactorization.Cholesky):
        self.factorization = as_enum(ProjectionFactorization, factorization, 'projection_factorization')
        sqrtOmega = sp.diags(np.sqrt(Omega.diagonal()))
        self.C = (Abar @ sqrtOmega).tocsr()  # (n-1) x m

        if self.factorization == ProjectionFactorization.Cholesky:
            reduced_Laplacian = (self.C @ self.C.T).tocsc()
            # No pivoting away from the diagonal keeps the factorization symmetric
            self._lu = splu(reduced_Laplacian,
                            permc_spec="MMD_AT_PLUS_A",
                            diag_pivot_thresh=0,
                            options=dict(SymmetricMode=True))
            self._Rfactor = None
        else:
            _, R = qr(self.C.T.toarray(), mode='economic')
            self._Rfactor = R
            self._lu = None

    def solve(self, b):
        """Solve (Abar Omega Abar^T) x = b."""
        if self._lu is not None:
            return self._lu.solve(np.asarray(b, dtype=float))
        R = self._Rfactor
        y = solve_triangular(R, b, trans='T')
        return solve_triangular(R, y)

    def project(self, W):
        """Apply Pi to the columns of W (m x k)."""
        return W - self.C.T @ self.solve(self.C @ W)

# Nearest element of SO(d) for every d x d block of 'blocks' (shape (k, d, d))
def project_to_rotation_group(blocks):
    blocks = np.asarray(blocks, dtype=float)
    single = blocks.ndim == 2
    if single:
        blocks = blocks[np.newaxis]
    U, _, Vt = np.linalg.svd(blocks)
    det = np.linalg.det(U @ Vt)
    U[..., :, -1] *= (np.sign(det) + (det == 0))[..., np.newaxis]
    rotations = U @ Vt
    return rotations[0] if single else rotations

def read_g2o_file(path):
    """
    Parse the EDGE_SE2 and EDGE_SE3:QUAT entries of a g2o file.

    Returns (measurements, num_poses).  Vertex and fix entries are ignored.
    """
    measurements = []
    num_poses = 0
    with open(path) as g2ofile:
        for line_number, line in enumerate(g2ofile, start=1):
            tokens = line.split()
            if not tokens:
                continue
            token = tokens[0]
            values = [float(v) for v in tokens[1:]]

            if token == "EDGE_SE2":
                if len(values) != 11:
                    raise ValueError(f"{path}:{line_number}: EDGE_SE2 expects 11 values, got {len(values)}")
                i, j = int(values[0]), int(values[1])
                dx, dy, dtheta = values[2:5]
                I11, I12, I13, I22, I23, I33 = values[5:11]
                R = np.array([[np.cos(dtheta), -np.sin(dtheta)],
                              [np.sin(dtheta), np.cos(dtheta)]])
                t = np.array([dx, dy])
                TranInfo = np.array([[I11, I12], [I12, I22]])
                tau = 2 / np.trace(np.linalg.inv(TranInfo))
                kappa = I33
            elif token == "EDGE_SE3:QUAT":
                if len(values) != 30:
                    raise ValueError(f"{path}:{line_number}: EDGE_SE3:QUAT expects 30 values, got {len(values)}")
                i, j = int(values[0]), int(values[1])
                t = np.array(values[2:5])
                # g2o stores (qx, qy, qz, qw), which is also scipy's scalar-last order
                R = Rotation.from_quat(values[5:9]).as_matrix()
                Info = np.zeros((6, 6))
                Info[np.triu_indices(6)] = values[9:30]
                Info = Info + np.triu(Info, 1).T
                TranCov = np.linalg.inv(Info[:3, :3])
                RotCov = np.linalg.inv(Info[3:, 3:])
                tau = 3 / np.trace(TranCov)
                kappa = 3 / (2 * np.trace(RotCov))
            elif token.startswith("EDGE"):
                raise ValueError(f"{path}:{line_number}: unsupported measurement type {token}")
            else:
                continue

            measurements.append(RelativePoseMeasurement(i=i, j=j, R=R, t=t, kappa=kappa, tau=tau))
            num_poses = max(num_poses, i + 1, j + 1)

    return measurements, num_poses
