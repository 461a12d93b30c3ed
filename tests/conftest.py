"""
Shared fixtures: synthetic pose graphs with known ground truth and a
two-pose instance with a known saddle point.
"""

import numpy as np
import pytest

from sesync.PoseGraph.generator import random_rotation
from sesync.solver.utils import RelativePoseMeasurement

# Tolerances tight enough for the suboptimality bound to be meaningful on small graphs
TIGHT_OPTION = {
    'grad_norm_tol': 1e-6,
    'preconditioned_grad_norm_tol': 1e-8,
    'rel_func_decrease_tol': 1e-12,
    'stepsize_tol': 1e-8,
    'max_computation_time': 120,
}


def make_pose_graph(num_poses=10, dimension=3, rotation_noise=0.0, translation_noise=0.0,
                    loop_closure_probability=0.3, kappa=1.0, tau=1.0, seed=0):
    """Random walk with odometry, random loop closures and a closing edge (0, n-1).

    Returns (measurements, R, t) with R of shape (n, d, d), t of shape (n, d),
    R[0] = I and t[0] = 0.
    """
    rng = np.random.default_rng(seed)
    d = dimension
    R = [np.eye(d)]
    t = [np.zeros(d)]
    for _ in range(num_poses - 1):
        t.append(t[-1] + R[-1] @ rng.standard_normal(d))
        R.append(R[-1] @ random_rotation(d, 0.5, rng))
    R = np.array(R)
    t = np.array(t)

    edges = [(k, k + 1) for k in range(num_poses - 1)]
    for i in range(num_poses):
        for j in range(i + 2, num_poses):
            if (i, j) == (0, num_poses - 1) or rng.random() < loop_closure_probability:
                edges.append((i, j))

    measurements = []
    for i, j in edges:
        R_ij = R[i].T @ R[j] @ random_rotation(d, rotation_noise, rng)
        t_ij = R[i].T @ (t[j] - t[i]) + translation_noise * rng.standard_normal(d)
        measurements.append(RelativePoseMeasurement(i=i, j=j, R=R_ij, t=t_ij, kappa=kappa, tau=tau))
    return measurements, R, t


@pytest.fixture
def pose_graph_factory():
    return make_pose_graph


@pytest.fixture
def exact_graph():
    return make_pose_graph(num_poses=10, dimension=3, seed=1)


@pytest.fixture
def noisy_graph():
    return make_pose_graph(num_poses=10, dimension=3, rotation_noise=0.05, translation_noise=0.05, seed=2)


@pytest.fixture
def noisy_graph_2d():
    return make_pose_graph(num_poses=12, dimension=2, rotation_noise=0.05, translation_noise=0.05, seed=3)


@pytest.fixture
def saddle_instance():
    """One edge between two planar poses with R = I, t = (1, 0) and unit precisions.

    The translational term vanishes, so Q is the connection Laplacian and
    Y = [I, -I] is a rank-2 critical point with F(Y) = 8, Lambda = 2I and
    certificate eigenvalues {-2, -2, 0, 0}.
    """
    measurements = [RelativePoseMeasurement(i=0, j=1, R=np.eye(2), t=np.array([1.0, 0.0]), kappa=1.0, tau=1.0)]
    Y = np.hstack([np.eye(2), -np.eye(2)])
    return measurements, Y


@pytest.fixture
def tight_option():
    return dict(TIGHT_OPTION)
