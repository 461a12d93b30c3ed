"""
Tests for the Riemannian truncated-Newton trust-region method.
"""

import numpy as np
import pytest

from sesync.solver import SESyncProblem
from sesync.solver.RTR import RTR
from sesync.solver.utils import Formulation, Preconditioner, RTRStatus

CONVERGED = {RTRStatus.Gradient, RTRStatus.PreconditionedGradient, RTRStatus.RelativeDecrease, RTRStatus.Stepsize}


def setup_problem(measurements, rank=4, formulation=Formulation.Simplified, preconditioner=Preconditioner.RegularizedCholesky, seed=0):
    problem = SESyncProblem(measurements, formulation=formulation, preconditioner=preconditioner)
    problem.set_relaxation_rank(rank)
    np.random.seed(seed)
    return problem, problem.manifold.random_point()


@pytest.mark.parametrize("preconditioner", list(Preconditioner))
@pytest.mark.parametrize("formulation", list(Formulation))
def test_converges_from_random_point(noisy_graph, tight_option, preconditioner, formulation):
    measurements, _, _ = noisy_graph
    problem, Y0 = setup_problem(measurements, formulation=formulation, preconditioner=preconditioner)
    output = RTR(tight_option).run(problem, Y0)

    assert output.status in CONVERGED
    assert output.cost < problem.evaluate_objective(Y0)
    assert problem.manifold.stiefel_violation(output.x) < 1e-10
    assert output.iterations >= 1
    assert output.Hessian_vector_products == sum(output.log["Hessian_vector_products"])
    if output.status == RTRStatus.Gradient:
        assert output.gradnorm < tight_option['grad_norm_tol']


def test_logged_costs_are_monotone(noisy_graph, tight_option):
    measurements, _, _ = noisy_graph
    problem, Y0 = setup_problem(measurements)
    output = RTR(tight_option).run(problem, Y0)

    costs = np.array(output.log["cost"])
    assert np.all(np.diff(costs) <= 1e-10 * max(1.0, costs[0]))
    assert output.log["iteration"][0] == 0
    for key in ("time", "gradnorm", "preconditioned_gradnorm", "Hessian_vector_products", "TR_radius"):
        assert len(output.log[key]) == len(costs)
    assert output.cost == costs[-1]


def test_iteration_limit(noisy_graph):
    measurements, _, _ = noisy_graph
    problem, Y0 = setup_problem(measurements)
    option = {'max_iterations': 1, 'grad_norm_tol': 1e-12, 'preconditioned_grad_norm_tol': 1e-14,
              'rel_func_decrease_tol': 1e-16, 'stepsize_tol': 1e-16}
    output = RTR(option).run(problem, Y0)
    assert output.status == RTRStatus.IterationLimit
    assert output.iterations == 1


def test_elapsed_time(noisy_graph):
    measurements, _, _ = noisy_graph
    problem, Y0 = setup_problem(measurements)
    output = RTR({'max_computation_time': 0}).run(problem, Y0)
    assert output.status == RTRStatus.ElapsedTime
    assert output.iterations == 0
    assert np.array_equal(output.x, Y0)
    assert "Max time" in output.reason


def test_stops_immediately_at_a_critical_point(saddle_instance, tight_option):
    measurements, Y = saddle_instance
    problem = SESyncProblem(measurements)
    problem.set_relaxation_rank(2)
    output = RTR(tight_option).run(problem, Y)
    assert output.iterations == 0
    assert output.status in (RTRStatus.Gradient, RTRStatus.PreconditionedGradient)
    assert np.isclose(output.cost, 8.0)


def test_user_function_and_iterates(noisy_graph, tight_option):
    measurements, _, _ = noisy_graph
    problem, Y0 = setup_problem(measurements)
    calls = []

    def user_function(iteration, elapsed_time, Y, cost, gradnorm, step, info):
        calls.append((iteration, info))
        Y[:] = 0  # callers receive copies
        if iteration == 1:
            raise RuntimeError("monitoring failure")

    option = dict(tight_option, user_function=user_function, log_iterates=True)
    output = RTR(option).run(problem, Y0)

    assert [call[0] for call in calls] == list(range(1, output.iterations + 1))
    assert {"tCG_iterations", "tCG_status", "TR_radius", "accepted"} <= set(calls[0][1])
    assert len(output.iterates) == len(output.log["cost"])
    assert np.array_equal(output.iterates[0], Y0)
    assert problem.manifold.stiefel_violation(output.x) < 1e-10


def test_wrong_shape_is_rejected(noisy_graph):
    measurements, _, _ = noisy_graph
    problem, Y0 = setup_problem(measurements)
    with pytest.raises(ValueError):
        RTR({}).run(problem, Y0[:-1])


def test_trust_region_radius_update():
    rtr = RTR({})
    # Poor agreement shrinks the radius and rejects the step
    accepted, radius, _ = rtr.update_TR_radius(1.0, 1.5, 0.1, 0.5, 0.5, 10.0)
    assert not accepted and radius == 0.125
    # Very good agreement at the boundary expands it
    accepted, radius, _ = rtr.update_TR_radius(1.0, 0.5, 0.5, 0.5, 0.5, 10.0)
    assert accepted and radius == 1.0
    # Expansion is capped by the maximal radius
    accepted, radius, _ = rtr.update_TR_radius(1.0, 0.5, 0.5, 0.5, 0.5, 0.8)
    assert accepted and radius == 0.8
    # Good agreement inside the region keeps it
    accepted, radius, _ = rtr.update_TR_radius(1.0, 0.5, 0.5, 0.1, 0.5, 10.0)
    assert accepted and radius == 0.5
    # A negligible cost increase is never accepted, even when the regularized ratio is good
    accepted, radius, ratio = rtr.update_TR_radius(1.0, 1.0 + 1e-14, 1e-14, 0.1, 0.5, 10.0)
    assert ratio > rtr.option["rho"]
    assert not accepted


def test_explicit_formulation_with_default_preconditioner(noisy_graph, tight_option):
    measurements, _, _ = noisy_graph
    problem = SESyncProblem(measurements, formulation=Formulation.Explicit)
    problem.set_relaxation_rank(4)
    np.random.seed(1)
    Y0 = problem.manifold.random_point()
    output = RTR(tight_option).run(problem, Y0)

    assert output.status in CONVERGED
    assert output.iterations < 200
    assert output.gradnorm < 1e-3
    # Inner iterations continue past the first step once the gradient is large
    assert max(output.log["Hessian_vector_products"][1:]) > 1
