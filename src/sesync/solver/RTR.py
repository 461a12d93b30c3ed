import copy, time, logging
import numpy as np

from sesync.base.base_solver import Solver
from sesync.solver.tCG import truncated_conjugate_gradient
from sesync.solver.utils import RTROutput, RTRStatus

logger = logging.getLogger(__name__)

# Riemannian truncated-Newton trust-region method
class RTR(Solver):
    def __init__(self, option):
        # Default setting for the Riemannian trust-region method
        default_option = {
            # Stopping criteria
            'max_computation_time': 1800,
            'max_iterations': 1000,
            'max_tCG_iterations': 10000,
            'grad_norm_tol': 1e-2,
            'preconditioned_grad_norm_tol': 1e-4,
            'rel_func_decrease_tol': 1e-6,
            'stepsize_tol': 1e-3,

            # Truncated conjugate gradient
            'STPCG_kappa': 0.1,
            'STPCG_theta': 0.5,

            # Trust region setting
            'initial_TR_radius': None,  # typical_dist / 8 if None
            'maximal_TR_radius': None,  # typical_dist if None
            'rho': 0.1,  # threshold for the acceptance of the trial point
            'reduction_regularization': 1e3,

            # Display setting
            'verbose': False,

            # Logging
            'log_iterates': False,
            'wandb_logging': False,
            'wandb_project': 'sesync',

            # Instrumentation hook called at each outer iteration:
            # user_function(iteration, elapsed_time, Y, cost, gradnorm, step, info)
            'user_function': None,
        }
        # Merge default_option and the argument
        default_option.update(option)  # putting the setting in the default_option before that in the argument
        self.option = default_option
        self.log = {}  # will be filled in self.add_log
        self.name = "RTR"

    def preprocess(self, problem):
        manifold = problem.manifold
        if self.option['initial_TR_radius'] is None:
            initial_TR_radius = manifold.typical_dist / 8
        else:
            initial_TR_radius = self.option['initial_TR_radius']
        if self.option['maximal_TR_radius'] is None:
            maximal_TR_radius = manifold.typical_dist
        else:
            maximal_TR_radius = self.option['maximal_TR_radius']
        return initial_TR_radius, max(maximal_TR_radius, initial_TR_radius)

    def evaluation(self, problem, Y):
        cost = problem.evaluate_objective(Y)
        nablaF = problem.Euclidean_gradient(Y)
        grad = problem.Riemannian_gradient(Y, nablaF)
        gradnorm = problem.manifold.norm(Y, grad)
        preconditioned_gradnorm = problem.manifold.norm(Y, problem.precondition(Y, grad))
        return cost, nablaF, grad, gradnorm, preconditioned_gradnorm

    def update_TR_radius(self, cost, cost_trial, pred, normstep, TR_radius, maximal_TR_radius):
        # Regularize the reductions against cancellation near convergence
        reduction_regularization = self.option["reduction_regularization"]
        rho = self.option["rho"]
        ared = cost - cost_trial
        red_reg = max(1, abs(cost)) * np.spacing(1) * reduction_regularization
        ared = ared + red_reg
        pred = pred + red_reg

        if ared < 0.25 * pred:
            TR_radiusNext = 0.25 * TR_radius
        elif ared >= 0.75 * pred and np.abs(normstep - TR_radius) <= 1e-6 * TR_radius:
            TR_radiusNext = min(2 * TR_radius, maximal_TR_radius)
        else:
            TR_radiusNext = TR_radius

        # The regularization must not admit a cost increase
        accepted = ared > rho * pred and cost_trial <= cost
        return accepted, TR_radiusNext, ared / pred

    def call_user_function(self, iteration, run_time, Y, cost, gradnorm, step, info):
        user_function = self.option["user_function"]
        if user_function is None:
            return
        try:
            user_function(iteration, run_time, Y.copy(), cost, gradnorm, step.copy(), dict(info))
        except Exception:
            logger.exception("The user function raised an exception; continuing the optimization")

    def run(self, problem, Y0):
        option = self.option
        verbose = option["verbose"]
        log_iterates = option["log_iterates"]
        manifold = problem.manifold
        manifold.check_shape(Y0)
        self.initialize_wandb(name=self.name)

        start_time = time.time()
        self.log = {}
        iterates = []
        Y = np.array(Y0, dtype=float)
        TR_radius, maximal_TR_radius = self.preprocess(problem)
        max_tCG_iterations = option["max_tCG_iterations"]
        theta = option["STPCG_theta"]
        kappa = option["STPCG_kappa"]

        problem.refresh_preconditioner()
        cost, nablaF, grad, gradnorm, preconditioned_gradnorm = self.evaluation(problem, Y)
        total_HVPs = 0
        HVPs_since_log = 0

        def log_entry(iteration):
            nonlocal HVPs_since_log
            eval = {"cost": cost,
                    "gradnorm": gradnorm,
                    "preconditioned_gradnorm": preconditioned_gradnorm}
            solver_status = {"Hessian_vector_products": HVPs_since_log,
                             "TR_radius": TR_radius}
            self.add_log(iteration, start_time, eval, solver_status)
            HVPs_since_log = 0
            if log_iterates:
                iterates.append(Y.copy())

        log_entry(0)
        if verbose:
            print(f"RTR at rank {manifold.rank}: initial cost {cost:.6e}, gradnorm {gradnorm:.3e}, preconditioned gradnorm {preconditioned_gradnorm:.3e}")

        iteration = 0
        status = None
        reason = None
        accepted_any = False
        rel_decrease = np.inf
        normstep = np.inf

        while True:
            stopping_criteria = [
                (accepted_any and normstep < option["stepsize_tol"], RTRStatus.Stepsize,
                 f"Step size tolerance reached; stepsize={normstep:.3e}"),
                (accepted_any and rel_decrease < option["rel_func_decrease_tol"], RTRStatus.RelativeDecrease,
                 f"Relative function decrease tolerance reached; decrease={rel_decrease:.3e}"),
                (preconditioned_gradnorm < option["preconditioned_grad_norm_tol"], RTRStatus.PreconditionedGradient,
                 f"Preconditioned gradient norm tolerance reached; preconditioned gradnorm={preconditioned_gradnorm:.3e}"),
                (gradnorm < option["grad_norm_tol"], RTRStatus.Gradient,
                 f"Gradient norm tolerance reached; gradnorm={gradnorm:.3e}"),
            ]
            stop, status, reason = self.check_stoppingcriterion(start_time, iteration, stopping_criteria)
            if stop:
                status = RTRStatus(status)
                if verbose:
                    print(reason)
                break

            iteration += 1
            problem.refresh_preconditioner()
            hess = lambda x, dotY: problem.Riemannian_Hessian_vector_product(x, nablaF, dotY)
            precon = lambda x, dotY: problem.precondition(x, dotY)
            step, Hstep, num_HVPs, stop_tCG = truncated_conjugate_gradient(
                manifold, hess, Y, grad, TR_radius, theta, kappa, max_tCG_iterations, precon)
            total_HVPs += num_HVPs
            HVPs_since_log += num_HVPs
            normstep_trial = manifold.norm(Y, step)

            # Predicted reduction of the quadratic model
            pred = -(manifold.inner_product(Y, grad, step) + 0.5 * manifold.inner_product(Y, step, Hstep))
            info = {"tCG_iterations": num_HVPs, "tCG_status": stop_tCG, "TR_radius": TR_radius}
            if pred <= 0:
                # The model did not predict any decrease; reject and shrink
                TR_radius = 0.25 * TR_radius
                accepted = False
                info.update({"accepted": False, "ared/pred": np.nan})
            else:
                Y_trial = problem.retract(Y, step)
                cost_trial = problem.evaluate_objective(Y_trial)
                accepted, TR_radius, ratio = self.update_TR_radius(cost, cost_trial, pred, normstep_trial, TR_radius, maximal_TR_radius)
                info.update({"accepted": accepted, "ared/pred": ratio})

                if accepted:
                    accepted_any = True
                    rel_decrease = (cost - cost_trial) / max(abs(cost), np.spacing(1))
                    normstep = normstep_trial
                    Y = Y_trial
                    cost, nablaF, grad, gradnorm, preconditioned_gradnorm = self.evaluation(problem, Y)
                    log_entry(iteration)

            if verbose:
                print(f"Iter: {iteration}, cost: {cost:.6e}, gradnorm: {gradnorm:.3e}, "
                      f"preconditioned gradnorm: {preconditioned_gradnorm:.3e}, step: {normstep_trial:.3e}, "
                      f"TR radius: {TR_radius:.3e}, tCG: {num_HVPs} ({stop_tCG}), accepted: {accepted}")

            self.call_user_function(iteration, time.time() - start_time, Y, cost, gradnorm, step, info)

        output = RTROutput(name=self.name,
                           x=Y,
                           option=copy.copy(self.option),
                           log=self.log,
                           cost=cost,
                           gradnorm=gradnorm,
                           preconditioned_gradnorm=preconditioned_gradnorm,
                           iterations=iteration,
                           Hessian_vector_products=total_HVPs,
                           status=status,
                           reason=reason,
                           iterates=iterates)
        return output
