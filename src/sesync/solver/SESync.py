import copy, time, logging, numbers
import numpy as np

from sesync.base.base_solver import Solver
from sesync.solver.LOBPCG import compute_minimum_eigenpair, initial_block
from sesync.solver.RTR import RTR
from sesync.solver.SESyncProblem import SESyncProblem
from sesync.solver.utils import (ConfigurationError, Formulation, Initialization, LevelRecord, Preconditioner,
                                 ProjectionFactorization, RTRStatus, SESyncOutput, SESyncStatus, as_enum)

logger = logging.getLogger(__name__)

# Options passed through to RTR at every level of the staircase
RTR_OPTION_KEYS = ('max_iterations', 'max_tCG_iterations', 'grad_norm_tol', 'preconditioned_grad_norm_tol',
                   'rel_func_decrease_tol', 'stepsize_tol', 'STPCG_kappa', 'STPCG_theta', 'initial_TR_radius',
                   'maximal_TR_radius', 'verbose', 'log_iterates', 'user_function', 'wandb_logging', 'wandb_project')

def escape_saddle(problem, Y, theta, v, gradient_tolerance, preconditioned_gradient_tolerance):
    """
    Construct a strict-descent point at the next level of the staircase from
    the critical point Y (rank r) and a negative-curvature eigenpair
    (theta, v) of its certificate matrix.

    The problem's relaxation rank must already be r + 1.  Y is lifted by a
    zero row and moved along the second-order descent direction
    Ydot = [0; v^T] by a backtracking line search; a candidate Yplus is
    accepted when F(Yplus) < F(Y) and both its gradient norm and its
    preconditioned gradient norm exceed the given tolerances.

    Returns (success, Yplus), with Yplus None on failure.
    """
    r = Y.shape[0]
    if problem.relaxation_rank != r + 1:
        raise ValueError(f"The relaxation rank must be lifted to {r + 1} before escaping a rank-{r} saddle point; "
                         f"got {problem.relaxation_rank}")
    if not theta < 0:
        raise ValueError(f"Saddle escape requires a negative curvature; got theta={theta}")

    manifold = problem.manifold
    Y_augmented = manifold.lift(Y, r + 1)
    Ydot = np.zeros_like(Y_augmented)
    Ydot[r, :] = np.ravel(v)

    cost = problem.evaluate_objective(Y)
    alpha_min = 1e-6
    alpha = max(16 * alpha_min, 100 * gradient_tolerance / np.sqrt(abs(theta)))

    problem.refresh_preconditioner()
    while alpha >= alpha_min:
        Yplus = problem.retract(Y_augmented, alpha * Ydot)
        cost_plus = problem.evaluate_objective(Yplus)
        grad_plus = problem.Riemannian_gradient(Yplus)
        gradnorm_plus = manifold.norm(Yplus, grad_plus)
        preconditioned_gradnorm_plus = manifold.norm(Yplus, problem.precondition(Yplus, grad_plus))

        if (cost_plus < cost and gradnorm_plus > gradient_tolerance
                and preconditioned_gradnorm_plus > preconditioned_gradient_tolerance):
            return True, Yplus
        alpha /= 2

    return False, None

# Certifiably correct special Euclidean synchronization by the Riemannian Staircase
class SESync(Solver):
    def __init__(self, option):
        # Default setting for SE-Sync
        default_option = {
            # Stopping criteria for the Riemannian trust-region method
            'grad_norm_tol': 1e-2,
            'preconditioned_grad_norm_tol': 1e-4,
            'rel_func_decrease_tol': 1e-6,
            'stepsize_tol': 1e-3,
            'max_iterations': 1000,
            'max_tCG_iterations': 10000,
            'max_computation_time': 1800,
            'STPCG_kappa': 0.1,
            'STPCG_theta': 0.5,
            'initial_TR_radius': None,
            'maximal_TR_radius': None,

            # Riemannian Staircase
            'formulation': Formulation.Simplified,
            'r0': 5,
            'rmax': 10,
            'min_eig_num_tol': 1e-3,
            'LOBPCG_block_size': 4,
            'LOBPCG_max_fill_factor': 3,
            'LOBPCG_drop_tol': 1e-3,
            'LOBPCG_max_iterations': 100,
            'projection_factorization': ProjectionFactorization.Cholesky,
            'preconditioner': Preconditioner.RegularizedCholesky,
            'reg_Cholesky_precon_max_condition_number': 1e6,
            'initialization': Initialization.Chordal,

            # Display and logging
            'verbose': False,
            'log_iterates': False,
            'wandb_logging': False,
            'wandb_project': 'sesync',
            'num_threads': 1,

            # Instrumentation hook forwarded to RTR
            'user_function': None,
        }
        # Merge default_option and the argument
        default_option.update(option)  # putting the setting in the default_option before that in the argument
        self.option = self.validate_option(copy.copy(default_option))
        self.log = {}  # will be filled in self.add_log
        self.name = "SESync"

    @staticmethod
    def validate_option(option):
        for key, enum_class in (('formulation', Formulation),
                                ('initialization', Initialization),
                                ('projection_factorization', ProjectionFactorization),
                                ('preconditioner', Preconditioner)):
            option[key] = as_enum(enum_class, option[key], key)

        for key in ('r0', 'rmax', 'max_iterations', 'max_tCG_iterations', 'LOBPCG_block_size',
                    'LOBPCG_max_iterations', 'num_threads'):
            value = option[key]
            if isinstance(value, bool) or not isinstance(value, numbers.Integral) or value < 1:
                raise ConfigurationError(f"'{key}' must be a positive integer; got {value!r}")
            option[key] = int(value)
        if option['r0'] > option['rmax']:
            raise ConfigurationError(f"r0 ({option['r0']}) must not exceed rmax ({option['rmax']})")

        for key in ('grad_norm_tol', 'preconditioned_grad_norm_tol', 'rel_func_decrease_tol', 'stepsize_tol',
                    'min_eig_num_tol', 'LOBPCG_max_fill_factor', 'LOBPCG_drop_tol', 'STPCG_theta'):
            if not isinstance(option[key], numbers.Real) or not option[key] > 0:
                raise ConfigurationError(f"'{key}' must be positive; got {option[key]!r}")
        if not isinstance(option['max_computation_time'], numbers.Real) or not option['max_computation_time'] >= 0:
            raise ConfigurationError(f"'max_computation_time' must be nonnegative; got {option['max_computation_time']!r}")
        if not isinstance(option['STPCG_kappa'], numbers.Real) or not 0 < option['STPCG_kappa'] < 1:
            raise ConfigurationError(f"'STPCG_kappa' must lie in (0, 1); got {option['STPCG_kappa']!r}")
        if not isinstance(option['reg_Cholesky_precon_max_condition_number'], numbers.Real) or not option['reg_Cholesky_precon_max_condition_number'] > 1:
            raise ConfigurationError("'reg_Cholesky_precon_max_condition_number' must exceed 1")
        if option['user_function'] is not None and not callable(option['user_function']):
            raise ConfigurationError("'user_function' must be callable")
        return option

    def check_initialpoint(self, problem, Y0):
        option = self.option
        d, N = problem.dimension, problem.N
        if option['r0'] < d:
            raise ConfigurationError(f"r0 ({option['r0']}) must be at least the dimension d={d}")
        if problem.formulation != option['formulation']:
            raise ConfigurationError(f"The problem uses the {problem.formulation.value} formulation, "
                                     f"but the options request {option['formulation'].value}")
        if Y0 is None:
            return
        Y0 = np.asarray(Y0)
        if Y0.ndim != 2 or Y0.shape[1] != N:
            raise ConfigurationError(f"The initial iterate must have {N} columns; got shape {Y0.shape}")
        if not d <= Y0.shape[0] <= option['rmax']:
            raise ConfigurationError(f"The initial iterate must have between {d} and {option['rmax']} rows; got {Y0.shape[0]}")
        if not np.all(np.isfinite(Y0)):
            raise ConfigurationError("The initial iterate contains non-finite entries")

    def initialize(self, problem, Y0):
        """Build the initial iterate at the starting rank of the staircase."""
        r = max(self.option['r0'], 0 if Y0 is None else np.shape(Y0)[0])
        problem.set_relaxation_rank(r)
        if Y0 is None:
            if self.option['initialization'] == Initialization.Chordal:
                X = problem.chordal_initialization()
            else:
                X = problem.random_initialization()
        else:
            X = np.asarray(Y0, dtype=float)
        return problem.project_to_manifold(problem.manifold.lift(X, r))

    def rtr_option(self, remaining_time):
        option = {key: self.option[key] for key in RTR_OPTION_KEYS}
        option['max_computation_time'] = max(remaining_time, 0)
        return option

    def verify(self, problem, Y):
        option = self.option
        S = problem.certificate_matrix(Y)
        X0 = initial_block(problem.N, option['LOBPCG_block_size'], Y)
        return compute_minimum_eigenpair(
            S,
            X0=X0,
            preconditioning_matrix=problem.certificate_preconditioning_matrix(Y),
            block_size=option['LOBPCG_block_size'],
            max_iterations=option['LOBPCG_max_iterations'],
            tol=option['min_eig_num_tol'],
            max_fill_factor=option['LOBPCG_max_fill_factor'],
            drop_tol=option['LOBPCG_drop_tol'],
        )

    def add_level_log(self, level, start_time, rank, rtr_output, eigenpair, verification_time):
        eval = {"rank": rank,
                "cost": rtr_output.cost,
                "gradnorm": rtr_output.gradnorm,
                "preconditioned_gradnorm": rtr_output.preconditioned_gradnorm}
        solver_status = {"RTR_iterations": rtr_output.iterations,
                         "RTR_status": rtr_output.status.value,
                         "min_eigenvalue": eigenpair.theta if eigenpair is not None else np.nan,
                         "LOBPCG_iterations": eigenpair.iterations if eigenpair is not None else np.nan,
                         "verification_time": verification_time}
        self.add_log(level, start_time, eval, solver_status)

    def run(self, problem, Y0=None):
        option = self.option
        verbose = option['verbose']
        if Y0 is None:
            Y0 = problem.initialpoint
        self.check_initialpoint(problem, Y0)
        self.initialize_wandb(name=self.name)

        self.log = {}
        output = SESyncOutput(name=self.name, x=None, option=copy.copy(option), log=self.log)
        start_time = time.time()
        logger.info(f"Running SE-Sync on {problem}")

        Y = self.initialize(problem, Y0)
        output.initialization_time = time.time() - start_time
        if verbose:
            print(f"Initialization finished in {output.initialization_time:.3f} seconds")

        level = 0
        status = None
        while True:
            r = problem.relaxation_rank
            elapsed = time.time() - start_time
            if elapsed >= option['max_computation_time']:
                status = SESyncStatus.ElapsedTime
                break

            if verbose:
                print(f"\nRIEMANNIAN STAIRCASE (level r = {r}):")
            rtr = RTR(self.rtr_option(option['max_computation_time'] - elapsed))
            rtr_output = rtr.run(problem, Y)
            Y = rtr_output.x
            output.levels.append(LevelRecord.from_rtr_output(r, rtr_output))
            logger.info(f"Level r={r}: RTR stopped ({rtr_output.status.value}) after {rtr_output.iterations} iterations, "
                        f"cost={rtr_output.cost:.6e}, gradnorm={rtr_output.gradnorm:.3e}")

            if rtr_output.status == RTRStatus.ElapsedTime:
                self.add_level_log(level, start_time, r, rtr_output, None, np.nan)
                status = SESyncStatus.ElapsedTime
                break

            verification_start = time.time()
            eigenpair = self.verify(problem, Y)
            verification_time = time.time() - verification_start
            output.verification_times.append(verification_time)
            output.LOBPCG_iters.append(eigenpair.iterations)
            self.add_level_log(level, start_time, r, rtr_output, eigenpair, verification_time)
            logger.info(f"Level r={r}: minimum eigenvalue {eigenpair.theta:.6e} "
                        f"(converged: {eigenpair.converged}, residual {eigenpair.residual_norm:.3e})")
            if verbose:
                print(f"Minimum eigenvalue of the certificate: {eigenpair.theta:.6e}, "
                      f"LOBPCG iterations: {eigenpair.iterations}, verification time: {verification_time:.3f}")
            level += 1

            if not eigenpair.converged:
                status = SESyncStatus.EigImprecision
                break
            if eigenpair.theta >= -option['min_eig_num_tol']:
                status = SESyncStatus.GlobalOpt
                break
            if r >= option['rmax']:
                status = SESyncStatus.MaxRank
                break

            output.escape_direction_curvatures.append(eigenpair.theta)
            problem.set_relaxation_rank(r + 1)
            success, Yplus = escape_saddle(problem, Y, eigenpair.theta, eigenpair.v,
                                           option['grad_norm_tol'], option['preconditioned_grad_norm_tol'])
            if not success:
                problem.set_relaxation_rank(r)
                status = SESyncStatus.SaddlePoint
                break
            Y = Yplus

        output = self.postprocess(problem, Y, status, output, start_time)
        logger.info(f"SE-Sync finished with status {status.value} at rank {output.rank} "
                    f"in {output.total_computation_time:.3f} seconds")
        if verbose:
            print(f"\nSE-Sync finished with status {status.value}; SDPval={output.SDPval:.6e}, "
                  f"Fxhat={output.Fxhat:.6e}, suboptimality bound={output.suboptimality_bound:.3e}")
        return output

    def postprocess(self, problem, Y, status, output, start_time):
        YQ = problem.data_matrix_product(Y)
        Lambda = problem.compute_Lambda(Y, YQ)
        output.x = Y
        output.rank = Y.shape[0]
        output.SDPval = float(np.sum(Y * YQ))
        output.gradnorm = problem.manifold.norm(Y, problem.Riemannian_gradient(Y, 2 * YQ))
        output.Lambda = Lambda
        output.trLambda = float(Lambda.diagonal().sum())
        output.duality_gap = output.SDPval - output.trLambda
        output.xhat = problem.round_solution(Y)
        output.Fxhat = problem.evaluate_rounded_objective(output.xhat)
        output.suboptimality_bound = output.Fxhat - output.trLambda
        output.status = status
        output.total_computation_time = time.time() - start_time
        return output

def sesync(measurements, option=None, Y0=None):
    """Build an SESyncProblem from relative pose measurements and run the Riemannian Staircase."""
    solver = SESync({} if option is None else option)
    option = solver.option
    problem = SESyncProblem(measurements,
                            formulation=option['formulation'],
                            projection_factorization=option['projection_factorization'],
                            preconditioner=option['preconditioner'],
                            reg_Cholesky_precon_max_condition_number=option['reg_Cholesky_precon_max_condition_number'],
                            max_fill_factor=option['LOBPCG_max_fill_factor'],
                            drop_tol=option['LOBPCG_drop_tol'])
    return solver.run(problem, Y0)
