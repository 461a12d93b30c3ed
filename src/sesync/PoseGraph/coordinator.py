import os
import hydra
import numpy as np
from omegaconf import OmegaConf

from sesync.base import problem_coordinator
from sesync.solver.data_matrices import read_g2o_file
from sesync.solver.SESync import SESync
from sesync.solver.SESyncProblem import SESyncProblem
from sesync.solver.utils import RelativePoseMeasurement

def parse_measurement_rows(rows, dimension):
    """Inverse of the dataset layout [i, j, kappa, tau, t (d), R (d*d, row-major)]."""
    d = dimension
    rows = np.atleast_2d(rows)
    if rows.shape[1] != 4 + d + d * d:
        raise ValueError(f"Expected {4 + d + d * d} columns per {d}D measurement; got {rows.shape[1]}")
    measurements = []
    for row in rows:
        measurements.append(RelativePoseMeasurement(i=int(row[0]),
                                                    j=int(row[1]),
                                                    kappa=float(row[2]),
                                                    tau=float(row[3]),
                                                    t=np.array(row[4:4 + d]),
                                                    R=np.array(row[4 + d:]).reshape(d, d)))
    return measurements

# Problem coordinator for pose-graph SLAM datasets
class Coordinator(problem_coordinator.Coordinator):

    def run(self):
        option = self.set_problem_option()
        measurements = self.set_measurements()
        problem = SESyncProblem(measurements,
                                formulation=option['formulation'],
                                projection_factorization=option['projection_factorization'],
                                preconditioner=option['preconditioner'],
                                reg_Cholesky_precon_max_condition_number=option['reg_Cholesky_precon_max_condition_number'],
                                max_fill_factor=option['LOBPCG_max_fill_factor'],
                                drop_tol=option['LOBPCG_drop_tol'])
        problem.initialpoint = self.set_initialpoint(problem)
        self.logger.info(f"Coordinated {problem}")
        return problem

    # Problem structure options are shared with the SESync solver section of the configuration
    def set_problem_option(self):
        solver_option = self.cfg.get("solver_option", {})
        if OmegaConf.is_config(solver_option):
            solver_option = OmegaConf.to_container(solver_option, resolve=True)
        option = dict(solver_option.get("common", {}))
        option.update(solver_option.get("SESync", {}) or {})
        # Validation fills the defaults and converts strings to enumerations
        return SESync(option).option

    # Measurements from 'measurements.g2o' if present, otherwise from the generated 'measurements.csv'
    def set_measurements(self):
        dataset_path = self.dataset_path
        g2opath = f'{dataset_path}/measurements.g2o'
        if os.path.exists(g2opath):
            measurements, num_poses = read_g2o_file(g2opath)
            self.logger.info(f"Read {len(measurements)} measurements on {num_poses} poses from {g2opath}")
            return measurements

        dim = int(np.loadtxt(f'{dataset_path}/dim.csv', delimiter=','))
        rows = np.loadtxt(f'{dataset_path}/measurements.csv', delimiter=',', ndmin=2)
        return parse_measurement_rows(rows, dim)

    # Initial rotations 'initx_{problem_initialpoint}.csv' (d x dn); None leaves the choice to the solver
    def set_initialpoint(self, problem):
        name = self.cfg.problem_initialpoint
        path = f'{self.dataset_path}/initx_{name}.csv'
        if name is None or not os.path.exists(path):
            self.logger.info(f"No initial point file {path}; the solver initialization will be used")
            return None
        R = np.loadtxt(path, delimiter=',', ndmin=2)
        return problem.with_translations(R)

@hydra.main(version_base=None, config_path=".", config_name="config_simulation")
def main(cfg):
    posegraph_coordinator = Coordinator(cfg)
    problem = posegraph_coordinator.run()
    print(problem)

if __name__=='__main__':
    main()
