import logging, os, copy, importlib, csv
import numpy as np
import pandas as pd
import scipy.sparse as sp

class Simulator():
    def __init__(self, cfg):
        # Assertion
        assert hasattr(cfg, 'problem_name')
        assert hasattr(cfg, 'problem_instance')
        assert hasattr(cfg, 'problem_initialpoint')
        assert hasattr(cfg, 'problem_coordinator_name')
        assert hasattr(cfg, 'solver_name')
        assert hasattr(cfg, 'solver_option')
        assert hasattr(cfg, 'output_path')

        # Set the configuration file
        self.cfg = cfg
        self.logger = logging.getLogger(__name__)

    def run(self):
        os.makedirs(self.cfg.output_path, exist_ok=True)
        self.logger.info(f"Running a simulator of class {self.__class__} -- instance: {self.cfg.problem_instance}, initial point: {self.cfg.problem_initialpoint}")

        problem_coordinator = self.set_coordinator()

        # Loop with respect to solver
        outputs = {}
        for name in self.cfg.solver_name:
            # A fresh problem per solver; its sparse factorizations cannot be deep-copied
            self.logger.info(f"Running a problem coordinator of class {problem_coordinator.__class__}")
            problem = problem_coordinator.run()
            self.logger.info(f"Finished running a problem coordinator of class {problem_coordinator.__class__}")

            solver = self.set_solver(name)  # set solver
            self.logger.info(f"Running a solver of class {solver.__class__}")
            output = solver.run(problem)  # run the experiments
            self.save_output(name, output)
            outputs[name] = output
            self.logger.info(f"Finished running a solver of class {solver.__class__}")
        self.logger.info(f"Finished running a simulator of class {self.__class__} -- instance: {self.cfg.problem_instance}, initial point: {self.cfg.problem_initialpoint}")
        return outputs

    def set_coordinator(self):
        cfg = self.cfg
        module_coordinator = importlib.import_module(cfg.problem_coordinator_name)  # dynamic importation
        coordinator = module_coordinator.Coordinator(cfg)
        return coordinator

    def solver_option(self, solver_name):
        solver_option = self.cfg.solver_option

        # Set option for 'solver_name'
        option = copy.deepcopy(dict(solver_option.common))
        if hasattr(solver_option, solver_name):
            specific = dict(getattr(solver_option, solver_name))
            option.update(specific)  # putting common before specific

        option = self.add_solver_option(option)  # add options depending on problem structures.
        return option

    def set_solver(self, solver_name):
        option = self.solver_option(solver_name)

        # Dynamic importation of solver
        module_solver = importlib.import_module(f"sesync.solver.{solver_name}")
        class_solver = getattr(module_solver, solver_name)
        solver = class_solver(option)
        return solver

    # Can be overridden in the subclass.
    # Usually used to add a callback function and other specific functions depending on problem structures.
    def add_solver_option(self, option):
        return option

    def save_output(self, solver_name, output):
        # for loop with respect to attributes in output
        for attr, content in vars(output).items():
            # Set a path where the outputs is stored
            csvpath = f'{self.cfg.output_path}/{solver_name}_{attr}.csv'

            # Store content based on its data type by pandas and numpy libraries.
            # If you require saving data in a different format, override this function to accommodate your specific needs.
            if content is None:
                continue
            elif sp.issparse(content):
                sp.save_npz(f'{self.cfg.output_path}/{solver_name}_{attr}.npz', sp.csr_matrix(content))
            elif isinstance(content, np.ndarray):
                np.savetxt(csvpath, np.atleast_2d(content))
            elif isinstance(content, dict):
                content = {key: value if isinstance(value, list) else [value]
                           for key, value in content.items() if not callable(value)}
                if content:
                    pd.DataFrame(content).to_csv(csvpath, index=False)
            elif isinstance(content, (list, tuple)):
                with open(csvpath, 'w', newline='') as csvfile:
                    writer = csv.writer(csvfile)
                    writer.writerows(content if content and isinstance(content[0], (list, tuple)) else [content])

# Thread counts of the BLAS/OpenMP backends used by numpy and scipy
def set_num_threads(n):
    os.environ.setdefault("OMP_NUM_THREADS", str(n))
    os.environ.setdefault("MKL_NUM_THREADS", str(n))
    os.environ.setdefault("OPENBLAS_NUM_THREADS", str(n))
    os.environ.setdefault("NUMEXPR_NUM_THREADS", str(n))
