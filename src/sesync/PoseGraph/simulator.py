import hydra, logging
import pandas as pd

from sesync.base import base_simulator

logger = logging.getLogger(__name__)

# Per-iteration monitoring hook handed to the trust-region solver
def log_iteration(iteration, elapsed_time, Y, cost, gradnorm, step, info):
    logger.debug(f"iteration {iteration} ({elapsed_time:.3f} s): cost={cost:.6e}, gradnorm={gradnorm:.3e}, "
                 f"tCG={info['tCG_iterations']} ({info['tCG_status']}), accepted={info['accepted']}")

class Simulator(base_simulator.Simulator):
    def add_solver_option(self, option):
        if self.cfg.get("log_iterations", False):
            option["user_function"] = log_iteration
        return option

    def run(self):
        base_simulator.set_num_threads(self.cfg.solver_option.common.get("num_threads", 1))
        return super().run()

    # SESync outputs: scalar summary and one CSV per staircase level in addition to the generic attributes
    def save_output(self, solver_name, output):
        summary = {"status": output.status.value,
                   "rank": output.rank,
                   "SDPval": output.SDPval,
                   "gradnorm": output.gradnorm,
                   "trLambda": output.trLambda,
                   "duality_gap": output.duality_gap,
                   "Fxhat": output.Fxhat,
                   "suboptimality_bound": output.suboptimality_bound,
                   "total_computation_time": output.total_computation_time,
                   "initialization_time": output.initialization_time}
        pd.DataFrame([summary]).to_csv(f'{self.cfg.output_path}/{solver_name}_summary.csv', index=False)

        for level in output.levels:
            df = pd.DataFrame({"function_values": level.function_values,
                               "gradient_norms": level.gradient_norms,
                               "preconditioned_gradient_norms": level.preconditioned_gradient_norms,
                               "Hessian_vector_products": level.Hessian_vector_products,
                               "elapsed_optimization_times": level.elapsed_optimization_times,
                               "TR_radius": level.TR_radii})
            df.to_csv(f'{self.cfg.output_path}/{solver_name}_level_{level.rank}.csv', index=False)

        # None entries are skipped by the generic writer
        levels = output.levels
        try:
            output.levels = None
            super().save_output(solver_name, output)
        finally:
            output.levels = levels

@hydra.main(version_base=None, config_path=".", config_name="config_simulation")
def main(cfg):

    # Experiment of pose-graph synchronization
    director = Simulator(cfg)
    director.run()

if __name__=='__main__':
    main()
