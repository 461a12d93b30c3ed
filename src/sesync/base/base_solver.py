import time, wandb
from dataclasses import dataclass, field
from typing import Optional, Dict
from abc import ABCMeta

@dataclass
class BaseOutput:
    x: field(default_factory=list)
    option: Optional[Dict]
    log: Optional[Dict]

class Solver(object, metaclass=ABCMeta):
    # Will be overridden in subclasses as needed.
    def __init__(self, solver_option, *args, **kwargs):
        default_option = {
            # Stopping criteria
            'max_computation_time': 1800,
            'max_iterations': 1000,

            # Wandb logging
            'wandb_logging': False,
            'wandb_project': 'sesync',

            # Display setting
            'verbose': False,
        }

        # Merge default_option and the argument
        default_option.update(solver_option)  # putting the setting in the default_option before that in the argument
        self.option = default_option
        self.log = {}

    # Overridden in subclasses
    def run(self, problem, *args, **kwargs):
        pass

    def initialize_wandb(self, name=None):
        # Callables (e.g. user_function) cannot be serialized into the wandb config
        if self.option["wandb_logging"] and wandb.run is None:
            config = {key: value for key, value in self.option.items() if not callable(value)}
            wandb.init(project=self.option["wandb_project"],
                       name=name,
                       config=config)

    # Save optimization process
    def add_log(self, iter, start_time, eval, solver_status):
        # Logging in self.log
        if iter == 0 or "iteration" not in self.log:
            run_time = time.time() - start_time if iter > 0 else 0
            self.log["iteration"] = [iter]
            self.log["time"] = [run_time]
            for key, value in eval.items():
                self.log[f"{key}"] = [value]
            for key, value in solver_status.items():
                self.log[f"{key}"] = [value]
        else:
            self.log["iteration"].append(iter)
            run_time = time.time() - start_time
            self.log["time"].append(run_time)
            for key, value in eval.items():
                self.log[f"{key}"].append(value)
            for key, value in solver_status.items():
                self.log[f"{key}"].append(value)

        # Wandb logging
        if self.option["wandb_logging"]:
            wandblog = {"time": run_time}
            wandblog.update(eval)
            wandblog.update(solver_status)
            wandb.log(wandblog)

    # Each entry of 'stopping_criteria' is (flag, status, msg); the last raised flag wins.
    def check_stoppingcriterion(self, start_time, iter, stopping_criteria):
        option = self.option
        maxtime = option["max_computation_time"]
        maxiter = option["max_iterations"]

        stop = False
        status = None
        reason = None

        run_time = time.time() - start_time
        if run_time >= maxtime:
            stop = True
            status = "ElapsedTime"
            reason = (f"Max time exceeded; runtime={run_time:.2f} and maxtime={maxtime}")
        elif iter >= maxiter:
            stop = True
            status = "IterationLimit"
            reason = (f"Max iteration count reached; maxiter={maxiter} after {run_time:.2f} seconds")

        for flag, flag_status, msg in stopping_criteria:
            if flag:
                stop = True
                status = flag_status
                reason = (f"{msg} after {run_time:.2f} seconds")

        return stop, status, reason
