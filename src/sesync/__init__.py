from sesync.solver import *  # noqa: F401,F403
from sesync.solver.data_matrices import read_g2o_file

__version__ = "0.1.0"
