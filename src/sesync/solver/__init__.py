from sesync.solver.utils import (ConfigurationError, Formulation, Initialization, ProjectionFactorization,
                                 Preconditioner, SESyncStatus, RTRStatus, RelativePoseMeasurement,
                                 SESyncOutput, RTROutput, LevelRecord, EigenpairResult)
from sesync.solver.SESyncProblem import SESyncProblem
from sesync.solver.SESync import SESync, sesync, escape_saddle
