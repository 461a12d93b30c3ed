import numpy as np
from enum import Enum
from dataclasses import dataclass, field
from typing import Any, List, Optional

from sesync.base.base_solver import BaseOutput

class ConfigurationError(ValueError):
    """Raised when an option record or an initial iterate is malformed."""

class Formulation(str, Enum):
    # Translations analytically eliminated; Y has d*n columns
    Simplified = "Simplified"
    # Translations kept; Y = [t_1 ... t_n | R_1 ... R_n] has n + d*n columns
    Explicit = "Explicit"

class Initialization(str, Enum):
    Chordal = "Chordal"
    Random = "Random"

class ProjectionFactorization(str, Enum):
    Cholesky = "Cholesky"
    QR = "QR"

class Preconditioner(str, Enum):
    Identity = "Identity"
    Jacobi = "Jacobi"
    IncompleteCholesky = "IncompleteCholesky"
    RegularizedCholesky = "RegularizedCholesky"

class SESyncStatus(str, Enum):
    GlobalOpt = "GlobalOpt"
    SaddlePoint = "SaddlePoint"
    EigImprecision = "EigImprecision"
    MaxRank = "MaxRank"
    ElapsedTime = "ElapsedTime"

class RTRStatus(str, Enum):
    Gradient = "Gradient"
    PreconditionedGradient = "PreconditionedGradient"
    RelativeDecrease = "RelativeDecrease"
    Stepsize = "Stepsize"
    IterationLimit = "IterationLimit"
    ElapsedTime = "ElapsedTime"

def as_enum(enum_class, value, name):
    """Convert a string (e.g. from a YAML file) into a member of enum_class."""
    if isinstance(value, enum_class):
        return value
    try:
        return enum_class(str(value))
    except ValueError:
        allowed = ", ".join(member.value for member in enum_class)
        raise ConfigurationError(f"Unknown value {value!r} for '{name}'; expected one of: {allowed}") from None

@dataclass
class RelativePoseMeasurement:
    i: int  # tail
    j: int  # head
    R: np.ndarray
    t: np.ndarray
    kappa: float  # rotational precision
    tau: float  # translational precision

    @property
    def dimension(self):
        return len(self.t)

@dataclass
class RTROutput(BaseOutput):
    name: str = "RTR"
    cost: float = np.nan
    gradnorm: float = np.nan
    preconditioned_gradnorm: float = np.nan
    iterations: int = 0
    Hessian_vector_products: int = 0
    status: Optional[RTRStatus] = None
    reason: Optional[str] = None
    iterates: List[Any] = field(default_factory=list)

@dataclass
class LevelRecord:
    rank: int
    function_values: List[float]
    gradient_norms: List[float]
    preconditioned_gradient_norms: List[float]
    Hessian_vector_products: List[int]
    elapsed_optimization_times: List[float]
    TR_radii: List[float]
    status: RTRStatus
    iterates: List[Any] = field(default_factory=list)

    @classmethod
    def from_rtr_output(cls, rank, output):
        log = output.log
        return cls(rank=rank,
                   function_values=list(log["cost"]),
                   gradient_norms=list(log["gradnorm"]),
                   preconditioned_gradient_norms=list(log["preconditioned_gradnorm"]),
                   Hessian_vector_products=list(log["Hessian_vector_products"]),
                   elapsed_optimization_times=list(log["time"]),
                   TR_radii=list(log["TR_radius"]),
                   status=output.status,
                   iterates=list(output.iterates))

@dataclass
class EigenpairResult:
    theta: float
    v: np.ndarray
    iterations: int
    converged: bool
    residual_norm: float

@dataclass
class SESyncOutput(BaseOutput):
    name: str = "SESync"
    SDPval: float = np.nan
    gradnorm: float = np.nan
    Lambda: Any = None
    trLambda: float = np.nan
    duality_gap: float = np.nan
    Fxhat: float = np.nan
    xhat: Any = None
    suboptimality_bound: float = np.nan
    total_computation_time: float = 0.0
    initialization_time: float = 0.0
    levels: List[LevelRecord] = field(default_factory=list)
    escape_direction_curvatures: List[float] = field(default_factory=list)
    LOBPCG_iters: List[int] = field(default_factory=list)
    verification_times: List[float] = field(default_factory=list)
    status: Optional[SESyncStatus] = None
    rank: int = 0

    @property
    def Yopt(self):
        return self.x

    @property
    def function_values(self):
        return [level.function_values for level in self.levels]

    @property
    def gradient_norms(self):
        return [level.gradient_norms for level in self.levels]

    @property
    def preconditioned_gradient_norms(self):
        return [level.preconditioned_gradient_norms for level in self.levels]

    @property
    def Hessian_vector_products(self):
        return [level.Hessian_vector_products for level in self.levels]

    @property
    def elapsed_optimization_times(self):
        return [level.elapsed_optimization_times for level in self.levels]

    @property
    def iterates(self):
        return [level.iterates for level in self.levels]
