from .adamax import Adamax, ParamsAdaMax
from .lbfgs import (
    GradConv,
    Lbfgs,
    MinForce,
    MinStep,
    ParamsLBFGS,
    RMSForce,
    RMSStep,
    StepConv,
    StrongWolfe,
)
from .optimizer import Converged, LossOptimizer, Model, ModelOutcome, Stepped

__version__ = "0.1.0"
