from .convergence import GradConv, MinForce, MinStep, RMSForce, RMSStep, StepConv
from .history import History, two_loop
from .lbfgs import Lbfgs, ParamsLBFGS, StrongWolfe
from .strong_wolfe import strong_wolfe

__all__ = [
    "Lbfgs",
    "ParamsLBFGS",
    "StrongWolfe",
    "GradConv",
    "MinForce",
    "RMSForce",
    "StepConv",
    "MinStep",
    "RMSStep",
    "History",
    "two_loop",
    "strong_wolfe",
]
