"""Convergence policies for L-BFGS.

Each policy looks at one flat vector (the gradient or the step just taken)
and reports whether it is small enough. A tolerance of ``0`` disables the
policy since the measures are never negative.
"""
import math
from dataclasses import dataclass

import torch
from torch import Tensor

__all__ = ["GradConv", "MinForce", "RMSForce", "StepConv", "MinStep", "RMSStep"]


def _max_abs(v: Tensor) -> float:
    return v.abs().max().to(torch.float64).item()


def _rms(v: Tensor) -> float:
    return math.sqrt(v.to(torch.float64).square().mean().item())


@dataclass(frozen=True)
class _Tolerance:
    tol: float

    def __post_init__(self):
        if not self.tol >= 0.0:
            raise ValueError(f"Invalid convergence tolerance: {self.tol}")

    def measure(self, v: Tensor) -> float:
        raise NotImplementedError

    def converged(self, v: Tensor) -> bool:
        if v.numel() == 0:
            return False
        return self.measure(v) < self.tol


class GradConv(_Tolerance):
    """Gradient based convergence policy."""


@dataclass(frozen=True)
class MinForce(GradConv):
    """Largest absolute gradient component below ``tol``."""

    def measure(self, v: Tensor) -> float:
        return _max_abs(v)


@dataclass(frozen=True)
class RMSForce(GradConv):
    """Root mean square of the gradient below ``tol``."""

    def measure(self, v: Tensor) -> float:
        return _rms(v)


class StepConv(_Tolerance):
    """Step based convergence policy."""


@dataclass(frozen=True)
class MinStep(StepConv):
    """Largest absolute parameter displacement below ``tol``."""

    def measure(self, v: Tensor) -> float:
        return _max_abs(v)


@dataclass(frozen=True)
class RMSStep(StepConv):
    """Root mean square of the parameter displacement below ``tol``."""

    def measure(self, v: Tensor) -> float:
        return _rms(v)
