"""Contract shared by the optimizers in this package."""
from dataclasses import dataclass
from typing import Any, Dict, List, Protocol, runtime_checkable

import torch
from torch import Tensor
from torch.optim.optimizer import Optimizer, ParamsT

__all__ = ["Model", "ModelOutcome", "Converged", "Stepped", "LossOptimizer"]


@runtime_checkable
class Model(Protocol):
    """Anything that can recompute its scalar loss.

    The returned tensor must be connected by autograd to the parameters the
    optimizer tracks; the optimizers run the backward pass themselves.
    """

    def loss(self) -> Tensor:
        ...


@dataclass(frozen=True, eq=False)
class ModelOutcome:
    """Result of one optimizer step.

    Attributes:
        loss: for L-BFGS, the loss at the parameters after the step, still
            attached to its autograd graph so it can be fed back into the
            next step. Adamax does not re-evaluate the model and reports the
            loss it was given, computed before its update.
        evals: number of model evaluations the step used.
    """

    loss: Tensor
    evals: int


@dataclass(frozen=True, eq=False)
class Converged(ModelOutcome):
    """The step met one of the configured convergence criteria."""


@dataclass(frozen=True, eq=False)
class Stepped(ModelOutcome):
    """The step was taken and the optimizer has not converged."""


class LossOptimizer(Optimizer):
    """Single parameter group optimizer driven by a loss tensor.

    Subclasses implement :meth:`backward_step`. Parameters must be real
    floating point leaf tensors on one device.
    """

    def __init__(self, params: ParamsT, defaults: Dict[str, Any]):
        super().__init__(params, defaults)

        if len(self.param_groups) != 1:
            raise ValueError(
                f"{type(self).__name__} doesn't support per-parameter options "
                "(parameter groups)"
            )

        self._params: List[Tensor] = self.param_groups[0]["params"]
        devices = {p.device for p in self._params}
        if len(devices) > 1:
            raise ValueError(
                f"all parameters must be on a single device, got {sorted(map(str, devices))}"
            )
        for p in self._params:
            if not torch.is_floating_point(p):
                raise ValueError(
                    f"can only optimize floating point parameters, got {p.dtype}"
                )

    def backward_step(self, loss: Tensor):
        raise NotImplementedError

    def learning_rate(self) -> float:
        return self.param_groups[0]["lr"]

    def set_learning_rate(self, lr: float) -> None:
        if not 0.0 <= lr:
            raise ValueError(f"Invalid learning rate: {lr}")
        self.param_groups[0]["lr"] = lr

    def into_inner(self) -> List[Tensor]:
        """Hand the tracked parameters back to the caller."""
        return list(self._params)
