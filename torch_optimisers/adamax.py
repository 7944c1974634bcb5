import logging
from dataclasses import dataclass, fields

import torch
from torch import Tensor
from torch.optim.optimizer import ParamsT

from .optimizer import LossOptimizer, ModelOutcome, Stepped

__all__ = ["ParamsAdaMax", "Adamax"]

logger = logging.getLogger(__name__)


@dataclass
class ParamsAdaMax:
    """Adamax hyperparameters.

    Args:
        lr: learning rate (default: 1)
        beta_1: decay of the first moment estimate (default: 0.9)
        beta_2: decay of the infinity norm (default: 0.999)
        weight_decay: L2 penalty folded into the gradient (default: 0)
        eps: added to ``|g|`` before taking the maximum (default: 1e-8)
    """

    lr: float = 1.0
    beta_1: float = 0.9
    beta_2: float = 0.999
    weight_decay: float = 0.0
    eps: float = 1e-8


class Adamax(LossOptimizer):
    """Implements the Adamax algorithm (a variant of Adam based on infinity norm).

    It has been proposed in `Adam: A Method for Stochastic Optimization`_.

    The step counter is shared by all parameters and starts at 1.

    Args:
        params (iterable): iterable of parameters to optimize.
        config (ParamsAdaMax): hyperparameters.

    .. _Adam\\: A Method for Stochastic Optimization:
        https://arxiv.org/abs/1412.6980
    """

    def __init__(self, params: ParamsT, config: ParamsAdaMax):
        if not 0.0 <= config.lr:
            raise ValueError(f"Invalid learning rate: {config.lr}")
        if not 0.0 <= config.eps:
            raise ValueError(f"Invalid epsilon value: {config.eps}")
        if not 0.0 <= config.beta_1 < 1.0:
            raise ValueError(f"Invalid beta parameter at index 0: {config.beta_1}")
        if not 0.0 <= config.beta_2 < 1.0:
            raise ValueError(f"Invalid beta parameter at index 1: {config.beta_2}")
        if not 0.0 <= config.weight_decay:
            raise ValueError(f"Invalid weight_decay value: {config.weight_decay}")

        defaults = {f.name: getattr(config, f.name) for f in fields(config)}
        super().__init__(params, defaults)
        # shared step counter, stored with the first parameter
        self.state[self._params[0]]["step"] = 1

    @property
    def t(self) -> int:
        return self.state[self._params[0]]["step"]

    @torch.no_grad()
    def _update(self, grads) -> None:
        group = self.param_groups[0]
        lr = group["lr"]
        beta_1 = group["beta_1"]
        beta_2 = group["beta_2"]
        weight_decay = group["weight_decay"]
        eps = group["eps"]
        bias_correction = 1 - beta_1**self.t

        for p, grad in zip(self._params, grads):
            if grad is None:
                continue
            state = self.state[p]
            if "exp_avg" not in state:
                state["exp_avg"] = torch.zeros_like(p, memory_format=torch.preserve_format)
                state["exp_inf"] = torch.zeros_like(p, memory_format=torch.preserve_format)
            exp_avg, exp_inf = state["exp_avg"], state["exp_inf"]

            if weight_decay != 0:
                grad = grad.add(p, alpha=weight_decay)

            # Update biased first moment estimate.
            exp_avg.mul_(beta_1).add_(grad, alpha=1 - beta_1)
            # Update the exponentially weighted infinity norm.
            torch.maximum(exp_inf.mul_(beta_2), grad.abs().add_(eps), out=exp_inf)

            p.addcdiv_(exp_avg, exp_inf, value=-lr / bias_correction)

        logger.debug("adamax step %d with lr=%g", self.t, lr)
        self.state[self._params[0]]["step"] += 1

    def step(self, closure=None):
        """Performs a single optimization step using ``p.grad``.

        Args:
            closure (Callable, optional): A closure that reevaluates the model
                and returns the loss.
        """
        loss = None
        if closure is not None:
            with torch.enable_grad():
                loss = closure()
        self._update([p.grad for p in self._params])
        return loss

    def backward_step(self, loss: Tensor) -> ModelOutcome:
        """Backpropagate ``loss`` and take one step.

        Adamax never declares convergence, so the outcome is always
        ``Stepped`` with the incoming loss and one evaluation.
        """
        grads = torch.autograd.grad(loss, list(self._params), allow_unused=True)
        self._update(grads)
        return Stepped(loss, 1)
