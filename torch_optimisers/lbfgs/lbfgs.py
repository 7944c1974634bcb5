import logging
import math
import os
from dataclasses import dataclass, field, fields
from typing import Optional, Union

import torch
from torch import Tensor
from torch.optim.optimizer import ParamsT

from ..flat import add_flat, clone_params, flat_grads, set_params
from ..optimizer import Converged, LossOptimizer, Model, ModelOutcome, Stepped
from .convergence import GradConv, MinForce, MinStep, StepConv
from .history import History, dot, two_loop
from .strong_wolfe import strong_wolfe

__all__ = ["StrongWolfe", "ParamsLBFGS", "Lbfgs"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StrongWolfe:
    """Strong Wolfe line search settings.

    Args:
        c1: sufficient decrease constant (default: 1e-4).
        c2: curvature constant (default: 0.9).
        tolerance: termination tolerance on the step length bracket
            (default: 1e-9).
    """

    c1: float = 1e-4
    c2: float = 0.9
    tolerance: float = 1e-9

    def __post_init__(self):
        if not 0.0 < self.c1 < self.c2 < 1.0:
            raise ValueError(
                f"strong Wolfe constants must satisfy 0 < c1 < c2 < 1, got c1={self.c1}, c2={self.c2}"
            )
        if not 0.0 <= self.tolerance:
            raise ValueError(f"Invalid line search tolerance: {self.tolerance}")


@dataclass
class ParamsLBFGS:
    """L-BFGS hyperparameters.

    Args:
        lr: learning rate (default: 1)
        max_iter: used to derive ``max_eval`` (default: 20)
        max_eval: maximal number of function evaluations per line search
            (default: max_iter * 1.25).
        history_size: update history size (default: 100).
        line_search: ``StrongWolfe(...)`` or None for a fixed step
            (default: None).
        grad_conv: gradient convergence policy (default: ``MinForce(1e-7)``).
        step_conv: step convergence policy (default: ``MinStep(1e-9)``).
        weight_decay: L2 penalty folded into the gradient (default: None).
    """

    lr: float = 1.0
    max_iter: int = 20
    max_eval: Optional[int] = None
    history_size: int = 100
    line_search: Optional[StrongWolfe] = None
    grad_conv: GradConv = field(default_factory=lambda: MinForce(1e-7))
    step_conv: StepConv = field(default_factory=lambda: MinStep(1e-9))
    weight_decay: Optional[float] = None


class Lbfgs(LossOptimizer):
    """Implements L-BFGS algorithm.

    Heavily inspired by `minFunc
    <https://www.cs.ubc.ca/~schmidtm/Software/minFunc.html>`_.

    Each call to :meth:`backward_step` takes one quasi-Newton step: the
    direction comes from the two-loop recursion over the stored history, the
    step length is either the learning rate or the result of a strong Wolfe
    line search, which re-evaluates ``model`` as often as it needs to.

    .. warning::
        This optimizer doesn't support per-parameter options and parameter
        groups (there can be only one).

    .. warning::
        Right now all parameters have to be on a single device.

    .. note::
        This is a very memory intensive optimizer (it requires additional
        ``param_bytes * (2 * history_size + 2)`` bytes). If it doesn't fit in
        memory try reducing the history size, or use a different algorithm.

    Args:
        params (iterable): iterable of parameters to optimize. Parameters must
            be real.
        config (ParamsLBFGS): hyperparameters.
        model (Model): re-evaluates the loss at the current parameters.
    """

    def __init__(self, params: ParamsT, config: ParamsLBFGS, model: Model):
        if not 0.0 <= config.lr:
            raise ValueError(f"Invalid learning rate: {config.lr}")
        if config.max_iter < 1:
            raise ValueError(f"Invalid max_iter: {config.max_iter}")
        max_eval = config.max_eval
        if max_eval is None:
            max_eval = config.max_iter * 5 // 4
        if max_eval < 1:
            raise ValueError(f"Invalid max_eval: {max_eval}")
        if config.history_size < 1:
            raise ValueError(f"Invalid history_size: {config.history_size}")
        if config.line_search is not None and not isinstance(config.line_search, StrongWolfe):
            raise ValueError(f"unsupported line search: {config.line_search!r}")
        if not isinstance(config.grad_conv, GradConv):
            raise ValueError(f"grad_conv must be a GradConv policy, got {config.grad_conv!r}")
        if not isinstance(config.step_conv, StepConv):
            raise ValueError(f"step_conv must be a StepConv policy, got {config.step_conv!r}")
        if config.weight_decay is not None and not 0.0 <= config.weight_decay:
            raise ValueError(f"Invalid weight_decay value: {config.weight_decay}")
        if not callable(getattr(model, "loss", None)):
            raise ValueError(f"model must provide a loss() method, got {type(model).__name__}")

        defaults = {f.name: getattr(config, f.name) for f in fields(config)}
        defaults["max_eval"] = max_eval
        super().__init__(params, defaults)

        self.model = model

        # NOTE: LBFGS has only global state, but we register it as state for
        # the first param, because this helps with casting in load_state_dict
        state = self.state[self._params[0]]
        state["func_evals"] = 0
        state["n_iter"] = 0
        state["prev_flat_grad"] = None
        state["prev_step"] = None
        state["old_dirs"] = []
        state["old_stps"] = []

        # gradient of the loss handed out by the previous step
        self._next_loss: Optional[Tensor] = None
        self._next_grad: Optional[Tensor] = None

    @property
    def history(self) -> History:
        group = self.param_groups[0]
        state = self.state[self._params[0]]
        return History(group["history_size"], state["old_stps"], state["old_dirs"])

    def _gather_flat_grad(self, loss: Tensor) -> Tensor:
        return flat_grads(self._params, loss, self.param_groups[0]["weight_decay"])

    def _evaluate(self):
        with torch.enable_grad():
            loss = self.model.loss()
            flat_grad = self._gather_flat_grad(loss)
        return loss, flat_grad

    def _directional_evaluate(self, x, t, d):
        add_flat(self._params, d, alpha=t)
        try:
            loss, flat_grad = self._evaluate()
        finally:
            set_params(self._params, x)
        return float(loss), flat_grad

    @torch.no_grad()
    def backward_step(self, loss: Tensor) -> ModelOutcome:
        """Perform a single optimization step.

        Args:
            loss (Tensor): the loss at the current parameters, either freshly
                computed by the caller or the one returned in the previous
                outcome.

        Returns:
            ``Converged`` or ``Stepped`` carrying the loss after the step and
            the number of model evaluations used, counting the one that
            produced ``loss``.
        """
        group = self.param_groups[0]
        lr = group["lr"]
        max_eval = group["max_eval"]
        line_search = group["line_search"]
        grad_conv = group["grad_conv"]
        step_conv = group["step_conv"]

        state = self.state[self._params[0]]
        history = self.history
        evals = 1

        if loss is self._next_loss and self._next_grad is not None:
            flat_grad = self._next_grad
        else:
            with torch.enable_grad():
                flat_grad = self._gather_flat_grad(loss)
        self._next_loss = None
        self._next_grad = None

        if grad_conv.converged(flat_grad):
            logger.info("gradient converged before step %d", state["n_iter"])
            return Converged(loss, evals)

        ############################################################
        # compute direction
        ############################################################
        prev_flat_grad = state["prev_flat_grad"]
        prev_step = state["prev_step"]
        if prev_flat_grad is not None and prev_step is not None:
            history.push(prev_step, flat_grad.sub(prev_flat_grad))
        state["prev_flat_grad"] = flat_grad

        q = two_loop(flat_grad, history, lr)
        d = q.neg()
        # directional derivative
        gtd = dot(flat_grad, d)
        if gtd >= 0:
            logger.warning("L-BFGS direction is not a descent direction (g.d = %g)", gtd)

        ############################################################
        # compute step length
        ############################################################
        # reset initial guess for step size
        if state["n_iter"] == 0:
            grad_l1 = flat_grad.abs().sum().to(torch.float64).item()
            t = min(1.0, 1.0 / grad_l1) if grad_l1 > 0 else 1.0
        else:
            t = lr

        non_finite = False
        if line_search is not None:
            x_init = clone_params(self._params)

            def obj_func(t_, d_):
                nonlocal non_finite
                f_, g_ = self._directional_evaluate(x_init, t_, d_)
                if not math.isfinite(f_) or not torch.isfinite(g_).all():
                    non_finite = True
                return f_, g_

            _, next_grad, t, ls_func_evals = strong_wolfe(
                obj_func,
                t,
                d,
                float(loss),
                flat_grad,
                gtd,
                c1=line_search.c1,
                c2=line_search.c2,
                tolerance_change=line_search.tolerance,
                max_ls=max_eval,
            )
            evals += ls_func_evals
            add_flat(self._params, d, alpha=t)
            with torch.enable_grad():
                next_loss = self.model.loss()
        else:
            # no line search, simply move with fixed-step
            add_flat(self._params, d, alpha=t)
            next_loss, next_grad = self._evaluate()
        evals += 1

        step = d.mul(t)
        state["prev_step"] = step
        state["n_iter"] += 1
        state["func_evals"] += evals
        self._next_loss = next_loss
        self._next_grad = next_grad
        logger.debug(
            "step %d: t=%g loss=%g evals=%d history=%d",
            state["n_iter"],
            t,
            float(next_loss),
            evals,
            len(history),
        )

        ############################################################
        # check conditions
        ############################################################
        if non_finite or not math.isfinite(float(next_loss)) or not torch.isfinite(next_grad).all():
            # no convergence verdict on a misbehaving model
            logger.warning(
                "non-finite loss or gradient during step %d (t=%g), not testing convergence",
                state["n_iter"],
                t,
            )
            return Stepped(next_loss, evals)
        if grad_conv.converged(next_grad):
            logger.info("gradient converged after step %d", state["n_iter"])
            return Converged(next_loss, evals)
        if step_conv.converged(step):
            logger.info("step converged after step %d", state["n_iter"])
            return Converged(next_loss, evals)
        return Stepped(next_loss, evals)

    def step(self, closure=None) -> ModelOutcome:
        """Evaluate ``closure`` (or the model) and take one step."""
        if closure is not None:
            with torch.enable_grad():
                loss = closure()
        else:
            with torch.enable_grad():
                loss = self.model.loss()
        return self.backward_step(loss)

    def load_state_dict(self, state_dict) -> None:
        super().load_state_dict(state_dict)
        self._next_loss = None
        self._next_grad = None

    def save_history(self, filename: Union[str, os.PathLike]) -> None:
        """Save LBFGS history to a file."""
        state = self.state[self._params[0]]
        history = {
            **self.history.state_dict(),
            "prev_flat_grad": state["prev_flat_grad"],
            "prev_step": state["prev_step"],
            "n_iter": state["n_iter"],
            "func_evals": state["func_evals"],
        }
        torch.save(history, filename)

    def load_history(self, filename: Union[str, os.PathLike]) -> None:
        """Load LBFGS history from a file.

        A missing file leaves the optimizer as it is.
        """
        try:
            history = torch.load(filename, map_location=self._params[0].device)
        except FileNotFoundError:
            logger.warning("History file %s not found. Starting from scratch.", filename)
            return
        state = self.state[self._params[0]]
        self.history.load_state_dict(history)
        state["prev_flat_grad"] = history.get("prev_flat_grad")
        state["prev_step"] = history.get("prev_step")
        state["n_iter"] = history.get("n_iter", 0)
        state["func_evals"] = history.get("func_evals", 0)
        self._next_loss = None
        self._next_grad = None
        logger.info("LBFGS history loaded from %s", filename)
