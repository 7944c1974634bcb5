"""Flat-vector views over a list of independently shaped parameters.

The optimizers do their vector arithmetic on one contiguous 1-D tensor. The
helpers here gather per-parameter tensors (gradients or values) into that
vector, in the order the parameters were given, and scatter a flat vector
back onto the parameters.
"""
from typing import Callable, List, Optional, Sequence

import torch
from torch import Tensor

__all__ = [
    "numel",
    "gather_flat",
    "flatten_params",
    "unflatten",
    "unflatten_and_apply",
    "add_flat",
    "clone_params",
    "set_params",
    "flat_grads",
]


def numel(params: Sequence[Tensor]) -> int:
    return sum(p.numel() for p in params)


def gather_flat(tensors: Sequence[Optional[Tensor]], params: Sequence[Tensor]) -> Tensor:
    """Concatenate ``tensors`` flattened, in parameter order.

    A ``None`` entry stands for a parameter that received no gradient and is
    replaced by zeros of the parameter's size, dtype and device.
    """
    if len(tensors) != len(params):
        raise ValueError(
            f"expected {len(params)} tensors, one per parameter, got {len(tensors)}"
        )
    views = []
    for t, p in zip(tensors, params):
        if t is None:
            view = p.new_zeros(p.numel())
        else:
            if t.numel() != p.numel():
                raise ValueError(
                    f"tensor of {t.numel()} elements does not match parameter "
                    f"of shape {tuple(p.shape)}"
                )
            view = t.reshape(-1)
        views.append(view)
    return torch.cat(views, 0)


def flatten_params(params: Sequence[Tensor]) -> Tensor:
    return gather_flat([p.detach() for p in params], params)


def _check_length(flat: Tensor, params: Sequence[Tensor]) -> None:
    if flat.dim() != 1:
        raise ValueError(f"flat vector must be 1-D, got shape {tuple(flat.shape)}")
    expected = numel(params)
    if flat.numel() != expected:
        raise ValueError(
            f"flat vector has {flat.numel()} elements, parameters hold {expected}"
        )


def unflatten(flat: Tensor, params: Sequence[Tensor]) -> List[Tensor]:
    """Split ``flat`` into views shaped like each parameter."""
    _check_length(flat, params)
    views = []
    offset = 0
    for p in params:
        n = p.numel()
        views.append(flat.narrow(0, offset, n).view_as(p))
        offset += n
    return views


def unflatten_and_apply(
    flat: Tensor, params: Sequence[Tensor], op: Callable[[Tensor, Tensor], None]
) -> None:
    """Call ``op(param, segment)`` for every parameter.

    ``segment`` is the parameter's slice of ``flat`` reshaped to the
    parameter's shape. The length check happens before any ``op`` runs, so a
    mismatch never leaves the parameters half updated.
    """
    for p, view in zip(params, unflatten(flat, params)):
        op(p, view)


@torch.no_grad()
def add_flat(params: Sequence[Tensor], flat: Tensor, alpha: float = 1.0) -> None:
    """In-place ``param += alpha * segment`` for every parameter."""

    def _add(p, view):
        p.add_(view.to(dtype=p.dtype, device=p.device), alpha=alpha)

    unflatten_and_apply(flat, params, _add)


def clone_params(params: Sequence[Tensor]) -> List[Tensor]:
    return [p.detach().clone(memory_format=torch.contiguous_format) for p in params]


@torch.no_grad()
def set_params(params: Sequence[Tensor], values: Sequence[Tensor]) -> None:
    for p, pdata in zip(params, values):
        p.copy_(pdata)


def flat_grads(
    params: Sequence[Tensor], loss: Tensor, weight_decay: Optional[float] = None
) -> Tensor:
    """Backward pass on ``loss`` returning the flat gradient.

    Gradients are taken with :func:`torch.autograd.grad`, so ``.grad`` on the
    parameters is left untouched. Parameters the loss does not depend on get a
    zero gradient. With ``weight_decay`` the L2 term ``weight_decay * param``
    is folded in.
    """
    grads = torch.autograd.grad(loss, list(params), allow_unused=True)
    flat = gather_flat(grads, params)
    if weight_decay:
        flat = flat.add(flatten_params(params), alpha=weight_decay)
    return flat
