"""Curvature history and the L-BFGS two-loop recursion."""
from typing import Dict, Iterator, List, Optional, Tuple

import torch
from torch import Tensor

__all__ = ["History", "two_loop", "dot"]

# added to the curvature denominators
DENOM_EPS = 1e-10


def dot(a: Tensor, b: Tensor) -> float:
    """Dot product of two flat vectors, reduced in float64."""
    return torch.dot(a.to(torch.float64), b.to(torch.float64)).item()


class History:
    """Bounded FIFO of ``(s, y)`` pairs, oldest first.

    ``s`` is a step that was taken and ``y`` the change in gradient it
    produced. Pushing onto a full buffer drops the oldest pair.

    The pairs live in the two lists ``old_stps`` and ``old_dirs``, which may
    be handed in from optimizer state; the buffer updates them in place.
    """

    def __init__(
        self,
        capacity: int,
        old_stps: Optional[List[Tensor]] = None,
        old_dirs: Optional[List[Tensor]] = None,
    ):
        if capacity < 1:
            raise ValueError(f"history size must be at least 1, got {capacity}")
        self.capacity = capacity
        self.old_stps: List[Tensor] = [] if old_stps is None else old_stps
        self.old_dirs: List[Tensor] = [] if old_dirs is None else old_dirs
        if len(self.old_stps) != len(self.old_dirs):
            raise ValueError(
                f"history holds {len(self.old_stps)} steps but {len(self.old_dirs)} gradient deltas"
            )

    def push(self, s: Tensor, y: Tensor) -> None:
        if s.shape != y.shape:
            raise ValueError(
                f"step and gradient delta differ in shape: {tuple(s.shape)} vs {tuple(y.shape)}"
            )
        while len(self.old_stps) >= self.capacity:
            # shift history by one (limited-memory)
            self.old_stps.pop(0)
            self.old_dirs.pop(0)
        self.old_stps.append(s)
        self.old_dirs.append(y)

    def newest(self) -> Optional[Tuple[Tensor, Tensor]]:
        if not self.old_stps:
            return None
        return self.old_stps[-1], self.old_dirs[-1]

    def clear(self) -> None:
        self.old_stps.clear()
        self.old_dirs.clear()

    def __len__(self) -> int:
        return len(self.old_stps)

    def __iter__(self) -> Iterator[Tuple[Tensor, Tensor]]:
        return zip(self.old_stps, self.old_dirs)

    def __reversed__(self) -> Iterator[Tuple[Tensor, Tensor]]:
        return zip(reversed(self.old_stps), reversed(self.old_dirs))

    def state_dict(self) -> Dict[str, List[Tensor]]:
        return {"old_stps": list(self.old_stps), "old_dirs": list(self.old_dirs)}

    def load_state_dict(self, state: Dict[str, List[Tensor]], device=None) -> None:
        self.clear()
        for s, y in zip(state["old_stps"], state["old_dirs"]):
            if device is not None:
                s, y = s.to(device), y.to(device)
            self.push(s, y)


def two_loop(grad: Tensor, history: History, default_gamma: float) -> Tensor:
    """Approximate ``H^-1 @ grad`` from the pairs in ``history``.

    The initial inverse Hessian is ``gamma * I`` with ``gamma = (y.s)/(y.y)``
    taken from the newest pair, or ``default_gamma`` while there is no usable
    pair. With an empty history this is exactly ``default_gamma * grad``.

    Pairs with ``y.s <= 0`` are used as they are.
    """
    gamma = default_gamma
    newest = history.newest()
    if newest is not None:
        s, y = newest
        yy = dot(y, y)
        if yy != 0.0:
            gamma = dot(y, s) / yy + DENOM_EPS

    q = grad.clone(memory_format=torch.contiguous_format)
    al = []
    for s, y in reversed(history):
        rho = 1.0 / (dot(y, s) + DENOM_EPS)
        alpha = rho * dot(s, q)
        q.add_(y, alpha=-alpha)
        al.append((alpha, rho))
    al.reverse()

    q.mul_(gamma)

    for (s, y), (alpha, rho) in zip(history, al):
        beta = rho * dot(y, q)
        q.add_(s, alpha=alpha - beta)
    return q
