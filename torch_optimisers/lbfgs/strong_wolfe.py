"""Strong Wolfe line search with cubic interpolation.

Follows the bracketing/zoom scheme of ``lswolfe.lua`` from torch/optim, as
PyTorch's L-BFGS does. All scalars are Python floats.
"""
import logging
import math
from typing import Callable, Optional, Tuple

from torch import Tensor

from .history import dot

__all__ = ["strong_wolfe"]

logger = logging.getLogger(__name__)

ObjFunc = Callable[[float, Tensor], Tuple[float, Tensor]]


def _cubic_interpolate(x1, f1, g1, x2, f2, g2, bounds=None):
    # ported from https://github.com/torch/optim/blob/master/polyinterp.lua
    # Compute bounds of interpolation area
    if bounds is not None:
        xmin_bound, xmax_bound = bounds
    else:
        xmin_bound, xmax_bound = (x1, x2) if x1 <= x2 else (x2, x1)
    midpoint = (xmin_bound + xmax_bound) / 2.0

    # Most common case: cubic interpolation of 2 points
    #   w/ function and derivative values for both
    # Solution in this case (where x2 is the farthest point):
    #   d1 = g1 + g2 - 3*(f1-f2)/(x1-x2);
    #   d2 = sqrt(d1^2 - g1*g2);
    #   min_pos = x2 - (x2 - x1)*((g2 + d2 - d1)/(g2 - g1 + 2*d2));
    #   t_new = min(max(min_pos,xmin_bound),xmax_bound);
    if x1 == x2:
        return midpoint
    d1 = g1 + g2 - 3 * (f1 - f2) / (x1 - x2)
    d2_square = d1 * d1 - g1 * g2
    if not d2_square >= 0:
        return midpoint
    d2 = math.sqrt(d2_square)
    if x1 <= x2:
        denom = g2 - g1 + 2 * d2
        min_pos = x2 - (x2 - x1) * ((g2 + d2 - d1) / denom) if denom != 0 else math.nan
    else:
        denom = g1 - g2 + 2 * d2
        min_pos = x1 - (x1 - x2) * ((g1 + d2 - d1) / denom) if denom != 0 else math.nan
    if not math.isfinite(min_pos):
        return midpoint
    return min(max(min_pos, xmin_bound), xmax_bound)


def _low_high(bracket_f):
    # a non-finite loss always sits at the high end
    f0, f1 = bracket_f[0], bracket_f[-1]
    if not math.isfinite(f1) or (math.isfinite(f0) and f0 <= f1):
        return 0, 1
    return 1, 0


class _Fallback:
    """Remembers where to stop if the search gives up.

    The most recent trial satisfying sufficient decrease wins; without one,
    the lowest loss seen (the starting point included).
    """

    def __init__(self, f, g):
        self.armijo: Optional[Tuple[float, float, Tensor]] = None
        self.lowest: Tuple[float, float, Tensor] = (0.0, f, g)

    def record(self, t, f_new, g_new, armijo_ok):
        if armijo_ok:
            self.armijo = (t, f_new, g_new)
        if f_new < self.lowest[1]:
            self.lowest = (t, f_new, g_new)

    def best(self):
        return self.armijo if self.armijo is not None else self.lowest


def strong_wolfe(
    obj_func: ObjFunc,
    t: float,
    d: Tensor,
    f: float,
    g: Tensor,
    gtd: float,
    c1: float = 1e-4,
    c2: float = 0.9,
    tolerance_change: float = 1e-9,
    max_ls: int = 25,
) -> Tuple[float, Tensor, float, int]:
    """Find a step length along ``d`` meeting the strong Wolfe conditions.

    Args:
        obj_func: ``obj_func(t, d)`` returns the loss and flat gradient at
            ``x + t * d`` and leaves ``x`` unchanged.
        t: initial trial step length.
        d: descent direction.
        f: loss at ``t = 0``.
        g: flat gradient at ``t = 0``.
        gtd: directional derivative ``g . d``.
        c1: sufficient decrease constant.
        c2: curvature constant.
        tolerance_change: smallest bracket width, measured in parameter space.
        max_ls: maximum number of ``obj_func`` evaluations.

    Returns:
        ``(f_new, g_new, t, ls_func_evals)``. Running out of evaluations or
        bracket width is not an error: the result is then the last trial with
        sufficient decrease or, failing that, the lowest loss seen, which can be
        the starting point with ``t = 0``.
    """
    d_norm = d.abs().max().item()

    def sufficient_decrease(t_, f_):
        return math.isfinite(f_) and f_ <= f + c1 * t_ * gtd

    # evaluate objective and gradient using initial step
    f_new, g_new = obj_func(t, d)
    ls_func_evals = 1
    gtd_new = dot(g_new, d)
    fallback = _Fallback(f, g)
    fallback.record(t, f_new, g_new, sufficient_decrease(t, f_new))

    # bracket an interval containing a point satisfying the Wolfe criteria
    t_prev, f_prev, g_prev, gtd_prev = 0.0, f, g, gtd
    done = False
    bracket = None
    ls_iter = 0
    while True:
        # check conditions
        if (
            not sufficient_decrease(t, f_new)
            or not math.isfinite(gtd_new)
            or (ls_iter > 1 and f_new >= f_prev)
        ):
            bracket = [t_prev, t]
            bracket_f = [f_prev, f_new]
            bracket_g = [g_prev, g_new]
            bracket_gtd = [gtd_prev, gtd_new]
            break

        if abs(gtd_new) <= -c2 * gtd:
            bracket = [t]
            bracket_f = [f_new]
            bracket_g = [g_new]
            done = True
            break

        if gtd_new >= 0:
            bracket = [t_prev, t]
            bracket_f = [f_prev, f_new]
            bracket_g = [g_prev, g_new]
            bracket_gtd = [gtd_prev, gtd_new]
            break

        if ls_func_evals >= max_ls:
            break

        # interpolate
        min_step = t + 0.01 * (t - t_prev)
        max_step = t * 10
        tmp = t
        t = _cubic_interpolate(
            t_prev, f_prev, gtd_prev, t, f_new, gtd_new, bounds=(min_step, max_step)
        )

        # next step
        t_prev = tmp
        f_prev = f_new
        g_prev = g_new
        gtd_prev = gtd_new
        f_new, g_new = obj_func(t, d)
        ls_func_evals += 1
        gtd_new = dot(g_new, d)
        fallback.record(t, f_new, g_new, sufficient_decrease(t, f_new))
        ls_iter += 1

    # reached max number of evaluations?
    if bracket is None:
        t, f_new, g_new = fallback.best()
        logger.debug("line search used all %d evaluations while bracketing", max_ls)
        return f_new, g_new, t, ls_func_evals

    # zoom phase: we now have a point satisfying the criteria, or
    # a bracket around it. We refine the bracket until we find the
    # exact point satisfying the criteria
    insuf_progress = False
    # find high and low points in bracket
    low_pos, high_pos = _low_high(bracket_f)
    while not done and ls_func_evals < max_ls:
        # line-search bracket is so small
        if abs(bracket[1] - bracket[0]) * d_norm < tolerance_change:
            break

        # compute new trial value
        t = _cubic_interpolate(
            bracket[0],
            bracket_f[0],
            bracket_gtd[0],
            bracket[1],
            bracket_f[1],
            bracket_gtd[1],
        )

        # test that we are making sufficient progress:
        # in case `t` is so close to boundary, we mark that we are making
        # insufficient progress, and if
        #   + we have made insufficient progress in the last step, or
        #   + `t` is at one of the boundary,
        # we will move `t` to a position which is `0.1 * len(bracket)`
        # away from the nearest boundary point.
        eps = 0.1 * (max(bracket) - min(bracket))
        if min(max(bracket) - t, t - min(bracket)) < eps:
            # interpolation close to boundary
            if insuf_progress or t >= max(bracket) or t <= min(bracket):
                # evaluate at 0.1 away from boundary
                if abs(t - max(bracket)) < abs(t - min(bracket)):
                    t = max(bracket) - eps
                else:
                    t = min(bracket) + eps
                insuf_progress = False
            else:
                insuf_progress = True
        else:
            insuf_progress = False

        # Evaluate new point
        f_new, g_new = obj_func(t, d)
        ls_func_evals += 1
        gtd_new = dot(g_new, d)
        armijo_ok = sufficient_decrease(t, f_new)
        fallback.record(t, f_new, g_new, armijo_ok)

        if not armijo_ok or not math.isfinite(gtd_new) or f_new >= bracket_f[low_pos]:
            # Armijo condition not satisfied or not lower than lowest point
            bracket[high_pos] = t
            bracket_f[high_pos] = f_new
            bracket_g[high_pos] = g_new
            bracket_gtd[high_pos] = gtd_new
            low_pos, high_pos = _low_high(bracket_f)
        else:
            if abs(gtd_new) <= -c2 * gtd:
                # Wolfe conditions satisfied
                done = True
            elif gtd_new * (bracket[high_pos] - bracket[low_pos]) >= 0:
                # old high becomes new low
                bracket[high_pos] = bracket[low_pos]
                bracket_f[high_pos] = bracket_f[low_pos]
                bracket_g[high_pos] = bracket_g[low_pos]
                bracket_gtd[high_pos] = bracket_gtd[low_pos]

            # new point becomes new low
            bracket[low_pos] = t
            bracket_f[low_pos] = f_new
            bracket_g[low_pos] = g_new
            bracket_gtd[low_pos] = gtd_new

    if done:
        t = bracket[low_pos]
        f_new = bracket_f[low_pos]
        g_new = bracket_g[low_pos]
    else:
        t, f_new, g_new = fallback.best()
        logger.debug(
            "line search stopped without a strong Wolfe point after %d evaluations",
            ls_func_evals,
        )
    return f_new, g_new, t, ls_func_evals
