"""
One-dimensional root finding: bracket by doubling/halving, then a
Newton iteration safeguarded by bisection.

Used by the Baum-Welch update of the first category probability, which
has no closed form, but nothing here is specific to the emission model.
"""

import math
from typing import Callable, Tuple

from jahmm.core.errors import RootBracketError


ROOT_MAXITER = 25
ROOT_TOLERANCE = 1e-6

# Enough halvings to reach the smallest subnormal double from 0.5.
MAX_BRACKET_STEPS = 1100


def _evaluate(f: Callable[[float], float], x: float) -> float:
    fx = f(x)
    if not math.isfinite(fx):
        raise RootBracketError(f"objective is not finite at {x!r}: {fx!r}")
    return fx


def bracket_root(f: Callable[[float], float], x0: float = 0.5,
                 lower: float = 0.0, upper: float = 1.0,
                 max_steps: int = MAX_BRACKET_STEPS) -> Tuple[float, float]:
    """
    Find [lo, hi] around a sign change of an increasing function.

    Starting from x0 > 0, doubles x while f(x) < 0 (bracket [x/2, x]), or
    halves it while f(x) > 0 (bracket [x, 2x]).

    Raises:
        RootBracketError: if f is not finite, if the step cap is reached,
            or if the bracket lies outside [lower, upper].
    """
    x = x0
    if _evaluate(f, x) < 0:
        for _ in range(max_steps):
            x *= 2
            if _evaluate(f, x) >= 0:
                break
            if x > upper:
                raise RootBracketError(f"no root below {x!r}")
        else:
            raise RootBracketError(f"no sign change after {max_steps} doublings")
        lo, hi = x / 2, x
    else:
        for _ in range(max_steps):
            x /= 2
            if x == 0.0:
                raise RootBracketError("no sign change above 0")
            if _evaluate(f, x) <= 0:
                break
        else:
            raise RootBracketError(f"no sign change after {max_steps} halvings")
        lo, hi = x, x * 2

    if lo > upper or hi < lower:
        raise RootBracketError(f"bracket [{lo!r}, {hi!r}] outside [{lower!r}, {upper!r}]")
    return lo, hi


def newton_bisect(f: Callable[[float], float], df: Callable[[float], float],
                  lo: float, hi: float, tol: float = ROOT_TOLERANCE,
                  max_iter: int = ROOT_MAXITER) -> float:
    """
    Newton iteration kept inside a shrinking bracket.

    f must be increasing on [lo, hi] with f(lo) <= 0 <= f(hi). Each step
    evaluates f at the current point and shrinks the bracket to the side
    holding the sign change. A Newton proposal outside the bracket, or a
    vanishing derivative, falls back to the midpoint.

    Stops when the bracket is narrower than tol or after max_iter steps.

    Returns:
        The last evaluated point.
    """
    new_x = (lo + hi) / 2
    x = new_x
    for _ in range(max_iter):
        x = new_x if lo <= new_x <= hi else (lo + hi) / 2
        fx = f(x)
        if fx == 0:
            return x
        if fx > 0:
            hi = x
        else:
            lo = x
        if hi - lo < tol:
            break
        dfx = df(x)
        if dfx == 0 or not math.isfinite(dfx):
            new_x = (lo + hi) / 2
        else:
            new_x = x - fx / dfx
    return x


def solve_unit_interval(f: Callable[[float], float], df: Callable[[float], float],
                        x0: float = 0.5, tol: float = ROOT_TOLERANCE,
                        max_iter: int = ROOT_MAXITER) -> float:
    """Root of an increasing function in [0, 1]: bracket, then Newton-bisection."""
    lo, hi = bracket_root(f, x0=x0, lower=0.0, upper=1.0)
    return newton_bisect(f, df, lo, hi, tol=tol, max_iter=max_iter)
