from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from scipy.optimize import brentq

from .config import BRACKET_EXPANSIONS, SOLVER_MAX_ITER, SOLVER_TOLERANCE

logger = logging.getLogger(__name__)

# Reason codes
CONVERGED = "CONVERGED"
NON_BRACKETABLE = "NON_BRACKETABLE"
MAX_ITERATIONS = "MAX_ITERATIONS"
NON_MONOTONIC_WITHOUT_FALLBACK = "NON_MONOTONIC_WITHOUT_FALLBACK"
FALLBACK_RISKY_DURATION = "FALLBACK_RISKY_DURATION"
AT_OR_ABOVE_RISK_FREE = "AT_OR_ABOVE_RISK_FREE"
MATURED = "MATURED"
DEFAULTED = "DEFAULTED"
ZERO_NOTIONAL = "ZERO_NOTIONAL"
NOT_APPLICABLE = "NOT_APPLICABLE"


@dataclass(frozen=True)
class SolveResult:
    """Outcome of an implied-quantity solve. value is NaN when converged is False."""
    value: float
    converged: bool
    reason: str = CONVERGED
    iterations: int = 0

    @classmethod
    def failed(cls, reason: str, iterations: int = 0) -> "SolveResult":
        return cls(math.nan, False, reason, iterations)

    @classmethod
    def degenerate(cls, reason: str, value: float = 0.0) -> "SolveResult":
        """Well-defined answer for a degenerate instrument (matured, defaulted, ...)."""
        return cls(value, True, reason, 0)


def expand_bracket(
    f: Callable[[float], float],
    lo: float,
    hi: float,
    expansions: int = BRACKET_EXPANSIONS,
    floor: Optional[float] = None,
) -> Optional[Tuple[float, float, float, float]]:
    """
    Widen [lo, hi] geometrically until f changes sign.

    Returns (lo, hi, f(lo), f(hi)) or None when no sign change is found.
    floor bounds the lower end (e.g. yields must stay above -freq).
    """
    flo, fhi = f(lo), f(hi)
    for _ in range(expansions):
        if flo * fhi <= 0:
            return lo, hi, flo, fhi
        width = hi - lo
        if abs(flo) < abs(fhi):
            lo = lo - width
            if floor is not None:
                lo = max(lo, floor)
            flo = f(lo)
        else:
            hi = hi + width
            fhi = f(hi)
    if flo * fhi <= 0:
        return lo, hi, flo, fhi
    return None


def solve_bracketed(
    f: Callable[[float], float],
    lo: float,
    hi: float,
    tol: float = SOLVER_TOLERANCE,
    max_iter: int = SOLVER_MAX_ITER,
    floor: Optional[float] = None,
    expand: bool = True,
    label: str = "",
) -> SolveResult:
    """
    Brent's bracketed root finder (secant / inverse quadratic steps guarded by
    bisection) with automatic bracket expansion. Never raises on numerical failure.
    """
    bracket = expand_bracket(f, lo, hi, floor=floor) if expand else None
    if bracket is None:
        flo, fhi = f(lo), f(hi)
        if flo * fhi > 0:
            logger.warning("%s: root not bracketed on [%g, %g]", label or "solve", lo, hi)
            return SolveResult.failed(NON_BRACKETABLE)
        bracket = (lo, hi, flo, fhi)

    a, b, fa, fb = bracket
    if fa == 0.0:
        return SolveResult(a, True, CONVERGED, 0)
    if fb == 0.0:
        return SolveResult(b, True, CONVERGED, 0)

    root, info = brentq(f, a, b, xtol=tol, maxiter=max_iter, full_output=True, disp=False)
    if not info.converged:
        logger.warning("%s: no convergence after %d iterations", label or "solve", info.iterations)
        return SolveResult.failed(MAX_ITERATIONS, info.iterations)

    logger.debug("%s: root %.12g in %d iterations", label or "solve", root, info.iterations)
    return SolveResult(float(root), True, CONVERGED, info.iterations)
