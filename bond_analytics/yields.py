from __future__ import annotations

import logging
import numpy as np
import pandas as pd
from typing import List, Optional, Sequence, Tuple

from .accrual import accrual_fraction, accrued_from_cashflows, period_units
from .bonds import Bond, Period
from .cashflows import entitled_cashflows, notional_at
from .config import SOLVER_MAX_ITER, SOLVER_TOLERANCE, YIELD_BRACKET
from .solvers import MATURED, NON_BRACKETABLE, ZERO_NOTIONAL, SolveResult, solve_bracketed
from .utils import yearfrac

logger = logging.getLogger(__name__)

SIMPLE_FINAL_PERIOD = ("US_GOVT", "US_CORP")


def _period(row) -> Period:
    return Period(row["accrual_start"], row["accrual_end"], row["pay_date"], row["cycle_start"], row["cycle_end"])


def period_end_exponents(bond: Bond, cashflows: pd.DataFrame, settle: pd.Timestamp) -> np.ndarray:
    """
    Discounting exponent (in coupon periods) of each period end seen from settle.

    e = w + units of the periods in between, where w is the remaining fraction of
    the current period. Periods that ended on/before settle get 0.
    """
    settle = pd.Timestamp(settle)
    out = np.zeros(len(cashflows), dtype=float)
    elapsed = 0.0
    first = True
    for k, row in enumerate(cashflows.itertuples(index=False)):
        if row.accrual_end <= settle:
            continue
        p = Period(row.accrual_start, row.accrual_end, row.pay_date, row.cycle_start, row.cycle_end)
        start = settle if first else row.accrual_start
        first = False
        elapsed += period_units(p, start, row.accrual_end, bond.day_count, bond.freq)
        out[k] = elapsed
    return out


def redemption_flows(
    bond: Bond,
    cashflows: pd.DataFrame,
    settle: pd.Timestamp,
    date: Optional[pd.Timestamp] = None,
    redemption: float = 100.0,
    entitle: Optional[pd.Timestamp] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    (amounts, exponents) for a holder redeemed on date at `redemption` (clean,
    per 100 of outstanding notional). Mid-period redemptions pay accrued.
    Defaults to maturity at par.
    """
    settle = pd.Timestamp(settle)
    exps = period_end_exponents(bond, cashflows, settle)
    owned = entitled_cashflows(cashflows, settle, entitle)
    owned_by_period = dict(zip(owned["period"], owned["cashflow"]))
    coupon_by_period = dict(zip(owned["period"], owned["coupon"]))
    owned_principal = dict(zip(owned["period"], owned["principal_exchange"]))

    date = bond.maturity if date is None else pd.Timestamp(date)
    amounts: List[float] = []
    exponents: List[float] = []

    for k, row in cashflows.iterrows():
        end = row["accrual_end"]
        if end < date:
            # includes ended-but-unpaid periods, which sit at exponent 0
            if k in owned_by_period:
                amounts.append(owned_by_period[k])
                exponents.append(exps[k])
            continue

        if end == date:
            amount = owned_by_period.get(k, 0.0) + row["notional_after"] * redemption / 100.0
            if date == bond.maturity:
                amount += owned_principal.get(k, 0.0) * (redemption - 100.0) / 100.0
            amounts.append(amount)
            exponents.append(exps[k])
            break

        # redemption falls inside this period: outstanding notional at the
        # redemption price plus the coupon accrued so far
        p = _period(row)
        accrued = 0.0
        if coupon_by_period.get(k, 0.0) != 0.0:
            accrued = row["coupon_rate"] * row["notional_before"] * accrual_fraction(
                p, row["accrual_start"], date, bond.day_count, bond.freq)
        amounts.append(row["notional_before"] * redemption / 100.0 + accrued)
        exponents.append(exps[k] - period_units(p, date, end, bond.day_count, bond.freq))
        break

    return np.array(amounts, dtype=float), np.array(exponents, dtype=float)


def street_pv(amounts: np.ndarray, exponents: np.ndarray, y: float, freq: int, simple: bool = False) -> float:
    base = 1.0 + y / freq
    if simple:
        return float(np.sum(amounts / (1.0 + y * exponents / freq)))
    return float(np.sum(amounts / base ** exponents))


def _uses_simple_final(bond: Bond, exponents: np.ndarray) -> bool:
    return bond.bond_type.upper() in SIMPLE_FINAL_PERIOD and len(exponents) > 0 and exponents.max() <= 1.0


def _jgb_terms(bond, cashflows, settle, date, entitle):
    accrued = 100.0 * accrued_from_cashflows(cashflows, settle, bond.day_count, bond.freq, entitle)
    notional = notional_at(cashflows, settle)
    years = yearfrac(settle, date, "ACT/365")
    return accrued / notional, years


def price_from_yield(
    bond: Bond,
    cashflows: pd.DataFrame,
    settle: pd.Timestamp,
    y: float,
    date: Optional[pd.Timestamp] = None,
    redemption: float = 100.0,
    entitle: Optional[pd.Timestamp] = None,
) -> float:
    """Full price per 100 of outstanding notional implied by a yield under the bond's street convention."""
    settle = pd.Timestamp(settle)
    date = bond.maturity if date is None else pd.Timestamp(date)
    notional = notional_at(cashflows, settle)
    if settle >= bond.maturity or notional <= 0:
        return 0.0

    btype = bond.bond_type.upper()
    if btype == "JGB":
        accrued, years = _jgb_terms(bond, cashflows, settle, date, entitle)
        coupon = 100.0 * bond.coupon_rate
        clean = (coupon + redemption / years) / (y + 1.0 / years)
        return clean + accrued
    if btype == "US_TBILL":
        days = (date - settle).days
        return redemption / (1.0 + y * days / 360.0)

    amounts, exps = redemption_flows(bond, cashflows, settle, date, redemption, entitle)
    pv = street_pv(amounts, exps, y, bond.freq, simple=_uses_simple_final(bond, exps))
    return 100.0 * pv / notional


def yield_to_date(
    bond: Bond,
    cashflows: pd.DataFrame,
    settle: pd.Timestamp,
    full_price: float,
    date: Optional[pd.Timestamp] = None,
    redemption: float = 100.0,
    entitle: Optional[pd.Timestamp] = None,
    tol: float = SOLVER_TOLERANCE,
    max_iter: int = SOLVER_MAX_ITER,
) -> SolveResult:
    """Yield that reprices full_price (per 100 of outstanding notional) to a redemption on date."""
    settle = pd.Timestamp(settle)
    date = bond.maturity if date is None else pd.Timestamp(date)
    if settle >= bond.maturity:
        return SolveResult.degenerate(MATURED)
    notional = notional_at(cashflows, settle)
    if notional <= 0:
        return SolveResult.degenerate(ZERO_NOTIONAL)

    btype = bond.bond_type.upper()
    if btype == "JGB":
        accrued, years = _jgb_terms(bond, cashflows, settle, date, entitle)
        clean = full_price - accrued
        y = (100.0 * bond.coupon_rate + (redemption - clean) / years) / clean
        return SolveResult(float(y), True)
    if btype == "US_TBILL":
        days = (date - settle).days
        y = (redemption / full_price - 1.0) * 360.0 / days
        return SolveResult(float(y), True)

    amounts, exps = redemption_flows(bond, cashflows, settle, date, redemption, entitle)
    simple = _uses_simple_final(bond, exps)
    target = full_price * notional / 100.0
    floor = -bond.freq + 1e-6

    def f(y: float) -> float:
        return street_pv(amounts, exps, y, bond.freq, simple) - target

    lo, hi = YIELD_BRACKET
    return solve_bracketed(f, lo, hi, tol=tol, max_iter=max_iter, floor=floor, label=f"{bond.bond_id} yield")


def exercise_candidates(periods: Sequence, cashflows: pd.DataFrame, settle: pd.Timestamp) -> List[Tuple[pd.Timestamp, float]]:
    """
    Redemption dates (with prices) at which a call/put schedule can be exercised after settle.

    European: window start. Bermudan: coupon dates in the window. American:
    window start plus coupon dates in the window.
    """
    settle = pd.Timestamp(settle)
    ends = list(cashflows["accrual_end"])
    out: List[Tuple[pd.Timestamp, float]] = []
    for p in periods:
        start, end = p.window_start, pd.Timestamp(p.end)
        style = p.style.upper()
        dates = []
        if style in ("EUROPEAN", "AMERICAN"):
            dates.append(start)
        if style in ("BERMUDAN", "AMERICAN"):
            dates.extend(d for d in ends if start <= d <= end)
        for d in sorted(set(dates)):
            if d > settle:
                out.append((d, float(p.price)))
    return sorted(out, key=lambda x: x[0])


def _first_exercise_yield(bond, periods, cashflows, settle, full_price, entitle, tol, max_iter):
    candidates = exercise_candidates(periods, cashflows, settle)
    if not candidates:
        return yield_to_date(bond, cashflows, settle, full_price, None, 100.0, entitle, tol, max_iter), bond.maturity
    date, price = candidates[0]
    return yield_to_date(bond, cashflows, settle, full_price, date, price, entitle, tol, max_iter), date


def yield_to_maturity(bond, cashflows, settle, full_price, entitle=None, tol=SOLVER_TOLERANCE, max_iter=SOLVER_MAX_ITER):
    return yield_to_date(bond, cashflows, settle, full_price, None, 100.0, entitle, tol, max_iter)


def yield_to_call(bond, cashflows, settle, full_price, entitle=None, tol=SOLVER_TOLERANCE, max_iter=SOLVER_MAX_ITER):
    """Yield to the first exercisable call date (maturity when no call remains). Returns (result, date)."""
    return _first_exercise_yield(bond, bond.call_schedule, cashflows, settle, full_price, entitle, tol, max_iter)


def yield_to_put(bond, cashflows, settle, full_price, entitle=None, tol=SOLVER_TOLERANCE, max_iter=SOLVER_MAX_ITER):
    """Yield to the first exercisable put date (maturity when no put remains). Returns (result, date)."""
    return _first_exercise_yield(bond, bond.put_schedule, cashflows, settle, full_price, entitle, tol, max_iter)


def yield_to_worst(
    bond: Bond,
    cashflows: pd.DataFrame,
    settle: pd.Timestamp,
    full_price: float,
    entitle: Optional[pd.Timestamp] = None,
    tol: float = SOLVER_TOLERANCE,
    max_iter: int = SOLVER_MAX_ITER,
    tie_tolerance: float = 1e-10,
) -> Tuple[SolveResult, pd.Timestamp]:
    """
    Minimum yield over maturity and every call candidate date.

    Ties (within tie_tolerance) resolve to the earliest date.
    """
    candidates = exercise_candidates(bond.call_schedule, cashflows, settle)
    candidates = [c for c in candidates if c[0] < bond.maturity] + [(bond.maturity, 100.0)]

    best: Optional[Tuple[SolveResult, pd.Timestamp]] = None
    for date, price in candidates:
        res = yield_to_date(bond, cashflows, settle, full_price, date, price, entitle, tol, max_iter)
        if not res.converged:
            logger.debug("%s: skipping worst candidate %s (%s)", bond.bond_id, date.date(), res.reason)
            continue
        if best is None or res.value < best[0].value - tie_tolerance:
            best = (res, date)

    if best is None:
        return SolveResult.failed(NON_BRACKETABLE), bond.maturity
    return best


def irr(
    bond: Bond,
    cashflows: pd.DataFrame,
    settle: pd.Timestamp,
    full_price: float,
    entitle: Optional[pd.Timestamp] = None,
    tol: float = SOLVER_TOLERANCE,
    max_iter: int = SOLVER_MAX_ITER,
) -> SolveResult:
    """Internal rate of return on actual (rolled, lagged) payment dates, compounded at the coupon frequency."""
    settle = pd.Timestamp(settle)
    if settle >= bond.maturity:
        return SolveResult.degenerate(MATURED)
    notional = notional_at(cashflows, settle)
    if notional <= 0:
        return SolveResult.degenerate(ZERO_NOTIONAL)

    owned = entitled_cashflows(cashflows, settle, entitle)
    amounts = owned["cashflow"].to_numpy(dtype=float)
    times = np.array([yearfrac(settle, d, "ACT/365") for d in owned["pay_date"]], dtype=float)
    target = full_price * notional / 100.0

    def f(y: float) -> float:
        return street_pv(amounts, times * bond.freq, y, bond.freq) - target

    lo, hi = YIELD_BRACKET
    return solve_bracketed(f, lo, hi, tol=tol, max_iter=max_iter, floor=-bond.freq + 1e-6, label=f"{bond.bond_id} irr")
