from __future__ import annotations

import logging
import math
import numpy as np
import pandas as pd
from typing import Callable, Optional

from scipy.optimize import minimize_scalar

from .cashflows import entitled_cashflows
from .config import (
    CDS_PREMIUM_DAY_COUNT,
    CDS_PREMIUM_FREQ,
    CDS_SPREAD_CAP,
    RECOVERY_STEPS_PER_YEAR,
    SOLVER_MAX_ITER,
    SOLVER_TOLERANCE,
    SPREAD_BRACKET,
)
from .curves import DiscountCurve, SurvivalCurve
from .solvers import (
    AT_OR_ABOVE_RISK_FREE,
    FALLBACK_RISKY_DURATION,
    NON_MONOTONIC_WITHOUT_FALLBACK,
    SolveResult,
    solve_bracketed,
)
from .utils import yearfrac

logger = logging.getLogger(__name__)


def _premium_dates(settle: pd.Timestamp, maturity: pd.Timestamp, freq: int = CDS_PREMIUM_FREQ):
    months = 12 // freq
    dates = [pd.Timestamp(maturity)]
    k = 1
    while True:
        d = pd.Timestamp(maturity) - pd.DateOffset(months=k * months)
        if d <= settle:
            break
        dates.append(d)
        k += 1
    dates.reverse()
    return dates


class CashflowLegs:
    """
    Discounting legs of a bond seen from settle, precomputed once so spread
    solves only re-evaluate exponentials and survival probabilities.

    Amounts are per unit of initial notional. A parallel spread z discounts
    with D(t)/D(settle) * exp(-z * (tau(t) - tau(settle))), i.e. the curve
    shifted by z in cc zero rates.
    """

    def __init__(
        self,
        cashflows: pd.DataFrame,
        curve: DiscountCurve,
        settle: pd.Timestamp,
        entitle: Optional[pd.Timestamp] = None,
        steps_per_year: int = RECOVERY_STEPS_PER_YEAR,
    ):
        self.curve = curve
        self.settle = pd.Timestamp(settle)
        self.maturity = pd.Timestamp(cashflows["accrual_end"].iloc[-1])

        owned = entitled_cashflows(cashflows, self.settle, entitle)
        self.pay_dates = list(owned["pay_date"])
        self.amounts = owned["cashflow"].to_numpy(dtype=float)

        df_settle = curve.discount_factor(self.settle)
        self.tau_settle = float(curve.times([self.settle])[0])
        self.pay_dfs = curve.df(self.pay_dates) / df_settle
        self.pay_taus = curve.times(self.pay_dates) - self.tau_settle

        # default grid over every remaining accrual period, recovery on the notional accruing in it
        live = cashflows[cashflows["accrual_end"] > self.settle]
        starts, ends, notionals = [], [], []
        for row in live.itertuples(index=False):
            a = max(row.accrual_start, self.settle)
            b = row.accrual_end
            n = max(1, int(math.ceil(yearfrac(a, b, "ACT/365") * steps_per_year)))
            grid = pd.date_range(a, b, periods=n + 1).normalize().unique()
            if len(grid) < 2:
                grid = pd.DatetimeIndex([a, b])
            starts.extend(grid[:-1])
            ends.extend(grid[1:])
            notionals.extend([row.notional_before] * (len(grid) - 1))

        self.grid_starts = starts
        self.grid_ends = ends
        self.grid_notionals = np.array(notionals, dtype=float)
        mids = [s + (e - s) / 2 for s, e in zip(starts, ends)]
        self.mid_dfs = curve.df(mids) / df_settle
        self.mid_taus = curve.times(mids) - self.tau_settle

        self.premium_dates = _premium_dates(self.settle, self.maturity)
        prev = [self.settle] + self.premium_dates[:-1]
        self.premium_accruals = np.array(
            [yearfrac(a, b, CDS_PREMIUM_DAY_COUNT) for a, b in zip(prev, self.premium_dates)], dtype=float)
        self.premium_dfs = curve.df(self.premium_dates) / df_settle
        self.premium_taus = curve.times(self.premium_dates) - self.tau_settle

    def _survival(self, survival: SurvivalCurve, dates) -> np.ndarray:
        q_settle = float(survival.survival_probability([self.settle])[0])
        return survival.survival_probability(dates) / q_settle

    def pv(self, z: float = 0.0, survival: Optional[SurvivalCurve] = None, recovery: float = 0.0) -> float:
        """PV at settle: cashflows weighted by survival, plus recovery on default."""
        dfs = self.pay_dfs * np.exp(-z * self.pay_taus)
        if survival is None:
            return float(np.sum(self.amounts * dfs))

        q_pay = self._survival(survival, self.pay_dates)
        pv = float(np.sum(self.amounts * dfs * q_pay))
        if recovery > 0.0 and len(self.grid_starts):
            q_start = self._survival(survival, self.grid_starts)
            q_end = self._survival(survival, self.grid_ends)
            mid_dfs = self.mid_dfs * np.exp(-z * self.mid_taus)
            pv += recovery * float(np.sum(self.grid_notionals * mid_dfs * (q_start - q_end)))
        return pv

    def risky_annuity(self, survival: Optional[SurvivalCurve] = None, z: float = 0.0) -> float:
        """Risky duration of a CDS premium leg to the bond's maturity (per unit spread)."""
        dfs = self.premium_dfs * np.exp(-z * self.premium_taus)
        if survival is not None:
            dfs = dfs * self._survival(survival, self.premium_dates)
        return float(np.sum(self.premium_accruals * dfs))


def z_spread(
    legs: CashflowLegs,
    target: float,
    tol: float = SOLVER_TOLERANCE,
    max_iter: int = SOLVER_MAX_ITER,
    label: str = "z-spread",
) -> SolveResult:
    """Parallel cc spread over the discount curve that reprices target (per unit initial notional). Survival is ignored."""
    lo, hi = SPREAD_BRACKET
    return solve_bracketed(lambda z: legs.pv(z) - target, lo, hi, tol, max_iter, label=label)


# model(z, survival): value per unit initial notional at settle with the curve
# shifted by z and the given survival curve (None = risk-free)
SpreadModel = Callable[[float, Optional[SurvivalCurve]], float]


def _default_model(legs: CashflowLegs, recovery: float) -> SpreadModel:
    return lambda z, survival: legs.pv(z, survival, recovery)


def r_spread(
    legs: CashflowLegs,
    target: float,
    survival: Optional[SurvivalCurve],
    recovery: float,
    tol: float = SOLVER_TOLERANCE,
    max_iter: int = SOLVER_MAX_ITER,
    label: str = "r-spread",
    model: Optional[SpreadModel] = None,
    floor: Optional[float] = None,
) -> SolveResult:
    """Parallel spread on top of risky (survival + recovery) discounting."""
    model = model or _default_model(legs, recovery)
    lo, hi = SPREAD_BRACKET
    if floor is not None:
        lo = max(lo, floor)
    return solve_bracketed(lambda r: model(r, survival) - target, lo, hi, tol, max_iter, floor=floor, label=label)


def _risky_duration_fallback(legs, target, rf, recovery, val_date, tol, max_iter, label) -> SolveResult:
    """
    Solve rf - P = s * RD(s): the price shortfall to risk-free is carried as a
    running spread on the risky annuity at that same spread.
    """
    shortfall = rf - target

    def g(s: float) -> float:
        return s * legs.risky_annuity(SurvivalCurve.from_cds_spread(val_date, s, recovery)) - shortfall

    # s * RD(s) peaks and then decays on a discrete premium schedule: grow the
    # bracket from a small spread so the first crossing is found
    res = solve_bracketed(g, 0.0, 0.05, tol, max_iter, floor=0.0, label=label + " fallback")
    if not res.converged:
        return res
    logger.warning("%s: bracketed solve failed, risky-duration fallback gives %.6f", label, res.value)
    return SolveResult(res.value, True, FALLBACK_RISKY_DURATION, res.iterations)


def implied_cds_level(
    legs: CashflowLegs,
    target: float,
    recovery: float,
    val_date: pd.Timestamp,
    fallback: bool = True,
    tol: float = SOLVER_TOLERANCE,
    max_iter: int = SOLVER_MAX_ITER,
    label: str = "cds level",
    model: Optional[SpreadModel] = None,
) -> SolveResult:
    """
    Flat CDS level whose survival curve (credit triangle) reprices target.

    Risky price vs spread is not monotonic: it falls to a minimum and then
    rises towards recovery. Targets at or above the risk-free price give 0; on
    the falling branch the root left of the minimum is taken; below the
    reachable minimum the risky-duration fallback applies. model prices the
    bond (a lattice for bonds with options); legs alone discount cashflows.
    """
    model = model or _default_model(legs, recovery)
    rf = model(0.0, None)
    if target >= rf:
        return SolveResult(0.0, True, AT_OR_ABOVE_RISK_FREE)

    def f(s: float) -> float:
        return model(0.0, SurvivalCurve.from_cds_spread(val_date, s, recovery)) - target

    upper = CDS_SPREAD_CAP
    if f(upper) > 0.0:
        # no sign change on [0, cap]: look for the price minimum
        opt = minimize_scalar(f, bounds=(0.0, CDS_SPREAD_CAP), method="bounded", options={"xatol": 1e-8})
        if opt.fun < 0.0:
            upper = float(opt.x)
        elif fallback:
            return _risky_duration_fallback(legs, target, rf, recovery, val_date, tol, max_iter, label)
        else:
            logger.warning("%s: target below reachable risky price and fallback disabled", label)
            return SolveResult.failed(NON_MONOTONIC_WITHOUT_FALLBACK)

    res = solve_bracketed(f, 0.0, upper, tol, max_iter, expand=False, label=label)
    if not res.converged and fallback:
        return _risky_duration_fallback(legs, target, rf, recovery, val_date, tol, max_iter, label)
    return res


def implied_cds_spread(
    legs: CashflowLegs,
    target: float,
    survival: Optional[SurvivalCurve],
    recovery: float,
    val_date: pd.Timestamp,
    fallback: bool = True,
    tol: float = SOLVER_TOLERANCE,
    max_iter: int = SOLVER_MAX_ITER,
    label: str = "cds spread",
    model: Optional[SpreadModel] = None,
) -> SolveResult:
    """Parallel CDS spread shift over the supplied survival curve that reprices target (the level when none is given)."""
    if survival is None:
        return implied_cds_level(legs, target, recovery, val_date, fallback, tol, max_iter, label, model)

    model = model or _default_model(legs, recovery)
    lo = -float(np.min(survival.hazard_rates)) * (1.0 - survival.recovery_rate)

    def f(ds: float) -> float:
        return model(0.0, survival.shifted(ds)) - target

    return solve_bracketed(f, lo, CDS_SPREAD_CAP, tol, max_iter, expand=False, label=label)


def asset_swap_spread(cashflows: pd.DataFrame, legs: CashflowLegs, target: float) -> float:
    """
    Par-par asset swap spread: the running spread over the floating leg (ACT/360,
    bond payment dates, amortizing notional) worth the bond's price discount to
    its risk-free value.
    """
    live = cashflows[cashflows["accrual_end"] > legs.settle]
    if live.empty:
        return 0.0
    accruals = np.array([yearfrac(a, b, "ACT/360") for a, b in zip(live["accrual_start"], live["accrual_end"])])
    dfs = legs.curve.df(list(live["pay_date"])) / legs.curve.discount_factor(legs.settle)
    annuity = float(np.sum(accruals * live["notional_before"].to_numpy(dtype=float) * dfs))
    return (legs.pv() - target) / annuity
