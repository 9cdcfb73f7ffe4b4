from __future__ import annotations

import logging
import numpy as np
import pandas as pd
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from scipy.optimize import brentq

from .accrual import accrual_fraction
from .bonds import Bond, Period
from .cashflows import entitled_cashflows, notional_at
from .config import DEFAULT_TREE_STEPS
from .curves import DiscountCurve, SurvivalCurve
from .solvers import expand_bracket
from .utils import yearfrac

logger = logging.getLogger(__name__)


def lattice_dates(
    settle: pd.Timestamp,
    maturity: pd.Timestamp,
    event_dates: Iterable[pd.Timestamp],
    steps: int = DEFAULT_TREE_STEPS,
) -> List[pd.Timestamp]:
    """
    Time grid: settle, a uniform fill of `steps` intervals to maturity, and every
    event date (cashflows, exercise dates) in (settle, maturity].
    """
    settle = pd.Timestamp(settle)
    maturity = pd.Timestamp(maturity)
    days = (maturity - settle).days
    if days <= 0:
        raise ValueError("Lattice needs maturity after settle.")

    grid = {settle + pd.Timedelta(days=int(round(i * days / steps))) for i in range(steps + 1)}
    grid.update(pd.Timestamp(d) for d in event_dates if settle < pd.Timestamp(d) <= maturity)
    grid.add(maturity)
    return sorted(grid)


def _bk_variance(sigma: float, kappa: float, t: float) -> float:
    if kappa == 0.0:
        return sigma * sigma * t
    return sigma * sigma * (1.0 - np.exp(-2.0 * kappa * t)) / (2.0 * kappa)


class ShortRateTree:
    """
    Recombining binomial Black-Karasinski tree on an arbitrary time grid.

    ln r at node (k, i) is a_k + (2i - k) * s_k with up/down probability 1/2.
    s_k matches the BK marginal variance of ln r at t_k and a_k is fitted so
    that the tree reprices the curve's zero-coupon bond to t_{k+1}. With
    sigma = 0 the tree collapses onto the forward curve.
    """

    def __init__(
        self,
        curve: DiscountCurve,
        dates: Sequence[pd.Timestamp],
        sigma: float,
        mean_reversion: float = 0.0,
    ):
        if sigma < 0 or mean_reversion < 0:
            raise ValueError("sigma and mean_reversion must be non-negative")
        self.curve = curve
        self.dates = [pd.Timestamp(d) for d in dates]
        self.sigma = float(sigma)
        self.kappa = float(mean_reversion)

        self.times = np.array([yearfrac(self.dates[0], d, curve.zero_day_count) for d in self.dates], dtype=float)
        self.dt = np.diff(self.times)
        if np.any(self.dt <= 0):
            raise ValueError("Lattice dates must be strictly increasing.")

        self.curve_dfs = curve.df(self.dates) / curve.discount_factor(self.dates[0])
        self.forward_rates = np.log(self.curve_dfs[:-1] / self.curve_dfs[1:]) / self.dt

        self.rates: List[np.ndarray] = []
        self.discounts: List[np.ndarray] = []
        self.arrow_debreu: List[np.ndarray] = []
        self._build()

    @property
    def steps(self) -> int:
        return len(self.dt)

    def _spacing(self, k: int) -> float:
        if k == 0 or self.sigma == 0.0:
            return 0.0
        return float(np.sqrt(_bk_variance(self.sigma, self.kappa, self.times[k]) / k))

    def _build(self) -> None:
        Q = np.array([1.0])
        for k in range(self.steps):
            dt = self.dt[k]
            target = self.curve_dfs[k + 1]
            fwd = self.forward_rates[k]

            if self.sigma == 0.0:
                r = np.full(k + 1, fwd)
            else:
                if fwd <= 0.0:
                    raise ValueError(f"Black-Karasinski needs positive forward rates (step {k}: {fwd:.6g}).")
                x = (2.0 * np.arange(k + 1) - k) * self._spacing(k)

                def residual(a: float) -> float:
                    return float(np.sum(Q * np.exp(-np.exp(a + x) * dt))) - target

                a0 = np.log(fwd)
                bracket = expand_bracket(residual, a0 - 1.0, a0 + 1.0, expansions=20)
                if bracket is None:
                    raise ValueError(f"Cannot calibrate short-rate tree at step {k}.")
                a = brentq(residual, bracket[0], bracket[1], xtol=1e-14, maxiter=200)
                r = np.exp(a + x)

            disc = np.exp(-r * dt)
            self.arrow_debreu.append(Q)
            self.rates.append(r)
            self.discounts.append(disc)

            flow = 0.5 * Q * disc
            Q_next = np.zeros(k + 2)
            Q_next[:-1] += flow
            Q_next[1:] += flow
            Q = Q_next

        self.arrow_debreu.append(Q)
        logger.debug("short-rate tree: %d steps, sigma=%.4f, kappa=%.4f", self.steps, self.sigma, self.kappa)

    @property
    def rate_bounds(self) -> np.ndarray:
        """(steps, 2) array of min/max short rate per step."""
        return np.array([[r.min(), r.max()] for r in self.rates], dtype=float)

    def zero_coupon_bonds(self) -> np.ndarray:
        """Tree prices of zero-coupon bonds maturing at each grid date after settle."""
        return np.array([q.sum() for q in self.arrow_debreu[1:]], dtype=float)

    def zero_coupon_tie_out(self) -> float:
        """Largest absolute gap between tree and curve zero-coupon prices."""
        return float(np.max(np.abs(self.zero_coupon_bonds() - self.curve_dfs[1:])))


@dataclass
class LatticeEvents:
    """Per-grid-date deterministic cash and exercise values (per unit initial notional; NaN = no exercise)."""
    dates: List[pd.Timestamp]
    cash: np.ndarray
    call_value: np.ndarray
    put_value: np.ndarray
    call_trigger: np.ndarray
    notional: np.ndarray


def _coupon_date_to_payment(cashflows: pd.DataFrame) -> Dict[pd.Timestamp, pd.Timestamp]:
    return dict(zip(cashflows["accrual_end"], cashflows["pay_date"]))


def exercise_dates(periods: Sequence, cashflows: pd.DataFrame, settle: pd.Timestamp) -> Dict[pd.Timestamp, tuple]:
    """
    Fixed exercise dates of a call/put schedule (European start, Bermudan coupon dates),
    keyed to (price, trigger). Coupon-date exercise happens on the payment date.
    """
    to_pay = _coupon_date_to_payment(cashflows)
    out: Dict[pd.Timestamp, tuple] = {}
    for p in periods:
        start, end = p.window_start, pd.Timestamp(p.end)
        style = p.style.upper()
        trigger = getattr(p, "trigger", None)
        if style == "EUROPEAN":
            dates = [start]
        elif style == "BERMUDAN":
            dates = [d for d in cashflows["accrual_end"] if start <= d <= end]
        else:
            dates = [start, end]
        for d in dates:
            d = to_pay.get(d, d)
            if d > settle:
                out[d] = (float(p.price), trigger)
    return out


def _american_windows(periods: Sequence) -> List[tuple]:
    return [(p.window_start, pd.Timestamp(p.end), float(p.price), getattr(p, "trigger", None))
            for p in periods if p.style.upper() == "AMERICAN"]


def exercise_value(cashflows: pd.DataFrame, owned: pd.DataFrame, date: pd.Timestamp, price: float, day_count: str, freq: int) -> float:
    """
    Amount received on exercise at date: price per 100 of outstanding notional,
    plus accrued coupon, plus coupons/principal of ended periods not yet paid.
    """
    notional = notional_at(cashflows, date)
    current = cashflows[(cashflows["accrual_start"] <= date) & (cashflows["accrual_end"] > date)]
    accrued = 0.0
    if not current.empty:
        row = current.iloc[0]
        p = Period(row["accrual_start"], row["accrual_end"], row["pay_date"], row["cycle_start"], row["cycle_end"])
        accrued = row["coupon_rate"] * row["notional_before"] * accrual_fraction(p, p.accrual_start, date, day_count, freq)
    unpaid = owned[(owned["accrual_end"] <= date) & (owned["pay_date"] > date)]["cashflow"].sum()
    return price / 100.0 * notional + accrued + float(unpaid)


def build_events(
    bond: Bond,
    cashflows: pd.DataFrame,
    settle: pd.Timestamp,
    steps: int = DEFAULT_TREE_STEPS,
    include_calls: bool = True,
    include_puts: bool = True,
    extra_dates: Iterable[pd.Timestamp] = (),
    entitle: Optional[pd.Timestamp] = None,
) -> LatticeEvents:
    """Grid plus cash/exercise arrays for a bond on a lattice."""
    settle = pd.Timestamp(settle)
    owned = entitled_cashflows(cashflows, settle, entitle)
    calls = exercise_dates(bond.call_schedule, cashflows, settle) if include_calls else {}
    puts = exercise_dates(bond.put_schedule, cashflows, settle) if include_puts else {}

    last_pay = max(owned["pay_date"].max(), bond.maturity) if not owned.empty else bond.maturity
    events = list(owned["pay_date"]) + list(calls) + list(puts) + list(extra_dates)
    dates = lattice_dates(settle, last_pay, events, steps)

    n = len(dates)
    cash = np.zeros(n)
    by_date = owned.groupby("pay_date")["cashflow"].sum()
    index = {d: k for k, d in enumerate(dates)}
    for d, amount in by_date.items():
        cash[index[pd.Timestamp(d)]] += amount

    call_value = np.full(n, np.nan)
    put_value = np.full(n, np.nan)
    call_trigger = np.full(n, np.nan)

    def _mark(target, trig_target, fixed, windows):
        for d, (price, trigger) in fixed.items():
            if d not in index:
                continue
            k = index[d]
            target[k] = exercise_value(cashflows, owned, d, price, bond.day_count, bond.freq)
            if trig_target is not None and trigger is not None:
                trig_target[k] = trigger * price / 100.0 * notional_at(cashflows, d)
        for start, end, price, trigger in windows:
            for k, d in enumerate(dates):
                if k > 0 and start <= d <= end:
                    target[k] = exercise_value(cashflows, owned, d, price, bond.day_count, bond.freq)
                    if trig_target is not None and trigger is not None:
                        trig_target[k] = trigger * price / 100.0 * notional_at(cashflows, d)

    if include_calls:
        _mark(call_value, call_trigger, calls, _american_windows(bond.call_schedule))
    if include_puts:
        _mark(put_value, None, puts, _american_windows(bond.put_schedule))

    # the terminal node redeems; no optionality there
    call_value[-1] = np.nan
    put_value[-1] = np.nan
    call_value[0] = np.nan
    put_value[0] = np.nan

    notional = np.array([notional_at(cashflows, d) for d in dates], dtype=float)
    return LatticeEvents(dates, cash, call_value, put_value, call_trigger, notional)


def survival_ratios(survival: Optional[SurvivalCurve], dates: Sequence[pd.Timestamp]) -> Optional[np.ndarray]:
    """Per-step conditional survival q_k = Q(t_{k+1}) / Q(t_k)."""
    if survival is None:
        return None
    q = survival.survival_probability(dates)
    return q[1:] / q[:-1]


def backward_induction(
    tree: ShortRateTree,
    events: LatticeEvents,
    survival: Optional[SurvivalCurve] = None,
    recovery: float = 0.0,
) -> float:
    """
    Roll the bond back through the tree.

    cont = exp(-r dt) * [q * E[V] + (1 - q) * R * N]; with a call/put live at
    the node cont = max(put, min(call, cont)); V = cash + cont.
    """
    q = survival_ratios(survival, events.dates)
    N = tree.steps
    V = np.full(N + 1, events.cash[N])

    for k in range(N - 1, -1, -1):
        expected = 0.5 * (V[:-1] + V[1:])
        if q is not None:
            expected = q[k] * expected + (1.0 - q[k]) * recovery * events.notional[k]
        cont = tree.discounts[k] * expected

        if not np.isnan(events.call_value[k]):
            cont = np.minimum(cont, events.call_value[k])
        if not np.isnan(events.put_value[k]):
            cont = np.maximum(cont, events.put_value[k])
        V = events.cash[k] + cont

    return float(V[0])


@dataclass
class LatticeResult:
    price: float            # per unit initial notional, at settle
    straight_price: float   # same lattice with no options
    tree: ShortRateTree
    events: LatticeEvents

    @property
    def option_value(self) -> float:
        return self.straight_price - self.price


def price_on_lattice(
    bond: Bond,
    cashflows: pd.DataFrame,
    curve: DiscountCurve,
    settle: pd.Timestamp,
    sigma: float,
    mean_reversion: float = 0.0,
    survival: Optional[SurvivalCurve] = None,
    recovery: float = 0.0,
    steps: int = DEFAULT_TREE_STEPS,
    include_calls: bool = True,
    include_puts: bool = True,
    entitle: Optional[pd.Timestamp] = None,
) -> LatticeResult:
    """Callable/puttable bond value on a calibrated short-rate tree."""
    events = build_events(bond, cashflows, settle, steps, include_calls, include_puts, entitle=entitle)
    tree = ShortRateTree(curve, events.dates, sigma, mean_reversion)
    price = backward_induction(tree, events, survival, recovery)

    straight_events = LatticeEvents(
        events.dates,
        events.cash,
        np.full(len(events.dates), np.nan),
        np.full(len(events.dates), np.nan),
        events.call_trigger,
        events.notional,
    )
    straight = backward_induction(tree, straight_events, survival, recovery)
    return LatticeResult(price, straight, tree, events)
