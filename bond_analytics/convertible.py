from __future__ import annotations

import logging
import numpy as np
import pandas as pd
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .bonds import Bond
from .cashflows import entitled_cashflows, notional_at
from .config import DEFAULT_TREE_STEPS, SPOT_BUMP
from .curves import DiscountCurve, SurvivalCurve
from .lattice import LatticeEvents, ShortRateTree, backward_induction, build_events, survival_ratios

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StockParams:
    """
    Underlying equity for convertibles.

    dividends: discrete cash dividends as (ex_date, amount), modelled by escrow.
    correlation: between the stock and the short rate.
    """
    spot: float
    volatility: float
    dividend_yield: float = 0.0
    dividends: Tuple[Tuple[pd.Timestamp, float], ...] = field(default_factory=tuple)
    correlation: float = 0.0

    def __post_init__(self):
        if self.spot < 0 or self.volatility < 0:
            raise ValueError("spot and volatility must be non-negative")
        if not (-1.0 <= self.correlation <= 1.0):
            raise ValueError("correlation must be in [-1, 1]")


class StockTree:
    """
    Recombining binomial equity tree on the short-rate tree's grid.

    ln S*(k, j) = m_k + (2j - k) v_k with v_k = sigma * sqrt(t_k / k); m_k is set so
    the escrowed stock S* has forward (S0 - PV(divs)) e^{-qt} / P(t_k). Remaining
    dividends are added back at every node.
    """

    def __init__(self, rate_tree: ShortRateTree, params: StockParams, spot: Optional[float] = None):
        self.params = params
        self.spot = params.spot if spot is None else float(spot)
        times = rate_tree.times
        P = rate_tree.curve_dfs

        # only dividends going ex inside the grid affect the stock
        start, end = rate_tree.dates[0], rate_tree.dates[-1]
        dividends = [(pd.Timestamp(d), a) for d, a in params.dividends if start < pd.Timestamp(d) <= end]
        div_dates = [d for d, _ in dividends]
        div_amounts = np.array([a for _, a in dividends], dtype=float)
        if div_dates:
            curve = rate_tree.curve
            div_dfs = curve.df(div_dates) / curve.discount_factor(rate_tree.dates[0])
        else:
            div_dfs = np.empty(0)

        self.escrow = np.zeros(len(times))
        for k, d in enumerate(rate_tree.dates):
            later = np.array([dd > d for dd in div_dates], dtype=bool)
            if later.any():
                self.escrow[k] = float(np.sum(div_amounts[later] * div_dfs[later])) / P[k]

        s_star0 = max(self.spot - self.escrow[0], 0.0)
        sigma = params.volatility
        self.values: List[np.ndarray] = []
        for k in range(len(times)):
            forward = s_star0 * np.exp(-params.dividend_yield * times[k]) / P[k]
            if k == 0:
                v = 0.0
            else:
                v = sigma * np.sqrt(times[k] / k)
            m = np.log(forward) - k * np.log(np.cosh(v)) if forward > 0 else -np.inf
            x = (2.0 * np.arange(k + 1) - k) * v
            self.values.append(np.exp(m + x) + self.escrow[k])


def joint_probabilities(rho: float) -> Tuple[float, float, float, float]:
    """(p_uu, p_ud, p_du, p_dd): rate move first, stock move second."""
    same = (1.0 + rho) / 4.0
    cross = (1.0 - rho) / 4.0
    return same, cross, cross, same


def discounted_stock_expectations(rate_tree: ShortRateTree, stock_tree: StockTree, rho: float) -> np.ndarray:
    """E[S(t_k) B(t_k)] at every grid date, by forward induction of joint state prices."""
    p_uu, p_ud, p_du, p_dd = joint_probabilities(rho)
    pi = np.ones((1, 1))
    out = [float(np.sum(pi * stock_tree.values[0][None, :]))]
    for k in range(rate_tree.steps):
        flow = pi * rate_tree.discounts[k][:, None]
        nxt = np.zeros((k + 2, k + 2))
        nxt[1:, 1:] += p_uu * flow
        nxt[1:, :-1] += p_ud * flow
        nxt[:-1, 1:] += p_du * flow
        nxt[:-1, :-1] += p_dd * flow
        pi = nxt
        out.append(float(np.sum(pi * stock_tree.values[k + 1][None, :])))
    return np.array(out)


@dataclass
class ConvertibleResult:
    """All prices per 100 of notional outstanding at settle."""
    price: float
    bond_floor: float
    parity: float
    premium: float
    hedge_ratio: float
    delta: float
    gamma: float


class ConvertibleLattice:
    """Two-factor (short rate x stock) lattice for convertible bonds."""

    def __init__(
        self,
        bond: Bond,
        cashflows: pd.DataFrame,
        curve: DiscountCurve,
        settle: pd.Timestamp,
        stock: StockParams,
        sigma: float = 0.0,
        mean_reversion: float = 0.0,
        survival: Optional[SurvivalCurve] = None,
        recovery: float = 0.0,
        steps: int = DEFAULT_TREE_STEPS,
        include_calls: bool = True,
        include_puts: bool = True,
        entitle: Optional[pd.Timestamp] = None,
    ):
        if bond.conversion is None:
            raise ValueError(f"{bond.bond_id}: no conversion terms")
        self.bond = bond
        self.cashflows = cashflows
        self.settle = pd.Timestamp(settle)
        self.stock = stock
        self.survival = survival
        self.recovery = recovery

        conv = bond.conversion
        self.conv_start = pd.Timestamp(conv.start) if conv.start is not None else bond.effective
        conv_end = pd.Timestamp(conv.end) if conv.end is not None else bond.maturity
        # conversion at a coupon date happens on its payment date
        self.conv_end = dict(zip(cashflows["accrual_end"], cashflows["pay_date"])).get(conv_end, conv_end)
        last_pay = pd.Timestamp(cashflows["pay_date"].max())
        extra = [self.conv_start, self.conv_end] + [
            pd.Timestamp(d) for d, _ in stock.dividends if self.settle < pd.Timestamp(d) <= last_pay]

        self.events: LatticeEvents = build_events(
            bond, cashflows, settle, steps, include_calls, include_puts, extra_dates=extra, entitle=entitle)
        self.tree = ShortRateTree(curve, self.events.dates, sigma, mean_reversion)
        self.q = survival_ratios(survival, self.events.dates)

        owned = entitled_cashflows(cashflows, self.settle, entitle)
        principal = owned.groupby("pay_date")["principal_exchange"].sum()
        self.terminal_principal = float(principal.get(self.events.dates[-1], 0.0))
        self.convertible = np.array(
            [k > 0 and self.conv_start <= d <= self.conv_end for k, d in enumerate(self.events.dates)], dtype=bool)
        self.shares_per_unit = conv.ratio / conv.par_amount
        self.notional_at_settle = notional_at(cashflows, self.settle)

    def stock_tree(self, spot: Optional[float] = None) -> StockTree:
        return StockTree(self.tree, self.stock, spot)

    def price(self, spot: Optional[float] = None) -> float:
        """Value per unit initial notional at settle."""
        ev = self.events
        stock = self.stock_tree(spot)
        p_uu, p_ud, p_du, p_dd = joint_probabilities(self.stock.correlation)
        N = self.tree.steps

        s_last = stock.values[N]
        coupon_last = ev.cash[N] - self.terminal_principal
        if self.convertible[N]:
            cv = self.shares_per_unit * self.terminal_principal * s_last
            terminal = coupon_last + np.maximum(self.terminal_principal, cv)
        else:
            terminal = np.full(N + 1, ev.cash[N])
        V = np.tile(terminal, (N + 1, 1))

        for k in range(N - 1, -1, -1):
            expected = p_uu * V[1:, 1:] + p_ud * V[1:, :-1] + p_du * V[:-1, 1:] + p_dd * V[:-1, :-1]
            if self.q is not None:
                expected = self.q[k] * expected + (1.0 - self.q[k]) * self.recovery * ev.notional[k]
            held = self.tree.discounts[k][:, None] * expected

            cv = self.shares_per_unit * ev.notional[k] * stock.values[k][None, :]
            if not np.isnan(ev.put_value[k]):
                held = np.maximum(held, ev.put_value[k])
            if not np.isnan(ev.call_value[k]):
                called = np.maximum(ev.call_value[k], cv) if self.convertible[k] else ev.call_value[k]
                live = np.ones_like(cv, dtype=bool)
                if not np.isnan(ev.call_trigger[k]):
                    live = cv >= ev.call_trigger[k]
                held = np.where(live, np.minimum(held, called), held)
            if self.convertible[k]:
                held = np.maximum(held, cv)
            V = ev.cash[k] + held

        return float(V[0, 0])

    def bond_floor(self) -> float:
        """Same bond with conversion switched off, per unit initial notional."""
        return backward_induction(self.tree, self.events, self.survival, self.recovery)

    def analytics(self, bump: float = SPOT_BUMP) -> ConvertibleResult:
        """Price, floor, parity, premium and spot Greeks per 100 of outstanding notional."""
        n = self.notional_at_settle
        spot = self.stock.spot
        par_amount = self.bond.conversion.par_amount
        scale = 100.0 / n if n > 0 else 0.0

        price = self.price() * scale
        floor = self.bond_floor() * scale
        parity = self.bond.conversion.ratio * spot / par_amount * 100.0

        if spot > 0:
            up = self.price(spot * (1.0 + bump)) * scale
            down = self.price(spot * (1.0 - bump)) * scale
            ds = bump * spot
            # shares per par_amount bond
            hedge_ratio = (up - down) / 100.0 * par_amount / (2.0 * ds)
            gamma = (up - 2.0 * price + down) / 100.0 * par_amount / (ds * ds)
        else:
            hedge_ratio = 0.0
            gamma = 0.0
        ratio = self.bond.conversion.ratio
        delta = hedge_ratio / ratio if ratio > 0 else 0.0

        logger.debug("%s: convertible price %.6f floor %.6f parity %.6f", self.bond.bond_id, price, floor, parity)
        return ConvertibleResult(price, floor, parity, price - parity, hedge_ratio, delta, gamma)
