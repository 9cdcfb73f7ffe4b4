from __future__ import annotations

import logging
import math
import pandas as pd
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

from . import yields
from .accrual import accrual_days, accrued_from_cashflows
from .bonds import Bond, ValidationError
from .cashflows import entitled_cashflows, notional_at, project_cashflows
from .config import BUMP_BP, DEFAULT_RECOVERY, SPREAD_BRACKET, PricerSettings
from .convertible import ConvertibleLattice, ConvertibleResult, StockParams
from .curves import DiscountCurve, SurvivalCurve
from .lattice import LatticeResult, price_on_lattice
from .solvers import (
    DEFAULTED,
    MATURED,
    NOT_APPLICABLE,
    ZERO_NOTIONAL,
    SolveResult,
    solve_bracketed,
)
from .spreads import (
    CashflowLegs,
    asset_swap_spread,
    implied_cds_level,
    implied_cds_spread,
    r_spread,
    z_spread,
)

logger = logging.getLogger(__name__)

QUOTING_CONVENTIONS = ("FLAT_PRICE", "FULL_PRICE", "YIELD")

# default for "use the context's survival curve"
_CONTEXT = object()


@dataclass(frozen=True)
class RateReset:
    date: pd.Timestamp
    rate: float


@dataclass(frozen=True)
class PricingContext:
    """
    Market state and trade details for pricing one or more bonds.

    notional is the face amount held (currency units); market_quote follows
    quoting: clean/full price per 100, or a decimal yield.
    """
    as_of: pd.Timestamp
    settle: pd.Timestamp
    discount_curve: DiscountCurve
    survival_curve: Optional[SurvivalCurve] = None
    recovery_rate: float = DEFAULT_RECOVERY
    notional: float = 1_000_000.0
    trade_settle: Optional[pd.Timestamp] = None
    quoting: str = "FLAT_PRICE"
    market_quote: Optional[float] = None
    sigma: float = 0.0
    mean_reversion: float = 0.0
    stock: Optional[StockParams] = None
    resets: Tuple[RateReset, ...] = field(default_factory=tuple)
    default_date: Optional[pd.Timestamp] = None
    settings: PricerSettings = field(default_factory=PricerSettings)

    def __post_init__(self):
        for name in ("as_of", "settle", "trade_settle", "default_date"):
            value = getattr(self, name)
            if value is not None:
                object.__setattr__(self, name, pd.Timestamp(value))
        object.__setattr__(self, "resets", tuple(self.resets))

        if self.settle < self.as_of:
            raise ValidationError("settle must not precede as_of")
        if self.quoting.upper() not in QUOTING_CONVENTIONS:
            raise ValidationError(f"Unknown quoting convention: {self.quoting}")
        if not (0.0 <= self.recovery_rate < 1.0):
            raise ValidationError("recovery_rate must be in [0, 1)")
        dates = [pd.Timestamp(r.date) for r in self.resets]
        if any(dates[i] > dates[i + 1] for i in range(len(dates) - 1)):
            raise ValidationError("rate reset dates must be non-decreasing")
        if dates and dates[-1] > self.settle:
            raise ValidationError("rate resets cannot be dated after settle")

    def with_curve(self, curve: DiscountCurve) -> "PricingContext":
        return _replace(self, discount_curve=curve)

    def with_survival(self, survival: Optional[SurvivalCurve]) -> "PricingContext":
        return _replace(self, survival_curve=survival)

    def with_stock(self, stock: StockParams) -> "PricingContext":
        return _replace(self, stock=stock)

    def with_quote(self, quote: Optional[float], quoting: Optional[str] = None) -> "PricingContext":
        return _replace(self, market_quote=quote, quoting=quoting or self.quoting)

    def with_credit_shift(self, bp: float) -> "PricingContext":
        """Parallel CDS spread shift of the survival curve (from zero hazard when there is none)."""
        base = self.survival_curve
        if base is None:
            base = SurvivalCurve.from_cds_spread(self.discount_curve.val_date, 0.0, self.recovery_rate)
        return _replace(self, survival_curve=base.shifted(bp / 10000.0))


def _replace(ctx: PricingContext, **changes) -> PricingContext:
    values = {name: getattr(ctx, name) for name in ctx.__dataclass_fields__}
    values.update(changes)
    return PricingContext(**values)


class BondPricer:
    """
    Prices one bond in one context.

    Strategy is chosen by the bond's features: a two-factor lattice for
    convertibles with stock inputs, a short-rate lattice for embedded
    calls/puts (unless settings.ignore_call removes the only options), and
    plain cashflow discounting otherwise. Prices are per 100 of the notional
    outstanding at settle.
    """

    def __init__(self, bond: Bond, context: PricingContext):
        self.bond = bond
        self.ctx = context
        self.settings = context.settings
        if context.resets and pd.Timestamp(context.resets[0].date) < bond.effective:
            raise ValidationError(f"{bond.bond_id}: rate resets before the effective date")

        self.cashflows = project_cashflows(bond, context.as_of, context.discount_curve, context.resets)
        self._legs: Optional[CashflowLegs] = None
        self._lattice: Optional[LatticeResult] = None
        self._convertible: Optional[ConvertibleResult] = None

    # ---- state ----

    @property
    def settle(self) -> pd.Timestamp:
        return self.ctx.settle

    @property
    def notional_fraction(self) -> float:
        return notional_at(self.cashflows, self.settle)

    def status(self) -> Optional[str]:
        if self.settle >= self.bond.maturity:
            return MATURED
        if self.ctx.default_date is not None and self.ctx.default_date <= self.settle:
            return DEFAULTED
        if self.notional_fraction <= 0.0:
            return ZERO_NOTIONAL
        return None

    def strategy(self) -> str:
        if self.bond.is_convertible and self.ctx.stock is not None:
            return "CONVERTIBLE_LATTICE"
        calls = self.bond.is_callable and not self.settings.ignore_call
        if calls or self.bond.is_puttable:
            return "SHORT_RATE_LATTICE"
        return "DISCOUNTING"

    def _per_100(self, unit_value: float) -> float:
        n = self.notional_fraction
        return 100.0 * unit_value / n if n > 0 else 0.0

    def _unit(self, per_100: float) -> float:
        return per_100 * self.notional_fraction / 100.0

    # ---- cashflows and accrual ----

    def cashflow_table(self, trade: bool = False) -> pd.DataFrame:
        """Remaining cashflows owned by the holder, with currency amounts for ctx.notional."""
        entitle = self.ctx.trade_settle if trade else None
        out = entitled_cashflows(self.cashflows, self.settle, entitle)
        out["amount"] = out["cashflow"] * self.ctx.notional
        return out

    def trade_cashflow_table(self) -> pd.DataFrame:
        return self.cashflow_table(trade=True)

    def accrued_interest(self) -> float:
        """Accrued per 100 of outstanding notional, ownership decided at settle."""
        if self.status() in (MATURED, ZERO_NOTIONAL):
            return 0.0
        unit = accrued_from_cashflows(self.cashflows, self.settle, self.bond.day_count, self.bond.freq)
        return self._per_100(unit)

    def accrued(self) -> float:
        """Accrued in currency for ctx.notional, ownership decided at trade settle when given."""
        if self.status() in (MATURED, ZERO_NOTIONAL):
            return 0.0
        unit = accrued_from_cashflows(
            self.cashflows, self.settle, self.bond.day_count, self.bond.freq, self.ctx.trade_settle)
        return unit * self.ctx.notional

    def accrual_days(self, trade: bool = False) -> int:
        entitle = self.ctx.trade_settle if trade else None
        return accrual_days(self.cashflows, self.settle, self.bond.day_count, entitle)

    # ---- prices ----

    def full_price(self) -> float:
        """Market full price per 100 from the quote (model price when there is no quote)."""
        quote = self.ctx.market_quote
        if quote is None:
            return self.model_full_price()
        quoting = self.ctx.quoting.upper()
        if quoting == "FULL_PRICE":
            return float(quote)
        if quoting == "YIELD":
            return self.price_from_yield(float(quote))
        return float(quote) + self.accrued_interest()

    def flat_price(self) -> float:
        return self.full_price() - self.accrued_interest()

    def _legs_for(self) -> CashflowLegs:
        if self._legs is None:
            self._legs = CashflowLegs(self.cashflows, self.ctx.discount_curve, self.settle,
                                      steps_per_year=self.settings.recovery_steps_per_year)
        return self._legs

    def _model_unit_price(
        self,
        curve: Optional[DiscountCurve] = None,
        survival: Any = _CONTEXT,
        spot: Optional[float] = None,
    ) -> float:
        """Model value per unit initial notional at settle under the chosen strategy."""
        curve = self.ctx.discount_curve if curve is None else curve
        survival = self.ctx.survival_curve if survival is _CONTEXT else survival
        recovery = self.ctx.recovery_rate
        strategy = self.strategy()

        if strategy == "DISCOUNTING":
            if curve is self.ctx.discount_curve:
                legs = self._legs_for()
            else:
                legs = CashflowLegs(self.cashflows, curve, self.settle,
                                    steps_per_year=self.settings.recovery_steps_per_year)
            return legs.pv(0.0, survival, recovery)

        if strategy == "SHORT_RATE_LATTICE":
            res = price_on_lattice(
                self.bond, self.cashflows, curve, self.settle, self.ctx.sigma, self.ctx.mean_reversion,
                survival, recovery, self.settings.tree_steps,
                include_calls=not self.settings.ignore_call,
            )
            return res.price

        lattice = self._convertible_lattice(curve, survival)
        return lattice.price(spot)

    def _convertible_lattice(self, curve: Optional[DiscountCurve] = None, survival: Any = _CONTEXT) -> ConvertibleLattice:
        curve = self.ctx.discount_curve if curve is None else curve
        survival = self.ctx.survival_curve if survival is _CONTEXT else survival
        return ConvertibleLattice(
            self.bond, self.cashflows, curve, self.settle, self.ctx.stock,
            self.ctx.sigma, self.ctx.mean_reversion, survival, self.ctx.recovery_rate,
            self.settings.tree_steps, include_calls=not self.settings.ignore_call,
        )

    def model_full_price(self) -> float:
        status = self.status()
        if status == DEFAULTED:
            return 100.0 * self.ctx.recovery_rate
        if status is not None:
            return 0.0
        return self._per_100(self._model_unit_price())

    def model_flat_price(self) -> float:
        return self.model_full_price() - self.accrued_interest()

    def risk_free_price(self) -> float:
        """Full price per 100 from plain discounting, no survival, no options."""
        if self.status() is not None:
            return 0.0
        return self._per_100(self._legs_for().pv())

    # ---- lattice outputs ----

    def lattice_result(self) -> LatticeResult:
        if self._lattice is None:
            self._lattice = price_on_lattice(
                self.bond, self.cashflows, self.ctx.discount_curve, self.settle, self.ctx.sigma,
                self.ctx.mean_reversion, self.ctx.survival_curve, self.ctx.recovery_rate,
                self.settings.tree_steps, include_calls=not self.settings.ignore_call,
            )
        return self._lattice

    def option_value(self) -> float:
        """Straight-bond value minus value with options, per 100 (issuer calls > 0, holder puts < 0)."""
        if self.status() is not None or not self.bond.has_options:
            return 0.0
        return self._per_100(self.lattice_result().option_value)

    def zero_coupon_tie_out(self) -> float:
        return self.lattice_result().tree.zero_coupon_tie_out()

    # ---- yields ----

    def _yield_value(self, res: SolveResult, name: str) -> float:
        if not res.converged:
            logger.warning("%s: %s failed (%s)", self.bond.bond_id, name, res.reason)
        return res.value

    def price_from_yield(self, y: float, date: Optional[pd.Timestamp] = None, redemption: float = 100.0) -> float:
        return yields.price_from_yield(self.bond, self.cashflows, self.settle, y, date, redemption)

    def yield_to_maturity_result(self) -> SolveResult:
        return yields.yield_to_maturity(
            self.bond, self.cashflows, self.settle, self.full_price(),
            tol=self.settings.tolerance, max_iter=self.settings.max_iterations)

    def yield_to_maturity(self) -> float:
        return self._yield_value(self.yield_to_maturity_result(), "yield to maturity")

    def yield_to_call(self) -> float:
        res, _ = yields.yield_to_call(self.bond, self.cashflows, self.settle, self.full_price(),
                                      tol=self.settings.tolerance, max_iter=self.settings.max_iterations)
        return self._yield_value(res, "yield to call")

    def yield_to_put(self) -> float:
        res, _ = yields.yield_to_put(self.bond, self.cashflows, self.settle, self.full_price(),
                                     tol=self.settings.tolerance, max_iter=self.settings.max_iterations)
        return self._yield_value(res, "yield to put")

    def yield_to_worst(self) -> Tuple[float, pd.Timestamp]:
        res, date = yields.yield_to_worst(self.bond, self.cashflows, self.settle, self.full_price(),
                                          tol=self.settings.tolerance, max_iter=self.settings.max_iterations)
        return self._yield_value(res, "yield to worst"), date

    def irr(self) -> float:
        res = yields.irr(self.bond, self.cashflows, self.settle, self.full_price(),
                         tol=self.settings.tolerance, max_iter=self.settings.max_iterations)
        return self._yield_value(res, "irr")

    # ---- spreads ----

    def _degenerate(self) -> Optional[SolveResult]:
        status = self.status()
        if status is None:
            return None
        return SolveResult.degenerate(status)

    def _spread_model(self) -> Optional[Callable[[float, Optional[SurvivalCurve]], float]]:
        """Unit price under a curve shift and a survival curve; None when plain discounting applies."""
        if self.strategy() == "DISCOUNTING":
            return None
        curve = self.ctx.discount_curve

        def model(z: float, survival: Optional[SurvivalCurve]) -> float:
            return self._model_unit_price(curve if z == 0.0 else curve.shifted(z), survival=survival)

        return model

    def _shift_floor(self) -> Optional[float]:
        if self.strategy() == "DISCOUNTING" or self.ctx.sigma <= 0.0:
            return None
        # lognormal short rates need every shifted forward to stay positive
        return 1e-6 - float(self.lattice_result().tree.forward_rates.min())

    def z_spread_result(self) -> SolveResult:
        """
        Parallel spread over the discount curve matching the market full price.
        Survival curves are never used. Bonds priced on a lattice solve on the
        lattice (an option-adjusted spread).
        """
        degenerate = self._degenerate()
        if degenerate is not None:
            return degenerate
        target = self._unit(self.full_price())
        tol, max_iter = self.settings.tolerance, self.settings.max_iterations
        label = f"{self.bond.bond_id} z-spread"

        if self.strategy() == "DISCOUNTING":
            return z_spread(self._legs_for(), target, tol, max_iter, label)

        lo, hi = SPREAD_BRACKET
        floor = self._shift_floor()
        if floor is not None:
            lo = max(lo, floor)
        model = self._spread_model()
        return solve_bracketed(
            lambda z: model(z, None) - target,
            lo, hi, max(tol, 1e-10), max_iter, floor=floor, label=label)

    def implied_z_spread(self) -> float:
        return self._yield_value(self.z_spread_result(), "z-spread")

    def implied_oas(self) -> float:
        return self.implied_z_spread()

    def implied_r_spread(self) -> float:
        degenerate = self._degenerate()
        if degenerate is not None:
            return degenerate.value
        res = r_spread(self._legs_for(), self._unit(self.full_price()), self.ctx.survival_curve,
                       self.ctx.recovery_rate, self.settings.tolerance, self.settings.max_iterations,
                       f"{self.bond.bond_id} r-spread", model=self._spread_model(), floor=self._shift_floor())
        return self._yield_value(res, "r-spread")

    def cds_level_result(self) -> SolveResult:
        degenerate = self._degenerate()
        if degenerate is not None:
            return degenerate
        return implied_cds_level(
            self._legs_for(), self._unit(self.full_price()), self.ctx.recovery_rate,
            self.ctx.discount_curve.val_date, self.settings.cds_fallback,
            self.settings.tolerance, self.settings.max_iterations, f"{self.bond.bond_id} cds level",
            model=self._spread_model())

    def implied_cds_level(self) -> float:
        return self._yield_value(self.cds_level_result(), "cds level")

    def implied_cds_spread(self) -> float:
        degenerate = self._degenerate()
        if degenerate is not None:
            return degenerate.value
        res = implied_cds_spread(
            self._legs_for(), self._unit(self.full_price()), self.ctx.survival_curve, self.ctx.recovery_rate,
            self.ctx.discount_curve.val_date, self.settings.cds_fallback,
            self.settings.tolerance, self.settings.max_iterations, f"{self.bond.bond_id} cds spread",
            model=self._spread_model())
        return self._yield_value(res, "cds spread")

    def asset_swap_spread(self) -> float:
        if self.status() is not None:
            return 0.0
        return asset_swap_spread(self.cashflows, self._legs_for(), self._unit(self.full_price()))

    def discount_margin(self) -> float:
        """Spread over the projection curve discounting projected floating coupons to the full price."""
        if self.bond.floating is None:
            logger.warning("%s: discount margin needs a floating coupon", self.bond.bond_id)
            return SolveResult.failed(NOT_APPLICABLE).value
        degenerate = self._degenerate()
        if degenerate is not None:
            return degenerate.value
        res = z_spread(self._legs_for(), self._unit(self.full_price()), self.settings.tolerance,
                       self.settings.max_iterations, f"{self.bond.bond_id} discount margin")
        return self._yield_value(res, "discount margin")

    # ---- convertibles ----

    def convertible_analytics(self) -> ConvertibleResult:
        if self.ctx.stock is None or not self.bond.is_convertible:
            raise ValueError(f"{self.bond.bond_id}: convertible analytics need conversion terms and stock inputs")
        if self._convertible is None:
            self._convertible = self._convertible_lattice().analytics(self.settings.spot_bump)
        return self._convertible

    def parity(self) -> float:
        return self.convertible_analytics().parity

    def premium(self) -> float:
        return self.convertible_analytics().premium

    def bond_floor(self) -> float:
        return self.convertible_analytics().bond_floor

    def hedge_ratio(self) -> float:
        return self.convertible_analytics().hedge_ratio

    def delta(self) -> float:
        return self.convertible_analytics().delta

    def gamma(self) -> float:
        return self.convertible_analytics().gamma

    # ---- risk ----

    def pv01(self, bp: float = BUMP_BP) -> float:
        """Model full price change per 100 for a parallel +bp shift of the discount curve."""
        if self.status() is not None:
            return 0.0
        base = self._model_unit_price()
        bumped = self._model_unit_price(self.ctx.discount_curve.shifted(bp / 10000.0))
        return self._per_100(bumped - base)

    def summary(self) -> Dict[str, Any]:
        """Headline analytics; failed solves show as NaN."""
        out: Dict[str, Any] = {
            "bond_id": self.bond.bond_id,
            "strategy": self.strategy(),
            "status": self.status() or "",
            "accrued": self.accrued_interest(),
            "full_price": self.full_price(),
            "model_full_price": self.model_full_price(),
        }
        out["flat_price"] = out["full_price"] - out["accrued"]
        out["ytm"] = self.yield_to_maturity() if self.status() is None else math.nan
        out["z_spread"] = self.implied_z_spread()
        return out
