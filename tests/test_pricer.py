import math

import pandas as pd
import pytest

from bond_analytics.bonds import Bond, CallPeriod, ConversionTerms, FloatingIndex, PaymentLagRule, PutPeriod, ValidationError
from bond_analytics.config import PricerSettings
from bond_analytics.convertible import StockParams
from bond_analytics.curves import DiscountCurve, SurvivalCurve
from bond_analytics.pricer import BondPricer, PricingContext, RateReset
from bond_analytics.solvers import MATURED


@pytest.fixture(scope="module")
def val_date():
    return pd.Timestamp("2026-02-13")


@pytest.fixture(scope="module")
def curve(val_date):
    dates = [pd.Timestamp("2027-02-15"), pd.Timestamp("2029-02-15"), pd.Timestamp("2031-02-15"), pd.Timestamp("2036-02-15")]
    return DiscountCurve.from_zero_rates(val_date, dates, [0.040, 0.037, 0.038, 0.041])


@pytest.fixture(scope="module")
def ctx(val_date, curve):
    return PricingContext(val_date, pd.Timestamp("2026-02-17"), curve, sigma=0.2,
                          settings=PricerSettings(tree_steps=50))


@pytest.fixture(scope="module")
def bullet():
    return Bond("CORP_5Y_5PCT", pd.Timestamp("2026-02-15"), pd.Timestamp("2031-02-15"), 0.05)


@pytest.fixture(scope="module")
def callable_bond():
    return Bond("CALLABLE", pd.Timestamp("2026-02-15"), pd.Timestamp("2031-02-15"), 0.05,
                call_schedule=(CallPeriod(pd.Timestamp("2028-02-15"), pd.Timestamp("2030-08-15"), style="BERMUDAN"),))


def test_strategy_follows_features(ctx, bullet, callable_bond):
    assert BondPricer(bullet, ctx).strategy() == "DISCOUNTING"
    assert BondPricer(callable_bond, ctx).strategy() == "SHORT_RATE_LATTICE"

    no_calls = PricingContext(ctx.as_of, ctx.settle, ctx.discount_curve, settings=PricerSettings(ignore_call=True))
    assert BondPricer(callable_bond, no_calls).strategy() == "DISCOUNTING"
    both = Bond("BOTH", callable_bond.effective, callable_bond.maturity, 0.05,
                call_schedule=callable_bond.call_schedule,
                put_schedule=(PutPeriod(pd.Timestamp("2029-02-15"), pd.Timestamp("2029-02-15"), style="EUROPEAN"),))
    assert BondPricer(both, no_calls).strategy() == "SHORT_RATE_LATTICE", "ignore_call leaves puts on the lattice"

    conv = Bond("CONV", bullet.effective, bullet.maturity, 0.01, conversion=ConversionTerms(ratio=20.0))
    assert BondPricer(conv, ctx).strategy() == "DISCOUNTING"
    assert BondPricer(conv, ctx.with_stock(StockParams(40.0, 0.3))).strategy() == "CONVERTIBLE_LATTICE"


def test_full_price_is_flat_plus_accrued(curve, val_date, bullet):
    c = PricingContext(val_date, pd.Timestamp("2026-05-15"), curve, market_quote=99.5)
    p = BondPricer(bullet, c)
    assert abs(p.accrued_interest() - 1.25) < 1e-12, "90 days of 30/360 at 5%"
    assert abs(p.full_price() - 100.75) < 1e-12
    assert abs(p.flat_price() - 99.5) < 1e-12
    assert abs(p.model_full_price() - p.model_flat_price() - 1.25) < 1e-12


def test_yield_quote(ctx, bullet):
    p = BondPricer(bullet, ctx.with_quote(0.0475, "YIELD"))
    assert abs(p.full_price() - p.price_from_yield(0.0475)) < 1e-12
    assert abs(p.yield_to_maturity() - 0.0475) < 1e-10


def test_unquoted_price_is_the_model(ctx, bullet):
    p = BondPricer(bullet, ctx)
    assert p.full_price() == p.model_full_price()
    assert abs(p.implied_z_spread()) < 1e-10
    assert abs(p.model_full_price() - p.risk_free_price()) < 1e-12


def test_matured_and_defaulted(curve, val_date, bullet):
    matured = BondPricer(bullet, PricingContext(val_date, pd.Timestamp("2031-03-03"), curve, market_quote=100.0))
    assert matured.status() == MATURED
    assert matured.model_full_price() == 0.0 and matured.accrued_interest() == 0.0
    res = matured.z_spread_result()
    assert res.converged and res.reason == MATURED and res.value == 0.0

    defaulted = BondPricer(bullet, PricingContext(val_date, pd.Timestamp("2026-02-17"), curve, recovery_rate=0.35,
                                                  default_date=pd.Timestamp("2026-02-16")))
    assert abs(defaulted.model_full_price() - 35.0) < 1e-12


def test_context_validation(curve, val_date, bullet):
    settle = pd.Timestamp("2026-02-17")
    with pytest.raises(ValidationError):
        PricingContext(val_date, pd.Timestamp("2026-02-12"), curve)
    with pytest.raises(ValidationError):
        PricingContext(val_date, settle, curve, quoting="SPREAD")
    with pytest.raises(ValidationError):
        PricingContext(val_date, settle, curve, recovery_rate=1.0)
    with pytest.raises(ValidationError):
        PricingContext(val_date, settle, curve,
                       resets=(RateReset(pd.Timestamp("2026-02-16"), 0.03), RateReset(pd.Timestamp("2026-02-15"), 0.03)))
    with pytest.raises(ValidationError):
        PricingContext(val_date, settle, curve, resets=(RateReset(pd.Timestamp("2026-02-18"), 0.03),))

    early = PricingContext(val_date, settle, curve, resets=(RateReset(pd.Timestamp("2026-02-10"), 0.03),))
    with pytest.raises(ValidationError):
        BondPricer(bullet, early)


def test_discount_margin_needs_floating_coupon(ctx, bullet):
    p = BondPricer(bullet, ctx)
    assert math.isnan(p.discount_margin())


def test_floater_discount_margin(ctx):
    frn = Bond("FRN", pd.Timestamp("2026-02-15"), pd.Timestamp("2029-02-15"), 0.0, freq=4, day_count="ACT/360",
               floating=FloatingIndex(margin=0.01, current_rate=0.035))
    p = BondPricer(frn, ctx)
    assert abs(p.discount_margin()) < 1e-10, "At the model price the floater needs no extra margin"

    cheap = BondPricer(frn, ctx.with_quote(p.model_full_price() - 0.5, "FULL_PRICE"))
    assert cheap.discount_margin() > 0.0


def test_pv01_negative(ctx, bullet, callable_bond):
    assert BondPricer(bullet, ctx).pv01() < 0.0
    assert BondPricer(callable_bond, ctx).pv01() < 0.0


def test_trade_settle_accrued_in_currency(curve):
    b = Bond("TRADE", pd.Timestamp("2026-02-15"), pd.Timestamp("2031-02-15"), 0.05, payment_lag=PaymentLagRule(30))
    c = PricingContext(pd.Timestamp("2026-08-14"), pd.Timestamp("2026-08-15"), curve,
                       trade_settle=pd.Timestamp("2026-08-12"), notional=1_000_000.0)
    p = BondPricer(b, c)
    assert abs(p.accrued() - 25000.0) < 1e-6
    assert abs(p.accrued_interest()) < 1e-12
    assert len(p.trade_cashflow_table()) == len(p.cashflow_table()) + 1


def test_z_spread_ignores_survival(ctx, bullet, val_date):
    quoted = ctx.with_quote(99.0)
    risky = quoted.with_survival(SurvivalCurve.from_cds_spread(val_date, 0.02, 0.4))
    z_plain = BondPricer(bullet, quoted).implied_z_spread()
    z_risky = BondPricer(bullet, risky).implied_z_spread()
    assert z_plain > 0.0
    assert abs(z_plain - z_risky) < 1e-8


def test_cds_level_through_pricer(ctx, bullet, val_date):
    risky = ctx.with_survival(SurvivalCurve.from_cds_spread(val_date, 0.015, 0.4))
    model = BondPricer(bullet, risky).model_full_price()
    p = BondPricer(bullet, ctx.with_quote(model, "FULL_PRICE"))
    assert abs(p.implied_cds_level() - 0.015) < 1e-8


def test_oas_reprices_callable(ctx, callable_bond):
    base = BondPricer(callable_bond, ctx)
    assert base.option_value() > 0.0
    target = base.model_full_price() - 1.0
    oas = BondPricer(callable_bond, ctx.with_quote(target, "FULL_PRICE")).implied_oas()
    assert oas > 0.0
    shifted = BondPricer(callable_bond, ctx.with_curve(ctx.discount_curve.shifted(oas)))
    assert abs(shifted.model_full_price() - target) < 1e-6


def test_cds_level_reprices_callable_on_lattice(ctx, callable_bond, val_date):
    target = BondPricer(callable_bond, ctx).model_full_price() - 1.0
    res = BondPricer(callable_bond, ctx.with_quote(target, "FULL_PRICE")).cds_level_result()
    assert res.converged and res.reason == "CONVERGED"
    assert res.value > 0.0

    survival = SurvivalCurve.from_cds_spread(val_date, res.value, ctx.recovery_rate)
    repriced = BondPricer(callable_bond, ctx.with_survival(survival)).model_full_price()
    assert abs(repriced - target) < 1e-6, f"Level must reprice the lattice value (got {repriced}, want {target})"


def test_cds_spread_shift_reprices_callable_on_lattice(ctx, callable_bond, val_date):
    risky = ctx.with_survival(SurvivalCurve.from_cds_spread(val_date, 0.01, ctx.recovery_rate))
    target = BondPricer(callable_bond, risky).model_full_price() - 0.5
    shift = BondPricer(callable_bond, risky.with_quote(target, "FULL_PRICE")).implied_cds_spread()
    assert shift > 0.0

    repriced = BondPricer(callable_bond, risky.with_credit_shift(shift * 10000.0)).model_full_price()
    assert abs(repriced - target) < 1e-6


def test_r_spread_reprices_callable_on_lattice(ctx, callable_bond, val_date):
    risky = ctx.with_survival(SurvivalCurve.from_cds_spread(val_date, 0.01, ctx.recovery_rate))
    target = BondPricer(callable_bond, risky).model_full_price() - 0.5
    r = BondPricer(callable_bond, risky.with_quote(target, "FULL_PRICE")).implied_r_spread()
    assert r > 0.0

    repriced = BondPricer(callable_bond, risky.with_curve(ctx.discount_curve.shifted(r))).model_full_price()
    assert abs(repriced - target) < 1e-6, "R-spread is solved with survival and options on the lattice"


def test_r_spread_on_discounted_bond(ctx, bullet, val_date):
    quoted = ctx.with_quote(99.0)
    riskless = BondPricer(bullet, quoted)
    assert abs(riskless.implied_r_spread() - riskless.implied_z_spread()) < 1e-10, "No survival: r-spread is the z-spread"

    risky = BondPricer(bullet, quoted.with_survival(SurvivalCurve.from_cds_spread(val_date, 0.005, 0.4)))
    r = risky.implied_r_spread()
    assert 0.0 < r < riskless.implied_z_spread(), "Default risk explains part of the discount"


def test_convertible_through_pricer(ctx, bullet):
    conv = Bond("CONV", bullet.effective, bullet.maturity, 0.01, conversion=ConversionTerms(ratio=20.0))
    with pytest.raises(ValueError):
        BondPricer(conv, ctx).convertible_analytics()

    p = BondPricer(conv, ctx.with_stock(StockParams(40.0, 0.3)))
    assert abs(p.parity() - 80.0) < 1e-12
    assert p.model_full_price() >= p.bond_floor() - 1e-9
    assert abs(p.premium() - (p.convertible_analytics().price - p.parity())) < 1e-12
    assert p.hedge_ratio() > 0.0


def test_summary_row(ctx, bullet):
    row = BondPricer(bullet, ctx.with_quote(99.0)).summary()
    assert row["strategy"] == "DISCOUNTING" and row["status"] == ""
    assert abs(row["flat_price"] - 99.0) < 1e-12
    assert row["ytm"] > 0.05 - 0.01 and row["z_spread"] > 0.0
