import numpy as np
import pandas as pd
import pytest

from bond_analytics.bonds import Bond, CallPeriod
from bond_analytics.config import PricerSettings
from bond_analytics.curves import DiscountCurve, SurvivalCurve
from bond_analytics.pricer import PricingContext
from bond_analytics.risk import (
    compute_krd_hat,
    compute_portfolio_convexity,
    compute_portfolio_dv01,
    compute_spread_dv01_per_bond,
    duration_from_dv01,
    hat_basis,
    portfolio_spread_dv01,
)
from bond_analytics.scenarios import (
    run_combined_rate_spread_scenarios,
    run_rate_scenarios,
    run_spread_scenarios,
)


@pytest.fixture(scope="module")
def val_date():
    return pd.Timestamp("2026-02-13")


@pytest.fixture(scope="module")
def settle():
    # Use a non-coupon day to keep accrued > 0 for most names
    return pd.Timestamp("2026-02-16")


@pytest.fixture(scope="module")
def curve(val_date):
    dates = [
        pd.Timestamp("2026-05-15"),
        pd.Timestamp("2026-08-14"),
        pd.Timestamp("2027-02-12"),
        pd.Timestamp("2028-02-15"),
        pd.Timestamp("2031-02-15"),
        pd.Timestamp("2036-02-15"),
    ]
    zeros = [0.0515, 0.0505, 0.0485, 0.0450, 0.0430, 0.0425]
    return DiscountCurve.from_zero_rates(val_date, dates, zeros)


@pytest.fixture(scope="module")
def context(val_date, settle, curve):
    return PricingContext(
        val_date,
        settle,
        curve,
        survival_curve=SurvivalCurve.from_cds_spread(val_date, 0.012, 0.4),
        sigma=0.15,
        settings=PricerSettings(tree_steps=40),
    )


@pytest.fixture(scope="module")
def portfolio():
    """
    Deterministic mini-portfolio (10 names, one callable) to test DV01/convexity/KRD.
    """
    maturities = [
        "2027-02-15", "2028-02-15", "2029-02-15", "2030-02-15", "2031-02-15",
        "2032-02-15", "2033-02-15", "2034-02-15", "2035-02-15", "2036-02-15",
    ]
    coupons = [0.04, 0.045, 0.05, 0.055, 0.06, 0.035, 0.065, 0.07, 0.03, 0.075]
    dcs = ["30/360"] * 9 + ["ACT/365"]

    bonds = [
        Bond(f"BOND_{i:03d}", pd.Timestamp("2026-02-15"), pd.Timestamp(m), c, day_count=dc)
        for i, (m, c, dc) in enumerate(zip(maturities, coupons, dcs))
    ]
    bonds[4] = Bond(
        "BOND_004",
        pd.Timestamp("2026-02-15"),
        pd.Timestamp("2031-02-15"),
        0.06,
        call_schedule=(CallPeriod(pd.Timestamp("2029-02-15"), pd.Timestamp("2030-08-15"), style="BERMUDAN"),),
    )
    return bonds


def test_rate_dv01_sign_sanity(portfolio, context):
    """
    For a standard positive-duration bond portfolio:
    +1bp rate shock => dirty price should go down => DV01 negative.
    """
    dv01 = compute_portfolio_dv01(portfolio, context)
    assert (dv01["dv01"] < 0.0).all(), "Every long bond loses value when rates rise"


def test_convexity_positive_sanity(portfolio, context):
    conv = compute_portfolio_convexity(portfolio, context)
    # the callable may be slightly negative; bullets must not be
    assert (conv["convexity"] > -1e-6).mean() > 0.8, "Convexity should be mostly positive"


def test_duration_from_dv01_consistency(portfolio, context):
    dv01 = compute_portfolio_dv01(portfolio, context)
    dur = duration_from_dv01(dv01)
    assert (dur["mod_duration"] > 0.0).all()
    short, long = dur["mod_duration"].iloc[0], dur["mod_duration"].iloc[-1]
    assert long > short, "Longer bonds carry more duration"


def test_hat_basis_is_partition_of_unity(curve):
    taus = curve.knot_taus()
    for tau in np.linspace(0.0, taus[-1] + 2.0, 37):
        total = sum(hat_basis(taus, k)(tau) for k in range(len(taus)))
        assert abs(total - 1.0) < 1e-12
    with pytest.raises(ValueError):
        hat_basis(taus, len(taus))


def test_krd_hat_reconciles_parallel(portfolio, context):
    """
    Key rate bucket sum should approximate parallel DV01 (same bp),
    because hat basis shocks form a partition of unity over the grid.
    """
    bucket_pnl, par_dv01 = compute_krd_hat(portfolio, context, bp=1.0)
    diff = float(bucket_pnl.sum() - par_dv01)
    assert abs(diff) < 1e-3, f"KRD bucket sum should reconcile to parallel DV01 (diff={diff})"


def test_spread_dv01_negative(portfolio, context):
    """
    +1bp CDS spread bump => price down => spread DV01 negative.
    """
    psdv01 = portfolio_spread_dv01(portfolio, context)
    assert psdv01 < 0.0, "Portfolio spread DV01 should be negative"


def test_spread_dv01_without_survival_curve(portfolio, context):
    riskless = context.with_survival(None)
    assert portfolio_spread_dv01(portfolio[:3], riskless) < 0.0, "Shifting from zero hazard still costs value"


def test_spread_dv01_per_bond_matches_portfolio_total(portfolio, context):
    per_bond = compute_spread_dv01_per_bond(portfolio, context)
    total = per_bond["spread_dv01"].sum()
    psdv01 = portfolio_spread_dv01(portfolio, context)
    assert abs(total - psdv01) < 1e-8, "Sum of per-bond spread DV01 should match portfolio spread DV01"


def test_rate_and_spread_scenarios(portfolio, context):
    per_bond, summary = run_rate_scenarios(portfolio[:4], context)
    totals = dict(zip(summary["scenario"], summary["total_pnl_per_100_notional"]))
    assert totals["PAR_-50bp_PnL"] > totals["PAR_-25bp_PnL"] > 0.0 > totals["PAR_+25bp_PnL"] > totals["PAR_+50bp_PnL"]
    assert len(per_bond) == 4

    _, spread_summary = run_spread_scenarios(portfolio[:4], context)
    spread_totals = dict(zip(spread_summary["scenario"], spread_summary["total_pnl_per_100_notional"]))
    assert spread_totals["SPR_+100bp_PnL"] < spread_totals["SPR_+25bp_PnL"] < 0.0


def test_combined_rate_spread_scenario_grid_monotone(portfolio, context):
    """
    Sanity: higher rate shocks and higher spread shocks should worsen PnL (more negative),
    at least along monotone directions.
    """
    combo = run_combined_rate_spread_scenarios(portfolio, context)
    pivot = combo.pivot(index="rate_shock_bp", columns="spread_shock_bp", values="total_pnl_per_100_notional")

    # For fixed rate shock, PnL should generally decrease as spread shock increases
    for r in pivot.index:
        row = pivot.loc[r].values
        assert row[0] >= row[-1] - 1e-8, "PnL should not improve when spreads widen"

    # For fixed spread shock, PnL should generally decrease as rates rise
    for s in pivot.columns:
        col = pivot[s].values
        assert col[0] >= col[-1] - 1e-8, "PnL should not improve when rates rise"

    assert abs(pivot.loc[0, 0]) < 1e-10, "No shock, no PnL"
