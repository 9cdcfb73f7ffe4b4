import numpy as np
import pandas as pd
import pytest

from bond_analytics.bonds import Amortization, Bond, CouponStep, ExDivRule, FloatingIndex, ValidationError
from bond_analytics.cashflows import CASHFLOW_COLUMNS, entitled_cashflows, notional_at, project_cashflows
from bond_analytics.curves import DiscountCurve
from bond_analytics.pricer import RateReset


@pytest.fixture(scope="module")
def val_date():
    return pd.Timestamp("2026-02-13")


@pytest.fixture(scope="module")
def bullet():
    return Bond("BULLET", pd.Timestamp("2026-02-15"), pd.Timestamp("2031-02-15"), 0.05)


@pytest.fixture(scope="module")
def amortizer():
    return Bond(
        "AMORT",
        pd.Timestamp("2026-02-15"),
        pd.Timestamp("2031-02-15"),
        0.06,
        amortization=(
            Amortization(pd.Timestamp("2028-02-15"), 0.25),
            Amortization(pd.Timestamp("2029-05-01"), 0.25),
            Amortization(pd.Timestamp("2030-02-15"), 0.2, kind="REMAINING_NOTIONAL"),
        ),
    )


def test_bullet_cashflows(bullet):
    cf = project_cashflows(bullet)
    assert list(cf.columns) == CASHFLOW_COLUMNS
    assert len(cf) == 10
    assert np.allclose(cf["coupon"], 0.025)
    assert cf["principal_exchange"].iloc[:-1].abs().max() == 0.0
    assert cf["principal_exchange"].iloc[-1] == 1.0


def test_amortization_identity(amortizer):
    cf = project_cashflows(amortizer)
    assert abs(cf["principal_exchange"].sum() - 1.0) < 1e-15, "Principal repaid must add up to the initial notional"
    assert (np.diff(cf["notional_before"]) <= 0).all(), "Notional never increases"
    assert np.allclose(cf["notional_before"].iloc[1:].to_numpy(), cf["notional_after"].iloc[:-1].to_numpy())
    assert np.allclose(cf["coupon"], 0.06 * cf["notional_before"] * cf["accrual_fraction"])


def test_amortization_applies_at_first_period_end_on_or_after_its_date(amortizer):
    cf = project_cashflows(amortizer).set_index("accrual_end")
    assert abs(cf.loc[pd.Timestamp("2028-02-15"), "principal_exchange"] - 0.25) < 1e-15
    # dated mid-period: repaid at the 2029-08-15 period end
    assert cf.loc[pd.Timestamp("2029-02-15"), "principal_exchange"] == 0.0
    assert abs(cf.loc[pd.Timestamp("2029-08-15"), "principal_exchange"] - 0.25) < 1e-15
    # remaining-notional entry sets the balance to 20%
    assert abs(cf.loc[pd.Timestamp("2030-02-15"), "notional_after"] - 0.2) < 1e-15
    assert abs(cf.loc[pd.Timestamp("2031-02-15"), "principal_exchange"] - 0.2) < 1e-15


def test_over_amortization_is_rejected():
    with pytest.raises(ValidationError):
        Bond("OVER", pd.Timestamp("2026-02-15"), pd.Timestamp("2031-02-15"), 0.05,
             amortization=(Amortization(pd.Timestamp("2027-02-15"), 0.7), Amortization(pd.Timestamp("2028-02-15"), 0.7)))


def test_notional_at(amortizer):
    cf = project_cashflows(amortizer)
    assert notional_at(cf, pd.Timestamp("2026-01-01")) == 1.0
    assert abs(notional_at(cf, pd.Timestamp("2028-03-01")) - 0.75) < 1e-15
    assert abs(notional_at(cf, pd.Timestamp("2030-06-01")) - 0.2) < 1e-15
    assert notional_at(cf, pd.Timestamp("2031-02-15")) == 0.0


def test_step_up_coupons():
    b = Bond("STEP", pd.Timestamp("2026-02-15"), pd.Timestamp("2031-02-15"), 0.03,
             coupon_schedule=(CouponStep(pd.Timestamp("2028-02-15"), 0.04), CouponStep(pd.Timestamp("2030-02-15"), 0.05)))
    rates = project_cashflows(b).set_index("accrual_start")["coupon_rate"]
    assert rates[pd.Timestamp("2027-08-15")] == 0.03
    assert rates[pd.Timestamp("2028-02-15")] == 0.04
    assert rates[pd.Timestamp("2030-08-15")] == 0.05


def test_floating_coupons_use_fixings_then_forwards(val_date):
    curve = DiscountCurve.flat(val_date, 0.03)
    b = Bond("FRN", pd.Timestamp("2025-08-15"), pd.Timestamp("2029-02-15"), 0.0, freq=4, day_count="ACT/360",
             floating=FloatingIndex(margin=0.01))
    resets = (RateReset(pd.Timestamp("2025-08-13"), 0.041), RateReset(pd.Timestamp("2025-11-13"), 0.039),
              RateReset(pd.Timestamp("2026-02-12"), 0.037))
    cf = project_cashflows(b, val_date, curve, resets)

    assert abs(cf["coupon_rate"].iloc[0] - 0.051) < 1e-15
    assert abs(cf["coupon_rate"].iloc[1] - 0.049) < 1e-15
    # period starting 2026-02-15 resets after as_of: projected from the curve
    row = cf.iloc[2]
    expected = curve.forward_rate(row["accrual_start"], row["accrual_end"], "ACT/360") + 0.01
    assert abs(row["coupon_rate"] - expected) < 1e-15


def test_floating_without_fixings_raises(val_date):
    b = Bond("FRN2", pd.Timestamp("2025-08-15"), pd.Timestamp("2029-02-15"), 0.0, freq=4, day_count="ACT/360",
             floating=FloatingIndex(margin=0.01))
    with pytest.raises(ValidationError):
        project_cashflows(b, val_date, DiscountCurve.flat(val_date, 0.03), ())


def test_entitled_cashflows_drop_ex_coupon():
    b = Bond("EX", pd.Timestamp("2026-02-15"), pd.Timestamp("2031-02-15"), 0.05, ex_div=ExDivRule(7, business_days=False))
    cf = project_cashflows(b)
    cum = entitled_cashflows(cf, pd.Timestamp("2026-08-01"))
    ex = entitled_cashflows(cf, pd.Timestamp("2026-08-10"))
    assert len(cum) == 10 and len(ex) == 9, "Coupon past its record date is not owned"
    assert ex["pay_date"].iloc[0] == pd.Timestamp("2027-02-15")
