import numpy as np
import pandas as pd
import pytest

from bond_analytics.curves import (
    DiscountCurve,
    SurvivalCurve,
    curve_from_shifted_zeros,
    flattener_shift_bp,
    steepener_shift_bp,
)


@pytest.fixture(scope="module")
def val_date():
    return pd.Timestamp("2026-02-13")


@pytest.fixture(scope="module")
def curve(val_date):
    dates = [
        pd.Timestamp("2026-05-15"),
        pd.Timestamp("2027-02-12"),
        pd.Timestamp("2028-02-15"),
        pd.Timestamp("2031-02-15"),
        pd.Timestamp("2036-02-15"),
        pd.Timestamp("2046-02-15"),
    ]
    zeros = [0.0515, 0.0485, 0.0450, 0.0430, 0.0425, 0.0440]
    return DiscountCurve.from_zero_rates(val_date, dates, zeros)


def test_curve_knots_increasing(curve):
    knot_dates = pd.to_datetime(curve.knot_dates)
    assert knot_dates.is_monotonic_increasing, "Knot dates must be strictly increasing"


def test_curve_discount_factors_positive_and_monotone(curve):
    dfs = np.exp(curve.knot_log_dfs)
    assert np.all(dfs > 0.0), "All discount factors must be positive"
    assert np.all(np.diff(dfs) <= 1e-10), "Discount factors should be non-increasing across knots"


def test_zero_rates_reproduced_at_knots(curve):
    zeros = curve.zero_rate_cc(pd.to_datetime(curve.knot_dates))
    assert np.allclose(zeros, [0.0515, 0.0485, 0.0450, 0.0430, 0.0425, 0.0440], atol=1e-14)


def test_df_short_end_extrapolation_between_val_and_first_knot(curve, val_date):
    first_knot = pd.Timestamp(pd.to_datetime(curve.knot_dates[0]))
    t = val_date + pd.Timedelta(days=1)

    df_t = curve.df([t])[0]
    df_first = curve.df([first_knot])[0]

    assert 0.999 < df_t <= 1.0, "Very short-end DF should be close to 1"
    assert df_t >= df_first - 1e-12, "Earlier date should have DF >= DF(first knot)"


def test_df_raises_on_long_end_extrapolation(curve):
    last_knot = pd.Timestamp(pd.to_datetime(curve.knot_dates[-1]))
    with pytest.raises(ValueError):
        curve.df([last_knot + pd.DateOffset(days=1)])


def test_from_zero_rates_rejects_unsorted_knots(val_date):
    with pytest.raises(ValueError):
        DiscountCurve.from_zero_rates(val_date, [pd.Timestamp("2028-02-15"), pd.Timestamp("2027-02-15")], [0.04, 0.04])


def test_shifted_curve_scales_dfs(curve, val_date):
    d = pd.Timestamp("2033-08-15")
    tau = curve.times([d])[0]
    ratio = curve.shifted(0.01).discount_factor(d) / curve.discount_factor(d)
    assert abs(ratio - np.exp(-0.01 * tau)) < 1e-14, "A parallel cc shift multiplies every DF by exp(-s*tau)"
    assert curve.shifted(0.0) is curve


def test_forward_rates_cc_and_simple(val_date):
    flat = DiscountCurve.flat(val_date, 0.03)
    s, e = pd.Timestamp("2027-02-15"), pd.Timestamp("2027-08-16")
    assert abs(flat.forward_rate(s, e) - 0.03) < 1e-12
    alpha = (e - s).days / 360.0
    expected = (np.exp(0.03 * (e - s).days / 365.0) - 1.0) / alpha
    assert abs(flat.forward_rate(s, e, "ACT/360") - expected) < 1e-12


def test_steepener_and_flattener_are_mirror_images(curve):
    steep = curve_from_shifted_zeros(curve, steepener_shift_bp(25))
    flat = curve_from_shifted_zeros(curve, flattener_shift_bp(25))
    avg = 0.5 * (steep.knot_log_dfs + flat.knot_log_dfs)
    assert np.allclose(avg, curve.knot_log_dfs, atol=1e-14)
    assert steep.knot_log_dfs[0] < curve.knot_log_dfs[0], "Steepener raises short rates"
    assert steep.knot_log_dfs[-1] > curve.knot_log_dfs[-1], "Steepener lowers long rates"


def test_survival_curve_credit_triangle(val_date):
    sc = SurvivalCurve.from_cds_spread(val_date, 0.012, recovery_rate=0.4)
    assert abs(sc.hazard_rates[0] - 0.02) < 1e-15
    assert abs(sc.spread - 0.012) < 1e-15

    d = pd.Timestamp("2031-02-13")
    tau = (d - val_date).days / 365.0
    q = sc.survival_probability([val_date, d])
    assert abs(q[0] - 1.0) < 1e-15
    assert abs(q[1] - np.exp(-0.02 * tau)) < 1e-14


def test_survival_curve_piecewise_hazards(val_date):
    knots = pd.to_datetime([pd.Timestamp("2027-02-13"), pd.Timestamp("2031-02-13")]).values
    sc = SurvivalCurve(val_date, knots, np.array([0.01, 0.03]), 0.4)
    t1 = (pd.Timestamp("2027-02-13") - val_date).days / 365.0
    d = pd.Timestamp("2033-02-13")
    tau = (d - val_date).days / 365.0
    expected = np.exp(-(0.01 * t1 + 0.03 * (tau - t1)))
    assert abs(sc.survival_probability([d])[0] - expected) < 1e-14, "Last hazard extends flat past the final knot"


def test_survival_shift_adds_spread_over_loss(val_date):
    sc = SurvivalCurve.flat(val_date, 0.02, 0.4)
    shifted = sc.shifted(0.006)
    assert abs(shifted.hazard_rates[0] - 0.03) < 1e-15


def test_survival_with_spread_resets_to_flat_level(val_date):
    knots = pd.to_datetime([pd.Timestamp("2027-02-13"), pd.Timestamp("2031-02-13")]).values
    sc = SurvivalCurve(val_date, knots, np.array([0.01, 0.03]), 0.25)
    flat = sc.with_spread(0.015)
    assert flat.recovery_rate == 0.25 and flat.val_date == val_date
    assert np.allclose(flat.hazard_rates, 0.02), "Credit triangle at the curve's own recovery"
    assert abs(flat.spread - 0.015) < 1e-15
