from __future__ import annotations

import pandas as pd
from typing import Optional

from .bonds import Bond, Period
from .utils import add_business_days, day_diff, is_icma, yearfrac
from .schedule import cycle_date


def accrued_interest(
    settle: pd.Timestamp,
    prev_cycle: pd.Timestamp,
    next_cycle: pd.Timestamp,
    coupon_rate: float,
    face: float,
    freq: int,
    day_count: str,
) -> float:
    """
    Accrued interest in currency units (not per 100) for a regular coupon
    period [prev_cycle, next_cycle].
    """
    settle = pd.Timestamp(settle)
    prev_cycle = pd.Timestamp(prev_cycle)
    next_cycle = pd.Timestamp(next_cycle)

    if not (prev_cycle <= settle <= next_cycle):
        raise ValueError("settle must fall inside the coupon period")

    frac = yearfrac(prev_cycle, settle, day_count, prev_cycle, next_cycle, freq)
    return face * coupon_rate * frac


def accrual_fraction(period: Period, start: pd.Timestamp, end: pd.Timestamp, day_count: str, freq: int) -> float:
    """
    Year fraction of [start, end] inside a period.

    For ACT/ACT ICMA the interval is split over quasi-coupon periods, so long
    stubs accrue against the right reference period on each side of the cycle.
    """
    start = pd.Timestamp(start)
    end = pd.Timestamp(end)
    if end <= start:
        return 0.0
    if not is_icma(day_count):
        return yearfrac(start, end, day_count)

    months = 12 // freq
    cs, ce = period.cycle_start, period.cycle_end
    frac = 0.0

    if start < cs:
        ref_start = cycle_date(cs, -1, months, None)
        frac += yearfrac(start, min(end, cs), day_count, ref_start, cs, freq)
    lo, hi = max(start, cs), min(end, ce)
    if hi > lo:
        frac += yearfrac(lo, hi, day_count, cs, ce, freq)
    if end > ce:
        ref_end = cycle_date(ce, 1, months, None)
        frac += yearfrac(max(start, ce), end, day_count, ce, ref_end, freq)
    return frac


def period_units(period: Period, start: pd.Timestamp, end: pd.Timestamp, day_count: str, freq: int) -> float:
    """
    Length of [start, end] in coupon periods of 1/freq years under the day count.

    A regular 30/360 or ICMA period is exactly one unit; actual-day counts give
    slightly more or less, so a par bond still yields its coupon.
    """
    return accrual_fraction(period, start, end, day_count, freq) * freq


def record_date(bond: Bond, period: Period) -> pd.Timestamp:
    """
    Date from which a period's coupon trades ex-dividend.

    Without an ex-div rule this is the unadjusted period end. With one, the
    rule's days are counted back from the (possibly lagged) payment date.
    """
    rule = bond.ex_div
    if rule is None or rule.days == 0:
        return period.accrual_end
    if rule.business_days:
        return add_business_days(period.payment_date, -rule.days, bond.calendar)
    return period.payment_date - pd.Timedelta(days=rule.days)


def _current_row(cashflows: pd.DataFrame, settle: pd.Timestamp):
    mask = (cashflows["accrual_start"] <= settle) & (cashflows["accrual_end"] > settle)
    rows = cashflows[mask]
    if rows.empty:
        return None
    return rows.iloc[0]


def _row_period(row) -> Period:
    return Period(row["accrual_start"], row["accrual_end"], row["pay_date"], row["cycle_start"], row["cycle_end"])


def accrued_from_cashflows(
    cashflows: pd.DataFrame,
    settle: pd.Timestamp,
    day_count: str,
    freq: int,
    entitle: Optional[pd.Timestamp] = None,
) -> float:
    """
    Accrued interest per unit of initial notional from a projected cashflow table.

    entitle is the date that decides who owns each coupon (trade settle when it
    differs from settle). Amounts accrue to settle. Coupons of ended periods that
    are still unpaid (payment lag) and owned at entitle are included in full.
    A current period already ex-dividend gives negative accrued.
    """
    settle = pd.Timestamp(settle)
    entitle = settle if entitle is None else pd.Timestamp(entitle)

    unpaid = cashflows[
        (cashflows["accrual_end"] <= settle)
        & (cashflows["pay_date"] > settle)
        & (cashflows["record_date"] > entitle)
    ]
    total = float(unpaid["coupon"].sum())

    row = _current_row(cashflows, settle)
    if row is None:
        return total

    period = _row_period(row)
    rate_notional = float(row["coupon_rate"]) * float(row["notional_before"])
    if entitle < row["record_date"]:
        total += rate_notional * accrual_fraction(period, period.accrual_start, settle, day_count, freq)
    else:
        total -= rate_notional * accrual_fraction(period, settle, period.accrual_end, day_count, freq)
    return total


def accrual_days(
    cashflows: pd.DataFrame,
    settle: pd.Timestamp,
    day_count: str,
    entitle: Optional[pd.Timestamp] = None,
) -> int:
    """Days accrued in the current period; negative days-to-coupon when ex-dividend."""
    settle = pd.Timestamp(settle)
    entitle = settle if entitle is None else pd.Timestamp(entitle)

    row = _current_row(cashflows, settle)
    if row is None:
        return 0
    if entitle < row["record_date"]:
        return day_diff(row["accrual_start"], settle, day_count)
    return -day_diff(settle, row["accrual_end"], day_count)
