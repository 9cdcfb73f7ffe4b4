from __future__ import annotations

import logging
import numpy as np
import pandas as pd
from typing import Iterable, Optional

from .accrual import accrual_fraction, record_date
from .bonds import Bond, Period, ValidationError
from .curves import DiscountCurve
from .schedule import build_schedule

logger = logging.getLogger(__name__)

CASHFLOW_COLUMNS = [
    "period",
    "accrual_start",
    "accrual_end",
    "cycle_start",
    "cycle_end",
    "pay_date",
    "record_date",
    "coupon_rate",
    "accrual_fraction",
    "notional_before",
    "notional_after",
    "principal_exchange",
    "coupon",
    "cashflow",
]


def _fixed_rate(bond: Bond, accrual_start: pd.Timestamp) -> float:
    rate = bond.coupon_rate
    for step in bond.coupon_schedule:
        if pd.Timestamp(step.date) <= accrual_start:
            rate = step.rate
        else:
            break
    return rate


def _floating_rate(
    bond: Bond,
    k: int,
    period: Period,
    as_of: Optional[pd.Timestamp],
    curve: Optional[DiscountCurve],
    resets,
) -> float:
    index = bond.floating
    reset_date = period.accrual_start

    if as_of is None or reset_date <= as_of:
        fixings = [r for r in resets if pd.Timestamp(r.date) <= reset_date]
        if fixings:
            return fixings[-1].rate + index.margin
        if k == 0 and index.stub_rate is not None:
            return index.stub_rate + index.margin
        if index.current_rate is not None:
            return index.current_rate + index.margin
        raise ValidationError(f"{bond.bond_id}: no fixing for period starting {reset_date.date()}")

    if curve is None:
        if index.current_rate is None:
            raise ValidationError(f"{bond.bond_id}: floating projection needs a curve or a current rate")
        return index.current_rate + index.margin
    return curve.forward_rate(period.accrual_start, period.accrual_end, index.day_count) + index.margin


def project_cashflows(
    bond: Bond,
    as_of: Optional[pd.Timestamp] = None,
    curve: Optional[DiscountCurve] = None,
    resets: Iterable = (),
) -> pd.DataFrame:
    """
    Full-life cashflow table, amounts per unit of initial notional.

    Amortization entries reduce the notional at the first period end on or
    after their date and are paid as principal with that period's payment;
    the remaining notional is repaid at maturity. Floating coupons use
    historical resets up to as_of and curve forwards after it.
    """
    schedule = build_schedule(bond)
    resets = sorted(resets, key=lambda r: pd.Timestamp(r.date))
    amort = list(bond.amortization)
    n = len(schedule)

    rows = []
    notional = 1.0
    ai = 0
    for k, p in enumerate(schedule):
        before = notional
        while ai < len(amort) and pd.Timestamp(amort[ai].date) <= p.accrual_end:
            a = amort[ai]
            notional = a.amount if a.kind.upper() == "REMAINING_NOTIONAL" else notional - a.amount
            ai += 1
        notional = max(notional, 0.0)
        after = 0.0 if k == n - 1 else notional

        if bond.floating is not None:
            rate = _floating_rate(bond, k, p, as_of, curve, resets)
        else:
            rate = _fixed_rate(bond, p.accrual_start)

        frac = accrual_fraction(p, p.accrual_start, p.accrual_end, bond.day_count, bond.freq)
        coupon = rate * before * frac
        principal = before - after

        rows.append(
            (k, p.accrual_start, p.accrual_end, p.cycle_start, p.cycle_end, p.payment_date,
             record_date(bond, p), rate, frac, before, after, principal, coupon, coupon + principal)
        )

    return pd.DataFrame(rows, columns=CASHFLOW_COLUMNS)


def entitled_cashflows(
    cashflows: pd.DataFrame,
    settle: pd.Timestamp,
    entitle: Optional[pd.Timestamp] = None,
) -> pd.DataFrame:
    """
    Cashflows a holder receives after settle.

    Coupons belong to whoever holds the bond before the record date; principal
    belongs to whoever holds it before the period end. entitle defaults to settle.
    """
    settle = pd.Timestamp(settle)
    entitle = settle if entitle is None else pd.Timestamp(entitle)

    out = cashflows[cashflows["pay_date"] > settle].copy()
    coupon_owned = out["record_date"] > entitle
    principal_owned = (out["accrual_end"] > entitle) & (out["principal_exchange"] != 0.0)

    out["coupon"] = np.where(coupon_owned, out["coupon"], 0.0)
    out["principal_exchange"] = np.where(principal_owned, out["principal_exchange"], 0.0)
    out["cashflow"] = out["coupon"] + out["principal_exchange"]
    out = out[coupon_owned | principal_owned]
    return out.reset_index(drop=True)


def notional_at(cashflows: pd.DataFrame, settle: pd.Timestamp) -> float:
    """Notional outstanding (fraction of initial) at settle."""
    settle = pd.Timestamp(settle)
    if settle < cashflows["accrual_start"].iloc[0]:
        return float(cashflows["notional_before"].iloc[0])
    current = cashflows[(cashflows["accrual_start"] <= settle) & (cashflows["accrual_end"] > settle)]
    if current.empty:
        return 0.0
    return float(current["notional_before"].iloc[0])
