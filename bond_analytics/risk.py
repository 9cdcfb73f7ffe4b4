from __future__ import annotations

import numpy as np
import pandas as pd
from typing import Sequence, Tuple

from .bonds import Bond
from .config import BUMP_BP
from .curves import DiscountCurve, shocked_curve_parallel, curve_from_shifted_zeros, parallel_shift_bp
from .portfolio import price_portfolio
from .pricer import PricingContext


def _dirty(bonds: Sequence[Bond], context: PricingContext) -> pd.DataFrame:
    return price_portfolio(bonds, context)[["bond_id", "dirty"]]


def compute_portfolio_dv01(bonds: Sequence[Bond], context: PricingContext, bp: float = BUMP_BP) -> pd.DataFrame:
    base = _dirty(bonds, context)

    shocked = context.with_curve(shocked_curve_parallel(context.discount_curve, shift_bp=bp))
    shocked_prices = _dirty(bonds, shocked)

    out = base.merge(shocked_prices, on="bond_id", suffixes=("_base", "_up1bp"))
    out["dv01"] = out["dirty_up1bp"] - out["dirty_base"]
    return out


def compute_portfolio_convexity(bonds: Sequence[Bond], context: PricingContext) -> pd.DataFrame:
    base = _dirty(bonds, context)
    up = context.with_curve(shocked_curve_parallel(context.discount_curve, shift_bp=1.0))
    down = context.with_curve(shocked_curve_parallel(context.discount_curve, shift_bp=-1.0))

    out = base.merge(_dirty(bonds, up), on="bond_id", suffixes=("_base", "_up")).merge(_dirty(bonds, down), on="bond_id")
    out = out.rename(columns={"dirty": "dirty_down"})

    h = 0.0001
    out["convexity"] = (out["dirty_up"] + out["dirty_down"] - 2 * out["dirty_base"]) / (out["dirty_base"] * h**2)
    return out[["bond_id", "convexity"]]


def duration_from_dv01(dv01_df: pd.DataFrame) -> pd.DataFrame:
    df = dv01_df.copy()
    df["mod_duration"] = -df["dv01"] / (df["dirty_base"] * 0.0001)
    return df[["bond_id", "mod_duration"]]


# ---- KRD hat basis reconciliation ----

def hat_basis(taus: np.ndarray, k: int):
    """Piecewise-linear hat on knot k, flat beyond the first and last knots."""
    taus = np.asarray(taus, dtype=float)
    if not (0 <= k < len(taus)):
        raise ValueError("k out of range")
    weights = np.zeros(len(taus))
    weights[k] = 1.0

    def b(tau: float) -> float:
        return float(np.interp(tau, taus, weights))

    return b


def key_rate_curve_hat(curve: DiscountCurve, k: int, bp: float) -> DiscountCurve:
    """Shift cc zeros by a hat of height bp centred on knot k."""
    return curve_from_shifted_zeros(curve, lambda tau, b=hat_basis(curve.knot_taus(), k): b(tau) * bp / 10000.0)


def compute_krd_hat(bonds: Sequence[Bond], context: PricingContext, bp: float = 1.0) -> Tuple[np.ndarray, float]:
    curve = context.discount_curve
    base_total = _dirty(bonds, context)["dirty"].sum()

    bucket_pnl = []
    for k in range(len(curve.knot_dates)):
        shocked_total = _dirty(bonds, context.with_curve(key_rate_curve_hat(curve, k, bp)))["dirty"].sum()
        bucket_pnl.append(shocked_total - base_total)

    bucket_pnl = np.array(bucket_pnl, dtype=float)

    par_curve = curve_from_shifted_zeros(curve, parallel_shift_bp(bp))
    par_total = _dirty(bonds, context.with_curve(par_curve))["dirty"].sum()
    par_dv01 = par_total - base_total

    return bucket_pnl, par_dv01


# ---- Credit spread risk ----

def portfolio_spread_dv01(bonds: Sequence[Bond], context: PricingContext, bp: float = BUMP_BP) -> float:
    """Total model price change for a parallel +bp CDS spread shift of the survival curve."""
    base = _dirty(bonds, context)["dirty"].sum()
    shocked = _dirty(bonds, context.with_credit_shift(bp))["dirty"].sum()
    return shocked - base


def compute_spread_dv01_per_bond(bonds: Sequence[Bond], context: PricingContext, bp: float = BUMP_BP) -> pd.DataFrame:
    base = _dirty(bonds, context).rename(columns={"dirty": "base"})
    shocked = _dirty(bonds, context.with_credit_shift(bp)).rename(columns={"dirty": "shocked"})
    tmp = base.merge(shocked, on="bond_id")
    tmp["spread_dv01"] = tmp["shocked"] - tmp["base"]
    return tmp
