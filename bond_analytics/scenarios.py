from __future__ import annotations

import pandas as pd
from typing import Sequence, Tuple

from .bonds import Bond
from .curves import (
    curve_from_shifted_zeros,
    parallel_shift_bp,
    steepener_shift_bp,
    flattener_shift_bp,
)
from .portfolio import price_portfolio
from .pricer import PricingContext


def _dirty(bonds: Sequence[Bond], context: PricingContext, name: str) -> pd.DataFrame:
    return price_portfolio(bonds, context)[["bond_id", "dirty"]].rename(columns={"dirty": name})


def _summary(per_bond: pd.DataFrame) -> pd.DataFrame:
    pnl_cols = [c for c in per_bond.columns if c.endswith("_PnL")]
    return pd.DataFrame({"scenario": pnl_cols, "total_pnl_per_100_notional": [per_bond[c].sum() for c in pnl_cols]})


def run_rate_scenarios(bonds: Sequence[Bond], context: PricingContext) -> Tuple[pd.DataFrame, pd.DataFrame]:
    curve = context.discount_curve
    scenarios = {
        "PAR_-50bp": curve_from_shifted_zeros(curve, parallel_shift_bp(-50)),
        "PAR_-25bp": curve_from_shifted_zeros(curve, parallel_shift_bp(-25)),
        "PAR_+25bp": curve_from_shifted_zeros(curve, parallel_shift_bp(+25)),
        "PAR_+50bp": curve_from_shifted_zeros(curve, parallel_shift_bp(+50)),
        "STEEPENER_25bp": curve_from_shifted_zeros(curve, steepener_shift_bp(25)),
        "FLATTENER_25bp": curve_from_shifted_zeros(curve, flattener_shift_bp(25)),
    }

    per_bond = _dirty(bonds, context, "base")
    for name, scurve in scenarios.items():
        per_bond = per_bond.merge(_dirty(bonds, context.with_curve(scurve), name), on="bond_id", how="left")
        per_bond[name + "_PnL"] = per_bond[name] - per_bond["base"]

    return per_bond, _summary(per_bond)


def run_spread_scenarios(bonds: Sequence[Bond], context: PricingContext) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """CDS spread widening scenarios applied to the survival curve."""
    scenarios = {"SPR_+25bp": 25.0, "SPR_+100bp": 100.0}

    per_bond = _dirty(bonds, context, "base")
    for name, bump in scenarios.items():
        per_bond = per_bond.merge(_dirty(bonds, context.with_credit_shift(bump), name), on="bond_id")
        per_bond[name + "_PnL"] = per_bond[name] - per_bond["base"]

    return per_bond, _summary(per_bond)


def run_combined_rate_spread_scenarios(bonds: Sequence[Bond], context: PricingContext) -> pd.DataFrame:
    base_total = price_portfolio(bonds, context)["dirty"].sum()

    rate_shocks = [-50, -25, 0, 25, 50]
    spread_shocks = [0, 25, 100]

    rows = []
    for r_bp in rate_shocks:
        rate_ctx = context.with_curve(curve_from_shifted_zeros(context.discount_curve, parallel_shift_bp(r_bp)))

        for s_bp in spread_shocks:
            shocked_total = price_portfolio(bonds, rate_ctx.with_credit_shift(s_bp))["dirty"].sum()
            rows.append(
                {
                    "rate_shock_bp": r_bp,
                    "spread_shock_bp": s_bp,
                    "total_dirty_base": base_total,
                    "total_dirty_shocked": shocked_total,
                    "total_pnl_per_100_notional": shocked_total - base_total,
                }
            )

    out = pd.DataFrame(rows)
    return out.sort_values(["rate_shock_bp", "spread_shock_bp"]).reset_index(drop=True)
