from __future__ import annotations

import logging
import numpy as np
import pandas as pd
from typing import Dict, List, Mapping, Optional, Sequence

from .bonds import Bond
from .pricer import BondPricer, PricingContext

logger = logging.getLogger(__name__)


def qc_flags_for_bond(bond: Bond, settle: pd.Timestamp) -> List[str]:
    flags: List[str] = []

    if pd.Timestamp(settle) >= pd.Timestamp(bond.maturity):
        flags.append("MATURED")

    if bond.coupon_rate < -0.01 or bond.coupon_rate > 0.25:
        flags.append("BAD_COUPON")

    if bond.is_convertible and bond.conversion.ratio <= 0:
        flags.append("ZERO_CONVERSION_RATIO")

    return flags


def build_cashflow_table(bonds: Sequence[Bond], context: PricingContext) -> pd.DataFrame:
    """Remaining owned cashflows of every bond, amounts scaled to context.notional."""
    frames = []
    for bond in bonds:
        if context.settle >= bond.maturity:
            continue
        cf = BondPricer(bond, context).cashflow_table()
        if cf.empty:
            continue
        cf.insert(0, "bond_id", bond.bond_id)
        frames.append(cf)

    if not frames:
        return pd.DataFrame(columns=["bond_id", "pay_date", "cashflow", "amount"])
    return pd.concat(frames, ignore_index=True)


def price_portfolio(
    bonds: Sequence[Bond],
    context: PricingContext,
    quotes: Optional[Mapping[str, float]] = None,
) -> pd.DataFrame:
    """
    Model prices per 100 of outstanding notional, one row per bond.

    With quotes (bond_id -> quote in context.quoting), yield to maturity and
    z-spread are implied from them as well.
    """
    if len(bonds) == 0:
        raise ValueError("Portfolio is empty.")

    rows: List[Dict] = []
    for bond in bonds:
        pricer = BondPricer(bond, context)
        flags = qc_flags_for_bond(bond, context.settle)
        status = pricer.status()
        if status is not None and status not in flags:
            flags.append(status)

        row = {
            "bond_id": bond.bond_id,
            "maturity": bond.maturity,
            "coupon_rate": bond.coupon_rate,
            "freq": bond.freq,
            "day_count": bond.day_count,
            "strategy": pricer.strategy(),
            "notional_outstanding": pricer.notional_fraction * context.notional,
            "dirty": pricer.model_full_price(),
            "accrued": np.nan if "MATURED" in flags else pricer.accrued_interest(),
        }

        if quotes is not None and bond.bond_id in quotes:
            quoted = BondPricer(bond, context.with_quote(quotes[bond.bond_id]))
            row["market_dirty"] = quoted.full_price()
            row["ytm"] = quoted.yield_to_maturity() if status is None else np.nan
            row["z_spread"] = quoted.implied_z_spread()

        row["flags"] = "|".join(flags) if flags else ""
        rows.append(row)

    out = pd.DataFrame(rows)
    out["clean"] = out["dirty"] - out["accrued"]
    logger.debug("priced %d bonds at %s", len(out), context.settle.date())
    return out
