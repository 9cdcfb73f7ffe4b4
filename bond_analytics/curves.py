from __future__ import annotations

import numpy as np
import pandas as pd
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from .utils import yearfrac


def _to_int64(dates: Iterable[pd.Timestamp]) -> np.ndarray:
    return np.array([pd.Timestamp(d).to_datetime64() for d in dates], dtype="datetime64[ns]").astype("int64")


def _knot_array(dates: Iterable[pd.Timestamp]) -> np.ndarray:
    return np.array([pd.Timestamp(d).to_datetime64() for d in dates], dtype="datetime64[ns]")


@dataclass(frozen=True)
class DiscountCurve:
    """
    Discount curve snapshot: knot discount factors interpolated linearly in
    log discount factor space.

    - Within knot range: log-linear interpolation on DF.
    - Short-end extrapolation: flat cc zero implied by first knot.
    - Long-end extrapolation: NOT allowed (raises).

    The curve is immutable; shifts and bumps return new curves.
    """
    val_date: pd.Timestamp
    knot_dates: np.ndarray          # dtype datetime64[ns]
    knot_log_dfs: np.ndarray        # log(D)
    zero_day_count: str = "ACT/365"

    @classmethod
    def from_zero_rates(
        cls,
        val_date: pd.Timestamp,
        dates: Sequence[pd.Timestamp],
        zero_rates: Sequence[float],
        zero_day_count: str = "ACT/365",
    ) -> "DiscountCurve":
        """Build a curve from continuously-compounded zero rates at knot dates."""
        val_date = pd.Timestamp(val_date)
        dates = [pd.Timestamp(d) for d in dates]
        if len(dates) != len(zero_rates) or len(dates) == 0:
            raise ValueError("dates and zero_rates must be non-empty and of equal length")
        if any(d <= val_date for d in dates):
            raise ValueError("Knot dates must be after the valuation date.")
        if any(dates[i] >= dates[i + 1] for i in range(len(dates) - 1)):
            raise ValueError("Knot dates must be strictly increasing.")

        taus = np.array([yearfrac(val_date, d, zero_day_count) for d in dates], dtype=float)
        log_dfs = -np.asarray(zero_rates, dtype=float) * taus
        return cls(val_date, _knot_array(dates), log_dfs, zero_day_count)

    @classmethod
    def flat(
        cls,
        val_date: pd.Timestamp,
        rate: float,
        horizon_years: int = 60,
        zero_day_count: str = "ACT/365",
    ) -> "DiscountCurve":
        """Flat continuously-compounded zero curve with annual knots out to horizon_years."""
        val_date = pd.Timestamp(val_date)
        dates = [val_date + pd.DateOffset(years=k) for k in range(1, horizon_years + 1)]
        return cls.from_zero_rates(val_date, dates, [rate] * len(dates), zero_day_count)

    def times(self, dates: Iterable[pd.Timestamp]) -> np.ndarray:
        """Year fractions from val_date under the curve's zero day count."""
        return np.array([yearfrac(self.val_date, d, self.zero_day_count) for d in dates], dtype=float)

    def knot_taus(self) -> np.ndarray:
        return self.times(pd.to_datetime(self.knot_dates))

    def df(self, dates: Iterable[pd.Timestamp]) -> np.ndarray:
        dates_list = [pd.Timestamp(d) for d in dates]
        if not dates_list:
            return np.empty(0, dtype=float)

        x = _to_int64(dates_list)
        kx = self.knot_dates.astype("datetime64[ns]").astype("int64")
        kv = self.knot_log_dfs

        if x.max() > kx.max():
            raise ValueError("Requested date beyond curve knot range (no long-end extrapolation).")

        out = np.empty(len(x), dtype=float)

        mask_short = x < kx.min()
        if np.any(mask_short):
            # first knot implied flat cc zero
            tau1 = yearfrac(self.val_date, pd.Timestamp(pd.to_datetime(self.knot_dates[0])), self.zero_day_count)
            if tau1 <= 0:
                raise ValueError("First knot must be after valuation date.")
            z1 = -kv[0] / tau1

            idxs = np.where(mask_short)[0]
            if any(dates_list[i] < self.val_date for i in idxs):
                raise ValueError("Requested date before valuation date.")
            taus = self.times([dates_list[i] for i in idxs])
            out[mask_short] = np.exp(-z1 * taus)

        mask_in = ~mask_short
        if np.any(mask_in):
            out[mask_in] = np.exp(np.interp(x[mask_in], kx, kv))

        return out

    def discount_factor(self, date: pd.Timestamp, start: Optional[pd.Timestamp] = None) -> float:
        """DF to date, forward-discounted to start when given: D(date)/D(start)."""
        if start is None:
            return float(self.df([date])[0])
        d = self.df([start, date])
        return float(d[1] / d[0])

    def zero_rate_cc(self, dates: Iterable[pd.Timestamp]) -> np.ndarray:
        dates_list = [pd.Timestamp(d) for d in dates]
        dfs = self.df(dates_list)

        taus = self.times(dates_list)
        if np.any(taus <= 0):
            raise ValueError("Non-positive tau encountered in zero rate computation.")

        return -np.log(dfs) / taus

    def forward_rate(self, start: pd.Timestamp, end: pd.Timestamp, day_count: Optional[str] = None) -> float:
        """
        Forward rate between two dates.

        Continuously compounded on the curve basis by default; simply
        compounded over day_count when one is given (money-market forwards).
        """
        d = self.df([start, end])
        if day_count is None:
            tau = yearfrac(start, end, self.zero_day_count)
            return float(np.log(d[0] / d[1]) / tau)
        tau = yearfrac(start, end, day_count)
        return float((d[0] / d[1] - 1.0) / tau)

    def shifted(self, spread: float) -> "DiscountCurve":
        """Parallel shift of cc zeros by spread (decimal); Z-spread style discounting."""
        if spread == 0.0:
            return self
        return curve_from_shifted_zeros(self, lambda tau: spread)


@dataclass(frozen=True)
class SurvivalCurve:
    """
    Piecewise-constant hazard rate curve.

    hazard_rates[i] applies on (knot_dates[i-1], knot_dates[i]]; the last hazard
    rate is extended flat beyond the final knot.
    """
    val_date: pd.Timestamp
    knot_dates: np.ndarray          # dtype datetime64[ns]
    hazard_rates: np.ndarray
    recovery_rate: float = 0.4
    day_count: str = "ACT/365"

    @classmethod
    def flat(cls, val_date: pd.Timestamp, hazard_rate: float, recovery_rate: float = 0.4) -> "SurvivalCurve":
        val_date = pd.Timestamp(val_date)
        knot = _knot_array([val_date + pd.DateOffset(years=1)])
        return cls(val_date, knot, np.array([hazard_rate], dtype=float), recovery_rate)

    @classmethod
    def from_cds_spread(cls, val_date: pd.Timestamp, spread: float, recovery_rate: float = 0.4) -> "SurvivalCurve":
        """Flat curve from a CDS level via the credit triangle: hazard = s / (1 - R)."""
        if not (0.0 <= recovery_rate < 1.0):
            raise ValueError("recovery_rate must be in [0, 1)")
        return cls.flat(val_date, spread / (1.0 - recovery_rate), recovery_rate)

    def _cumulative_hazard(self, dates: Iterable[pd.Timestamp]) -> np.ndarray:
        dates_list = [pd.Timestamp(d) for d in dates]
        taus = np.array([yearfrac(self.val_date, d, self.day_count) if d >= self.val_date else 0.0
                         for d in dates_list], dtype=float)
        knot_taus = np.array([yearfrac(self.val_date, d, self.day_count) for d in pd.to_datetime(self.knot_dates)],
                             dtype=float)
        lam = np.asarray(self.hazard_rates, dtype=float)

        seg_start = np.r_[0.0, knot_taus[:-1]]
        seg_len = np.diff(np.r_[0.0, knot_taus])
        cum_at_start = np.r_[0.0, np.cumsum(lam * seg_len)[:-1]]

        idx = np.searchsorted(knot_taus, taus, side="left")
        idx = np.minimum(idx, len(lam) - 1)
        return cum_at_start[idx] + lam[idx] * (taus - seg_start[idx])

    def survival_probability(self, dates: Iterable[pd.Timestamp]) -> np.ndarray:
        return np.exp(-self._cumulative_hazard(dates))

    @property
    def spread(self) -> float:
        """Credit-triangle spread of the first hazard segment."""
        return float(self.hazard_rates[0] * (1.0 - self.recovery_rate))

    def shifted(self, spread: float) -> "SurvivalCurve":
        """Add a parallel CDS spread shift, mapped to hazard via the credit triangle."""
        bump = spread / (1.0 - self.recovery_rate)
        return SurvivalCurve(self.val_date, self.knot_dates.copy(), self.hazard_rates + bump,
                             self.recovery_rate, self.day_count)

    def with_spread(self, spread: float) -> "SurvivalCurve":
        """Flat curve at a new CDS level, same recovery."""
        return SurvivalCurve.from_cds_spread(self.val_date, spread, self.recovery_rate)


# ---- Curve shocks ----

def shocked_curve_parallel(curve: DiscountCurve, shift_bp: float) -> DiscountCurve:
    """Parallel shift in continuously-compounded zero rates by shift_bp."""
    return curve_from_shifted_zeros(curve, parallel_shift_bp(shift_bp))


def curve_from_shifted_zeros(curve: DiscountCurve, shift_func) -> DiscountCurve:
    """Build a new curve by shifting cc zeros z(t) by shift_func(tau) (decimal)."""
    taus = curve.knot_taus()
    shifts = np.array([shift_func(t) for t in taus], dtype=float)

    # log D = -z * tau, so a zero shift moves log D by -shift * tau
    logdfs_shifted = curve.knot_log_dfs - shifts * taus
    return DiscountCurve(curve.val_date, curve.knot_dates.copy(), logdfs_shifted, curve.zero_day_count)


def parallel_shift_bp(bp: float):
    s = bp / 10000.0
    return lambda tau: s


def steepener_shift_bp(bp: float, pivot: float = 2.0, long: float = 10.0):
    A = bp / 10000.0

    def f(tau: float) -> float:
        if tau <= pivot:
            return +A
        if tau >= long:
            return -A
        w = (tau - pivot) / (long - pivot)
        return (1 - w) * (+A) + w * (-A)

    return f


def flattener_shift_bp(bp: float, pivot: float = 2.0, long: float = 10.0):
    return steepener_shift_bp(-bp, pivot, long)
