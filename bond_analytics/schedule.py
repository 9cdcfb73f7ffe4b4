from __future__ import annotations

import logging
import pandas as pd
from dataclasses import dataclass
from functools import lru_cache
from typing import Iterator, List, Tuple, Union

from .bonds import Bond, Period, ValidationError
from .utils import add_business_days, roll_date

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Schedule:
    """Ordered, gap-free accrual periods covering [effective, maturity]."""
    periods: Tuple[Period, ...]

    def __len__(self) -> int:
        return len(self.periods)

    def __iter__(self) -> Iterator[Period]:
        return iter(self.periods)

    def __getitem__(self, i: int) -> Period:
        return self.periods[i]

    @property
    def effective(self) -> pd.Timestamp:
        return self.periods[0].accrual_start

    @property
    def maturity(self) -> pd.Timestamp:
        return self.periods[-1].accrual_end

    def find_period(self, date: pd.Timestamp) -> int:
        """
        Index of the period with accrual_start <= date < accrual_end.

        Returns -1 before the first period and len(self) on/after the last end.
        """
        date = pd.Timestamp(date)
        if date < self.periods[0].accrual_start:
            return -1
        for i, p in enumerate(self.periods):
            if p.accrual_start <= date < p.accrual_end:
                return i
        return len(self.periods)

    def accrual_ends(self) -> List[pd.Timestamp]:
        return [p.accrual_end for p in self.periods]


def apply_cycle_rule(date: pd.Timestamp, rule: Union[None, str, int]) -> pd.Timestamp:
    if rule is None:
        return date
    if isinstance(rule, str):
        return date + pd.offsets.MonthEnd(0)
    return date.replace(day=min(int(rule), date.days_in_month))


def cycle_date(anchor: pd.Timestamp, k: int, months: int, rule: Union[None, str, int]) -> pd.Timestamp:
    """k-th cycle date from anchor (negative k steps backward); always offset from the anchor to avoid drift."""
    return apply_cycle_rule(pd.Timestamp(anchor) + pd.DateOffset(months=k * months), rule)


def payment_date(bond: Bond, unadjusted_end: pd.Timestamp) -> pd.Timestamp:
    lag = bond.payment_lag
    if lag is None or lag.days == 0:
        return roll_date(unadjusted_end, bond.bd_convention, bond.calendar)
    if lag.business_days:
        return add_business_days(unadjusted_end, lag.days, bond.calendar)
    return roll_date(unadjusted_end + pd.Timedelta(days=lag.days), bond.bd_convention, bond.calendar)


def _backward_dates(bond: Bond, anchor: pd.Timestamp) -> Tuple[List[pd.Timestamp], pd.Timestamp]:
    """Regular dates in (effective, anchor], plus the cycle date on/before effective."""
    rule = bond.cycle_rule
    dates = [anchor]
    k = 1
    while True:
        d = cycle_date(anchor, -k, bond.months, rule)
        if d <= bond.effective:
            dates.reverse()
            return dates, d
        dates.append(d)
        k += 1


def _forward_dates(bond: Bond, anchor: pd.Timestamp, stop: pd.Timestamp) -> List[pd.Timestamp]:
    """Regular dates in [anchor, stop)."""
    rule = bond.cycle_rule
    dates = []
    k = 0
    while True:
        d = cycle_date(anchor, k, bond.months, rule) if k else anchor
        if d >= stop:
            return dates
        dates.append(d)
        k += 1


def _on_cycle(bond: Bond, anchor: pd.Timestamp, target: pd.Timestamp) -> bool:
    k = 0
    while True:
        d = cycle_date(anchor, k, bond.months, bond.cycle_rule) if k else anchor
        if d == target:
            return True
        if d > target:
            return False
        k += 1


def _boundaries(bond: Bond) -> Tuple[List[pd.Timestamp], pd.Timestamp, bool]:
    """Unadjusted period boundaries, the cycle date anchoring the first period, and whether the last period is a stub."""
    m = bond.months
    E, M = bond.effective, bond.maturity
    FC, LC = bond.first_coupon, bond.last_coupon

    if FC is None and not bond.stub_at_end:
        anchor = LC if LC is not None else M
        regular, first_cycle = _backward_dates(bond, anchor)
        bounds = [E] + regular
        final_stub = False
        if LC is not None:
            bounds.append(M)
            final_stub = cycle_date(LC, 1, m, bond.cycle_rule) != M
        return bounds, first_cycle, final_stub

    anchor = FC if FC is not None else E
    stop = LC if LC is not None else M
    if LC is not None and not bond.respect_all_user_dates and not _on_cycle(bond, anchor, LC):
        raise ValidationError(f"{bond.bond_id}: last coupon {LC.date()} is not on the first coupon's cycle")

    regular = _forward_dates(bond, anchor, stop)
    bounds = [E] + [d for d in regular if d > E] + [stop]
    if LC is not None:
        bounds.append(M)
        final_stub = cycle_date(LC, 1, m, bond.cycle_rule) != M
    else:
        final_stub = not _on_cycle(bond, anchor, M)
    first_cycle = cycle_date(anchor, -1, m, bond.cycle_rule) if FC is not None else E
    return bounds, first_cycle, final_stub


def _periods_from_boundaries(
    bond: Bond,
    bounds: List[pd.Timestamp],
    first_cycle: pd.Timestamp,
    final_stub: bool,
) -> Tuple[Period, ...]:
    m = bond.months
    rule = bond.cycle_rule
    n = len(bounds) - 1
    periods = []

    for i in range(n):
        start, end = bounds[i], bounds[i + 1]
        if i == 0 and not (final_stub and n == 1 and first_cycle == start):
            cyc_start, cyc_end = first_cycle, end
            if first_cycle > start and cycle_date(first_cycle, -1, m, rule) > start:
                raise ValidationError(f"{bond.bond_id}: first stub longer than two coupon periods")
            if cyc_start >= cyc_end:
                cyc_start = cycle_date(end, -1, m, rule)
        elif i == n - 1 and final_stub:
            # final stub, referenced forward from its start
            cyc_start, cyc_end = start, cycle_date(start, 1, m, rule)
            if end > cycle_date(start, 2, m, rule):
                raise ValidationError(f"{bond.bond_id}: final stub longer than two coupon periods")
        else:
            cyc_start, cyc_end = start, end

        if bond.accrue_on_cycle:
            acc_start, acc_end = start, end
        else:
            acc_start = start if i == 0 else roll_date(start, bond.bd_convention, bond.calendar)
            acc_end = roll_date(end, bond.bd_convention, bond.calendar)

        periods.append(Period(acc_start, acc_end, payment_date(bond, end), cyc_start, cyc_end))

    return tuple(periods)


@lru_cache(maxsize=10_000)
def build_schedule(bond: Bond) -> Schedule:
    """
    Accrual/payment schedule for a bond.

    - custom_schedule is returned verbatim
    - default: cycle dates generated backward from maturity (or last coupon),
      short first stub
    - first_coupon or stub_at_end: generated forward, stub at the end
    Accrual boundaries stay on the unadjusted cycle unless accrue_on_cycle is off;
    payment dates are business-day rolled and lagged.
    """
    if bond.custom_schedule:
        return Schedule(tuple(bond.custom_schedule))

    bounds, first_cycle, final_stub = _boundaries(bond)
    periods = _periods_from_boundaries(bond, bounds, first_cycle, final_stub)
    logger.debug("%s: built %d periods", bond.bond_id, len(periods))
    return Schedule(periods)
