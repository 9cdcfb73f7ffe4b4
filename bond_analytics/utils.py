from __future__ import annotations

import pandas as pd
from functools import lru_cache
from typing import Optional

from dateutil.relativedelta import MO
from pandas.tseries.holiday import (
    AbstractHolidayCalendar,
    EasterMonday,
    GoodFriday,
    Holiday,
    USFederalHolidayCalendar,
    next_monday,
    next_monday_or_tuesday,
)
from pandas.tseries.offsets import CustomBusinessDay, DateOffset


THIRTY_360_US = ("30/360", "30/360US", "30U/360", "BOND")
THIRTY_360_EU = ("30E/360", "30/360E", "EUROBOND")
ACT_ACT_ICMA = ("ACT/ACTICMA", "ACT/ACTBOND", "ICMA")
ACT_ACT_ISDA = ("ACT/ACT", "ACT/ACTISDA")


def normalize_convention(convention: str) -> str:
    return convention.upper().replace(" ", "").replace("_", "")


def _thirty_360_days(start: pd.Timestamp, end: pd.Timestamp, european: bool) -> int:
    y1, m1, d1 = start.year, start.month, start.day
    y2, m2, d2 = end.year, end.month, end.day

    if european:
        d1 = min(d1, 30)
        d2 = min(d2, 30)
    else:
        # 30/360 US convention
        if d1 == 31:
            d1 = 30
        if d2 == 31 and d1 == 30:
            d2 = 30

    return (y2 - y1) * 360 + (m2 - m1) * 30 + (d2 - d1)


def _act_act_isda(start: pd.Timestamp, end: pd.Timestamp) -> float:
    if start.year == end.year:
        basis = 366.0 if start.is_leap_year else 365.0
        return (end - start).days / basis

    total = 0.0
    year_end = pd.Timestamp(year=start.year + 1, month=1, day=1)
    total += (year_end - start).days / (366.0 if start.is_leap_year else 365.0)
    total += end.year - start.year - 1
    year_start = pd.Timestamp(year=end.year, month=1, day=1)
    total += (end - year_start).days / (366.0 if end.is_leap_year else 365.0)
    return total


def yearfrac(
    start: pd.Timestamp,
    end: pd.Timestamp,
    convention: str,
    ref_start: Optional[pd.Timestamp] = None,
    ref_end: Optional[pd.Timestamp] = None,
    freq: Optional[int] = None,
) -> float:
    """
    Year fraction between two dates under a day count convention.

    Supported:
    - ACT/365, ACT/365F
    - ACT/360
    - 30/360, 30/360US (US bond basis), 30E/360
    - ACT/ACT (ISDA)
    - ACT/ACT ICMA: needs the reference (quasi-coupon) period and frequency
    """
    start = pd.Timestamp(start)
    end = pd.Timestamp(end)

    convention = normalize_convention(convention)
    if end < start:
        raise ValueError(f"end < start: {start=} {end=}")

    if convention in ("ACT/365", "ACT/365F", "ACT/365FIXED"):
        return (end - start).days / 365.0

    if convention == "ACT/360":
        return (end - start).days / 360.0

    if convention in THIRTY_360_US:
        return _thirty_360_days(start, end, european=False) / 360.0

    if convention in THIRTY_360_EU:
        return _thirty_360_days(start, end, european=True) / 360.0

    if convention in ACT_ACT_ISDA:
        return _act_act_isda(start, end)

    if convention in ACT_ACT_ICMA:
        if ref_start is None or ref_end is None or not freq:
            raise ValueError("ACT/ACT ICMA needs ref_start, ref_end and freq")
        ref_days = (pd.Timestamp(ref_end) - pd.Timestamp(ref_start)).days
        if ref_days <= 0:
            raise ValueError("Reference period must have positive length.")
        return (end - start).days / (ref_days * freq)

    raise ValueError(f"Unsupported day count convention: {convention}")


def is_icma(convention: str) -> bool:
    return normalize_convention(convention) in ACT_ACT_ICMA


def day_diff(start: pd.Timestamp, end: pd.Timestamp, convention: str) -> int:
    """Day count between two dates: 30/360 days for the 30/360 family, actual days otherwise. May be negative."""
    start = pd.Timestamp(start)
    end = pd.Timestamp(end)
    convention = normalize_convention(convention)

    if convention in THIRTY_360_US:
        if end < start:
            return -_thirty_360_days(end, start, european=False)
        return _thirty_360_days(start, end, european=False)
    if convention in THIRTY_360_EU:
        if end < start:
            return -_thirty_360_days(end, start, european=True)
        return _thirty_360_days(start, end, european=True)
    return (end - start).days


# ---- Calendars ----

class LondonBankHolidayCalendar(AbstractHolidayCalendar):
    rules = [
        Holiday("New Year's Day", month=1, day=1, observance=next_monday),
        GoodFriday,
        EasterMonday,
        Holiday("Early May Bank Holiday", month=5, day=1, offset=DateOffset(weekday=MO(1))),
        Holiday("Spring Bank Holiday", month=5, day=31, offset=DateOffset(weekday=MO(-1))),
        Holiday("Summer Bank Holiday", month=8, day=31, offset=DateOffset(weekday=MO(-1))),
        Holiday("Christmas Day", month=12, day=25, observance=next_monday),
        Holiday("Boxing Day", month=12, day=26, observance=next_monday_or_tuesday),
    ]


class TargetCalendar(AbstractHolidayCalendar):
    rules = [
        Holiday("New Year's Day", month=1, day=1),
        GoodFriday,
        EasterMonday,
        Holiday("Labour Day", month=5, day=1),
        Holiday("Christmas Day", month=12, day=25),
        Holiday("St. Stephen's Day", month=12, day=26),
    ]


CALENDARS = {
    "NYB": USFederalHolidayCalendar,
    "LNB": LondonBankHolidayCalendar,
    "TGT": TargetCalendar,
}

BD_CONVENTIONS = ("NONE", "F", "MF", "P", "MP")


@lru_cache(maxsize=None)
def business_day(calendar: str = "NONE") -> CustomBusinessDay:
    """Business-day offset for a calendar code (NONE = weekends only)."""
    code = calendar.upper()
    if code == "NONE":
        return CustomBusinessDay()
    if code not in CALENDARS:
        raise ValueError(f"Unknown calendar: {calendar}")
    holidays = CALENDARS[code]().holidays(start="1970-01-01", end="2100-12-31")
    return CustomBusinessDay(holidays=holidays)


def is_business_day(date: pd.Timestamp, calendar: str = "NONE") -> bool:
    return business_day(calendar).is_on_offset(pd.Timestamp(date))


def roll_date(date: pd.Timestamp, convention: str = "NONE", calendar: str = "NONE") -> pd.Timestamp:
    """Adjust a date onto a business day under F / MF / P / MP (NONE leaves it alone)."""
    date = pd.Timestamp(date)
    convention = convention.upper()
    if convention == "NONE":
        return date
    if convention not in BD_CONVENTIONS:
        raise ValueError(f"Unknown business day convention: {convention}")

    bd = business_day(calendar)
    if bd.is_on_offset(date):
        return date

    if convention == "F":
        return bd.rollforward(date)
    if convention == "P":
        return bd.rollback(date)
    if convention == "MF":
        rolled = bd.rollforward(date)
        return rolled if rolled.month == date.month else bd.rollback(date)
    # MP
    rolled = bd.rollback(date)
    return rolled if rolled.month == date.month else bd.rollforward(date)


def add_business_days(date: pd.Timestamp, n: int, calendar: str = "NONE") -> pd.Timestamp:
    date = pd.Timestamp(date)
    if n == 0:
        return date
    return date + n * business_day(calendar)


def settlement_date(val_date: pd.Timestamp, lag_days: int = 2, calendar: Optional[str] = None) -> pd.Timestamp:
    """
    Settlement date: val_date + lag_days.

    Calendar days when no calendar is given, business days otherwise.
    """
    if calendar is None:
        return pd.Timestamp(val_date) + pd.Timedelta(days=lag_days)
    return add_business_days(val_date, lag_days, calendar)


def months_per_period(freq: int) -> int:
    if freq not in (1, 2, 4, 12):
        raise ValueError(f"Unsupported frequency: {freq}")
    return 12 // freq
