from __future__ import annotations

import pandas as pd
from dataclasses import dataclass, field
from typing import Optional, Tuple, Union

from .utils import BD_CONVENTIONS, CALENDARS, months_per_period, yearfrac


class ValidationError(ValueError):
    """Bond terms or pricing inputs that cannot describe a valid instrument."""


EXERCISE_STYLES = ("EUROPEAN", "AMERICAN", "BERMUDAN")
BOND_TYPES = ("US_CORP", "US_GOVT", "EUR_CORP", "EUR_GOVT", "UK_GILT", "JGB", "US_TBILL")
AMORTIZATION_KINDS = ("REMAINING_NOTIONAL", "PERCENT_OF_INITIAL")


@dataclass(frozen=True)
class CallPeriod:
    """
    Issuer call window. price is clean, per 100 of outstanding par.

    trigger: soft-call barrier as a multiple of the call price; the call is only
    live when conversion value >= trigger * price (convertibles only).
    """
    start: pd.Timestamp
    end: pd.Timestamp
    price: float = 100.0
    style: str = "AMERICAN"
    trigger: Optional[float] = None
    grace_days: int = 0

    @property
    def window_start(self) -> pd.Timestamp:
        return pd.Timestamp(self.start) + pd.Timedelta(days=self.grace_days)


@dataclass(frozen=True)
class PutPeriod:
    """Holder put window. price is clean, per 100 of outstanding par."""
    start: pd.Timestamp
    end: pd.Timestamp
    price: float = 100.0
    style: str = "AMERICAN"
    grace_days: int = 0

    @property
    def window_start(self) -> pd.Timestamp:
        return pd.Timestamp(self.start) + pd.Timedelta(days=self.grace_days)


@dataclass(frozen=True)
class Amortization:
    """
    REMAINING_NOTIONAL: notional outstanding after date (fraction of initial).
    PERCENT_OF_INITIAL: reduction on date as a fraction of initial notional.
    """
    date: pd.Timestamp
    amount: float
    kind: str = "PERCENT_OF_INITIAL"


@dataclass(frozen=True)
class CouponStep:
    date: pd.Timestamp
    rate: float


@dataclass(frozen=True)
class ExDivRule:
    days: int
    business_days: bool = True


@dataclass(frozen=True)
class PaymentLagRule:
    days: int
    business_days: bool = False


@dataclass(frozen=True)
class FloatingIndex:
    margin: float = 0.0
    day_count: str = "ACT/360"
    current_rate: Optional[float] = None
    stub_rate: Optional[float] = None


@dataclass(frozen=True)
class ConversionTerms:
    """ratio: shares received per par_amount of notional."""
    ratio: float
    start: Optional[pd.Timestamp] = None
    end: Optional[pd.Timestamp] = None
    par_amount: float = 1000.0


@dataclass(frozen=True)
class Period:
    accrual_start: pd.Timestamp
    accrual_end: pd.Timestamp
    payment_date: pd.Timestamp
    cycle_start: pd.Timestamp
    cycle_end: pd.Timestamp


@dataclass(frozen=True)
class Bond:
    """
    Contractual terms of a bond. Optional feature sets (amortization,
    step-ups, floating index, calls/puts, conversion) select the pricing
    strategy downstream.
    """
    bond_id: str
    effective: pd.Timestamp
    maturity: pd.Timestamp
    coupon_rate: float
    freq: int = 2
    day_count: str = "30/360"
    currency: str = "USD"
    bond_type: str = "US_CORP"
    cycle_rule: Union[None, str, int] = None
    bd_convention: str = "F"
    calendar: str = "NONE"
    first_coupon: Optional[pd.Timestamp] = None
    last_coupon: Optional[pd.Timestamp] = None
    stub_at_end: bool = False
    respect_all_user_dates: bool = False
    accrue_on_cycle: bool = True
    ex_div: Optional[ExDivRule] = None
    payment_lag: Optional[PaymentLagRule] = None
    amortization: Tuple[Amortization, ...] = field(default_factory=tuple)
    coupon_schedule: Tuple[CouponStep, ...] = field(default_factory=tuple)
    floating: Optional[FloatingIndex] = None
    call_schedule: Tuple[CallPeriod, ...] = field(default_factory=tuple)
    put_schedule: Tuple[PutPeriod, ...] = field(default_factory=tuple)
    conversion: Optional[ConversionTerms] = None
    custom_schedule: Tuple[Period, ...] = field(default_factory=tuple)

    def __post_init__(self):
        for name in ("effective", "maturity", "first_coupon", "last_coupon"):
            value = getattr(self, name)
            if value is not None:
                object.__setattr__(self, name, pd.Timestamp(value))
        for name in ("amortization", "coupon_schedule", "call_schedule", "put_schedule", "custom_schedule"):
            object.__setattr__(self, name, tuple(getattr(self, name)))
        validate_bond(self)

    @property
    def months(self) -> int:
        return months_per_period(self.freq)

    @property
    def is_callable(self) -> bool:
        return len(self.call_schedule) > 0

    @property
    def is_puttable(self) -> bool:
        return len(self.put_schedule) > 0

    @property
    def is_convertible(self) -> bool:
        return self.conversion is not None

    @property
    def has_options(self) -> bool:
        return self.is_callable or self.is_puttable


def _validate_exercise_periods(bond_id: str, periods, label: str) -> None:
    for p in periods:
        if p.style.upper() not in EXERCISE_STYLES:
            raise ValidationError(f"{bond_id}: unknown {label} style {p.style}")
        if pd.Timestamp(p.start) > pd.Timestamp(p.end):
            raise ValidationError(f"{bond_id}: {label} period starts after it ends")
        if p.grace_days < 0:
            raise ValidationError(f"{bond_id}: negative {label} grace days")

    for prev, nxt in zip(periods[:-1], periods[1:]):
        if pd.Timestamp(nxt.start) <= pd.Timestamp(prev.start):
            raise ValidationError(f"{bond_id}: {label} start dates must be strictly increasing")
        if pd.Timestamp(nxt.start) <= pd.Timestamp(prev.end):
            raise ValidationError(f"{bond_id}: {label} periods overlap")
        if pd.Timestamp(nxt.end) < pd.Timestamp(prev.end):
            raise ValidationError(f"{bond_id}: {label} end dates must be ascending")


def validate_bond(bond: Bond) -> None:
    bid = bond.bond_id
    if bond.effective >= bond.maturity:
        raise ValidationError(f"{bid}: effective date must precede maturity")
    try:
        months_per_period(bond.freq)
        yearfrac(bond.effective, bond.maturity, bond.day_count, bond.effective, bond.maturity, bond.freq)
    except ValueError as exc:
        raise ValidationError(f"{bid}: {exc}") from exc

    if bond.bond_type.upper() not in BOND_TYPES:
        raise ValidationError(f"{bid}: unknown bond type {bond.bond_type}")
    if bond.bd_convention.upper() not in BD_CONVENTIONS:
        raise ValidationError(f"{bid}: unknown business day convention {bond.bd_convention}")
    if bond.calendar.upper() != "NONE" and bond.calendar.upper() not in CALENDARS:
        raise ValidationError(f"{bid}: unknown calendar {bond.calendar}")
    if isinstance(bond.cycle_rule, str) and bond.cycle_rule.upper() != "EOM":
        raise ValidationError(f"{bid}: unknown cycle rule {bond.cycle_rule}")
    if isinstance(bond.cycle_rule, int) and not (1 <= bond.cycle_rule <= 31):
        raise ValidationError(f"{bid}: cycle day must be in 1..31")

    if bond.first_coupon is not None and not (bond.effective < bond.first_coupon <= bond.maturity):
        raise ValidationError(f"{bid}: first coupon must fall in (effective, maturity]")
    if bond.last_coupon is not None and not (bond.effective < bond.last_coupon < bond.maturity):
        raise ValidationError(f"{bid}: last coupon must fall in (effective, maturity)")
    if bond.first_coupon is not None and bond.last_coupon is not None and bond.last_coupon < bond.first_coupon:
        raise ValidationError(f"{bid}: last coupon precedes first coupon")

    _validate_exercise_periods(bid, bond.call_schedule, "call")
    _validate_exercise_periods(bid, bond.put_schedule, "put")

    dates = [pd.Timestamp(a.date) for a in bond.amortization]
    if any(dates[i] >= dates[i + 1] for i in range(len(dates) - 1)):
        raise ValidationError(f"{bid}: amortization dates must be strictly increasing")
    outstanding = 1.0
    for a in bond.amortization:
        kind = a.kind.upper()
        if kind not in AMORTIZATION_KINDS:
            raise ValidationError(f"{bid}: unknown amortization kind {a.kind}")
        outstanding = a.amount if kind == "REMAINING_NOTIONAL" else outstanding - a.amount
        if outstanding < -1e-12:
            raise ValidationError(f"{bid}: amortization takes notional below zero")

    steps = [pd.Timestamp(s.date) for s in bond.coupon_schedule]
    if any(steps[i] >= steps[i + 1] for i in range(len(steps) - 1)):
        raise ValidationError(f"{bid}: coupon step dates must be strictly increasing")

    if bond.conversion is not None:
        if bond.conversion.ratio < 0:
            raise ValidationError(f"{bid}: negative conversion ratio")
        if bond.conversion.par_amount <= 0:
            raise ValidationError(f"{bid}: conversion par amount must be positive")

    if bond.ex_div is not None and bond.ex_div.days < 0:
        raise ValidationError(f"{bid}: negative ex-dividend days")
    if bond.payment_lag is not None and bond.payment_lag.days < 0:
        raise ValidationError(f"{bid}: negative payment lag")

    periods = bond.custom_schedule
    for prev, nxt in zip(periods[:-1], periods[1:]):
        if pd.Timestamp(nxt.accrual_start) != pd.Timestamp(prev.accrual_end):
            raise ValidationError(f"{bid}: custom schedule periods must be contiguous")
