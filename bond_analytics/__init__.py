"""
Bond Analytics Engine

Production-style modules:
- schedule: coupon schedule generation (stubs, cycle rules, calendars, lags)
- accrual: accrual fractions, accrued interest, record dates
- cashflows: cashflow projection (amortization, step-ups, floating coupons)
- yields: street yields, yield to call/put/worst, IRR
- spreads: z-spread, r-spread, CDS-implied spreads, asset swap spread
- lattice: Black-Karasinski short-rate tree for callables and puttables
- convertible: two-factor stock/rate tree for convertibles
- pricer: per-bond pricing facade over a market context
- portfolio/risk/scenarios: batch pricing, DV01/KRD/spread risk, scenario grids
"""
import logging

from .bonds import (
    Amortization,
    Bond,
    CallPeriod,
    ConversionTerms,
    CouponStep,
    ExDivRule,
    FloatingIndex,
    PaymentLagRule,
    Period,
    PutPeriod,
    ValidationError,
)
from .config import PricerSettings
from .convertible import StockParams
from .curves import DiscountCurve, SurvivalCurve
from .pricer import BondPricer, PricingContext, RateReset
from .schedule import Schedule, build_schedule

logging.getLogger(__name__).addHandler(logging.NullHandler())

__version__ = "0.1.0"
