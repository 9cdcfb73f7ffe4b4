from __future__ import annotations

from dataclasses import dataclass

# Root finding
SOLVER_TOLERANCE = 1e-12
SOLVER_MAX_ITER = 200
YIELD_BRACKET = (-0.5, 1.0)
SPREAD_BRACKET = (-0.05, 0.5)
BRACKET_EXPANSIONS = 8

# Credit
DEFAULT_RECOVERY = 0.4
CDS_SPREAD_CAP = 5.0            # 50,000bp
CDS_PREMIUM_FREQ = 4
CDS_PREMIUM_DAY_COUNT = "ACT/360"
RECOVERY_STEPS_PER_YEAR = 12

# Lattices
DEFAULT_TREE_STEPS = 100
SPOT_BUMP = 0.05

# Risk
BUMP_BP = 1.0

SETTINGS_VERSION = 1


@dataclass(frozen=True)
class PricerSettings:
    """
    Explicit pricing switches carried on the pricing context.

    version is bumped whenever a field changes meaning, so persisted settings
    can be checked before use.
    """
    version: int = SETTINGS_VERSION
    ignore_call: bool = False
    cds_fallback: bool = True
    tree_steps: int = DEFAULT_TREE_STEPS
    tolerance: float = SOLVER_TOLERANCE
    max_iterations: int = SOLVER_MAX_ITER
    recovery_steps_per_year: int = RECOVERY_STEPS_PER_YEAR
    spot_bump: float = SPOT_BUMP

    def __post_init__(self):
        if self.version != SETTINGS_VERSION:
            raise ValueError(f"Unsupported settings version {self.version} (expected {SETTINGS_VERSION}).")
        if self.tree_steps < 1:
            raise ValueError("tree_steps must be positive")
        if not (0.0 < self.spot_bump < 1.0):
            raise ValueError("spot_bump must be in (0, 1)")
