# constants.py
# ------------------------------------------------------------------
# Shared valuation policy constants used across valuation_engine modules.
#
# Centralizing these values ensures that the forward DCF, the reverse
# DCF solver and the sensitivity surface all work from one consistent
# set of assumptions. Change a value here and it propagates everywhere.
# None of these are load-bearing invariants: they are defaults, and a
# run can override any of them through ValuationSettings.
# ------------------------------------------------------------------

from dataclasses import dataclass, replace
from typing import Tuple

# Long-run perpetuity growth used by the reverse DCF when the caller
# does not supply one. Roughly nominal long-run GDP growth.
TERMINAL_GROWTH_RATE_DEFAULT: float = 0.025

# Explicit projection horizon for the reverse DCF (years at constant CAGR
# before the perpetuity takes over).
REVERSE_DCF_PROJECTION_YEARS: int = 5

# Candidate discount rates the market price is inverted against.
# Output scenarios preserve this ordering.
CANDIDATE_DISCOUNT_RATES: Tuple[float, ...] = (0.06, 0.07, 0.08, 0.09, 0.10)

# Bisection bracket for the implied revenue CAGR.
#   -50% covers severe decline, +100% covers explosive growth.
CAGR_SEARCH_LOWER: float = -0.50
CAGR_SEARCH_UPPER: float = 1.00

# Relative error |V(g) - target| / target at which bisection stops (0.01%).
BISECTION_TOLERANCE: float = 1e-4
BISECTION_MAX_ITERATIONS: int = 100

# Sensitivity surface offsets, applied to the base-case rates.
# The zero offset must stay in both tuples so the base case is one grid point.
DISCOUNT_RATE_OFFSETS: Tuple[float, ...] = (-0.01, -0.005, 0.0, 0.005, 0.01)
TERMINAL_GROWTH_OFFSETS: Tuple[float, ...] = (-0.005, -0.0025, 0.0, 0.0025, 0.005)

# Value recorded in a sensitivity cell whose DCF could not be computed
# (e.g. discount rate <= terminal growth at the grid extremes).
SENSITIVITY_SENTINEL: float = 0.0

# Explicit-forecast length produced by the assumption provider, and the
# number of fade years the growth bridge appends after it.
EXPLICIT_FORECAST_YEARS: int = 5
FADE_YEARS: int = 5

# Warn when the discounted terminal value dominates enterprise value.
TERMINAL_VALUE_WARN_PCT: float = 80.0


@dataclass(frozen=True)
class ValuationSettings:
    """
    Per-run policy knobs, passed explicitly into the orchestrator.

    Defaults mirror the module constants above. Use with_overrides() to
    derive a variant without mutating the original.
    """
    candidate_discount_rates: Tuple[float, ...] = CANDIDATE_DISCOUNT_RATES
    reverse_projection_years: int = REVERSE_DCF_PROJECTION_YEARS
    reverse_terminal_growth_rate: float = TERMINAL_GROWTH_RATE_DEFAULT
    cagr_bounds: Tuple[float, float] = (CAGR_SEARCH_LOWER, CAGR_SEARCH_UPPER)
    tolerance: float = BISECTION_TOLERANCE
    max_iterations: int = BISECTION_MAX_ITERATIONS
    discount_rate_offsets: Tuple[float, ...] = DISCOUNT_RATE_OFFSETS
    terminal_growth_offsets: Tuple[float, ...] = TERMINAL_GROWTH_OFFSETS
    fade_years: int = FADE_YEARS
    sensitivity_workers: int = 0          # 0 → evaluate grid cells sequentially

    def __post_init__(self):
        lo, hi = self.cagr_bounds
        if not lo < hi:
            raise ValueError(f"CAGR bounds must satisfy lower < upper, got {self.cagr_bounds!r}")
        if 0.0 not in self.discount_rate_offsets or 0.0 not in self.terminal_growth_offsets:
            raise ValueError("Sensitivity offsets must include 0.0 so the base case is a grid point.")
        if self.reverse_projection_years < 1:
            raise ValueError("reverse_projection_years must be >= 1")

    def with_overrides(self, **changes) -> "ValuationSettings":
        return replace(self, **changes)
