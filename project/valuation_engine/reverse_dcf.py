# valuation_engine/reverse_dcf.py
# ──────────────────────────────────────────────────────────────────────────────
# Reverse DCF Solver
# ──────────────────────────────────────────────────────────────────────────────
#
# Question answered
# -----------------
#  "What constant revenue CAGR does the current market cap imply?"
#  One answer per candidate discount rate (default 6%, 7%, 8%, 9%, 10%).
#
# Valuation function
# ------------------
#  V(g) = Σ_{t=1..N} R_0 (1+g)^t · m / (1+r)^t
#       + R_0 (1+g)^N · m · (1+g_t) / (r − g_t) / (1+r)^N
#
#  m = FCF_TTM / Revenue_TTM (must be > 0). With m > 0, V is strictly
#  increasing in g on (−1, ∞), so bisection on the fixed bracket is valid.
#  Any change to this model must keep that monotonicity.
#
# Search
# ------
#  Bracket  : g ∈ [−0.50, 1.00]; target outside [V(lo), V(hi)] → no root,
#             scenario omitted for that rate
#  Bisection: ≤ 100 iterations, stop when |V(mid) − target| / target < 0.01%
#  Degraded : iterations exhausted → best midpoint, flagged converged=False
#
# Failure policy
# --------------
#  NegativeMargin      → whole batch aborted before any solving
#  InvalidDiscountRate → that rate dropped and recorded in `skipped`
#  NoScenarioFound     → no rate produced a scenario
# ──────────────────────────────────────────────────────────────────────────────

from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple

from valuation_engine.constants import (
    BISECTION_MAX_ITERATIONS,
    BISECTION_TOLERANCE,
    CAGR_SEARCH_LOWER,
    CAGR_SEARCH_UPPER,
    CANDIDATE_DISCOUNT_RATES,
    REVERSE_DCF_PROJECTION_YEARS,
    TERMINAL_GROWTH_RATE_DEFAULT,
    ValuationSettings,
)
from valuation_engine.dcf import discount_factor, gordon_terminal_value
from valuation_engine.errors import (
    InvalidDiscountRate,
    InvalidInput,
    NegativeMargin,
    NoScenarioFound,
)
from valuation_engine.models import FinancialBaseline, ReverseDcfAnalysis, ReverseDcfScenario

_logger = logging.getLogger(__name__)


def enterprise_value_at_cagr(
    revenue: float,
    fcf_margin: float,
    cagr: float,
    discount_rate: float,
    projection_years: int,
    terminal_growth_rate: float,
) -> float:
    """V(g): enterprise value when revenue compounds at a constant `cagr`."""
    pv = 0.0
    rev = revenue
    for year in range(1, projection_years + 1):
        rev = rev * (1.0 + cagr)
        pv += rev * fcf_margin / discount_factor(discount_rate, year)

    tv = gordon_terminal_value(rev * fcf_margin, discount_rate, terminal_growth_rate)
    return pv + tv / discount_factor(discount_rate, projection_years)


def find_implied_cagr(
    revenue: float,
    fcf_margin: float,
    target_value: float,
    discount_rate: float,
    projection_years: int,
    terminal_growth_rate: float,
    bounds: Tuple[float, float] = (CAGR_SEARCH_LOWER, CAGR_SEARCH_UPPER),
    tolerance: float = BISECTION_TOLERANCE,
    max_iterations: int = BISECTION_MAX_ITERATIONS,
) -> Optional[ReverseDcfScenario]:
    """
    Bisection for the CAGR g with V(g) = target_value.

    Returns:
        ReverseDcfScenario, or None when the target lies outside
        [V(lower), V(upper)] and no root exists in the bracket.

    Raises:
        InvalidDiscountRate: discount_rate <= terminal_growth_rate.
    """
    def value(g: float) -> float:
        return enterprise_value_at_cagr(
            revenue, fcf_margin, g, discount_rate, projection_years, terminal_growth_rate
        )

    lo, hi = bounds
    v_lo, v_hi = value(lo), value(hi)
    if target_value < v_lo or target_value > v_hi:
        _logger.debug(
            "r=%.2f%%: target %.0f outside bracket [%.0f, %.0f]",
            discount_rate * 100, target_value, v_lo, v_hi,
        )
        return None

    for i in range(1, max_iterations + 1):
        mid = (lo + hi) / 2.0
        v_mid = value(mid)
        error = abs(v_mid - target_value) / target_value
        if error < tolerance:
            _logger.debug("r=%.2f%%: converged g=%.4f after %d iterations", discount_rate * 100, mid, i)
            return ReverseDcfScenario(discount_rate, mid, converged=True, iterations=i)
        if v_mid < target_value:
            lo = mid
        else:
            hi = mid

    best = (lo + hi) / 2.0
    _logger.warning(
        "r=%.2f%%: bisection hit %d iterations without reaching %.4f%% tolerance; "
        "returning best estimate g=%.4f",
        discount_rate * 100, max_iterations, tolerance * 100, best,
    )
    return ReverseDcfScenario(discount_rate, best, converged=False, iterations=max_iterations)


def _solve(
    baseline: FinancialBaseline,
    candidate_discount_rates: Sequence[float],
    projection_years: int,
    terminal_growth_rate: float,
    bounds: Tuple[float, float],
    tolerance: float,
    max_iterations: int,
) -> Tuple[List[ReverseDcfScenario], List[Tuple[float, str]]]:
    market_cap = baseline.market_cap
    if math.isnan(market_cap):
        raise InvalidInput(f"{baseline.symbol}: reverse DCF requires a market capitalization")
    if projection_years < 1:
        raise InvalidInput(f"projection_years must be >= 1, got {projection_years!r}")

    margin = baseline.fcf_margin
    if margin <= 0:
        raise NegativeMargin(margin)

    scenarios: List[ReverseDcfScenario] = []
    skipped: List[Tuple[float, str]] = []

    for r in candidate_discount_rates:
        try:
            scenario = find_implied_cagr(
                baseline.revenue_ttm, margin, market_cap, r,
                projection_years, terminal_growth_rate,
                bounds=bounds, tolerance=tolerance, max_iterations=max_iterations,
            )
        except InvalidDiscountRate as exc:
            _logger.warning("%s: skipping discount rate %.2f%%: %s", baseline.symbol, r * 100, exc)
            skipped.append((r, str(exc)))
            continue

        if scenario is None:
            skipped.append((r, "Market cap outside the valuation range of the CAGR search bracket"))
            continue
        scenarios.append(scenario)

    if not scenarios:
        raise NoScenarioFound(market_cap, candidate_discount_rates)

    return scenarios, skipped


def solve(
    baseline: FinancialBaseline,
    candidate_discount_rates: Sequence[float] = CANDIDATE_DISCOUNT_RATES,
    projection_years: int = REVERSE_DCF_PROJECTION_YEARS,
    terminal_growth_rate: float = TERMINAL_GROWTH_RATE_DEFAULT,
    bounds: Tuple[float, float] = (CAGR_SEARCH_LOWER, CAGR_SEARCH_UPPER),
    tolerance: float = BISECTION_TOLERANCE,
    max_iterations: int = BISECTION_MAX_ITERATIONS,
) -> List[ReverseDcfScenario]:
    """
    Implied revenue CAGR for each candidate discount rate, in input order.

    Rates that fail (rate <= terminal growth, or no root in the bracket) are
    omitted, so the list may be shorter than `candidate_discount_rates`.

    Raises:
        InvalidInput     : baseline has no market cap
        NegativeMargin   : FCF margin <= 0
        NoScenarioFound  : every candidate rate failed
    """
    scenarios, _ = _solve(
        baseline, candidate_discount_rates, projection_years,
        terminal_growth_rate, bounds, tolerance, max_iterations,
    )
    return scenarios


def analyze(baseline: FinancialBaseline, settings: Optional[ValuationSettings] = None) -> ReverseDcfAnalysis:
    """Run solve() under `settings` and package the result with its inputs."""
    settings = settings or ValuationSettings()
    tg = settings.reverse_terminal_growth_rate
    scenarios, skipped = _solve(
        baseline,
        settings.candidate_discount_rates,
        settings.reverse_projection_years,
        tg,
        settings.cagr_bounds,
        settings.tolerance,
        settings.max_iterations,
    )
    if skipped:
        _logger.warning(
            "%s: reverse DCF partial, %d of %d discount rates produced a scenario",
            baseline.symbol, len(scenarios), len(settings.candidate_discount_rates),
        )

    return ReverseDcfAnalysis(
        symbol=baseline.symbol,
        baseline=baseline,
        fcf_margin=baseline.fcf_margin,
        terminal_growth_rate=tg,
        projection_years=settings.reverse_projection_years,
        scenarios=tuple(scenarios),
        skipped=tuple(skipped),
        generated_at=datetime.now(timezone.utc).isoformat(),
    )
