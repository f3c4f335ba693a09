# valuation_engine/growth_bridge.py
# ──────────────────────────────────────────────────────────────────────────────
# Growth-Curve Bridge
# ──────────────────────────────────────────────────────────────────────────────
#
#  Stage 1: Years 1–5  : explicit forecast rates, copied verbatim
#  Stage 2: Years 6–10 : linear fade from the year-5 rate to terminal growth
#
#      step        = (g_5 − g_t) / fade_years
#      g_{5+i}     = g_5 − step × i          i = 1 … fade_years
#
# The last faded year is pinned to g_t itself so the path lands on the
# terminal rate bit-for-bit rather than within rounding noise of it.
# ──────────────────────────────────────────────────────────────────────────────

from __future__ import annotations

import math
from typing import List, Sequence, Tuple

from valuation_engine.constants import EXPLICIT_FORECAST_YEARS, FADE_YEARS
from valuation_engine.errors import InvalidInput
from valuation_engine.models import GrowthAssumptionSet, growth_path


def fade_to_terminal(g_start: float, g_terminal: float, n: int) -> List[float]:
    """Linear fade over n years, excluding g_start and ending exactly on g_terminal."""
    if n <= 0:
        return []
    step = (g_start - g_terminal) / n
    return [g_terminal if i == n else g_start - step * i for i in range(1, n + 1)]


def bridge(
    five_year_rates: Sequence[float],
    terminal_growth_rate: float,
    fade_years: int = FADE_YEARS,
) -> Tuple[float, ...]:
    """
    Extend an explicit 5-year growth forecast into a 10-year DCF input curve.

    Raises:
        InvalidInput: if the forecast is not exactly five finite numbers or the
            terminal rate is not finite.
    """
    rates = growth_path(five_year_rates)
    if len(rates) != EXPLICIT_FORECAST_YEARS:
        raise InvalidInput(
            f"Expected {EXPLICIT_FORECAST_YEARS} explicit growth rates, got {len(rates)}"
        )
    if not all(math.isfinite(g) for g in rates) or not math.isfinite(terminal_growth_rate):
        raise InvalidInput(f"Growth rates must be finite: {rates!r}, terminal={terminal_growth_rate!r}")

    return rates + tuple(fade_to_terminal(rates[-1], float(terminal_growth_rate), fade_years))


def bridge_assumptions(assumptions: GrowthAssumptionSet, fade_years: int = FADE_YEARS) -> GrowthAssumptionSet:
    """Same discount / terminal rates, growth path extended by bridge()."""
    return GrowthAssumptionSet(
        discount_rate=assumptions.discount_rate,
        terminal_growth_rate=assumptions.terminal_growth_rate,
        revenue_growth_rates=bridge(
            assumptions.revenue_growth_rates, assumptions.terminal_growth_rate, fade_years
        ),
    )
