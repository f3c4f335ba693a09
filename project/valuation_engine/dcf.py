# valuation_engine/dcf.py
# ──────────────────────────────────────────────────────────────────────────────
# Forward Discounted Cash Flow (DCF) Engine
# ──────────────────────────────────────────────────────────────────────────────
#
# Architecture
# ------------
# Pure financial logic: no I/O and no globals read.
# valuate() is a deterministic function of its two arguments; the
# sensitivity builder relies on that to call it 25 times per run.
#
# Model
# -----
#  Margin  : implied FCF margin = FCF_TTM / Revenue_TTM, held constant
#  Years   : revenue_i = revenue_{i-1} × (1 + g_i)       (revenue_0 = TTM)
#            fcf_i     = revenue_i × margin
#            pv_i      = fcf_i / (1 + r)^i
#  Terminal: Gordon Growth Model  →  FCF_N × (1 + g_t) / (r − g_t)
#            discounted by (1 + r)^N
#  Bridge  : EV = Σ pv_i + PV(TV)
#            Equity = EV − Net Debt        (net cash is negative net debt)
#            Intrinsic Price = Equity / Shares Outstanding
# ──────────────────────────────────────────────────────────────────────────────

from __future__ import annotations

import logging
from typing import List

from valuation_engine.constants import TERMINAL_VALUE_WARN_PCT
from valuation_engine.errors import InvalidDiscountRate
from valuation_engine.models import (
    FinancialBaseline,
    GrowthAssumptionSet,
    ProjectionStep,
    ValuationResult,
)

_logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Present-value primitives (shared with reverse_dcf.py)
# ─────────────────────────────────────────────────────────────────────────────

def discount_factor(discount_rate: float, year: int) -> float:
    """(1 + r)^year, the divisor that brings a year-`year` cash flow to today."""
    return (1.0 + discount_rate) ** year


def gordon_terminal_value(final_fcf: float, discount_rate: float, terminal_growth_rate: float) -> float:
    """
    Undiscounted growing-perpetuity value at the end of the explicit period.

    Raises:
        InvalidDiscountRate: if discount_rate <= terminal_growth_rate, where the
            formula is undefined (division by zero) or flips sign.
    """
    if discount_rate <= terminal_growth_rate:
        raise InvalidDiscountRate(discount_rate, terminal_growth_rate)
    return final_fcf * (1.0 + terminal_growth_rate) / (discount_rate - terminal_growth_rate)


# ─────────────────────────────────────────────────────────────────────────────
# Projection engine
# ─────────────────────────────────────────────────────────────────────────────

def valuate(baseline: FinancialBaseline, assumptions: GrowthAssumptionSet) -> ValuationResult:
    """
    Execute the DCF over the assumption set's explicit growth path.

    Both arguments are validated on construction (revenue > 0, shares > 0,
    finite numbers, discount rate > terminal growth), so this function only
    re-checks the rate ordering it divides by.

    Args:
        baseline    : TTM revenue / FCF, shares, net debt, optional quote
        assumptions : discount rate, terminal growth rate, per-year growth path

    Returns:
        ValuationResult with the projection path, TV, EV/equity bridge and
        an unrounded intrinsic value per share.

    Raises:
        InvalidDiscountRate: discount rate <= terminal growth rate.
    """
    r = assumptions.discount_rate
    tg = assumptions.terminal_growth_rate
    margin = baseline.fcf_margin

    # ── Project revenue and FCF ───────────────────────────────────────────────
    rev = baseline.revenue_ttm
    steps: List[ProjectionStep] = []
    sum_pv = 0.0

    for yr, g in enumerate(assumptions.revenue_growth_rates, start=1):
        rev = rev * (1.0 + g)
        fcf = rev * margin
        pv = fcf / discount_factor(r, yr)
        sum_pv += pv
        steps.append(ProjectionStep(year=yr, revenue=rev, fcf=fcf, pv_fcf=pv))
        _logger.debug("%s Y%d: revenue=%.0f fcf=%.0f pv=%.0f", baseline.symbol, yr, rev, fcf, pv)

    # ── Terminal value ────────────────────────────────────────────────────────
    n = len(steps)
    tv = gordon_terminal_value(steps[-1].fcf, r, tg)
    pv_tv = tv / discount_factor(r, n)

    # ── Equity bridge ─────────────────────────────────────────────────────────
    ev = sum_pv + pv_tv
    eq_val = ev - baseline.net_debt
    price = eq_val / baseline.shares_outstanding

    warns = []
    if margin <= 0:
        warns.append(
            f"FCF margin is {margin:.1%}; projected cash flows are non-positive "
            "and the valuation reflects continued cash burn."
        )
    if ev != 0 and abs(pv_tv / ev * 100) > TERMINAL_VALUE_WARN_PCT:
        warns.append(
            f"Terminal value represents {pv_tv / ev * 100:.0f}% of enterprise value. "
            "Results are highly sensitive to terminal growth and discount rate assumptions."
        )

    _logger.debug(
        "%s DCF: r=%.2f%% g_t=%.2f%% EV=%.0f equity=%.0f price=%.2f",
        baseline.symbol, r * 100, tg * 100, ev, eq_val, price,
    )

    return ValuationResult(
        intrinsic_value_per_share=price,
        implied_margin=margin,
        discount_rate=r,
        terminal_growth_rate=tg,
        sum_pv_fcf=sum_pv,
        terminal_value=tv,
        present_terminal_value=pv_tv,
        enterprise_value=ev,
        equity_value=eq_val,
        projections=tuple(steps),
        current_price=baseline.current_price,
        warnings=tuple(warns),
    )
