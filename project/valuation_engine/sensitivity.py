# valuation_engine/sensitivity.py
# ──────────────────────────────────────────────────────────────────────────────
# Sensitivity Surface Builder
# ──────────────────────────────────────────────────────────────────────────────
#
#  Rows    : base discount rate  + {−1%, −0.5%, 0, +0.5%, +1%}
#  Columns : base terminal growth + {−0.5%, −0.25%, 0, +0.25%, +0.5%}
#  Cell    : dcf.valuate() intrinsic value per share, growth path held fixed
#
# Each cell is an independent pure call, so the grid is a map over the
# Cartesian product; with max_workers > 0 it runs on a thread pool.
# A cell whose DCF is undefined (r <= g_t at the extremes) records
# SENSITIVITY_SENTINEL instead of aborting the surface.
# ──────────────────────────────────────────────────────────────────────────────

from __future__ import annotations

import itertools
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import List, Sequence, Tuple

from valuation_engine.constants import (
    DISCOUNT_RATE_OFFSETS,
    SENSITIVITY_SENTINEL,
    TERMINAL_GROWTH_OFFSETS,
)
from valuation_engine.dcf import valuate
from valuation_engine.errors import ValuationError
from valuation_engine.models import FinancialBaseline, GrowthAssumptionSet, SensitivitySurface

_logger = logging.getLogger(__name__)


def _axis(base: float, offsets: Sequence[float]) -> Tuple[float, ...]:
    return tuple(base + step for step in offsets)


def _cell_value(
    baseline: FinancialBaseline,
    growth_rates: Tuple[float, ...],
    discount_rate: float,
    terminal_growth_rate: float,
) -> Tuple[float, bool]:
    """(intrinsic value per share, ok) for one grid point."""
    try:
        assumptions = GrowthAssumptionSet(discount_rate, terminal_growth_rate, growth_rates)
        return valuate(baseline, assumptions).intrinsic_value_per_share, True
    except ValuationError as exc:
        _logger.debug("Sensitivity cell r=%.4f g_t=%.4f undefined: %s", discount_rate, terminal_growth_rate, exc)
        return SENSITIVITY_SENTINEL, False


def build_surface(
    baseline: FinancialBaseline,
    bridged_growth_path: Sequence[float],
    base_discount_rate: float,
    base_terminal_growth_rate: float,
    discount_offsets: Sequence[float] = DISCOUNT_RATE_OFFSETS,
    terminal_offsets: Sequence[float] = TERMINAL_GROWTH_OFFSETS,
    max_workers: int = 0,
) -> SensitivitySurface:
    """
    Build a (discount rate × terminal growth) surface of intrinsic value per share.

    Args:
        baseline                 : FinancialBaseline used for every cell
        bridged_growth_path      : revenue growth path (typically 10 years)
        base_discount_rate       : centre of the row axis
        base_terminal_growth_rate: centre of the column axis
        discount_offsets         : row perturbations; must include 0.0
        terminal_offsets         : column perturbations; must include 0.0
        max_workers              : > 0 evaluates cells on a thread pool

    Returns:
        SensitivitySurface whose base_index points at the unperturbed cell.
    """
    if 0.0 not in discount_offsets or 0.0 not in terminal_offsets:
        raise ValueError("Sensitivity offsets must include 0.0 so the base case is a grid point.")

    growth_rates = tuple(float(g) for g in bridged_growth_path)
    dr_axis = _axis(base_discount_rate, discount_offsets)
    tg_axis = _axis(base_terminal_growth_rate, terminal_offsets)
    grid = list(itertools.product(dr_axis, tg_axis))

    def evaluate(cell: Tuple[float, float]) -> Tuple[float, bool]:
        return _cell_value(baseline, growth_rates, cell[0], cell[1])

    if max_workers > 0:
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            results = list(executor.map(evaluate, grid))
    else:
        results = list(map(evaluate, grid))

    n_cols = len(tg_axis)
    values: List[Tuple[float, ...]] = [
        tuple(v for v, _ in results[i * n_cols:(i + 1) * n_cols]) for i in range(len(dr_axis))
    ]
    failed = tuple(divmod(k, n_cols) for k, (_, ok) in enumerate(results) if not ok)
    if failed:
        _logger.warning(
            "%s: %d of %d sensitivity cells undefined (recorded as %s)",
            baseline.symbol, len(failed), len(grid), SENSITIVITY_SENTINEL,
        )

    return SensitivitySurface(
        discount_rates=dr_axis,
        terminal_growth_rates=tg_axis,
        values=tuple(values),
        base_index=(list(discount_offsets).index(0.0), list(terminal_offsets).index(0.0)),
        failed_cells=failed,
    )
