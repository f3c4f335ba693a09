# valuation_engine/models.py
# ──────────────────────────────────────────────────────────────────────────────
# Immutable data model shared by every valuation module
# ──────────────────────────────────────────────────────────────────────────────
#
# Every entity here is created fresh per analysis run and never mutated
# afterwards (frozen dataclasses, tuples instead of lists). That is what
# lets the sensitivity builder fan DCF calls out across threads without
# any locking.
#
# Entry guards
# ------------
#  FinancialBaseline   : revenue > 0, shares > 0, every number finite
#  GrowthAssumptionSet : finite rates, non-empty path,
#                        discount_rate > terminal_growth_rate
#
# Sign convention: net_debt < 0 means net cash.
#   equity_value = enterprise_value − net_debt
# ──────────────────────────────────────────────────────────────────────────────

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, replace
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from valuation_engine.errors import InvalidDiscountRate, InvalidInput


def _require_finite(name: str, value) -> float:
    try:
        f = float(value)
    except (TypeError, ValueError):
        raise InvalidInput(f"{name} must be a number, got {value!r}") from None
    if not math.isfinite(f):
        raise InvalidInput(f"{name} must be finite, got {value!r}")
    return f


# ─────────────────────────────────────────────────────────────────────────────
# Inputs
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class FinancialBaseline:
    """
    Zero-point snapshot for all projections (TTM flows, latest balance sheet,
    live quote). current_price / market_cap may be NaN when no quote exists;
    the reverse DCF requires market_cap.
    """
    symbol: str
    revenue_ttm: float
    fcf_ttm: float
    shares_outstanding: float
    net_debt: float = 0.0
    current_price: float = np.nan
    market_cap: float = np.nan

    def __post_init__(self):
        for name in ("revenue_ttm", "fcf_ttm", "shares_outstanding", "net_debt"):
            object.__setattr__(self, name, _require_finite(name, getattr(self, name)))
        if self.revenue_ttm <= 0:
            raise InvalidInput(f"{self.symbol}: revenue must be positive, got {self.revenue_ttm!r}")
        if self.shares_outstanding <= 0:
            raise InvalidInput(
                f"{self.symbol}: shares outstanding must be positive, got {self.shares_outstanding!r}"
            )
        for name in ("current_price", "market_cap"):
            raw = getattr(self, name)
            if raw is None:
                v = np.nan
            else:
                try:
                    v = float(raw)
                except (TypeError, ValueError):
                    raise InvalidInput(f"{self.symbol}: {name} must be a number, got {raw!r}") from None
            if math.isinf(v) or (not math.isnan(v) and v <= 0):
                raise InvalidInput(f"{self.symbol}: {name} must be positive when provided, got {v!r}")
            object.__setattr__(self, name, v)
        object.__setattr__(self, "symbol", str(self.symbol).upper().strip())

    @classmethod
    def create(
        cls,
        symbol: str,
        revenue_ttm,
        fcf_ttm,
        shares_outstanding,
        net_debt=0.0,
        current_price: Optional[float] = None,
        market_cap: Optional[float] = None,
    ) -> "FinancialBaseline":
        """Build from loosely typed values (API payloads); None means no quote."""
        return cls(
            symbol=symbol,
            revenue_ttm=revenue_ttm,
            fcf_ttm=fcf_ttm,
            shares_outstanding=shares_outstanding,
            net_debt=0.0 if net_debt is None else net_debt,
            current_price=current_price,
            market_cap=market_cap,
        )

    @property
    def fcf_margin(self) -> float:
        return self.fcf_ttm / self.revenue_ttm

    @property
    def has_quote(self) -> bool:
        return not (math.isnan(self.current_price) or math.isnan(self.market_cap))

    @property
    def price_implied_shares(self) -> float:
        """market_cap / current_price, NaN without a quote."""
        if not self.has_quote:
            return np.nan
        return self.market_cap / self.current_price


@dataclass(frozen=True)
class GrowthAssumptionSet:
    """
    Discount rate, terminal growth rate and an explicit per-year revenue
    growth path (5 entries from the assumption provider, 10 after bridging).
    """
    discount_rate: float
    terminal_growth_rate: float
    revenue_growth_rates: Tuple[float, ...]

    def __post_init__(self):
        rates = tuple(
            _require_finite(f"revenue_growth_rates[{i}]", g)
            for i, g in enumerate(self.revenue_growth_rates)
        )
        if not rates:
            raise InvalidInput("revenue_growth_rates must contain at least one year")
        object.__setattr__(self, "revenue_growth_rates", rates)
        object.__setattr__(self, "discount_rate", _require_finite("discount_rate", self.discount_rate))
        object.__setattr__(
            self, "terminal_growth_rate", _require_finite("terminal_growth_rate", self.terminal_growth_rate)
        )
        self.validate()

    def validate(self) -> "GrowthAssumptionSet":
        """
        Raises:
            InvalidInput        : a non-finite rate
            InvalidDiscountRate : discount_rate <= terminal_growth_rate
        """
        for i, g in enumerate(self.revenue_growth_rates):
            _require_finite(f"revenue_growth_rates[{i}]", g)
        if self.discount_rate <= self.terminal_growth_rate:
            raise InvalidDiscountRate(self.discount_rate, self.terminal_growth_rate)
        return self

    @property
    def n_years(self) -> int:
        return len(self.revenue_growth_rates)


# ─────────────────────────────────────────────────────────────────────────────
# Forward DCF outputs
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ProjectionStep:
    year: int           # 1-based
    revenue: float
    fcf: float
    pv_fcf: float


@dataclass(frozen=True)
class SensitivitySurface:
    """
    Intrinsic value per share over a discount-rate × terminal-growth grid.
    values[i][j] ↔ (discount_rates[i], terminal_growth_rates[j]).
    """
    discount_rates: Tuple[float, ...]
    terminal_growth_rates: Tuple[float, ...]
    values: Tuple[Tuple[float, ...], ...]
    base_index: Tuple[int, int] = (2, 2)
    failed_cells: Tuple[Tuple[int, int], ...] = ()

    @property
    def shape(self) -> Tuple[int, int]:
        return len(self.discount_rates), len(self.terminal_growth_rates)

    @property
    def base_value(self) -> float:
        i, j = self.base_index
        return self.values[i][j]

    def value_at(self, discount_rate_index: int, terminal_growth_index: int) -> float:
        return self.values[discount_rate_index][terminal_growth_index]

    def to_frame(self) -> pd.DataFrame:
        """DataFrame indexed by discount rate (rows) × terminal growth (columns)."""
        df = pd.DataFrame(
            [list(row) for row in self.values],
            index=pd.Index(self.discount_rates, name="Discount Rate"),
            columns=pd.Index(self.terminal_growth_rates, name="Terminal Growth"),
        )
        return df

    def to_dict(self) -> dict:
        return {
            "discountRates": list(self.discount_rates),
            "terminalGrowthRates": list(self.terminal_growth_rates),
            "values": [list(row) for row in self.values],
            "baseIndex": list(self.base_index),
            "failedCells": [list(cell) for cell in self.failed_cells],
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "SensitivitySurface":
        """Inverse of to_dict(); payloads without baseIndex / failedCells get the defaults."""
        return cls(
            discount_rates=tuple(payload["discountRates"]),
            terminal_growth_rates=tuple(payload["terminalGrowthRates"]),
            values=tuple(tuple(row) for row in payload["values"]),
            base_index=tuple(payload.get("baseIndex", (2, 2))),
            failed_cells=tuple(tuple(cell) for cell in payload.get("failedCells", ())),
        )


@dataclass(frozen=True)
class ValuationResult:
    """Output of dcf.valuate(). Full precision internally; round for display."""
    intrinsic_value_per_share: float
    implied_margin: float
    discount_rate: float
    terminal_growth_rate: float
    sum_pv_fcf: float
    terminal_value: float            # undiscounted Gordon Growth TV
    present_terminal_value: float
    enterprise_value: float          # sum_pv_fcf + present_terminal_value
    equity_value: float              # enterprise_value − net_debt
    projections: Tuple[ProjectionStep, ...]
    current_price: float = np.nan
    sensitivity: Optional[SensitivitySurface] = None
    warnings: Tuple[str, ...] = ()

    @property
    def rounded_value_per_share(self) -> float:
        return round(self.intrinsic_value_per_share, 2)

    @property
    def upside_downside(self) -> float:
        if math.isnan(self.current_price) or self.current_price <= 0:
            return np.nan
        return self.intrinsic_value_per_share / self.current_price - 1.0

    @property
    def pv_fcf_pct(self) -> float:
        return self.sum_pv_fcf / self.enterprise_value * 100 if self.enterprise_value != 0 else np.nan

    @property
    def pv_tv_pct(self) -> float:
        return self.present_terminal_value / self.enterprise_value * 100 if self.enterprise_value != 0 else np.nan

    def with_sensitivity(self, surface: SensitivitySurface) -> "ValuationResult":
        return replace(self, sensitivity=surface)

    def projection_frame(self) -> pd.DataFrame:
        return pd.DataFrame([asdict(p) for p in self.projections]).set_index("year")

    def to_dict(self) -> dict:
        upside = self.upside_downside
        return {
            "intrinsicValuePerShare": self.rounded_value_per_share,
            "impliedMargin": self.implied_margin,
            "usedDiscountRate": self.discount_rate,
            "terminalGrowthRate": self.terminal_growth_rate,
            "sumPvFcf": self.sum_pv_fcf,
            "terminalValue": self.terminal_value,
            "presentTerminalValue": self.present_terminal_value,
            "enterpriseValue": self.enterprise_value,
            "equityValue": self.equity_value,
            "projections": [
                {"year": p.year, "revenue": p.revenue, "fcf": p.fcf, "pvFCF": p.pv_fcf}
                for p in self.projections
            ],
            "upsideDownside": None if math.isnan(upside) else upside,
            "sensitivity": self.sensitivity.to_dict() if self.sensitivity else None,
            "warnings": list(self.warnings),
        }


# ─────────────────────────────────────────────────────────────────────────────
# Reverse DCF outputs
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ReverseDcfScenario:
    """The constant revenue CAGR that reproduces market cap at one discount rate."""
    discount_rate: float
    implied_revenue_cagr: float
    converged: bool = True
    iterations: int = 0


@dataclass(frozen=True)
class ReverseDcfAnalysis:
    symbol: str
    baseline: FinancialBaseline
    fcf_margin: float
    terminal_growth_rate: float
    projection_years: int
    scenarios: Tuple[ReverseDcfScenario, ...]
    skipped: Tuple[Tuple[float, str], ...] = ()     # (discount_rate, reason)
    generated_at: str = ""

    @property
    def is_partial(self) -> bool:
        return bool(self.skipped)

    def implied_cagr_for(self, discount_rate: float) -> Optional[float]:
        for s in self.scenarios:
            if math.isclose(s.discount_rate, discount_rate, abs_tol=1e-12):
                return s.implied_revenue_cagr
        return None

    def to_frame(self) -> pd.DataFrame:
        rows: List[Dict] = [
            {
                "Discount Rate": s.discount_rate,
                "Implied Revenue CAGR": s.implied_revenue_cagr,
                "Converged": s.converged,
            }
            for s in self.scenarios
        ]
        return pd.DataFrame(rows, columns=["Discount Rate", "Implied Revenue CAGR", "Converged"])

    def to_dict(self) -> dict:
        b = self.baseline
        return {
            "symbol": self.symbol,
            "currentPrice": None if math.isnan(b.current_price) else b.current_price,
            "marketCap": None if math.isnan(b.market_cap) else b.market_cap,
            "sharesOutstanding": b.shares_outstanding,
            "ttmRevenue": b.revenue_ttm,
            "ttmFreeCashFlow": b.fcf_ttm,
            "netDebt": b.net_debt,
            "fcfMargin": self.fcf_margin,
            "terminalGrowthRate": self.terminal_growth_rate,
            "projectionYears": self.projection_years,
            "impliedGrowthRates": [
                {"discountRate": s.discount_rate, "impliedRevenueCAGR": s.implied_revenue_cagr}
                for s in self.scenarios
            ],
            "skipped": [{"discountRate": r, "reason": why} for r, why in self.skipped],
            "generatedAt": self.generated_at,
        }


def growth_path(rates: Sequence[float]) -> Tuple[float, ...]:
    """Normalize any sequence of growth rates into the tuple form the models store."""
    return tuple(float(g) for g in rates)


# ─────────────────────────────────────────────────────────────────────────────
# Run record (unit handed to the persistence collaborator)
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class AnalysisRecord:
    trace_id: str
    symbol: str
    baseline: FinancialBaseline
    reverse_dcf: ReverseDcfAnalysis
    assumptions: GrowthAssumptionSet          # as supplied (5-year path)
    bridged_growth_rates: Tuple[float, ...]   # 10-year path fed to the DCF
    valuation: ValuationResult
    created_at: str

    def to_dict(self) -> dict:
        b = self.baseline
        return {
            "id": self.trace_id,
            "symbol": self.symbol,
            "price": None if math.isnan(b.current_price) else b.current_price,
            "createdAt": self.created_at,
            "financials": {
                "revenue": b.revenue_ttm,
                "fcf": b.fcf_ttm,
                "netDebt": b.net_debt,
                "sharesOutstanding": b.shares_outstanding,
            },
            "reverseDcf": self.reverse_dcf.to_dict(),
            "dcfAssumptions": {
                "revenueGrowthRates": list(self.assumptions.revenue_growth_rates),
                "terminalGrowthRate": self.assumptions.terminal_growth_rate,
                "discountRate": self.assumptions.discount_rate,
            },
            "bridgedGrowthRates": list(self.bridged_growth_rates),
            "dcf": self.valuation.to_dict(),
        }
