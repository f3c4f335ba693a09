# valuation_engine/orchestrator.py
# ──────────────────────────────────────────────────────────────────────────────
# Valuation Orchestrator
# ──────────────────────────────────────────────────────────────────────────────
#
# Stage machine (one run per symbol / trace id, strictly sequential):
#
#   IDLE → BASELINE_READY → REVERSE_DCF_DONE → ASSUMPTIONS_READY
#        → GROWTH_BRIDGED → BASE_VALUATION_DONE → SENSITIVITY_DONE → PERSISTED
#
#   any stage → FAILED   (StageFailure carries stage, symbol and cause)
#
# Collaborators are injected; the orchestrator itself holds no numerical
# logic and no per-run state:
#   baseline_provider   (symbol) -> FinancialBaseline
#   assumption_provider (baseline, ReverseDcfAnalysis) -> GrowthAssumptionSet
#   store               get(symbol) / save(AnalysisRecord)
#   status_sink         (trace_id, symbol, status) -> None
#
# Nothing is persisted unless every stage succeeded.
# ──────────────────────────────────────────────────────────────────────────────

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Tuple

from valuation_engine import growth_bridge, reverse_dcf, sensitivity
from valuation_engine.constants import ValuationSettings
from valuation_engine.dcf import valuate
from valuation_engine.models import (
    AnalysisRecord,
    FinancialBaseline,
    GrowthAssumptionSet,
    ReverseDcfAnalysis,
)
from valuation_engine.store import ResultStore

_logger = logging.getLogger(__name__)

StatusSink = Callable[[str, str, str], None]
BaselineProvider = Callable[[str], FinancialBaseline]
AssumptionProvider = Callable[[FinancialBaseline, ReverseDcfAnalysis], GrowthAssumptionSet]


class Stage(str, Enum):
    IDLE = "idle"
    BASELINE_READY = "baseline_ready"
    REVERSE_DCF_DONE = "reverse_dcf_done"
    ASSUMPTIONS_READY = "assumptions_ready"
    GROWTH_BRIDGED = "growth_bridged"
    BASE_VALUATION_DONE = "base_valuation_done"
    SENSITIVITY_DONE = "sensitivity_done"
    PERSISTED = "persisted"
    FAILED = "failed"


class StageFailure(Exception):
    """
    A run aborted while working towards `stage`; the original error is `cause`.
    `history` lists the (stage, status) pairs the run had completed.
    """
    def __init__(
        self,
        stage: Stage,
        symbol: str,
        cause: BaseException,
        history: Tuple[Tuple[Stage, str], ...] = (),
    ):
        self.stage = stage
        self.symbol = symbol
        self.cause = cause
        self.history = history
        super().__init__(f"{symbol}: stage '{stage.value}' failed: {type(cause).__name__}: {cause}")


@dataclass
class ValuationRun:
    """Progress of a single run. Owned by the orchestrator call that created it."""
    trace_id: str
    symbol: str
    stage: Stage = Stage.IDLE
    history: List[Tuple[Stage, str]] = field(default_factory=list)


def _log_status(trace_id: str, symbol: str, status: str) -> None:
    _logger.info("[%s] %s: %s", trace_id, symbol, status)


class ValuationOrchestrator:
    def __init__(
        self,
        baseline_provider: BaselineProvider,
        assumption_provider: AssumptionProvider,
        store: ResultStore,
        settings: Optional[ValuationSettings] = None,
        status_sink: Optional[StatusSink] = None,
    ):
        self.baseline_provider = baseline_provider
        self.assumption_provider = assumption_provider
        self.store = store
        self.settings = settings or ValuationSettings()
        self.status_sink = status_sink or _log_status

    # ── Public API ───────────────────────────────────────────────────────────

    def run(self, symbol: str, trace_id: Optional[str] = None, force_refresh: bool = False) -> dict:
        """
        Cached payload for `symbol` if the store has one, else execute() and
        return the freshly persisted payload.
        """
        symbol = symbol.upper().strip()
        trace_id = trace_id or str(uuid.uuid4())

        if not force_refresh:
            cached = self.store.get(symbol)
            if cached is not None:
                self.status_sink(trace_id, symbol, "Returning cached analysis")
                return cached

        record = self.execute(symbol, trace_id)
        return record.to_dict()

    def execute(self, symbol: str, trace_id: Optional[str] = None) -> AnalysisRecord:
        """
        Run every stage in order and persist the result.

        Raises:
            StageFailure: wrapping whatever the failing stage raised.
        """
        run = ValuationRun(trace_id=trace_id or str(uuid.uuid4()), symbol=symbol.upper().strip())
        s = self.settings

        baseline = self._step(
            run, Stage.BASELINE_READY, "Fetching quote and trailing twelve months financials...",
            self.baseline_provider, run.symbol,
        )
        reverse = self._step(
            run, Stage.REVERSE_DCF_DONE, "Calculating implied growth rates across discount rates...",
            reverse_dcf.analyze, baseline, s,
        )
        if reverse.is_partial:
            self._emit(
                run,
                f"Reverse DCF partial: {len(reverse.scenarios)} of "
                f"{len(s.candidate_discount_rates)} discount rates produced a scenario",
            )

        assumptions = self._step(
            run, Stage.ASSUMPTIONS_READY, "Generating growth and discount rate assumptions...",
            self.assumption_provider, baseline, reverse,
        )
        bridged = self._step(
            run, Stage.GROWTH_BRIDGED, "Bridging 5-year forecast to a 10-year growth profile...",
            growth_bridge.bridge_assumptions, assumptions, s.fade_years,
        )
        base_case = self._step(
            run, Stage.BASE_VALUATION_DONE, "Calculating DCF from projected growth...",
            valuate, baseline, bridged,
        )
        surface = self._step(
            run, Stage.SENSITIVITY_DONE, "Running sensitivity analysis...",
            sensitivity.build_surface,
            baseline, bridged.revenue_growth_rates, bridged.discount_rate, bridged.terminal_growth_rate,
            s.discount_rate_offsets, s.terminal_growth_offsets, s.sensitivity_workers,
        )

        record = AnalysisRecord(
            trace_id=run.trace_id,
            symbol=run.symbol,
            baseline=baseline,
            reverse_dcf=reverse,
            assumptions=assumptions,
            bridged_growth_rates=bridged.revenue_growth_rates,
            valuation=base_case.with_sensitivity(surface),
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        self._step(run, Stage.PERSISTED, "Saving analysis...", self.store.save, record)
        self._emit(run, "Analysis completed")
        _logger.debug("[%s] %s stages: %s", run.trace_id, run.symbol, " → ".join(s.value for s, _ in run.history))
        return record

    # ── Internals ────────────────────────────────────────────────────────────

    def _emit(self, run: ValuationRun, status: str) -> None:
        self.status_sink(run.trace_id, run.symbol, status)

    def _step(self, run: ValuationRun, target: Stage, status: str, fn: Callable, *args):
        self._emit(run, status)
        try:
            result = fn(*args)
        except Exception as exc:
            failure = StageFailure(target, run.symbol, exc, tuple(run.history))
            run.stage = Stage.FAILED
            _logger.error("[%s] %s", run.trace_id, failure)
            self._emit(run, f"Failed at {target.value}: {exc}")
            raise failure from exc

        run.stage = target
        run.history.append((target, status))
        _logger.debug("[%s] %s → %s", run.trace_id, run.symbol, target.value)
        return result
