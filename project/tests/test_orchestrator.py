# tests/test_orchestrator.py
# -----------------------------------------------------------------------
# Tests for valuation_engine/orchestrator.py
#
# Providers and the status sink are plain callables, so every stage can
# be driven (or made to fail) without network or LLM access.
# -----------------------------------------------------------------------

import pytest
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from valuation_engine.assumptions import FixedAssumptionProvider
from valuation_engine.constants import ValuationSettings
from valuation_engine.errors import InvalidDiscountRate, NegativeMargin
from valuation_engine.market_fetch import MarketDataError
from valuation_engine.models import FinancialBaseline, GrowthAssumptionSet
from valuation_engine.orchestrator import Stage, StageFailure, ValuationOrchestrator
from valuation_engine.reverse_dcf import enterprise_value_at_cagr
from valuation_engine.store import InMemoryResultStore


# ── Helpers ────────────────────────────────────────────────────────────

FIVE_YEAR = GrowthAssumptionSet(0.09, 0.03, (0.15, 0.14, 0.13, 0.12, 0.10))


def _baseline(symbol="MSFT", fcf=70e9) -> FinancialBaseline:
    cap = enterprise_value_at_cagr(250e9, 70e9 / 250e9, 0.12, 0.08, 5, 0.025)
    return FinancialBaseline(symbol, 250e9, fcf, 7.4e9, -20e9, cap / 7.4e9, cap)


class Recorder:
    def __init__(self):
        self.events = []

    def __call__(self, trace_id, symbol, status):
        self.events.append((trace_id, symbol, status))

    @property
    def statuses(self):
        return [s for _, _, s in self.events]


def _orchestrator(baseline_provider=None, assumption_provider=None, store=None, settings=None):
    sink = Recorder()
    calls = []

    def default_baseline(symbol):
        calls.append(symbol)
        return _baseline(symbol)

    orch = ValuationOrchestrator(
        baseline_provider=baseline_provider or default_baseline,
        assumption_provider=assumption_provider or FixedAssumptionProvider(FIVE_YEAR),
        store=store if store is not None else InMemoryResultStore(),
        settings=settings,
        status_sink=sink,
    )
    return orch, sink, calls


# ═══════════════════════════════════════════════════════════════════════
# Happy path
# ═══════════════════════════════════════════════════════════════════════

class TestExecute:
    def test_full_record(self):
        orch, _, _ = _orchestrator()
        record = orch.execute("msft", trace_id="t-1")
        assert record.trace_id == "t-1"
        assert record.symbol == "MSFT"
        assert len(record.reverse_dcf.scenarios) == 5
        assert record.assumptions is FIVE_YEAR
        assert len(record.bridged_growth_rates) == 10
        assert record.bridged_growth_rates[-1] == 0.03
        assert record.valuation.sensitivity.shape == (5, 5)

    def test_centre_cell_matches_base_case(self):
        orch, _, _ = _orchestrator()
        v = orch.execute("MSFT").valuation
        assert v.sensitivity.base_value == pytest.approx(v.intrinsic_value_per_share)

    def test_status_sequence(self):
        orch, sink, _ = _orchestrator()
        orch.execute("MSFT", trace_id="t-2")
        assert sink.statuses == [
            "Fetching quote and trailing twelve months financials...",
            "Calculating implied growth rates across discount rates...",
            "Generating growth and discount rate assumptions...",
            "Bridging 5-year forecast to a 10-year growth profile...",
            "Calculating DCF from projected growth...",
            "Running sensitivity analysis...",
            "Saving analysis...",
            "Analysis completed",
        ]
        assert all(t == "t-2" and s == "MSFT" for t, s, _ in sink.events)

    def test_persisted(self):
        store = InMemoryResultStore()
        orch, _, _ = _orchestrator(store=store)
        orch.execute("MSFT")
        assert store.get("MSFT")["symbol"] == "MSFT"

    def test_assumption_provider_receives_reverse_analysis(self):
        seen = {}

        def provider(baseline, reverse):
            seen["baseline"] = baseline
            seen["reverse"] = reverse
            return FIVE_YEAR

        orch, _, _ = _orchestrator(assumption_provider=provider)
        orch.execute("MSFT")
        assert seen["baseline"].symbol == "MSFT"
        assert seen["reverse"].implied_cagr_for(0.08) == pytest.approx(0.12, abs=1e-3)

    def test_partial_reverse_dcf_reported(self):
        settings = ValuationSettings(candidate_discount_rates=(0.02, 0.08, 0.09))
        orch, sink, _ = _orchestrator(settings=settings)
        record = orch.execute("MSFT")
        assert record.reverse_dcf.is_partial
        assert any(s.startswith("Reverse DCF partial: 2 of 3") for s in sink.statuses)

    def test_thread_pool_setting(self):
        orch, _, _ = _orchestrator(settings=ValuationSettings(sensitivity_workers=4))
        seq, _, _ = _orchestrator()
        assert orch.execute("MSFT").valuation.sensitivity.values == \
            seq.execute("MSFT").valuation.sensitivity.values


# ═══════════════════════════════════════════════════════════════════════
# Cache
# ═══════════════════════════════════════════════════════════════════════

class TestRun:
    def test_cache_hit_skips_pipeline(self):
        orch, sink, calls = _orchestrator()
        first = orch.run("MSFT")
        second = orch.run("msft", trace_id="t-3")
        assert second == first
        assert calls == ["MSFT"]
        assert sink.events[-1] == ("t-3", "MSFT", "Returning cached analysis")

    def test_force_refresh(self):
        orch, _, calls = _orchestrator()
        orch.run("MSFT")
        orch.run("MSFT", force_refresh=True)
        assert calls == ["MSFT", "MSFT"]

    def test_payload_is_dict(self):
        orch, _, _ = _orchestrator()
        payload = orch.run("MSFT", trace_id="t-4")
        assert payload["id"] == "t-4"
        assert payload["dcf"]["sensitivity"]["values"]


# ═══════════════════════════════════════════════════════════════════════
# Failures
# ═══════════════════════════════════════════════════════════════════════

class TestFailures:
    def test_baseline_failure(self):
        def broken(symbol):
            raise MarketDataError("https://example.test/quote", 404, "Not found")

        store = InMemoryResultStore()
        orch, sink, _ = _orchestrator(baseline_provider=broken, store=store)
        with pytest.raises(StageFailure) as exc_info:
            orch.execute("ZZZZ")
        failure = exc_info.value
        assert failure.stage == Stage.BASELINE_READY
        assert failure.symbol == "ZZZZ"
        assert isinstance(failure.cause, MarketDataError)
        assert isinstance(failure.__cause__, MarketDataError)
        assert sink.statuses[-1].startswith("Failed at baseline_ready")
        assert failure.history == ()
        assert len(store) == 0

    def test_negative_margin_fails_reverse_stage(self):
        store = InMemoryResultStore()
        orch, _, _ = _orchestrator(baseline_provider=lambda s: _baseline(s, fcf=-5e9), store=store)
        with pytest.raises(StageFailure) as exc_info:
            orch.execute("MSFT")
        assert exc_info.value.stage == Stage.REVERSE_DCF_DONE
        assert isinstance(exc_info.value.cause, NegativeMargin)
        assert [stage for stage, _ in exc_info.value.history] == [Stage.BASELINE_READY]
        assert len(store) == 0

    def test_assumption_failure(self):
        def provider(baseline, reverse):
            return GrowthAssumptionSet(0.03, 0.04, (0.1,) * 5)

        orch, _, _ = _orchestrator(assumption_provider=provider)
        with pytest.raises(StageFailure) as exc_info:
            orch.execute("MSFT")
        assert exc_info.value.stage == Stage.ASSUMPTIONS_READY
        assert isinstance(exc_info.value.cause, InvalidDiscountRate)

    def test_bridge_failure(self):
        six_year = GrowthAssumptionSet(0.09, 0.03, (0.1,) * 6)
        orch, _, _ = _orchestrator(assumption_provider=FixedAssumptionProvider(six_year))
        with pytest.raises(StageFailure) as exc_info:
            orch.execute("MSFT")
        assert exc_info.value.stage == Stage.GROWTH_BRIDGED

    def test_store_failure(self):
        class BrokenStore(InMemoryResultStore):
            def save(self, record):
                raise OSError("disk full")

        orch, sink, _ = _orchestrator(store=BrokenStore())
        with pytest.raises(StageFailure) as exc_info:
            orch.execute("MSFT")
        assert exc_info.value.stage == Stage.PERSISTED
        assert [stage for stage, _ in exc_info.value.history] == [
            Stage.BASELINE_READY,
            Stage.REVERSE_DCF_DONE,
            Stage.ASSUMPTIONS_READY,
            Stage.GROWTH_BRIDGED,
            Stage.BASE_VALUATION_DONE,
            Stage.SENSITIVITY_DONE,
        ]
        assert "Analysis completed" not in sink.statuses

    def test_failure_via_run_not_cached(self):
        store = InMemoryResultStore()
        orch, _, _ = _orchestrator(baseline_provider=lambda s: _baseline(s, fcf=-5e9), store=store)
        with pytest.raises(StageFailure):
            orch.run("MSFT")
        assert store.get("MSFT") is None


# ═══════════════════════════════════════════════════════════════════════
# Settings
# ═══════════════════════════════════════════════════════════════════════

class TestSettings:
    def test_with_overrides_returns_new_instance(self):
        base = ValuationSettings()
        threaded = base.with_overrides(sensitivity_workers=4)
        assert threaded.sensitivity_workers == 4
        assert base.sensitivity_workers == 0
        assert threaded.candidate_discount_rates == base.candidate_discount_rates

    def test_with_overrides_validates(self):
        with pytest.raises(ValueError):
            ValuationSettings().with_overrides(cagr_bounds=(0.5, 0.1))

    def test_overridden_workers_reach_sensitivity(self):
        orch, _, _ = _orchestrator(settings=ValuationSettings().with_overrides(sensitivity_workers=2))
        record = orch.execute("MSFT")
        assert record.valuation.sensitivity.shape == (5, 5)
