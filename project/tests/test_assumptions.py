# tests/test_assumptions.py
# -----------------------------------------------------------------------
# Tests for valuation_engine/assumptions.py
#
# A scripted fake LLM stands in for the structured-output runnable: each
# invoke() returns the next canned AuditedAssumptions (or dict), so the
# self-audit retry loop is exercised deterministically and offline.
# -----------------------------------------------------------------------

import pytest
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from langchain_core.messages import AIMessage, HumanMessage, SystemMessage
from pydantic import ValidationError

from valuation_engine import assumptions as assumptions_mod
from valuation_engine.assumptions import (
    AssumptionAuditError,
    AuditedAssumptions,
    DCFAssumptionsOutput,
    FixedAssumptionProvider,
    LLMAssumptionProvider,
    LLMConfig,
    build_assumption_context,
    generate_verified_assumptions,
)
from valuation_engine.errors import InvalidDiscountRate
from valuation_engine.models import (
    FinancialBaseline,
    GrowthAssumptionSet,
    ReverseDcfAnalysis,
    ReverseDcfScenario,
)


# ── Helpers ────────────────────────────────────────────────────────────

def _output(legit=True, rates=(0.15, 0.14, 0.13, 0.12, 0.10), tg=0.03, dr=0.09, fix=None) -> dict:
    return {
        "market_context": "Data-centre demand remains strong.",
        "assumptions": {
            "revenue_growth_rates": list(rates),
            "terminal_growth_rate": tg,
            "discount_rate": dr,
        },
        "audit": {
            "optimism_check": "Growth is above history but supported by backlog.",
            "consistency_check": "Terminal rate is below the discount rate.",
            "is_legitimate": legit,
            "correction_needed": fix,
        },
    }


class FakeLLM:
    """invoke() replays scripted responses and records the messages it saw."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.seen = []

    def invoke(self, messages):
        self.seen.append(list(messages))
        item = self.responses.pop(0)
        if isinstance(item, dict):
            return AuditedAssumptions.model_validate(item)
        return item


class RawDictLLM(FakeLLM):
    """Returns raw dicts, the shape some structured-output backends produce."""

    def invoke(self, messages):
        self.seen.append(list(messages))
        return self.responses.pop(0)


BASELINE = FinancialBaseline(
    symbol="NVDA",
    revenue_ttm=130_000_000_000,
    fcf_ttm=60_000_000_000,
    shares_outstanding=24_400_000_000,
    net_debt=-30_000_000_000,
    current_price=140.0,
    market_cap=140.0 * 24_400_000_000,
)

REVERSE = ReverseDcfAnalysis(
    symbol="NVDA",
    baseline=BASELINE,
    fcf_margin=BASELINE.fcf_margin,
    terminal_growth_rate=0.025,
    projection_years=5,
    scenarios=(ReverseDcfScenario(0.08, 0.21), ReverseDcfScenario(0.10, 0.26)),
)


# ═══════════════════════════════════════════════════════════════════════
# Pydantic models
# ═══════════════════════════════════════════════════════════════════════

class TestModels:
    def test_exactly_five_rates(self):
        with pytest.raises(ValidationError):
            DCFAssumptionsOutput(revenue_growth_rates=[0.1] * 4, terminal_growth_rate=0.03, discount_rate=0.09)

    def test_discount_rate_upper_bound(self):
        with pytest.raises(ValidationError):
            DCFAssumptionsOutput(revenue_growth_rates=[0.1] * 5, terminal_growth_rate=0.03, discount_rate=8.0)

    def test_to_assumption_set(self):
        a = AuditedAssumptions.model_validate(_output()).to_assumption_set()
        assert isinstance(a, GrowthAssumptionSet)
        assert a.revenue_growth_rates == (0.15, 0.14, 0.13, 0.12, 0.10)
        assert a.discount_rate == 0.09

    def test_to_assumption_set_enforces_rate_ordering(self):
        with pytest.raises(InvalidDiscountRate):
            AuditedAssumptions.model_validate(_output(tg=0.09, dr=0.08)).to_assumption_set()


# ═══════════════════════════════════════════════════════════════════════
# Context
# ═══════════════════════════════════════════════════════════════════════

class TestContext:
    def test_lists_every_scenario(self):
        ctx = build_assumption_context(REVERSE)
        assert "STOCK: NVDA" in ctx
        assert "To get a 8.0% return, company must grow at 21.0%" in ctx
        assert "To get a 10.0% return, company must grow at 26.0%" in ctx
        assert "IMPLIED FCF MARGIN: 46.2%" in ctx

    def test_thesis_included(self):
        ctx = build_assumption_context(REVERSE, thesis="  Sovereign AI demand.  ")
        assert "QUALITATIVE THESIS:\nSovereign AI demand." in ctx


# ═══════════════════════════════════════════════════════════════════════
# Self-audit loop
# ═══════════════════════════════════════════════════════════════════════

class TestGenerateVerifiedAssumptions:
    def test_first_attempt_passes(self):
        llm = FakeLLM([_output()])
        result = generate_verified_assumptions(llm, "NVDA", "ctx")
        assert result.audit.is_legitimate
        assert len(llm.seen) == 1
        first = llm.seen[0]
        assert isinstance(first[0], SystemMessage)
        assert isinstance(first[1], HumanMessage)
        assert "ctx" in first[1].content

    def test_retry_after_failed_audit(self):
        llm = FakeLLM([_output(legit=False, fix="Growth too high"), _output(rates=(0.1,) * 5)])
        result = generate_verified_assumptions(llm, "NVDA", "ctx")
        assert result.assumptions.revenue_growth_rates == [0.1] * 5
        second = llm.seen[1]
        assert len(second) == 4
        assert isinstance(second[2], AIMessage)
        assert isinstance(second[3], HumanMessage)
        assert "Growth too high" in second[3].content

    def test_returns_last_on_failure(self):
        llm = FakeLLM([_output(legit=False)] * 2 + [_output(legit=False, rates=(0.2,) * 5)])
        result = generate_verified_assumptions(llm, "NVDA", "ctx", max_retries=3)
        assert not result.audit.is_legitimate
        assert result.assumptions.revenue_growth_rates == [0.2] * 5
        assert len(llm.seen) == 3

    def test_raises_when_degraded_results_refused(self):
        llm = FakeLLM([_output(legit=False, fix="too optimistic")] * 2)
        with pytest.raises(AssumptionAuditError) as exc_info:
            generate_verified_assumptions(llm, "NVDA", "ctx", max_retries=2, return_on_failure=False)
        assert exc_info.value.attempts == 2
        assert "too optimistic" in str(exc_info.value)

    def test_schema_violation_counts_as_attempt(self):
        bad = _output(rates=(0.1, 0.1))
        llm = RawDictLLM([bad, _output()])
        result = generate_verified_assumptions(llm, "NVDA", "ctx")
        assert result.audit.is_legitimate
        assert "did not match the schema" in llm.seen[1][-1].content

    def test_all_attempts_invalid_raises_even_with_return_on_failure(self):
        llm = RawDictLLM([_output(rates=(0.1,))] * 3)
        with pytest.raises(AssumptionAuditError):
            generate_verified_assumptions(llm, "NVDA", "ctx", max_retries=3)


# ═══════════════════════════════════════════════════════════════════════
# Providers and config
# ═══════════════════════════════════════════════════════════════════════

class TestProviders:
    def test_llm_provider(self):
        provider = LLMAssumptionProvider(FakeLLM([_output()]), thesis="AI capex cycle")
        result = provider(BASELINE, REVERSE)
        assert isinstance(result, GrowthAssumptionSet)
        assert result.terminal_growth_rate == 0.03
        assert "AI capex cycle" in provider.llm.seen[0][1].content

    def test_llm_provider_from_config(self, monkeypatch):
        captured = {}

        def fake_get_llm(config):
            captured["config"] = config
            return FakeLLM([_output()])

        monkeypatch.setattr(assumptions_mod, "get_llm", fake_get_llm)
        provider = LLMAssumptionProvider.from_config(LLMConfig(model="gpt-test"), max_retries=1)
        assert captured["config"].model == "gpt-test"
        assert provider.max_retries == 1

    def test_fixed_provider(self):
        fixed = GrowthAssumptionSet(0.08, 0.025, (0.05,) * 5)
        assert FixedAssumptionProvider(fixed)(BASELINE, REVERSE) is fixed

    def test_llm_config_from_env(self, monkeypatch):
        monkeypatch.setattr(assumptions_mod, "load_dotenv", lambda: None)
        monkeypatch.setenv("LLM_MODEL", "local-model")
        monkeypatch.setenv("LLM_BASE_URL", "http://localhost:11434/v1")
        monkeypatch.delenv("LLM_API_KEY", raising=False)
        cfg = LLMConfig.from_env()
        assert cfg.model == "local-model"
        assert cfg.base_url == "http://localhost:11434/v1"
        assert cfg.api_key is None

    def test_llm_config_defaults(self, monkeypatch):
        monkeypatch.setattr(assumptions_mod, "load_dotenv", lambda: None)
        monkeypatch.delenv("LLM_MODEL", raising=False)
        assert LLMConfig.from_env().model == "gpt-4o-mini"
