"""
Assumption Provider for the valuation pipeline.

An LLM reads the qualitative context and the reverse DCF scenarios and
returns explicit DCF assumptions (five revenue growth rates, a terminal
growth rate and a discount rate) together with a self-audit of those
numbers. The output is schema-validated with Pydantic; an audit that
rejects its own numbers triggers a bounded regenerate loop.

The numerical core never trusts these values: they are converted into a
GrowthAssumptionSet, which enforces finiteness and rate ordering.
"""

import logging
import os
from dataclasses import dataclass
from typing import Any, List, Optional

from dotenv import load_dotenv
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage
from pydantic import BaseModel, Field, ValidationError

from valuation_engine.constants import EXPLICIT_FORECAST_YEARS
from valuation_engine.models import FinancialBaseline, GrowthAssumptionSet, ReverseDcfAnalysis

logger = logging.getLogger(__name__)


###############################################################################
# Pydantic Models for Structured LLM Output
###############################################################################


class DCFAssumptionsOutput(BaseModel):
    """Explicit DCF inputs chosen by the model."""

    revenue_growth_rates: List[float] = Field(
        min_length=EXPLICIT_FORECAST_YEARS,
        max_length=EXPLICIT_FORECAST_YEARS,
        description="Explicit revenue growth rates for the next 5 years (e.g. [0.15, 0.14, 0.13, 0.12, 0.10])",
    )
    terminal_growth_rate: float = Field(
        description="Long-term terminal growth rate as decimal (e.g. 0.03 for 3%)"
    )
    discount_rate: float = Field(
        le=1,
        description="Discount rate for this company's risk profile as decimal (e.g. 0.08 for 8%)",
    )


class AssumptionAudit(BaseModel):
    """The model's critique of its own assumptions."""

    optimism_check: str = Field(
        description="Critique: are these numbers too optimistic compared to historical averages?"
    )
    consistency_check: str = Field(
        description="Critique: do the terminal and discount rates make sense for this business?"
    )
    is_legitimate: bool = Field(
        description="TRUE only if the assumptions are realistic and grounded; FALSE if they need correction."
    )
    correction_needed: Optional[str] = Field(
        default=None, description="If is_legitimate is false, what needs to be fixed."
    )


class AuditedAssumptions(BaseModel):
    """Structured output for the assumption generator."""

    market_context: str = Field(
        description="Summary of industry growth and company-specific drivers used for these numbers."
    )
    assumptions: DCFAssumptionsOutput
    audit: AssumptionAudit

    def to_assumption_set(self) -> GrowthAssumptionSet:
        a = self.assumptions
        return GrowthAssumptionSet(
            discount_rate=a.discount_rate,
            terminal_growth_rate=a.terminal_growth_rate,
            revenue_growth_rates=tuple(a.revenue_growth_rates),
        )


class AssumptionAuditError(Exception):
    """Raised when no attempt passes the self-audit and degraded results are refused."""
    def __init__(self, symbol: str, attempts: int, reason: Optional[str] = None):
        self.symbol = symbol
        self.attempts = attempts
        super().__init__(
            f"Failed to generate legitimate assumptions for {symbol} after {attempts} attempts"
            + (f": {reason}" if reason else ".")
        )


###############################################################################
# LLM Configuration
###############################################################################


@dataclass(frozen=True)
class LLMConfig:
    model: str = "gpt-4o-mini"
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    temperature: float = 0.3

    @classmethod
    def from_env(cls) -> "LLMConfig":
        load_dotenv()
        return cls(
            model=os.getenv("LLM_MODEL", cls.model),
            base_url=os.getenv("LLM_BASE_URL") or None,
            api_key=os.getenv("LLM_API_KEY") or None,
        )


def get_llm(config: LLMConfig):
    """ChatOpenAI bound to AuditedAssumptions structured output."""
    from langchain_openai import ChatOpenAI

    kwargs = {"temperature": config.temperature, "model": config.model}
    if config.base_url:
        kwargs["base_url"] = config.base_url
    if config.api_key:
        kwargs["api_key"] = config.api_key
    return ChatOpenAI(**kwargs).with_structured_output(AuditedAssumptions)


###############################################################################
# Prompts
###############################################################################

SYSTEM_PROMPT = """You are a strict, skeptical equity research modeler.
1. Read the company context and the market-implied growth scenarios.
2. Form an INDEPENDENT view of revenue growth for the next 5 years. Ignore the stock price.
3. Provide explicit DCF assumptions: 5 yearly revenue growth rates, a terminal growth
   rate (usually 2-4%) and a discount rate appropriate for the risk.
4. CRITICALLY AUDIT your own numbers. If growth exceeds historical averages without a
   catalyst, or the terminal rate is not below the discount rate, set is_legitimate to FALSE."""


def build_assumption_context(
    reverse_analysis: ReverseDcfAnalysis,
    thesis: Optional[str] = None,
) -> str:
    """Render baseline financials and reverse DCF scenarios into prompt context."""
    b = reverse_analysis.baseline
    lines = [
        f"STOCK: {reverse_analysis.symbol}",
        f"CURRENT PRICE: ${b.current_price:,.2f}",
        f"TTM REVENUE: ${b.revenue_ttm:,.0f}",
        f"IMPLIED FCF MARGIN: {reverse_analysis.fcf_margin * 100:.1f}%",
    ]
    if thesis:
        lines += ["", "QUALITATIVE THESIS:", thesis.strip()]
    lines += [
        "",
        "MARKET EXPECTATIONS (REVERSE DCF):",
        "Revenue CAGR required to justify the current price at each discount rate:",
    ]
    lines += [
        f"- To get a {s.discount_rate * 100:.1f}% return, company must grow at "
        f"{s.implied_revenue_cagr * 100:.1f}%"
        for s in reverse_analysis.scenarios
    ]
    return "\n".join(lines)


###############################################################################
# Self-correcting generation loop
###############################################################################


def generate_verified_assumptions(
    llm: Any,
    symbol: str,
    context: str,
    max_retries: int = 3,
    return_on_failure: bool = True,
) -> AuditedAssumptions:
    """
    Generate assumptions, audit them, and regenerate until the audit passes.

    Args:
        llm: Runnable whose invoke(messages) returns AuditedAssumptions.
        symbol: Ticker, for logging and errors.
        context: Prompt context from build_assumption_context().
        max_retries: Maximum number of generation attempts.
        return_on_failure: Accept the last attempt even if its audit failed.

    Raises:
        AssumptionAuditError: No attempt passed and return_on_failure is False,
            or every attempt produced invalid output.
    """
    messages: List[Any] = [
        SystemMessage(content=SYSTEM_PROMPT),
        HumanMessage(content=f"Create DCF assumptions for {symbol} based on this analysis:\n{context}"),
    ]
    last_result: Optional[AuditedAssumptions] = None
    reason: Optional[str] = None

    for attempt in range(1, max_retries + 1):
        logger.info(f"Assumption attempt {attempt}/{max_retries} for {symbol}")
        try:
            output = llm.invoke(messages)
            if isinstance(output, dict):
                output = AuditedAssumptions.model_validate(output)
        except ValidationError as e:
            reason = f"invalid structured output: {e.error_count()} errors"
            logger.warning(f"Structured output failed validation for {symbol}: {e}")
            messages.append(
                HumanMessage(content=f"Your previous answer did not match the schema: {e}. Try again.")
            )
            continue

        last_result = output
        if output.audit.is_legitimate:
            logger.info(f"Assumptions for {symbol} passed internal audit")
            return output

        reason = output.audit.correction_needed or "audit rejected the assumptions"
        logger.warning(f"Audit failed for {symbol}: {reason}")

        if attempt < max_retries:
            messages.append(AIMessage(content=output.model_dump_json()))
            messages.append(
                HumanMessage(
                    content=(
                        "Your previous assumptions were rejected by your own audit.\n"
                        f"Reason: {reason}\n"
                        "Regenerate the assumptions fixing these errors."
                    )
                )
            )

    if return_on_failure and last_result is not None:
        logger.warning(f"Max retries reached; returning last result despite audit failure for {symbol}")
        return last_result

    raise AssumptionAuditError(symbol, max_retries, reason)


###############################################################################
# Providers (callables used by the orchestrator)
###############################################################################


class LLMAssumptionProvider:
    """(baseline, reverse_analysis) -> GrowthAssumptionSet via the audited LLM loop."""

    def __init__(
        self,
        llm: Any,
        thesis: Optional[str] = None,
        max_retries: int = 3,
        return_on_failure: bool = True,
    ):
        self.llm = llm
        self.thesis = thesis
        self.max_retries = max_retries
        self.return_on_failure = return_on_failure

    @classmethod
    def from_config(cls, config: LLMConfig, **kwargs) -> "LLMAssumptionProvider":
        return cls(get_llm(config), **kwargs)

    def __call__(
        self,
        baseline: FinancialBaseline,
        reverse_analysis: ReverseDcfAnalysis,
    ) -> GrowthAssumptionSet:
        context = build_assumption_context(reverse_analysis, self.thesis)
        result = generate_verified_assumptions(
            self.llm,
            baseline.symbol,
            context,
            max_retries=self.max_retries,
            return_on_failure=self.return_on_failure,
        )
        return result.to_assumption_set()


class FixedAssumptionProvider:
    """Returns the same analyst-supplied assumptions for every run."""

    def __init__(self, assumptions: GrowthAssumptionSet):
        self.assumptions = assumptions

    def __call__(self, baseline: FinancialBaseline, reverse_analysis: ReverseDcfAnalysis) -> GrowthAssumptionSet:
        return self.assumptions
