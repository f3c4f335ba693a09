# errors.py
# ------------------------------------------------------------------
# Exception taxonomy for the valuation core.
#
# Engine-level failures (InvalidInput, NegativeMargin, NoScenarioFound)
# abort the enclosing orchestrator stage. InvalidDiscountRate is raised
# per candidate rate and filtered out at the batch level by the reverse
# DCF solver. Bisection that runs out of iterations is NOT an error: the
# solver returns its best estimate and flags the scenario instead.
# ------------------------------------------------------------------

from typing import Sequence


class ValuationError(Exception):
    """Base class for every failure raised by the numerical core."""


class InvalidInput(ValuationError, ValueError):
    """Non-positive revenue / share count, non-finite numbers, or bad rate ordering."""


class InvalidDiscountRate(InvalidInput):
    """
    Raised when a discount rate does not exceed the terminal growth rate.

    Fatal for a forward DCF; the reverse DCF solver catches it per
    candidate rate and drops that scenario.
    """
    def __init__(self, discount_rate: float, terminal_growth_rate: float):
        self.discount_rate = discount_rate
        self.terminal_growth_rate = terminal_growth_rate
        super().__init__(
            f"Discount rate ({discount_rate:.2%}) must be greater than "
            f"terminal growth rate ({terminal_growth_rate:.2%})"
        )


class NegativeMargin(ValuationError):
    """Raised when FCF / revenue <= 0, which makes the reverse DCF meaningless."""
    def __init__(self, fcf_margin: float):
        self.fcf_margin = fcf_margin
        super().__init__(
            f"Cannot calculate reverse DCF with non-positive FCF margin ({fcf_margin:.2%}). "
            "Company must have positive free cash flow."
        )


class NoScenarioFound(ValuationError):
    """Raised when no candidate discount rate brackets the target market cap."""
    def __init__(self, market_cap: float, discount_rates: Sequence[float]):
        self.market_cap = market_cap
        self.discount_rates = tuple(discount_rates)
        rates = ", ".join(f"{r:.1%}" for r in self.discount_rates) or "none"
        super().__init__(
            f"Could not find a valid implied CAGR for any discount rate ({rates}). "
            f"Market cap {market_cap:,.0f} may be outside reasonable valuation bounds."
        )
