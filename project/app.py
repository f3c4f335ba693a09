# app.py
"""
Equity Valuation Verdict - Command Line Entry Point
===================================================

Runs the full valuation pipeline for one ticker:
- Baseline financials (market data API primary, yfinance backup)
- Reverse DCF: revenue CAGR implied by the current market cap at 6–10%
- Growth / discount assumptions (audited LLM, or fixed via --growth)
- 5→10 year growth bridge, base-case DCF, 5×5 sensitivity surface
- Persisted to a JSON result store (served from cache when fresh)

Usage:
    python app.py NVDA
    python app.py AAPL --growth 0.05,0.05,0.04,0.04,0.03 --discount-rate 0.08 --terminal-growth 0.025
    python app.py MSFT --refresh --json --chart msft_sensitivity.html
"""
import argparse
import json
import logging
import sys
from pathlib import Path

import pandas as pd
from dotenv import load_dotenv

ROOT_DIR = Path(__file__).resolve().parent
sys.path.append(str(ROOT_DIR))

from valuation_engine.assumptions import FixedAssumptionProvider, LLMAssumptionProvider, LLMConfig
from valuation_engine.charts import sensitivity_heatmap
from valuation_engine.constants import ValuationSettings
from valuation_engine.errors import ValuationError
from valuation_engine.market_fetch import MarketDataConfig, fetch_financial_baseline
from valuation_engine.models import GrowthAssumptionSet, SensitivitySurface
from valuation_engine.orchestrator import StageFailure, ValuationOrchestrator
from valuation_engine.store import JsonFileResultStore

# Load environment variables
load_dotenv()

# Setup logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
_logger = logging.getLogger(__name__)


def _parse_rates(text: str):
    try:
        return tuple(float(x) for x in text.split(","))
    except ValueError:
        raise argparse.ArgumentTypeError(f"Expected comma-separated decimals, got {text!r}") from None


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="DCF valuation verdict for a stock ticker")
    p.add_argument("ticker", help="Stock ticker symbol, e.g. NVDA")
    p.add_argument("--refresh", action="store_true", help="Ignore any cached analysis")
    p.add_argument("--store", default=str(ROOT_DIR / ".analyses"), help="Directory for saved analyses")
    p.add_argument("--json", action="store_true", help="Print the full payload as JSON")
    p.add_argument("--chart", help="Write the sensitivity heat map to this HTML file")
    p.add_argument("--growth", type=_parse_rates, help="Five comma-separated revenue growth rates (skips the LLM)")
    p.add_argument("--discount-rate", type=float, default=0.09)
    p.add_argument("--terminal-growth", type=float, default=0.025)
    p.add_argument("--workers", type=int, default=0, help="Threads for the sensitivity grid (0 = sequential)")
    return p


def build_orchestrator(args) -> ValuationOrchestrator:
    market_cfg = MarketDataConfig.from_env()
    if not market_cfg.is_configured:
        _logger.warning("FMP_API_KEY not set in environment; baseline will come from yfinance")

    if args.growth:
        provider = FixedAssumptionProvider(
            GrowthAssumptionSet(args.discount_rate, args.terminal_growth, args.growth)
        )
    else:
        provider = LLMAssumptionProvider.from_config(LLMConfig.from_env())

    return ValuationOrchestrator(
        baseline_provider=lambda symbol: fetch_financial_baseline(symbol, market_cfg),
        assumption_provider=provider,
        store=JsonFileResultStore(args.store),
        settings=ValuationSettings().with_overrides(sensitivity_workers=args.workers),
    )


def print_summary(payload: dict) -> None:
    dcf = payload["dcf"]
    print("")
    print("=" * 70)
    print(f"VALUATION: {payload['symbol']}   (trace {payload['id']})")
    print("=" * 70)

    summary = pd.Series({
        "Current Price": payload.get("price"),
        "Intrinsic Value / Share": dcf["intrinsicValuePerShare"],
        "Upside / Downside": dcf["upsideDownside"],
        "Implied FCF Margin": dcf["impliedMargin"],
        "Discount Rate": dcf["usedDiscountRate"],
        "Terminal Growth": dcf["terminalGrowthRate"],
        "Enterprise Value": dcf["enterpriseValue"],
        "Equity Value": dcf["equityValue"],
    })
    print(summary.to_string())

    print("\nMarket-implied revenue CAGR:")
    implied = pd.DataFrame(payload["reverseDcf"]["impliedGrowthRates"])
    print(implied.to_string(index=False) if not implied.empty else "  (none)")

    sens = dcf.get("sensitivity")
    if sens:
        print("\nSensitivity (intrinsic value / share):")
        frame = pd.DataFrame(
            sens["values"],
            index=pd.Index([f"{r:.2%}" for r in sens["discountRates"]], name="Discount Rate"),
            columns=pd.Index([f"{g:.2%}" for g in sens["terminalGrowthRates"]], name="Terminal Growth"),
        )
        for i, j in sens.get("failedCells", []):
            frame.iat[i, j] = float("nan")
        print(frame.round(2).to_string())

    for w in dcf.get("warnings", []):
        print(f"  ⚠ {w}")
    print("=" * 70)


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        orchestrator = build_orchestrator(args)
        payload = orchestrator.run(args.ticker, force_refresh=args.refresh)
    except StageFailure as e:
        _logger.error("Analysis failed at %s for %s: %s", e.stage.value, e.symbol, e.cause)
        return 1
    except ValuationError as e:
        _logger.error("Invalid valuation inputs for %s: %s", args.ticker, e)
        return 1

    if args.json:
        print(json.dumps(payload, indent=2))
    else:
        print_summary(payload)

    sens = payload["dcf"].get("sensitivity")
    if args.chart and sens:
        surface = SensitivitySurface.from_dict(sens)
        sensitivity_heatmap(surface, payload.get("price") or float("nan")).write_html(args.chart)
        _logger.info("Sensitivity heat map written to %s", args.chart)
    return 0


if __name__ == "__main__":
    sys.exit(main())
