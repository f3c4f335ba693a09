# market_fetch.py
# ------------------------------------------------------------------
# FinancialBaseline provider backed by Financial Modeling Prep (FMP),
# with yfinance as the backup source.
#
# FMP "stable" endpoints used, all keyed by ?symbol=&apikey=:
#   quote                    price, marketCap, sharesOutstanding
#   income-statement         period=quarter, limit=4   -> TTM revenue
#   cash-flow-statement      period=quarter, limit=4   -> TTM freeCashFlow
#   balance-sheet-statement  period=quarter, limit=1   -> netDebt
#
# FMP answers an unknown symbol with 404 or with an empty list; both
# surface as MarketDataError. Free-tier keys hit 429 quickly, so 429
# and 503 are retried with backoff (Retry-After wins when larger) and
# no more than 4 requests are in flight per process.
#
# Baseline fields:
#   revenue_ttm  = Σ 4 quarters revenue
#   fcf_ttm      = Σ 4 quarters freeCashFlow
#   net_debt     = latest balance sheet netDebt (negative = net cash)
#   shares       = quote sharesOutstanding, else round(marketCap / price)
#
# yfinance fallback: "Free Cash Flow" row, else Operating Cash Flow +
# Capital Expenditure; "Net Debt" row, else Total Debt − Cash.
# ------------------------------------------------------------------

import logging
import math
import os
import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
import requests
import yfinance as yf
from dotenv import load_dotenv

from valuation_engine.models import FinancialBaseline
from valuation_engine.ttm import (
    CASHFLOW_POINT_IN_TIME_FIELDS,
    INCOME_POINT_IN_TIME_FIELDS,
    build_ttm,
    build_ttm_statement,
    latest_balance,
)

_logger = logging.getLogger(__name__)

_DEFAULT_BASE_URL = "https://financialmodelingprep.com/stable/"

# Semaphore: at most 4 concurrent requests to the market data API.
_API_SEMAPHORE = threading.Semaphore(4)

# Request timeouts: (connect_timeout_s, read_timeout_s)
_TIMEOUT = (10, 30)

# Retry configuration
_MAX_RETRIES = 3
_RETRY_BACKOFF_BASE = 1.5   # seconds; doubles each retry


@dataclass(frozen=True)
class MarketDataConfig:
    api_key: Optional[str] = None
    base_url: str = _DEFAULT_BASE_URL
    timeout: Tuple[int, int] = _TIMEOUT
    max_retries: int = _MAX_RETRIES

    @classmethod
    def from_env(cls) -> "MarketDataConfig":
        load_dotenv()
        return cls(
            api_key=os.environ.get("FMP_API_KEY") or None,
            base_url=os.environ.get("FMP_BASE_URL") or _DEFAULT_BASE_URL,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def url(self, endpoint: str) -> str:
        base = self.base_url if self.base_url.endswith("/") else f"{self.base_url}/"
        return f"{base}{endpoint}"


class MarketDataError(Exception):
    """Raised when a market data request fails after all retries."""
    def __init__(self, url: str, status_code: Optional[int], message: str):
        self.url = url
        self.status_code = status_code
        super().__init__(f"Market data fetch failed [{status_code}] {url}: {message}")


class MissingFinancialData(Exception):
    """Raised when a required TTM field is absent for a symbol."""
    def __init__(self, symbol: str, fields: List[str]):
        self.symbol = symbol
        self.fields = fields
        super().__init__(f"{symbol}: missing required financial data: {', '.join(fields)}")


_RETRYABLE_STATUS = (429, 503)


def _backoff(attempt: int, resp=None) -> float:
    """Seconds to wait before the next attempt; a larger Retry-After on a 429 wins."""
    wait = _RETRY_BACKOFF_BASE * (2 ** attempt)
    if resp is not None and resp.status_code == 429:
        retry_after = resp.headers.get("Retry-After", "")
        if retry_after.replace(".", "", 1).isdigit():
            wait = max(wait, float(retry_after))
    return wait


def _get_with_retry(url: str, params: dict, config: MarketDataConfig):
    """
    GET an FMP endpoint and return its decoded JSON.

    429 / 503 responses and connection errors or timeouts are retried up to
    config.max_retries times. Any other non-200 status fails immediately.

    Raises:
        MarketDataError: status_code is the HTTP status, or None when every
            attempt was used up.
    """
    last_error = "no attempts made"

    with _API_SEMAPHORE:
        for attempt in range(config.max_retries):
            try:
                resp = requests.get(url, params=params, timeout=config.timeout)
            except (requests.ConnectionError, requests.Timeout) as exc:
                _logger.debug("FMP %s attempt %d: %s", url, attempt + 1, exc)
                last_error = str(exc)
                time.sleep(_backoff(attempt))
                continue

            if resp.status_code == 200:
                return resp.json()
            if resp.status_code not in _RETRYABLE_STATUS:
                raise MarketDataError(url, resp.status_code, "Not found" if resp.status_code == 404 else resp.reason)

            _logger.debug("FMP %s attempt %d: HTTP %d", url, attempt + 1, resp.status_code)
            last_error = f"HTTP {resp.status_code} {resp.reason}"
            time.sleep(_backoff(attempt, resp))

    raise MarketDataError(url, None, f"Failed after {config.max_retries} retries: {last_error}")


# ─────────────────────────────────────────────────────────────────────────────
# API endpoints
# ─────────────────────────────────────────────────────────────────────────────

def fetch_quote(symbol: str, config: MarketDataConfig) -> Dict[str, float]:
    """
    Latest price, market cap and shares outstanding.

    Shares outstanding is derived as round(marketCap / price) when the
    endpoint omits it.

    Raises:
        MarketDataError: on HTTP failure or an empty payload.
    """
    url = config.url("quote")
    data = _get_with_retry(url, {"symbol": symbol, "apikey": config.api_key}, config)
    if not isinstance(data, list) or not data:
        raise MarketDataError(url, 200, f"No quote data found for symbol: {symbol}")

    q = data[0]
    price = float(q.get("price") or np.nan)
    market_cap = float(q.get("marketCap") or np.nan)
    shares = q.get("sharesOutstanding")
    if not shares and price > 0 and not math.isnan(market_cap):
        shares = round(market_cap / price)
    return {
        "symbol": q.get("symbol", symbol),
        "price": price,
        "marketCap": market_cap,
        "sharesOutstanding": float(shares) if shares else np.nan,
    }


def fetch_quarterly_statements(symbol: str, config: MarketDataConfig) -> Dict[str, dict]:
    """
    TTM income and cash flow statements plus the latest balance sheet.

    Raises:
        MarketDataError: on HTTP failure, or fewer than 4 quarters of flows.
    """
    params = {"symbol": symbol, "period": "quarter", "apikey": config.api_key}

    balance = _get_with_retry(config.url("balance-sheet-statement"), {**params, "limit": 1}, config)
    income = _get_with_retry(config.url("income-statement"), {**params, "limit": 4}, config)
    cashflow = _get_with_retry(config.url("cash-flow-statement"), {**params, "limit": 4}, config)

    if not balance:
        raise MarketDataError(config.url("balance-sheet-statement"), 200, "No balance sheet data available")
    if len(income or []) < 4:
        raise MarketDataError(config.url("income-statement"), 200, "Not enough quarterly data to calculate TTM")
    if len(cashflow or []) < 4:
        raise MarketDataError(config.url("cash-flow-statement"), 200, "Not enough quarterly data to calculate TTM")

    return {
        "balanceSheet": latest_balance(balance),
        "incomeStatement": build_ttm_statement(income, INCOME_POINT_IN_TIME_FIELDS),
        "cashflowStatement": build_ttm_statement(cashflow, CASHFLOW_POINT_IN_TIME_FIELDS),
    }


# ─────────────────────────────────────────────────────────────────────────────
# Baseline assembly
# ─────────────────────────────────────────────────────────────────────────────

def _num(v) -> float:
    try:
        f = float(v)
        return f if np.isfinite(f) else np.nan
    except (TypeError, ValueError):
        return np.nan


def _assemble_baseline(symbol: str, values: Dict[str, float]) -> FinancialBaseline:
    required = ("revenue", "fcf", "net_debt", "shares")
    missing = [k for k in required if math.isnan(values.get(k, np.nan))]
    if missing:
        raise MissingFinancialData(symbol, missing)

    _logger.info(
        "%s TTM: revenue=%.0f fcf=%.0f margin=%.2f%% net_debt=%.0f",
        symbol, values["revenue"], values["fcf"],
        values["fcf"] / values["revenue"] * 100 if values["revenue"] else np.nan,
        values["net_debt"],
    )
    return FinancialBaseline.create(
        symbol=symbol,
        revenue_ttm=values["revenue"],
        fcf_ttm=values["fcf"],
        shares_outstanding=values["shares"],
        net_debt=values["net_debt"],
        current_price=values.get("price", np.nan),
        market_cap=values.get("market_cap", np.nan),
    )


def fetch_baseline_api(symbol: str, config: MarketDataConfig) -> FinancialBaseline:
    quote = fetch_quote(symbol, config)
    statements = fetch_quarterly_statements(symbol, config)
    return _assemble_baseline(symbol, {
        "revenue": _num(statements["incomeStatement"].get("revenue")),
        "fcf": _num(statements["cashflowStatement"].get("freeCashFlow")),
        "net_debt": _num(statements["balanceSheet"].get("netDebt")),
        "shares": _num(quote["sharesOutstanding"]),
        "price": _num(quote["price"]),
        "market_cap": _num(quote["marketCap"]),
    })


def _yf_ttm(df: pd.DataFrame, field_name: str) -> float:
    """Sum the latest 4 quarterly columns of a yfinance statement row."""
    if df is None or df.empty or field_name not in df.index:
        return np.nan
    row = df.loc[field_name]
    row.index = pd.to_datetime(row.index)
    return build_ttm(row.sort_index().iloc[-4:])


def _yf_latest(df: pd.DataFrame, field_name: str) -> float:
    if df is None or df.empty or field_name not in df.index:
        return np.nan
    row = df.loc[field_name].dropna()
    return _num(row.iloc[0]) if not row.empty else np.nan


def fetch_baseline_yfinance(symbol: str) -> FinancialBaseline:
    """Build the baseline from yfinance quarterly statements and quote info."""
    stock = yf.Ticker(symbol)
    info = stock.info or {}
    q_income = stock.quarterly_income_stmt
    q_cashflow = stock.quarterly_cashflow
    q_balance = stock.quarterly_balance_sheet

    fcf = _yf_ttm(q_cashflow, "Free Cash Flow")
    if math.isnan(fcf):
        ocf = _yf_ttm(q_cashflow, "Operating Cash Flow")
        capex = _yf_ttm(q_cashflow, "Capital Expenditure")   # reported negative
        fcf = ocf + capex if not (math.isnan(ocf) or math.isnan(capex)) else np.nan

    net_debt = _yf_latest(q_balance, "Net Debt")
    if math.isnan(net_debt):
        debt = _yf_latest(q_balance, "Total Debt")
        cash = _yf_latest(q_balance, "Cash And Cash Equivalents")
        net_debt = debt - cash if not (math.isnan(debt) or math.isnan(cash)) else np.nan

    price = _num(info.get("currentPrice") or info.get("regularMarketPrice"))
    market_cap = _num(info.get("marketCap"))
    shares = _num(info.get("sharesOutstanding"))
    if math.isnan(shares) and price > 0 and not math.isnan(market_cap):
        shares = round(market_cap / price)

    return _assemble_baseline(symbol, {
        "revenue": _yf_ttm(q_income, "Total Revenue"),
        "fcf": fcf,
        "net_debt": net_debt,
        "shares": shares,
        "price": price,
        "market_cap": market_cap,
    })


def fetch_financial_baseline(
    symbol: str,
    config: Optional[MarketDataConfig] = None,
    fallback: bool = True,
) -> FinancialBaseline:
    """
    FinancialBaseline for `symbol`: market data API primary, yfinance backup.

    Raises:
        MarketDataError      : API failure with fallback disabled
        MissingFinancialData : a required field is absent from every source
        InvalidInput         : the fetched numbers violate baseline invariants
    """
    symbol = symbol.upper().strip()
    if config is None or not config.is_configured:
        _logger.info("%s: no market data API key configured, using yfinance", symbol)
        return fetch_baseline_yfinance(symbol)

    try:
        return fetch_baseline_api(symbol, config)
    except (MarketDataError, MissingFinancialData) as e:
        if not fallback:
            raise
        _logger.warning("%s: market data API failed (%s); falling back to yfinance", symbol, e)
        return fetch_baseline_yfinance(symbol)
