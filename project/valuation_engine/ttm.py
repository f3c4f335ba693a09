# ttm.py
# ------------------------------------------------------------------
# TTM (Trailing Twelve Months) construction from quarterly statements.
#
# Input is the list-of-dicts shape returned by the market data API:
# one dict per fiscal quarter, keyed by field name, with a "date"
# (period end) on every record.
#
# Key design decisions:
#   1. Flow statements (income, cash flow) are summed over exactly the
#      4 most recent quarters. Fewer than 4 quarters → NaN.
#   2. A gap check ensures the 4 quarters span no more than ~380 days
#      between first and last period end. Wider spans mean a missing
#      quarter, and we return NaN rather than a number that silently
#      covers 15–18 months.
#   3. Per-share figures and share counts are never summed; they come
#      from the most recent quarter. Opening cash comes from the oldest
#      quarter, closing cash from the newest.
#   4. The balance sheet is a snapshot: latest quarter only.
# ------------------------------------------------------------------

import numpy as np
import pandas as pd
from typing import Dict, Iterable, List, Optional

# Maximum allowable span between the first and last of 4 period ends.
_TTM_MAX_SPAN_DAYS = 380

INCOME_POINT_IN_TIME_FIELDS = (
    "eps",
    "epsDiluted",
    "weightedAverageShsOut",
    "weightedAverageShsOutDil",
)

CASHFLOW_POINT_IN_TIME_FIELDS = (
    "cashAtEndOfPeriod",
    "cashAtBeginningOfPeriod",
)

_METADATA_FIELDS = (
    "date",
    "symbol",
    "reportedCurrency",
    "cik",
    "filingDate",
    "acceptedDate",
    "fiscalYear",
)


def statements_to_frame(records: Iterable[dict]) -> pd.DataFrame:
    """
    Quarterly records → DataFrame indexed by period-end date, ascending.

    Duplicate period ends keep the last-filed record (highest acceptedDate),
    which picks up amendments automatically.
    """
    df = pd.DataFrame(list(records or []))
    if df.empty or "date" not in df.columns:
        return pd.DataFrame()

    df["date"] = pd.to_datetime(df["date"], errors="coerce")
    df = df.dropna(subset=["date"])
    if "acceptedDate" in df.columns:
        df = df.sort_values("acceptedDate", ascending=True)
    df = df.drop_duplicates(subset=["date"], keep="last")
    return df.set_index("date").sort_index()


def build_ttm(series: Optional[pd.Series]) -> float:
    """
    Sum the last 4 quarterly values of a date-indexed series.

    Returns NaN if fewer than 4 values exist, the 4 quarters span more than
    ~380 days, or any of them is NaN.
    """
    if series is None or series.empty:
        return float("nan")

    series = series.sort_index()
    last4 = series.iloc[-4:]
    if len(last4) < 4 or last4.isna().any():
        return float("nan")

    span_days = (last4.index[-1] - last4.index[0]).days
    if span_days > _TTM_MAX_SPAN_DAYS:
        return float("nan")

    return float(last4.sum())


def build_ttm_statement(
    records: List[dict],
    point_in_time: Iterable[str] = (),
) -> Dict[str, object]:
    """
    Aggregate quarterly flow statements into one TTM statement.

    Numeric fields are summed with build_ttm(); fields in `point_in_time`
    take the most recent quarter's value, except cashAtBeginningOfPeriod
    which takes the oldest of the 4. Metadata comes from the newest quarter
    and "period" is set to "TTM".
    """
    df = statements_to_frame(records)
    if df.empty:
        return {}

    point_in_time = set(point_in_time)
    newest = df.iloc[-1]
    window = df.iloc[-4:]

    ttm: Dict[str, object] = {"period": "TTM", "date": newest.name.strftime("%Y-%m-%d")}
    for field in _METADATA_FIELDS[1:]:
        if field in df.columns:
            ttm[field] = newest[field]

    numeric_cols = df.select_dtypes(include=[np.number]).columns
    for col in numeric_cols:
        if col in _METADATA_FIELDS:
            continue
        if col in point_in_time:
            if col == "cashAtBeginningOfPeriod":
                ttm[col] = float(window[col].iloc[0])
            else:
                ttm[col] = float(newest[col])
        else:
            ttm[col] = build_ttm(df[col])

    return ttm


def latest_balance(records: List[dict]) -> Dict[str, object]:
    """Most recent balance sheet record, tagged period="TTM"."""
    df = statements_to_frame(records)
    if df.empty:
        return {}
    newest = df.iloc[-1].to_dict()
    newest["date"] = df.index[-1].strftime("%Y-%m-%d")
    newest["period"] = "TTM"
    return newest
