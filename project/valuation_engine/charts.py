# valuation_engine/charts.py
# ──────────────────────────────────────────────────────────────────────────────
# Plotly figures for a finished valuation
# ──────────────────────────────────────────────────────────────────────────────
#
#  sensitivity_heatmap : discount rate × terminal growth surface, base case
#                        outlined, failed cells blanked, upside vs price in hover
#  ev_waterfall        : PV of each projected year's FCF + PV terminal value
#
# Builds figures only. Rendering and serving them is left to the caller.
# ──────────────────────────────────────────────────────────────────────────────

from __future__ import annotations

import math

import numpy as np
import plotly.graph_objects as go

from valuation_engine.models import SensitivitySurface, ValuationResult

# ── Design tokens ─────────────────────────────────────────────────────────────
UP      = "#00C805"
DOWN    = "#FF3B30"
ORANGE  = "#FF9F0A"

_LAYOUT = dict(
    template="plotly_dark",
    plot_bgcolor="rgba(0,0,0,0)",
    paper_bgcolor="rgba(0,0,0,0)",
    font=dict(family="Inter, -apple-system, sans-serif", size=11, color="rgba(255,255,255,0.75)"),
    margin=dict(l=0, r=0, t=24, b=0),
    height=320,
)


def sensitivity_heatmap(surface: SensitivitySurface, current_price: float = np.nan) -> go.Figure:
    """Heat map of intrinsic value per share; the base-case cell is outlined."""
    z = np.array(surface.values, dtype=float)
    for i, j in surface.failed_cells:
        z[i, j] = np.nan

    x_labels = [f"{g:.2%}" for g in surface.terminal_growth_rates]
    y_labels = [f"{r:.2%}" for r in surface.discount_rates]

    has_price = not math.isnan(current_price) and current_price > 0
    text = [
        [
            "—" if np.isnan(v)
            else f"${v:,.2f}" + (f" ({(v - current_price) / current_price:+.1%})" if has_price else "")
            for v in row
        ]
        for row in z
    ]

    fig = go.Figure(go.Heatmap(
        z=z,
        x=x_labels,
        y=y_labels,
        text=text,
        texttemplate="%{text}",
        hovertemplate="r=%{y}<br>g=%{x}<br>%{text}<extra></extra>",
        colorscale=[[0.0, DOWN], [0.5, "#2C2C2E"], [1.0, UP]],
        zmid=current_price if has_price else None,
        showscale=False,
    ))

    bi, bj = surface.base_index
    fig.add_shape(
        type="rect",
        x0=bj - 0.5, x1=bj + 0.5, y0=bi - 0.5, y1=bi + 0.5,
        xref="x", yref="y",
        line=dict(color=ORANGE, width=2),
    )
    fig.update_layout(
        **_LAYOUT,
        xaxis=dict(title="Terminal Growth", type="category", showgrid=False),
        yaxis=dict(title="Discount Rate", type="category", showgrid=False, autorange="reversed"),
    )
    return fig


def ev_waterfall(result: ValuationResult) -> go.Figure:
    """Bar per projected year's PV(FCF) plus the PV of terminal value, in $B."""
    n = len(result.projections)
    labels = [f"Y{p.year}" for p in result.projections] + ["Terminal\nValue"]
    values = [p.pv_fcf for p in result.projections] + [result.present_terminal_value]
    bar_colors = [f"rgba(10,124,255,{0.45 + 0.04 * i})" for i in range(n)] + ["rgba(255,159,10,0.70)"]

    fig = go.Figure()
    fig.add_trace(go.Bar(
        x=labels,
        y=[v / 1e9 for v in values],
        marker_color=bar_colors,
        text=[f"${v / 1e9:.2f}B" for v in values],
        textposition="outside",
        textfont=dict(size=10, color="rgba(255,255,255,0.65)"),
    ))
    fig.update_layout(
        **_LAYOUT,
        showlegend=False,
        xaxis=dict(showgrid=False, tickfont=dict(size=10)),
        yaxis=dict(title="$B", gridcolor="rgba(255,255,255,0.05)", tickformat="$.1f"),
        bargap=0.25,
    )
    if not math.isnan(result.pv_tv_pct):
        fig.add_annotation(
            x=labels[-1], y=result.present_terminal_value / 1e9,
            text=f"{result.pv_tv_pct:.0f}% of EV",
            showarrow=False,
            yanchor="bottom",
            yshift=22,
            font=dict(size=9.5, color=ORANGE),
        )
    return fig
