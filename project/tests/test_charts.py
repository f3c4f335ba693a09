# tests/test_charts.py
# -----------------------------------------------------------------------
# Smoke tests for valuation_engine/charts.py: figure structure only.
# -----------------------------------------------------------------------

import math
import pytest
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from valuation_engine.charts import ev_waterfall, sensitivity_heatmap
from valuation_engine.dcf import valuate
from valuation_engine.models import FinancialBaseline, GrowthAssumptionSet
from valuation_engine.sensitivity import build_surface

PATH = (0.05, 0.05, 0.04, 0.04, 0.03, 0.03, 0.025, 0.025, 0.025, 0.025)
BASELINE = FinancialBaseline("CHRT", 390e9, 100e9, 15.2e9, -50e9, 180.0, 180.0 * 15.2e9)


class TestSensitivityHeatmap:
    def test_single_heatmap_trace(self):
        fig = sensitivity_heatmap(build_surface(BASELINE, PATH, 0.08, 0.025), 180.0)
        assert len(fig.data) == 1
        assert fig.data[0].type == "heatmap"
        assert len(fig.data[0].z) == 5

    def test_base_cell_outlined(self):
        fig = sensitivity_heatmap(build_surface(BASELINE, PATH, 0.08, 0.025))
        shape = fig.layout.shapes[0]
        assert (shape.x0, shape.x1, shape.y0, shape.y1) == (1.5, 2.5, 1.5, 2.5)

    def test_failed_cells_blank(self):
        surface = build_surface(BASELINE, PATH, 0.04, 0.04)
        fig = sensitivity_heatmap(surface, 180.0)
        i, j = surface.failed_cells[0]
        assert math.isnan(fig.data[0].z[i][j])

    def test_upside_in_text_when_priced(self):
        fig = sensitivity_heatmap(build_surface(BASELINE, PATH, 0.08, 0.025), 180.0)
        assert "%" in fig.data[0].text[2][2]


class TestEvWaterfall:
    def test_bar_per_year_plus_terminal(self):
        result = valuate(BASELINE, GrowthAssumptionSet(0.08, 0.025, PATH))
        fig = ev_waterfall(result)
        assert fig.data[0].type == "bar"
        assert len(fig.data[0].x) == 11
        assert sum(fig.data[0].y) == pytest.approx(result.enterprise_value / 1e9)

    def test_terminal_share_annotation(self):
        result = valuate(BASELINE, GrowthAssumptionSet(0.08, 0.025, PATH))
        fig = ev_waterfall(result)
        assert fig.layout.annotations[0].text == f"{result.pv_tv_pct:.0f}% of EV"
