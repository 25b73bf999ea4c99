"""
Index Event Adjustment Tests
============================

Tests for the dilution corrections (Hedges-Olkin, CWLS, SIMEX) and the adjusted
statistics for the subsequent trait.

Simulated data: ybeta = ybeta_true + bias * xbeta_true + noise, so a regression of
ybeta on the noisy xbeta is attenuated toward zero and the corrected slope should
be close to the bias.
"""

import warnings

import pytest
import numpy as np
import pandas as pd
from scipy import stats

from index_event import (
    IndexEventResult,
    Z_975,
    corrected_wls,
    hedges_olkin,
    index_event,
    resolve_method,
)
from simex_utils import DataParams, SimexInputError

TRUE_BIAS = DataParams().bias


def _columns(df):
    return df["xbeta"].values, df["xse"].values, df["ybeta"].values, df["yse"].values


@pytest.mark.unit
class TestMethodResolution:

    @pytest.mark.parametrize("method,expected", [
        ("Hedges-Olkin", "Hedges-Olkin"),
        ("hedges", "Hedges-Olkin"),
        ("h", "Hedges-Olkin"),
        ("SIMEX", "SIMEX"),
        ("simex", "SIMEX"),
        ("cwls", "CWLS"),
    ])
    def test_prefix_match(self, method, expected):
        assert resolve_method(method) == expected

    @pytest.mark.parametrize("method", ["", "bogus", "simexx"])
    def test_unknown_method(self, method):
        with pytest.raises(SimexInputError):
            resolve_method(method)


@pytest.mark.unit
class TestHedgesOlkin:

    def test_corrects_attenuation(self, index_event_data):
        res = index_event(*_columns(index_event_data))
        assert res.method == "Hedges-Olkin"
        assert abs(res.b) > abs(res.b_raw)
        assert res.b == pytest.approx(TRUE_BIAS, abs=0.1)

    def test_no_uncertainty(self, index_event_data):
        res = index_event(*_columns(index_event_data))
        assert res.b_ci == (res.b, res.b)
        assert res.b_se == 0.0
        assert res.simex_estimates is None

    def test_correction_factor(self):
        x = np.array([0.1, -0.2, 0.3, 0.05, -0.1])
        xse = np.full(5, 0.05)
        b, ci = hedges_olkin(x, xse, 0.5)
        var_x = np.var(x, ddof=1)
        assert b == pytest.approx(0.5 * var_x / (var_x - 0.0025))

    def test_undefined_when_noise_dominates(self):
        x = np.array([0.1, -0.1, 0.05])
        with pytest.raises(SimexInputError):
            hedges_olkin(x, np.full(3, 1.0), 0.5)


@pytest.mark.unit
class TestAdjustedStatistics:

    def test_adjustment_formulas(self, index_event_data):
        xbeta, xse, ybeta, yse = _columns(index_event_data)
        res = index_event(xbeta, xse, ybeta, yse, method="cwls")
        b, s = res.b, res.b_se
        np.testing.assert_allclose(res.ybeta_adj, ybeta - b * xbeta)
        np.testing.assert_allclose(
            res.yse_adj, np.sqrt(yse**2 + b**2 * xse**2 + s**2 * xbeta**2 + s**2 * xse**2)
        )
        np.testing.assert_allclose(res.ychisq_adj, (res.ybeta_adj / res.yse_adj) ** 2)
        np.testing.assert_allclose(res.yp_adj, stats.chi2.sf(res.ychisq_adj, 1))
        assert res.b_se == pytest.approx((res.b_ci[1] - res.b_ci[0]) / (2 * Z_975))

    def test_prune_subset(self, index_event_data):
        xbeta, xse, ybeta, yse = _columns(index_event_data)
        prune = np.arange(0, 3000)
        res = index_event(xbeta, xse, ybeta, yse, prune=prune)
        assert len(res.ybeta_adj) == len(xbeta)
        slope = np.polyfit(xbeta[prune], ybeta[prune], 1)[0]
        assert res.b_raw == pytest.approx(slope, rel=1e-8)

    def test_frame_and_summary(self, index_event_data):
        res = index_event(*_columns(index_event_data))
        df = res.to_frame()
        assert list(df.columns) == ["ybeta_adj", "yse_adj", "ychisq_adj", "yp_adj"]
        assert len(df) == len(index_event_data)
        assert res.summary()["method"] == "Hedges-Olkin"

    def test_print_format(self, index_event_data):
        text = str(index_event(*_columns(index_event_data)))
        lines = text.splitlines()
        assert lines[0].startswith("Coefficient ")
        assert lines[1].startswith("Standard error ")
        assert lines[2].startswith("95% CI ")

    def test_input_validation(self, index_event_data):
        xbeta, xse, ybeta, yse = _columns(index_event_data)
        with pytest.raises(SimexInputError):
            index_event(xbeta[:-1], xse, ybeta, yse)
        with pytest.raises(SimexInputError):
            index_event(xbeta, xse, ybeta, yse, prune=[0, 1])
        with pytest.raises(SimexInputError):
            index_event(xbeta, xse, ybeta, yse, prune=[0, 1, len(xbeta)])
        with pytest.raises(SimexInputError):
            index_event(xbeta, xse, ybeta, yse, method="unknown")


@pytest.mark.unit
class TestCWLS:

    def test_constant_yse_matches_hedges_olkin(self, index_event_data):
        xbeta, xse, ybeta, yse = _columns(index_event_data)
        ho = index_event(xbeta, xse, ybeta, yse, method="hedges")
        cw = index_event(xbeta, xse, ybeta, yse, method="cwls")
        assert cw.method == "CWLS"
        assert cw.b == pytest.approx(ho.b, rel=1e-3)

    def test_interval_brackets_estimate(self, index_event_data):
        xbeta, xse, ybeta, yse = _columns(index_event_data)
        b, (lo, hi), b_raw = corrected_wls(xbeta, xse, ybeta, yse)
        assert lo < b < hi
        assert abs(b) > abs(b_raw)


@pytest.mark.simulation
class TestSimexMethod:

    def test_simex_adjustment(self, small_index_event_data):
        xbeta, xse, ybeta, yse = _columns(small_index_event_data)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", RuntimeWarning)
            res = index_event(xbeta, xse, ybeta, yse, method="simex", B=20,
                              lambdas=[0.5, 1.0, 1.5, 2.0], seed=2018)
        assert isinstance(res, IndexEventResult)
        assert res.method == "SIMEX"
        assert res.b_ci[0] <= res.b <= res.b_ci[1]
        assert res.b < 0
        assert res.b_se >= 0

        table = res.simex_estimates
        assert isinstance(table, pd.DataFrame)
        assert list(table.columns) == ["Lambda", "Coefficient", "Variance"]
        np.testing.assert_allclose(table["Lambda"], [0.0, 0.5, 1.0, 1.5, 2.0])
        assert table["Coefficient"].iloc[0] == pytest.approx(res.b_raw, rel=1e-10)

    def test_simex_is_reproducible(self, small_index_event_data):
        xbeta, xse, ybeta, yse = _columns(small_index_event_data)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", RuntimeWarning)
            r1 = index_event(xbeta, xse, ybeta, yse, method="simex", B=5, lambdas=[1.0, 2.0], seed=3)
            r2 = index_event(xbeta, xse, ybeta, yse, method="simex", B=5, lambdas=[1.0, 2.0], seed=3)
        pd.testing.assert_frame_equal(r1.simex_estimates, r2.simex_estimates)
        assert r1.b == r2.b
