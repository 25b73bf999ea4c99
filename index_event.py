"""
Adjust association statistics for index event bias.

Effects on a subsequent trait (ybeta) are regressed on effects on the index trait
(xbeta) over an approximately independent subset of predictors. The slope is
corrected for regression dilution (Hedges-Olkin, corrected weighted least squares
or SIMEX with a profile-likelihood interval), and the residuals give adjusted
effects and standard errors for the subsequent trait.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

import numpy as np
import pandas as pd
from scipy import stats

from simex_profile import simex_profile_ci
from simex_utils import SimexInputError, default_lambdas, simex_estimates, wls_y_on_x

logger = logging.getLogger(__name__)

METHODS = ("Hedges-Olkin", "CWLS", "SIMEX")
Z_975 = 1.959963984540054


# ======================================================================= #

@dataclass
class IndexEventResult:
    ybeta_adj: np.ndarray
    yse_adj: np.ndarray
    ychisq_adj: np.ndarray
    yp_adj: np.ndarray
    b: float
    b_se: float
    b_ci: Tuple[float, float]
    b_raw: float
    method: str
    simex_estimates: Optional[pd.DataFrame] = None
    ci_reliable: bool = True

    def to_frame(self) -> pd.DataFrame:
        """Adjusted statistics for the subsequent trait, one row per predictor."""
        return pd.DataFrame({
            "ybeta_adj": self.ybeta_adj,
            "yse_adj": self.yse_adj,
            "ychisq_adj": self.ychisq_adj,
            "yp_adj": self.yp_adj,
        })

    def summary(self) -> dict:
        return {
            "method": self.method,
            "b": self.b,
            "b_se": self.b_se,
            "b_ci_low": self.b_ci[0],
            "b_ci_high": self.b_ci[1],
            "b_raw": self.b_raw,
            "ci_reliable": self.ci_reliable,
        }

    def __str__(self):
        lines = [
            f"Coefficient {self.b}",
            f"Standard error {self.b_se}",
            f"95% CI {self.b_ci[0]} {self.b_ci[1]}",
        ]
        if not self.ci_reliable:
            lines.append("Warning: confidence interval reaches the search limits")
        return "\n".join(lines)


# ======================================================================= #

def resolve_method(method):
    """Case-insensitive prefix match against METHODS."""
    key = str(method).lower()
    if key:
        for name in METHODS:
            if name.lower().startswith(key):
                return name
    raise SimexInputError(f"Unknown method: '{method}'. Choose from: {', '.join(METHODS)}")


def hedges_olkin(x, xse, b_raw):
    """Hedges-Olkin correction of the raw slope; returns (b, (b, b))."""
    var_x = np.var(x, ddof=1)
    denom = var_x - np.mean(xse**2)
    if denom <= 0:
        raise SimexInputError("Mean squared standard error exceeds the variance of xbeta; "
                              "Hedges-Olkin correction is undefined.")
    b = float(b_raw * var_x / denom)
    return b, (b, b)


def corrected_wls(x, xse, y, yse):
    """
    Corrected weighted least squares with weights 1/yse^2.

    The weighted slope is scaled by the weighted variance of x over the weighted
    variance less the weighted mean of xse^2; the interval scales the weighted fit's
    standard error by the same factor.
    Returns (b, (lower, upper), b_raw_weighted).
    """
    w = 1.0 / yse**2
    b_hat, resid = wls_y_on_x(y, x, w)
    b_raw = float(b_hat[1])

    # classical WLS standard error of the slope
    n = x.size
    sigma2 = np.sum(w * resid**2) / (n - 2)
    xw = np.sum(w * x) / np.sum(w)
    se_raw = np.sqrt(sigma2 / np.sum(w * (x - xw) ** 2))

    wn = w / np.sum(w)
    var_x = np.sum(wn * (x - np.sum(wn * x)) ** 2)
    denom = var_x - np.sum(wn * xse**2)
    if denom <= 0:
        raise SimexInputError("Weighted mean squared standard error exceeds the weighted variance "
                              "of xbeta; CWLS correction is undefined.")
    factor = var_x / denom
    b = b_raw * factor
    half = Z_975 * se_raw * factor
    return float(b), (float(b - half), float(b + half)), b_raw


# ======================================================================= #

def index_event(xbeta, xse, ybeta, yse, prune=None, method="Hedges-Olkin", B=1000,
                lambdas=None, seed=2018, weights=None, n_jobs=1,
                progress: Optional[Callable[[int, int], None]] = None,
                level=0.95) -> IndexEventResult:
    """
    Adjust effects on a subsequent trait for index event bias.

    Args
      xbeta, xse : effects on the index trait and their standard errors
      ybeta, yse : effects on the subsequent trait and their standard errors
      prune      : indices of approximately independent predictors (all if None)
      method     : "Hedges-Olkin", "CWLS" or "SIMEX" (case-insensitive prefix)
      B          : SIMEX replicates per lambda
      lambdas    : SIMEX noise multipliers (0.25, 0.5, ..., 5 if None)
      seed       : SIMEX random seed
      weights    : SIMEX regression weights over the pruned set (uniform if None)
      n_jobs     : SIMEX worker processes
      progress   : optional SIMEX progress callback progress(done, total)
      level      : SIMEX profile-likelihood confidence level
    """
    xbeta = np.asarray(xbeta, dtype=float)
    xse = np.asarray(xse, dtype=float)
    ybeta = np.asarray(ybeta, dtype=float)
    yse = np.asarray(yse, dtype=float)
    if not (xbeta.shape == xse.shape == ybeta.shape == yse.shape) or xbeta.ndim != 1:
        raise SimexInputError("xbeta, xse, ybeta and yse must be 1-D vectors of equal length.")
    name = resolve_method(method)

    idx = np.arange(xbeta.size) if prune is None else np.asarray(prune, dtype=int)
    if idx.size < 3:
        raise SimexInputError("Need at least 3 pruned predictors.")
    if np.any(idx < 0) or np.any(idx >= xbeta.size):
        raise SimexInputError("prune contains indices out of range.")
    x, sx, y, sy = xbeta[idx], xse[idx], ybeta[idx], yse[idx]

    b_hat, _ = wls_y_on_x(y, x)
    b_raw = float(b_hat[1])
    logger.info("Regression of ybeta on xbeta over %d predictors: raw slope %.6g", idx.size, b_raw)

    table = None
    reliable = True
    if name == "Hedges-Olkin":
        b, b_ci = hedges_olkin(x, sx, b_raw)
    elif name == "CWLS":
        b, b_ci, _ = corrected_wls(x, sx, y, sy)
    else:
        lambdas = default_lambdas() if lambdas is None else lambdas
        est = simex_estimates(x, sx, y, lambdas, B, seed, w=weights, n_jobs=n_jobs, progress=progress)
        table = est.to_frame()
        variance_ratio = np.var(x, ddof=1) / np.var(y, ddof=1)
        ci = simex_profile_ci(est, variance_ratio, level=level)
        b, b_ci, reliable = ci.slope, (ci.lower, ci.upper), ci.reliable

    b_se = (b_ci[1] - b_ci[0]) / (2 * Z_975)
    logger.info("%s: corrected slope %.6g (SE %.6g)", name, b, b_se)

    ybeta_adj = ybeta - b * xbeta
    yse_adj = np.sqrt(yse**2 + b**2 * xse**2 + b_se**2 * xbeta**2 + b_se**2 * xse**2)
    ychisq_adj = (ybeta_adj / yse_adj) ** 2
    yp_adj = stats.chi2.sf(ychisq_adj, 1)

    return IndexEventResult(
        ybeta_adj=ybeta_adj,
        yse_adj=yse_adj,
        ychisq_adj=ychisq_adj,
        yp_adj=yp_adj,
        b=float(b),
        b_se=float(b_se),
        b_ci=(float(b_ci[0]), float(b_ci[1])),
        b_raw=b_raw,
        method=name,
        simex_estimates=table,
        ci_reliable=reliable,
    )
