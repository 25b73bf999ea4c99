import warnings

import numpy as np
import pandas as pd

from simex_profile import (
    SLOPE_BOUND,
    profile_mle,
    profile_nuisance,
    simex_profile_ci,
    simex_profile_llhd,
)
from simex_utils import SimexEstimateTable


# ---------------------------------------------------------------------
# Attenuation model used by the profile likelihood
# β(λ) = pmean / (1 + (λ + 1) · exp(pvar))
# ---------------------------------------------------------------------
def attenuation_curve(lam, pmean, pvar):
    return pmean / (1.0 + (np.asarray(lam, dtype=float) + 1.0) * np.exp(pvar))


# ---------------------------------------------------------------------
# Profile negative log-likelihood over a grid of candidate slopes.
#
# Args
#   table          : SimexEstimateTable
#   variance_ratio : var(x) / var(y) of the pruned vectors
#   grid           : candidate slopes; if None, 201 points spanning
#                    ±width around the profile MLE
#   width          : half-width of the default grid
#
# Returns
#   DataFrame with columns slope, nll, lr (2·(nll − min nll)), pvar_hat
# ---------------------------------------------------------------------
def profile_curve(table: SimexEstimateTable, variance_ratio, grid=None, width=1.0):
    p_hat, nll_min = profile_mle(table, variance_ratio)
    if grid is None:
        grid = np.linspace(p_hat - width, p_hat + width, 201)
    rows = []
    for p in np.asarray(grid, dtype=float):
        pvar_hat, nll = profile_nuisance(p, table, variance_ratio)
        rows.append(dict(slope=float(p), nll=nll, lr=2.0 * (nll - nll_min), pvar_hat=pvar_hat))
    return pd.DataFrame(rows)


# ---------------------------------------------------------------------
# Goodness of fit of the attenuation model on one SIMEX table.
# Residuals are standardized by the recorded row variance.
#
# Leave-one-out: each non-sentinel row is dropped in turn, (pmean, pvar)
# is refitted on the remaining rows and the left-out slope is predicted.
#
# Returns
#   dict with diagnostics:
#     - slope, pvar_hat   : profile MLE and its nuisance parameter
#     - rmse              : root mean squared error of fit on β(λ)
#     - max_abs_z         : max standardized residual |resid|/SE(β)
#     - frac_within_2     : fraction of standardized residuals within ±2
#     - loo_rmse          : leave-one-out prediction RMSE across λ points
#     - ci_reliable       : both CI bounds cross the LR threshold
#     - ci_at_limit       : a CI bound sits on the slope search limit
# ---------------------------------------------------------------------
def simex_fit_diagnostics(table: SimexEstimateTable, variance_ratio, loo=True):
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", RuntimeWarning)
        ci = simex_profile_ci(table, variance_ratio)
    pvar_hat, _ = profile_nuisance(ci.slope, table, variance_ratio)

    betas = table.coefficients
    fitted = attenuation_curve(table.lambdas, ci.slope, pvar_hat)
    resid = betas - fitted
    z = resid / np.sqrt(table.variances)

    loo_rmse = np.nan
    if loo and len(table) > 2:
        loo_preds = []
        for i in range(1, len(table)):
            reduced = SimexEstimateTable(table.rows[:i] + table.rows[i + 1:])
            p_i, _ = profile_mle(reduced, variance_ratio)
            v_i, _ = profile_nuisance(p_i, reduced, variance_ratio)
            loo_preds.append(attenuation_curve(table.lambdas[i], p_i, v_i))
        loo_rmse = float(np.sqrt(np.mean((betas[1:] - np.asarray(loo_preds)) ** 2)))

    at_limit = bool(np.isclose(abs(ci.lower), SLOPE_BOUND) or np.isclose(abs(ci.upper), SLOPE_BOUND))
    return dict(
        slope=ci.slope, pvar_hat=float(pvar_hat),
        rmse=float(np.sqrt(np.mean(resid**2))),
        max_abs_z=float(np.max(np.abs(z))),
        frac_within_2=float(np.mean(np.abs(z) <= 2.0)),
        loo_rmse=loo_rmse,
        ci_reliable=ci.reliable,
        ci_at_limit=at_limit,
    )


# ---------------------------------------------------------------------
# Profile NLL at the raw (λ = 0) slope versus at the MLE; the MLE must
# not be worse.
# ---------------------------------------------------------------------
def raw_slope_gap(table: SimexEstimateTable, variance_ratio):
    _, nll_min = profile_mle(table, variance_ratio)
    return simex_profile_llhd(table.sentinel.coefficient, table, variance_ratio) - nll_min
