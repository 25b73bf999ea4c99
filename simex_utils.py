# %%
# Purpose:
#   1) Fit a (weighted) simple linear regression of y on x and its sandwich variance.
#   2) Inject extra measurement error into x at a grid of noise multipliers
#      (lambda) and refit B times per multiplier.
#   3) Collect the SIMEX estimate table: one row per lambda, sentinel lambda = 0 first.
#   4) Simulate summary statistics (effects on an index trait and a subsequent
#      trait) with index event bias, for examples and tests.
#
# Notes:
# - Every replicate draws from its own stream keyed by (seed, lambda index,
#   replicate index), so the table does not depend on n_jobs.
# - Requires numpy and pandas.

# ======================================================================= #

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

import numpy as np
import pandas as pd
from numpy.random import SeedSequence, default_rng

logger = logging.getLogger(__name__)

TABLE_COLUMNS = ["Lambda", "Coefficient", "Variance"]


# ======================================================================= #

class SimexError(Exception):
    """Base class for errors raised by the SIMEX adjustment."""


class SimexInputError(SimexError, ValueError):
    """Inputs violate a precondition of the adjustment."""


class DegenerateFitError(SimexError, RuntimeError):
    """A regression fit has no usable slope or variance."""


# ======================================================================= #

@dataclass
class SimexParams:
    B: int = 1000        # SIMEX replicates per lambda
    lambda_start: float = 0.25
    lambda_end: float = 5.0
    lambda_step: float = 0.25
    seed: int = 2018
    n_jobs: int = 1      # worker processes for the replicate loop


def default_lambdas(p=None):
    p = SimexParams() if p is None else p
    return np.arange(p.lambda_start, p.lambda_end + 1e-12, p.lambda_step)


@dataclass
class DataParams:
    n: int = 10000           # number of variables (e.g. SNPs)
    n_incidence: int = 500   # effects on the index trait only
    n_prognosis: int = 500   # effects on the subsequent trait only
    n_both: int = 500        # effects on both traits
    sd_x: float = 0.05       # sd of true effects on the index trait
    sd_y: float = 0.05       # sd of true effects on the subsequent trait
    xse: float = 0.01
    yse: float = 0.015
    bias: float = -0.4       # index event bias: ybeta += bias * xbeta_true


# ======================================================================= #

@dataclass(frozen=True)
class SimexRow:
    lam: float
    coefficient: float
    variance: float


@dataclass(frozen=True)
class SimexEstimateTable:
    """
    SIMEX estimates, one row per noise multiplier.

    The first row is the unperturbed fit (lam = 0); its variance is the plain
    sandwich variance. Every other row holds the mean slope over B replicates and
    the mean replicate sandwich variance divided by B. Lambdas strictly ascend.
    """
    rows: Tuple[SimexRow, ...]

    def __post_init__(self):
        rows = tuple(self.rows)
        object.__setattr__(self, "rows", rows)
        if not rows:
            raise SimexInputError("SIMEX table needs at least the lambda = 0 row.")
        lams = np.array([r.lam for r in rows], dtype=float)
        if lams[0] != 0.0 or np.count_nonzero(lams == 0.0) != 1:
            raise SimexInputError("SIMEX table must start with exactly one lambda = 0 row.")
        if np.any(np.diff(lams) <= 0):
            raise SimexInputError("SIMEX table lambdas must be strictly ascending.")
        variances = np.array([r.variance for r in rows], dtype=float)
        if not np.all(np.isfinite(variances)) or np.any(variances <= 0):
            raise SimexInputError("SIMEX table variances must be finite and positive.")

    def __len__(self):
        return len(self.rows)

    def __iter__(self):
        return iter(self.rows)

    @property
    def sentinel(self) -> SimexRow:
        return self.rows[0]

    @property
    def lambdas(self) -> np.ndarray:
        return np.array([r.lam for r in self.rows], dtype=float)

    @property
    def coefficients(self) -> np.ndarray:
        return np.array([r.coefficient for r in self.rows], dtype=float)

    @property
    def variances(self) -> np.ndarray:
        return np.array([r.variance for r in self.rows], dtype=float)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {"Lambda": self.lambdas, "Coefficient": self.coefficients, "Variance": self.variances},
            columns=TABLE_COLUMNS,
        )

    @classmethod
    def from_frame(cls, df: pd.DataFrame) -> "SimexEstimateTable":
        missing = [c for c in TABLE_COLUMNS if c not in df.columns]
        if missing:
            raise SimexInputError(f"SIMEX table is missing columns: {missing}")
        return cls(tuple(
            SimexRow(float(l), float(c), float(v))
            for l, c, v in zip(df["Lambda"], df["Coefficient"], df["Variance"])
        ))


# ======================================================================= #

def wls_y_on_x(y, x, w=None):
    """Weighted least squares of y on x with intercept; returns (beta_hat, resid)."""
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    w = np.ones_like(x) if w is None else np.asarray(w, dtype=float)
    Xmat = np.column_stack([np.ones_like(x), x])
    XtWX = Xmat.T @ (w[:, None] * Xmat)
    XtWY = Xmat.T @ (w * y)
    try:
        beta_hat = np.linalg.solve(XtWX, XtWY)  # [intercept, slope]
    except np.linalg.LinAlgError as e:
        raise DegenerateFitError("Predictor has no spread; slope is not identified.") from e
    resid = y - Xmat @ beta_hat
    return beta_hat, resid


def sandwich_variance(x, resid, w=None):
    """Heteroskedasticity-robust variance of the slope of a weighted simple regression."""
    x = np.asarray(x, dtype=float)
    r2 = np.asarray(resid, dtype=float) ** 2
    w = np.ones_like(x) if w is None else np.asarray(w, dtype=float)

    sw = w.sum()
    swx = np.sum(w * x)
    num = swx**2 * np.sum(w * r2) - 2 * sw * swx * np.sum(w * x * r2) + sw**2 * np.sum(w * x**2 * r2)
    den = (sw * np.sum(w * x**2) - swx**2) ** 2
    if not den > 0:
        raise DegenerateFitError("Sandwich variance denominator is zero (constant predictor).")
    var = num / den
    if not np.isfinite(var) or var <= 0:
        raise DegenerateFitError(f"Sandwich variance is not positive ({var!r}).")
    return float(var)


def simulate_slope(x, se, y, lam, rng, w=None):
    """
    One SIMEX replicate: perturb x with N(0, se^2 * lam) noise and refit.

    Returns (slope, sandwich variance, simulated x, residuals).
    """
    x_lam = rng.normal(loc=x, scale=np.asarray(se) * np.sqrt(lam))
    b_hat, resid = wls_y_on_x(y, x_lam, w)
    return float(b_hat[1]), sandwich_variance(x_lam, resid, w), x_lam, resid


def replicate_rng(seed, lam_index, rep):
    """Stream for one (lambda, replicate) cell."""
    return default_rng(SeedSequence([seed, lam_index, rep]))


# ======================================================================= #

def _check_inputs(x, se, y, w, lambdas, B, seed):
    x = np.asarray(x, dtype=float)
    se = np.asarray(se, dtype=float)
    y = np.asarray(y, dtype=float)
    w = np.ones_like(x) if w is None else np.asarray(w, dtype=float)
    lambdas = np.asarray(lambdas, dtype=float)

    if not (x.ndim == se.ndim == y.ndim == w.ndim == 1):
        raise SimexInputError("x, se, y and weights must be one-dimensional.")
    if not (x.size == se.size == y.size == w.size):
        raise SimexInputError(
            f"Length mismatch: x={x.size}, se={se.size}, y={y.size}, weights={w.size}."
        )
    if x.size < 3:
        raise SimexInputError("Need at least 3 observations for a sandwich variance.")
    for name, arr in (("x", x), ("se", se), ("y", y), ("weights", w)):
        if not np.all(np.isfinite(arr)):
            raise SimexInputError(f"{name} contains non-finite values.")
    if np.any(se < 0):
        raise SimexInputError("Standard errors must be non-negative.")
    if np.any(w <= 0):
        raise SimexInputError("Weights must be positive.")
    if B is None or isinstance(B, bool) or int(B) != B or B < 1:
        raise SimexInputError(f"B must be an integer >= 1, got {B!r}.")
    if lambdas.ndim != 1 or lambdas.size == 0:
        raise SimexInputError("Lambda grid must be a non-empty 1-D sequence.")
    if not np.all(np.isfinite(lambdas)) or np.any(lambdas <= 0):
        raise SimexInputError("Lambda grid must be > 0 for SIMEX simulation stage.")
    if np.any(np.diff(lambdas) <= 0):
        raise SimexInputError("Lambda grid must be strictly ascending.")
    if seed is None or isinstance(seed, bool) or int(seed) != seed or seed < 0:
        raise SimexInputError(f"seed must be a non-negative integer, got {seed!r}.")
    return x, se, y, w, lambdas, int(B), int(seed)


def _lambda_batch(args):
    # Worker for one lambda: B replicate fits, reduced to (mean slope, mean variance)
    x, se, y, w, lam, lam_index, B, seed = args
    slopes = np.empty(B)
    svars = np.empty(B)
    for rep in range(B):
        slopes[rep], svars[rep], _, _ = simulate_slope(
            x, se, y, lam, replicate_rng(seed, lam_index, rep), w
        )
    return lam_index, float(slopes.mean()), float(svars.mean())


def simex_estimates(x, se, y, lambdas, B, seed, w=None, n_jobs=1,
                    progress: Optional[Callable[[int, int], None]] = None) -> SimexEstimateTable:
    """
    Run the SIMEX simulation stage.

    Args
      x, se, y : predictor, its standard errors, outcome (same length)
      lambdas  : strictly positive, ascending noise multipliers
      B        : replicates per lambda
      seed     : non-negative integer seed
      w        : optional positive weights (uniform if None)
      n_jobs   : worker processes; the table is identical for any value
      progress : optional callback progress(done, total), counted in replicates

    Any degenerate replicate fit raises DegenerateFitError and aborts the run.
    """
    x, se, y, w, lambdas, B, seed = _check_inputs(x, se, y, w, lambdas, B, seed)

    b_hat, resid = wls_y_on_x(y, x, w)
    rows = [SimexRow(0.0, float(b_hat[1]), sandwich_variance(x, resid, w))]
    logger.debug("Unperturbed fit: slope=%.6g variance=%.6g", rows[0].coefficient, rows[0].variance)

    total = B * lambdas.size
    logger.info("SIMEX: %d lambdas x %d replicates (n=%d, n_jobs=%d)", lambdas.size, B, x.size, n_jobs)
    args = [(x, se, y, w, float(lam), i, B, seed) for i, lam in enumerate(lambdas)]
    results = {}
    done = 0

    if n_jobs > 1 and lambdas.size > 1:
        from multiprocessing import get_context

        ctx = get_context("spawn")
        with ctx.Pool(processes=min(n_jobs, lambdas.size)) as pool:
            for lam_index, slope, svar in pool.imap_unordered(_lambda_batch, args, chunksize=1):
                results[lam_index] = (slope, svar)
                done += B
                if progress is not None:
                    progress(done, total)
    else:
        for a in args:
            lam_index, slope, svar = _lambda_batch(a)
            results[lam_index] = (slope, svar)
            done += B
            if progress is not None:
                progress(done, total)

    for i, lam in enumerate(lambdas):
        slope, svar = results[i]
        rows.append(SimexRow(float(lam), slope, svar / B))

    return SimexEstimateTable(tuple(rows))


# ======================================================================= #

def gen_dataset(p: DataParams, seed=None) -> pd.DataFrame:
    """
    Simulated effects on incidence (x) and prognosis (y) with their standard errors.

    Variables 0..n_incidence-1 affect incidence only, the next n_prognosis affect
    prognosis only, the next n_both affect both. Effects on the two traits are
    independent; selection on the index trait adds bias * xbeta_true to ybeta.
    """
    n_effects = p.n_incidence + p.n_prognosis + p.n_both
    if n_effects > p.n:
        raise SimexInputError(f"{n_effects} effect variables exceed n={p.n}.")
    r = default_rng(seed)

    x_true = np.zeros(p.n)
    y_true = np.zeros(p.n)
    i1 = p.n_incidence
    i2 = i1 + p.n_prognosis
    i3 = i2 + p.n_both
    x_true[:i1] = r.normal(0.0, p.sd_x, size=i1)
    y_true[i1:i2] = r.normal(0.0, p.sd_y, size=i2 - i1)
    x_true[i2:i3] = r.normal(0.0, p.sd_x, size=i3 - i2)
    y_true[i2:i3] = r.normal(0.0, p.sd_y, size=i3 - i2)

    xse = np.full(p.n, p.xse)
    yse = np.full(p.n, p.yse)
    xbeta = x_true + r.normal(0.0, xse)
    ybeta = y_true + p.bias * x_true + r.normal(0.0, yse)
    return pd.DataFrame({"xbeta": xbeta, "xse": xse, "ybeta": ybeta, "yse": yse})
