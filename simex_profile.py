"""
Profile likelihood for SIMEX estimates.

At noise multiplier lambda the expected SIMEX slope is

    beta(lambda) = pmean / (1 + (lambda + 1) * exp(pvar))

where pmean is the slope corrected for regression dilution and exp(pvar) is the
ratio of the sampling variance to the variance of the true predictors. The
lambda = 0 row is itself attenuated, hence the "+ 1".

pvar is profiled out for each candidate slope, the profile is maximised over the
slope, and a likelihood-ratio interval is obtained by inverting the profile.
"""

import logging
import warnings
from dataclasses import dataclass

import numpy as np
from scipy import stats
from scipy.optimize import brentq, minimize_scalar

from simex_utils import SimexError, SimexEstimateTable, SimexInputError

logger = logging.getLogger(__name__)

# Search limits
SLOPE_BOUND = 100.0
PVAR_FLOOR = -20.0
PVAR_CEILING = 10.0
# |LR - threshold| accepted at a bound
CROSSING_TOL = 1e-3


# ======================================================================= #

class ProfileLikelihoodError(SimexError, RuntimeError):
    """A one-dimensional optimisation of the (profile) likelihood failed."""


class InvertedBoundWarning(RuntimeWarning):
    """The nuisance-parameter lower bound is at or above the ceiling."""


class UnreliableIntervalWarning(RuntimeWarning):
    """A confidence bound does not cross the likelihood-ratio threshold."""


@dataclass
class ProfileCI:
    slope: float
    lower: float
    upper: float
    nll: float            # profile negative log-likelihood at slope
    level: float = 0.95
    lower_reliable: bool = True
    upper_reliable: bool = True

    @property
    def reliable(self) -> bool:
        return self.lower_reliable and self.upper_reliable


# ======================================================================= #

def _minimize(fun, lo, hi, what):
    res = minimize_scalar(fun, bounds=(lo, hi), method="bounded", options={"xatol": 1e-8, "maxiter": 500})
    if not res.success or not np.isfinite(res.fun):
        raise ProfileLikelihoodError(f"{what}: optimiser failed on [{lo:.6g}, {hi:.6g}] ({res.message}).")
    return float(res.x), float(res.fun)


def simex_llhd(pvar, pmean, table: SimexEstimateTable):
    """Negative log-likelihood of (pmean, pvar) for the SIMEX table."""
    mean = pmean / (1.0 + (table.lambdas + 1.0) * np.exp(pvar))
    return float(-np.sum(stats.norm.logpdf(table.coefficients, loc=mean, scale=np.sqrt(table.variances))))


def pvar_bounds(p, table: SimexEstimateTable, variance_ratio):
    """Search interval for pvar at candidate slope p."""
    lam1 = table.lambdas + 1.0
    lowerbound = (p**2 * variance_ratio - 1.0) / lam1
    if np.min(lowerbound) > 0:
        lo = float(np.max(np.log(lowerbound / lam1)))
    else:
        lo = PVAR_FLOOR

    if lo >= PVAR_CEILING:
        warnings.warn(
            f"pvar lower bound {lo:.4g} is not below the ceiling {PVAR_CEILING} at slope {p:.6g}; "
            f"variance ratio {variance_ratio:.4g} may be poorly estimated.",
            InvertedBoundWarning,
            stacklevel=3,
        )
        return PVAR_CEILING, lo
    return lo, PVAR_CEILING


def profile_nuisance(p, table: SimexEstimateTable, variance_ratio):
    """Profile out pvar at slope p; returns (pvar_hat, negative log-likelihood)."""
    lo, hi = pvar_bounds(p, table, variance_ratio)
    if lo == hi:
        return lo, simex_llhd(lo, p, table)
    return _minimize(lambda v: simex_llhd(v, p, table), lo, hi, f"profile at slope {p:.6g}")


def simex_profile_llhd(p, table: SimexEstimateTable, variance_ratio):
    """Profile negative log-likelihood of the slope p."""
    return profile_nuisance(p, table, variance_ratio)[1]


def profile_mle(table: SimexEstimateTable, variance_ratio, bound=SLOPE_BOUND):
    """Slope maximising the profile likelihood on [-bound, bound]; returns (slope, nll)."""
    if not np.isfinite(variance_ratio) or variance_ratio <= 0:
        raise SimexInputError(f"variance_ratio must be finite and positive, got {variance_ratio!r}.")
    p_hat, nll = _minimize(
        lambda p: simex_profile_llhd(p, table, variance_ratio), -bound, bound, "profile maximisation"
    )
    logger.debug("Profile MLE slope=%.6g nll=%.6g", p_hat, nll)
    return p_hat, nll


# ======================================================================= #

def lr_threshold(level=0.95):
    return float(stats.chi2.ppf(level, 1))


def _bracket_crossing(g, p_hat, limit, step):
    """
    Step outward from p_hat toward limit, doubling the step, until g changes sign.

    Returns (inner, outer) with g(inner) < 0 <= g(outer), or None when g stays
    negative up to the limit.
    """
    direction = np.sign(limit - p_hat)
    inner = p_hat
    while True:
        outer = p_hat + direction * step
        if direction * (outer - limit) >= 0:
            outer = limit
        if g(outer) >= 0:
            return inner, outer
        if outer == limit:
            return None
        inner = outer
        step *= 2.0


def simex_profile_ci(table: SimexEstimateTable, variance_ratio, level=0.95, bound=SLOPE_BOUND) -> ProfileCI:
    """
    Profile likelihood estimate and confidence interval of the corrected slope.

    Each bound is the first point, moving outward from the MLE, where
    2 * (nll(p) - nll_min) reaches chisq_1(level). The crossing is bracketed by
    doubling steps and located with Brent's root finder. When the likelihood-ratio
    statistic stays below the threshold up to the search limit there is no crossing
    on that side: the bound is set to the limit and flagged as unreliable.
    """
    if not 0 < level < 1:
        raise SimexInputError(f"level must be in (0, 1), got {level!r}.")
    p_hat, nll_min = profile_mle(table, variance_ratio, bound)
    q = lr_threshold(level)

    def g(p):
        return 2.0 * (simex_profile_llhd(p, table, variance_ratio) - nll_min) - q

    step = 1e-3 * max(1.0, abs(p_hat))
    bounds = {}
    for side, limit in (("lower", -bound), ("upper", bound)):
        bracket = _bracket_crossing(g, p_hat, limit, step)
        ci = limit
        if bracket is not None:
            ci = float(brentq(g, min(bracket), max(bracket), xtol=1e-12))
        reliable = bracket is not None and abs(g(ci)) <= CROSSING_TOL
        if not reliable:
            warnings.warn(
                f"{side} confidence bound does not reach the likelihood-ratio threshold "
                f"within [{-bound:g}, {bound:g}]; interval is unreliable.",
                UnreliableIntervalWarning,
                stacklevel=2,
            )
            ci = limit
        bounds[side] = (ci, reliable)

    result = ProfileCI(
        slope=p_hat,
        lower=bounds["lower"][0],
        upper=bounds["upper"][0],
        nll=nll_min,
        level=level,
        lower_reliable=bounds["lower"][1],
        upper_reliable=bounds["upper"][1],
    )
    logger.info("Profile CI: slope=%.6g [%.6g, %.6g]%s", result.slope, result.lower, result.upper,
                "" if result.reliable else " (unreliable)")
    return result
