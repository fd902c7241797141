"""
Simulation-based residual checks for fitted GLMMs.

Each observation is compared with the distribution of responses simulated from
the fitted model (new random intercepts per replicate). The randomized
probability integral transform of the observation gives a scaled residual that
is uniform on (0, 1) when the model is adequate. Uniformity, dispersion,
zero-inflation and outlier tests then flag departures.

This is a validation gate: nothing here changes the data or the model.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np
import pandas as pd
from scipy import stats

from .. import config
from .glmm import GLMMResults

logger = logging.getLogger(__name__)


@dataclass
class ResidualDiagnostics:
    """Scaled residuals and test outcomes for one fitted model"""
    residuals: np.ndarray
    predicted: np.ndarray
    tests: pd.DataFrame
    alpha: float
    n_sim: int
    concerns: List[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.concerns

    @property
    def status(self) -> str:
        if self.passed:
            return "passed"
        return "concerns: " + "; ".join(self.concerns)


def scaled_residuals(observed: np.ndarray, simulated: np.ndarray,
                     rng: Optional[np.random.Generator] = None) -> np.ndarray:
    """
    Randomized PIT residuals.

    Args:
        observed: Shape (n,)
        simulated: Shape (n_sim, n)

    Returns:
        Residuals in (0, 1), shape (n,)
    """
    rng = rng or np.random.default_rng()
    observed = np.asarray(observed, dtype=float)
    n_sim = simulated.shape[0]
    below = (simulated < observed[None, :]).sum(axis=0)
    equal = (simulated == observed[None, :]).sum(axis=0)
    u = rng.uniform(size=observed.shape)
    return (below + u * (equal + 1)) / (n_sim + 1)


def _two_sided_sim_p(observed_stat: float, simulated_stats: np.ndarray) -> float:
    n = len(simulated_stats)
    greater = (np.sum(simulated_stats >= observed_stat) + 1) / (n + 1)
    smaller = (np.sum(simulated_stats <= observed_stat) + 1) / (n + 1)
    return float(min(1.0, 2 * min(greater, smaller)))


def uniformity_test(residuals: np.ndarray) -> dict:
    """Kolmogorov-Smirnov test of scaled residuals against Uniform(0, 1)"""
    result = stats.kstest(residuals, "uniform")
    return {"test": "uniformity", "statistic": float(result.statistic),
            "p_value": float(result.pvalue)}


def dispersion_test(observed: np.ndarray, simulated: np.ndarray) -> dict:
    """
    Compare the spread of observed responses around the simulated mean with the
    spread of each simulated replicate. Ratio > 1 suggests overdispersion.
    """
    expected = simulated.mean(axis=0)
    obs_spread = np.var(observed - expected)
    sim_spread = np.var(simulated - expected[None, :], axis=1)
    mean_sim = sim_spread.mean()
    ratio = obs_spread / mean_sim if mean_sim > 0 else np.nan
    return {"test": "dispersion", "statistic": float(ratio),
            "p_value": _two_sided_sim_p(obs_spread, sim_spread)}


def zero_inflation_test(observed: np.ndarray, simulated: np.ndarray) -> dict:
    """Observed zero count relative to the simulated zero counts"""
    obs_zeros = np.sum(observed == 0)
    sim_zeros = np.sum(simulated == 0, axis=1)
    mean_zeros = sim_zeros.mean()
    ratio = obs_zeros / mean_zeros if mean_zeros > 0 else np.nan
    return {"test": "zero_inflation", "statistic": float(ratio),
            "p_value": _two_sided_sim_p(obs_zeros, sim_zeros)}


def outlier_test(observed: np.ndarray, simulated: np.ndarray) -> dict:
    """Observations outside the whole simulated range, against the expected rate"""
    n_sim, n = simulated.shape
    outside = (observed < simulated.min(axis=0)) | (observed > simulated.max(axis=0))
    expected_rate = 2.0 / (n_sim + 1)
    result = stats.binomtest(int(outside.sum()), n, expected_rate)
    return {"test": "outliers", "statistic": float(outside.mean()),
            "p_value": float(result.pvalue)}


def simulate_residuals(results: GLMMResults, n_sim: int = config.N_SIMULATIONS,
                       seed: Optional[int] = config.RANDOM_SEED,
                       alpha: float = config.ALPHA) -> ResidualDiagnostics:
    """
    Simulate from a fitted model and run the residual tests.

    Args:
        results: Fitted model
        n_sim: Number of simulated replicates
        seed: Random seed for simulation and PIT randomization
        alpha: Significance level for flagging a test

    Returns:
        ResidualDiagnostics; `passed` is False if any test is significant
    """
    rng = np.random.default_rng(seed)
    observed = results.model.endog
    simulated = results.simulate(n_sim=n_sim, seed=int(rng.integers(0, 2**31 - 1)))
    residuals = scaled_residuals(observed, simulated, rng)

    rows = [uniformity_test(residuals), dispersion_test(observed, simulated)]
    if results.family.link == "log":
        rows.append(zero_inflation_test(observed, simulated))
    rows.append(outlier_test(observed, simulated))

    tests = pd.DataFrame(rows)
    tests["flagged"] = tests["p_value"] < alpha

    concerns = []
    for _, row in tests[tests["flagged"]].iterrows():
        concerns.append(f"{row['test']} (statistic={row['statistic']:.3f}, p={row['p_value']:.4f})")

    diagnostics = ResidualDiagnostics(
        residuals=residuals,
        predicted=results.fitted(),
        tests=tests,
        alpha=alpha,
        n_sim=n_sim,
        concerns=concerns,
    )

    if diagnostics.passed:
        logger.info(f"Residual diagnostics passed for '{results.formula}' ({results.family.name})")
    else:
        for concern in concerns:
            logger.warning(f"Residual diagnostic concern for '{results.formula}' "
                           f"({results.family.name}): {concern}")
    return diagnostics
