"""
Random-intercept generalized linear mixed models.

One Gaussian random intercept per group (site), fixed effects from a patsy
formula and an optional exposure term (offset = log exposure). The marginal
likelihood integrates the random intercept out with Gauss-Hermite quadrature
and is maximized with scipy's L-BFGS-B; standard errors come from the
numerical Hessian.

Usage:
    model = RandomInterceptGLMM("haypiles ~ C(year) + elevation_scaled", data,
                                groups="site", family="nbinom2",
                                exposure="surveyed_area")
    results = model.fit()
    results.summary_frame()
"""

import logging
import warnings
from typing import Optional, Tuple, Union

import numpy as np
import pandas as pd
import patsy
import statsmodels.api as sm
from scipy import optimize, stats
from scipy.special import logsumexp
from statsmodels.tools.numdiff import approx_fprime, approx_hess
from statsmodels.tools.sm_exceptions import PerfectSeparationError

from .. import config
from .families import ResponseFamily, get_family

logger = logging.getLogger(__name__)

LOG_SIGMA_BOUNDS = (-8.0, 3.0)
LOG_EXTRA_BOUNDS = (-6.0, 10.0)


class ModelFitError(RuntimeError):
    """Raised when the likelihood optimizer does not converge."""
    pass


class RandomInterceptGLMM:
    """GLMM with a per-group random intercept"""

    def __init__(self, formula: str, data: pd.DataFrame, groups: Union[str, np.ndarray],
                 family: Union[str, ResponseFamily] = "poisson",
                 exposure: Optional[Union[str, np.ndarray]] = None,
                 n_quad: int = config.N_QUADRATURE):
        """
        Args:
            formula: patsy formula, response on the left
            data: Model frame; must have no missing values in model variables
            groups: Column name (or array) identifying the random-intercept groups
            family: Family name or ResponseFamily instance
            exposure: Column name (or array) of exposure; log(exposure) is the offset
            n_quad: Number of Gauss-Hermite nodes
        """
        self.formula = formula
        self.family = get_family(family)
        self.data = data

        try:
            endog, exog = patsy.dmatrices(formula, data, return_type="dataframe",
                                          NA_action="raise")
        except patsy.PatsyError as e:
            raise ValueError(f"Cannot build design matrices for '{formula}': {e}") from e

        self.design_info = exog.design_info
        self.endog_name = endog.columns[0]
        self.exog_names = list(exog.columns)
        self.endog = endog.iloc[:, 0].to_numpy(dtype=float)
        self.exog = exog.to_numpy(dtype=float)
        self.family.check_response(self.endog)

        group_values = data[groups] if isinstance(groups, str) else pd.Series(groups, index=data.index)
        if group_values.isna().any():
            raise ValueError("Group identifiers contain missing values")
        self.groups_name = groups if isinstance(groups, str) else "group"
        self.group_codes, self.group_labels = pd.factorize(group_values, sort=True)

        if exposure is None:
            self.exposure = None
            self.offset = np.zeros(len(self.endog))
        else:
            exp_values = data[exposure] if isinstance(exposure, str) else exposure
            exp_values = np.asarray(exp_values, dtype=float)
            if not np.all(np.isfinite(exp_values)) or np.any(exp_values <= 0):
                raise ValueError("Exposure must be positive and non-missing")
            self.exposure = exp_values
            self.offset = np.log(exp_values)

        self.n_quad = n_quad
        nodes, weights = np.polynomial.hermite.hermgauss(n_quad)
        self._nodes = nodes
        self._log_weights = np.log(weights) - 0.5 * np.log(np.pi)

        # Rows of the indicator sum observation log-likelihoods within groups
        self._indicator = np.zeros((self.n_groups, self.nobs))
        self._indicator[self.group_codes, np.arange(self.nobs)] = 1.0

    @property
    def nobs(self) -> int:
        return len(self.endog)

    @property
    def n_groups(self) -> int:
        return len(self.group_labels)

    @property
    def k_fe(self) -> int:
        return self.exog.shape[1]

    @property
    def k_params(self) -> int:
        return self.k_fe + 1 + self.family.n_extra

    @property
    def param_names(self):
        return self.exog_names + [f"log_sd({self.groups_name})"] + self.family.extra_params

    def _split(self, params: np.ndarray) -> Tuple[np.ndarray, float, np.ndarray]:
        p = self.k_fe
        return params[:p], params[p], params[p + 1:]

    def group_loglike(self, params: np.ndarray) -> np.ndarray:
        """Per-group quadrature terms, shape (n_groups, n_quad), before summing over nodes"""
        beta, log_sigma, extra = self._split(params)
        eta = self.exog @ beta + self.offset
        b = np.sqrt(2.0) * np.exp(log_sigma) * self._nodes
        ll = self.family.loglike(self.endog[:, None], eta[:, None] + b[None, :], extra)
        return self._indicator @ ll + self._log_weights[None, :]

    def loglike(self, params: np.ndarray) -> float:
        """Marginal log-likelihood"""
        return float(logsumexp(self.group_loglike(params), axis=1).sum())

    def _start_params(self) -> np.ndarray:
        beta = None
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            try:
                glm = sm.GLM(self.endog, self.exog, family=self.family.glm_family(),
                             offset=self.offset).fit()
                beta = np.asarray(glm.params, dtype=float)
            except (ValueError, np.linalg.LinAlgError, PerfectSeparationError) as e:
                logger.debug(f"GLM start values failed for '{self.formula}': {e}")

        if beta is None or not np.all(np.isfinite(beta)):
            beta = np.zeros(self.k_fe)
            if "Intercept" in self.exog_names:
                mean_y = np.clip(self.endog.mean(), 1e-3, None)
                if self.family.link == "logit":
                    mean_y = np.clip(mean_y, 1e-3, 1 - 1e-3)
                beta[self.exog_names.index("Intercept")] = \
                    self.family.linkfun(mean_y) - self.offset.mean()

        return np.concatenate([beta, [np.log(0.5)], self.family.start_extra()])

    def fit(self, start_params: Optional[np.ndarray] = None,
            maxiter: int = 2000) -> "GLMMResults":
        """
        Maximize the marginal likelihood.

        Optimization runs on column-scaled fixed effects; results are reported
        on the original scale.

        Raises:
            ModelFitError: if the optimizer does not reach a stationary point
        """
        if start_params is None:
            start_params = self._start_params()

        col_scale = self.exog.std(axis=0)
        col_scale[col_scale == 0] = 1.0
        scale_vec = np.concatenate([col_scale, np.ones(1 + self.family.n_extra)])

        def objective(z):
            value = -self.loglike(z / scale_vec)
            return value if np.isfinite(value) else 1e300

        bounds = ([(None, None)] * self.k_fe + [LOG_SIGMA_BOUNDS]
                  + [LOG_EXTRA_BOUNDS] * self.family.n_extra)
        z0 = np.asarray(start_params, dtype=float) * scale_vec
        res = optimize.minimize(objective, z0, method="L-BFGS-B", bounds=bounds,
                                options={"maxiter": maxiter})
        z_hat = res.x
        llf = -float(res.fun)

        lower = np.array([b[0] if b[0] is not None else -np.inf for b in bounds])
        upper = np.array([b[1] if b[1] is not None else np.inf for b in bounds])
        at_bound = np.isclose(z_hat, lower, atol=1e-4) | np.isclose(z_hat, upper, atol=1e-4)

        grad = np.ravel(approx_fprime(z_hat, objective, centered=True))
        free_grad = np.abs(grad[~at_bound])
        tol = 1e-3 * max(1.0, abs(llf))
        converged = bool(res.success) or (
            np.all(np.isfinite(free_grad)) and free_grad.max(initial=0.0) < tol
        )
        if not converged:
            raise ModelFitError(
                f"'{self.formula}' ({self.family.name}) did not converge: {res.message}"
            )

        hess = approx_hess(z_hat, objective)
        cov_z, singular = _invert_hessian(hess, drop=at_bound)
        cov = cov_z / np.outer(scale_vec, scale_vec)

        sigma_at_bound = bool(at_bound[self.k_fe])
        if sigma_at_bound or singular:
            logger.warning(
                f"Singular fit for '{self.formula}' ({self.family.name}): "
                f"random-intercept sd at boundary or Hessian not positive definite"
            )

        logger.debug(f"Fitted '{self.formula}' ({self.family.name}): logLik={llf:.3f}, "
                     f"iterations={res.nit}")
        return GLMMResults(self, z_hat / scale_vec, cov, llf,
                           singular=singular or sigma_at_bound,
                           n_iter=int(res.nit))


def _invert_hessian(hess: np.ndarray, drop: np.ndarray) -> Tuple[np.ndarray, bool]:
    """Invert the Hessian of the free parameters; parameters at a bound get nan"""
    k = hess.shape[0]
    cov = np.full((k, k), np.nan)
    keep = np.flatnonzero(~drop)
    sub = hess[np.ix_(keep, keep)]
    singular = False

    eig = np.linalg.eigvalsh(sub) if len(keep) else np.array([1.0])
    if eig.min() <= 1e-10 * max(1.0, abs(eig.max())):
        singular = True
        inv = np.linalg.pinv(sub)
    else:
        inv = np.linalg.inv(sub)

    cov[np.ix_(keep, keep)] = inv
    return cov, singular


class GLMMResults:
    """Fitted random-intercept GLMM

    Exposes coefficients, information criteria, population-level predictions
    with Wald intervals, and response simulation.
    """

    def __init__(self, model: RandomInterceptGLMM, params: np.ndarray, cov: np.ndarray,
                 llf: float, singular: bool = False, n_iter: int = 0):
        self.model = model
        self.family = model.family
        self.all_params = pd.Series(params, index=model.param_names)
        self.llf = llf
        self.singular = singular
        self.n_iter = n_iter
        self._cov_all = cov

        beta, log_sigma, extra = model._split(np.asarray(params))
        self.params = pd.Series(beta, index=model.exog_names)
        self.sigma = float(np.exp(log_sigma))
        self.extra = extra

    # ---------- Fit statistics ----------

    @property
    def formula(self) -> str:
        return self.model.formula

    @property
    def nobs(self) -> int:
        return self.model.nobs

    @property
    def n_groups(self) -> int:
        return self.model.n_groups

    @property
    def k_params(self) -> int:
        return self.model.k_params

    @property
    def aic(self) -> float:
        return -2 * self.llf + 2 * self.k_params

    @property
    def aicc(self) -> float:
        n, k = self.nobs, self.k_params
        if n - k - 1 <= 0:
            return np.inf
        return self.aic + 2 * k * (k + 1) / (n - k - 1)

    @property
    def bic(self) -> float:
        return -2 * self.llf + self.k_params * np.log(self.nobs)

    @property
    def theta(self) -> Optional[float]:
        return self.family.extra_summary(self.extra).get("theta")

    # ---------- Coefficients ----------

    def cov_params(self) -> pd.DataFrame:
        k = self.model.k_fe
        return pd.DataFrame(self._cov_all[:k, :k], index=self.params.index,
                            columns=self.params.index)

    @property
    def bse(self) -> pd.Series:
        return pd.Series(np.sqrt(np.diag(self.cov_params().to_numpy())), index=self.params.index)

    @property
    def zvalues(self) -> pd.Series:
        return self.params / self.bse

    @property
    def pvalues(self) -> pd.Series:
        return pd.Series(2 * stats.norm.sf(np.abs(self.zvalues)), index=self.params.index)

    def conf_int(self, alpha: float = config.ALPHA) -> pd.DataFrame:
        """Wald confidence intervals for the fixed effects"""
        z = stats.norm.ppf(1 - alpha / 2)
        return pd.DataFrame({
            "lower": self.params - z * self.bse,
            "upper": self.params + z * self.bse,
        })

    def summary_frame(self, alpha: float = config.ALPHA) -> pd.DataFrame:
        """Coefficient table: estimate, std_err, z_value, p_value, ci_lower, ci_upper"""
        ci = self.conf_int(alpha)
        table = pd.DataFrame({
            "term": self.params.index,
            "estimate": self.params.to_numpy(),
            "std_err": self.bse.to_numpy(),
            "z_value": self.zvalues.to_numpy(),
            "p_value": self.pvalues.to_numpy(),
            "ci_lower": ci["lower"].to_numpy(),
            "ci_upper": ci["upper"].to_numpy(),
        })
        return table

    def summary(self) -> str:
        lines = [
            f"Formula: {self.formula}",
            f"Family: {self.family.name} ({self.family.link} link)",
            f"Observations: {self.nobs}, groups ({self.model.groups_name}): {self.n_groups}",
            f"logLik: {self.llf:.3f}  AIC: {self.aic:.2f}  AICc: {self.aicc:.2f}  BIC: {self.bic:.2f}",
            f"Random intercept sd: {self.sigma:.4f}",
        ]
        if self.theta is not None:
            lines.append(f"Dispersion (theta): {self.theta:.4f}")
        if self.singular:
            lines.append("Warning: singular fit")
        lines.append(self.summary_frame().to_string(index=False, float_format=lambda v: f"{v:.4f}"))
        return "\n".join(lines)

    # ---------- Prediction ----------

    def design_matrix(self, newdata: pd.DataFrame) -> np.ndarray:
        """Fixed-effect design matrix for new data, using the fitted factor levels"""
        (exog,) = patsy.build_design_matrices([self.model.design_info], newdata,
                                              return_type="dataframe", NA_action="raise")
        return exog.to_numpy(dtype=float)

    def predict_link(self, exog: np.ndarray, offset=0.0) -> Tuple[np.ndarray, np.ndarray]:
        """Population-level linear predictor and its standard error"""
        exog = np.atleast_2d(exog)
        eta = exog @ self.params.to_numpy() + offset
        cov = self.cov_params().to_numpy()
        se = np.sqrt(np.einsum("ij,jk,ik->i", exog, cov, exog))
        return eta, se

    def predict(self, newdata: Optional[pd.DataFrame] = None, exposure=None,
                alpha: float = config.ALPHA) -> pd.DataFrame:
        """
        Population-level predictions (random intercept at zero) on the response scale.

        Args:
            newdata: Covariate values; defaults to the fitting data
            exposure: Exposure for count models (scalar or array); defaults to the
                fitting exposure for in-sample prediction, 1 otherwise
            alpha: Interval level

        Returns:
            DataFrame with eta, se_link, fit, lower, upper
        """
        if newdata is None:
            exog = self.model.exog
            offset = self.model.offset
        else:
            exog = self.design_matrix(newdata)
            offset = 0.0
        if exposure is not None:
            offset = np.log(np.asarray(exposure, dtype=float))

        eta, se = self.predict_link(exog, offset)
        z = stats.norm.ppf(1 - alpha / 2)
        return pd.DataFrame({
            "eta": eta,
            "se_link": se,
            "fit": self.family.linkinv(eta),
            "lower": self.family.linkinv(eta - z * se),
            "upper": self.family.linkinv(eta + z * se),
        })

    def fitted(self) -> np.ndarray:
        """Population-level fitted means for the fitting data"""
        eta = self.model.exog @ self.params.to_numpy() + self.model.offset
        return self.family.linkinv(eta)

    @property
    def random_effects(self) -> pd.Series:
        """Conditional mean of each group's random intercept"""
        terms = self.model.group_loglike(self.all_params.to_numpy())
        post = np.exp(terms - logsumexp(terms, axis=1, keepdims=True))
        b = np.sqrt(2.0) * self.sigma * self.model._nodes
        return pd.Series(post @ b, index=self.model.group_labels, name="intercept")

    def simulate(self, n_sim: int = config.N_SIMULATIONS, seed: Optional[int] = None) -> np.ndarray:
        """
        Simulate responses with new random intercepts for every replicate.

        Returns:
            Array of shape (n_sim, nobs)
        """
        rng = np.random.default_rng(seed)
        eta_fixed = self.model.exog @ self.params.to_numpy() + self.model.offset
        codes = self.model.group_codes
        out = np.empty((n_sim, self.nobs))
        for i in range(n_sim):
            b = rng.normal(0.0, self.sigma, size=self.n_groups)
            out[i] = self.family.simulate(eta_fixed + b[codes], self.extra, rng)
        return out
