"""
Response families for the random-intercept GLMM: Poisson and negative binomial
(NB2) counts with a log link, and Bernoulli presence with a logit link.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional

import numpy as np
import statsmodels.api as sm
from scipy.special import expit, gammaln, logit

# Linear predictors are clipped here before exponentiating
ETA_LIMIT = 30.0


class ResponseFamily(ABC):
    """Base class for GLMM response distributions

    Log-likelihoods are written on the linear-predictor scale so the quadrature
    in the mixed model never needs the mean explicitly.
    """

    name: str = ""
    link: str = ""
    # Names of extra (non-regression) parameters, estimated on the log scale
    extra_params: List[str] = []

    @property
    def n_extra(self) -> int:
        return len(self.extra_params)

    @abstractmethod
    def loglike(self, y: np.ndarray, eta: np.ndarray, extra: np.ndarray) -> np.ndarray:
        """Elementwise log-likelihood of y given linear predictor eta

        Args:
            y: Observed responses (broadcastable against eta)
            eta: Linear predictor
            extra: Extra parameters on their estimation (log) scale
        """
        pass

    @abstractmethod
    def linkinv(self, eta: np.ndarray) -> np.ndarray:
        pass

    @abstractmethod
    def linkfun(self, mu: np.ndarray) -> np.ndarray:
        pass

    @abstractmethod
    def simulate(self, eta: np.ndarray, extra: np.ndarray,
                 rng: np.random.Generator) -> np.ndarray:
        """Draw responses with the given linear predictor"""
        pass

    @abstractmethod
    def glm_family(self):
        """statsmodels family used for start values"""
        pass

    def start_extra(self) -> np.ndarray:
        return np.zeros(self.n_extra)

    def check_response(self, y: np.ndarray):
        if not np.all(np.isfinite(y)):
            raise ValueError(f"{self.name}: response contains missing or infinite values")

    def extra_summary(self, extra: np.ndarray) -> Dict[str, float]:
        """Extra parameters on the natural scale"""
        return {}


class _LogLinkCounts(ResponseFamily):
    link = "log"

    def linkinv(self, eta):
        return np.exp(np.clip(eta, -ETA_LIMIT, ETA_LIMIT))

    def linkfun(self, mu):
        return np.log(mu)

    def check_response(self, y):
        super().check_response(y)
        if np.any(y < 0) or np.any(np.floor(y) != y):
            raise ValueError(f"{self.name}: response must be non-negative integer counts")


class Poisson(_LogLinkCounts):
    name = "poisson"

    def loglike(self, y, eta, extra):
        eta = np.clip(eta, -ETA_LIMIT, ETA_LIMIT)
        return y * eta - np.exp(eta) - gammaln(y + 1)

    def simulate(self, eta, extra, rng):
        return rng.poisson(self.linkinv(eta))

    def glm_family(self):
        return sm.families.Poisson()


class NegativeBinomial(_LogLinkCounts):
    """NB2: variance mu + mu^2 / theta, theta estimated as log(theta)"""

    name = "nbinom2"
    extra_params = ["log_theta"]

    def loglike(self, y, eta, extra):
        eta = np.clip(eta, -ETA_LIMIT, ETA_LIMIT)
        log_theta = extra[0]
        theta = np.exp(log_theta)
        log_denom = np.logaddexp(log_theta, eta)
        return (gammaln(y + theta) - gammaln(theta) - gammaln(y + 1)
                + theta * (log_theta - log_denom)
                + y * (eta - log_denom))

    def simulate(self, eta, extra, rng):
        theta = np.exp(extra[0])
        mu = self.linkinv(eta)
        return rng.negative_binomial(theta, theta / (theta + mu))

    def glm_family(self):
        return sm.families.Poisson()

    def start_extra(self):
        return np.array([0.0])

    def extra_summary(self, extra):
        return {"theta": float(np.exp(extra[0]))}


class Bernoulli(ResponseFamily):
    """Binary presence/absence with logit link"""

    name = "binomial"
    link = "logit"

    def loglike(self, y, eta, extra):
        return y * eta - np.logaddexp(0.0, eta)

    def linkinv(self, eta):
        return expit(eta)

    def linkfun(self, mu):
        return logit(mu)

    def simulate(self, eta, extra, rng):
        return rng.binomial(1, self.linkinv(eta))

    def glm_family(self):
        return sm.families.Binomial()

    def check_response(self, y):
        super().check_response(y)
        if not np.all(np.isin(y, (0, 1))):
            raise ValueError(f"{self.name}: response must be 0/1")


FAMILIES = {
    "poisson": Poisson,
    "nbinom2": NegativeBinomial,
    "negative_binomial": NegativeBinomial,
    "binomial": Bernoulli,
    "logistic": Bernoulli,
}


def get_family(family: Optional[object]) -> ResponseFamily:
    """Look up a family by name, or pass an instance through"""
    if isinstance(family, ResponseFamily):
        return family
    key = str(family).lower()
    if key not in FAMILIES:
        raise ValueError(f"Unknown family: {family}. Available: {sorted(FAMILIES)}")
    return FAMILIES[key]()
