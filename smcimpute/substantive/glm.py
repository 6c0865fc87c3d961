"""Linear, logistic and Poisson regression substantive models."""

import warnings
from dataclasses import dataclass

import numpy as np
import statsmodels.api as sm
from scipy.special import expit
from scipy.stats import poisson

from smcimpute.covariates.families import draw_normal
from smcimpute.errors import InvalidInput
from smcimpute.substantive.base import SubstantiveModel, SubstantiveModelType, require_binary


@dataclass
class GLMParams:
    beta: np.ndarray
    sigma: float = 1.0


class _GLMModel(SubstantiveModel):
    family = None

    @property
    def outcome(self) -> str:
        return self.formulas[0].outcome

    def _response(self, data):
        return data[self.outcome].to_numpy(dtype=float)

    def fit(self, data):
        X = self.designs[0].matrix(data)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            return sm.GLM(self._response(data), X, family=self.family).fit()

    def coefficients(self, fit):
        return np.asarray(fit.params, dtype=float)

    def draw(self, fit, data, rng):
        return GLMParams(beta=draw_normal(fit.params, fit.cov_params(), rng))

    def _mean(self, frame, params):
        return self.designs[0].matrix(frame) @ params.beta


class LinearModel(_GLMModel):
    smtype = SubstantiveModelType.LM

    def fit(self, data):
        X = self.designs[0].matrix(data)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            return sm.OLS(self._response(data), X).fit()

    def draw(self, fit, data, rng):
        n, p = fit.model.exog.shape
        sigmasq = fit.ssr / rng.chisquare(n - p)
        beta = draw_normal(fit.params, sigmasq * fit.normalized_cov_params, rng)
        return GLMParams(beta=beta, sigma=float(np.sqrt(sigmasq)))

    def acceptance_weight(self, frame, params):
        resid = self._response(frame) - self._mean(frame, params)
        return np.exp(-0.5 * (resid / params.sigma) ** 2)


class LogisticModel(_GLMModel):
    smtype = SubstantiveModelType.LOGISTIC
    family = sm.families.Binomial()

    def _validate_outcome(self, data):
        require_binary(data, self.outcome)

    def acceptance_weight(self, frame, params):
        p = expit(self._mean(frame, params))
        y = self._response(frame)
        return np.where(y == 1, p, 1.0 - p)


class PoissonModel(_GLMModel):
    smtype = SubstantiveModelType.POISSON
    family = sm.families.Poisson()

    def _validate_outcome(self, data):
        y = self._response(data)
        if np.any(y < 0) or np.any(y != np.round(y)):
            raise InvalidInput(f"Outcome '{self.outcome}' must hold non-negative integers")

    def acceptance_weight(self, frame, params):
        y = self._response(frame)
        mu = np.exp(self._mean(frame, params))
        # dpois(y, mu) is maximised over mu at mu = y
        return poisson.pmf(y, mu) / poisson.pmf(y, y)
