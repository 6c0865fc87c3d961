"""Conditional models for partially observed covariates.

Each imputation method is a :class:`CovariateMethod` member mapped to a
:class:`ConditionalFamily`. A family validates the column it is asked to
impute, fits its regression to the current (partly imputed) data and returns a
draw of the parameters from their approximate posterior: normal around the
MLE with the MLE covariance, plus a scaled inverse chi-square draw of the
residual variance for the linear-normal model.

Continuous families sample proposals for the rejection step. Discrete families
return level probabilities, which the Gibbs engine combines with the
substantive model likelihood of every level.
"""

import enum
import warnings
from abc import ABC, abstractmethod
from typing import Dict, Optional, Type

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy.special import expit, softmax
from statsmodels.miscmodels.ordinal_model import OrderedModel

from smcimpute.errors import InvalidInput


class CovariateMethod(enum.Enum):
    NONE = ""
    NORM = "norm"
    LOGREG = "logreg"
    POISSON = "poisson"
    MLOGIT = "mlogit"
    PODDS = "podds"

    @classmethod
    def parse(cls, tag) -> "CovariateMethod":
        if isinstance(tag, cls):
            return tag
        if tag is None:
            return cls.NONE
        try:
            return cls(str(tag).strip().lower())
        except ValueError:
            known = ", ".join(repr(m.value) for m in cls)
            raise InvalidInput(
                f"Unknown imputation method {tag!r}; expected one of {known}"
            ) from None


def draw_normal(mean, cov, rng: np.random.Generator) -> np.ndarray:
    """Draw from N(mean, cov), tolerating tiny negative eigenvalues."""
    mean = np.asarray(mean, dtype=float)
    cov = np.asarray(cov, dtype=float)
    cov = 0.5 * (cov + cov.T)
    return rng.multivariate_normal(mean, cov, method="eigh")


class ContinuousDraw(ABC):
    @abstractmethod
    def sample(self, X: np.ndarray, rng: np.random.Generator) -> np.ndarray:
        pass


class DiscreteDraw(ABC):
    @abstractmethod
    def probabilities(self, X: np.ndarray) -> np.ndarray:
        """Level probabilities, shape ``(n, n_levels)``."""
        pass


class NormalDraw(ContinuousDraw):
    def __init__(self, beta, sigma):
        self.beta = beta
        self.sigma = sigma

    def sample(self, X, rng):
        return X @ self.beta + self.sigma * rng.standard_normal(X.shape[0])


class PoissonDraw(ContinuousDraw):
    def __init__(self, beta):
        self.beta = beta

    def sample(self, X, rng):
        return rng.poisson(np.exp(X @ self.beta)).astype(float)


class LogisticDraw(DiscreteDraw):
    def __init__(self, beta):
        self.beta = beta

    def probabilities(self, X):
        p = expit(X @ self.beta)
        return np.column_stack([1.0 - p, p])


class MultinomialDraw(DiscreteDraw):
    def __init__(self, beta, present, n_levels):
        # beta: (n_predictors, n_present - 1); present: level codes in the fit
        self.beta = beta
        self.present = present
        self.n_levels = n_levels

    def probabilities(self, X):
        eta = np.column_stack([np.zeros(X.shape[0]), X @ self.beta])
        probs = np.zeros((X.shape[0], self.n_levels))
        probs[:, self.present] = softmax(eta, axis=1)
        return probs


class OrderedDraw(DiscreteDraw):
    def __init__(self, model, params, present, n_levels):
        self.model = model
        self.params = params
        self.present = present
        self.n_levels = n_levels

    def probabilities(self, X):
        fitted = np.asarray(self.model.predict(self.params, exog=X[:, 1:]))
        probs = np.zeros((X.shape[0], self.n_levels))
        probs[:, self.present] = fitted
        return probs


class ConditionalFamily(ABC):
    """Interface every covariate imputation family implements."""

    method: CovariateMethod = CovariateMethod.NONE
    discrete: bool = False

    def levels(self, column: pd.Series) -> Optional[np.ndarray]:
        """Values a discrete covariate can take; ``None`` for continuous ones."""
        return None

    def validate(self, name: str, column: pd.Series) -> None:
        pass

    def encode(self, column: pd.Series, levels: Optional[np.ndarray]) -> np.ndarray:
        """Numeric response vector used to fit the conditional model."""
        return column.to_numpy(dtype=float)

    @abstractmethod
    def fit(self, X: np.ndarray, y: np.ndarray, rng: np.random.Generator,
            n_levels: Optional[int] = None):
        """Fit to fully imputed rows and return a posterior parameter draw.

        Args:
            X: Predictor design, intercept in the first column.
            y: Response; level codes for discrete families.
            rng: Random stream of the current imputation.
            n_levels: Number of levels of a discrete covariate.
        """
        pass


class NormalFamily(ConditionalFamily):
    method = CovariateMethod.NORM

    def validate(self, name, column):
        _require_numeric(name, column, self.method)

    def fit(self, X, y, rng, n_levels=None):
        n, p = X.shape
        if n <= p:
            raise InvalidInput(
                f"Too few rows ({n}) to fit a linear model with {p} parameters"
            )
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            res = sm.OLS(y, X).fit()
        sigmasq = res.ssr / rng.chisquare(n - p)
        beta = draw_normal(res.params, sigmasq * res.normalized_cov_params, rng)
        return NormalDraw(beta, np.sqrt(sigmasq))


class PoissonFamily(ConditionalFamily):
    method = CovariateMethod.POISSON

    def validate(self, name, column):
        _require_numeric(name, column, self.method)
        observed = column.dropna().to_numpy(dtype=float)
        if np.any(observed < 0) or np.any(observed != np.round(observed)):
            raise InvalidInput(
                f"Column '{name}' must hold non-negative integers for method 'poisson'"
            )

    def fit(self, X, y, rng, n_levels=None):
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            res = sm.GLM(y, X, family=sm.families.Poisson()).fit()
        return PoissonDraw(draw_normal(res.params, res.cov_params(), rng))


class LogisticFamily(ConditionalFamily):
    method = CovariateMethod.LOGREG
    discrete = True

    def levels(self, column):
        return _column_levels(column)

    def validate(self, name, column):
        levels = self.levels(column)
        if len(levels) != 2:
            raise InvalidInput(
                f"Method 'logreg' needs a binary column; '{name}' has "
                f"{len(levels)} level(s)"
            )

    def encode(self, column, levels):
        return _encode_levels(column, levels)

    def fit(self, X, y, rng, n_levels=None):
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            res = sm.GLM(y, X, family=sm.families.Binomial()).fit()
        return LogisticDraw(draw_normal(res.params, res.cov_params(), rng))


class MultinomialFamily(ConditionalFamily):
    method = CovariateMethod.MLOGIT
    discrete = True

    def levels(self, column):
        return _column_levels(column)

    def validate(self, name, column):
        if not isinstance(column.dtype, pd.CategoricalDtype):
            raise InvalidInput(
                f"Method '{self.method.value}' needs a categorical column; "
                f"'{name}' has dtype {column.dtype}"
            )
        if len(self.levels(column)) < 2:
            raise InvalidInput(f"Column '{name}' needs at least two levels")

    def encode(self, column, levels):
        return _encode_levels(column, levels)

    def fit(self, X, y, rng, n_levels=None):
        present = np.unique(y).astype(int)
        if n_levels is None:
            n_levels = int(present.max()) + 1
        # levels absent from the current data get probability zero
        codes = np.searchsorted(present, y.astype(int))
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            res = sm.MNLogit(codes, X).fit(disp=0, method="newton", maxiter=100)
        params = np.asarray(res.params)
        flat = draw_normal(params.ravel(order="F"), res.cov_params(), rng)
        beta = flat.reshape(params.shape, order="F")
        return MultinomialDraw(beta, present, n_levels)


class ProportionalOddsFamily(MultinomialFamily):
    method = CovariateMethod.PODDS

    def validate(self, name, column):
        super().validate(name, column)
        if not column.dtype.ordered:
            raise InvalidInput(
                f"Method 'podds' needs an ordered categorical column; '{name}' is unordered"
            )

    def fit(self, X, y, rng, n_levels=None):
        present = np.unique(y).astype(int)
        if n_levels is None:
            n_levels = int(present.max()) + 1
        codes = np.searchsorted(present, y.astype(int))
        # OrderedModel carries its own thresholds, so the intercept column goes
        model = OrderedModel(codes, X[:, 1:], distr="logit")
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            res = model.fit(method="bfgs", disp=0, maxiter=200)
        params = draw_normal(res.params, res.cov_params(), rng)
        return OrderedDraw(model, params, present, n_levels)


_FAMILIES: Dict[CovariateMethod, Type[ConditionalFamily]] = {
    CovariateMethod.NORM: NormalFamily,
    CovariateMethod.LOGREG: LogisticFamily,
    CovariateMethod.POISSON: PoissonFamily,
    CovariateMethod.MLOGIT: MultinomialFamily,
    CovariateMethod.PODDS: ProportionalOddsFamily,
}


def resolve_family(method) -> ConditionalFamily:
    """Instantiate the family registered for an imputation method."""
    method = CovariateMethod.parse(method)
    if method is CovariateMethod.NONE:
        raise InvalidInput("Covariates with method '' are not imputed")
    return _FAMILIES[method]()


def _require_numeric(name, column, method):
    if isinstance(column.dtype, pd.CategoricalDtype) or not pd.api.types.is_numeric_dtype(column):
        raise InvalidInput(
            f"Method '{method.value}' needs a numeric column; '{name}' has dtype {column.dtype}"
        )


def _column_levels(column: pd.Series) -> np.ndarray:
    if isinstance(column.dtype, pd.CategoricalDtype):
        return np.asarray(column.cat.categories)
    values = column.dropna().unique()
    try:
        return np.sort(values)
    except TypeError as e:
        raise InvalidInput(
            f"Values of '{column.name}' cannot be ordered as levels; use a categorical column"
        ) from e


def _encode_levels(column: pd.Series, levels: np.ndarray) -> np.ndarray:
    # position in levels, for numeric, string and categorical columns alike
    codes = pd.Categorical(column, categories=levels).codes
    return np.asarray(codes, dtype=float)
