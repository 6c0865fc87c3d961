"""Royston-Parmar flexible parametric proportional hazards model.

The log cumulative hazard is a restricted cubic spline in log time plus a
linear predictor::

    log H(t | x) = s(log t; gamma) + x' beta + (v' delta) log t

Terms written as ``gamma1(v)`` in the formula give ``v`` an effect on the
log time slope of the spline, so its hazard ratio changes with time.

With ``k = 0`` internal knots this is the Weibull model. Censored event times
can optionally be imputed from the fitted model, which is useful when an
analysis needs complete follow-up up to some administrative censoring time.
"""

import logging
import re
import warnings
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import numpy as np
from statsmodels.base.model import GenericLikelihoodModel

from smcimpute.covariates.families import draw_normal
from smcimpute.design import DesignBuilder, referenced_columns
from smcimpute.errors import InvalidInput
from smcimpute.substantive.base import (
    SubstantiveModel,
    SubstantiveModelType,
    require_binary,
    require_positive_times,
)
from smcimpute.substantive.cox import cox_weight

logger = logging.getLogger(__name__)

_GRID_SIZE = 2000

_TIME_VARYING_RE = re.compile(r"^gamma(\d+)\((.*)\)$", re.DOTALL)


def _cube(x):
    return np.clip(x, 0.0, None) ** 3


def _square(x):
    return np.clip(x, 0.0, None) ** 2


def split_time_varying(rhs: str) -> Tuple[str, Optional[str]]:
    """Separate ``gamma1(...)`` terms from the rest of a right-hand side.

    >>> split_time_varying("x + z + gamma1(z)")
    ('x + z', 'z')
    """
    terms, depth, start = [], 0, 0
    for i, ch in enumerate(rhs):
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        elif ch == "+" and depth == 0:
            terms.append(rhs[start:i].strip())
            start = i + 1
    terms.append(rhs[start:].strip())

    fixed, varying = [], []
    for term in terms:
        match = _TIME_VARYING_RE.match(term)
        if match is None:
            fixed.append(term)
        elif match.group(1) != "1":
            raise InvalidInput(
                f"Only gamma1() time-varying effects are supported, got {term!r}"
            )
        else:
            varying.append(match.group(2).strip())
    return " + ".join(fixed) or "0", " + ".join(varying) or None


def spline_knots(log_event_times: np.ndarray, k: int) -> np.ndarray:
    """Boundary knots at the extreme log event times, internal knots at
    equally spaced quantiles between them."""
    log_event_times = np.asarray(log_event_times, dtype=float)
    probs = np.linspace(0.0, 1.0, k + 2)
    return np.quantile(log_event_times, probs)


def spline_basis(u, knots) -> np.ndarray:
    """Columns ``1, u, v_1, ..., v_k`` of the natural cubic spline basis."""
    u = np.asarray(u, dtype=float)
    kmin, kmax = knots[0], knots[-1]
    columns = [np.ones_like(u), u]
    for kj in knots[1:-1]:
        lam = (kmax - kj) / (kmax - kmin)
        columns.append(_cube(u - kj) - lam * _cube(u - kmin) - (1.0 - lam) * _cube(u - kmax))
    return np.column_stack(columns)


def spline_basis_derivative(u, knots) -> np.ndarray:
    """Derivative of :func:`spline_basis` with respect to ``u``."""
    u = np.asarray(u, dtype=float)
    kmin, kmax = knots[0], knots[-1]
    columns = [np.zeros_like(u), np.ones_like(u)]
    for kj in knots[1:-1]:
        lam = (kmax - kj) / (kmax - kmin)
        columns.append(
            3.0 * (_square(u - kj) - lam * _square(u - kmin) - (1.0 - lam) * _square(u - kmax))
        )
    return np.column_stack(columns)


class RoystonParmarLikelihood(GenericLikelihoodModel):
    """Per-subject log likelihood ``d (log slope - u + eta) - exp(eta)``.

    ``eta`` is the log cumulative hazard at ``u = log t`` and ``slope`` its
    derivative in ``u``; columns of ``V`` add ``delta * v * u`` to ``eta``.
    """

    def __init__(self, event, basis, dbasis, X, V, log_time, **kwds):
        super().__init__(event, np.column_stack([basis, X, V]), **kwds)
        self.basis = basis
        self.dbasis = dbasis
        self.X = X
        self.V = V
        self.log_time = log_time
        self.n_gamma = basis.shape[1]
        self.n_beta = X.shape[1]

    def loglikeobs(self, params):
        gamma = params[: self.n_gamma]
        beta = params[self.n_gamma: self.n_gamma + self.n_beta]
        delta = params[self.n_gamma + self.n_beta:]
        shift = self.V @ delta
        eta = self.basis @ gamma + self.X @ beta + shift * self.log_time
        slope = np.clip(self.dbasis @ gamma + shift, 1e-12, None)
        return self.endog * (np.log(slope) - self.log_time + eta) - np.exp(eta)


@dataclass
class FlexsurvFit:
    params: np.ndarray
    cov: np.ndarray
    knots: np.ndarray


@dataclass
class FlexsurvParams:
    gamma: np.ndarray
    beta: np.ndarray
    knots: np.ndarray
    delta: np.ndarray = field(default_factory=lambda: np.zeros(0))


class FlexsurvModel(SubstantiveModel):
    smtype = SubstantiveModelType.FLEXSURV
    survival = True
    intercept = False
    option_defaults = {"k": 2, "impute_times": False, "censtime": None, "original_knots": True}

    def __init__(self, spec):
        super().__init__(spec)
        self.fixed_rhs, self.varying_rhs = split_time_varying(self.formulas[0].rhs)
        self.varying_design: Optional[DesignBuilder] = None
        self.knots = None
        self.censoring_limits = None
        self._start = None

    @property
    def time_column(self) -> str:
        return self.formulas[0].time

    @property
    def event_column(self) -> str:
        return self.formulas[0].event

    @property
    def imputes_times(self) -> bool:
        return bool(self.options["impute_times"])

    def check_imputed_covariates(self, continuous):
        if self.varying_rhs is None:
            return
        varying = referenced_columns(self.varying_rhs, list(continuous))
        if varying:
            raise InvalidInput(
                "gamma1() time-varying effects are only supported for fully observed or "
                f"discrete covariates; '{', '.join(varying)}' is imputed as continuous"
            )

    def validate(self, data):
        k = self.options["k"]
        if isinstance(k, bool) or not isinstance(k, (int, np.integer)) or k < 0:
            raise InvalidInput(f"k must be a non-negative integer, got {k!r}")
        super().validate(data)

    def _validate_outcome(self, data):
        if self.formulas[0].cause is not None:
            raise InvalidInput("Flexible parametric survival formulas take a 0/1 event indicator")
        require_positive_times(data, self.time_column)
        require_binary(data, self.event_column)
        event = data[self.event_column].to_numpy(dtype=float)
        event_times = np.unique(data[self.time_column].to_numpy(dtype=float)[event == 1])
        if len(event_times) < 2:
            raise InvalidInput("At least two distinct event times are needed to place spline knots")

        censored = event == 0
        censtime = self.options["censtime"]
        if censtime is not None and not self.imputes_times:
            raise InvalidInput("censtime is only used together with impute_times=True")
        if self.imputes_times:
            self.censoring_limits = self._censoring_limits(data, censored, censtime)

    def _censoring_limits(self, data, censored, censtime) -> np.ndarray:
        observed = data[self.time_column].to_numpy(dtype=float)[censored]
        if censtime is None:
            return np.full(censored.sum(), np.inf)
        limits = np.atleast_1d(np.asarray(censtime, dtype=float))
        if limits.size == 1:
            limits = np.full(censored.sum(), limits[0])
        elif limits.size == len(data):
            limits = limits[censored]
        elif limits.size != censored.sum():
            raise InvalidInput(
                f"censtime must be a scalar or have length {len(data)} (all rows) or "
                f"{censored.sum()} (censored rows), got {limits.size}"
            )
        if np.any(np.isnan(limits)) or np.any(limits < observed):
            raise InvalidInput(
                "censtime must not be earlier than the observed censoring time of any subject"
            )
        return limits

    def prepare(self, data):
        self.designs = [DesignBuilder(self.fixed_rhs, data, intercept=False)]
        if self.designs[0].n_columns == 0:
            raise InvalidInput(f"Substantive model '{self.smtype.value}' needs at least one covariate")
        self.varying_design = None
        if self.varying_rhs is not None:
            self.varying_design = DesignBuilder(self.varying_rhs, data, intercept=False)
        self.knots = self._knots(data)
        self._start = None
        return self

    def _knots(self, data) -> np.ndarray:
        time = data[self.time_column].to_numpy(dtype=float)
        event = data[self.event_column].to_numpy(dtype=float)
        return spline_knots(np.log(time[event == 1]), int(self.options["k"]))

    @property
    def coef_names(self) -> List[str]:
        gammas = [f"gamma{j}" for j in range(int(self.options["k"]) + 2)]
        varying = []
        if self.varying_design is not None:
            varying = [f"gamma1({name})" for name in self.varying_design.column_names]
        return gammas + list(self.designs[0].column_names) + varying

    def _varying_matrix(self, frame) -> np.ndarray:
        if self.varying_design is None:
            return np.zeros((len(frame), 0))
        return self.varying_design.matrix(frame)

    def fit(self, data):
        knots = self.knots if self.options["original_knots"] else self._knots(data)
        time = data[self.time_column].to_numpy(dtype=float)
        event = data[self.event_column].to_numpy(dtype=float)
        u = np.log(time)
        X = self.designs[0].matrix(data)
        V = self._varying_matrix(data)
        model = RoystonParmarLikelihood(
            event, spline_basis(u, knots), spline_basis_derivative(u, knots), X, V, u
        )
        if self._start is None:
            start = np.zeros(model.n_gamma + X.shape[1] + V.shape[1])
            start[0] = np.log(event.sum() / time.sum())
            start[1] = 1.0
        else:
            start = self._start
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            res = model.fit(start_params=start, method="bfgs", maxiter=1000, disp=0)
        if not res.mle_retvals.get("converged", True):
            logger.debug("Flexible parametric model fit did not fully converge")
        params = np.asarray(res.params, dtype=float)
        self._start = params
        return FlexsurvFit(params=params, cov=np.asarray(res.cov_params(), dtype=float), knots=knots)

    def coefficients(self, fit):
        return fit.params

    def draw(self, fit, data, rng):
        params = draw_normal(fit.params, fit.cov, rng)
        n_gamma = len(fit.knots)
        n_beta = self.designs[0].n_columns
        return FlexsurvParams(
            gamma=params[:n_gamma],
            beta=params[n_gamma: n_gamma + n_beta],
            knots=fit.knots,
            delta=params[n_gamma + n_beta:],
        )

    def _slope_shift(self, frame, params) -> np.ndarray:
        return self._varying_matrix(frame) @ params.delta

    def log_cumulative_hazard(self, frame, params, time=None) -> np.ndarray:
        if time is None:
            time = frame[self.time_column].to_numpy(dtype=float)
        u = np.log(time)
        spline = spline_basis(u, params.knots) @ params.gamma
        return spline + self.designs[0].matrix(frame) @ params.beta + self._slope_shift(frame, params) * u

    def acceptance_weight(self, frame, params):
        cumhaz = np.exp(self.log_cumulative_hazard(frame, params))
        return cox_weight(cumhaz, frame[self.event_column].to_numpy(dtype=float))

    def likelihood(self, frame, params):
        weight = self.acceptance_weight(frame, params)
        if self.varying_design is None:
            return weight
        # the hazard at an event time also depends on the slope in log time
        u = np.log(frame[self.time_column].to_numpy(dtype=float))
        slope = spline_basis_derivative(u, params.knots) @ params.gamma + self._slope_shift(frame, params)
        event = frame[self.event_column].to_numpy(dtype=float)
        return weight * np.where(event == 1, np.clip(slope, 0.0, None), 1.0)

    def impute_times(self, frame, params, rng):
        lp = self.designs[0].matrix(frame) @ params.beta
        time = frame[self.time_column].to_numpy(dtype=float)
        log_h = self.log_cumulative_hazard(frame, params, time)
        # given survival to c, H(T) - H(c) is standard exponential
        target = np.log(np.exp(log_h) + rng.exponential(size=len(frame))) - lp
        shift = self._slope_shift(frame, params)
        new_time = np.maximum(np.exp(self._invert_spline(target, params, shift)), time)
        limits = self.censoring_limits
        event = (new_time <= limits).astype(float)
        return np.where(event == 1, new_time, limits), event

    def _invert_spline(self, target, params, shift=None) -> np.ndarray:
        """Solve ``s(u) + shift * u = target`` for ``u``; linear beyond the boundary knots."""
        knots, gamma = params.knots, params.gamma
        target = np.asarray(target, dtype=float)
        if shift is None:
            shift = np.zeros(len(target))
        kmin, kmax = knots[0], knots[-1]
        grid = np.linspace(kmin, kmax, _GRID_SIZE)
        spline = spline_basis(grid, knots) @ gamma
        boundary_slope = float((spline_basis_derivative(np.array([kmax]), knots) @ gamma)[0])

        u = np.empty(len(target))
        for value in np.unique(shift):
            rows = shift == value
            values = np.maximum.accumulate(spline + value * grid)
            low_slope = max(gamma[1] + value, 1e-12)
            high_slope = max(boundary_slope + value, 1e-12)
            t = target[rows]
            solved = np.interp(t, values, grid)
            below = t < values[0]
            above = t > values[-1]
            solved[below] = kmin + (t[below] - values[0]) / low_slope
            solved[above] = kmax + (t[above] - values[-1]) / high_slope
            u[rows] = solved
        return u
