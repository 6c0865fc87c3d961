"""Discrete time survival analysis model.

Each subject is expanded into one row per period at risk and a logistic model
is fitted to the period-level event indicators. The baseline hazard is either
a separate parameter per period (``"factor"``) or a linear or quadratic
function of ``tstart = period - 1``.
"""

import warnings
from dataclasses import dataclass
from typing import List

import numpy as np
import statsmodels.api as sm
from scipy.special import expit, log_expit

from smcimpute.covariates.families import draw_normal
from smcimpute.errors import InvalidInput
from smcimpute.substantive.base import SubstantiveModel, SubstantiveModelType, require_binary

TIME_EFFECTS = ("factor", "linear", "quad")


@dataclass
class DtsamParams:
    time_coef: np.ndarray
    beta: np.ndarray


def expand_periods(time: np.ndarray, event: np.ndarray):
    """Person-period expansion.

    Returns:
        ``(subject, period, outcome)`` with one entry per subject and period
        ``1..time[i]``; ``outcome`` is 1 only in the final period of subjects
        who had the event.
    """
    time = np.asarray(time, dtype=int)
    subject = np.repeat(np.arange(len(time)), time)
    offsets = np.repeat(np.cumsum(time) - time, time)
    period = np.arange(len(subject)) - offsets + 1
    outcome = ((period == time[subject]) & (np.asarray(event)[subject] == 1)).astype(float)
    return subject, period, outcome


class DiscreteTimeModel(SubstantiveModel):
    smtype = SubstantiveModelType.DTSAM
    survival = True
    intercept = False
    option_defaults = {"time_effects": "factor"}

    def __init__(self, spec):
        super().__init__(spec)
        self.n_periods = None

    @property
    def time_column(self) -> str:
        return self.formulas[0].time

    @property
    def event_column(self) -> str:
        return self.formulas[0].event

    @property
    def time_effects(self) -> str:
        return self.options["time_effects"]

    def validate(self, data):
        if self.time_effects not in TIME_EFFECTS:
            raise InvalidInput(
                f"time_effects must be one of {', '.join(TIME_EFFECTS)}; got {self.time_effects!r}"
            )
        super().validate(data)

    def _validate_outcome(self, data):
        if self.formulas[0].cause is not None:
            raise InvalidInput("Discrete time survival formulas take a 0/1 event indicator")
        time = data[self.time_column].to_numpy(dtype=float)
        if np.any(time < 1) or np.any(time != np.round(time)):
            raise InvalidInput(
                f"Times in '{self.time_column}' must be positive integers (period numbers)"
            )
        require_binary(data, self.event_column)
        if self.time_effects == "factor":
            event = data[self.event_column].to_numpy(dtype=float)
            event_periods = set(time[event == 1].astype(int))
            empty = [s for s in range(1, int(time.max()) + 1) if s not in event_periods]
            if empty:
                raise InvalidInput(
                    "With time_effects='factor' every period needs at least one event; "
                    f"none in period(s) {empty}. Use 'linear' or 'quad', or group periods"
                )

    def prepare(self, data):
        super().prepare(data)
        self.n_periods = int(data[self.time_column].max())
        return self

    @property
    def time_names(self) -> List[str]:
        if self.time_effects == "factor":
            return [f"period{s}" for s in range(1, self.n_periods + 1)]
        names = ["Intercept", "tstart"]
        if self.time_effects == "quad":
            names.append("tstart^2")
        return names

    @property
    def coef_names(self):
        return self.time_names + list(self.designs[0].column_names)

    def time_design(self, period: np.ndarray) -> np.ndarray:
        period = np.asarray(period, dtype=int)
        if self.time_effects == "factor":
            return (period[:, None] == np.arange(1, self.n_periods + 1)[None, :]).astype(float)
        tstart = (period - 1).astype(float)
        columns = [np.ones_like(tstart), tstart]
        if self.time_effects == "quad":
            columns.append(tstart ** 2)
        return np.column_stack(columns)

    def fit(self, data):
        subject, period, outcome = expand_periods(
            data[self.time_column].to_numpy(dtype=float),
            data[self.event_column].to_numpy(dtype=float),
        )
        X = self.designs[0].matrix(data)[subject]
        exog = np.column_stack([self.time_design(period), X])
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            return sm.GLM(outcome, exog, family=sm.families.Binomial()).fit()

    def coefficients(self, fit):
        return np.asarray(fit.params, dtype=float)

    def draw(self, fit, data, rng):
        params = draw_normal(fit.params, fit.cov_params(), rng)
        n_time = len(self.time_names)
        return DtsamParams(time_coef=params[:n_time], beta=params[n_time:])

    def acceptance_weight(self, frame, params):
        time = frame[self.time_column].to_numpy(dtype=int)
        event = frame[self.event_column].to_numpy(dtype=float)
        periods = np.arange(1, max(int(time.max()), 1) + 1)
        baseline = self.time_design(periods) @ params.time_coef
        eta = baseline[None, :] + (self.designs[0].matrix(frame) @ params.beta)[:, None]

        # survive every period before the last, then event or not in the last
        before = periods[None, :] < time[:, None]
        log_survival = np.where(before, log_expit(-eta), 0.0).sum(axis=1)
        last = eta[np.arange(len(time)), time - 1]
        hazard = expit(last)
        final = np.where(event == 1, hazard, 1.0 - hazard)
        return np.exp(log_survival) * final
