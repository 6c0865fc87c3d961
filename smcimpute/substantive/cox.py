"""Cox proportional hazards substantive models.

Covers the plain Cox model, competing risks (one cause-specific Cox model per
cause) and case-cohort designs (weighted Cox fit on the cases plus the
subcohort). The baseline cumulative hazard is re-estimated with Breslow's
method at every drawn coefficient vector.
"""

import warnings
from dataclasses import dataclass
from typing import List, Optional

import numpy as np
import pandas as pd
from lifelines import CoxPHFitter

from smcimpute.covariates.families import draw_normal
from smcimpute.errors import InvalidInput
from smcimpute.substantive.base import (
    SubstantiveModel,
    SubstantiveModelType,
    require_binary,
    require_positive_times,
)

_TIME = "_smc_time"
_EVENT = "_smc_event"
_WEIGHT = "_smc_weight"


@dataclass
class CoxFit:
    beta: np.ndarray
    cov: np.ndarray


@dataclass
class CoxParams:
    beta: np.ndarray
    times: np.ndarray
    cumhaz: np.ndarray


def fit_cox(X: np.ndarray, time, event, weights=None) -> CoxFit:
    """Fit a Cox model to a design matrix without intercept."""
    df = pd.DataFrame(X, columns=[f"x{j}" for j in range(X.shape[1])])
    df[_TIME] = np.asarray(time, dtype=float)
    df[_EVENT] = np.asarray(event, dtype=float)
    kwargs = {}
    if weights is not None:
        df[_WEIGHT] = np.asarray(weights, dtype=float)
        kwargs = {"weights_col": _WEIGHT, "robust": True}
    cph = CoxPHFitter()
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        cph.fit(df, duration_col=_TIME, event_col=_EVENT, **kwargs)
    return CoxFit(
        beta=cph.params_.to_numpy(dtype=float),
        cov=cph.variance_matrix_.to_numpy(dtype=float),
    )


def breslow_cumulative_hazard(time, event, risk, weights=None):
    """Breslow estimate of the baseline cumulative hazard.

    Args:
        time: Observed times.
        event: Event indicators.
        risk: ``exp(linear predictor)`` of every subject.
        weights: Optional sampling weights.

    Returns:
        ``(times, cumhaz)``: the distinct event times, ascending, and the
        cumulative hazard just after each of them.
    """
    time = np.asarray(time, dtype=float)
    event = np.asarray(event, dtype=float)
    w = np.ones_like(time) if weights is None else np.asarray(weights, dtype=float)
    order = np.argsort(time, kind="mergesort")
    t = time[order]
    weighted_risk = (w * np.asarray(risk, dtype=float))[order]
    weighted_events = (w * event)[order]

    unique, first = np.unique(t, return_index=True)
    at_risk = np.cumsum(weighted_risk[::-1])[::-1][first]
    deaths = np.add.reduceat(weighted_events, first)
    keep = deaths > 0
    return unique[keep], np.cumsum(deaths[keep] / at_risk[keep])


def step_lookup(times: np.ndarray, values: np.ndarray, t) -> np.ndarray:
    """Evaluate a right-continuous step function that is zero before ``times[0]``."""
    idx = np.searchsorted(times, np.asarray(t, dtype=float), side="right") - 1
    out = np.zeros(idx.shape)
    hit = idx >= 0
    out[hit] = values[idx[hit]]
    return out


def cox_weight(cumhaz: np.ndarray, event: np.ndarray) -> np.ndarray:
    """``H exp(1 - H)`` for events and ``exp(-H)`` for censored rows; both <= 1."""
    return np.where(event == 1, cumhaz * np.exp(1.0 - cumhaz), np.exp(-cumhaz))


class CoxModel(SubstantiveModel):
    smtype = SubstantiveModelType.COXPH
    survival = True
    intercept = False

    @property
    def time_column(self) -> str:
        return self.formulas[0].time

    @property
    def event_column(self) -> str:
        return self.formulas[0].event

    @property
    def causes(self) -> List[Optional[int]]:
        return [f.cause for f in self.formulas]

    def _validate_outcome(self, data):
        require_positive_times(data, self.time_column)
        if self.formulas[0].cause is not None:
            raise InvalidInput(
                "A single cause-specific formula is not a Cox model; use 'compet' "
                "with one formula per cause"
            )
        require_binary(data, self.event_column)

    def _indicator(self, data, cause) -> np.ndarray:
        event = data[self.event_column].to_numpy(dtype=float)
        if cause is None:
            return event
        return (event == cause).astype(float)

    def _weights(self, data) -> Optional[np.ndarray]:
        return None

    def fit(self, data):
        time = data[self.time_column].to_numpy(dtype=float)
        weights = self._weights(data)
        return [
            fit_cox(design.matrix(data), time, self._indicator(data, cause), weights)
            for design, cause in zip(self.designs, self.causes)
        ]

    def coefficients(self, fit):
        return np.concatenate([f.beta for f in fit])

    @property
    def coef_names(self):
        if len(self.designs) == 1:
            return list(self.designs[0].column_names)
        return [
            f"cause{cause}:{name}"
            for design, cause in zip(self.designs, self.causes)
            for name in design.column_names
        ]

    def draw(self, fit, data, rng):
        time = data[self.time_column].to_numpy(dtype=float)
        weights = self._weights(data)
        params = []
        for cause_fit, design, cause in zip(fit, self.designs, self.causes):
            beta = draw_normal(cause_fit.beta, cause_fit.cov, rng)
            risk = np.exp(design.matrix(data) @ beta)
            times, cumhaz = breslow_cumulative_hazard(
                time, self._indicator(data, cause), risk, weights
            )
            params.append(CoxParams(beta, times, cumhaz))
        return params

    def acceptance_weight(self, frame, params):
        time = frame[self.time_column].to_numpy(dtype=float)
        weight = np.ones(len(frame))
        for p, design, cause in zip(params, self.designs, self.causes):
            cumhaz = step_lookup(p.times, p.cumhaz, time) * np.exp(design.matrix(frame) @ p.beta)
            weight *= cox_weight(cumhaz, self._indicator(frame, cause))
        return weight


class CompetingRisksModel(CoxModel):
    """Cause-specific Cox models, one per ``Surv(t, d == k)`` formula."""

    smtype = SubstantiveModelType.COMPET
    multiple_formulas = True

    def _validate_outcome(self, data):
        require_positive_times(data, self.time_column)
        if any(c is None for c in self.causes):
            raise InvalidInput(
                "Competing risks formulas must name their cause, as in Surv(t, d == 1) ~ x"
            )
        if len(set(self.causes)) != len(self.causes):
            raise InvalidInput("Each cause may appear in only one formula")
        for f in self.formulas:
            if f.time != self.time_column or f.event != self.event_column:
                raise InvalidInput(
                    "All competing risks formulas must share the same time and event columns"
                )
        event = data[self.event_column].to_numpy(dtype=float)
        allowed = np.array([0.0] + [float(c) for c in self.causes])
        if not np.all(np.isin(event, allowed)):
            raise InvalidInput(
                f"Column '{self.event_column}' must be 0 (censored) or one of the causes "
                f"{sorted(self.causes)}"
            )


class CaseCohortModel(CoxModel):
    """Cox model for case-cohort samples.

    Subcohort non-cases are weighted by the inverse sampling fraction; cases
    have weight one. Covariate models are fitted to the subcohort only, since
    only it is a random sample of the full cohort.
    """

    smtype = SubstantiveModelType.CASECOHORT
    option_defaults = {"sampfrac": None, "in_subcohort": None}

    @property
    def auxiliary_columns(self):
        return [self.options["in_subcohort"]]

    def validate(self, data):
        sampfrac = self.options["sampfrac"]
        if sampfrac is None or not 0 < float(sampfrac) <= 1:
            raise InvalidInput(f"sampfrac must lie in (0, 1], got {sampfrac!r}")
        if self.options["in_subcohort"] is None:
            raise InvalidInput("in_subcohort must name the subcohort indicator column")
        super().validate(data)

    def _validate_outcome(self, data):
        super()._validate_outcome(data)
        subcohort = self.options["in_subcohort"]
        require_binary(data, subcohort)
        outside = data[subcohort].to_numpy(dtype=float) == 0
        if np.any(data[self.event_column].to_numpy(dtype=float)[outside] == 0):
            raise InvalidInput(
                "Every row outside the subcohort must be a case (event == 1)"
            )

    def _weights(self, data):
        event = data[self.event_column].to_numpy(dtype=float)
        return np.where(event == 1, 1.0, 1.0 / float(self.options["sampfrac"]))

    def covariate_model_rows(self, data):
        return data[self.options["in_subcohort"]].to_numpy(dtype=float) == 1
