"""Conditional logistic regression for nested case-control samples."""

import warnings
from dataclasses import dataclass

import numpy as np
from statsmodels.discrete.conditional_models import ConditionalLogit

from smcimpute.covariates.families import draw_normal
from smcimpute.errors import InvalidInput
from smcimpute.substantive.base import (
    SubstantiveModel,
    SubstantiveModelType,
    require_binary,
    require_positive_times,
)
from smcimpute.substantive.cox import CoxParams, cox_weight, step_lookup


@dataclass
class ConditionalLogitFit:
    beta: np.ndarray
    cov: np.ndarray


class NestedCaseControlModel(SubstantiveModel):
    """Nested case-control analysis, ``Surv(t, case) ~ x`` stratified by set.

    The baseline cumulative hazard of the full cohort is estimated by
    weighting each sampled set up to the size of its risk set: the hazard
    increment at a set's case time is ``cases / ((nrisk / n_set) * sum exp(lp))``.
    """

    smtype = SubstantiveModelType.NESTEDCC
    survival = True
    intercept = False
    option_defaults = {"set_col": None, "nrisk_col": None}

    @property
    def time_column(self) -> str:
        return self.formulas[0].time

    @property
    def event_column(self) -> str:
        return self.formulas[0].event

    @property
    def auxiliary_columns(self):
        return [self.options["set_col"], self.options["nrisk_col"]]

    def validate(self, data):
        for key in ("set_col", "nrisk_col"):
            if self.options[key] is None:
                raise InvalidInput(f"{key} must name a column of the data")
        super().validate(data)

    def _validate_outcome(self, data):
        if self.formulas[0].cause is not None:
            raise InvalidInput("Nested case-control formulas take a 0/1 case indicator")
        require_positive_times(data, self.time_column)
        require_binary(data, self.event_column)
        sets = data.groupby(self.options["set_col"], sort=False)
        if (sets[self.event_column].sum() < 1).any():
            raise InvalidInput("Every matched set needs at least one case")
        nrisk = data[self.options["nrisk_col"]].to_numpy(dtype=float)
        size = sets[self.event_column].transform("size").to_numpy(dtype=float)
        if np.any(nrisk < size):
            raise InvalidInput(
                f"'{self.options['nrisk_col']}' must be at least the size of each matched set"
            )

    def fit(self, data):
        X = self.designs[0].matrix(data)
        model = ConditionalLogit(
            data[self.event_column].to_numpy(dtype=float),
            X,
            groups=data[self.options["set_col"]].to_numpy(),
        )
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            res = model.fit(disp=0)
        return ConditionalLogitFit(
            beta=np.asarray(res.params, dtype=float),
            cov=np.asarray(res.cov_params(), dtype=float),
        )

    def coefficients(self, fit):
        return fit.beta

    def draw(self, fit, data, rng):
        beta = draw_normal(fit.beta, fit.cov, rng)
        risk = np.exp(self.designs[0].matrix(data) @ beta)
        frame = data[[self.options["set_col"], self.options["nrisk_col"],
                      self.time_column, self.event_column]].copy()
        frame["_risk"] = risk
        frame["_case_time"] = np.where(
            frame[self.event_column] == 1, frame[self.time_column], np.nan
        )
        sets = frame.groupby(self.options["set_col"], sort=False).agg(
            risk=("_risk", "sum"),
            size=("_risk", "size"),
            nrisk=(self.options["nrisk_col"], "first"),
            cases=(self.event_column, "sum"),
            time=("_case_time", "max"),
        )
        increments = sets["cases"] / ((sets["nrisk"] / sets["size"]) * sets["risk"])
        by_time = increments.groupby(sets["time"]).sum().sort_index()
        return CoxParams(
            beta=beta,
            times=by_time.index.to_numpy(dtype=float),
            cumhaz=np.cumsum(by_time.to_numpy(dtype=float)),
        )

    def acceptance_weight(self, frame, params):
        time = frame[self.time_column].to_numpy(dtype=float)
        cumhaz = step_lookup(params.times, params.cumhaz, time) * np.exp(
            self.designs[0].matrix(frame) @ params.beta
        )
        return cox_weight(cumhaz, frame[self.event_column].to_numpy(dtype=float))
