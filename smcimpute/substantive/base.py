"""Substantive (analysis) models and their likelihood contributions.

A substantive model is fitted to the current completed data, a parameter
vector is drawn from its approximate posterior, and the draw is used to weight
candidate covariate values subject by subject. Acceptance weights are scaled
so they never exceed one, which lets the rejection sampler use them directly
as acceptance probabilities.
"""

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Mapping, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from smcimpute.design import DesignBuilder, ParsedFormula, parse_formula, referenced_columns
from smcimpute.errors import InvalidInput


class SubstantiveModelType(enum.Enum):
    LM = "lm"
    LOGISTIC = "logistic"
    POISSON = "poisson"
    COXPH = "coxph"
    COMPET = "compet"
    FLEXSURV = "flexsurv"
    DTSAM = "dtsam"
    CASECOHORT = "casecohort"
    NESTEDCC = "nestedcc"

    @classmethod
    def parse(cls, tag) -> "SubstantiveModelType":
        if isinstance(tag, cls):
            return tag
        try:
            return cls(str(tag).strip().lower())
        except ValueError:
            known = ", ".join(repr(t.value) for t in cls)
            raise InvalidInput(
                f"Unknown substantive model type {tag!r}; expected one of {known}"
            ) from None


@dataclass(frozen=True)
class SubstantiveModelSpec:
    """Immutable description of the analysis model."""
    smtype: SubstantiveModelType
    formulas: Tuple[str, ...]
    options: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def create(cls, smtype, smformula: Union[str, Sequence[str]], **options):
        if isinstance(smformula, str):
            formulas = (smformula,)
        else:
            formulas = tuple(smformula)
        if not formulas:
            raise InvalidInput("At least one substantive model formula is required")
        return cls(SubstantiveModelType.parse(smtype), formulas, dict(options))

    def info(self) -> Dict[str, Any]:
        smformula = self.formulas[0] if len(self.formulas) == 1 else list(self.formulas)
        return {"smtype": self.smtype.value, "smformula": smformula}


class SubstantiveModel(ABC):
    """Fit, posterior draw and per-subject likelihood weight of one model.

    Subclasses declare whether their formulas are survival formulas, which
    options they accept, and implement :meth:`fit`, :meth:`draw` and
    :meth:`acceptance_weight`. ``prepare`` must be called with a fully
    imputed frame before the first fit.
    """

    smtype: ClassVar[SubstantiveModelType]
    survival: ClassVar[bool] = False
    intercept: ClassVar[bool] = True
    multiple_formulas: ClassVar[bool] = False
    option_defaults: ClassVar[Dict[str, Any]] = {}

    def __init__(self, spec: SubstantiveModelSpec):
        self.spec = spec
        if len(spec.formulas) > 1 and not self.multiple_formulas:
            raise InvalidInput(
                f"Substantive model '{spec.smtype.value}' takes a single formula"
            )
        self.formulas: List[ParsedFormula] = [parse_formula(f) for f in spec.formulas]
        for f in self.formulas:
            if f.is_survival != self.survival:
                expected = "Surv(time, event) ~ ..." if self.survival else "outcome ~ ..."
                raise InvalidInput(
                    f"Substantive model '{spec.smtype.value}' needs a formula of the "
                    f"form {expected}, got {f.formula!r}"
                )
        unknown = sorted(set(spec.options) - set(self.option_defaults))
        if unknown:
            raise InvalidInput(
                f"Unknown option(s) for '{spec.smtype.value}': {', '.join(unknown)}"
            )
        self.options = {**self.option_defaults, **spec.options}
        self.designs: List[DesignBuilder] = []

    @property
    def outcome_columns(self) -> List[str]:
        columns = []
        for f in self.formulas:
            for c in f.outcome_columns:
                if c not in columns:
                    columns.append(c)
        return columns + [c for c in self.auxiliary_columns if c not in columns]

    @property
    def auxiliary_columns(self) -> List[str]:
        """Design columns (strata, weights) that must be fully observed."""
        return []

    def covariate_columns(self, columns: Sequence[str]) -> List[str]:
        referenced = set()
        for f in self.formulas:
            referenced.update(referenced_columns(f.rhs, columns))
        excluded = set(self.outcome_columns)
        return [c for c in columns if c in referenced and c not in excluded]

    def validate(self, data: pd.DataFrame) -> None:
        """Eager checks on the outcome; raises :class:`InvalidInput`."""
        for column in self.outcome_columns:
            if column not in data.columns:
                raise InvalidInput(f"Column '{column}' of the substantive model is not in the data")
            if data[column].isna().any():
                raise InvalidInput(f"Column '{column}' must not contain missing values")
        self._validate_outcome(data)

    def _validate_outcome(self, data: pd.DataFrame) -> None:
        pass

    def prepare(self, data: pd.DataFrame) -> "SubstantiveModel":
        self.designs = [DesignBuilder(f.rhs, data, intercept=self.intercept) for f in self.formulas]
        if not self.intercept and any(d.n_columns == 0 for d in self.designs):
            raise InvalidInput(
                f"Substantive model '{self.spec.smtype.value}' needs at least one covariate"
            )
        return self

    @property
    def coef_names(self) -> List[str]:
        return list(self.designs[0].column_names)

    def check_imputed_covariates(self, continuous: Sequence[str]) -> None:
        """Reject continuous imputed covariates whose acceptance weight is unbounded."""
        pass

    def covariate_model_rows(self, data: pd.DataFrame) -> np.ndarray:
        """Rows the covariate models are fitted to."""
        return np.ones(len(data), dtype=bool)

    @abstractmethod
    def fit(self, data: pd.DataFrame):
        pass

    @abstractmethod
    def coefficients(self, fit) -> np.ndarray:
        pass

    @abstractmethod
    def draw(self, fit, data: pd.DataFrame, rng: np.random.Generator):
        """Posterior draw of the parameters, plus anything derived from the
        current data that the weights need (e.g. a baseline hazard)."""
        pass

    @abstractmethod
    def acceptance_weight(self, frame: pd.DataFrame, params) -> np.ndarray:
        """Likelihood contribution of each row of ``frame``, scaled into [0, 1]."""
        pass

    def likelihood(self, frame: pd.DataFrame, params) -> np.ndarray:
        """Unnormalised likelihood used to weight the levels of discrete covariates."""
        return self.acceptance_weight(frame, params)

    @property
    def imputes_times(self) -> bool:
        return False

    def impute_times(self, frame: pd.DataFrame, params,
                     rng: np.random.Generator) -> Tuple[np.ndarray, np.ndarray]:
        """Draw event times for the censored rows in ``frame``.

        ``frame`` holds the censored subjects with their original censoring
        times. Returns the new times and event indicators.
        """
        raise InvalidInput(
            f"Imputation of censored times is not available for '{self.spec.smtype.value}'"
        )


def require_binary(data: pd.DataFrame, column: str) -> None:
    values = data[column].to_numpy(dtype=float)
    if not np.all(np.isin(values, (0.0, 1.0))):
        raise InvalidInput(f"Column '{column}' must be coded 0/1")


def require_positive_times(data: pd.DataFrame, column: str) -> None:
    values = data[column].to_numpy(dtype=float)
    if not np.all(np.isfinite(values)) or np.any(values <= 0):
        raise InvalidInput(f"Times in '{column}' must be finite and positive")
