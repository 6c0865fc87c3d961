"""Per-column imputation specifications and their validation."""

from dataclasses import dataclass, replace
from typing import List, Mapping, Optional, Sequence, Union

import pandas as pd

from smcimpute.covariates.families import CovariateMethod, resolve_family
from smcimpute.design import referenced_columns
from smcimpute.errors import InvalidInput


@dataclass(frozen=True)
class CovariateSpec:
    """How one column is imputed.

    Attributes:
        column: Column name in the data.
        method: Imputation method; ``NONE`` for columns left as they are.
        predictors: patsy right-hand side of the conditional model. ``None``
            means every other covariate of the substantive model.
    """
    column: str
    method: CovariateMethod = CovariateMethod.NONE
    predictors: Optional[str] = None

    @property
    def imputed(self) -> bool:
        return self.method is not CovariateMethod.NONE


def build_covariate_specs(
    data: pd.DataFrame,
    method: Union[Sequence, Mapping],
    predictors: Optional[Mapping[str, str]] = None,
) -> List[CovariateSpec]:
    """Turn user-facing method tags into one :class:`CovariateSpec` per column.

    Args:
        data: The incomplete data.
        method: Either a sequence of tags aligned with ``data.columns``
            (``""`` for columns that are not imputed) or a mapping from column
            name to tag.
        predictors: Optional mapping from imputed column to the RHS of its
            conditional model.
    """
    columns = list(data.columns)
    if isinstance(method, Mapping):
        unknown = [c for c in method if c not in columns]
        if unknown:
            raise InvalidInput(f"method refers to unknown columns: {unknown}")
        tags = [method.get(c, "") for c in columns]
    else:
        tags = list(method)
        if len(tags) != len(columns):
            raise InvalidInput(
                f"method has {len(tags)} entries but the data has {len(columns)} columns"
            )

    predictors = dict(predictors or {})
    unknown = [c for c in predictors if c not in columns]
    if unknown:
        raise InvalidInput(f"predictors refers to unknown columns: {unknown}")

    specs = [
        CovariateSpec(column=c, method=CovariateMethod.parse(t), predictors=predictors.get(c))
        for c, t in zip(columns, tags)
    ]
    for spec in specs:
        if spec.predictors is not None and not spec.imputed:
            raise InvalidInput(
                f"predictors given for '{spec.column}', which has no imputation method"
            )
    return specs


def resolve_covariate_specs(
    data: pd.DataFrame,
    specs: Sequence[CovariateSpec],
    sm_covariates: Sequence[str],
    outcome_columns: Sequence[str],
) -> List[CovariateSpec]:
    """Check specs against the data and fill in default predictors.

    Returns the imputed specs only, in declaration order.
    """
    by_column = {s.column: s for s in specs}
    for column in by_column:
        if column not in data.columns:
            raise InvalidInput(f"Unknown column '{column}' in covariate specification")

    for column in outcome_columns:
        spec = by_column.get(column)
        if spec is not None and spec.imputed:
            raise InvalidInput(f"Outcome column '{column}' cannot be imputed as a covariate")

    active = []
    needed = set(sm_covariates)
    for spec in specs:
        column = data[spec.column]
        has_missing = bool(column.isna().any())
        if not spec.imputed:
            continue
        if not has_missing:
            raise InvalidInput(
                f"Column '{spec.column}' is fully observed but has method "
                f"'{spec.method.value}'; use '' instead"
            )
        if column.notna().sum() == 0:
            raise InvalidInput(f"Column '{spec.column}' has no observed values")
        resolve_family(spec.method).validate(spec.column, column)

        if spec.predictors is None:
            others = [c for c in sm_covariates if c != spec.column]
            rhs = " + ".join(others) if others else "1"
            spec = replace(spec, predictors=rhs)
        elif spec.column in referenced_columns(spec.predictors, list(data.columns)):
            raise InvalidInput(
                f"The conditional model of '{spec.column}' cannot use '{spec.column}' as a predictor"
            )
        needed.update(referenced_columns(spec.predictors, list(data.columns)))
        active.append(spec)

    imputed = {s.column for s in active}
    for column in data.columns:
        if column in needed and column not in imputed and data[column].isna().any():
            raise InvalidInput(
                f"Column '{column}' has missing values but no imputation method"
            )
    return active
