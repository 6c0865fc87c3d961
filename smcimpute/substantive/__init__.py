from typing import Dict, Type

from smcimpute.substantive.base import (
    SubstantiveModel,
    SubstantiveModelSpec,
    SubstantiveModelType,
)
from smcimpute.substantive.cox import (
    CaseCohortModel,
    CompetingRisksModel,
    CoxModel,
    breslow_cumulative_hazard,
)
from smcimpute.substantive.dtsam import DiscreteTimeModel
from smcimpute.substantive.flexsurv import FlexsurvModel
from smcimpute.substantive.glm import LinearModel, LogisticModel, PoissonModel
from smcimpute.substantive.nestedcc import NestedCaseControlModel

_MODELS: Dict[SubstantiveModelType, Type[SubstantiveModel]] = {
    SubstantiveModelType.LM: LinearModel,
    SubstantiveModelType.LOGISTIC: LogisticModel,
    SubstantiveModelType.POISSON: PoissonModel,
    SubstantiveModelType.COXPH: CoxModel,
    SubstantiveModelType.COMPET: CompetingRisksModel,
    SubstantiveModelType.FLEXSURV: FlexsurvModel,
    SubstantiveModelType.DTSAM: DiscreteTimeModel,
    SubstantiveModelType.CASECOHORT: CaseCohortModel,
    SubstantiveModelType.NESTEDCC: NestedCaseControlModel,
}


def substantive_model_class(smtype) -> Type[SubstantiveModel]:
    return _MODELS[SubstantiveModelType.parse(smtype)]


def build_substantive_model(spec: SubstantiveModelSpec) -> SubstantiveModel:
    return substantive_model_class(spec.smtype)(spec)


__all__ = [
    "CaseCohortModel",
    "CompetingRisksModel",
    "CoxModel",
    "DiscreteTimeModel",
    "FlexsurvModel",
    "LinearModel",
    "LogisticModel",
    "NestedCaseControlModel",
    "PoissonModel",
    "SubstantiveModel",
    "SubstantiveModelSpec",
    "SubstantiveModelType",
    "breslow_cumulative_hazard",
    "build_substantive_model",
    "substantive_model_class",
]
