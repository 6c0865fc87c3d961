"""Formula parsing and design-matrix construction.

Right-hand sides are patsy formulas, so derived terms (``I(x**2)``,
interactions, categorical contrasts) are recomputed from the current imputed
columns every time a design is built. Left-hand sides are either a single
outcome column (``y ~ ...``) or a survival pair (``Surv(t, d) ~ ...``,
optionally ``Surv(t, d == 2) ~ ...`` to select one cause of failure).
"""

import re
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd
import patsy

from smcimpute.errors import InvalidInput

_SURV_RE = re.compile(
    r"^\s*Surv\(\s*([A-Za-z_][\w.]*)\s*,\s*([A-Za-z_][\w.]*)\s*"
    r"(?:==\s*(\d+)\s*)?\)\s*$"
)
_NAME_RE = re.compile(r"^\s*([A-Za-z_][\w.]*)\s*$")
_IDENT_RE = re.compile(r"[A-Za-z_][\w.]*")


@dataclass(frozen=True)
class ParsedFormula:
    """A two-sided formula split into outcome columns and a patsy RHS."""
    formula: str
    rhs: str
    outcome: Optional[str] = None
    time: Optional[str] = None
    event: Optional[str] = None
    cause: Optional[int] = None

    @property
    def is_survival(self) -> bool:
        return self.time is not None

    @property
    def outcome_columns(self) -> List[str]:
        if self.is_survival:
            return [self.time, self.event]
        return [self.outcome]


def parse_formula(formula: str) -> ParsedFormula:
    if not isinstance(formula, str) or formula.count("~") != 1:
        raise InvalidInput(f"Formula must contain exactly one '~': {formula!r}")
    lhs, rhs = (part.strip() for part in formula.split("~"))
    if not rhs:
        raise InvalidInput(f"Formula has an empty right-hand side: {formula!r}")

    surv = _SURV_RE.match(lhs)
    if surv is not None:
        time, event, cause = surv.groups()
        return ParsedFormula(
            formula=formula, rhs=rhs, time=time, event=event,
            cause=None if cause is None else int(cause),
        )
    name = _NAME_RE.match(lhs)
    if name is None:
        raise InvalidInput(
            f"Cannot parse the left-hand side {lhs!r}; expected a column name "
            "or Surv(time, event)"
        )
    return ParsedFormula(formula=formula, rhs=rhs, outcome=name.group(1))


def referenced_columns(rhs: str, columns: Sequence[str]) -> List[str]:
    """Data columns mentioned in a formula RHS, in data-frame order."""
    tokens = set(_IDENT_RE.findall(rhs))
    return [c for c in columns if c in tokens]


class DesignBuilder:
    """Rebuilds the design matrix of a fixed RHS for arbitrary rows.

    The patsy ``DesignInfo`` is captured once from a fully observed frame
    (categorical levels come from the column dtype), so the same columns are
    produced for any subset of rows, including single rows.
    """

    def __init__(self, rhs: str, data: pd.DataFrame, intercept: bool = True):
        self.rhs = rhs
        self.intercept = intercept
        try:
            self.design_info = patsy.dmatrix(
                rhs, data, NA_action="raise", return_type="matrix"
            ).design_info
        except patsy.PatsyError as e:
            raise InvalidInput(f"Cannot build design for '{rhs}': {e}") from e
        order = _formula_column_order(rhs, self.design_info)
        names = [self.design_info.column_names[i] for i in order]
        keep = [intercept or name != "Intercept" for name in names]
        self._columns = np.array([i for i, k in zip(order, keep) if k], dtype=int)
        self.column_names = [n for n, k in zip(names, keep) if k]

    @property
    def n_columns(self) -> int:
        return len(self.column_names)

    def matrix(self, frame: pd.DataFrame) -> np.ndarray:
        (dm,) = patsy.build_design_matrices(
            [self.design_info], frame, NA_action="raise"
        )
        return np.asarray(dm, dtype=float)[:, self._columns]


def _formula_column_order(rhs: str, design_info) -> List[int]:
    """Column indices of ``design_info`` with terms in the order written.

    patsy groups terms by their numeric factors, which puts categorical
    terms first; a 0/1 column and its two-level categorical must land in the
    same position.
    """
    slices = dict(design_info.term_slices)
    order = []
    for term in patsy.ModelDesc.from_formula(rhs).rhs_termlist:
        if term in slices:
            s = slices.pop(term)
            order.extend(range(s.start, s.stop))
    for s in slices.values():
        order.extend(range(s.start, s.stop))
    return order
