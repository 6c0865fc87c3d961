"""Vectorised rejection sampling with a per-subject attempt limit.

Candidates are proposed for every pending subject at once; a subject keeps its
first accepted candidate and drops out of the pending set. Subjects still
pending after ``max_draws`` rounds make the whole draw fail.
"""

from dataclasses import dataclass
from typing import Callable, Hashable, Optional, Sequence

import numpy as np

from smcimpute.errors import InvalidInput, RejectionLimitExceeded

Proposal = Callable[[np.ndarray, np.random.Generator], np.ndarray]
Weight = Callable[[np.ndarray, np.ndarray], np.ndarray]


@dataclass
class DrawContext:
    """Where a draw happens; only used to make failures informative."""
    covariate: Optional[str] = None
    iteration: Optional[int] = None
    imputation: Optional[int] = None
    subjects: Optional[Sequence[Hashable]] = None


@dataclass
class RejectionResult:
    values: np.ndarray
    attempts: np.ndarray

    @property
    def total_attempts(self) -> int:
        return int(self.attempts.sum())


class RejectionSampler:
    """Draw ``n`` values, each from the proposal reweighted by ``weight``.

    Args:
        max_draws: Largest number of proposals per subject.
        weight_upper_bound: Bound ``M`` on the weights; a candidate with
            weight ``w`` is accepted with probability ``w / M``.
    """

    def __init__(self, max_draws: int = 1000, weight_upper_bound: float = 1.0):
        if isinstance(max_draws, bool) or not isinstance(max_draws, (int, np.integer)) or max_draws < 1:
            raise InvalidInput(f"rjlimit must be a positive integer, got {max_draws!r}")
        if not weight_upper_bound > 0:
            raise InvalidInput("weight_upper_bound must be positive")
        self.max_draws = int(max_draws)
        self.weight_upper_bound = float(weight_upper_bound)

    def sample(
        self,
        propose: Proposal,
        weight: Weight,
        n: int,
        rng: np.random.Generator,
        context: Optional[DrawContext] = None,
    ) -> RejectionResult:
        """Run the sampler.

        Args:
            propose: ``propose(pending, rng)`` returns one candidate for each
                subject index in ``pending``.
            weight: ``weight(candidates, pending)`` returns the weights of
                those candidates, in ``[0, weight_upper_bound]``.
            n: Number of subjects.
            rng: Random stream.
            context: Location of the draw, reported on failure.

        Raises:
            RejectionLimitExceeded: Some subject accepted no candidate.
        """
        values = np.full(n, np.nan)
        attempts = np.zeros(n, dtype=int)
        pending = np.arange(n)
        for _ in range(self.max_draws):
            if pending.size == 0:
                break
            candidates = np.asarray(propose(pending, rng), dtype=float)
            w = np.asarray(weight(candidates, pending), dtype=float) / self.weight_upper_bound
            attempts[pending] += 1
            accepted = rng.uniform(size=pending.size) < w
            values[pending[accepted]] = candidates[accepted]
            pending = pending[~accepted]

        if pending.size:
            context = context or DrawContext()
            if context.subjects is not None:
                subjects = [context.subjects[i] for i in pending]
            else:
                subjects = pending.tolist()
            raise RejectionLimitExceeded(
                covariate=context.covariate,
                iteration=context.iteration,
                subjects=subjects,
                attempts=self.max_draws,
                imputation=context.imputation,
            )
        return RejectionResult(values=values, attempts=attempts)
