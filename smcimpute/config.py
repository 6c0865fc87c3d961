"""Run-control settings for multiple imputation, with YAML persistence."""

from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

import numpy as np
import yaml

from smcimpute.errors import InvalidInput

CONFIG_VERSION = "1.0"

BACKENDS = ("loky", "threading", "multiprocessing")


@dataclass
class ImputationConfig:
    """Settings shared by every smcfcs entry point.

    Attributes:
        m: Number of imputed datasets.
        numit: Number of Gibbs iterations per imputed dataset.
        rjlimit: Maximum rejection sampling attempts per subject.
        seed: Seed for the per-imputation random streams (``None`` draws
            fresh entropy).
        n_jobs: Number of workers the ``m`` imputations are split across.
        m_per_worker: Optional fixed number of imputations per worker.
        backend: joblib backend used when ``n_jobs > 1``.
        noisy: Log progress at INFO level and show a progress bar.
    """
    m: int = 5
    numit: int = 10
    rjlimit: int = 1000
    seed: Optional[int] = None
    n_jobs: int = 1
    m_per_worker: Optional[int] = None
    backend: str = "loky"
    noisy: bool = False

    def validate(self) -> "ImputationConfig":
        for name in ("m", "numit", "rjlimit", "n_jobs"):
            value = getattr(self, name)
            if not _is_int(value) or value < 1:
                raise InvalidInput(f"{name} must be a positive integer, got {value!r}")
        if self.seed is not None and (not _is_int(self.seed) or self.seed < 0):
            raise InvalidInput(f"seed must be a non-negative integer, got {self.seed!r}")
        if self.m_per_worker is not None:
            if not _is_int(self.m_per_worker) or self.m_per_worker < 1:
                raise InvalidInput(
                    f"m_per_worker must be a positive integer, got {self.m_per_worker!r}"
                )
            if self.m_per_worker > self.m:
                raise InvalidInput("m_per_worker cannot exceed m")
        if self.n_jobs > self.m:
            raise InvalidInput(f"n_jobs ({self.n_jobs}) cannot exceed m ({self.m})")
        if self.backend not in BACKENDS:
            raise InvalidInput(
                f"Unknown backend {self.backend!r}; expected one of {BACKENDS}"
            )
        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ImputationConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(d) - known)
        if unknown:
            raise InvalidInput(f"Unknown configuration keys: {', '.join(unknown)}")
        return cls(**d).validate()

    def save(self, path: Union[str, Path]) -> None:
        """Write the configuration to a YAML file."""
        path = Path(path)
        state = {"version": CONFIG_VERSION, "config": self.to_dict()}

        def repr_int(dumper, data):
            return dumper.represent_int(int(data))

        yaml.add_representer(np.int32, repr_int)
        yaml.add_representer(np.int64, repr_int)

        with open(path, "w") as f:
            yaml.dump(state, f, default_flow_style=False)

    @classmethod
    def load(cls, path: Union[str, Path]) -> "ImputationConfig":
        """Read a configuration written by :meth:`save`."""
        path = Path(path)
        with open(path, "r") as f:
            state = yaml.safe_load(f) or {}

        version = state.get("version", CONFIG_VERSION)
        if version != CONFIG_VERSION:
            raise InvalidInput(f"Unsupported configuration version: {version}")
        return cls.from_dict(state.get("config", {}))


def _is_int(value) -> bool:
    return isinstance(value, (int, np.integer)) and not isinstance(value, bool)
