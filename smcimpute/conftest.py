"""Synthetic datasets shared by the test suite."""

import numpy as np
import pandas as pd
import pytest
from scipy.special import expit


def _make_missing(values, rng, prob):
    values = np.asarray(values, dtype=float).copy()
    values[rng.uniform(size=len(values)) < prob] = np.nan
    return values


@pytest.fixture
def rng():
    return np.random.default_rng(20240611)


@pytest.fixture
def linear_data():
    """y = x + z + e with 30% of x missing."""
    rng = np.random.default_rng(1)
    n = 200
    z = rng.normal(size=n)
    x = z + rng.normal(size=n)
    y = x + z + rng.normal(size=n)
    return pd.DataFrame({"y": y, "x": _make_missing(x, rng, 0.3), "z": z})


@pytest.fixture
def logistic_data():
    """Binary y with logit(p) = x + z and 30% of x missing."""
    rng = np.random.default_rng(2)
    n = 1000
    z = rng.normal(size=n)
    x = z + rng.normal(size=n)
    y = (rng.uniform(size=n) < expit(x + z)).astype(float)
    return pd.DataFrame({"y": y, "x": _make_missing(x, rng, 0.3), "z": z})


@pytest.fixture
def survival_data():
    """Exponential event times with hazard exp(x + z), administratively censored at 10."""
    rng = np.random.default_rng(3)
    n = 400
    z = rng.normal(size=n)
    x = z + rng.normal(size=n)
    t = -np.log(rng.uniform(size=n)) / np.exp(x + z)
    d = (t < 10).astype(float)
    t[d == 0] = 10.0
    return pd.DataFrame({"t": t, "d": d, "x": _make_missing(x, rng, 0.3), "z": z})


@pytest.fixture
def dtsam_data():
    """Discrete event times in periods 1..5 with a binary x (30% missing)."""
    rng = np.random.default_rng(4)
    n = 500
    z = rng.normal(size=n)
    x = (rng.uniform(size=n) < expit(z)).astype(float)
    hazard = expit(-1.5 + 0.5 * x + 0.5 * z)
    t = np.full(n, 5.0)
    d = np.zeros(n)
    for period in range(1, 6):
        event = (d == 0) & (rng.uniform(size=n) < hazard)
        t[event] = period
        d[event] = 1.0
    return pd.DataFrame({"t": t, "d": d, "x": _make_missing(x, rng, 0.3), "z": z})
