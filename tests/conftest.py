"""Shared fixtures for sparklet tests."""

import numpy as np
import pandas as pd
import pytest

from sparklet.core.session import Session


@pytest.fixture
def session():
    """Small thread-backed session, closed after the test."""
    session = Session({
        "app_name": "sparklet_tests",
        "execution": {"max_workers": 4, "default_parallelism": 2},
        "logging": {"level": "WARNING"},
    })
    yield session
    session.close()


@pytest.fixture
def sex_data(session):
    """Three-row categorical example."""
    return session.create_dataset({
        "sex": ["male", "female", "male"],
        "age": [22.0, 38.0, 26.0],
        "label": [0.0, 1.0, 0.0],
    }, num_partitions=2)


@pytest.fixture
def binary_frame():
    """Linearly separable binary classification data."""
    rng = np.random.default_rng(7)
    n = 120
    x1 = rng.normal(size=n)
    x2 = rng.normal(size=n)
    label = (x1 + 0.5 * x2 > 0).astype(float)
    return pd.DataFrame({"x1": x1, "x2": x2, "label": label})


@pytest.fixture
def regression_frame():
    """Noisy linear relationship y = 3 * x1 - 2 * x2 + 1."""
    rng = np.random.default_rng(11)
    n = 100
    x1 = rng.normal(size=n)
    x2 = rng.normal(size=n)
    label = 3.0 * x1 - 2.0 * x2 + 1.0 + rng.normal(scale=0.1, size=n)
    return pd.DataFrame({"x1": x1, "x2": x2, "label": label})
