from __future__ import annotations

import numpy as np
import pytest
from loguru import logger

from tsboss.data_utils import make_synthetic_dataset


@pytest.fixture(autouse=True, scope="session")
def _silence_loguru():
    """Drop the default stderr sink; tests that inspect logs add their own."""
    logger.remove()
    yield


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def univariate_train():
    # 20 series of length 50, two classes
    return make_synthetic_dataset(n_per_class=10, length=50, seed=1)


@pytest.fixture
def univariate_test():
    return make_synthetic_dataset(n_per_class=5, length=50, seed=2)


@pytest.fixture
def multivariate_train():
    return make_synthetic_dataset(n_per_class=6, length=40, n_channels=3, seed=3, name="SyntheticMV")
