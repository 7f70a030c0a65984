"""
Pytest configuration and shared fixtures for testing.
"""
import logging

import numpy as np
import pytest

from cdcat.core.cat.item_bank import ItemBank
from cdcat.core.cat.patterns import attribute_patterns

Q_K2 = [
    [1, 0],
    [0, 1],
    [1, 1],
    [1, 0],
]

Q_K3 = [
    [1, 0, 0],
    [0, 1, 0],
    [0, 0, 1],
    [1, 1, 0],
    [1, 0, 1],
    [0, 1, 1],
    [1, 1, 1],
    [1, 0, 0],
    [0, 1, 0],
    [0, 0, 1],
]


def dina_lc_prob(q_matrix, guess: float = 0.1, slip: float = 0.1) -> np.ndarray:
    """J x L success probabilities of a DINA model with common guess/slip."""
    q = np.asarray(q_matrix)
    patterns = attribute_patterns(q.shape[1])
    eta = (q @ patterns.T) == q.sum(axis=1)[:, None]
    return np.where(eta, 1.0 - slip, guess)


def ideal_and_responses(q_matrix, pattern) -> np.ndarray:
    """Error-free conjunctive responses of one pattern to every item."""
    q = np.asarray(q_matrix)
    pattern = np.asarray(pattern)
    return ((q @ pattern) == q.sum(axis=1)).astype(float)


@pytest.fixture(autouse=True)
def reset_cdcat_logger():
    """Undo setup_logging() so caplog keeps working across tests."""
    yield
    cdcat_logger = logging.getLogger("cdcat")
    cdcat_logger.handlers.clear()
    cdcat_logger.propagate = True
    cdcat_logger.setLevel(logging.NOTSET)


@pytest.fixture
def q_k2() -> np.ndarray:
    return np.array(Q_K2)


@pytest.fixture
def q_k3() -> np.ndarray:
    return np.array(Q_K3)


@pytest.fixture
def bank_k2(q_k2) -> ItemBank:
    """Near-deterministic DINA bank: K=2, J=4."""
    return ItemBank(q_matrix=q_k2, lc_prob=dina_lc_prob(q_k2, guess=0.01, slip=0.01))


@pytest.fixture
def bank_k3(q_k3) -> ItemBank:
    """DINA bank: K=3, J=10."""
    return ItemBank(q_matrix=q_k3, lc_prob=dina_lc_prob(q_k3, guess=0.2, slip=0.1))


@pytest.fixture
def make_dina_lc():
    return dina_lc_prob


@pytest.fixture
def make_ideal_responses():
    return ideal_and_responses
