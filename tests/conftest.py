"""
Shared pytest fixtures for jahmm tests.
"""
import pytest
import numpy as np


@pytest.fixture
def sticky_transmat():
    """Symmetric 2-state transition matrix favoring self-transitions."""
    return np.array([[0.9, 0.1], [0.1, 0.9]])


@pytest.fixture
def uniform_init():
    return np.array([0.5, 0.5])


@pytest.fixture
def random_emissions():
    """Strictly positive 2-state emission probabilities for 20 positions."""
    rng = np.random.default_rng(42)
    return rng.uniform(0.05, 1.0, size=(20, 2))


@pytest.fixture
def three_state_model():
    """3-state transition matrix, initial distribution and emissions (n=6)."""
    Q = np.array([
        [0.8, 0.15, 0.05],
        [0.1, 0.7, 0.2],
        [0.25, 0.25, 0.5],
    ])
    init = np.array([0.2, 0.5, 0.3])
    rng = np.random.default_rng(7)
    prob = rng.uniform(0.01, 1.0, size=(6, 3))
    return Q, init, prob


@pytest.fixture
def zinm_params():
    """
    Emission parameters for 2 states and 2 channels (control + ChIP).

    State 0: background (mass on the shape category).
    State 1: enriched (mass on the ChIP channel).
    Both states share p_1 / p_0 = 0.5.
    """
    a = 1.0
    pi = 0.5
    p = np.array([
        [0.5, 0.25, 0.25],
        [0.2, 0.10, 0.70],
    ])
    return a, pi, p


@pytest.fixture
def alternating_counts():
    """Five positions alternating between all-zero and high-count rows."""
    return np.array([
        [0, 0],
        [5, 20],
        [0, 0],
        [5, 20],
        [0, 0],
    ], dtype=np.int64)


@pytest.fixture
def counts_with_duplicates():
    """Counts with repeated rows, an all-zero row and a missing row."""
    return np.array([
        [0, 0],
        [1, 2],
        [0, 0],
        [1, 2],
        [3, 4],
        [-1, 2],
        [3, 4],
    ], dtype=np.int64)


def _reference_forward_backward(Q, init, e):
    """Textbook forward-backward without scaling (for small test cases)."""
    n, m = e.shape
    alpha = np.zeros((n, m))
    beta = np.ones((n, m))
    alpha[0] = init * e[0]
    for k in range(1, n):
        alpha[k] = (alpha[k - 1] @ Q) * e[k]
    for k in range(n - 2, -1, -1):
        beta[k] = Q @ (e[k + 1] * beta[k + 1])
    likelihood = alpha[-1].sum()
    gamma = alpha * beta / likelihood
    xi = np.zeros((m, m))
    for k in range(n - 1):
        xi += alpha[k][:, None] * Q * (e[k + 1] * beta[k + 1])[None, :] / likelihood
    return np.log(likelihood), gamma, xi


@pytest.fixture
def reference_fb():
    """Unscaled forward-backward returning (loglik, posteriors, transition counts)."""
    return _reference_forward_backward
