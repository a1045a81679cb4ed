"""
Emission probabilities of the zero-inflated negative multinomial (ZINM).

Parametrization, for state i and a count row y = (y_1, ..., y_r):

    p_0(i)^a * p_1(i)^y_1 * ... * p_r(i)^y_r

and, when all the counts are 0,

    pi * p_0(i)^a + (1 - pi)

Terms that do not depend on the state are dropped unless requested, since
emissions only matter up to a multiplicative constant in the
forward-backward algorithm. Counts are discrete, so identical rows share
one computation through a cache index built once per series.

The two-component mixture variant blends two negative multinomials with
weight theta:

    theta * p_0(i)^a * prod_j p_j(i)^y_j + (1 - theta) * q_0(i)^a * prod_j q_j(i)^y_j
"""

import warnings
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

import numpy as np
from scipy.special import expit, gammaln, xlogy

from jahmm.core.observations import as_counts, invalid_rows


class OutputMode(Enum):
    """Space in which emission probabilities are returned."""
    LINEAR = 'linear'       # always exponentiate
    LOG = 'log'             # always log space
    ADAPTIVE = 'adaptive'   # linear, except rows where every state underflows
    RATIO = 'ratio'         # mixture responsibility of the first component


@dataclass(frozen=True)
class EmissionConfig:
    """
    Options of an emission computation.

    Attributes:
        output_mode: see OutputMode
        suppress_warnings: do not warn when parameters are renormalized
        include_normalizing_constant: add the (negative) multinomial
            coefficient, which is the same for every state
    """
    output_mode: OutputMode = OutputMode.ADAPTIVE
    suppress_warnings: bool = False
    include_normalizing_constant: bool = False


def index_series(y) -> Tuple[np.ndarray, int]:
    """
    Index a series by its distinct rows.

    Args:
        y: (n, r) count matrix

    Returns:
        index: (n,) array where index[k] is the earliest position with
            the same row as k (index[k] == k on first occurrence)
        i0: position of the first all-zero row, -1 if there is none
    """
    y = as_counts(y)
    n = y.shape[0]
    if n == 0:
        return np.empty(0, dtype=np.int64), -1

    # return_index gives first occurrences (stable sort).
    _, first, inverse = np.unique(y, axis=0, return_index=True, return_inverse=True)
    index = first[inverse.reshape(-1)].astype(np.int64)

    zeros = np.flatnonzero(np.all(y == 0, axis=1))
    i0 = int(zeros[0]) if len(zeros) > 0 else -1
    return index, i0


def _normalize_categories(p, name: str, r: int) -> Tuple[np.ndarray, bool]:
    """Return row-normalized category probabilities and whether any row moved."""
    p = np.asarray(p, dtype=np.float64)
    if p.ndim == 1:
        p = p.reshape(1, -1)
    if p.ndim != 2 or p.shape[1] != r + 1:
        raise ValueError(f"'{name}' must have shape (m, {r + 1}), got {p.shape}")
    if np.any(p < 0):
        raise ValueError(f"'{name}' negative")
    sums = p.sum(axis=1)
    if np.any(~(sums > 0)):
        raise ValueError(f"'{name}' has a row without probability mass")
    renormalized = bool(np.any(np.abs(sums - 1.0) > np.finfo(np.float64).eps))
    return p / sums[:, np.newaxis], renormalized


def _check_index(index, y: np.ndarray) -> np.ndarray:
    if index is None:
        index, _ = index_series(y)
        return index
    index = np.asarray(index, dtype=np.int64)
    n = y.shape[0]
    if index.shape != (n,):
        raise ValueError(f"'index' has shape {index.shape}, expected {(n,)}")
    # Every entry must point back to a first occurrence at or before it.
    if np.any(index < 0) or np.any(index > np.arange(n)) or np.any(index[index] != index):
        raise ValueError("'index' does not map positions to first occurrences")
    return index


def _output_buffer(out: Optional[np.ndarray], n: int, m: int) -> np.ndarray:
    if out is None:
        return np.empty((n, m), dtype=np.float64)
    if out.shape != (n, m) or out.dtype != np.float64:
        raise ValueError(f"'out' must be a float64 array of shape {(n, m)}")
    return out


def _normalizing_constant(y: np.ndarray, a: float) -> np.ndarray:
    """log of Gamma(a + sum y) / (Gamma(a) * prod y_j!) for each row."""
    return gammaln(a + y.sum(axis=1)) - gammaln(a) - gammaln(y + 1.0).sum(axis=1)


def _log_multinomial(y: np.ndarray, a: float, p: np.ndarray) -> np.ndarray:
    """(rows, m) matrix of a*log p_0 + sum_j y_j log p_j, with 0*log(0) = 0."""
    with np.errstate(divide='ignore'):
        head = a * np.log(p[:, 0])
    body = xlogy(y[:, np.newaxis, :], p[np.newaxis, :, 1:]).sum(axis=2)
    return head[np.newaxis, :] + body


def _to_output_space(logpem: np.ndarray, mode: OutputMode) -> np.ndarray:
    if mode is OutputMode.LOG:
        return logpem
    with np.errstate(under='ignore', over='ignore', invalid='ignore'):
        lin = np.exp(logpem)
    if mode is OutputMode.LINEAR:
        return lin
    # Adaptive: rows where everything underflows stay in log space.
    keep = lin.sum(axis=1) > 0
    logpem[keep] = lin[keep]
    return logpem


def _scatter(values: np.ndarray, first: np.ndarray, index: np.ndarray,
             out: np.ndarray) -> np.ndarray:
    """Copy the rows computed at first occurrences to every position."""
    out[:] = values[np.searchsorted(first, index)]
    return out


def zinm_prob(y, a: float, pi: float, p, index: Optional[np.ndarray] = None,
              config: EmissionConfig = EmissionConfig(),
              out: Optional[np.ndarray] = None) -> np.ndarray:
    """
    ZINM emission probabilities of a series.

    Args:
        y: (n, r) counts; rows with a negative value are missing
        a: shape parameter
        pi: zero-inflation weight
        p: (m, r+1) category probabilities per state, renormalized if
            they do not sum to 1
        index: cache index from index_series (built if None)
        config: output space and verbosity
        out: optional (n, m) float64 output buffer

    Returns:
        (n, m) emission probabilities. Missing rows are all NaN.
    """
    if config.output_mode is OutputMode.RATIO:
        raise ValueError("RATIO output is only defined for the mixture model")
    if not a > 0:
        raise ValueError(f"Shape parameter must be positive, got {a}")
    if not 0.0 <= pi <= 1.0:
        raise ValueError(f"Zero-inflation weight must be in [0, 1], got {pi}")

    y = as_counts(y)
    n, r = y.shape
    p, renormalized = _normalize_categories(p, 'p', r)
    if renormalized and not config.suppress_warnings:
        warnings.warn("renormalizing 'p'", RuntimeWarning, stacklevel=2)
    m = p.shape[0]

    index = _check_index(index, y)
    out = _output_buffer(out, n, m)
    if n == 0:
        return out

    first = np.flatnonzero(index == np.arange(n))
    yu = y[first]

    invalid = invalid_rows(yu)
    zero = ~invalid & np.all(yu == 0, axis=1)
    regular = ~invalid & ~zero

    logpem = np.full((len(first), m), np.nan)
    logpem[regular] = _log_multinomial(yu[regular], a, p)
    with np.errstate(divide='ignore'):
        logpem[zero] = np.log(pi * p[:, 0] ** a + (1.0 - pi))

    if config.include_normalizing_constant:
        valid = ~invalid
        logpem[valid] += _normalizing_constant(yu[valid], a)[:, np.newaxis]

    values = _to_output_space(logpem, config.output_mode)
    return _scatter(values, first, index, out)


def mixture_prob(y, theta: float, a: float, p, q,
                 index: Optional[np.ndarray] = None,
                 config: EmissionConfig = EmissionConfig(),
                 out: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Emission probabilities of a two-component negative multinomial mixture.

    Args:
        y: (n, r) counts; rows with a negative value are missing
        theta: weight of the 'p' component
        a: shape parameter
        p, q: (m, r+1) category probabilities of the two components
        index: cache index from index_series (built if None)
        config: LINEAR gives the mixture probability, LOG its logarithm,
            RATIO the responsibility of the 'p' component (independent of
            the overall scale), ADAPTIVE is linear unless every state
            underflows
        out: optional (n, m) float64 output buffer

    Returns:
        (n, m) emissions. Missing rows are all NaN.
    """
    if not a > 0:
        raise ValueError(f"Shape parameter must be positive, got {a}")
    if not 0.0 <= theta <= 1.0:
        raise ValueError(f"Mixture weight must be in [0, 1], got {theta}")

    y = as_counts(y)
    n, r = y.shape
    p, p_renormalized = _normalize_categories(p, 'p', r)
    q, q_renormalized = _normalize_categories(q, 'q', r)
    if p.shape != q.shape:
        raise ValueError(f"'p' and 'q' differ in shape: {p.shape} vs {q.shape}")
    if (p_renormalized or q_renormalized) and not config.suppress_warnings:
        warnings.warn("renormalizing 'p' and/or 'q'", RuntimeWarning, stacklevel=2)
    m = p.shape[0]

    index = _check_index(index, y)
    out = _output_buffer(out, n, m)
    if n == 0:
        return out

    first = np.flatnonzero(index == np.arange(n))
    yu = y[first]
    valid = ~invalid_rows(yu)
    yv = yu[valid]

    with np.errstate(divide='ignore'):
        log_theta = np.log(theta)
        log_one_minus_theta = np.log1p(-theta)
    p_term = log_theta + _log_multinomial(yv, a, p)
    q_term = log_one_minus_theta + _log_multinomial(yv, a, q)
    if config.include_normalizing_constant:
        c_term = _normalizing_constant(yv, a)[:, np.newaxis]
        p_term += c_term
        q_term += c_term

    values = np.full((len(first), m), np.nan)
    mode = config.output_mode
    with np.errstate(under='ignore', over='ignore', invalid='ignore'):
        if mode is OutputMode.LINEAR:
            values[valid] = np.exp(p_term) + np.exp(q_term)
        elif mode is OutputMode.RATIO:
            # 1 / (1 + exp(q - p)), always in [0, 1].
            values[valid] = expit(p_term - q_term)
        else:
            values[valid] = np.logaddexp(p_term, q_term)
            values = _to_output_space(values, mode)

    return _scatter(values, first, index, out)
