"""
jahmm HMM module

Provides:
1. Forward algorithm robust to missing values and underflow
2. Backward pass by Markovian smoothing (reverse kernel, no beta values)
3. Log-space Viterbi decoding
4. Block wrappers running the above on independent fragments of a series

Conventions:
    Q[i, j] is the probability of a transition from state i to state j.
    Emission, forward and posterior matrices are (n, m): one row per
    position, one column per state. Expected transition counts are (m, m)
    and indexed like Q.

The kernels are compiled with Numba; the Python wrappers check shapes and
allocate outputs.
"""

import warnings
from typing import Optional, Sequence, Tuple

import numpy as np
from numba import jit

from jahmm.core.errors import InvalidParameterError
from jahmm.core.observations import check_sizes


# =============================================================================
# Numba JIT-compiled kernels
# =============================================================================

@jit(nopython=True, cache=False)
def _forward_numba(Q, init, prob):
    """
    Forward pass with per-position normalization.

    A row of 'prob' is read in log space when its first entry is negative.
    A row with NaN, or a row that leaves no probability mass, is treated as
    missing: the propagated vector is kept and nothing is added to the
    log-likelihood.

    Overwrites 'prob' with the forward probabilities and returns the
    log-likelihood.
    """
    n, m = prob.shape
    tmp = np.empty(m)
    a = np.empty(m)
    loglik = 0.0

    for k in range(n):
        if k == 0:
            for j in range(m):
                tmp[j] = init[j]
        else:
            for j in range(m):
                s = 0.0
                for i in range(m):
                    s += a[i] * Q[i, j]
                tmp[j] = s

        na_found = False
        for j in range(m):
            if np.isnan(prob[k, j]):
                na_found = True
                break
        if na_found:
            for j in range(m):
                a[j] = tmp[j]
                prob[k, j] = tmp[j]
            continue

        c = 0.0
        offset = 0.0
        if prob[k, 0] < 0:
            # Log space: scale by the largest emission to avoid underflow.
            w = 0
            for j in range(1, m):
                if prob[k, j] > prob[k, w]:
                    w = j
            offset = prob[k, w]
            for j in range(m):
                a[j] = tmp[j] * np.exp(prob[k, j] - offset)
                c += a[j]
        else:
            for j in range(m):
                a[j] = tmp[j] * prob[k, j]
                c += a[j]

        if not c > 0:
            # All paths blocked.
            for j in range(m):
                a[j] = tmp[j]
                prob[k, j] = tmp[j]
        else:
            for j in range(m):
                a[j] /= c
                prob[k, j] = a[j]
            loglik += np.log(c) + offset

    return loglik


@jit(nopython=True, cache=False)
def _backward_numba(Q, alpha, phi, trans):
    """
    Backward smoothing from the forward probabilities.

    R[to, frm] = P(X_k = frm | X_k+1 = to, Y_1..k), which is proportional
    to alpha_k(frm) * Q(frm, to). Then
    P(X_k = frm | Y) = sum_to R[to, frm] * P(X_k+1 = to | Y).
    """
    n, m = alpha.shape
    R = np.empty((m, m))

    for i in range(m):
        for j in range(m):
            trans[i, j] = 0.0
    for k in range(n):
        for j in range(m):
            phi[k, j] = 0.0
    for j in range(m):
        phi[n - 1, j] = alpha[n - 1, j]

    for k in range(n - 2, -1, -1):
        for to in range(m):
            x = 0.0
            for frm in range(m):
                R[to, frm] = alpha[k, frm] * Q[frm, to]
                x += R[to, frm]
            if x > 0:
                for frm in range(m):
                    R[to, frm] /= x
            else:
                # 'to' is unreachable from the filter at k.
                for frm in range(m):
                    R[to, frm] = 0.0
        for to in range(m):
            for frm in range(m):
                x = phi[k + 1, to] * R[to, frm]
                phi[k, frm] += x
                trans[frm, to] += x


@jit(nopython=True, cache=False)
def _viterbi_numba(log_Q, log_init, log_p, argmax, path):
    """
    Log-space Viterbi. Fills 'path' and returns the log-probability of
    the best path. Ties go to the lowest state index.
    """
    n, m = log_p.shape
    oldmax = np.empty(m)
    newmax = np.empty(m)

    for j in range(m):
        newmax[j] = log_init[j] + log_p[0, j]

    for k in range(1, n):
        for j in range(m):
            oldmax[j] = newmax[j]
        for j in range(m):
            thismax = oldmax[0] + log_Q[0, j]
            argmax[k, j] = 0
            for i in range(1, m):
                tmp = oldmax[i] + log_Q[i, j]
                if tmp > thismax:
                    thismax = tmp
                    argmax[k, j] = i
            newmax[j] = thismax + log_p[k, j]

    final_state = 0
    for j in range(1, m):
        if newmax[j] > newmax[final_state]:
            final_state = j
    log_prob = newmax[final_state]

    path[n - 1] = final_state
    for k in range(n - 2, -1, -1):
        path[k] = argmax[k + 1, path[k + 1]]

    return log_prob


# =============================================================================
# Input checks
# =============================================================================

def _check_model(Q: np.ndarray, init: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    Q = np.ascontiguousarray(Q, dtype=np.float64)
    init = np.ascontiguousarray(init, dtype=np.float64)
    m = init.shape[0]
    if init.ndim != 1 or Q.shape != (m, m):
        raise ValueError(
            f"Transition matrix shape {Q.shape} does not match {m} initial probabilities"
        )
    return Q, init


def _check_emissions(prob: np.ndarray, m: int):
    if not isinstance(prob, np.ndarray) or prob.dtype != np.float64:
        raise ValueError("'prob' must be a float64 numpy array")
    if prob.ndim != 2 or prob.shape[1] != m:
        raise ValueError(f"'prob' has shape {prob.shape}, expected (n, {m})")


def _check_buffer(name: str, buf: np.ndarray, shape: Tuple[int, ...]):
    if not isinstance(buf, np.ndarray) or buf.dtype != np.float64:
        raise ValueError(f"'{name}' must be a float64 numpy array")
    if buf.shape != shape:
        raise ValueError(f"'{name}' has shape {buf.shape}, expected {shape}")


# =============================================================================
# Segment-level algorithms
# =============================================================================

def forward(Q: np.ndarray, init: np.ndarray, prob: np.ndarray) -> float:
    """
    Forward algorithm on one segment.

    Args:
        Q: (m, m) transition matrix
        init: (m,) initial probabilities
        prob: (n, m) emission probabilities, float64. Rows whose first
            entry is negative are read as log probabilities; rows with
            NaN are treated as missing.

    Returns:
        Total log-likelihood of the segment.

    Side effects:
        'prob' is overwritten in place with the normalized forward
        probabilities (alphas).
    """
    Q, init = _check_model(Q, init)
    _check_emissions(prob, init.shape[0])
    if prob.shape[0] == 0:
        return 0.0
    return float(_forward_numba(Q, init, prob))


def backward(Q: np.ndarray, alpha: np.ndarray, phi: np.ndarray,
             trans: np.ndarray) -> None:
    """
    Markovian backward smoothing on one segment.

    Args:
        Q: (m, m) transition matrix
        alpha: (n, m) forward probabilities, as left by forward()
        phi: (n, m) output buffer for the posterior probabilities
        trans: (m, m) output buffer for the expected transition counts

    Both output buffers are overwritten.
    """
    Q = np.ascontiguousarray(Q, dtype=np.float64)
    n, m = alpha.shape
    _check_buffer('phi', phi, (n, m))
    _check_buffer('trans', trans, (m, m))
    if n == 0:
        trans[:] = 0.0
        return
    _backward_numba(Q, alpha, phi, trans)


def fwdb(Q: np.ndarray, init: np.ndarray, prob: np.ndarray,
         phi: np.ndarray, trans: np.ndarray) -> float:
    """
    Forward-backward on one segment.

    Replaces 'prob' by the alphas, fills 'phi' and 'trans', and returns
    the log-likelihood.
    """
    loglik = forward(Q, init, prob)
    backward(Q, prob, phi, trans)
    return loglik


def viterbi(log_Q: np.ndarray, log_init: np.ndarray, log_p: np.ndarray,
            path: Optional[np.ndarray] = None) -> Tuple[np.ndarray, float]:
    """
    Most likely state sequence of one segment, in log space.

    Not robust to NaN: clean the emissions first (see block_viterbi).

    Args:
        log_Q: (m, m) log transition matrix
        log_init: (m,) log initial probabilities
        log_p: (n, m) log emission probabilities
        path: optional (n,) integer output buffer

    Returns:
        path: Viterbi path. Filled with -1 if the backtracking table
            cannot be allocated.
        log_prob: Log probability of the path (NaN on allocation failure)
    """
    log_Q, log_init = _check_model(log_Q, log_init)
    log_p = np.ascontiguousarray(log_p, dtype=np.float64)
    n, m = log_p.shape
    if m != log_init.shape[0]:
        raise ValueError(f"'log_p' has shape {log_p.shape}, expected (n, {log_init.shape[0]})")
    if path is None:
        path = np.empty(n, dtype=np.int64)
    if n == 0:
        return path, 0.0

    try:
        argmax = np.empty((n, m), dtype=np.int64)
    except MemoryError:
        warnings.warn(f"Cannot allocate Viterbi backtracking table for {n} positions")
        path[:] = -1
        return path, float('nan')

    log_prob = _viterbi_numba(log_Q, log_init, log_p, argmax, path)
    return path, float(log_prob)


# =============================================================================
# Block wrappers
# =============================================================================

def block_fwdb(Q: np.ndarray, init: np.ndarray, prob: np.ndarray,
               phi: np.ndarray, sizes: Sequence[int],
               sumtrans: Optional[np.ndarray] = None) -> Tuple[float, np.ndarray]:
    """
    Forward-backward on independent fragments of a series.

    Each fragment restarts from 'init'; no transition crosses a fragment
    boundary. Fragment outputs land in disjoint row slices of 'prob' and
    'phi'. Per-fragment transition counts and log-likelihoods are summed
    in fragment order.

    Args:
        Q: (m, m) transition matrix
        init: (m,) initial probabilities
        prob: (n, m) emission probabilities, replaced by the alphas
        phi: (n, m) output buffer for the posterior probabilities
        sizes: fragment lengths, summing to n
        sumtrans: optional (m, m) output buffer for the summed counts

    Returns:
        (loglik, sumtrans)
    """
    Q, init = _check_model(Q, init)
    m = init.shape[0]
    _check_emissions(prob, m)
    n = prob.shape[0]
    _check_buffer('phi', phi, (n, m))
    sizes = check_sizes(sizes, n)
    if sumtrans is None:
        sumtrans = np.zeros((m, m))
    else:
        _check_buffer('sumtrans', sumtrans, (m, m))
        sumtrans[:] = 0.0

    trans = np.empty((m, m))
    loglik = 0.0
    offset = 0
    for size in sizes:
        if size == 0:
            continue
        block = slice(offset, offset + size)
        # NOTE: replaces the emissions of the block by the alphas.
        loglik += _forward_numba(Q, init, prob[block])
        _backward_numba(Q, prob[block], phi[block], trans)
        sumtrans += trans
        offset += size

    return float(loglik), sumtrans


def _is_undefined(log_p: np.ndarray) -> np.ndarray:
    """Rows with a NaN, or where every state is impossible."""
    return np.isnan(log_p).any(axis=1) | np.all(log_p == -np.inf, axis=1)


def block_viterbi(Q: np.ndarray, init: np.ndarray, prob: np.ndarray,
                  sizes: Sequence[int], log_space: bool = False,
                  path: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Viterbi decoding of a fragmented series.

    Inputs may be given in linear space (default) or in log space. The
    emissions are copied, never modified. Positions where the emissions
    are undefined (NaN, or all -inf in log space) get a neutral row so
    they do not influence the path.

    Args:
        Q: (m, m) transition matrix
        init: (m,) initial probabilities
        prob: (n, m) emission probabilities
        sizes: fragment lengths, summing to n
        log_space: whether Q, init and prob are log probabilities
        path: optional (n,) integer output buffer

    Returns:
        (n,) Viterbi path, decoded fragment by fragment.

    Raises:
        InvalidParameterError: if Q or init contain NaN. 'path' is left
            untouched.
    """
    prob = np.asarray(prob, dtype=np.float64)
    n, m = prob.shape
    sizes = check_sizes(sizes, n)

    if log_space:
        log_Q = np.array(Q, dtype=np.float64)
        log_init = np.array(init, dtype=np.float64)
        log_p = np.array(prob, dtype=np.float64)
    else:
        with np.errstate(divide='ignore', invalid='ignore'):
            log_Q = np.log(np.asarray(Q, dtype=np.float64))
            log_init = np.log(np.asarray(init, dtype=np.float64))
            log_p = np.log(prob)

    if np.isnan(log_Q).any():
        raise InvalidParameterError("invalid 'Q' parameter in block_viterbi")
    if np.isnan(log_init).any():
        raise InvalidParameterError("invalid 'init' parameter in block_viterbi")
    log_Q, log_init = _check_model(log_Q, log_init)

    log_p[_is_undefined(log_p)] = 0.0

    if path is None:
        path = np.empty(n, dtype=np.int64)
    elif path.shape != (n,):
        raise ValueError(f"'path' has shape {path.shape}, expected {(n,)}")

    offset = 0
    for size in sizes:
        if size == 0:
            continue
        viterbi(log_Q, log_init, log_p[offset:offset + size],
                path[offset:offset + size])
        offset += size

    return path
