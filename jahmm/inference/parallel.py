"""Fragment-parallel forward-backward."""

import os
from concurrent.futures import ProcessPoolExecutor
from typing import Optional, Sequence, Tuple

import numpy as np

from jahmm.core.hmm import block_fwdb, fwdb
from jahmm.core.observations import check_sizes


def _fwdb_fragment(args: Tuple[np.ndarray, np.ndarray, np.ndarray]):
    """Worker: forward-backward on one fragment, returns all outputs."""
    Q, init, prob = args
    m = init.shape[0]
    phi = np.empty_like(prob)
    trans = np.empty((m, m))
    loglik = fwdb(Q, init, prob, phi, trans)
    return loglik, prob, phi, trans


def parallel_block_fwdb(Q: np.ndarray, init: np.ndarray, prob: np.ndarray,
                        phi: np.ndarray, sizes: Sequence[int],
                        sumtrans: Optional[np.ndarray] = None,
                        n_cores: int = 0) -> Tuple[float, np.ndarray]:
    """
    Same contract as block_fwdb, with fragments spread over processes.

    Results are reduced in fragment order, whatever the completion order,
    so the output is identical to the sequential version.

    Args:
        n_cores: number of worker processes (0 = all CPUs)
    """
    if n_cores <= 0:
        n_cores = os.cpu_count() or 1

    n, m = prob.shape
    sizes = check_sizes(sizes, n)
    blocks = []
    offset = 0
    for size in sizes:
        if size > 0:
            blocks.append(slice(offset, offset + size))
        offset += size

    if n_cores == 1 or len(blocks) <= 1:
        return block_fwdb(Q, init, prob, phi, sizes, sumtrans=sumtrans)

    if phi.shape != (n, m):
        raise ValueError(f"'phi' has shape {phi.shape}, expected {(n, m)}")
    if sumtrans is None:
        sumtrans = np.zeros((m, m))
    else:
        sumtrans[:] = 0.0

    Q = np.ascontiguousarray(Q, dtype=np.float64)
    init = np.ascontiguousarray(init, dtype=np.float64)
    work_items = [(Q, init, np.ascontiguousarray(prob[block])) for block in blocks]

    with ProcessPoolExecutor(max_workers=min(n_cores, len(blocks))) as executor:
        # map() yields in submission order.
        results = list(executor.map(_fwdb_fragment, work_items))

    loglik = 0.0
    for block, (frag_loglik, alpha, frag_phi, trans) in zip(blocks, results):
        prob[block] = alpha
        phi[block] = frag_phi
        sumtrans += trans
        loglik += frag_loglik

    return float(loglik), sumtrans
