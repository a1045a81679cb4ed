"""
Observation container for ChIP count profiles.

A ChIP profile is an (n, r) integer matrix: column 0 holds the summed
negative controls, columns 1..r-1 the ChIP replicates. The series is cut
into independent fragments (blocks) whose lengths sum to n.

Parsing of input tables and detection of block boundaries happen upstream;
this module only validates and holds what was loaded.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np


# Missing counts. Any negative count is treated the same way.
MISSING = -1


def as_counts(y) -> np.ndarray:
    """
    Convert observations to a 2-D int64 count matrix.

    Float input may carry NaN for missing values; those become MISSING.
    Other non-integral or infinite values raise ValueError. A 1-D input
    is read as a single channel.
    """
    arr = np.asarray(y)
    if arr.ndim == 1:
        arr = arr.reshape(-1, 1)
    if arr.ndim != 2:
        raise ValueError(f"Observations must be 2-D (n, r), got shape {arr.shape}")

    if np.issubdtype(arr.dtype, np.floating):
        nan_mask = np.isnan(arr)
        values = arr[~nan_mask]
        if not np.all(np.isfinite(values)) or np.any(values != np.floor(values)):
            raise ValueError("Counts must be integers (NaN for missing values)")
        arr = np.where(nan_mask, MISSING, arr).astype(np.int64)
    else:
        arr = arr.astype(np.int64, copy=False)
    return np.ascontiguousarray(arr)


def invalid_rows(y: np.ndarray) -> np.ndarray:
    """Boolean mask of rows with at least one missing/invalid count."""
    return np.any(y < 0, axis=1)


def check_sizes(sizes: Sequence[int], n: int) -> np.ndarray:
    """Validate fragment lengths against the series length."""
    sizes = np.asarray(sizes, dtype=np.int64).reshape(-1)
    if np.any(sizes < 0):
        raise ValueError("Fragment sizes must be non-negative")
    if sizes.sum() != n:
        raise ValueError(
            f"Fragment sizes sum to {int(sizes.sum())}, but the series has {n} positions"
        )
    return sizes


@dataclass
class ChIP:
    """
    Count profiles of one series and its fragment partition.

    Attributes:
        y: (n, r) counts, MISSING where unavailable
        sizes: lengths of the independent fragments (sum to n)
    """
    y: np.ndarray
    sizes: Optional[Sequence[int]] = None

    def __post_init__(self):
        self.y = as_counts(self.y)
        if self.sizes is None:
            self.sizes = [self.y.shape[0]]
        self.sizes = check_sizes(self.sizes, self.y.shape[0])

    @classmethod
    def from_blocks(cls, blocks: List[np.ndarray]) -> 'ChIP':
        """Build a profile from a list of per-fragment count matrices."""
        if len(blocks) == 0:
            raise ValueError("At least one block is required")
        mats = [as_counts(b) for b in blocks]
        widths = {m.shape[1] for m in mats}
        if len(widths) != 1:
            raise ValueError(f"Blocks have inconsistent widths: {sorted(widths)}")
        return cls(np.concatenate(mats, axis=0), [m.shape[0] for m in mats])

    @property
    def n(self) -> int:
        return self.y.shape[0]

    @property
    def r(self) -> int:
        return self.y.shape[1]

    @property
    def nblocks(self) -> int:
        return len(self.sizes)

    @property
    def control(self) -> np.ndarray:
        """Negative control channel (column 0)."""
        return self.y[:, 0]

    def invalid_rows(self) -> np.ndarray:
        return invalid_rows(self.y)
