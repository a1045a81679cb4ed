"""Parallel execution of the block algorithms."""

from jahmm.inference.parallel import parallel_block_fwdb

__all__ = [
    'parallel_block_fwdb',
]
