"""Utility functions for block-wise matrix access."""

from scruv.utils.batch import (
    apply_by_batch,
    batch_iterator,
    gather_columns,
    iter_row_blocks,
    matrix_shape,
    row_sliceable,
    take_columns,
    to_dense_block,
)

__all__ = [
    "batch_iterator",
    "iter_row_blocks",
    "apply_by_batch",
    "gather_columns",
    "take_columns",
    "to_dense_block",
    "matrix_shape",
    "row_sliceable",
]
