"""Block-wise access to expression matrices.

Every RUV-III stage is written as a reduction over contiguous row blocks so
that the full matrix never has to be dense in memory. This module provides
the iteration primitives. Any 2-D container with a ``shape`` attribute and
row slicing works: numpy arrays and memmaps, scipy sparse matrices,
``h5py.Dataset`` objects, zarr arrays, or the lazy views defined in
:mod:`scruv.ruv.standardize`.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import numpy as np
import scipy.sparse as sp

from scruv.core.exceptions import DimensionError, ScruvValueError

if TYPE_CHECKING:
    from collections.abc import Iterator

    from numpy.typing import NDArray


def matrix_shape(data: Any) -> tuple[int, int]:
    """Return the (rows, cols) shape of a matrix-like object."""
    shape = getattr(data, "shape", None)
    if shape is None or len(shape) != 2:
        raise DimensionError(f"Expected a 2-D matrix, got object with shape {shape}")
    return int(shape[0]), int(shape[1])


def row_sliceable(data: Any) -> Any:
    """Return ``data`` in a form that supports ``data[rows]``.

    Sparse matrices in a format other than CSR or CSC are converted to CSR
    (COO and DIA cannot be row-sliced at all). Everything else is returned
    as is.
    """
    if sp.issparse(data) and data.format not in ("csr", "csc"):
        return data.tocsr()
    return data


def to_dense_block(block: Any) -> NDArray[np.float64]:
    """Convert a block (dense, sparse or array-like) to a float64 ndarray."""
    if sp.issparse(block):
        block = block.toarray()
    return np.asarray(block, dtype=np.float64)


def take_columns(block: NDArray[np.float64], columns: Any) -> NDArray[np.float64]:
    """Select columns of a dense block; ``None`` keeps all of them."""
    if columns is None:
        return block
    return block[:, columns]


class batch_iterator:
    """Iterator over contiguous row blocks of a matrix.

    Parameters
    ----------
    data : matrix-like
        Input matrix (cells x genes).
    batch_size : int, optional
        Number of rows per block. ``None`` yields the whole matrix as a
        single block.

    Yields
    ------
    tuple[slice, NDArray]
        The row slice and the dense float64 block for those rows.

    Examples
    --------
    >>> import numpy as np
    >>> X = np.random.randn(100, 10)
    >>> [blk.shape for _, blk in batch_iterator(X, batch_size=40)]
    [(40, 10), (40, 10), (20, 10)]
    """

    __slots__ = ("data", "batch_size", "n_items")

    def __init__(self, data: Any, batch_size: int | None = None) -> None:
        if batch_size is not None and batch_size <= 0:
            raise ScruvValueError(
                f"batch_size must be positive, got {batch_size}",
                parameter="batch_size",
                value=batch_size,
            )
        data = row_sliceable(data)
        self.data = data
        self.n_items = matrix_shape(data)[0]
        self.batch_size = self.n_items if batch_size is None else batch_size

    def __iter__(self) -> Iterator[tuple[slice, NDArray[np.float64]]]:
        for start in range(0, self.n_items, max(self.batch_size, 1)):
            rows = slice(start, min(start + self.batch_size, self.n_items))
            yield rows, to_dense_block(self.data[rows])

    def __len__(self) -> int:
        if self.n_items == 0:
            return 0
        n_batches, remainder = divmod(self.n_items, self.batch_size)
        return n_batches + bool(remainder)


def iter_row_blocks(
    data: Any, block_size: int | None = None
) -> Iterator[tuple[slice, NDArray[np.float64]]]:
    """Shorthand for ``iter(batch_iterator(data, block_size))``."""
    return iter(batch_iterator(data, block_size))


def apply_by_batch(
    data: Any,
    func: Callable[..., NDArray[np.float64]],
    batch_size: int | None = None,
    **kwargs: Any,
) -> NDArray[np.float64]:
    """Apply ``func`` to every row block and stack the results.

    Parameters
    ----------
    data : matrix-like
        Input matrix.
    func : Callable
        Function applied to each dense block; must return a 2-D array with
        one row per input row.
    batch_size : int, optional
        Rows per block (``None`` = one block).
    **kwargs : Any
        Extra keyword arguments passed to ``func``.

    Returns
    -------
    NDArray[np.float64]
        Row-wise concatenation of the block results.
    """
    results = [func(block, **kwargs) for _, block in batch_iterator(data, batch_size)]
    if not results:
        return np.empty((0, 0))
    return np.concatenate(results, axis=0)


def gather_columns(data: Any, columns: Any, batch_size: int | None = None) -> NDArray[np.float64]:
    """Materialise ``data[:, columns]`` block by block."""
    return apply_by_batch(data, take_columns, batch_size=batch_size, columns=columns)
