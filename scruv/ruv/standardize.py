"""Per-gene location/scale adjustment ahead of RUV-III.

Every gene is centred on its overall mean and scaled by the residual
standard deviation of a batch-only linear model (one indicator column per
batch, no intercept). The least-squares fit of that model is the vector of
per-batch gene means, so the fit reduces to two passes over row blocks:
one for per-batch sums, one for the residual sum of squares.

The transform is undone with :func:`unstandardize` after correction.
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal

import numpy as np

from scruv.core.exceptions import (
    DegeneracyError,
    DimensionError,
    NumericalError,
    ScruvValueError,
)
from scruv.utils.batch import apply_by_batch, iter_row_blocks, matrix_shape, row_sliceable, to_dense_block

if TYPE_CHECKING:
    from numpy.typing import NDArray

_MAX_REPORTED = 10


def check_finite(block: NDArray[np.float64], stage: str, k: int | None = None) -> None:
    """Raise :class:`NumericalError` if ``block`` holds NaN or infinite values."""
    if not np.all(np.isfinite(block)):
        n_bad = int(np.size(block) - np.count_nonzero(np.isfinite(block)))
        raise NumericalError(f"{n_bad} non-finite value(s) encountered.", stage=stage, k=k)


class StandardizedMatrix:
    """Lazy ``(Y - mean) / scale`` view over a matrix-like object.

    Rows are standardised when they are read, so an out-of-core ``Y``
    (memmap, HDF5 dataset) stays out of core. Supports ``view[rows]`` and
    ``view[rows, cols]``.
    """

    __slots__ = ("data", "mean", "scale", "skipped", "shape")

    ndim = 2
    dtype = np.dtype(np.float64)

    def __init__(
        self,
        data: Any,
        mean: NDArray[np.float64],
        scale: NDArray[np.float64],
        skipped: NDArray[np.bool_] | None = None,
    ) -> None:
        self.data = row_sliceable(data)
        self.mean = mean
        self.scale = scale
        self.skipped = skipped if skipped is not None and skipped.any() else None
        self.shape = matrix_shape(data)

    def __getitem__(self, key: Any) -> NDArray[np.float64]:
        rows, cols = key if isinstance(key, tuple) else (key, slice(None))
        block = to_dense_block(self.data[rows])
        if block.ndim == 1:
            block = block[None, :]
        out = (block - self.mean) / self.scale
        if self.skipped is not None:
            out[:, self.skipped] = 0.0
        return out[:, cols]

    def __repr__(self) -> str:
        return f"<StandardizedMatrix shape={self.shape}>"


@dataclass(frozen=True)
class StandardizeResult:
    """Output of :func:`standardize`.

    Attributes
    ----------
    stand_y : NDArray or StandardizedMatrix
        Standardised matrix (cells x genes), dense or lazy.
    mean : NDArray
        Per-gene mean over all cells.
    variance : NDArray
        Per-gene residual variance of the batch-only model.
    batch_levels : NDArray
        Distinct batch labels, sorted.
    skipped : NDArray
        Boolean mask of zero-variance genes left at 0 (``zero_variance="skip"``).
    """

    stand_y: Any
    mean: NDArray[np.float64]
    variance: NDArray[np.float64]
    batch_levels: NDArray[Any]
    skipped: NDArray[np.bool_]

    @property
    def scale(self) -> NDArray[np.float64]:
        """Per-gene divisor; 1 for skipped genes."""
        return np.where(self.skipped, 1.0, np.sqrt(self.variance))


def _encode_batch(batch: Any, n_cells: int) -> tuple[NDArray[Any], NDArray[np.intp]]:
    batch = np.asarray(batch)
    if batch.ndim != 1:
        raise DimensionError("batch must be a 1-D vector", expected=1, actual=batch.ndim)
    if batch.shape[0] != n_cells:
        raise DimensionError("batch length does not match the number of cells", n_cells, batch.shape[0])
    levels, codes = np.unique(batch, return_inverse=True)
    return levels, codes.ravel()


def standardize(
    Y: Any,
    batch: Any,
    zero_variance: Literal["raise", "skip"] = "raise",
    block_size: int | None = None,
    lazy: bool = False,
) -> StandardizeResult:
    """Standardise each gene by its mean and batch-adjusted residual SD.

    Parameters
    ----------
    Y : matrix-like
        Expression matrix, cells x genes (dense, sparse or out-of-core).
    batch : array-like
        Batch label for every cell. At least two distinct levels.
    zero_variance : {"raise", "skip"}, default="raise"
        What to do with genes whose residual variance is zero. ``"skip"``
        leaves them at 0 in the standardised matrix and warns.
    block_size : int, optional
        Rows per block for the passes over ``Y``. ``None`` reads ``Y`` in
        one block.
    lazy : bool, default=False
        Return a :class:`StandardizedMatrix` view instead of a dense array.

    Returns
    -------
    StandardizeResult
        Standardised matrix and the statistics needed to undo it.

    Raises
    ------
    DegeneracyError
        Single batch level, ``n_cells <= n_batches`` or zero-variance genes
        with ``zero_variance="raise"``.
    DimensionError
        ``batch`` length differs from the number of cells.
    NumericalError
        ``Y`` holds NaN or infinite values.
    """
    if zero_variance not in ("raise", "skip"):
        raise ScruvValueError(
            f"zero_variance must be 'raise' or 'skip', got {zero_variance!r}",
            parameter="zero_variance",
            value=zero_variance,
        )

    n_cells, n_genes = matrix_shape(Y)
    levels, codes = _encode_batch(batch, n_cells)
    n_batch = len(levels)

    if n_batch < 2:
        raise DegeneracyError(
            f"Standardisation needs at least 2 batch levels, got {n_batch}."
        )
    dof = n_cells - n_batch
    if dof <= 0:
        raise DegeneracyError(
            f"No residual degrees of freedom: {n_cells} cells for {n_batch} batches."
        )

    # Pass 1: per-batch sums
    counts = np.bincount(codes, minlength=n_batch).astype(np.float64)
    batch_sums = np.zeros((n_batch, n_genes))
    for rows, block in iter_row_blocks(Y, block_size):
        check_finite(block, stage="standardize")
        block_codes = codes[rows]
        for b in np.unique(block_codes):
            batch_sums[b] += block[block_codes == b].sum(axis=0)

    batch_means = batch_sums / counts[:, None]
    mean = batch_sums.sum(axis=0) / n_cells

    # Pass 2: residual sum of squares around the fitted batch means
    rss = np.zeros(n_genes)
    for rows, block in iter_row_blocks(Y, block_size):
        rss += np.square(block - batch_means[codes[rows]]).sum(axis=0)
    variance = rss / dof

    tol = np.finfo(np.float64).eps * np.maximum(1.0, np.square(mean))
    skipped = variance <= tol
    if skipped.any():
        bad = np.flatnonzero(skipped)
        shown = ", ".join(str(i) for i in bad[:_MAX_REPORTED])
        more = "" if len(bad) <= _MAX_REPORTED else ", ..."
        if zero_variance == "raise":
            raise DegeneracyError(
                f"{len(bad)} gene(s) have zero residual variance (indices {shown}{more}). "
                "Filter them out or pass zero_variance='skip'."
            )
        warnings.warn(
            f"{len(bad)} zero-variance gene(s) left uncorrected (indices {shown}{more}).",
            UserWarning,
            stacklevel=2,
        )

    scale = np.where(skipped, 1.0, np.sqrt(variance))
    view = StandardizedMatrix(Y, mean, scale, skipped)
    if lazy:
        stand_y: Any = view
    else:
        stand_y = apply_by_batch(view, lambda block: block, batch_size=block_size)

    return StandardizeResult(
        stand_y=stand_y,
        mean=mean,
        variance=variance,
        batch_levels=levels,
        skipped=skipped,
    )


def unstandardize(
    Z: NDArray[np.float64],
    mean: NDArray[np.float64],
    variance: NDArray[np.float64],
    columns: Any = None,
) -> NDArray[np.float64]:
    """Undo :func:`standardize`: ``Z * sqrt(variance) + mean``.

    ``columns`` selects the genes ``Z`` holds when it is a gene subset.
    """
    mean = np.asarray(mean)
    sd = np.sqrt(np.asarray(variance))
    if columns is not None:
        mean, sd = mean[columns], sd[columns]
    if Z.shape[1] != mean.shape[0]:
        raise DimensionError("Column count of Z does not match the gene statistics", mean.shape[0], Z.shape[1])
    return Z * sd + mean
