"""Rebuild corrected matrices from a stored factor model.

Because the factor scores of a cell only depend on that cell's control
genes, any subset of cells can be corrected from a fitted ``fullalpha``
without re-running the estimator, one row block at a time. The input must
be in the same standardised space used to fit the model; nothing here can
detect a mismatch.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import numpy as np

from scruv.core.exceptions import DimensionError
from scruv.ruv.factor_model import FactorModel
from scruv.utils.batch import (
    apply_by_batch,
    gather_columns,
    iter_row_blocks,
    matrix_shape,
    row_sliceable,
    to_dense_block,
)

if TYPE_CHECKING:
    from collections.abc import Iterator

    from numpy.typing import NDArray


def _as_factor_model(fullalpha: FactorModel | NDArray[np.float64], ctl: Any) -> FactorModel:
    if isinstance(fullalpha, FactorModel):
        return fullalpha
    if ctl is None:
        raise DimensionError("ctl is required when fullalpha is a plain array")
    return FactorModel(fullalpha=fullalpha, ctl=ctl)


def _gene_vector(values: Any, n_genes: int, columns: Any, name: str) -> NDArray[np.float64] | None:
    if values is None:
        return None
    values = np.asarray(values, dtype=np.float64)
    if values.shape != (n_genes,):
        raise DimensionError(f"{name} must hold one value per gene", (n_genes,), values.shape)
    return values if columns is None else values[columns]


class AdjustedMatrix:
    """Lazy corrected matrix: rows are corrected when they are read.

    ``view[rows]`` returns ``adjust(Y[rows]) * scale + row_means``. Genes
    flagged in ``passthrough`` are copied from ``original`` instead (genes
    that were never standardised). Use :meth:`to_array` to materialise.
    """

    __slots__ = ("data", "model", "k", "scale", "row_means", "passthrough", "original", "shape", "_proj")

    ndim = 2
    dtype = np.dtype(np.float64)

    def __init__(
        self,
        data: Any,
        model: FactorModel | None,
        k: int,
        scale: NDArray[np.float64] | None = None,
        row_means: NDArray[np.float64] | None = None,
        passthrough: NDArray[np.bool_] | None = None,
        original: Any = None,
    ) -> None:
        self.data = row_sliceable(data)
        self.model = model
        self.shape = matrix_shape(data)
        self.scale = _gene_vector(scale, self.shape[1], None, "scale")
        self.row_means = _gene_vector(row_means, self.shape[1], None, "row_means")
        if passthrough is not None and passthrough.any():
            if original is None:
                raise DimensionError("original is required with passthrough genes")
            self.passthrough, self.original = passthrough, row_sliceable(original)
        else:
            self.passthrough, self.original = None, None
        if model is None:
            self.k, self._proj = 0, None
        else:
            self.k = model.resolve_k(k)
            self._proj = model.projection(self.k)

    def __getitem__(self, key: Any) -> NDArray[np.float64]:
        rows, cols = key if isinstance(key, tuple) else (key, slice(None))
        block = to_dense_block(self.data[rows])
        if block.ndim == 1:
            block = block[None, :]
        if self.model is None:
            out = block.copy()
        else:
            out = self.model.adjust_block(block, self.k, projection=self._proj)
        if self.scale is not None:
            out *= self.scale
        if self.row_means is not None:
            out += self.row_means
        if self.passthrough is not None:
            original = to_dense_block(self.original[rows])
            out[:, self.passthrough] = original.reshape(out.shape)[:, self.passthrough]
        return out[:, cols]

    def to_array(self, block_size: int | None = None) -> NDArray[np.float64]:
        """Materialise the full corrected matrix."""
        return apply_by_batch(self, lambda block: block, batch_size=block_size)

    def factor_scores(self, block_size: int | None = None) -> NDArray[np.float64]:
        """Unwanted-factor scores ``W`` (n_cells x k) of the underlying fit."""
        if self.model is None:
            return np.zeros((self.shape[0], 0))
        return gather_columns(self.data, self.model.ctl, batch_size=block_size) @ self._proj[0]

    def __array__(self, dtype: Any = None, copy: Any = None) -> NDArray[Any]:
        out = self.to_array()
        return out if dtype is None else out.astype(dtype)

    def __repr__(self) -> str:
        return f"<AdjustedMatrix shape={self.shape} k={self.k}>"


def iter_adjusted_blocks(
    Y: Any,
    fullalpha: FactorModel | NDArray[np.float64],
    k: int,
    ctl: Any = None,
    row_means: Any = None,
    scale: Any = None,
    subset_genes: Any = None,
    block_size: int | None = None,
) -> Iterator[tuple[slice, NDArray[np.float64]]]:
    """Yield ``(rows, corrected_block)`` pairs over row blocks of ``Y``.

    See :func:`get_adjusted_matrix` for the parameters. Use this directly
    to stream corrected rows to disk without holding them all.
    """
    model = _as_factor_model(fullalpha, ctl)
    _, n_genes = matrix_shape(Y)
    if n_genes != model.n_genes:
        raise DimensionError(
            "Input must hold every gene of the factor model (control genes are needed "
            "to compute the factor scores); use subset_genes to restrict the output",
            model.n_genes,
            n_genes,
        )

    columns = None
    if subset_genes is not None:
        columns = np.asarray(subset_genes)
        if columns.dtype == np.bool_ and columns.shape != (n_genes,):
            raise DimensionError("Boolean subset_genes must cover every gene", (n_genes,), columns.shape)
    scale_v = _gene_vector(scale, n_genes, columns, "scale")
    means_v = _gene_vector(row_means, n_genes, columns, "row_means")

    k_used = model.resolve_k(k)
    proj = model.projection(k_used)
    for rows, block in iter_row_blocks(Y, block_size):
        adjusted = model.adjust_block(block, k_used, columns=columns, projection=proj)
        if scale_v is not None:
            adjusted *= scale_v
        if means_v is not None:
            adjusted += means_v
        yield rows, adjusted


def get_adjusted_matrix(
    Y: Any,
    fullalpha: FactorModel | NDArray[np.float64],
    k: int,
    ctl: Any = None,
    row_means: Any = None,
    scale: Any = None,
    subset_genes: Any = None,
    block_size: int | None = None,
) -> NDArray[np.float64]:
    """Corrected matrix for a subset of cells and/or genes.

    Parameters
    ----------
    Y : matrix-like
        Standardised expression of the chosen cells, holding all genes of
        the factor model (cells x genes). May be out-of-core.
    fullalpha : FactorModel or NDArray
        Fitted basis. A plain array needs ``ctl``.
    k : int
        Number of unwanted factors to remove.
    ctl : array-like, optional
        Control mask or indices when ``fullalpha`` is an array.
    row_means : array-like, optional
        Per-gene means added back after correction (length n_genes).
    scale : array-like, optional
        Per-gene scale multiplied back before adding ``row_means``
        (length n_genes), e.g. ``sqrt(variance)`` from standardisation.
    subset_genes : index, optional
        Genes to return (indices or boolean mask over all genes).
    block_size : int, optional
        Rows per block.

    Returns
    -------
    NDArray
        Corrected matrix of shape (n_cells, n_selected_genes).

    Examples
    --------
    >>> model = fit_factor_model(Y_std, ctl, M)
    >>> sub = get_adjusted_matrix(Y_std[:50], model, k=5, subset_genes=[0, 3, 7])
    """
    blocks = [block for _, block in iter_adjusted_blocks(
        Y, fullalpha, k, ctl=ctl, row_means=row_means, scale=scale,
        subset_genes=subset_genes, block_size=block_size,
    )]
    if not blocks:
        genes = np.arange(matrix_shape(Y)[1])
        if subset_genes is not None:
            genes = genes[np.asarray(subset_genes)]
        return np.empty((0, genes.size))
    return np.concatenate(blocks, axis=0)
