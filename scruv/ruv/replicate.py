"""Replicate-structure matrices and negative-control indices.

The replicate matrix M has one row per cell and one column per replicate
set; entry (i, j) is 1 when cell i belongs to set j. It is built outside
the RUV-III core (pseudo-replicates, cell-type labels) and only validated
here. Residuals against M remove the biological signal shared by
replicates, leaving the unwanted variation that RUV-III estimates.
"""

from __future__ import annotations

import warnings
from typing import TYPE_CHECKING, Any

import numpy as np
import scipy.sparse as sp
from scipy.sparse.linalg import MatrixRankWarning, spsolve

from scruv.core.exceptions import (
    DegeneracyError,
    DimensionError,
    NumericalError,
    ScruvValueError,
    ValidationError,
)

if TYPE_CHECKING:
    from numpy.typing import NDArray


def to_logical(ctl: Any, n_genes: int) -> NDArray[np.bool_]:
    """Convert a control index to a boolean mask of length ``n_genes``.

    Parameters
    ----------
    ctl : array-like
        Boolean mask of length ``n_genes`` or integer gene indices.
    n_genes : int
        Number of genes.

    Returns
    -------
    NDArray[np.bool_]
        Control mask.

    Raises
    ------
    DegeneracyError
        If no control gene is selected.
    """
    ctl = np.asarray(ctl)
    if ctl.ndim != 1:
        raise DimensionError("ctl must be 1-D", expected=1, actual=ctl.ndim)

    if ctl.dtype == np.bool_:
        if ctl.shape[0] != n_genes:
            raise DimensionError("Control mask length does not match the number of genes", n_genes, ctl.shape[0])
        mask = ctl.copy()
    elif np.issubdtype(ctl.dtype, np.integer):
        if ctl.size and (ctl.min() < 0 or ctl.max() >= n_genes):
            raise ScruvValueError(
                f"Control indices must lie in [0, {n_genes}), got range "
                f"[{ctl.min()}, {ctl.max()}]",
                parameter="ctl",
            )
        mask = np.zeros(n_genes, dtype=bool)
        mask[ctl] = True
    else:
        raise ValidationError(f"ctl must be boolean or integer, got dtype {ctl.dtype}")

    if not mask.any():
        raise DegeneracyError("No negative control genes selected.")
    return mask


def replicate_matrix(labels: Any) -> sp.csr_matrix:
    """Build a replicate matrix from one label per cell.

    Columns follow the order in which labels first appear.

    Examples
    --------
    >>> replicate_matrix(["a", "b", "a"]).toarray()
    array([[1., 0.],
           [0., 1.],
           [1., 0.]])
    """
    labels = np.asarray(labels)
    if labels.ndim != 1:
        raise DimensionError("Replicate labels must be 1-D", expected=1, actual=labels.ndim)
    if labels.dtype == object and any(x is None for x in labels):
        raise ValidationError("Replicate labels contain None.")

    uniq, first, codes = np.unique(labels, return_index=True, return_inverse=True)
    order = np.argsort(first)
    # remap codes so that column j is the j-th label to appear
    rank = np.empty_like(order)
    rank[order] = np.arange(len(order))
    cols = rank[codes.ravel()]
    n = labels.shape[0]
    return sp.csr_matrix(
        (np.ones(n), (np.arange(n), cols)), shape=(n, len(uniq)), dtype=np.float64
    )


def validate_replicate_matrix(M: Any, n_cells: int) -> sp.csr_matrix:
    """Check and normalise a replicate matrix.

    Accepts a dense or sparse m x r 0/1 matrix, or a 1-D label vector which
    is expanded with :func:`replicate_matrix`. Empty columns are dropped
    with a warning.

    Raises
    ------
    DimensionError
        Row count differs from ``n_cells``.
    ValidationError
        Entries other than 0 and 1.
    DegeneracyError
        A cell belongs to no replicate set.
    """
    if not sp.issparse(M):
        M = np.asarray(M)
        if M.ndim == 1:
            M = replicate_matrix(M)
        elif M.ndim != 2:
            raise DimensionError("M must be 1-D labels or a 2-D matrix", expected=2, actual=M.ndim)

    M = sp.csr_matrix(M, dtype=np.float64)
    if M.shape[0] != n_cells:
        raise DimensionError("Replicate matrix rows do not match the number of cells", n_cells, M.shape[0])

    M.eliminate_zeros()
    if M.nnz and not np.all(M.data == 1.0):
        raise ValidationError("Replicate matrix must be binary (0/1).")

    row_counts = np.diff(M.indptr)
    empty_rows = np.flatnonzero(row_counts == 0)
    if empty_rows.size:
        raise DegeneracyError(
            f"{empty_rows.size} cell(s) belong to no replicate set "
            f"(first rows: {empty_rows[:10].tolist()})."
        )

    col_counts = np.asarray(M.sum(axis=0)).ravel()
    if (col_counts == 0).any():
        warnings.warn(
            f"Dropping {(col_counts == 0).sum()} empty replicate column(s).",
            UserWarning,
            stacklevel=2,
        )
        M = M[:, np.flatnonzero(col_counts > 0)]

    return M


def is_partition(M: sp.csr_matrix) -> bool:
    """True when every cell belongs to exactly one replicate set."""
    return bool(np.all(np.diff(M.indptr) == 1))


def replicate_labels(M: Any) -> NDArray[np.intp]:
    """Label each cell by the first replicate set it belongs to.

    Used as a stand-in for cell-type labels when none are supplied.
    """
    M = sp.csr_matrix(M, copy=True)
    M.eliminate_zeros()
    M.sort_indices()
    labels = np.full(M.shape[0], -1, dtype=np.intp)
    nonempty = np.diff(M.indptr) > 0
    labels[nonempty] = M.indices[M.indptr[:-1][nonempty]]
    return labels


def replicate_residuals(Yc: NDArray[np.float64], M: sp.csr_matrix) -> NDArray[np.float64]:
    """Residuals of ``Yc`` after projecting out the replicate structure.

    Computes ``Yc - M (M'M)^-1 M' Yc``. For a partition this is each cell
    minus the mean of its replicate set.
    """
    if M.shape[0] != Yc.shape[0]:
        raise DimensionError("Replicate matrix rows do not match Y", Yc.shape[0], M.shape[0])

    if is_partition(M):
        sizes = np.asarray(M.sum(axis=0)).ravel()
        set_means = (M.T @ Yc) / sizes[:, None]
        return Yc - set_means[M.indices]

    gram = (M.T @ M).tocsc()
    with warnings.catch_warnings():
        warnings.simplefilter("error", MatrixRankWarning)
        try:
            coef = spsolve(gram, np.asarray(M.T @ Yc))
        except MatrixRankWarning as err:
            raise DegeneracyError(
                "Replicate matrix columns are linearly dependent; M'M is singular."
            ) from err
    coef = np.asarray(coef).reshape(M.shape[1], -1)
    residual = Yc - M @ coef
    if not np.all(np.isfinite(residual)):
        raise NumericalError("Replicate residuals are not finite.", stage="replicate_residuals")
    return residual
