"""RUV-III estimation of unwanted variation.

Notation (cells x genes, m x n):

- ``Y``: standardised expression, ``Yc = Y[:, ctl]`` its control columns.
- ``M``: m x r replicate matrix.
- ``Y0 = Yc - M (M'M)^-1 M' Yc``: replicate residuals among controls.
- ``U``: leading left singular vectors of ``Y0``.
- ``fullalpha = U' Y``: K x n factor loadings, K = available factors.

For a factor count k, ``alpha = fullalpha[:k]``, ``ac = alpha[:, ctl]``,
``W = Yc ac' (ac ac')^-1`` and the corrected matrix is ``Y - W alpha``.
``W`` for a cell depends only on that cell's control values, so the
correction can be applied to any row block independently.

Reference
---------
Gagnon-Bartsch JA, Speed TP, et al. Removing unwanted variation with
negative controls and replicates (RUV-III). Molloy MP, et al. (2019).
Lin Y, et al. scMerge leverages factor analysis, stable expression, and
pseudoreplication to merge multiple single-cell RNA-seq datasets. PNAS (2019).
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np
import scipy.sparse as sp

from scruv.core.exceptions import DegeneracyError, DimensionError, NumericalError, ScruvValueError
from scruv.ruv.replicate import replicate_residuals, to_logical, validate_replicate_matrix
from scruv.ruv.standardize import check_finite
from scruv.ruv.svd import ExactSVD
from scruv.utils.batch import apply_by_batch, gather_columns, iter_row_blocks, matrix_shape

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from scruv.ruv.svd import SVDBackend


def _readonly(a: Any) -> NDArray[Any]:
    a = np.array(a, copy=True)
    a.flags.writeable = False
    return a


def check_k(k: Any, n_controls: int) -> int:
    """Validate a requested factor count against the number of controls."""
    if isinstance(k, bool) or not isinstance(k, (int, np.integer)):
        raise ScruvValueError(f"k must be an integer, got {k!r}", parameter="k", value=k)
    k = int(k)
    if k < 0:
        raise ScruvValueError(f"k must be non-negative, got {k}", parameter="k", value=k)
    if k >= n_controls:
        raise DegeneracyError(
            f"k={k} unwanted factors need more than {n_controls} control genes."
        )
    return k


@dataclass(frozen=True, eq=False)
class FactorModel:
    """Fitted unwanted-variation basis, shared read-only across candidates.

    Attributes
    ----------
    fullalpha : NDArray
        K x n_genes loadings; the first k rows give the k-factor model.
    ctl : NDArray[np.bool_]
        Negative-control mask over genes.
    singular_values : NDArray
        Singular values of the replicate residuals among controls.
    n_replicate_sets : int
        Number of replicate sets (columns of M) used in the fit.
    svd_backend : str
        Name of the backend that produced the basis.
    """

    fullalpha: NDArray[np.float64]
    ctl: NDArray[np.bool_]
    singular_values: NDArray[np.float64] = field(default_factory=lambda: np.empty(0))
    n_replicate_sets: int = 0
    svd_backend: str = "exact"

    def __post_init__(self) -> None:
        fullalpha = np.asarray(self.fullalpha, dtype=np.float64)
        if fullalpha.ndim != 2:
            raise DimensionError("fullalpha must be 2-D", expected=2, actual=fullalpha.ndim)
        ctl = to_logical(self.ctl, fullalpha.shape[1])
        object.__setattr__(self, "fullalpha", _readonly(fullalpha))
        object.__setattr__(self, "ctl", _readonly(ctl))
        object.__setattr__(self, "singular_values", _readonly(self.singular_values))

    @property
    def n_factors(self) -> int:
        return self.fullalpha.shape[0]

    @property
    def n_genes(self) -> int:
        return self.fullalpha.shape[1]

    @property
    def n_controls(self) -> int:
        return int(self.ctl.sum())

    def resolve_k(self, k: int) -> int:
        """Validate ``k`` and return the number of factors actually used."""
        k = check_k(k, self.n_controls)
        if k > self.n_factors:
            warnings.warn(
                f"Only {self.n_factors} unwanted factors are available; using k={self.n_factors} "
                f"instead of k={k}.",
                UserWarning,
                stacklevel=3,
            )
            return self.n_factors
        return k

    def alpha(self, k: int) -> NDArray[np.float64]:
        """First ``k`` rows of ``fullalpha``."""
        return self.fullalpha[: self.resolve_k(k)]

    def projection(self, k: int) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
        """Return ``(P, alpha)`` with ``W = Y[:, ctl] @ P`` for ``k`` factors.

        ``P = ac' (ac ac')^-1`` is n_controls x k.
        """
        k_used = self.resolve_k(k)
        alpha = self.fullalpha[:k_used]
        if k_used == 0:
            return np.zeros((self.n_controls, 0)), alpha
        ac = alpha[:, self.ctl]
        gram = ac @ ac.T
        if not np.all(np.isfinite(gram)) or np.linalg.cond(gram) > 1.0 / np.finfo(np.float64).eps:
            raise NumericalError(
                "Control loadings are rank deficient; ac ac' is singular.", stage="projection", k=k
            )
        try:
            P = np.linalg.solve(gram, ac).T
        except np.linalg.LinAlgError as err:
            raise NumericalError(str(err), stage="projection", k=k) from err
        return P, alpha

    def adjust_block(
        self,
        block: NDArray[np.float64],
        k: int,
        columns: Any = None,
        projection: tuple[NDArray[np.float64], NDArray[np.float64]] | None = None,
    ) -> NDArray[np.float64]:
        """Remove ``k`` unwanted factors from a standardised row block.

        Parameters
        ----------
        block : NDArray
            Standardised rows holding all genes (controls are needed for W).
        k : int
            Number of factors.
        columns : index, optional
            Genes to return; ``None`` returns all of them.
        projection : tuple, optional
            Precomputed ``self.projection(k)``.
        """
        if block.shape[1] != self.n_genes:
            raise DimensionError(
                "Block must hold every gene of the factor model", self.n_genes, block.shape[1]
            )
        P, alpha = projection if projection is not None else self.projection(k)
        out = block if columns is None else block[:, columns]
        if alpha.shape[0] == 0:
            return np.array(out, dtype=np.float64, copy=True)
        W = block[:, self.ctl] @ P
        alpha_out = alpha if columns is None else alpha[:, columns]
        adjusted = out - W @ alpha_out
        check_finite(adjusted, stage="correction", k=k)
        return adjusted


@dataclass
class RuvFit:
    """Diagnostic bundle of one RUV-III fit.

    Attributes
    ----------
    new_y : NDArray
        Corrected matrix (standardised space).
    k : int
        Requested number of factors.
    k_used : int
        Factors actually removed (``min(k, factor_model.n_factors)``).
    factor_model : FactorModel or None
        Shared basis; ``None`` when k == 0 and no basis was fitted.
    W : NDArray or None
        m x k_used factor scores.
    M : sp.csr_matrix
        Validated replicate matrix.
    """

    new_y: NDArray[np.float64]
    k: int
    k_used: int
    factor_model: FactorModel | None
    W: NDArray[np.float64] | None
    M: sp.csr_matrix


def fit_factor_model(
    Y: Any,
    ctl: Any,
    M: Any,
    n_factors: int | None = None,
    svd_backend: SVDBackend | None = None,
    block_size: int | None = None,
) -> FactorModel:
    """Estimate the unwanted-variation basis ``fullalpha`` once.

    Parameters
    ----------
    Y : matrix-like
        Standardised expression, cells x genes.
    ctl : array-like
        Negative-control mask or indices.
    M : matrix-like
        Replicate matrix (m x r) or one replicate label per cell.
    n_factors : int, optional
        Upper bound on the factors kept (e.g. the largest candidate k).
        ``None`` keeps every available factor.
    svd_backend : SVDBackend, optional
        Defaults to :class:`~scruv.ruv.svd.ExactSVD`.
    block_size : int, optional
        Rows per block when reading ``Y``.

    Returns
    -------
    FactorModel

    Raises
    ------
    DegeneracyError
        No control genes, a cell outside every replicate set, or no
        residual degrees of freedom (``m <= r``).
    NumericalError
        Non-finite values in ``Y`` or the fitted loadings.
    SVDBackendError
        The SVD backend failed.
    """
    backend = svd_backend or ExactSVD()
    n_cells, n_genes = matrix_shape(Y)
    ctl = to_logical(ctl, n_genes)
    M = validate_replicate_matrix(M, n_cells)

    n_sets = M.shape[1]
    available = min(n_cells - n_sets, int(ctl.sum()))
    if available < 1:
        raise DegeneracyError(
            f"No unwanted factors can be estimated: {n_cells} cells, {n_sets} replicate sets, "
            f"{int(ctl.sum())} control genes."
        )
    target = available if n_factors is None else min(int(n_factors), available)
    if backend.rank_bound is not None:
        target = min(target, backend.rank_bound)
    if target < 1:
        raise ScruvValueError(f"n_factors must be >= 1, got {n_factors}", parameter="n_factors", value=n_factors)

    Yc = gather_columns(Y, np.flatnonzero(ctl), batch_size=block_size)
    check_finite(Yc, stage="fit_factor_model")
    Y0 = replicate_residuals(Yc, M)

    U, S, _ = backend.compute_svd(Y0, target)
    check_finite(U, stage="svd")

    fullalpha = np.zeros((U.shape[1], n_genes))
    for rows, block in iter_row_blocks(Y, block_size):
        check_finite(block, stage="fit_factor_model")
        fullalpha += U[rows].T @ block
    check_finite(fullalpha, stage="fullalpha")

    return FactorModel(
        fullalpha=fullalpha,
        ctl=ctl,
        singular_values=S,
        n_replicate_sets=n_sets,
        svd_backend=backend.name,
    )


def fast_ruviii(
    Y: Any,
    ctl: Any,
    k: int,
    M: Any,
    fullalpha: FactorModel | NDArray[np.float64] | None = None,
    svd_backend: SVDBackend | None = None,
    svd_k: int | None = 50,
    return_info: bool = False,
    block_size: int | None = None,
) -> NDArray[np.float64] | RuvFit:
    """RUV-III on a standardised matrix.

    Parameters
    ----------
    Y : matrix-like
        Standardised expression, cells x genes.
    ctl : array-like
        Negative-control mask or indices.
    k : int
        Number of unwanted factors to remove. ``0`` returns ``Y`` unchanged.
    M : matrix-like
        Replicate matrix or replicate labels.
    fullalpha : FactorModel or NDArray, optional
        Previously fitted basis. When given, no SVD is computed.
    svd_backend : SVDBackend, optional
        Backend used when ``fullalpha`` must be fitted.
    svd_k : int, optional
        Number of factors fitted when ``fullalpha`` is not given (the
        first ``svd_k`` singular vectors). ``None`` keeps every available
        factor. A ``k`` above it is truncated with a warning.
    return_info : bool, default=False
        Return a :class:`RuvFit` instead of the bare matrix.
    block_size : int, optional
        Rows per block.

    Returns
    -------
    NDArray or RuvFit
        Corrected matrix, same shape as ``Y``.

    Examples
    --------
    >>> fit = fast_ruviii(Y_std, ctl, k=5, M=M, return_info=True)
    >>> fit10 = fast_ruviii(Y_std, ctl, k=10, M=M, fullalpha=fit.factor_model)
    """
    n_cells, n_genes = matrix_shape(Y)
    ctl_mask = to_logical(ctl, n_genes)
    M = validate_replicate_matrix(M, n_cells)
    k = check_k(k, int(ctl_mask.sum()))

    if isinstance(fullalpha, FactorModel):
        model: FactorModel | None = fullalpha
        if not np.array_equal(model.ctl, ctl_mask):
            raise ScruvValueError("ctl differs from the controls of the supplied factor model", parameter="ctl")
    elif fullalpha is not None:
        model = FactorModel(fullalpha=fullalpha, ctl=ctl_mask)
    elif k == 0:
        model = None
    else:
        model = fit_factor_model(Y, ctl_mask, M, n_factors=svd_k, svd_backend=svd_backend, block_size=block_size)

    if model is not None and model.n_genes != n_genes:
        raise DimensionError("fullalpha does not match the number of genes", n_genes, model.n_genes)

    if model is None:
        k_used = 0
        new_y = apply_by_batch(Y, lambda block: block.copy(), batch_size=block_size)
        check_finite(new_y, stage="correction", k=0)
        W = np.zeros((n_cells, 0))
    else:
        k_used = model.resolve_k(k)
        proj = model.projection(k_used)
        new_y = apply_by_batch(
            Y, lambda block: model.adjust_block(block, k_used, projection=proj), batch_size=block_size
        )
        W = gather_columns(Y, model.ctl, batch_size=block_size) @ proj[0] if return_info else None

    if not return_info:
        return new_y
    return RuvFit(new_y=new_y, k=int(k), k_used=k_used, factor_model=model, W=W, M=M)
