"""Silhouette-based quality scores for corrected matrices.

Each candidate correction is projected onto its leading principal
components (centred and scaled genes) and scored twice with the average
silhouette width: once by cell type (higher = cell types stay apart) and
once by batch (lower = batches are mixed). Both are mapped to [0, 1] with
``(s + 1) / 2`` and combined as ``f(cell_type, 1 - batch)``; the default
``f`` is the harmonic mean (an F-score).
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import numpy as np
from sklearn.decomposition import PCA, IncrementalPCA
from sklearn.metrics import silhouette_score

from scruv.core.exceptions import DimensionError, ScruvValueError
from scruv.utils.batch import iter_row_blocks, matrix_shape

if TYPE_CHECKING:
    from numpy.typing import NDArray

CombineStrategy = Callable[[float, float], float]

DEFAULT_N_PCS = 10


def zero_one_scale(v: Any) -> Any:
    """Map a silhouette width from [-1, 1] to [0, 1]."""
    return (np.asarray(v, dtype=np.float64) + 1.0) / 2.0


def harmonic_mean_score(cell_type: float, batch: float) -> float:
    """F-score of the two normalised scores: ``2ab / (a + b)``."""
    total = cell_type + batch
    if total == 0:
        return 0.0
    return float(2.0 * cell_type * batch / total)


def weighted_sum_score(weight: float = 0.5) -> CombineStrategy:
    """Return ``f(a, b) = weight * a + (1 - weight) * b``.

    ``weight`` is the share given to cell-type cohesion.
    """
    if not 0.0 <= weight <= 1.0:
        raise ScruvValueError(f"weight must be in [0, 1], got {weight}", parameter="batch_weight", value=weight)

    def _weighted(cell_type: float, batch: float) -> float:
        return float(weight * cell_type + (1.0 - weight) * batch)

    return _weighted


def get_combine_strategy(combine: str | CombineStrategy = "harmonic", weight: float = 0.5) -> CombineStrategy:
    """Resolve a combination strategy by name or pass a callable through."""
    if callable(combine):
        return combine
    if combine == "harmonic":
        return harmonic_mean_score
    if combine == "weighted":
        return weighted_sum_score(weight)
    raise ScruvValueError(
        f"Unknown combine strategy {combine!r}; use 'harmonic', 'weighted' or a callable",
        parameter="combine",
        value=combine,
    )


def combined_score(
    sil_cell_type: float, sil_batch: float, combine: str | CombineStrategy = "harmonic"
) -> float:
    """Combine raw silhouette widths into the selection score."""
    strategy = get_combine_strategy(combine)
    return strategy(float(zero_one_scale(sil_cell_type)), float(1.0 - zero_one_scale(sil_batch)))


def _column_moments(Y: Any, block_size: int | None) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    n_cells, n_genes = matrix_shape(Y)
    total = np.zeros(n_genes)
    for _, block in iter_row_blocks(Y, block_size):
        total += block.sum(axis=0)
    mean = total / n_cells
    ss = np.zeros(n_genes)
    for _, block in iter_row_blocks(Y, block_size):
        ss += np.square(block - mean).sum(axis=0)
    sd = np.sqrt(ss / max(n_cells - 1, 1))
    sd[sd == 0] = 1.0
    return mean, sd


def reduce_dimensions(
    Y: Any,
    n_pcs: int = DEFAULT_N_PCS,
    block_size: int | None = None,
    svd_solver: str = "full",
    random_state: int | None = 0,
) -> NDArray[np.float64]:
    """PCA scores of the centred, unit-variance columns of ``Y``.

    In memory (``block_size=None``) this is :class:`sklearn.decomposition.PCA`;
    otherwise :class:`sklearn.decomposition.IncrementalPCA` over row blocks.

    Returns
    -------
    NDArray
        Scores, shape (n_cells, min(n_pcs, n_cells, n_genes)).
    """
    n_cells, n_genes = matrix_shape(Y)
    n_components = min(n_pcs, n_cells, n_genes)
    if n_components < 1:
        raise ScruvValueError(f"n_pcs must be >= 1, got {n_pcs}", parameter="n_pcs", value=n_pcs)

    mean, sd = _column_moments(Y, block_size)

    if block_size is None or block_size >= n_cells:
        _, X = next(iter_row_blocks(Y, None))
        Z = (X - mean) / sd
        if svd_solver == "arpack" and n_components >= min(Z.shape):
            svd_solver = "full"
        pca = PCA(n_components=n_components, svd_solver=svd_solver, random_state=random_state)
        return pca.fit_transform(Z)

    ipca = IncrementalPCA(n_components=n_components)
    pending: NDArray[np.float64] | None = None
    # each partial_fit call needs at least n_components rows; fitting reads
    # blocks of at least that size and merges a short final block into the
    # one before it
    fit_block = max(block_size, n_components)
    for _, block in iter_row_blocks(Y, fit_block):
        z = (block - mean) / sd
        if pending is None:
            pending = z
        elif pending.shape[0] >= n_components and z.shape[0] >= n_components:
            ipca.partial_fit(pending)
            pending = z
        else:
            pending = np.concatenate([pending, z], axis=0)
    if pending is not None:
        ipca.partial_fit(pending)

    return np.concatenate(
        [ipca.transform((block - mean) / sd) for _, block in iter_row_blocks(Y, block_size)],
        axis=0,
    )


def check_labels(labels: Any, n_cells: int, name: str) -> NDArray[Any]:
    """Validate per-cell labels for a silhouette computation."""
    labels = np.asarray(labels)
    if labels.ndim != 1 or labels.shape[0] != n_cells:
        raise DimensionError(f"{name} must hold one label per cell", (n_cells,), labels.shape)
    n_levels = np.unique(labels).size
    if not 2 <= n_levels <= n_cells - 1:
        raise ScruvValueError(
            f"Silhouette needs between 2 and n_cells - 1 distinct {name} labels, got {n_levels}",
            parameter=name,
        )
    return labels


def silhouette_pair(
    embedding: NDArray[np.float64],
    cell_type: Any,
    batch: Any,
    sample_size: int | None = None,
    random_state: int | None = 0,
) -> tuple[float, float]:
    """Average silhouette widths of ``embedding`` by cell type and by batch."""
    n_cells = embedding.shape[0]
    cell_type = check_labels(cell_type, n_cells, "cell_type")
    batch = check_labels(batch, n_cells, "batch")
    kwargs = {"sample_size": sample_size, "random_state": random_state}
    return (
        float(silhouette_score(embedding, cell_type, **kwargs)),
        float(silhouette_score(embedding, batch, **kwargs)),
    )


def silhouette_scores(
    Y: Any,
    cell_type: Any,
    batch: Any,
    n_pcs: int = DEFAULT_N_PCS,
    block_size: int | None = None,
    svd_solver: str = "full",
    sample_size: int | None = None,
    random_state: int | None = 0,
) -> tuple[float, float]:
    """Silhouette widths (cell type, batch) of a corrected matrix.

    Parameters
    ----------
    Y : matrix-like
        Corrected matrix, cells x genes. Standardised or original scale
        give the same result since genes are centred and scaled.
    cell_type, batch : array-like
        One label per cell.
    n_pcs : int, default=10
        Principal components used for the distance computation.
    block_size : int, optional
        Rows per block; switches PCA to its incremental variant.
    svd_solver : str, default="full"
        Solver of :class:`~sklearn.decomposition.PCA`.
    sample_size : int, optional
        Subsample size for :func:`~sklearn.metrics.silhouette_score`.
    random_state : int, optional
        Seed for PCA and silhouette subsampling.

    Returns
    -------
    tuple[float, float]
        ``(sil_cell_type, sil_batch)``, each in [-1, 1].
    """
    embedding = reduce_dimensions(
        Y, n_pcs=n_pcs, block_size=block_size, svd_solver=svd_solver, random_state=random_state
    )
    return silhouette_pair(embedding, cell_type, batch, sample_size=sample_size, random_state=random_state)
