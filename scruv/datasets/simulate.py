"""Synthetic count data with cell-type signal and batch-driven unwanted factors.

Counts are Poisson draws from a log-linear model::

    log E[Y] = mu + X beta + W alpha + eps

- ``mu``: per-gene baseline log abundance.
- ``X beta``: cell-type effects; zero on negative-control genes.
- ``W alpha``: unwanted factors, ``W`` centred on a per-batch offset so
  the factors track batch membership. The offsets are scaled by
  ``batch_effect``, which sets the strength of the batch effect.
- ``eps``: cell-level noise with standard deviation ``lambda_``. This
  noise is unrelated to batch; ``lambda_`` does not set batch strength.

Control genes therefore carry batch signal but no cell-type signal, which
is the situation RUV-III is designed for.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
import polars as pl

from scruv.core.exceptions import ScruvValueError
from scruv.core.structures import Assay, ScContainer, ScMatrix
from scruv.ruv.replicate import replicate_matrix

if TYPE_CHECKING:
    from numpy.typing import NDArray

# Constants for data generation
_BASELINE_LOG_MEAN = 2.0
_BASELINE_LOG_STD = 0.5
_CELL_TYPE_EFFECT_STD = 1.0
_BATCH_OFFSET_STD = 1.0
_FACTOR_NOISE_STD = 0.2
_LOADING_STD = 0.5
_DEFAULT_N_FACTORS = 2


@dataclass
class RuvSimulation:
    """Output of :func:`ruv_simulate`.

    Attributes
    ----------
    Y : NDArray[np.int64]
        Counts, cells x genes.
    M : NDArray[np.float64]
        Replicate matrix built from the cell types (cells x n_celltypes).
    ctl : NDArray[np.bool_]
        Negative-control mask (the first ``nc`` genes).
    batch : NDArray[np.int64]
        Batch label per cell.
    cell_type : NDArray[np.int64]
        Cell-type label per cell.
    W : NDArray[np.float64]
        True unwanted factors, cells x n_factors.
    alpha : NDArray[np.float64]
        True unwanted loadings, n_factors x genes.
    """

    Y: NDArray[np.int64]
    M: NDArray[np.float64]
    ctl: NDArray[np.bool_]
    batch: NDArray[np.int64]
    cell_type: NDArray[np.int64]
    W: NDArray[np.float64]
    alpha: NDArray[np.float64]

    @property
    def log_counts(self) -> NDArray[np.float64]:
        """``log2(Y + 1)``, the scale RUV-III is applied on."""
        return np.log2(self.Y + 1.0)

    def to_container(self, assay_name: str = "protein", layer_name: str = "raw") -> ScContainer:
        """Wrap the log counts and labels in an :class:`ScContainer`.

        obs holds ``batch``, ``cell_type`` and ``replicate`` (same as the
        cell type); var holds the boolean ``ctl`` column.
        """
        n_cells, n_genes = self.Y.shape
        obs = pl.DataFrame(
            {
                "_index": [f"cell_{i}" for i in range(n_cells)],
                "batch": [f"batch_{b}" for b in self.batch],
                "cell_type": [f"type_{c}" for c in self.cell_type],
                "replicate": [f"type_{c}" for c in self.cell_type],
            }
        )
        var = pl.DataFrame(
            {
                "_index": [f"gene_{j}" for j in range(n_genes)],
                "ctl": self.ctl,
            }
        )
        assay = Assay(var=var)
        assay.add_layer(layer_name, ScMatrix(X=self.log_counts))
        container = ScContainer(obs=obs)
        container.add_assay(assay_name, assay)
        return container


def _balanced_labels(n: int, n_levels: int, rng: np.random.Generator) -> NDArray[np.int64]:
    labels = np.arange(n) % n_levels
    rng.shuffle(labels)
    return labels


def ruv_simulate(
    m: int = 100,
    n: int = 5000,
    nc: int | None = None,
    n_celltypes: int = 3,
    n_batch: int = 2,
    lambda_: float = 0.1,
    n_factors: int = _DEFAULT_N_FACTORS,
    batch_effect: float = 1.0,
    random_state: int | np.random.Generator | None = None,
) -> RuvSimulation:
    """Simulate counts for testing RUV-III.

    Parameters
    ----------
    m : int, default=100
        Number of cells.
    n : int, default=5000
        Number of genes.
    nc : int, optional
        Number of negative-control genes (the first ``nc`` genes).
        Defaults to ``n // 2``.
    n_celltypes : int, default=3
        Number of cell types, balanced across cells.
    n_batch : int, default=2
        Number of batches, balanced across cells and independent of the
        cell types.
    lambda_ : float, default=0.1
        Standard deviation of the cell-level log-scale noise. This is
        not the batch-effect strength; see ``batch_effect``.
    n_factors : int, default=2
        Number of unwanted factors.
    batch_effect : float, default=1.0
        Scale of the per-batch offsets of the unwanted factors. ``0``
        leaves ``W`` with no batch structure; larger values separate the
        batches further.
    random_state : int or Generator, optional
        Seed for reproducibility.

    Returns
    -------
    RuvSimulation

    Examples
    --------
    >>> sim = ruv_simulate(m=200, n=1000, nc=100, random_state=0)
    >>> sim.Y.shape, int(sim.ctl.sum())
    ((200, 1000), 100)
    """
    nc = n // 2 if nc is None else nc
    if not 0 < nc <= n:
        raise ScruvValueError(f"nc must be in (0, {n}], got {nc}", parameter="nc", value=nc)
    if n_celltypes < 1 or n_celltypes > m:
        raise ScruvValueError(f"n_celltypes must be in [1, {m}], got {n_celltypes}", parameter="n_celltypes", value=n_celltypes)
    if n_batch < 1 or n_batch > m:
        raise ScruvValueError(f"n_batch must be in [1, {m}], got {n_batch}", parameter="n_batch", value=n_batch)
    if n_factors < 1:
        raise ScruvValueError(f"n_factors must be >= 1, got {n_factors}", parameter="n_factors", value=n_factors)
    if lambda_ < 0:
        raise ScruvValueError(f"lambda_ must be non-negative, got {lambda_}", parameter="lambda_", value=lambda_)
    if batch_effect < 0:
        raise ScruvValueError(
            f"batch_effect must be non-negative, got {batch_effect}", parameter="batch_effect", value=batch_effect
        )

    rng = np.random.default_rng(random_state)

    ctl = np.zeros(n, dtype=bool)
    ctl[:nc] = True
    cell_type = _balanced_labels(m, n_celltypes, rng)
    batch = _balanced_labels(m, n_batch, rng)

    mu = rng.normal(_BASELINE_LOG_MEAN, _BASELINE_LOG_STD, size=n)

    beta = rng.normal(0.0, _CELL_TYPE_EFFECT_STD, size=(n_celltypes, n))
    beta[:, ctl] = 0.0

    batch_offsets = batch_effect * rng.normal(0.0, _BATCH_OFFSET_STD, size=(n_batch, n_factors))
    W = batch_offsets[batch] + rng.normal(0.0, _FACTOR_NOISE_STD, size=(m, n_factors))
    alpha = rng.normal(0.0, _LOADING_STD, size=(n_factors, n))

    log_rate = mu + beta[cell_type] + W @ alpha + rng.normal(0.0, lambda_, size=(m, n))
    Y = rng.poisson(np.exp(log_rate))

    return RuvSimulation(
        Y=Y,
        M=replicate_matrix(cell_type).toarray(),
        ctl=ctl,
        batch=batch,
        cell_type=cell_type,
        W=W,
        alpha=alpha,
    )
