"""RUV-III removal of unwanted variation for single-cell expression data.

Pipeline
--------
1. :func:`standardize` - per-gene centring and batch-adjusted scaling.
2. :func:`fit_factor_model` - SVD of replicate residuals among negative
   control genes, giving the unwanted-factor loadings ``fullalpha``.
3. :func:`fast_ruviii` - removal of the first k factors.
4. :func:`sc_ruviii` - all of the above for several candidate k, scored
   by silhouette width to pick the optimum.

Corrected matrices for arbitrary cell or gene subsets are rebuilt from a
stored factor model with :func:`get_adjusted_matrix`.

Examples
--------
>>> from scruv.ruv import sc_ruviii
>>> res = sc_ruviii(Y, M, ctl, k=[5, 10, 15, 20], batch=batch, cell_type=cell_type)
>>> res.optimal_k, res.scores
"""

from scruv.ruv.factor_model import FactorModel, RuvFit, fast_ruviii, fit_factor_model
from scruv.ruv.materialize import AdjustedMatrix, get_adjusted_matrix, iter_adjusted_blocks
from scruv.ruv.replicate import (
    replicate_labels,
    replicate_matrix,
    replicate_residuals,
    to_logical,
    validate_replicate_matrix,
)
from scruv.ruv.scoring import (
    get_combine_strategy,
    harmonic_mean_score,
    silhouette_scores,
    weighted_sum_score,
    zero_one_scale,
)
from scruv.ruv.selection import RuvResult, SelectionEvent, sc_ruviii, select_ruv_k
from scruv.ruv.standardize import StandardizedMatrix, StandardizeResult, standardize, unstandardize
from scruv.ruv.svd import ExactSVD, RandomizedSVD, TruncatedSVD, compute_svd, get_svd_backend

__all__ = [
    # Standardisation
    "standardize",
    "unstandardize",
    "StandardizeResult",
    "StandardizedMatrix",
    # Replicate structure
    "replicate_matrix",
    "validate_replicate_matrix",
    "replicate_labels",
    "replicate_residuals",
    "to_logical",
    # SVD backends
    "ExactSVD",
    "TruncatedSVD",
    "RandomizedSVD",
    "compute_svd",
    "get_svd_backend",
    # Estimation
    "FactorModel",
    "RuvFit",
    "fit_factor_model",
    "fast_ruviii",
    # Materialisation
    "AdjustedMatrix",
    "get_adjusted_matrix",
    "iter_adjusted_blocks",
    # Scoring
    "silhouette_scores",
    "harmonic_mean_score",
    "weighted_sum_score",
    "zero_one_scale",
    "get_combine_strategy",
    # Selection
    "sc_ruviii",
    "select_ruv_k",
    "RuvResult",
    "SelectionEvent",
]
