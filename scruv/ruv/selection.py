"""RUV-III with data-driven choice of the number of unwanted factors.

:func:`sc_ruviii` standardises the input, fits the unwanted-variation basis
once for the largest candidate k, corrects for every candidate, scores each
correction by silhouette widths and returns the corrected matrices on the
original scale. :func:`select_ruv_k` is the same procedure on an already
standardised matrix.

Reference
---------
Lin Y, Ghazanfar S, Wang KYX, et al. scMerge leverages factor analysis,
stable expression, and pseudoreplication to merge multiple single-cell
RNA-seq datasets. PNAS 116(20):9775-9784 (2019).
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from functools import partial
from typing import TYPE_CHECKING, Any, Literal

import numpy as np
import polars as pl

from scruv.core.exceptions import (
    DimensionError,
    NumericalError,
    ScruvValueError,
    SelectionError,
    SVDBackendError,
)
from scruv.ruv.factor_model import FactorModel, RuvFit, check_k, fast_ruviii, fit_factor_model
from scruv.ruv.materialize import AdjustedMatrix
from scruv.ruv.replicate import replicate_labels, to_logical, validate_replicate_matrix
from scruv.ruv.scoring import (
    DEFAULT_N_PCS,
    CombineStrategy,
    check_labels,
    get_combine_strategy,
    silhouette_scores,
    zero_one_scale,
)
from scruv.ruv.standardize import StandardizeResult, standardize, unstandardize
from scruv.ruv.svd import ExactSVD, get_svd_backend
from scruv.utils.batch import gather_columns, matrix_shape, row_sliceable

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from scruv.ruv.svd import SVDBackend

EventKind = Literal[
    "factor_model",
    "cell_type_from_replicates",
    "candidate_done",
    "candidate_failed",
    "optimal_k",
]

# Failures that disqualify one candidate without aborting the selection
_CANDIDATE_ERRORS = (NumericalError, SVDBackendError)

# PCA solver matching each SVD backend
_PCA_SOLVERS = {"exact": "full", "truncated": "arpack", "randomized": "randomized"}

_SCORE_SCHEMA = {
    "k": pl.Int64,
    "k_used": pl.Int64,
    "sil_cell_type": pl.Float64,
    "sil_batch": pl.Float64,
    "f_score": pl.Float64,
    "status": pl.Utf8,
}


@dataclass(frozen=True)
class SelectionEvent:
    """Progress notification passed to the ``observer`` callback.

    Attributes
    ----------
    kind : str
        One of ``"factor_model"``, ``"cell_type_from_replicates"``,
        ``"candidate_done"``, ``"candidate_failed"``, ``"optimal_k"``.
    k : int, optional
        Candidate the event refers to.
    payload : dict
        Event details (scores, error message, factor count, ...).
    """

    kind: EventKind
    k: int | None = None
    payload: dict[str, Any] = field(default_factory=dict)


Observer = Callable[[SelectionEvent], None]


@dataclass
class RuvResult:
    """Output of :func:`sc_ruviii` / :func:`select_ruv_k`.

    Attributes
    ----------
    new_y : dict[int, NDArray]
        Corrected matrix per kept candidate k (all of them, or only the
        optimal one with ``return_all=False``). Lazy
        :class:`~scruv.ruv.materialize.AdjustedMatrix` views when run with
        ``lazy=True``.
    optimal_k : int
        Candidate with the highest score (first one on ties).
    scores : pl.DataFrame
        One row per candidate: k, k_used, sil_cell_type, sil_batch,
        f_score, status.
    factor_model : FactorModel or None
        Shared basis; ``None`` when every candidate is 0.
    fits : dict[int, RuvFit]
        Diagnostics per candidate when ``return_info=True``.
    failures : dict[int, str]
        Error message of every candidate that could not be evaluated.
    standardization : StandardizeResult or None
        Statistics of the standardisation (``sc_ruviii`` only).
    """

    new_y: dict[int, Any]
    optimal_k: int
    scores: pl.DataFrame
    factor_model: FactorModel | None
    fits: dict[int, RuvFit] = field(default_factory=dict)
    failures: dict[int, str] = field(default_factory=dict)
    standardization: StandardizeResult | None = None

    @property
    def optimal(self) -> Any:
        """Corrected matrix of the optimal k."""
        return self.new_y[self.optimal_k]

    @property
    def candidates(self) -> list[int]:
        return self.scores["k"].to_list()

    def __repr__(self) -> str:
        return (
            f"<RuvResult optimal_k={self.optimal_k}, candidates={self.candidates}, "
            f"failures={sorted(self.failures)}>"
        )


@dataclass
class _Candidate:
    k: int
    k_used: int
    new_y: Any
    fit: RuvFit | None
    sil_cell_type: float | None = None
    sil_batch: float | None = None
    f_score: float = 1.0


def _notify(observer: Observer | None, kind: EventKind, k: int | None = None, **payload: Any) -> None:
    if observer is not None:
        observer(SelectionEvent(kind=kind, k=k, payload=payload))


def _check_candidates(k: int | Sequence[int]) -> list[int]:
    ks = [k] if isinstance(k, (int, np.integer)) else list(k)
    if not ks:
        raise ScruvValueError("At least one candidate k is required", parameter="k", value=k)
    for kk in ks:
        if isinstance(kk, bool) or not isinstance(kk, (int, np.integer)) or kk < 0:
            raise ScruvValueError(f"Candidate k must be a non-negative integer, got {kk!r}", parameter="k", value=kk)
    ks = [int(kk) for kk in ks]
    if len(set(ks)) != len(ks):
        raise ScruvValueError(f"Duplicate candidate k values in {ks}", parameter="k", value=ks)
    return ks


def _resolve_backend(svd_backend: str | SVDBackend | None, svd_k: int, svd_seed: int) -> SVDBackend:
    if svd_backend is None:
        return ExactSVD()
    if isinstance(svd_backend, str):
        return get_svd_backend(svd_backend, rank=svd_k, seed=svd_seed)
    return svd_backend


def select_ruv_k(
    Y_std: Any,
    M: Any,
    ctl: Any,
    k: int | Sequence[int],
    batch: Any,
    cell_type: Any = None,
    factor_model: FactorModel | None = None,
    svd_backend: SVDBackend | None = None,
    n_pcs: int = DEFAULT_N_PCS,
    combine: str | CombineStrategy = "harmonic",
    batch_weight: float = 0.5,
    n_jobs: int = 1,
    block_size: int | None = None,
    lazy: bool = False,
    return_all: bool = True,
    return_info: bool = False,
    observer: Observer | None = None,
    silhouette_sample_size: int | None = None,
    random_state: int | None = 0,
) -> RuvResult:
    """Correct a standardised matrix for every candidate k and pick the best.

    Parameters
    ----------
    Y_std : matrix-like
        Standardised expression, cells x genes.
    M : matrix-like
        Replicate matrix or replicate labels.
    ctl : array-like
        Negative-control mask or indices.
    k : int or sequence of int
        Candidate numbers of unwanted factors, in priority order.
    batch : array-like
        Batch label per cell.
    cell_type : array-like, optional
        Cell-type label per cell. Derived from ``M`` when omitted.
    factor_model : FactorModel, optional
        Previously fitted basis; fitted here up to ``max(k)`` otherwise.
    svd_backend : SVDBackend, optional
        Backend for the basis fit. Defaults to exact SVD.
    n_pcs : int, default=10
        Principal components used for the silhouettes.
    combine : {"harmonic", "weighted"} or callable, default="harmonic"
        How the normalised silhouettes are merged into one score.
    batch_weight : float, default=0.5
        Weight of cell-type cohesion for ``combine="weighted"``.
    n_jobs : int, default=1
        Worker threads evaluating candidates.
    block_size : int, optional
        Rows per block for every pass over the data.
    lazy : bool, default=False
        Keep corrected matrices as lazy views instead of dense arrays.
    return_all : bool, default=True
        Keep every candidate's matrix; otherwise only the optimal one.
    return_info : bool, default=False
        Also collect a :class:`RuvFit` per candidate.
    observer : callable, optional
        Receives a :class:`SelectionEvent` at each step.
    silhouette_sample_size : int, optional
        Subsample size for silhouette computation.
    random_state : int, optional
        Seed for PCA and silhouette subsampling.

    Returns
    -------
    RuvResult
        Matrices stay in standardised space.

    Raises
    ------
    SelectionError
        The first candidate could not be evaluated.
    DegeneracyError
        A candidate k is not below the number of control genes, or the
        factor model cannot be fitted.
    """
    ks = _check_candidates(k)
    n_cells, n_genes = matrix_shape(Y_std)
    ctl = to_logical(ctl, n_genes)
    M = validate_replicate_matrix(M, n_cells)
    for kk in ks:
        check_k(kk, int(ctl.sum()))
    if n_jobs < 1:
        raise ScruvValueError(f"n_jobs must be >= 1, got {n_jobs}", parameter="n_jobs", value=n_jobs)

    backend = svd_backend or ExactSVD()
    strategy = get_combine_strategy(combine, batch_weight)
    scoring = len(ks) > 1

    if scoring:
        batch = check_labels(batch, n_cells, "batch")
        if cell_type is None:
            cell_type = replicate_labels(M)
            _notify(observer, "cell_type_from_replicates", n_levels=int(np.unique(cell_type).size))
        cell_type = check_labels(cell_type, n_cells, "cell_type")

    if factor_model is None and max(ks) > 0:
        factor_model = fit_factor_model(
            Y_std, ctl, M, n_factors=max(ks), svd_backend=backend, block_size=block_size
        )
        _notify(
            observer,
            "factor_model",
            n_factors=factor_model.n_factors,
            svd_backend=factor_model.svd_backend,
        )
    elif factor_model is not None:
        if factor_model.n_genes != n_genes:
            raise DimensionError("factor_model does not match the number of genes", n_genes, factor_model.n_genes)
        if not np.array_equal(factor_model.ctl, ctl):
            raise ScruvValueError("ctl differs from the controls of the supplied factor model", parameter="ctl")

    pca_solver = _PCA_SOLVERS.get(backend.name, "full")

    def evaluate(kk: int) -> _Candidate:
        if lazy:
            new_y = AdjustedMatrix(Y_std, factor_model, kk)
            fit = None
            if return_info:
                fit = RuvFit(
                    new_y=new_y,
                    k=kk,
                    k_used=new_y.k,
                    factor_model=factor_model,
                    W=new_y.factor_scores(block_size),
                    M=M,
                )
            k_used = new_y.k
        else:
            out = fast_ruviii(
                Y_std, ctl, kk, M, fullalpha=factor_model, return_info=True, block_size=block_size
            )
            new_y, k_used = out.new_y, out.k_used
            fit = out if return_info else None
        cand = _Candidate(k=kk, k_used=k_used, new_y=new_y, fit=fit)
        if scoring:
            sil_ct, sil_b = silhouette_scores(
                new_y,
                cell_type,
                batch,
                n_pcs=n_pcs,
                block_size=block_size,
                svd_solver=pca_solver,
                sample_size=silhouette_sample_size,
                random_state=random_state,
            )
            cand.sil_cell_type, cand.sil_batch = sil_ct, sil_b
            cand.f_score = strategy(float(zero_one_scale(sil_ct)), float(1.0 - zero_one_scale(sil_b)))
        return cand

    executor = ThreadPoolExecutor(max_workers=min(n_jobs, len(ks))) if n_jobs > 1 and len(ks) > 1 else None
    done: dict[int, _Candidate] = {}
    failures: dict[int, str] = {}
    best: _Candidate | None = None
    try:
        if executor is None:
            pending = {kk: partial(evaluate, kk) for kk in ks}
        else:
            pending = {kk: executor.submit(evaluate, kk).result for kk in ks}
        # reduce in candidate order so ties resolve to the earliest k
        for kk in ks:
            try:
                cand = pending[kk]()
            except _CANDIDATE_ERRORS as err:
                if kk == ks[0]:
                    raise SelectionError(
                        f"First candidate k={kk} could not be evaluated: {err}",
                        failures={kk: str(err)},
                    ) from err
                failures[kk] = str(err)
                _notify(observer, "candidate_failed", kk, error=str(err))
                continue
            done[kk] = cand
            _notify(
                observer,
                "candidate_done",
                kk,
                k_used=cand.k_used,
                sil_cell_type=cand.sil_cell_type,
                sil_batch=cand.sil_batch,
                f_score=cand.f_score,
            )
            if best is None or cand.f_score > best.f_score:
                if best is not None and not return_all:
                    best.new_y = None
                best = cand
            elif not return_all:
                cand.new_y = None
    finally:
        if executor is not None:
            executor.shutdown(wait=True, cancel_futures=True)

    if best is None:
        raise SelectionError("No candidate k could be evaluated.", failures=failures)
    _notify(observer, "optimal_k", best.k, f_score=best.f_score)

    rows = []
    for kk in ks:
        cand = done.get(kk)
        if cand is None:
            rows.append({"k": kk, "k_used": None, "sil_cell_type": None, "sil_batch": None,
                         "f_score": None, "status": "failed"})
        else:
            rows.append({"k": kk, "k_used": cand.k_used, "sil_cell_type": cand.sil_cell_type,
                         "sil_batch": cand.sil_batch, "f_score": cand.f_score, "status": "ok"})

    kept = done.values() if return_all else [best]
    return RuvResult(
        new_y={c.k: c.new_y for c in kept},
        optimal_k=best.k,
        scores=pl.DataFrame(rows, schema=_SCORE_SCHEMA),
        factor_model=factor_model,
        fits={c.k: c.fit for c in done.values() if c.fit is not None},
        failures=failures,
    )


def _restore_scale(
    Z: NDArray[np.float64], std: StandardizeResult, Y: Any, block_size: int | None
) -> NDArray[np.float64]:
    out = unstandardize(Z, std.mean, std.variance)
    if std.skipped.any():
        out[:, std.skipped] = gather_columns(Y, std.skipped, batch_size=block_size)
    return out


def sc_ruviii(
    Y: Any,
    M: Any,
    ctl: Any,
    k: int | Sequence[int],
    cell_type: Any = None,
    batch: Any = None,
    return_all: bool = True,
    return_info: bool = False,
    svd_backend: str | SVDBackend | None = "exact",
    svd_k: int = 50,
    svd_seed: int = 0,
    n_pcs: int = DEFAULT_N_PCS,
    combine: str | CombineStrategy = "harmonic",
    batch_weight: float = 0.5,
    n_jobs: int = 1,
    block_size: int | None = None,
    lazy: bool = False,
    observer: Observer | None = None,
    zero_variance: Literal["raise", "skip"] = "raise",
    silhouette_sample_size: int | None = None,
    random_state: int | None = 0,
) -> RuvResult:
    """Remove unwanted variation with RUV-III, choosing k by silhouette.

    Parameters
    ----------
    Y : matrix-like
        Expression matrix, cells x genes (log-scale). Dense, sparse or
        out-of-core (memmap, HDF5 dataset).
    M : matrix-like
        Replicate matrix (cells x replicate sets, 0/1) or replicate labels.
    ctl : array-like
        Negative-control genes as a boolean mask or integer indices.
    k : int or sequence of int
        Candidate numbers of unwanted factors. With a single candidate no
        scoring is done and its f_score is 1.
    cell_type : array-like, optional
        Cell-type label per cell. When omitted, the replicate set of each
        cell is used instead.
    batch : array-like
        Batch label per cell (required).
    return_all : bool, default=True
        Return every candidate's matrix, not just the optimal one.
    return_info : bool, default=False
        Collect per-candidate :class:`~scruv.ruv.factor_model.RuvFit`
        diagnostics in ``RuvResult.fits``.
    svd_backend : {"exact", "truncated", "randomized"} or SVDBackend
        SVD used for the factor model.
    svd_k : int, default=50
        Rank bound of the approximate backends.
    svd_seed : int, default=0
        Seed of the approximate backends.
    n_pcs : int, default=10
        Principal components used for the silhouettes.
    combine : {"harmonic", "weighted"} or callable, default="harmonic"
        Score combination strategy.
    batch_weight : float, default=0.5
        Weight of cell-type cohesion for ``combine="weighted"``.
    n_jobs : int, default=1
        Worker threads evaluating candidates.
    block_size : int, optional
        Rows per block; bounds the working memory of each pass.
    lazy : bool, default=False
        Never materialise full matrices: standardisation and corrections
        become views read block by block.
    observer : callable, optional
        Receives a :class:`SelectionEvent` at each step.
    zero_variance : {"raise", "skip"}, default="raise"
        Handling of genes with zero residual variance. Skipped genes are
        returned unchanged.
    silhouette_sample_size : int, optional
        Subsample size for silhouette computation.
    random_state : int, optional
        Seed for PCA and silhouette subsampling.

    Returns
    -------
    RuvResult
        Corrected matrices on the original scale, the score table and the
        shared factor model.

    Examples
    --------
    >>> sim = ruv_simulate(m=200, n=1000, random_state=0)
    >>> res = sc_ruviii(np.log1p(sim.Y), sim.M, sim.ctl, k=[5, 10, 15, 20], batch=sim.batch)
    >>> res.optimal_k in (5, 10, 15, 20)
    True
    """
    if batch is None:
        raise ScruvValueError("batch labels are required", parameter="batch")
    backend = _resolve_backend(svd_backend, svd_k, svd_seed)
    Y = row_sliceable(Y)

    std = standardize(Y, batch, zero_variance=zero_variance, block_size=block_size, lazy=lazy)
    result = select_ruv_k(
        std.stand_y,
        M,
        ctl,
        k,
        batch,
        cell_type=cell_type,
        svd_backend=backend,
        n_pcs=n_pcs,
        combine=combine,
        batch_weight=batch_weight,
        n_jobs=n_jobs,
        block_size=block_size,
        lazy=lazy,
        return_all=return_all,
        return_info=return_info,
        observer=observer,
        silhouette_sample_size=silhouette_sample_size,
        random_state=random_state,
    )

    if lazy:
        k_used = dict(zip(result.scores["k"].to_list(), result.scores["k_used"].to_list()))
        result.new_y = {
            kk: AdjustedMatrix(
                std.stand_y,
                result.factor_model,
                k_used[kk],
                scale=std.scale,
                row_means=std.mean,
                passthrough=std.skipped,
                original=Y,
            )
            for kk in result.new_y
        }
    else:
        result.new_y = {kk: _restore_scale(Z, std, Y, block_size) for kk, Z in result.new_y.items()}
    result.standardization = std
    return result
