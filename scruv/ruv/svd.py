"""SVD backends for the unwanted-variation estimate.

A backend is a small frozen dataclass with a single capability,
``compute_svd(matrix, target_rank) -> (U, S, Vt)``:

- :class:`ExactSVD` - LAPACK ``gesdd`` through :func:`numpy.linalg.svd`.
- :class:`TruncatedSVD` - ARPACK through :func:`scipy.sparse.linalg.svds`.
- :class:`RandomizedSVD` - Halko et al. through
  :func:`sklearn.utils.extmath.randomized_svd`.

Approximate backends carry a ``rank`` that upper-bounds the number of
factors computed. All backends return singular values in descending order
with a deterministic sign convention.
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass
from typing import TYPE_CHECKING, ClassVar, Protocol

import numpy as np
from scipy.sparse.linalg import ArpackError, ArpackNoConvergence, svds
from sklearn.utils.extmath import randomized_svd

from scruv.core.exceptions import ScruvValueError, SVDBackendError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    SVDTriplet = tuple[NDArray[np.float64], NDArray[np.float64], NDArray[np.float64]]


class SVDBackend(Protocol):
    name: ClassVar[str]

    @property
    def rank_bound(self) -> int | None: ...

    def compute_svd(self, matrix: NDArray[np.float64], target_rank: int) -> SVDTriplet: ...


def _flip_signs(U: np.ndarray, Vt: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """
    Enforce deterministic sign convention on SVD results.
    For each component (row in Vt), find the element with the largest absolute value.
    If this element is negative, multiply both the component (row in Vt) and
    the corresponding score (column in U) by -1.

    Ref: Bro, R., et al. (2008). Resolving the sign ambiguity in the singular value decomposition.
    """
    if Vt.shape[0] == 0:
        return U, Vt
    idx = np.argmax(np.abs(Vt), axis=1)
    signs = np.sign(Vt[np.arange(Vt.shape[0]), idx])
    signs[signs == 0] = 1.0
    return U * signs, Vt * signs[:, None]


def _check_rank(target_rank: int) -> None:
    if target_rank < 1:
        raise ScruvValueError(
            f"target_rank must be >= 1, got {target_rank}",
            parameter="target_rank",
            value=target_rank,
        )


@dataclass(frozen=True)
class ExactSVD:
    """Full thin SVD, truncated to ``target_rank`` afterwards."""

    name: ClassVar[str] = "exact"

    @property
    def rank_bound(self) -> int | None:
        return None

    def compute_svd(self, matrix: NDArray[np.float64], target_rank: int) -> SVDTriplet:
        _check_rank(target_rank)
        try:
            U, S, Vt = np.linalg.svd(matrix, full_matrices=False)
        except np.linalg.LinAlgError as err:
            raise SVDBackendError(str(err), backend=self.name) from err
        r = min(target_rank, S.shape[0])
        U, Vt = _flip_signs(U[:, :r], Vt[:r])
        return U, S[:r], Vt


@dataclass(frozen=True)
class TruncatedSVD:
    """ARPACK partial SVD of the leading ``min(rank, target_rank)`` triplets.

    Falls back to :class:`ExactSVD` (with a warning) when the requested
    rank is not strictly below the smaller matrix dimension, which ARPACK
    cannot handle.
    """

    rank: int = 50
    random_state: int = 0
    name: ClassVar[str] = "truncated"

    def __post_init__(self) -> None:
        _check_rank(self.rank)

    @property
    def rank_bound(self) -> int | None:
        return self.rank

    def compute_svd(self, matrix: NDArray[np.float64], target_rank: int) -> SVDTriplet:
        _check_rank(target_rank)
        r = min(target_rank, self.rank)
        if r >= min(matrix.shape):
            warnings.warn(
                f"Truncated SVD cannot compute {r} components of a {matrix.shape} matrix; "
                "using the exact SVD instead.",
                UserWarning,
                stacklevel=2,
            )
            return ExactSVD().compute_svd(matrix, r)
        try:
            U, S, Vt = svds(matrix, k=r, random_state=self.random_state)
        except (ArpackNoConvergence, ArpackError) as err:
            raise SVDBackendError(str(err), backend=self.name) from err
        order = np.argsort(S)[::-1]
        U, Vt = _flip_signs(U[:, order], Vt[order])
        return U, S[order], Vt


@dataclass(frozen=True)
class RandomizedSVD:
    """Randomized SVD; deterministic for a fixed ``seed``."""

    rank: int = 50
    seed: int = 0
    n_oversamples: int = 10
    n_iter: int | str = "auto"
    name: ClassVar[str] = "randomized"

    def __post_init__(self) -> None:
        _check_rank(self.rank)

    @property
    def rank_bound(self) -> int | None:
        return self.rank

    def compute_svd(self, matrix: NDArray[np.float64], target_rank: int) -> SVDTriplet:
        _check_rank(target_rank)
        r = min(target_rank, self.rank, min(matrix.shape))
        try:
            U, S, Vt = randomized_svd(
                matrix,
                n_components=r,
                n_oversamples=self.n_oversamples,
                n_iter=self.n_iter,
                random_state=self.seed,
                flip_sign=False,
            )
        except np.linalg.LinAlgError as err:
            raise SVDBackendError(str(err), backend=self.name) from err
        U, Vt = _flip_signs(U, Vt)
        return U, S, Vt


_BACKENDS = {"exact": ExactSVD, "truncated": TruncatedSVD, "randomized": RandomizedSVD}


def get_svd_backend(method: str = "exact", rank: int = 50, seed: int = 0) -> SVDBackend:
    """Build a backend from its name.

    Parameters
    ----------
    method : {"exact", "truncated", "randomized"}
        Backend name.
    rank : int, default=50
        Rank bound for the approximate backends (``svd_k``).
    seed : int, default=0
        Random state for the approximate backends.
    """
    if method not in _BACKENDS:
        raise ScruvValueError(
            f"Unknown SVD method {method!r}; choose from {sorted(_BACKENDS)}",
            parameter="svd_method",
            value=method,
        )
    if method == "exact":
        return ExactSVD()
    if method == "truncated":
        return TruncatedSVD(rank=rank, random_state=seed)
    return RandomizedSVD(rank=rank, seed=seed)


def compute_svd(
    matrix: NDArray[np.float64], target_rank: int, backend: SVDBackend | None = None
) -> SVDTriplet:
    """Run ``backend.compute_svd``; exact SVD when ``backend`` is None."""
    return (backend or ExactSVD()).compute_svd(matrix, target_rank)
