"""RUV-III batch correction on a container.

Reference
---------
Lin Y, et al. scMerge leverages factor analysis, stable expression, and
pseudoreplication to merge multiple single-cell RNA-seq datasets. PNAS (2019).
"""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path
from typing import Any

import numpy as np

from scruv.config import RuvConfig, load_config
from scruv.core.exceptions import AssayNotFoundError, LayerNotFoundError, ScruvValueError
from scruv.core.structures import ScContainer, ScMatrix
from scruv.ruv.materialize import AdjustedMatrix
from scruv.ruv.replicate import to_logical
from scruv.ruv.selection import sc_ruviii


def _obs_column(container: ScContainer, key: str, parameter: str) -> np.ndarray:
    if key not in container.obs.columns:
        raise ScruvValueError(
            f"{parameter} '{key}' not found in obs. Available columns: {list(container.obs.columns)}",
            parameter=parameter,
            value=key,
        )
    return container.obs[key].to_numpy()


def _resolve_settings(config: RuvConfig | str | Path | None, kwargs: dict[str, Any]) -> dict[str, Any]:
    if not isinstance(config, RuvConfig):
        config = load_config(config)
    settings = config.to_kwargs()
    settings.update(kwargs)
    return settings


def _to_layer(matrix: Any, block_size: int | None) -> ScMatrix:
    if isinstance(matrix, AdjustedMatrix):
        matrix = matrix.to_array(block_size)
    return ScMatrix(X=np.asarray(matrix, dtype=np.float64))


def integrate_ruviii(
    container: ScContainer,
    batch_key: str,
    ctl: str | Sequence[int] | np.ndarray,
    replicate_key: str | None = None,
    M: Any = None,
    k: int | Sequence[int] | None = None,
    cell_type_key: str | None = None,
    assay_name: str = "protein",
    base_layer: str = "raw",
    new_layer_name: str = "ruviii",
    copy: bool = False,
    config: RuvConfig | str | Path | None = None,
    **kwargs: Any,
) -> ScContainer:
    """Remove unwanted variation with RUV-III and store the corrected layer.

    Parameters
    ----------
    container : ScContainer
        Input container with multiple batches.
    batch_key : str
        Column name in obs containing batch labels.
    ctl : str or array-like
        Negative-control genes: name of a boolean column in the assay's
        ``var``, a boolean mask, or integer gene indices.
    replicate_key : str, optional
        Column name in obs holding the replicate set of each cell
        (e.g. pseudo-replicate cluster ids). Exclusive with ``M``.
    M : matrix-like, optional
        Explicit replicate matrix (cells x replicate sets).
    k : int or sequence of int, optional
        Candidate numbers of unwanted factors. Defaults to the configured
        candidates.
    cell_type_key : str, optional
        Column name in obs with cell-type labels used for scoring. The
        replicate sets are used when omitted.
    assay_name : str, default="protein"
        Name of the assay to use.
    base_layer : str, default="raw"
        Layer to use as input (log-scale expression).
    new_layer_name : str, default="ruviii"
        Name of the layer holding the optimal correction. With
        ``return_all=True`` every candidate is also stored as
        ``f"{new_layer_name}_k{k}"``.
    copy : bool, default=False
        Work on a deep copy and leave ``container`` untouched. By default
        the layers and the provenance entry are added in place.
    config : RuvConfig or path, optional
        Settings object or YAML file; packaged defaults when omitted.
    **kwargs : Any
        Overrides passed on to :func:`~scruv.ruv.sc_ruviii`
        (``svd_backend``, ``n_jobs``, ``block_size``, ``observer``, ...).

    Returns
    -------
    ScContainer
        Container with the corrected layer(s): ``container`` itself, or
        its copy when ``copy=True``.

    Raises
    ------
    AssayNotFoundError
        If the specified assay does not exist.
    LayerNotFoundError
        If the specified layer does not exist in the assay.
    ScruvValueError
        If an obs/var key is missing, or replicates are given both (or
        neither) as ``replicate_key`` and ``M``.

    Examples
    --------
    >>> container = integrate_ruviii(
    ...     container, batch_key="batch", ctl="stable", replicate_key="pseudo_rep", k=[5, 10]
    ... )
    >>> container.assays["protein"].layers["ruviii"]
    """
    if assay_name not in container.assays:
        raise AssayNotFoundError(assay_name)

    assay = container.assays[assay_name]
    if base_layer not in assay.layers:
        raise LayerNotFoundError(base_layer, assay_name)

    if (replicate_key is None) == (M is None):
        raise ScruvValueError(
            "Provide exactly one of replicate_key and M.",
            parameter="replicate_key",
            value=replicate_key,
        )

    batch = _obs_column(container, batch_key, "batch_key")
    if replicate_key is not None:
        M = _obs_column(container, replicate_key, "replicate_key")
    cell_type = _obs_column(container, cell_type_key, "cell_type_key") if cell_type_key is not None else None

    if isinstance(ctl, str):
        if ctl not in assay.var.columns:
            raise ScruvValueError(
                f"Control column '{ctl}' not found in var of assay '{assay_name}'.",
                parameter="ctl",
                value=ctl,
            )
        ctl_col = ctl
        ctl = assay.var[ctl].to_numpy().astype(bool)
    else:
        ctl_col = None

    settings = _resolve_settings(config, kwargs)
    if k is not None:
        settings["k"] = k
    candidates = settings.pop("k")

    if copy:
        container = container.copy()
        assay = container.assays[assay_name]

    X = assay.layers[base_layer].X
    res = sc_ruviii(X, M, ctl, candidates, cell_type=cell_type, batch=batch, **settings)

    block_size = settings.get("block_size")
    assay.add_layer(new_layer_name, _to_layer(res.optimal, block_size))
    if settings.get("return_all", True):
        for kk, matrix in res.new_y.items():
            assay.add_layer(f"{new_layer_name}_k{kk}", _to_layer(matrix, block_size))

    backend = res.factor_model.svd_backend if res.factor_model is not None else None
    container.log_operation(
        action="integration_ruviii",
        params={
            "batch_key": batch_key,
            "assay": assay_name,
            "base_layer": base_layer,
            "replicate_key": replicate_key,
            "cell_type_key": cell_type_key,
            "ctl": ctl_col,
            "n_controls": int(to_logical(ctl, assay.n_features).sum()),
            "k": res.candidates,
            "optimal_k": res.optimal_k,
            "scores": res.scores.to_dicts(),
            "svd_backend": backend,
            "failures": res.failures,
        },
        description=f"RUV-III correction (optimal k={res.optimal_k}) on assay '{assay_name}'.",
    )

    return container
