from __future__ import annotations

import copy
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import numpy as np
import polars as pl
import scipy.sparse as sp


@dataclass
class ProvenanceLog:
    """
    Record of an operation performed on the container.
    """

    timestamp: str
    action: str
    params: dict[str, Any]
    software_version: str | None = None
    description: str | None = None


@dataclass
class ScMatrix:
    """
    Minimal data unit: one expression matrix.

    Attributes:
        X (np.ndarray | sp.spmatrix): Expression values, shape (n_cells, n_genes_local).
                                      Dense or sparse (CSR/CSC).
    """

    X: np.ndarray | sp.spmatrix

    def __post_init__(self):
        if not np.issubdtype(self.X.dtype, np.floating):
            self.X = self.X.astype(np.float64)
        if self.X.ndim != 2:
            raise ValueError(f"X must be 2-dimensional, got shape {self.X.shape}")

    @property
    def shape(self) -> tuple[int, int]:
        return self.X.shape


class Assay:
    """
    Feature sub-object: holds the layers that share one gene space.
    """

    def __init__(
        self,
        var: pl.DataFrame,
        layers: dict[str, ScMatrix] | None = None,
        feature_id_col: str = "_index",
    ):
        """
        Args:
            var (pl.DataFrame): Gene metadata. MUST contain a unique ID column
                                named by feature_id_col.
            layers (dict[str, ScMatrix], optional): Data layers. Defaults to None.
            feature_id_col (str): Column in 'var' used as gene identifier.
        """
        self.feature_id_col = feature_id_col

        if feature_id_col not in var.columns:
            raise ValueError(f"Feature ID column '{feature_id_col}' not found in var.")
        if var[feature_id_col].n_unique() != var.height:
            raise ValueError(f"Feature ID column '{feature_id_col}' is not unique.")

        self.var: pl.DataFrame = var
        self.layers: dict[str, ScMatrix] = layers if layers is not None else {}
        self._validate()

    def _validate(self):
        for name, matrix in self.layers.items():
            if matrix.X.shape[1] != self.n_features:
                raise ValueError(
                    f"Feature dimension mismatch in Layer '{name}': "
                    f"Matrix has {matrix.X.shape[1]}, Assay var has {self.n_features}"
                )

    @property
    def n_features(self) -> int:
        return self.var.height

    def add_layer(self, name: str, matrix: ScMatrix) -> None:
        """
        Add (or replace) a data layer.

        Args:
            name (str): Layer name (e.g. 'raw', 'logcounts', 'ruviii').
            matrix (ScMatrix): Matrix object.
        """
        if matrix.X.shape[1] != self.n_features:
            raise ValueError(
                f"Feature dimension mismatch: Layer has {matrix.X.shape[1]}, "
                f"Assay var has {self.n_features}"
            )
        self.layers[name] = matrix

    def __repr__(self) -> str:
        return f"<Assay n_features={self.n_features}, layers={list(self.layers.keys())}>"

    def subset(self, feature_indices: list[int] | np.ndarray, copy_data: bool = True) -> Assay:
        """
        Return a new Assay with a subset of genes.
        """
        new_var = self.var[feature_indices, :]
        new_layers = {}
        for name, matrix in self.layers.items():
            new_X = matrix.X[:, feature_indices]
            if copy_data and isinstance(new_X, np.ndarray):
                new_X = new_X.copy()
            new_layers[name] = ScMatrix(X=new_X)
        return Assay(var=new_var, layers=new_layers, feature_id_col=self.feature_id_col)


class ScContainer:
    """
    Top-level container: global cell index plus one Assay per gene space.
    """

    def __init__(
        self,
        obs: pl.DataFrame,
        assays: dict[str, Assay] | None = None,
        history: list[ProvenanceLog] | None = None,
        sample_id_col: str = "_index",
    ):
        """
        Args:
            obs (pl.DataFrame): Cell metadata (batch, cell type, replicate ids, ...).
                                MUST contain a unique ID column named by sample_id_col.
            assays (dict[str, Assay], optional): Assay registry. Defaults to None.
            history (list[ProvenanceLog], optional): Provenance log. Defaults to None.
            sample_id_col (str): Column in 'obs' used as cell identifier.
        """
        self.sample_id_col = sample_id_col

        if sample_id_col not in obs.columns:
            raise ValueError(f"Sample ID column '{sample_id_col}' not found in obs.")
        if obs[sample_id_col].n_unique() != obs.height:
            raise ValueError(f"Sample ID column '{sample_id_col}' is not unique.")

        self.obs: pl.DataFrame = obs
        self.assays: dict[str, Assay] = assays if assays is not None else {}
        self.history: list[ProvenanceLog] = history if history is not None else []
        self._validate()

    @property
    def n_samples(self) -> int:
        return self.obs.height

    def _validate(self):
        for assay_name, assay in self.assays.items():
            for layer_name, matrix in assay.layers.items():
                if matrix.X.shape[0] != self.n_samples:
                    raise ValueError(
                        f"Sample dimension mismatch in Assay '{assay_name}', Layer '{layer_name}': "
                        f"Matrix has {matrix.X.shape[0]}, Container obs has {self.n_samples}"
                    )

    def add_assay(self, name: str, assay: Assay) -> None:
        """
        Register a new Assay.
        """
        if name in self.assays:
            raise ValueError(f"Assay '{name}' already exists.")
        for layer_name, matrix in assay.layers.items():
            if matrix.X.shape[0] != self.n_samples:
                raise ValueError(
                    f"Sample dimension mismatch in new Assay '{name}', Layer '{layer_name}': "
                    f"Matrix has {matrix.X.shape[0]}, Container obs has {self.n_samples}"
                )
        self.assays[name] = assay

    def log_operation(
        self,
        action: str,
        params: dict[str, Any],
        description: str | None = None,
        software_version: str | None = None,
    ):
        """
        Log an operation to the history.
        """
        self.history.append(
            ProvenanceLog(
                timestamp=datetime.now().isoformat(),
                action=action,
                params=params,
                software_version=software_version,
                description=description,
            )
        )

    def __repr__(self) -> str:
        assays_desc = ", ".join([f"{k}({v.n_features})" for k, v in self.assays.items()])
        return f"<ScContainer n_samples={self.n_samples}, assays=[{assays_desc}]>"

    def copy(self) -> ScContainer:
        """
        Deep copy: obs, every layer matrix and the history are duplicated.
        """
        new_assays = {
            name: assay.subset(np.arange(assay.n_features), copy_data=True)
            for name, assay in self.assays.items()
        }
        return ScContainer(
            obs=self.obs.clone(),
            assays=new_assays,
            history=[copy.deepcopy(log) for log in self.history],
            sample_id_col=self.sample_id_col,
        )
