"""Basic tests for ScContainer core structure.

This module contains fundamental tests for ScContainer, Assay and ScMatrix
including creation, validation, layer management and history tracking.
"""

import numpy as np
import polars as pl
import pytest
import scipy.sparse as sp

from scruv.core import Assay, ProvenanceLog, ScContainer, ScMatrix


def _container(n_samples: int = 3, n_features: int = 2) -> ScContainer:
    obs = pl.DataFrame({"_index": [f"S{i}" for i in range(n_samples)]})
    var = pl.DataFrame({"_index": [f"G{j}" for j in range(n_features)]})
    X = np.random.default_rng(42).random((n_samples, n_features))
    assay = Assay(var=var, layers={"raw": ScMatrix(X=X)})
    return ScContainer(obs=obs, assays={"protein": assay})


class TestScMatrix:
    """Test ScMatrix validation."""

    def test_integer_input_cast(self) -> None:
        """Integer matrices are stored as float64."""
        matrix = ScMatrix(X=np.arange(6).reshape(3, 2))
        assert matrix.X.dtype == np.float64
        assert matrix.shape == (3, 2)

    def test_sparse_input(self) -> None:
        matrix = ScMatrix(X=sp.csr_matrix(np.eye(3)))
        assert sp.issparse(matrix.X)

    def test_not_2d(self) -> None:
        with pytest.raises(ValueError, match="2-dimensional"):
            ScMatrix(X=np.zeros(4))


class TestAssay:
    """Test Assay layer handling."""

    def test_missing_feature_id(self) -> None:
        with pytest.raises(ValueError, match="not found in var"):
            Assay(var=pl.DataFrame({"name": ["G1"]}))

    def test_duplicate_feature_id(self) -> None:
        with pytest.raises(ValueError, match="not unique"):
            Assay(var=pl.DataFrame({"_index": ["G1", "G1"]}))

    def test_add_layer_dimension_check(self) -> None:
        container = _container()
        with pytest.raises(ValueError, match="Feature dimension mismatch"):
            container.assays["protein"].add_layer("bad", ScMatrix(X=np.zeros((3, 5))))

    def test_add_layer_replaces(self) -> None:
        assay = _container().assays["protein"]
        assay.add_layer("raw", ScMatrix(X=np.ones((3, 2))))
        np.testing.assert_array_equal(assay.layers["raw"].X, np.ones((3, 2)))

    def test_subset(self) -> None:
        assay = _container(n_features=4).assays["protein"]
        sub = assay.subset([0, 2])
        assert sub.n_features == 2
        assert sub.var["_index"].to_list() == ["G0", "G2"]
        assert sub.layers["raw"].shape == (3, 2)


class TestScContainerBasic:
    """Test basic ScContainer functionality."""

    def test_container_creation(self) -> None:
        container = _container()
        assert container.n_samples == 3
        assert "protein" in container.assays
        assert container.obs["_index"].to_list() == ["S0", "S1", "S2"]

    def test_duplicate_sample_id(self) -> None:
        with pytest.raises(ValueError, match="not unique"):
            ScContainer(obs=pl.DataFrame({"_index": ["S1", "S1"]}))

    def test_sample_dimension_mismatch(self) -> None:
        container = _container()
        var = pl.DataFrame({"_index": ["G0"]})
        assay = Assay(var=var, layers={"raw": ScMatrix(X=np.zeros((5, 1)))})
        with pytest.raises(ValueError, match="Sample dimension mismatch"):
            container.add_assay("rna", assay)

    def test_add_existing_assay(self) -> None:
        container = _container()
        with pytest.raises(ValueError, match="already exists"):
            container.add_assay("protein", container.assays["protein"])

    def test_log_operation(self) -> None:
        container = _container()
        container.log_operation("integration_ruviii", {"optimal_k": 5}, description="RUV-III")
        log = container.history[-1]
        assert isinstance(log, ProvenanceLog)
        assert log.action == "integration_ruviii"
        assert log.params == {"optimal_k": 5}
        assert log.timestamp

    def test_deep_copy(self) -> None:
        container = _container()
        container.log_operation("integration_ruviii", {"k": [5]})
        clone = container.copy()
        clone.assays["protein"].layers["raw"].X[0, 0] = -1.0
        clone.history[0].params["k"].append(10)
        assert container.assays["protein"].layers["raw"].X[0, 0] != -1.0
        assert container.history[0].params["k"] == [5]

    def test_copy_keeps_sparse_layers(self) -> None:
        container = _container()
        container.assays["protein"].add_layer("counts", ScMatrix(X=sp.csr_matrix(np.eye(3, 2))))
        clone = container.copy()
        assert sp.issparse(clone.assays["protein"].layers["counts"].X)
        assert clone.obs.equals(container.obs)

    def test_repr(self) -> None:
        assert repr(_container()) == "<ScContainer n_samples=3, assays=[protein(2)]>"
