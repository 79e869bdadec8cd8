"""
Tests for container-level RUV-III batch correction.

Tests cover:
- Layers written for the optimal and every candidate k
- Provenance logging
- Replicates from obs labels or an explicit matrix
- Settings from RuvConfig objects and YAML files
- Missing assays, layers and metadata columns
"""

import numpy as np
import pytest
import yaml

from scruv.config import RuvConfig
from scruv.core.exceptions import (
    AssayNotFoundError,
    ConfigurationError,
    LayerNotFoundError,
    ScruvValueError,
)
from scruv.integration import integrate_ruviii
from scruv.ruv import sc_ruviii

K = [3, 6]


# =============================================================================
# Layers and provenance
# =============================================================================


class TestIntegrateRUVIII:
    """Tests for integrate_ruviii."""

    def test_layers_added(self, small_container):
        out = integrate_ruviii(
            small_container, batch_key="batch", ctl="ctl", replicate_key="replicate", k=K
        )
        layers = out.assays["protein"].layers
        assert "ruviii" in layers
        for k in K:
            assert f"ruviii_k{k}" in layers
            assert layers[f"ruviii_k{k}"].shape == layers["raw"].shape

    def test_optimal_layer_matches_candidate(self, small_container):
        out = integrate_ruviii(
            small_container, batch_key="batch", ctl="ctl", replicate_key="replicate", k=K
        )
        optimal_k = out.history[-1].params["optimal_k"]
        layers = out.assays["protein"].layers
        np.testing.assert_array_equal(layers["ruviii"].X, layers[f"ruviii_k{optimal_k}"].X)

    def test_matches_direct_call(self, small_sim, small_container):
        out = integrate_ruviii(
            small_container, batch_key="batch", ctl="ctl", replicate_key="replicate",
            cell_type_key="cell_type", k=K,
        )
        res = sc_ruviii(
            small_sim.log_counts, small_sim.M, small_sim.ctl, K,
            cell_type=small_sim.cell_type, batch=small_sim.batch,
        )
        assert out.history[-1].params["optimal_k"] == res.optimal_k
        np.testing.assert_allclose(out.assays["protein"].layers["ruviii"].X, res.optimal, atol=1e-10)

    def test_history_logged(self, small_container):
        out = integrate_ruviii(
            small_container, batch_key="batch", ctl="ctl", replicate_key="replicate", k=K
        )
        log = out.history[-1]
        assert log.action == "integration_ruviii"
        assert log.params["batch_key"] == "batch"
        assert log.params["ctl"] == "ctl"
        assert log.params["n_controls"] == 50
        assert log.params["k"] == K
        assert log.params["optimal_k"] in K
        assert len(log.params["scores"]) == 2
        assert log.params["svd_backend"] == "exact"
        assert log.params["failures"] == {}

    def test_return_all_false(self, small_container):
        out = integrate_ruviii(
            small_container, batch_key="batch", ctl="ctl", replicate_key="replicate",
            k=K, return_all=False,
        )
        layers = out.assays["protein"].layers
        assert sorted(layers) == ["raw", "ruviii"]

    def test_custom_layer_name(self, small_container):
        out = integrate_ruviii(
            small_container, batch_key="batch", ctl="ctl", replicate_key="replicate",
            k=4, new_layer_name="corrected",
        )
        assert "corrected" in out.assays["protein"].layers
        assert "corrected_k4" in out.assays["protein"].layers

    def test_copy_leaves_input_untouched(self, small_container):
        out = integrate_ruviii(
            small_container, batch_key="batch", ctl="ctl", replicate_key="replicate", k=K, copy=True
        )
        assert out is not small_container
        assert list(small_container.assays["protein"].layers) == ["raw"]
        assert small_container.history == []
        assert "ruviii" in out.assays["protein"].layers
        assert out.history[-1].action == "integration_ruviii"
        np.testing.assert_array_equal(
            out.assays["protein"].layers["raw"].X, small_container.assays["protein"].layers["raw"].X
        )

    def test_in_place_by_default(self, small_container):
        out = integrate_ruviii(small_container, batch_key="batch", ctl="ctl", replicate_key="replicate", k=K)
        assert out is small_container

    def test_explicit_replicate_matrix(self, small_sim, small_container):
        out = integrate_ruviii(small_container, batch_key="batch", ctl="ctl", M=small_sim.M, k=K)
        assert "ruviii" in out.assays["protein"].layers
        assert out.history[-1].params["replicate_key"] is None

    def test_integer_controls(self, small_container):
        out = integrate_ruviii(
            small_container, batch_key="batch", ctl=np.arange(50), replicate_key="replicate", k=K
        )
        assert out.history[-1].params["ctl"] is None
        assert out.history[-1].params["n_controls"] == 50

    def test_lazy_layers_materialised(self, small_container):
        out = integrate_ruviii(
            small_container, batch_key="batch", ctl="ctl", replicate_key="replicate",
            k=K, lazy=True, block_size=16,
        )
        assert isinstance(out.assays["protein"].layers["ruviii"].X, np.ndarray)

    def test_observer_forwarded(self, small_container):
        events = []
        integrate_ruviii(
            small_container, batch_key="batch", ctl="ctl", replicate_key="replicate",
            k=K, observer=events.append,
        )
        assert events[-1].kind == "optimal_k"


# =============================================================================
# Configuration
# =============================================================================


class TestIntegrationConfig:
    """Settings passed through RuvConfig or YAML files."""

    def test_config_object(self, small_container):
        config = RuvConfig(k=K, svd_method="randomized", svd_k=10)
        out = integrate_ruviii(
            small_container, batch_key="batch", ctl="ctl", replicate_key="replicate", config=config
        )
        assert out.history[-1].params["k"] == K
        assert out.history[-1].params["svd_backend"] == "randomized"

    def test_config_file(self, tmp_path, small_container):
        path = tmp_path / "ruv.yaml"
        path.write_text(yaml.safe_dump({"k": [2, 5], "return_all": False}))
        out = integrate_ruviii(
            small_container, batch_key="batch", ctl="ctl", replicate_key="replicate", config=path
        )
        assert out.history[-1].params["k"] == [2, 5]
        assert sorted(out.assays["protein"].layers) == ["raw", "ruviii"]

    def test_k_overrides_config(self, small_container):
        out = integrate_ruviii(
            small_container, batch_key="batch", ctl="ctl", replicate_key="replicate",
            config=RuvConfig(k=[2, 5]), k=[4],
        )
        assert out.history[-1].params["k"] == [4]

    def test_missing_config_file(self, tmp_path, small_container):
        with pytest.raises(ConfigurationError):
            integrate_ruviii(
                small_container, batch_key="batch", ctl="ctl", replicate_key="replicate",
                config=tmp_path / "missing.yaml",
            )


# =============================================================================
# Errors
# =============================================================================


class TestIntegrationErrors:
    """Input validation of integrate_ruviii."""

    def test_missing_assay(self, small_container):
        with pytest.raises(AssayNotFoundError, match="rna"):
            integrate_ruviii(
                small_container, batch_key="batch", ctl="ctl", replicate_key="replicate", assay_name="rna"
            )

    def test_missing_layer(self, small_container):
        with pytest.raises(LayerNotFoundError, match="log"):
            integrate_ruviii(
                small_container, batch_key="batch", ctl="ctl", replicate_key="replicate", base_layer="log"
            )

    def test_missing_batch_key(self, small_container):
        with pytest.raises(ScruvValueError, match="batch_key"):
            integrate_ruviii(small_container, batch_key="plate", ctl="ctl", replicate_key="replicate", k=K)

    def test_missing_control_column(self, small_container):
        with pytest.raises(ScruvValueError, match="Control column"):
            integrate_ruviii(small_container, batch_key="batch", ctl="stable", replicate_key="replicate", k=K)

    def test_replicates_required(self, small_container):
        with pytest.raises(ScruvValueError, match="exactly one"):
            integrate_ruviii(small_container, batch_key="batch", ctl="ctl", k=K)

    def test_replicates_not_both(self, small_sim, small_container):
        with pytest.raises(ScruvValueError, match="exactly one"):
            integrate_ruviii(
                small_container, batch_key="batch", ctl="ctl", replicate_key="replicate", M=small_sim.M, k=K
            )

    def test_container_untouched_on_error(self, small_container):
        with pytest.raises(ScruvValueError):
            integrate_ruviii(small_container, batch_key="plate", ctl="ctl", replicate_key="replicate", k=K)
        assert list(small_container.assays["protein"].layers) == ["raw"]
        assert small_container.history == []
