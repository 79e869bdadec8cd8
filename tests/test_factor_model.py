"""Tests for scruv.ruv.factor_model (RUV-III estimation)."""

import dataclasses

import numpy as np
import pytest
from numpy.testing import assert_allclose, assert_array_equal

from scruv.core.exceptions import DegeneracyError, NumericalError, ScruvValueError
from scruv.ruv.factor_model import FactorModel, RuvFit, check_k, fast_ruviii, fit_factor_model
from scruv.ruv.svd import RandomizedSVD, TruncatedSVD


def _reference_ruviii(Y, ctl, k, M):
    """Direct dense RUV-III: residual SVD, loadings, W and correction."""
    Yc = Y[:, ctl]
    coef, *_ = np.linalg.lstsq(M, Yc, rcond=None)
    Y0 = Yc - M @ coef
    U = np.linalg.svd(Y0, full_matrices=False)[0]
    alpha = (U.T @ Y)[:k]
    ac = alpha[:, ctl]
    W = Yc @ ac.T @ np.linalg.inv(ac @ ac.T)
    return Y - W @ alpha


class TestCheckK:
    """Tests for factor-count validation."""

    def test_valid(self):
        assert check_k(np.int64(3), 10) == 3

    @pytest.mark.parametrize("k", [-1, 2.5, True, "3"])
    def test_invalid_type_or_sign(self, k):
        with pytest.raises(ScruvValueError):
            check_k(k, 10)

    def test_not_below_controls(self):
        with pytest.raises(DegeneracyError, match="control genes"):
            check_k(10, 10)


class TestFitFactorModel:
    """Tests for the shared unwanted-variation basis."""

    def test_shape_and_metadata(self, small_sim, small_std, small_model):
        # 60 cells, 3 replicate sets, 50 controls: min(57, 50) factors
        assert small_model.n_factors == 50
        assert small_model.n_genes == small_sim.Y.shape[1]
        assert small_model.n_controls == 50
        assert small_model.n_replicate_sets == 3
        assert small_model.svd_backend == "exact"
        assert np.all(np.diff(small_model.singular_values) <= 0)

    def test_n_factors_bound(self, small_sim, small_std):
        model = fit_factor_model(small_std.stand_y, small_sim.ctl, small_sim.M, n_factors=7)
        assert model.n_factors == 7

    def test_backend_rank_bound(self, small_sim, small_std):
        model = fit_factor_model(
            small_std.stand_y, small_sim.ctl, small_sim.M, svd_backend=TruncatedSVD(rank=4)
        )
        assert model.n_factors == 4
        assert model.svd_backend == "truncated"

    def test_immutable(self, small_model):
        with pytest.raises(ValueError):
            small_model.fullalpha[0, 0] = 1.0
        with pytest.raises(ValueError):
            small_model.ctl[0] = False
        with pytest.raises(dataclasses.FrozenInstanceError):
            small_model.n_replicate_sets = 5

    def test_block_equivalence(self, small_sim, small_std, small_model):
        blocked = fit_factor_model(small_std.stand_y, small_sim.ctl, small_sim.M, block_size=13)
        assert_allclose(blocked.fullalpha, small_model.fullalpha, atol=1e-10)

    def test_no_residual_degrees_of_freedom(self, small_sim, small_std):
        """Every cell in its own replicate set leaves nothing to estimate."""
        M = np.eye(small_sim.Y.shape[0])
        with pytest.raises(DegeneracyError, match="No unwanted factors"):
            fit_factor_model(small_std.stand_y, small_sim.ctl, M)

    def test_non_finite_input(self, small_sim, small_std):
        Y = np.array(small_std.stand_y, copy=True)
        Y[0, 100] = np.inf
        with pytest.raises(NumericalError):
            fit_factor_model(Y, small_sim.ctl, small_sim.M)


class TestFastRUVIII:
    """Tests for the RUV-III correction."""

    def test_matches_reference(self, small_sim, small_std):
        Y = small_std.stand_y
        out = fast_ruviii(Y, small_sim.ctl, 5, small_sim.M)
        expected = _reference_ruviii(Y, small_sim.ctl, 5, small_sim.M)
        assert out.shape == Y.shape
        assert_allclose(out, expected, atol=1e-8)

    def test_return_info(self, small_sim, small_std):
        fit = fast_ruviii(small_std.stand_y, small_sim.ctl, 5, small_sim.M, return_info=True)
        assert isinstance(fit, RuvFit)
        assert fit.k == 5
        assert fit.k_used == 5
        assert fit.W.shape == (small_sim.Y.shape[0], 5)
        assert fit.M.shape == (small_sim.Y.shape[0], 3)
        alpha = fit.factor_model.alpha(5)
        assert_allclose(fit.new_y, small_std.stand_y - fit.W @ alpha, atol=1e-10)

    def test_k_zero_is_identity(self, small_sim, small_std):
        Y = small_std.stand_y
        fit = fast_ruviii(Y, small_sim.ctl, 0, small_sim.M, return_info=True)
        assert_array_equal(fit.new_y, Y)
        assert fit.new_y is not Y
        assert fit.factor_model is None
        assert fit.W.shape == (Y.shape[0], 0)

    def test_reused_basis_matches_refit(self, small_sim, small_std, small_model):
        """Correcting from a stored basis equals fitting from scratch."""
        Y = small_std.stand_y
        for k in (3, 7):
            reused = fast_ruviii(Y, small_sim.ctl, k, small_sim.M, fullalpha=small_model)
            refit = fast_ruviii(Y, small_sim.ctl, k, small_sim.M)
            assert_allclose(reused, refit, atol=1e-10)

    def test_plain_array_basis(self, small_sim, small_std, small_model):
        Y = small_std.stand_y
        from_array = fast_ruviii(
            Y, small_sim.ctl, 4, small_sim.M, fullalpha=np.array(small_model.fullalpha)
        )
        from_model = fast_ruviii(Y, small_sim.ctl, 4, small_sim.M, fullalpha=small_model)
        assert_allclose(from_array, from_model)

    def test_deterministic(self, small_sim, small_std):
        Y = small_std.stand_y
        first = fast_ruviii(Y, small_sim.ctl, 6, small_sim.M)
        second = fast_ruviii(Y, small_sim.ctl, 6, small_sim.M)
        assert_array_equal(first, second)

    def test_randomized_backend_deterministic(self, small_sim, small_std):
        Y = small_std.stand_y
        backend = RandomizedSVD(rank=10, seed=3)
        first = fast_ruviii(Y, small_sim.ctl, 4, small_sim.M, svd_backend=backend)
        second = fast_ruviii(Y, small_sim.ctl, 4, small_sim.M, svd_backend=backend)
        assert_array_equal(first, second)

    def test_block_equivalence(self, small_sim, small_std, small_model):
        Y = small_std.stand_y
        full = fast_ruviii(Y, small_sim.ctl, 5, small_sim.M, fullalpha=small_model)
        blocked = fast_ruviii(Y, small_sim.ctl, 5, small_sim.M, fullalpha=small_model, block_size=11)
        assert_allclose(blocked, full)

    def test_k_truncated_to_available(self, small_sim, small_std):
        """Asking for more factors than fitted warns and uses all of them."""
        model = fit_factor_model(small_std.stand_y, small_sim.ctl, small_sim.M, n_factors=3)
        with pytest.warns(UserWarning, match="Only 3 unwanted factors"):
            fit = fast_ruviii(
                small_std.stand_y, small_sim.ctl, 8, small_sim.M, fullalpha=model, return_info=True
            )
        assert fit.k == 8
        assert fit.k_used == 3

    def test_svd_k_bounds_fitted_factors(self, small_sim, small_std):
        fit = fast_ruviii(small_std.stand_y, small_sim.ctl, 3, small_sim.M, svd_k=6, return_info=True)
        assert fit.factor_model.n_factors == 6
        reference = fast_ruviii(small_std.stand_y, small_sim.ctl, 3, small_sim.M, svd_k=None)
        assert_allclose(fit.new_y, reference, atol=1e-10)

    def test_svd_k_below_k_truncates(self, small_sim, small_std):
        with pytest.warns(UserWarning, match="Only 2 unwanted factors"):
            fit = fast_ruviii(small_std.stand_y, small_sim.ctl, 5, small_sim.M, svd_k=2, return_info=True)
        assert fit.k_used == 2

    def test_svd_k_must_be_positive(self, small_sim, small_std):
        with pytest.raises(ScruvValueError, match="n_factors must be >= 1"):
            fast_ruviii(small_std.stand_y, small_sim.ctl, 3, small_sim.M, svd_k=0)

    def test_k_not_below_controls(self, small_sim, small_std):
        with pytest.raises(DegeneracyError):
            fast_ruviii(small_std.stand_y, small_sim.ctl, 50, small_sim.M)

    def test_empty_replicate_row(self, small_sim, small_std):
        M = np.array(small_sim.M, copy=True)
        M[4] = 0
        with pytest.raises(DegeneracyError, match="no replicate set"):
            fast_ruviii(small_std.stand_y, small_sim.ctl, 3, M)

    def test_ctl_mismatch_with_model(self, small_sim, small_std, small_model):
        ctl = np.array(small_sim.ctl, copy=True)
        ctl[60] = True
        with pytest.raises(ScruvValueError, match="ctl differs"):
            fast_ruviii(small_std.stand_y, ctl, 3, small_sim.M, fullalpha=small_model)

    def test_input_not_mutated(self, small_sim, small_std):
        Y = np.array(small_std.stand_y, copy=True)
        fast_ruviii(Y, small_sim.ctl, 5, small_sim.M)
        assert_array_equal(Y, small_std.stand_y)


class TestFactorModelProjection:
    """Tests for FactorModel helpers."""

    def test_rank_deficient_loadings(self):
        """Identical control loadings make ac ac' singular."""
        fullalpha = np.array([[1.0, 2.0, 3.0, 0.5], [1.0, 2.0, 3.0, -0.5]])
        model = FactorModel(fullalpha=fullalpha, ctl=[0, 1, 2])
        with pytest.raises(NumericalError, match="stage=projection"):
            model.projection(2)

    def test_alpha_rows(self, small_model):
        assert_array_equal(small_model.alpha(4), small_model.fullalpha[:4])
