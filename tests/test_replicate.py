"""Tests for scruv.ruv.replicate."""

import numpy as np
import pytest
import scipy.sparse as sp
from numpy.testing import assert_allclose, assert_array_equal

from scruv.core.exceptions import (
    DegeneracyError,
    DimensionError,
    ScruvValueError,
    ValidationError,
)
from scruv.ruv.replicate import (
    is_partition,
    replicate_labels,
    replicate_matrix,
    replicate_residuals,
    to_logical,
    validate_replicate_matrix,
)


class TestToLogical:
    """Tests for control index conversion."""

    def test_indices(self):
        mask = to_logical([0, 3], 5)
        assert_array_equal(mask, [True, False, False, True, False])

    def test_mask_is_copied(self):
        ctl = np.array([True, False, True])
        mask = to_logical(ctl, 3)
        mask[0] = False
        assert ctl[0]

    def test_mask_length_mismatch(self):
        with pytest.raises(DimensionError):
            to_logical(np.array([True, False]), 3)

    def test_out_of_range(self):
        with pytest.raises(ScruvValueError):
            to_logical([0, 7], 5)

    def test_empty_selection(self):
        with pytest.raises(DegeneracyError, match="No negative control"):
            to_logical(np.zeros(4, dtype=bool), 4)

    def test_float_indices_rejected(self):
        with pytest.raises(ValidationError):
            to_logical([0.0, 1.0], 4)


class TestReplicateMatrix:
    """Tests for building and validating replicate matrices."""

    def test_first_appearance_order(self):
        M = replicate_matrix(["z", "a", "z", "b"]).toarray()
        expected = np.array([[1, 0, 0], [0, 1, 0], [1, 0, 0], [0, 0, 1]], dtype=float)
        assert_array_equal(M, expected)

    def test_validate_expands_labels(self):
        M = validate_replicate_matrix(np.array([1, 1, 2, 2, 3]), 5)
        assert sp.issparse(M)
        assert M.shape == (5, 3)
        assert is_partition(M)

    def test_validate_accepts_dense(self):
        dense = np.array([[1, 0], [0, 1], [1, 1]])
        M = validate_replicate_matrix(dense, 3)
        assert_array_equal(M.toarray(), dense)
        assert not is_partition(M)

    def test_row_mismatch(self):
        with pytest.raises(DimensionError):
            validate_replicate_matrix(np.eye(3), 4)

    def test_non_binary(self):
        with pytest.raises(ValidationError, match="binary"):
            validate_replicate_matrix(np.array([[1, 0], [0, 2]]), 2)

    def test_empty_row(self):
        M = np.array([[1, 0], [0, 0], [0, 1]])
        with pytest.raises(DegeneracyError, match="belong to no replicate set"):
            validate_replicate_matrix(M, 3)

    def test_empty_column_dropped(self):
        M = np.array([[1, 0, 0], [0, 0, 1], [1, 0, 0]])
        with pytest.warns(UserWarning, match="empty replicate column"):
            out = validate_replicate_matrix(M, 3)
        assert out.shape == (3, 2)
        assert_array_equal(out.toarray(), M[:, [0, 2]])

    def test_replicate_labels(self):
        M = np.array([[0, 1], [1, 0], [0, 1], [1, 1]])
        assert_array_equal(replicate_labels(M), [1, 0, 1, 0])


class TestReplicateResiduals:
    """Tests for projecting out the replicate structure."""

    def test_partition_subtracts_group_means(self, rng):
        labels = np.array([0, 0, 1, 1, 1, 2])
        M = validate_replicate_matrix(labels, 6)
        Yc = rng.normal(size=(6, 4))
        res = replicate_residuals(Yc, M)

        expected = Yc.copy()
        for g in np.unique(labels):
            expected[labels == g] -= Yc[labels == g].mean(axis=0)
        assert_allclose(res, expected)

    def test_overlapping_sets(self, rng):
        """Non-partition M uses the normal equations; residuals are orthogonal to M."""
        M_dense = np.array(
            [
                [1, 0, 0],
                [1, 0, 0],
                [1, 0, 1],
                [0, 1, 1],
                [0, 1, 0],
                [0, 1, 0],
            ],
            dtype=float,
        )
        M = validate_replicate_matrix(M_dense, 6)
        Yc = rng.normal(size=(6, 3))
        res = replicate_residuals(Yc, M)

        coef, *_ = np.linalg.lstsq(M_dense, Yc, rcond=None)
        assert_allclose(res, Yc - M_dense @ coef, atol=1e-10)
        assert_allclose(M_dense.T @ res, 0.0, atol=1e-10)

    def test_singular_gram(self, rng):
        """Duplicated replicate columns make M'M singular."""
        M_dense = np.array([[1, 1, 0], [1, 1, 0], [0, 0, 1], [0, 0, 1]], dtype=float)
        M = validate_replicate_matrix(M_dense, 4)
        with pytest.raises(DegeneracyError, match="singular"):
            replicate_residuals(rng.normal(size=(4, 2)), M)

    def test_row_mismatch(self, rng):
        M = validate_replicate_matrix(np.array([0, 0, 1]), 3)
        with pytest.raises(DimensionError):
            replicate_residuals(rng.normal(size=(4, 2)), M)
