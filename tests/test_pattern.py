"""Tests for SparsityPattern and ColoredPattern."""

import numpy as np
import pytest

from nlpeval import ColoredPattern, SparsityPattern, hessian_color_preprocess


class TestValidation:
    """Test input validation."""

    def test_mismatched_rows_cols_raises(self):
        """rows and cols with different lengths raise ValueError."""
        with pytest.raises(ValueError, match="same length"):
            SparsityPattern.from_coordinates([0, 1], [0], (2, 2))


class TestConstruction:
    """Test SparsityPattern construction methods."""

    def test_from_coordinates(self):
        """Basic construction from row/col arrays."""
        pattern = SparsityPattern.from_coordinates([0, 0, 1, 2], [0, 1, 1, 2], (3, 3))

        assert pattern.shape == (3, 3)
        assert pattern.nnz == 4
        assert pattern.m == 3
        assert pattern.n == 3
        assert pattern.rows.dtype == np.int32
        np.testing.assert_array_equal(pattern.rows, [0, 0, 1, 2])
        np.testing.assert_array_equal(pattern.cols, [0, 1, 1, 2])

    def test_from_coordinates_empty(self):
        """Construction with no non-zeros."""
        pattern = SparsityPattern.from_coordinates([], [], (3, 4))

        assert pattern.shape == (3, 4)
        assert pattern.nnz == 0

    def test_from_dense(self):
        """Construction from dense matrix."""
        dense = np.array([[1, 0, 1], [0, 1, 0], [1, 1, 0]])
        pattern = SparsityPattern.from_dense(dense)

        assert pattern.shape == (3, 3)
        assert pattern.nnz == 5
        np.testing.assert_array_equal(pattern.todense(), (dense != 0).astype(np.int8))

    def test_from_edges_mirrors_off_diagonal(self):
        """Lower-triangle pairs give a symmetric pattern."""
        pattern = SparsityPattern.from_edges([(0, 0), (2, 0), (2, 1)], 3)

        expected = np.array([[1, 0, 1], [0, 0, 1], [1, 1, 0]], dtype=np.int8)
        np.testing.assert_array_equal(pattern.todense(), expected)
        assert pattern.nnz == 5


class TestProperties:
    """Test computed properties."""

    def test_col_to_rows(self):
        """col_to_rows mapping."""
        pattern = SparsityPattern.from_coordinates([0, 0, 1, 2], [0, 1, 1, 2], (3, 3))

        assert pattern.col_to_rows == {0: [0], 1: [0, 1], 2: [2]}

    def test_col_to_rows_caching(self):
        """col_to_rows is cached."""
        pattern = SparsityPattern.from_coordinates([0, 1], [0, 1], (2, 2))

        assert pattern.col_to_rows is pattern.col_to_rows

    def test_adjacency_ignores_diagonal(self):
        pattern = SparsityPattern.from_edges([(0, 0), (1, 0), (2, 2)], 3)

        assert pattern.adjacency == [{1}, {0}, set()]

    def test_repr_compact(self):
        pattern = SparsityPattern.from_coordinates([0, 1], [0, 1], (2, 2))
        assert repr(pattern) == "SparsityPattern(shape=(2, 2), nnz=2)"


class TestColoredPattern:
    """Test the per-function recovery plan."""

    def test_local_index_space(self):
        """Only variables in the Hessian edges get a local index."""
        hess_I, hess_J, colored = hessian_color_preprocess([(7, 2), (7, 7)], 10)

        assert isinstance(colored, ColoredPattern)
        np.testing.assert_array_equal(colored.local_indices, [2, 7])
        assert colored.num_local == 2
        assert colored.sparsity.shape == (2, 2)
        np.testing.assert_array_equal(hess_I, [7, 7])
        np.testing.assert_array_equal(hess_J, [2, 7])
        np.testing.assert_array_equal(colored.hess_rows, [1, 1])
        np.testing.assert_array_equal(colored.hess_cols, [0, 1])

    def test_seed_matrix(self):
        hess_I, hess_J, colored = hessian_color_preprocess(
            [(0, 0), (1, 1), (2, 2), (1, 0)], 3
        )
        seed = colored.seed_matrix()

        assert seed.shape == (3, colored.num_colors)
        # every variable in exactly one color
        np.testing.assert_array_equal(seed.sum(axis=1), np.ones(3))
        for local, color in enumerate(colored.colors):
            assert seed[local, color] == 1.0
        # coupled variables never share a color
        assert colored.colors[0] != colored.colors[1]

    def test_fill_seed_overwrites_buffer(self):
        """A buffer holding probing results is reset to the indicator columns."""
        _, _, colored = hessian_color_preprocess([(0, 0), (1, 0), (2, 2)], 3)
        seed = np.full((colored.num_local, colored.num_colors), -3.5)

        colored.fill_seed(seed)

        np.testing.assert_array_equal(seed, colored.seed_matrix())
        np.testing.assert_array_equal(seed.sum(axis=1), np.ones(3))

    def test_empty(self):
        hess_I, hess_J, colored = hessian_color_preprocess([], 4)

        assert len(hess_I) == 0
        assert len(hess_J) == 0
        assert colored.nnz == 0
        assert colored.num_colors == 0
        assert colored.seed_matrix().shape == (0, 0)

    def test_repr(self):
        _, _, colored = hessian_color_preprocess([(0, 0), (1, 1)], 2)
        assert repr(colored) == "ColoredPattern(2 local variables, nnz=2, 1 color)"
