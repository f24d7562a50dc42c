"""
Tests for Contingency Tables

Tests the table.py module: construction, cell access, marginalization,
normalization and conversion to/from long-format DataFrames.
"""

import pytest
import numpy as np
import pandas as pd

from calibrated_fusion.table import CategoricalAxis, ContingencyTable, xyz_axes
from calibrated_fusion.exceptions import (
    DegenerateTable,
    IndexOutOfRange,
    InvalidDimension,
    ShapeMismatch,
)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def xyz_table():
    """2 x 3 x 2 table with distinct cell values 0..11."""
    return ContingencyTable(np.arange(12, dtype=float).reshape(2, 3, 2), xyz_axes(2, 3, 2))


@pytest.fixture
def yz_table():
    return ContingencyTable([[1, 3], [2, 2]], axes=[('Y', 2), ('Z', 2)])


# =============================================================================
# TEST: CategoricalAxis
# =============================================================================

class TestCategoricalAxis:
    """Tests for CategoricalAxis."""

    def test_default_labels(self):
        axis = CategoricalAxis('X', 4)
        assert axis.labels == (1, 2, 3, 4)

    def test_custom_labels(self):
        axis = CategoricalAxis('Y', 2, labels=('low', 'high'))
        assert axis.labels == ('low', 'high')

    def test_zero_size_rejected(self):
        with pytest.raises(InvalidDimension):
            CategoricalAxis('X', 0)

    def test_label_count_must_match(self):
        with pytest.raises(InvalidDimension):
            CategoricalAxis('Y', 3, labels=('a', 'b'))


# =============================================================================
# TEST: Construction
# =============================================================================

class TestConstruction:
    """Tests for table creation and validation."""

    def test_create_zero_filled(self):
        table = ContingencyTable.create({'X': 6, 'Y': 3, 'Z': 3})
        assert table.shape == (6, 3, 3)
        assert table.n_cells == 54
        assert table.total == 0.0

    def test_create_with_fill(self):
        table = ContingencyTable.create([('Y', 2), ('Z', 3)], fill=2.0)
        assert table.total == 12.0

    def test_uniform_is_probability(self):
        table = ContingencyTable.uniform({'X': 6, 'Y': 3, 'Z': 3})
        assert table.is_probability()
        assert table.get((0, 0, 0)) == pytest.approx(1 / 54)

    def test_invalid_dimension(self):
        with pytest.raises(InvalidDimension):
            ContingencyTable.create({'X': 0, 'Y': 3})

    def test_shape_mismatch_rejected(self):
        with pytest.raises(InvalidDimension):
            ContingencyTable(np.ones((2, 2)), [('Y', 2), ('Z', 3)])

    def test_duplicate_axes_rejected(self):
        with pytest.raises(InvalidDimension):
            ContingencyTable.create([('Y', 2), ('Y', 2)])

    def test_negative_values_rejected(self):
        with pytest.raises(ValueError):
            ContingencyTable([[1, -1], [0, 0]], [('Y', 2), ('Z', 2)])

    def test_nonfinite_values_rejected(self):
        with pytest.raises(ValueError):
            ContingencyTable([[1, np.nan], [0, 0]], [('Y', 2), ('Z', 2)])

    def test_values_are_read_only(self, yz_table):
        with pytest.raises(ValueError):
            yz_table.values[0, 0] = 10.0

    def test_to_array_is_a_copy(self, yz_table):
        arr = yz_table.to_array()
        arr[0, 0] = 100.0
        assert yz_table.get((0, 0)) == 1.0


# =============================================================================
# TEST: Cell access
# =============================================================================

class TestCellAccess:
    """Tests for get and set."""

    def test_get(self, yz_table):
        assert yz_table.get((0, 1)) == 3.0

    def test_set_returns_new_table(self, yz_table):
        updated = yz_table.set((1, 0), 7.0)
        assert updated.get((1, 0)) == 7.0
        assert yz_table.get((1, 0)) == 2.0

    def test_get_out_of_range(self, yz_table):
        with pytest.raises(IndexOutOfRange):
            yz_table.get((2, 0))

    def test_get_negative_index(self, yz_table):
        with pytest.raises(IndexOutOfRange):
            yz_table.get((-1, 0))

    def test_get_wrong_arity(self, xyz_table):
        with pytest.raises(IndexOutOfRange):
            xyz_table.get((0, 0))

    def test_set_out_of_range(self, yz_table):
        with pytest.raises(IndexOutOfRange):
            yz_table.set((0, 5), 1.0)

    def test_unknown_axis(self, yz_table):
        with pytest.raises(InvalidDimension):
            yz_table.axis_index('X')


# =============================================================================
# TEST: Marginalize / normalize
# =============================================================================

class TestTableAlgebra:
    """Tests for marginalize, normalize and scale."""

    def test_marginalize_one_axis(self, yz_table):
        np.testing.assert_allclose(yz_table.marginalize(['Z']).values, [3.0, 5.0])

    def test_marginalize_string_axis(self, yz_table):
        np.testing.assert_allclose(yz_table.marginalize('Y').values, [4.0, 4.0])

    def test_marginalize_preserves_total(self, xyz_table):
        for axes in (['X'], ['Y', 'Z'], ['X', 'Z'], ['X', 'Y', 'Z']):
            assert xyz_table.marginalize(axes).total == pytest.approx(xyz_table.total)

    def test_marginalize_axis_order(self, xyz_table):
        zx = xyz_table.marginalize(['Z', 'X'])
        xz = xyz_table.marginalize(['X', 'Z'])
        assert zx.axis_names == ('Z', 'X')
        np.testing.assert_allclose(zx.values, xz.values.T)

    def test_marginalize_values(self, xyz_table):
        expected = np.arange(12, dtype=float).reshape(2, 3, 2).sum(axis=0)
        np.testing.assert_allclose(xyz_table.marginalize(['Y', 'Z']).values, expected)

    def test_marginalize_unknown_axis(self, xyz_table):
        with pytest.raises(InvalidDimension):
            xyz_table.marginalize(['W'])

    def test_normalize(self, xyz_table):
        p = xyz_table.normalize()
        assert p.is_probability()
        assert p.get((1, 2, 1)) == pytest.approx(11 / 66)

    def test_marginalize_then_normalize(self, xyz_table):
        for axes in (['X'], ['Z', 'Y'], ['X', 'Y', 'Z']):
            assert abs(xyz_table.marginalize(axes).normalize().total - 1.0) < 1e-9

    def test_normalize_zero_table(self):
        with pytest.raises(DegenerateTable):
            ContingencyTable.create({'Y': 3, 'Z': 3}).normalize()

    def test_scale(self, yz_table):
        assert yz_table.scale(2.0).total == 16.0

    def test_allclose_requires_same_axes(self, yz_table, xyz_table):
        with pytest.raises(ShapeMismatch):
            yz_table.allclose(xyz_table)


# =============================================================================
# TEST: DataFrame conversion
# =============================================================================

class TestFrames:
    """Tests for from_frame / to_frame."""

    def test_from_frame_counts(self):
        df = pd.DataFrame({'Y': [1, 1, 2, 2, 2], 'Z': [1, 2, 2, 2, 1]})
        table = ContingencyTable.from_frame(df, [('Y', 2), ('Z', 2)])
        np.testing.assert_allclose(table.values, [[1, 1], [1, 2]])

    def test_from_frame_weighted(self):
        df = pd.DataFrame({'Y': [1, 2], 'Z': [1, 1], 'w': [0.5, 2.0]})
        table = ContingencyTable.from_frame(df, [('Y', 2), ('Z', 2)], weight='w')
        assert table.get((1, 0)) == 2.0
        assert table.total == 2.5

    def test_from_frame_unknown_label(self):
        df = pd.DataFrame({'Y': [1, 3], 'Z': [1, 1]})
        with pytest.raises(IndexOutOfRange):
            ContingencyTable.from_frame(df, [('Y', 2), ('Z', 2)])

    def test_to_frame_long_format(self, xyz_table):
        df = xyz_table.to_frame('count')
        assert list(df.columns) == ['X', 'Y', 'Z', 'count']
        assert len(df) == 12
        assert df['count'].sum() == xyz_table.total

    def test_frame_round_trip(self, xyz_table):
        df = xyz_table.to_frame('count')
        rebuilt = ContingencyTable.from_frame(df, xyz_table.axes, weight='count')
        assert rebuilt.allclose(xyz_table)

    def test_to_dict(self, yz_table):
        out = yz_table.to_dict()
        assert [a['name'] for a in out['axes']] == ['Y', 'Z']
        assert out['values'] == [[1.0, 3.0], [2.0, 2.0]]
