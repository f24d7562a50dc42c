"""
Contingency Tables over Named Categorical Axes

This module provides the table abstraction shared by every other component:
population truth, sample counts, calibration targets and estimates are all
ContingencyTable instances over some subset of the (X, Y, Z) axes.

Tables are immutable. The backing array is read-only; operations such as
marginalize, normalize and scale return new tables. Iterative fits (IPF, EM)
work on plain array copies and wrap the result at the end.

Key Classes:
    CategoricalAxis - Ordered category labels for one variable
    ContingencyTable - Multi-way frequency/probability table

Example:
    >>> table = ContingencyTable.create({'X': 6, 'Y': 3, 'Z': 3}, fill=1.0)
    >>> table.marginalize(['Y', 'Z']).normalize().total
    1.0
"""

import numpy as np
import pandas as pd
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

from .exceptions import DegenerateTable, IndexOutOfRange, InvalidDimension, ShapeMismatch


@dataclass(frozen=True)
class CategoricalAxis:
    """
    Ordered set of category labels for one variable.

    Attributes:
        name: Variable name ('X', 'Y', 'Z')
        size: Number of categories k (>= 1)
        labels: Category labels, default 1..k
    """
    name: str
    size: int
    labels: Tuple = ()

    def __post_init__(self):
        if isinstance(self.size, bool) or not isinstance(self.size, (int, np.integer)):
            raise InvalidDimension(f"Axis '{self.name}' size must be an int, got {self.size!r}")
        if self.size < 1:
            raise InvalidDimension(f"Axis '{self.name}' must have at least 1 category, got {self.size}")
        object.__setattr__(self, 'size', int(self.size))
        if not self.labels:
            object.__setattr__(self, 'labels', tuple(range(1, self.size + 1)))
        else:
            object.__setattr__(self, 'labels', tuple(self.labels))
        if len(self.labels) != self.size:
            raise InvalidDimension(
                f"Axis '{self.name}' has {len(self.labels)} labels for {self.size} categories"
            )


AxisSpec = Union[CategoricalAxis, Tuple[str, int]]


def _as_axes(dimensions: Union[Mapping[str, int], Sequence[AxisSpec]]) -> Tuple[CategoricalAxis, ...]:
    if isinstance(dimensions, Mapping):
        items = [CategoricalAxis(name, size) for name, size in dimensions.items()]
    else:
        items = []
        for dim in dimensions:
            if isinstance(dim, CategoricalAxis):
                items.append(dim)
            else:
                name, size = dim
                items.append(CategoricalAxis(name, size))

    names = [axis.name for axis in items]
    if len(set(names)) != len(names):
        raise InvalidDimension(f"Duplicate axis names: {names}")
    return tuple(items)


class ContingencyTable:
    """
    Immutable multi-way table of non-negative counts or probabilities.

    Cells are addressed by 0-based category indices, one per axis, in axis
    order. Dimensions are fixed at construction.

    Example:
        >>> t = ContingencyTable([[1, 3], [2, 2]], axes=[('Y', 2), ('Z', 2)])
        >>> t.get((0, 1))
        3.0
        >>> t.marginalize(['Z']).values
        array([3., 5.])
    """

    def __init__(
        self,
        values: Union[np.ndarray, Sequence],
        axes: Union[Mapping[str, int], Sequence[AxisSpec]]
    ):
        self._axes = _as_axes(axes)
        arr = np.array(values, dtype=float)

        expected = tuple(axis.size for axis in self._axes)
        if arr.shape != expected:
            raise InvalidDimension(
                f"Values of shape {arr.shape} do not match axes "
                f"{[a.name for a in self._axes]} with sizes {expected}"
            )
        if not np.all(np.isfinite(arr)):
            raise ValueError("Contingency table cells must be finite")
        if np.any(arr < 0):
            raise ValueError(f"Contingency table cells must be >= 0, min={arr.min()}")

        arr.setflags(write=False)
        self._values = arr

    # -----------------------------------------------------------------
    # Construction helpers
    # -----------------------------------------------------------------

    @classmethod
    def create(
        cls,
        dimensions: Union[Mapping[str, int], Sequence[AxisSpec]],
        fill: float = 0.0
    ) -> 'ContingencyTable':
        """Create a table over the given axes with every cell set to `fill`."""
        axes = _as_axes(dimensions)
        shape = tuple(axis.size for axis in axes)
        return cls(np.full(shape, float(fill)), axes)

    @classmethod
    def uniform(cls, dimensions: Union[Mapping[str, int], Sequence[AxisSpec]]) -> 'ContingencyTable':
        """Uniform probability table over the given axes."""
        axes = _as_axes(dimensions)
        n_cells = int(np.prod([axis.size for axis in axes]))
        return cls.create(axes, fill=1.0 / n_cells)

    @classmethod
    def from_frame(
        cls,
        data: pd.DataFrame,
        axes: Sequence[AxisSpec],
        weight: Optional[str] = None
    ) -> 'ContingencyTable':
        """
        Cross-tabulate unit-level data into a count table.

        Columns must be named after the axes and hold category labels.

        Args:
            data: One row per unit
            axes: Axes to tabulate (column names must match axis names)
            weight: Optional column of unit weights

        Returns:
            Count table over `axes`
        """
        axes = _as_axes(axes)
        counts = np.zeros(tuple(axis.size for axis in axes))

        index_columns = []
        for axis in axes:
            lookup = {label: i for i, label in enumerate(axis.labels)}
            codes = data[axis.name].map(lookup)
            if codes.isna().any():
                bad = data.loc[codes.isna(), axis.name].unique()[:5]
                raise IndexOutOfRange(f"Labels {list(bad)} not on axis '{axis.name}'")
            index_columns.append(codes.to_numpy(dtype=int))

        weights = np.ones(len(data)) if weight is None else data[weight].to_numpy(dtype=float)
        np.add.at(counts, tuple(index_columns), weights)
        return cls(counts, axes)

    def with_values(self, values: Union[np.ndarray, Sequence]) -> 'ContingencyTable':
        """New table on the same axes with different cell values."""
        return ContingencyTable(values, self._axes)

    # -----------------------------------------------------------------
    # Introspection
    # -----------------------------------------------------------------

    @property
    def axes(self) -> Tuple[CategoricalAxis, ...]:
        return self._axes

    @property
    def axis_names(self) -> Tuple[str, ...]:
        return tuple(axis.name for axis in self._axes)

    @property
    def shape(self) -> Tuple[int, ...]:
        return self._values.shape

    @property
    def ndim(self) -> int:
        return self._values.ndim

    @property
    def n_cells(self) -> int:
        return int(self._values.size)

    @property
    def values(self) -> np.ndarray:
        """Read-only view of the cell values."""
        return self._values

    @property
    def total(self) -> float:
        return float(self._values.sum())

    def to_array(self) -> np.ndarray:
        """Writable copy of the cell values."""
        return np.array(self._values, dtype=float)

    def axis(self, name: str) -> CategoricalAxis:
        return self._axes[self.axis_index(name)]

    def axis_index(self, name: str) -> int:
        for i, axis in enumerate(self._axes):
            if axis.name == name:
                return i
        raise InvalidDimension(f"Table has no axis '{name}'; axes are {list(self.axis_names)}")

    def is_probability(self, tol: float = 1e-9) -> bool:
        return abs(self.total - 1.0) <= tol

    # -----------------------------------------------------------------
    # Cell access
    # -----------------------------------------------------------------

    def _check_indices(self, indices: Sequence[int]) -> Tuple[int, ...]:
        indices = tuple(indices)
        if len(indices) != self.ndim:
            raise IndexOutOfRange(
                f"Expected {self.ndim} indices for axes {list(self.axis_names)}, got {len(indices)}"
            )
        for axis, idx in zip(self._axes, indices):
            if isinstance(idx, bool) or not isinstance(idx, (int, np.integer)):
                raise IndexOutOfRange(f"Index {idx!r} on axis '{axis.name}' is not an integer")
            if not 0 <= idx < axis.size:
                raise IndexOutOfRange(
                    f"Index {idx} outside axis '{axis.name}' of size {axis.size}"
                )
        return tuple(int(i) for i in indices)

    def get(self, indices: Sequence[int]) -> float:
        """Value at the cell addressed by `indices` (0-based, one per axis)."""
        return float(self._values[self._check_indices(indices)])

    def set(self, indices: Sequence[int], value: float) -> 'ContingencyTable':
        """Return a copy with one cell replaced."""
        idx = self._check_indices(indices)
        arr = self.to_array()
        arr[idx] = value
        return ContingencyTable(arr, self._axes)

    # -----------------------------------------------------------------
    # Table algebra
    # -----------------------------------------------------------------

    def marginalize(self, axes: Sequence[str]) -> 'ContingencyTable':
        """
        Sum out every axis not in `axes`.

        The result's axes follow the order given in `axes`.

        Args:
            axes: Names of the axes to keep

        Returns:
            Lower-dimensional table
        """
        if isinstance(axes, str):
            axes = [axes]
        keep = [self.axis_index(name) for name in axes]
        if len(set(keep)) != len(keep):
            raise InvalidDimension(f"Duplicate axes in marginalize: {list(axes)}")
        if not keep:
            raise InvalidDimension("marginalize needs at least one axis")

        drop = tuple(i for i in range(self.ndim) if i not in keep)
        summed = self._values.sum(axis=drop) if drop else np.array(self._values)

        remaining = [i for i in range(self.ndim) if i in keep]
        order = [remaining.index(i) for i in keep]
        return ContingencyTable(np.transpose(summed, order), [self._axes[i] for i in keep])

    def normalize(self) -> 'ContingencyTable':
        """Rescale so cells sum to 1."""
        total = self.total
        if total <= 0:
            raise DegenerateTable(
                f"Cannot normalize table over {list(self.axis_names)} with total mass {total}"
            )
        return ContingencyTable(self._values / total, self._axes)

    def scale(self, factor: float) -> 'ContingencyTable':
        if factor < 0:
            raise ValueError(f"Scale factor must be >= 0, got {factor}")
        return ContingencyTable(self._values * factor, self._axes)

    def same_axes(self, other: 'ContingencyTable') -> bool:
        return [(a.name, a.size) for a in self._axes] == [(a.name, a.size) for a in other.axes]

    def check_same_axes(self, other: 'ContingencyTable') -> None:
        if not self.same_axes(other):
            raise ShapeMismatch(
                f"Axes differ: {[(a.name, a.size) for a in self._axes]} vs "
                f"{[(a.name, a.size) for a in other.axes]}"
            )

    def allclose(self, other: 'ContingencyTable', atol: float = 1e-9) -> bool:
        self.check_same_axes(other)
        return bool(np.allclose(self._values, other.values, rtol=0.0, atol=atol))

    # -----------------------------------------------------------------
    # Export
    # -----------------------------------------------------------------

    def to_frame(self, value_name: str = 'value') -> pd.DataFrame:
        """Long-format DataFrame: one row per cell, one column per axis label."""
        index = pd.MultiIndex.from_product(
            [axis.labels for axis in self._axes],
            names=list(self.axis_names)
        )
        return pd.DataFrame({value_name: self._values.ravel()}, index=index).reset_index()

    def to_dict(self) -> Dict[str, object]:
        """Plain serializable representation."""
        return {
            'axes': [{'name': a.name, 'size': a.size, 'labels': list(a.labels)} for a in self._axes],
            'values': self._values.tolist(),
        }

    def __repr__(self) -> str:
        dims = ' x '.join(f"{a.name}[{a.size}]" for a in self._axes)
        return f"ContingencyTable({dims}, total={self.total:.6g})"


def xyz_axes(x_categories: int, y_categories: int, z_categories: int) -> List[CategoricalAxis]:
    """Standard (X, Y, Z) axes for the given category counts."""
    return [
        CategoricalAxis('X', x_categories),
        CategoricalAxis('Y', y_categories),
        CategoricalAxis('Z', z_categories),
    ]
