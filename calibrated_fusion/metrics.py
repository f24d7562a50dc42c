"""
Accuracy Metrics for Estimated Distribution Tables

Discrepancy measures between an estimated and a true table over the same axes:
- TAD: total absolute difference, sum |est - true|
- RMSE: root mean squared cellwise difference
- MaxAbsError: largest |est - true| over cells
- WorstCellBias: signed est - true at the MaxAbsError cell

plus Cramér's V of a two-way (Y, Z) structure, used to compare the
association implied by an estimate with the true association.

All comparisons raise ShapeMismatch when the tables' axes differ.
"""

import numpy as np
from typing import Dict, Sequence, Tuple
from scipy.stats.contingency import expected_freq

from .table import ContingencyTable


def _differences(estimated: ContingencyTable, true: ContingencyTable) -> np.ndarray:
    estimated.check_same_axes(true)
    return estimated.values - true.values


def total_absolute_difference(estimated: ContingencyTable, true: ContingencyTable) -> float:
    """Sum of |estimated - true| over all cells."""
    return float(np.sum(np.abs(_differences(estimated, true))))


def root_mean_squared_error(estimated: ContingencyTable, true: ContingencyTable) -> float:
    """sqrt(mean((estimated - true)^2)) over all cells."""
    return float(np.sqrt(np.mean(_differences(estimated, true) ** 2)))


def max_absolute_error(estimated: ContingencyTable, true: ContingencyTable) -> float:
    """Largest |estimated - true| over all cells."""
    return float(np.max(np.abs(_differences(estimated, true))))


def worst_cell(estimated: ContingencyTable, true: ContingencyTable) -> Tuple[Tuple[int, ...], float]:
    """
    Cell with the largest absolute error and its signed bias.

    Ties resolve to the first cell in C order.

    Returns:
        (cell indices, estimated - true at that cell)
    """
    diff = _differences(estimated, true)
    flat_idx = int(np.argmax(np.abs(diff)))
    cell = tuple(int(i) for i in np.unravel_index(flat_idx, diff.shape))
    return cell, float(diff[cell])


def worst_cell_bias(estimated: ContingencyTable, true: ContingencyTable) -> float:
    """Signed difference at the cell achieving MaxAbsError."""
    return worst_cell(estimated, true)[1]


def cramers_v(table: ContingencyTable, axes: Sequence[str] = ('Y', 'Z')) -> float:
    """
    Cramér's V between two axes of a table.

    V = sqrt(chi2 / (n * (min(r, c) - 1))), with chi2 computed from the
    table's own (Y, Z) marginal structure. Rows or columns with no mass are
    dropped first. A structure with a single remaining row or column has no
    association and gives 0.

    Args:
        table: Count or probability table containing both axes
        axes: The two axes to measure association between

    Returns:
        V in [0, 1]

    Example:
        >>> diag = ContingencyTable(np.eye(3) / 3, [('Y', 3), ('Z', 3)])
        >>> round(cramers_v(diag), 6)
        1.0
    """
    if len(axes) != 2:
        raise ValueError(f"cramers_v needs exactly two axes, got {list(axes)}")
    two_way = table.marginalize(list(axes)).to_array()

    two_way = two_way[two_way.sum(axis=1) > 0][:, two_way.sum(axis=0) > 0]
    n = two_way.sum()
    k = min(two_way.shape) if two_way.size else 0
    if n <= 0 or k < 2:
        return 0.0

    expected = expected_freq(two_way)
    chi2 = float(np.sum((two_way - expected) ** 2 / expected))
    v = np.sqrt(chi2 / (n * (k - 1)))
    return float(min(v, 1.0))


def summarize_table_accuracy(
    estimated: ContingencyTable,
    true: ContingencyTable,
    prefix: str = ''
) -> Dict[str, float]:
    """
    Compute all cellwise discrepancy metrics in one call.

    Args:
        estimated: Estimated table
        true: True table over the same axes
        prefix: Prepended to every metric name

    Returns:
        Dict with tad, rmse, max_abs_error, worst_cell_bias
    """
    cell, bias = worst_cell(estimated, true)
    return {
        f'{prefix}tad': total_absolute_difference(estimated, true),
        f'{prefix}rmse': root_mean_squared_error(estimated, true),
        f'{prefix}max_abs_error': abs(bias),
        f'{prefix}worst_cell_bias': bias,
    }


def score_estimate(estimated: ContingencyTable, true: ContingencyTable) -> Dict[str, float]:
    """
    Score an estimated P(X, Y, Z) against the truth.

    Both tables are normalized first. Metrics are computed on the full joint
    and, with a 'yz_' prefix, on the derived P(Y, Z). Cramér's V of the
    estimate and its bias against the true V are included.

    Returns:
        Flat dict of metric name -> value
    """
    estimated.check_same_axes(true)
    est = estimated.normalize()
    tru = true.normalize()

    metrics = summarize_table_accuracy(est, tru)
    metrics.update(
        summarize_table_accuracy(est.marginalize(['Y', 'Z']), tru.marginalize(['Y', 'Z']), prefix='yz_')
    )

    v_est = cramers_v(est)
    v_true = cramers_v(tru)
    metrics['cramers_v'] = v_est
    metrics['cramers_v_bias'] = v_est - v_true
    return metrics
