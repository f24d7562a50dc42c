"""
Iterative Proportional Fitting (Raking)

Adjusts a starting table so its marginals match a set of target marginals,
each over a subset of the starting table's axes. Targets are visited in a
fixed scan order; every cell is rescaled by target/current for its marginal
cell. Marginal cells whose current mass is zero are left unchanged.

Convergence is declared when the largest absolute cell change between two
successive full passes is below `tol`. Hitting `max_iter` is not an error:
the partial result is returned with `converged=False` and a
NotFullyConverged warning is issued.

Key Classes:
    IPFCalibrator - Configured raking engine
    CalibrationResult - Calibrated table plus convergence diagnostics

Key Functions:
    build_calibration_targets - X, (X,Y), (X,Z) targets from Samples A and B
"""

import warnings
import numpy as np
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from .exceptions import NotFullyConverged, ShapeMismatch
from .table import ContingencyTable


# =============================================================================
# ARRAY HELPERS
# =============================================================================

def marginal_array(arr: np.ndarray, positions: Sequence[int]) -> np.ndarray:
    """Sum `arr` down to the axes at `positions`, returned in that order."""
    positions = list(positions)
    drop = tuple(i for i in range(arr.ndim) if i not in positions)
    summed = arr.sum(axis=drop) if drop else arr
    remaining = sorted(positions)
    return np.transpose(summed, [remaining.index(p) for p in positions])


def expand_to(marg: np.ndarray, positions: Sequence[int], ndim: int) -> np.ndarray:
    """Broadcastable view of a marginal (axes in `positions` order) against an ndim array."""
    positions = list(positions)
    order = np.argsort(positions)
    aligned = np.transpose(marg, order)
    shape = [1] * ndim
    for pos, size in zip(sorted(positions), aligned.shape):
        shape[pos] = size
    return aligned.reshape(shape)


def target_positions(start: ContingencyTable, target: ContingencyTable) -> List[int]:
    """Axis positions of `target` inside `start`, validating names and sizes."""
    positions = []
    for axis in target.axes:
        if axis.name not in start.axis_names:
            raise ShapeMismatch(
                f"Target axis '{axis.name}' not in table axes {list(start.axis_names)}"
            )
        pos = start.axis_index(axis.name)
        if start.axes[pos].size != axis.size:
            raise ShapeMismatch(
                f"Target axis '{axis.name}' has {axis.size} categories, table has {start.axes[pos].size}"
            )
        positions.append(pos)
    return positions


def rake_once(arr: np.ndarray, target: np.ndarray, positions: Sequence[int]) -> np.ndarray:
    """One proportional adjustment of `arr` towards a single marginal."""
    current = marginal_array(arr, positions)
    with np.errstate(divide='ignore', invalid='ignore'):
        factors = np.where(current > 0, target / current, 1.0)
    return arr * expand_to(factors, positions, arr.ndim)


# =============================================================================
# CALIBRATOR
# =============================================================================

@dataclass
class CalibrationResult:
    """
    Output of an IPF run.

    Attributes:
        table: Calibrated table
        converged: Whether the tolerance was reached before max_iter
        n_iterations: Number of full passes over the targets
        max_change: Largest cell change in the final pass
        max_marginal_error: Largest |marginal - target| over all targets
        history: Max cell change per pass
    """
    table: ContingencyTable
    converged: bool
    n_iterations: int
    max_change: float
    max_marginal_error: float
    history: List[float] = field(default_factory=list)


class IPFCalibrator:
    """
    Iterative proportional fitting against one- and multi-way marginals.

    Example:
        calibrator = IPFCalibrator(tol=1e-8, max_iter=500)
        result = calibrator.calibrate(raw_c.normalize(), [p_x, p_xy, p_xz])
        result.table.marginalize(['X', 'Y'])  # ~= p_xy
    """

    def __init__(
        self,
        tol: float = 1e-8,
        max_iter: int = 500,
        warn: bool = True,
        verbose: bool = False
    ):
        """
        Args:
            tol: Max absolute cell change between passes to declare convergence
            max_iter: Maximum number of full passes
            warn: Emit NotFullyConverged when max_iter is hit
            verbose: Print progress messages
        """
        if tol <= 0:
            raise ValueError(f"tol must be > 0, got {tol}")
        if max_iter < 1:
            raise ValueError(f"max_iter must be >= 1, got {max_iter}")
        self.tol = tol
        self.max_iter = max_iter
        self.warn = warn
        self.verbose = verbose

    def _log(self, msg: str):
        if self.verbose:
            print(msg)

    def calibrate(
        self,
        start: ContingencyTable,
        targets: Sequence[ContingencyTable]
    ) -> CalibrationResult:
        """
        Rake `start` to the target marginals.

        Args:
            start: Starting table (not modified)
            targets: Marginal tables, each over a subset of start's axes,
                     applied in the given order on every pass

        Returns:
            CalibrationResult
        """
        if not targets:
            raise ValueError("At least one target marginal is required")

        plan = [(target.to_array(), target_positions(start, target)) for target in targets]
        arr = start.to_array()

        history = []
        converged = False
        max_change = np.inf
        n_iter = 0

        for n_iter in range(1, self.max_iter + 1):
            previous = arr
            for target_arr, positions in plan:
                arr = rake_once(arr, target_arr, positions)
            max_change = float(np.max(np.abs(arr - previous)))
            history.append(max_change)
            if max_change < self.tol:
                converged = True
                break

        marginal_error = max(
            float(np.max(np.abs(marginal_array(arr, positions) - target_arr)))
            for target_arr, positions in plan
        )

        self._log(
            f"IPF: {n_iter} passes, converged={converged}, "
            f"max_change={max_change:.2e}, marginal_error={marginal_error:.2e}"
        )

        if not converged and self.warn:
            warnings.warn(
                f"IPF stopped after {self.max_iter} passes with max cell change "
                f"{max_change:.3e} (tol={self.tol:.1e})",
                NotFullyConverged,
                stacklevel=2
            )

        return CalibrationResult(
            table=start.with_values(arr),
            converged=converged,
            n_iterations=n_iter,
            max_change=max_change,
            max_marginal_error=marginal_error,
            history=history
        )


def calibrate(
    start: ContingencyTable,
    targets: Sequence[ContingencyTable],
    tol: float = 1e-8,
    max_iter: int = 500
) -> CalibrationResult:
    """Convenience wrapper around IPFCalibrator.calibrate."""
    return IPFCalibrator(tol=tol, max_iter=max_iter).calibrate(start, targets)


# =============================================================================
# TARGETS FROM THE UNBIASED SAMPLES
# =============================================================================

def _conditional_on_x(counts: np.ndarray) -> np.ndarray:
    """P(second | X) row-wise; rows with no units get a uniform conditional."""
    row_totals = counts.sum(axis=1, keepdims=True)
    uniform = np.full_like(counts, 1.0 / counts.shape[1])
    with np.errstate(divide='ignore', invalid='ignore'):
        return np.where(row_totals > 0, counts / row_totals, uniform)


def build_calibration_targets(
    sample_a: ContingencyTable,
    sample_b: ContingencyTable,
    harmonize_x: bool = True
) -> Dict[str, ContingencyTable]:
    """
    Derive calibration targets from the unbiased samples.

    P(X) pools the X counts of A and B. P(X,Y) comes from A and P(X,Z) from
    B. With `harmonize_x`, both two-way targets are rebuilt as
    P(second | X) * P_pooled(X) so all three targets share one X marginal
    and IPF can reach a joint fixed point.

    Args:
        sample_a: Counts over (X, Y)
        sample_b: Counts over (X, Z)
        harmonize_x: Re-anchor the two-way targets on the pooled X marginal

    Returns:
        Dict with keys 'X', 'XY', 'XZ'
    """
    if sample_a.axis_names != ('X', 'Y'):
        raise ShapeMismatch(f"Sample A must be over (X, Y), got {sample_a.axis_names}")
    if sample_b.axis_names != ('X', 'Z'):
        raise ShapeMismatch(f"Sample B must be over (X, Z), got {sample_b.axis_names}")
    sample_a.marginalize(['X']).check_same_axes(sample_b.marginalize(['X']))

    pooled_x = (sample_a.marginalize(['X']).to_array() + sample_b.marginalize(['X']).to_array())
    p_x = sample_a.marginalize(['X']).with_values(pooled_x).normalize()

    if harmonize_x:
        px = p_x.values[:, None]
        p_xy = sample_a.with_values(_conditional_on_x(sample_a.to_array()) * px)
        p_xz = sample_b.with_values(_conditional_on_x(sample_b.to_array()) * px)
    else:
        p_xy = sample_a.normalize()
        p_xz = sample_b.normalize()

    return {'X': p_x, 'XY': p_xy, 'XZ': p_xz}
