"""
EM Estimation of a Latent Joint Multinomial

The full joint P(X, Y, Z) is the multinomial parameter theta. Observations are:

    complete  - fully classified counts over all axes (Sample C, optionally
                inverse-probability weighted, or a calibrated version of it)
    partial   - counts over a subset of the axes (Sample A over (X, Y),
                Sample B over (X, Z)); the unobserved axes are missing

E-step: each partial count n_S(s) is spread over the cells consistent with s
in proportion to theta(cell | s), giving expected complete-data counts.
M-step: theta is the normalized expected count table, optionally raked to
known marginal constraints.

theta starts strictly positive (uniform, marginal-consistent, or a supplied
table mixed with the uniform table), so every conditional ratio is defined
even for cells with zero observed count. The loop stops when the largest
change in theta falls below `tol`; reaching `max_iter` returns the partial
estimate with converged=False and a NotFullyConverged warning.

Key Classes:
    EMEstimator - Configured EM engine
    EMResult - Estimated table and convergence diagnostics
"""

import warnings
import numpy as np
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .exceptions import DegenerateTable, NotFullyConverged
from .ipf import expand_to, marginal_array, rake_once, target_positions
from .table import ContingencyTable


INIT_POLICIES = ('uniform', 'marginal')


@dataclass
class EMResult:
    """
    Output of an EM run.

    Attributes:
        table: Estimated probability table
        converged: Whether tol was reached before max_iter
        n_iterations: Number of EM iterations
        max_change: Largest cell change in the final iteration
        log_likelihood: Observed-data log-likelihood at the estimate
        history: Log-likelihood per iteration
    """
    table: ContingencyTable
    converged: bool
    n_iterations: int
    max_change: float
    log_likelihood: float
    history: List[float] = field(default_factory=list)


def _log_likelihood(theta: np.ndarray, complete: np.ndarray, partial_plan) -> float:
    with np.errstate(divide='ignore', invalid='ignore'):
        ll = float(np.sum(np.where(complete > 0, complete * np.log(theta), 0.0)))
        for counts, positions in partial_plan:
            marg = marginal_array(theta, positions)
            ll += float(np.sum(np.where(counts > 0, counts * np.log(marg), 0.0)))
    return ll


class EMEstimator:
    """
    EM for a joint multinomial observed through complete and partial tables.

    Example:
        em = EMEstimator(tol=1e-8, max_iter=2000)
        result = em.fit(samples.c, partial=[samples.a, samples.b])
        result.table  # estimated P(X, Y, Z)
    """

    def __init__(
        self,
        tol: float = 1e-8,
        max_iter: int = 2000,
        init: str = 'uniform',
        init_smoothing: float = 0.01,
        warn: bool = True,
        verbose: bool = False
    ):
        """
        Args:
            tol: Max absolute change in theta between iterations for convergence
            max_iter: Maximum number of iterations
            init: 'uniform' or 'marginal' starting point when no init table is given
            init_smoothing: Weight of the uniform table mixed into any starting table
            warn: Emit NotFullyConverged when max_iter is hit
            verbose: Print progress messages
        """
        if tol <= 0:
            raise ValueError(f"tol must be > 0, got {tol}")
        if max_iter < 1:
            raise ValueError(f"max_iter must be >= 1, got {max_iter}")
        if init not in INIT_POLICIES:
            raise ValueError(f"Unknown init policy: {init}. Use one of {INIT_POLICIES}")
        if not 0.0 < init_smoothing <= 1.0:
            raise ValueError(f"init_smoothing must be in (0, 1], got {init_smoothing}")
        self.tol = tol
        self.max_iter = max_iter
        self.init = init
        self.init_smoothing = init_smoothing
        self.warn = warn
        self.verbose = verbose

    def _log(self, msg: str):
        if self.verbose:
            print(msg)

    def initial_theta(
        self,
        complete: ContingencyTable,
        partial_plan,
        init_table: Optional[ContingencyTable] = None
    ) -> np.ndarray:
        """Strictly positive starting parameter."""
        uniform = np.full(complete.shape, 1.0 / complete.n_cells)

        if init_table is not None:
            complete.check_same_axes(init_table)
            start = init_table.normalize().to_array()
        elif self.init == 'marginal' and partial_plan:
            start = uniform.copy()
            for counts, positions in partial_plan:
                total = counts.sum()
                if total > 0:
                    start = rake_once(start, counts / total, positions)
            start = start / start.sum()
        else:
            return uniform

        return (1.0 - self.init_smoothing) * start + self.init_smoothing * uniform

    def fit(
        self,
        complete: ContingencyTable,
        partial: Sequence[ContingencyTable] = (),
        init_table: Optional[ContingencyTable] = None,
        c_weights: Optional[ContingencyTable] = None,
        constraints: Sequence[ContingencyTable] = ()
    ) -> EMResult:
        """
        Run EM to convergence.

        Args:
            complete: Fully classified counts (not modified)
            partial: Count tables over subsets of complete's axes
            init_table: Optional starting table (mixed with uniform)
            c_weights: Optional per-cell weights for the complete counts,
                       e.g. inverse inclusion probabilities; the weighted
                       counts are rescaled to the original total
            constraints: Optional marginal tables the M-step is raked to

        Returns:
            EMResult
        """
        complete_arr = complete.to_array()
        if c_weights is not None:
            complete.check_same_axes(c_weights)
            weighted = complete_arr * c_weights.values
            if weighted.sum() > 0:
                complete_arr = weighted * (complete_arr.sum() / weighted.sum())

        partial_plan = [(table.to_array(), target_positions(complete, table)) for table in partial]
        constraint_plan = [
            (table.normalize().to_array(), target_positions(complete, table)) for table in constraints
        ]

        total = complete_arr.sum() + sum(counts.sum() for counts, _ in partial_plan)
        if total <= 0:
            raise DegenerateTable("EM needs at least one observed unit")

        theta = self.initial_theta(complete, partial_plan, init_table)
        ndim = theta.ndim

        history = []
        converged = False
        max_change = np.inf
        n_iter = 0

        for n_iter in range(1, self.max_iter + 1):
            # E-step
            expected = complete_arr.copy()
            for counts, positions in partial_plan:
                denom = marginal_array(theta, positions)
                with np.errstate(divide='ignore', invalid='ignore'):
                    ratio = np.where(denom > 0, counts / denom, 0.0)
                expected += theta * expand_to(ratio, positions, ndim)

            # M-step
            new_theta = expected / expected.sum()
            for target, positions in constraint_plan:
                new_theta = rake_once(new_theta, target, positions)
            if constraint_plan:
                new_theta = new_theta / new_theta.sum()

            max_change = float(np.max(np.abs(new_theta - theta)))
            theta = new_theta
            history.append(_log_likelihood(theta, complete_arr, partial_plan))

            if max_change < self.tol:
                converged = True
                break

        log_likelihood = history[-1]
        self._log(
            f"EM: {n_iter} iterations, converged={converged}, "
            f"max_change={max_change:.2e}, loglik={log_likelihood:.4f}"
        )

        if not converged and self.warn:
            warnings.warn(
                f"EM stopped after {self.max_iter} iterations with max change "
                f"{max_change:.3e} (tol={self.tol:.1e})",
                NotFullyConverged,
                stacklevel=2
            )

        return EMResult(
            table=complete.with_values(theta),
            converged=converged,
            n_iterations=n_iter,
            max_change=max_change,
            log_likelihood=log_likelihood,
            history=history
        )
