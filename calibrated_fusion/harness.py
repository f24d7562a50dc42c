"""
Bootstrap Evaluation Harness

Runs one Scenario for `n_bootstrap` independent replicates:

    population (generated once, read-only) -> draw A, B, C -> each method
    -> score against the truth -> ResultRecord

Replicate r draws all its randomness from SeedSequence([seed, r]), so a run
is reproducible and replicates may execute in any order or in parallel
(ProcessPoolExecutor when n_jobs > 1). Records are sorted by (replicate,
method) before aggregation, which makes aggregated metrics identical across
runs with the same seed regardless of completion order.

A replicate whose Sample C cannot be filled (InsufficientSelectionYield) is
recorded as a ReplicateFailure and excluded from aggregation. Once failures
exceed `max_failure_rate` the run raises ScenarioInfeasible. Any other
exception propagates and aborts the run.

A run can be stopped cooperatively through a threading.Event; replicates
already collected stay valid and the results are flagged as cancelled.
"""

import os
import signal
import time
import threading
import warnings
import numpy as np
import pandas as pd
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from tqdm import tqdm

from .exceptions import InsufficientSelectionYield, NotFullyConverged, ScenarioInfeasible
from .methods import run_method
from .metrics import score_estimate
from .population import Population, generate_population
from .sampler import Sampler, rng_for_replicate
from .scenario import Scenario
from .table import ContingencyTable


# =============================================================================
# RECORDS
# =============================================================================

@dataclass(frozen=True)
class ResultRecord:
    """
    One method's outcome on one replicate.

    Attributes:
        scenario: Scenario name
        method: Method name
        replicate: Replicate index
        metrics: Metric name -> value (see metrics.score_estimate)
        converged: False if the method hit an iteration cap
        n_iterations: Iterations used by the method's final iterative step
        c_yield: Fraction of Sample C candidates kept in this replicate
        estimate: Estimated table (only when the scenario keeps estimates)
    """
    scenario: str
    method: str
    replicate: int
    metrics: Dict[str, float]
    converged: bool = True
    n_iterations: int = 0
    c_yield: float = float('nan')
    estimate: Optional[ContingencyTable] = None

    def to_dict(self) -> Dict[str, Any]:
        out = {
            'scenario': self.scenario,
            'method': self.method,
            'replicate': self.replicate,
            'converged': self.converged,
            'n_iterations': self.n_iterations,
            'c_yield': self.c_yield,
            'metrics': dict(self.metrics),
        }
        if self.estimate is not None:
            out['estimate'] = self.estimate.to_dict()
        return out


@dataclass(frozen=True)
class ReplicateFailure:
    """A replicate skipped because of a scenario-level failure."""
    scenario: str
    replicate: int
    error: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'scenario': self.scenario,
            'replicate': self.replicate,
            'error': self.error,
            'message': self.message,
        }


def run_replicate(
    scenario: Scenario,
    truth: ContingencyTable,
    inclusion: ContingencyTable,
    replicate: int
) -> List[ResultRecord]:
    """
    Sample, estimate and score one replicate.

    NotFullyConverged warnings are silenced here; non-convergence is carried
    on each record instead.

    Raises:
        InsufficientSelectionYield: Sample C could not be filled
    """
    rng = rng_for_replicate(scenario.seed, replicate)
    sampler = Sampler(
        truth, inclusion,
        n_a=scenario.n_a, n_b=scenario.n_b, n_c=scenario.n_c,
        max_candidates=scenario.max_candidates,
        batch_size=scenario.candidate_batch_size
    )
    samples = sampler.sample(rng)
    settings = scenario.method_settings

    records = []
    with warnings.catch_warnings():
        warnings.simplefilter('ignore', NotFullyConverged)
        for method in scenario.methods:
            result = run_method(method, samples, settings, inclusion)
            records.append(ResultRecord(
                scenario=scenario.name,
                method=method,
                replicate=replicate,
                metrics=score_estimate(result.table, truth),
                converged=result.converged,
                n_iterations=result.n_iterations,
                c_yield=samples.c_yield,
                estimate=result.table if scenario.keep_estimates else None
            ))
    return records


def _attempt_replicate(
    scenario: Scenario,
    truth: ContingencyTable,
    inclusion: ContingencyTable,
    replicate: int
) -> Tuple[int, List[ResultRecord], Optional[ReplicateFailure]]:
    try:
        return replicate, run_replicate(scenario, truth, inclusion, replicate), None
    except InsufficientSelectionYield as e:
        failure = ReplicateFailure(
            scenario=scenario.name,
            replicate=replicate,
            error=type(e).__name__,
            message=str(e)
        )
        return replicate, [], failure


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class HarnessResults:
    """
    Output of one scenario run.

    Attributes:
        scenario: The scenario that was run
        records: ResultRecords sorted by (replicate, method order)
        failures: Skipped replicates
        n_requested: Replicates requested (scenario.n_bootstrap)
        cancelled: Whether the run was stopped early
        elapsed: Wall-clock seconds
    """
    scenario: Scenario
    records: List[ResultRecord] = field(default_factory=list)
    failures: List[ReplicateFailure] = field(default_factory=list)
    n_requested: int = 0
    cancelled: bool = False
    elapsed: float = 0.0

    @property
    def n_completed(self) -> int:
        return len({r.replicate for r in self.records})

    @property
    def n_failed(self) -> int:
        return len(self.failures)

    @property
    def n_attempted(self) -> int:
        return self.n_completed + self.n_failed

    @property
    def failure_rate(self) -> float:
        return self.n_failed / self.n_attempted if self.n_attempted else 0.0

    def records_frame(self) -> pd.DataFrame:
        """One row per (replicate, method) with one column per metric."""
        rows = []
        for r in self.records:
            rows.append({
                'scenario': r.scenario,
                'method': r.method,
                'replicate': r.replicate,
                'converged': r.converged,
                'n_iterations': r.n_iterations,
                'c_yield': r.c_yield,
                **r.metrics,
            })
        return pd.DataFrame(rows)

    def summary(self) -> pd.DataFrame:
        """
        Aggregate per method and metric.

        Returns:
            DataFrame with columns method, metric, n, mean, sd, se and one
            column per requested quantile (q0.025, q0.5, ...)
        """
        quantiles = self.scenario.quantiles
        columns = ['method', 'metric', 'n', 'mean', 'sd', 'se'] + [f'q{q:g}' for q in quantiles]
        if not self.records:
            return pd.DataFrame(columns=columns)

        rows = []
        metric_names = list(self.records[0].metrics)
        for method in self.scenario.methods:
            method_records = [r for r in self.records if r.method == method]
            if not method_records:
                continue
            for metric in metric_names:
                values = np.array([r.metrics[metric] for r in method_records], dtype=float)
                n = len(values)
                sd = float(np.std(values, ddof=1)) if n > 1 else float('nan')
                row = {
                    'method': method,
                    'metric': metric,
                    'n': n,
                    'mean': float(np.mean(values)),
                    'sd': sd,
                    'se': sd / np.sqrt(n) if n > 1 else float('nan'),
                }
                for q, value in zip(quantiles, np.quantile(values, quantiles)):
                    row[f'q{q:g}'] = float(value)
                rows.append(row)
        return pd.DataFrame(rows, columns=columns)

    def metric_table(self, stat: str = 'mean') -> pd.DataFrame:
        """Wide method x metric table of one summary statistic."""
        summary = self.summary()
        if summary.empty:
            return pd.DataFrame()
        table = summary.pivot(index='method', columns='metric', values=stat)
        return table.reindex([m for m in self.scenario.methods if m in table.index])

    def convergence_summary(self) -> pd.DataFrame:
        """Per-method count and rate of non-converged replicates."""
        rows = []
        for method in self.scenario.methods:
            flags = [r.converged for r in self.records if r.method == method]
            n_not = sum(1 for ok in flags if not ok)
            rows.append({
                'method': method,
                'n': len(flags),
                'n_not_converged': n_not,
                'not_converged_rate': n_not / len(flags) if flags else 0.0,
            })
        return pd.DataFrame(rows)

    def diagnostics(self) -> Dict[str, Any]:
        """Run-level counts: completed, failed and non-converged replicates."""
        conv = self.convergence_summary()
        return {
            'scenario': self.scenario.name,
            'n_requested': self.n_requested,
            'n_attempted': self.n_attempted,
            'n_completed': self.n_completed,
            'n_failed': self.n_failed,
            'failure_rate': self.failure_rate,
            'cancelled': self.cancelled,
            'elapsed': self.elapsed,
            'not_converged': dict(zip(conv['method'], conv['n_not_converged'])) if len(conv) else {},
        }

    def to_dict(self, include_records: bool = True) -> Dict[str, Any]:
        """Serializable structure keyed by scenario, method and replicate."""
        out = {
            'scenario': self.scenario.to_dict(),
            'diagnostics': self.diagnostics(),
            'summary': self.summary().to_dict(orient='records'),
            'failures': [f.to_dict() for f in self.failures],
        }
        if include_records:
            out['records'] = [r.to_dict() for r in self.records]
        return out

    def get_summary(self) -> str:
        """Human-readable summary of the run."""
        diag = self.diagnostics()
        lines = [
            "=" * 60,
            f"Scenario: {self.scenario.name} ({self.scenario.selection.label})",
            "=" * 60,
            f"Replicates: {diag['n_completed']} completed, {diag['n_failed']} failed "
            f"of {diag['n_requested']} requested"
            + (" [cancelled]" if self.cancelled else ""),
        ]
        for method, n_not in diag['not_converged'].items():
            if n_not:
                lines.append(f"  {method}: {n_not} replicates not fully converged")

        table = self.metric_table('mean')
        if not table.empty:
            cols = [c for c in ('tad', 'rmse', 'max_abs_error', 'worst_cell_bias', 'yz_tad', 'cramers_v')
                    if c in table.columns]
            lines.append("")
            lines.append(table[cols].to_string(float_format=lambda v: f"{v:.4f}"))
        return "\n".join(lines)


def _ignore_sigint():
    signal.signal(signal.SIGINT, signal.SIG_IGN)


def worker_pool(n_jobs: int) -> ProcessPoolExecutor:
    """
    Process pool for parallel replicates.

    Workers ignore SIGINT so Ctrl-C reaches only the parent, which stops the
    run through its cancel event and keeps the finished replicates.
    """
    return ProcessPoolExecutor(max_workers=n_jobs, initializer=_ignore_sigint)


# =============================================================================
# HARNESS
# =============================================================================

class BootstrapHarness:
    """
    Run one scenario's replicates and aggregate the results.

    Example:
        harness = BootstrapHarness(scenario, n_jobs=4)
        results = harness.run()
        print(results.get_summary())
        results.summary()  # method x metric -> mean, sd, quantiles
    """

    def __init__(
        self,
        scenario: Scenario,
        n_jobs: int = 1,
        cancel_event: Optional[threading.Event] = None,
        population: Optional[Population] = None,
        verbose: bool = True
    ):
        """
        Args:
            scenario: Scenario to run
            n_jobs: Worker processes (1 = in-process, -1 = all cores)
            cancel_event: Set to stop the run between replicates
            population: Pre-built population (default: generated from scenario)
            verbose: Print progress and show a progress bar
        """
        if n_jobs == -1:
            n_jobs = os.cpu_count() or 4
        if n_jobs < 1:
            raise ValueError(f"n_jobs must be >= 1 or -1, got {n_jobs}")
        self.scenario = scenario
        self.n_jobs = n_jobs
        self.cancel_event = cancel_event or threading.Event()
        self.verbose = verbose
        self._population = population

    def _log(self, msg: str):
        if self.verbose:
            print(msg)

    @property
    def population(self) -> Population:
        if self._population is None:
            s = self.scenario
            self._population = generate_population(
                s.x_categories, s.y_categories, s.z_categories,
                association=s.association,
                population_size=s.population_size
            )
        return self._population

    def cancel(self):
        """Request a cooperative stop."""
        self.cancel_event.set()

    def _check_feasible(self, results: HarnessResults):
        limit = self.scenario.max_failure_rate * self.scenario.n_bootstrap
        if results.n_failed > limit:
            raise ScenarioInfeasible(
                self.scenario.name, results.n_failed, results.n_attempted, self.scenario.max_failure_rate
            )

    def _collect(self, results: HarnessResults, outcome) -> None:
        _, records, failure = outcome
        if failure is not None:
            results.failures.append(failure)
        results.records.extend(records)

    def run(self) -> HarnessResults:
        """
        Execute all replicates.

        Returns:
            HarnessResults

        Raises:
            ScenarioInfeasible: too many replicates failed
        """
        s = self.scenario
        truth = self.population.truth
        inclusion = s.selection.probabilities(*s.shape)

        self._log(
            f"Running scenario '{s.name}': {s.n_bootstrap} replicates, "
            f"selection={s.selection.label}, methods={list(s.methods)}, n_jobs={self.n_jobs}"
        )

        results = HarnessResults(scenario=s, n_requested=s.n_bootstrap)
        start_time = time.time()
        progress = tqdm(total=s.n_bootstrap, desc=f"  {s.name}", leave=False, disable=not self.verbose)

        try:
            if self.n_jobs > 1:
                self._run_parallel(results, truth, inclusion, progress)
            else:
                for replicate in range(s.n_bootstrap):
                    if self.cancel_event.is_set():
                        results.cancelled = True
                        break
                    self._collect(results, _attempt_replicate(s, truth, inclusion, replicate))
                    progress.update(1)
                    self._check_feasible(results)
        finally:
            progress.close()

        method_rank = {m: i for i, m in enumerate(s.methods)}
        results.records.sort(key=lambda r: (r.replicate, method_rank[r.method]))
        results.failures.sort(key=lambda f: f.replicate)
        results.elapsed = time.time() - start_time

        if results.n_attempted and results.failure_rate > s.max_failure_rate:
            raise ScenarioInfeasible(s.name, results.n_failed, results.n_attempted, s.max_failure_rate)

        self._log(
            f"  Completed {results.n_completed}/{s.n_bootstrap} replicates "
            f"({results.n_failed} failed) in {results.elapsed:.1f}s"
        )
        return results

    def _run_parallel(self, results: HarnessResults, truth, inclusion, progress) -> None:
        s = self.scenario
        with worker_pool(self.n_jobs) as executor:
            futures = {
                executor.submit(_attempt_replicate, s, truth, inclusion, r): r
                for r in range(s.n_bootstrap)
            }
            try:
                for future in as_completed(futures):
                    self._collect(results, future.result())
                    progress.update(1)
                    self._check_feasible(results)
                    if self.cancel_event.is_set():
                        results.cancelled = True
                        break
            finally:
                for future in futures:
                    future.cancel()


def run_scenarios(
    scenarios: Sequence[Scenario],
    n_jobs: int = 1,
    cancel_event: Optional[threading.Event] = None,
    verbose: bool = True
) -> Dict[str, HarnessResults]:
    """
    Run several scenarios one after another.

    Returns:
        Dict mapping scenario name to its HarnessResults
    """
    cancel_event = cancel_event or threading.Event()
    out = {}
    for scenario in scenarios:
        if cancel_event.is_set():
            break
        harness = BootstrapHarness(scenario, n_jobs=n_jobs, cancel_event=cancel_event, verbose=verbose)
        out[scenario.name] = harness.run()
    return out
