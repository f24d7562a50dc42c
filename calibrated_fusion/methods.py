"""
Estimation Methods Under Comparison

Each method turns one replicate's samples into an estimate of P(X, Y, Z):

    raw_c             - Sample C normalized, no correction
    x_calibration     - Sample C raked to P(X)
    full_calibration  - Sample C raked to P(X), P(X, Y) and P(X, Z)
    em_raw            - EM with Sample C as complete data and A, B as partial data
    em_calibrated     - EM with the fully calibrated Sample C as complete data,
                        started from the calibrated table
    em_weighted       - EM with Sample C weighted by inverse inclusion
                        probabilities (needs the selection profile; opt-in)

Calibration targets come from Samples A and B (see build_calibration_targets).

Key Functions:
    run_method - Dispatch a method by name
    get_method - Look up a method callable
"""

import numpy as np
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .em import EMEstimator
from .exceptions import ConfigError
from .ipf import IPFCalibrator, build_calibration_targets
from .sampler import SampleSet
from .table import ContingencyTable


@dataclass(frozen=True)
class MethodSettings:
    """Convergence settings shared by all methods."""
    ipf_tol: float = 1e-8
    ipf_max_iter: int = 500
    em_tol: float = 1e-8
    em_max_iter: int = 2000
    em_init: str = 'uniform'
    harmonize_x: bool = True


@dataclass
class EstimationResult:
    """
    One method's estimate for one replicate.

    Attributes:
        method: Method name
        table: Estimated probability table over (X, Y, Z)
        converged: False if any iterative step hit its iteration cap
        n_iterations: Iterations of the final iterative step (0 for raw_c)
    """
    method: str
    table: ContingencyTable
    converged: bool = True
    n_iterations: int = 0


def _calibrators(settings: MethodSettings):
    ipf = IPFCalibrator(tol=settings.ipf_tol, max_iter=settings.ipf_max_iter)
    em = EMEstimator(tol=settings.em_tol, max_iter=settings.em_max_iter, init=settings.em_init)
    return ipf, em


def estimate_raw_c(samples: SampleSet, settings: MethodSettings, inclusion=None) -> EstimationResult:
    return EstimationResult('raw_c', samples.c.normalize())


def estimate_x_calibration(samples: SampleSet, settings: MethodSettings, inclusion=None) -> EstimationResult:
    targets = build_calibration_targets(samples.a, samples.b, settings.harmonize_x)
    ipf, _ = _calibrators(settings)
    result = ipf.calibrate(samples.c.normalize(), [targets['X']])
    return EstimationResult('x_calibration', result.table, result.converged, result.n_iterations)


def estimate_full_calibration(samples: SampleSet, settings: MethodSettings, inclusion=None) -> EstimationResult:
    targets = build_calibration_targets(samples.a, samples.b, settings.harmonize_x)
    ipf, _ = _calibrators(settings)
    result = ipf.calibrate(samples.c.normalize(), [targets['X'], targets['XY'], targets['XZ']])
    return EstimationResult('full_calibration', result.table, result.converged, result.n_iterations)


def estimate_em_raw(samples: SampleSet, settings: MethodSettings, inclusion=None) -> EstimationResult:
    _, em = _calibrators(settings)
    result = em.fit(samples.c, partial=[samples.a, samples.b])
    return EstimationResult('em_raw', result.table, result.converged, result.n_iterations)


def estimate_em_calibrated(samples: SampleSet, settings: MethodSettings, inclusion=None) -> EstimationResult:
    calibrated = estimate_full_calibration(samples, settings)
    _, em = _calibrators(settings)
    complete = calibrated.table.normalize().scale(samples.c.total)
    result = em.fit(complete, partial=[samples.a, samples.b], init_table=calibrated.table)
    return EstimationResult(
        'em_calibrated',
        result.table,
        calibrated.converged and result.converged,
        result.n_iterations
    )


def estimate_em_weighted(
    samples: SampleSet,
    settings: MethodSettings,
    inclusion: Optional[ContingencyTable] = None
) -> EstimationResult:
    if inclusion is None:
        raise ConfigError("em_weighted needs the inclusion probabilities of Sample C")
    # cells that can never be selected carry no C counts; weight them 0
    probs = inclusion.values
    inverse = np.zeros_like(probs)
    np.divide(1.0, probs, out=inverse, where=probs >= np.finfo(float).tiny)
    weights = inclusion.with_values(inverse)
    _, em = _calibrators(settings)
    result = em.fit(samples.c, partial=[samples.a, samples.b], c_weights=weights)
    return EstimationResult('em_weighted', result.table, result.converged, result.n_iterations)


METHODS: Dict[str, Callable[..., EstimationResult]] = {
    'raw_c': estimate_raw_c,
    'x_calibration': estimate_x_calibration,
    'full_calibration': estimate_full_calibration,
    'em_raw': estimate_em_raw,
    'em_calibrated': estimate_em_calibrated,
    'em_weighted': estimate_em_weighted,
}

DEFAULT_METHODS = ('raw_c', 'x_calibration', 'full_calibration', 'em_raw', 'em_calibrated')


def get_method(name: str) -> Callable[..., EstimationResult]:
    try:
        return METHODS[name]
    except KeyError:
        raise ConfigError(f"Unknown method: {name}. Use one of {list(METHODS)}") from None


def run_method(
    name: str,
    samples: SampleSet,
    settings: Optional[MethodSettings] = None,
    inclusion: Optional[ContingencyTable] = None
) -> EstimationResult:
    """
    Run one estimation method on a replicate's samples.

    Args:
        name: Method name (see METHODS)
        samples: Samples A, B, C
        settings: Convergence settings (default MethodSettings())
        inclusion: Inclusion probabilities of Sample C (em_weighted only)

    Returns:
        EstimationResult
    """
    return get_method(name)(samples, settings or MethodSettings(), inclusion)
