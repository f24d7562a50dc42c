"""
Calibrated Fusion Module
========================

Simulation framework for estimating a joint distribution P(X, Y, Z) by
combining a selection-biased complete sample (C) with unbiased partial
samples over (X, Y) (A) and (X, Z) (B), and comparing calibration (IPF)
and EM-based estimators against a known synthetic truth.

Main Class:
    BootstrapHarness - Run a scenario's replicates and aggregate metrics

Supporting Classes:
    ContingencyTable - Labelled multi-dimensional count/probability table
    SelectionProfile - Inclusion probabilities for Sample C (MAR / MNAR)
    Sampler - Draw Samples A, B and C for one replicate
    IPFCalibrator - Iterative proportional fitting to marginal targets
    EMEstimator - EM for a joint multinomial with partial observations
    Scenario - Immutable run configuration

Key Functions:
    generate_population - Synthetic population with a known truth table
    run_method - Run one estimation method on a replicate's samples
    score_estimate - TAD, RMSE, max error, worst-cell bias, Cramér's V
    load_scenarios - Load scenarios from a YAML file

Example:
    from calibrated_fusion import Scenario, BootstrapHarness

    scenario = Scenario(
        name='mnar_extreme',
        selection={'mechanism': 'mnar', 'pattern': 'interaction',
                   'base_probability': 0.5, 'params': {'interaction': 'extreme'}},
        n_bootstrap=200
    )
    results = BootstrapHarness(scenario, n_jobs=4).run()
    print(results.get_summary())
"""

__version__ = "0.1.0"

from .exceptions import (
    InvalidDimension,
    IndexOutOfRange,
    DegenerateTable,
    ShapeMismatch,
    ConfigError,
    SimulationError,
    InsufficientSelectionYield,
    ScenarioInfeasible,
    NotFullyConverged,
)

from .table import (
    CategoricalAxis,
    ContingencyTable,
    xyz_axes,
)

from .population import (
    AssociationParams,
    Population,
    association_table,
    integerize_counts,
    generate_population,
)

from .selection import (
    MAR_PATTERNS,
    MNAR_PATTERNS,
    INTERACTION_LEVELS,
    SelectionProfile,
    constant_profile,
)

from .sampler import (
    SampleSet,
    Sampler,
    draw_sample_a,
    draw_sample_b,
    draw_sample_c,
    rng_for_replicate,
)

from .ipf import (
    CalibrationResult,
    IPFCalibrator,
    calibrate,
    build_calibration_targets,
)

from .em import (
    EMResult,
    EMEstimator,
)

from .metrics import (
    total_absolute_difference,
    root_mean_squared_error,
    max_absolute_error,
    worst_cell_bias,
    cramers_v,
    summarize_table_accuracy,
    score_estimate,
)

from .methods import (
    METHODS,
    DEFAULT_METHODS,
    MethodSettings,
    EstimationResult,
    run_method,
)

from .scenario import (
    Scenario,
    load_config,
    load_scenarios,
    scenarios_from_config,
)

from .harness import (
    ResultRecord,
    ReplicateFailure,
    HarnessResults,
    BootstrapHarness,
    run_replicate,
    run_scenarios,
)

__all__ = [
    # Errors and warnings
    'InvalidDimension',
    'IndexOutOfRange',
    'DegenerateTable',
    'ShapeMismatch',
    'ConfigError',
    'SimulationError',
    'InsufficientSelectionYield',
    'ScenarioInfeasible',
    'NotFullyConverged',

    # Tables
    'CategoricalAxis',
    'ContingencyTable',
    'xyz_axes',

    # Population and selection
    'AssociationParams',
    'Population',
    'association_table',
    'integerize_counts',
    'generate_population',
    'MAR_PATTERNS',
    'MNAR_PATTERNS',
    'INTERACTION_LEVELS',
    'SelectionProfile',
    'constant_profile',

    # Sampling
    'SampleSet',
    'Sampler',
    'draw_sample_a',
    'draw_sample_b',
    'draw_sample_c',
    'rng_for_replicate',

    # Estimation
    'CalibrationResult',
    'IPFCalibrator',
    'calibrate',
    'build_calibration_targets',
    'EMResult',
    'EMEstimator',
    'METHODS',
    'DEFAULT_METHODS',
    'MethodSettings',
    'EstimationResult',
    'run_method',

    # Metrics
    'total_absolute_difference',
    'root_mean_squared_error',
    'max_absolute_error',
    'worst_cell_bias',
    'cramers_v',
    'summarize_table_accuracy',
    'score_estimate',

    # Configuration and harness
    'Scenario',
    'load_config',
    'load_scenarios',
    'scenarios_from_config',
    'ResultRecord',
    'ReplicateFailure',
    'HarnessResults',
    'BootstrapHarness',
    'run_replicate',
    'run_scenarios',
]
