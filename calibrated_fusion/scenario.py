"""
Scenario Configuration

A Scenario bundles everything one harness run needs: population shape and
association, the Sample C selection profile, sample sizes, bootstrap count,
convergence settings and the run seed. Scenarios are immutable; use
`with_updates` to derive variants for sweeps.

Scenarios can be built from plain dicts (the shape a YAML file produces)
and loaded from YAML files:

    defaults:
      n_bootstrap: 500
      n_a: 5000
    scenarios:
      - name: mar_linear
        selection: {mechanism: mar, pattern: linear_decreasing, base_probability: 0.3}
      - name: mnar_extreme
        selection:
          mechanism: mnar
          pattern: interaction
          base_probability: 0.5
          params: {interaction: extreme}
"""

import dataclasses
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from .exceptions import ConfigError
from .methods import DEFAULT_METHODS, METHODS, MethodSettings
from .population import AssociationParams
from .selection import SelectionProfile


MAX_CATEGORIES = 20


@dataclass(frozen=True)
class Scenario:
    """
    Immutable configuration for one bootstrap run.

    Attributes:
        name: Scenario identifier
        population_size: Units in the synthetic population
        x_categories, y_categories, z_categories: Axis sizes
        association: Population association parameters
        selection: Sample C selection profile
        n_a, n_b, n_c: Sample sizes
        max_candidates: Sample C candidate budget (None = 200 * n_c)
        candidate_batch_size: Candidates per batch (None = max(10 * n_c, 1000))
        n_bootstrap: Number of replicates
        ipf_tol, ipf_max_iter: IPF convergence settings
        em_tol, em_max_iter: EM convergence settings
        em_init: EM starting point when no table is supplied
        seed: Run seed; replicate r uses SeedSequence([seed, r])
        methods: Estimation methods to compare
        max_failure_rate: Failed-replicate fraction above which the run fails
        harmonize_x: Re-anchor two-way calibration targets on pooled P(X)
        quantiles: Quantiles reported in the aggregated summary
        keep_estimates: Keep estimated tables on ResultRecords
    """
    name: str = 'scenario'
    population_size: int = 1_000_000
    x_categories: int = 6
    y_categories: int = 3
    z_categories: int = 3
    association: AssociationParams = field(default_factory=AssociationParams)
    selection: SelectionProfile = field(default_factory=SelectionProfile)
    n_a: int = 5000
    n_b: int = 5000
    n_c: int = 1000
    max_candidates: Optional[int] = None
    candidate_batch_size: Optional[int] = None
    n_bootstrap: int = 1000
    ipf_tol: float = 1e-8
    ipf_max_iter: int = 500
    em_tol: float = 1e-8
    em_max_iter: int = 2000
    em_init: str = 'uniform'
    seed: int = 42
    methods: Tuple[str, ...] = DEFAULT_METHODS
    max_failure_rate: float = 0.5
    harmonize_x: bool = True
    quantiles: Tuple[float, ...] = (0.025, 0.5, 0.975)
    keep_estimates: bool = False

    def __post_init__(self):
        object.__setattr__(self, 'methods', tuple(self.methods))
        object.__setattr__(self, 'quantiles', tuple(float(q) for q in self.quantiles))
        if isinstance(self.association, dict):
            object.__setattr__(self, 'association', AssociationParams.from_dict(self.association))
        if isinstance(self.selection, dict):
            object.__setattr__(self, 'selection', SelectionProfile.from_dict(self.selection))
        validate_scenario(self)

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> 'Scenario':
        """Create a Scenario from a plain mapping."""
        unknown = set(config) - {f.name for f in dataclasses.fields(cls)}
        if unknown:
            raise ConfigError(f"Unknown scenario settings: {sorted(unknown)}")
        return cls(**config)

    def to_dict(self) -> Dict[str, Any]:
        """Plain mapping that round-trips through from_dict."""
        out = {}
        for f in dataclasses.fields(self):
            value = getattr(self, f.name)
            if f.name in ('association', 'selection'):
                value = value.to_dict()
            elif isinstance(value, tuple):
                value = list(value)
            out[f.name] = value
        return out

    def with_updates(self, **changes) -> 'Scenario':
        """Copy with some settings replaced (validated again)."""
        return dataclasses.replace(self, **changes)

    @property
    def shape(self) -> Tuple[int, int, int]:
        return (self.x_categories, self.y_categories, self.z_categories)

    @property
    def method_settings(self) -> MethodSettings:
        return MethodSettings(
            ipf_tol=self.ipf_tol,
            ipf_max_iter=self.ipf_max_iter,
            em_tol=self.em_tol,
            em_max_iter=self.em_max_iter,
            em_init=self.em_init,
            harmonize_x=self.harmonize_x
        )


def _positive_int(value, name: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigError(f"{name} must be a positive int, got {value!r}")


def _positive_float(value, name: str) -> None:
    if not isinstance(value, (int, float)) or not math.isfinite(float(value)) or value <= 0:
        raise ConfigError(f"{name} must be a finite positive number, got {value!r}")


def validate_scenario(scenario: Scenario) -> None:
    for name in ('x_categories', 'y_categories', 'z_categories'):
        value = getattr(scenario, name)
        _positive_int(value, name)
        if value > MAX_CATEGORIES:
            raise ConfigError(f"{name} must be <= {MAX_CATEGORIES}, got {value}")

    for name in ('population_size', 'n_a', 'n_b', 'n_c', 'n_bootstrap', 'ipf_max_iter', 'em_max_iter'):
        _positive_int(getattr(scenario, name), name)

    for name in ('max_candidates', 'candidate_batch_size'):
        value = getattr(scenario, name)
        if value is not None:
            _positive_int(value, name)
    if scenario.max_candidates is not None and scenario.max_candidates < scenario.n_c:
        raise ConfigError(
            f"max_candidates ({scenario.max_candidates}) must be >= n_c ({scenario.n_c})"
        )

    _positive_float(scenario.ipf_tol, 'ipf_tol')
    _positive_float(scenario.em_tol, 'em_tol')

    if isinstance(scenario.seed, bool) or not isinstance(scenario.seed, int) or scenario.seed < 0:
        raise ConfigError(f"seed must be int >= 0, got {scenario.seed!r}")

    if not 0.0 <= float(scenario.max_failure_rate) <= 1.0:
        raise ConfigError(f"max_failure_rate must be in [0, 1], got {scenario.max_failure_rate!r}")

    if not scenario.methods:
        raise ConfigError("methods must be a non-empty list")
    unknown = [m for m in scenario.methods if m not in METHODS]
    if unknown:
        raise ConfigError(f"Unknown methods {unknown}; use any of {list(METHODS)}")
    if len(set(scenario.methods)) != len(scenario.methods):
        raise ConfigError(f"Duplicate methods: {list(scenario.methods)}")

    for q in scenario.quantiles:
        if not 0.0 <= q <= 1.0:
            raise ConfigError(f"quantiles must be in [0, 1], got {q!r}")

    if scenario.em_init not in ('uniform', 'marginal'):
        raise ConfigError(f"em_init must be 'uniform' or 'marginal', got {scenario.em_init!r}")

    if not isinstance(scenario.association, AssociationParams):
        raise ConfigError("association must be AssociationParams or a mapping")
    if not isinstance(scenario.selection, SelectionProfile):
        raise ConfigError("selection must be SelectionProfile or a mapping")

    for cell in scenario.association.sparse_cells:
        if any(i >= k for i, k in zip(cell, scenario.shape)):
            raise ConfigError(f"sparse cell {cell} outside table shape {scenario.shape}")


def load_config(config_path: Union[str, Path]) -> Dict:
    """Load configuration from YAML file."""
    with open(config_path, 'r') as f:
        return yaml.safe_load(f) or {}


def scenarios_from_config(config: Dict[str, Any]) -> List[Scenario]:
    """
    Build scenarios from a loaded config.

    Accepts a single scenario mapping, or a mapping with a `scenarios` list
    and optional `defaults` merged under each entry (entry keys win; nested
    association/selection mappings are merged one level deep).
    """
    if 'scenarios' not in config:
        return [Scenario.from_dict(config)]

    defaults = dict(config.get('defaults') or {})
    extra = set(config) - {'scenarios', 'defaults'}
    if extra:
        raise ConfigError(f"Unknown top-level config keys: {sorted(extra)}")

    scenarios = []
    for i, entry in enumerate(config['scenarios'] or []):
        merged = dict(defaults)
        for key, value in entry.items():
            if key in ('association', 'selection') and isinstance(merged.get(key), dict):
                merged[key] = {**merged[key], **value}
            else:
                merged[key] = value
        merged.setdefault('name', f'scenario_{i}')
        scenarios.append(Scenario.from_dict(merged))

    names = [s.name for s in scenarios]
    if len(set(names)) != len(names):
        raise ConfigError(f"Scenario names must be unique, got {names}")
    return scenarios


def load_scenarios(config_path: Union[str, Path]) -> List[Scenario]:
    """Load one or more scenarios from a YAML file."""
    return scenarios_from_config(load_config(config_path))
