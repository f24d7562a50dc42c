"""
Synthetic Population Generator

Builds the true joint distribution P(X, Y, Z) from which every sample is drawn.
The population is never materialized unit by unit: it is held as a count table
over (X, Y, Z) summing to the population size, and samples are drawn
multinomially from its normalized version.

Association is log-linear on centered linear category scores:

    log P(x,y,z) = log px(x) + log py(y) + log pz(z)
                   + l_xy*s(x)s(y) + l_xz*s(x)s(z) + l_yz*s(y)s(z)
                   + l_xyz*s(x)s(y)s(z) + const

with s(i) running linearly from -1 (first category) to +1 (last). All cells
are strictly positive unless a scenario lists structural zeros in
`sparse_cells`.

Key Classes:
    AssociationParams - Marginals and interaction strengths
    Population - Finite population counts and the true probability table

Key Functions:
    association_table - Analytic log-linear probability table
    generate_population - Integerized finite population
"""

import numpy as np
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Optional, Sequence, Tuple

from .exceptions import ConfigError
from .ipf import IPFCalibrator
from .table import ContingencyTable, xyz_axes


def linear_scores(k: int) -> np.ndarray:
    """Centered category scores from -1 to +1 (all zero for a single category)."""
    if k == 1:
        return np.zeros(1)
    return np.linspace(-1.0, 1.0, k)


def _probability_vector(probs: Optional[Sequence[float]], k: int, name: str) -> np.ndarray:
    if probs is None:
        return np.full(k, 1.0 / k)
    p = np.asarray(probs, dtype=float)
    if p.shape != (k,):
        raise ConfigError(f"{name} must have {k} entries, got {p.shape}")
    if np.any(p <= 0) or not np.all(np.isfinite(p)):
        raise ConfigError(f"{name} must be finite and strictly positive, got {p.tolist()}")
    return p / p.sum()


@dataclass(frozen=True)
class AssociationParams:
    """
    Population association parameters.

    Attributes:
        x_probs, y_probs, z_probs: One-way marginal probabilities (None = uniform)
        lambda_xy, lambda_xz, lambda_yz: Pairwise log-linear interaction strengths
        lambda_xyz: Three-way interaction strength
        sparse_cells: (x, y, z) index triples forced to zero (structural zeros)
        match_marginals: Rake the interacted table back to the requested
                         one-way marginals
    """
    x_probs: Optional[Tuple[float, ...]] = None
    y_probs: Optional[Tuple[float, ...]] = None
    z_probs: Optional[Tuple[float, ...]] = None
    lambda_xy: float = 0.0
    lambda_xz: float = 0.0
    lambda_yz: float = 0.0
    lambda_xyz: float = 0.0
    sparse_cells: Tuple[Tuple[int, int, int], ...] = ()
    match_marginals: bool = False

    def __post_init__(self):
        for name in ('x_probs', 'y_probs', 'z_probs'):
            value = getattr(self, name)
            if value is not None:
                object.__setattr__(self, name, tuple(float(v) for v in value))
        object.__setattr__(
            self, 'sparse_cells', tuple(tuple(int(i) for i in cell) for cell in self.sparse_cells)
        )
        for name in ('lambda_xy', 'lambda_xz', 'lambda_yz', 'lambda_xyz'):
            if not np.isfinite(getattr(self, name)):
                raise ConfigError(f"{name} must be finite, got {getattr(self, name)!r}")
        for cell in self.sparse_cells:
            if len(cell) != 3 or min(cell) < 0:
                raise ConfigError(f"sparse cell {cell} must be an (x, y, z) triple of indices >= 0")

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> 'AssociationParams':
        unknown = set(config) - set(cls.__dataclass_fields__)
        if unknown:
            raise ConfigError(f"Unknown association parameters: {sorted(unknown)}")
        return cls(**config)

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out['sparse_cells'] = [list(c) for c in self.sparse_cells]
        for name in ('x_probs', 'y_probs', 'z_probs'):
            if out[name] is not None:
                out[name] = list(out[name])
        return out


def association_table(
    x_categories: int,
    y_categories: int,
    z_categories: int,
    params: Optional[AssociationParams] = None
) -> ContingencyTable:
    """
    Normalized log-linear probability table over (X, Y, Z).

    Args:
        x_categories, y_categories, z_categories: Axis sizes
        params: Association parameters (default: independence, uniform marginals)

    Returns:
        Probability table summing to 1
    """
    params = params or AssociationParams()
    axes = xyz_axes(x_categories, y_categories, z_categories)

    px = _probability_vector(params.x_probs, x_categories, 'x_probs')
    py = _probability_vector(params.y_probs, y_categories, 'y_probs')
    pz = _probability_vector(params.z_probs, z_categories, 'z_probs')

    sx = linear_scores(x_categories)[:, None, None]
    sy = linear_scores(y_categories)[None, :, None]
    sz = linear_scores(z_categories)[None, None, :]

    log_p = (
        np.log(px)[:, None, None] + np.log(py)[None, :, None] + np.log(pz)[None, None, :]
        + params.lambda_xy * sx * sy
        + params.lambda_xz * sx * sz
        + params.lambda_yz * sy * sz
        + params.lambda_xyz * sx * sy * sz
    )
    probs = np.exp(log_p - log_p.max())

    for cell in params.sparse_cells:
        try:
            probs[cell] = 0.0
        except IndexError as e:
            raise ConfigError(f"sparse cell {cell} outside table of shape {probs.shape}") from e

    table = ContingencyTable(probs, axes).normalize()

    if params.match_marginals:
        targets = [
            ContingencyTable(px, [axes[0]]),
            ContingencyTable(py, [axes[1]]),
            ContingencyTable(pz, [axes[2]]),
        ]
        table = IPFCalibrator(tol=1e-12, max_iter=1000, warn=False).calibrate(table, targets).table
        table = table.normalize()

    return table


def integerize_counts(probs: np.ndarray, total: int, min_count: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Largest-remainder rounding of `total * probs` to integers summing to `total`.

    Args:
        probs: Cell probabilities
        total: Required integer total
        min_count: Optional per-cell lower bound (same shape as probs)

    Returns:
        Integer array of the same shape as probs
    """
    flat = np.asarray(probs, dtype=float).ravel() * total
    floor = np.floor(flat)
    lower = np.zeros_like(floor) if min_count is None else np.asarray(min_count, dtype=float).ravel()
    if lower.sum() > total:
        raise ConfigError(f"Population of {total} units cannot give every cell its minimum count")
    counts = np.maximum(floor, lower)

    remainder = int(round(total - counts.sum()))
    if remainder > 0:
        frac = flat - floor
        order = np.argsort(-frac, kind='stable')
        for i in range(remainder):
            counts[order[i % len(order)]] += 1
    elif remainder < 0:
        # take back surplus from the largest cells without crossing the lower bound
        order = np.argsort(-counts, kind='stable')
        i = 0
        while remainder < 0:
            idx = order[i % len(order)]
            if counts[idx] > lower[idx]:
                counts[idx] -= 1
                remainder += 1
            i += 1

    return counts.reshape(np.shape(probs)).astype(np.int64)


@dataclass
class Population:
    """
    Finite synthetic population.

    Attributes:
        counts: Unit counts over (X, Y, Z), summing to `size`
        truth: Normalized counts, the true P(X, Y, Z)
        size: Number of units
        params: Association parameters used
    """
    counts: ContingencyTable
    truth: ContingencyTable
    size: int
    params: AssociationParams = field(default_factory=AssociationParams)

    @property
    def yz_truth(self) -> ContingencyTable:
        """True P(Y, Z)."""
        return self.truth.marginalize(['Y', 'Z'])

    @property
    def has_structural_zeros(self) -> bool:
        return bool(np.any(self.truth.values == 0))


def generate_population(
    x_categories: int = 6,
    y_categories: int = 3,
    z_categories: int = 3,
    association: Optional[AssociationParams] = None,
    population_size: int = 1_000_000,
    verbose: bool = False
) -> Population:
    """
    Generate the finite population and its true joint distribution.

    Every non-sparse cell holds at least one unit, so the true table is
    strictly positive outside the requested structural zeros.

    Args:
        x_categories, y_categories, z_categories: Axis sizes
        association: Association parameters
        population_size: Number of units N_pop
        verbose: Print a short summary

    Returns:
        Population

    Example:
        >>> pop = generate_population(association=AssociationParams(lambda_yz=1.0))
        >>> pop.counts.total
        1000000.0
    """
    if population_size < 1:
        raise ConfigError(f"population_size must be >= 1, got {population_size}")
    association = association or AssociationParams()

    probs = association_table(x_categories, y_categories, z_categories, association)
    min_count = (probs.values > 0).astype(float)
    counts = integerize_counts(probs.values, population_size, min_count=min_count)

    counts_table = probs.with_values(counts)
    population = Population(
        counts=counts_table,
        truth=counts_table.normalize(),
        size=int(population_size),
        params=association
    )

    if verbose:
        print(
            f"Population: N={population_size}, shape={counts_table.shape}, "
            f"min cell prob={population.truth.values.min():.2e}"
        )

    return population
