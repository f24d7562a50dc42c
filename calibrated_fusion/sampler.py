"""
Sample Drawing

Draws the three samples of one replicate from the true population table:

    Sample A - (X, Y), simple multinomial sample from P(X, Y)
    Sample B - (X, Z), simple multinomial sample from P(X, Z)
    Sample C - (X, Y, Z), candidates drawn from P(X, Y, Z) and each kept with
               its cell's inclusion probability until n_c units are kept

Sample C is drawn in batches: a batch of candidates is drawn multinomially,
thinned cell by cell with binomial draws, and the final batch is trimmed to
exactly the missing number of units with a multivariate hypergeometric draw
(a uniformly random subset of that batch's kept units). If the candidate
budget runs out first, InsufficientSelectionYield is raised; a truncated
sample is never returned.

All randomness comes from an explicitly passed numpy Generator.
`rng_for_replicate` derives one per replicate from (seed, replicate) so runs
are reproducible and replicates are independent.
"""

import numpy as np
from dataclasses import dataclass
from typing import Optional

from .exceptions import ConfigError, DegenerateTable, InsufficientSelectionYield, ShapeMismatch
from .table import ContingencyTable


DEFAULT_CANDIDATE_FACTOR = 200


def rng_for_replicate(seed: int, replicate: int) -> np.random.Generator:
    """Independent, reproducible generator keyed by (seed, replicate)."""
    if seed < 0 or replicate < 0:
        raise ValueError(f"seed and replicate must be >= 0, got seed={seed}, replicate={replicate}")
    return np.random.default_rng(np.random.SeedSequence([int(seed), int(replicate)]))


def _cell_probabilities(table: ContingencyTable) -> np.ndarray:
    p = table.to_array().ravel()
    total = p.sum()
    if total <= 0:
        raise DegenerateTable(f"Cannot sample from a table with total mass {total}")
    return p / total


def draw_multinomial(table: ContingencyTable, n: int, rng: np.random.Generator) -> ContingencyTable:
    """Counts of `n` units drawn with replacement from the (normalized) table."""
    if n < 0:
        raise ConfigError(f"Sample size must be >= 0, got {n}")
    counts = rng.multinomial(n, _cell_probabilities(table))
    return table.with_values(counts.reshape(table.shape))


def draw_sample_a(truth: ContingencyTable, n: int, rng: np.random.Generator) -> ContingencyTable:
    """Sample A: counts over (X, Y)."""
    return draw_multinomial(truth.marginalize(['X', 'Y']), n, rng)


def draw_sample_b(truth: ContingencyTable, n: int, rng: np.random.Generator) -> ContingencyTable:
    """Sample B: counts over (X, Z)."""
    return draw_multinomial(truth.marginalize(['X', 'Z']), n, rng)


def draw_sample_c(
    truth: ContingencyTable,
    inclusion: ContingencyTable,
    n: int,
    rng: np.random.Generator,
    max_candidates: Optional[int] = None,
    batch_size: Optional[int] = None
):
    """
    Sample C: selection-biased counts over (X, Y, Z).

    Args:
        truth: True P(X, Y, Z)
        inclusion: Inclusion probability per (X, Y, Z) cell
        n: Target number of kept units
        rng: Random generator
        max_candidates: Candidate budget (default DEFAULT_CANDIDATE_FACTOR * n)
        batch_size: Candidates per batch (default max(10 * n, 1000))

    Returns:
        Tuple of (counts table, number of candidates drawn)

    Raises:
        InsufficientSelectionYield: budget exhausted before n units were kept
    """
    truth.check_same_axes(inclusion)
    if n < 1:
        raise ConfigError(f"Sample C size must be >= 1, got {n}")

    p = _cell_probabilities(truth)
    keep_prob = inclusion.to_array().ravel()
    if np.any(keep_prob < 0) or np.any(keep_prob > 1):
        raise ValueError("Inclusion probabilities must lie in [0, 1]")

    budget = DEFAULT_CANDIDATE_FACTOR * n if max_candidates is None else int(max_candidates)
    batch = max(10 * n, 1000) if batch_size is None else int(batch_size)
    if budget < n or batch < 1:
        raise ConfigError(f"max_candidates ({budget}) must be >= n ({n}) and batch_size >= 1")

    accepted = np.zeros_like(p, dtype=np.int64)
    n_accepted = 0
    candidates = 0

    while n_accepted < n:
        remaining = budget - candidates
        if remaining <= 0:
            raise InsufficientSelectionYield(target=n, accepted=n_accepted, candidates=candidates)

        m = min(batch, remaining)
        drawn = rng.multinomial(m, p)
        kept = rng.binomial(drawn, keep_prob)
        candidates += m

        need = n - n_accepted
        if kept.sum() > need:
            kept = rng.multivariate_hypergeometric(kept, need)
        accepted += kept
        n_accepted = int(accepted.sum())

    return truth.with_values(accepted.reshape(truth.shape)), candidates


@dataclass
class SampleSet:
    """
    The three samples of one replicate.

    Attributes:
        a: Counts over (X, Y)
        b: Counts over (X, Z)
        c: Counts over (X, Y, Z), selection-biased
        c_candidates: Candidates drawn to fill Sample C
    """
    a: ContingencyTable
    b: ContingencyTable
    c: ContingencyTable
    c_candidates: int

    @property
    def c_yield(self) -> float:
        """Fraction of Sample C candidates kept."""
        return self.c.total / self.c_candidates if self.c_candidates else float('nan')


class Sampler:
    """
    Draws Samples A, B and C for one scenario.

    Example:
        sampler = Sampler(pop.truth, profile.probabilities(6, 3, 3), n_a=5000, n_b=5000, n_c=1000)
        samples = sampler.sample(rng_for_replicate(seed=42, replicate=0))
    """

    def __init__(
        self,
        truth: ContingencyTable,
        inclusion: ContingencyTable,
        n_a: int,
        n_b: int,
        n_c: int,
        max_candidates: Optional[int] = None,
        batch_size: Optional[int] = None
    ):
        if truth.axis_names != ('X', 'Y', 'Z'):
            raise ShapeMismatch(f"Truth table must be over (X, Y, Z), got {truth.axis_names}")
        truth.check_same_axes(inclusion)
        self.truth = truth
        self.inclusion = inclusion
        self.n_a = n_a
        self.n_b = n_b
        self.n_c = n_c
        self.max_candidates = max_candidates
        self.batch_size = batch_size

    def sample(self, rng: np.random.Generator) -> SampleSet:
        a = draw_sample_a(self.truth, self.n_a, rng)
        b = draw_sample_b(self.truth, self.n_b, rng)
        c, candidates = draw_sample_c(
            self.truth, self.inclusion, self.n_c, rng,
            max_candidates=self.max_candidates,
            batch_size=self.batch_size
        )
        return SampleSet(a=a, b=b, c=c, c_candidates=candidates)
