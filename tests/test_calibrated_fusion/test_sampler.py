"""
Tests for Sample Drawing

Tests the sampler.py module: per-replicate generators, Samples A and B,
and the selection-biased Sample C with its candidate budget.
"""

import pytest
import numpy as np

from calibrated_fusion.population import AssociationParams, generate_population
from calibrated_fusion.sampler import (
    Sampler,
    SampleSet,
    draw_multinomial,
    draw_sample_a,
    draw_sample_b,
    draw_sample_c,
    rng_for_replicate,
)
from calibrated_fusion.selection import SelectionProfile, constant_profile
from calibrated_fusion.table import ContingencyTable
from calibrated_fusion.metrics import total_absolute_difference
from calibrated_fusion.exceptions import (
    ConfigError,
    DegenerateTable,
    InsufficientSelectionYield,
    ShapeMismatch,
)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def population():
    return generate_population(association=AssociationParams(lambda_xy=0.5, lambda_yz=1.0),
                               population_size=200_000)


@pytest.fixture
def uniform_truth():
    return generate_population(population_size=54_000).truth


# =============================================================================
# TEST: rng_for_replicate
# =============================================================================

class TestReplicateGenerators:
    """Tests for reproducible per-replicate generators."""

    def test_same_key_same_stream(self):
        a = rng_for_replicate(42, 3).integers(0, 1_000_000, size=10)
        b = rng_for_replicate(42, 3).integers(0, 1_000_000, size=10)
        np.testing.assert_array_equal(a, b)

    def test_different_replicates_differ(self):
        a = rng_for_replicate(42, 0).integers(0, 1_000_000, size=10)
        b = rng_for_replicate(42, 1).integers(0, 1_000_000, size=10)
        assert not np.array_equal(a, b)

    def test_negative_seed(self):
        with pytest.raises(ValueError):
            rng_for_replicate(-1, 0)


# =============================================================================
# TEST: Samples A and B
# =============================================================================

class TestUnbiasedSamples:
    """Tests for multinomial Samples A and B."""

    def test_sample_a_axes_and_size(self, population):
        a = draw_sample_a(population.truth, 5000, rng_for_replicate(1, 0))
        assert a.axis_names == ('X', 'Y')
        assert a.total == 5000
        assert np.all(a.values == np.round(a.values))

    def test_sample_b_axes_and_size(self, population):
        b = draw_sample_b(population.truth, 3000, rng_for_replicate(1, 0))
        assert b.axis_names == ('X', 'Z')
        assert b.total == 3000

    def test_sample_a_unbiased(self, population):
        a = draw_sample_a(population.truth, 100_000, rng_for_replicate(7, 0))
        tad = total_absolute_difference(a.normalize(), population.truth.marginalize(['X', 'Y']))
        assert tad < 0.05

    def test_zero_size(self, population):
        a = draw_sample_a(population.truth, 0, rng_for_replicate(1, 0))
        assert a.total == 0

    def test_negative_size(self, population):
        with pytest.raises(ConfigError):
            draw_multinomial(population.truth, -1, rng_for_replicate(1, 0))

    def test_zero_mass_table(self):
        empty = ContingencyTable.create({'X': 2, 'Y': 2})
        with pytest.raises(DegenerateTable):
            draw_multinomial(empty, 10, rng_for_replicate(1, 0))


# =============================================================================
# TEST: Sample C
# =============================================================================

class TestSampleC:
    """Tests for the selection-biased Sample C."""

    def test_exact_size(self, population):
        inclusion = constant_profile(0.1).probabilities(6, 3, 3)
        c, candidates = draw_sample_c(population.truth, inclusion, 1000, rng_for_replicate(3, 0))
        assert c.total == 1000
        assert c.axis_names == ('X', 'Y', 'Z')
        assert candidates >= 1000

    def test_exact_size_small_batches(self, population):
        inclusion = constant_profile(0.5).probabilities(6, 3, 3)
        c, candidates = draw_sample_c(
            population.truth, inclusion, 777, rng_for_replicate(3, 1), batch_size=50
        )
        assert c.total == 777
        assert candidates % 50 == 0

    def test_constant_selection_is_unbiased(self, population):
        inclusion = constant_profile(0.2).probabilities(6, 3, 3)
        c, _ = draw_sample_c(population.truth, inclusion, 50_000, rng_for_replicate(5, 0))
        assert total_absolute_difference(c.normalize(), population.truth) < 0.05

    def test_mnar_interaction_concentrates_mass(self, uniform_truth):
        profile = SelectionProfile('mnar', 'interaction', 0.5, {'interaction': 'extreme'})
        inclusion = profile.probabilities(6, 3, 3)
        c, _ = draw_sample_c(uniform_truth, inclusion, 2000, rng_for_replicate(11, 0))
        yz = c.marginalize(['Y', 'Z']).normalize()
        # weight of (Y1, Z1) is e^6 times that of (Y3, Z3): about 83% of the mass
        assert yz.get((0, 0)) > 0.7
        assert yz.get((2, 2)) < 0.01

    def test_mar_selection_biases_x_only(self, uniform_truth):
        profile = SelectionProfile('mar', 'linear_decreasing', 0.5, {'low': 0.1})
        inclusion = profile.probabilities(6, 3, 3)
        c, _ = draw_sample_c(uniform_truth, inclusion, 20_000, rng_for_replicate(2, 0))
        x = c.marginalize(['X']).normalize().values
        assert x[0] > 3 * x[5]
        # within an X stratum (Y, Z) stays uniform
        first = c.to_array()[0]
        assert np.abs(first / first.sum() - 1 / 9).max() < 0.03

    def test_budget_exhausted(self, population):
        inclusion = constant_profile(0.001).probabilities(6, 3, 3)
        with pytest.raises(InsufficientSelectionYield) as info:
            draw_sample_c(population.truth, inclusion, 100, rng_for_replicate(1, 0), max_candidates=1000)
        assert info.value.target == 100
        assert info.value.accepted < 100
        assert info.value.candidates == 1000

    def test_budget_below_target(self, population):
        inclusion = constant_profile(0.5).probabilities(6, 3, 3)
        with pytest.raises(ConfigError):
            draw_sample_c(population.truth, inclusion, 100, rng_for_replicate(1, 0), max_candidates=50)

    def test_inclusion_shape_must_match(self, population):
        inclusion = constant_profile(0.5).probabilities(5, 3, 3)
        with pytest.raises(ShapeMismatch):
            draw_sample_c(population.truth, inclusion, 100, rng_for_replicate(1, 0))


# =============================================================================
# TEST: Sampler
# =============================================================================

class TestSampler:
    """Tests for the Sampler facade."""

    def test_sample_set(self, population):
        sampler = Sampler(population.truth, constant_profile(0.1).probabilities(6, 3, 3),
                          n_a=500, n_b=400, n_c=300)
        samples = sampler.sample(rng_for_replicate(9, 0))
        assert isinstance(samples, SampleSet)
        assert (samples.a.total, samples.b.total, samples.c.total) == (500, 400, 300)
        assert 0 < samples.c_yield <= 1

    def test_reproducible(self, population):
        inclusion = SelectionProfile('mar', 'step', 0.3).probabilities(6, 3, 3)
        sampler = Sampler(population.truth, inclusion, n_a=500, n_b=500, n_c=200)
        first = sampler.sample(rng_for_replicate(9, 4))
        second = sampler.sample(rng_for_replicate(9, 4))
        for name in ('a', 'b', 'c'):
            np.testing.assert_array_equal(getattr(first, name).values, getattr(second, name).values)
        assert first.c_candidates == second.c_candidates

    def test_truth_must_be_xyz(self, population):
        yz = population.truth.marginalize(['Y', 'Z'])
        with pytest.raises(ShapeMismatch):
            Sampler(yz, yz, n_a=10, n_b=10, n_c=10)
