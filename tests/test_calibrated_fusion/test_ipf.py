"""
Tests for Iterative Proportional Fitting

Tests the ipf.py module: raking to one- and two-way marginals, convergence
reporting and calibration targets built from Samples A and B.
"""

import warnings

import pytest
import numpy as np

from calibrated_fusion.ipf import (
    IPFCalibrator,
    build_calibration_targets,
    calibrate,
    expand_to,
    marginal_array,
)
from calibrated_fusion.population import AssociationParams, association_table
from calibrated_fusion.table import ContingencyTable, xyz_axes
from calibrated_fusion.exceptions import NotFullyConverged, ShapeMismatch


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def conditional_independence_truth():
    """Y and Z independent given X, both associated with X."""
    params = AssociationParams(
        x_probs=(0.1, 0.15, 0.2, 0.25, 0.2, 0.1),
        lambda_xy=1.0,
        lambda_xz=-0.8
    )
    return association_table(6, 3, 3, params)


@pytest.fixture
def skewed_start():
    rng = np.random.default_rng(0)
    return ContingencyTable(rng.uniform(0.1, 1.0, size=(6, 3, 3)), xyz_axes(6, 3, 3)).normalize()


# =============================================================================
# TEST: Array helpers
# =============================================================================

class TestArrayHelpers:
    """Tests for marginal_array and expand_to."""

    def test_marginal_array_order(self):
        arr = np.arange(24, dtype=float).reshape(2, 3, 4)
        np.testing.assert_allclose(marginal_array(arr, [2, 0]), arr.sum(axis=1).T)

    def test_expand_to_broadcasts(self):
        marg = np.arange(8, dtype=float).reshape(4, 2)  # axes (2, 0)
        expanded = expand_to(marg, [2, 0], 3)
        assert expanded.shape == (2, 1, 4)
        assert expanded[1, 0, 3] == marg[3, 1]


# =============================================================================
# TEST: IPFCalibrator
# =============================================================================

class TestIPFCalibrator:
    """Tests for IPFCalibrator.calibrate."""

    def test_one_way_target(self, skewed_start):
        target = ContingencyTable(np.full(6, 1 / 6), [('X', 6)])
        result = IPFCalibrator().calibrate(skewed_start, [target])
        assert result.converged
        np.testing.assert_allclose(result.table.marginalize(['X']).values, 1 / 6, atol=1e-10)

    def test_conditional_structure_preserved(self, skewed_start):
        target = ContingencyTable(np.full(6, 1 / 6), [('X', 6)])
        result = IPFCalibrator().calibrate(skewed_start, [target])
        # X calibration rescales whole X strata
        before = skewed_start.values[2] / skewed_start.values[2].sum()
        after = result.table.values[2] / result.table.values[2].sum()
        np.testing.assert_allclose(before, after, atol=1e-12)

    def test_all_targets_matched(self, skewed_start, conditional_independence_truth):
        truth = conditional_independence_truth
        targets = [truth.marginalize(['X']), truth.marginalize(['X', 'Y']), truth.marginalize(['X', 'Z'])]
        result = IPFCalibrator(tol=1e-10, max_iter=1000).calibrate(skewed_start, targets)
        assert result.converged
        assert result.max_marginal_error < 1e-8
        for target in targets:
            assert result.table.marginalize(list(target.axis_names)).allclose(target, atol=1e-8)

    def test_recovers_conditionally_independent_truth(self, conditional_independence_truth):
        truth = conditional_independence_truth
        start = ContingencyTable.uniform({'X': 6, 'Y': 3, 'Z': 3})
        targets = [truth.marginalize(['X', 'Y']), truth.marginalize(['X', 'Z'])]
        result = calibrate(start, targets, tol=1e-12, max_iter=2000)
        assert result.table.allclose(truth, atol=1e-9)

    def test_idempotent_at_convergence(self, skewed_start, conditional_independence_truth):
        truth = conditional_independence_truth
        targets = [truth.marginalize(['X', 'Y']), truth.marginalize(['X', 'Z'])]
        calibrator = IPFCalibrator(tol=1e-10, max_iter=1000)
        first = calibrator.calibrate(skewed_start, targets)
        second = calibrator.calibrate(first.table, targets)
        assert second.converged
        assert second.n_iterations == 1
        np.testing.assert_allclose(second.table.values, first.table.values, atol=1e-10)

    def test_total_matches_target_mass(self, skewed_start):
        target = ContingencyTable(np.full(6, 50.0), [('X', 6)])
        result = IPFCalibrator().calibrate(skewed_start, [target])
        assert result.table.total == pytest.approx(300.0)

    def test_zero_marginal_left_unchanged(self):
        start = ContingencyTable(np.ones((3, 2, 2)), xyz_axes(3, 2, 2)).set((0, 0, 0), 0).set(
            (0, 0, 1), 0).set((0, 1, 0), 0).set((0, 1, 1), 0)
        target = ContingencyTable([0.2, 0.4, 0.4], [('X', 3)])
        result = IPFCalibrator().calibrate(start, [target])
        assert result.converged
        np.testing.assert_allclose(result.table.values[0], 0.0)
        np.testing.assert_allclose(result.table.marginalize(['X']).values, [0.0, 0.4, 0.4])
        assert result.max_marginal_error == pytest.approx(0.2)

    def test_start_not_modified(self, skewed_start):
        before = skewed_start.to_array()
        IPFCalibrator().calibrate(skewed_start, [ContingencyTable(np.full(6, 1 / 6), [('X', 6)])])
        np.testing.assert_array_equal(skewed_start.values, before)

    def test_iteration_cap_warns(self, skewed_start, conditional_independence_truth):
        truth = conditional_independence_truth
        targets = [truth.marginalize(['X', 'Y']), truth.marginalize(['X', 'Z'])]
        with pytest.warns(NotFullyConverged):
            result = IPFCalibrator(tol=1e-15, max_iter=1).calibrate(skewed_start, targets)
        assert not result.converged
        assert result.n_iterations == 1
        assert result.table.is_probability(tol=1e-6)

    def test_iteration_cap_without_warning(self, skewed_start):
        target = ContingencyTable(np.full(6, 1 / 6), [('X', 6)])
        with warnings.catch_warnings():
            warnings.simplefilter('error')
            result = IPFCalibrator(max_iter=1, warn=False).calibrate(skewed_start, [target])
        assert not result.converged

    def test_history_records_passes(self, skewed_start):
        target = ContingencyTable(np.full(6, 1 / 6), [('X', 6)])
        result = IPFCalibrator().calibrate(skewed_start, [target])
        assert len(result.history) == result.n_iterations

    def test_target_axis_not_in_table(self, skewed_start):
        with pytest.raises(ShapeMismatch):
            IPFCalibrator().calibrate(skewed_start, [ContingencyTable.uniform({'W': 6})])

    def test_target_axis_size_mismatch(self, skewed_start):
        with pytest.raises(ShapeMismatch):
            IPFCalibrator().calibrate(skewed_start, [ContingencyTable.uniform({'X': 5})])

    def test_no_targets(self, skewed_start):
        with pytest.raises(ValueError):
            IPFCalibrator().calibrate(skewed_start, [])

    def test_invalid_settings(self):
        with pytest.raises(ValueError):
            IPFCalibrator(tol=0)
        with pytest.raises(ValueError):
            IPFCalibrator(max_iter=0)


# =============================================================================
# TEST: build_calibration_targets
# =============================================================================

class TestCalibrationTargets:
    """Tests for targets derived from Samples A and B."""

    @pytest.fixture
    def samples(self):
        a = ContingencyTable([[10, 30], [20, 40], [0, 0]], [('X', 3), ('Y', 2)])
        b = ContingencyTable([[5, 5], [30, 10], [25, 25]], [('X', 3), ('Z', 2)])
        return a, b

    def test_pooled_x(self, samples):
        targets = build_calibration_targets(*samples)
        np.testing.assert_allclose(targets['X'].values, np.array([50, 100, 50]) / 200)

    def test_harmonized_two_way_share_x(self, samples):
        targets = build_calibration_targets(*samples)
        for key in ('XY', 'XZ'):
            np.testing.assert_allclose(targets[key].marginalize(['X']).values, targets['X'].values)
            assert targets[key].is_probability()

    def test_harmonized_keeps_conditionals(self, samples):
        targets = build_calibration_targets(*samples)
        xy = targets['XY'].values
        np.testing.assert_allclose(xy[0] / xy[0].sum(), [0.25, 0.75])

    def test_empty_row_gets_uniform_conditional(self, samples):
        targets = build_calibration_targets(*samples)
        xy = targets['XY'].values
        np.testing.assert_allclose(xy[2], [0.125, 0.125])

    def test_unharmonized(self, samples):
        targets = build_calibration_targets(*samples, harmonize_x=False)
        assert targets['XY'].allclose(samples[0].normalize())
        assert targets['XZ'].allclose(samples[1].normalize())

    def test_wrong_axes(self, samples):
        a, b = samples
        with pytest.raises(ShapeMismatch):
            build_calibration_targets(b, a)

    def test_x_sizes_must_agree(self):
        a = ContingencyTable.create({'X': 3, 'Y': 2}, fill=1)
        b = ContingencyTable.create({'X': 4, 'Z': 2}, fill=1)
        with pytest.raises(ShapeMismatch):
            build_calibration_targets(a, b)
