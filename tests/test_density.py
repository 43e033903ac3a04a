import math

import numpy as np
import pytest

from config import DetectionParams
from density import (DensityEstimator, WarningLevel, adaptive_thresholds, density_snapshot,
                     effective_density, frame_skip, global_density, local_neighbor_counts,
                     max_allowable_particles, packing_ratio, warning_level_for)


def test_default_configuration_is_not_crowded():
    snapshot = density_snapshot(100, 0.08, 2.5)
    assert snapshot.packing_ratio == pytest.approx(0.013726, rel=1e-3)
    assert snapshot.warning_level is WarningLevel.NONE
    assert snapshot.particles_per_axis == pytest.approx(100 ** (1 / 3))
    assert snapshot.average_spacing == pytest.approx((2.5 / 100 ** (1 / 3)) / 0.16)


def test_packing_ratio_increases_with_count_and_radius():
    counts = [packing_ratio(n, 0.08, 2.5) for n in (1, 10, 100, 1000)]
    radii = [packing_ratio(100, r, 2.5) for r in (0.02, 0.05, 0.08, 0.2)]
    assert counts == sorted(counts)
    assert radii == sorted(radii)
    assert packing_ratio(100, 0.16, 2.5) == pytest.approx(8 * packing_ratio(100, 0.08, 2.5))


def test_warning_level_only_escalates_with_ratio():
    order = [WarningLevel.NONE, WarningLevel.WARNING, WarningLevel.CRITICAL]
    levels = [warning_level_for(r) for r in np.linspace(0.0, 0.4, 81)]
    ranks = [order.index(level) for level in levels]
    assert ranks == sorted(ranks)
    assert warning_level_for(0.0999) is WarningLevel.NONE
    assert warning_level_for(0.1) is WarningLevel.WARNING
    assert warning_level_for(0.1999) is WarningLevel.WARNING
    assert warning_level_for(0.2) is WarningLevel.CRITICAL


@pytest.mark.parametrize("radius,container", [(0.08, 2.5), (0.2, 2.5), (0.05, 5.0), (0.5, 2.5)])
def test_max_allowable_particles_stays_below_critical(radius, container):
    n = max_allowable_particles(radius, container)
    assert packing_ratio(n, radius, container) < 0.2
    assert packing_ratio(n + 1, radius, container) >= 0.2


def test_max_allowable_particles_for_default_box():
    # 0.2 * 2.5^3 / ((4/3) pi 0.08^3) = 1457.1...
    assert max_allowable_particles(0.08, 2.5) == 1457
    assert density_snapshot(100, 0.08, 2.5).max_allowable_particles == 1457


def test_empty_population_snapshot():
    snapshot = density_snapshot(0, 0.08, 2.5)
    assert snapshot.packing_ratio == 0.0
    assert snapshot.particles_per_axis == 0.0
    assert snapshot.average_spacing == 0.0


def test_global_density_is_amplified_and_clamped():
    assert global_density(0.01) == pytest.approx(0.1)
    assert global_density(0.5) == 1.0
    params = DetectionParams(global_density_amplification=2.0)
    assert global_density(0.1, params) == pytest.approx(0.2)


def test_local_neighbor_counts_exclude_self():
    positions = np.array([[0.0, 0, 0], [0.1, 0, 0], [0.2, 0, 0], [2.0, 0, 0]])
    counts = local_neighbor_counts(positions, 0.15)
    assert counts.tolist() == [1, 2, 1, 0]
    assert local_neighbor_counts(np.empty((0, 3)), 0.5).size == 0


def test_effective_density_boosts_dense_regions():
    density = effective_density(0.4, [0, 2, 3, 7])
    assert density.tolist() == pytest.approx([0.4, 0.4, 0.6, 0.6])
    assert effective_density(0.9, [5]).tolist() == [1.0]


def test_adaptive_thresholds_endpoints():
    low = adaptive_thresholds(0.05)
    assert float(low.speed_change_threshold) == pytest.approx(0.2)
    assert float(low.min_speed_for_collision) == pytest.approx(0.5)
    high = adaptive_thresholds(0.9)
    assert float(high.speed_change_threshold) == pytest.approx(0.2 * (1 - 0.8))
    assert float(high.min_speed_for_collision) == pytest.approx(0.05)


def test_adaptive_thresholds_decrease_with_density():
    densities = np.linspace(0.0, 1.0, 51)
    thresholds = adaptive_thresholds(densities)
    assert np.all(np.diff(thresholds.speed_change_threshold) <= 0)
    assert np.all(np.diff(thresholds.min_speed_for_collision) <= 0)
    mid = adaptive_thresholds(0.3)
    assert float(mid.speed_change_threshold) == pytest.approx(0.2 * (1 - 0.8 * 0.25))
    assert float(mid.min_speed_for_collision) == pytest.approx(0.5 - 0.45 * math.pow(0.5, 1.5))


def test_frame_skip():
    assert frame_skip(100, 0.1) == 0
    assert frame_skip(450, 0.1) == 2
    assert frame_skip(450, 0.6) == 1
    assert frame_skip(5000, 0.0) == 3
    assert frame_skip(100, 1.0) == 0


def test_estimator_recomputes_only_on_change():
    estimator = DensityEstimator()
    first = estimator.configure(100, 0.08, 2.5)
    assert estimator.configure(100, 0.08, 2.5) is first
    second = estimator.configure(200, 0.08, 2.5)
    assert second.packing_ratio == pytest.approx(2 * first.packing_ratio)
    assert estimator.global_density == pytest.approx(global_density(second.packing_ratio))


def test_estimator_thresholds_per_particle():
    estimator = DensityEstimator()
    estimator.configure(300, 0.08, 2.5)
    cluster = np.zeros((4, 3)) + np.arange(4)[:, None] * 0.05
    lone = np.array([[1.0, 1.0, 1.0]])
    thresholds = estimator.thresholds(np.vstack([cluster, lone]))
    assert thresholds.speed_change_threshold.shape == (5,)
    # clustered particles see a higher effective density, so lower thresholds
    assert thresholds.speed_change_threshold[0] < thresholds.speed_change_threshold[4]


def test_estimator_recomputes_when_params_change():
    estimator = DensityEstimator()
    first = estimator.configure(100, 0.08, 2.5)
    estimator.params = DetectionParams(global_density_amplification=20.0)
    second = estimator.configure(100, 0.08, 2.5)
    assert second == first
    assert estimator.global_density == pytest.approx(first.packing_ratio * 20.0)

    estimator.params = DetectionParams(warning_packing_ratio=0.01)
    assert estimator.configure(100, 0.08, 2.5).warning_level is WarningLevel.WARNING
