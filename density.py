"""Packing density estimation and density-adaptive detection thresholds."""

import math
from dataclasses import astuple, dataclass
from enum import Enum

import numpy as np
from scipy.spatial import cKDTree

from config import DetectionParams


class WarningLevel(Enum):
    NONE = 'none'
    WARNING = 'warning'
    CRITICAL = 'critical'


@dataclass(frozen=True)
class DensitySnapshot:
    packing_ratio: float
    warning_level: WarningLevel
    particles_per_axis: float
    average_spacing: float
    max_allowable_particles: int


@dataclass(frozen=True)
class AdaptiveThresholds:
    """Per-particle thresholds; both arrays have one entry per sampled particle."""
    speed_change_threshold: np.ndarray
    min_speed_for_collision: np.ndarray


def sphere_volume(radius):
    return (4.0 / 3.0) * math.pi * radius ** 3


def packing_ratio(particle_count, radius, container_size):
    """Total particle volume divided by container volume."""
    return particle_count * sphere_volume(radius) / container_size ** 3


def warning_level_for(ratio, params=None):
    params = params or DetectionParams()
    if ratio >= params.critical_packing_ratio:
        return WarningLevel.CRITICAL
    if ratio >= params.warning_packing_ratio:
        return WarningLevel.WARNING
    return WarningLevel.NONE


def max_allowable_particles(radius, container_size, params=None):
    """Largest particle count whose packing ratio stays below the critical level."""
    params = params or DetectionParams()
    limit = params.critical_packing_ratio * container_size ** 3 / sphere_volume(radius)
    n = max(0, math.ceil(limit) - 1)
    # guard the closed form against floating point at exact multiples
    while n > 0 and packing_ratio(n, radius, container_size) >= params.critical_packing_ratio:
        n -= 1
    while packing_ratio(n + 1, radius, container_size) < params.critical_packing_ratio:
        n += 1
    return n


def density_snapshot(particle_count, radius, container_size, params=None):
    params = params or DetectionParams()
    ratio = packing_ratio(particle_count, radius, container_size)
    per_axis = math.pow(particle_count, 1.0 / 3.0) if particle_count > 0 else 0.0
    if per_axis > 0:
        spacing = (container_size / per_axis) / (radius * 2.0)
    else:
        spacing = 0.0
    return DensitySnapshot(
        packing_ratio=ratio,
        warning_level=warning_level_for(ratio, params),
        particles_per_axis=per_axis,
        average_spacing=spacing,
        max_allowable_particles=max_allowable_particles(radius, container_size, params),
    )


def global_density(ratio, params=None):
    """Packing ratio amplified for sensitivity and clamped to [0, 1]."""
    params = params or DetectionParams()
    return min(1.0, max(0.0, ratio * params.global_density_amplification))


def local_neighbor_counts(positions, radius, tree=None):
    """Number of *other* particles within ``radius`` of each position."""
    positions = np.asarray(positions, dtype=np.float64)
    if len(positions) == 0:
        return np.zeros(0, dtype=np.int64)
    if tree is None:
        tree = cKDTree(positions)
    counts = tree.query_ball_point(positions, r=radius, return_length=True)
    return np.asarray(counts, dtype=np.int64) - 1


def effective_density(global_value, neighbor_counts, params=None):
    params = params or DetectionParams()
    neighbor_counts = np.asarray(neighbor_counts)
    dense = neighbor_counts >= params.local_density_threshold
    boosted = min(1.0, global_value * params.local_density_boost)
    return np.where(dense, boosted, global_value)


def adaptive_thresholds(density, params=None):
    """Detection thresholds for the given effective density (scalar or array).

    Both thresholds decrease monotonically with density so that the gentler,
    more frequent contacts in crowded regions are still picked up.
    """
    params = params or DetectionParams()
    density = np.asarray(density, dtype=np.float64)
    span = params.high_density_threshold - params.low_density_threshold
    normalized = np.clip((density - params.low_density_threshold) / span, 0.0, 1.0)

    reduction = params.max_density_threshold_reduction * normalized ** 2
    speed_change = params.base_speed_change_threshold * (1.0 - reduction)
    min_speed = params.min_speed_low_density - (
        params.min_speed_low_density - params.min_speed_high_density) * normalized ** 1.5
    return AdaptiveThresholds(speed_change, min_speed)


def frame_skip(particle_count, global_value, params=None):
    """Extra frames to skip between classification passes.

    More particles skip more frames; higher density skips fewer.
    """
    params = params or DetectionParams()
    skip = (particle_count // params.frame_skip_particles
            - math.floor(global_value / params.density_frame_skip_threshold))
    return int(min(params.max_frame_skip, max(params.min_frame_skip, skip)))


class DensityEstimator:
    """Caches the global density for a configuration and adds local density per tick."""

    def __init__(self, params=None):
        self.params = params or DetectionParams()
        self.snapshot = None
        self.global_density = 0.0
        self._key = None

    def configure(self, particle_count, radius, container_size):
        """Recompute the snapshot if count, radius, container size or params changed."""
        key = (particle_count, radius, container_size, astuple(self.params))
        if key != self._key:
            self._key = key
            self.snapshot = density_snapshot(particle_count, radius, container_size, self.params)
            self.global_density = global_density(self.snapshot.packing_ratio, self.params)
        return self.snapshot

    def estimate(self, positions, tree=None):
        """Effective density for each position."""
        counts = local_neighbor_counts(positions, self.params.local_density_radius, tree)
        return effective_density(self.global_density, counts, self.params)

    def thresholds(self, positions, tree=None):
        return adaptive_thresholds(self.estimate(positions, tree), self.params)
