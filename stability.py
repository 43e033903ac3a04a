"""Velocity repair and regime-dependent speed stabilization."""

import logging
from dataclasses import dataclass, field

import numpy as np

from config import FrictionRegime
from particle import random_velocities

logger = logging.getLogger(__name__)

# any component above this is treated as an engine explosion
MAX_VELOCITY_COMPONENT = 100.0
# reseeds never inject more than this, to avoid re-exciting the instability
RESEED_SPEED_CAP = 2.0
FALLBACK_TARGET_SPEED = 0.5

ZERO_FRICTION_MIN_SPEED = 0.05
ZERO_FRICTION_MAX_SPEED = 10.0
ZERO_FRICTION_TOLERANCE = 0.15
ZERO_FRICTION_BOOST_CAP = 5.0

LOW_FRICTION_RATIO = 0.5
LOW_FRICTION_FLOOR = 0.1

_NO_IDS = np.empty(0, dtype=np.int64)


def invalid_velocity_mask(velocities):
    """Rows with a NaN/infinite component or a component above the explosion guard."""
    velocities = np.asarray(velocities, dtype=np.float64).reshape(-1, 3)
    with np.errstate(invalid='ignore'):
        bad = ~np.isfinite(velocities) | (np.abs(velocities) > MAX_VELOCITY_COMPONENT)
    return np.any(bad, axis=1)


def low_friction_boost(target_speed, friction_coefficient):
    """Speed restored in the low friction regime; weaker friction boosts harder."""
    factor = 1.0 - min(friction_coefficient * 10.0, 0.9)
    return target_speed * factor * 0.5


@dataclass
class CorrectionReport:
    reseeded: np.ndarray = field(default_factory=lambda: _NO_IDS)
    revived: np.ndarray = field(default_factory=lambda: _NO_IDS)
    capped: np.ndarray = field(default_factory=lambda: _NO_IDS)
    boosted: np.ndarray = field(default_factory=lambda: _NO_IDS)

    @property
    def count(self):
        return len(self.reseeded) + len(self.revived) + len(self.capped) + len(self.boosted)


class StabilityCorrector:
    """Keeps engine velocities valid and, without friction, near the target speed."""

    def __init__(self, store, regime, friction_coefficient, rng):
        self.store = store
        self.regime = regime
        self.friction_coefficient = friction_coefficient
        self.rng = rng

    def _write(self, ids, velocities):
        written = [pid for pid, vel in zip(ids, velocities)
                   if self.store.write_velocity(pid, vel)]
        return np.asarray(written, dtype=np.int64)

    def reseed_speeds(self, ids):
        """Safe reseed speed for each id: target speed capped at RESEED_SPEED_CAP."""
        targets = self.store.target_speed[ids]
        targets = np.where(targets > 0.0, targets, FALLBACK_TARGET_SPEED)
        return np.minimum(targets, RESEED_SPEED_CAP)

    def repair_invalid(self, ids):
        """Replace invalid velocities with a random direction at a safe speed."""
        ids = np.asarray(ids, dtype=np.int64)
        if len(ids) == 0:
            return _NO_IDS
        store = self.store
        for pid in ids:
            store.issues.issue('INVALID_VELOCITY', particle=int(pid))
        return self._write(ids, random_velocities(self.rng, self.reseed_speeds(ids)))

    def correct(self, batch, invalid=None):
        """Apply the invalid guard and the regime correction to one batch."""
        report = CorrectionReport()
        if len(batch) == 0:
            return report
        if invalid is None:
            invalid = invalid_velocity_mask(batch.velocities)
        report.reseeded = self.repair_invalid(batch.ids[invalid])

        if self.regime is FrictionRegime.ZERO:
            self._correct_zero_friction(batch, ~invalid, report)
        elif self.regime is FrictionRegime.LOW:
            self._correct_low_friction(batch, ~invalid, report)
        return report

    def _correct_zero_friction(self, batch, valid, report):
        ids = batch.ids
        vel = batch.velocities
        speeds = batch.speeds
        targets = self.store.target_speed[ids]

        slow = valid & (speeds < ZERO_FRICTION_MIN_SPEED)
        fast = valid & ~slow & (speeds > ZERO_FRICTION_MAX_SPEED)
        with np.errstate(divide='ignore', invalid='ignore'):
            deviation = np.abs(speeds - targets) / targets
            # only lost speed is restored; gains are left to the engine to damp
            lagging = (valid & ~slow & ~fast & (targets > 0.0)
                       & (deviation > ZERO_FRICTION_TOLERANCE)
                       & (speeds < targets * (1.0 - ZERO_FRICTION_TOLERANCE)))

            report.revived = self._write(ids[slow], random_velocities(self.rng, targets[slow]))
            scale = ZERO_FRICTION_MAX_SPEED / speeds[fast]
            report.capped = self._write(ids[fast], vel[fast] * scale[:, None])
            scale = np.minimum(targets[lagging], ZERO_FRICTION_BOOST_CAP) / speeds[lagging]
            report.boosted = self._write(ids[lagging], vel[lagging] * scale[:, None])

    def _correct_low_friction(self, batch, valid, report):
        ids = batch.ids
        vel = batch.velocities
        speeds = batch.speeds
        targets = self.store.target_speed[ids]

        boost = low_friction_boost(targets, self.friction_coefficient)
        weak = (valid & (speeds < targets * LOW_FRICTION_RATIO)
                & (speeds < LOW_FRICTION_FLOOR) & (boost > speeds))
        rows = np.flatnonzero(weak)
        if len(rows) == 0:
            return
        new_vel = np.empty((len(rows), 3))
        resting = speeds[rows] < 1e-12
        new_vel[resting] = random_velocities(self.rng, boost[rows][resting])
        moving = rows[~resting]
        new_vel[~resting] = vel[moving] * (boost[moving] / speeds[moving])[:, None]
        report.boosted = self._write(ids[rows], new_vel)
