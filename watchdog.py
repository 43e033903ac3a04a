import logging

import numpy as np

from particle import random_velocities

logger = logging.getLogger(__name__)


class StallWatchdog:
    """Last-resort recovery when the whole system has stopped moving.

    Activity is any tick whose mean speed exceeds ``activity_speed`` or any
    velocity correction. If nothing has been active for ``stall_timeout``
    seconds and no particle moves faster than ``motion_floor``, every
    particle is re-seeded. The check runs at most once per ``check_interval``.
    """

    def __init__(self, store, rng, now=0.0, activity_speed=0.01, motion_floor=0.005,
                 stall_timeout=5.0, check_interval=1.0, speed_cap=2.0):
        self.store = store
        self.rng = rng
        self.activity_speed = activity_speed
        self.motion_floor = motion_floor
        self.stall_timeout = stall_timeout
        self.check_interval = check_interval
        self.speed_cap = speed_cap
        self.last_activity_time = now
        self.last_check_time = now
        self.reseed_count = 0

    def touch(self, now):
        self.last_activity_time = now

    def observe(self, now, mean_speed):
        if mean_speed > self.activity_speed:
            self.last_activity_time = now

    def check(self, now, speeds):
        """Re-seed all velocities on a global stall. Returns True if it fired."""
        if now - self.last_check_time < self.check_interval:
            return False
        self.last_check_time = now
        if now - self.last_activity_time <= self.stall_timeout:
            return False
        speeds = np.asarray(speeds, dtype=np.float64)
        if np.any(speeds > self.motion_floor):
            return False

        logger.warning("simulation appears stalled, resetting particle velocities")
        store = self.store
        ids = np.arange(len(store))
        velocities = random_velocities(self.rng, np.minimum(store.target_speed, self.speed_cap))
        for pid, vel in zip(ids, velocities):
            store.write_velocity(pid, vel)
        self.reseed_count += 1
        self.last_activity_time = now
        return True
