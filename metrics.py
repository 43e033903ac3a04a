import logging
from collections import deque

import numpy as np

from density import WarningLevel

logger = logging.getLogger(__name__)

ACTIVE_SPEED = 0.01


def kinematic_summary(batch):
    """Active particle count and mean speed of a batch.

    Non-finite speeds are left out of the mean; the invalid-velocity guard
    deals with those particles.
    """
    if len(batch) == 0:
        return 0, 0.0
    speeds = batch.speeds
    finite = np.isfinite(speeds)
    active = int(np.count_nonzero(~batch.sleeping & finite & (speeds > ACTIVE_SPEED)))
    mean = float(np.mean(speeds[finite])) if np.any(finite) else 0.0
    return active, max(0.0, mean)


class MetricsReporter:
    """Turns tick results into throttled host callbacks.

    Speed and active count are reported every processed tick. Collisions are
    accumulated and flushed every ``flush_interval`` seconds so the host
    receives a rate rather than a running total. The density advisory is
    only reported when it changes.
    """

    def __init__(self, on_active_particles_change=None, on_speed_update=None,
                 on_collision_count_update=None, on_density_warning=None,
                 flush_interval=0.5, history_size=100, now=0.0):
        self.on_active_particles_change = on_active_particles_change
        self.on_speed_update = on_speed_update
        self.on_collision_count_update = on_collision_count_update
        self.on_density_warning = on_density_warning
        self.flush_interval = flush_interval
        self.collision_counter = 0
        self.last_flush_time = now
        self.last_density = None
        self.last_speed = 0.0
        self.speed_history = deque(maxlen=history_size)
        self.collision_history = deque(maxlen=history_size)

    def reset(self, now):
        self.collision_counter = 0
        self.last_flush_time = now
        self.last_speed = 0.0
        self.speed_history.clear()
        self.collision_history.clear()

    def record(self, result):
        """Report one tick result. Skipped ticks only advance the flush timer."""
        if not result.skipped:
            self.collision_counter += result.new_collisions
            self.last_speed = result.mean_speed
            if self.on_speed_update is not None:
                self.on_speed_update(result.mean_speed)
            if self.on_active_particles_change is not None and result.sampled > 0:
                self.on_active_particles_change(result.active_count)
        if result.density is not None:
            self.report_density(result.density)
        if result.time - self.last_flush_time >= self.flush_interval:
            self.flush(result.time)

    def flush(self, now):
        """Report the collisions since the last flush and reset the counter."""
        count = self.collision_counter
        self.collision_counter = 0
        self.last_flush_time = now
        self.collision_history.append(count)
        self.speed_history.append(self.last_speed)
        if self.on_collision_count_update is not None:
            self.on_collision_count_update(count)
        return count

    def report_density(self, snapshot):
        if snapshot == self.last_density:
            return False
        self.last_density = snapshot
        if snapshot.warning_level is not WarningLevel.NONE:
            logger.info("packing ratio %.3f is at %s level (max %d particles)",
                        snapshot.packing_ratio, snapshot.warning_level.value,
                        snapshot.max_allowable_particles)
        if self.on_density_warning is not None:
            self.on_density_warning(snapshot)
        return True
