"""Collision classification from kinematic samples.

The engine resolves contacts but does not report them, so collisions are
inferred: a particle is colliding with a wall when it sits at the wall and
moves into it (or has just bounced off it), and it is a particle-particle
collision candidate when its speed deviates abruptly from its target speed.
Candidates are paired with every particle close enough to have touched them.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum

import numpy as np
from scipy.spatial import cKDTree

from config import DetectionParams

logger = logging.getLogger(__name__)

_NO_IDS = np.empty(0, dtype=np.int64)


class VisualState(Enum):
    IDLE = 'idle'
    COLLIDING = 'colliding'
    FADING = 'fading'
    STUCK_RECOVERY = 'stuck_recovery'


@dataclass
class Classification:
    """Particle ids marked during one classification pass."""
    wall: np.ndarray = field(default_factory=lambda: _NO_IDS)
    candidates: np.ndarray = field(default_factory=lambda: _NO_IDS)
    partners: np.ndarray = field(default_factory=lambda: _NO_IDS)
    invalid: np.ndarray = field(default_factory=lambda: _NO_IDS)
    new_collisions: int = 0

    @property
    def colliding(self):
        return np.unique(np.concatenate([self.wall, self.candidates, self.partners, self.invalid]))


def wall_collision_mask(positions, velocities, previous, has_previous, radius, half_size,
                        params=None):
    """Boolean mask of particles hitting a wall, one entry per row.

    A particle collides with a wall if it is beyond the wall threshold on some
    axis and moving further out, or if it is close to the wall and the
    velocity on that axis has flipped since the previous tick (the bounce
    happened between two samples).
    """
    params = params or DetectionParams()
    positions = np.asarray(positions, dtype=np.float64)
    velocities = np.asarray(velocities, dtype=np.float64)
    threshold = half_size - radius - params.wall_proximity_margin

    outside = np.abs(positions) > threshold
    moving_out = np.sign(positions) == np.sign(velocities)
    hit = outside & moving_out

    near = np.abs(positions) > threshold * params.wall_flip_band
    flipped = np.sign(velocities) != np.sign(previous)
    fast = np.abs(velocities) > params.wall_flip_noise_floor
    bounced = np.asarray(has_previous, dtype=bool)[:, None] & near & flipped & fast

    return np.any(hit | bounced, axis=1)


def collision_candidate_mask(speeds, target_speeds, thresholds):
    """Particles whose speed changed abruptly enough to suggest a contact."""
    speeds = np.asarray(speeds, dtype=np.float64)
    targets = np.asarray(target_speeds, dtype=np.float64)
    reference = np.where(targets != 0.0, targets, 0.1)
    with np.errstate(invalid='ignore'):
        change = np.abs(speeds - targets) / reference
        return ((change > thresholds.speed_change_threshold)
                & (speeds > thresholds.min_speed_for_collision))


def neighbor_search_size(particle_count, params=None):
    """How many nearest particles a candidate is compared against."""
    params = params or DetectionParams()
    if particle_count <= params.neighbor_search_cutover:
        return particle_count
    return max(params.neighbor_search_min,
               int(particle_count * params.neighbor_search_fraction))


def find_partners(tree, index, threshold, particle_count, params=None):
    """Rows of ``tree`` within ``threshold`` of row ``index``, excluding itself.

    Above the neighbour-search cutover only the nearest particles are
    examined, which trades exactness for a bounded per-tick cost.
    """
    params = params or DetectionParams()
    point = tree.data[index]
    if particle_count > params.neighbor_search_cutover:
        k = min(neighbor_search_size(particle_count, params) + 1, tree.n)
        dist, rows = tree.query(point, k=k)
        rows = np.atleast_1d(rows)[np.atleast_1d(dist) < threshold]
    else:
        rows = np.asarray(tree.query_ball_point(point, r=threshold), dtype=np.int64)
    return rows[rows != index]


class CollisionClassifier:
    """Marks colliding particles in the store and expires their visual state."""

    def __init__(self, store, fade_duration, params=None):
        self.store = store
        self.fade_duration = float(fade_duration)
        self.params = params or DetectionParams()
        self.last_stuck_check = 0.0
        self.stuck_recoveries = 0

    def mark(self, pid, now):
        """Mark one particle colliding. Returns True for a new collision event."""
        store = self.store
        is_new = (not store.is_colliding[pid]
                  or now - store.collision_start_time[pid] > self.fade_duration)
        # every hit restarts the fade, even one inside a running fade
        store.set_colliding(pid, now)
        return bool(is_new)

    def _mark_all(self, ids, now):
        return sum(self.mark(pid, now) for pid in ids)

    def classify(self, batch, ctx, invalid=None):
        """Run the wall and particle-particle tests over one batch.

        ``invalid`` is a mask over the batch of particles with physically
        impossible velocities; they are marked colliding and excluded from
        the other tests. Previous velocities are updated for the valid rows.
        """
        store = self.store
        result = Classification()
        if len(batch) == 0:
            return result
        now = ctx.now
        if invalid is None:
            invalid = np.zeros(len(batch), dtype=bool)
        valid = ~invalid
        ids = batch.ids

        result.invalid = ids[invalid]
        result.new_collisions += self._mark_all(result.invalid, now)

        wall = wall_collision_mask(batch.positions, batch.velocities,
                                   store.previous_velocity[ids], store.has_previous[ids],
                                   ctx.radius, ctx.half_size, self.params) & valid
        result.wall = ids[wall]
        result.new_collisions += self._mark_all(result.wall, now)

        candidates = collision_candidate_mask(batch.speeds, store.target_speed[ids],
                                              ctx.thresholds) & valid
        store.remember_velocities(ids[valid], batch.velocities[valid])

        rows = np.flatnonzero(candidates)
        result.candidates = ids[rows]
        if len(rows):
            tree = ctx.tree if ctx.tree is not None else cKDTree(batch.positions)
            reach = self.params.proximity_threshold + ctx.radius * 2.0
            partners = []
            for row in rows:
                near = ids[find_partners(tree, row, reach, len(store), self.params)]
                result.new_collisions += self.mark(ids[row], now)
                result.new_collisions += self._mark_all(near, now)
                partners.append(near)
            result.partners = np.unique(np.concatenate(partners))
        return result

    def recover_stuck(self, now):
        """Force-clear particles colliding for more than twice the fade duration."""
        store = self.store
        stuck = store.is_colliding & (now - store.collision_start_time > self.fade_duration * 2.0)
        ids = np.flatnonzero(stuck)
        if len(ids):
            store.clear_collisions(ids)
            self.stuck_recoveries += len(ids)
            logger.debug("reset %d stuck particle(s)", len(ids))
        return ids

    def expire_fades(self, now):
        """Clear particles whose fade has completed."""
        store = self.store
        done = store.is_colliding & (now - store.collision_start_time >= self.fade_duration)
        ids = np.flatnonzero(done)
        if len(ids):
            store.clear_collisions(ids)
        return ids

    def housekeeping(self, now, stuck_interval=1.0):
        """Stuck recovery (at most once per ``stuck_interval``), then fade expiry."""
        stuck = _NO_IDS
        if now - self.last_stuck_check > stuck_interval:
            self.last_stuck_check = now
            stuck = self.recover_stuck(now)
        return stuck, self.expire_fades(now)

    def fade_progress(self, now):
        """Per-particle fade in [0, 1]; 0 is the collision colour, 1 the default."""
        store = self.store
        elapsed = now - store.collision_start_time
        progress = np.clip(elapsed / self.fade_duration, 0.0, 1.0)
        return np.where(store.is_colliding, progress, 1.0)

    def state(self, pid, now):
        store = self.store
        if not store.is_colliding[pid]:
            return VisualState.IDLE
        elapsed = now - store.collision_start_time[pid]
        if elapsed <= 0.0:
            return VisualState.COLLIDING
        if elapsed > self.fade_duration * 2.0:
            return VisualState.STUCK_RECOVERY
        return VisualState.FADING
