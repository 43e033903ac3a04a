from dataclasses import dataclass
from typing import NamedTuple, Protocol

import numpy as np

from diagnostics import IssueLog

# collision_start_time == 0 marks an idle particle, so stamps are kept positive
_MIN_STAMP = np.finfo(np.float64).tiny


class BodyHandle(Protocol):
    """The four operations the core needs from a rigid body."""

    def get_position(self): ...

    def get_linear_velocity(self): ...

    def set_linear_velocity(self, vel, wake=True): ...

    def is_sleeping(self): ...


class KinematicSample(NamedTuple):
    id: int
    position: np.ndarray
    velocity: np.ndarray


@dataclass
class KinematicBatch:
    """Kinematic state of every particle that could be read this tick."""
    ids: np.ndarray
    positions: np.ndarray
    velocities: np.ndarray
    sleeping: np.ndarray

    @classmethod
    def empty(cls):
        return cls(np.empty(0, dtype=np.int64), np.empty((0, 3)), np.empty((0, 3)),
                   np.empty(0, dtype=bool))

    def __len__(self):
        return len(self.ids)

    def __iter__(self):
        for i, pid in enumerate(self.ids):
            yield KinematicSample(int(pid), self.positions[i], self.velocities[i])

    @property
    def speeds(self):
        return np.linalg.norm(self.velocities, axis=1)


@dataclass(frozen=True)
class CollisionStatus:
    is_colliding: bool
    collision_start_time: float
    last_update_time: float


def random_directions(rng, n):
    """Unit vectors uniformly distributed on the sphere, shape (n, 3)."""
    d = rng.normal(size=(n, 3))
    norms = np.linalg.norm(d, axis=1)
    degenerate = norms < 1e-12
    if np.any(degenerate):
        d[degenerate] = (1.0, 0.0, 0.0)
        norms[degenerate] = 1.0
    return d / norms[:, None]


def random_velocities(rng, speeds):
    speeds = np.asarray(speeds, dtype=np.float64).reshape(-1)
    return random_directions(rng, len(speeds)) * speeds[:, None]


def generate_particles(count, radius, max_velocity, container_size, rng):
    """Random positions and velocities for a fresh population.

    Positions keep one particle diameter away from every wall, or one radius
    when the container is too small for that. Speeds are
    drawn from [0.5, 1.0] x ``max_velocity``.
    """
    half = container_size / 2.0
    padding = radius * 2.0
    if half - padding <= 0.0:
        # too tight for a diameter of clearance, only keep the spheres inside
        padding = min(radius, half)
    low, high = -half + padding, half - padding
    positions = rng.uniform(low, high, size=(count, 3))
    speeds = (0.5 + rng.random(count) * 0.5) * max_velocity
    velocities = random_velocities(rng, speeds)
    return positions, velocities


class ParticleStore:
    """Arena of per-particle state indexed by particle id.

    The engine owns position and velocity storage; the store only keeps a
    non-owning handle per particle and the records the core needs across
    ticks: target speed, previous velocity, collision status and a position
    cache for neighbour queries.
    """

    def __init__(self, issues=None):
        self.issues = issues if issues is not None else IssueLog()
        self.reset([], [])

    def reset(self, handles, target_speeds):
        """Replace the whole population. All collision statuses start idle."""
        target_speeds = np.asarray(target_speeds, dtype=np.float64).reshape(-1)
        n = len(handles)
        if target_speeds.shape[0] != n:
            raise ValueError(f"got {n} handles but {target_speeds.shape[0]} target speeds")
        self.handles = list(handles)
        self.target_speed = target_speeds.copy()
        self.previous_velocity = np.zeros((n, 3))
        self.has_previous = np.zeros(n, dtype=bool)
        self.positions = np.zeros((n, 3))
        self.is_colliding = np.zeros(n, dtype=bool)
        self.collision_start_time = np.zeros(n)
        self.last_update_time = np.zeros(n)

    def __len__(self):
        return len(self.handles)

    def status(self, pid):
        return CollisionStatus(bool(self.is_colliding[pid]),
                               float(self.collision_start_time[pid]),
                               float(self.last_update_time[pid]))

    def refresh(self):
        """Read every handle once. Dead or failing handles are skipped."""
        ids, positions, velocities, sleeping = [], [], [], []
        for pid, body in enumerate(self.handles):
            if body is None:
                continue
            try:
                pos = np.asarray(body.get_position(), dtype=np.float64).reshape(3)
                vel = np.asarray(body.get_linear_velocity(), dtype=np.float64).reshape(3)
                asleep = bool(body.is_sleeping())
            except Exception as err:
                self.issues.error(f"position tracking error on particle {pid}", err)
                continue
            if not np.all(np.isfinite(pos)):
                self.issues.issue('INVALID_POSITION', particle=pid)
                continue
            ids.append(pid)
            positions.append(pos)
            velocities.append(vel)
            sleeping.append(asleep)

        if not ids:
            return KinematicBatch.empty()
        batch = KinematicBatch(np.array(ids, dtype=np.int64), np.array(positions),
                               np.array(velocities), np.array(sleeping, dtype=bool))
        self.positions[batch.ids] = batch.positions
        return batch

    def remember_velocities(self, ids, velocities):
        self.previous_velocity[ids] = velocities
        self.has_previous[ids] = True

    def write_velocity(self, pid, velocity):
        """Push a velocity to the engine. Returns False if the write failed."""
        body = self.handles[pid]
        if body is None:
            return False
        try:
            body.set_linear_velocity(np.asarray(velocity, dtype=np.float64), True)
        except Exception as err:
            self.issues.error(f"velocity write error on particle {pid}", err)
            return False
        return True

    def set_colliding(self, pid, now):
        stamp = max(float(now), _MIN_STAMP)
        self.is_colliding[pid] = True
        self.collision_start_time[pid] = stamp
        self.last_update_time[pid] = stamp

    def clear_collisions(self, ids):
        self.is_colliding[ids] = False
        self.collision_start_time[ids] = 0.0
        self.last_update_time[ids] = 0.0
