import math

import numpy as np
from numba import jit

from config import SimulationConfig


@jit(nopython=True, cache=True)
def resolve_particle_collisions(positions, velocities, masses, radii,
                                restitution, friction, collision_pairs):
    """JIT-compiled particle collision resolution."""
    for pair_idx in range(len(collision_pairs)):
        i, j = int(collision_pairs[pair_idx, 0]), int(collision_pairs[pair_idx, 1])

        d = positions[j] - positions[i]
        dist_sq = d[0]*d[0] + d[1]*d[1] + d[2]*d[2]

        if dist_sq < 1e-24:
            continue

        dist = math.sqrt(dist_sq)
        overlap = radii[i] + radii[j] - dist

        if overlap <= 0:
            continue

        # Normal vector
        nvec = d / dist

        # Relative velocity
        rv = velocities[j] - velocities[i]
        vn = rv[0]*nvec[0] + rv[1]*nvec[1] + rv[2]*nvec[2]

        # Positional correction
        corr = nvec * (overlap * 0.5 + 1e-5)
        positions[i] -= corr
        positions[j] += corr

        # Already separating
        if vn > 0:
            continue

        j_impulse = -(1.0 + restitution) * vn
        denom = (1.0 / masses[i] + 1.0 / masses[j])
        if denom == 0:
            continue
        j_impulse /= denom

        impulse = j_impulse * nvec
        velocities[i] -= impulse / masses[i]
        velocities[j] += impulse / masses[j]

        # Tangential friction
        tangent = rv - vn * nvec
        tn_sq = tangent[0]*tangent[0] + tangent[1]*tangent[1] + tangent[2]*tangent[2]

        if tn_sq > 1e-18 and friction > 0:
            tn = math.sqrt(tn_sq)
            tdir = tangent / tn
            # Coulomb limit: friction cannot reverse the sliding direction
            ft = min(friction * j_impulse, tn / denom)
            velocities[i] += ft * tdir / masses[i]
            velocities[j] -= ft * tdir / masses[j]

    return positions, velocities


@jit(nopython=True, cache=True)
def resolve_wall_collisions(positions, velocities, radii, half_size, restitution, friction):
    """Reflect particles off the six walls of a cube centred on the origin."""
    for i in range(positions.shape[0]):
        limit = half_size - radii[i]
        for axis in range(3):
            p = positions[i, axis]
            if p > limit or p < -limit:
                side = 1.0 if p > 0 else -1.0
                positions[i, axis] = side * limit
                if velocities[i, axis] * side > 0:
                    velocities[i, axis] = -velocities[i, axis] * restitution
                    # tangential damping from wall friction
                    for other in range(3):
                        if other != axis:
                            velocities[i, other] *= (1.0 - friction)
    return positions, velocities


class ParticleBody:
    """Handle to one particle of a BoxSimulation.

    A handle dies when the simulation is repopulated; using it afterwards
    raises LookupError.
    """

    __slots__ = ('sim', 'index', 'generation')

    def __init__(self, sim, index):
        self.sim = sim
        self.index = index
        self.generation = sim.generation

    def _check(self):
        if self.generation != self.sim.generation or self.index >= len(self.sim.positions):
            raise LookupError(f"particle body {self.index} no longer exists")

    def get_position(self):
        self._check()
        return self.sim.positions[self.index].copy()

    def get_linear_velocity(self):
        self._check()
        return self.sim.velocities[self.index].copy()

    def set_linear_velocity(self, vel, wake=True):
        self._check()
        self.sim.velocities[self.index] = vel
        if wake:
            self.sim.sleeping[self.index] = False
            self.sim.rest_time[self.index] = 0.0

    def is_sleeping(self):
        self._check()
        return bool(self.sim.sleeping[self.index])


class BoxSimulation:
    """Rigid spheres in a closed cubic container.

    This is the engine side of the system: integration, contact resolution
    and restitution. The monitoring layer only reads and writes body
    velocities through ParticleBody handles.
    """

    def __init__(self, config=None):
        self.generation = 0
        self.time = 0.0
        self.substeps = 3
        self.can_sleep = False
        self.sleep_speed = 1e-3
        self.sleep_time = 1.0
        self.configure(config or SimulationConfig())
        self.populate(np.empty((0, 3)), np.empty((0, 3)), 0.0)

    def configure(self, config):
        """Apply engine parameters derived from a simulation config."""
        self.config = config
        self.half_size = config.container_size / 2.0
        self.restitution = config.effective_restitution
        friction = config.effective_friction
        self.friction = friction if config.particle_particle_friction else 0.0
        self.wall_friction = friction if config.particle_wall_friction else 0.0
        self.linear_damping = config.linear_damping
        self.gravity = np.array([0.0, -9.81, 0.0]) if config.gravity else np.zeros(3)
        self.time_step = config.time_step

    def populate(self, positions, velocities, radius):
        """Replace all bodies. Handles from the previous population die."""
        positions = np.array(positions, dtype=np.float64).reshape(-1, 3)
        velocities = np.array(velocities, dtype=np.float64).reshape(-1, 3)
        if positions.shape != velocities.shape:
            raise ValueError("positions and velocities must have the same shape")
        n = len(positions)
        self.generation += 1
        self.positions = positions
        self.velocities = velocities
        self.radii = np.full(n, float(radius))
        # unit mass for every body
        self.masses = np.ones(n)
        self.sleeping = np.zeros(n, dtype=bool)
        self.rest_time = np.zeros(n)
        self.time = 0.0
        return [ParticleBody(self, i) for i in range(n)]

    def step(self, dt=None):
        """Execute one simulation step."""
        dt = self.time_step if dt is None else dt
        h = dt / self.substeps
        for _ in range(self.substeps):
            self._integrate(h)
        self._update_sleeping(dt)
        self.time += dt

    def _integrate(self, dt):
        """Integrate physics: velocities, collisions, positions."""
        n = len(self.positions)
        if n == 0:
            return
        awake = ~self.sleeping

        self.velocities[awake] += self.gravity * dt
        if self.linear_damping > 0:
            self.velocities[awake] *= 1.0 / (1.0 + dt * self.linear_damping)

        pairs = self._collision_pairs()
        if len(pairs) > 0:
            self.positions, self.velocities = resolve_particle_collisions(
                self.positions, self.velocities, self.masses, self.radii,
                self.restitution, self.friction, pairs
            )

        self.positions[awake] += self.velocities[awake] * dt

        self.positions, self.velocities = resolve_wall_collisions(
            self.positions, self.velocities, self.radii, self.half_size,
            self.restitution, self.wall_friction
        )

    def _collision_pairs(self):
        """Candidate contact pairs from a uniform grid spatial hash."""
        max_r = float(self.radii.max()) if len(self.radii) else 0.05
        cell_size = max(0.001, max_r * 2.0)

        grid = {}
        cells = np.floor(self.positions / cell_size).astype(np.int64)
        for idx, key in enumerate(map(tuple, cells)):
            grid.setdefault(key, []).append(idx)

        neighbor_offsets = [(dx, dy, dz) for dx in (-1, 0, 1)
                                          for dy in (-1, 0, 1)
                                          for dz in (-1, 0, 1)]

        collision_pairs = []
        for key, indices in grid.items():
            for i in indices:
                for off in neighbor_offsets:
                    nk = (key[0] + off[0], key[1] + off[1], key[2] + off[2])
                    if nk not in grid:
                        continue
                    for j in grid[nk]:
                        if j <= i:
                            continue
                        collision_pairs.append((i, j))

        return np.array(collision_pairs, dtype=np.int64).reshape(-1, 2)

    def _update_sleeping(self, dt):
        if not self.can_sleep:
            return
        speeds = np.linalg.norm(self.velocities, axis=1)
        resting = speeds < self.sleep_speed
        self.rest_time = np.where(resting, self.rest_time + dt, 0.0)
        falling_asleep = (self.rest_time >= self.sleep_time) & ~self.sleeping
        self.velocities[falling_asleep] = 0.0
        self.sleeping |= falling_asleep
