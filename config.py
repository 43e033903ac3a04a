import json
import math
from dataclasses import dataclass, field, asdict, fields
from enum import Enum


BASE_CONTAINER_SIZE = 2.5


class FrictionRegime(Enum):
    ZERO = 'zero'
    LOW = 'low'
    NORMAL = 'normal'


@dataclass
class DetectionParams:
    """Tuning constants for collision detection and density adaptation."""
    base_speed_change_threshold: float = 0.2
    proximity_threshold: float = 0.05
    wall_proximity_margin: float = 0.02
    wall_flip_noise_floor: float = 0.1
    wall_flip_band: float = 0.9

    min_frame_skip: int = 0
    max_frame_skip: int = 3
    frame_skip_particles: int = 200
    density_frame_skip_threshold: float = 0.5

    low_density_threshold: float = 0.1
    high_density_threshold: float = 0.5
    max_density_threshold_reduction: float = 0.8
    min_speed_high_density: float = 0.05
    min_speed_low_density: float = 0.5

    local_density_radius: float = 0.5
    local_density_threshold: int = 3
    local_density_boost: float = 1.5
    global_density_amplification: float = 10.0

    # neighbour search is truncated above this many particles
    neighbor_search_cutover: int = 500
    neighbor_search_min: int = 100
    neighbor_search_fraction: float = 0.2

    warning_packing_ratio: float = 0.1
    critical_packing_ratio: float = 0.2


@dataclass
class SimulationConfig:
    particle_count: int = 100
    particle_size: float = 0.08
    initial_velocity: float = 1.0
    restitution: float = 0.999
    friction_coefficient: float = 0.1
    particle_particle_friction: bool = True
    particle_wall_friction: bool = False
    gravity: bool = False
    collision_fade_duration: float = 0.5
    dynamic_container_size: bool = False
    detection: DetectionParams = field(default_factory=DetectionParams)

    @property
    def container_size(self):
        return container_size_for(self.particle_count, self.dynamic_container_size)

    @property
    def friction_enabled(self):
        return self.particle_particle_friction or self.particle_wall_friction

    @property
    def friction_regime(self):
        if not self.friction_enabled:
            return FrictionRegime.ZERO
        if self.friction_coefficient < 0.05:
            return FrictionRegime.LOW
        return FrictionRegime.NORMAL

    @property
    def effective_restitution(self):
        # perfectly elastic when there is no friction at all
        return self.restitution if self.friction_enabled else 1.0

    @property
    def effective_friction(self):
        return self.friction_coefficient if self.friction_enabled else 0.0

    @property
    def linear_damping(self):
        if not self.friction_enabled:
            return 0.0
        return math.pow(self.friction_coefficient, 1.5) * 0.1

    @property
    def time_step(self):
        return 1.0 / 180.0 if not self.friction_enabled else 1.0 / 90.0

    def validate(self):
        """Raise ValueError if the configuration cannot be simulated."""
        if self.particle_count < 0:
            raise ValueError(f"particle_count must be >= 0, got {self.particle_count}")
        if self.particle_size <= 0:
            raise ValueError(f"particle_size must be > 0, got {self.particle_size}")
        if self.particle_size * 2 >= self.container_size:
            raise ValueError(
                f"particle_size {self.particle_size} does not fit a container of {self.container_size}")
        if self.initial_velocity < 0:
            raise ValueError(f"initial_velocity must be >= 0, got {self.initial_velocity}")
        if not 0.0 <= self.restitution <= 1.0:
            raise ValueError(f"restitution must be within [0, 1], got {self.restitution}")
        if self.friction_coefficient < 0:
            raise ValueError(f"friction_coefficient must be >= 0, got {self.friction_coefficient}")
        if self.collision_fade_duration <= 0:
            raise ValueError(
                f"collision_fade_duration must be > 0, got {self.collision_fade_duration}")
        return self

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_dict(cls, data):
        data = dict(data)
        detection = data.pop('detection', None) or {}
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"unknown configuration keys: {sorted(unknown)}")
        known_detection = {f.name for f in fields(DetectionParams)}
        unknown = set(detection) - known_detection
        if unknown:
            raise ValueError(f"unknown detection keys: {sorted(unknown)}")
        return cls(detection=DetectionParams(**detection), **data).validate()


def container_size_for(particle_count, dynamic=False):
    """Side length of the cubic container.

    With dynamic sizing the volume scales with the particle count relative to
    the 100-particle reference, bounded to 0.8x-2.0x of the base side.
    """
    if not dynamic:
        return BASE_CONTAINER_SIZE
    scale = math.pow(max(particle_count, 0) / 100.0, 1.0 / 3.0)
    scale = max(0.8, min(2.0, scale))
    return BASE_CONTAINER_SIZE * scale


def load_config(filepath):
    """Load a configuration from JSON, filling in defaults for missing keys."""
    with open(filepath) as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"{filepath}: expected a JSON object")

    defaults = SimulationConfig().to_dict()

    def merge_defaults(cfg, defs):
        for key, value in defs.items():
            if key not in cfg:
                cfg[key] = value
            elif isinstance(value, dict) and isinstance(cfg[key], dict):
                merge_defaults(cfg[key], value)

    merge_defaults(data, defaults)
    return SimulationConfig.from_dict(data)


def save_config(config, filepath):
    with open(filepath, 'w') as f:
        json.dump(config.to_dict(), f, indent=2)
