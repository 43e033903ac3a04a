"""Per-tick pass sequence over the particle population.

``ParticleMonitor.tick`` is the pure computation phase: it reads the engine,
classifies collisions, corrects velocities and returns a ``TickResult``.
Turning results into host callbacks is left to ``metrics.MetricsReporter``.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Optional

import numpy as np
from scipy.spatial import cKDTree

from collisions import Classification, CollisionClassifier
from config import SimulationConfig
from density import AdaptiveThresholds, DensityEstimator, DensitySnapshot, frame_skip
from diagnostics import IssueLog
from metrics import kinematic_summary
from particle import ParticleStore, generate_particles
from stability import CorrectionReport, StabilityCorrector, invalid_velocity_mask
from watchdog import StallWatchdog

logger = logging.getLogger(__name__)

_NO_IDS = np.empty(0, dtype=np.int64)


@dataclass(frozen=True)
class TickContext:
    """Everything the passes of one tick share."""
    now: float
    radius: float
    half_size: float
    density: DensitySnapshot
    global_density: float
    thresholds: AdaptiveThresholds
    tree: Optional[cKDTree] = None


@dataclass
class TickResult:
    time: float
    skipped: bool = False
    sampled: int = 0
    active_count: int = 0
    mean_speed: float = 0.0
    new_collisions: int = 0
    stalled: bool = False
    density: Optional[DensitySnapshot] = None
    classification: Classification = field(default_factory=Classification)
    corrections: CorrectionReport = field(default_factory=CorrectionReport)
    stuck: np.ndarray = field(default_factory=lambda: _NO_IDS)
    expired: np.ndarray = field(default_factory=lambda: _NO_IDS)


class ParticleMonitor:
    """Collision classification and stability layer on top of a rigid-body engine."""

    def __init__(self, config=None, rng=None, clock=time.perf_counter, issues=None):
        self.config = config or SimulationConfig()
        self.rng = rng if rng is not None else np.random.default_rng()
        self.clock = clock
        self.issues = issues if issues is not None else IssueLog()
        self.store = ParticleStore(self.issues)
        self.estimator = DensityEstimator(self.config.detection)
        self.frame_counter = 0
        self._build_passes(self.clock())

    def _build_passes(self, now):
        config = self.config
        self.classifier = CollisionClassifier(self.store, config.collision_fade_duration,
                                              config.detection)
        self.corrector = StabilityCorrector(self.store, config.friction_regime,
                                            config.effective_friction, self.rng)
        self.watchdog = StallWatchdog(self.store, self.rng, now=now)

    @property
    def density(self):
        return self.estimator.snapshot

    def reinitialize(self, spawn, config=None, now=None):
        """Discard all particle state and spawn a new population.

        ``spawn(positions, velocities, radius)`` creates the bodies in the
        engine and returns one handle per particle.
        """
        if config is not None:
            self.config = config
        config = self.config.validate()
        now = self.clock() if now is None else now

        container = config.container_size
        positions, velocities = generate_particles(
            config.particle_count, config.particle_size, config.initial_velocity,
            container, self.rng)
        handles = spawn(positions, velocities, config.particle_size)
        self.store.reset(handles, np.linalg.norm(velocities, axis=1))

        self.estimator.params = config.detection
        snapshot = self.estimator.configure(config.particle_count, config.particle_size, container)
        self.issues.reset()
        self.frame_counter = 0
        self._build_passes(now)
        logger.info("spawned %d particles (radius %.3f) in a %.2f container, %s friction",
                    len(self.store), config.particle_size, container,
                    config.friction_regime.value)
        return snapshot

    def build_context(self, batch, now):
        config = self.config
        tree = cKDTree(batch.positions) if len(batch) else None
        return TickContext(
            now=now,
            radius=config.particle_size,
            half_size=config.container_size / 2.0,
            density=self.estimator.snapshot,
            global_density=self.estimator.global_density,
            thresholds=self.estimator.thresholds(batch.positions, tree),
            tree=tree,
        )

    def skip_frames(self):
        return frame_skip(len(self.store), self.estimator.global_density, self.config.detection)

    def tick(self, now=None):
        """Run one classification/correction pass, unless this frame is skipped."""
        now = self.clock() if now is None else now
        skip = self.skip_frames()
        self.frame_counter = (self.frame_counter + 1) % (skip + 1)
        if self.frame_counter != 0:
            return TickResult(time=now, skipped=True, density=self.estimator.snapshot)

        batch = self.store.refresh()
        active, mean_speed = kinematic_summary(batch)
        ctx = self.build_context(batch, now)

        invalid = invalid_velocity_mask(batch.velocities)
        classification = self.classifier.classify(batch, ctx, invalid)
        stuck, expired = self.classifier.housekeeping(now)
        corrections = self.corrector.correct(batch, invalid)

        if corrections.count:
            self.watchdog.touch(now)
        self.watchdog.observe(now, mean_speed)
        stalled = self.watchdog.check(now, batch.speeds)

        return TickResult(
            time=now,
            sampled=len(batch),
            active_count=active,
            mean_speed=mean_speed,
            new_collisions=classification.new_collisions,
            stalled=stalled,
            density=ctx.density,
            classification=classification,
            corrections=corrections,
            stuck=stuck,
            expired=expired,
        )

    def fade_progress(self, now=None):
        now = self.clock() if now is None else now
        return self.classifier.fade_progress(now)
