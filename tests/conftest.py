import numpy as np
import pytest

from particle import ParticleStore


class FakeBody:
    """In-memory body handle recording velocity writes."""

    def __init__(self, position=(0.0, 0.0, 0.0), velocity=(0.0, 0.0, 0.0),
                 sleeping=False, broken=False):
        self.position = np.array(position, dtype=float)
        self.velocity = np.array(velocity, dtype=float)
        self.sleeping = sleeping
        self.broken = broken
        self.writes = []

    def _check(self):
        if self.broken:
            raise RuntimeError("body was removed")

    def get_position(self):
        self._check()
        return self.position.copy()

    def get_linear_velocity(self):
        self._check()
        return self.velocity.copy()

    def set_linear_velocity(self, vel, wake=True):
        self._check()
        self.velocity = np.array(vel, dtype=float)
        self.writes.append(self.velocity.copy())
        if wake:
            self.sleeping = False

    def is_sleeping(self):
        self._check()
        return self.sleeping


def make_store(bodies, targets):
    store = ParticleStore()
    store.reset(bodies, targets)
    return store


@pytest.fixture
def rng():
    return np.random.default_rng(1234)
