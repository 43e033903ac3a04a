import numpy as np
import pytest
from scipy.spatial import cKDTree

from collisions import (CollisionClassifier, VisualState, collision_candidate_mask,
                        find_partners, neighbor_search_size, wall_collision_mask)
from conftest import FakeBody, make_store
from density import adaptive_thresholds, density_snapshot
from monitor import TickContext

RADIUS = 0.08
HALF = 1.25


def make_ctx(batch, now, density=0.0):
    return TickContext(
        now=now,
        radius=RADIUS,
        half_size=HALF,
        density=density_snapshot(len(batch), RADIUS, HALF * 2),
        global_density=density,
        thresholds=adaptive_thresholds(np.full(len(batch), density)),
    )


def wall_hit(position, velocity, previous=None):
    prev = np.zeros((1, 3)) if previous is None else np.array([previous], dtype=float)
    mask = wall_collision_mask(np.array([position], dtype=float), np.array([velocity], dtype=float),
                               prev, [previous is not None], RADIUS, HALF)
    return bool(mask[0])


def assert_status_invariant(store):
    assert np.array_equal(store.collision_start_time == 0.0, ~store.is_colliding)


class TestWallCollisions:
    def test_moving_into_wall(self):
        assert wall_hit((1.2, 0, 0), (1.0, 0, 0))
        assert wall_hit((0, -1.2, 0), (0, -0.3, 0))
        assert wall_hit((0.3, 0.1, 1.16), (0.2, 0.2, 0.5))

    def test_moving_away_without_history(self):
        assert not wall_hit((1.2, 0, 0), (-1.0, 0, 0))

    def test_interior_particle(self):
        assert not wall_hit((0.5, -0.5, 0.2), (1.0, -1.0, 1.0))

    def test_bounce_between_samples(self):
        assert wall_hit((1.1, 0, 0), (-1.0, 0, 0), previous=(1.0, 0, 0))

    def test_bounce_below_noise_floor(self):
        assert not wall_hit((1.1, 0, 0), (-0.05, 0, 0), previous=(1.0, 0, 0))

    def test_bounce_far_from_wall(self):
        assert not wall_hit((0.8, 0, 0), (-1.0, 0, 0), previous=(1.0, 0, 0))


def test_collision_candidates():
    thresholds = adaptive_thresholds(np.zeros(4))
    speeds = np.array([1.5, 1.1, 0.3, 0.7])
    targets = np.array([1.0, 1.0, 1.0, 0.0])
    mask = collision_candidate_mask(speeds, targets, thresholds)
    # a target of zero falls back to 0.1 as the reference
    assert mask.tolist() == [True, False, False, True]


def test_candidates_ignore_invalid_speeds():
    thresholds = adaptive_thresholds(np.zeros(1))
    assert not collision_candidate_mask([np.nan], [1.0], thresholds)[0]


def test_neighbor_search_size():
    assert neighbor_search_size(100) == 100
    assert neighbor_search_size(501) == 100
    assert neighbor_search_size(1000) == 200


@pytest.mark.parametrize("count", [50, 600])
def test_find_partners_matches_brute_force(rng, count):
    points = rng.uniform(0.0, 1.0, size=(count, 3))
    tree = cKDTree(points)
    threshold = 0.2
    for index in (0, count // 2, count - 1):
        rows = find_partners(tree, index, threshold, count)
        dist = np.linalg.norm(points - points[index], axis=1)
        expected = set(np.flatnonzero(dist < threshold)) - {index}
        assert set(rows.tolist()) == expected


class TestClassifier:
    def setup_method(self):
        self.bodies = [
            FakeBody((0.0, 0.0, 0.0), (1.5, 0.0, 0.0)),    # abrupt speed change
            FakeBody((0.15, 0.0, 0.0), (1.0, 0.0, 0.0)),   # touching the first
            FakeBody((0.6, 0.0, 0.0), (1.0, 0.0, 0.0)),    # too far away
            FakeBody((0.0, 1.2, 0.0), (0.0, 1.0, 0.0)),    # at the top wall
        ]
        self.store = make_store(self.bodies, [1.0, 1.0, 1.0, 1.0])
        self.classifier = CollisionClassifier(self.store, fade_duration=0.5)

    def test_classify_marks_candidates_partners_and_walls(self):
        batch = self.store.refresh()
        result = self.classifier.classify(batch, make_ctx(batch, 10.0))

        assert result.wall.tolist() == [3]
        assert result.candidates.tolist() == [0]
        assert result.partners.tolist() == [1]
        assert result.new_collisions == 3
        assert result.colliding.tolist() == [0, 1, 3]
        assert self.store.is_colliding.tolist() == [True, True, False, True]
        assert self.store.collision_start_time[0] == 10.0
        assert self.store.has_previous.all()
        assert np.allclose(self.store.previous_velocity[0], (1.5, 0.0, 0.0))
        assert_status_invariant(self.store)

    def test_repeat_within_fade_is_not_a_new_collision(self):
        batch = self.store.refresh()
        self.classifier.classify(batch, make_ctx(batch, 10.0))
        result = self.classifier.classify(batch, make_ctx(batch, 10.2))
        assert result.new_collisions == 0
        assert self.store.collision_start_time[0] == 10.2

    def test_invalid_velocity_is_marked_and_skipped(self):
        self.bodies[3].velocity = np.array([np.nan, 1.0, 0.0])
        batch = self.store.refresh()
        invalid = np.array([False, False, False, True])
        result = self.classifier.classify(batch, make_ctx(batch, 10.0), invalid)
        assert result.invalid.tolist() == [3]
        assert result.wall.tolist() == []
        assert self.store.is_colliding[3]
        assert not self.store.has_previous[3]

    def test_mark_counts_new_events(self):
        c = self.classifier
        assert c.mark(2, 10.0)
        assert not c.mark(2, 10.2)
        assert self.store.collision_start_time[2] == 10.2
        assert c.mark(2, 10.8)
        assert_status_invariant(self.store)

    def test_fade_expiry(self):
        c = self.classifier
        c.mark(0, 10.0)
        assert c.expire_fades(10.4).tolist() == []
        assert c.expire_fades(10.5).tolist() == [0]
        assert c.state(0, 10.5) is VisualState.IDLE
        assert_status_invariant(self.store)

    def test_stuck_particle_is_force_cleared(self):
        c = self.classifier
        c.mark(1, 10.0)
        assert c.recover_stuck(10.9).tolist() == []
        assert c.state(1, 11.1) is VisualState.STUCK_RECOVERY
        assert c.recover_stuck(11.1).tolist() == [1]
        assert not self.store.is_colliding[1]
        assert self.store.collision_start_time[1] == 0.0
        assert c.state(1, 11.1) is VisualState.IDLE
        assert c.stuck_recoveries == 1
        assert_status_invariant(self.store)

    def test_housekeeping_throttles_stuck_recovery(self):
        c = self.classifier
        c.mark(1, 10.0)
        stuck, expired = c.housekeeping(11.1)
        assert stuck.tolist() == [1]
        assert expired.tolist() == []
        c.mark(2, 11.2)
        stuck, expired = c.housekeeping(11.5)
        assert stuck.tolist() == []
        assert expired.tolist() == []

    def test_fade_progress_and_states(self):
        c = self.classifier
        c.mark(0, 10.0)
        assert c.state(0, 10.0) is VisualState.COLLIDING
        assert c.state(0, 10.1) is VisualState.FADING
        assert c.state(2, 10.1) is VisualState.IDLE
        progress = c.fade_progress(10.25)
        assert progress.tolist() == pytest.approx([0.5, 1.0, 1.0, 1.0])

    def test_invariant_holds_through_random_mutations(self, rng):
        c = self.classifier
        now = 1.0
        for _ in range(200):
            now += rng.uniform(0.0, 0.4)
            action = rng.integers(3)
            if action == 0:
                c.mark(int(rng.integers(4)), now)
            elif action == 1:
                c.expire_fades(now)
            else:
                c.recover_stuck(now)
            assert_status_invariant(self.store)
