"""Tests for candidate selection."""

import numpy as np
import pytest

from detection.candidates import CandidatePool, CandidateSelector
from detection.config import CylinderConfig, Mode, SphereConfig


def sphere_region_points():
    """Five points inside the default sphere annulus and ten outside it."""
    inside = np.array([
        [0.0, 0.0, -2.5],
        [1.5, 0.3, -2.0],
        [-1.0, -1.0, -2.0],
        [0.5, 2.0, -3.0],
        [-2.0, 0.0, -1.5],
    ])
    outside = np.array([
        [0.0, 0.0, -1.0],     # too close
        [0.0, 0.0, -4.0],     # too far
        [0.0, 0.0, 2.5],      # behind the sensor (z > 0)
        [2.5, 0.0, 0.5],
        [1.0, 0.0, 0.0],
        [5.0, 0.0, -5.0],
        [0.0, 0.0, 0.0],
        [1.8, 0.0, 0.0],      # on the inner boundary
        [0.0, 0.0, -3.2],     # on the outer boundary
        [np.nan, 0.0, -2.5],
    ])
    return inside, outside


class TestCandidatePool:
    """Tests for the bounded pool."""

    def test_append_until_full(self):
        pool = CandidatePool(4)
        for i in range(6):
            pool.append(np.array([i, 0, 0], dtype=np.float32), i)

        assert len(pool) == 4
        assert pool.is_full
        np.testing.assert_array_equal(pool.indices, [0, 1, 2, 3])

    def test_points_are_float4_with_zero_w(self):
        pool = CandidatePool(8)
        pool.extend(np.array([[1, 2, 3], [4, 5, 6]], dtype=np.float32), np.array([10, 11]))

        assert pool.points.shape == (2, 4)
        np.testing.assert_array_equal(pool.points[:, 3], [0, 0])

    def test_clear(self):
        pool = CandidatePool(8)
        pool.append(np.zeros(3), 0)
        pool.clear()
        assert len(pool) == 0

    def test_rejects_zero_capacity(self):
        with pytest.raises(ValueError):
            CandidatePool(0)


class TestCandidateSelector:
    """Tests for mode-specific admission."""

    def test_sphere_region(self):
        """5 points inside the region and 10 outside give a pool of 5."""
        inside, outside = sphere_region_points()
        selector = CandidateSelector(mode=Mode.SPHERE)

        for index, point in enumerate(np.concatenate([inside, outside])):
            selector.eval_candidate(point, index)

        assert len(selector.pool) == 5
        np.testing.assert_array_equal(selector.pool.indices, [0, 1, 2, 3, 4])

    def test_eval_frame_matches_per_point(self):
        """Vectorised admission gives the same pool as point-by-point admission."""
        rng = np.random.default_rng(0)
        positions = rng.uniform(-4, 4, size=(500, 3)).astype(np.float32)

        single = CandidateSelector(mode=Mode.SPHERE)
        for index, point in enumerate(positions):
            single.eval_candidate(point, index)

        batch = CandidateSelector(mode=Mode.SPHERE)
        admitted = batch.eval_frame(positions)

        assert admitted == len(single.pool)
        np.testing.assert_array_equal(batch.pool.indices, single.pool.indices)
        np.testing.assert_array_equal(batch.pool.points, single.pool.points)

    def test_capacity_drops_silently(self):
        """Points arriving after the pool is full are dropped without error."""
        inside, _ = sphere_region_points()
        selector = CandidateSelector(sphere=SphereConfig(capacity=4))

        results = [selector.eval_candidate(point, i) for i, point in enumerate(inside)]

        assert results == [True, True, True, True, False]
        assert len(selector.pool) == 4
        assert selector.eval_frame(inside) == 0

    def test_region_is_configurable(self):
        """Without max_z, points behind the sensor are admitted too."""
        config = SphereConfig(region={"min_radius": 1.8, "max_radius": 3.2, "max_z": None})
        selector = CandidateSelector(sphere=config)

        assert selector.eval_candidate(np.array([0.0, 0.0, 2.5]), 0)

    def test_cylinder_height_threshold(self):
        selector = CandidateSelector(mode=Mode.CYLINDER)
        points = np.array([[0, -1.5, 5], [0, -0.5, 5], [3, -1.0, 0], [9, -3, 9]], dtype=np.float32)

        assert selector.eval_frame(points) == 2
        np.testing.assert_array_equal(selector.pool.indices, [0, 3])

    def test_cylinder_threshold_follows_config(self):
        selector = CandidateSelector(cylinder=CylinderConfig(max_height=0.0), mode=Mode.CYLINDER)
        assert selector.eval_candidate(np.array([0.0, -0.5, 5.0]), 0)

    def test_switching_mode_clears_pool(self):
        """Switching mode leaves the new mode with an empty pool."""
        inside, _ = sphere_region_points()
        selector = CandidateSelector(mode=Mode.SPHERE)
        selector.eval_frame(inside)

        selector.set_mode(Mode.CYLINDER)
        assert selector.mode is Mode.CYLINDER
        assert len(selector.pool) == 0

        selector.eval_frame(np.array([[0, -2, 0]], dtype=np.float32))
        selector.set_mode(Mode.SPHERE)
        assert len(selector.pool) == 0
