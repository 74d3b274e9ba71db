"""Tests for metaepi.rng — per-realization generators and seed spawning."""

import numpy as np

from metaepi.rng import realization_rng, spawn_seeds


class TestRealizationRng:
    def test_reproducible(self):
        a = realization_rng(42).random(100)
        b = realization_rng(42).random(100)
        np.testing.assert_array_equal(a, b)

    def test_different_seeds_differ(self):
        assert not np.array_equal(realization_rng(1).random(10),
                                  realization_rng(2).random(10))

    def test_pcg64(self):
        assert isinstance(realization_rng(0).bit_generator, np.random.PCG64)

    def test_signed_seed(self):
        a = realization_rng(-1).random(5)
        b = realization_rng(2**64 - 1).random(5)
        np.testing.assert_array_equal(a, b)
        assert not np.array_equal(a, realization_rng(1).random(5))


class TestSpawnSeeds:
    def test_count_and_distinct(self):
        seeds = spawn_seeds(42, 20)
        assert len(seeds) == 20
        assert len(set(seeds)) == 20
        assert all(isinstance(s, int) and s >= 0 for s in seeds)

    def test_deterministic(self):
        assert spawn_seeds(7, 5) == spawn_seeds(7, 5)

    def test_prefix_stable(self):
        """Adding realizations never changes the earlier seeds."""
        assert spawn_seeds(7, 10)[:5] == spawn_seeds(7, 5)

    def test_master_seed_matters(self):
        assert spawn_seeds(1, 5) != spawn_seeds(2, 5)
