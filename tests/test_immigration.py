"""Tests for metaepi.immigration — transient infectious visitors."""

import numpy as np

from metaepi.immigration import draw_immigrants


class TestDrawImmigrants:
    def test_zero_fraction_draws_nothing(self):
        rng = np.random.default_rng(0)
        before = rng.bit_generator.state
        out = draw_immigrants(np.zeros(3), np.full(3, 100), np.full(3, 10), rng)
        np.testing.assert_array_equal(out, 0)
        assert out.dtype == np.int64
        assert rng.bit_generator.state == before

    def test_no_resident_infection_means_no_infectious_visitors(self):
        rng = np.random.default_rng(1)
        out = draw_immigrants(np.full(3, 0.5), np.full(3, 1000), np.zeros(3), rng)
        np.testing.assert_array_equal(out, 0)

    def test_empty_population(self):
        rng = np.random.default_rng(2)
        out = draw_immigrants(np.array([0.5, 0.5]), np.array([0, 100]),
                              np.array([0, 50]), rng)
        assert out[0] == 0

    def test_mean_mirrors_resident_prevalence(self):
        # E[I_v] = imm_frac × N × I/N = 0.01 × 10000 × 0.5 = 50
        rng = np.random.default_rng(3)
        draws = np.array([
            draw_immigrants(np.array([0.01]), np.array([10_000]),
                            np.array([5_000]), rng)[0]
            for _ in range(2000)
        ])
        assert abs(draws.mean() - 50.0) < 2.0

    def test_reproducible(self):
        a = draw_immigrants(np.full(4, 0.1), np.full(4, 500), np.full(4, 50),
                            np.random.default_rng(9))
        b = draw_immigrants(np.full(4, 0.1), np.full(4, 500), np.full(4, 50),
                            np.random.default_rng(9))
        np.testing.assert_array_equal(a, b)
