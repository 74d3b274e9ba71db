"""Tests for metaepi.stepper — competing-hazard tau-leaping."""

import numpy as np
import pytest

from metaepi.config import ExtendedSection, SEIRSection
from metaepi.errors import SimulationInvariantError
from metaepi.models import extended_rates, extended_variant, seir_rates, seir_variant
from metaepi.movement import MovementPlan, draw_movement
from metaepi.spatial import dispersal_kernel
from metaepi.stepper import check_non_negative, fanout_probabilities, tau_leap_step
from metaepi.types import SEIRClass as C


def _seir_rates(n_pops, **kwargs):
    return seir_rates(SEIRSection(**kwargs), {}, n_pops)


def _stay(variant, n_pops):
    return MovementPlan.stay_home(n_pops, variant.n_classes, variant.mobile)


# ── Fan-out probabilities ────────────────────────────────────────────

class TestFanoutProbabilities:
    def test_sums_to_one(self):
        p = fanout_probabilities(np.array([0.2, 0.05, 0.01]))
        assert p.sum() == pytest.approx(1.0)
        assert p[-1] == pytest.approx(np.exp(-0.26))

    def test_single_edge(self):
        p = fanout_probabilities(np.array([0.5]))
        assert p[0] == pytest.approx(1.0 - np.exp(-0.5))

    def test_zero_hazards_stay(self):
        p = fanout_probabilities(np.zeros(3))
        np.testing.assert_array_equal(p, [0.0, 0.0, 0.0, 1.0])

    def test_branch_ratio_follows_hazards(self):
        p = fanout_probabilities(np.array([0.3, 0.1]))
        assert p[0] / p[1] == pytest.approx(3.0)

    @pytest.mark.parametrize("h", [1e3, 1e6, 1e300])
    def test_extreme_rates_stay_valid(self, h):
        p = fanout_probabilities(np.array([h, h / 2]))
        assert np.all(p >= 0)
        assert p.sum() == pytest.approx(1.0)
        assert p[-1] == pytest.approx(0.0, abs=1e-12)

    def test_batched(self):
        hazards = np.random.default_rng(0).uniform(0, 5, size=(4, 3, 2))
        p = fanout_probabilities(hazards)
        assert p.shape == (4, 3, 3)
        np.testing.assert_allclose(p.sum(axis=-1), 1.0)


# ── Invariant check ──────────────────────────────────────────────────

class TestCheckNonNegative:
    def test_passes(self):
        check_non_negative(np.zeros((2, 4), dtype=np.int64), seir_variant(), day=0)

    def test_raises_with_location(self):
        counts = np.zeros((2, 4), dtype=np.int64)
        counts[1, C.I] = -3
        with pytest.raises(SimulationInvariantError) as exc_info:
            check_non_negative(counts, seir_variant(), day=12, seed=5)
        err = exc_info.value
        assert err.day == 12
        assert err.population == 1
        assert err.compartment == 'I'
        assert err.value == -3
        assert "seed 5" in str(err)
        assert isinstance(err, RuntimeError)


# ── SEIR step ────────────────────────────────────────────────────────

class TestSEIRStep:
    def test_closed_population_conserved(self):
        variant = seir_variant()
        counts = np.array([[900, 50, 40, 10], [500, 0, 5, 0]], dtype=np.int64)
        rng = np.random.default_rng(0)
        rates = _seir_rates(2)
        for _ in range(30):
            counts, _ = tau_leap_step(counts, variant, rates, np.array([0.2, 0.1]),
                                      _stay(variant, 2), rng)
        np.testing.assert_array_equal(counts.sum(axis=1), [1000, 505])

    def test_events_match_flows(self):
        variant = seir_variant()
        counts = np.array([[900, 50, 40, 10]], dtype=np.int64)
        new, events = tau_leap_step(counts, variant, _seir_rates(1), np.array([0.3]),
                                    _stay(variant, 1), np.random.default_rng(1))
        ev = dict(zip(variant.event_names, events[0]))
        assert new[0, C.S] == 900 - ev['new_exposures']
        assert new[0, C.E] == 50 + ev['new_exposures'] - ev['new_infectious']
        assert new[0, C.I] == 40 + ev['new_infectious'] - ev['new_recoveries']
        assert new[0, C.R] == 10 + ev['new_recoveries']

    def test_birth_death_accounting(self):
        variant = seir_variant()
        counts = np.array([[5000, 300, 200, 500], [2000, 0, 10, 0]], dtype=np.int64)
        rates = _seir_rates(2, birth_rate=0.01, death_rate=0.01)
        rng = np.random.default_rng(2)
        for _ in range(50):
            before = counts.sum(axis=1)
            counts, events = tau_leap_step(counts, variant, rates, np.array([0.1, 0.1]),
                                           _stay(variant, 2), rng)
            births = events[:, variant.event_index('new_births')]
            deaths = events[:, variant.event_index('new_deaths')]
            np.testing.assert_array_equal(counts.sum(axis=1), before + births - deaths)

    def test_extreme_rates_never_negative(self):
        variant = seir_variant()
        kernel = dispersal_kernel(np.array([[0.0, 1.0], [1.0, 0.0]]), 5.0)
        rates = _seir_rates(2, incubation_rate=50.0, recovery_rate=80.0,
                            birth_rate=2.0, death_rate=30.0)
        for seed in range(10):
            rng = np.random.default_rng(seed)
            counts = np.array([[50, 20, 10, 5], [3, 1, 1, 0]], dtype=np.int64)
            for _ in range(20):
                plan = draw_movement(counts, variant.mobile, 0.9, kernel, rng)
                counts, events = tau_leap_step(counts, variant, rates,
                                               np.array([1e4, 1e4]), plan, rng)
                assert np.all(counts >= 0)
                assert np.all(events >= 0)

    def test_zero_force_no_exposures(self):
        variant = seir_variant()
        counts = np.array([[1000, 0, 0, 0]], dtype=np.int64)
        new, events = tau_leap_step(counts, variant, _seir_rates(1), np.zeros(1),
                                    _stay(variant, 1), np.random.default_rng(0))
        np.testing.assert_array_equal(new, counts)
        assert not events.any()

    def test_input_not_modified(self):
        variant = seir_variant()
        counts = np.array([[900, 50, 40, 10]], dtype=np.int64)
        original = counts.copy()
        tau_leap_step(counts, variant, _seir_rates(1), np.array([0.3]),
                      _stay(variant, 1), np.random.default_rng(0))
        np.testing.assert_array_equal(counts, original)

    def test_commuters_infected_where_they_spent_the_day(self):
        variant = seir_variant()
        counts = np.array([[100, 0, 0, 0], [100, 0, 0, 0]], dtype=np.int64)
        flows = np.zeros((2, 2, 2), dtype=np.int64)
        flows[0, 0, 1] = 40    # 40 susceptibles of population 0 spend the day in 1
        plan = MovementPlan(mobile=variant.mobile, flows=flows,
                            n_classes=variant.n_classes)
        new, events = tau_leap_step(counts, variant, _seir_rates(2),
                                    np.array([0.0, 1e3]), plan, np.random.default_rng(0))
        # Everyone present in population 1 is exposed; exposures are booked at home
        assert new[0, C.E] == 40
        assert new[0, C.S] == 60
        assert new[1, C.E] == 100
        assert events[0, variant.event_index('new_exposures')] == 40


# ── Extended step ────────────────────────────────────────────────────

class TestExtendedStep:
    def _setup(self, **kwargs):
        cfg = ExtendedSection(**kwargs)
        variant = extended_variant(cfg)
        counts = np.zeros((3, variant.n_classes), dtype=np.int64)
        counts[:, variant.index('S')] = [2000, 1500, 800]
        counts[:, variant.index('E')] = [20, 0, 5]
        counts[:, variant.index('Is')] = [30, 10, 0]
        counts[:, variant.index('Ih')] = [5, 0, 2]
        counts[:, variant.index('Ic1')] = [3, 1, 0]
        return cfg, variant, counts

    def test_closed_population_conserved(self):
        cfg, variant, counts = self._setup()
        rng = np.random.default_rng(0)
        totals = counts.sum(axis=1)
        day = {'hospitalization': np.full(3, 0.3)}
        rates = extended_rates(cfg, day, 3)
        for _ in range(60):
            counts, _ = tau_leap_step(counts, variant, rates, np.full(3, 0.05),
                                      _stay(variant, 3), rng)
            np.testing.assert_array_equal(counts.sum(axis=1), totals)
            assert np.all(counts >= 0)

    def test_deaths_accumulate_in_d(self):
        cfg, variant, counts = self._setup(death_frac_hosp=0.5, death_frac_icu=0.9)
        rng = np.random.default_rng(1)
        rates = extended_rates(cfg, {'hospitalization': np.full(3, 0.5)}, 3)
        d0 = counts[:, variant.index('D')].copy()
        deaths = np.zeros(3, dtype=np.int64)
        for _ in range(40):
            counts, events = tau_leap_step(counts, variant, rates, np.full(3, 0.05),
                                           _stay(variant, 3), rng)
            deaths += events[:, variant.event_index('new_deaths')]
        np.testing.assert_array_equal(counts[:, variant.index('D')] - d0, deaths)
        assert deaths.sum() > 0

    def test_no_hospitalization_means_no_hospital_entries(self):
        cfg, variant, counts = self._setup()
        rng = np.random.default_rng(2)
        rates = extended_rates(cfg, {'hospitalization': np.zeros(3)}, 3)
        for _ in range(20):
            counts, events = tau_leap_step(counts, variant, rates, np.full(3, 0.05),
                                           _stay(variant, 3), rng)
            assert events[:, variant.event_index('new_hospitalizations')].sum() == 0
            assert events[:, variant.event_index('new_icu')].sum() == 0

    def test_terminal_classes_never_emit(self):
        cfg, variant, _ = self._setup()
        counts = np.zeros((1, variant.n_classes), dtype=np.int64)
        counts[0, variant.index('R')] = 100
        counts[0, variant.index('D')] = 50
        rates = extended_rates(cfg, {'hospitalization': np.full(1, 0.3)}, 1)
        new, events = tau_leap_step(counts, variant, rates, np.zeros(1),
                                    _stay(variant, 1), np.random.default_rng(0))
        np.testing.assert_array_equal(new, counts)
        assert not events.any()
