"""Realization driver: setup, the daily loop, and realization dispatch.

Setup (`prepare_simulation`) runs once and fails fast:
  - Validate the config, distance matrix, areas and initial state
  - Resolve every parameter spec into a DailyParameterSchedule
  - Build one dispersal kernel per distinct range vector
  - In R mode, back-solve each (day, population) target R into β

The result is an immutable PreparedSimulation shared read-only by every
realization.  One realization (`run_realization`) then runs the daily loop:

  parameters → kernel (cached) → movement plan
    → relocated { immigration + realized β → force of infection }
    → tau-leap step (home counts) → record state and events

Each realization owns its Generator, so realizations are independent and
can be dispatched to a thread pool; results come back in seed order and
are identical to a serial run.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from metaepi.config import SimulationConfig, TransmissionSection, validate_config
from metaepi.errors import ConfigError, RootFindError, ScheduleError
from metaepi.immigration import draw_immigrants
from metaepi.io import load_inputs
from metaepi.models import CompartmentModel, get_model
from metaepi.movement import draw_movement, relocated
from metaepi.rng import realization_rng, spawn_seeds
from metaepi.schedule import (
    DailyParameterSchedule,
    build_schedule,
    to_day,
    validate_ranges,
)
from metaepi.spatial import KernelCache, Metapopulation
from metaepi.stepper import tau_leap_step
from metaepi.transmission import force_of_infection, scale_beta, solve_beta
from metaepi.types import EventLedger, ModelVariant

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════
# INITIAL STATE
# ═══════════════════════════════════════════════════════════════════════

def validate_initial_state(
    initial_state: np.ndarray,
    variant: ModelVariant,
    n_pops: int,
    population_totals: Optional[np.ndarray] = None,
) -> np.ndarray:
    """Check and freeze the initial compartment counts.

    Args:
        initial_state: (n_pops, n_classes) counts, columns in variant order.
        variant: Model variant.
        n_pops: Number of populations.
        population_totals: Optional (n_pops,) census totals each row must
            sum to.

    Returns:
        Read-only int64 copy of the state.

    Raises:
        ConfigError: Wrong shape, negative or non-integer counts, or rows
            that disagree with population_totals.
    """
    state = np.asarray(initial_state, dtype=np.float64)
    expected = (n_pops, variant.n_classes)
    if state.shape != expected:
        raise ConfigError(
            f"Initial state has shape {state.shape}, expected {expected} "
            f"(populations × {', '.join(variant.labels)})"
        )
    if not np.all(np.isfinite(state)) or np.any(state != np.round(state)):
        raise ConfigError("Initial compartment counts must be whole numbers")
    bad = np.argwhere(state < 0)
    if len(bad):
        j, c = bad[0]
        raise ConfigError(
            f"Negative initial count {state[j, c]:g} in population {j}, "
            f"compartment {variant.labels[c]}"
        )
    counts = state.astype(np.int64)

    if population_totals is not None:
        totals = np.asarray(population_totals, dtype=np.float64)
        if totals.shape != (n_pops,):
            raise ConfigError(
                f"population_totals has shape {totals.shape}, expected ({n_pops},)"
            )
        row_sums = counts.sum(axis=1)
        mismatch = np.flatnonzero(row_sums != totals)
        if len(mismatch):
            j = mismatch[0]
            raise ConfigError(
                f"Population {j}: compartments sum to {row_sums[j]}, "
                f"but its total is {totals[j]:g}"
            )

    counts.setflags(write=False)
    return counts


# ═══════════════════════════════════════════════════════════════════════
# R → β BACK-SOLVE
# ═══════════════════════════════════════════════════════════════════════

def back_solve_transmission(
    schedule: DailyParameterSchedule,
    model: CompartmentModel,
    metapop: Metapopulation,
    initial_state: np.ndarray,
    tx: TransmissionSection,
    solver: Optional[Callable] = None,
) -> np.ndarray:
    """Convert a schedule of target R values into transmission rates.

    R(β) = β_scaled(β, N, area) × N × exposure(rates), evaluated at each
    population's initial living size N, fully susceptible, with the day's
    rates.  Identical (R, N, area, exposure) tuples are solved once.
    Populations with N = 0 get β = 0.

    Returns:
        (n_days, n_pops) β table.

    Raises:
        RootFindError: Naming the day and population that failed.
    """
    n_living = initial_state[:, model.variant.mixing_mask()].sum(axis=1)
    betas = np.zeros_like(schedule.transmission, dtype=np.float64)
    solved: Dict[Tuple[float, float, float, float], float] = {}

    for t in range(schedule.n_days):
        exposure = model.exposure(model.rates(schedule.day(t), schedule.n_pops))
        for j in range(schedule.n_pops):
            n = float(n_living[j])
            if n == 0:
                continue
            key = (float(schedule.transmission[t, j]), n,
                   float(metapop.areas[j]), float(exposure[j]))
            if key not in solved:
                target, _, area, expo = key

                def r_of_beta(beta, n=n, area=area, expo=expo):
                    scaled = scale_beta(beta, n, area, mode=tx.mode,
                                        monod_k=tx.monod_k)
                    return float(scaled) * n * expo

                try:
                    solved[key] = solve_beta(
                        target, r_of_beta,
                        beta_min=tx.beta_min, beta_max=tx.beta_max,
                        xtol=tx.xtol, maxiter=tx.maxiter, solver=solver,
                    )
                except RootFindError as exc:
                    raise RootFindError(f"Day {t}, population {j}: {exc}") from exc
            betas[t, j] = solved[key]

    logger.debug("Back-solved %d distinct R target(s) over %d days",
                 len(solved), schedule.n_days)
    return betas


# ═══════════════════════════════════════════════════════════════════════
# SETUP
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class PreparedSimulation:
    """Everything a realization reads; never mutated after setup.

    `schedule.transmission` always holds transmission rates; in R mode
    the original targets are kept in `target_r`.
    """
    config: SimulationConfig
    model: CompartmentModel
    metapop: Metapopulation
    schedule: DailyParameterSchedule
    initial_state: np.ndarray
    kernels: KernelCache
    target_r: Optional[np.ndarray] = None

    @property
    def variant(self) -> ModelVariant:
        return self.model.variant

    @property
    def n_days(self) -> int:
        return self.schedule.n_days

    @property
    def n_pops(self) -> int:
        return self.metapop.n_pops


def _check_schedule(schedule: DailyParameterSchedule, config: SimulationConfig,
                    n_pops: int, needs_hospitalization: bool) -> None:
    sim = config.simulation
    if schedule.n_days != sim.n_days:
        raise ScheduleError(
            f"Schedule covers {schedule.n_days} days, horizon is {sim.n_days}"
        )
    if schedule.n_pops != n_pops:
        raise ScheduleError(
            f"Schedule has {schedule.n_pops} populations, expected {n_pops}"
        )
    if schedule.dates[0] != to_day(sim.start_date):
        raise ScheduleError(
            f"Schedule starts {schedule.dates[0]}, simulation starts {sim.start_date}"
        )
    if needs_hospitalization and schedule.hospitalization is None:
        raise ScheduleError(
            f"Model '{sim.model}' needs a hospitalization schedule"
        )
    validate_ranges(schedule)


def prepare_simulation(
    config: SimulationConfig,
    distances: np.ndarray,
    areas: np.ndarray,
    initial_state: np.ndarray,
    schedule: Optional[DailyParameterSchedule] = None,
    population_totals: Optional[np.ndarray] = None,
    names: Optional[Sequence[str]] = None,
    solver: Optional[Callable] = None,
) -> PreparedSimulation:
    """Validate inputs and build the shared read-only simulation setup.

    Args:
        config: Simulation configuration.
        distances: (N, N) distance matrix.
        areas: (N,) census areas.
        initial_state: (N, n_classes) initial counts in variant column order.
        schedule: Pre-resolved schedule; resolved from config.schedule if None.
        population_totals: Optional census totals the initial rows must match.
        names: Optional population names.
        solver: Root finder for R mode (default scipy.optimize.brentq).

    Returns:
        PreparedSimulation.

    Raises:
        ConfigError, ScheduleError, KernelError, RootFindError.
    """
    validate_config(config)
    sim = config.simulation
    model = get_model(config)
    metapop = Metapopulation.build(distances, areas, names)
    state = validate_initial_state(initial_state, model.variant, metapop.n_pops,
                                   population_totals)

    if schedule is None:
        schedule = build_schedule(
            asdict(config.schedule), sim.start_date, sim.n_days, metapop.n_pops,
            with_hospitalization=model.uses_hospitalization,
        )
    else:
        _check_schedule(schedule, config, metapop.n_pops,
                        model.uses_hospitalization)

    kernels = KernelCache(metapop.distances)
    kernels.prebuild(schedule.dispersal)

    target_r = None
    if config.transmission.input == 'R0':
        target_r = schedule.transmission
        betas = back_solve_transmission(schedule, model, metapop, state,
                                        config.transmission, solver=solver)
        schedule = schedule.with_transmission(betas)

    logger.debug(
        "Prepared %s model: %d populations, %d days, %d kernel(s), input=%s",
        model.variant.name, metapop.n_pops, schedule.n_days, len(kernels),
        config.transmission.input,
    )
    return PreparedSimulation(
        config=config, model=model, metapop=metapop, schedule=schedule,
        initial_state=state, kernels=kernels, target_r=target_r,
    )


# ═══════════════════════════════════════════════════════════════════════
# ONE REALIZATION
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class RealizationResult:
    """Trajectory and events of one realization.

    states[0] is the initial state; states[t + 1] is the state at the end
    of day t (dates[t]).  events.counts[t] are the events of day t.
    """
    seed: int
    labels: Tuple[str, ...]
    dates: np.ndarray
    states: np.ndarray                 # (n_days + 1, n_pops, n_classes)
    events: EventLedger
    beta_realized: np.ndarray          # (n_days, n_pops)
    runtime_s: float = 0.0

    @property
    def final_state(self) -> np.ndarray:
        return self.states[-1]

    def compartment(self, label: str) -> np.ndarray:
        """(n_days + 1, n_pops) counts of one compartment."""
        return self.states[:, :, self.labels.index(label)]

    def totals(self) -> np.ndarray:
        """(n_days + 1, n_classes) counts summed over populations."""
        return self.states.sum(axis=1)


def run_realization(
    prepared: PreparedSimulation,
    seed: int,
    progress_callback: Optional[Callable[[int, int], None]] = None,
) -> RealizationResult:
    """Run the daily loop once.

    Args:
        prepared: Shared setup from prepare_simulation.
        seed: Realization seed; the same seed gives the same trajectory.
        progress_callback: Optional callable(day, n_days).

    Returns:
        RealizationResult.

    Raises:
        SimulationInvariantError: If any count goes negative.
    """
    t0 = time.perf_counter()
    rng = realization_rng(seed)
    variant = prepared.variant
    schedule = prepared.schedule
    tx = prepared.config.transmission
    areas = prepared.metapop.areas
    n_days, n_pops = schedule.n_days, prepared.n_pops
    mixing = variant.mixing_mask()
    infectious = list(variant.infectious)

    logger.info("Realization seed=%d: %d days, %d population(s)", seed, n_days, n_pops)

    counts = prepared.initial_state.copy()
    states = np.empty((n_days + 1, n_pops, variant.n_classes), dtype=np.int64)
    states[0] = counts
    ledger = EventLedger(variant.event_names, n_days, n_pops)
    beta_realized = np.zeros((n_days, n_pops))

    for t in range(n_days):
        params = schedule.day(t)
        kernel = prepared.kernels.get(params['dispersal'])
        plan = draw_movement(counts, variant.mobile, params['movement'], kernel, rng)
        visitors = draw_immigrants(
            params['immigration'],
            counts[:, mixing].sum(axis=1),
            counts[:, infectious].sum(axis=1),
            rng,
        )
        with relocated(counts, plan) as present:
            foi, beta_realized[t] = force_of_infection(
                present, variant, params['transmission'], areas, visitors, rng,
                mode=tx.mode, monod_k=tx.monod_k, stoch_sd=tx.stoch_sd,
            )

        rates = prepared.model.rates(params, n_pops)
        counts, events = tau_leap_step(counts, variant, rates, foi, plan, rng,
                                       day=t, seed=seed)
        ledger.record(t, events)
        states[t + 1] = counts

        if progress_callback is not None:
            progress_callback(t, n_days)

    runtime = time.perf_counter() - t0
    logger.info("Realization seed=%d finished in %.2fs", seed, runtime)
    return RealizationResult(
        seed=seed,
        labels=variant.labels,
        dates=schedule.dates,
        states=states,
        events=ledger,
        beta_realized=beta_realized,
        runtime_s=runtime,
    )


# ═══════════════════════════════════════════════════════════════════════
# DISPATCH
# ═══════════════════════════════════════════════════════════════════════

def run_realizations(
    prepared: PreparedSimulation,
    seeds: Sequence[int],
    workers: int = 1,
) -> List[RealizationResult]:
    """Run independent realizations, serially or on a thread pool.

    Results are returned in seed order whatever the worker count, and a
    realization's result depends only on its seed.  The first failure
    propagates to the caller.
    """
    seeds = [int(s) for s in seeds]
    if workers < 1:
        raise ConfigError(f"workers must be >= 1, got {workers}")
    if workers == 1 or len(seeds) <= 1:
        return [run_realization(prepared, s) for s in seeds]

    logger.info("Dispatching %d realizations to %d workers", len(seeds), workers)
    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(lambda s: run_realization(prepared, s), seeds))


def run_from_config(
    config: SimulationConfig,
    distances: Optional[np.ndarray] = None,
    areas: Optional[np.ndarray] = None,
    initial_state: Optional[np.ndarray] = None,
) -> List[RealizationResult]:
    """Prepare and run config.simulation.n_realizations realizations.

    Inputs not passed explicitly are read from config.inputs.data_dir.
    Realization seeds are spawned from config.simulation.seed.
    """
    if distances is None or areas is None or initial_state is None:
        if config.inputs.data_dir is None:
            raise ConfigError(
                "No inputs given and config.inputs.data_dir is not set"
            )
        variant = get_model(config).variant
        d, a, s = load_inputs(config.inputs.data_dir, variant)
        distances = d if distances is None else distances
        areas = a if areas is None else areas
        initial_state = s if initial_state is None else initial_state

    prepared = prepare_simulation(config, distances, areas, initial_state)
    sim = config.simulation
    seeds = spawn_seeds(sim.seed, sim.n_realizations)
    return run_realizations(prepared, seeds, workers=sim.parallel_workers)
