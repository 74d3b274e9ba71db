"""Generic compartmental tau-leaping stepper.

One daily step over any ModelVariant graph:

  1. For every source class, all of its outgoing edges are drawn jointly
     as competing hazards:
         H = Σ h_k,   P(leave) = 1 − exp(−H),   P(edge k) = P(leave) × h_k / H
         departures ~ Multinomial(n, [P(edge 1), …, P(edge K), P(stay)])
     so no individual takes more than one edge per day and the
     departures never exceed the source count.
  2. Susceptible edges carrying the force of infection are drawn per
     (home, location) group: a commuter is exposed where it spent the
     day and returns home with its new status.
  3. Births (edges with no source) are Poisson(rate × N).
  4. Every draw reads the start-of-day counts; the summed changes are
     applied once at the end of the day.

A negative count after the update is an invariant violation and raises
SimulationInvariantError; counts are never clamped.
"""

from __future__ import annotations

from typing import Dict, Optional, Tuple

import numpy as np

from metaepi.errors import SimulationInvariantError
from metaepi.movement import MovementPlan
from metaepi.types import FORCE_OF_INFECTION, ModelVariant, Transition


# ═══════════════════════════════════════════════════════════════════════
# COMPETING-HAZARD PROBABILITIES
# ═══════════════════════════════════════════════════════════════════════

def fanout_probabilities(hazards: np.ndarray) -> np.ndarray:
    """Multinomial probabilities for competing daily hazards.

    Args:
        hazards: (..., K) non-negative hazards (d⁻¹) of one source's edges.

    Returns:
        (..., K + 1) probabilities; the last entry is P(stay).

    Example:
        >>> fanout_probabilities(np.array([0.2, 0.0]))
        array([0.18126925, 0.        , 0.81873075])
    """
    hazards = np.asarray(hazards, dtype=np.float64)
    total = hazards.sum(axis=-1, keepdims=True)
    p_leave = -np.expm1(-total)
    safe_total = np.where(total > 0, total, 1.0)
    branch = np.where(total > 0, p_leave * hazards / safe_total, 0.0)
    stay = np.clip(1.0 - branch.sum(axis=-1, keepdims=True), 0.0, 1.0)
    return np.concatenate([branch, stay], axis=-1)


def _home_hazard(edge: Transition, rates: Dict[str, np.ndarray],
                 n_pops: int) -> np.ndarray:
    return np.broadcast_to(np.asarray(rates[edge.rate], dtype=np.float64), (n_pops,))


# ═══════════════════════════════════════════════════════════════════════
# INVARIANT CHECK
# ═══════════════════════════════════════════════════════════════════════

def check_non_negative(
    counts: np.ndarray,
    variant: ModelVariant,
    day: int,
    seed: Optional[int] = None,
) -> None:
    """Raise SimulationInvariantError on the first negative count."""
    bad = np.argwhere(counts < 0)
    if len(bad):
        j, c = bad[0]
        raise SimulationInvariantError(
            day=day, population=int(j), compartment=variant.labels[c],
            value=int(counts[j, c]), seed=seed,
        )


# ═══════════════════════════════════════════════════════════════════════
# DAILY STEP
# ═══════════════════════════════════════════════════════════════════════

def tau_leap_step(
    counts: np.ndarray,
    variant: ModelVariant,
    rates: Dict[str, np.ndarray],
    foi: np.ndarray,
    plan: MovementPlan,
    rng: np.random.Generator,
    day: int = 0,
    seed: Optional[int] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """Draw and apply one day of transitions.

    Args:
        counts: (n_pops, n_classes) start-of-day home counts.  Not modified.
        variant: Transition graph.
        rates: Day's rate table, rate key → (n_pops,) hazards by home.
        foi: (n_pops,) force of infection by location.
        plan: The day's movement plan (where each mobile class spent the day).
        rng: Realization generator.
        day: Day index, for error reporting.
        seed: Realization seed, for error reporting.

    Returns:
        (new_counts, events): next-day (n_pops, n_classes) counts and
        (n_pops, n_events) new-event counts.

    Raises:
        SimulationInvariantError: If any count would become negative.
    """
    n_pops = counts.shape[0]
    delta = np.zeros_like(counts, dtype=np.int64)
    events = np.zeros((n_pops, len(variant.event_names)), dtype=np.int64)
    foi = np.asarray(foi, dtype=np.float64)

    for source in variant.sources():
        home = counts[:, source]
        if not home.any():
            continue
        edges = variant.outgoing(source)
        located = any(e.rate == FORCE_OF_INFECTION for e in edges)

        if located:
            # (home j, location i, edge k)
            groups = plan.groups(source, home)
            hazards = np.stack([
                np.broadcast_to(foi[None, :], (n_pops, n_pops))
                if e.rate == FORCE_OF_INFECTION
                else np.broadcast_to(_home_hazard(e, rates, n_pops)[:, None],
                                     (n_pops, n_pops))
                for e in edges
            ], axis=-1)
            draws = rng.multinomial(groups, fanout_probabilities(hazards))
            moved = draws[..., :-1].sum(axis=1)
        else:
            hazards = np.stack([_home_hazard(e, rates, n_pops) for e in edges],
                               axis=-1)
            draws = rng.multinomial(home, fanout_probabilities(hazards))
            moved = draws[:, :-1]

        for k, edge in enumerate(edges):
            delta[:, source] -= moved[:, k]
            if edge.dest is not None:
                delta[:, edge.dest] += moved[:, k]
            for name in edge.events:
                events[:, variant.event_index(name)] += moved[:, k]

    births = variant.births()
    if births:
        n_living = counts[:, variant.mixing_mask()].sum(axis=1)
        for edge in births:
            born = rng.poisson(_home_hazard(edge, rates, n_pops) * n_living)
            delta[:, edge.dest] += born
            for name in edge.events:
                events[:, variant.event_index(name)] += born

    new_counts = counts + delta
    check_non_negative(new_counts, variant, day, seed=seed)
    return new_counts, events
