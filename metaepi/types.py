"""Core data types for metaepi.

This module is the SINGLE SOURCE OF TRUTH for:
  - SEIRClass, ExtendedClass compartment enumerations
  - Transition / ModelVariant: the static transition graph a stepper runs over
  - EventLedger: per-day, per-population new-event counters

Compartment state itself is a plain int64 array of shape
(n_pops, n_classes) whose column order is the variant's class order.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, Optional, Tuple

import numpy as np


# ═══════════════════════════════════════════════════════════════════════
# ENUMERATIONS
# ═══════════════════════════════════════════════════════════════════════

class SEIRClass(IntEnum):
    """Compartments of the 4-class SEIR variant (with births and deaths)."""
    S = 0   # Susceptible
    E = 1   # Exposed (latent)
    I = 2   # Infectious
    R = 3   # Recovered


class ExtendedClass(IntEnum):
    """Compartments of the 11-class extended variant.

    S  → E  (infection)
    E  → Ia (asymptomatic) | Ip (pre-symptomatic)
    Ip → Is (symptom onset)
    Is → Ib (recovering at home) | Ih (hospital) | Ic1 (ICU)
    Ic1 → Ic2 (post-ICU ward) | D;  Ih → R | D;  Ia, Ib, Ic2 → R
    """
    S   = 0    # Susceptible
    E   = 1    # Exposed
    Ia  = 2    # Asymptomatic infectious
    Ip  = 3    # Pre-symptomatic infectious
    Is  = 4    # Symptomatic infectious
    Ib  = 5    # Symptomatic, recovering at home
    Ih  = 6    # Hospitalized
    Ic1 = 7    # ICU
    Ic2 = 8    # Post-ICU hospital step-down
    D   = 9    # Dead
    R   = 10   # Recovered


# Rate key reserved for the computed S → E hazard.
FORCE_OF_INFECTION = 'foi'


# ═══════════════════════════════════════════════════════════════════════
# TRANSITION GRAPH
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Transition:
    """One directed edge of a compartment graph.

    source=None means individuals enter from outside (births, drawn as
    Poisson(rate × N)).  dest=None means they leave the population
    (deaths in a variant without a D class).  `rate` names an entry of
    the day's rate table; FORCE_OF_INFECTION marks the computed edge.
    """
    source: Optional[int]
    dest: Optional[int]
    rate: str
    events: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ModelVariant:
    """Static description of a compartmental model.

    Attributes:
        name: Variant name ('seir' or 'extended').
        labels: Class labels, in state-column order.
        transitions: All edges, births included.
        event_names: Ledger columns, in order.
        mobile: Class indices that commute between populations.
        infectious: Class indices that exert transmission pressure.
        infectious_weights: Relative infectiousness, parallel to `infectious`.
        non_mixing: Class indices excluded from the mixing population N.
    """
    name: str
    labels: Tuple[str, ...]
    transitions: Tuple[Transition, ...]
    event_names: Tuple[str, ...]
    mobile: Tuple[int, ...]
    infectious: Tuple[int, ...]
    infectious_weights: Tuple[float, ...]
    non_mixing: Tuple[int, ...] = ()
    _outgoing: Dict[int, Tuple[Transition, ...]] = field(
        default=None, init=False, repr=False, compare=False,
    )

    def __post_init__(self):
        outgoing: Dict[int, list] = {}
        for t in self.transitions:
            if t.source is not None:
                outgoing.setdefault(t.source, []).append(t)
        object.__setattr__(
            self, '_outgoing',
            {s: tuple(ts) for s, ts in sorted(outgoing.items())},
        )

    @property
    def n_classes(self) -> int:
        return len(self.labels)

    def index(self, label: str) -> int:
        return self.labels.index(label)

    def sources(self) -> Tuple[int, ...]:
        """Classes with at least one outgoing edge, in class order."""
        return tuple(self._outgoing)

    def outgoing(self, source: int) -> Tuple[Transition, ...]:
        return self._outgoing.get(source, ())

    def births(self) -> Tuple[Transition, ...]:
        return tuple(t for t in self.transitions if t.source is None)

    def event_index(self, name: str) -> int:
        return self.event_names.index(name)

    def mixing_mask(self) -> np.ndarray:
        """Boolean mask over classes counted in the mixing population N."""
        mask = np.ones(self.n_classes, dtype=bool)
        mask[list(self.non_mixing)] = False
        return mask


# ═══════════════════════════════════════════════════════════════════════
# EVENT LEDGER
# ═══════════════════════════════════════════════════════════════════════

class EventLedger:
    """Append-only per-day, per-population event counters.

    Counts are stored as int64 with shape (n_days, n_pops, n_events).
    Each day is written exactly once, in order.
    """

    def __init__(self, event_names: Tuple[str, ...], n_days: int, n_pops: int):
        self.event_names = tuple(event_names)
        self.counts = np.zeros((n_days, n_pops, len(event_names)), dtype=np.int64)
        self._next_day = 0

    @property
    def n_days_recorded(self) -> int:
        return self._next_day

    def record(self, day: int, events: np.ndarray) -> None:
        """Store the (n_pops, n_events) counts for `day`."""
        if day != self._next_day:
            raise RuntimeError(
                f"EventLedger expects day {self._next_day}, got {day}"
            )
        self.counts[day] = events
        self._next_day += 1

    def series(self, name: str) -> np.ndarray:
        """(n_days, n_pops) counts of one event."""
        return self.counts[:, :, self.event_names.index(name)]

    def totals(self) -> Dict[str, int]:
        """Whole-horizon, whole-metapopulation total per event."""
        summed = self.counts.sum(axis=(0, 1))
        return {name: int(summed[k]) for k, name in enumerate(self.event_names)}
