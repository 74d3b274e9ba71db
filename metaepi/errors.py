"""Exception taxonomy for metaepi.

Setup errors (raised before any realization runs) derive from ValueError so
callers that already guard configuration with ``except ValueError`` keep
working.  Runtime invariant violations derive from RuntimeError: they signal
a programming error, never a recoverable condition.
"""

from __future__ import annotations

from typing import Optional


class MetaEpiError(Exception):
    """Base class for all metaepi errors."""


class ScheduleError(MetaEpiError, ValueError):
    """Malformed time-window or daily parameter input."""


class KernelError(MetaEpiError, ValueError):
    """Invalid distance matrix or dispersal range parameter."""


class RootFindError(MetaEpiError, ValueError):
    """Transmission-rate back-solve could not bracket or converge on a root."""


class ConfigError(MetaEpiError, ValueError):
    """Invalid initial state or out-of-range fixed parameter."""


class SimulationInvariantError(MetaEpiError, RuntimeError):
    """A compartment count went negative during a realization.

    Attributes:
        day: Day index (0-based) at which the violation occurred.
        population: Population index.
        compartment: Compartment label.
        value: The offending count.
    """

    def __init__(
        self,
        day: int,
        population: int,
        compartment: str,
        value: int,
        seed: Optional[int] = None,
    ):
        self.day = day
        self.population = population
        self.compartment = compartment
        self.value = value
        self.seed = seed
        where = f"day {day}, population {population}, compartment {compartment}"
        if seed is not None:
            where = f"seed {seed}, " + where
        super().__init__(f"Negative count {value} at {where}")
