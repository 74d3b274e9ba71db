"""Commuting movement between populations.

Each day, per source population j and mobile class c:

    movers      ~ Binomial(count[j, c], m_j)
    destination ~ Multinomial(movers, K[j, :])

where K is the day's dispersal kernel (self included).  Movers whose
drawn destination is their own population are treated as having stayed
home; they never appear as flows.  So the effective probability of
leaving is m_j × (1 − K[j, j]).

Movement is temporary: movers join their destination's composition for
the day's transmission calculation and are returned home afterwards.
`relocated()` applies the flows to a state array and always reverses
them, even if the body raises.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Tuple

import numpy as np

from metaepi.errors import ConfigError


# ═══════════════════════════════════════════════════════════════════════
# MOVEMENT PLAN
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class MovementPlan:
    """One day's commuting flows.

    Attributes:
        mobile: Class indices that move, parallel to the first flows axis.
        flows: (n_mobile, n_pops, n_pops) int64; flows[c, j, i] is the
            number of class-`mobile[c]` individuals from home j spending
            the day in i.  The diagonal is zero.
        n_classes: Number of compartments in the state.
    """
    mobile: Tuple[int, ...]
    flows: np.ndarray
    n_classes: int

    @classmethod
    def stay_home(cls, n_pops: int, n_classes: int,
                  mobile: Tuple[int, ...]) -> 'MovementPlan':
        """Plan with no movement."""
        return cls(mobile=tuple(mobile),
                   flows=np.zeros((len(mobile), n_pops, n_pops), dtype=np.int64),
                   n_classes=n_classes)

    @property
    def n_pops(self) -> int:
        return self.flows.shape[1]

    def outflow(self) -> np.ndarray:
        """(n_pops, n_mobile) individuals leaving each home."""
        return self.flows.sum(axis=2).T

    def inflow(self) -> np.ndarray:
        """(n_pops, n_mobile) visitors arriving at each population."""
        return self.flows.sum(axis=1).T

    def deltas(self) -> np.ndarray:
        """(n_pops, n_classes) change in present composition.

        Columns sum to zero: movement neither creates nor destroys
        individuals across the metapopulation.
        """
        delta = np.zeros((self.n_pops, self.n_classes), dtype=np.int64)
        delta[:, list(self.mobile)] = self.inflow() - self.outflow()
        return delta

    def groups(self, class_index: int, home_counts: np.ndarray) -> np.ndarray:
        """Where the members of one class spent the day.

        Args:
            class_index: Compartment index.
            home_counts: (n_pops,) start-of-day home counts of that class.

        Returns:
            (n_pops, n_pops) int64 G with G[j, i] = residents of j located
            in i.  Rows sum to home_counts.  Non-mobile classes stay home.
        """
        home_counts = np.asarray(home_counts, dtype=np.int64)
        if class_index not in self.mobile:
            return np.diag(home_counts)
        flows = self.flows[self.mobile.index(class_index)]
        g = flows.copy()
        np.fill_diagonal(g, home_counts - flows.sum(axis=1))
        return g


# ═══════════════════════════════════════════════════════════════════════
# DRAWING MOVEMENT
# ═══════════════════════════════════════════════════════════════════════

def draw_movement(
    counts: np.ndarray,
    mobile: Tuple[int, ...],
    move_rate: np.ndarray,
    kernel: np.ndarray,
    rng: np.random.Generator,
) -> MovementPlan:
    """Draw one day's movers and their destinations.

    Args:
        counts: (n_pops, n_classes) start-of-day home counts.
        mobile: Indices of classes that move.
        move_rate: Per-capita daily movement probability, scalar or (n_pops,).
        kernel: (n_pops, n_pops) row-stochastic kernel, source rows.
        rng: Realization generator.

    Returns:
        MovementPlan for the day.

    Raises:
        ConfigError: If any movement probability is outside [0, 1].
    """
    n_pops, n_classes = counts.shape
    m = np.broadcast_to(np.asarray(move_rate, dtype=np.float64), (n_pops,))
    if np.any(m < 0) or np.any(m > 1) or not np.all(np.isfinite(m)):
        raise ConfigError(f"Movement rate must be in [0, 1], got {move_rate}")
    if not np.any(m > 0) or n_pops == 1:
        return MovementPlan.stay_home(n_pops, n_classes, mobile)

    resident = counts[:, list(mobile)]
    movers = rng.binomial(resident, m[:, None])
    # (n_pops, n_mobile, n_pops): destination counts per (source, class)
    dest = rng.multinomial(movers, kernel[:, None, :])
    idx = np.arange(n_pops)
    dest[idx, :, idx] = 0
    flows = np.ascontiguousarray(dest.transpose(1, 0, 2)).astype(np.int64)
    return MovementPlan(mobile=tuple(mobile), flows=flows, n_classes=n_classes)


@contextmanager
def relocated(counts: np.ndarray, plan: MovementPlan) -> Iterator[np.ndarray]:
    """Temporarily move commuters into their destination populations.

    Applies plan.deltas() to `counts` in place, yields it, and restores
    the original values on exit whether or not the body raised.

    Example:
        >>> with relocated(state, plan) as present:
        ...     foi = compute_force(present)
        >>> # state is back to home counts here
    """
    delta = plan.deltas()
    counts += delta
    try:
        yield counts
    finally:
        counts -= delta
