"""Transient infectious immigration.

Each population receives V ~ Poisson(imm_frac × N) visitors per day, of
whom I_v ~ Poisson(V × I/N) are infectious, so visitor prevalence mirrors
resident prevalence.  Infectious visitors add to the day's transmission
pressure only; they are never added to the state.
"""

from __future__ import annotations

import numpy as np


def draw_immigrants(
    imm_frac: np.ndarray,
    n_resident: np.ndarray,
    infectious_resident: np.ndarray,
    rng: np.random.Generator,
) -> np.ndarray:
    """Infectious visitors per population for one day.

    Args:
        imm_frac: (N,) visitors per resident per day.
        n_resident: (N,) resident population sizes.
        infectious_resident: (N,) resident infectious counts.
        rng: Realization generator.

    Returns:
        (N,) int64 infectious visitor counts.
    """
    imm_frac = np.asarray(imm_frac, dtype=np.float64)
    n = np.asarray(n_resident, dtype=np.float64)
    if not np.any(imm_frac > 0):
        return np.zeros(n.shape, dtype=np.int64)
    visitors = rng.poisson(imm_frac * n)
    prevalence = np.where(n > 0, np.asarray(infectious_resident) / np.where(n > 0, n, 1.0), 0.0)
    return rng.poisson(visitors * prevalence).astype(np.int64)
