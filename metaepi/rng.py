"""Seeded RNG factory for reproducible realizations.

Uses NumPy's SeedSequence → PCG64 hierarchy to guarantee:
  - One explicit generator per realization, threaded through every draw
  - Bit-exact replay of a realization from its seed alone
  - Statistically independent seeds when spawning many realizations
    from one master seed
"""

from __future__ import annotations

from typing import List

import numpy as np


def realization_rng(seed: int) -> np.random.Generator:
    """Create the generator for one realization.

    Args:
        seed: Realization seed.  Negative seeds are taken as their
            unsigned 64-bit two's complement, so -1 and 2**64 - 1 coincide.

    Returns:
        A fresh PCG64-backed Generator.

    Example:
        >>> rng = realization_rng(7)
        >>> rng.binomial(100, 0.3)  # reproducible
    """
    return np.random.Generator(np.random.PCG64(np.random.SeedSequence(int(seed) % 2**64)))


def spawn_seeds(master_seed: int, n: int) -> List[int]:
    """Derive `n` independent realization seeds from a master seed.

    Seeds are drawn from SeedSequence children, so adding realizations
    never changes the seeds of earlier ones.

    Args:
        master_seed: Master seed (non-negative integer).
        n: Number of realization seeds.

    Returns:
        List of n non-negative Python ints.
    """
    children = np.random.SeedSequence(master_seed).spawn(n)
    return [int(child.generate_state(1, dtype=np.uint32)[0]) for child in children]
