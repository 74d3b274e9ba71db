"""Spatial structure and dispersal kernel.

Defines the metapopulation geometry (distance matrix + census areas) and
the daily movement kernel built from it:

    K[j, i] = exp(−d[j, i] / φ_j) / Σ_k exp(−d[j, k] / φ_j)

Row j is the source, column i the destination.  Staying put (d = 0) has
the maximum unnormalised weight 1, so every row is well defined.  Larger
φ flattens a row toward longer moves; φ → 0 concentrates it on the
source itself.  Off-diagonal distances of +inf mark disconnected pairs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple, Union

import numpy as np

from metaepi.errors import ConfigError, KernelError

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════
# METAPOPULATION GEOMETRY
# ═══════════════════════════════════════════════════════════════════════

def validate_distance_matrix(distances: np.ndarray) -> np.ndarray:
    """Check that `distances` is a usable pairwise distance matrix.

    Returns:
        The matrix as float64.

    Raises:
        KernelError: If not square, not symmetric, negative, NaN, or with a
            non-zero diagonal.
    """
    d = np.asarray(distances, dtype=np.float64)
    if d.ndim != 2 or d.shape[0] != d.shape[1]:
        raise KernelError(f"Distance matrix must be square, got shape {d.shape}")
    if np.any(np.isnan(d)):
        raise KernelError("Distance matrix contains NaN")
    if np.any(d < 0):
        raise KernelError("Distance matrix contains negative distances")
    if np.any(np.diag(d) != 0):
        raise KernelError("Distance matrix diagonal must be zero")
    finite = np.isfinite(d)
    if not np.array_equal(finite, finite.T) or not np.allclose(
            np.where(finite, d, 0.0), np.where(finite.T, d.T, 0.0)):
        raise KernelError("Distance matrix must be symmetric")
    return d


@dataclass(frozen=True)
class Metapopulation:
    """Static geometry of the focal populations.

    Attributes:
        distances: (N, N) symmetric distance matrix, zero diagonal.
        areas: (N,) census areas (> 0), used for density-dependent scaling.
        names: Optional population labels.
    """
    distances: np.ndarray
    areas: np.ndarray
    names: Optional[Tuple[str, ...]] = None

    @classmethod
    def build(
        cls,
        distances: np.ndarray,
        areas: Union[float, Sequence[float], np.ndarray],
        names: Optional[Sequence[str]] = None,
    ) -> 'Metapopulation':
        """Validate inputs and construct a Metapopulation.

        Raises:
            KernelError: Bad distance matrix.
            ConfigError: Bad areas or names.
        """
        d = validate_distance_matrix(distances).copy()
        n = d.shape[0]
        a = np.broadcast_to(np.asarray(areas, dtype=np.float64), (n,)).copy()
        if not np.all(np.isfinite(a)) or np.any(a <= 0):
            raise ConfigError("Census areas must be finite and > 0")
        if names is not None and len(names) != n:
            raise ConfigError(f"{len(names)} names for {n} populations")
        d.setflags(write=False)
        a.setflags(write=False)
        return cls(distances=d, areas=a,
                   names=tuple(names) if names is not None else None)

    @property
    def n_pops(self) -> int:
        return self.distances.shape[0]


# ═══════════════════════════════════════════════════════════════════════
# DISPERSAL KERNEL
# ═══════════════════════════════════════════════════════════════════════

def dispersal_kernel(
    distances: np.ndarray,
    phi: Union[float, np.ndarray],
) -> np.ndarray:
    """Row-stochastic movement kernel for one range parameter.

    Args:
        distances: (N, N) validated distance matrix.
        phi: Dispersal range, scalar or (N,) per source population.

    Returns:
        (N, N) float64 kernel; K[j, i] = P(destination i | source j),
        self included.  Rows sum to 1.

    Raises:
        KernelError: If any φ ≤ 0 or non-finite, or a row degenerates.
    """
    d = np.asarray(distances, dtype=np.float64)
    n = d.shape[0]
    phi_arr = np.broadcast_to(np.asarray(phi, dtype=np.float64), (n,))
    if not np.all(np.isfinite(phi_arr)) or np.any(phi_arr <= 0):
        raise KernelError(f"Dispersal range must be finite and > 0, got {phi}")

    with np.errstate(over='ignore', under='ignore'):
        weights = np.exp(-d / phi_arr[:, None])
    row_sums = weights.sum(axis=1)
    if not np.all(np.isfinite(row_sums)) or np.any(row_sums <= 0):
        raise KernelError("Dispersal kernel has a degenerate row")
    return weights / row_sums[:, None]


class KernelCache:
    """Kernels keyed by range vector; each distinct φ is built once.

    The cache is filled during setup and only read while realizations run,
    so it is safe to share across worker threads.
    """

    def __init__(self, distances: np.ndarray):
        self.distances = validate_distance_matrix(distances)
        self._kernels: Dict[bytes, np.ndarray] = {}

    def __len__(self) -> int:
        return len(self._kernels)

    @staticmethod
    def _key(phi: np.ndarray) -> bytes:
        return np.ascontiguousarray(phi, dtype=np.float64).tobytes()

    def get(self, phi: np.ndarray) -> np.ndarray:
        """Kernel for range vector `phi` (building it if needed)."""
        phi = np.broadcast_to(np.asarray(phi, dtype=np.float64),
                              (self.distances.shape[0],))
        key = self._key(phi)
        kernel = self._kernels.get(key)
        if kernel is None:
            kernel = dispersal_kernel(self.distances, phi)
            kernel.setflags(write=False)
            self._kernels[key] = kernel
        return kernel

    def prebuild(self, dispersal: np.ndarray) -> None:
        """Build kernels for every day of a (n_days, n_pops) range table."""
        for phi in np.unique(dispersal, axis=0):
            self.get(phi)
        logger.debug("Kernel cache holds %d kernel(s)", len(self))
