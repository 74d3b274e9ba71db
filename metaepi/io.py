"""Plain-text `.dat` input files.

A `.dat` file is a flat, whitespace-separated list of numbers.  Files
whose name contains "dist" hold a square matrix written column by column
(column-major), everything else is a vector.  An input directory holds:

  dist.dat       (N × N) pairwise distances
  area.dat       (N,) census areas
  <label>.dat    (N,) initial count of compartment <label>, e.g. S.dat, E.dat

Compartments without a file start at zero.
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Optional, Tuple, Union

import numpy as np

from metaepi.errors import ConfigError
from metaepi.types import ModelVariant


def read_dat(path: Union[str, Path], matrix: Optional[bool] = None) -> np.ndarray:
    """Read one `.dat` file.

    Args:
        path: File path.
        matrix: Reshape to a square matrix (column-major).  Defaults to
            True when the file name contains "dist".

    Returns:
        float64 vector, or (N, N) matrix.

    Raises:
        ConfigError: If a matrix file does not hold a square number of values.
    """
    path = Path(path)
    values = np.array(path.read_text().split(), dtype=np.float64)
    if matrix is None:
        matrix = 'dist' in path.name
    if not matrix:
        return values
    n = int(round(np.sqrt(values.size)))
    if n * n != values.size:
        raise ConfigError(
            f"{path.name}: {values.size} values do not form a square matrix"
        )
    return values.reshape((n, n), order='F')


def read_dat_dir(directory: Union[str, Path]) -> Dict[str, np.ndarray]:
    """Read every file in a directory, keyed by name without `.dat`."""
    directory = Path(directory)
    if not directory.is_dir():
        raise FileNotFoundError(f"Input directory not found: {directory}")
    return {
        (p.stem if p.suffix == '.dat' else p.name): read_dat(p)
        for p in sorted(directory.iterdir()) if p.is_file()
    }


def load_inputs(
    directory: Union[str, Path],
    variant: ModelVariant,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Load distances, areas and the initial state from a `.dat` directory.

    Args:
        directory: Input directory.
        variant: Model variant (defines which compartment files are read).

    Returns:
        (distances, areas, initial_state); initial_state is int64
        (N, n_classes).

    Raises:
        ConfigError: Missing files, mismatched lengths or non-integer counts.
    """
    data = read_dat_dir(directory)
    for required in ('dist', 'area'):
        if required not in data:
            raise ConfigError(f"{directory}: missing {required}.dat")
    distances = data['dist']
    n = distances.shape[0]
    areas = data['area']
    if areas.shape != (n,):
        raise ConfigError(f"area.dat has {areas.size} values for {n} populations")

    found = [label for label in variant.labels if label in data]
    if not found:
        raise ConfigError(
            f"{directory}: no initial compartment files "
            f"(expected some of {', '.join(label + '.dat' for label in variant.labels)})"
        )
    state = np.zeros((n, variant.n_classes), dtype=np.int64)
    for label in found:
        column = data[label]
        if column.shape != (n,):
            raise ConfigError(
                f"{label}.dat has {column.size} values for {n} populations"
            )
        if np.any(column != np.round(column)):
            raise ConfigError(f"{label}.dat holds non-integer counts")
        state[:, variant.index(label)] = column.astype(np.int64)
    return distances, areas, state
