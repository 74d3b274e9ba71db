"""Time-window resolver: sparse parameter specs → dense daily schedule.

Each time-varying parameter (transmission, movement, dispersal,
immigration, hospitalization) is given in one of three forms:

  constant  {'value': v}                    v scalar or one per population
  windows   {'start_dates': [...], 'end_dates': [...], 'values': [...]}
  daily     {'dates': [...], 'values': [...]}

Window values are 1-D (one per window, shared by all populations) or 2-D
(n_pops, n_windows).  Within the first window the value is constant;
every later window ramps linearly from the previous window's value to its
own, reaching it exactly on the window's last day:

    value(day d of n) = prev + (target − prev) × d / n

Daily values are used verbatim.  All forms resolve to a dense
(n_days, n_pops) float64 array.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

import numpy as np

from metaepi.errors import ConfigError, KernelError, ScheduleError

logger = logging.getLogger(__name__)

PARAMETER_NAMES = ('transmission', 'movement', 'dispersal', 'immigration',
                   'hospitalization')


def to_day(value: Any) -> np.datetime64:
    """Coerce a date-like (ISO string, datetime.date, datetime64) to day precision."""
    try:
        return np.datetime64(value if not isinstance(value, str) else value.strip(), 'D')
    except (ValueError, TypeError) as exc:
        raise ScheduleError(f"Not a date: {value!r}") from exc


def date_range(start: Any, n_days: int) -> np.ndarray:
    """Consecutive datetime64[D] days starting at `start`."""
    return to_day(start) + np.arange(n_days)


# ═══════════════════════════════════════════════════════════════════════
# PARAMETER SPECIFICATION
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class ParameterSpec:
    """One parameter in constant, window or daily form."""
    name: str
    value: Optional[Any] = None
    start_dates: Optional[Sequence[Any]] = None
    end_dates: Optional[Sequence[Any]] = None
    values: Optional[Any] = None
    dates: Optional[Sequence[Any]] = None

    @property
    def form(self) -> str:
        if self.value is not None:
            return 'constant'
        if self.dates is not None:
            return 'daily'
        return 'windows'

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> 'ParameterSpec':
        """Build a spec from its config mapping, checking that exactly one form is given."""
        has_const = 'value' in data
        has_windows = 'start_dates' in data or 'end_dates' in data
        has_daily = 'dates' in data
        n_forms = has_const + has_windows + has_daily
        if n_forms != 1:
            raise ScheduleError(
                f"{name}: give exactly one of 'value', "
                f"'start_dates'/'end_dates'/'values', or 'dates'/'values' "
                f"(got keys {sorted(data)})"
            )
        if has_windows and not ('start_dates' in data and 'end_dates' in data
                                and 'values' in data):
            raise ScheduleError(
                f"{name}: window form needs start_dates, end_dates and values"
            )
        if has_daily and 'values' not in data:
            raise ScheduleError(f"{name}: daily form needs values")
        return cls(
            name=name,
            value=data.get('value'),
            start_dates=data.get('start_dates'),
            end_dates=data.get('end_dates'),
            values=data.get('values'),
            dates=data.get('dates'),
        )


# ═══════════════════════════════════════════════════════════════════════
# WINDOW INTERPOLATION
# ═══════════════════════════════════════════════════════════════════════

def _check_windows(name: str, starts: np.ndarray, ends: np.ndarray) -> None:
    if len(starts) != len(ends) or len(starts) == 0:
        raise ScheduleError(
            f"{name}: need the same non-zero number of start and end dates, "
            f"got {len(starts)} and {len(ends)}"
        )
    for k in range(len(starts)):
        if ends[k] < starts[k]:
            raise ScheduleError(
                f"{name}: window {k} ends ({ends[k]}) before it starts ({starts[k]})"
            )
        if k > 0 and starts[k] != ends[k - 1] + np.timedelta64(1, 'D'):
            raise ScheduleError(
                f"{name}: windows must be ordered and contiguous; window {k} "
                f"starts {starts[k]} but window {k - 1} ends {ends[k - 1]}"
            )


def interpolate_windows(
    start_dates: Sequence[Any],
    end_dates: Sequence[Any],
    values: Sequence[float],
    name: str = "parameter",
) -> np.ndarray:
    """Expand window targets into one value per day.

    Args:
        start_dates: First day of each window.
        end_dates: Last day of each window (inclusive).
        values: Target value reached on the last day of each window.
        name: Parameter name for error messages.

    Returns:
        (total_days,) float64 array covering all windows.

    Raises:
        ScheduleError: If windows are unordered, non-contiguous or the
            value count doesn't match the window count.

    Example:
        >>> interpolate_windows(['2020-01-01', '2020-01-04'],
        ...                     ['2020-01-03', '2020-01-05'], [0.3, 0.1])
        array([0.3, 0.3, 0.3, 0.2, 0.1])
    """
    starts = np.array([to_day(d) for d in start_dates])
    ends = np.array([to_day(d) for d in end_dates])
    _check_windows(name, starts, ends)
    targets = np.asarray(values, dtype=np.float64)
    if targets.shape != (len(starts),):
        raise ScheduleError(
            f"{name}: {len(starts)} windows but {targets.size} values"
        )

    pieces = []
    for k in range(len(starts)):
        n = int((ends[k] - starts[k]).astype(int)) + 1
        if k == 0:
            pieces.append(np.full(n, targets[0]))
        else:
            prev = targets[k - 1]
            steps = np.arange(1, n + 1, dtype=np.float64) / n
            piece = prev + (targets[k] - prev) * steps
            piece[-1] = targets[k]
            pieces.append(piece)
    return np.concatenate(pieces)


# ═══════════════════════════════════════════════════════════════════════
# RESOLUTION TO A DENSE (n_days, n_pops) ARRAY
# ═══════════════════════════════════════════════════════════════════════

def _per_population(name: str, table: np.ndarray, n_pops: int, what: str) -> np.ndarray:
    if table.ndim not in (1, 2):
        raise ScheduleError(
            f"{name}: {what} must be a list or one list per population, "
            f"got {table.ndim}-d input"
        )
    if table.ndim == 2 and table.shape[0] != n_pops:
        raise ScheduleError(
            f"{name}: per-population {what} has {table.shape[0]} rows, "
            f"expected one per population ({n_pops})"
        )
    return table


def resolve_parameter(
    spec: ParameterSpec,
    start_date: Any,
    n_days: int,
    n_pops: int,
) -> np.ndarray:
    """Resolve one parameter spec to a dense daily array.

    Args:
        spec: Parameter specification.
        start_date: First simulated day.
        n_days: Simulation horizon (days).
        n_pops: Number of populations.

    Returns:
        (n_days, n_pops) float64 array.

    Raises:
        ScheduleError: On malformed or mis-sized input.
    """
    name = spec.name
    start = to_day(start_date)

    if spec.form == 'constant':
        value = np.asarray(spec.value, dtype=np.float64)
        if value.ndim > 1 or (value.ndim == 1 and value.shape[0] != n_pops):
            raise ScheduleError(
                f"{name}: constant value must be a scalar or one value per "
                f"population ({n_pops}), got shape {value.shape}"
            )
        return np.broadcast_to(value, (n_days, n_pops)).astype(np.float64)

    if spec.form == 'daily':
        dates = np.array([to_day(d) for d in spec.dates])
        if len(dates) != n_days:
            raise ScheduleError(
                f"{name}: daily sequence has {len(dates)} days, horizon is {n_days}"
            )
        if dates[0] != start or np.any(np.diff(dates) != np.timedelta64(1, 'D')):
            raise ScheduleError(
                f"{name}: daily dates must be consecutive and start on {start}"
            )
        table = _per_population(name, np.asarray(spec.values, dtype=np.float64),
                                n_pops, 'daily values')
        if table.shape[-1] != n_days:
            raise ScheduleError(
                f"{name}: {table.shape[-1]} daily values for {n_days} dates"
            )
        if table.ndim == 1:
            return np.repeat(table[:, None], n_pops, axis=1)
        return table.T.copy()

    # Window form
    if len(spec.start_dates) == 0:
        raise ScheduleError(f"{name}: window form needs at least one window")
    table = _per_population(name, np.asarray(spec.values, dtype=np.float64),
                            n_pops, 'window values')
    if to_day(spec.start_dates[0]) != start:
        raise ScheduleError(
            f"{name}: first window starts {to_day(spec.start_dates[0])}, "
            f"simulation starts {start}"
        )
    rows = table if table.ndim == 2 else table[None, :]
    series = np.stack([
        interpolate_windows(spec.start_dates, spec.end_dates, row, name=name)
        for row in rows
    ], axis=1)
    if series.shape[0] < n_days:
        raise ScheduleError(
            f"{name}: windows cover {series.shape[0]} days, horizon is {n_days}"
        )
    if series.shape[0] > n_days:
        logger.debug("%s: truncating %d window days to horizon of %d",
                     name, series.shape[0], n_days)
    series = series[:n_days]
    if series.shape[1] == 1:
        series = np.repeat(series, n_pops, axis=1)
    return series


# ═══════════════════════════════════════════════════════════════════════
# DAILY PARAMETER SCHEDULE
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class DailyParameterSchedule:
    """Dense per-day, per-population parameters for one simulation.

    All arrays have shape (n_days, n_pops).  `transmission` holds rates
    (or target reproduction numbers before back-solving).
    `hospitalization` is None for variants that don't use it.
    """
    dates: np.ndarray
    transmission: np.ndarray
    movement: np.ndarray
    dispersal: np.ndarray
    immigration: np.ndarray
    hospitalization: Optional[np.ndarray] = None

    @property
    def n_days(self) -> int:
        return len(self.dates)

    @property
    def n_pops(self) -> int:
        return self.transmission.shape[1]

    def day(self, t: int) -> Dict[str, Optional[np.ndarray]]:
        """Parameters of day t, each an (n_pops,) array."""
        return {
            'transmission': self.transmission[t],
            'movement': self.movement[t],
            'dispersal': self.dispersal[t],
            'immigration': self.immigration[t],
            'hospitalization': (None if self.hospitalization is None
                                else self.hospitalization[t]),
        }

    def with_transmission(self, transmission: np.ndarray) -> 'DailyParameterSchedule':
        """Copy with the transmission table replaced."""
        return DailyParameterSchedule(
            dates=self.dates,
            transmission=transmission,
            movement=self.movement,
            dispersal=self.dispersal,
            immigration=self.immigration,
            hospitalization=self.hospitalization,
        )


def validate_ranges(schedule: DailyParameterSchedule) -> None:
    """Check value ranges of a resolved schedule.

    Raises:
        ConfigError: A rate or fraction out of range.
        KernelError: A dispersal range that is not finite and positive.
    """
    checks = [
        ('transmission', schedule.transmission, 0.0, np.inf),
        ('movement', schedule.movement, 0.0, 1.0),
        ('immigration', schedule.immigration, 0.0, np.inf),
    ]
    if schedule.hospitalization is not None:
        checks.append(('hospitalization', schedule.hospitalization, 0.0, 1.0))
    for name, table, lo, hi in checks:
        if not np.all(np.isfinite(table)):
            raise ConfigError(f"schedule.{name} contains non-finite values")
        bad = np.argwhere((table < lo) | (table > hi))
        if len(bad):
            t, j = bad[0]
            raise ConfigError(
                f"schedule.{name} must be in [{lo}, {hi}]; day {t}, "
                f"population {j} has {table[t, j]}"
            )
    if not np.all(np.isfinite(schedule.dispersal)) or np.any(schedule.dispersal <= 0):
        raise KernelError("schedule.dispersal must be finite and > 0 on every day")


def build_schedule(
    specs: Dict[str, Dict[str, Any]],
    start_date: Any,
    n_days: int,
    n_pops: int,
    with_hospitalization: bool = False,
) -> DailyParameterSchedule:
    """Resolve every parameter spec into a DailyParameterSchedule.

    Args:
        specs: Mapping parameter name → spec dict (config.schedule fields).
        start_date: First simulated day.
        n_days: Horizon in days.
        n_pops: Number of populations.
        with_hospitalization: Resolve the hospitalization parameter too.

    Returns:
        Range-checked DailyParameterSchedule.

    Raises:
        ScheduleError: Malformed window/daily input.
        ConfigError: Values out of range.
        KernelError: Dispersal range not finite and positive.
    """
    names = [n for n in PARAMETER_NAMES
             if n != 'hospitalization' or with_hospitalization]
    resolved = {}
    for name in names:
        if name not in specs:
            raise ScheduleError(f"No schedule given for '{name}'")
        spec = ParameterSpec.from_dict(name, specs[name])
        resolved[name] = resolve_parameter(spec, start_date, n_days, n_pops)
        logger.debug("Resolved %s (%s form) to %s", name, spec.form,
                     resolved[name].shape)

    schedule = DailyParameterSchedule(
        dates=date_range(start_date, n_days),
        transmission=resolved['transmission'],
        movement=resolved['movement'],
        dispersal=resolved['dispersal'],
        immigration=resolved['immigration'],
        hospitalization=resolved.get('hospitalization'),
    )
    validate_ranges(schedule)
    return schedule
