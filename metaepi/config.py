"""Configuration system for metaepi.

Hierarchical YAML configuration with deep-merge support:
  base.yaml → scenario override → sweep overrides

Sections map 1:1 to YAML top-level keys.  The `schedule` section holds
one parameter specification per time-varying parameter; see
schedule.ParameterSpec for the accepted forms.
"""

from __future__ import annotations

import dataclasses
import os
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

import numpy as np
import yaml

from metaepi.errors import ConfigError


# ═══════════════════════════════════════════════════════════════════════
# CONFIGURATION DATACLASSES
# ═══════════════════════════════════════════════════════════════════════

VALID_MODELS = {"seir", "extended"}
VALID_MODES = {"frequency", "density"}
VALID_INPUTS = {"beta", "R0"}


@dataclass
class SimulationSection:
    """Horizon, seeding and dispatch."""
    start_date: str = "2020-01-01"
    n_days: int = 365
    seed: int = 42                # Master seed; realization seeds are spawned from it
    n_realizations: int = 1
    parallel_workers: int = 1     # 1 = serial
    model: str = "seir"           # 'seir' or 'extended'


@dataclass
class TransmissionSection:
    """Transmission-rate scaling, noise and R back-solving.

    mode:  "frequency" — beta / N
           "density"   — beta × density/(monod_k + density) / N
    input: "beta" — schedule.transmission holds transmission rates
           "R0"   — schedule.transmission holds target reproduction numbers
    """
    mode: str = "frequency"
    input: str = "beta"
    monod_k: float = 100.0        # Monod half-saturation density (individuals / area unit)
    stoch_sd: float = 0.0         # SD of the daily transmission noise
    # Bracketing root-finder for input="R0"
    beta_min: float = 0.0
    beta_max: float = 50.0
    xtol: float = 1e-10
    maxiter: int = 200


@dataclass
class SEIRSection:
    """Daily rates of the SEIR variant (d⁻¹)."""
    incubation_rate: float = 0.192    # E → I; 5.2 d latent period
    recovery_rate: float = 0.143      # I → R; 7 d infectious period
    birth_rate: float = 0.0           # per capita, into S
    death_rate: float = 0.0           # per capita, every class


@dataclass
class ExtendedSection:
    """Daily rates and branching fractions of the 11-class variant.

    Exit rates are d⁻¹; fractions split a source's exits among its
    destinations.  The hospitalization fraction is time-varying and lives
    in the schedule, not here.
    """
    incubation_rate: float = 0.25     # E exit
    frac_asym: float = 0.35           # E → Ia share (rest → Ip)
    recov_asym: float = 0.143         # Ia → R
    sym_rate: float = 0.5             # Ip → Is
    recov_sym: float = 0.2            # Is exit (→ Ib / Ih / Ic1)
    frac_icu: float = 0.25            # Share of hospitalized going straight to ICU
    recov_home: float = 0.143         # Ib → R
    recov_hosp: float = 0.1           # Ih exit
    death_frac_hosp: float = 0.1      # Ih → D share (rest → R)
    icu_rate: float = 0.125           # Ic1 exit
    death_frac_icu: float = 0.4       # Ic1 → D share (rest → Ic2)
    recov_icu2: float = 0.143         # Ic2 → R
    frac_beta_asym: float = 0.5       # Relative infectiousness of Ia
    frac_beta_hosp: float = 0.1       # Relative infectiousness of Ih, Ic1, Ic2


@dataclass
class ScheduleSection:
    """Time-varying parameters, one spec dict each."""
    transmission: Dict[str, Any] = field(default_factory=lambda: {'value': 0.3})
    movement: Dict[str, Any] = field(default_factory=lambda: {'value': 0.0})
    dispersal: Dict[str, Any] = field(default_factory=lambda: {'value': 1.0})
    immigration: Dict[str, Any] = field(default_factory=lambda: {'value': 0.0})
    hospitalization: Dict[str, Any] = field(default_factory=lambda: {'value': 0.1})


@dataclass
class InputsSection:
    """Location of `.dat` input files (see metaepi.io)."""
    data_dir: Optional[str] = None


@dataclass
class SimulationConfig:
    """Complete simulation configuration.

    Load from YAML via `load_config()`.
    """
    simulation: SimulationSection = field(default_factory=SimulationSection)
    transmission: TransmissionSection = field(default_factory=TransmissionSection)
    seir: SEIRSection = field(default_factory=SEIRSection)
    extended: ExtendedSection = field(default_factory=ExtendedSection)
    schedule: ScheduleSection = field(default_factory=ScheduleSection)
    inputs: InputsSection = field(default_factory=InputsSection)


_SECTION_MAP = {
    'simulation': SimulationSection,
    'transmission': TransmissionSection,
    'seir': SEIRSection,
    'extended': ExtendedSection,
    'schedule': ScheduleSection,
    'inputs': InputsSection,
}


# ═══════════════════════════════════════════════════════════════════════
# YAML LOADING & MERGING
# ═══════════════════════════════════════════════════════════════════════

def deep_merge(base: Dict, override: Dict) -> Dict:
    """Recursively merge override into base. Modifies base in place.

    - Dict values are merged recursively
    - Non-dict values are replaced
    - Keys in override but not base are added
    """
    for key, value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(value, dict)
        ):
            deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _merge_layer(config_dict: Dict, layer: Dict) -> Dict:
    """Merge one scenario or sweep layer into the accumulated config dict.

    Entries of the top-level `schedule` section are replaced wholesale rather
    than merged, so that switching a parameter from constant to window form
    does not leave a stale `value` key behind. Everything else, including any
    nested key that happens to be called `schedule`, merges recursively.
    """
    layer = dict(layer)
    has_schedule = 'schedule' in layer
    schedule = layer.pop('schedule', None)
    deep_merge(config_dict, layer)
    if has_schedule:
        if isinstance(config_dict.get('schedule'), dict) and isinstance(schedule, dict):
            config_dict['schedule'].update(schedule)
        else:
            config_dict['schedule'] = schedule
    return config_dict


def _dict_to_section(section_cls, data: Dict) -> Any:
    """Convert a dict to a dataclass, ignoring unknown keys."""
    valid_fields = {f.name for f in dataclasses.fields(section_cls)}
    unknown = set(data) - valid_fields
    if unknown:
        warnings.warn(
            f"Ignoring unknown {section_cls.__name__} keys: {sorted(unknown)}",
            UserWarning,
            stacklevel=3,
        )
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    return section_cls(**filtered)


def _yaml_to_config(data: Dict) -> SimulationConfig:
    """Convert a merged YAML dict to a SimulationConfig."""
    sections = {}
    for key, cls in _SECTION_MAP.items():
        if key in data and isinstance(data[key], dict):
            sections[key] = _dict_to_section(cls, data[key])
        else:
            sections[key] = cls()
    return SimulationConfig(**sections)


# ═══════════════════════════════════════════════════════════════════════
# VALIDATION
# ═══════════════════════════════════════════════════════════════════════

def _check_rate(name: str, value: float, positive: bool = False) -> None:
    if not np.isfinite(value) or value < 0 or (positive and value == 0):
        bound = "> 0" if positive else ">= 0"
        raise ConfigError(f"{name} must be finite and {bound}, got {value}")


def _check_fraction(name: str, value: float) -> None:
    if not (0.0 <= value <= 1.0):
        raise ConfigError(f"{name} must be in [0, 1], got {value}")


def validate_config(config: SimulationConfig) -> None:
    """Validate configuration constraints. Raises ConfigError on failure.

    Schedule contents are validated when the schedule is resolved
    (schedule.build_schedule), since that needs the population count.
    """
    sim = config.simulation
    if sim.model not in VALID_MODELS:
        raise ConfigError(
            f"simulation.model must be one of {VALID_MODELS}, got '{sim.model}'"
        )
    if sim.n_days < 1:
        raise ConfigError(f"simulation.n_days must be >= 1, got {sim.n_days}")
    if sim.n_realizations < 1:
        raise ConfigError(
            f"simulation.n_realizations must be >= 1, got {sim.n_realizations}"
        )
    if sim.parallel_workers < 1:
        raise ConfigError(
            f"simulation.parallel_workers must be >= 1, got {sim.parallel_workers}"
        )
    if sim.seed < 0:
        raise ConfigError("simulation.seed must be non-negative")
    try:
        np.datetime64(str(sim.start_date), 'D')
    except ValueError as exc:
        raise ConfigError(
            f"simulation.start_date is not a date: '{sim.start_date}'"
        ) from exc

    tx = config.transmission
    if tx.mode not in VALID_MODES:
        raise ConfigError(
            f"transmission.mode must be one of {VALID_MODES}, got '{tx.mode}'"
        )
    if tx.input not in VALID_INPUTS:
        raise ConfigError(
            f"transmission.input must be one of {VALID_INPUTS}, got '{tx.input}'"
        )
    _check_rate("transmission.stoch_sd", tx.stoch_sd)
    if tx.mode == "density":
        _check_rate("transmission.monod_k", tx.monod_k, positive=True)
    if tx.input == "R0":
        if not (0.0 <= tx.beta_min < tx.beta_max):
            raise ConfigError(
                f"transmission bracket must satisfy 0 <= beta_min < beta_max, "
                f"got [{tx.beta_min}, {tx.beta_max}]"
            )
        _check_rate("transmission.xtol", tx.xtol, positive=True)
        if tx.maxiter < 1:
            raise ConfigError(
                f"transmission.maxiter must be >= 1, got {tx.maxiter}"
            )

    if sim.model == "seir":
        s = config.seir
        _check_rate("seir.incubation_rate", s.incubation_rate, positive=True)
        _check_rate("seir.recovery_rate", s.recovery_rate)
        _check_rate("seir.birth_rate", s.birth_rate)
        _check_rate("seir.death_rate", s.death_rate)
        if s.recovery_rate + s.death_rate <= 0:
            raise ConfigError(
                "seir.recovery_rate + seir.death_rate must be > 0 "
                "(infectious individuals need an exit)"
            )
    else:
        x = config.extended
        for name in ('incubation_rate', 'recov_asym', 'sym_rate', 'recov_sym',
                     'recov_home', 'recov_hosp', 'icu_rate', 'recov_icu2'):
            _check_rate(f"extended.{name}", getattr(x, name), positive=True)
        for name in ('frac_asym', 'frac_icu', 'death_frac_hosp',
                     'death_frac_icu', 'frac_beta_asym', 'frac_beta_hosp'):
            _check_fraction(f"extended.{name}", getattr(x, name))

    for name in ('transmission', 'movement', 'dispersal', 'immigration',
                 'hospitalization'):
        spec = getattr(config.schedule, name)
        if not isinstance(spec, dict):
            raise ConfigError(
                f"schedule.{name} must be a mapping, got {type(spec).__name__}"
            )

    if config.inputs.data_dir is not None and not os.path.isdir(config.inputs.data_dir):
        warnings.warn(
            f"inputs.data_dir '{config.inputs.data_dir}' does not exist. "
            f"Input loading will fail at runtime.",
            UserWarning,
            stacklevel=2,
        )


def load_config(
    base_path: Union[str, Path],
    scenario_path: Optional[Union[str, Path]] = None,
    sweep_overrides: Optional[Dict] = None,
) -> SimulationConfig:
    """Load and merge hierarchical YAML configuration.

    Merge order: base → scenario → sweep overrides.
    Each layer overrides only the fields it specifies.

    Args:
        base_path: Path to base configuration YAML.
        scenario_path: Optional scenario override YAML.
        sweep_overrides: Optional dict of parameter sweep overrides.

    Returns:
        Validated SimulationConfig.

    Raises:
        FileNotFoundError: If base_path doesn't exist.
        ConfigError: If validation fails.
    """
    base_path = Path(base_path)
    if not base_path.exists():
        raise FileNotFoundError(f"Config file not found: {base_path}")

    with open(base_path) as f:
        config_dict = yaml.safe_load(f) or {}

    if scenario_path is not None:
        scenario_path = Path(scenario_path)
        if scenario_path.exists():
            with open(scenario_path) as f:
                scenario = yaml.safe_load(f) or {}
            _merge_layer(config_dict, scenario)

    if sweep_overrides is not None:
        _merge_layer(config_dict, sweep_overrides)

    config = _yaml_to_config(config_dict)
    validate_config(config)
    return config


def default_config(model: str = "seir") -> SimulationConfig:
    """Return a SimulationConfig with all default values."""
    config = SimulationConfig()
    config.simulation.model = model
    validate_config(config)
    return config
