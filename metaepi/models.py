"""Model variants: transition graphs, daily rate tables, closed-form R.

Both variants run on the same generic stepper.  A variant is a static
ModelVariant graph plus two functions of the config:

  rates(day_params)   → {rate key: (n_pops,) hazard (d⁻¹)} for the day
  exposure(rates)     → (n_pops,) expected infectiousness-weighted time
                        an infected individual spends infectious

so that R = β_scaled × S × exposure.  Branching fractions appear as
rate × fraction edges: an Is individual leaves at recov_sym per day and
goes to hospital with probability h, i.e. with hazard recov_sym × h.

SEIR (births/deaths, no D class):
  ∅ → S (birth_rate × N);  S → E (foi);  E → I (incubation);
  I → R (recovery);  every class → ∅ (death_rate)

Extended (closed population):
  S → E (foi)
  E → Ia | Ip                 incubation × (frac_asym | 1 − frac_asym)
  Ia → R                      recov_asym
  Ip → Is                     sym_rate
  Is → Ib | Ih | Ic1          recov_sym × (1 − h | h(1 − frac_icu) | h·frac_icu)
  Ib → R                      recov_home
  Ih → R | D                  recov_hosp × (1 − death_frac_hosp | death_frac_hosp)
  Ic1 → Ic2 | D               icu_rate × (1 − death_frac_icu | death_frac_icu)
  Ic2 → R                     recov_icu2
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Optional

import numpy as np

from metaepi.config import ExtendedSection, SEIRSection, SimulationConfig
from metaepi.types import (
    FORCE_OF_INFECTION,
    ExtendedClass as X,
    ModelVariant,
    SEIRClass as C,
    Transition,
)

RateTable = Dict[str, np.ndarray]
DayParams = Dict[str, Optional[np.ndarray]]


def _const(n_pops: int, value: float) -> np.ndarray:
    return np.full(n_pops, float(value))


# ═══════════════════════════════════════════════════════════════════════
# SEIR
# ═══════════════════════════════════════════════════════════════════════

SEIR_EVENTS = ('new_births', 'new_exposures', 'new_infectious',
               'new_recoveries', 'new_deaths')


def seir_variant() -> ModelVariant:
    death = ('new_deaths',)
    return ModelVariant(
        name='seir',
        labels=tuple(c.name for c in C),
        transitions=(
            Transition(None, C.S, 'birth', ('new_births',)),
            Transition(C.S, C.E, FORCE_OF_INFECTION, ('new_exposures',)),
            Transition(C.S, None, 'death', death),
            Transition(C.E, C.I, 'incubation', ('new_infectious',)),
            Transition(C.E, None, 'death', death),
            Transition(C.I, C.R, 'recovery', ('new_recoveries',)),
            Transition(C.I, None, 'death', death),
            Transition(C.R, None, 'death', death),
        ),
        event_names=SEIR_EVENTS,
        mobile=(C.S, C.I),
        infectious=(C.I,),
        infectious_weights=(1.0,),
    )


def seir_rates(cfg: SEIRSection, day: DayParams, n_pops: int) -> RateTable:
    return {
        'birth': _const(n_pops, cfg.birth_rate),
        'death': _const(n_pops, cfg.death_rate),
        'incubation': _const(n_pops, cfg.incubation_rate),
        'recovery': _const(n_pops, cfg.recovery_rate),
    }


def seir_exposure(rates: RateTable) -> np.ndarray:
    """Infectious time per infection: P(E survives to I) × mean I duration."""
    mu = rates['death']
    sigma = rates['incubation']
    gamma = rates['recovery']
    return sigma / (sigma + mu) / (gamma + mu)


# ═══════════════════════════════════════════════════════════════════════
# EXTENDED (11-CLASS)
# ═══════════════════════════════════════════════════════════════════════

EXTENDED_EVENTS = ('new_infections', 'new_symptomatic', 'new_hospitalizations',
                   'new_icu', 'new_deaths')


def extended_variant(cfg: ExtendedSection) -> ModelVariant:
    hosp = ('new_hospitalizations',)
    death = ('new_deaths',)
    w_h = cfg.frac_beta_hosp
    return ModelVariant(
        name='extended',
        labels=tuple(c.name for c in X),
        transitions=(
            Transition(X.S, X.E, FORCE_OF_INFECTION, ('new_infections',)),
            Transition(X.E, X.Ia, 'e_to_ia'),
            Transition(X.E, X.Ip, 'e_to_ip'),
            Transition(X.Ia, X.R, 'ia_to_r'),
            Transition(X.Ip, X.Is, 'ip_to_is', ('new_symptomatic',)),
            Transition(X.Is, X.Ib, 'is_to_ib'),
            Transition(X.Is, X.Ih, 'is_to_ih', hosp),
            Transition(X.Is, X.Ic1, 'is_to_ic1', hosp + ('new_icu',)),
            Transition(X.Ib, X.R, 'ib_to_r'),
            Transition(X.Ih, X.R, 'ih_to_r'),
            Transition(X.Ih, X.D, 'ih_to_d', death),
            Transition(X.Ic1, X.Ic2, 'ic1_to_ic2'),
            Transition(X.Ic1, X.D, 'ic1_to_d', death),
            Transition(X.Ic2, X.R, 'ic2_to_r'),
        ),
        event_names=EXTENDED_EVENTS,
        mobile=(X.S, X.Ia, X.Ip),
        infectious=(X.Ia, X.Ip, X.Is, X.Ib, X.Ih, X.Ic1, X.Ic2),
        infectious_weights=(cfg.frac_beta_asym, 1.0, 1.0, 1.0, w_h, w_h, w_h),
        non_mixing=(X.D,),
    )


def extended_rates(cfg: ExtendedSection, day: DayParams, n_pops: int) -> RateTable:
    h = day.get('hospitalization')
    h = np.zeros(n_pops) if h is None else np.broadcast_to(
        np.asarray(h, dtype=np.float64), (n_pops,))
    return {
        'e_to_ia': _const(n_pops, cfg.incubation_rate * cfg.frac_asym),
        'e_to_ip': _const(n_pops, cfg.incubation_rate * (1.0 - cfg.frac_asym)),
        'ia_to_r': _const(n_pops, cfg.recov_asym),
        'ip_to_is': _const(n_pops, cfg.sym_rate),
        'is_to_ib': cfg.recov_sym * (1.0 - h),
        'is_to_ih': cfg.recov_sym * h * (1.0 - cfg.frac_icu),
        'is_to_ic1': cfg.recov_sym * h * cfg.frac_icu,
        'ib_to_r': _const(n_pops, cfg.recov_home),
        'ih_to_r': _const(n_pops, cfg.recov_hosp * (1.0 - cfg.death_frac_hosp)),
        'ih_to_d': _const(n_pops, cfg.recov_hosp * cfg.death_frac_hosp),
        'ic1_to_ic2': _const(n_pops, cfg.icu_rate * (1.0 - cfg.death_frac_icu)),
        'ic1_to_d': _const(n_pops, cfg.icu_rate * cfg.death_frac_icu),
        'ic2_to_r': _const(n_pops, cfg.recov_icu2),
    }


def extended_exposure(rates: RateTable, cfg: ExtendedSection) -> np.ndarray:
    """Weighted infectious time per infection along every branch."""
    def share(key, *siblings):
        total = rates[key] + sum(rates[s] for s in siblings)
        return np.where(total > 0, rates[key] / np.where(total > 0, total, 1.0), 0.0)

    w_a = cfg.frac_beta_asym
    w_h = cfg.frac_beta_hosp
    is_exit = rates['is_to_ib'] + rates['is_to_ih'] + rates['is_to_ic1']
    ic1_exit = rates['ic1_to_ic2'] + rates['ic1_to_d']
    ih_exit = rates['ih_to_r'] + rates['ih_to_d']

    after_is = (
        share('is_to_ib', 'is_to_ih', 'is_to_ic1') / rates['ib_to_r']
        + share('is_to_ih', 'is_to_ib', 'is_to_ic1') * w_h / ih_exit
        + share('is_to_ic1', 'is_to_ib', 'is_to_ih') * w_h * (
            1.0 / ic1_exit
            + share('ic1_to_ic2', 'ic1_to_d') / rates['ic2_to_r']
        )
    )
    symptomatic_path = 1.0 / rates['ip_to_is'] + 1.0 / is_exit + after_is
    return (share('e_to_ia', 'e_to_ip') * w_a / rates['ia_to_r']
            + share('e_to_ip', 'e_to_ia') * symptomatic_path)


# ═══════════════════════════════════════════════════════════════════════
# DISPATCH
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class CompartmentModel:
    """A variant graph bound to its configured rate functions."""
    variant: ModelVariant
    rates: Callable[[DayParams, int], RateTable]
    exposure: Callable[[RateTable], np.ndarray]
    uses_hospitalization: bool


def get_model(config: SimulationConfig) -> CompartmentModel:
    """Build the CompartmentModel selected by config.simulation.model."""
    if config.simulation.model == 'seir':
        cfg = config.seir
        return CompartmentModel(
            variant=seir_variant(),
            rates=lambda day, n: seir_rates(cfg, day, n),
            exposure=seir_exposure,
            uses_hospitalization=False,
        )
    if config.simulation.model == 'extended':
        xcfg = config.extended
        return CompartmentModel(
            variant=extended_variant(xcfg),
            rates=lambda day, n: extended_rates(xcfg, day, n),
            exposure=lambda rates: extended_exposure(rates, xcfg),
            uses_hospitalization=True,
        )
    raise ValueError(f"Unknown model '{config.simulation.model}'")
