"""Transmission-rate calculator.

Turns the day's baseline transmission rate into the realized,
population-specific rate acting on susceptibles:

  frequency-dependent:  β_scaled = β / N
  density-dependent:    ρ = N / area
                        β_scaled = β × ρ/(K + ρ) / N

  realized:             β_real = |β_scaled × (1 + ε / √I_sum)|,
                        ε ~ Normal(0, stoch_sd)

I_sum is the unweighted number of infectious individuals present.  With
I_sum = 0 or stoch_sd = 0 the realized rate is exactly β_scaled.  The
noise is relatively large when few are infectious, which is what lets
outbreaks fizzle or flare at low prevalence.

Also provides the bracketing back-solve of β from a target reproduction
number R given a closed-form R(β).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Callable, Optional, Tuple

import numpy as np
from scipy import optimize

from metaepi.errors import RootFindError

if TYPE_CHECKING:
    from metaepi.types import ModelVariant


# ═══════════════════════════════════════════════════════════════════════
# SCALING
# ═══════════════════════════════════════════════════════════════════════

def scale_beta(
    beta: np.ndarray,
    n: np.ndarray,
    area: np.ndarray,
    mode: str = "frequency",
    monod_k: float = 100.0,
) -> np.ndarray:
    """Per-contact transmission rate β_scaled.

    Args:
        beta: Baseline transmission rate(s).
        n: Population size(s) present.
        area: Census area(s).
        mode: "frequency" or "density".
        monod_k: Monod half-saturation density (density mode only).

    Returns:
        β_scaled with the broadcast shape of the inputs; 0 where n == 0.
    """
    beta = np.asarray(beta, dtype=np.float64)
    n = np.asarray(n, dtype=np.float64)
    safe_n = np.where(n > 0, n, 1.0)
    if mode == "frequency":
        scaled = beta / safe_n
    elif mode == "density":
        density = n / np.asarray(area, dtype=np.float64)
        scaled = beta * (density / (monod_k + density)) / safe_n
    else:
        raise ValueError(f"Unknown transmission mode '{mode}'")
    return np.where(n > 0, scaled, 0.0)


def realize_beta(
    beta_scaled: np.ndarray,
    infect_sum: np.ndarray,
    stoch_sd: float,
    rng: np.random.Generator,
) -> np.ndarray:
    """Apply demographic transmission noise.

    One Normal(0, stoch_sd) draw is taken per population whenever
    stoch_sd > 0, so the draw count per day does not depend on the state.

    Args:
        beta_scaled: (N,) scaled transmission rates.
        infect_sum: (N,) infectious individuals present.
        stoch_sd: Noise standard deviation (0 disables noise).
        rng: Realization generator.

    Returns:
        (N,) realized rates, non-negative.
    """
    beta_scaled = np.asarray(beta_scaled, dtype=np.float64)
    if stoch_sd == 0:
        return beta_scaled.copy()
    noise = rng.normal(0.0, stoch_sd, size=beta_scaled.shape)
    infect_sum = np.asarray(infect_sum, dtype=np.float64)
    has_infectious = infect_sum > 0
    factor = np.where(
        has_infectious,
        1.0 + noise / np.sqrt(np.where(has_infectious, infect_sum, 1.0)),
        1.0,
    )
    return np.abs(beta_scaled * factor)


# ═══════════════════════════════════════════════════════════════════════
# R → β BACK-SOLVE
# ═══════════════════════════════════════════════════════════════════════

RootSolver = Callable[..., object]


def solve_beta(
    target_r: float,
    r_of_beta: Callable[[float], float],
    beta_min: float = 0.0,
    beta_max: float = 50.0,
    xtol: float = 1e-10,
    maxiter: int = 200,
    solver: Optional[RootSolver] = None,
) -> float:
    """Find β such that r_of_beta(β) = target_r.

    Args:
        target_r: Target reproduction number.
        r_of_beta: Closed-form R as a function of β (state held fixed).
        beta_min, beta_max: Search bracket.
        xtol: Absolute tolerance on β.
        maxiter: Iteration budget.
        solver: Bracketing solver with scipy.optimize.brentq's signature
            (default brentq).

    Returns:
        The transmission rate.

    Raises:
        RootFindError: If the bracket holds no sign change or the solver
            does not converge within maxiter.
    """
    if solver is None:
        solver = optimize.brentq

    def residual(beta: float) -> float:
        return r_of_beta(beta) - target_r

    f_lo = residual(beta_min)
    f_hi = residual(beta_max)
    if f_lo == 0:
        return float(beta_min)
    if f_hi == 0:
        return float(beta_max)
    if np.sign(f_lo) == np.sign(f_hi):
        raise RootFindError(
            f"No root for R = {target_r} in beta bracket [{beta_min}, {beta_max}] "
            f"(R ranges {f_lo + target_r:.6g} to {f_hi + target_r:.6g})"
        )
    try:
        root, info = solver(residual, beta_min, beta_max, xtol=xtol,
                            maxiter=maxiter, full_output=True, disp=False)
    except (ValueError, RuntimeError) as exc:
        raise RootFindError(f"Root finding failed for R = {target_r}: {exc}") from exc
    if not info.converged:
        raise RootFindError(
            f"Root finding for R = {target_r} did not converge in {maxiter} "
            f"iterations ({info.flag})"
        )
    return float(root)


# ═══════════════════════════════════════════════════════════════════════
# FORCE OF INFECTION
# ═══════════════════════════════════════════════════════════════════════

def force_of_infection(
    present: np.ndarray,
    variant: ModelVariant,
    beta: np.ndarray,
    areas: np.ndarray,
    infectious_visitors: np.ndarray,
    rng: np.random.Generator,
    mode: str = "frequency",
    monod_k: float = 100.0,
    stoch_sd: float = 0.0,
) -> Tuple[np.ndarray, np.ndarray]:
    """Per-susceptible daily infection hazard at each location.

    Args:
        present: (n_pops, n_classes) composition present today
            (home counts with commuters relocated).
        variant: Model variant (infectious classes, weights, mixing mask).
        beta: (n_pops,) baseline transmission rates by location.
        areas: (n_pops,) census areas.
        infectious_visitors: (n_pops,) infectious immigrants today.
        rng: Realization generator.
        mode, monod_k, stoch_sd: Transmission settings.

    Returns:
        (foi, beta_realized), both (n_pops,).
    """
    n_present = present[:, variant.mixing_mask()].sum(axis=1)
    infectious = present[:, list(variant.infectious)]
    visitors = np.asarray(infectious_visitors, dtype=np.float64)
    infect_sum = infectious.sum(axis=1) + visitors
    pressure = infectious @ np.asarray(variant.infectious_weights) + visitors

    beta_scaled = scale_beta(beta, n_present, areas, mode=mode, monod_k=monod_k)
    beta_realized = realize_beta(beta_scaled, infect_sum, stoch_sd, rng)
    return beta_realized * pressure, beta_realized
