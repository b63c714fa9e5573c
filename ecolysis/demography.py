"""Demographic rate draws shared by both simulators.

Two-level stochasticity:
  - Environmental: once per time step, the per-stage survival and fecundity
    rates themselves are drawn from their distributions.
  - Demographic: individuals then survive / reproduce independently at the
    realized rates (binomial / Poisson sampling in the simulators).
"""

from __future__ import annotations

from typing import List, Sequence, Tuple

import numpy as np

from ecolysis.config import CatastropheSpec, DemographySection, DensitySection
from ecolysis.errors import NumericOverflow
from ecolysis.rng import RandomVariateSource


def density_multiplier(density: DensitySection, total: float) -> float:
    """Multiplicative rate adjustment in (0, 1] for total abundance N."""
    if density.kind == "none" or total <= 0:
        return 1.0
    ratio = total / density.carrying_capacity
    if density.kind == "ceiling":
        return min(1.0, 1.0 / ratio)
    if density.kind == "beverton_holt":
        return 1.0 / (1.0 + density.strength * ratio)
    if density.kind == "ricker":
        return float(np.exp(-density.strength * ratio))
    raise ValueError(f"unknown density kind '{density.kind}'")


def regulated_total(density: DensitySection, total: int, severity: float = 1.0) -> int:
    """Headcount kept by the post-reproduction culling pass.

    target = round(N × density_multiplier(N) × severity), never above N.
    Both simulators cull to this target, so 'ceiling' is a hard cap at K.
    """
    total = int(total)
    if total <= 0:
        return 0
    m = density_multiplier(density, float(total))
    return min(total, int(round(total * m * severity)))


def draw_survival(demography: DemographySection, rng: RandomVariateSource) -> np.ndarray:
    """Per-stage survival probabilities for one step, clipped to [0, 1]."""
    return rng.correlated_rates(
        demography.survival,
        demography.survival_sd,
        correlation=demography.survival_correlation,
        lower=0.0,
        upper=1.0,
    )


def draw_fecundity(demography: DemographySection, rng: RandomVariateSource) -> np.ndarray:
    """Per-stage fecundity for one step, normal truncated at 0."""
    return np.array([
        rng.normal(mean, sd, lower=0.0) if mean > 0 or sd > 0 else 0.0
        for mean, sd in zip(demography.fecundity, demography.fecundity_sd)
    ], dtype=np.float64)


def draw_catastrophes(
    catastrophes: Sequence[CatastropheSpec],
    rng: RandomVariateSource,
) -> Tuple[float, List[str]]:
    """Draw which catastrophes strike this step.

    Returns:
        (combined surviving fraction, names of catastrophes that struck).
        Severities of simultaneous events multiply.
    """
    multiplier = 1.0
    struck: List[str] = []
    for cat in catastrophes:
        if cat.probability <= 0:
            continue
        if rng.uniform() < cat.probability:
            multiplier *= rng.normal(cat.severity_mean, cat.severity_sd,
                                     lower=0.0, upper=1.0)
            struck.append(cat.name)
    return multiplier, struck


def is_extinct(total: float, threshold: float) -> bool:
    """Quasi-extinction: total abundance at or below the threshold."""
    return total <= threshold


def check_abundance(total: int, limit: int, quantity: str = "abundance") -> None:
    """Raise NumericOverflow if ``total`` exceeds ``limit``."""
    if total > limit:
        raise NumericOverflow(quantity, int(total), int(limit))
