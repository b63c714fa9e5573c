"""Population-level simulator.

Projects an aggregate stage-structured abundance vector under demographic
and environmental stochasticity; individuals have no identity.

Per-step order:
  1. Environmental draw of stage survival s_j
  2. Survivors ~ Binomial(n_j, s_j)               (demographic stochasticity)
  3. Offspring ~ Poisson(f_j × survivors_j), routed to stage 0
  4. Transition: Binomial(survivors_j, a_j) advance to successor(j)
  5. Regulation: the density multiplier of the post-reproduction total N
     and the severity of any struck catastrophes give a target
     round(N × m(N) × severity); the kept individuals are drawn without
     replacement across stages (multivariate hypergeometric). This is the
     same culling pass, at the same point, as the individual-based engine,
     so counts never go negative and never rise above the pre-cull vector
  6. Record; total <= quasi-extinction threshold is absorbing

The abundance vector is mutated in place each step.
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np

from ecolysis.config import ScenarioConfig
from ecolysis.demography import (
    check_abundance,
    draw_catastrophes,
    draw_fecundity,
    draw_survival,
    is_extinct,
    regulated_total,
)
from ecolysis.rng import RandomVariateSource
from ecolysis.types import ReplicateTrajectory

logger = logging.getLogger(__name__)


def initial_vector(config: ScenarioConfig) -> np.ndarray:
    """Initial abundance vector (int64, one entry per stage)."""
    return np.asarray(config.demography.initial_abundance, dtype=np.int64)


def population_step(
    vector: np.ndarray,
    config: ScenarioConfig,
    rng: RandomVariateSource,
) -> np.ndarray:
    """Advance the abundance vector one time step, in place.

    Args:
        vector: (K,) int64 abundance per stage; overwritten with the result.
        config: Scenario.
        rng: Replicate's variate source.

    Returns:
        The same array, holding post-step abundances.

    Raises:
        NumericOverflow: If total abundance exceeds simulation.max_abundance.
    """
    demo = config.demography
    k = demo.n_stages

    survivors = rng.binomial(vector, draw_survival(demo, rng)).astype(np.int64)

    fecundity = draw_fecundity(demo, rng)
    births = int(rng.poisson(fecundity * survivors).sum())
    check_abundance(births + int(survivors.sum()), config.simulation.max_abundance)

    advancing = rng.binomial(survivors, np.asarray(demo.advance_probability))
    nxt = np.zeros(k, dtype=np.int64)
    for j in range(k):
        succ = int(demo.successor[j])
        if succ == j:
            nxt[j] += survivors[j]
        else:
            nxt[succ] += advancing[j]
            nxt[j] += survivors[j] - advancing[j]
    nxt[0] += births

    severity, _ = draw_catastrophes(config.catastrophes, rng)
    total = int(nxt.sum())
    target = regulated_total(config.density, total, severity)
    if target < total:
        nxt = rng.multivariate_hypergeometric(nxt, target).astype(np.int64)

    vector[:] = nxt
    return vector


def run_population_replicate(
    config: ScenarioConfig,
    replicate: int,
    rng: RandomVariateSource,
    initial: Optional[np.ndarray] = None,
) -> ReplicateTrajectory:
    """Run one population-level replicate over the full horizon.

    The trajectory always has horizon + 1 entries. Once the total falls to
    the quasi-extinction threshold, the remaining steps repeat the terminal
    vector (no resurrection).
    """
    sim = config.simulation
    vector = initial_vector(config) if initial is None else np.array(initial, dtype=np.int64)
    traj = ReplicateTrajectory.allocate(replicate, "population", sim.horizon, config.n_stages)

    extinct = is_extinct(vector.sum(), sim.quasi_extinction_threshold)
    traj.record_counts(0, vector, extinct)
    if extinct:
        traj.pad_from(0)
        return traj

    for t in range(1, sim.horizon + 1):
        population_step(vector, config, rng)
        extinct = is_extinct(vector.sum(), sim.quasi_extinction_threshold)
        traj.record_counts(t, vector, extinct)
        if extinct:
            logger.debug("replicate %d quasi-extinct at t=%d", replicate, t)
            traj.pad_from(t)
            break
    return traj
