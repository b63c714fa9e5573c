"""Mating and reproduction for the individual-based simulator.

Pairing is monogamous within a step and drawn without replacement from the
breeding pool (agents in stages with positive mean fecundity):
  - sexual:   one female with one male; surplus of either sex stays unpaired
  - asexual:  consecutive agents of the ordered pool (hermaphrodites)

Pool ordering policy:
  - 'random':          uniform random permutation
  - 'heterozygosity':  weighted sampling without replacement, weight 1 + H_i,
                       so more heterozygous agents tend to pair first

Offspring per pair ~ Poisson(f_a + f_b), where f is the step's realized
per-capita fecundity of each parent's stage.
"""

from __future__ import annotations

from typing import Tuple

import numpy as np

from ecolysis.config import ScenarioConfig
from ecolysis.genetics import (
    AlleleMinter,
    apply_mutations,
    individual_heterozygosity,
    inherit_batch,
)
from ecolysis.rng import RandomVariateSource
from ecolysis.types import Sex, allocate_agents


def breeding_pool(agents: np.ndarray, config: ScenarioConfig) -> np.ndarray:
    """Row indices of agents eligible to breed this step."""
    breeding_stage = np.asarray(config.demography.fecundity, dtype=np.float64) > 0
    return np.flatnonzero(breeding_stage[agents['stage']])


def _ordered(
    pool: np.ndarray,
    genotypes: np.ndarray,
    policy: str,
    rng: RandomVariateSource,
) -> np.ndarray:
    if len(pool) < 2:
        return rng.permutation(pool)
    if policy == "heterozygosity":
        weights = 1.0 + individual_heterozygosity(genotypes[pool])
        return pool[rng.choice(len(pool), size=len(pool), replace=False,
                               weights=weights)]
    return rng.permutation(pool)


def form_pairs(
    agents: np.ndarray,
    genotypes: np.ndarray,
    config: ScenarioConfig,
    rng: RandomVariateSource,
) -> Tuple[np.ndarray, np.ndarray]:
    """Pair breeders for this step.

    Returns:
        (first_idx, second_idx) row indices of equal length; in sexual mode
        the first parent is the female. Empty arrays if no pair can form.
    """
    ind = config.individual
    pool = breeding_pool(agents, config)
    if ind.sexual:
        sex = agents['sex'][pool]
        females = _ordered(pool[sex == Sex.FEMALE], genotypes, ind.mating_policy, rng)
        males = _ordered(pool[sex == Sex.MALE], genotypes, ind.mating_policy, rng)
        n = min(len(females), len(males))
        return females[:n].astype(np.int64), males[:n].astype(np.int64)

    ordered = _ordered(pool, genotypes, ind.mating_policy, rng)
    n = len(ordered) // 2
    return (ordered[0:2 * n:2].astype(np.int64),
            ordered[1:2 * n:2].astype(np.int64))


def produce_offspring(
    agents: np.ndarray,
    genotypes: np.ndarray,
    fecundity: np.ndarray,
    config: ScenarioConfig,
    minter: AlleleMinter,
    rng: RandomVariateSource,
) -> Tuple[np.ndarray, np.ndarray]:
    """Pair breeders and create their offspring.

    Newborn ids are left at 0; the caller assigns them when the cohort
    joins the population.

    Args:
        agents: Living agents (AGENT_DTYPE).
        genotypes: (n, n_loci, 2) matching ``agents`` row for row.
        fecundity: (K,) realized per-capita fecundity for this step.
        config: Scenario.
        minter: Replicate's allele-id counter (used when mutation is on).
        rng: Replicate's variate source.

    Returns:
        (newborn agents, newborn genotypes). Zero eligible breeders yields
        empty arrays, not an error.
    """
    first, second = form_pairs(agents, genotypes, config, rng)
    n_loci = genotypes.shape[1]
    if len(first) == 0:
        return allocate_agents(0), np.zeros((0, n_loci, 2), dtype=genotypes.dtype)

    stages = agents['stage']
    rates = fecundity[stages[first]] + fecundity[stages[second]]
    counts = rng.poisson(rates)
    mother_idx = np.repeat(first, counts)
    father_idx = np.repeat(second, counts)
    n_births = len(mother_idx)

    babies = allocate_agents(n_births)
    if n_births == 0:
        return babies, np.zeros((0, n_loci, 2), dtype=genotypes.dtype)

    baby_geno = inherit_batch(genotypes, mother_idx, father_idx, rng)
    apply_mutations(baby_geno, config.genetics.mutation_rate, minter, rng)

    babies['stage'] = 0
    babies['age'] = 0
    babies['mother'] = agents['id'][mother_idx]
    babies['father'] = agents['id'][father_idx]
    if config.individual.sexual:
        female = rng.uniform(n_births) < config.individual.sex_ratio
        babies['sex'] = np.where(female, Sex.FEMALE, Sex.MALE)
    else:
        babies['sex'] = Sex.HERMAPHRODITE
    return babies, baby_geno
