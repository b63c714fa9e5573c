"""Genetics engine for the individual-based simulator.

Neutral, unlinked, multi-allelic diploid loci. Alleles are opaque integer
identifiers scoped to a locus:
  - Founder alleles at every locus are 0 .. n_founder_alleles-1
  - Mutant alleles are minted from a per-replicate counter starting at
    n_founder_alleles and are never reused

Core responsibilities:
  - Founder genotype initialization (balanced allele frequencies)
  - Mendelian inheritance: one allele drawn uniformly from each parent's
    pair at each locus, loci independent (no linkage)
  - Mutation to newly minted allele ids
  - Observed / expected heterozygosity, allelic richness
  - Genomic inbreeding F = 1 − H_o / H_e
  - Founder-allele survival counts
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np

from ecolysis.errors import NumericOverflow
from ecolysis.rng import RandomVariateSource
from ecolysis.types import ALLELE_DTYPE, MAX_ALLELE_ID


# ═══════════════════════════════════════════════════════════════════════
# FOUNDERS
# ═══════════════════════════════════════════════════════════════════════

def initialize_founder_genotypes(
    n_agents: int,
    n_loci: int,
    n_founder_alleles: int,
    rng: RandomVariateSource,
) -> np.ndarray:
    """Deal founder alleles to ``n_agents`` diploid founders.

    At each locus the 2N allele copies cycle through the founder alleles
    (0, 1, .., A-1, 0, 1, ..) and are then shuffled, so every founder
    allele is present whenever 2N >= A and frequencies are as even as
    possible.

    Returns:
        (n_agents, n_loci, 2) allele ids.
    """
    geno = np.zeros((n_agents, n_loci, 2), dtype=ALLELE_DTYPE)
    if n_agents == 0:
        return geno
    pool = np.arange(2 * n_agents, dtype=ALLELE_DTYPE) % n_founder_alleles
    for locus in range(n_loci):
        geno[:, locus, :] = rng.permutation(pool).reshape(n_agents, 2)
    return geno


# ═══════════════════════════════════════════════════════════════════════
# INHERITANCE & MUTATION
# ═══════════════════════════════════════════════════════════════════════

class AlleleMinter:
    """Issues allele ids that have never existed in this replicate."""

    def __init__(self, first_id: int):
        self.next_id = int(first_id)

    def mint(self, count: int) -> np.ndarray:
        last = self.next_id + count - 1
        if last > MAX_ALLELE_ID:
            raise NumericOverflow("allele id", last, MAX_ALLELE_ID)
        ids = np.arange(self.next_id, self.next_id + count, dtype=ALLELE_DTYPE)
        self.next_id += count
        return ids


def inherit(
    parent_a: np.ndarray,
    parent_b: np.ndarray,
    rng: RandomVariateSource,
) -> np.ndarray:
    """Offspring genotype from two (n_loci, 2) parental genotypes.

    Copy 0 comes from ``parent_a``, copy 1 from ``parent_b``.
    """
    n_loci = parent_a.shape[0]
    pick = rng.integers(0, 2, size=(n_loci, 2))
    loci = np.arange(n_loci)
    child = np.empty((n_loci, 2), dtype=ALLELE_DTYPE)
    child[:, 0] = parent_a[loci, pick[:, 0]]
    child[:, 1] = parent_b[loci, pick[:, 1]]
    return child


def inherit_batch(
    genotypes: np.ndarray,
    mother_idx: np.ndarray,
    father_idx: np.ndarray,
    rng: RandomVariateSource,
) -> np.ndarray:
    """Vectorized Mendelian inheritance for a batch of offspring.

    At each locus, offspring receives one randomly chosen allele from each
    parent. Independent assortment (no linkage) is assumed.

    Args:
        genotypes: (n_agents, n_loci, 2) parental genotypes.
        mother_idx: (n_offspring,) row indices of first parents.
        father_idx: (n_offspring,) row indices of second parents.
        rng: Variate source.

    Returns:
        (n_offspring, n_loci, 2) offspring genotypes.
    """
    n_offspring = len(mother_idx)
    n_loci = genotypes.shape[1]
    choices = rng.integers(0, 2, size=(n_offspring, n_loci, 2))
    loci = np.arange(n_loci)[None, :]

    offspring = np.empty((n_offspring, n_loci, 2), dtype=ALLELE_DTYPE)
    offspring[:, :, 0] = genotypes[mother_idx[:, None], loci, choices[:, :, 0]]
    offspring[:, :, 1] = genotypes[father_idx[:, None], loci, choices[:, :, 1]]
    return offspring


def apply_mutations(
    offspring_geno: np.ndarray,
    mutation_rate: float,
    minter: AlleleMinter,
    rng: RandomVariateSource,
) -> int:
    """Replace inherited alleles with new ids at rate ``mutation_rate``.

    Each allele copy mutates independently. Modifies ``offspring_geno``
    in place.

    Returns:
        Number of mutations applied.
    """
    if mutation_rate <= 0 or offspring_geno.size == 0:
        return 0
    mask = rng.uniform(offspring_geno.shape) < mutation_rate
    n_mut = int(mask.sum())
    if n_mut:
        offspring_geno[mask] = minter.mint(n_mut)
    return n_mut


# ═══════════════════════════════════════════════════════════════════════
# DIVERSITY
# ═══════════════════════════════════════════════════════════════════════

def individual_heterozygosity(genotypes: np.ndarray) -> np.ndarray:
    """Fraction of heterozygous loci for each agent, shape (n,)."""
    if len(genotypes) == 0:
        return np.zeros(0, dtype=np.float64)
    return np.mean(genotypes[:, :, 0] != genotypes[:, :, 1], axis=1)


def observed_heterozygosity(genotypes: np.ndarray) -> float:
    """Mean individual heterozygosity over living agents; NaN if none."""
    if len(genotypes) == 0:
        return float('nan')
    return float(np.mean(individual_heterozygosity(genotypes)))


def allele_frequencies(genotypes: np.ndarray, locus: int):
    """(allele ids, frequencies) at one locus."""
    alleles, counts = np.unique(genotypes[:, locus, :], return_counts=True)
    return alleles, counts / counts.sum()


def expected_heterozygosity(genotypes: np.ndarray) -> float:
    """H_e = mean over loci of 1 − Σ p_a²; NaN if no agents."""
    if len(genotypes) == 0:
        return float('nan')
    he = [1.0 - float(np.sum(allele_frequencies(genotypes, l)[1] ** 2))
          for l in range(genotypes.shape[1])]
    return float(np.mean(he))


def allelic_richness(genotypes: np.ndarray) -> float:
    """Mean number of distinct alleles per locus; NaN if no agents."""
    if len(genotypes) == 0:
        return float('nan')
    return float(np.mean([len(np.unique(genotypes[:, l, :]))
                          for l in range(genotypes.shape[1])]))


def genomic_inbreeding(
    genotypes: np.ndarray,
    h_exp: Optional[float] = None,
) -> np.ndarray:
    """Genomic inbreeding coefficient per agent.

    F_i = 1 − H_obs,i / H_exp

    Positive = excess homozygosity; negative = excess heterozygosity.
    Returns zeros when H_exp is ~0 (monomorphic population).
    """
    n = len(genotypes)
    if n == 0:
        return np.zeros(0, dtype=np.float64)
    if h_exp is None:
        h_exp = expected_heterozygosity(genotypes)
    if h_exp < 1e-10:
        return np.zeros(n, dtype=np.float64)
    return 1.0 - individual_heterozygosity(genotypes) / h_exp


def founder_alleles_present(genotypes: np.ndarray, n_founder_alleles: int) -> int:
    """Distinct (locus, founder allele) pairs carried by any living agent."""
    if len(genotypes) == 0:
        return 0
    n_loci = genotypes.shape[1]
    keys = genotypes.astype(np.int64) + (
        np.arange(n_loci, dtype=np.int64)[None, :, None] * n_founder_alleles
    )
    founder = genotypes < n_founder_alleles
    return int(len(np.unique(keys[founder])))


@dataclass
class GeneticSummary:
    """Per-step genetic statistics of a living population."""
    heterozygosity: float = float('nan')
    expected_heterozygosity: float = float('nan')
    inbreeding: float = float('nan')
    allelic_richness: float = float('nan')
    founder_alleles: int = 0


def summarize(genotypes: np.ndarray, n_founder_alleles: int) -> GeneticSummary:
    """Compute all per-step genetic statistics."""
    if len(genotypes) == 0:
        return GeneticSummary()
    h_e = expected_heterozygosity(genotypes)
    return GeneticSummary(
        heterozygosity=observed_heterozygosity(genotypes),
        expected_heterozygosity=h_e,
        inbreeding=float(np.mean(genomic_inbreeding(genotypes, h_e))),
        allelic_richness=allelic_richness(genotypes),
        founder_alleles=founder_alleles_present(genotypes, n_founder_alleles),
    )
