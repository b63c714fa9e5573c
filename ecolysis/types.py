"""Core data types for Ecolysis.

This module is the single source of truth for:
  - Mode / policy name sets accepted by the scenario loader
  - AGENT_DTYPE: NumPy structured array dtype for individual agents
  - Sex enumeration and sentinel constants
  - ReplicateTrajectory: per-replicate time series handed to the aggregator
  - FailureRecord: provenance entry for a replicate excluded from statistics

All modules import these types from here. No other module defines agent fields.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Optional

import numpy as np


# ═══════════════════════════════════════════════════════════════════════
# NAME SETS (validated by config.validate_config)
# ═══════════════════════════════════════════════════════════════════════

SIMULATION_MODES = ("population", "individual")
DENSITY_KINDS = ("none", "ceiling", "beverton_holt", "ricker")
MATING_POLICIES = ("random", "heterozygosity")
CULLING_POLICIES = ("uniform", "stage_weighted")
EXECUTORS = ("serial", "thread", "process")


class Sex(IntEnum):
    """Agent sex. HERMAPHRODITE is used when sex is not modeled."""
    FEMALE        = 0
    MALE          = 1
    HERMAPHRODITE = 2


NO_PARENT = -1                         # parent id of founders
ALLELE_DTYPE = np.int32
MAX_ALLELE_ID = int(np.iinfo(ALLELE_DTYPE).max)


# ═══════════════════════════════════════════════════════════════════════
# AGENT_DTYPE: structured array for individual agents
# ═══════════════════════════════════════════════════════════════════════

AGENT_DTYPE = np.dtype([
    ('id',      np.int64),   # unique within a replicate, never reused
    ('stage',   np.int16),   # stage index 0..K-1
    ('age',     np.int32),   # time steps since birth (founders start at 0)
    ('sex',     np.int8),    # Sex enum
    ('mother',  np.int64),   # parent id or NO_PARENT
    ('father',  np.int64),   # parent id or NO_PARENT
    ('alive',   np.bool_),   # cleared by survival/culling, then compacted away
])


def allocate_agents(n: int) -> np.ndarray:
    """Allocate ``n`` zeroed agents, flagged alive, with no parents."""
    agents = np.zeros(n, dtype=AGENT_DTYPE)
    agents['alive'] = True
    agents['mother'] = NO_PARENT
    agents['father'] = NO_PARENT
    return agents


def allocate_genotypes(n: int, n_loci: int) -> np.ndarray:
    """Allocate a zeroed genotype array of shape (n, n_loci, 2).

    Stored separately from AGENT_DTYPE so genotype-free operations
    (survival, transition) do not touch allele data.
    """
    return np.zeros((n, n_loci, 2), dtype=ALLELE_DTYPE)


# ═══════════════════════════════════════════════════════════════════════
# REPLICATE TRAJECTORY
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class StepRecord:
    """Summary of one replicate at one time step."""
    t: int
    total: int
    stages: tuple
    extinct: bool
    heterozygosity: Optional[float] = None
    founder_alleles: Optional[float] = None


@dataclass
class ReplicateTrajectory:
    """Per-step summary of a single replicate, length horizon + 1.

    Genetic series exist only in individual mode and are NaN from the
    extinction step onward.
    """
    replicate: int
    mode: str
    total: np.ndarray                      # (T+1,) int64
    stages: np.ndarray                     # (T+1, K) int64
    extinct: np.ndarray                    # (T+1,) bool
    heterozygosity: Optional[np.ndarray] = None           # (T+1,) observed H
    expected_heterozygosity: Optional[np.ndarray] = None  # (T+1,) H_e
    inbreeding: Optional[np.ndarray] = None               # (T+1,) genomic F
    allelic_richness: Optional[np.ndarray] = None         # (T+1,) alleles/locus
    founder_alleles: Optional[np.ndarray] = None          # (T+1,) count
    founder_alleles_initial: int = 0

    @classmethod
    def allocate(
        cls,
        replicate: int,
        mode: str,
        horizon: int,
        n_stages: int,
    ) -> 'ReplicateTrajectory':
        n = horizon + 1
        traj = cls(
            replicate=replicate,
            mode=mode,
            total=np.zeros(n, dtype=np.int64),
            stages=np.zeros((n, n_stages), dtype=np.int64),
            extinct=np.zeros(n, dtype=bool),
        )
        if mode == "individual":
            traj.heterozygosity = np.full(n, np.nan)
            traj.expected_heterozygosity = np.full(n, np.nan)
            traj.inbreeding = np.full(n, np.nan)
            traj.allelic_richness = np.full(n, np.nan)
            traj.founder_alleles = np.full(n, np.nan)
        return traj

    @property
    def horizon(self) -> int:
        return len(self.total) - 1

    @property
    def is_genetic(self) -> bool:
        return self.heterozygosity is not None

    @property
    def extinction_step(self) -> Optional[int]:
        """First step flagged extinct, or None if the replicate persisted."""
        hits = np.flatnonzero(self.extinct)
        return int(hits[0]) if len(hits) else None

    def record_counts(self, t: int, stage_counts: np.ndarray, extinct: bool) -> None:
        self.stages[t] = stage_counts
        self.total[t] = int(stage_counts.sum())
        self.extinct[t] = extinct

    def pad_from(self, t: int) -> None:
        """Repeat the terminal state at step ``t`` through the horizon."""
        self.stages[t + 1:] = self.stages[t]
        self.total[t + 1:] = self.total[t]
        self.extinct[t + 1:] = self.extinct[t]

    def fraction_founder_retained(self) -> Optional[np.ndarray]:
        """Founder alleles at each step divided by those present at t=0."""
        if self.founder_alleles is None:
            return None
        if self.founder_alleles_initial <= 0:
            return np.full_like(self.founder_alleles, np.nan)
        return self.founder_alleles / float(self.founder_alleles_initial)

    def step(self, t: int) -> StepRecord:
        rec = StepRecord(
            t=t,
            total=int(self.total[t]),
            stages=tuple(int(x) for x in self.stages[t]),
            extinct=bool(self.extinct[t]),
        )
        if self.is_genetic:
            h = float(self.heterozygosity[t])
            fa = float(self.founder_alleles[t])
            rec.heterozygosity = None if np.isnan(h) else h
            rec.founder_alleles = None if np.isnan(fa) else fa
        return rec


@dataclass(frozen=True)
class FailureRecord:
    """A replicate that was excluded from aggregate statistics."""
    replicate: int
    kind: str          # exception class name, e.g. 'NumericOverflow'
    message: str
