"""Individual-based simulator.

Agents live in a flat arena (AgentStore): a structured array of living
agents plus a row-aligned genotype array. Parents are referenced by stable
integer id, never by row, so dead agents can be compacted away each step
without leaving dangling references. Ids are issued in increasing order and
compaction preserves order, so the id column stays sorted.

Per-step order (fixed; survival precedes reproduction, so newborns of step
t are first exposed to mortality at step t+1):
  1. Survival:      environmental draw of stage survival, then each agent
                    survives independently; the dead are removed
  2. Transition:    age += 1; survivors advance to successor(stage) with
                    probability advance_probability[stage]
  3. Reproduction:  monogamous pairing within the breeding pool, Poisson
                    offspring per pair, Mendelian inheritance (+ mutation)
  4. Regulation:    density multiplier × catastrophe severity gives a target
                    count for the whole post-reproduction population;
                    agents are culled without replacement to reach it
                    (the population-level engine culls at the same point,
                    so a ceiling caps both at K)
  5. Record:        stage counts, heterozygosity, founder-allele survival
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

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
from ecolysis.genetics import AlleleMinter, initialize_founder_genotypes, summarize
from ecolysis.reproduction import produce_offspring
from ecolysis.rng import RandomVariateSource
from ecolysis.types import (
    ALLELE_DTYPE,
    ReplicateTrajectory,
    Sex,
    allocate_agents,
    allocate_genotypes,
)

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════
# AGENT STORE
# ═══════════════════════════════════════════════════════════════════════

class AgentStore:
    """Arena of living agents with row-aligned genotypes.

    Attributes:
        agents: (n,) AGENT_DTYPE structured array, living agents only
            between steps.
        genotypes: (n, n_loci, 2) allele ids, same row order as agents.
        next_id: Next unused agent id.
    """

    def __init__(self, agents: np.ndarray, genotypes: np.ndarray, next_id: int = 0):
        if len(agents) != len(genotypes):
            raise ValueError("agents and genotypes must have the same length")
        self.agents = agents
        self.genotypes = genotypes
        self.next_id = max(int(next_id), int(agents['id'].max()) + 1 if len(agents) else 0)

    def __len__(self) -> int:
        return len(self.agents)

    @classmethod
    def founders(cls, config: ScenarioConfig, rng: RandomVariateSource) -> 'AgentStore':
        """Create the initial population.

        Uses ``individual.initial_roster`` when given, otherwise
        ``demography.initial_abundance`` agents per stage. Founders without
        an explicit genotype are dealt founder alleles.
        """
        ind = config.individual
        g = config.genetics
        roster = ind.initial_roster

        if roster:
            n = len(roster)
            agents = allocate_agents(n)
            agents['stage'] = [e.stage for e in roster]
            agents['sex'] = [e.sex if ind.sexual else Sex.HERMAPHRODITE for e in roster]
            agents['age'] = [e.age for e in roster]
        else:
            counts = np.asarray(config.demography.initial_abundance, dtype=np.int64)
            n = int(counts.sum())
            agents = allocate_agents(n)
            agents['stage'] = np.repeat(np.arange(len(counts)), counts)
            if ind.sexual:
                female = rng.uniform(n) < ind.sex_ratio
                agents['sex'] = np.where(female, Sex.FEMALE, Sex.MALE)
            else:
                agents['sex'] = Sex.HERMAPHRODITE

        agents['id'] = np.arange(n, dtype=np.int64)
        genotypes = allocate_genotypes(n, g.n_loci)
        explicit = np.array([bool(roster) and roster[i].genotype is not None
                             for i in range(n)], dtype=bool)
        for i in np.flatnonzero(explicit):
            genotypes[i] = np.asarray(roster[i].genotype, dtype=ALLELE_DTYPE)
        dealt = np.flatnonzero(~explicit)
        if len(dealt):
            genotypes[dealt] = initialize_founder_genotypes(
                len(dealt), g.n_loci, g.n_founder_alleles, rng)
        return cls(agents, genotypes, next_id=n)

    def stage_counts(self, n_stages: int) -> np.ndarray:
        return np.bincount(self.agents['stage'], minlength=n_stages).astype(np.int64)

    def compact(self) -> int:
        """Drop agents flagged dead. Returns the number removed."""
        alive = self.agents['alive']
        n_dead = int(len(alive) - alive.sum())
        if n_dead:
            self.agents = self.agents[alive]
            self.genotypes = self.genotypes[alive]
        return n_dead

    def add(self, newborns: np.ndarray, genotypes: np.ndarray) -> None:
        """Append newborns, assigning fresh ids."""
        n = len(newborns)
        if n == 0:
            return
        newborns['id'] = np.arange(self.next_id, self.next_id + n, dtype=np.int64)
        self.next_id += n
        self.agents = np.concatenate([self.agents, newborns])
        self.genotypes = np.concatenate([self.genotypes, genotypes])

    def rows_of(self, ids: np.ndarray) -> np.ndarray:
        """Row index for each id, or -1 where the agent is gone."""
        ids = np.asarray(ids, dtype=np.int64)
        col = self.agents['id']
        if len(col) == 0:
            return np.full(len(ids), -1, dtype=np.int64)
        pos = np.minimum(np.searchsorted(col, ids), len(col) - 1)
        return np.where(col[pos] == ids, pos, -1)


# ═══════════════════════════════════════════════════════════════════════
# STEP COMPONENTS
# ═══════════════════════════════════════════════════════════════════════

def survival_step(store: AgentStore, config: ScenarioConfig, rng: RandomVariateSource) -> int:
    """Each agent survives with its stage's realized probability. Returns deaths."""
    if len(store) == 0:
        return 0
    survival = draw_survival(config.demography, rng)
    p = survival[store.agents['stage']]
    store.agents['alive'] = rng.uniform(len(store)) < p
    return store.compact()


def transition_step(store: AgentStore, config: ScenarioConfig, rng: RandomVariateSource) -> int:
    """Age survivors and advance them along the stage graph. Returns movers."""
    if len(store) == 0:
        return 0
    demo = config.demography
    stage = store.agents['stage']
    store.agents['age'] += 1
    successor = np.asarray(demo.successor, dtype=np.int16)[stage]
    p_advance = np.asarray(demo.advance_probability, dtype=np.float64)[stage]
    move = (rng.uniform(len(store)) < p_advance) & (successor != stage)
    store.agents['stage'] = np.where(move, successor, stage)
    return int(move.sum())


def reproduction_step(
    store: AgentStore,
    config: ScenarioConfig,
    minter: AlleleMinter,
    rng: RandomVariateSource,
) -> int:
    """Pair breeders, add their offspring to the store. Returns births."""
    if len(store) == 0:
        return 0
    fecundity = draw_fecundity(config.demography, rng)
    babies, baby_geno = produce_offspring(
        store.agents, store.genotypes, fecundity, config, minter, rng)
    check_abundance(len(store) + len(babies), config.individual.max_agents,
                    quantity="agent count")
    store.add(babies, baby_geno)
    return len(babies)


def _cull_indices(
    store: AgentStore,
    n_remove: int,
    config: ScenarioConfig,
    rng: RandomVariateSource,
) -> np.ndarray:
    n = len(store)
    ind = config.individual
    if ind.culling_policy != "stage_weighted":
        return rng.choice(n, size=n_remove, replace=False)

    weights = np.asarray(ind.culling_weights, dtype=np.float64)[store.agents['stage']]
    exposed = np.flatnonzero(weights > 0)
    if len(exposed) >= n_remove:
        picks = rng.choice(len(exposed), size=n_remove, replace=False,
                           weights=weights[exposed])
        return exposed[picks]
    # zero-weight stages are culled only once every weighted agent is gone
    sheltered = np.flatnonzero(weights <= 0)
    extra = rng.choice(len(sheltered), size=n_remove - len(exposed), replace=False)
    return np.concatenate([exposed, sheltered[extra]])


def regulation_step(
    store: AgentStore,
    config: ScenarioConfig,
    rng: RandomVariateSource,
) -> Dict[str, object]:
    """Density dependence and catastrophes as one culling pass.

    target = regulated_total(density, N, catastrophe severity), applied to
    the whole population, newborns included. The population-level engine
    culls to the same target at the same point in its step.
    """
    n = len(store)
    severity, struck = draw_catastrophes(config.catastrophes, rng)
    target = regulated_total(config.density, n, severity)
    n_remove = n - target
    if n_remove > 0:
        store.agents['alive'][_cull_indices(store, n_remove, config, rng)] = False
        store.compact()
    return {'n_culled': n_remove, 'catastrophes': struck}


def individual_step(
    store: AgentStore,
    config: ScenarioConfig,
    minter: AlleleMinter,
    rng: RandomVariateSource,
) -> Dict[str, object]:
    """Advance the agent collection one time step.

    Returns:
        Diagnostics dict (deaths, transitions, births, culled, catastrophes).
    """
    diag: Dict[str, object] = {}
    diag['n_deaths'] = survival_step(store, config, rng)
    diag['n_transitions'] = transition_step(store, config, rng)
    diag['n_births'] = reproduction_step(store, config, minter, rng)
    diag.update(regulation_step(store, config, rng))
    return diag


# ═══════════════════════════════════════════════════════════════════════
# REPLICATE
# ═══════════════════════════════════════════════════════════════════════

def _record(
    traj: ReplicateTrajectory,
    t: int,
    store: AgentStore,
    config: ScenarioConfig,
) -> bool:
    counts = store.stage_counts(config.n_stages)
    extinct = is_extinct(counts.sum(), config.simulation.quasi_extinction_threshold)
    traj.record_counts(t, counts, extinct)
    if not extinct:
        gs = summarize(store.genotypes, config.genetics.n_founder_alleles)
        traj.heterozygosity[t] = gs.heterozygosity
        traj.expected_heterozygosity[t] = gs.expected_heterozygosity
        traj.inbreeding[t] = gs.inbreeding
        traj.allelic_richness[t] = gs.allelic_richness
        traj.founder_alleles[t] = gs.founder_alleles
    return extinct


def run_individual_replicate(
    config: ScenarioConfig,
    replicate: int,
    rng: RandomVariateSource,
    store: Optional[AgentStore] = None,
) -> ReplicateTrajectory:
    """Run one individual-based replicate over the full horizon.

    The trajectory always has horizon + 1 entries; after extinction the
    counts repeat their terminal value and genetic series stay NaN.
    """
    sim = config.simulation
    if store is None:
        store = AgentStore.founders(config, rng)
    minter = AlleleMinter(config.genetics.n_founder_alleles)
    traj = ReplicateTrajectory.allocate(replicate, "individual", sim.horizon, config.n_stages)

    extinct = _record(traj, 0, store, config)
    if not extinct:
        traj.founder_alleles_initial = int(traj.founder_alleles[0])
    else:
        traj.pad_from(0)
        return traj

    for t in range(1, sim.horizon + 1):
        diag = individual_step(store, config, minter, rng)
        if diag['catastrophes']:
            logger.debug("replicate %d t=%d catastrophes: %s",
                         replicate, t, ", ".join(diag['catastrophes']))
        extinct = _record(traj, t, store, config)
        if extinct:
            logger.debug("replicate %d quasi-extinct at t=%d", replicate, t)
            traj.pad_from(t)
            break
    return traj
