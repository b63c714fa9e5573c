"""Scenario configuration for Ecolysis.

Hierarchical YAML configuration with deep-merge support:
  base.yaml → scenario override → programmatic overrides

A loaded scenario is a tree of frozen dataclasses. It is validated once,
before any replicate runs; the simulators never re-validate.

Stage graph convention:
  - Newborns always enter stage 0.
  - Each stage i has one successor j with i <= j < K. A survivor in stage i
    advances to j with probability advance_probability[i], otherwise stays.
    j == i is a self-loop (e.g. the terminal adult stage).
"""

from __future__ import annotations

import copy
import dataclasses
import math
import numbers
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import yaml

from ecolysis.errors import InvalidParameter
from ecolysis.types import (
    CULLING_POLICIES,
    DENSITY_KINDS,
    EXECUTORS,
    MATING_POLICIES,
    SIMULATION_MODES,
    Sex,
)
from ecolysis.utils import text_sha256


# ═══════════════════════════════════════════════════════════════════════
# CONFIGURATION DATACLASSES
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class SimulationSection:
    """Run controls."""
    mode: str = "population"            # 'population' or 'individual'
    horizon: int = 50                   # time steps projected
    n_replicates: int = 100
    seed: int = 42                      # master seed; replicate streams derive from it
    quasi_extinction_threshold: float = 0.0   # extinct once total <= threshold
    parallel_workers: int = 1
    executor: str = "serial"            # 'serial', 'thread' or 'process'
    quantiles: Tuple[float, ...] = (0.05, 0.25, 0.5, 0.75, 0.95)
    max_abundance: int = 1_000_000_000  # NumericOverflow above this total


@dataclass(frozen=True)
class DemographySection:
    """Stage-structured life history.

    All per-stage tuples have length K = len(stage_names). Rates are per
    time step. Fecundity is expected offspring per surviving breeder.
    """
    stage_names: Tuple[str, ...] = ("juvenile", "subadult", "adult")
    survival: Tuple[float, ...] = (0.50, 0.70, 0.90)
    survival_sd: Tuple[float, ...] = (0.05, 0.05, 0.03)   # environmental
    survival_correlation: float = 0.0                     # across stages, [0, 1]
    fecundity: Tuple[float, ...] = (0.0, 0.0, 0.8)
    fecundity_sd: Tuple[float, ...] = (0.0, 0.0, 0.1)
    successor: Tuple[int, ...] = (1, 2, 2)
    advance_probability: Tuple[float, ...] = (1.0, 0.5, 1.0)
    initial_abundance: Tuple[int, ...] = (20, 20, 60)

    @property
    def n_stages(self) -> int:
        return len(self.stage_names)


@dataclass(frozen=True)
class DensitySection:
    """Density dependence: maps total abundance N to a multiplier in (0, 1].

    kind:
      'none'           m = 1
      'ceiling'        m = min(1, K / N)
      'beverton_holt'  m = 1 / (1 + strength * N / K)
      'ricker'         m = exp(-strength * N / K)
    """
    kind: str = "ceiling"
    carrying_capacity: float = 500.0
    strength: float = 1.0


@dataclass(frozen=True)
class CatastropheSpec:
    """A catastrophe striking with per-step probability.

    severity is the fraction of individuals surviving the event, drawn from
    a normal distribution truncated to [0, 1].
    """
    name: str = "catastrophe"
    probability: float = 0.0
    severity_mean: float = 0.5
    severity_sd: float = 0.0


@dataclass(frozen=True)
class GeneticsSection:
    """Neutral multi-allelic loci (individual mode only)."""
    n_loci: int = 10
    n_founder_alleles: int = 20         # distinct founder alleles per locus
    mutation_rate: float = 0.0          # per inherited allele per birth


@dataclass(frozen=True)
class RosterEntry:
    """One founder agent given explicitly instead of by stage abundance."""
    stage: int = 0
    sex: int = int(Sex.HERMAPHRODITE)
    age: int = 0
    genotype: Optional[Tuple[Tuple[int, int], ...]] = None   # (n_loci, 2)


@dataclass(frozen=True)
class IndividualSection:
    """Individual-based engine controls."""
    sexual: bool = True
    sex_ratio: float = 0.5              # probability a newborn is female
    mating_policy: str = "random"       # 'random' or 'heterozygosity'
    culling_policy: str = "uniform"     # 'uniform' or 'stage_weighted'
    culling_weights: Optional[Tuple[float, ...]] = None   # per stage
    max_agents: int = 1_000_000         # NumericOverflow above this
    initial_roster: Tuple[RosterEntry, ...] = ()


@dataclass(frozen=True)
class ScenarioConfig:
    """Complete scenario. Sections map 1:1 to YAML top-level keys."""
    simulation: SimulationSection = field(default_factory=SimulationSection)
    demography: DemographySection = field(default_factory=DemographySection)
    density: DensitySection = field(default_factory=DensitySection)
    genetics: GeneticsSection = field(default_factory=GeneticsSection)
    individual: IndividualSection = field(default_factory=IndividualSection)
    catastrophes: Tuple[CatastropheSpec, ...] = ()

    @property
    def n_stages(self) -> int:
        return self.demography.n_stages


# ═══════════════════════════════════════════════════════════════════════
# DICT ↔ DATACLASS
# ═══════════════════════════════════════════════════════════════════════

def deep_merge(base: Dict, override: Dict) -> Dict:
    """Recursively merge override into base. Modifies base in place.

    - Dict values are merged recursively
    - Non-dict values (including lists) are replaced
    - Keys in override but not base are added

    Returns:
        The merged base dictionary.
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


def _freeze(value: Any) -> Any:
    """Lists (possibly nested) become tuples so sections stay immutable."""
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, tuple):
        return [_thaw(v) for v in value]
    if isinstance(value, dict):
        return {k: _thaw(v) for k, v in value.items()}
    return value


def _dict_to_section(section_cls, data: Dict) -> Any:
    """Convert a dict to a dataclass, ignoring unknown keys."""
    valid_fields = {f.name for f in dataclasses.fields(section_cls)}
    filtered = {k: _freeze(v) for k, v in data.items() if k in valid_fields}
    return section_cls(**filtered)


_SECTION_MAP = {
    'simulation': SimulationSection,
    'demography': DemographySection,
    'density': DensitySection,
    'genetics': GeneticsSection,
}


def scenario_from_dict(data: Dict, validate: bool = True) -> ScenarioConfig:
    """Build a ScenarioConfig from a plain (e.g. YAML-loaded) mapping.

    Raises:
        InvalidParameter: If validation fails, or a section is not a mapping.
    """
    sections: Dict[str, Any] = {}
    for key, cls in _SECTION_MAP.items():
        raw = data.get(key)
        if raw is None:
            sections[key] = cls()
        elif isinstance(raw, dict):
            sections[key] = _dict_to_section(cls, raw)
        else:
            raise InvalidParameter(key, "must be a mapping", raw)

    ind = data.get('individual') or {}
    if not isinstance(ind, dict):
        raise InvalidParameter('individual', "must be a mapping", ind)
    ind = dict(ind)
    raw_roster = ind.pop('initial_roster', None) or []
    if not isinstance(raw_roster, (list, tuple)):
        raise InvalidParameter('individual.initial_roster', "must be a list", raw_roster)
    roster = []
    for i, entry in enumerate(raw_roster):
        if not isinstance(entry, dict):
            raise InvalidParameter(
                f'individual.initial_roster[{i}]', "must be a mapping", entry)
        roster.append(_dict_to_section(RosterEntry, entry))
    sections['individual'] = dataclasses.replace(
        _dict_to_section(IndividualSection, ind), initial_roster=tuple(roster),
    )

    raw_cats = data.get('catastrophes') or []
    if not isinstance(raw_cats, (list, tuple)):
        raise InvalidParameter('catastrophes', "must be a list", raw_cats)
    cats = []
    for i, entry in enumerate(raw_cats):
        if not isinstance(entry, dict):
            raise InvalidParameter(f'catastrophes[{i}]', "must be a mapping", entry)
        cats.append(_dict_to_section(CatastropheSpec, entry))
    sections['catastrophes'] = tuple(cats)

    config = ScenarioConfig(**sections)
    if validate:
        validate_config(config)
    return config


def scenario_to_dict(config: ScenarioConfig) -> Dict[str, Any]:
    """Plain nested dict/list representation (YAML-safe)."""
    return _thaw(dataclasses.asdict(config))


def scenario_hash(config: ScenarioConfig) -> str:
    """SHA-256 of the canonical YAML dump of a scenario."""
    text = yaml.safe_dump(scenario_to_dict(config), sort_keys=True)
    return text_sha256(text)


def with_overrides(config: ScenarioConfig, overrides: Dict) -> ScenarioConfig:
    """Return a new validated scenario with ``overrides`` deep-merged in."""
    data = scenario_to_dict(config)
    deep_merge(data, copy.deepcopy(overrides))
    return scenario_from_dict(data)


# ═══════════════════════════════════════════════════════════════════════
# VALIDATION
# ═══════════════════════════════════════════════════════════════════════

def _check_number(name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        raise InvalidParameter(name, "must be a number", value)


def _check_integer(name: str, value: Any, minimum: Optional[int] = None) -> None:
    if isinstance(value, bool) or not isinstance(value, numbers.Integral):
        raise InvalidParameter(name, "must be an integer", value)
    if minimum is not None and value < minimum:
        raise InvalidParameter(name, f"must be >= {minimum}", value)


def _check_probability(name: str, value: float) -> None:
    _check_number(name, value)
    if not (0.0 <= value <= 1.0):
        raise InvalidParameter(name, "must be a probability in [0, 1]", value)


def _check_non_negative(name: str, value: float) -> None:
    _check_number(name, value)
    if not value >= 0:
        raise InvalidParameter(name, "must be >= 0", value)


def _check_stage_vector(name: str, values: Sequence, k: int) -> None:
    if not isinstance(values, (list, tuple)):
        raise InvalidParameter(name, "must be a list with one entry per stage", values)
    if len(values) != k:
        raise InvalidParameter(
            name, f"must have one entry per stage ({k})", list(values))


def _unreachable_stages(successor: Sequence[int], advance: Sequence[float]) -> List[int]:
    reached = {0}
    frontier = [0]
    while frontier:
        i = frontier.pop()
        j = successor[i]
        if advance[i] > 0 and j not in reached:
            reached.add(j)
            frontier.append(j)
    return [i for i in range(len(successor)) if i not in reached]


def validate_config(config: ScenarioConfig) -> None:
    """Validate scenario constraints. Raises InvalidParameter on failure.

    Checks:
      - Known mode / executor / density kind / policy names
      - Run controls (horizon, replicates, threshold, quantiles)
      - Every per-stage vector has length K, probabilities in [0, 1],
        standard deviations and rates non-negative
      - Stage graph only moves forward or loops on itself
      - Catastrophe probabilities and severities in [0, 1]
      - Genetics and roster consistency in individual mode
    """
    sim = config.simulation
    if sim.mode not in SIMULATION_MODES:
        raise InvalidParameter(
            'simulation.mode', f"must be one of {SIMULATION_MODES}", sim.mode)
    if sim.executor not in EXECUTORS:
        raise InvalidParameter(
            'simulation.executor', f"must be one of {EXECUTORS}", sim.executor)
    _check_integer('simulation.horizon', sim.horizon, minimum=1)
    _check_integer('simulation.n_replicates', sim.n_replicates, minimum=1)
    _check_integer('simulation.seed', sim.seed, minimum=0)
    _check_non_negative('simulation.quasi_extinction_threshold',
                        sim.quasi_extinction_threshold)
    _check_integer('simulation.parallel_workers', sim.parallel_workers, minimum=1)
    _check_integer('simulation.max_abundance', sim.max_abundance, minimum=1)
    if not isinstance(sim.quantiles, (list, tuple)):
        raise InvalidParameter('simulation.quantiles', "must be a list", sim.quantiles)
    q = list(sim.quantiles)
    for i, x in enumerate(q):
        _check_number(f'simulation.quantiles[{i}]', x)
    if not q or any(not (0.0 < x < 1.0) for x in q):
        raise InvalidParameter(
            'simulation.quantiles', "must be non-empty, each in (0, 1)", q)
    if any(b <= a for a, b in zip(q, q[1:])):
        raise InvalidParameter(
            'simulation.quantiles', "must be strictly increasing", q)

    # Demography
    d = config.demography
    if not isinstance(d.stage_names, (list, tuple)):
        raise InvalidParameter(
            'demography.stage_names', "must be a list of stage names", d.stage_names)
    k = d.n_stages
    if k < 1:
        raise InvalidParameter('demography.stage_names', "need at least one stage")
    if len(set(d.stage_names)) != k:
        raise InvalidParameter(
            'demography.stage_names', "must be unique", list(d.stage_names))
    for name in ('survival', 'survival_sd', 'fecundity', 'fecundity_sd',
                 'successor', 'advance_probability', 'initial_abundance'):
        _check_stage_vector(f'demography.{name}', getattr(d, name), k)
    for i in range(k):
        _check_probability(f'demography.survival[{i}]', d.survival[i])
        _check_non_negative(f'demography.survival_sd[{i}]', d.survival_sd[i])
        _check_non_negative(f'demography.fecundity[{i}]', d.fecundity[i])
        _check_non_negative(f'demography.fecundity_sd[{i}]', d.fecundity_sd[i])
        _check_probability(f'demography.advance_probability[{i}]',
                           d.advance_probability[i])
        _check_non_negative(f'demography.initial_abundance[{i}]',
                            d.initial_abundance[i])
        n0 = d.initial_abundance[i]
        if not math.isfinite(n0) or int(n0) != n0:
            raise InvalidParameter(f'demography.initial_abundance[{i}]',
                                   "must be an integer", d.initial_abundance[i])
        j = d.successor[i]
        _check_number(f'demography.successor[{i}]', j)
        if int(j) != j or not (i <= j < k):
            raise InvalidParameter(
                f'demography.successor[{i}]',
                f"must be a stage index in [{i}, {k - 1}] "
                f"(stages only advance or loop on themselves)", j)
    _check_probability('demography.survival_correlation', d.survival_correlation)
    unreachable = _unreachable_stages(d.successor, d.advance_probability)
    if unreachable:
        warnings.warn(
            f"stages {unreachable} are not reachable from stage 0; "
            f"newborns will never enter them",
            UserWarning,
            stacklevel=2,
        )

    # Density
    dd = config.density
    if dd.kind not in DENSITY_KINDS:
        raise InvalidParameter(
            'density.kind', f"must be one of {DENSITY_KINDS}", dd.kind)
    _check_number('density.carrying_capacity', dd.carrying_capacity)
    if dd.kind != "none" and not dd.carrying_capacity > 0:
        raise InvalidParameter(
            'density.carrying_capacity', "must be > 0", dd.carrying_capacity)
    _check_non_negative('density.strength', dd.strength)

    # Catastrophes
    for i, cat in enumerate(config.catastrophes):
        _check_probability(f'catastrophes[{i}].probability', cat.probability)
        _check_probability(f'catastrophes[{i}].severity_mean', cat.severity_mean)
        _check_non_negative(f'catastrophes[{i}].severity_sd', cat.severity_sd)

    if sim.mode == "individual":
        _validate_individual(config)


def _validate_individual(config: ScenarioConfig) -> None:
    g = config.genetics
    ind = config.individual
    k = config.n_stages

    _check_integer('genetics.n_loci', g.n_loci, minimum=1)
    _check_integer('genetics.n_founder_alleles', g.n_founder_alleles, minimum=1)
    _check_probability('genetics.mutation_rate', g.mutation_rate)

    _check_probability('individual.sex_ratio', ind.sex_ratio)
    if ind.mating_policy not in MATING_POLICIES:
        raise InvalidParameter('individual.mating_policy',
                               f"must be one of {MATING_POLICIES}",
                               ind.mating_policy)
    if ind.culling_policy not in CULLING_POLICIES:
        raise InvalidParameter('individual.culling_policy',
                               f"must be one of {CULLING_POLICIES}",
                               ind.culling_policy)
    if ind.culling_policy == "stage_weighted":
        w = ind.culling_weights
        if w is None:
            raise InvalidParameter(
                'individual.culling_weights',
                "required when culling_policy='stage_weighted'")
        _check_stage_vector('individual.culling_weights', w, k)
        for i, x in enumerate(w):
            _check_non_negative(f'individual.culling_weights[{i}]', x)
        if sum(w) <= 0:
            raise InvalidParameter(
                'individual.culling_weights', "must not all be zero", list(w))
    _check_integer('individual.max_agents', ind.max_agents, minimum=1)

    valid_sexes = ((int(Sex.FEMALE), int(Sex.MALE)) if ind.sexual
                   else tuple(int(s) for s in Sex))
    for i, entry in enumerate(ind.initial_roster):
        prefix = f'individual.initial_roster[{i}]'
        _check_integer(f'{prefix}.stage', entry.stage)
        _check_integer(f'{prefix}.sex', entry.sex)
        if not (0 <= entry.stage < k):
            raise InvalidParameter(f'{prefix}.stage', f"must be in [0, {k - 1}]",
                                   entry.stage)
        if entry.sex not in valid_sexes:
            raise InvalidParameter(f'{prefix}.sex', f"must be one of {valid_sexes}",
                                   entry.sex)
        _check_non_negative(f'{prefix}.age', entry.age)
        if entry.genotype is None:
            continue
        if (not isinstance(entry.genotype, tuple) or len(entry.genotype) != g.n_loci
                or any(not isinstance(p, tuple) or len(p) != 2 for p in entry.genotype)):
            raise InvalidParameter(
                f'{prefix}.genotype',
                f"must be {g.n_loci} allele pairs", entry.genotype)
        for pair in entry.genotype:
            for allele in pair:
                _check_integer(f'{prefix}.genotype', allele)
                if not (0 <= allele < g.n_founder_alleles):
                    raise InvalidParameter(
                        f'{prefix}.genotype',
                        f"founder allele ids must be in [0, {g.n_founder_alleles - 1}]",
                        allele)


# ═══════════════════════════════════════════════════════════════════════
# LOADING
# ═══════════════════════════════════════════════════════════════════════

def _read_yaml(path: Path) -> Dict:
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise InvalidParameter(str(path), "top level must be a mapping")
    return data


def load_config(
    base_path: Union[str, Path],
    scenario_path: Optional[Union[str, Path]] = None,
    overrides: Optional[Dict] = None,
) -> ScenarioConfig:
    """Load and merge hierarchical YAML configuration.

    Merge order: base → scenario → overrides. Each layer overrides only the
    fields it specifies; lists are replaced wholesale.

    Args:
        base_path: Path to base configuration YAML.
        scenario_path: Optional scenario override YAML.
        overrides: Optional dict of overrides (e.g. from a parameter sweep).

    Returns:
        Validated ScenarioConfig.

    Raises:
        FileNotFoundError: If base_path or scenario_path doesn't exist.
        InvalidParameter: If validation fails.
    """
    base_path = Path(base_path)
    if not base_path.exists():
        raise FileNotFoundError(f"Config file not found: {base_path}")
    config_dict = _read_yaml(base_path)

    if scenario_path is not None:
        scenario_path = Path(scenario_path)
        if not scenario_path.exists():
            raise FileNotFoundError(f"Scenario file not found: {scenario_path}")
        deep_merge(config_dict, _read_yaml(scenario_path))

    if overrides is not None:
        deep_merge(config_dict, copy.deepcopy(overrides))

    return scenario_from_dict(config_dict)


def default_config() -> ScenarioConfig:
    """Return a ScenarioConfig with all default values."""
    config = ScenarioConfig()
    validate_config(config)
    return config
