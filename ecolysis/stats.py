"""Statistics aggregator: replicate trajectories → Result Record.

Conventions:
  - Extinction probability at t = fraction of successful replicates flagged
    extinct at t. Extinction is absorbing, so the curve never decreases.
  - Abundance summaries are taken over ALL successful replicates, extinct
    ones counted as 0 from their extinction step on, so quantile bands
    carry the extinction risk instead of hiding it.
  - Genetic curves average only replicates that are extant at t; NaN where
    none are.
  - Failed replicates are excluded and counted in the record's provenance.

Aggregation sorts trajectories by replicate index first, so the same set of
trajectories always yields the same record regardless of completion order.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from ecolysis.config import ScenarioConfig, scenario_hash, scenario_to_dict
from ecolysis.matrix import growth_rate, projection_matrix
from ecolysis.types import FailureRecord, ReplicateTrajectory


def _frozen(arr: Optional[np.ndarray]) -> Optional[np.ndarray]:
    if arr is None:
        return None
    arr = np.array(arr, copy=True)
    arr.setflags(write=False)
    return arr


def _column_nanmean(values: np.ndarray) -> np.ndarray:
    """Mean over axis 0 ignoring NaN; NaN where a column has no values."""
    valid = ~np.isnan(values)
    counts = valid.sum(axis=0)
    sums = np.where(valid, values, 0.0).sum(axis=0)
    out = np.full(values.shape[1:], np.nan)
    np.divide(sums, counts, out=out, where=counts > 0)
    return out


def _plain(value: Any) -> Any:
    """numpy → Python scalars/lists, NaN → None."""
    if isinstance(value, np.ndarray):
        return [_plain(v) for v in value.tolist()] if value.ndim else _plain(value.item())
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, (np.floating, float)):
        value = float(value)
        return None if math.isnan(value) else value
    if isinstance(value, np.integer):
        return int(value)
    if isinstance(value, np.bool_):
        return bool(value)
    return value


# ═══════════════════════════════════════════════════════════════════════
# RESULT RECORD
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ResultRecord:
    """Aggregate PVA output for one scenario. Arrays are read-only.

    Per-step arrays have length horizon + 1. ``abundance_quantiles`` has
    shape (len(quantile_levels), horizon + 1).
    """
    mode: str
    horizon: int
    seed: int
    scenario: ScenarioConfig
    scenario_hash: str

    # Provenance
    n_replicates: int                    # requested
    n_successful: int
    n_failed: int
    n_skipped: int                       # never started (cancellation)
    cancelled: bool
    failures: Tuple[FailureRecord, ...]

    # Demography
    extinction_probability: np.ndarray
    n_extant: np.ndarray
    quantile_levels: Tuple[float, ...]
    abundance_quantiles: np.ndarray
    mean_abundance: np.ndarray
    sd_abundance: np.ndarray
    mean_extant_abundance: np.ndarray
    mean_stage_abundance: np.ndarray     # (T+1, K)
    mean_time_to_extinction: float
    median_time_to_extinction: float
    stochastic_growth_rate: float
    deterministic_lambda: float

    # Genetics (individual mode only)
    mean_heterozygosity: Optional[np.ndarray] = None
    mean_expected_heterozygosity: Optional[np.ndarray] = None
    mean_inbreeding: Optional[np.ndarray] = None
    mean_allelic_richness: Optional[np.ndarray] = None
    mean_founder_retention: Optional[np.ndarray] = None

    @property
    def final_extinction_probability(self) -> float:
        return float(self.extinction_probability[-1])

    def quantile(self, level: float) -> np.ndarray:
        """Abundance band for one of the configured quantile levels."""
        for i, q in enumerate(self.quantile_levels):
            if math.isclose(q, level):
                return self.abundance_quantiles[i]
        raise KeyError(f"quantile {level} not computed; have {self.quantile_levels}")

    def to_dict(self) -> Dict[str, Any]:
        """Plain nested dict/list/float structure; NaN becomes None."""
        out: Dict[str, Any] = {
            'mode': self.mode,
            'horizon': self.horizon,
            'seed': self.seed,
            'scenario': scenario_to_dict(self.scenario),
            'scenario_hash': self.scenario_hash,
            'provenance': {
                'n_replicates': self.n_replicates,
                'n_successful': self.n_successful,
                'n_failed': self.n_failed,
                'n_skipped': self.n_skipped,
                'cancelled': self.cancelled,
                'failures': [
                    {'replicate': f.replicate, 'kind': f.kind, 'message': f.message}
                    for f in self.failures
                ],
            },
            'extinction_probability': _plain(self.extinction_probability),
            'n_extant': _plain(self.n_extant),
            'abundance': {
                'quantile_levels': _plain(self.quantile_levels),
                'quantiles': _plain(self.abundance_quantiles),
                'mean': _plain(self.mean_abundance),
                'sd': _plain(self.sd_abundance),
                'mean_extant': _plain(self.mean_extant_abundance),
                'mean_by_stage': _plain(self.mean_stage_abundance),
            },
            'mean_time_to_extinction': _plain(self.mean_time_to_extinction),
            'median_time_to_extinction': _plain(self.median_time_to_extinction),
            'stochastic_growth_rate': _plain(self.stochastic_growth_rate),
            'deterministic_lambda': _plain(self.deterministic_lambda),
        }
        if self.mean_heterozygosity is not None:
            out['genetics'] = {
                'heterozygosity': _plain(self.mean_heterozygosity),
                'expected_heterozygosity': _plain(self.mean_expected_heterozygosity),
                'inbreeding': _plain(self.mean_inbreeding),
                'allelic_richness': _plain(self.mean_allelic_richness),
                'founder_retention': _plain(self.mean_founder_retention),
            }
        return out


# ═══════════════════════════════════════════════════════════════════════
# AGGREGATION
# ═══════════════════════════════════════════════════════════════════════

def extinction_curve(trajectories: Sequence[ReplicateTrajectory]) -> np.ndarray:
    """Fraction of replicates extinct at each step."""
    extinct = np.array([t.extinct for t in trajectories], dtype=bool)
    return extinct.mean(axis=0)


def counted_abundance(trajectories: Sequence[ReplicateTrajectory]) -> np.ndarray:
    """(R, T+1) total abundance with extinct steps counted as 0."""
    totals = np.array([t.total for t in trajectories], dtype=np.float64)
    extinct = np.array([t.extinct for t in trajectories], dtype=bool)
    return np.where(extinct, 0.0, totals)


def abundance_quantiles(
    trajectories: Sequence[ReplicateTrajectory],
    levels: Sequence[float],
) -> np.ndarray:
    """(len(levels), T+1) order statistics of total abundance."""
    return np.quantile(counted_abundance(trajectories), list(levels), axis=0)


def time_to_extinction(trajectories: Iterable[ReplicateTrajectory]) -> Tuple[float, float]:
    """(mean, median) first-extinction step over replicates that went extinct."""
    steps = [t.extinction_step for t in trajectories if t.extinction_step is not None]
    if not steps:
        return float('nan'), float('nan')
    return float(np.mean(steps)), float(np.median(steps))


def stochastic_growth_rate(trajectories: Iterable[ReplicateTrajectory]) -> float:
    """Mean ln(N_{t+1} / N_t) over extant steps with both totals positive."""
    logs: List[np.ndarray] = []
    for traj in trajectories:
        n0 = traj.total[:-1].astype(np.float64)
        n1 = traj.total[1:].astype(np.float64)
        ok = (n0 > 0) & (n1 > 0) & ~traj.extinct[:-1]
        if np.any(ok):
            logs.append(np.log(n1[ok] / n0[ok]))
    if not logs:
        return float('nan')
    return float(np.mean(np.concatenate(logs)))


def _nan_series(n: int) -> np.ndarray:
    return np.full(n, np.nan)


def aggregate(
    trajectories: Sequence[ReplicateTrajectory],
    config: ScenarioConfig,
    failures: Sequence[FailureRecord] = (),
    n_skipped: int = 0,
    cancelled: bool = False,
) -> ResultRecord:
    """Reduce replicate trajectories into a ResultRecord.

    Args:
        trajectories: Successful replicates (any order).
        config: Scenario the replicates were run under (echoed in the record).
        failures: Replicates excluded because they failed.
        n_skipped: Replicates never started (cancelled runs).
        cancelled: Whether the batch was cancelled.
    """
    sim = config.simulation
    trajs = sorted(trajectories, key=lambda t: t.replicate)
    n_steps = sim.horizon + 1
    k = config.n_stages
    levels = tuple(float(q) for q in sim.quantiles)
    failures = tuple(sorted(failures, key=lambda f: f.replicate))

    if trajs:
        totals = np.array([t.total for t in trajs], dtype=np.float64)
        extinct = np.array([t.extinct for t in trajs], dtype=bool)
        counted = np.where(extinct, 0.0, totals)
        ext_prob = extinction_curve(trajs)
        n_extant = (~extinct).sum(axis=0)
        quants = abundance_quantiles(trajs, levels)
        mean_ab = counted.mean(axis=0)
        sd_ab = counted.std(axis=0)
        mean_extant = _column_nanmean(np.where(extinct, np.nan, totals))
        stages = np.array([t.stages for t in trajs], dtype=np.float64)
        mean_stage = np.where(extinct[:, :, None], 0.0, stages).mean(axis=0)
    else:
        ext_prob = _nan_series(n_steps)
        n_extant = np.zeros(n_steps, dtype=np.int64)
        quants = np.full((len(levels), n_steps), np.nan)
        mean_ab = _nan_series(n_steps)
        sd_ab = _nan_series(n_steps)
        mean_extant = _nan_series(n_steps)
        mean_stage = np.full((n_steps, k), np.nan)

    mtte, medtte = time_to_extinction(trajs)

    genetics: Dict[str, Optional[np.ndarray]] = {}
    if sim.mode == "individual":
        def stacked(attr: str) -> np.ndarray:
            if not trajs:
                return _nan_series(n_steps)
            return _column_nanmean(np.array([getattr(t, attr) for t in trajs]))

        genetics = {
            'mean_heterozygosity': stacked('heterozygosity'),
            'mean_expected_heterozygosity': stacked('expected_heterozygosity'),
            'mean_inbreeding': stacked('inbreeding'),
            'mean_allelic_richness': stacked('allelic_richness'),
            'mean_founder_retention': (
                _column_nanmean(np.array([t.fraction_founder_retained() for t in trajs]))
                if trajs else _nan_series(n_steps)
            ),
        }

    return ResultRecord(
        mode=sim.mode,
        horizon=sim.horizon,
        seed=sim.seed,
        scenario=config,
        scenario_hash=scenario_hash(config),
        n_replicates=sim.n_replicates,
        n_successful=len(trajs),
        n_failed=len(failures),
        n_skipped=int(n_skipped),
        cancelled=bool(cancelled),
        failures=failures,
        extinction_probability=_frozen(ext_prob),
        n_extant=_frozen(n_extant),
        quantile_levels=levels,
        abundance_quantiles=_frozen(quants),
        mean_abundance=_frozen(mean_ab),
        sd_abundance=_frozen(sd_ab),
        mean_extant_abundance=_frozen(mean_extant),
        mean_stage_abundance=_frozen(mean_stage),
        mean_time_to_extinction=mtte,
        median_time_to_extinction=medtte,
        stochastic_growth_rate=stochastic_growth_rate(trajs),
        deterministic_lambda=growth_rate(projection_matrix(config.demography)),
        **{key: _frozen(val) for key, val in genetics.items()},
    )
