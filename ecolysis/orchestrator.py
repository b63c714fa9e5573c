"""Replicate orchestrator: runs N independent replicates and collects them.

Each replicate i draws from its own RandomVariateSource seeded from
(master seed, i), so a replicate's trajectory does not depend on the
executor, the worker count or the order in which replicates finish.

Executors (``simulation.executor``):
  - 'serial':  replicates run one after another in the calling thread
  - 'thread':  concurrent.futures.ThreadPoolExecutor
  - 'process': concurrent.futures.ProcessPoolExecutor (the scenario and the
               replicate index are pickled to the worker)

Results are written into one slot per replicate index by the completion
loop in the calling thread, which is also where the progress callback
fires. Failed replicates become FailureRecords and never abort the batch.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from ecolysis.config import ScenarioConfig
from ecolysis.errors import ReplicateFailure
from ecolysis.individuals import run_individual_replicate
from ecolysis.population import run_population_replicate
from ecolysis.rng import RandomVariateSource, replicate_seed
from ecolysis.stats import ResultRecord, aggregate
from ecolysis.types import FailureRecord, ReplicateTrajectory
from ecolysis.utils import timer

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]

# (replicate, trajectory, failure); both None means the replicate was skipped
Outcome = Tuple[int, Optional[ReplicateTrajectory], Optional[FailureRecord]]

ENGINES: Dict[str, Callable[..., ReplicateTrajectory]] = {
    "population": run_population_replicate,
    "individual": run_individual_replicate,
}


# ═══════════════════════════════════════════════════════════════════════
# CANCELLATION & BATCH RESULT
# ═══════════════════════════════════════════════════════════════════════

class CancellationToken:
    """Cooperative cancellation flag.

    Checked before each replicate starts. In-flight replicates always run
    to completion; replicates not yet started are skipped.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class BatchResult:
    """Raw output of a replicate batch, before aggregation.

    Attributes:
        config: Scenario the batch ran under.
        trajectories: Successful replicates, ordered by replicate index.
        failures: Failed replicates, ordered by replicate index.
        n_skipped: Replicates never started because of cancellation.
        cancelled: Whether cancellation was requested during the batch.
    """
    config: ScenarioConfig
    trajectories: List[ReplicateTrajectory] = field(default_factory=list)
    failures: List[FailureRecord] = field(default_factory=list)
    n_skipped: int = 0
    cancelled: bool = False

    @property
    def n_requested(self) -> int:
        return self.config.simulation.n_replicates

    @property
    def n_completed(self) -> int:
        return len(self.trajectories) + len(self.failures)

    def raise_on_failure(self) -> None:
        """Raise ReplicateFailure for the first failed replicate, if any."""
        if self.failures:
            first = self.failures[0]
            raise ReplicateFailure(first.replicate, first.message, kind=first.kind)


# ═══════════════════════════════════════════════════════════════════════
# SINGLE REPLICATE
# ═══════════════════════════════════════════════════════════════════════

def run_replicate(config: ScenarioConfig, replicate: int) -> ReplicateTrajectory:
    """Run replicate ``replicate`` of the scenario with its own variate stream."""
    rng = RandomVariateSource(replicate_seed(config.simulation.seed, replicate))
    engine = ENGINES[config.simulation.mode]
    return engine(config, replicate, rng)


def _guarded_replicate(
    config: ScenarioConfig,
    replicate: int,
    cancel: Optional[CancellationToken] = None,
) -> Outcome:
    """Run one replicate, turning any exception into a FailureRecord."""
    if cancel is not None and cancel.cancelled:
        return replicate, None, None
    try:
        return replicate, run_replicate(config, replicate), None
    except Exception as exc:
        logger.debug("replicate %d raised", replicate, exc_info=True)
        return replicate, None, FailureRecord(replicate, type(exc).__name__, str(exc))


# ═══════════════════════════════════════════════════════════════════════
# BATCH
# ═══════════════════════════════════════════════════════════════════════

def run_replicates(
    config: ScenarioConfig,
    progress: Optional[ProgressCallback] = None,
    cancel: Optional[CancellationToken] = None,
) -> BatchResult:
    """Run every replicate of a validated scenario.

    Args:
        config: Validated scenario.
        progress: Called as ``progress(completed, total)`` after each
            replicate finishes (successfully or not), from the calling thread.
        cancel: Optional token; once set, replicates not yet started are
            skipped.

    Returns:
        BatchResult with trajectories and failures ordered by replicate.
    """
    sim = config.simulation
    n = sim.n_replicates
    slots: List[Optional[ReplicateTrajectory]] = [None] * n
    failures: List[FailureRecord] = []
    completed = 0

    def collect(outcome: Outcome) -> None:
        nonlocal completed
        i, traj, failure = outcome
        if traj is None and failure is None:
            return
        if failure is not None:
            logger.warning("replicate %d failed (%s): %s", i, failure.kind, failure.message)
            failures.append(failure)
        else:
            slots[i] = traj
        completed += 1
        if progress is not None:
            progress(completed, n)

    if sim.executor == "serial" or sim.parallel_workers <= 1:
        for i in range(n):
            if cancel is not None and cancel.cancelled:
                break
            collect(_guarded_replicate(config, i))
    else:
        _run_pool(config, collect, cancel)

    trajectories = [t for t in slots if t is not None]
    failures.sort(key=lambda f: f.replicate)
    n_skipped = n - len(trajectories) - len(failures)
    cancelled = cancel is not None and cancel.cancelled
    if cancelled:
        logger.warning("run cancelled: %d of %d replicates skipped", n_skipped, n)
    return BatchResult(
        config=config,
        trajectories=trajectories,
        failures=failures,
        n_skipped=n_skipped,
        cancelled=cancelled,
    )


def _run_pool(
    config: ScenarioConfig,
    collect: Callable[[Outcome], None],
    cancel: Optional[CancellationToken],
) -> None:
    sim = config.simulation
    if sim.executor == "thread":
        pool_cls = ThreadPoolExecutor
        worker_cancel = cancel
    else:
        # threading.Event does not cross process boundaries; pending
        # process tasks are cancelled from here instead
        pool_cls = ProcessPoolExecutor
        worker_cancel = None

    if cancel is not None and cancel.cancelled:
        return

    with pool_cls(max_workers=sim.parallel_workers) as pool:
        futures = {
            pool.submit(_guarded_replicate, config, i, worker_cancel): i
            for i in range(sim.n_replicates)
        }
        for future in as_completed(futures):
            if future.cancelled():
                continue
            i = futures[future]
            try:
                outcome = future.result()
            except Exception as exc:
                # the worker itself died (e.g. BrokenProcessPool)
                outcome = (i, None, FailureRecord(i, type(exc).__name__, str(exc)))
            collect(outcome)
            if cancel is not None and cancel.cancelled:
                for pending in futures:
                    pending.cancel()


# ═══════════════════════════════════════════════════════════════════════
# RUN + AGGREGATE
# ═══════════════════════════════════════════════════════════════════════

def run_pva(
    config: ScenarioConfig,
    progress: Optional[ProgressCallback] = None,
    cancel: Optional[CancellationToken] = None,
) -> ResultRecord:
    """Run all replicates of a scenario and aggregate them into a ResultRecord."""
    sim = config.simulation
    logger.info(
        "PVA start: mode=%s replicates=%d horizon=%d executor=%s workers=%d seed=%d",
        sim.mode, sim.n_replicates, sim.horizon, sim.executor,
        sim.parallel_workers, sim.seed,
    )
    with timer(logger, "run_pva"):
        batch = run_replicates(config, progress=progress, cancel=cancel)
        record = aggregate(
            batch.trajectories,
            config,
            failures=batch.failures,
            n_skipped=batch.n_skipped,
            cancelled=batch.cancelled,
        )
    logger.info(
        "PVA finished: %d succeeded, %d failed, %d skipped; P(extinct by t=%d) = %.3f",
        record.n_successful, record.n_failed, record.n_skipped,
        sim.horizon, record.final_extinction_probability,
    )
    return record
