"""Tests for ecolysis.orchestrator — executors, cancellation, failure isolation.

Verifies that:
  1. Results are identical across serial, thread and process executors
  2. The progress callback sees every completed replicate
  3. Cancellation finishes in-flight replicates and skips the rest
  4. A failing replicate is recorded and does not abort the batch
"""

import logging

import numpy as np
import pytest

from ecolysis import orchestrator
from ecolysis.config import scenario_from_dict, with_overrides
from ecolysis.errors import NumericOverflow, ReplicateFailure
from ecolysis.orchestrator import (
    BatchResult,
    CancellationToken,
    run_pva,
    run_replicate,
    run_replicates,
)
from ecolysis.population import run_population_replicate


# ─── Helpers ──────────────────────────────────────────────────────────

@pytest.fixture
def population_config():
    return scenario_from_dict({
        'simulation': {'horizon': 15, 'n_replicates': 8, 'seed': 21},
        'catastrophes': [{'name': 'storm', 'probability': 0.2,
                          'severity_mean': 0.7, 'severity_sd': 0.1}],
    })


@pytest.fixture
def individual_config():
    return scenario_from_dict({
        'simulation': {'mode': 'individual', 'horizon': 6, 'n_replicates': 4, 'seed': 5},
        'genetics': {'n_loci': 4, 'n_founder_alleles': 6},
    })


def _parallel(config, executor, workers=3):
    return with_overrides(config, {'simulation': {'executor': executor,
                                                  'parallel_workers': workers}})


def _flaky(config, replicate, rng):
    if replicate == 2:
        raise NumericOverflow("abundance", 10, 5)
    if replicate == 4:
        raise RuntimeError("boom")
    return run_population_replicate(config, replicate, rng)


# ═══════════════════════════════════════════════════════════════════════
# DETERMINISM ACROSS EXECUTORS
# ═══════════════════════════════════════════════════════════════════════

class TestDeterminism:
    def test_run_replicate_reproducible(self, population_config):
        a = run_replicate(population_config, 3)
        b = run_replicate(population_config, 3)
        np.testing.assert_array_equal(a.stages, b.stages)

    def test_replicates_differ(self, population_config):
        a = run_replicate(population_config, 0)
        b = run_replicate(population_config, 1)
        assert not np.array_equal(a.total, b.total)

    def test_trajectories_ordered(self, population_config):
        batch = run_replicates(_parallel(population_config, "thread"))
        assert [t.replicate for t in batch.trajectories] == list(range(8))

    @pytest.mark.parametrize("executor", ["thread", "process"])
    def test_parallel_matches_serial(self, population_config, executor):
        serial = run_pva(population_config).to_dict()
        parallel = run_pva(_parallel(population_config, executor))
        parallel = parallel.to_dict()
        # the executor is part of the echoed scenario; everything else matches
        for key in ('extinction_probability', 'abundance', 'n_extant',
                    'stochastic_growth_rate', 'mean_time_to_extinction'):
            assert serial[key] == parallel[key]

    def test_individual_thread_matches_serial(self, individual_config):
        serial = run_replicates(individual_config)
        threaded = run_replicates(_parallel(individual_config, "thread", workers=2))
        for a, b in zip(serial.trajectories, threaded.trajectories):
            np.testing.assert_array_equal(a.total, b.total)
            np.testing.assert_array_equal(a.heterozygosity, b.heterozygosity)

    def test_replicate_independent_of_batch_size(self, population_config):
        small = run_replicates(with_overrides(population_config,
                                              {'simulation': {'n_replicates': 3}}))
        large = run_replicates(population_config)
        np.testing.assert_array_equal(small.trajectories[2].stages,
                                      large.trajectories[2].stages)


# ═══════════════════════════════════════════════════════════════════════
# PROGRESS
# ═══════════════════════════════════════════════════════════════════════

class TestProgress:
    def test_serial_progress(self, population_config):
        calls = []
        run_replicates(population_config, progress=lambda done, total: calls.append((done, total)))
        assert calls == [(i, 8) for i in range(1, 9)]

    def test_thread_progress(self, population_config):
        calls = []
        run_replicates(_parallel(population_config, "thread"),
                       progress=lambda done, total: calls.append((done, total)))
        assert [c[0] for c in calls] == list(range(1, 9))
        assert all(total == 8 for _, total in calls)

    def test_failures_count_as_completed(self, population_config, monkeypatch):
        monkeypatch.setitem(orchestrator.ENGINES, "population", _flaky)
        calls = []
        run_replicates(population_config, progress=lambda done, total: calls.append(done))
        assert calls[-1] == 8


# ═══════════════════════════════════════════════════════════════════════
# CANCELLATION
# ═══════════════════════════════════════════════════════════════════════

class TestCancellation:
    def test_token(self):
        token = CancellationToken()
        assert not token.cancelled
        token.cancel()
        assert token.cancelled

    def test_serial_cancel_mid_run(self, population_config, caplog):
        token = CancellationToken()

        def progress(done, total):
            if done == 3:
                token.cancel()

        with caplog.at_level(logging.WARNING, logger="ecolysis"):
            batch = run_replicates(population_config, progress=progress, cancel=token)
        assert batch.cancelled
        assert len(batch.trajectories) == 3
        assert batch.n_skipped == 5
        assert batch.failures == []
        assert "cancelled" in caplog.text

    def test_cancelled_before_start(self, population_config):
        token = CancellationToken()
        token.cancel()
        for config in (population_config, _parallel(population_config, "thread")):
            batch = run_replicates(config, cancel=token)
            assert batch.cancelled
            assert batch.trajectories == []
            assert batch.n_skipped == 8

    def test_thread_cancel_mid_run(self, population_config):
        token = CancellationToken()

        def progress(done, total):
            token.cancel()

        batch = run_replicates(_parallel(population_config, "thread", workers=2),
                               progress=progress, cancel=token)
        assert batch.cancelled
        assert batch.n_completed >= 1
        assert batch.n_completed + batch.n_skipped == 8

    def test_cancelled_record(self, population_config):
        token = CancellationToken()

        def progress(done, total):
            if done == 2:
                token.cancel()

        record = run_pva(population_config, progress=progress, cancel=token)
        assert record.cancelled
        assert record.n_successful == 2
        assert record.n_skipped == 6
        assert record.n_failed == 0


# ═══════════════════════════════════════════════════════════════════════
# FAILURE ISOLATION
# ═══════════════════════════════════════════════════════════════════════

class TestFailures:
    @pytest.mark.parametrize("executor", ["serial", "thread"])
    def test_failures_isolated(self, population_config, monkeypatch, executor):
        monkeypatch.setitem(orchestrator.ENGINES, "population", _flaky)
        batch = run_replicates(_parallel(population_config, executor))
        assert [t.replicate for t in batch.trajectories] == [0, 1, 3, 5, 6, 7]
        assert [(f.replicate, f.kind) for f in batch.failures] == [
            (2, "NumericOverflow"), (4, "RuntimeError")]
        assert batch.n_skipped == 0
        assert not batch.cancelled

    def test_failures_logged(self, population_config, monkeypatch, caplog):
        monkeypatch.setitem(orchestrator.ENGINES, "population", _flaky)
        with caplog.at_level(logging.WARNING, logger="ecolysis"):
            run_replicates(population_config)
        assert "replicate 2 failed (NumericOverflow)" in caplog.text
        assert "replicate 4 failed (RuntimeError): boom" in caplog.text

    def test_every_failure_keeps_traceback(self, population_config, monkeypatch, caplog):
        monkeypatch.setitem(orchestrator.ENGINES, "population", _flaky)
        with caplog.at_level(logging.DEBUG, logger="ecolysis.orchestrator"):
            run_replicates(population_config)
        raised = {r.args[0]: r.exc_info[0] for r in caplog.records
                  if r.levelno == logging.DEBUG and r.msg == "replicate %d raised"}
        assert raised == {2: NumericOverflow, 4: RuntimeError}

    def test_record_counts_failures(self, population_config, monkeypatch):
        monkeypatch.setitem(orchestrator.ENGINES, "population", _flaky)
        record = run_pva(population_config)
        assert record.n_successful == 6
        assert record.n_failed == 2
        assert record.to_dict()['provenance']['failures'][1]['message'] == "boom"

    def test_raise_on_failure(self, population_config, monkeypatch):
        monkeypatch.setitem(orchestrator.ENGINES, "population", _flaky)
        batch = run_replicates(population_config)
        with pytest.raises(ReplicateFailure) as exc:
            batch.raise_on_failure()
        assert exc.value.replicate == 2
        assert exc.value.kind == "NumericOverflow"

    def test_no_failures_no_raise(self, population_config):
        run_replicates(population_config).raise_on_failure()

    def test_real_overflow_fails_every_replicate(self, population_config):
        config = with_overrides(population_config, {'simulation': {'max_abundance': 1}})
        record = run_pva(config)
        assert record.n_successful == 0
        assert record.n_failed == 8
        assert all(f.kind == "NumericOverflow" for f in record.failures)
        assert np.all(np.isnan(record.extinction_probability))


# ═══════════════════════════════════════════════════════════════════════
# RUN_PVA
# ═══════════════════════════════════════════════════════════════════════

class TestRunPva:
    def test_logs_start_and_finish(self, population_config, caplog):
        with caplog.at_level(logging.INFO, logger="ecolysis"):
            run_pva(population_config)
        assert "PVA start" in caplog.text
        assert "PVA finished" in caplog.text

    def test_record_shape(self, individual_config):
        record = run_pva(individual_config)
        assert record.mode == "individual"
        assert record.extinction_probability.shape == (7,)
        assert record.mean_heterozygosity.shape == (7,)
        assert record.n_replicates == 4

    def test_batch_result_defaults(self, population_config):
        batch = BatchResult(config=population_config)
        assert batch.n_requested == 8
        assert batch.n_completed == 0
