"""
harness.py
~~~~~~~~~~

Benchmark jobs and the scheduler that runs them in parallel.

Jobs are enumerated spec-major, then dataset, then repetition, so job
identities are reproducible. Each job builds its own Network and random
generator and shares only immutable specs and datasets with its siblings.
Any failure is turned into a RunResult for that job alone; only an empty
enumeration aborts the whole run.
"""

import logging
import time
import zlib
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from nnbench.config import BenchmarkConfig
from nnbench.encoders import get_encoder
from nnbench.errors import Cancelled, EnumerationError, NNBenchError
from nnbench.metrics import get_metric
from nnbench.network import Network
from nnbench.optimizers import get_optimizer
from nnbench.results import JobId, RunResult, RunStatus
from nnbench.specs import Dataset, NetworkSpec
from nnbench.statistics import AggregateStatistics, StatisticsAggregator
from nnbench.training import CancellationToken, SnapshotSink, TrainingLoop

logger = logging.getLogger(__name__)

ResultSink = Callable[[RunResult], None]


def _stable_hash(text: str) -> int:
    return zlib.crc32(text.encode('utf-8'))


class BenchmarkJob:
    """
    One training-and-evaluation run of a spec against a dataset.

    The job references the shared spec and dataset and owns its Network
    only while ``run`` executes.
    """

    def __init__(self, spec: NetworkSpec, dataset: Dataset, repetition: int):
        self.spec = spec
        self.dataset = dataset
        self.repetition = repetition
        self.job_id = JobId(spec.spec_id, dataset.dataset_id, repetition)
        self.network: Optional[Network] = None

    def __repr__(self) -> str:
        return f"BenchmarkJob({self.job_id})"

    def seed_sequence(self, config: BenchmarkConfig) -> np.random.SeedSequence:
        """
        Seed material for this job's generator.

        A spec ``seed`` pins initialization for every repetition of the
        pair. Otherwise ``seed_policy`` decides: 'job' derives a distinct
        seed per repetition from ``base_seed`` and the job identity,
        'shared' drops the repetition so all repetitions start alike, and
        'random' draws fresh OS entropy.
        """
        pair = [_stable_hash(self.spec.spec_id), _stable_hash(self.dataset.dataset_id)]
        if self.spec.seed is not None:
            return np.random.SeedSequence([self.spec.seed] + pair)
        if config.seed_policy == 'random':
            return np.random.SeedSequence()
        if config.seed_policy == 'shared':
            return np.random.SeedSequence([config.base_seed] + pair)
        return np.random.SeedSequence([config.base_seed] + pair + [self.repetition])

    def build(self, config: BenchmarkConfig, rng: np.random.Generator):
        """
        Validate inputs and construct the network and metric.

        Raises:
            InvalidSpec, InvalidDataset, ShapeMismatch: On bad input
        """
        spec = self.spec
        dataset = self.dataset
        spec.validate()
        dataset.validate()

        encoder = get_encoder(spec.encoder.name, spec.encoder.args, dataset.train_outputs)
        metric = get_metric(spec.metric.name, spec.metric.args)
        optimizer = get_optimizer(config.optimizer or spec.optimizer.name,
                                  spec.optimizer.beta1, spec.optimizer.beta2)
        network = Network.from_spec(
            spec, dataset.input_shape, optimizer, rng,
            learning_rate=config.learning_rate,
            encoder=encoder,
            output_units=encoder.output_units(dataset.train_outputs),
        )
        return network, metric

    def run(self, config: BenchmarkConfig,
            cancel_token: Optional[CancellationToken] = None,
            snapshot_sink: Optional[SnapshotSink] = None) -> RunResult:
        """
        Run the job end to end. Never raises; every outcome is a RunResult.
        """
        started = time.perf_counter()
        if cancel_token is not None and cancel_token.cancelled:
            logger.info(f"Job {self.job_id} skipped: run was cancelled")
            return RunResult.failed(self.job_id, str(Cancelled()),
                                    time.perf_counter() - started)
        rng = np.random.default_rng(self.seed_sequence(config))

        try:
            network, metric = self.build(config, rng)
        except NNBenchError as e:
            logger.error(f"Job {self.job_id} could not start: {e}")
            return RunResult.failed(self.job_id, str(e), time.perf_counter() - started)
        except Exception as e:
            logger.exception(f"Unexpected error building job {self.job_id}")
            return RunResult.failed(self.job_id, f"{type(e).__name__}: {e}",
                                    time.perf_counter() - started)

        self.network = network
        loop = TrainingLoop(network, self.dataset, metric, config, rng, self.job_id,
                            cancel_token=cancel_token, snapshot_sink=snapshot_sink)
        try:
            return loop.run()
        except Exception as e:
            logger.exception(f"Unexpected error in job {self.job_id}")
            return RunResult.failed(self.job_id, f"{type(e).__name__}: {e}",
                                    time.perf_counter() - started,
                                    epochs_run=loop.epochs_run,
                                    history=loop.history.records())
        finally:
            self.network = None


def enumerate_jobs(specs: Sequence[NetworkSpec], datasets: Sequence[Dataset],
                   repetitions: int = 1, pairing: str = 'cross') -> List[BenchmarkJob]:
    """
    Expand specs x datasets x repetitions into jobs.

    Args:
        specs: Network specifications, in run order
        datasets: Datasets, in run order
        repetitions: Runs per (spec, dataset) pair, numbered from 1
        pairing: 'cross' for every combination, 'matched' to pair only
            specs and datasets with the same identifier

    Returns:
        List[BenchmarkJob]: Spec-major, then dataset, then repetition

    Raises:
        EnumerationError: On no specs, no datasets, duplicate identifiers
            or an empty result
    """
    if not specs:
        raise EnumerationError("No network specifications to benchmark")
    if not datasets:
        raise EnumerationError("No datasets to benchmark")
    if repetitions < 1:
        raise EnumerationError(f"repetitions must be >= 1, got {repetitions}")
    if pairing not in ('cross', 'matched'):
        raise EnumerationError(f"Unknown pairing mode: {pairing!r}")

    for label, ids in (('spec', [s.spec_id for s in specs]),
                       ('dataset', [d.dataset_id for d in datasets])):
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise EnumerationError(f"Duplicate {label} identifiers: {duplicates}")

    jobs = []
    for spec in specs:
        for dataset in datasets:
            if pairing == 'matched' and spec.spec_id != dataset.dataset_id:
                continue
            for repetition in range(1, repetitions + 1):
                jobs.append(BenchmarkJob(spec, dataset, repetition))

    if not jobs:
        raise EnumerationError(
            f"No jobs to run: no spec identifier matches a dataset ({pairing} pairing)"
        )
    return jobs


@dataclass(frozen=True)
class BenchmarkReport:
    """Everything a finished benchmark run produced."""

    results: Tuple[RunResult, ...]
    aggregates: Tuple[AggregateStatistics, ...]
    duration: float
    cancelled: bool = False

    @property
    def completed(self) -> int:
        return sum(1 for r in self.results if r.status is RunStatus.COMPLETED)

    @property
    def failed(self) -> int:
        return len(self.results) - self.completed


class BenchmarkHarness:
    """
    Run every job on a bounded thread pool and stream results out.

    Args:
        specs: Network specifications
        datasets: Datasets
        config: Run configuration
        aggregator: Receives every result; a fresh one is created when None
        result_sinks: Extra callables invoked with each result as it lands
        snapshot_sink: Receives periodic parameter snapshots from every job
    """

    def __init__(self, specs: Sequence[NetworkSpec], datasets: Sequence[Dataset],
                 config: Optional[BenchmarkConfig] = None,
                 aggregator: Optional[StatisticsAggregator] = None,
                 result_sinks: Iterable[ResultSink] = (),
                 snapshot_sink: Optional[SnapshotSink] = None):
        self.specs = list(specs)
        self.datasets = list(datasets)
        self.config = config or BenchmarkConfig()
        self.aggregator = aggregator or StatisticsAggregator()
        self.result_sinks = list(result_sinks)
        self.snapshot_sink = snapshot_sink
        self.cancel_token = CancellationToken()

    def cancel(self) -> None:
        """Ask every running job to stop at its next epoch boundary."""
        logger.warning("Cancellation requested; jobs stop at the next epoch boundary")
        self.cancel_token.cancel()

    @property
    def cancelled(self) -> bool:
        return self.cancel_token.cancelled

    def _dispatch(self, result: RunResult) -> None:
        self.aggregator.add(result)
        for sink in self.result_sinks:
            try:
                sink(result)
            except Exception:
                logger.exception(f"Result sink {sink!r} failed for {result.job_id}")

    def run(self) -> BenchmarkReport:
        """
        Run all jobs and wait for every one to report.

        Returns:
            BenchmarkReport: Results in enumeration order plus aggregates

        Raises:
            EnumerationError: If there is nothing to run
        """
        config = self.config
        jobs = enumerate_jobs(self.specs, self.datasets, config.repetitions, config.pairing)
        logger.info(f"Running {len(jobs)} jobs on {config.concurrency} workers")

        started = time.perf_counter()
        results: Dict[JobId, RunResult] = {}
        with ThreadPoolExecutor(max_workers=config.concurrency,
                                thread_name_prefix='nnbench') as executor:
            futures = {
                executor.submit(job.run, config, self.cancel_token, self.snapshot_sink): job
                for job in jobs
            }
            for future in as_completed(futures):
                job = futures[future]
                try:
                    result = future.result()
                except Exception as e:
                    logger.exception(f"Worker crashed running {job.job_id}")
                    result = RunResult.failed(job.job_id, f"{type(e).__name__}: {e}")
                results[job.job_id] = result
                self._dispatch(result)
                logger.debug(f"{len(results)}/{len(jobs)} jobs reported")

        duration = time.perf_counter() - started
        report = BenchmarkReport(
            results=tuple(results[job.job_id] for job in jobs),
            aggregates=tuple(self.aggregator.report()),
            duration=duration,
            cancelled=self.cancelled,
        )
        logger.info(
            f"Benchmark finished in {duration:.2f}s: {report.completed} completed, "
            f"{report.failed} not completed"
        )
        return report
