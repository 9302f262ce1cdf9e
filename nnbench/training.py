"""
training.py
~~~~~~~~~~~

Epoch/batch driver for one network on one dataset.

The loop moves through ``TrainingState`` INITIALIZED -> RUNNING -> one of
COMPLETED, DIVERGED or FAILED, and always ends by returning a RunResult.
Cancellation is cooperative: the token is checked before every epoch.
"""

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import List, Mapping, Optional, Protocol, Tuple

import numpy as np

from nnbench.config import BenchmarkConfig
from nnbench.errors import Cancelled, Divergence, NNBenchError
from nnbench.metrics import Accuracy
from nnbench.network import Network
from nnbench.results import EpochRecord, JobId, RunResult, RunStatus
from nnbench.specs import Dataset

logger = logging.getLogger(__name__)


class TrainingState(Enum):
    INITIALIZED = 'initialized'
    RUNNING = 'running'
    COMPLETED = 'completed'
    DIVERGED = 'diverged'
    FAILED = 'failed'


class CancellationToken:
    """Thread-safe flag shared by the harness and every running loop."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled()


@dataclass(frozen=True)
class LayerSnapshot:
    index: int
    kind: str
    params: Mapping[str, np.ndarray]


@dataclass(frozen=True)
class Snapshot:
    """
    Read-only copy of every layer's parameters at the end of an epoch.

    ``final`` marks the trained parameters of a completed run.
    """

    job_id: JobId
    epoch: int
    layers: Tuple[LayerSnapshot, ...]
    final: bool = False


class SnapshotSink(Protocol):
    def emit(self, snapshot: Snapshot) -> None:
        ...


class PlateauStopper:
    """
    Stop when test accuracy has not improved for ``window`` epochs.

    An epoch counts as an improvement when its accuracy exceeds the best
    seen so far by more than ``min_delta``. A window of 0 never stops.
    """

    def __init__(self, window: int, min_delta: float = 0.0):
        self.window = window
        self.min_delta = min_delta
        self.best = -np.inf
        self.wait = 0

    def update(self, accuracy: float) -> bool:
        if self.window <= 0:
            return False
        if accuracy - self.min_delta > self.best:
            self.best = accuracy
            self.wait = 0
            return False
        self.wait += 1
        return self.wait >= self.window


class EpochHistory:
    """
    Per-epoch records bounded to ``limit`` entries.

    When the sampled records fill up they are thinned to every other entry
    and the sampling stride doubles, so the first epoch and an even spread
    of later ones stay represented. The most recent record is always
    reported as well.
    """

    def __init__(self, limit: int):
        self.limit = limit
        self.stride = 1
        self._records: List[EpochRecord] = []
        self._latest: Optional[EpochRecord] = None

    def add(self, record: EpochRecord) -> None:
        self._latest = record
        if (record.epoch - 1) % self.stride != 0:
            return
        self._records.append(record)
        if len(self._records) >= self.limit:
            self._records = self._records[::2]
            self.stride *= 2

    def records(self) -> Tuple[EpochRecord, ...]:
        if self._latest is not None and (
                not self._records or self._records[-1] is not self._latest):
            return tuple(self._records) + (self._latest,)
        return tuple(self._records)


class TrainingLoop:
    """
    Train ``network`` on ``dataset`` according to ``config``.

    Args:
        network: Freshly built network, owned by this loop
        dataset: Shared read-only dataset
        metric: Test-set metric; reaching its minimum stops training
        config: Benchmark configuration (epochs, batches, stopping, snapshots)
        rng: Job-local generator, used for shuffling
        job_id: Identity attached to results and snapshots
        cancel_token: Shared cancellation flag
        snapshot_sink: Receives parameter snapshots every
            ``config.snapshot_interval`` epochs, plus a final one when the
            run completes
    """

    def __init__(self, network: Network, dataset: Dataset, metric: Accuracy,
                 config: BenchmarkConfig, rng: np.random.Generator, job_id: JobId,
                 cancel_token: Optional[CancellationToken] = None,
                 snapshot_sink: Optional[SnapshotSink] = None):
        self.network = network
        self.dataset = dataset
        self.metric = metric
        self.config = config
        self.rng = rng
        self.job_id = job_id
        self.cancel_token = cancel_token or CancellationToken()
        self.snapshot_sink = snapshot_sink
        self.state = TrainingState.INITIALIZED
        self.epochs_run = 0
        self.history = EpochHistory(config.history_limit)
        self._last_accuracy: Optional[float] = None

    def run(self) -> RunResult:
        """
        Run until a terminal state and return the job's RunResult.

        Library errors end the run as DIVERGED or FAILED; anything else
        propagates to the caller.
        """
        if self.state is not TrainingState.INITIALIZED:
            raise RuntimeError(f"Training loop for {self.job_id} already ran")

        started = time.perf_counter()
        self.state = TrainingState.RUNNING
        try:
            stop_reason = self._train()
        except Divergence as e:
            self.state = TrainingState.DIVERGED
            logger.warning(f"Job {self.job_id} diverged at epoch {self.epochs_run + 1}: {e}")
            return self._result(RunStatus.DIVERGED, started, reason=str(e))
        except Cancelled as e:
            self.state = TrainingState.FAILED
            logger.info(f"Job {self.job_id} cancelled after {self.epochs_run} epochs")
            return self._result(RunStatus.FAILED, started, reason=str(e))
        except NNBenchError as e:
            self.state = TrainingState.FAILED
            logger.error(f"Job {self.job_id} failed: {e}")
            return self._result(RunStatus.FAILED, started, reason=str(e))

        self.state = TrainingState.COMPLETED
        logger.info(
            f"Job {self.job_id} completed: accuracy={self._last_accuracy:.4f} "
            f"epochs={self.epochs_run} ({stop_reason})"
        )
        return self._result(RunStatus.COMPLETED, started, stop_reason=stop_reason)

    def _train(self) -> str:
        config = self.config
        dataset = self.dataset
        encoder = self.network.encoder

        train_targets = encoder.encode(dataset.train_outputs)
        size = dataset.train_size
        batch_size = config.batch_size or size
        plateau = PlateauStopper(config.early_stop_window, config.early_stop_min_delta)

        for epoch in range(1, config.max_epochs + 1):
            self.cancel_token.raise_if_cancelled()

            order = self.rng.permutation(size) if config.shuffle else np.arange(size)
            total_loss = 0.0
            for start in range(0, size, batch_size):
                indices = order[start:start + batch_size]
                batch_loss = self.network.train_batch(
                    dataset.train_inputs[indices], train_targets[indices]
                )
                total_loss += batch_loss * len(indices)

            accuracy = self.network.evaluate(
                dataset.test_inputs, dataset.test_outputs, self.metric
            )
            self.epochs_run = epoch
            self._last_accuracy = accuracy
            self.history.add(EpochRecord(epoch=epoch, loss=total_loss / size,
                                         accuracy=accuracy))
            logger.debug(
                f"Job {self.job_id} epoch {epoch}: loss={total_loss / size:.6f} "
                f"accuracy={accuracy:.4f}"
            )

            stop_reason = None
            if self.metric.check(accuracy):
                stop_reason = 'metric_satisfied'
            elif plateau.update(accuracy):
                stop_reason = 'plateau'
            elif epoch == config.max_epochs:
                stop_reason = 'max_epochs'

            # one snapshot per epoch; the last one of a completed run is final
            if stop_reason is not None or (
                    config.snapshot_interval and epoch % config.snapshot_interval == 0):
                self._emit_snapshot(epoch, final=stop_reason is not None)
            if stop_reason is not None:
                return stop_reason
        return 'max_epochs'

    def _emit_snapshot(self, epoch: int, final: bool = False) -> None:
        if self.snapshot_sink is None:
            return
        layers = tuple(
            LayerSnapshot(index=index, kind=layer.kind.value,
                          params=MappingProxyType(params))
            for index, (layer, params) in enumerate(
                zip(self.network.layers, self.network.snapshot()))
        )
        self.snapshot_sink.emit(Snapshot(job_id=self.job_id, epoch=epoch, layers=layers,
                                        final=final))

    def _result(self, status: RunStatus, started: float,
                reason: Optional[str] = None,
                stop_reason: Optional[str] = None) -> RunResult:
        accuracy = self._last_accuracy
        return RunResult(
            job_id=self.job_id,
            status=status,
            reason=reason,
            final_accuracy=accuracy,
            metric_passed=(status is RunStatus.COMPLETED and accuracy is not None
                           and self.metric.check(accuracy)),
            epochs_run=self.epochs_run,
            history=self.history.records(),
            duration=time.perf_counter() - started,
            stop_reason=stop_reason,
        )
