"""
statistics.py
~~~~~~~~~~~~~

Streaming per-(spec, dataset) statistics over RunResults.

Means and variances are accumulated with Welford's online algorithm, so
memory stays constant no matter how many repetitions run and there is no
catastrophic cancellation from the naive sum-of-squares formula. Results
arrive from worker threads in any order; each group has its own lock.
"""

import logging
import math
import threading
from collections import Counter
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from nnbench.results import RunResult, RunStatus

logger = logging.getLogger(__name__)

GroupKey = Tuple[str, str]


class RunningStats:
    """
    Welford accumulator for count, mean and sum of squared deviations (M2).

    Example:
        >>> stats = RunningStats()
        >>> for x in (0.8, 0.82, 0.78, 0.9):
        ...     stats.update(x)
        >>> round(stats.mean, 3)
        0.825
    """

    __slots__ = ('count', 'mean', 'm2')

    def __init__(self):
        self.count = 0
        self.mean = 0.0
        self.m2 = 0.0

    def update(self, value: float) -> None:
        self.count += 1
        delta = value - self.mean
        self.mean += delta / self.count
        self.m2 += delta * (value - self.mean)

    def merge(self, other: 'RunningStats') -> 'RunningStats':
        """Combine two accumulators (Chan et al. parallel update) into a new one."""
        merged = RunningStats()
        merged.count = self.count + other.count
        if merged.count == 0:
            return merged
        delta = other.mean - self.mean
        merged.mean = self.mean + delta * other.count / merged.count
        merged.m2 = (self.m2 + other.m2
                     + delta * delta * self.count * other.count / merged.count)
        return merged

    @property
    def variance(self) -> Optional[float]:
        """Sample variance (n - 1 denominator); None below two samples."""
        if self.count < 2:
            return None
        return self.m2 / (self.count - 1)

    @property
    def population_variance(self) -> Optional[float]:
        if self.count < 1:
            return None
        return self.m2 / self.count

    @property
    def stddev(self) -> Optional[float]:
        variance = self.variance
        return None if variance is None else math.sqrt(variance)

    def __repr__(self) -> str:
        return f"RunningStats(count={self.count}, mean={self.mean}, m2={self.m2})"


@dataclass(frozen=True)
class AggregateStatistics:
    """
    Immutable summary of one (spec, dataset) group.

    Accuracy and epoch statistics only cover completed runs; diverged and
    failed runs are tallied in ``failures`` with their reasons.
    """

    spec_id: str
    dataset_id: str
    count: int
    accuracy_mean: Optional[float]
    accuracy_variance: Optional[float]
    epochs_mean: Optional[float]
    epochs_variance: Optional[float]
    passed: int
    failures: int
    diverged: int
    failure_reasons: Tuple[Tuple[str, int], ...]

    @property
    def key(self) -> GroupKey:
        return (self.spec_id, self.dataset_id)

    @property
    def total_runs(self) -> int:
        return self.count + self.failures

    def to_dict(self) -> Dict[str, object]:
        return {
            'spec_id': self.spec_id,
            'dataset_id': self.dataset_id,
            'runs': self.total_runs,
            'completed': self.count,
            'accuracy_mean': self.accuracy_mean,
            'accuracy_variance': self.accuracy_variance,
            'epochs_mean': self.epochs_mean,
            'epochs_variance': self.epochs_variance,
            'passed': self.passed,
            'failures': self.failures,
            'diverged': self.diverged,
            'failure_reasons': '; '.join(
                f"{reason} (x{n})" for reason, n in self.failure_reasons
            ),
        }


class _Group:
    __slots__ = ('lock', 'accuracy', 'epochs', 'passed', 'diverged', 'reasons')

    def __init__(self):
        self.lock = threading.Lock()
        self.accuracy = RunningStats()
        self.epochs = RunningStats()
        self.passed = 0
        self.diverged = 0
        self.reasons: Counter = Counter()


class StatisticsAggregator:
    """
    Thread-safe aggregation of RunResults by (spec id, dataset id).

    ``add`` can be called concurrently from any number of threads; the
    registry lock is only held while looking up or creating a group.

    Counts and failure tallies do not depend on the order results arrive
    in. Means and variances are folded in arrival order, so two runs that
    produced identical results can differ only by floating-point rounding.
    """

    def __init__(self):
        self._groups: Dict[GroupKey, _Group] = {}
        self._registry_lock = threading.Lock()

    def _group(self, key: GroupKey) -> _Group:
        with self._registry_lock:
            group = self._groups.get(key)
            if group is None:
                group = _Group()
                self._groups[key] = group
            return group

    def add(self, result: RunResult) -> None:
        """Fold one RunResult into its group. Never raises for failed runs."""
        group = self._group(result.job_id.group)
        with group.lock:
            if result.status is RunStatus.COMPLETED and result.final_accuracy is not None:
                group.accuracy.update(result.final_accuracy)
                group.epochs.update(result.epochs_run)
                if result.metric_passed:
                    group.passed += 1
            else:
                if result.status is RunStatus.DIVERGED:
                    group.diverged += 1
                group.reasons[result.reason or result.status.value] += 1

    def __call__(self, result: RunResult) -> None:
        self.add(result)

    def get(self, spec_id: str, dataset_id: str) -> Optional[AggregateStatistics]:
        with self._registry_lock:
            group = self._groups.get((spec_id, dataset_id))
        if group is None:
            return None
        return self._summarize((spec_id, dataset_id), group)

    def report(self) -> List[AggregateStatistics]:
        """Snapshot every group, sorted by (spec id, dataset id)."""
        with self._registry_lock:
            items = sorted(self._groups.items())
        return [self._summarize(key, group) for key, group in items]

    @staticmethod
    def _summarize(key: GroupKey, group: _Group) -> AggregateStatistics:
        with group.lock:
            accuracy = group.accuracy
            epochs = group.epochs
            completed = accuracy.count
            return AggregateStatistics(
                spec_id=key[0],
                dataset_id=key[1],
                count=completed,
                accuracy_mean=accuracy.mean if completed else None,
                accuracy_variance=accuracy.variance,
                epochs_mean=epochs.mean if completed else None,
                epochs_variance=epochs.variance,
                passed=group.passed,
                failures=sum(group.reasons.values()),
                diverged=group.diverged,
                failure_reasons=tuple(sorted(group.reasons.items())),
            )
