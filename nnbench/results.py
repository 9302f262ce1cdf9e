"""
results.py
~~~~~~~~~~

Immutable records produced by benchmark jobs.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class RunStatus(Enum):
    COMPLETED = 'completed'
    DIVERGED = 'diverged'
    FAILED = 'failed'


@dataclass(frozen=True, order=True)
class JobId:
    """Identity of one benchmark job: (spec, dataset, repetition)."""

    spec_id: str
    dataset_id: str
    repetition: int

    @property
    def group(self) -> Tuple[str, str]:
        """Aggregation key shared by every repetition of a pair."""
        return (self.spec_id, self.dataset_id)

    def __str__(self) -> str:
        return f"{self.spec_id}/{self.dataset_id}#{self.repetition}"


@dataclass(frozen=True)
class EpochRecord:
    epoch: int
    loss: float
    accuracy: float


@dataclass(frozen=True)
class RunResult:
    """
    Outcome of one training run.

    Attributes:
        job_id: Which job produced this result
        status: Terminal status
        reason: Failure or divergence reason; None when completed
        final_accuracy: Test metric after the last epoch run
        metric_passed: Whether the final accuracy satisfied the metric's minimum
        epochs_run: Number of epochs fully executed
        history: Bounded per-epoch records, oldest first
        duration: Wall-clock seconds spent in the job
        stop_reason: Why a completed run stopped ('max_epochs',
            'metric_satisfied' or 'plateau')
    """

    job_id: JobId
    status: RunStatus
    reason: Optional[str] = None
    final_accuracy: Optional[float] = None
    metric_passed: bool = False
    epochs_run: int = 0
    history: Tuple[EpochRecord, ...] = ()
    duration: float = 0.0
    stop_reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status is RunStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        """Flat row for reports and persistence; history is left out."""
        return {
            'spec_id': self.job_id.spec_id,
            'dataset_id': self.job_id.dataset_id,
            'repetition': self.job_id.repetition,
            'status': self.status.value,
            'reason': self.reason,
            'final_accuracy': self.final_accuracy,
            'metric_passed': self.metric_passed,
            'epochs_run': self.epochs_run,
            'duration': self.duration,
            'stop_reason': self.stop_reason,
        }

    @classmethod
    def failed(cls, job_id: JobId, reason: str, duration: float = 0.0,
               epochs_run: int = 0,
               history: Tuple[EpochRecord, ...] = ()) -> 'RunResult':
        return cls(job_id=job_id, status=RunStatus.FAILED, reason=reason,
                   epochs_run=epochs_run, history=history, duration=duration)
