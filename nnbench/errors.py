"""
errors.py
~~~~~~~~~

Exception taxonomy for the benchmarker.

Every failure that can end a single benchmark job derives from
NNBenchError so the harness can turn it into a RunResult without
aborting sibling jobs. EnumerationError is the only error that is
fatal to a whole benchmark run.
"""

from typing import Sequence


class NNBenchError(Exception):
    """Base class for all benchmarker errors."""


class ShapeMismatch(NNBenchError):
    """
    Raised when a tensor operation receives incompatible shapes.

    Attributes:
        expected: Shape (or shape description) the operation required
        actual: Shape that was supplied
    """

    def __init__(self, expected: Sequence, actual: Sequence, operation: str = ''):
        self.expected = tuple(expected)
        self.actual = tuple(actual)
        self.operation = operation
        prefix = f"{operation}: " if operation else ''
        super().__init__(
            f"{prefix}shape mismatch, expected {self.expected} got {self.actual}"
        )


class Divergence(NNBenchError):
    """Raised when a network's weights or loss become NaN or infinite."""


class InvalidSpec(NNBenchError):
    """Raised for a malformed or inconsistent network specification."""


class InvalidDataset(NNBenchError):
    """Raised for a malformed or inconsistent dataset."""


class Cancelled(NNBenchError):
    """Raised when a training loop observes a cancellation request."""

    def __init__(self, message: str = 'cancelled'):
        super().__init__(message)


class EnumerationError(NNBenchError):
    """Raised when the benchmark run cannot enumerate any jobs."""
