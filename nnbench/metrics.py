"""
metrics.py
~~~~~~~~~~

Evaluation metrics that decide how well a network fits its test data.
"""

from typing import Any, Dict, Optional

import numpy as np

from nnbench.errors import InvalidSpec, ShapeMismatch


class Accuracy:
    """
    Fraction of examples whose decoded prediction matches the expected output.

    An example counts as correct when every one of its output values is
    within ``tolerance`` of the expected value. The metric is "satisfied"
    once the score reaches ``min``, which the training loop uses as an
    early-stopping criterion.
    """

    label = 'Accuracy'

    def __init__(self, min_score: float = 1.0, tolerance: float = 0.0):
        if not 0.0 <= min_score <= 1.0:
            raise InvalidSpec(f"Accuracy min must be within [0, 1], got {min_score}")
        if tolerance < 0.0:
            raise InvalidSpec(f"Accuracy tolerance must be >= 0, got {tolerance}")
        self.min_score = min_score
        self.tolerance = tolerance

    def value(self, decoded: np.ndarray, expected: np.ndarray) -> float:
        if decoded.shape != expected.shape:
            raise ShapeMismatch(expected.shape, decoded.shape, 'accuracy')
        if decoded.shape[0] == 0:
            return 0.0
        close = np.abs(decoded - expected) <= self.tolerance
        per_example = close.reshape(close.shape[0], -1).all(axis=1)
        return float(per_example.mean())

    def check(self, score: float) -> bool:
        return score >= self.min_score


def get_metric(name: str, args: Optional[Dict[str, Any]] = None) -> Accuracy:
    """Create a metric from its configured name and arguments."""
    args = dict(args or {})
    key = (name or 'accuracy').strip().lower()
    if key in ('accuracy', 'acc'):
        try:
            return Accuracy(
                min_score=float(args.get('min', 1.0)),
                tolerance=float(args.get('tolerance', 0.0)),
            )
        except (TypeError, ValueError) as e:
            raise InvalidSpec(f"Invalid accuracy arguments {args}: {e}") from e
    raise InvalidSpec(f"Invalid metric name: {name!r}")
