"""
losses.py
~~~~~~~~~

Cost functions used to score predictions and seed back-propagation.

Both losses average over the batch (first) axis so the gradient scale
does not depend on mini-batch size.
"""

import numpy as np

from nnbench.errors import InvalidSpec, ShapeMismatch

# keeps log() finite for saturated probabilities
_EPSILON = 1e-12


class Loss:
    """Base class for loss functions."""

    name = 'loss'

    def _check(self, predictions: np.ndarray, targets: np.ndarray) -> None:
        if predictions.shape != targets.shape:
            raise ShapeMismatch(targets.shape, predictions.shape, self.name)

    def value(self, predictions: np.ndarray, targets: np.ndarray) -> float:
        raise NotImplementedError

    def gradient(self, predictions: np.ndarray, targets: np.ndarray) -> np.ndarray:
        raise NotImplementedError


class MeanSquaredError(Loss):
    """Half the summed squared error, averaged over the batch."""

    name = 'mse'

    def value(self, predictions, targets):
        self._check(predictions, targets)
        diff = predictions - targets
        return float(0.5 * np.sum(diff * diff) / predictions.shape[0])

    def gradient(self, predictions, targets):
        self._check(predictions, targets)
        return (predictions - targets) / predictions.shape[0]


class CrossEntropy(Loss):
    """Categorical cross-entropy over probability rows (pair with softmax)."""

    name = 'cross_entropy'

    def value(self, predictions, targets):
        self._check(predictions, targets)
        clipped = np.clip(predictions, _EPSILON, 1.0)
        return float(-np.sum(targets * np.log(clipped)) / predictions.shape[0])

    def gradient(self, predictions, targets):
        self._check(predictions, targets)
        clipped = np.clip(predictions, _EPSILON, 1.0)
        return -targets / clipped / predictions.shape[0]


_LOSSES = {
    'mse': MeanSquaredError,
    'mean_squared_error': MeanSquaredError,
    'mean squared error': MeanSquaredError,
    'cross_entropy': CrossEntropy,
    'crossentropy': CrossEntropy,
    'cross entropy': CrossEntropy,
    'categorical_crossentropy': CrossEntropy,
}


def get_loss(name: str) -> Loss:
    """Create a loss function from its configured name."""
    try:
        return _LOSSES[name.strip().lower()]()
    except (KeyError, AttributeError):
        raise InvalidSpec(f"Invalid cost function name: {name!r}") from None
