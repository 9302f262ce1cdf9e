"""
encoders.py
~~~~~~~~~~~

Translate between dataset output values and network output units.

``encode`` turns expected outputs into training targets, ``decode`` turns
raw network predictions back into values comparable with the dataset's
expected outputs (used by the accuracy metric).
"""

from typing import Any, Dict, Optional

import numpy as np

from nnbench.errors import InvalidDataset, InvalidSpec


class Encoder:
    """Base encoder: identity in both directions."""

    name = 'identity'

    def encode(self, outputs: np.ndarray) -> np.ndarray:
        return outputs

    def decode(self, predictions: np.ndarray) -> np.ndarray:
        return predictions

    def output_units(self, outputs: np.ndarray) -> int:
        """Number of network output units needed for these expected outputs."""
        return int(np.prod(outputs.shape[1:], dtype=int)) if outputs.ndim > 1 else 1


class Identity(Encoder):
    pass


class Threshold(Encoder):
    """Binary outputs: predictions at or above ``cutoff`` decode to 1."""

    name = 'threshold'

    def __init__(self, cutoff: float = 0.5):
        self.cutoff = cutoff

    def decode(self, predictions):
        return (predictions >= self.cutoff).astype(np.float64)


class OneHot(Encoder):
    """
    Integer class labels <-> one-hot rows.

    Args:
        max_label: Largest label value; there are ``max_label + 1`` classes
    """

    name = 'one_hot'

    def __init__(self, max_label: int):
        if max_label < 0:
            raise InvalidSpec(f"one_hot max must be non-negative, got {max_label}")
        self.max_label = max_label

    def _labels(self, outputs: np.ndarray) -> np.ndarray:
        if outputs.ndim == 2 and outputs.shape[1] == 1:
            outputs = outputs[:, 0]
        if outputs.ndim != 1:
            raise InvalidDataset(
                f"one_hot expects a single label column, got shape {outputs.shape}"
            )
        labels = outputs.astype(np.int64)
        if not np.array_equal(labels, outputs):
            raise InvalidDataset("one_hot labels must be whole numbers")
        if labels.size and (labels.min() < 0 or labels.max() > self.max_label):
            raise InvalidDataset(
                f"one_hot labels must lie in [0, {self.max_label}]"
            )
        return labels

    def encode(self, outputs):
        labels = self._labels(outputs)
        one_hot = np.zeros((labels.shape[0], self.max_label + 1), dtype=np.float64)
        one_hot[np.arange(labels.shape[0]), labels] = 1.0
        return one_hot

    def decode(self, predictions):
        return predictions.argmax(axis=-1).astype(np.float64)[:, None]

    def output_units(self, outputs):
        return self.max_label + 1


def get_encoder(name: str, args: Optional[Dict[str, Any]] = None,
                outputs: Optional[np.ndarray] = None) -> Encoder:
    """
    Create an encoder from its configured name and arguments.

    Args:
        name: Encoder name ('one_hot', 'threshold' or 'identity')
        args: Constructor arguments from the network spec
        outputs: Training outputs, used to infer ``max`` for one_hot
            when the network spec leaves it out

    Raises:
        InvalidSpec: If the name or its arguments are invalid
    """
    args = dict(args or {})
    key = (name or 'identity').strip().lower().replace(' ', '_')

    if key in ('one_hot', 'onehot'):
        max_label = args.get('max')
        if max_label is None:
            if outputs is None or outputs.size == 0:
                raise InvalidSpec("one_hot encoder needs a 'max' argument")
            max_label = int(np.max(outputs))
        if not isinstance(max_label, (int, np.integer)) or isinstance(max_label, bool):
            raise InvalidSpec(f"one_hot 'max' must be an integer, got {max_label!r}")
        return OneHot(int(max_label))
    if key == 'threshold':
        return Threshold(float(args.get('cutoff', 0.5)))
    if key in ('identity', 'none'):
        return Identity()
    raise InvalidSpec(f"Invalid encoder name: {name!r}")
