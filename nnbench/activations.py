"""
activations.py
~~~~~~~~~~~~~~

Neuron activation functions used by the layer forward and backward passes.

Each activation exposes ``call`` (the transform) and ``gradient``, which
multiplies the upstream gradient by the derivative evaluated at the
pre-activation values. For the elementwise functions this is just
``prime(z) * upstream``; softmax, which couples the entries of a row,
uses its Jacobian-vector product instead.
"""

from typing import Dict

import numpy as np

from nnbench.errors import InvalidSpec

LEAKY_SLOPE = 0.01


class Activation:
    """Base class for activation functions."""

    name = 'activation'

    def call(self, z: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def prime(self, z: np.ndarray) -> np.ndarray:
        """Elementwise first derivative at ``z``."""
        raise NotImplementedError

    def gradient(self, z: np.ndarray, upstream: np.ndarray) -> np.ndarray:
        """
        Back-propagate ``upstream`` through the activation.

        Args:
            z: Pre-activation values cached during forward
            upstream: Gradient of the loss with respect to the activation output

        Returns:
            np.ndarray: Gradient of the loss with respect to ``z``
        """
        return self.prime(z) * upstream

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class Sigmoid(Activation):
    """Logistic sigmoid."""

    name = 'sigmoid'

    def call(self, z):
        # split by sign so exp never overflows
        out = np.empty_like(z)
        positive = z >= 0
        out[positive] = 1.0 / (1.0 + np.exp(-z[positive]))
        exp_z = np.exp(z[~positive])
        out[~positive] = exp_z / (1.0 + exp_z)
        return out

    def prime(self, z):
        s = self.call(z)
        return s * (1.0 - s)


class ReLU(Activation):
    """Rectified linear unit."""

    name = 'relu'

    def call(self, z):
        return np.maximum(z, 0.0)

    def prime(self, z):
        return (z > 0.0).astype(z.dtype)


class LeakyReLU(Activation):
    """ReLU with a small slope for negative inputs."""

    name = 'leaky_relu'

    def call(self, z):
        return np.where(z > 0.0, z, LEAKY_SLOPE * z)

    def prime(self, z):
        return np.where(z > 0.0, 1.0, LEAKY_SLOPE)


class Tanh(Activation):
    """Hyperbolic tangent."""

    name = 'tanh'

    def call(self, z):
        return np.tanh(z)

    def prime(self, z):
        t = np.tanh(z)
        return 1.0 - t * t


class Linear(Activation):
    """Identity activation."""

    name = 'linear'

    def call(self, z):
        return z

    def prime(self, z):
        return np.ones_like(z)


class Softmax(Activation):
    """Softmax over the last axis."""

    name = 'softmax'

    def call(self, z):
        shifted = z - z.max(axis=-1, keepdims=True)
        exp_z = np.exp(shifted)
        return exp_z / exp_z.sum(axis=-1, keepdims=True)

    def prime(self, z):
        # diagonal of the Jacobian only; gradient() uses the full product
        s = self.call(z)
        return s * (1.0 - s)

    def gradient(self, z, upstream):
        s = self.call(z)
        return s * (upstream - (upstream * s).sum(axis=-1, keepdims=True))


_ACTIVATIONS: Dict[str, type] = {
    'sigmoid': Sigmoid,
    'logistic': Sigmoid,
    'relu': ReLU,
    'leaky_relu': LeakyReLU,
    'leaky relu': LeakyReLU,
    'leakyrelu': LeakyReLU,
    'tanh': Tanh,
    'linear': Linear,
    'identity': Linear,
    'softmax': Softmax,
}


def get_activation(name: str) -> Activation:
    """
    Create an activation function from its configured name.

    Raises:
        InvalidSpec: If the name is not a known activation
    """
    try:
        return _ACTIVATIONS[name.strip().lower()]()
    except (KeyError, AttributeError):
        raise InvalidSpec(f"Invalid activation function name: {name!r}") from None
