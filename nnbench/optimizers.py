"""
optimizers.py
~~~~~~~~~~~~~

Weight-update rules applied to a layer after back-propagation.

An optimizer instance belongs to one Network. Per-layer auxiliary state
(momentum and velocity buffers) is created lazily the first time a layer
is updated and is dropped together with the optimizer.
"""

from typing import Dict, Optional

import numpy as np

from nnbench.errors import InvalidSpec
from nnbench.layers import Layer

# Default momentum constant
DEFAULT_BETA1 = 0.9

# Default secondary momentum constant
DEFAULT_BETA2 = 0.999

ADAM_EPSILON = 1e-7


class Optimizer:
    """
    Base class for optimizers.

    Subclasses implement ``_step`` for one parameter array; ``update``
    walks a layer's parameters and applies it in place.
    """

    name = 'optimizer'

    def __init__(self):
        # keyed by id(layer); layers outlive neither the network nor this object
        self._state: Dict[int, Dict[str, Dict[str, np.ndarray]]] = {}

    def _layer_state(self, layer: Layer) -> Dict[str, Dict[str, np.ndarray]]:
        state = self._state.get(id(layer))
        if state is None:
            state = {name: {} for name in layer.params}
            self._state[id(layer)] = state
        return state

    def update(self, layer: Layer, learning_rate: float) -> None:
        """
        Apply one update to every parameter of ``layer`` using its cached gradients.

        Args:
            layer: Layer whose ``grads`` were filled by backward
            learning_rate: Step size
        """
        if not layer.trainable:
            return
        state = self._layer_state(layer)
        for name, param in layer.params.items():
            grad = layer.grads.get(name)
            if grad is None:
                raise RuntimeError(
                    f"No gradient for '{name}' in {layer.kind.value} layer; "
                    "run backward before update"
                )
            param -= self._step(state[name], grad, learning_rate)

    def _step(self, state: Dict[str, np.ndarray], grad: np.ndarray,
              learning_rate: float) -> np.ndarray:
        raise NotImplementedError


class SGD(Optimizer):
    """
    Stochastic gradient descent with classical momentum.

    ``v = gamma * v + lr * grad``; ``param -= v``. A gamma of 0 gives plain
    gradient descent.
    """

    name = 'sgd'

    def __init__(self, gamma: float = DEFAULT_BETA1):
        super().__init__()
        if not 0.0 <= gamma < 1.0:
            raise InvalidSpec(f"SGD momentum must be in [0, 1), got {gamma}")
        self.gamma = gamma

    def _step(self, state, grad, learning_rate):
        step = learning_rate * grad
        if self.gamma == 0.0:
            return step
        velocity = state.get('velocity')
        if velocity is None:
            velocity = np.zeros_like(grad)
        velocity = self.gamma * velocity + step
        state['velocity'] = velocity
        return velocity


class Adam(Optimizer):
    """Adaptive moment estimation with bias-corrected first and second moments."""

    name = 'adam'

    def __init__(self, beta1: float = DEFAULT_BETA1, beta2: float = DEFAULT_BETA2):
        super().__init__()
        for label, beta in (('beta1', beta1), ('beta2', beta2)):
            if not 0.0 <= beta < 1.0:
                raise InvalidSpec(f"Adam {label} must be in [0, 1), got {beta}")
        self.beta1 = beta1
        self.beta2 = beta2

    def _step(self, state, grad, learning_rate):
        if 'moment' not in state:
            state['moment'] = np.zeros_like(grad)
            state['velocity'] = np.zeros_like(grad)
            state['time_step'] = np.zeros((), dtype=np.int64)
        state['time_step'] += 1
        t = int(state['time_step'])

        state['moment'] = self.beta1 * state['moment'] + (1.0 - self.beta1) * grad
        state['velocity'] = self.beta2 * state['velocity'] + (1.0 - self.beta2) * grad * grad

        moment_bar = state['moment'] / (1.0 - self.beta1 ** t)
        velocity_bar = state['velocity'] / (1.0 - self.beta2 ** t)
        return learning_rate * moment_bar / (np.sqrt(velocity_bar) + ADAM_EPSILON)


def get_optimizer(name: str, beta1: Optional[float] = None,
                  beta2: Optional[float] = None) -> Optimizer:
    """
    Create a fresh optimizer from its configured name.

    Args:
        name: 'sgd' (also 'gradient descent', 'stochastic gradient descent')
            or 'adam' (also 'adaptive momentum')
        beta1: Momentum constant (SGD gamma / Adam beta1)
        beta2: Adam secondary momentum constant

    Raises:
        InvalidSpec: If the name is unknown
    """
    key = (name or '').strip().lower()
    beta1 = DEFAULT_BETA1 if beta1 is None else beta1
    beta2 = DEFAULT_BETA2 if beta2 is None else beta2
    if key in ('sgd', 'gradient descent', 'stochastic gradient descent'):
        return SGD(gamma=beta1)
    if key in ('adam', 'adaptive momentum'):
        return Adam(beta1=beta1, beta2=beta2)
    raise InvalidSpec(f"Invalid optimizer name: {name!r}")
