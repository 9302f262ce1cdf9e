"""
network.py
~~~~~~~~~~

An ordered stack of layers trained with one loss and one optimizer.

A Network is built fresh for every benchmark job from an immutable
NetworkSpec and is discarded when the job ends; only its metrics survive.
"""

import logging
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from nnbench import tensor
from nnbench.encoders import Encoder, Identity
from nnbench.errors import Divergence, InvalidSpec
from nnbench.layers import Layer, build_layer
from nnbench.losses import Loss, get_loss
from nnbench.metrics import Accuracy
from nnbench.optimizers import Optimizer
from nnbench.specs import NetworkSpec

logger = logging.getLogger(__name__)


class Network:
    """
    Feed-forward composition of layers.

    Args:
        layers: Layers in input-to-output order, each built for the
            previous layer's output shape
        loss: Cost function applied to encoded targets
        optimizer: Update rule; owned by this network
        learning_rate: Optimizer step size
        encoder: Translates expected outputs to targets and predictions back
    """

    def __init__(self, layers: Sequence[Layer], loss: Loss, optimizer: Optimizer,
                 learning_rate: float, encoder: Optional[Encoder] = None):
        if not layers:
            raise InvalidSpec("A network needs at least one layer")
        self.layers: List[Layer] = list(layers)
        self.loss = loss
        self.optimizer = optimizer
        self.learning_rate = learning_rate
        self.encoder = encoder or Identity()
        self.diverged = False

    @property
    def input_shape(self) -> Tuple[int, ...]:
        return self.layers[0].input_shape

    @property
    def output_shape(self) -> Tuple[int, ...]:
        return self.layers[-1].output_shape()

    def parameter_count(self) -> int:
        return sum(layer.parameter_count() for layer in self.layers)

    def forward(self, batch: np.ndarray, training: bool = False) -> np.ndarray:
        """
        Run a batch through every layer.

        Args:
            batch: Inputs with a leading batch axis
            training: Enables training-only behaviour such as dropout

        Returns:
            np.ndarray: Raw network outputs

        Raises:
            ShapeMismatch: If the batch does not match the input shape
        """
        outputs = batch
        for layer in self.layers:
            outputs = layer.forward(outputs, training=training)
        return outputs

    def backward(self, predictions: np.ndarray, targets: np.ndarray) -> float:
        """
        Back-propagate the loss of the last forward pass and update weights.

        Args:
            predictions: Outputs returned by the preceding ``forward`` call
            targets: Encoded expected outputs

        Returns:
            float: Loss value before the update

        Raises:
            ShapeMismatch: If predictions and targets differ in shape
            Divergence: If the loss or any parameter becomes NaN or infinite
        """
        # overflow is reported as Divergence below, not as numpy warnings
        with np.errstate(over='ignore', invalid='ignore'):
            loss_value = self.loss.value(predictions, targets)
            if not np.isfinite(loss_value):
                self.diverged = True
                raise Divergence(f"Loss became non-finite ({loss_value})")

            gradient = self.loss.gradient(predictions, targets)
            for layer in reversed(self.layers):
                gradient = layer.backward(gradient)

            for layer in self.layers:
                if layer.trainable:
                    self.optimizer.update(layer, self.learning_rate)

        for index, layer in enumerate(self.layers):
            for name, param in layer.params.items():
                if not tensor.is_finite(param):
                    self.diverged = True
                    raise Divergence(
                        f"Non-finite values in {name} of layer {index} "
                        f"({layer.kind.value})"
                    )
        return loss_value

    def train_batch(self, inputs: np.ndarray, targets: np.ndarray) -> float:
        """Forward in training mode, then backward; returns the batch loss."""
        predictions = self.forward(inputs, training=True)
        return self.backward(predictions, targets)

    def predict(self, inputs: np.ndarray) -> np.ndarray:
        """Inference-mode outputs decoded through the encoder."""
        return self.encoder.decode(self.forward(inputs, training=False))

    def evaluate(self, inputs: np.ndarray, expected: np.ndarray,
                 metric: Accuracy) -> float:
        """Metric value of decoded predictions against expected outputs."""
        return metric.value(self.predict(inputs), expected)

    def snapshot(self) -> List[Dict[str, np.ndarray]]:
        """Read-only parameter copies, one dict per layer."""
        return [layer.snapshot() for layer in self.layers]

    def __repr__(self) -> str:
        kinds = ', '.join(layer.kind.value for layer in self.layers)
        return f"Network([{kinds}], params={self.parameter_count()})"

    @classmethod
    def from_spec(cls, spec: NetworkSpec, input_shape: Sequence[int],
                  optimizer: Optimizer, rng: np.random.Generator,
                  learning_rate: Optional[float] = None,
                  encoder: Optional[Encoder] = None,
                  output_units: Optional[int] = None) -> 'Network':
        """
        Build the layers described by ``spec``.

        Each layer's input shape is the previous layer's output shape,
        starting from the dataset's per-example ``input_shape``.

        Args:
            spec: Network topology
            input_shape: Shape of one input example
            optimizer: Fresh optimizer for this network
            rng: Job-local random generator
            learning_rate: Overrides the spec's learning rate when given
            encoder: Output encoder (identity when None)
            output_units: Expected width of the encoded targets; checked
                against the last layer when given

        Raises:
            InvalidSpec: On unknown names or if the output width is wrong
            ShapeMismatch: If a layer cannot accept its input shape
        """
        shape = tuple(int(d) for d in input_shape)
        layers = []
        for layer_spec in spec.layers:
            layer = build_layer(layer_spec, shape, rng)
            layers.append(layer)
            shape = layer.output_shape()

        width = int(np.prod(shape, dtype=int))
        if output_units is not None and width != output_units:
            raise InvalidSpec(
                f"Spec '{spec.spec_id}' produces {width} outputs per example "
                f"but the encoded targets have {output_units}"
            )

        rate = spec.optimizer.learning_rate if learning_rate is None else learning_rate
        network = cls(layers, get_loss(spec.loss), optimizer, rate, encoder)
        logger.debug(f"Built {network} for spec '{spec.spec_id}'")
        return network
