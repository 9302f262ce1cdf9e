"""
layers.py
~~~~~~~~~

The closed set of layer variants a network is built from.

Every layer is created for a fixed per-example input shape and exposes:

- ``forward(inputs, training=False)``: computes outputs and caches what
  ``backward`` needs. The cache is overwritten on every call, so a layer
  instance belongs to exactly one network and one job.
- ``backward(output_gradient)``: returns the gradient with respect to the
  inputs and fills ``grads`` with one array per entry of ``params``.
- ``output_shape(input_shape)``: per-example output shape.

Inputs carry a leading batch axis that the shapes above leave out.
``build_layer`` maps each ``LayerKind`` to its class; the set is closed.
"""

from typing import Dict, Optional, Sequence, Tuple

import numpy as np

from nnbench import tensor
from nnbench.activations import Activation, get_activation
from nnbench.errors import InvalidSpec, ShapeMismatch
from nnbench.specs import LayerKind, LayerSpec

Shape = Tuple[int, ...]


def init_weights(shape: Sequence[int], fan_in: int, fan_out: int,
                 policy: str, rng: np.random.Generator) -> np.ndarray:
    """
    Draw an initial weight tensor.

    Args:
        shape: Shape of the weight tensor
        fan_in: Number of inputs feeding each unit
        fan_out: Number of units fed by each input
        policy: 'uniform' (U(-1, 1) / sqrt(fan_in)), 'xavier', 'he' or 'zeros'
        rng: Job-local random generator

    Returns:
        np.ndarray: float64 weights
    """
    if policy == 'uniform':
        return rng.uniform(-1.0, 1.0, size=shape) / np.sqrt(fan_in)
    if policy == 'xavier':
        return rng.standard_normal(shape) * np.sqrt(2.0 / (fan_in + fan_out))
    if policy == 'he':
        return rng.standard_normal(shape) * np.sqrt(2.0 / fan_in)
    if policy == 'zeros':
        return np.zeros(shape, dtype=tensor.DTYPE)
    raise InvalidSpec(f"Unknown init policy: {policy!r}")


class Layer:
    """Common bookkeeping shared by every layer variant."""

    kind: LayerKind

    def __init__(self, input_shape: Sequence[int]):
        self.input_shape: Shape = tuple(int(d) for d in input_shape)
        self.params: Dict[str, np.ndarray] = {}
        self.grads: Dict[str, np.ndarray] = {}
        self._cache: Dict[str, np.ndarray] = {}

    @property
    def trainable(self) -> bool:
        return bool(self.params)

    def _check_input(self, inputs: np.ndarray) -> None:
        tensor.require_shape(inputs, (None,) + self.input_shape,
                             f"{self.kind.value} forward")

    def _cached(self, name: str) -> np.ndarray:
        try:
            return self._cache[name]
        except KeyError:
            raise RuntimeError(
                f"{self.kind.value} backward called before forward"
            ) from None

    def output_shape(self, input_shape: Optional[Sequence[int]] = None) -> Shape:
        raise NotImplementedError

    def forward(self, inputs: np.ndarray, training: bool = False) -> np.ndarray:
        raise NotImplementedError

    def backward(self, output_gradient: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def parameter_count(self) -> int:
        return int(sum(p.size for p in self.params.values()))

    def snapshot(self) -> Dict[str, np.ndarray]:
        """Read-only copies of the current parameters."""
        return {name: tensor.frozen_copy(p) for name, p in self.params.items()}

    def __repr__(self) -> str:
        return (f"{type(self).__name__}(input_shape={self.input_shape}, "
                f"output_shape={self.output_shape()})")


class Dense(Layer):
    """
    Fully-connected layer: ``activation(x . W^T + b)``.

    Inputs of any per-example rank are flattened, so a dense layer can sit
    directly after convolution, pooling or sequence-returning recurrent
    layers. Optional inverted dropout is applied to the outputs while
    training, using the job-local generator.
    """

    kind = LayerKind.DENSE

    def __init__(self, input_shape, units: int, activation: Activation,
                 rng: np.random.Generator, init: str = 'uniform',
                 dropout_rate: Optional[float] = None):
        super().__init__(input_shape)
        self.units = units
        self.activation = activation
        self.dropout_rate = dropout_rate or 0.0
        self._rng = rng
        self.fan_in = int(np.prod(self.input_shape, dtype=int))
        self.params['weights'] = init_weights(
            (units, self.fan_in), self.fan_in, units, init, rng
        )
        self.params['biases'] = np.zeros(units, dtype=tensor.DTYPE)

    def output_shape(self, input_shape=None):
        if input_shape is not None and tuple(input_shape) != self.input_shape:
            raise ShapeMismatch(self.input_shape, tuple(input_shape), 'dense')
        return (self.units,)

    def forward(self, inputs, training=False):
        self._check_input(inputs)
        flat = inputs.reshape(inputs.shape[0], self.fan_in)
        z = tensor.add_bias(
            tensor.matmul(flat, tensor.transpose(self.params['weights'])),
            self.params['biases'],
        )
        outputs = self.activation.call(z)

        self._cache = {'inputs': flat, 'z': z}
        if training and self.dropout_rate > 0.0:
            keep = 1.0 - self.dropout_rate
            mask = (self._rng.random(outputs.shape) < keep) / keep
            self._cache['mask'] = mask
            outputs = outputs * mask
        return outputs

    def backward(self, output_gradient):
        flat = self._cached('inputs')
        z = self._cached('z')
        tensor.require_shape(output_gradient, z.shape, 'dense backward')

        mask = self._cache.get('mask')
        if mask is not None:
            output_gradient = output_gradient * mask

        dz = self.activation.gradient(z, output_gradient)
        self.grads['weights'] = tensor.matmul(tensor.transpose(dz), flat)
        self.grads['biases'] = dz.sum(axis=0)
        grad_inputs = tensor.matmul(dz, self.params['weights'])
        return grad_inputs.reshape((flat.shape[0],) + self.input_shape)


class Conv2D(Layer):
    """
    2-D convolution over (channels, height, width) examples.

    Kernel tensor shape is (filters, in_channels, kernel_size, kernel_size)
    with one bias per filter.
    """

    kind = LayerKind.CONV

    def __init__(self, input_shape, filters: int, kernel_size: int,
                 activation: Activation, rng: np.random.Generator,
                 stride: int = 1, padding: str = 'valid', init: str = 'he'):
        super().__init__(input_shape)
        if len(self.input_shape) != 3:
            raise ShapeMismatch(('channels', 'height', 'width'), self.input_shape,
                                'conv')
        self.filters = filters
        self.kernel_size = kernel_size
        self.stride = stride
        self.padding = padding
        self.activation = activation

        channels, height, width = self.input_shape
        self._out_h, self._out_w, _, _ = tensor.conv_geometry(
            height, width, kernel_size, kernel_size, stride, padding
        )
        fan_in = channels * kernel_size * kernel_size
        fan_out = filters * kernel_size * kernel_size
        self.params['kernel'] = init_weights(
            (filters, channels, kernel_size, kernel_size), fan_in, fan_out, init, rng
        )
        self.params['biases'] = np.zeros(filters, dtype=tensor.DTYPE)

    def output_shape(self, input_shape=None):
        if input_shape is not None and tuple(input_shape) != self.input_shape:
            raise ShapeMismatch(self.input_shape, tuple(input_shape), 'conv')
        return (self.filters, self._out_h, self._out_w)

    def forward(self, inputs, training=False):
        self._check_input(inputs)
        z = tensor.add_bias(
            tensor.conv2d(inputs, self.params['kernel'], self.stride, self.padding),
            self.params['biases'],
            axis=1,
        )
        self._cache = {'inputs': inputs, 'z': z}
        return self.activation.call(z)

    def backward(self, output_gradient):
        inputs = self._cached('inputs')
        z = self._cached('z')
        tensor.require_shape(output_gradient, z.shape, 'conv backward')

        dz = self.activation.gradient(z, output_gradient)
        grad_inputs, grad_kernel = tensor.conv2d_backward(
            inputs, self.params['kernel'], dz, self.stride, self.padding
        )
        self.grads['kernel'] = grad_kernel
        self.grads['biases'] = dz.sum(axis=(0, 2, 3))
        return grad_inputs


class Pool2D(Layer):
    """Max or average pooling; has no trainable parameters."""

    kind = LayerKind.POOL

    def __init__(self, input_shape, pool_size: int, stride: Optional[int] = None,
                 mode: str = 'max'):
        super().__init__(input_shape)
        if len(self.input_shape) != 3:
            raise ShapeMismatch(('channels', 'height', 'width'), self.input_shape,
                                'pool')
        if mode not in ('max', 'avg'):
            raise InvalidSpec(f"Unknown pooling mode: {mode!r}")
        self.pool_size = pool_size
        self.stride = stride or pool_size
        self.mode = mode
        _, height, width = self.input_shape
        self._out_h, self._out_w = tensor.pool_geometry(
            height, width, pool_size, self.stride
        )

    def output_shape(self, input_shape=None):
        if input_shape is not None and tuple(input_shape) != self.input_shape:
            raise ShapeMismatch(self.input_shape, tuple(input_shape), 'pool')
        return (self.input_shape[0], self._out_h, self._out_w)

    def forward(self, inputs, training=False):
        self._check_input(inputs)
        if self.mode == 'max':
            outputs, argmax = tensor.max_pool2d(inputs, self.pool_size, self.stride)
            self._cache = {'input_shape': np.array(inputs.shape), 'argmax': argmax}
            return outputs
        self._cache = {'input_shape': np.array(inputs.shape)}
        return tensor.avg_pool2d(inputs, self.pool_size, self.stride)

    def backward(self, output_gradient):
        input_shape = tuple(int(d) for d in self._cached('input_shape'))
        if self.mode == 'max':
            return tensor.max_pool2d_backward(
                output_gradient, self._cached('argmax'), input_shape,
                self.pool_size, self.stride
            )
        return tensor.avg_pool2d_backward(
            output_gradient, input_shape, self.pool_size, self.stride
        )


class Recurrent(Layer):
    """
    Elman recurrent layer over (time, features) sequences.

    ``h_t = tanh(x_t . Wx^T + h_{t-1} . Wh^T + bh)`` and
    ``y_t = activation(h_t . Wy^T + by)``.

    The hidden state starts at zero at the beginning of every forward pass
    and only lives for that pass; the per-step states are cached for
    backward. Backward is truncated backpropagation through time: the
    gradient arriving at step t flows back through at most ``bptt_steps``
    steps (all of them when ``bptt_steps`` is None).

    With ``return_sequences`` the output is (time, units), otherwise only
    the last step's (units,) output is returned.
    """

    kind = LayerKind.RECURRENT

    def __init__(self, input_shape, hidden_size: int, units: int,
                 activation: Activation, rng: np.random.Generator,
                 init: str = 'xavier', bptt_steps: Optional[int] = None,
                 return_sequences: bool = False):
        super().__init__(input_shape)
        if len(self.input_shape) != 2:
            raise ShapeMismatch(('time', 'features'), self.input_shape, 'recurrent')
        self.hidden_size = hidden_size
        self.units = units
        self.activation = activation
        self.bptt_steps = bptt_steps
        self.return_sequences = return_sequences

        features = self.input_shape[1]
        self.params['input_weights'] = init_weights(
            (hidden_size, features), features, hidden_size, init, rng
        )
        self.params['hidden_weights'] = init_weights(
            (hidden_size, hidden_size), hidden_size, hidden_size, init, rng
        )
        self.params['hidden_biases'] = np.zeros(hidden_size, dtype=tensor.DTYPE)
        self.params['output_weights'] = init_weights(
            (units, hidden_size), hidden_size, units, init, rng
        )
        self.params['output_biases'] = np.zeros(units, dtype=tensor.DTYPE)

    def output_shape(self, input_shape=None):
        if input_shape is not None and tuple(input_shape) != self.input_shape:
            raise ShapeMismatch(self.input_shape, tuple(input_shape), 'recurrent')
        if self.return_sequences:
            return (self.input_shape[0], self.units)
        return (self.units,)

    def forward(self, inputs, training=False):
        self._check_input(inputs)
        batch, steps, _ = inputs.shape
        wx = tensor.transpose(self.params['input_weights'])
        wh = tensor.transpose(self.params['hidden_weights'])

        # states[:, 0] is the zero state at the sequence boundary
        states = np.zeros((batch, steps + 1, self.hidden_size), dtype=tensor.DTYPE)
        for t in range(steps):
            pre = tensor.add(tensor.matmul(inputs[:, t], wx),
                             tensor.matmul(states[:, t], wh))
            states[:, t + 1] = np.tanh(tensor.add_bias(pre, self.params['hidden_biases']))

        if self.return_sequences:
            hidden = states[:, 1:].reshape(batch * steps, self.hidden_size)
        else:
            hidden = states[:, steps]
        z = tensor.add_bias(
            tensor.matmul(hidden, tensor.transpose(self.params['output_weights'])),
            self.params['output_biases'],
        )
        self._cache = {'inputs': inputs, 'states': states, 'hidden': hidden, 'z': z}

        outputs = self.activation.call(z)
        if self.return_sequences:
            return outputs.reshape(batch, steps, self.units)
        return outputs

    def backward(self, output_gradient):
        inputs = self._cached('inputs')
        states = self._cached('states')
        hidden = self._cached('hidden')
        z = self._cached('z')
        batch, steps, _ = inputs.shape

        expected = (batch,) + self.output_shape()
        tensor.require_shape(output_gradient, expected, 'recurrent backward')
        dz = self.activation.gradient(z, output_gradient.reshape(z.shape))

        self.grads['output_weights'] = tensor.matmul(tensor.transpose(dz), hidden)
        self.grads['output_biases'] = dz.sum(axis=0)
        grad_hidden = tensor.matmul(dz, self.params['output_weights'])

        # gradient reaching each hidden state directly from the outputs
        from_outputs = np.zeros((batch, steps, self.hidden_size), dtype=tensor.DTYPE)
        if self.return_sequences:
            from_outputs[:] = grad_hidden.reshape(batch, steps, self.hidden_size)
        else:
            from_outputs[:, steps - 1] = grad_hidden

        w_in = self.params['input_weights']
        w_hidden = self.params['hidden_weights']
        grad_w_in = np.zeros_like(w_in)
        grad_w_hidden = np.zeros_like(w_hidden)
        grad_b_hidden = np.zeros(self.hidden_size, dtype=tensor.DTYPE)
        grad_inputs = np.zeros_like(inputs)

        window = steps if self.bptt_steps is None else min(self.bptt_steps, steps)
        for t in reversed(range(steps)):
            dh = from_outputs[:, t]
            if not dh.any():
                continue
            for s in range(t, max(t - window, -1), -1):
                da = dh * (1.0 - states[:, s + 1] ** 2)
                grad_w_in += tensor.matmul(tensor.transpose(da), inputs[:, s])
                grad_w_hidden += tensor.matmul(tensor.transpose(da), states[:, s])
                grad_b_hidden += da.sum(axis=0)
                grad_inputs[:, s] += tensor.matmul(da, w_in)
                dh = tensor.matmul(da, w_hidden)

        self.grads['input_weights'] = grad_w_in
        self.grads['hidden_weights'] = grad_w_hidden
        self.grads['hidden_biases'] = grad_b_hidden
        return grad_inputs


def build_layer(spec: LayerSpec, input_shape: Sequence[int],
                rng: np.random.Generator) -> Layer:
    """
    Construct the layer variant described by ``spec``.

    Args:
        spec: Layer descriptor
        input_shape: Per-example shape the layer will receive
        rng: Job-local random generator for initialization and dropout

    Raises:
        InvalidSpec: On unknown names or inconsistent settings
        ShapeMismatch: If ``input_shape`` does not suit the layer type
    """
    if spec.type is LayerKind.DENSE:
        return Dense(input_shape, spec.units, get_activation(spec.activation), rng,
                     init=spec.init, dropout_rate=spec.dropout_rate)
    if spec.type is LayerKind.CONV:
        return Conv2D(input_shape, spec.filters, spec.kernel_size,
                      get_activation(spec.activation), rng,
                      stride=spec.stride or 1, padding=spec.padding, init=spec.init)
    if spec.type is LayerKind.POOL:
        return Pool2D(input_shape, spec.pool_size, stride=spec.stride, mode=spec.mode)
    if spec.type is LayerKind.RECURRENT:
        return Recurrent(input_shape, spec.hidden_size, spec.units,
                         get_activation(spec.activation), rng, init=spec.init,
                         bptt_steps=spec.bptt_steps,
                         return_sequences=spec.return_sequences)
    raise InvalidSpec(f"Unknown layer type: {spec.type!r}")
