"""
specs.py
~~~~~~~~

Immutable descriptions of what to benchmark: network specifications and
datasets.

Both are shared read-only across every job that references them, so they
are frozen dataclasses and dataset arrays are flagged non-writeable when
the Dataset is built. Structural validation is done by ``validate()``,
which each job calls before it builds a network; a failure there is
reported as a failed run rather than aborting the benchmark.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional, Tuple

import numpy as np

from nnbench.errors import InvalidDataset, InvalidSpec
from nnbench.tensor import DTYPE, PADDING_MODES, as_tensor


class ArchitectureKind(Enum):
    FFNN = 'ffnn'
    CNN = 'cnn'
    RNN = 'rnn'


class LayerKind(Enum):
    DENSE = 'dense'
    CONV = 'conv'
    POOL = 'pool'
    RECURRENT = 'recurrent'


INIT_POLICIES = ('uniform', 'xavier', 'he', 'zeros')
POOL_MODES = ('max', 'avg')


def _freeze_mapping(mapping: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True)
class LayerSpec:
    """
    Declarative description of one layer.

    Only the fields relevant to ``type`` are used: ``units``,
    ``activation``, ``init`` and ``dropout_rate`` for dense layers;
    ``filters``, ``kernel_size``, ``stride``, ``padding``, ``activation``
    and ``init`` for convolutions; ``pool_size``, ``stride`` and ``mode``
    for pooling; ``hidden_size``, ``units``, ``activation``, ``init``,
    ``bptt_steps`` and ``return_sequences`` for recurrent layers.
    """

    type: LayerKind
    units: Optional[int] = None
    activation: str = 'sigmoid'
    init: str = 'uniform'
    dropout_rate: Optional[float] = None
    filters: Optional[int] = None
    kernel_size: int = 3
    stride: Optional[int] = None
    padding: str = 'valid'
    pool_size: int = 2
    mode: str = 'max'
    hidden_size: Optional[int] = None
    bptt_steps: Optional[int] = None
    return_sequences: bool = False

    def validate(self, index: int = 0) -> None:
        where = f"layer {index} ({self.type.value})"

        def positive(name: str, value) -> None:
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                raise InvalidSpec(f"{where}: {name} must be a positive integer, got {value!r}")

        if self.init not in INIT_POLICIES:
            raise InvalidSpec(f"{where}: unknown init policy {self.init!r}")

        if self.type is LayerKind.DENSE:
            positive('units', self.units)
            if self.dropout_rate is not None and not 0.0 <= self.dropout_rate < 1.0:
                raise InvalidSpec(f"{where}: dropout_rate must be in [0, 1)")
        elif self.type is LayerKind.CONV:
            positive('filters', self.filters)
            positive('kernel_size', self.kernel_size)
            if self.stride is not None:
                positive('stride', self.stride)
            if self.padding not in PADDING_MODES:
                raise InvalidSpec(f"{where}: padding must be one of {PADDING_MODES}")
        elif self.type is LayerKind.POOL:
            positive('pool_size', self.pool_size)
            if self.stride is not None:
                positive('stride', self.stride)
            if self.mode not in POOL_MODES:
                raise InvalidSpec(f"{where}: mode must be one of {POOL_MODES}")
        elif self.type is LayerKind.RECURRENT:
            positive('hidden_size', self.hidden_size)
            positive('units', self.units)
            if self.bptt_steps is not None:
                positive('bptt_steps', self.bptt_steps)


@dataclass(frozen=True)
class OptimizerSpec:
    name: str = 'sgd'
    learning_rate: float = 0.1
    beta1: Optional[float] = None
    beta2: Optional[float] = None


@dataclass(frozen=True)
class EncoderSpec:
    name: str = 'identity'
    args: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, 'args', _freeze_mapping(self.args))


@dataclass(frozen=True)
class MetricSpec:
    name: str = 'accuracy'
    args: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, 'args', _freeze_mapping(self.args))


@dataclass(frozen=True)
class NetworkSpec:
    """
    Network topology and hyperparameters for one benchmarked configuration.

    Attributes:
        spec_id: Identifier (the spec file's stem)
        kind: Architecture family
        layers: Ordered layer descriptors, input side first
        loss: Cost function name
        optimizer: Default optimizer settings
        encoder: Output encoder settings
        metric: Evaluation metric settings
        seed: Pins weight initialization for every job of this spec
        load_error: Why the spec file could not be read; such a spec never
            validates, so each of its jobs is reported as failed
    """

    spec_id: str
    kind: ArchitectureKind
    layers: Tuple[LayerSpec, ...]
    loss: str = 'mse'
    optimizer: OptimizerSpec = field(default_factory=OptimizerSpec)
    encoder: EncoderSpec = field(default_factory=EncoderSpec)
    metric: MetricSpec = field(default_factory=MetricSpec)
    seed: Optional[int] = None
    load_error: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, 'layers', tuple(self.layers))

    def validate(self) -> None:
        """
        Check the layer sequence is consistent with the architecture kind.

        Raises:
            InvalidSpec: On any structural problem
        """
        if self.load_error is not None:
            raise InvalidSpec(self.load_error)
        if not self.layers:
            raise InvalidSpec(f"Network spec '{self.spec_id}' has no layers")

        for index, layer in enumerate(self.layers):
            layer.validate(index)

        kinds = [layer.type for layer in self.layers]

        if self.kind is ArchitectureKind.FFNN:
            if any(k is not LayerKind.DENSE for k in kinds):
                raise InvalidSpec(
                    f"FFNN spec '{self.spec_id}' may only contain dense layers"
                )
        elif self.kind is ArchitectureKind.CNN:
            if LayerKind.CONV not in kinds:
                raise InvalidSpec(f"CNN spec '{self.spec_id}' needs a conv layer")
            if LayerKind.RECURRENT in kinds:
                raise InvalidSpec(f"CNN spec '{self.spec_id}' cannot contain recurrent layers")
            self._require_prefix(kinds, (LayerKind.CONV, LayerKind.POOL))
        elif self.kind is ArchitectureKind.RNN:
            if LayerKind.RECURRENT not in kinds:
                raise InvalidSpec(f"RNN spec '{self.spec_id}' needs a recurrent layer")
            if LayerKind.CONV in kinds or LayerKind.POOL in kinds:
                raise InvalidSpec(f"RNN spec '{self.spec_id}' cannot contain conv/pool layers")
            self._require_prefix(kinds, (LayerKind.RECURRENT,))
            # only the last recurrent layer may collapse the time axis
            recurrent = [l for l in self.layers if l.type is LayerKind.RECURRENT]
            if any(not l.return_sequences for l in recurrent[:-1]):
                raise InvalidSpec(
                    f"RNN spec '{self.spec_id}': stacked recurrent layers must "
                    "return sequences"
                )

        if self.optimizer.learning_rate is not None and self.optimizer.learning_rate <= 0:
            raise InvalidSpec(f"Spec '{self.spec_id}': learning_rate must be positive")
        if self.seed is not None and (not isinstance(self.seed, int) or self.seed < 0):
            raise InvalidSpec(f"Spec '{self.spec_id}': seed must be a non-negative integer")

    def _require_prefix(self, kinds, leading) -> None:
        # all ``leading`` kinds must come before the first dense layer
        seen_dense = False
        for k in kinds:
            if k is LayerKind.DENSE:
                seen_dense = True
            elif k in leading and seen_dense:
                raise InvalidSpec(
                    f"Spec '{self.spec_id}': {k.value} layer cannot follow a dense layer"
                )


def _read_only(array: np.ndarray) -> np.ndarray:
    array = np.array(array, dtype=DTYPE, copy=True)
    array.setflags(write=False)
    return array


@dataclass(frozen=True, eq=False)
class Dataset:
    """
    Paired input/expected-output examples split into training and test sets.

    The first axis of every array indexes examples. One-dimensional output
    arrays are treated as a single output column. All arrays are copied and
    made read-only on construction.
    """

    dataset_id: str
    train_inputs: np.ndarray
    train_outputs: np.ndarray
    test_inputs: np.ndarray
    test_outputs: np.ndarray

    def __post_init__(self):
        for name in ('train_inputs', 'train_outputs', 'test_inputs', 'test_outputs'):
            try:
                array = as_tensor(getattr(self, name))
            except (TypeError, ValueError) as e:
                raise InvalidDataset(
                    f"Dataset '{self.dataset_id}': {name} is not numeric: {e}"
                ) from e
            if name.endswith('outputs') and array.ndim == 1:
                array = array[:, None]
            object.__setattr__(self, name, _read_only(array))

    @property
    def input_shape(self) -> Tuple[int, ...]:
        """Shape of a single input example."""
        return tuple(self.train_inputs.shape[1:])

    @property
    def train_size(self) -> int:
        return int(self.train_inputs.shape[0])

    @property
    def test_size(self) -> int:
        return int(self.test_inputs.shape[0])

    def validate(self) -> None:
        """
        Check example counts, example shapes and values.

        Raises:
            InvalidDataset: On any inconsistency
        """
        if self.train_inputs.ndim < 2 or self.test_inputs.ndim < 2:
            raise InvalidDataset(
                f"Dataset '{self.dataset_id}': inputs need an example axis "
                "and at least one feature axis"
            )
        if self.train_size == 0:
            raise InvalidDataset(f"Dataset '{self.dataset_id}' has no training examples")
        if self.test_size == 0:
            raise InvalidDataset(f"Dataset '{self.dataset_id}' has no test examples")
        if self.train_inputs.shape[0] != self.train_outputs.shape[0]:
            raise InvalidDataset(
                f"Number of rows for training inputs ({self.train_inputs.shape[0]}) "
                f"!= number of rows for training outputs ({self.train_outputs.shape[0]})"
            )
        if self.test_inputs.shape[0] != self.test_outputs.shape[0]:
            raise InvalidDataset(
                f"Number of rows for validation inputs ({self.test_inputs.shape[0]}) "
                f"!= number of rows for validation outputs ({self.test_outputs.shape[0]})"
            )
        if self.train_inputs.shape[1:] != self.test_inputs.shape[1:]:
            raise InvalidDataset(
                f"Dataset '{self.dataset_id}': training examples have shape "
                f"{self.train_inputs.shape[1:]} but test examples have "
                f"{self.test_inputs.shape[1:]}"
            )
        if self.train_outputs.shape[1:] != self.test_outputs.shape[1:]:
            raise InvalidDataset(
                f"Dataset '{self.dataset_id}': training and test outputs differ in shape"
            )
        for name in ('train_inputs', 'train_outputs', 'test_inputs', 'test_outputs'):
            if not np.isfinite(getattr(self, name)).all():
                raise InvalidDataset(
                    f"Dataset '{self.dataset_id}': {name} contains NaN or infinite values"
                )
