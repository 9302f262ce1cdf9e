"""
loader.py
~~~~~~~~~

Load network specifications and datasets from directories.

Network spec files are JSON::

    {
        "kind": "ffnn",
        "cost": "mse",
        "layers": [{"type": "dense", "neurons": 3, "activation": "sigmoid"}],
        "optimizer": {"name": "sgd", "learning_rate": 0.5, "beta1": 0.9},
        "encoder": {"name": "threshold", "args": {}},
        "metric": {"name": "accuracy", "args": {"min": 1.0}},
        "seed": 7
    }

Dataset files are JSON ``{"inputs": [...], "outputs": [...], "shape": [...]}``
or ``.npz`` archives with ``inputs``/``outputs`` arrays. A Dataset pairs
the training and test files that share a filename stem. A file holding
``train_inputs``, ``train_outputs``, ``test_inputs`` and ``test_outputs``
is a complete dataset on its own and needs no test directory.

A spec file that cannot be parsed becomes a placeholder spec carrying the
error, so its jobs are still enumerated and each one is reported as
failed. Dataset files that cannot be read are logged and skipped.
Semantic checks are left to each job so one bad file only fails its own
jobs.
"""

import json
import logging
import os
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from nnbench.errors import InvalidDataset, InvalidSpec
from nnbench.specs import (
    ArchitectureKind,
    Dataset,
    EncoderSpec,
    LayerKind,
    LayerSpec,
    MetricSpec,
    NetworkSpec,
    OptimizerSpec,
)

logger = logging.getLogger(__name__)

SPEC_EXTENSIONS = ('.json',)
DATASET_EXTENSIONS = ('.json', '.npz')

# JSON key -> LayerSpec field
_LAYER_ALIASES = {
    'neurons': 'units',
    'dropout': 'dropout_rate',
    'kernel': 'kernel_size',
    'hidden': 'hidden_size',
    'channels': 'filters',
}

_LAYER_FIELDS = set(LayerSpec.__dataclass_fields__)


def _stem(path: str) -> str:
    return os.path.splitext(os.path.basename(path))[0]


def _list_files(directory: str, extensions: Tuple[str, ...]) -> List[str]:
    if not os.path.isdir(directory):
        raise FileNotFoundError(f"Not a directory: {directory}")
    return sorted(
        os.path.join(directory, name)
        for name in os.listdir(directory)
        if os.path.splitext(name)[1].lower() in extensions
        and os.path.isfile(os.path.join(directory, name))
    )


def parse_layer(data: Dict[str, Any], index: int = 0) -> LayerSpec:
    """Build a LayerSpec from its JSON object."""
    if not isinstance(data, dict):
        raise InvalidSpec(f"layer {index} must be an object, got {type(data).__name__}")
    values = {_LAYER_ALIASES.get(k, k): v for k, v in data.items()}
    unknown = set(values) - _LAYER_FIELDS
    if unknown:
        raise InvalidSpec(f"layer {index}: unknown keys {sorted(unknown)}")
    try:
        values['type'] = LayerKind(str(values.get('type', 'dense')).lower())
    except ValueError:
        raise InvalidSpec(f"layer {index}: unknown layer type {values.get('type')!r}") from None
    return LayerSpec(**values)


def parse_network_spec(data: Dict[str, Any], spec_id: str) -> NetworkSpec:
    """
    Build a NetworkSpec from the decoded JSON document.

    Args:
        data: Decoded spec file
        spec_id: Identifier for the spec (normally the filename stem)

    Raises:
        InvalidSpec: If required keys are missing or have the wrong type
    """
    if not isinstance(data, dict):
        raise InvalidSpec(f"Spec '{spec_id}' must be a JSON object")

    try:
        kind = ArchitectureKind(str(data.get('kind', 'ffnn')).lower())
    except ValueError:
        raise InvalidSpec(f"Spec '{spec_id}': unknown kind {data.get('kind')!r}") from None

    layers = data.get('layers')
    if not isinstance(layers, list):
        raise InvalidSpec(f"Spec '{spec_id}': 'layers' must be a list")

    optimizer = data.get('optimizer') or {}
    encoder = data.get('encoder') or {}
    metric = data.get('metric') or {}
    for name, section in (('optimizer', optimizer), ('encoder', encoder), ('metric', metric)):
        if not isinstance(section, dict):
            raise InvalidSpec(f"Spec '{spec_id}': '{name}' must be an object")

    ignored = set(data) - {'kind', 'cost', 'loss', 'layers', 'optimizer',
                           'encoder', 'metric', 'seed'}
    if ignored:
        logger.warning(f"Spec '{spec_id}': ignoring keys {sorted(ignored)}")

    try:
        return NetworkSpec(
            spec_id=spec_id,
            kind=kind,
            layers=tuple(parse_layer(layer, i) for i, layer in enumerate(layers)),
            loss=data.get('cost', data.get('loss', 'mse')),
            optimizer=OptimizerSpec(
                name=optimizer.get('name', 'sgd'),
                learning_rate=float(optimizer.get('learning_rate', 0.1)),
                beta1=optimizer.get('beta1'),
                beta2=optimizer.get('beta2'),
            ),
            encoder=EncoderSpec(name=encoder.get('name', 'identity'),
                                args=encoder.get('args') or {}),
            metric=MetricSpec(name=metric.get('name', 'accuracy'),
                              args=metric.get('args') or {}),
            seed=data.get('seed'),
        )
    except (TypeError, ValueError) as e:
        raise InvalidSpec(f"Spec '{spec_id}': {e}") from e


def load_network_spec(path: str) -> NetworkSpec:
    """Read one spec file. Raises InvalidSpec on bad content."""
    with open(path, 'r', encoding='utf-8') as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise InvalidSpec(f"{path}: invalid JSON: {e}") from e
    return parse_network_spec(data, _stem(path))


def unreadable_spec(spec_id: str, error: str) -> NetworkSpec:
    """Placeholder for a spec file that could not be parsed."""
    return NetworkSpec(spec_id=spec_id, kind=ArchitectureKind.FFNN, layers=(),
                       load_error=error)


def load_network_specs(directory: str) -> List[NetworkSpec]:
    """
    Load every spec in ``directory``, sorted by identifier.

    Files that fail to parse are returned as ``unreadable_spec``
    placeholders, so their jobs show up as failed runs.
    """
    specs = []
    for path in _list_files(directory, SPEC_EXTENSIONS):
        try:
            specs.append(load_network_spec(path))
        except (OSError, InvalidSpec) as e:
            logger.error(f"Cannot read network spec {path}: {e}")
            specs.append(unreadable_spec(_stem(path), f"Unreadable spec file {path}: {e}"))
    logger.info(f"Loaded {len(specs)} network specs from {directory}")
    return specs


def _reshape_inputs(inputs: np.ndarray, shape: Optional[List[int]], path: str) -> np.ndarray:
    if shape is None:
        return inputs
    try:
        return inputs.reshape((inputs.shape[0],) + tuple(int(d) for d in shape))
    except (TypeError, ValueError) as e:
        raise InvalidDataset(f"{path}: cannot reshape inputs to {shape}: {e}") from e


def _read_arrays(path: str) -> Dict[str, Any]:
    if path.lower().endswith('.npz'):
        with np.load(path, allow_pickle=False) as data:
            return {key: data[key] for key in data.files}
    with open(path, 'r', encoding='utf-8') as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise InvalidDataset(f"{path}: invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise InvalidDataset(f"{path}: dataset file must be a JSON object")
    return data


def _as_array(data: Dict[str, Any], key: str, path: str) -> np.ndarray:
    if key not in data:
        raise InvalidDataset(f"{path}: missing '{key}'")
    try:
        return np.asarray(data[key], dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise InvalidDataset(f"{path}: '{key}' is not a numeric array: {e}") from e


def load_examples(path: str) -> Tuple[np.ndarray, np.ndarray]:
    """Read one ``inputs``/``outputs`` file, applying its optional ``shape``."""
    data = _read_arrays(path)
    shape = data.get('shape')
    if isinstance(shape, np.ndarray):
        shape = shape.tolist()
    inputs = _reshape_inputs(_as_array(data, 'inputs', path), shape, path)
    return inputs, _as_array(data, 'outputs', path)


def load_combined_dataset(path: str) -> Dataset:
    """Read a file holding both the training and the test split."""
    data = _read_arrays(path)
    shape = data.get('shape')
    if isinstance(shape, np.ndarray):
        shape = shape.tolist()
    return Dataset(
        dataset_id=_stem(path),
        train_inputs=_reshape_inputs(_as_array(data, 'train_inputs', path), shape, path),
        train_outputs=_as_array(data, 'train_outputs', path),
        test_inputs=_reshape_inputs(_as_array(data, 'test_inputs', path), shape, path),
        test_outputs=_as_array(data, 'test_outputs', path),
    )


def load_datasets(train_dir: str, test_dir: Optional[str] = None) -> List[Dataset]:
    """
    Pair training and test files by stem into Datasets.

    Args:
        train_dir: Directory of training files (or combined files)
        test_dir: Directory of test files; when None every file in
            ``train_dir`` must be a combined dataset

    Returns:
        List[Dataset]: Sorted by identifier. Unpaired or unreadable files
        are logged and skipped.
    """
    datasets = []
    train_files = {_stem(p): p for p in _list_files(train_dir, DATASET_EXTENSIONS)}

    if test_dir is None:
        for stem, path in sorted(train_files.items()):
            try:
                datasets.append(load_combined_dataset(path))
            except (OSError, ValueError, InvalidDataset) as e:
                logger.error(f"Skipping dataset {path}: {e}")
        logger.info(f"Loaded {len(datasets)} datasets from {train_dir}")
        return datasets

    test_files = {_stem(p): p for p in _list_files(test_dir, DATASET_EXTENSIONS)}
    for stem in sorted(set(train_files) ^ set(test_files)):
        where = train_dir if stem in train_files else test_dir
        logger.warning(f"Dataset '{stem}' only found in {where}; skipping")

    for stem in sorted(set(train_files) & set(test_files)):
        try:
            train_inputs, train_outputs = load_examples(train_files[stem])
            test_inputs, test_outputs = load_examples(test_files[stem])
            datasets.append(Dataset(stem, train_inputs, train_outputs,
                                    test_inputs, test_outputs))
        except (OSError, ValueError, InvalidDataset) as e:
            logger.error(f"Skipping dataset '{stem}': {e}")
    logger.info(f"Loaded {len(datasets)} datasets from {train_dir} and {test_dir}")
    return datasets
