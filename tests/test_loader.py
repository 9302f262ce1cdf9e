"""
test_loader.py
~~~~~~~~~~~~~~

Tests for reading network specs and datasets from directories.
"""

import json
import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from nnbench.errors import InvalidSpec
from nnbench.loader import (
    load_combined_dataset,
    load_datasets,
    load_network_spec,
    load_network_specs,
    parse_layer,
    parse_network_spec,
)
from nnbench.specs import ArchitectureKind, LayerKind


def write_json(path, data):
    with open(path, 'w') as f:
        json.dump(data, f)
    return str(path)


@pytest.fixture
def spec_document():
    return {
        'kind': 'ffnn',
        'cost': 'mse',
        'layers': [
            {'type': 'dense', 'neurons': 3, 'activation': 'sigmoid', 'dropout': 0.1},
            {'type': 'dense', 'neurons': 1, 'activation': 'sigmoid'},
        ],
        'optimizer': {'name': 'adam', 'learning_rate': 0.01, 'beta1': 0.8, 'beta2': 0.99},
        'encoder': {'name': 'threshold', 'args': {}},
        'metric': {'name': 'accuracy', 'args': {'min': 0.9}},
        'seed': 7,
    }


@pytest.mark.unit
class TestNetworkSpecs:
    """Test spec parsing."""

    def test_parse_full_document(self, spec_document):
        """Test every section of a spec file."""
        spec = parse_network_spec(spec_document, 'xor')

        assert spec.spec_id == 'xor'
        assert spec.kind is ArchitectureKind.FFNN
        assert spec.loss == 'mse'
        assert [layer.units for layer in spec.layers] == [3, 1]
        assert spec.layers[0].dropout_rate == 0.1
        assert spec.optimizer.name == 'adam'
        assert spec.optimizer.beta2 == 0.99
        assert spec.encoder.name == 'threshold'
        assert spec.metric.args['min'] == 0.9
        assert spec.seed == 7
        spec.validate()

    def test_layer_aliases(self):
        """Test alternate key names for layer fields."""
        conv = parse_layer({'type': 'conv', 'channels': 4, 'kernel': 5})
        recurrent = parse_layer({'type': 'RECURRENT', 'hidden': 8, 'units': 2})

        assert (conv.type, conv.filters, conv.kernel_size) == (LayerKind.CONV, 4, 5)
        assert (recurrent.type, recurrent.hidden_size) == (LayerKind.RECURRENT, 8)

    def test_defaults(self):
        """Test defaults for omitted sections."""
        spec = parse_network_spec({'layers': [{'neurons': 1}]}, 'tiny')

        assert spec.kind is ArchitectureKind.FFNN
        assert spec.loss == 'mse'
        assert spec.optimizer.name == 'sgd'
        assert spec.encoder.name == 'identity'
        assert spec.metric.args == {}

    @pytest.mark.parametrize('document', [
        {'layers': [{'type': 'dense', 'neurons': 1, 'colour': 'red'}]},
        {'layers': [{'type': 'lstm'}]},
        {'kind': 'transformer', 'layers': []},
        {'layers': 'dense'},
        {'layers': [], 'optimizer': 'adam'},
        {'layers': [], 'optimizer': {'learning_rate': 'fast'}},
        [1, 2, 3],
    ])
    def test_malformed_documents(self, document):
        """Test that malformed documents raise InvalidSpec."""
        with pytest.raises(InvalidSpec):
            parse_network_spec(document, 'bad')

    def test_load_uses_file_stem(self, tmp_path, spec_document):
        """Test that a spec's identifier is its file stem."""
        path = write_json(tmp_path / 'my_net.json', spec_document)
        assert load_network_spec(path).spec_id == 'my_net'

    def test_directory_keeps_unreadable_files(self, tmp_path, spec_document):
        """Test that unreadable specs become placeholders that never validate."""
        write_json(tmp_path / 'b.json', spec_document)
        write_json(tmp_path / 'a.json', spec_document)
        write_json(tmp_path / 'c.json', {'layers': [{'bogus': 1}]})
        (tmp_path / 'd.json').write_text('{not json')
        (tmp_path / 'notes.txt').write_text('ignored')

        specs = load_network_specs(str(tmp_path))

        assert [spec.spec_id for spec in specs] == ['a', 'b', 'c', 'd']
        assert specs[0].load_error is None
        specs[0].validate()
        with pytest.raises(InvalidSpec, match="unknown keys"):
            specs[2].validate()
        with pytest.raises(InvalidSpec, match="invalid JSON"):
            specs[3].validate()

    def test_missing_directory(self, tmp_path):
        """Test that a missing directory raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            load_network_specs(str(tmp_path / 'nope'))


@pytest.mark.unit
class TestDatasets:
    """Test dataset loading and pairing."""

    @pytest.fixture
    def dirs(self, tmp_path):
        train = tmp_path / 'train'
        test = tmp_path / 'test'
        train.mkdir()
        test.mkdir()
        return train, test

    def test_pairs_by_stem(self, dirs):
        """Test that train and test files with one stem form a dataset."""
        train, test = dirs
        write_json(train / 'xor.json', {'inputs': [[0, 0], [1, 1]], 'outputs': [0, 0]})
        write_json(test / 'xor.json', {'inputs': [[0, 1]], 'outputs': [[1]]})
        write_json(train / 'orphan.json', {'inputs': [[0]], 'outputs': [0]})

        datasets = load_datasets(str(train), str(test))

        assert [d.dataset_id for d in datasets] == ['xor']
        xor = datasets[0]
        assert xor.train_size == 2
        assert xor.test_size == 1
        assert xor.train_outputs.shape == (2, 1)
        assert xor.input_shape == (2,)

    def test_shape_reshapes_flat_inputs(self, dirs):
        """Test that a 'shape' entry restores image inputs."""
        train, test = dirs
        flat = np.arange(2 * 16.0).reshape(2, 16).tolist()
        for directory in dirs:
            write_json(directory / 'img.json',
                       {'inputs': flat, 'outputs': [0, 1], 'shape': [1, 4, 4]})

        dataset = load_datasets(str(train), str(test))[0]

        assert dataset.input_shape == (1, 4, 4)
        assert dataset.train_inputs[1, 0, 0, 0] == 16.0

    def test_npz_files(self, dirs):
        """Test loading .npz splits."""
        train, test = dirs
        for directory in dirs:
            np.savez(directory / 'seq.npz', inputs=np.zeros((3, 5, 2)), outputs=np.ones(3))

        dataset = load_datasets(str(train), str(test))[0]

        assert dataset.dataset_id == 'seq'
        assert dataset.input_shape == (5, 2)

    def test_unreadable_file_is_skipped(self, dirs):
        """Test that a broken pair is logged and skipped."""
        train, test = dirs
        (train / 'bad.json').write_text('[')
        write_json(test / 'bad.json', {'inputs': [[0]], 'outputs': [0]})
        write_json(train / 'ok.json', {'inputs': [[0]], 'outputs': [0]})
        write_json(test / 'ok.json', {'inputs': [[1]], 'outputs': [1]})
        write_json(train / 'text.json', {'inputs': [['a']], 'outputs': [0]})
        write_json(test / 'text.json', {'inputs': [[1]], 'outputs': [1]})

        datasets = load_datasets(str(train), str(test))

        assert [d.dataset_id for d in datasets] == ['ok']

    def test_combined_file(self, tmp_path):
        """Test a single file holding both splits."""
        path = write_json(tmp_path / 'and.json', {
            'train_inputs': [[0, 0], [0, 1], [1, 0], [1, 1]],
            'train_outputs': [[0], [0], [0], [1]],
            'test_inputs': [[1, 1]],
            'test_outputs': [[1]],
        })

        dataset = load_combined_dataset(path)

        assert dataset.dataset_id == 'and'
        assert dataset.train_size == 4
        assert dataset.test_size == 1

    def test_combined_directory(self, tmp_path):
        """Test that without a test directory every file is a combined dataset."""
        write_json(tmp_path / 'and.json', {
            'train_inputs': [[0, 0]], 'train_outputs': [0],
            'test_inputs': [[1, 1]], 'test_outputs': [1],
        })
        write_json(tmp_path / 'split_only.json', {'inputs': [[0]], 'outputs': [0]})

        datasets = load_datasets(str(tmp_path))

        assert [d.dataset_id for d in datasets] == ['and']

    def test_datasets_are_read_only(self, tmp_path):
        """Test that loaded arrays cannot be modified."""
        path = write_json(tmp_path / 'd.json', {
            'train_inputs': [[0.0]], 'train_outputs': [0],
            'test_inputs': [[1.0]], 'test_outputs': [1],
        })
        dataset = load_combined_dataset(path)

        with pytest.raises(ValueError):
            dataset.train_inputs[0, 0] = 5.0

    def test_missing_test_directory(self, dirs, tmp_path):
        """Test that a missing test directory raises FileNotFoundError."""
        train, _ = dirs
        with pytest.raises(FileNotFoundError):
            load_datasets(str(train), str(tmp_path / 'missing'))
