#!/usr/bin/env python3
"""
Generate a small example benchmark: network specs plus datasets.

Three problems are written, one per architecture kind, each as a spec and
a dataset sharing the same name so they pair up with ``--pairing matched``:

- xor: 2-input XOR for a feed-forward network (JSON)
- bars: 6x6 images of a vertical or horizontal bar for a CNN (NPZ)
- majority: 5-step bit sequences, label 1 when most bits are set, for an RNN (JSON)

Usage:
    python scripts/generate_example_data.py [--output-dir example] [--seed 0]
    python -m nnbench -n example/specs -d example/train -t example/test --pairing matched

The script will:
1. Write the network specs
2. Write the training and test datasets
3. Verify everything loads back through nnbench.loader
"""

import argparse
import json
import os
import sys
from typing import Dict, Tuple

import numpy as np

SPECS: Dict[str, dict] = {
    'xor': {
        'kind': 'ffnn',
        'cost': 'mse',
        'layers': [
            {'type': 'dense', 'neurons': 4, 'activation': 'sigmoid'},
            {'type': 'dense', 'neurons': 1, 'activation': 'sigmoid'},
        ],
        'optimizer': {'name': 'sgd', 'learning_rate': 0.5, 'beta1': 0.9},
        'encoder': {'name': 'threshold', 'args': {}},
        'metric': {'name': 'accuracy', 'args': {'min': 1.0}},
    },
    'bars': {
        'kind': 'cnn',
        'cost': 'cross_entropy',
        'layers': [
            {'type': 'conv', 'filters': 4, 'kernel_size': 3, 'padding': 'same',
             'activation': 'relu', 'init': 'he'},
            {'type': 'pool', 'pool_size': 2, 'mode': 'max'},
            {'type': 'dense', 'neurons': 2, 'activation': 'softmax', 'init': 'xavier'},
        ],
        'optimizer': {'name': 'adam', 'learning_rate': 0.01},
        'encoder': {'name': 'one_hot', 'args': {'max': 1}},
        'metric': {'name': 'accuracy', 'args': {'min': 0.95}},
    },
    'majority': {
        'kind': 'rnn',
        'cost': 'mse',
        'layers': [
            {'type': 'recurrent', 'hidden_size': 8, 'units': 4, 'activation': 'tanh',
             'init': 'xavier', 'bptt_steps': 5},
            {'type': 'dense', 'neurons': 1, 'activation': 'sigmoid'},
        ],
        'optimizer': {'name': 'adam', 'learning_rate': 0.02},
        'encoder': {'name': 'threshold', 'args': {}},
        'metric': {'name': 'accuracy', 'args': {'min': 0.95}},
    },
}


def make_xor() -> Tuple[np.ndarray, np.ndarray]:
    inputs = np.array([[0, 0], [0, 1], [1, 0], [1, 1]], dtype=np.float64)
    outputs = np.array([[0], [1], [1], [0]], dtype=np.float64)
    return inputs, outputs


def make_bars(count: int, rng: np.random.Generator) -> Tuple[np.ndarray, np.ndarray]:
    """Noisy 1x6x6 images with one bright row (label 0) or column (label 1)."""
    images = rng.uniform(0.0, 0.2, size=(count, 1, 6, 6))
    labels = rng.integers(0, 2, size=count)
    positions = rng.integers(0, 6, size=count)
    for i, (label, pos) in enumerate(zip(labels, positions)):
        if label == 0:
            images[i, 0, pos, :] = 1.0
        else:
            images[i, 0, :, pos] = 1.0
    return images, labels.astype(np.float64)


def make_majority(count: int, steps: int,
                  rng: np.random.Generator) -> Tuple[np.ndarray, np.ndarray]:
    bits = rng.integers(0, 2, size=(count, steps, 1)).astype(np.float64)
    labels = (bits.sum(axis=(1, 2)) > steps / 2).astype(np.float64)[:, None]
    return bits, labels


def write_json(path: str, payload: dict) -> None:
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(payload, f, indent=2)


def write_split(directory: str, name: str, inputs: np.ndarray,
                outputs: np.ndarray, fmt: str = 'json') -> str:
    """Write one split; multi-axis examples are flattened with a ``shape``."""
    shape = list(inputs.shape[1:])
    flat = inputs.reshape(inputs.shape[0], -1)
    if fmt == 'npz':
        path = os.path.join(directory, f"{name}.npz")
        np.savez_compressed(path, inputs=flat, outputs=outputs, shape=np.array(shape))
    else:
        path = os.path.join(directory, f"{name}.json")
        payload = {'inputs': flat.tolist(), 'outputs': outputs.tolist()}
        if len(shape) > 1:
            payload['shape'] = shape
        write_json(path, payload)
    print(f"   - {path} ({inputs.shape[0]} examples)")
    return path


def verify(output_dir: str) -> bool:
    """Load everything back the way the benchmark will."""
    print(f"\n🔍 Verifying example data...")
    sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    from nnbench.loader import load_datasets, load_network_specs

    specs = load_network_specs(os.path.join(output_dir, 'specs'))
    datasets = load_datasets(os.path.join(output_dir, 'train'),
                             os.path.join(output_dir, 'test'))
    for spec in specs:
        spec.validate()
    for dataset in datasets:
        dataset.validate()
        print(f"   - {dataset.dataset_id}: input shape {dataset.input_shape}, "
              f"{dataset.train_size} train / {dataset.test_size} test")

    assert {s.spec_id for s in specs} == set(SPECS), "Specs did not all load!"
    assert {d.dataset_id for d in datasets} == set(SPECS), "Datasets did not all load!"
    print("✅ Verification passed!")
    return True


def main():
    parser = argparse.ArgumentParser(description="Generate example specs and datasets")
    parser.add_argument('--output-dir', default='example',
                        help="Root directory for specs/, train/ and test/ (default: example)")
    parser.add_argument('--seed', type=int, default=0, help="Random seed (default: 0)")
    args = parser.parse_args()

    print("=" * 60)
    print("nnbench example data generator")
    print("=" * 60)

    rng = np.random.default_rng(args.seed)
    dirs = {name: os.path.join(args.output_dir, name) for name in ('specs', 'train', 'test')}
    for directory in dirs.values():
        os.makedirs(directory, exist_ok=True)

    try:
        print(f"\n📝 Writing network specs")
        for name, spec in SPECS.items():
            path = os.path.join(dirs['specs'], f"{name}.json")
            write_json(path, spec)
            print(f"   - {path}")

        print(f"\n💾 Writing datasets")
        xor_inputs, xor_outputs = make_xor()
        write_split(dirs['train'], 'xor', xor_inputs, xor_outputs)
        write_split(dirs['test'], 'xor', xor_inputs, xor_outputs)

        bars_inputs, bars_outputs = make_bars(160, rng)
        write_split(dirs['train'], 'bars', bars_inputs[:120], bars_outputs[:120], fmt='npz')
        write_split(dirs['test'], 'bars', bars_inputs[120:], bars_outputs[120:], fmt='npz')

        seq_inputs, seq_outputs = make_majority(200, 5, rng)
        write_split(dirs['train'], 'majority', seq_inputs[:150], seq_outputs[:150])
        write_split(dirs['test'], 'majority', seq_inputs[150:], seq_outputs[150:])

        verify(args.output_dir)

        print("\n" + "=" * 60)
        print("✅ EXAMPLE DATA READY!")
        print("=" * 60)
        print(f"\n📝 Next steps:")
        print(f"   python -m nnbench -n {dirs['specs']} -d {dirs['train']} "
              f"-t {dirs['test']} --pairing matched -r 3 -e 200")

    except Exception as e:
        print(f"\n❌ Error generating example data: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)


if __name__ == '__main__':
    main()
