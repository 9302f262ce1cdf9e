"""
test_cli.py
~~~~~~~~~~~

Integration tests for the nnbench command line.
"""

import json
import os
import sys

import pandas as pd
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from nnbench.cli import build_parser, main
from nnbench.result_store import ResultDatabase
from nnbench.results import JobId

AND_SPEC = {
    'kind': 'ffnn',
    'cost': 'mse',
    'layers': [
        {'type': 'dense', 'neurons': 3, 'activation': 'tanh'},
        {'type': 'dense', 'neurons': 1, 'activation': 'sigmoid'},
    ],
    'optimizer': {'name': 'sgd', 'learning_rate': 0.5},
    'encoder': {'name': 'threshold'},
    'metric': {'name': 'accuracy', 'args': {'min': 1.0}},
}

AND_DATA = {
    'train_inputs': [[0, 0], [0, 1], [1, 0], [1, 1]],
    'train_outputs': [0, 0, 0, 1],
    'test_inputs': [[0, 0], [0, 1], [1, 0], [1, 1]],
    'test_outputs': [0, 0, 0, 1],
}


@pytest.fixture
def workspace(tmp_path):
    specs = tmp_path / 'specs'
    data = tmp_path / 'data'
    specs.mkdir()
    data.mkdir()
    (specs / 'and_net.json').write_text(json.dumps(AND_SPEC))
    (data / 'and.json').write_text(json.dumps(AND_DATA))
    return tmp_path


@pytest.mark.integration
class TestMain:
    """Test end-to-end command-line runs."""

    def test_run_writes_reports(self, workspace, capsys):
        """Test that a run produces CSV reports, a database and a plot."""
        out = workspace / 'out'
        db = workspace / 'out' / 'bench.db'
        plot = workspace / 'out' / 'curves.png'

        code = main([
            '-n', str(workspace / 'specs'), '-d', str(workspace / 'data'),
            '-o', str(out), '--db', str(db), '--plot', str(plot),
            '-j', '2', '-r', '2', '-e', '20', '--snapshot-interval', '5',
            '--log-level', 'WARNING',
        ])

        assert code == 0
        results = pd.read_csv(out / 'results.csv')
        assert len(results) == 2
        assert set(results['spec_id']) == {'and_net'}
        assert os.path.exists(out / 'aggregates.csv')
        assert os.path.exists(plot)

        database = ResultDatabase(str(db))
        assert len(database.list_runs()) == 2
        assert len(database.list_aggregates()) == 1
        for run in database.list_runs():
            job_id = JobId(run['spec_id'], run['dataset_id'], run['repetition'])
            assert database.final_snapshot_epoch(job_id) == run['epochs_run']

        printed = capsys.readouterr().out
        assert 'and_net' in printed
        assert 'runs completed' in printed

    def test_unreadable_spec_is_reported_as_failed(self, workspace):
        """Test that a spec file that cannot be parsed yields failed runs."""
        broken = dict(AND_SPEC, layers=[{'type': 'lstm', 'neurons': 1}])
        (workspace / 'specs' / 'broken.json').write_text(json.dumps(broken))
        out = workspace / 'out'

        code = main([
            '-n', str(workspace / 'specs'), '-d', str(workspace / 'data'),
            '-o', str(out), '-r', '2', '-e', '5', '--log-level', 'CRITICAL',
        ])

        assert code == 0
        results = pd.read_csv(out / 'results.csv')
        failed = results[results['spec_id'] == 'broken']
        assert len(failed) == 2
        assert set(failed['status']) == {'failed'}
        assert all("unknown layer type 'lstm'" in reason for reason in failed['reason'])
        aggregates = pd.read_csv(out / 'aggregates.csv')
        assert set(aggregates['spec_id']) == {'and_net', 'broken'}

    def test_empty_spec_directory(self, workspace):
        """Test that nothing to benchmark exits with status 1."""
        empty = workspace / 'empty'
        empty.mkdir()

        assert main(['-n', str(empty), '-d', str(workspace / 'data'),
                     '-o', str(workspace / 'out')]) == 1

    def test_missing_directory(self, workspace):
        """Test that a missing input directory exits with status 1."""
        assert main(['-n', str(workspace / 'nope'), '-d', str(workspace / 'data')]) == 1

    def test_invalid_option_value(self, workspace):
        """Test that an out-of-range option is a usage error."""
        with pytest.raises(SystemExit) as exc_info:
            main(['-n', str(workspace / 'specs'), '-d', str(workspace / 'data'),
                  '-r', '0'])
        assert exc_info.value.code == 2


@pytest.mark.unit
class TestParser:
    """Test argument parsing."""

    def test_defaults_are_unset(self):
        """Test that unset run options stay None so config defaults apply."""
        args = build_parser().parse_args(['-n', 'specs', '-d', 'train'])

        assert args.test is None
        assert args.max_epochs is None
        assert args.shuffle is None
        assert args.output_dir == 'results'

    def test_run_options(self):
        """Test short and long option names."""
        args = build_parser().parse_args([
            '-n', 'specs', '-d', 'train', '-t', 'test', '-j', '4', '-e', '50',
            '-b', '8', '-s', '--optimizer', 'adam', '--seed', '3',
        ])

        assert (args.concurrency, args.max_epochs, args.batch_size) == (4, 50, 8)
        assert args.shuffle is True
        assert args.optimizer == 'adam'
        assert args.base_seed == 3

    def test_required_options(self):
        """Test that spec and training directories are required."""
        with pytest.raises(SystemExit):
            build_parser().parse_args(['-n', 'specs'])
