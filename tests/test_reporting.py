"""
test_reporting.py
~~~~~~~~~~~~~~~~~

Tests for CSV reports and learning-curve plots.
"""

import os
import sys

import pandas as pd
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from nnbench.harness import BenchmarkReport
from nnbench.reporting import (
    AGGREGATE_COLUMNS,
    RESULT_COLUMNS,
    aggregates_frame,
    history_frame,
    plot_learning_curves,
    results_frame,
    write_reports,
)
from nnbench.results import EpochRecord, JobId, RunResult, RunStatus
from nnbench.statistics import StatisticsAggregator


@pytest.fixture
def results():
    history = tuple(EpochRecord(e, 1.0 / e, min(1.0, 0.3 * e)) for e in range(1, 5))
    return [
        RunResult(JobId('xor', 'xor', 1), RunStatus.COMPLETED, final_accuracy=1.0,
                  metric_passed=True, epochs_run=4, history=history,
                  stop_reason='metric_satisfied'),
        RunResult(JobId('xor', 'xor', 2), RunStatus.DIVERGED, reason='Loss became non-finite',
                  epochs_run=2, history=history[:2]),
        RunResult.failed(JobId('cnn', 'xor', 1), 'bad spec'),
    ]


@pytest.fixture
def report(results):
    aggregator = StatisticsAggregator()
    for r in results:
        aggregator.add(r)
    return BenchmarkReport(tuple(results), tuple(aggregator.report()), duration=0.5)


@pytest.mark.unit
class TestFrames:
    """Test DataFrame construction."""

    def test_results_frame(self, results):
        """Test one row per result with the documented columns."""
        frame = results_frame(results)

        assert list(frame.columns) == RESULT_COLUMNS
        assert len(frame) == 3
        assert list(frame['status']) == ['completed', 'diverged', 'failed']

    def test_aggregates_frame(self, report):
        """Test one row per (spec, dataset) group."""
        frame = aggregates_frame(report.aggregates)

        assert list(frame.columns) == AGGREGATE_COLUMNS
        assert list(zip(frame['spec_id'], frame['runs'])) == [('cnn', 1), ('xor', 2)]

    def test_history_frame(self, results):
        """Test long-format history rows."""
        frame = history_frame(results)

        assert len(frame) == 6
        assert list(frame[frame['repetition'] == 2]['epoch']) == [1, 2]

    def test_empty_frames_keep_columns(self):
        """Test that empty inputs still give the expected columns."""
        assert list(results_frame([]).columns) == RESULT_COLUMNS
        assert history_frame([]).empty


@pytest.mark.unit
class TestWriteReports:
    """Test CSV output."""

    def test_writes_csv_files(self, report, tmp_path):
        """Test that every table is written and readable."""
        output_dir = str(tmp_path / 'out')

        paths = write_reports(report, output_dir, prefix='run1_')

        assert set(paths) == {'results', 'aggregates', 'history'}
        assert os.path.basename(paths['results']) == 'run1_results.csv'
        results = pd.read_csv(paths['results'])
        assert len(results) == 3
        aggregates = pd.read_csv(paths['aggregates'])
        assert aggregates.loc[aggregates['spec_id'] == 'xor', 'diverged'].item() == 1
        assert len(pd.read_csv(paths['history'])) == 6


@pytest.mark.unit
class TestPlotLearningCurves:
    """Test learning-curve plots."""

    def test_plot_written(self, results, tmp_path):
        """Test that a PNG is saved for completed runs."""
        path = str(tmp_path / 'plots' / 'curves.png')

        assert plot_learning_curves(results, path, title='xor') == path
        assert os.path.getsize(path) > 0

    def test_no_history(self, tmp_path):
        """Test that nothing is drawn without completed history."""
        path = str(tmp_path / 'curves.png')

        assert plot_learning_curves([RunResult.failed(JobId('a', 'b', 1), 'x')], path) is None
        assert not os.path.exists(path)
