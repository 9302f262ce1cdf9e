"""
reporting.py
~~~~~~~~~~~~

Tabular and graphical output for a finished benchmark.

Results and aggregates become pandas DataFrames written as CSV; learning
curves are drawn with matplotlib on the non-GUI ``Agg`` backend.
"""

import logging
import os
from typing import Dict, Iterable, Optional

import pandas as pd

# Use non-GUI backend for matplotlib (no display on benchmark machines)
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

from nnbench.results import RunResult, RunStatus
from nnbench.statistics import AggregateStatistics

logger = logging.getLogger(__name__)

RESULT_COLUMNS = [
    'spec_id', 'dataset_id', 'repetition', 'status', 'reason',
    'final_accuracy', 'metric_passed', 'epochs_run', 'duration', 'stop_reason',
]

AGGREGATE_COLUMNS = [
    'spec_id', 'dataset_id', 'runs', 'completed', 'accuracy_mean',
    'accuracy_variance', 'epochs_mean', 'epochs_variance', 'passed',
    'failures', 'diverged', 'failure_reasons',
]


def results_frame(results: Iterable[RunResult]) -> pd.DataFrame:
    """One row per RunResult, in the given order."""
    return pd.DataFrame([r.to_dict() for r in results], columns=RESULT_COLUMNS)


def aggregates_frame(aggregates: Iterable[AggregateStatistics]) -> pd.DataFrame:
    """One row per (spec, dataset) group."""
    return pd.DataFrame([a.to_dict() for a in aggregates], columns=AGGREGATE_COLUMNS)


def history_frame(results: Iterable[RunResult]) -> pd.DataFrame:
    """Long-format epoch history: one row per recorded epoch per run."""
    rows = [
        {
            'spec_id': r.job_id.spec_id,
            'dataset_id': r.job_id.dataset_id,
            'repetition': r.job_id.repetition,
            'epoch': record.epoch,
            'loss': record.loss,
            'accuracy': record.accuracy,
        }
        for r in results
        for record in r.history
    ]
    return pd.DataFrame(rows, columns=['spec_id', 'dataset_id', 'repetition',
                                       'epoch', 'loss', 'accuracy'])


def write_reports(report, output_dir: str, prefix: str = '') -> Dict[str, str]:
    """
    Write results, aggregates and histories of a BenchmarkReport as CSV.

    Args:
        report: Finished BenchmarkReport
        output_dir: Directory for the CSV files (created if missing)
        prefix: Optional filename prefix

    Returns:
        dict: Table name -> written file path
    """
    os.makedirs(output_dir, exist_ok=True)
    tables = {
        'results': results_frame(report.results),
        'aggregates': aggregates_frame(report.aggregates),
        'history': history_frame(report.results),
    }
    paths = {}
    for name, frame in tables.items():
        path = os.path.join(output_dir, f"{prefix}{name}.csv")
        frame.to_csv(path, index=False)
        paths[name] = path
        logger.info(f"Wrote {len(frame)} rows to {path}")
    return paths


def plot_learning_curves(results: Iterable[RunResult], path: str,
                         title: Optional[str] = None) -> Optional[str]:
    """
    Plot test accuracy per epoch for every completed run, one line per run.

    Args:
        results: RunResults with history
        path: Output image path (format from the extension)
        title: Figure title

    Returns:
        str: ``path`` once written, or None when no run has history
    """
    frame = history_frame(r for r in results if r.status is RunStatus.COMPLETED)
    if frame.empty:
        logger.warning("No completed run has history; skipping learning-curve plot")
        return None

    fig, (ax_acc, ax_loss) = plt.subplots(1, 2, figsize=(12, 4.5))
    try:
        for (spec_id, dataset_id, repetition), run in frame.groupby(
                ['spec_id', 'dataset_id', 'repetition'], sort=True):
            label = f"{spec_id}/{dataset_id}#{repetition}"
            ax_acc.plot(run['epoch'], run['accuracy'], label=label, linewidth=1)
            ax_loss.plot(run['epoch'], run['loss'], label=label, linewidth=1)

        ax_acc.set_xlabel('epoch')
        ax_acc.set_ylabel('test accuracy')
        ax_acc.set_ylim(-0.02, 1.02)
        ax_loss.set_xlabel('epoch')
        ax_loss.set_ylabel('training loss')
        ax_loss.set_yscale('log')
        if frame.groupby(['spec_id', 'dataset_id', 'repetition']).ngroups <= 12:
            ax_acc.legend(fontsize='small')
        if title:
            fig.suptitle(title)

        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        fig.savefig(path, bbox_inches='tight')
    finally:
        plt.close(fig)

    logger.info(f"Saved learning curves to {path}")
    return path
