"""
cli.py
~~~~~~

Command-line entry point: load specs and datasets, run the benchmark,
write reports.

Environment:
    LOG_LEVEL: Logging level name (default INFO)
    NNBENCH_*: Configuration defaults, see ``BenchmarkConfig.from_env``
"""

import argparse
import logging
import os
import signal
import sys
from typing import List, Optional

from nnbench import __version__
from nnbench.config import OPTIMIZER_NAMES, PAIRINGS, SEED_POLICIES, BenchmarkConfig
from nnbench.errors import EnumerationError
from nnbench.harness import BenchmarkHarness
from nnbench.loader import load_datasets, load_network_specs
from nnbench.reporting import aggregates_frame, plot_learning_curves, write_reports
from nnbench.result_store import ResultDatabase, SnapshotStore

logger = logging.getLogger(__name__)


def configure_logging(level: Optional[str] = None) -> None:
    """
    Set up logging from ``level`` or the LOG_LEVEL environment variable.

    Third-party plotting logs are kept at WARNING.
    """
    log_level_str = (level or os.getenv('LOG_LEVEL', 'INFO')).upper()
    log_level = getattr(logging, log_level_str, logging.INFO)

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    for logger_name in ['matplotlib', 'PIL']:
        logging.getLogger(logger_name).setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='nnbench',
        description="Benchmark neural network configurations against datasets",
    )
    parser.add_argument('--version', action='version', version=f"%(prog)s {__version__}")

    inputs = parser.add_argument_group('inputs')
    inputs.add_argument('-n', '--specs', required=True,
                        help="Directory of network specification JSON files")
    inputs.add_argument('-d', '--train', required=True,
                        help="Directory of training dataset files")
    inputs.add_argument('-t', '--test',
                        help="Directory of test dataset files (omit when the "
                             "training files hold both splits)")

    outputs = parser.add_argument_group('outputs')
    outputs.add_argument('-o', '--output-dir', default='results',
                         help="Directory for CSV reports (default: results)")
    outputs.add_argument('--db', help="SQLite database for runs, aggregates and snapshots")
    outputs.add_argument('--plot', help="Write learning curves to this image file")

    run = parser.add_argument_group('run configuration (overrides NNBENCH_* variables)')
    run.add_argument('-j', '--concurrency', type=int, help="Worker threads")
    run.add_argument('-r', '--repetitions', type=int, help="Runs per spec/dataset pair")
    run.add_argument('-e', '--epochs', dest='max_epochs', type=int, help="Maximum epochs per run")
    run.add_argument('-b', '--batch-size', type=int, help="Mini-batch size (default: whole set)")
    run.add_argument('-s', '--shuffle', action='store_true', default=None,
                     help="Shuffle training data every epoch")
    run.add_argument('--early-stop-window', type=int,
                     help="Stop after this many epochs without improvement (0 disables)")
    run.add_argument('--early-stop-min-delta', type=float,
                     help="Smallest accuracy gain counted as improvement")
    run.add_argument('--snapshot-interval', type=int,
                     help="Also snapshot parameters every N epochs; final weights are always "
                          "stored (needs --db)")
    run.add_argument('--learning-rate', type=float, help="Override every spec's learning rate")
    run.add_argument('--optimizer', choices=OPTIMIZER_NAMES, help="Override every spec's optimizer")
    run.add_argument('--seed-policy', choices=SEED_POLICIES,
                     help="How job seeds are derived (default: job)")
    run.add_argument('--seed', dest='base_seed', type=int, help="Base seed")
    run.add_argument('--pairing', choices=PAIRINGS,
                     help="Pair every spec with every dataset (cross) or by name (matched)")
    run.add_argument('--history-limit', type=int, help="Epoch records kept per run")

    parser.add_argument('--log-level', help="Logging level (default: LOG_LEVEL or INFO)")
    return parser


def _config_from_args(args: argparse.Namespace) -> BenchmarkConfig:
    overrides = {
        name: getattr(args, name)
        for name in ('concurrency', 'repetitions', 'max_epochs', 'batch_size',
                     'shuffle', 'early_stop_window', 'early_stop_min_delta',
                     'snapshot_interval', 'learning_rate', 'optimizer',
                     'seed_policy', 'base_seed', 'pairing', 'history_limit')
    }
    return BenchmarkConfig.from_env().with_overrides(**overrides)


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    try:
        config = _config_from_args(args)
    except ValueError as e:
        parser.error(str(e))

    try:
        specs = load_network_specs(args.specs)
        datasets = load_datasets(args.train, args.test)
    except FileNotFoundError as e:
        logger.error(str(e))
        return 1

    database = ResultDatabase(args.db) if args.db else None
    if config.snapshot_interval and database is None:
        logger.warning("--snapshot-interval has no effect without --db")

    harness = BenchmarkHarness(
        specs,
        datasets,
        config,
        result_sinks=[database.record] if database else [],
        snapshot_sink=SnapshotStore(database) if database else None,
    )

    def _on_interrupt(signum, frame):
        # a second Ctrl-C falls through to the default handler
        signal.signal(signal.SIGINT, signal.default_int_handler)
        harness.cancel()

    previous_handler = signal.signal(signal.SIGINT, _on_interrupt)
    try:
        report = harness.run()
    except EnumerationError as e:
        logger.error(f"Nothing to benchmark: {e}")
        return 1
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    write_reports(report, args.output_dir)
    if database is not None:
        database.save_aggregates(report.aggregates)
    if args.plot:
        plot_learning_curves(report.results, args.plot)

    print(aggregates_frame(report.aggregates).to_string(index=False))
    print(f"\n{report.completed}/{len(report.results)} runs completed "
          f"in {report.duration:.2f}s")
    return 130 if report.cancelled else 0


if __name__ == '__main__':
    sys.exit(main())
