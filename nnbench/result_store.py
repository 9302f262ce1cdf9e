"""
result_store.py
~~~~~~~~~~~~~~~

SQLite persistence for benchmark results, aggregates and layer snapshots.

The database stores:
- One row per RunResult (with its epoch history as JSON)
- One row per (spec, dataset) AggregateStatistics
- Parameter snapshots, one row per layer parameter, as ``numpy.save`` blobs.
  Rows of a completed run's final snapshot have ``final`` set.
"""

import io
import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import Any, Dict, Generator, Iterable, List, Optional

import numpy as np

from nnbench.results import JobId, RunResult
from nnbench.statistics import AggregateStatistics
from nnbench.training import Snapshot

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = 'results/benchmark.db'


class ResultEncoder(json.JSONEncoder):
    """JSON encoder that handles numpy arrays and scalars."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, np.generic):
            return obj.item()
        return super().default(obj)


def _array_to_blob(array: np.ndarray) -> bytes:
    buffer = io.BytesIO()
    np.save(buffer, np.ascontiguousarray(array), allow_pickle=False)
    return buffer.getvalue()


def _blob_to_array(blob: bytes) -> np.ndarray:
    return np.load(io.BytesIO(blob), allow_pickle=False)


class ResultDatabase:
    """
    Manages the SQLite database of benchmark output.

    A new connection is opened per operation, so one instance can be used
    from the harness thread and from worker threads emitting snapshots.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, timeout: float = 30.0):
        """
        Initialize the database.

        Args:
            db_path: Path to the SQLite database file
            timeout: Seconds to wait on a locked database
        """
        self.db_path = db_path
        self.timeout = timeout
        self._ensure_directory()
        self._initialize_schema()

    def _ensure_directory(self) -> None:
        """Create the database directory if it doesn't exist."""
        db_dir = os.path.dirname(self.db_path)
        if db_dir and not os.path.exists(db_dir):
            os.makedirs(db_dir, exist_ok=True)

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for database connections.

        Yields:
            sqlite3.Connection: Database connection
        """
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _initialize_schema(self) -> None:
        """Create the database schema if it doesn't exist."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS runs (
                    spec_id TEXT NOT NULL,
                    dataset_id TEXT NOT NULL,
                    repetition INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    reason TEXT,
                    final_accuracy REAL,
                    metric_passed INTEGER NOT NULL DEFAULT 0,
                    epochs_run INTEGER NOT NULL DEFAULT 0,
                    duration REAL NOT NULL DEFAULT 0,
                    stop_reason TEXT,
                    history TEXT NOT NULL DEFAULT '[]',
                    recorded_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (spec_id, dataset_id, repetition)
                )
            ''')

            cursor.execute('''
                CREATE INDEX IF NOT EXISTS idx_runs_status
                ON runs(status)
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS aggregates (
                    spec_id TEXT NOT NULL,
                    dataset_id TEXT NOT NULL,
                    completed INTEGER NOT NULL,
                    accuracy_mean REAL,
                    accuracy_variance REAL,
                    epochs_mean REAL,
                    epochs_variance REAL,
                    passed INTEGER NOT NULL DEFAULT 0,
                    failures INTEGER NOT NULL DEFAULT 0,
                    diverged INTEGER NOT NULL DEFAULT 0,
                    failure_reasons TEXT NOT NULL DEFAULT '[]',
                    recorded_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (spec_id, dataset_id)
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS snapshots (
                    spec_id TEXT NOT NULL,
                    dataset_id TEXT NOT NULL,
                    repetition INTEGER NOT NULL,
                    epoch INTEGER NOT NULL,
                    layer_index INTEGER NOT NULL,
                    layer_kind TEXT NOT NULL,
                    param_name TEXT NOT NULL,
                    data BLOB NOT NULL,
                    final INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (spec_id, dataset_id, repetition, epoch,
                                 layer_index, param_name)
                )
            ''')

            cursor.execute('''
                CREATE INDEX IF NOT EXISTS idx_snapshots_job
                ON snapshots(spec_id, dataset_id, repetition)
            ''')

    def save_run(self, result: RunResult) -> bool:
        """
        Insert or replace one RunResult.

        Returns:
            bool: True once stored
        """
        history = json.dumps(
            [[r.epoch, r.loss, r.accuracy] for r in result.history], cls=ResultEncoder
        )
        job = result.job_id
        with self._get_connection() as conn:
            conn.execute('''
                INSERT OR REPLACE INTO runs
                (spec_id, dataset_id, repetition, status, reason, final_accuracy,
                 metric_passed, epochs_run, duration, stop_reason, history)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (
                job.spec_id,
                job.dataset_id,
                job.repetition,
                result.status.value,
                result.reason,
                result.final_accuracy,
                1 if result.metric_passed else 0,
                result.epochs_run,
                result.duration,
                result.stop_reason,
                history,
            ))

        logger.debug(f"Saved run {job} ({result.status.value})")
        return True

    def record(self, result: RunResult) -> None:
        """Result sink for the harness; storage errors are logged, not raised."""
        try:
            self.save_run(result)
        except sqlite3.Error as e:
            logger.error(f"Database error saving run {result.job_id}: {e}")

    def save_aggregates(self, aggregates: Iterable[AggregateStatistics]) -> int:
        """
        Insert or replace aggregate rows.

        Returns:
            int: Number of rows written
        """
        rows = [
            (
                a.spec_id, a.dataset_id, a.count, a.accuracy_mean,
                a.accuracy_variance, a.epochs_mean, a.epochs_variance, a.passed,
                a.failures, a.diverged, json.dumps(list(a.failure_reasons)),
            )
            for a in aggregates
        ]
        with self._get_connection() as conn:
            conn.executemany('''
                INSERT OR REPLACE INTO aggregates
                (spec_id, dataset_id, completed, accuracy_mean, accuracy_variance,
                 epochs_mean, epochs_variance, passed, failures, diverged,
                 failure_reasons)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', rows)
        logger.info(f"Saved {len(rows)} aggregate rows to {self.db_path}")
        return len(rows)

    def save_snapshot(self, snapshot: Snapshot) -> int:
        """
        Store every parameter of every layer in ``snapshot``.

        Returns:
            int: Number of parameter rows written
        """
        job = snapshot.job_id
        rows = [
            (job.spec_id, job.dataset_id, job.repetition, snapshot.epoch,
             layer.index, layer.kind, name, _array_to_blob(array),
             1 if snapshot.final else 0)
            for layer in snapshot.layers
            for name, array in layer.params.items()
        ]
        with self._get_connection() as conn:
            conn.executemany('''
                INSERT OR REPLACE INTO snapshots
                (spec_id, dataset_id, repetition, epoch, layer_index,
                 layer_kind, param_name, data, final)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', rows)
        kind = 'final snapshot' if snapshot.final else 'snapshot'
        logger.debug(f"Saved {kind} of {job} at epoch {snapshot.epoch}")
        return len(rows)

    def _run_row(self, row: sqlite3.Row) -> Dict[str, Any]:
        return {
            'spec_id': row['spec_id'],
            'dataset_id': row['dataset_id'],
            'repetition': row['repetition'],
            'status': row['status'],
            'reason': row['reason'],
            'final_accuracy': row['final_accuracy'],
            'metric_passed': bool(row['metric_passed']),
            'epochs_run': row['epochs_run'],
            'duration': row['duration'],
            'stop_reason': row['stop_reason'],
            'history': [tuple(r) for r in json.loads(row['history'])],
            'recorded_at': row['recorded_at'],
        }

    def list_runs(self, spec_id: Optional[str] = None,
                  dataset_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        List stored runs, optionally filtered by spec and/or dataset.

        Returns:
            List of run dictionaries in job order
        """
        query = 'SELECT * FROM runs'
        clauses, params = [], []
        if spec_id is not None:
            clauses.append('spec_id = ?')
            params.append(spec_id)
        if dataset_id is not None:
            clauses.append('dataset_id = ?')
            params.append(dataset_id)
        if clauses:
            query += ' WHERE ' + ' AND '.join(clauses)
        query += ' ORDER BY spec_id, dataset_id, repetition'

        with self._get_connection() as conn:
            runs = [self._run_row(row) for row in conn.execute(query, params)]
        logger.debug(f"Listed {len(runs)} runs")
        return runs

    def get_run(self, job_id: JobId) -> Optional[Dict[str, Any]]:
        """
        Get one stored run.

        Returns:
            Run dictionary or None if not found
        """
        with self._get_connection() as conn:
            row = conn.execute(
                'SELECT * FROM runs WHERE spec_id = ? AND dataset_id = ? AND repetition = ?',
                (job_id.spec_id, job_id.dataset_id, job_id.repetition)
            ).fetchone()
        if row is None:
            logger.warning(f"Run {job_id} not found")
            return None
        return self._run_row(row)

    def list_aggregates(self) -> List[Dict[str, Any]]:
        with self._get_connection() as conn:
            rows = conn.execute(
                'SELECT * FROM aggregates ORDER BY spec_id, dataset_id'
            ).fetchall()
        return [
            {
                'spec_id': row['spec_id'],
                'dataset_id': row['dataset_id'],
                'completed': row['completed'],
                'accuracy_mean': row['accuracy_mean'],
                'accuracy_variance': row['accuracy_variance'],
                'epochs_mean': row['epochs_mean'],
                'epochs_variance': row['epochs_variance'],
                'passed': row['passed'],
                'failures': row['failures'],
                'diverged': row['diverged'],
                'failure_reasons': [tuple(r) for r in json.loads(row['failure_reasons'])],
            }
            for row in rows
        ]

    def snapshot_epochs(self, job_id: JobId) -> List[int]:
        """Epochs for which a snapshot of ``job_id`` is stored."""
        with self._get_connection() as conn:
            rows = conn.execute('''
                SELECT DISTINCT epoch FROM snapshots
                WHERE spec_id = ? AND dataset_id = ? AND repetition = ?
                ORDER BY epoch
            ''', (job_id.spec_id, job_id.dataset_id, job_id.repetition)).fetchall()
        return [row['epoch'] for row in rows]

    def final_snapshot_epoch(self, job_id: JobId) -> Optional[int]:
        """Epoch of the trained weights of ``job_id``, or None if it did not complete."""
        with self._get_connection() as conn:
            row = conn.execute('''
                SELECT MAX(epoch) AS epoch FROM snapshots
                WHERE spec_id = ? AND dataset_id = ? AND repetition = ? AND final = 1
            ''', (job_id.spec_id, job_id.dataset_id, job_id.repetition)).fetchone()
        return row['epoch']

    def load_final_snapshot(self, job_id: JobId) -> Optional[Dict[int, Dict[str, np.ndarray]]]:
        """
        Load the trained parameters of a completed run.

        Returns:
            {layer_index: {param_name: array}} or None if not found
        """
        epoch = self.final_snapshot_epoch(job_id)
        if epoch is None:
            logger.warning(f"No final snapshot of {job_id}")
            return None
        return self.load_snapshot(job_id, epoch)

    def load_snapshot(self, job_id: JobId, epoch: int) -> Optional[Dict[int, Dict[str, np.ndarray]]]:
        """
        Load one stored snapshot.

        Returns:
            {layer_index: {param_name: array}} or None if not found
        """
        with self._get_connection() as conn:
            rows = conn.execute('''
                SELECT layer_index, param_name, data FROM snapshots
                WHERE spec_id = ? AND dataset_id = ? AND repetition = ? AND epoch = ?
                ORDER BY layer_index, param_name
            ''', (job_id.spec_id, job_id.dataset_id, job_id.repetition, epoch)).fetchall()

        if not rows:
            logger.warning(f"Snapshot of {job_id} at epoch {epoch} not found")
            return None

        layers: Dict[int, Dict[str, np.ndarray]] = {}
        for row in rows:
            layers.setdefault(row['layer_index'], {})[row['param_name']] = \
                _blob_to_array(row['data'])
        return layers

    def delete_runs(self, spec_id: str) -> int:
        """
        Delete every run, aggregate and snapshot of a spec.

        Returns:
            int: Number of run rows deleted
        """
        with self._get_connection() as conn:
            deleted = conn.execute('DELETE FROM runs WHERE spec_id = ?', (spec_id,)).rowcount
            conn.execute('DELETE FROM aggregates WHERE spec_id = ?', (spec_id,))
            conn.execute('DELETE FROM snapshots WHERE spec_id = ?', (spec_id,))
        if deleted:
            logger.info(f"Deleted {deleted} runs of spec '{spec_id}'")
        else:
            logger.warning(f"No runs of spec '{spec_id}' to delete")
        return deleted


class SnapshotStore:
    """
    Snapshot sink writing to a ResultDatabase.

    Called from worker threads; storage errors are logged and the
    training run carries on.
    """

    def __init__(self, database: ResultDatabase):
        self.database = database

    def emit(self, snapshot: Snapshot) -> None:
        try:
            self.database.save_snapshot(snapshot)
        except sqlite3.Error as e:
            logger.error(
                f"Database error saving snapshot of {snapshot.job_id} "
                f"at epoch {snapshot.epoch}: {e}"
            )


def save_report(report, db_path: str = DEFAULT_DB_PATH) -> bool:
    """
    Store every result and aggregate of a BenchmarkReport.

    Args:
        report: Finished BenchmarkReport
        db_path: Path of the SQLite database

    Returns:
        bool: True if the save was successful, False otherwise
    """
    try:
        db = ResultDatabase(db_path)
        for result in report.results:
            db.save_run(result)
        db.save_aggregates(report.aggregates)
        return True
    except sqlite3.Error as e:
        logger.error(f"Database error saving report to {db_path}: {e}")
        return False
    except (TypeError, ValueError) as e:
        logger.error(f"Serialization error saving report to {db_path}: {e}")
        return False
    except Exception as e:
        logger.exception(f"Unexpected error saving report to {db_path}: {e}")
        return False


def list_runs(db_path: str = DEFAULT_DB_PATH,
              spec_id: Optional[str] = None) -> List[Dict[str, Any]]:
    """
    List stored runs.

    Returns:
        list: Run dictionaries, empty on error
    """
    try:
        return ResultDatabase(db_path).list_runs(spec_id=spec_id)
    except sqlite3.Error as e:
        logger.error(f"Database error listing runs: {e}")
        return []
    except json.JSONDecodeError as e:
        logger.error(f"JSON decode error listing runs: {e}")
        return []
    except Exception as e:
        logger.exception(f"Unexpected error listing runs: {e}")
        return []


def load_snapshot(job_id: JobId, epoch: int,
                  db_path: str = DEFAULT_DB_PATH) -> Optional[Dict[int, Dict[str, np.ndarray]]]:
    """
    Load a stored snapshot.

    Returns:
        dict: {layer_index: {param_name: array}} or None if not found
    """
    if not isinstance(job_id, JobId):
        logger.error("Invalid job_id: must be a JobId")
        return None
    try:
        return ResultDatabase(db_path).load_snapshot(job_id, epoch)
    except sqlite3.Error as e:
        logger.error(f"Database error loading snapshot of {job_id}: {e}")
        return None
    except ValueError as e:
        logger.error(f"Deserialization error loading snapshot of {job_id}: {e}")
        return None
    except Exception as e:
        logger.exception(f"Unexpected error loading snapshot of {job_id}: {e}")
        return None


def delete_runs(spec_id: str, db_path: str = DEFAULT_DB_PATH) -> bool:
    """
    Delete all stored output of a spec.

    Returns:
        bool: True if anything was deleted, False otherwise
    """
    if not spec_id or not isinstance(spec_id, str):
        logger.error("Invalid spec_id: must be a non-empty string")
        return False
    try:
        return ResultDatabase(db_path).delete_runs(spec_id) > 0
    except sqlite3.Error as e:
        logger.error(f"Database error deleting runs of '{spec_id}': {e}")
        return False
    except Exception as e:
        logger.exception(f"Unexpected error deleting runs of '{spec_id}': {e}")
        return False
