"""
config.py
~~~~~~~~~

Benchmark run configuration.

Values come from three places, later ones winning: the dataclass
defaults, ``NNBENCH_*`` environment variables (``BenchmarkConfig.from_env``)
and command-line flags.
"""

import logging
import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

SEED_POLICIES = ('job', 'shared', 'random')
PAIRINGS = ('cross', 'matched')
OPTIMIZER_NAMES = ('sgd', 'adam')

ENV_PREFIX = 'NNBENCH_'


def _default_concurrency() -> int:
    return os.cpu_count() or 1


@dataclass(frozen=True)
class BenchmarkConfig:
    """
    Settings shared by every job of one benchmark run.

    Attributes:
        concurrency: Worker threads running jobs in parallel
        repetitions: Independent training runs per (spec, dataset) pair
        max_epochs: Upper bound on epochs per run
        batch_size: Mini-batch size; None trains on the whole set per step
        shuffle: Reshuffle training examples each epoch
        early_stop_window: Epochs without accuracy improvement before
            stopping; 0 disables plateau stopping
        early_stop_min_delta: Smallest accuracy gain counted as improvement
        snapshot_interval: Emit parameter snapshots every N epochs; 0 keeps
            only the final snapshot of each completed run
        learning_rate: Overrides every spec's learning rate when set
        optimizer: Overrides every spec's optimizer when set
        seed_policy: 'job', 'shared' or 'random'
        base_seed: Root of all derived job seeds
        pairing: 'cross' (every spec with every dataset) or 'matched'
        history_limit: Maximum epoch records kept per run
    """

    concurrency: int = field(default_factory=_default_concurrency)
    repetitions: int = 1
    max_epochs: int = 100
    batch_size: Optional[int] = None
    shuffle: bool = False
    early_stop_window: int = 0
    early_stop_min_delta: float = 0.0
    snapshot_interval: int = 0
    learning_rate: Optional[float] = None
    optimizer: Optional[str] = None
    seed_policy: str = 'job'
    base_seed: int = 0
    pairing: str = 'cross'
    history_limit: int = 1000

    def __post_init__(self):
        if self.concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {self.concurrency}")
        if self.repetitions < 1:
            raise ValueError(f"repetitions must be >= 1, got {self.repetitions}")
        if self.max_epochs < 1:
            raise ValueError(f"max_epochs must be >= 1, got {self.max_epochs}")
        if self.batch_size is not None and self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.early_stop_window < 0:
            raise ValueError("early_stop_window must be >= 0")
        if self.early_stop_min_delta < 0:
            raise ValueError("early_stop_min_delta must be >= 0")
        if self.snapshot_interval < 0:
            raise ValueError("snapshot_interval must be >= 0")
        if self.learning_rate is not None and self.learning_rate <= 0:
            raise ValueError(f"learning_rate must be positive, got {self.learning_rate}")
        if self.optimizer is not None and self.optimizer not in OPTIMIZER_NAMES:
            raise ValueError(f"optimizer must be one of {OPTIMIZER_NAMES}")
        if self.seed_policy not in SEED_POLICIES:
            raise ValueError(f"seed_policy must be one of {SEED_POLICIES}")
        if self.pairing not in PAIRINGS:
            raise ValueError(f"pairing must be one of {PAIRINGS}")
        if self.base_seed < 0:
            raise ValueError(f"base_seed must be >= 0, got {self.base_seed}")
        if self.history_limit < 2:
            raise ValueError(f"history_limit must be >= 2, got {self.history_limit}")

    def with_overrides(self, **overrides: Any) -> 'BenchmarkConfig':
        """Copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    def as_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> 'BenchmarkConfig':
        """
        Build a configuration from ``NNBENCH_*`` environment variables.

        e.g. ``NNBENCH_CONCURRENCY=4`` or ``NNBENCH_SHUFFLE=true``. Unset
        variables keep their defaults.

        Raises:
            ValueError: If a variable cannot be parsed or is out of range
        """
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for f in fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None or raw == '':
                continue
            values[f.name] = _parse_env_value(f.name, raw)
        if values:
            logger.debug(f"Configuration from environment: {values}")
        return cls(**values)


_INT_FIELDS = ('concurrency', 'repetitions', 'max_epochs', 'batch_size',
               'early_stop_window', 'snapshot_interval', 'base_seed',
               'history_limit')
_FLOAT_FIELDS = ('early_stop_min_delta', 'learning_rate')


def _parse_env_value(name: str, raw: str) -> Any:
    try:
        if name in _INT_FIELDS:
            return int(raw)
        if name in _FLOAT_FIELDS:
            return float(raw)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{name.upper()}={raw!r} is not a number") from None
    if name == 'shuffle':
        return raw.strip().lower() in ('1', 'true', 'yes', 'on')
    return raw.strip().lower()
