import logging
import os
from dataclasses import dataclass, field
from typing import FrozenSet, List

from core.exceptions import ConfigurationError

logger = logging.getLogger("RowQueue.Options")

DEFAULT_TERMINAL_STATES = frozenset({"Succeeded", "Deleted"})


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got '{raw}'")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got '{raw}'")


@dataclass
class StorageOptions:
    """
    Tunables shared by the queue, the lock and the expiration manager.
    All durations are in seconds.
    """

    queue_poll_interval: float = 15.0
    queue_poll_max_interval: float = 15.0
    invisibility_timeout: float = 1800.0
    job_expiration_timeout: float = 86400.0
    job_expiration_check_interval: float = 3600.0
    counters_aggregate_interval: float = 300.0
    delete_batch_size: int = 1000
    counters_aggregate_batch_size: int = 1000
    lock_staleness: float = 60.0
    lock_timeout: float = 30.0
    terminal_states: FrozenSet[str] = field(default_factory=lambda: DEFAULT_TERMINAL_STATES)
    queues: List[str] = field(default_factory=lambda: ["default"])

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Reject values that would make the polling loops spin or never run."""
        for name in (
            "queue_poll_interval",
            "queue_poll_max_interval",
            "invisibility_timeout",
            "job_expiration_timeout",
            "lock_staleness",
        ):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be greater than zero")

        for name in ("job_expiration_check_interval", "counters_aggregate_interval", "lock_timeout"):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} cannot be negative")

        if self.queue_poll_max_interval < self.queue_poll_interval:
            raise ConfigurationError("queue_poll_max_interval cannot be lower than queue_poll_interval")

        if self.delete_batch_size <= 0 or self.counters_aggregate_batch_size <= 0:
            raise ConfigurationError("Batch sizes must be greater than zero")

        if not self.queues:
            raise ConfigurationError("At least one queue name is required")

    @classmethod
    def from_env(cls) -> "StorageOptions":
        """Build options from environment variables, falling back to defaults."""
        poll_interval = _env_float("QUEUE_POLL_INTERVAL", 15.0)
        queues = [q.strip() for q in os.getenv("QUEUES", "default").split(",") if q.strip()]
        terminal = os.getenv("TERMINAL_STATES")

        options = cls(
            queue_poll_interval=poll_interval,
            queue_poll_max_interval=_env_float("QUEUE_POLL_MAX_INTERVAL", poll_interval),
            invisibility_timeout=_env_float("INVISIBILITY_TIMEOUT", 1800.0),
            job_expiration_timeout=_env_float("JOB_EXPIRATION_TIMEOUT", 86400.0),
            job_expiration_check_interval=_env_float("JOB_EXPIRATION_CHECK_INTERVAL", 3600.0),
            counters_aggregate_interval=_env_float("COUNTERS_AGGREGATE_INTERVAL", 300.0),
            delete_batch_size=_env_int("DELETE_BATCH_SIZE", 1000),
            counters_aggregate_batch_size=_env_int("COUNTERS_AGGREGATE_BATCH_SIZE", 1000),
            lock_staleness=_env_float("LOCK_STALENESS", 60.0),
            lock_timeout=_env_float("LOCK_TIMEOUT", 30.0),
            terminal_states=(
                frozenset(s.strip() for s in terminal.split(",") if s.strip())
                if terminal else DEFAULT_TERMINAL_STATES
            ),
            queues=queues,
        )
        logger.debug(f"Storage options loaded: {options}")
        return options
