"""
Runtime settings.

Settings are plain values. ``Settings.from_env()`` reads ``STATEWISE_*``
environment variables; anything unset keeps its default.

    $ export STATEWISE_DATABASE=/var/lib/statewise/workflow.db
    $ export STATEWISE_QUEUE=redis
    $ export STATEWISE_QUEUE_WEIGHTS=critical=6,default=3,low=1
    $ python -m pystatewise
"""

from __future__ import annotations

import os
import socket
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import timedelta

from pystatewise.errors import InvalidConfiguration
from pystatewise.models import DEFAULT_WEIGHTS, Priority, RetryPolicy, parse_cron

QUEUE_BACKENDS = ("sqlite", "redis", "memory")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off", "")


def _default_worker_id() -> str:
    return f"worker-{socket.gethostname()}-{os.getpid()}"


@dataclass
class Settings:
    database: str = "statewise.db"
    queue: str = "sqlite"
    redis_url: str = "redis://localhost:6379"
    concurrency: int = 10
    queue_weights: dict[Priority, int] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    strict_priority: bool = False
    scan_cron: str = "* * * * *"
    cleanup_cron: str = "0 3 * * *"
    retention_days: int = 30
    max_attempts: int = 25
    retry_step_seconds: float = 60.0
    shutdown_grace_seconds: float = 8.0
    job_lease_seconds: float = 600.0
    catch_up_minutes: int = 60
    log_level: str = "INFO"
    worker_id: str = field(default_factory=_default_worker_id)

    def validate(self) -> None:
        """
        Raises:
            InvalidConfiguration: If any value is out of range
        """
        if self.queue not in QUEUE_BACKENDS:
            raise InvalidConfiguration(
                f"queue must be one of {', '.join(QUEUE_BACKENDS)}, got {self.queue!r}"
            )
        if self.concurrency < 1:
            raise InvalidConfiguration(f"concurrency must be >= 1, got {self.concurrency}")
        if self.retention_days < 1:
            raise InvalidConfiguration(f"retention_days must be >= 1, got {self.retention_days}")
        if self.max_attempts < 1:
            raise InvalidConfiguration(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.retry_step_seconds < 0 or self.shutdown_grace_seconds < 0:
            raise InvalidConfiguration("durations must not be negative")
        if self.job_lease_seconds <= 0:
            raise InvalidConfiguration(
                f"job_lease_seconds must be > 0, got {self.job_lease_seconds}"
            )
        if self.catch_up_minutes < 1:
            raise InvalidConfiguration(
                f"catch_up_minutes must be >= 1, got {self.catch_up_minutes}"
            )
        if self.catch_up >= self.retention:
            raise InvalidConfiguration("catch_up_minutes must be shorter than retention_days")
        if self.log_level.upper() not in LOG_LEVELS:
            raise InvalidConfiguration(f"unknown log level: {self.log_level!r}")
        if not any(w > 0 for w in self.queue_weights.values()):
            raise InvalidConfiguration("at least one queue weight must be positive")
        parse_cron(self.scan_cron)
        parse_cron(self.cleanup_cron)

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            step=timedelta(seconds=self.retry_step_seconds),
        )

    @property
    def retention(self) -> timedelta:
        return timedelta(days=self.retention_days)

    @property
    def catch_up(self) -> timedelta:
        return timedelta(minutes=self.catch_up_minutes)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        """
        Build settings from ``STATEWISE_*`` variables.

        Args:
            environ: Variables to read (os.environ if None)

        Raises:
            InvalidConfiguration: If a variable cannot be parsed or is out of range
        """
        env = os.environ if environ is None else environ
        settings = cls()

        if "STATEWISE_DATABASE" in env:
            settings.database = env["STATEWISE_DATABASE"]
        if "STATEWISE_QUEUE" in env:
            settings.queue = env["STATEWISE_QUEUE"].strip().lower()
        if "STATEWISE_REDIS_URL" in env:
            settings.redis_url = env["STATEWISE_REDIS_URL"]
        if "STATEWISE_CONCURRENCY" in env:
            settings.concurrency = _int(env, "STATEWISE_CONCURRENCY")
        if "STATEWISE_QUEUE_WEIGHTS" in env:
            settings.queue_weights = parse_weights(env["STATEWISE_QUEUE_WEIGHTS"])
        if "STATEWISE_STRICT_PRIORITY" in env:
            settings.strict_priority = _bool(env, "STATEWISE_STRICT_PRIORITY")
        if "STATEWISE_SCAN_CRON" in env:
            settings.scan_cron = env["STATEWISE_SCAN_CRON"]
        if "STATEWISE_CLEANUP_CRON" in env:
            settings.cleanup_cron = env["STATEWISE_CLEANUP_CRON"]
        if "STATEWISE_RETENTION_DAYS" in env:
            settings.retention_days = _int(env, "STATEWISE_RETENTION_DAYS")
        if "STATEWISE_MAX_ATTEMPTS" in env:
            settings.max_attempts = _int(env, "STATEWISE_MAX_ATTEMPTS")
        if "STATEWISE_RETRY_STEP_SECONDS" in env:
            settings.retry_step_seconds = _float(env, "STATEWISE_RETRY_STEP_SECONDS")
        if "STATEWISE_SHUTDOWN_GRACE_SECONDS" in env:
            settings.shutdown_grace_seconds = _float(env, "STATEWISE_SHUTDOWN_GRACE_SECONDS")
        if "STATEWISE_JOB_LEASE_SECONDS" in env:
            settings.job_lease_seconds = _float(env, "STATEWISE_JOB_LEASE_SECONDS")
        if "STATEWISE_CATCH_UP_MINUTES" in env:
            settings.catch_up_minutes = _int(env, "STATEWISE_CATCH_UP_MINUTES")
        if "STATEWISE_LOG_LEVEL" in env:
            settings.log_level = env["STATEWISE_LOG_LEVEL"].strip().upper()
        if env.get("STATEWISE_WORKER_ID"):
            settings.worker_id = env["STATEWISE_WORKER_ID"]

        settings.validate()
        return settings


def parse_weights(value: str) -> dict[Priority, int]:
    """
    Parse ``critical=6,default=3,low=1``.

    Priorities left out get weight 0 and are only polled by strict ordering.
    """
    weights = {p: 0 for p in Priority}
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        name, sep, raw = part.partition("=")
        if not sep:
            raise InvalidConfiguration(f"queue weight {part!r} is not name=weight")
        try:
            priority = Priority(name.strip().lower())
            weight = int(raw)
        except ValueError:
            raise InvalidConfiguration(f"invalid queue weight: {part!r}") from None
        if weight < 0:
            raise InvalidConfiguration(f"queue weight must not be negative: {part!r}")
        weights[priority] = weight
    return weights


def _int(env: Mapping[str, str], name: str) -> int:
    try:
        return int(env[name])
    except ValueError:
        raise InvalidConfiguration(f"{name} must be an integer, got {env[name]!r}") from None


def _float(env: Mapping[str, str], name: str) -> float:
    try:
        return float(env[name])
    except ValueError:
        raise InvalidConfiguration(f"{name} must be a number, got {env[name]!r}") from None


def _bool(env: Mapping[str, str], name: str) -> bool:
    value = env[name].strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise InvalidConfiguration(f"{name} must be a boolean, got {env[name]!r}")
