"""Runtime configuration for batch execution."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

ExecutionMode = Literal["serial", "parallel"]

SUPPORTED_MODES: tuple[str, ...] = ("serial", "parallel")
DEFAULT_SHELL_TIMEOUT_SECONDS = 10_800
DEFAULT_ADDITIONAL_PARAMS = "--non-interactive"


@dataclass(slots=True)
class ExecutionSettings:
    """Scheduling and retry policy."""

    mode: ExecutionMode = "serial"
    max_parallel_jobs: int = 4
    max_retries: int = 1
    retry_backoff_seconds: float = 5.0
    prepare_retries: int = 0
    timeout_seconds: int = DEFAULT_SHELL_TIMEOUT_SECONDS
    cancel_grace_seconds: float = 30.0
    dry_run: bool = False


@dataclass(slots=True)
class PathSettings:
    """Output and workspace locations."""

    output_dir: Path = Path("batch_results")
    clone_dir: Path = Path("batch_repos")
    min_free_disk_gb: int = 1


@dataclass(slots=True)
class ExecutorSettings:
    """External ATX CLI invocation defaults."""

    binary: str = "atx"
    build_command: str = ""
    additional_params: str = DEFAULT_ADDITIONAL_PARAMS
    trust_all_tools: bool = True
    check_updates: bool = True


@dataclass(slots=True)
class SinkSettings:
    """Result ledger locking."""

    lock_timeout_seconds: float = 3.0
    cross_process_lock: bool = False
    stale_lock_minutes: int = 60


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    execution: ExecutionSettings = field(default_factory=ExecutionSettings)
    paths: PathSettings = field(default_factory=PathSettings)
    executor: ExecutorSettings = field(default_factory=ExecutorSettings)
    sink: SinkSettings = field(default_factory=SinkSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with defaults matching the shell launcher."""

        mode = os.getenv("ATX_BATCH_MODE", "serial").strip().lower()
        if mode not in SUPPORTED_MODES:
            raise ValueError(f"Invalid ATX_BATCH_MODE: {mode!r}. Expected serial or parallel.")
        return cls(
            execution=ExecutionSettings(
                mode=mode,  # type: ignore[arg-type]
                max_parallel_jobs=int(os.getenv("ATX_BATCH_MAX_PARALLEL_JOBS", "4")),
                max_retries=int(os.getenv("ATX_BATCH_MAX_RETRIES", "1")),
                retry_backoff_seconds=float(os.getenv("ATX_BATCH_RETRY_BACKOFF_SECONDS", "5")),
                prepare_retries=int(os.getenv("ATX_BATCH_PREPARE_RETRIES", "0")),
                timeout_seconds=int(
                    os.getenv("ATX_SHELL_TIMEOUT", str(DEFAULT_SHELL_TIMEOUT_SECONDS)),
                ),
                cancel_grace_seconds=float(os.getenv("ATX_BATCH_CANCEL_GRACE_SECONDS", "30")),
                dry_run=_env_bool("ATX_BATCH_DRY_RUN", default=False),
            ),
            paths=PathSettings(
                output_dir=Path(os.getenv("ATX_BATCH_OUTPUT_DIR", "batch_results")),
                clone_dir=Path(os.getenv("ATX_BATCH_CLONE_DIR", "batch_repos")),
                min_free_disk_gb=int(os.getenv("ATX_BATCH_MIN_FREE_DISK_GB", "1")),
            ),
            executor=ExecutorSettings(
                binary=os.getenv("ATX_BATCH_EXECUTOR", "atx"),
                build_command=os.getenv("ATX_BATCH_BUILD_COMMAND", ""),
                additional_params=os.getenv(
                    "ATX_BATCH_ADDITIONAL_PARAMS",
                    DEFAULT_ADDITIONAL_PARAMS,
                ),
                trust_all_tools=_env_bool("ATX_BATCH_TRUST_ALL_TOOLS", default=True),
                check_updates=_env_bool("ATX_BATCH_CHECK_UPDATES", default=True),
            ),
            sink=SinkSettings(
                lock_timeout_seconds=float(os.getenv("ATX_BATCH_LOCK_TIMEOUT_SECONDS", "3")),
                cross_process_lock=_env_bool("ATX_BATCH_CROSS_PROCESS_LOCK", default=False),
                stale_lock_minutes=int(os.getenv("ATX_BATCH_STALE_LOCK_MINUTES", "60")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if any value is out of range."""

        execution = self.execution
        if execution.mode not in SUPPORTED_MODES:
            raise ValueError(f"Mode must be 'serial' or 'parallel', got {execution.mode!r}.")
        if execution.max_parallel_jobs < 1:
            raise ValueError("Max parallel jobs must be a positive integer.")
        if execution.max_retries < 0:
            raise ValueError("Max retries must be a non-negative integer.")
        if execution.prepare_retries < 0:
            raise ValueError("Prepare retries must be a non-negative integer.")
        if execution.timeout_seconds <= 0:
            raise ValueError("ATX_SHELL_TIMEOUT must be > 0.")
        if execution.retry_backoff_seconds < 0:
            raise ValueError("Retry backoff must be >= 0.")
        if self.sink.lock_timeout_seconds <= 0:
            raise ValueError("Result sink lock timeout must be > 0.")
        if not self.executor.binary.strip():
            raise ValueError("Executor binary name must not be empty.")

    @property
    def concurrency(self) -> int:
        """Effective worker cap: serial mode always runs one item at a time."""

        if self.execution.mode == "serial":
            return 1
        return self.execution.max_parallel_jobs


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
