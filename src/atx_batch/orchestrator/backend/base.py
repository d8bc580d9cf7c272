"""Process runner interface for executing one item attempt."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

TIMEOUT_EXIT_CODE = 124


@dataclass(slots=True)
class ProcessRunRequest:
    """Inputs required to execute one external process."""

    args: list[str]
    timeout_seconds: float
    log_path: Path
    cwd: Path | None = None
    env: dict[str, str] = field(default_factory=dict)
    cancel_requested: Callable[[], bool] | None = None


@dataclass(slots=True)
class ProcessRunResult:
    """Execution outcome from the process runner."""

    exit_code: int
    timed_out: bool
    canceled: bool = False
    output_tail: str = ""


class ProcessRunner(Protocol):
    """Protocol implemented by process runners."""

    def run(self, request: ProcessRunRequest) -> ProcessRunResult:
        """Run one attempt and return exit status metadata."""
