"""Subprocess-based runner for the external transformation CLI."""

from __future__ import annotations

import os
import subprocess
import time
from collections.abc import Callable
from pathlib import Path
from typing import IO

from atx_batch.orchestrator.backend.base import (
    TIMEOUT_EXIT_CODE,
    ProcessRunRequest,
    ProcessRunResult,
)

_POLL_SECONDS = 0.1
_TERMINATE_WAIT_SECONDS = 2
_OUTPUT_TAIL_CHARS = 2_000


class ProcessRunError(RuntimeError):
    """Process start error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class SubprocessRunner:
    """Run one argv with a timeout, appending combined output to the item log."""

    def __init__(self, poll_seconds: float = _POLL_SECONDS) -> None:
        self.poll_seconds = poll_seconds

    def run(self, request: ProcessRunRequest) -> ProcessRunResult:
        if not request.args:
            raise ProcessRunError("Process runner received an empty command.", transient=False)

        request.log_path.parent.mkdir(parents=True, exist_ok=True)
        env = os.environ.copy()
        env.update(request.env)

        try:
            with request.log_path.open("a", encoding="utf-8") as log_handle:
                log_handle.flush()
                start_offset = log_handle.tell()
                result = run_subprocess_with_cancel(
                    run_args=request.args,
                    cwd=request.cwd,
                    env=env,
                    timeout_seconds=request.timeout_seconds,
                    log_handle=log_handle,
                    cancel_requested=request.cancel_requested,
                    poll_seconds=self.poll_seconds,
                )
        except FileNotFoundError as error:
            raise ProcessRunError(
                f"Executor command not found: {request.args[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise ProcessRunError(
                f"Executor failed to start: {error}",
                transient=True,
            ) from error

        result.output_tail = _read_tail(request.log_path, start_offset)
        return result


def run_subprocess_with_cancel(  # noqa: PLR0913
    *,
    run_args: list[str],
    cwd: Path | None,
    env: dict[str, str],
    timeout_seconds: float,
    log_handle: IO[str],
    cancel_requested: Callable[[], bool] | None,
    poll_seconds: float,
) -> ProcessRunResult:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        cwd=str(cwd) if cwd is not None else None,
        env=env,
        stdin=subprocess.DEVNULL,
        stdout=log_handle,
        stderr=subprocess.STDOUT,
        text=True,
    )
    start_monotonic = time.monotonic()

    while True:
        returncode = process.poll()
        if returncode is not None:
            return ProcessRunResult(exit_code=returncode, timed_out=False)

        if time.monotonic() - start_monotonic >= timeout_seconds:
            _terminate_process(process)
            return ProcessRunResult(exit_code=TIMEOUT_EXIT_CODE, timed_out=True)

        if cancel_requested is not None and cancel_requested():
            _terminate_process(process)
            exit_code = process.returncode if process.returncode is not None else -1
            return ProcessRunResult(exit_code=exit_code, timed_out=False, canceled=True)

        time.sleep(poll_seconds)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=_TERMINATE_WAIT_SECONDS)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=_TERMINATE_WAIT_SECONDS)


def _read_tail(path: Path, start_offset: int) -> str:
    if not path.exists():
        return ""
    with path.open("rb") as handle:
        end = handle.seek(0, os.SEEK_END)
        # UTF-8 needs at most 4 bytes per character.
        handle.seek(max(start_offset, end - _OUTPUT_TAIL_CHARS * 4))
        text = handle.read().decode("utf-8", errors="replace")
    compact = text.strip()
    if len(compact) <= _OUTPUT_TAIL_CHARS:
        return compact
    return compact[-_OUTPUT_TAIL_CHARS:]
