"""Per-item execution unit: prepare the workspace, run the executor, retry on failure."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from atx_batch.orchestrator.backend import (
    ProcessRunError,
    ProcessRunner,
    ProcessRunRequest,
    ProcessRunResult,
)
from atx_batch.orchestrator.command import (
    CommandOptions,
    build_command,
    render_command,
    write_item_config,
)
from atx_batch.orchestrator.models import (
    AttemptResult,
    ExecutionAttempt,
    Outcome,
    OutcomeStatus,
    UnitState,
    WorkItem,
)
from atx_batch.orchestrator.workspace import (
    WorkspaceCanceledError,
    WorkspaceError,
    WorkspaceResolver,
)

logger = logging.getLogger(__name__)

PREP_ERROR_PREVIEW_CHARS = 50
MESSAGE_COMPLETED = "completed"
MESSAGE_FAILED = "failed after retries"
MESSAGE_DRY_RUN = "dry run completed"
MESSAGE_INTERRUPTED = "interrupted"
EXECUTOR_START_FAILED_EXIT_CODE = 127


@dataclass(slots=True)
class UnitReport:
    """Terminal state of one execution unit plus per-attempt diagnostics."""

    outcome: Outcome
    state: UnitState
    attempts: list[ExecutionAttempt] = field(default_factory=list)


class ExecutionUnit:
    """Drives one work item to exactly one Outcome."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        resolver: WorkspaceResolver,
        runner: ProcessRunner,
        output_dir: Path,
        command_options: CommandOptions,
        max_retries: int = 1,
        timeout_seconds: float = 10_800,
        retry_backoff_seconds: float = 5.0,
        prepare_retries: int = 0,
        dry_run: bool = False,
        cancel_event: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.resolver = resolver
        self.runner = runner
        self.output_dir = output_dir
        self.command_options = command_options
        self.max_retries = max_retries
        self.timeout_seconds = timeout_seconds
        self.retry_backoff_seconds = retry_backoff_seconds
        self.prepare_retries = prepare_retries
        self.dry_run = dry_run
        self.cancel_event = cancel_event or threading.Event()
        self._clock = clock

    def execute(self, item: WorkItem) -> Outcome:
        return self.run(item).outcome

    def run(self, item: WorkItem) -> UnitReport:
        if self.dry_run:
            logger.info("Dry run for %s: no execution", item.name)
            return UnitReport(
                outcome=Outcome(
                    item_name=item.name,
                    status=OutcomeStatus.SUCCESS,
                    message=MESSAGE_DRY_RUN,
                    duration_seconds=0,
                ),
                state=UnitState.SUCCEEDED,
            )

        log_path = self.log_path_for(item)
        workspace = self._prepare(item, log_path)
        if isinstance(workspace, UnitReport):
            return workspace
        return self._run_attempts(item, workspace, log_path)

    def log_path_for(self, item: WorkItem) -> Path:
        return self.output_dir / f"{item.name}_execution.log"

    def _prepare(self, item: WorkItem, log_path: Path) -> Path | UnitReport:
        started = self._clock()
        last_error: WorkspaceError | None = None
        for prep_attempt in range(self.prepare_retries + 1):
            if self.cancel_event.is_set():
                return self._interrupted(item, started, [])
            try:
                return self.resolver.resolve(item, cancel_event=self.cancel_event)
            except WorkspaceCanceledError:
                _append_log(log_path, f"Repository preparation interrupted at {_now()}")
                return self._interrupted(item, started, [])
            except WorkspaceError as error:
                last_error = error
                logger.warning(
                    "Workspace preparation for %s failed (%d/%d): %s",
                    item.name,
                    prep_attempt + 1,
                    self.prepare_retries + 1,
                    error,
                )
                if prep_attempt < self.prepare_retries and not self._wait_backoff():
                    return self._interrupted(item, started, [])

        error_text = str(last_error)
        _append_log(log_path, f"Repository preparation failed at {_now()}: {error_text}")
        return UnitReport(
            outcome=Outcome(
                item_name=item.name,
                status=OutcomeStatus.FAILED,
                message=(
                    "workspace preparation failed: "
                    f"{error_text[:PREP_ERROR_PREVIEW_CHARS]}"
                ),
                duration_seconds=0,
            ),
            state=UnitState.FAILED,
        )

    def _run_attempts(self, item: WorkItem, workspace: Path, log_path: Path) -> UnitReport:
        started = self._clock()
        attempts: list[ExecutionAttempt] = []
        config_path = write_item_config(item, workspace, self.output_dir)
        args = build_command(item, workspace, self.command_options, config_path)

        state = UnitState.RUNNING
        while state in {UnitState.RUNNING, UnitState.RETRYING}:
            if self.cancel_event.is_set():
                return self._interrupted(item, started, attempts)

            index = len(attempts)
            _append_log(
                log_path,
                f"Starting ATX execution for {item.name} at {_now()} (attempt {index + 1})\n"
                f"Command: {render_command(args)}\n"
                f"{'-' * 40}",
            )
            attempt_started = self._clock()
            result, retryable = self._invoke(args, workspace, log_path)
            attempt = ExecutionAttempt(
                item_name=item.name,
                index=index,
                result=_attempt_result(result),
                exit_code=result.exit_code,
                duration_seconds=self._clock() - attempt_started,
                output_tail=result.output_tail,
            )
            attempts.append(attempt)

            if result.canceled:
                return self._interrupted(item, started, attempts)
            if attempt.result is AttemptResult.SUCCEEDED:
                state = UnitState.SUCCEEDED
                break

            diagnosis = (
                "timeout"
                if attempt.result is AttemptResult.TIMED_OUT
                else f"execution failed with code {result.exit_code}"
            )
            _append_log(log_path, f"Attempt {index + 1}: {diagnosis} at {_now()}")
            logger.warning(
                "%s attempt %d: %s (last output: %s)",
                item.name,
                index + 1,
                diagnosis,
                _last_line(result.output_tail) or "none",
            )

            if not retryable:
                _append_log(log_path, "Executor cannot be started; not retrying")
                state = UnitState.FAILED
            elif len(attempts) <= self.max_retries:
                state = UnitState.RETRYING
                if not self._wait_backoff():
                    return self._interrupted(item, started, attempts)
            else:
                state = UnitState.FAILED

        succeeded = state is UnitState.SUCCEEDED
        return UnitReport(
            outcome=Outcome(
                item_name=item.name,
                status=OutcomeStatus.SUCCESS if succeeded else OutcomeStatus.FAILED,
                message=MESSAGE_COMPLETED if succeeded else MESSAGE_FAILED,
                duration_seconds=int(self._clock() - started),
                attempts=len(attempts),
            ),
            state=state,
            attempts=attempts,
        )

    def _invoke(
        self,
        args: list[str],
        workspace: Path,
        log_path: Path,
    ) -> tuple[ProcessRunResult, bool]:
        """Run one attempt; the flag is False when a retry cannot help."""

        try:
            result = self.runner.run(
                ProcessRunRequest(
                    args=args,
                    timeout_seconds=self.timeout_seconds,
                    log_path=log_path,
                    cwd=workspace,
                    cancel_requested=self.cancel_event.is_set,
                ),
            )
        except ProcessRunError as error:
            _append_log(log_path, f"Executor could not be started: {error}")
            logger.error("Executor start failed: %s", error)
            failed = ProcessRunResult(
                exit_code=EXECUTOR_START_FAILED_EXIT_CODE,
                timed_out=False,
                output_tail=str(error),
            )
            return failed, error.transient
        return result, True

    def _wait_backoff(self) -> bool:
        """Sleep the fixed retry delay; False if cancellation arrived meanwhile."""

        if self.retry_backoff_seconds <= 0:
            return not self.cancel_event.is_set()
        return not self.cancel_event.wait(self.retry_backoff_seconds)

    def _interrupted(
        self,
        item: WorkItem,
        started: float,
        attempts: list[ExecutionAttempt],
    ) -> UnitReport:
        logger.warning("Execution of %s interrupted", item.name)
        return UnitReport(
            outcome=Outcome(
                item_name=item.name,
                status=OutcomeStatus.FAILED,
                message=MESSAGE_INTERRUPTED,
                duration_seconds=int(self._clock() - started),
                attempts=len(attempts),
            ),
            state=UnitState.FAILED,
            attempts=attempts,
        )


def _attempt_result(result: ProcessRunResult) -> AttemptResult:
    if result.timed_out:
        return AttemptResult.TIMED_OUT
    if result.exit_code == 0 and not result.canceled:
        return AttemptResult.SUCCEEDED
    return AttemptResult.FAILED


def _last_line(text: str) -> str:
    lines = text.strip().splitlines()
    return lines[-1][:200] if lines else ""


def _append_log(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(text.rstrip("\n") + "\n")


def _now() -> str:
    return datetime.now().astimezone().replace(microsecond=0).isoformat()
