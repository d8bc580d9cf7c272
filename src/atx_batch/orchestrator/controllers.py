"""Controllers for batch CLI commands."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from atx_batch.config import Settings
from atx_batch.logging_setup import configure_logging
from atx_batch.orchestrator.backend import SubprocessRunner
from atx_batch.orchestrator.command import CommandOptions
from atx_batch.orchestrator.execution import ExecutionUnit
from atx_batch.orchestrator.intake import (
    IntakeError,
    WorkItemStore,
    read_work_items,
    write_retry_manifest,
)
from atx_batch.orchestrator.models import RunSummary
from atx_batch.orchestrator.preflight import (
    BatchConfigError,
    check_executor,
    ensure_free_space,
    ensure_writable_dir,
)
from atx_batch.orchestrator.result_sink import ResultSink
from atx_batch.orchestrator.scheduler import Scheduler, SchedulerReport
from atx_batch.orchestrator.summary import (
    build_retry_manifest,
    render_console_lines,
    render_summary_lines,
    summarize,
)
from atx_batch.orchestrator.workspace import GitWorkspaceResolver

logger = logging.getLogger(__name__)

SUMMARY_LOG_NAME = "summary.log"
RESULTS_FILE_NAME = "results.txt"
RETRY_MANIFEST_NAME = "failed_repos.csv"


@dataclass(slots=True)
class BatchRunCommand:
    """CLI input for one batch run; None keeps the environment/default value."""

    csv_file: Path | None
    mode: str | None = None
    max_jobs: int | None = None
    max_retries: int | None = None
    output_dir: Path | None = None
    clone_dir: Path | None = None
    build_command: str | None = None
    additional_params: str | None = None
    trust_all_tools: bool | None = None
    dry_run: bool = False
    retry_failed: bool = False
    timeout_seconds: int | None = None
    install_signal_handlers: bool = True
    console_logging: bool = True


@dataclass(slots=True)
class BatchRunResult:
    """Console lines plus the reduced statistics of a finished run."""

    lines: list[str]
    summary: RunSummary
    report: SchedulerReport
    retry_manifest: Path | None


class BatchCliController:
    """Wires settings, intake, scheduler, ledger and reporting for `atx-batch run`."""

    def run(self, command: BatchRunCommand) -> BatchRunResult:
        settings = resolve_settings(command)
        output_dir = settings.paths.output_dir

        ensure_writable_dir(output_dir)
        summary_log = output_dir / SUMMARY_LOG_NAME
        _init_summary_log(summary_log)
        configure_logging(summary_log, console_output=command.console_logging)
        _log_run_header(settings, command)

        check_executor(settings.executor.binary, check_updates=settings.executor.check_updates)
        ensure_free_space(output_dir, min_free_gb=settings.paths.min_free_disk_gb)

        store = _load_items(command, settings)
        logger.info("Loaded %d repositories", len(store))
        if store.rejected:
            logger.warning("Skipped %d invalid rows", len(store.rejected))

        sink = ResultSink(
            output_dir / RESULTS_FILE_NAME,
            lock_timeout_seconds=settings.sink.lock_timeout_seconds,
            cross_process=settings.sink.cross_process_lock,
            stale_lock_minutes=settings.sink.stale_lock_minutes,
        )
        sink.open(fresh=not command.retry_failed)

        unit = _build_unit(settings)
        scheduler = Scheduler(
            unit=unit,
            sink=sink,
            concurrency=settings.concurrency,
            cancel_grace_seconds=settings.execution.cancel_grace_seconds,
            install_signal_handlers=command.install_signal_handlers,
        )
        report = scheduler.run(store.items)

        summary = summarize(
            sink.snapshot(),
            wall_seconds=report.wall_seconds,
            mode=settings.execution.mode,
            trust_all_tools=settings.executor.trust_all_tools,
            not_started=[*report.not_started, *report.abandoned],
            interrupted=report.interrupted,
        )
        with summary_log.open("a", encoding="utf-8") as handle:
            handle.write("\n".join(render_summary_lines(summary, output_dir)) + "\n")

        retry_manifest = _write_retry_manifest(summary, store, output_dir)
        _remove_item_configs(output_dir)

        lines = render_console_lines(summary, output_dir)
        if report.unrecorded:
            lines.insert(
                -1,
                f"Outcomes missing from the ledger (lock timeout): {', '.join(report.unrecorded)}",
            )
        if retry_manifest is not None:
            lines.insert(
                -1,
                f"To retry failed repositories: atx-batch run --retry-failed "
                f"--output-dir {output_dir}",
            )
        return BatchRunResult(
            lines=lines,
            summary=summary,
            report=report,
            retry_manifest=retry_manifest,
        )


def resolve_settings(command: BatchRunCommand) -> Settings:
    """Environment settings with CLI overrides applied; raises BatchConfigError if invalid."""

    try:
        settings = Settings.from_env()
        execution = settings.execution
        if command.mode is not None:
            execution.mode = command.mode.lower()  # type: ignore[assignment]
        if command.max_jobs is not None:
            execution.max_parallel_jobs = command.max_jobs
        if command.max_retries is not None:
            execution.max_retries = command.max_retries
        if command.timeout_seconds is not None:
            execution.timeout_seconds = command.timeout_seconds
        execution.dry_run = execution.dry_run or command.dry_run

        if command.output_dir is not None:
            settings.paths.output_dir = command.output_dir
        if command.clone_dir is not None:
            settings.paths.clone_dir = command.clone_dir

        executor = settings.executor
        if command.build_command is not None:
            executor.build_command = command.build_command
        if command.additional_params is not None:
            executor.additional_params = command.additional_params
        if command.trust_all_tools is not None:
            executor.trust_all_tools = command.trust_all_tools

        settings.validate()
    except ValueError as error:
        raise BatchConfigError(str(error)) from error
    return settings


def _load_items(command: BatchRunCommand, settings: Settings) -> WorkItemStore:
    if command.retry_failed:
        csv_path = settings.paths.output_dir / RETRY_MANIFEST_NAME
        if not csv_path.exists():
            raise BatchConfigError(f"No failed repositories file found: {csv_path}")
        logger.info("Retrying failed repositories from %s", csv_path)
    elif command.csv_file is None:
        raise BatchConfigError("CSV file is required (use --csv-file or --retry-failed).")
    else:
        csv_path = command.csv_file

    try:
        return read_work_items(
            csv_path,
            default_build_command=settings.executor.build_command,
        )
    except IntakeError as error:
        raise BatchConfigError(str(error)) from error


def _build_unit(settings: Settings) -> ExecutionUnit:
    execution = settings.execution
    return ExecutionUnit(
        resolver=GitWorkspaceResolver(settings.paths.clone_dir),
        runner=SubprocessRunner(),
        output_dir=settings.paths.output_dir,
        command_options=CommandOptions(
            binary=settings.executor.binary,
            trust_all_tools=settings.executor.trust_all_tools,
            additional_params=settings.executor.additional_params,
        ),
        max_retries=execution.max_retries,
        timeout_seconds=execution.timeout_seconds,
        retry_backoff_seconds=execution.retry_backoff_seconds,
        prepare_retries=execution.prepare_retries,
        dry_run=execution.dry_run,
    )


def _write_retry_manifest(
    summary: RunSummary,
    store: WorkItemStore,
    output_dir: Path,
) -> Path | None:
    path = output_dir / RETRY_MANIFEST_NAME
    items = build_retry_manifest(summary.failed_outcomes, store.by_name, store.order)
    if not items:
        # A manifest left over from an earlier run would re-queue fixed items.
        path.unlink(missing_ok=True)
        return None
    count = write_retry_manifest(path, items)
    logger.info("Failed repositories saved to %s (%d entries)", path, count)
    return path


def _remove_item_configs(output_dir: Path) -> None:
    for config_path in output_dir.glob("*_config.yaml"):
        config_path.unlink(missing_ok=True)


def _init_summary_log(path: Path) -> None:
    title = f"ATX CLI Batch Execution Summary - {datetime.now().astimezone():%Y-%m-%d %H:%M:%S %Z}"
    path.write_text(f"{title}\n{'=' * 50}\n", encoding="utf-8")


def _log_run_header(settings: Settings, command: BatchRunCommand) -> None:
    logger.info("Starting ATX CLI batch execution")
    logger.info(
        "Configuration: mode=%s max_jobs=%d max_retries=%d timeout=%ss",
        settings.execution.mode,
        settings.concurrency,
        settings.execution.max_retries,
        settings.execution.timeout_seconds,
    )
    logger.info(
        "Output: %s, clones: %s, trust all tools: %s",
        settings.paths.output_dir,
        settings.paths.clone_dir,
        settings.executor.trust_all_tools,
    )
    if settings.execution.dry_run:
        logger.info("DRY RUN MODE - no commands will be executed")
    if command.retry_failed:
        logger.info("RETRY MODE - processing failed repositories only")
