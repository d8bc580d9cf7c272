"""Run summary reduction, report rendering, and retry-manifest construction."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import datetime
from pathlib import Path

from atx_batch.orchestrator.models import Outcome, OutcomeStatus, RunSummary, WorkItem

logger = logging.getLogger(__name__)

FAILED_MESSAGE_PREVIEW_CHARS = 60


def summarize(  # noqa: PLR0913
    outcomes: Iterable[Outcome],
    *,
    wall_seconds: int = 0,
    mode: str = "serial",
    trust_all_tools: bool = True,
    not_started: Iterable[str] = (),
    interrupted: bool = False,
) -> RunSummary:
    """Reduce outcomes into aggregate statistics in a single pass.

    A name listed in `not_started` that already has an outcome (an earlier
    ledger line from a retried run) keeps that outcome and is not reported as
    not started, so no item is counted twice.
    """

    ordered: list[Outcome] = []
    failed: list[Outcome] = []
    succeeded = 0
    execution_seconds = 0
    for outcome in outcomes:
        ordered.append(outcome)
        execution_seconds += outcome.duration_seconds
        if outcome.status is OutcomeStatus.SUCCESS:
            succeeded += 1
        else:
            failed.append(outcome)

    recorded_names = {outcome.item_name for outcome in ordered}
    total = len(ordered)
    return RunSummary(
        total=total,
        succeeded=succeeded,
        failed=len(failed),
        success_rate=success_rate(succeeded, total),
        wall_seconds=wall_seconds,
        execution_seconds=execution_seconds,
        mode=mode,
        trust_all_tools=trust_all_tools,
        failed_outcomes=failed,
        outcomes=ordered,
        not_started=[name for name in not_started if name not in recorded_names],
        interrupted=interrupted,
    )


def success_rate(succeeded: int, total: int) -> int:
    if total <= 0:
        return 0
    return (succeeded * 100) // total


def build_retry_manifest(
    outcomes: Iterable[Outcome],
    items_by_name: Mapping[str, WorkItem],
    order: Mapping[str, int] | None = None,
) -> list[WorkItem]:
    """Return original items whose outcome is FAILED, in original relative order."""

    selected: dict[str, WorkItem] = {}
    for outcome in outcomes:
        if outcome.status is not OutcomeStatus.FAILED:
            continue
        item = items_by_name.get(outcome.item_name)
        if item is None:
            logger.warning(
                "No original record for failed item %s; skipping it in retry manifest",
                outcome.item_name,
            )
            continue
        selected[outcome.item_name] = item

    if order is None:
        order = {name: index for index, name in enumerate(items_by_name)}
    fallback = len(order)
    return sorted(selected.values(), key=lambda item: order.get(item.name, fallback))


def render_summary_lines(summary: RunSummary, output_dir: Path) -> list[str]:
    """Full report appended to summary.log."""

    lines = [
        "",
        "EXECUTION SUMMARY",
        "=================",
        f"Execution completed at: {datetime.now().astimezone().replace(microsecond=0)}",
        f"Total wall time: {summary.wall_seconds}s",
        f"Total execution time: {summary.execution_seconds}s",
        "",
        "STATISTICS TABLE",
        "==================",
        f"{'Metric':<20} | {'Value':<10}",
        f"{'-' * 20}-+-{'-' * 10}",
        f"{'Total Repositories':<20} | {summary.total:<10}",
        f"{'Successful':<20} | {summary.succeeded:<10}",
        f"{'Failed':<20} | {summary.failed:<10}",
        f"{'Success Rate':<20} | {summary.success_rate:<10}%",
        f"{'Execution Mode':<20} | {summary.mode:<10}",
        f"{'Trust All Tools':<20} | {str(summary.trust_all_tools).lower():<10}",
        "",
    ]

    if summary.failed_outcomes:
        lines.extend(["FAILED REPOSITORIES", "==================="])
        lines.extend(
            f"{outcome.item_name:<30} | {_preview(outcome.message)}"
            for outcome in summary.failed_outcomes
        )
        lines.append("")

    if summary.not_started:
        lines.extend(["NOT STARTED", "==========="])
        lines.extend(summary.not_started)
        lines.append("")

    lines.extend(
        [
            "DETAILED RESULTS",
            "================",
            f"{'Status':<10} | {'Repository':<30} | {'Message':<40} | {'Duration(s)':<10}",
            f"{'-' * 10}-+-{'-' * 30}-+-{'-' * 40}-+-{'-' * 10}",
        ],
    )
    lines.extend(
        f"{outcome.status.value:<10} | {outcome.item_name:<30} | "
        f"{outcome.message:<40} | {outcome.duration_seconds:<10}"
        for outcome in summary.outcomes
    )
    lines.append("")
    lines.extend(_log_file_lines(summary, output_dir))
    return lines


def render_console_lines(summary: RunSummary, output_dir: Path) -> list[str]:
    """Short banner printed to the terminal at the end of every run."""

    title = "BATCH EXECUTION INTERRUPTED" if summary.interrupted else "BATCH EXECUTION COMPLETED"
    lines = [
        "",
        "=" * 42,
        title,
        "=" * 42,
        f"Total repositories: {summary.total}",
        f"Successful: {summary.succeeded}",
        f"Failed: {summary.failed}",
    ]
    if summary.not_started:
        lines.append(f"Not started: {len(summary.not_started)}")
    lines.extend(
        [
            f"Success rate: {summary.success_rate}%",
            f"Total time: {summary.wall_seconds}s",
        ],
    )
    if summary.failed_outcomes:
        lines.append("")
        lines.append("Failed repositories:")
        lines.extend(
            f"  {outcome.item_name}: {_preview(outcome.message)} "
            f"(log: {output_dir / f'{outcome.item_name}_execution.log'})"
            for outcome in summary.failed_outcomes
        )
    lines.extend(
        [
            "",
            f"Full summary available at: {output_dir / 'summary.log'}",
            "=" * 42,
        ],
    )
    return lines


def _log_file_lines(summary: RunSummary, output_dir: Path) -> list[str]:
    lines = [
        "LOG FILES",
        "=========",
        f"Summary log: {output_dir / 'summary.log'}",
        f"Individual logs: {output_dir / '*_execution.log'}",
        f"Results file: {output_dir / 'results.txt'}",
    ]
    if summary.failed:
        lines.append(f"Failed repos: {output_dir / 'failed_repos.csv'}")
    lines.append("")
    return lines


def _preview(message: str) -> str:
    if len(message) <= FAILED_MESSAGE_PREVIEW_CHARS:
        return message
    return message[: FAILED_MESSAGE_PREVIEW_CHARS - 3] + "..."
