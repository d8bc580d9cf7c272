"""CLI entrypoint for atx-batch."""

from pathlib import Path

import rich_click as click

from atx_batch import __version__
from atx_batch.config import SUPPORTED_MODES
from atx_batch.orchestrator.controllers import BatchCliController, BatchRunCommand
from atx_batch.orchestrator.preflight import BatchConfigError

click.rich_click.USE_MARKDOWN = True
BATCH_CONTROLLER = BatchCliController()


@click.group()
@click.version_option(version=__version__, prog_name="atx-batch")
def atx_batch() -> None:
    """Run ATX CLI transformations across many repositories."""


@atx_batch.command("run")
@click.option(
    "--csv-file",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="CSV with repo_path, build_command, transformation_name, "
    "validation_commands, additional_plan_context.",
)
@click.option(
    "--mode",
    type=click.Choice(SUPPORTED_MODES, case_sensitive=False),
    default=None,
    help="Execution mode. Defaults to ATX_BATCH_MODE or serial.",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Max parallel jobs in parallel mode. Defaults to 4.",
)
@click.option(
    "--max-retries",
    type=click.IntRange(min=0),
    default=None,
    help="Retries per repository after the first attempt. Defaults to 1.",
)
@click.option(
    "--output-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Directory for logs, results.txt and failed_repos.csv.",
)
@click.option(
    "--clone-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Directory for cloned remote repositories.",
)
@click.option(
    "--build-command",
    default=None,
    help="Default build command for rows that leave it empty.",
)
@click.option(
    "--additional-params",
    default=None,
    help="Extra ATX CLI parameters. Defaults to --non-interactive.",
)
@click.option(
    "--no-trust-tools",
    is_flag=True,
    default=False,
    help="Do not pass --trust-all-tools to the ATX CLI.",
)
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="Show what would run; execute nothing.",
)
@click.option(
    "--retry-failed",
    is_flag=True,
    default=False,
    help="Retry the repositories listed in <output-dir>/failed_repos.csv.",
)
@click.option(
    "--timeout-seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Per-attempt timeout. Defaults to ATX_SHELL_TIMEOUT or 10800.",
)
def run_batch(  # noqa: PLR0913
    csv_file: Path | None,
    mode: str | None,
    max_jobs: int | None,
    max_retries: int | None,
    output_dir: Path | None,
    clone_dir: Path | None,
    build_command: str | None,
    additional_params: str | None,
    no_trust_tools: bool,
    dry_run: bool,
    retry_failed: bool,
    timeout_seconds: int | None,
) -> None:
    """Execute ATX transformations for every repository in the CSV.

    Exits 0 once the batch completes, even when some repositories failed;
    failures are listed in the summary and in `failed_repos.csv`.
    """

    try:
        result = BATCH_CONTROLLER.run(
            BatchRunCommand(
                csv_file=csv_file,
                mode=mode,
                max_jobs=max_jobs,
                max_retries=max_retries,
                output_dir=output_dir,
                clone_dir=clone_dir,
                build_command=build_command,
                additional_params=additional_params,
                trust_all_tools=False if no_trust_tools else None,
                dry_run=dry_run,
                retry_failed=retry_failed,
                timeout_seconds=timeout_seconds,
            ),
        )
    except BatchConfigError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    atx_batch()
