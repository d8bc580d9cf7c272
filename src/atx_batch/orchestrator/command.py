"""Render the ATX CLI invocation for one work item."""

from __future__ import annotations

import shlex
from dataclasses import dataclass
from pathlib import Path

import yaml

from atx_batch.orchestrator.models import WorkItem


@dataclass(slots=True)
class CommandOptions:
    """Run-level flags shared by every item's invocation."""

    binary: str = "atx"
    trust_all_tools: bool = True
    additional_params: str = "--non-interactive"


def config_path_for(item: WorkItem, output_dir: Path) -> Path:
    return output_dir / f"{item.name}_config.yaml"


def write_item_config(item: WorkItem, workspace: Path, output_dir: Path) -> Path | None:
    """Write the per-item configuration file, or return None when none is needed."""

    if not item.validation_commands and not item.plan_context:
        return None

    payload: dict[str, str] = {
        "codeRepositoryPath": str(workspace),
        "transformationName": item.transformation_name,
        "buildCommand": item.command,
    }
    if item.validation_commands:
        payload["validationCommands"] = item.validation_commands
    if item.plan_context:
        payload["additionalPlanContext"] = item.plan_context

    path = config_path_for(item, output_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        yaml.safe_dump(payload, default_flow_style=False, sort_keys=False, allow_unicode=True),
        encoding="utf-8",
    )
    return path


def build_command(
    item: WorkItem,
    workspace: Path,
    options: CommandOptions,
    config_path: Path | None = None,
) -> list[str]:
    """Return argv for `atx custom def exec` against the prepared workspace."""

    args = [
        *shlex.split(options.binary),
        "custom",
        "def",
        "exec",
        "--code-repository-path",
        str(workspace),
        "--transformation-name",
        item.transformation_name,
        "--build-command",
        item.command,
    ]
    if options.trust_all_tools:
        args.append("--trust-all-tools")
    if config_path is not None:
        args.extend(["--configuration", f"file://{config_path}"])
    if options.additional_params.strip():
        args.extend(shlex.split(options.additional_params))
    return args


def render_command(args: list[str]) -> str:
    return shlex.join(args)
