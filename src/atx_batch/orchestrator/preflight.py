"""Fatal precondition checks run once before any item is scheduled."""

from __future__ import annotations

import logging
import shlex
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

_PROBE_TIMEOUT_SECONDS = 30
_BYTES_PER_GB = 1024**3


class BatchConfigError(RuntimeError):
    """Fatal precondition failure: the run must not start."""


@dataclass(slots=True)
class ExecutorProbe:
    """Executor availability and version banner."""

    executable: str
    version: str
    update_available: bool


def check_executor(binary: str, *, check_updates: bool = True) -> ExecutorProbe:
    """Resolve the executor on PATH and read its version; raises when it is missing."""

    argv = shlex.split(binary)
    if not argv:
        raise BatchConfigError("Executor command is empty.")
    resolved = shutil.which(argv[0])
    if resolved is None:
        raise BatchConfigError(f"ATX CLI not found: {argv[0]}. Please install ATX CLI first.")

    version = _run_probe([resolved, *argv[1:], "--version"]) or "unknown"
    logger.info("Current ATX CLI version: %s", version)

    update_available = False
    if check_updates:
        update_output = _run_probe([resolved, *argv[1:], "update", "--check"])
        update_available = "newer version" in update_output.lower()
        if update_available:
            logger.warning(
                "A newer version of ATX CLI is available. Consider updating with 'atx update'",
            )
        else:
            logger.info("ATX CLI is up to date")
    return ExecutorProbe(executable=resolved, version=version, update_available=update_available)


def ensure_writable_dir(path: Path) -> None:
    """Create the directory and prove it accepts writes."""

    try:
        path.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(dir=path, prefix=".write-probe-"):
            pass
    except OSError as error:
        raise BatchConfigError(f"Output location is not writable: {path} ({error})") from error


def ensure_free_space(path: Path, *, min_free_gb: int) -> int:
    """Return free space in whole GB; raises when below the required minimum."""

    free_gb = shutil.disk_usage(path).free // _BYTES_PER_GB
    if free_gb < min_free_gb:
        raise BatchConfigError(
            f"Insufficient disk space. At least {min_free_gb}GB required, found {free_gb}GB",
        )
    logger.info("Available disk space: %dGB", free_gb)
    return free_gb


def _run_probe(args: list[str]) -> str:
    try:
        completed = subprocess.run(  # noqa: S603
            args,
            check=False,
            capture_output=True,
            text=True,
            timeout=_PROBE_TIMEOUT_SECONDS,
        )
    except (subprocess.TimeoutExpired, OSError) as error:
        logger.debug("Probe %s failed: %s", args, error)
        return ""
    if completed.returncode != 0:
        return ""
    return _truncate(completed.stdout or completed.stderr)


def _truncate(value: str, *, limit: int = 240) -> str:
    compact = value.strip().replace("\n", " ")
    if len(compact) <= limit:
        return compact
    return compact[:limit] + "..."
