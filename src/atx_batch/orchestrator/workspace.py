"""Workspace resolution: locate local repositories or shallow-clone remote ones."""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import threading
from pathlib import Path
from typing import Protocol

from atx_batch.orchestrator.backend import ProcessRunResult, run_subprocess_with_cancel
from atx_batch.orchestrator.intake import detect_locator_kind, expand_local_path
from atx_batch.orchestrator.models import LocatorKind, WorkItem

logger = logging.getLogger(__name__)

_CLONE_POLL_SECONDS = 0.1
_CLONE_ERROR_CHARS = 2_000

_BUILD_MARKERS: tuple[str, ...] = (
    "pom.xml",
    "build.gradle",
    "package.json",
    "Makefile",
    "CMakeLists.txt",
)


class WorkspaceError(RuntimeError):
    """Raised when an item's workspace cannot be prepared."""


class LocalDirectoryNotFoundError(WorkspaceError):
    """Local repository path does not exist or is unreadable."""


class RemoteFetchFailedError(WorkspaceError):
    """Remote repository could not be cloned."""


class RemoteFetchEmptyError(WorkspaceError):
    """Clone finished but produced no content."""


class WorkspaceCanceledError(WorkspaceError):
    """Preparation stopped because the run is shutting down."""


class WorkspaceResolver(Protocol):
    """Protocol implemented by workspace resolvers."""

    def resolve(self, item: WorkItem, *, cancel_event: threading.Event | None = None) -> Path:
        """Return the directory the item's command runs against."""


class GitWorkspaceResolver:
    """Resolves local paths in place and clones remotes into one dir per item name."""

    def __init__(
        self,
        clone_dir: Path,
        *,
        git_binary: str = "git",
        clone_attempts: int = 2,
        clone_retry_delay_seconds: float = 2.0,
        clone_timeout_seconds: float = 900.0,
    ) -> None:
        self.clone_dir = clone_dir
        self.git_binary = git_binary
        self.clone_attempts = max(1, clone_attempts)
        self.clone_retry_delay_seconds = clone_retry_delay_seconds
        self.clone_timeout_seconds = clone_timeout_seconds

    def resolve(self, item: WorkItem, *, cancel_event: threading.Event | None = None) -> Path:
        kind = detect_locator_kind(item.locator)
        if kind in {LocatorKind.HTTPS, LocatorKind.SSH}:
            return self._clone(item, cancel_event or threading.Event())
        if kind is LocatorKind.LOCAL:
            return _local_workspace(item.locator)
        if item.locator.startswith(("/", "~", ".")):
            raise LocalDirectoryNotFoundError(
                f"Local repository directory not found: {expand_local_path(item.locator)}",
            )
        raise WorkspaceError(f"Unknown or invalid repository type: {item.locator}")

    def _clone(self, item: WorkItem, cancel_event: threading.Event) -> Path:
        if shutil.which(self.git_binary) is None:
            raise RemoteFetchFailedError("Git is not installed or not in PATH")

        clone_path = self.clone_dir / item.name
        self.clone_dir.mkdir(parents=True, exist_ok=True)
        last_error = ""
        for attempt in range(1, self.clone_attempts + 1):
            if clone_path.exists():
                shutil.rmtree(clone_path)
            result, output = self._run_clone(item.locator, clone_path, cancel_event)
            if result.canceled:
                raise WorkspaceCanceledError(f"Clone of {item.locator} canceled")
            if result.timed_out:
                last_error = f"clone timed out after {self.clone_timeout_seconds:.0f}s"
            elif result.exit_code == 0:
                break
            else:
                last_error = output
            logger.warning(
                "Clone attempt %d/%d failed for %s: %s",
                attempt,
                self.clone_attempts,
                item.locator,
                last_error[:200],
            )
            if attempt < self.clone_attempts and cancel_event.wait(
                self.clone_retry_delay_seconds,
            ):
                raise WorkspaceCanceledError(f"Clone of {item.locator} canceled")
        else:
            raise RemoteFetchFailedError(
                f"Git clone failed after {self.clone_attempts} attempts: {last_error}",
            )

        if not clone_path.is_dir() or not any(clone_path.iterdir()):
            raise RemoteFetchEmptyError(f"Cloned repository is empty or invalid: {clone_path}")
        return clone_path

    def _run_clone(
        self,
        url: str,
        clone_path: Path,
        cancel_event: threading.Event,
    ) -> tuple[ProcessRunResult, str]:
        with tempfile.TemporaryFile(mode="w+", encoding="utf-8") as output:
            try:
                result = run_subprocess_with_cancel(
                    run_args=[self.git_binary, "clone", "--depth", "1", url, str(clone_path)],
                    cwd=None,
                    env=os.environ.copy(),
                    timeout_seconds=self.clone_timeout_seconds,
                    log_handle=output,
                    cancel_requested=cancel_event.is_set,
                    poll_seconds=_CLONE_POLL_SECONDS,
                )
            except OSError as error:
                raise RemoteFetchFailedError(f"Git clone could not start: {error}") from error
            output.seek(0)
            text = output.read(_CLONE_ERROR_CHARS).strip()
        return result, text


def _local_workspace(locator: str) -> Path:
    path = expand_local_path(locator)
    if not path.is_dir():
        raise LocalDirectoryNotFoundError(f"Local repository directory not found: {path}")
    if not os.access(path, os.R_OK):
        raise LocalDirectoryNotFoundError(f"Local repository directory not readable: {path}")
    if not any((path / marker).is_file() for marker in _BUILD_MARKERS) and not (
        path / "src"
    ).is_dir():
        logger.warning("Directory may not be a code repository: %s", path)
    return path
