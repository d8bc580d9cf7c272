"""Shared test fixtures."""

from __future__ import annotations

import logging
import shlex
import sys
from pathlib import Path

import pytest

from atx_batch.logging_setup import LOGGER_NAME

STUB_EXECUTOR_COMMAND = (
    f"{shlex.quote(sys.executable)} -m atx_batch.orchestrator.backend.stub_executor"
)

_SETTINGS_ENV_VARS = (
    "ATX_BATCH_MODE",
    "ATX_BATCH_MAX_PARALLEL_JOBS",
    "ATX_BATCH_MAX_RETRIES",
    "ATX_BATCH_RETRY_BACKOFF_SECONDS",
    "ATX_BATCH_PREPARE_RETRIES",
    "ATX_SHELL_TIMEOUT",
    "ATX_BATCH_CANCEL_GRACE_SECONDS",
    "ATX_BATCH_DRY_RUN",
    "ATX_BATCH_OUTPUT_DIR",
    "ATX_BATCH_CLONE_DIR",
    "ATX_BATCH_MIN_FREE_DISK_GB",
    "ATX_BATCH_EXECUTOR",
    "ATX_BATCH_BUILD_COMMAND",
    "ATX_BATCH_ADDITIONAL_PARAMS",
    "ATX_BATCH_TRUST_ALL_TOOLS",
    "ATX_BATCH_CHECK_UPDATES",
    "ATX_BATCH_LOCK_TIMEOUT_SECONDS",
    "ATX_BATCH_CROSS_PROCESS_LOCK",
    "ATX_BATCH_STALE_LOCK_MINUTES",
)


@pytest.fixture(autouse=True)
def _clean_settings_env(monkeypatch):
    """Keep developer shell settings out of tests."""
    for name in _SETTINGS_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def _reset_package_logger():
    """Undo handlers a CLI run attached so caplog keeps seeing records."""
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture()
def stub_executor(monkeypatch):
    """Point the batch runner at the packaged stub executor instead of `atx`."""

    def _configure(extra_args: str = "") -> str:
        command = f"{STUB_EXECUTOR_COMMAND} {extra_args}".strip()
        monkeypatch.setenv("ATX_BATCH_EXECUTOR", command)
        monkeypatch.setenv("ATX_BATCH_CHECK_UPDATES", "false")
        monkeypatch.setenv("ATX_BATCH_RETRY_BACKOFF_SECONDS", "0")
        monkeypatch.setenv("ATX_BATCH_MIN_FREE_DISK_GB", "0")
        return command

    return _configure


@pytest.fixture()
def make_repo(tmp_path: Path):
    """Create a local repository directory with a build marker."""

    def _make(name: str) -> Path:
        repo = tmp_path / "repos" / name
        repo.mkdir(parents=True, exist_ok=True)
        (repo / "pom.xml").write_text("<project/>\n", "utf-8")
        return repo

    return _make

