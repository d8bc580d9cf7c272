from __future__ import annotations

import os
from pathlib import Path

import allure
import pytest

from atx_batch.orchestrator.preflight import (
    BatchConfigError,
    check_executor,
    ensure_free_space,
    ensure_writable_dir,
)

pytestmark = [
    allure.epic("Batch Configuration"),
    allure.feature("Preflight Checks"),
]


def test_check_executor_probes_version_and_updates(stub_executor) -> None:
    probe = check_executor(stub_executor())

    assert Path(probe.executable).is_file()
    assert probe.version == "stub executor args: --version"
    assert probe.update_available is False


def test_check_executor_fails_for_unknown_binary() -> None:
    with pytest.raises(BatchConfigError, match="ATX CLI not found"):
        check_executor("atx-binary-that-does-not-exist", check_updates=False)


def test_ensure_free_space_enforces_minimum(tmp_path: Path) -> None:
    assert ensure_free_space(tmp_path, min_free_gb=0) >= 0

    with pytest.raises(BatchConfigError, match="Insufficient disk space"):
        ensure_free_space(tmp_path, min_free_gb=10**9)


def test_ensure_writable_dir_creates_missing_directory(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "out"

    ensure_writable_dir(target)

    assert target.is_dir()
    assert list(target.iterdir()) == []


@pytest.mark.skipif(
    os.name == "nt" or (hasattr(os, "geteuid") and os.geteuid() == 0),
    reason="permission bits are not enforced",
)
def test_ensure_writable_dir_rejects_read_only_directory(tmp_path: Path) -> None:
    target = tmp_path / "locked"
    target.mkdir()
    target.chmod(0o500)
    try:
        with pytest.raises(BatchConfigError, match="not writable"):
            ensure_writable_dir(target)
    finally:
        target.chmod(0o700)
