from __future__ import annotations

import logging
import os
import threading
import time
from pathlib import Path

import allure

from atx_batch.orchestrator.models import Outcome, OutcomeStatus
from atx_batch.orchestrator.result_sink import (
    LEDGER_HEADER,
    ResultSink,
    format_ledger_line,
    parse_ledger_line,
)

pytestmark = [
    allure.epic("Batch Execution"),
    allure.feature("Result Ledger"),
]


def _outcome(name: str, status: OutcomeStatus = OutcomeStatus.SUCCESS, **kwargs) -> Outcome:
    kwargs.setdefault("message", "completed")
    kwargs.setdefault("duration_seconds", 3)
    return Outcome(item_name=name, status=status, **kwargs)


def test_open_fresh_writes_header(tmp_path: Path) -> None:
    sink = ResultSink(tmp_path / "out" / "results.txt")

    assert sink.open() is None

    assert sink.path.read_text("utf-8") == LEDGER_HEADER + "\n"


def test_open_for_retry_keeps_ledger_and_writes_backup(tmp_path: Path) -> None:
    path = tmp_path / "results.txt"
    path.write_text(f"{LEDGER_HEADER}\nFAILED|orders|failed after retries|9\n", "utf-8")
    sink = ResultSink(path)

    backup = sink.open(fresh=False)

    assert backup is not None
    assert backup.name.startswith("results_backup_")
    assert backup.read_text("utf-8") == path.read_text("utf-8")
    assert [outcome.item_name for outcome in sink.snapshot()] == ["orders"]


def test_append_is_safe_under_concurrent_writers(tmp_path: Path) -> None:
    sink = ResultSink(tmp_path / "results.txt")
    sink.open()
    names = [f"repo-{index}" for index in range(40)]

    threads = [threading.Thread(target=sink.append, args=(_outcome(name),)) for name in names]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    lines = sink.path.read_text("utf-8").splitlines()
    assert lines[0] == LEDGER_HEADER
    assert sorted(line.split("|")[1] for line in lines[1:]) == sorted(names)
    assert len(sink.recorded()) == 40


def test_append_gives_up_after_lock_timeout(tmp_path: Path, caplog) -> None:
    sink = ResultSink(tmp_path / "results.txt", lock_timeout_seconds=0.2)
    sink.open()
    sink._lock.acquire()
    try:
        with caplog.at_level(logging.ERROR):
            recorded = sink.append(_outcome("orders"))
    finally:
        sink._lock.release()

    assert recorded is False
    assert sink.lock_failures == 1
    assert "result sink lock timeout" in caplog.text
    assert sink.path.read_text("utf-8") == LEDGER_HEADER + "\n"


def test_cross_process_lock_file_blocks_and_times_out(tmp_path: Path) -> None:
    sink = ResultSink(tmp_path / "results.txt", lock_timeout_seconds=0.3, cross_process=True)
    sink.open()
    sink.lock_path.write_text("12345", "utf-8")

    assert sink.append(_outcome("orders")) is False

    sink.lock_path.unlink()
    assert sink.append(_outcome("orders")) is True
    assert not sink.lock_path.exists()


def test_open_removes_stale_lock_file(tmp_path: Path) -> None:
    sink = ResultSink(tmp_path / "results.txt", cross_process=True, stale_lock_minutes=60)
    sink.lock_path.write_text("12345", "utf-8")
    two_hours_ago = time.time() - 2 * 3600
    os.utime(sink.lock_path, (two_hours_ago, two_hours_ago))

    sink.open()

    assert not sink.lock_path.exists()


def test_snapshot_keeps_latest_line_per_item(tmp_path: Path) -> None:
    sink = ResultSink(tmp_path / "results.txt")
    sink.open()
    sink.append(_outcome("orders", OutcomeStatus.FAILED, message="failed after retries"))
    sink.append(_outcome("billing"))
    sink.append(_outcome("orders", duration_seconds=11))

    snapshot = sink.snapshot()

    assert [(outcome.item_name, outcome.status) for outcome in snapshot] == [
        ("billing", OutcomeStatus.SUCCESS),
        ("orders", OutcomeStatus.SUCCESS),
    ]
    assert snapshot[1].duration_seconds == 11


def test_ledger_line_sanitizes_separators_and_whitespace() -> None:
    line = format_ledger_line(
        _outcome("orders", OutcomeStatus.FAILED, message="workspace preparation failed: a|b\nc"),
    )

    assert line == "FAILED|orders|workspace preparation failed: a/b c|3"
    assert parse_ledger_line(line) == _outcome(
        "orders",
        OutcomeStatus.FAILED,
        message="workspace preparation failed: a/b c",
    )


def test_parse_ledger_line_skips_malformed_lines() -> None:
    assert parse_ledger_line("") is None
    assert parse_ledger_line("SUCCESS|orders") is None
    assert parse_ledger_line("DONE|orders|completed|3") is None
    assert parse_ledger_line("SUCCESS|orders|completed|soon") is None
