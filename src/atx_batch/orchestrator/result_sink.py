"""Append-only results ledger shared by all execution units of a run.

One line per outcome, ``STATUS|ITEM_NAME|MESSAGE|DURATION_SECONDS``, below a
header line. Writers serialize through a ``threading.Lock`` acquired with a
bounded wait; a writer that cannot get the lock in time gives up and reports
failure instead of stalling the batch. When several launcher processes share
one ledger, ``cross_process=True`` adds an advisory lock file created with
``O_CREAT | O_EXCL`` around the same critical section.
"""

from __future__ import annotations

import logging
import os
import shutil
import threading
import time
from pathlib import Path

from atx_batch.orchestrator.models import Outcome, OutcomeStatus

logger = logging.getLogger(__name__)

LEDGER_HEADER = "STATUS|REPO_NAME|MESSAGE|DURATION"
FIELD_SEPARATOR = "|"
_LOCK_POLL_SECONDS = 0.1


class ResultSinkLockTimeout(RuntimeError):
    """Raised internally when the ledger lock is not acquired in time."""


class ResultSink:
    """Concurrency-safe outcome ledger with read-back for summaries and resumption."""

    def __init__(
        self,
        path: Path,
        *,
        lock_timeout_seconds: float = 3.0,
        cross_process: bool = False,
        stale_lock_minutes: int = 60,
    ) -> None:
        self.path = path
        self.lock_timeout_seconds = lock_timeout_seconds
        self.cross_process = cross_process
        self.stale_lock_minutes = stale_lock_minutes
        self._lock = threading.Lock()
        self._recorded: list[Outcome] = []
        self.lock_failures = 0

    @property
    def lock_path(self) -> Path:
        return self.path.with_name(f"{self.path.name}.lock")

    def open(self, *, fresh: bool = True) -> Path | None:
        """Prepare the ledger; returns the backup path when an existing ledger is kept."""

        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._remove_stale_lock()
        if fresh or not self.path.exists():
            self.path.write_text(LEDGER_HEADER + "\n", encoding="utf-8")
            return None

        backup = self.path.with_name(f"results_backup_{int(time.time())}.txt")
        shutil.copyfile(self.path, backup)
        logger.info("Backed up previous results to %s", backup)
        return backup

    def append(self, outcome: Outcome) -> bool:
        """Record one outcome; False when the lock could not be acquired in time."""

        line = format_ledger_line(outcome)
        if not self._lock.acquire(timeout=self.lock_timeout_seconds):
            return self._report_lock_timeout(outcome)
        try:
            if self.cross_process:
                try:
                    self._acquire_file_lock()
                except ResultSinkLockTimeout:
                    return self._report_lock_timeout(outcome)
                try:
                    self._write(line)
                finally:
                    self._release_file_lock()
            else:
                self._write(line)
            self._recorded.append(outcome)
        finally:
            self._lock.release()
        return True

    def recorded(self) -> list[Outcome]:
        """Outcomes appended through this sink instance, in append order."""

        with self._lock:
            return list(self._recorded)

    def snapshot(self) -> list[Outcome]:
        """Parse the on-disk ledger; for repeated names the latest line wins."""

        if not self.path.exists():
            return []
        latest: dict[str, Outcome] = {}
        for raw_line in self.path.read_text(encoding="utf-8").splitlines()[1:]:
            outcome = parse_ledger_line(raw_line)
            if outcome is None:
                continue
            latest.pop(outcome.item_name, None)
            latest[outcome.item_name] = outcome
        return list(latest.values())

    def _write(self, line: str) -> None:
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")
            handle.flush()

    def _report_lock_timeout(self, outcome: Outcome) -> bool:
        self.lock_failures += 1
        logger.error(
            "result sink lock timeout after %.1fs: outcome for %s (%s) was not recorded",
            self.lock_timeout_seconds,
            outcome.item_name,
            outcome.status.value,
        )
        return False

    def _acquire_file_lock(self) -> None:
        deadline = time.monotonic() + self.lock_timeout_seconds
        while True:
            try:
                fd = os.open(str(self.lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
            except FileExistsError:
                if time.monotonic() >= deadline:
                    raise ResultSinkLockTimeout(str(self.lock_path)) from None
                time.sleep(_LOCK_POLL_SECONDS)
                continue
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(str(os.getpid()))
            return

    def _release_file_lock(self) -> None:
        self.lock_path.unlink(missing_ok=True)

    def _remove_stale_lock(self) -> None:
        if not self.lock_path.exists():
            return
        age_seconds = time.time() - self.lock_path.stat().st_mtime
        if age_seconds > self.stale_lock_minutes * 60:
            logger.warning("Removing stale result ledger lock %s", self.lock_path)
            self.lock_path.unlink(missing_ok=True)


def format_ledger_line(outcome: Outcome) -> str:
    return FIELD_SEPARATOR.join(
        [
            outcome.status.value,
            outcome.item_name,
            _sanitize_message(outcome.message),
            str(outcome.duration_seconds),
        ],
    )


def parse_ledger_line(raw_line: str) -> Outcome | None:
    line = raw_line.strip()
    if not line:
        return None
    parts = line.split(FIELD_SEPARATOR)
    if len(parts) < 4:
        return None
    status_raw, name, *message_parts, duration_raw = parts
    try:
        status = OutcomeStatus(status_raw)
        duration = int(duration_raw)
    except ValueError:
        logger.warning("Skipping malformed ledger line: %s", line[:120])
        return None
    return Outcome(
        item_name=name,
        status=status,
        message=FIELD_SEPARATOR.join(message_parts),
        duration_seconds=duration,
    )


def _sanitize_message(message: str) -> str:
    return " ".join(message.replace(FIELD_SEPARATOR, "/").split())
