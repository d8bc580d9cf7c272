"""Bounded-concurrency dispatcher for execution units."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Iterator, Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Protocol

from atx_batch.orchestrator.models import Outcome, OutcomeStatus, WorkItem
from atx_batch.orchestrator.result_sink import ResultSink

logger = logging.getLogger(__name__)

INTERNAL_ERROR_PREVIEW_CHARS = 80
STOP_POLL_SECONDS = 0.2


class Unit(Protocol):
    """What the scheduler needs from an execution unit."""

    cancel_event: threading.Event

    def execute(self, item: WorkItem) -> Outcome:
        """Drive one item to its outcome."""


@dataclass(slots=True)
class SchedulerReport:
    """What happened during one dispatch pass."""

    outcomes: list[Outcome] = field(default_factory=list)
    not_started: list[str] = field(default_factory=list)
    unrecorded: list[str] = field(default_factory=list)
    abandoned: list[str] = field(default_factory=list)
    interrupted: bool = False
    stop_signal: str | None = None
    wall_seconds: int = 0
    max_in_flight: int = 0


class Scheduler:
    """Admits items in source order and keeps at most `concurrency` units in flight."""

    def __init__(
        self,
        *,
        unit: Unit,
        sink: ResultSink,
        concurrency: int = 1,
        cancel_grace_seconds: float = 30.0,
        install_signal_handlers: bool = True,
        stop_poll_seconds: float = STOP_POLL_SECONDS,
    ) -> None:
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        self.unit = unit
        self.sink = sink
        self.concurrency = concurrency
        self.cancel_grace_seconds = cancel_grace_seconds
        self.install_signal_handlers = install_signal_handlers
        self.stop_poll_seconds = stop_poll_seconds
        self._stop_signal_name: str | None = None
        self._in_flight_lock = threading.Lock()
        self._in_flight = 0
        self._max_in_flight = 0
        self._unrecorded: list[str] = []

    @property
    def cancel_event(self) -> threading.Event:
        return self.unit.cancel_event

    @property
    def stop_requested(self) -> bool:
        return self.cancel_event.is_set()

    def request_stop(self, *, signal_name: str = "manual") -> None:
        """Stop admitting items and ask in-flight units to terminate their processes."""

        if not self.cancel_event.is_set():
            logger.warning(
                "Received %s. Stopping admission and terminating running jobs",
                signal_name,
            )
        self._stop_signal_name = signal_name
        self.cancel_event.set()

    def run(self, items: Sequence[WorkItem]) -> SchedulerReport:
        started = time.monotonic()
        report = SchedulerReport()
        handlers = self._signal_handlers() if self.install_signal_handlers else _noop()
        with handlers:
            if self.concurrency == 1:
                logger.info("Executing %d repositories in serial mode", len(items))
                self._run_serial(items, report)
            else:
                logger.info(
                    "Executing %d repositories in parallel mode (max %d jobs)",
                    len(items),
                    self.concurrency,
                )
                self._run_parallel(items, report)

        report.outcomes = self.sink.recorded()
        report.unrecorded = list(self._unrecorded)
        report.interrupted = self.stop_requested
        report.stop_signal = self._stop_signal_name
        report.wall_seconds = int(time.monotonic() - started)
        report.max_in_flight = self._max_in_flight
        return report

    def _run_serial(self, items: Sequence[WorkItem], report: SchedulerReport) -> None:
        total = len(items)
        for position, item in enumerate(items, start=1):
            if self.stop_requested:
                report.not_started.extend(pending.name for pending in items[position - 1 :])
                return
            logger.info("Processing repository %d/%d: %s", position, total, item.name)
            self._execute_and_record(item)

    def _run_parallel(self, items: Sequence[WorkItem], report: SchedulerReport) -> None:
        pool = ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="atx-batch")
        in_flight: dict[Future[None], WorkItem] = {}
        total = len(items)
        try:
            for position, item in enumerate(items, start=1):
                while len(in_flight) >= self.concurrency and not self.stop_requested:
                    done, _ = wait(
                        in_flight,
                        timeout=self.stop_poll_seconds,
                        return_when=FIRST_COMPLETED,
                    )
                    _reap(in_flight, done)
                if self.stop_requested:
                    report.not_started.extend(pending.name for pending in items[position - 1 :])
                    break
                in_flight[pool.submit(self._execute_and_record, item)] = item
                logger.info("Started job %d/%d: %s", position, total, item.name)

            if self.stop_requested:
                self._drain_after_stop(in_flight, report)
            else:
                logger.info("Waiting for all parallel jobs to complete...")
                while in_flight and not self.stop_requested:
                    done, _ = wait(
                        in_flight,
                        timeout=self.stop_poll_seconds,
                        return_when=FIRST_COMPLETED,
                    )
                    _reap(in_flight, done)
                if self.stop_requested:
                    self._drain_after_stop(in_flight, report)
        finally:
            pool.shutdown(wait=not self.stop_requested, cancel_futures=True)

    def _drain_after_stop(
        self,
        in_flight: dict[Future[None], WorkItem],
        report: SchedulerReport,
    ) -> None:
        if not in_flight:
            return
        logger.info(
            "Waiting up to %.0fs for %d running jobs to stop",
            self.cancel_grace_seconds,
            len(in_flight),
        )
        done, not_done = wait(in_flight, timeout=self.cancel_grace_seconds)
        _reap(in_flight, done)
        for future in not_done:
            name = in_flight[future].name
            logger.error("Job for %s did not stop within the grace period", name)
            report.abandoned.append(name)

    def _execute_and_record(self, item: WorkItem) -> None:
        self._enter()
        try:
            outcome = self._execute_safely(item)
        finally:
            self._leave()
        if not self.sink.append(outcome):
            self._unrecorded.append(item.name)
        log = logger.info if outcome.succeeded else logger.error
        log(
            "%s %s: %s (%ss)",
            outcome.status.value,
            item.name,
            outcome.message,
            outcome.duration_seconds,
        )

    def _execute_safely(self, item: WorkItem) -> Outcome:
        try:
            return self.unit.execute(item)
        except Exception as error:  # noqa: BLE001
            logger.exception("Unexpected error while executing %s", item.name)
            return Outcome(
                item_name=item.name,
                status=OutcomeStatus.FAILED,
                message=f"internal error: {str(error)[:INTERNAL_ERROR_PREVIEW_CHARS]}",
                duration_seconds=0,
            )

    def _enter(self) -> None:
        with self._in_flight_lock:
            self._in_flight += 1
            self._max_in_flight = max(self._max_in_flight, self._in_flight)

    def _leave(self) -> None:
        with self._in_flight_lock:
            self._in_flight -= 1

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def _reap(in_flight: dict[Future[None], WorkItem], done: set[Future[None]]) -> None:
    for future in done:
        in_flight.pop(future, None)
        # Unit errors are turned into outcomes; anything here is a sink/IO bug.
        error = future.exception()
        if error is not None:
            logger.error("Worker thread failed: %s", error)


@contextmanager
def _noop() -> Iterator[None]:
    yield
