"""Domain models for batch work items and their outcomes."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class OutcomeStatus(str, Enum):
    """Terminal item states recorded in the results ledger."""

    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class UnitState(str, Enum):
    """Execution unit lifecycle states."""

    PREPARING = "preparing"
    RUNNING = "running"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class AttemptResult(str, Enum):
    """Result of one external process invocation."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class LocatorKind(str, Enum):
    """How a work item's repository locator is acquired."""

    HTTPS = "https"
    SSH = "ssh"
    LOCAL = "local"
    UNKNOWN = "unknown"


@dataclass(slots=True, frozen=True)
class WorkItem:
    """One validated unit of work taken from the intake CSV."""

    name: str
    locator: str
    command: str
    transformation_name: str
    validation_commands: str = ""
    plan_context: str = ""

    def to_csv_row(self) -> list[str]:
        """Return the item in intake column order."""

        return [
            self.locator,
            self.command,
            self.transformation_name,
            self.validation_commands,
            self.plan_context,
        ]


@dataclass(slots=True)
class ExecutionAttempt:
    """Diagnostics for one attempt; never persisted."""

    item_name: str
    index: int
    result: AttemptResult
    exit_code: int | None
    duration_seconds: float
    output_tail: str = ""


@dataclass(slots=True, frozen=True)
class Outcome:
    """Durable terminal result for one item."""

    item_name: str
    status: OutcomeStatus
    message: str
    duration_seconds: int
    attempts: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status is OutcomeStatus.SUCCESS


@dataclass(slots=True)
class RunSummary:
    """Aggregate view over a run's outcomes."""

    total: int
    succeeded: int
    failed: int
    success_rate: int
    wall_seconds: int
    execution_seconds: int
    mode: str
    trust_all_tools: bool
    failed_outcomes: list[Outcome] = field(default_factory=list)
    outcomes: list[Outcome] = field(default_factory=list)
    not_started: list[str] = field(default_factory=list)
    interrupted: bool = False
