"""CSV intake and retry-manifest export for batch work items."""

from __future__ import annotations

import csv
import logging
import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path

from atx_batch.orchestrator.models import LocatorKind, WorkItem

logger = logging.getLogger(__name__)

INTAKE_COLUMNS: tuple[str, ...] = (
    "repo_path",
    "build_command",
    "transformation_name",
    "validation_commands",
    "additional_plan_context",
)

_HTTPS_PATTERNS = (
    re.compile(r"^https?://.*\.git$"),
    re.compile(r"^https?://github\.com/"),
    re.compile(r"^https?://gitlab\.com/"),
)
_SSH_PATTERNS = (
    re.compile(r"^git@.*:.*\.git$"),
    re.compile(r"^git@github\.com:"),
    re.compile(r"^git@gitlab\.com:"),
)
_UNSAFE_NAME_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


class IntakeError(ValueError):
    """Raised when the intake source is missing or yields no valid items."""


@dataclass(slots=True)
class RejectedRow:
    """Intake row that was dropped before scheduling."""

    line_no: int
    locator: str
    reason: str


@dataclass(slots=True)
class WorkItemStore:
    """Ordered work items plus the name lookup used for retry manifests."""

    items: list[WorkItem] = field(default_factory=list)
    rejected: list[RejectedRow] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self) -> Iterator[WorkItem]:
        return iter(self.items)

    @property
    def by_name(self) -> dict[str, WorkItem]:
        # Later duplicates win, mirroring the one-slot-per-name ledger.
        return {item.name: item for item in self.items}

    @property
    def order(self) -> dict[str, int]:
        positions: dict[str, int] = {}
        for index, item in enumerate(self.items):
            positions.setdefault(item.name, index)
        return positions


def detect_locator_kind(locator: str) -> LocatorKind:
    """Classify a locator as remote (https/ssh), an existing local dir, or unknown."""

    if any(pattern.search(locator) for pattern in _HTTPS_PATTERNS):
        return LocatorKind.HTTPS
    if any(pattern.search(locator) for pattern in _SSH_PATTERNS):
        return LocatorKind.SSH
    if expand_local_path(locator).is_dir():
        return LocatorKind.LOCAL
    return LocatorKind.UNKNOWN


def expand_local_path(locator: str) -> Path:
    return Path(locator).expanduser()


def normalize_item_name(locator: str) -> str:
    """Derive a filesystem-safe item name from a repository locator."""

    stripped = locator.strip().rstrip("/")
    if stripped.startswith(("http://", "https://", "git@")):
        tail = stripped.rsplit("/", 1)[-1]
        tail = tail.rsplit(":", 1)[-1]
        if tail.endswith(".git"):
            tail = tail[: -len(".git")]
    else:
        tail = expand_local_path(stripped).name
    return _UNSAFE_NAME_CHARS.sub("_", tail)


def read_work_items(csv_path: Path, *, default_build_command: str = "") -> WorkItemStore:
    """Parse and validate intake rows; invalid rows are logged and skipped."""

    if not csv_path.is_file():
        raise IntakeError(f"CSV file '{csv_path}' not found")

    with csv_path.open(newline="", encoding="utf-8") as handle:
        rows = list(csv.reader(handle, skipinitialspace=True))

    store = build_store(_data_rows(rows), default_build_command=default_build_command)
    logger.info("Found %d valid repositories to process", len(store))
    if not store.items:
        raise IntakeError(f"No valid repositories found in CSV file: {csv_path}")
    return store


def build_store(
    rows: Iterable[tuple[int, list[str]]],
    *,
    default_build_command: str = "",
) -> WorkItemStore:
    """Validate raw intake rows into a work item store."""

    store = WorkItemStore()
    for line_no, row in rows:
        cells = [_clean_cell(cell) for cell in row]
        cells.extend([""] * (len(INTAKE_COLUMNS) - len(cells)))
        locator, build_cmd, transform_name, validation_cmds, plan_context = cells[
            : len(INTAKE_COLUMNS)
        ]
        if not locator:
            continue

        reason = _rejection_reason(
            locator=locator,
            command=build_cmd or default_build_command,
            transformation_name=transform_name,
        )
        if reason is not None:
            logger.error("%s: %s (line %d)", reason, locator, line_no)
            store.rejected.append(RejectedRow(line_no=line_no, locator=locator, reason=reason))
            continue

        store.items.append(
            WorkItem(
                name=normalize_item_name(locator),
                locator=locator,
                command=build_cmd or default_build_command,
                transformation_name=transform_name,
                validation_commands=validation_cmds,
                plan_context=plan_context,
            ),
        )
    return store


def write_retry_manifest(path: Path, items: Iterable[WorkItem]) -> int:
    """Write items back out in intake format; returns the number of rows written."""

    path.parent.mkdir(parents=True, exist_ok=True)
    count = 0
    with path.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.writer(handle, quoting=csv.QUOTE_MINIMAL)
        writer.writerow(INTAKE_COLUMNS)
        for item in items:
            writer.writerow(item.to_csv_row())
            count += 1
    return count


def _data_rows(rows: list[list[str]]) -> Iterator[tuple[int, list[str]]]:
    for index, row in enumerate(rows[1:], start=2):
        if not row or not any(cell.strip() for cell in row):
            continue
        yield index, row


def _rejection_reason(*, locator: str, command: str, transformation_name: str) -> str | None:
    if detect_locator_kind(locator) is LocatorKind.UNKNOWN:
        return "Invalid repository path"
    if not transformation_name:
        return "Missing transformation_name for repo"
    if not command:
        return "Missing build_command for repo"
    return None


def _clean_cell(value: str) -> str:
    return value.strip().strip('"').strip()
