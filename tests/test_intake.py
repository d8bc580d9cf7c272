from __future__ import annotations

import csv
from pathlib import Path

import allure
import pytest

from atx_batch.orchestrator.intake import (
    INTAKE_COLUMNS,
    IntakeError,
    detect_locator_kind,
    normalize_item_name,
    read_work_items,
    write_retry_manifest,
)
from atx_batch.orchestrator.models import LocatorKind, WorkItem

pytestmark = [
    allure.epic("Batch Intake"),
    allure.feature("CSV Parsing & Validation"),
]

_HEADER = ",".join(INTAKE_COLUMNS)


def _write_csv(path: Path, *rows: str) -> Path:
    path.write_text("\n".join([_HEADER, *rows]) + "\n", "utf-8")
    return path


@pytest.mark.parametrize(
    ("locator", "expected"),
    [
        ("https://github.com/org/service-a.git", LocatorKind.HTTPS),
        ("https://gitlab.com/org/service-b", LocatorKind.HTTPS),
        ("http://git.example.com/team/lib.git", LocatorKind.HTTPS),
        ("git@github.com:org/service-c.git", LocatorKind.SSH),
        ("git@git.example.com:team/lib.git", LocatorKind.SSH),
        ("ftp://example.com/repo", LocatorKind.UNKNOWN),
        ("/definitely/not/here", LocatorKind.UNKNOWN),
    ],
)
def test_detect_locator_kind(locator: str, expected: LocatorKind) -> None:
    assert detect_locator_kind(locator) is expected


def test_detect_locator_kind_recognizes_existing_local_directory(tmp_path: Path) -> None:
    assert detect_locator_kind(str(tmp_path)) is LocatorKind.LOCAL


@pytest.mark.parametrize(
    ("locator", "expected"),
    [
        ("https://github.com/org/service-a.git", "service-a"),
        ("https://github.com/org/service-a/", "service-a"),
        ("git@github.com:org/my.lib.git", "my.lib"),
        ("/home/dev/projects/legacy app", "legacy_app"),
        ("./repos/core@2", "core_2"),
    ],
)
def test_normalize_item_name_is_filesystem_safe(locator: str, expected: str) -> None:
    assert normalize_item_name(locator) == expected


def test_read_work_items_parses_rows_and_applies_default_build_command(
    tmp_path: Path,
    make_repo,
) -> None:
    repo = make_repo("payments")
    csv_path = _write_csv(
        tmp_path / "repos.csv",
        f'"{repo}", "mvn clean install", "AWS/java-upgrade", "mvn test", "Keep Java 8 APIs"',
        "",
        "https://github.com/org/orders.git,,AWS/java-upgrade,,",
    )

    store = read_work_items(csv_path, default_build_command="gradle build")

    assert [item.name for item in store] == ["payments", "orders"]
    first, second = store.items
    assert first.locator == str(repo)
    assert first.command == "mvn clean install"
    assert first.validation_commands == "mvn test"
    assert first.plan_context == "Keep Java 8 APIs"
    assert second.command == "gradle build"
    assert store.rejected == []


def test_read_work_items_rejects_invalid_rows_without_aborting(tmp_path: Path, make_repo) -> None:
    repo = make_repo("inventory")
    csv_path = _write_csv(
        tmp_path / "repos.csv",
        "not-a-repo,make,AWS/x,,",
        f"{repo},make,,,",
        f"{repo},,AWS/x,,",
        f"{repo},make,AWS/x,,",
    )

    store = read_work_items(csv_path)

    assert len(store) == 1
    assert [row.reason for row in store.rejected] == [
        "Invalid repository path",
        "Missing transformation_name for repo",
        "Missing build_command for repo",
    ]
    assert [row.line_no for row in store.rejected] == [2, 3, 4]


def test_read_work_items_fails_when_file_is_missing(tmp_path: Path) -> None:
    with pytest.raises(IntakeError, match="not found"):
        read_work_items(tmp_path / "missing.csv")


def test_read_work_items_fails_when_no_row_is_valid(tmp_path: Path) -> None:
    csv_path = _write_csv(tmp_path / "repos.csv", "ftp://nowhere,make,AWS/x,,")

    with pytest.raises(IntakeError, match="No valid repositories"):
        read_work_items(csv_path)


def test_store_order_keeps_first_position_for_duplicate_names(tmp_path: Path) -> None:
    csv_path = _write_csv(
        tmp_path / "repos.csv",
        "https://github.com/a/shared.git,make,AWS/x,,",
        "https://github.com/a/other.git,make,AWS/x,,",
        "https://github.com/b/shared.git,make,AWS/y,,",
    )

    store = read_work_items(csv_path)

    assert store.order == {"shared": 0, "other": 1}
    assert store.by_name["shared"].transformation_name == "AWS/y"


def test_write_retry_manifest_round_trips_through_intake(tmp_path: Path, make_repo) -> None:
    repo = make_repo("billing")
    items = [
        WorkItem(
            name="billing",
            locator=str(repo),
            command="mvn -q package",
            transformation_name="AWS/java-upgrade",
            validation_commands="mvn verify, mvn test",
            plan_context='Use "records" where possible',
        ),
    ]
    manifest = tmp_path / "out" / "failed_repos.csv"

    written = write_retry_manifest(manifest, items)

    assert written == 1
    with manifest.open(newline="", encoding="utf-8") as handle:
        rows = list(csv.reader(handle))
    assert rows[0] == list(INTAKE_COLUMNS)
    assert read_work_items(manifest).items == items
