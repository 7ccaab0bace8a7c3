"""
Unit tests - source moves and artifact archiving
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from batchloader.archiver import Archiver, move_source, should_archive
from batchloader.results import RunSummary
from batchloader.storage import LocalStorage


def make_summary(tmp_path, has_error=False, bad_records=False) -> RunSummary:
    results_path = tmp_path / "results_20240115_060000.log"
    stats_path = tmp_path / "stats_20240115_060000.txt"
    results_path.write_text("results")
    stats_path.write_text("stats")
    result = MagicMock(rows_failed=3 if bad_records else 0)
    now = datetime(2024, 1, 15, 6, 0, tzinfo=timezone.utc)
    return RunSummary(
        run_id="20240115_060000",
        attempted=1,
        succeeded=0 if has_error else 1,
        failed=1 if has_error else 0,
        has_error=has_error,
        results=[result],
        results_path=results_path,
        stats_path=stats_path,
        started_at=now,
        finished_at=now,
    )


@pytest.mark.unit
@pytest.mark.parametrize(
    "policy, has_error, bad_records, expected",
    [
        ("always", False, False, True),
        ("never", True, True, False),
        ("on-error", False, True, False),
        ("on-error", True, False, True),
        ("on-bad-records", True, False, False),
        ("on-bad-records", False, True, True),
    ],
)
def test_should_archive(tmp_path, policy, has_error, bad_records, expected):
    assert should_archive(policy, make_summary(tmp_path, has_error, bad_records)) is expected


@pytest.mark.unit
def test_archiver_copies_artifacts_into_dated_directory(tmp_path):
    bad = tmp_path / "bad"
    (bad / "sales").mkdir(parents=True)
    (bad / "sales" / "orders.bad").write_text("1,x\n")
    (bad / "sales" / "empty.bad").write_text("")
    summary = make_summary(tmp_path, has_error=True)

    result = Archiver(str(tmp_path / "archive"), "always", str(bad)).run(summary)

    archive_dir = tmp_path / "archive" / "2024-01-15"
    assert result.archived
    assert (archive_dir / "results_20240115_060000.log").read_text() == "results"
    assert (archive_dir / "stats_20240115_060000.txt").exists()
    assert (archive_dir / "bad_records" / "sales" / "orders.bad").exists()
    assert not (archive_dir / "bad_records" / "sales" / "empty.bad").exists()


@pytest.mark.unit
def test_archiver_without_root_does_nothing(tmp_path):
    assert not Archiver(None, "always").run(make_summary(tmp_path)).archived


@pytest.mark.unit
def test_move_source_by_outcome(tmp_path):
    source = tmp_path / "source"
    source.mkdir()
    (source / "ok.csv").write_text("x")
    (source / "bad.csv").write_text("x")
    storage = LocalStorage(str(source))

    move_source(storage, "ok.csv", True, str(tmp_path / "done"), str(tmp_path / "failed"))
    move_source(storage, "bad.csv", False, str(tmp_path / "done"), None)

    assert (tmp_path / "done" / "ok.csv").exists()
    assert (source / "bad.csv").exists()


@pytest.mark.unit
def test_move_source_failure_is_logged_not_raised(tmp_path):
    storage = MagicMock()
    storage.move.side_effect = OSError("disk full")

    assert move_source(storage, "ok.csv", True, str(tmp_path), None) is None


@pytest.mark.unit
def test_archiver_copy_failure_is_logged_not_raised(tmp_path):
    summary = make_summary(tmp_path, has_error=True)

    with patch("batchloader.archiver.shutil.copy2", side_effect=OSError("No space left on device")):
        result = Archiver(str(tmp_path / "archive"), "always").run(summary)

    assert not result.archived
    assert result.files == []
    assert result.archive_dir == str(tmp_path / "archive" / "2024-01-15")
